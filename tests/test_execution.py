"""
Tests for the execution cycle: risk gates, order intents, audit records, settlement
Run with: pytest tests/test_execution.py -v
"""

from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import requests

from backend.core.sizing import ExecutionConfig
from backend.models import DailyEdge, DailyPnl, Franchise, Game, Team, TradingConfig, VenueOrder
from backend.services import execution
from backend.services.execution import EdgeCandidate, OrderIntent, RiskState, Skip
from backend.services.trading_client import TradingVenueError


NOW = datetime(2024, 1, 15, 20, 0)          # 3 PM Eastern
TIP_OFF = NOW + timedelta(hours=4, minutes=30)
SLATE = date(2024, 1, 15)


def _make_candidate(line=201.0, p05=200.0, p95=222.0, n_h2h=12, start=TIP_OFF, game_id=1, visible=True):
    return EdgeCandidate(
        game_id=game_id,
        sport_id="nba",
        date_local=SLATE,
        start_time_utc=start,
        line=line,
        p05=p05,
        p95=p95,
        n_h2h=n_h2h,
        is_visible=visible,
    )


def _make_risk(**kwargs):
    return RiskState(now=NOW, **kwargs)


# ---------------------------------------------------------------------------
# decide (pure)
# ---------------------------------------------------------------------------

class TestDecide:

    def test_strong_under_becomes_no_order(self):
        intent = execution.decide(_make_candidate(), ExecutionConfig(), _make_risk())

        assert isinstance(intent, OrderIntent)
        assert intent.side == "no"
        assert intent.signal == "UNDER"
        assert intent.strength == "STRONG"
        assert intent.price == 68
        assert intent.size_cents == 1000
        assert intent.count == 14
        assert intent.ticker == "KXNBATOTAL-20240115"

    def test_strong_over_becomes_yes_order(self):
        intent = execution.decide(_make_candidate(line=221.0), ExecutionConfig(), _make_risk())

        assert isinstance(intent, OrderIntent)
        assert intent.side == "yes"
        assert intent.signal == "OVER"

    @pytest.mark.parametrize("candidate_kwargs, risk_kwargs, reason", [
        ({}, {"daily_pnl_cents": -5000}, "daily loss limit"),
        ({}, {"open_positions": 10}, "max open positions"),
        ({"start": NOW}, {}, "game already started"),
        ({"start": NOW + timedelta(hours=7)}, {}, "starts more than 6h out"),
        ({"n_h2h": 4}, {}, "insufficient sample"),
        ({"line": None}, {}, "no line posted"),
        ({"line": 211.0}, {}, "no edge"),
        ({}, {"active_game_ids": {1}}, "active order already exists"),
    ])
    def test_gates(self, candidate_kwargs, risk_kwargs, reason):
        decision = execution.decide(
            _make_candidate(**candidate_kwargs), ExecutionConfig(), _make_risk(**risk_kwargs),
        )
        assert isinstance(decision, Skip)
        assert decision.reason.startswith(reason)

    def test_loss_gate_checked_first(self):
        decision = execution.decide(
            _make_candidate(line=None, n_h2h=0),
            ExecutionConfig(),
            _make_risk(daily_pnl_cents=-9000, open_positions=50),
        )
        assert decision.reason.startswith("daily loss limit")

    def test_small_budget_skips_instead_of_rounding_up(self):
        config = ExecutionConfig(max_position_size_cents=50)
        decision = execution.decide(_make_candidate(), config, _make_risk())

        assert isinstance(decision, Skip)
        assert decision.reason.startswith("position too small")
        assert decision.strength == "STRONG"

    def test_not_visible_sample_sized_as_weak(self):
        config = ExecutionConfig(min_edge_confidence=1)
        intent = execution.decide(_make_candidate(n_h2h=3, visible=False), config, _make_risk())

        assert intent.strength == "WEAK"
        assert intent.size_cents == 250

    def test_no_edge_skip_keeps_classification(self):
        decision = execution.decide(_make_candidate(line=211.0), ExecutionConfig(), _make_risk())
        assert decision.signal == "NONE"
        assert decision.percentile_position == pytest.approx(50.0)


class TestSubmit:

    def _intent(self):
        return execution.decide(_make_candidate(), ExecutionConfig(), _make_risk())

    def test_dry_run_makes_no_call(self):
        client = MagicMock()
        result = execution.submit(self._intent(), client, dry_run=True)

        assert result.status == "dry_run"
        client.create_order.assert_not_called()

    def test_executed_order_is_filled(self):
        client = MagicMock()
        client.create_order.return_value = {"order": {"order_id": "ord-1", "status": "executed"}}

        result = execution.submit(self._intent(), client, dry_run=False)

        assert result.status == "filled"
        assert result.venue_order_id == "ord-1"
        args, kwargs = client.create_order.call_args
        assert args == ("KXNBATOTAL-20240115", "no", 14, 68)
        assert kwargs["client_order_id"]

    def test_resting_order_is_pending(self):
        client = MagicMock()
        client.create_order.return_value = {"order": {"order_id": "ord-2", "status": "resting"}}
        assert execution.submit(self._intent(), client, dry_run=False).status == "pending"

    def test_venue_error_is_failed(self):
        client = MagicMock()
        client.create_order.side_effect = TradingVenueError("insufficient balance", status_code=400)

        result = execution.submit(self._intent(), client, dry_run=False)

        assert result.status == "failed"
        assert "insufficient balance" in result.error


# ---------------------------------------------------------------------------
# run_cycle (database)
# ---------------------------------------------------------------------------

def _seed_edge(db, line=201.0, start=TIP_OFF, status="scheduled"):
    home_f = Franchise(sport_id="nba", canonical_name="Boston Celtics")
    away_f = Franchise(sport_id="nba", canonical_name="Los Angeles Lakers")
    db.add_all([home_f, away_f])
    db.flush()
    home_t = Team(sport_id="nba", provider_team_key="espn-nba-BOS", name="Celtics", abbrev="BOS", franchise_id=home_f.id)
    away_t = Team(sport_id="nba", provider_team_key="espn-nba-LAL", name="Lakers", abbrev="LAL", franchise_id=away_f.id)
    db.add_all([home_t, away_t])
    db.flush()
    game = Game(
        sport_id="nba", provider_game_key="espn-nba-1",
        home_team_id=home_t.id, away_team_id=away_t.id,
        home_franchise_id=home_f.id, away_franchise_id=away_f.id,
        start_time_utc=start, status=status, season_year=2024,
    )
    db.add(game)
    db.flush()
    db.add(DailyEdge(
        date_local=SLATE, game_id=game.id, sport_id="nba", segment_key="h2h_1y",
        n_h2h=12, p05=200.0, p95=222.0, median=211.0, is_visible=True, line=line,
    ))
    db.commit()
    return game.id


class TestRunCycle:

    def test_dry_run_records_decision(self, db):
        game_id = _seed_edge(db)

        summary = execution.run_cycle(db, dry_run=True, sports=["nba"], now=NOW)

        assert summary["candidates"] == 1
        assert summary["dry_run"] == 1
        assert summary["submitted"] == 0
        order = db.query(VenueOrder).one()
        assert order.status == "dry_run"
        assert order.game_id == game_id
        assert order.side == "no"
        assert order.count == 14

    def test_skips_are_audited(self, db):
        _seed_edge(db, line=211.0)

        summary = execution.run_cycle(db, dry_run=True, sports=["nba"], now=NOW)

        assert summary["skipped"] == 1
        assert summary["skip_reasons"] == {"no edge": 1}
        order = db.query(VenueOrder).one()
        assert order.status == "skipped"
        assert order.reason == "no edge"

    def test_live_order_then_dedupe(self, db):
        _seed_edge(db)
        client = MagicMock(is_demo=True)
        client.create_order.return_value = {"order": {"order_id": "abc", "status": "resting"}}

        first = execution.run_cycle(db, client=client, sports=["nba"], now=NOW)
        second = execution.run_cycle(db, client=client, sports=["nba"], now=NOW)

        assert first["submitted"] == 1
        assert first["is_demo"] is True
        assert second["submitted"] == 0
        assert second["skip_reasons"] == {"active order already exists for game": 1}
        assert client.create_order.call_count == 1
        statuses = sorted(o.status for o in db.query(VenueOrder))
        assert statuses == ["pending", "skipped"]

    def test_failed_submission_recorded(self, db):
        _seed_edge(db)
        client = MagicMock(is_demo=False)
        client.create_order.side_effect = TradingVenueError("rejected", status_code=400)

        summary = execution.run_cycle(db, client=client, sports=["nba"], now=NOW)

        assert summary["failed"] == 1
        order = db.query(VenueOrder).one()
        assert order.status == "failed"
        assert order.reason == "rejected"

    def test_unexpected_submission_error_is_audited(self, db):
        game_id = _seed_edge(db)
        client = MagicMock(is_demo=False)
        client.create_order.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)

        summary = execution.run_cycle(db, client=client, sports=["nba"], now=NOW)

        assert summary["errors"] == 1
        assert client.create_order.call_count == 1
        order = db.query(VenueOrder).one()
        assert order.game_id == game_id
        assert order.status == "failed"
        assert order.side == "no"
        assert order.count == 14
        assert order.reason.startswith("JSONDecodeError")

    def test_decision_error_is_audited(self, db, monkeypatch):
        _seed_edge(db)

        def broken(candidate, config, risk):
            raise ZeroDivisionError("division by zero")

        monkeypatch.setattr(execution, "decide", broken)

        summary = execution.run_cycle(db, dry_run=True, sports=["nba"], now=NOW)

        assert summary["errors"] == 1
        order = db.query(VenueOrder).one()
        assert order.status == "failed"
        assert order.side is None
        assert order.reason == "ZeroDivisionError: division by zero"

    def test_disabled_config_blocks_live_mode(self, db):
        _seed_edge(db)
        db.add(TradingConfig(name="default", enabled=False))
        db.commit()
        client = MagicMock()

        summary = execution.run_cycle(db, client=client, sports=["nba"], now=NOW)

        assert summary["message"] == "disabled"
        client.create_order.assert_not_called()
        assert db.query(VenueOrder).count() == 0

    def test_disabled_config_still_allows_dry_run(self, db):
        _seed_edge(db)
        db.add(TradingConfig(name="default", enabled=False))
        db.commit()

        summary = execution.run_cycle(db, dry_run=True, sports=["nba"], now=NOW)
        assert summary["dry_run"] == 1

    def test_final_games_not_scanned(self, db):
        _seed_edge(db, status="final")
        summary = execution.run_cycle(db, dry_run=True, sports=["nba"], now=NOW)
        assert summary["candidates"] == 0

    def test_daily_loss_blocks_cycle(self, db):
        _seed_edge(db)
        db.add(DailyPnl(date_local=SLATE, net_pnl_cents=-6000, orders_settled=3))
        db.commit()

        summary = execution.run_cycle(db, dry_run=True, sports=["nba"], now=NOW)

        assert summary["skip_reasons"] == {"daily loss limit reached": 1}


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

def _open_order(db, status="pending"):
    game_id = _seed_edge(db) if db.query(Game).count() == 0 else db.query(Game.id).scalar()
    order = VenueOrder(game_id=game_id, sport_id="nba", status=status, count=10, price=60)
    db.add(order)
    db.commit()
    return order.id


class TestSettleOrder:

    def test_settlement_accumulates_daily_pnl(self, db):
        first = _open_order(db)
        second = _open_order(db)

        execution.settle_order(db, first, "win", 400, day=SLATE)
        execution.settle_order(db, second, "loss", -600, day=SLATE)

        pnl = db.query(DailyPnl).one()
        assert pnl.net_pnl_cents == -200
        assert pnl.orders_settled == 2
        assert db.get(VenueOrder, first).result == "win"

    def test_settled_order_is_no_longer_active(self, db):
        order_id = _open_order(db)
        execution.settle_order(db, order_id, "void", 0, day=SLATE)

        risk = execution.load_risk_state(db, NOW)
        assert risk.open_positions == 0
        with pytest.raises(ValueError):
            execution.settle_order(db, order_id, "win", 100, day=SLATE)

    def test_skipped_order_cannot_be_settled(self, db):
        order_id = _open_order(db, status="skipped")
        with pytest.raises(ValueError, match="not open"):
            execution.settle_order(db, order_id, "win", 100)

    def test_invalid_result(self, db):
        order_id = _open_order(db)
        with pytest.raises(ValueError):
            execution.settle_order(db, order_id, "push", 0)

    def test_unknown_order(self, db):
        with pytest.raises(ValueError, match="not found"):
            execution.settle_order(db, 999, "win", 100)


def test_risk_state_counts_active_orders(db):
    _open_order(db, status="pending")
    _open_order(db, status="filled")
    _open_order(db, status="dry_run")

    risk = execution.load_risk_state(db, NOW)

    assert risk.open_positions == 2
    assert len(risk.active_game_ids) == 1
