"""
Tests for daily edge snapshots and live line refresh
Run with: pytest tests/test_edges.py -v
"""

from datetime import date, datetime
from unittest.mock import MagicMock

import pytest
from conftest import FakeProvider, make_record

from backend.core.edge_classifier import EdgeTiers
from backend.models import DailyEdge, Game, TradingConfig
from backend.services import edges, ingestor, percentile_engine
from backend.services.identity import find_franchise


SLATE = date(2024, 1, 15)
# 7:30 PM Eastern on the slate date
TIP_OFF = datetime(2024, 1, 16, 0, 30)


def _seed(db, with_history=True):
    """Twelve past BOS-LAL games this season (totals 200..222) plus tonight's game."""
    year = percentile_engine.current_season_year()
    records = {}
    if with_history:
        for i in range(12):
            day = date(year - 1, 1, 1 + i)
            records[day] = [make_record(
                f"hist{i}", home="BOS", away="LAL", home_score=100 + 2 * i, away_score=100,
                start=datetime(year - 1, 1, 1 + i, 0, 30), season_year=year,
            )]
    records[SLATE] = [
        make_record("tonight", home="BOS", away="LAL", start=TIP_OFF, status="scheduled"),
        make_record("fresh", home="NYK", away="MIA", start=TIP_OFF, status="scheduled"),
    ]
    ingestor.ingest(db, "nba", list(records), provider=FakeProvider(records), batch_delay=0)
    if with_history:
        pair = (find_franchise(db, "nba", "BOS"), find_franchise(db, "nba", "LAL"))
        percentile_engine.rebuild_pair(db, "nba", pair)
        db.commit()


def _odds_event(home, away, point, book="draftkings"):
    return {
        "home_team": home,
        "away_team": away,
        "bookmakers": [{
            "key": book,
            "markets": [{"key": "totals", "outcomes": [
                {"name": "Over", "point": point}, {"name": "Under", "point": point},
            ]}],
        }],
    }


def _odds_client(events):
    client = MagicMock()
    client.get_totals.return_value = events
    return client


class TestLocalDate:

    def test_late_game_belongs_to_previous_evening(self):
        assert edges.local_today(datetime(2024, 1, 16, 3, 0)) == date(2024, 1, 15)

    def test_utc_window(self):
        start, end = edges.utc_window(SLATE)
        assert start == datetime(2024, 1, 15, 5, 0)
        assert end == datetime(2024, 1, 16, 5, 0)

    def test_timezone_configurable(self, monkeypatch):
        monkeypatch.setenv("EDGE_TIMEZONE", "UTC")
        assert edges.local_today(datetime(2024, 1, 16, 3, 0)) == date(2024, 1, 16)


class TestComputeDailyEdges:

    def test_baseline_snapshot_without_line(self, db):
        _seed(db)

        summary = edges.compute_daily_edges(db, "nba", SLATE)

        assert summary["games"] == 2
        assert summary["edges"] == 2
        assert summary["with_edge"] == 0
        row = db.query(DailyEdge).filter(DailyEdge.n_h2h > 0).one()
        assert row.segment_key == "h2h_1y"
        assert row.n_h2h == 12
        assert row.p05 == 200.0
        assert row.p95 == 222.0
        assert row.line is None
        assert row.signal == "NONE"
        assert row.edge_strength == "NO_EDGE"

    def test_game_without_history(self, db):
        _seed(db)
        edges.compute_daily_edges(db, "nba", SLATE)

        row = db.query(DailyEdge).filter(DailyEdge.n_h2h == 0).one()
        assert row.segment_key is None
        assert row.p05 is None
        assert row.is_visible is False

    def test_recompute_keeps_line(self, db):
        _seed(db)
        edges.refresh_lines(db, "nba", SLATE, client=_odds_client([
            _odds_event("Boston Celtics", "Los Angeles Lakers", 201.0),
        ]))

        summary = edges.compute_daily_edges(db, "nba", SLATE)

        row = db.query(DailyEdge).filter(DailyEdge.n_h2h > 0).one()
        assert row.line == 201.0
        assert row.signal == "UNDER"
        assert summary["with_edge"] == 1
        assert db.query(DailyEdge).count() == 2


class TestRefreshLines:

    def test_line_attached_and_classified(self, db):
        _seed(db)
        edges.compute_daily_edges(db, "nba", SLATE)

        summary = edges.refresh_lines(db, "nba", SLATE, client=_odds_client([
            _odds_event("Boston Celtics", "Los Angeles Lakers", 201.0),
        ]))

        assert summary["matched"] == 1
        assert summary["lines_updated"] == 1
        row = db.query(DailyEdge).filter(DailyEdge.n_h2h > 0).one()
        assert row.line == 201.0
        assert row.line_bookmaker == "draftkings"
        assert row.signal == "UNDER"
        assert row.edge_strength == "STRONG"
        assert row.percentile_position == pytest.approx(4.55)
        assert row.best_under_edge == pytest.approx(1.0)
        assert row.best_over_edge == pytest.approx(21.0)
        assert row.line_percentile == pytest.approx(8.33)

    def test_creates_snapshot_when_missing(self, db):
        _seed(db)
        summary = edges.refresh_lines(db, "nba", SLATE, client=_odds_client([
            _odds_event("Boston Celtics", "Los Angeles Lakers", 221.5),
        ]))

        assert summary["lines_updated"] == 1
        row = db.query(DailyEdge).filter(DailyEdge.n_h2h > 0).one()
        assert row.signal == "OVER"
        assert row.best_over_edge == pytest.approx(0.5)

    def test_reversed_home_away_still_matches(self, db):
        _seed(db)
        summary = edges.refresh_lines(db, "nba", SLATE, client=_odds_client([
            _odds_event("Los Angeles Lakers", "Boston Celtics", 211.0),
        ]))
        assert summary["matched"] == 1

    def test_unknown_teams_and_other_books(self, db):
        _seed(db)
        summary = edges.refresh_lines(db, "nba", SLATE, client=_odds_client([
            _odds_event("Chicago Bulls", "Denver Nuggets", 230.0),
            _odds_event("New York Knicks", "Miami Heat", 215.0, book="fanduel"),
        ]))

        assert summary["events"] == 2
        assert summary["matched"] == 1
        assert summary["lines_updated"] == 0
        assert summary["unmatched"] == ["Denver Nuggets @ Chicago Bulls"]

    def test_doubleheader_lines_follow_start_time(self, db):
        day = date(2024, 7, 4)
        early, late = datetime(2024, 7, 4, 17, 5), datetime(2024, 7, 4, 23, 5)
        records = {day: [
            make_record("dh1", home="NYY", away="BOS", start=early, status="scheduled"),
            make_record("dh2", home="NYY", away="BOS", start=late, status="scheduled"),
        ]}
        ingestor.ingest(db, "mlb", [day], provider=FakeProvider(records), batch_delay=0)

        late_event = _odds_event("New York Yankees", "Boston Red Sox", 9.5)
        late_event["commence_time"] = "2024-07-04T23:05:00Z"
        early_event = _odds_event("New York Yankees", "Boston Red Sox", 8.5)
        early_event["commence_time"] = "2024-07-04T17:05:00Z"

        summary = edges.refresh_lines(db, "mlb", day, client=_odds_client([late_event, early_event]))

        assert summary["matched"] == 2
        assert summary["lines_updated"] == 2
        lines = {
            game.start_time_utc: edge.line
            for edge, game in db.query(DailyEdge, Game).join(Game, Game.id == DailyEdge.game_id)
        }
        assert lines == {early: 8.5, late: 9.5}

    def test_doubleheader_without_start_times_fills_both(self, db):
        day = date(2024, 7, 4)
        records = {day: [
            make_record("dh1", home="NYY", away="BOS", start=datetime(2024, 7, 4, 17, 5), status="scheduled"),
            make_record("dh2", home="NYY", away="BOS", start=datetime(2024, 7, 4, 23, 5), status="scheduled"),
        ]}
        ingestor.ingest(db, "mlb", [day], provider=FakeProvider(records), batch_delay=0)

        summary = edges.refresh_lines(db, "mlb", day, client=_odds_client([
            _odds_event("New York Yankees", "Boston Red Sox", 8.5),
            _odds_event("New York Yankees", "Boston Red Sox", 9.5),
        ]))

        assert summary["lines_updated"] == 2
        assert sorted(e.line for e in db.query(DailyEdge)) == [8.5, 9.5]


class TestLoadTiers:

    def test_env_when_no_config_row(self, db, monkeypatch):
        monkeypatch.setenv("EDGE_STRONG_THRESHOLD", "2")
        assert edges.load_tiers(db).strong == 2.0

    def test_config_row_wins(self, db):
        db.add(TradingConfig(name="default", strong_edge_threshold=3.0,
                             moderate_edge_threshold=9.0, weak_edge_threshold=18.0))
        db.commit()
        assert edges.load_tiers(db) == EdgeTiers(3.0, 9.0, 18.0)
