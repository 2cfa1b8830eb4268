"""
Tests for the HTTP API: authentication, edges, segments, jobs, orders
Run with: pytest tests/test_api.py -v
"""

from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from backend.auth import reset_auth_cache
from backend.main import app
from backend.models import DailyEdge, Franchise, Game, JobRun, Team, VenueOrder, get_db
from backend.schemas import JobTrigger, SettleOrder
from backend.services import jobs


ADMIN = {"X-API-Key": "admin-key"}
USER = {"X-API-Key": "user-key"}


@pytest.fixture
def client(session_factory, monkeypatch):
    monkeypatch.setenv("API_KEY_USER1", "admin-key")
    monkeypatch.setenv("API_KEY_USER2", "user-key")
    monkeypatch.setenv("ADMIN_USERS", "user1")
    reset_auth_cache()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    # Background jobs run after the response, on the runner's own session
    monkeypatch.setattr(jobs, "SessionLocal", session_factory)
    yield TestClient(app)
    app.dependency_overrides.clear()
    reset_auth_cache()


def _seed_edge(session_factory, strength="STRONG"):
    with session_factory() as db:
        bos = Franchise(sport_id="nba", canonical_name="Boston Celtics")
        lal = Franchise(sport_id="nba", canonical_name="Los Angeles Lakers")
        db.add_all([bos, lal])
        db.flush()
        home = Team(sport_id="nba", provider_team_key="espn-nba-BOS", name="Boston Celtics", abbrev="BOS", franchise_id=bos.id)
        away = Team(sport_id="nba", provider_team_key="espn-nba-LAL", name="Los Angeles Lakers", abbrev="LAL", franchise_id=lal.id)
        db.add_all([home, away])
        db.flush()
        game = Game(
            sport_id="nba", provider_game_key="espn-nba-1", home_team_id=home.id, away_team_id=away.id,
            home_franchise_id=bos.id, away_franchise_id=lal.id,
            start_time_utc=datetime(2024, 1, 16, 0, 30), status="scheduled", season_year=2024,
        )
        db.add(game)
        db.flush()
        db.add(DailyEdge(
            date_local=date(2024, 1, 15), game_id=game.id, sport_id="nba", n_h2h=12,
            p05=200.0, p95=222.0, is_visible=True, line=201.0,
            signal="UNDER" if strength != "NO_EDGE" else "NONE", edge_strength=strength,
        ))
        db.commit()
        return game.id


class TestAuth:

    def test_root_is_public(self, client):
        assert client.get("/").json()["status"] == "operational"

    def test_missing_key(self, client):
        assert client.get("/api/edges").status_code == 401

    def test_invalid_key(self, client):
        assert client.get("/api/edges", headers={"X-API-Key": "nope"}).status_code == 401

    def test_non_admin_cannot_trigger_jobs(self, client):
        assert client.post("/admin/jobs/recompute", headers=USER).status_code == 403


class TestEdges:

    def test_edges_for_date(self, client, session_factory):
        _seed_edge(session_factory)

        body = client.get("/api/edges", params={"date": "2024-01-15", "sport": "nba"}, headers=USER).json()

        assert body["total_games"] == 1
        assert body["with_edge"] == 1
        edge = body["edges"][0]
        assert edge["home_team"] == "Boston Celtics"
        assert edge["away_team"] == "Los Angeles Lakers"
        assert edge["signal"] == "UNDER"
        assert edge["line"] == 201.0

    def test_edges_only_filter(self, client, session_factory):
        _seed_edge(session_factory, strength="NO_EDGE")
        body = client.get(
            "/api/edges", params={"date": "2024-01-15", "edges_only": "true"}, headers=USER,
        ).json()
        assert body["total_games"] == 0

    def test_unknown_sport(self, client):
        assert client.get("/api/edges", params={"sport": "cricket"}, headers=USER).status_code == 404


class TestMatchupSegments:

    def test_unknown_team_code(self, client):
        response = client.get("/api/matchups/nba/XYZ/BOS/segments", headers=USER)
        assert response.status_code == 404

    def test_same_franchise(self, client):
        response = client.get("/api/matchups/nba/SEA/OKC/segments", headers=USER)
        assert response.status_code == 400

    def test_segments_for_known_pair(self, client, session_factory):
        _seed_edge(session_factory)

        body = client.get("/api/matchups/nba/LAL/BOS/segments", headers=USER).json()

        assert body["teams"] == ["Los Angeles Lakers", "Boston Celtics"]
        assert len(body["segments"]) == 5
        assert body["recommended_segment"] == "insufficient"


class TestJobs:

    def test_trigger_and_poll(self, client, session_factory):
        response = client.post("/admin/jobs/recompute", json={"sport": "nba"}, headers=ADMIN)

        assert response.status_code == 200
        job_id = response.json()["job_id"]
        # TestClient runs background tasks before returning
        job = client.get(f"/api/jobs/{job_id}", headers=USER).json()
        assert job["job_name"] == "recompute"
        assert job["status"] == "success"

    def test_unknown_job(self, client):
        assert client.post("/admin/jobs/launch_rockets", headers=ADMIN).status_code == 404

    def test_invalid_payload(self, client):
        response = client.post(
            "/admin/jobs/ingest", json={"start_date": "2024-02-01", "end_date": "2024-01-01"}, headers=ADMIN,
        )
        assert response.status_code == 422

    def test_missing_job(self, client):
        assert client.get("/api/jobs/999", headers=USER).status_code == 404

    def test_list_jobs(self, client, session_factory):
        with session_factory() as db:
            db.add(JobRun(job_name="ingest", status="success"))
            db.commit()
        body = client.get("/api/jobs", params={"job_name": "ingest"}, headers=USER).json()
        assert [j["job_name"] for j in body["jobs"]] == ["ingest"]


class TestOrders:

    def _order(self, session_factory, status="pending"):
        game_id = _seed_edge(session_factory)
        with session_factory() as db:
            order = VenueOrder(game_id=game_id, sport_id="nba", status=status, side="no", count=14, price=68)
            db.add(order)
            db.commit()
            return order.id

    def test_settle(self, client, session_factory):
        order_id = self._order(session_factory)

        response = client.put(
            f"/admin/orders/{order_id}/settle", json={"result": "win", "pnl_cents": 450}, headers=ADMIN,
        )

        assert response.status_code == 200
        assert response.json()["result"] == "win"
        assert response.json()["pnl_cents"] == 450

    def test_settle_skipped_order_rejected(self, client, session_factory):
        order_id = self._order(session_factory, status="skipped")
        response = client.put(
            f"/admin/orders/{order_id}/settle", json={"result": "win", "pnl_cents": 450}, headers=ADMIN,
        )
        assert response.status_code == 400

    def test_list_orders(self, client, session_factory):
        self._order(session_factory)
        body = client.get("/api/orders", headers=USER).json()
        assert body["counts"] == {"pending": 1}
        assert body["orders"][0]["side"] == "no"

    def test_portfolio_without_venue(self, client, monkeypatch):
        monkeypatch.delenv("KALSHI_API_KEY_ID", raising=False)
        body = client.get("/api/portfolio", headers=USER).json()
        assert body["open_positions"] == 0
        assert body["venue"] is None


class TestSchemas:

    def test_sport_normalised(self):
        assert JobTrigger(sport="NBA").sport == "nba"

    def test_unknown_sport_rejected(self):
        with pytest.raises(ValidationError):
            JobTrigger(sport="cricket")

    def test_end_without_start(self):
        with pytest.raises(ValidationError):
            JobTrigger(end_date="2024-01-01")

    def test_loss_with_profit_rejected(self):
        with pytest.raises(ValidationError):
            SettleOrder(result="loss", pnl_cents=100)
