"""
Shared fixtures: an in-memory SQLite database and scoreboard fakes.

SQLite needs two hooks for SAVEPOINTs to behave: the driver's own
transaction handling is switched off and BEGIN is emitted by SQLAlchemy.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"

from datetime import date, datetime
from typing import Dict, List

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.models import Base
from backend.services.scores_provider import GameRecord, ScoreboardResult


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def make_record(
    event_id,
    home="BOS",
    away="LAL",
    home_score=110,
    away_score=100,
    start=datetime(2024, 1, 15, 0, 30),
    status="final",
    season_year=2024,
    is_playoff=False,
) -> GameRecord:
    scheduled = status == "scheduled"
    return GameRecord(
        event_id=str(event_id),
        start_time_utc=start,
        status=status,
        season_year=season_year,
        is_playoff=is_playoff,
        home_abbrev=home,
        away_abbrev=away,
        home_name=f"{home} team",
        away_name=f"{away} team",
        home_score=None if scheduled else home_score,
        away_score=None if scheduled else away_score,
    )


class FakeProvider:
    """Stands in for ScoresProvider: serves canned records per date."""

    source_name = "espn_fake"

    def __init__(self, records_by_day: Dict[date, List[GameRecord]] = None, failing=()):
        self.records_by_day = records_by_day or {}
        self.failing = set(failing)
        self.calls: List[date] = []

    def fetch_games(self, day: date) -> ScoreboardResult:
        from backend.services.scores_provider import ScoresProviderError

        self.calls.append(day)
        if day in self.failing:
            raise ScoresProviderError(f"espn_fake {day} failed with status 503 after 4 attempts")
        return ScoreboardResult(day=day, records=list(self.records_by_day.get(day, [])))
