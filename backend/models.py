"""
Database models for the H2H Edge Engine
SQLAlchemy ORM with PostgreSQL
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    JSON,
    Text,
    ForeignKey,
    Date,
    UniqueConstraint,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, relationship, Session
from datetime import datetime
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://postgres@127.0.0.1:5432/h2h_edge")

# pool_pre_ping keeps long-lived scheduler sessions from using dead connections
engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_insert(db: Session, model):
    """Return an ``INSERT`` construct supporting ``ON CONFLICT`` for the session's dialect.

    Upserts are the concurrency mechanism for games, samples and stats, so
    they must be atomic at the database level.
    """
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {name!r}")


# ============================================================================
# IDENTITY
# ============================================================================

class Franchise(Base):
    """Team lineage that survives relocations and rebrands"""

    __tablename__ = "franchises"

    id = Column(Integer, primary_key=True, index=True)
    sport_id = Column(String(10), nullable=False, index=True)
    canonical_name = Column(String, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    teams = relationship("Team", back_populates="franchise")

    __table_args__ = (UniqueConstraint('sport_id', 'canonical_name', name='_franchise_sport_name_uc'),)


class Team(Base):
    """Provider-keyed team record (one per abbreviation a provider has used)"""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, index=True)
    sport_id = Column(String(10), nullable=False, index=True)
    provider_team_key = Column(String, nullable=False)  # "espn-nba-OKC"
    name = Column(String, nullable=False)
    abbrev = Column(String(10), nullable=False)
    franchise_id = Column(Integer, ForeignKey("franchises.id"), index=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    franchise = relationship("Franchise", back_populates="teams")

    __table_args__ = (UniqueConstraint('sport_id', 'provider_team_key', name='_team_sport_key_uc'),)


# ============================================================================
# GAMES AND SAMPLES
# ============================================================================

class Game(Base):
    """One sporting event, scheduled through final"""

    __tablename__ = "games"

    id = Column(Integer, primary_key=True, index=True)
    sport_id = Column(String(10), nullable=False, index=True)
    provider_game_key = Column(String, nullable=False)  # "espn-nba-401585601"

    home_team_id = Column(Integer, ForeignKey("teams.id"), nullable=False, index=True)
    away_team_id = Column(Integer, ForeignKey("teams.id"), nullable=False, index=True)
    home_franchise_id = Column(Integer, ForeignKey("franchises.id"), index=True)
    away_franchise_id = Column(Integer, ForeignKey("franchises.id"), index=True)

    start_time_utc = Column(DateTime, nullable=False, index=True)
    status = Column(String(12), nullable=False, default="scheduled")  # scheduled | live | final
    season_year = Column(Integer, index=True)
    decade = Column(String(6))  # "2010s"
    is_playoff = Column(Boolean, default=False)

    # Filled as the game progresses
    home_score = Column(Integer)
    away_score = Column(Integer)
    final_total = Column(Integer)

    last_seen_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    home_team = relationship("Team", foreign_keys=[home_team_id])
    away_team = relationship("Team", foreign_keys=[away_team_id])

    __table_args__ = (UniqueConstraint('sport_id', 'provider_game_key', name='_game_sport_key_uc'),)


class MatchupGame(Base):
    """Final game projected onto its canonical (low, high) pair"""

    __tablename__ = "matchup_games"

    id = Column(Integer, primary_key=True, index=True)
    sport_id = Column(String(10), nullable=False, index=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False, unique=True)

    team_low_id = Column(Integer, ForeignKey("teams.id"), nullable=False)
    team_high_id = Column(Integer, ForeignKey("teams.id"), nullable=False)
    franchise_low_id = Column(Integer, ForeignKey("franchises.id"), index=True)
    franchise_high_id = Column(Integer, ForeignKey("franchises.id"), index=True)

    total = Column(Float, nullable=False)
    played_at_utc = Column(DateTime, nullable=False)
    season_year = Column(Integer, index=True)
    decade = Column(String(6))
    is_playoff = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('sport_id', 'team_low_id', 'team_high_id', 'game_id', name='_matchup_pair_game_uc'),
    )


class MatchupStats(Base):
    """Cached percentile summary per (franchise pair, segment). Safe to rebuild."""

    __tablename__ = "matchup_stats"

    id = Column(Integer, primary_key=True, index=True)
    sport_id = Column(String(10), nullable=False, index=True)
    franchise_low_id = Column(Integer, ForeignKey("franchises.id"), nullable=False)
    franchise_high_id = Column(Integer, ForeignKey("franchises.id"), nullable=False)
    segment_key = Column(String(12), nullable=False)  # h2h_all | h2h_10y | ... | h2h_1y

    n_games = Column(Integer, nullable=False)
    min_total = Column(Float)
    max_total = Column(Float)
    median = Column(Float)
    p05 = Column(Float)
    p95 = Column(Float)
    is_visible = Column(Boolean, nullable=False, default=False)

    confidence = Column(Integer)
    confidence_label = Column(String(16))

    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            'sport_id', 'franchise_low_id', 'franchise_high_id', 'segment_key',
            name='_stats_pair_segment_uc',
        ),
    )


class DailyEdge(Base):
    """Per-game, per-day snapshot of live line vs. historical band"""

    __tablename__ = "daily_edges"

    id = Column(Integer, primary_key=True, index=True)
    date_local = Column(Date, nullable=False, index=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False, index=True)
    sport_id = Column(String(10), nullable=False, index=True)

    # Baseline used
    segment_key = Column(String(12))
    n_h2h = Column(Integer, nullable=False, default=0)
    p05 = Column(Float)
    p95 = Column(Float)
    median = Column(Float)
    is_visible = Column(Boolean, nullable=False, default=False)

    # Live line
    line = Column(Float)
    line_bookmaker = Column(String(30))
    line_updated_at = Column(DateTime)
    line_percentile = Column(Float)  # share of samples <= line, 0-100

    # Classification
    percentile_position = Column(Float)  # (line - p05) / (p95 - p05) * 100
    signal = Column(String(8))           # OVER | UNDER | NONE
    edge_strength = Column(String(10))   # STRONG | MODERATE | WEAK | NO_EDGE
    hit_probability = Column(Float)
    over_probability = Column(Float)
    under_probability = Column(Float)
    best_over_edge = Column(Float)       # points p95 sits above the line
    best_under_edge = Column(Float)      # points p05 sits below the line

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    game = relationship("Game")

    __table_args__ = (UniqueConstraint('date_local', 'game_id', name='_edge_date_game_uc'),)


# ============================================================================
# EXECUTION
# ============================================================================

class TradingConfig(Base):
    """Execution parameters and edge tiers; editable without a deploy"""

    __tablename__ = "trading_config"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(30), nullable=False, unique=True, default="default")
    enabled = Column(Boolean, default=True)

    strong_edge_threshold = Column(Float, default=5.0)
    moderate_edge_threshold = Column(Float, default=15.0)
    weak_edge_threshold = Column(Float, default=25.0)

    max_position_size_cents = Column(Integer, default=1000)
    strong_position_pct = Column(Integer, default=100)
    moderate_position_pct = Column(Integer, default=50)
    weak_position_pct = Column(Integer, default=25)

    max_daily_loss_cents = Column(Integer, default=5000)
    max_open_positions = Column(Integer, default=10)
    min_edge_confidence = Column(Integer, default=5)
    max_limit_price = Column(Integer, default=70)
    min_limit_price = Column(Integer, default=30)
    lead_window_hours = Column(Float, default=6.0)
    enabled_sports = Column(JSON, default=lambda: ["nba", "nfl", "nhl", "mlb"])

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class VenueOrder(Base):
    """Audit record of every execution decision (submitted, skipped or failed)"""

    __tablename__ = "venue_orders"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    job_run_id = Column(Integer, ForeignKey("job_runs.id"), index=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False, index=True)
    sport_id = Column(String(10))

    # Decision inputs
    line = Column(Float)
    p05 = Column(Float)
    p95 = Column(Float)
    n_h2h = Column(Integer)
    percentile_position = Column(Float)
    signal_type = Column(String(8))
    edge_strength = Column(String(10))
    hit_probability = Column(Float)

    # Order
    ticker = Column(String(60))
    side = Column(String(4))  # yes | no
    count = Column(Integer)
    price = Column(Integer)   # limit price, cents
    size_cents = Column(Integer)
    is_demo = Column(Boolean, default=False)

    # Outcome
    status = Column(String(12), nullable=False, index=True)  # pending | filled | cancelled | failed | skipped | dry_run
    reason = Column(Text)
    venue_order_id = Column(String(80))
    result = Column(String(8))  # win | loss | void, set at settlement
    pnl_cents = Column(Integer)
    settled_at = Column(DateTime)

    game = relationship("Game")


class DailyPnl(Base):
    """Realized P&L per local date; feeds the daily loss gate"""

    __tablename__ = "daily_pnl"

    id = Column(Integer, primary_key=True, index=True)
    date_local = Column(Date, nullable=False, unique=True)
    net_pnl_cents = Column(Integer, nullable=False, default=0)
    orders_settled = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ============================================================================
# OBSERVABILITY
# ============================================================================

class JobRun(Base):
    """Ledger row for every batch operation"""

    __tablename__ = "job_runs"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(40), nullable=False, index=True)
    status = Column(String(10), nullable=False, default="running", index=True)  # running | success | partial | fail
    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    finished_at = Column(DateTime)
    details = Column(JSON)


class DataFetch(Base):
    """Track provider fetches for monitoring upstream health"""

    __tablename__ = "data_fetches"

    id = Column(Integer, primary_key=True, index=True)
    fetch_time = Column(DateTime, default=datetime.utcnow, index=True)
    data_source = Column(String, nullable=False, index=True)  # "espn_nba", "odds_api", ...
    success = Column(Boolean, nullable=False)
    records_fetched = Column(Integer)
    error_message = Column(Text)
    response_time_ms = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)


# Create all tables
def init_db():
    """Initialize database tables"""
    Base.metadata.create_all(bind=engine)
    print("✅ Database tables created")


if __name__ == "__main__":
    init_db()
