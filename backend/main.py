"""
FastAPI application for the H2H Edge Engine
Includes REST API, scheduled jobs, and monitoring
"""

from fastapi import FastAPI, Depends, HTTPException, Query, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session, aliased
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional
import logging
import os

from backend.models import get_db, DailyEdge, Game, JobRun, Team, VenueOrder
from backend.auth import verify_api_key, verify_admin_api_key
from backend.core.edge_classifier import STRENGTH_NO_EDGE
from backend.core.sport_config import SUPPORTED_SPORTS, get_sport_config
from backend.services import execution
from backend.services.edges import local_today
from backend.services.identity import find_franchise
from backend.services.jobs import JOBS, run_job_in_background, run_job_now
from backend.services.percentile_engine import get_pair_segments
from backend.services.trading_client import TradingVenueClient, TradingVenueError, SigningError
from backend.schemas import (
    DailyEdgeResponse,
    DailyEdgesResponse,
    JobAccepted,
    JobRunResponse,
    JobTrigger,
    SettleOrder,
    VenueOrderResponse,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()

# Trigger fields each job accepts
JOB_PARAMS = {
    "ingest": ("sport", "date", "start_date", "end_date", "years_back", "recompute_only"),
    "sync_matchup_games": ("sport",),
    "verify_scores": ("sport", "days"),
    "recompute": ("sport",),
    "daily_edges": ("sport", "date"),
    "refresh_lines": ("sport", "date"),
    "auto_bet": ("sport", "dry_run"),
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("🚀 Starting H2H Edge Engine")

    nightly_hour = int(os.getenv("NIGHTLY_CRON_HOUR", "4"))
    timezone = os.getenv("NIGHTLY_CRON_TIMEZONE", "America/New_York")

    # Yesterday's finals + recompute of touched pairs
    scheduler.add_job(
        _nightly_ingest_job,
        CronTrigger(hour=nightly_hour, minute=0, timezone=timezone),
        id="nightly_ingest",
        name="Nightly Score Ingest",
        replace_existing=True,
    )

    # Score corrections for the trailing 3 days
    scheduler.add_job(
        _verify_scores_job,
        CronTrigger(hour=nightly_hour, minute=30, timezone=timezone),
        id="verify_scores",
        name="Score Verification",
        replace_existing=True,
    )

    # Today's slate against the refreshed baselines
    scheduler.add_job(
        _daily_edges_job,
        CronTrigger(hour=nightly_hour + 2, minute=0, timezone=timezone),
        id="daily_edges",
        name="Daily Edge Computation",
        replace_existing=True,
    )

    lines_interval = int(os.getenv("LINES_REFRESH_INTERVAL_MIN", "30"))
    scheduler.add_job(
        _refresh_lines_job,
        IntervalTrigger(minutes=lines_interval),
        id="refresh_lines",
        name="Live Totals Refresh",
        replace_existing=True,
    )

    auto_bet_enabled = os.getenv("AUTO_BET_ENABLED", "false").lower() == "true"
    if auto_bet_enabled:
        auto_bet_interval = int(os.getenv("AUTO_BET_INTERVAL_MIN", "15"))
        scheduler.add_job(
            _auto_bet_job,
            IntervalTrigger(minutes=auto_bet_interval),
            id="auto_bet",
            name="Auto-Bet Execution Cycle",
            replace_existing=True,
        )
        logger.info("Auto-bet scheduler enabled (every %d min)", auto_bet_interval)

    scheduler.start()
    logger.info(
        "Scheduler started: ingest@%02d:00, verify@%02d:30, edges@%02d:00 %s, lines every %dmin",
        nightly_hour, nightly_hour, nightly_hour + 2, timezone, lines_interval,
    )

    yield

    logger.info("👋 Shutting down H2H Edge Engine")
    scheduler.shutdown()


app = FastAPI(
    title="H2H Edge Engine",
    description="Head-to-head totals baselines, edge classification and automated execution",
    version="1.0",
    lifespan=lifespan,
)

# CORS (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# SCHEDULED JOBS
# ============================================================================

def _nightly_ingest_job():
    """Ingest yesterday's finals for every sport; runs at 4 AM ET by default."""
    try:
        results = run_job_now("ingest")
        logger.info("Nightly ingest complete: %s", results)
    except Exception as exc:
        logger.error("Nightly ingest job failed: %s", exc, exc_info=True)


def _verify_scores_job():
    try:
        results = run_job_now("verify_scores", days=3)
        logger.info("Score verification: %s", results)
    except Exception as exc:
        logger.error("Score verification job failed: %s", exc, exc_info=True)


def _daily_edges_job():
    try:
        results = run_job_now("daily_edges")
        logger.info("Daily edges: %s", results)
    except Exception as exc:
        logger.error("Daily edges job failed: %s", exc, exc_info=True)


def _refresh_lines_job():
    if not os.getenv("THE_ODDS_API_KEY"):
        logger.debug("THE_ODDS_API_KEY not set; skipping line refresh")
        return
    try:
        results = run_job_now("refresh_lines")
        logger.info("Lines refreshed: %s", results)
    except Exception as exc:
        logger.error("Line refresh job failed: %s", exc, exc_info=True)


def _auto_bet_job():
    try:
        results = run_job_now("auto_bet")
        logger.info("Auto-bet cycle: %s", results)
    except Exception as exc:
        logger.error("Auto-bet job failed: %s", exc, exc_info=True)


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "H2H Edge Engine",
        "version": "1.0",
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {"status": "healthy", "database": "connected", "scheduler": "running"}

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"

    if not scheduler.running:
        health["status"] = "degraded"
        health["scheduler"] = "stopped"

    return health


# ============================================================================
# AUTHENTICATED ENDPOINTS - EDGES & SEGMENTS
# ============================================================================

def _validate_sport(sport: Optional[str]) -> Optional[str]:
    if sport is None:
        return None
    if sport.lower() not in SUPPORTED_SPORTS:
        raise HTTPException(status_code=404, detail=f"Unknown sport {sport!r}")
    return sport.lower()


@app.get("/api/edges", response_model=DailyEdgesResponse)
async def get_daily_edges(
    sport: Optional[str] = None,
    day: Optional[date] = Query(default=None, alias="date"),
    edges_only: bool = False,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Edge assessments for a local date (default today)."""
    sport = _validate_sport(sport)
    day = day or local_today()

    home = aliased(Team)
    away = aliased(Team)
    query = (
        db.query(DailyEdge, Game, home.name, away.name)
        .join(Game, Game.id == DailyEdge.game_id)
        .join(home, home.id == Game.home_team_id)
        .join(away, away.id == Game.away_team_id)
        .filter(DailyEdge.date_local == day)
    )
    if sport:
        query = query.filter(DailyEdge.sport_id == sport)
    if edges_only:
        query = query.filter(DailyEdge.edge_strength != STRENGTH_NO_EDGE)

    rows = query.order_by(Game.start_time_utc.asc()).all()
    edges = [
        DailyEdgeResponse(
            game_id=edge.game_id,
            sport_id=edge.sport_id,
            date_local=edge.date_local,
            start_time_utc=game.start_time_utc,
            home_team=home_name,
            away_team=away_name,
            segment_key=edge.segment_key,
            n_h2h=edge.n_h2h or 0,
            p05=edge.p05,
            p95=edge.p95,
            median=edge.median,
            is_visible=bool(edge.is_visible),
            line=edge.line,
            line_bookmaker=edge.line_bookmaker,
            line_percentile=edge.line_percentile,
            percentile_position=edge.percentile_position,
            signal=edge.signal,
            edge_strength=edge.edge_strength,
            hit_probability=edge.hit_probability,
            over_probability=edge.over_probability,
            under_probability=edge.under_probability,
            best_over_edge=edge.best_over_edge,
            best_under_edge=edge.best_under_edge,
        )
        for edge, game, home_name, away_name in rows
    ]
    return DailyEdgesResponse(
        date=day,
        sport=sport,
        total_games=len(edges),
        with_edge=sum(1 for e in edges if e.edge_strength not in (None, STRENGTH_NO_EDGE)),
        edges=edges,
    )


@app.get("/api/matchups/{sport}/{team_a}/{team_b}/segments")
async def get_matchup_segments(
    sport: str,
    team_a: str,
    team_b: str,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """
    Segment stats for a matchup, addressed by team codes (any order).

    Historical codes resolve to the current franchise, so
    ``/api/matchups/nba/SEA/BOS/segments`` returns Thunder-Celtics history.
    """
    sport = _validate_sport(sport)
    cfg = get_sport_config(sport)
    for code in (team_a, team_b):
        if cfg.canonical_name(code) is None:
            raise HTTPException(status_code=404, detail=f"Unknown {sport.upper()} team code {code!r}")

    if cfg.canonical_name(team_a) == cfg.canonical_name(team_b):
        raise HTTPException(status_code=400, detail="Both codes resolve to the same franchise")
    franchise_a = find_franchise(db, sport, team_a)
    franchise_b = find_franchise(db, sport, team_b)
    if franchise_a is None or franchise_b is None:
        raise HTTPException(status_code=404, detail="No history for this matchup yet")

    result = get_pair_segments(db, sport, (franchise_a, franchise_b))
    result["teams"] = [cfg.canonical_name(team_a), cfg.canonical_name(team_b)]
    return result


# ============================================================================
# AUTHENTICATED ENDPOINTS - JOBS
# ============================================================================

@app.get("/api/jobs")
async def list_jobs(
    job_name: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=200),
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    query = db.query(JobRun)
    if job_name:
        query = query.filter(JobRun.job_name == job_name)
    jobs = query.order_by(JobRun.started_at.desc()).limit(limit).all()
    return {"jobs": [JobRunResponse.model_validate(j) for j in jobs]}


@app.get("/api/jobs/{job_id}", response_model=JobRunResponse)
async def get_job(
    job_id: int,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    job = db.get(JobRun, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.post("/admin/jobs/{job_name}", response_model=JobAccepted)
async def trigger_job(
    job_name: str,
    background_tasks: BackgroundTasks,
    payload: Optional[JobTrigger] = None,
    user: str = Depends(verify_admin_api_key),
    db: Session = Depends(get_db),
):
    """
    Start a batch job in the background.

    Returns immediately with the ledger id; poll ``/api/jobs/{job_id}``.
    """
    if job_name not in JOBS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown job {job_name!r}; expected one of {', '.join(JOBS)}",
        )

    payload = payload or JobTrigger()
    values = payload.model_dump(mode="json", exclude_none=True)
    params = {k: v for k, v in values.items() if k in JOB_PARAMS[job_name]}

    try:
        job_id = run_job_in_background(background_tasks, db, job_name, params)
    except Exception as exc:
        logger.error("Failed to start job %s: %s", job_name, exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))

    logger.info("Job %s (id=%d) accepted for %s: %s", job_name, job_id, user, params)
    return JobAccepted(job_id=job_id, accepted=True)


# ============================================================================
# AUTHENTICATED ENDPOINTS - ORDERS & PORTFOLIO
# ============================================================================

@app.get("/api/orders")
async def list_orders(
    status: Optional[str] = None,
    game_id: Optional[int] = None,
    limit: int = Query(default=50, ge=1, le=500),
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    query = db.query(VenueOrder)
    if status:
        query = query.filter(VenueOrder.status == status)
    if game_id:
        query = query.filter(VenueOrder.game_id == game_id)
    orders = query.order_by(VenueOrder.created_at.desc()).limit(limit).all()
    return {
        "counts": execution.order_counts(db),
        "orders": [VenueOrderResponse.model_validate(o) for o in orders],
    }


@app.put("/admin/orders/{order_id}/settle", response_model=VenueOrderResponse)
async def settle_order(
    order_id: int,
    payload: SettleOrder,
    user: str = Depends(verify_admin_api_key),
    db: Session = Depends(get_db),
):
    try:
        order = execution.settle_order(db, order_id, payload.result, payload.pnl_cents)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return VenueOrderResponse.model_validate(order)


@app.get("/api/portfolio")
async def get_portfolio(
    days: int = Query(default=7, ge=1, le=90),
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    """Local risk state plus the venue's balance and positions when configured."""
    config = execution.load_execution_config(db)
    risk = execution.load_risk_state(db)
    portfolio = {
        "date": local_today().isoformat(),
        "daily_pnl_cents": risk.daily_pnl_cents,
        "max_daily_loss_cents": config.max_daily_loss_cents,
        "open_positions": risk.open_positions,
        "max_open_positions": config.max_open_positions,
        "auto_bet_enabled": config.enabled,
        "pnl_history": execution.daily_pnl(db, days=days),
        "venue": None,
    }

    if os.getenv("KALSHI_API_KEY_ID") and os.getenv("KALSHI_PRIVATE_KEY"):
        try:
            client = TradingVenueClient()
            portfolio["venue"] = {
                "is_demo": client.is_demo,
                "balance": client.get_balance(),
                "positions": client.get_positions(),
            }
        except (TradingVenueError, SigningError) as exc:
            logger.error("Portfolio venue lookup failed: %s", exc)
            portfolio["venue"] = {"error": str(exc)}

    return portfolio
