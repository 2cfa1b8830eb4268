"""
Job-run ledger and batch job entry points.

Every batch operation (HTTP-triggered or scheduled) runs through
``run_job``: a ``job_runs`` row is inserted as ``running``, progress
messages are written to its details while the job works, and the row is
closed as ``success``, ``partial`` (some items failed) or ``fail`` (the job
aborted; the error message is kept in details).

Job functions share one signature: ``fn(db, progress=..., **params) -> dict``.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from backend.core.sport_config import SUPPORTED_SPORTS
from backend.models import JobRun, SessionLocal
from backend.services import edges, execution, ingestor, percentile_engine

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAIL = "fail"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def start_job(db: Session, name: str, details: Optional[Dict] = None) -> int:
    job = JobRun(job_name=name, status=STATUS_RUNNING, started_at=datetime.utcnow(), details=details or {})
    db.add(job)
    db.flush()
    job_id = job.id
    db.commit()
    logger.info("Job %s started (id=%d)", name, job_id)
    return job_id


def record_progress(db: Session, job_id: int, message: str) -> None:
    job = db.get(JobRun, job_id)
    if job is None:
        return
    # JSON columns are not mutation-tracked; assign a new dict
    job.details = {**(job.details or {}), "progress": message, "progress_at": datetime.utcnow().isoformat()}
    db.commit()


def finish_job(db: Session, job_id: int, status: str, details: Optional[Dict] = None) -> None:
    job = db.get(JobRun, job_id)
    if job is None:
        logger.warning("finish_job: job %d not found", job_id)
        return
    job.status = status
    job.finished_at = datetime.utcnow()
    job.details = {**(job.details or {}), **(details or {})}
    db.commit()
    logger.info("Job %s (id=%d) finished: %s", job.job_name, job_id, status)


def status_for(summary: Dict) -> str:
    return STATUS_PARTIAL if summary.get("errors") else STATUS_SUCCESS


def _json_safe(value):
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def run_job(job_id: int, fn: Callable[..., Dict], **params) -> Optional[Dict]:
    """Run ``fn`` on a fresh session and close the ledger row."""
    db = SessionLocal()
    try:
        def progress(message: str) -> None:
            record_progress(db, job_id, message)

        summary = fn(db, progress=progress, job_run_id=job_id, **params)
        finish_job(db, job_id, status_for(summary), {"result": _json_safe(summary)})
        return summary
    except Exception as exc:
        logger.error("Job %d failed: %s", job_id, exc, exc_info=True)
        db.rollback()
        finish_job(db, job_id, STATUS_FAIL, {"error": str(exc)})
        return None
    finally:
        db.close()


def run_job_in_background(
    background_tasks: BackgroundTasks,
    db: Session,
    name: str,
    params: Dict,
) -> int:
    """Insert the ledger row now, run the job after the response is sent."""
    fn = JOBS[name]
    job_id = start_job(db, name, {"params": _json_safe(params)})
    background_tasks.add_task(run_job, job_id, fn, **params)
    return job_id


def run_job_now(name: str, **params) -> Optional[Dict]:
    """Scheduler entry point: ledger row plus synchronous run."""
    db = SessionLocal()
    try:
        job_id = start_job(db, name, {"params": _json_safe(params), "trigger": "scheduler"})
    finally:
        db.close()
    return run_job(job_id, JOBS[name], **params)


# ---------------------------------------------------------------------------
# Job functions
# ---------------------------------------------------------------------------

def _sports(sport: Optional[str]) -> List[str]:
    return [sport.lower()] if sport else list(SUPPORTED_SPORTS)


def _parse_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _per_sport(sports: Iterable[str], fn: Callable[[str], Dict]) -> Dict:
    results = {}
    errors = 0
    for sport in sports:
        summary = fn(sport)
        errors += summary.get("errors", 0) or 0
        results[sport] = summary
    return {"sports": results, "errors": errors}


def _with_recompute(db: Session, sport: str, summary: Dict, progress) -> Dict:
    pairs = summary.get("pairs") or []
    if pairs:
        recompute = percentile_engine.rebuild_pairs(db, sport, pairs, progress=progress)
        summary["recompute"] = recompute
        summary["errors"] = summary.get("errors", 0) + recompute["errors"]
    summary["pairs"] = len(pairs)
    return summary


def ingest_job(
    db: Session,
    sport: Optional[str] = None,
    date: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    years_back: Optional[int] = None,
    recompute_only: bool = False,
    progress=None,
    job_run_id: Optional[int] = None,
    provider=None,
) -> Dict:
    """Ingest a date, a range, N seasons, or (default) yesterday; recompute touched pairs."""
    day = _parse_date(date)
    start, end = _parse_date(start_date), _parse_date(end_date)

    def one(s: str) -> Dict:
        if recompute_only:
            return percentile_engine.rebuild_all(db, s, progress=progress)
        if years_back:
            dates = ingestor.backfill_dates(s, int(years_back))
        elif start:
            dates = ingestor.date_range(start, end or edges.local_today())
        else:
            dates = [day or edges.local_today() - timedelta(days=1)]
        summary = ingestor.ingest(db, s, dates, provider=provider, progress=progress)
        return _with_recompute(db, s, summary, progress)

    return _per_sport(_sports(sport), one)


def sync_job(db: Session, sport: Optional[str] = None, progress=None, job_run_id=None) -> Dict:
    def one(s: str) -> Dict:
        summary = ingestor.sync_matchup_games(db, s, progress=progress)
        summary["errors"] = 0
        return _with_recompute(db, s, summary, progress)

    return _per_sport(_sports(sport), one)


def verify_job(db: Session, sport: Optional[str] = None, days: int = 3, progress=None,
               job_run_id=None, provider=None) -> Dict:
    def one(s: str) -> Dict:
        summary = ingestor.verify_scores(db, s, days=days, provider=provider, progress=progress)
        return _with_recompute(db, s, summary, progress)

    return _per_sport(_sports(sport), one)


def recompute_job(db: Session, sport: Optional[str] = None, progress=None, job_run_id=None) -> Dict:
    return _per_sport(_sports(sport), lambda s: percentile_engine.rebuild_all(db, s, progress=progress))


def edges_job(
    db: Session,
    sport: Optional[str] = None,
    date: Optional[str] = None,
    sync_schedule: bool = True,
    progress=None,
    job_run_id=None,
    provider=None,
) -> Dict:
    """Pull the day's schedule, then snapshot edges for it."""
    day = _parse_date(date) or edges.local_today()

    def one(s: str) -> Dict:
        schedule_errors = 0
        if sync_schedule:
            schedule = ingestor.ingest(db, s, [day], provider=provider)
            schedule_errors = schedule["errors"]
        summary = edges.compute_daily_edges(db, s, day, progress=progress)
        summary["errors"] += schedule_errors
        return summary

    return _per_sport(_sports(sport), one)


def lines_job(db: Session, sport: Optional[str] = None, date: Optional[str] = None,
              progress=None, job_run_id=None, client=None) -> Dict:
    day = _parse_date(date) or edges.local_today()
    return _per_sport(_sports(sport), lambda s: edges.refresh_lines(db, s, day, client=client))


def execution_job(
    db: Session,
    sport: Optional[str] = None,
    dry_run: bool = False,
    progress=None,
    job_run_id: Optional[int] = None,
    client=None,
) -> Dict:
    return execution.run_cycle(
        db,
        client=client,
        dry_run=dry_run,
        sports=[sport.lower()] if sport else None,
        job_run_id=job_run_id,
        progress=progress,
    )


JOBS: Dict[str, Callable[..., Dict]] = {
    "ingest": ingest_job,
    "sync_matchup_games": sync_job,
    "verify_scores": verify_job,
    "recompute": recompute_job,
    "daily_edges": edges_job,
    "refresh_lines": lines_job,
    "auto_bet": execution_job,
}
