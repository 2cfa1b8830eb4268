"""
Historical sample ingestion.

Entry points:
  ingest()              - fetch a sport/date range and store games + samples
  sync_matchup_games()  - repair pass: samples for final games that lack one
  verify_scores()       - re-ingest the trailing N days to catch corrections
  backfill_dates()      - date list covering the last N seasons

Dates are fetched concurrently (bounded pool, batch by batch with a pause
between batches); records are written sequentially on the caller's session.
Every write is an atomic upsert on a natural key, so overlapping runs and
re-runs are harmless.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import and_, case
from sqlalchemy.orm import Session

from backend.core.percentiles import pair_key
from backend.core.sport_config import get_sport_config
from backend.models import DataFetch, Game, MatchupGame, dialect_insert
from backend.services.identity import IdentityContext
from backend.services.scores_provider import (
    GameRecord,
    ScoreboardResult,
    ScoresProvider,
    ScoresProviderError,
    decade_for,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = int(os.getenv("INGEST_CONCURRENCY", "10"))
DEFAULT_BATCH_DELAY_SEC = float(os.getenv("INGEST_BATCH_DELAY_SEC", "0.5"))
SYNC_BATCH_SIZE = 500
SYNC_BATCH_DELAY_SEC = 0.1
MAX_ERROR_MESSAGES = 50

ProgressFn = Optional[Callable[[str], None]]

# Record outcomes
INSERTED = "inserted"
CORRECTED = "corrected"
UNCHANGED = "unchanged"


def date_range(start: date, end: date) -> List[date]:
    """Inclusive list of dates from ``start`` to ``end``."""
    if end < start:
        return []
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def backfill_dates(sport: str, years_back: int, today: Optional[date] = None) -> List[date]:
    """All in-season dates for the current season and ``years_back`` prior ones, oldest first."""
    cfg = get_sport_config(sport)
    days: List[date] = []
    for start, end in reversed(cfg.season_ranges(years_back, today=today)):
        days.extend(date_range(start, end))
    return days


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _upsert_game(db: Session, sport: str, rec: GameRecord, ids: Dict) -> int:
    cfg = get_sport_config(sport)
    now = datetime.utcnow()
    values = {
        "sport_id": sport,
        "provider_game_key": cfg.provider_game_key(rec.event_id),
        "home_team_id": ids["home_team"],
        "away_team_id": ids["away_team"],
        "home_franchise_id": ids["home_franchise"],
        "away_franchise_id": ids["away_franchise"],
        "start_time_utc": rec.start_time_utc,
        "status": rec.status,
        "season_year": rec.season_year,
        "decade": rec.decade,
        "is_playoff": rec.is_playoff,
        "home_score": rec.home_score,
        "away_score": rec.away_score,
        "final_total": rec.total if rec.is_final else None,
        "last_seen_at": now,
        "created_at": now,
        "updated_at": now,
    }
    stmt = dialect_insert(db, Game).values(**values)
    # a stale scheduled/live feed never downgrades a stored final
    stale = and_(Game.status == "final", stmt.excluded.status != "final")

    def unless_stale(column: str):
        return case((stale, getattr(Game, column)), else_=stmt.excluded[column])

    stmt = stmt.on_conflict_do_update(
        index_elements=["sport_id", "provider_game_key"],
        set_={
            "status": unless_stale("status"),
            "home_score": unless_stale("home_score"),
            "away_score": unless_stale("away_score"),
            "final_total": unless_stale("final_total"),
            "start_time_utc": stmt.excluded.start_time_utc,
            "is_playoff": stmt.excluded.is_playoff,
            "last_seen_at": stmt.excluded.last_seen_at,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)
    return (
        db.query(Game.id)
        .filter(Game.sport_id == sport, Game.provider_game_key == values["provider_game_key"])
        .scalar()
    )


def store_sample(
    db: Session,
    sport: str,
    game_id: int,
    home_team_id: int,
    away_team_id: int,
    home_franchise_id: int,
    away_franchise_id: int,
    total: float,
    played_at: datetime,
    season_year: Optional[int],
    is_playoff: bool,
) -> str:
    """Insert the sample for a final game, or correct its total.

    Returns ``inserted``, ``corrected`` or ``unchanged``.
    """
    existing = db.query(MatchupGame).filter(MatchupGame.game_id == game_id).first()
    if existing is not None:
        if existing.total != float(total):
            logger.info(
                "Score correction for game %d: total %s -> %s", game_id, existing.total, total,
            )
            existing.total = float(total)
            existing.updated_at = datetime.utcnow()
            db.flush()
            return CORRECTED
        return UNCHANGED

    team_low, team_high = pair_key(home_team_id, away_team_id)
    franchise_low, franchise_high = pair_key(home_franchise_id, away_franchise_id)
    now = datetime.utcnow()
    stmt = dialect_insert(db, MatchupGame).values(
        sport_id=sport,
        game_id=game_id,
        team_low_id=team_low,
        team_high_id=team_high,
        franchise_low_id=franchise_low,
        franchise_high_id=franchise_high,
        total=float(total),
        played_at_utc=played_at,
        season_year=season_year,
        decade=decade_for(season_year) if season_year else None,
        is_playoff=bool(is_playoff),
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["game_id"])
    result = db.execute(stmt)
    return INSERTED if result.rowcount else UNCHANGED


def _store_record(db: Session, sport: str, rec: GameRecord, ids: Dict) -> Tuple[str, Tuple[int, int]]:
    game_id = _upsert_game(db, sport, rec, ids)
    pair = pair_key(ids["home_franchise"], ids["away_franchise"])
    if not rec.is_final:
        return UNCHANGED, pair

    outcome = store_sample(
        db,
        sport,
        game_id,
        ids["home_team"],
        ids["away_team"],
        ids["home_franchise"],
        ids["away_franchise"],
        rec.total,
        rec.start_time_utc,
        rec.season_year,
        rec.is_playoff,
    )
    return outcome, pair


def _resolve_ids(ctx: IdentityContext, sport: str, rec: GameRecord) -> Optional[Dict]:
    cfg = ctx.config(sport)
    home_franchise = ctx.resolve_franchise(sport, rec.home_abbrev)
    away_franchise = ctx.resolve_franchise(sport, rec.away_abbrev)
    if home_franchise is None or away_franchise is None:
        return None
    if home_franchise == away_franchise:
        logger.warning("Game %s maps both sides to franchise %d", rec.event_id, home_franchise)
        return None

    home_team = ctx.resolve_or_create_team(
        sport, cfg.provider_team_key(rec.home_abbrev), rec.home_name,
        cfg.normalize_abbrev(rec.home_abbrev), home_franchise,
    )
    away_team = ctx.resolve_or_create_team(
        sport, cfg.provider_team_key(rec.away_abbrev), rec.away_name,
        cfg.normalize_abbrev(rec.away_abbrev), away_franchise,
    )
    return {
        "home_team": home_team,
        "away_team": away_team,
        "home_franchise": home_franchise,
        "away_franchise": away_franchise,
    }


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

def _record_fetch(db: Session, source: str, success: bool, records: int = 0,
                  error: Optional[str] = None, response_time_ms: Optional[int] = None) -> None:
    db.add(DataFetch(
        data_source=source,
        success=success,
        records_fetched=records,
        error_message=error,
        response_time_ms=response_time_ms,
    ))


def _fetch_batch(provider: ScoresProvider, days: List[date], concurrency: int) -> Tuple[List[ScoreboardResult], List[Tuple[date, str]]]:
    results: List[ScoreboardResult] = []
    failures: List[Tuple[date, str]] = []
    with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(days)))) as pool:
        futures = {pool.submit(provider.fetch_games, day): day for day in days}
        for future in as_completed(futures):
            day = futures[future]
            try:
                results.append(future.result())
            except ScoresProviderError as exc:
                failures.append((day, str(exc)))
            except Exception as exc:
                logger.error("Unexpected error fetching %s: %s", day, exc, exc_info=True)
                failures.append((day, f"{type(exc).__name__}: {exc}"))
    results.sort(key=lambda r: r.day)
    return results, failures


def ingest(
    db: Session,
    sport: str,
    dates: Iterable[date],
    provider: Optional[ScoresProvider] = None,
    identity: Optional[IdentityContext] = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    batch_delay: float = DEFAULT_BATCH_DELAY_SEC,
    progress: ProgressFn = None,
) -> Dict:
    """
    Fetch final scores for ``dates`` and store games and pair samples.

    Per-record and per-date failures are counted, never fatal.  The caller's
    session is committed after each batch of dates.

    Returns:
        Summary dict: fetched, inserted, games_upserted, corrected, skipped,
        rejected, errors, dates, pairs (franchise pairs whose samples changed),
        error_messages.
    """
    sport = sport.lower()
    provider = provider or ScoresProvider(sport)
    ctx = identity or IdentityContext(db)
    ctx.clear()

    days = sorted(set(dates))
    counters = {
        "fetched": 0,
        "inserted": 0,
        "games_upserted": 0,
        "corrected": 0,
        "skipped": 0,
        "rejected": 0,
        "errors": 0,
    }
    error_messages: List[str] = []
    touched: Set[Tuple[int, int]] = set()

    def _error(message: str) -> None:
        counters["errors"] += 1
        if len(error_messages) < MAX_ERROR_MESSAGES:
            error_messages.append(message)

    logger.info("Ingesting %s for %d date(s)", sport.upper(), len(days))
    batch_size = max(1, concurrency)

    for offset in range(0, len(days), batch_size):
        batch = days[offset:offset + batch_size]
        results, failures = _fetch_batch(provider, batch, concurrency)

        for day, message in failures:
            _error(f"{day}: {message}")
            logger.error("Scoreboard fetch failed for %s %s: %s", sport.upper(), day, message)
            _record_fetch(db, provider.source_name, False, error=message[:500])

        for result in results:
            counters["rejected"] += result.rejected
            _record_fetch(db, provider.source_name, True, len(result.records), response_time_ms=result.response_time_ms)

            for rec in result.records:
                counters["fetched"] += 1
                try:
                    ids = _resolve_ids(ctx, sport, rec)
                    if ids is None:
                        counters["skipped"] += 1
                        continue
                    with db.begin_nested():
                        outcome, pair = _store_record(db, sport, rec, ids)
                    counters["games_upserted"] += 1
                    if outcome == INSERTED:
                        counters["inserted"] += 1
                        touched.add(pair)
                    elif outcome == CORRECTED:
                        counters["corrected"] += 1
                        touched.add(pair)
                except Exception as exc:
                    _error(f"{rec.event_id}: {exc}")
                    logger.error("Error storing %s game %s: %s", sport.upper(), rec.event_id, exc)

        db.commit()

        done = min(offset + batch_size, len(days))
        if progress:
            progress(
                f"{done}/{len(days)} dates, {counters['inserted']} inserted, "
                f"{counters['skipped']} skipped, {counters['errors']} errors"
            )
        if done < len(days) and batch_delay > 0:
            time.sleep(batch_delay)

    summary = dict(counters)
    summary["dates"] = len(days)
    summary["pairs"] = sorted(touched)
    summary["error_messages"] = error_messages
    logger.info("Ingest %s done: %s", sport.upper(), {k: v for k, v in summary.items() if k != "pairs"})
    return summary


# ---------------------------------------------------------------------------
# Repair passes
# ---------------------------------------------------------------------------

def sync_matchup_games(
    db: Session,
    sport: str,
    batch_size: int = SYNC_BATCH_SIZE,
    batch_delay: float = SYNC_BATCH_DELAY_SEC,
    progress: ProgressFn = None,
) -> Dict:
    """Insert samples for final games that do not have one yet."""
    sport = sport.lower()
    missing = (
        db.query(Game)
        .outerjoin(MatchupGame, MatchupGame.game_id == Game.id)
        .filter(
            Game.sport_id == sport,
            Game.status == "final",
            Game.final_total.isnot(None),
            MatchupGame.id.is_(None),
        )
        .order_by(Game.id)
        .all()
    )

    inserted = 0
    skipped = 0
    touched: Set[Tuple[int, int]] = set()
    for offset in range(0, len(missing), batch_size):
        for game in missing[offset:offset + batch_size]:
            if game.home_franchise_id is None or game.away_franchise_id is None:
                skipped += 1
                continue
            outcome = store_sample(
                db, sport, game.id,
                game.home_team_id, game.away_team_id,
                game.home_franchise_id, game.away_franchise_id,
                game.final_total, game.start_time_utc, game.season_year, game.is_playoff,
            )
            if outcome == INSERTED:
                inserted += 1
                touched.add(pair_key(game.home_franchise_id, game.away_franchise_id))
        db.commit()
        if progress:
            progress(f"{min(offset + batch_size, len(missing))}/{len(missing)} games synced")
        if offset + batch_size < len(missing) and batch_delay > 0:
            time.sleep(batch_delay)

    logger.info(
        "sync_matchup_games %s: %d missing, %d inserted, %d skipped",
        sport.upper(), len(missing), inserted, skipped,
    )
    return {
        "checked": len(missing),
        "inserted": inserted,
        "skipped": skipped,
        "pairs": sorted(touched),
    }


def verify_scores(
    db: Session,
    sport: str,
    days: int = 3,
    provider: Optional[ScoresProvider] = None,
    today: Optional[date] = None,
    progress: ProgressFn = None,
) -> Dict:
    """Re-ingest the trailing ``days`` days; corrected totals show up in ``corrected``."""
    today = today or datetime.utcnow().date()
    window = date_range(today - timedelta(days=days), today - timedelta(days=1))
    return ingest(db, sport, window, provider=provider, progress=progress)

