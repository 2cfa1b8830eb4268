"""
Daily edge assessments.

compute_daily_edges()  - snapshot each game on a local date against its
                         pair's recommended baseline (falls back to h2h_all)
refresh_lines()        - attach live DraftKings totals and re-classify

"Local date" is the calendar date in ``EDGE_TIMEZONE`` (default
America/New_York), so a 10:30 PM ET tip-off belongs to that evening's slate
even though it starts the next day in UTC.
"""

import logging
import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from backend.core.edge_classifier import EdgeClassification, EdgeTiers, classify
from backend.core.percentiles import line_percentile, pair_key
from backend.core.sizing import ExecutionConfig
from backend.models import DailyEdge, Franchise, Game, TradingConfig, dialect_insert
from backend.services.odds import (
    REFERENCE_BOOK,
    OddsAPIClient,
    match_team_name,
    parse_commence_time,
    parse_total_line,
)
from backend.services.percentile_engine import baseline_for, segment_totals

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"


def edge_timezone() -> ZoneInfo:
    return ZoneInfo(os.getenv("EDGE_TIMEZONE", DEFAULT_TIMEZONE))


def local_today(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(edge_timezone()).date()


def utc_window(day: date) -> Tuple[datetime, datetime]:
    """Naive-UTC ``[start, end)`` covering ``day`` in the edge timezone."""
    tz = edge_timezone()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


def load_tiers(db: Session) -> EdgeTiers:
    """Tier thresholds from the ``default`` trading_config row, else env vars."""
    row = db.query(TradingConfig).filter(TradingConfig.name == "default").first()
    if row is None:
        return EdgeTiers.from_env()
    return ExecutionConfig.from_row(row).tiers


def games_on(db: Session, sport: str, day: date) -> List[Game]:
    start, end = utc_window(day)
    return (
        db.query(Game)
        .filter(Game.sport_id == sport, Game.start_time_utc >= start, Game.start_time_utc < end)
        .order_by(Game.start_time_utc)
        .all()
    )


def classify_edge_row(
    row: DailyEdge,
    tiers: EdgeTiers,
    totals: Optional[List[float]] = None,
) -> EdgeClassification:
    """Re-derive the classification fields of a DailyEdge from its line and band."""
    result = classify(row.line, row.p05, row.p95, tiers=tiers, is_visible=bool(row.is_visible))

    row.percentile_position = result.percentile_position
    row.signal = result.signal
    row.edge_strength = result.strength
    row.hit_probability = result.hit_probability
    row.over_probability = result.over_probability
    row.under_probability = result.under_probability

    if row.line is not None and row.p95 is not None and row.p95 - row.line > 0:
        row.best_over_edge = round(row.p95 - row.line, 2)
    else:
        row.best_over_edge = None
    if row.line is not None and row.p05 is not None and row.line - row.p05 > 0:
        row.best_under_edge = round(row.line - row.p05, 2)
    else:
        row.best_under_edge = None

    if totals is not None:
        pct = line_percentile(totals, row.line)
        row.line_percentile = round(pct, 2) if pct is not None else None
    row.updated_at = datetime.utcnow()
    return result


def _edge_row(db: Session, day: date, game_id: int) -> Optional[DailyEdge]:
    return (
        db.query(DailyEdge)
        .populate_existing()
        .filter(DailyEdge.date_local == day, DailyEdge.game_id == game_id)
        .first()
    )


def _totals_for(db: Session, row: DailyEdge, pair: Tuple[int, int]) -> Optional[List[float]]:
    if row.line is None or row.segment_key is None or row.n_h2h == 0:
        return None
    return segment_totals(db, row.sport_id, pair, row.segment_key)


def compute_daily_edges(
    db: Session,
    sport: str,
    day: Optional[date] = None,
    tiers: Optional[EdgeTiers] = None,
    progress=None,
) -> Dict:
    """
    Upsert one DailyEdge per game of ``sport`` on local date ``day``.

    A line already attached by ``refresh_lines`` is kept and re-classified
    against the refreshed baseline.
    """
    sport = sport.lower()
    day = day or local_today()
    tiers = tiers or load_tiers(db)
    games = games_on(db, sport, day)

    edges = 0
    with_edge = 0
    skipped = 0
    errors: List[str] = []

    for game in games:
        if game.home_franchise_id is None or game.away_franchise_id is None:
            skipped += 1
            continue
        pair = pair_key(game.home_franchise_id, game.away_franchise_id)
        try:
            with db.begin_nested():
                segment_key, stats = baseline_for(db, sport, pair)
                baseline = {
                    "sport_id": sport,
                    "segment_key": segment_key if stats is not None else None,
                    "n_h2h": stats.n_games if stats is not None else 0,
                    "p05": stats.p05 if stats is not None else None,
                    "p95": stats.p95 if stats is not None else None,
                    "median": stats.median if stats is not None else None,
                    "is_visible": bool(stats.is_visible) if stats is not None else False,
                    "updated_at": datetime.utcnow(),
                }
                stmt = dialect_insert(db, DailyEdge).values(date_local=day, game_id=game.id, **baseline)
                stmt = stmt.on_conflict_do_update(index_elements=["date_local", "game_id"], set_=baseline)
                db.execute(stmt)

                row = _edge_row(db, day, game.id)
                result = classify_edge_row(row, tiers, _totals_for(db, row, pair))
                db.flush()
            edges += 1
            if result.has_edge:
                with_edge += 1
        except Exception as exc:
            errors.append(f"game {game.id}: {exc}")
            logger.error("Edge computation failed for game %d: %s", game.id, exc)

    db.commit()
    if progress:
        progress(f"{edges}/{len(games)} {sport.upper()} edges computed for {day}")

    summary = {
        "sport": sport,
        "date": day.isoformat(),
        "games": len(games),
        "edges": edges,
        "with_edge": with_edge,
        "skipped": skipped,
        "errors": len(errors),
        "error_messages": errors[:50],
    }
    logger.info("compute_daily_edges done: %s", summary)
    return summary


def _closest_start(
    rows: List[DailyEdge], games: Dict[int, Game], start: Optional[datetime],
) -> Optional[DailyEdge]:
    """Doubleheaders share a matchup; pick the game nearest the feed's start time."""
    if not rows:
        return None
    if start is None:
        return rows[0]
    return min(rows, key=lambda r: abs((games[r.game_id].start_time_utc - start).total_seconds()))


def refresh_lines(
    db: Session,
    sport: str,
    day: Optional[date] = None,
    client: Optional[OddsAPIClient] = None,
    tiers: Optional[EdgeTiers] = None,
) -> Dict:
    """Attach the reference book's totals to the day's edges and re-classify."""
    sport = sport.lower()
    day = day or local_today()
    tiers = tiers or load_tiers(db)
    client = client or OddsAPIClient()

    rows = db.query(DailyEdge).filter(DailyEdge.date_local == day, DailyEdge.sport_id == sport).all()
    if not rows:
        compute_daily_edges(db, sport, day, tiers=tiers)
        rows = db.query(DailyEdge).filter(DailyEdge.date_local == day, DailyEdge.sport_id == sport).all()

    # (home canonical, away canonical) -> edge rows in start order
    games = {g.id: g for g in db.query(Game).filter(Game.id.in_([r.game_id for r in rows]))}
    franchise_ids = {
        fid for g in games.values() for fid in (g.home_franchise_id, g.away_franchise_id) if fid
    }
    names = {
        f.id: f.canonical_name
        for f in db.query(Franchise).filter(Franchise.id.in_(franchise_ids))
    }
    by_matchup: Dict[Tuple[str, str], List[DailyEdge]] = {}
    for row in rows:
        game = games.get(row.game_id)
        if game is None:
            continue
        home, away = names.get(game.home_franchise_id), names.get(game.away_franchise_id)
        if home and away:
            by_matchup.setdefault((home, away), []).append(row)
    for matchup_rows in by_matchup.values():
        matchup_rows.sort(key=lambda r: games[r.game_id].start_time_utc)
    choices = sorted(set(names.values()))

    events = client.get_totals(sport)
    matched = 0
    updated = 0
    unmatched: List[str] = []
    now = datetime.utcnow()
    claimed: Set[int] = set()

    for event in events:
        home = match_team_name(event.get("home_team", ""), choices)
        away = match_team_name(event.get("away_team", ""), choices)
        candidates = [
            r for r in by_matchup.get((home, away), []) + by_matchup.get((away, home), [])
            if r.game_id not in claimed
        ]
        row = _closest_start(candidates, games, parse_commence_time(event))
        if row is None:
            unmatched.append(f"{event.get('away_team')} @ {event.get('home_team')}")
            continue
        matched += 1
        claimed.add(row.game_id)

        line = parse_total_line(event)
        if line is None:
            continue
        row.line = line
        row.line_bookmaker = REFERENCE_BOOK
        row.line_updated_at = now
        game = games[row.game_id]
        pair = pair_key(game.home_franchise_id, game.away_franchise_id)
        classify_edge_row(row, tiers, _totals_for(db, row, pair))
        updated += 1

    db.commit()
    if unmatched:
        logger.info("refresh_lines %s: %d feed events unmatched", sport.upper(), len(unmatched))

    summary = {
        "sport": sport,
        "date": day.isoformat(),
        "events": len(events),
        "matched": matched,
        "lines_updated": updated,
        "unmatched": unmatched[:50],
    }
    logger.info("refresh_lines done: %s", {k: v for k, v in summary.items() if k != "unmatched"})
    return summary
