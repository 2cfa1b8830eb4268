"""
Percentile cache maintenance.

Reads a franchise pair's head-to-head samples, summarises each recency
segment with ``backend.core.percentiles`` and upserts one ``matchup_stats``
row per (sport, pair, segment).  The cache is derived data: rebuilding it
from the same samples always yields the same fields.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from backend.core.percentiles import compute_percentiles, pair_key
from backend.core.segments import (
    DEFAULT_SEGMENT_KEY,
    INSUFFICIENT,
    SEGMENTS,
    Segment,
    SegmentCandidate,
    calculate_confidence,
    data_quality,
    filter_totals,
    get_segment,
    select_recommended_segment,
)
from backend.models import MatchupGame, MatchupStats, dialect_insert

logger = logging.getLogger(__name__)

Pair = Tuple[int, int]
Sample = Tuple[float, Optional[int]]


def current_season_year() -> int:
    return datetime.utcnow().year


def load_samples(db: Session, sport: str, pair: Pair) -> List[Sample]:
    """``(total, season_year)`` for every sample of a franchise pair."""
    low, high = pair_key(*pair)
    rows = (
        db.query(MatchupGame.total, MatchupGame.season_year)
        .filter(
            MatchupGame.sport_id == sport,
            MatchupGame.franchise_low_id == low,
            MatchupGame.franchise_high_id == high,
        )
        .all()
    )
    return [(float(total), season_year) for total, season_year in rows]


def _fetch_stats(db: Session, sport: str, pair: Pair, segment_key: str) -> Optional[MatchupStats]:
    low, high = pair_key(*pair)
    return (
        db.query(MatchupStats)
        .populate_existing()
        .filter(
            MatchupStats.sport_id == sport,
            MatchupStats.franchise_low_id == low,
            MatchupStats.franchise_high_id == high,
            MatchupStats.segment_key == segment_key,
        )
        .first()
    )


def recompute(
    db: Session,
    sport: str,
    pair: Pair,
    segment: Segment,
    samples: Optional[Sequence[Sample]] = None,
    current_year: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[MatchupStats]:
    """
    Recompute and upsert one segment's stats for a franchise pair.

    Returns the stored row, or None when the segment has no samples; any
    row left from an earlier run is deleted so the cache matches a rebuild.
    """
    low, high = pair_key(*pair)
    if samples is None:
        samples = load_samples(db, sport, (low, high))
    current_year = current_year or current_season_year()
    now = now or datetime.utcnow()

    summary = compute_percentiles(filter_totals(samples, segment, current_year))
    if summary is None:
        removed = (
            db.query(MatchupStats)
            .filter(
                MatchupStats.sport_id == sport,
                MatchupStats.franchise_low_id == low,
                MatchupStats.franchise_high_id == high,
                MatchupStats.segment_key == segment.key,
            )
            .delete(synchronize_session="fetch")
        )
        if removed:
            logger.info("Dropped empty %s segment for %s pair %s", segment.key, sport.upper(), (low, high))
        return None

    confidence, label = calculate_confidence(summary.n_games, segment.recency_weight)
    values = {
        "n_games": summary.n_games,
        "min_total": summary.min_total,
        "max_total": summary.max_total,
        "median": summary.median,
        "p05": summary.p05,
        "p95": summary.p95,
        "is_visible": summary.is_visible,
        "confidence": confidence,
        "confidence_label": label,
        "updated_at": now,
    }
    stmt = dialect_insert(db, MatchupStats).values(
        sport_id=sport,
        franchise_low_id=low,
        franchise_high_id=high,
        segment_key=segment.key,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["sport_id", "franchise_low_id", "franchise_high_id", "segment_key"],
        set_=values,
    )
    db.execute(stmt)
    return _fetch_stats(db, sport, (low, high), segment.key)


def rebuild_pair(
    db: Session,
    sport: str,
    pair: Pair,
    current_year: Optional[int] = None,
) -> Dict[str, MatchupStats]:
    """Recompute every segment from a single read of the pair's samples."""
    samples = load_samples(db, sport, pair)
    now = datetime.utcnow()
    current_year = current_year or current_season_year()

    stored: Dict[str, MatchupStats] = {}
    for segment in SEGMENTS:
        row = recompute(db, sport, pair, segment, samples=samples, current_year=current_year, now=now)
        if row is not None:
            stored[segment.key] = row
    return stored


def rebuild_pairs(db: Session, sport: str, pairs: Sequence[Pair], progress=None) -> Dict:
    """Rebuild a list of pairs, committing as it goes; per-pair failures are counted."""
    rebuilt = 0
    rows = 0
    errors: List[str] = []
    for i, pair in enumerate(pairs, start=1):
        try:
            with db.begin_nested():
                rows += len(rebuild_pair(db, sport, tuple(pair)))
            rebuilt += 1
        except Exception as exc:
            errors.append(f"{sport} pair {tuple(pair)}: {exc}")
            logger.error("Recompute failed for %s pair %s: %s", sport.upper(), pair, exc)
        if i % 100 == 0:
            db.commit()
            if progress:
                progress(f"{i}/{len(pairs)} pairs recomputed")
    db.commit()
    if progress:
        progress(f"{len(pairs)}/{len(pairs)} pairs recomputed")
    return {
        "pairs": len(pairs),
        "rebuilt": rebuilt,
        "stats_rows": rows,
        "errors": len(errors),
        "error_messages": errors[:50],
    }


def rebuild_all(db: Session, sport: str, progress=None) -> Dict:
    """Recompute stats for every franchise pair with samples in ``sport``."""
    pairs = (
        db.query(MatchupGame.franchise_low_id, MatchupGame.franchise_high_id)
        .filter(MatchupGame.sport_id == sport, MatchupGame.franchise_low_id.isnot(None))
        .distinct()
        .all()
    )
    logger.info("Rebuilding %d %s pairs", len(pairs), sport.upper())
    return rebuild_pairs(db, sport, [tuple(p) for p in pairs], progress=progress)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_pair_segments(db: Session, sport: str, pair: Pair) -> Dict:
    """All cached segments for a pair plus the recommended one.

    Missing segments (no samples in the window) are reported with
    ``n_games = 0``.
    """
    low, high = pair_key(*pair)
    rows = {
        r.segment_key: r
        for r in db.query(MatchupStats).filter(
            MatchupStats.sport_id == sport,
            MatchupStats.franchise_low_id == low,
            MatchupStats.franchise_high_id == high,
        )
    }

    segments = []
    candidates = []
    for segment in SEGMENTS:
        row = rows.get(segment.key)
        n = row.n_games if row else 0
        if row is not None and row.confidence is not None:
            conf, label = row.confidence, row.confidence_label
        else:
            conf, label = calculate_confidence(n, segment.recency_weight)
        candidates.append(SegmentCandidate(segment.key, n, conf, label))
        segments.append({
            "segment_key": segment.key,
            "label": segment.label,
            "n_games": n,
            "p05": row.p05 if row else None,
            "p95": row.p95 if row else None,
            "median": row.median if row else None,
            "min_total": row.min_total if row else None,
            "max_total": row.max_total if row else None,
            "is_visible": bool(row.is_visible) if row else False,
            "confidence": conf,
            "confidence_label": label,
            "updated_at": row.updated_at.isoformat() if row and row.updated_at else None,
        })

    recommended, reason = select_recommended_segment(candidates)
    best = max((c.confidence for c in candidates), default=0)
    return {
        "sport": sport,
        "franchise_low_id": low,
        "franchise_high_id": high,
        "segments": segments,
        "recommended_segment": recommended,
        "recommendation_reason": reason,
        "data_quality": data_quality(best),
    }


def baseline_for(db: Session, sport: str, pair: Pair) -> Tuple[str, Optional[MatchupStats]]:
    """``(segment_key, stats)`` to classify against: recommended, else all-time."""
    info = get_pair_segments(db, sport, pair)
    key = info["recommended_segment"]
    if key == INSUFFICIENT:
        key = DEFAULT_SEGMENT_KEY
    stats = _fetch_stats(db, sport, pair, key)
    if stats is None and key != DEFAULT_SEGMENT_KEY:
        key = DEFAULT_SEGMENT_KEY
        stats = _fetch_stats(db, sport, pair, key)
    return key, stats


def segment_totals(db: Session, sport: str, pair: Pair, segment_key: str,
                   current_year: Optional[int] = None) -> List[float]:
    return filter_totals(
        load_samples(db, sport, pair),
        get_segment(segment_key),
        current_year or current_season_year(),
    )
