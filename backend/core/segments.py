"""Recency segments and segment confidence scoring.

A *segment* is a named recency window over a pair's head-to-head samples.
Each segment is an independent cache row in ``matchup_stats``; all of them
are derived from the same ``matchup_games`` rows.

Window rule: a sample belongs to an N-year segment when
``season_year >= current_year - N``.  ``h2h_all`` applies no filter.

Confidence (0-100) blends three signals::

    0.4 * sample_size_score + 0.3 * recency_score + 0.3 * roster_score

``roster_score`` defaults to 50 when roster continuity is unknown.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Final, Iterable, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Segment:
    key: str
    years_back: Optional[int]  # None = all-time
    label: str
    recency_weight: float

    def cutoff_year(self, current_year: int) -> Optional[int]:
        if self.years_back is None:
            return None
        return current_year - self.years_back

    def includes(self, season_year: Optional[int], current_year: int) -> bool:
        cutoff = self.cutoff_year(current_year)
        if cutoff is None:
            return True
        return (season_year or 0) >= cutoff


H2H_1Y: Final[Segment] = Segment("h2h_1y", 1, "Last 1 Year", 1.0)
H2H_3Y: Final[Segment] = Segment("h2h_3y", 3, "Last 3 Years", 0.85)
H2H_5Y: Final[Segment] = Segment("h2h_5y", 5, "Last 5 Years", 0.7)
H2H_10Y: Final[Segment] = Segment("h2h_10y", 10, "Last 10 Years", 0.5)
H2H_ALL: Final[Segment] = Segment("h2h_all", None, "All Time", 0.3)

#: Most recent first.
SEGMENTS: Final[Tuple[Segment, ...]] = (H2H_1Y, H2H_3Y, H2H_5Y, H2H_10Y, H2H_ALL)
SEGMENTS_BY_KEY: Final[Dict[str, Segment]] = {s.key: s for s in SEGMENTS}

DEFAULT_SEGMENT_KEY: Final[str] = H2H_ALL.key
INSUFFICIENT: Final[str] = "insufficient"

# Sample-size breakpoints for the confidence score
MIN_GAMES_EXCELLENT: Final[int] = 15
MIN_GAMES_GOOD: Final[int] = 10
MIN_GAMES_FAIR: Final[int] = 5
MIN_GAMES_MINIMUM: Final[int] = 3


def get_segment(key: str) -> Segment:
    try:
        return SEGMENTS_BY_KEY[key]
    except KeyError:
        raise ValueError(
            f"Unknown segment {key!r}; expected one of {', '.join(SEGMENTS_BY_KEY)}"
        ) from None


def filter_totals(
    samples: Iterable[Tuple[float, Optional[int]]],
    segment: Segment,
    current_year: int,
) -> List[float]:
    """Return the totals of ``(total, season_year)`` samples inside ``segment``."""
    return [
        float(total)
        for total, season_year in samples
        if segment.includes(season_year, current_year)
    ]


def sample_size_score(n_games: int) -> float:
    if n_games >= MIN_GAMES_EXCELLENT:
        return 100.0
    if n_games >= MIN_GAMES_GOOD:
        return 70.0 + (n_games - MIN_GAMES_GOOD) * 6
    if n_games >= MIN_GAMES_FAIR:
        return 50.0 + (n_games - MIN_GAMES_FAIR) * 4
    if n_games >= MIN_GAMES_MINIMUM:
        return 20.0 + (n_games - MIN_GAMES_MINIMUM) * 15
    return n_games * 6.0


def confidence_label(score: float) -> str:
    if score >= 80:
        return "Excellent"
    if score >= 60:
        return "Good"
    if score >= 40:
        return "Fair"
    if score >= 20:
        return "Low"
    return "Insufficient"


def calculate_confidence(
    n_games: int,
    recency_weight: float,
    roster_continuity: Optional[float] = None,
) -> Tuple[int, str]:
    """Return ``(score, label)`` for a segment.

    Args:
        n_games: Samples inside the segment.
        recency_weight: The segment's weight (1.0 for the last year down to
            0.3 for all-time).
        roster_continuity: Average roster continuity of both teams, 0-100.
    """
    if n_games == 0:
        return 0, "Insufficient"
    roster_score = roster_continuity if roster_continuity is not None else 50.0
    score = round(
        sample_size_score(n_games) * 0.4
        + recency_weight * 100.0 * 0.3
        + roster_score * 0.3
    )
    return int(score), confidence_label(score)


@dataclass
class SegmentCandidate:
    """Minimal view of a computed segment used for recommendation."""

    segment_key: str
    n_games: int
    confidence: int
    confidence_label: str = "Insufficient"

    @property
    def recency_weight(self) -> float:
        return get_segment(self.segment_key).recency_weight

    @property
    def label(self) -> str:
        return get_segment(self.segment_key).label


def select_recommended_segment(candidates: Sequence[SegmentCandidate]) -> Tuple[str, str]:
    """Pick the segment downstream consumers should use.

    Recent data wins when there is enough of it: a 1y or 3y segment with at
    least ``MIN_GAMES_GOOD`` samples is chosen outright.  Otherwise the
    highest-confidence segment with at least ``MIN_GAMES_MINIMUM`` samples,
    ties broken toward the more recent window.

    Returns:
        ``(segment_key, reason)``; ``segment_key`` is ``"insufficient"`` when
        no segment qualifies.
    """
    valid = [c for c in candidates if c.n_games >= MIN_GAMES_MINIMUM]
    if not valid:
        return INSUFFICIENT, "Not enough historical data for reliable analysis"

    for c in valid:
        if c.segment_key in (H2H_1Y.key, H2H_3Y.key) and c.n_games >= MIN_GAMES_GOOD:
            return c.segment_key, f"{c.n_games} games in {c.label} - most relevant with current rosters"

    best = sorted(valid, key=lambda c: (c.confidence, c.recency_weight), reverse=True)[0]
    return (
        best.segment_key,
        f"{best.n_games} games ({best.confidence_label} confidence) - best balance of sample size and recency",
    )


def data_quality(best_confidence: int) -> str:
    """Overall data-quality bucket for a pair from its best segment confidence."""
    return confidence_label(best_confidence).lower()
