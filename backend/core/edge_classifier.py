"""Edge classification: live totals line vs. historical p05/p95.

Pure function of ``(live_line, p05, p95)`` plus tier configuration, no I/O.

Hit probability model
---------------------
Let ``position = (line - p05) / (p95 - p05)``.

Inside the historical band the two directions are linear mirrors::

    under = 95 - position * 90      # 95 at p05, 50 at midpoint, 5 at p95
    over  =  5 + position * 90

Beyond an extreme the favored side ramps from 95 toward a 99 cap in
proportion to how far past the extreme the line sits (``beyond`` is measured
in band widths), and the other side floors at 5::

    line <= p05:  under = min(99, 95 + beyond * 4),  over = 5
    line >= p95:  over  = min(99, 95 + beyond * 4),  under = 5

Direction is the side with the higher hit probability; equal probabilities
favor OVER.  Strength is tiered on how close the line sits to the favored
extreme, in percentile points of the band (0 at or beyond the extreme).
Tier thresholds live in :class:`EdgeTiers` and are configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Final, Optional

SIGNAL_OVER: Final[str] = "OVER"
SIGNAL_UNDER: Final[str] = "UNDER"
SIGNAL_NONE: Final[str] = "NONE"

STRENGTH_STRONG: Final[str] = "STRONG"
STRENGTH_MODERATE: Final[str] = "MODERATE"
STRENGTH_WEAK: Final[str] = "WEAK"
STRENGTH_NO_EDGE: Final[str] = "NO_EDGE"

#: Ordered strongest first.
STRENGTH_ORDER: Final[tuple] = (STRENGTH_STRONG, STRENGTH_MODERATE, STRENGTH_WEAK, STRENGTH_NO_EDGE)

NEUTRAL_PROBABILITY: Final[float] = 50.0
EXTREME_PROBABILITY: Final[float] = 95.0
FLOOR_PROBABILITY: Final[float] = 5.0
CAP_PROBABILITY: Final[float] = 99.0
BEYOND_SLOPE: Final[float] = 4.0


@dataclass(frozen=True)
class EdgeTiers:
    """Strength thresholds in percentile points from the favored extreme.

    A line within ``strong`` points of p05 (or p95) is STRONG, within
    ``moderate`` is MODERATE, within ``weak`` is WEAK; anything closer to the
    middle is NO_EDGE.
    """

    strong: float = 5.0
    moderate: float = 15.0
    weak: float = 25.0

    def __post_init__(self):
        if not (0 <= self.strong <= self.moderate <= self.weak <= 50):
            raise ValueError(
                f"Edge tiers must satisfy 0 <= strong <= moderate <= weak <= 50, "
                f"got {self.strong}/{self.moderate}/{self.weak}"
            )

    @classmethod
    def from_env(cls) -> EdgeTiers:
        return cls(
            strong=float(os.getenv("EDGE_STRONG_THRESHOLD", "5")),
            moderate=float(os.getenv("EDGE_MODERATE_THRESHOLD", "15")),
            weak=float(os.getenv("EDGE_WEAK_THRESHOLD", "25")),
        )

    def tier(self, distance: float) -> str:
        if distance <= self.strong:
            return STRENGTH_STRONG
        if distance <= self.moderate:
            return STRENGTH_MODERATE
        if distance <= self.weak:
            return STRENGTH_WEAK
        return STRENGTH_NO_EDGE


DEFAULT_TIERS: Final[EdgeTiers] = EdgeTiers()


@dataclass(frozen=True)
class EdgeClassification:
    percentile_position: Optional[float]
    signal: str
    strength: str
    hit_probability: float
    over_probability: float
    under_probability: float

    @property
    def has_edge(self) -> bool:
        return self.signal != SIGNAL_NONE and self.strength != STRENGTH_NO_EDGE

    def to_dict(self) -> Dict:
        return {
            "percentile_position": self.percentile_position,
            "signal": self.signal,
            "strength": self.strength,
            "hit_probability": self.hit_probability,
            "over_probability": self.over_probability,
            "under_probability": self.under_probability,
        }


_NO_EDGE = EdgeClassification(
    percentile_position=None,
    signal=SIGNAL_NONE,
    strength=STRENGTH_NO_EDGE,
    hit_probability=NEUTRAL_PROBABILITY,
    over_probability=NEUTRAL_PROBABILITY,
    under_probability=NEUTRAL_PROBABILITY,
)


def hit_probabilities(live_line: float, p05: float, p95: float) -> tuple[float, float]:
    """Return ``(over_probability, under_probability)`` in percent.

    Caller guarantees ``p95 > p05``.
    """
    band = p95 - p05
    if live_line <= p05:
        beyond = (p05 - live_line) / band
        return FLOOR_PROBABILITY, min(CAP_PROBABILITY, EXTREME_PROBABILITY + beyond * BEYOND_SLOPE)
    if live_line >= p95:
        beyond = (live_line - p95) / band
        return min(CAP_PROBABILITY, EXTREME_PROBABILITY + beyond * BEYOND_SLOPE), FLOOR_PROBABILITY

    position = (live_line - p05) / band
    return 5.0 + position * 90.0, 95.0 - position * 90.0


def cap_strength(strength: str, ceiling: str) -> str:
    """Weaken ``strength`` so it is not above ``ceiling``."""
    if STRENGTH_ORDER.index(strength) < STRENGTH_ORDER.index(ceiling):
        return ceiling
    return strength


def classify(
    live_line: Optional[float],
    p05: Optional[float],
    p95: Optional[float],
    tiers: EdgeTiers = DEFAULT_TIERS,
    is_visible: bool = True,
) -> EdgeClassification:
    """Classify a live totals line against a historical p05/p95 band.

    Args:
        live_line: Current sportsbook total, or None when no line is posted.
        p05: Historical 5th percentile total.
        p95: Historical 95th percentile total.
        tiers: Strength thresholds.
        is_visible: False when the baseline sample is below the visibility
            threshold; strength is then capped at WEAK.

    Returns:
        :class:`EdgeClassification`.  ``NO_EDGE`` with 50% when the line is
        unset or the band is degenerate (``p95 <= p05``).
    """
    if live_line is None or p05 is None or p95 is None:
        return _NO_EDGE
    band = p95 - p05
    if band <= 0:
        return _NO_EDGE

    position_pct = (live_line - p05) / band * 100.0
    over_prob, under_prob = hit_probabilities(live_line, p05, p95)

    if over_prob >= under_prob:
        signal, hit_prob = SIGNAL_OVER, over_prob
        distance = max(0.0, 100.0 - position_pct)
    else:
        signal, hit_prob = SIGNAL_UNDER, under_prob
        distance = max(0.0, position_pct)

    strength = tiers.tier(distance)
    if not is_visible:
        strength = cap_strength(strength, STRENGTH_WEAK)
    if strength == STRENGTH_NO_EDGE:
        signal = SIGNAL_NONE

    return EdgeClassification(
        percentile_position=round(position_pct, 2),
        signal=signal,
        strength=strength,
        hit_probability=round(hit_prob, 2),
        over_probability=round(over_prob, 2),
        under_probability=round(under_prob, 2),
    )
