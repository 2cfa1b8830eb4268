"""Nearest-rank percentile math: the single source of truth for H2H baselines.

All functions here are **pure**: no I/O, no database, no logging.

The engine summarizes the combined scoring totals of every historical game
between two franchises.  Quantiles use the *nearest-rank* method: each
reported percentile is an actual observed total, never an interpolation
between two totals.  For ``n`` sorted totals::

    p05_index = max(0, ceil(0.05 * n) - 1)
    p95_index = min(n - 1, ceil(0.95 * n) - 1)

Worked example (n = 5, totals 10..50)::

    ceil(0.25) - 1 = 0  -> p05 = 10
    ceil(4.75) - 1 = 4  -> p95 = 50
    median = totals[2]  -> 30

Run tests with::

    pytest tests/test_percentiles.py -v
"""

from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from typing import Dict, Final, Optional, Sequence, Tuple

import numpy as np

#: Minimum sample size for a baseline to be shown to consumers.  Smaller
#: samples are still computed and cached, but flagged not-visible.
VISIBILITY_THRESHOLD: Final[int] = 5

P05: Final[float] = 0.05
P95: Final[float] = 0.95


@dataclass(frozen=True)
class PercentileSummary:
    """Nearest-rank summary of one sample set."""

    n_games: int
    min_total: float
    max_total: float
    median: float
    p05: float
    p95: float

    @property
    def range(self) -> float:
        return self.p95 - self.p05

    @property
    def is_visible(self) -> bool:
        return is_visible(self.n_games)

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["is_visible"] = self.is_visible
        return d


def nearest_rank_indices(n: int) -> Tuple[int, int]:
    """Return ``(p05_index, p95_index)`` for a sorted sample of size ``n``.

    Both indices satisfy ``0 <= p05_index <= p95_index <= n - 1``.

    Raises:
        ValueError: if ``n < 1``.
    """
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}")
    p05_index = max(0, math.ceil(P05 * n) - 1)
    p95_index = min(n - 1, math.ceil(P95 * n) - 1)
    return p05_index, p95_index


def median_of_sorted(values: Sequence[float]) -> float:
    """Median of an already-sorted sequence (mean of the two middles when even)."""
    n = len(values)
    mid = n // 2
    if n % 2 == 0:
        return (float(values[mid - 1]) + float(values[mid])) / 2.0
    return float(values[mid])


def compute_percentiles(totals: Sequence[float]) -> Optional[PercentileSummary]:
    """Summarize ``totals`` with nearest-rank p05/p95.

    Returns ``None`` for an empty sample: stats are undefined and callers
    must not cache anything.
    """
    if len(totals) == 0:
        return None

    ordered = np.sort(np.asarray(totals, dtype=float))
    n = int(ordered.size)
    p05_index, p95_index = nearest_rank_indices(n)

    return PercentileSummary(
        n_games=n,
        min_total=float(ordered[0]),
        max_total=float(ordered[-1]),
        median=median_of_sorted(ordered),
        p05=float(ordered[p05_index]),
        p95=float(ordered[p95_index]),
    )


def line_percentile(totals: Sequence[float], line: float) -> Optional[float]:
    """Share of historical totals at or below ``line``, in percent (0-100)."""
    if len(totals) == 0 or line is None:
        return None
    arr = np.asarray(totals, dtype=float)
    return float(np.count_nonzero(arr <= line)) / arr.size * 100.0


def is_visible(n_games: int) -> bool:
    return n_games >= VISIBILITY_THRESHOLD


def pair_key(a: int, b: int) -> Tuple[int, int]:
    """Canonical unordered pair: ``pair_key(a, b) == pair_key(b, a)``."""
    return (a, b) if a <= b else (b, a)
