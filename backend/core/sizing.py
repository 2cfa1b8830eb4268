"""Order sizing and limit pricing (pure functions, no I/O).

Contracts on the trading venue are priced in cents (1-99) and pay 100 cents
when they resolve in our favor.

Sizing
    ``size_cents = floor(max_position_size_cents * tier_pct / 100)`` where
    ``tier_pct`` comes from the edge strength (100 / 50 / 25 by default).
    ``contracts = floor(size_cents / limit_price)``; fewer than one contract
    means the order is skipped rather than rounded up.

Pricing
    The further the line sits from the neutral midpoint (percentile
    position 50), the more we are willing to pay::

        price = 50 + |50 - position| / 50 * (max_limit_price - 50)

    rounded, then clamped to ``[min_limit_price, max_limit_price]``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Final, Optional, Tuple

from backend.core.edge_classifier import (
    EdgeTiers,
    STRENGTH_MODERATE,
    STRENGTH_STRONG,
    STRENGTH_WEAK,
)

NEUTRAL_POSITION: Final[float] = 50.0


@dataclass(frozen=True)
class ExecutionConfig:
    """Execution parameters, persisted as the ``default`` trading_config row.

    Attributes:
        enabled: Master switch for live submission (dry runs ignore it).
        strong/moderate/weak_edge_threshold: Edge tier boundaries, see
            :class:`~backend.core.edge_classifier.EdgeTiers`.
        max_position_size_cents: Budget for a STRONG signal.
        strong/moderate/weak_position_pct: Share of the budget per tier.
        max_daily_loss_cents: Realized loss for the day beyond which no new
            orders are placed.
        max_open_positions: Cap on concurrently open orders.
        min_edge_confidence: Minimum head-to-head sample size.
        max_limit_price / min_limit_price: Price band in cents.
        lead_window_hours: Only games starting within this window are traded.
        enabled_sports: Sports scanned when no sport filter is given.
    """

    enabled: bool = True
    strong_edge_threshold: float = 5.0
    moderate_edge_threshold: float = 15.0
    weak_edge_threshold: float = 25.0
    max_position_size_cents: int = 1000
    strong_position_pct: int = 100
    moderate_position_pct: int = 50
    weak_position_pct: int = 25
    max_daily_loss_cents: int = 5000
    max_open_positions: int = 10
    min_edge_confidence: int = 5
    max_limit_price: int = 70
    min_limit_price: int = 30
    lead_window_hours: float = 6.0
    enabled_sports: Tuple[str, ...] = field(default=("nba", "nfl", "nhl", "mlb"))

    def __post_init__(self):
        if not (1 <= self.min_limit_price <= self.max_limit_price <= 99):
            raise ValueError(
                f"Limit price band must satisfy 1 <= min <= max <= 99, "
                f"got [{self.min_limit_price}, {self.max_limit_price}]"
            )

    @property
    def tiers(self) -> EdgeTiers:
        return EdgeTiers(
            strong=self.strong_edge_threshold,
            moderate=self.moderate_edge_threshold,
            weak=self.weak_edge_threshold,
        )

    def position_pct(self, strength: str) -> int:
        return {
            STRENGTH_STRONG: self.strong_position_pct,
            STRENGTH_MODERATE: self.moderate_position_pct,
            STRENGTH_WEAK: self.weak_position_pct,
        }.get(strength, 0)

    @classmethod
    def from_row(cls, row: Optional[Any]) -> ExecutionConfig:
        """Build from a ``TradingConfig`` ORM row; missing row → defaults."""
        if row is None:
            return cls()
        values: Dict[str, Any] = {}
        for f in fields(cls):
            value = getattr(row, f.name, None)
            if value is None:
                continue
            if f.name == "enabled_sports":
                value = tuple(value)
            values[f.name] = value
        return cls(**values)


def position_size_cents(strength: str, config: ExecutionConfig) -> int:
    return math.floor(config.max_position_size_cents * config.position_pct(strength) / 100)


def limit_price(percentile_position: float, config: ExecutionConfig) -> int:
    distance = abs(NEUTRAL_POSITION - percentile_position)
    base = NEUTRAL_POSITION + (distance / 50.0) * (config.max_limit_price - NEUTRAL_POSITION)
    # half-up, not banker's rounding
    rounded = math.floor(base + 0.5)
    return min(max(rounded, config.min_limit_price), config.max_limit_price)


def contract_count(size_cents: int, price_cents: int) -> int:
    if price_cents <= 0:
        return 0
    return size_cents // price_cents
