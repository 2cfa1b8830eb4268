"""
Pydantic request/response schemas for the H2H Edge API.

Trigger payloads are validated here so that background jobs only ever see
well-formed parameters.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.core.sport_config import SUPPORTED_SPORTS


# ---------------------------------------------------------------------------
# Job triggers
# ---------------------------------------------------------------------------

class JobTrigger(BaseModel):
    """
    Payload for POST /admin/jobs/{job_name}.

    Every field is optional; each job reads the ones it understands.
    Omitting ``sport`` runs the job for every supported sport.
    """

    sport: Optional[str] = Field(None, description="nba | nfl | nhl | mlb")
    date: Optional[dt.date] = Field(None, description="Single local date")
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    years_back: Optional[int] = Field(None, ge=1, le=30, description="Seasons to backfill")
    recompute_only: bool = Field(False, description="Skip fetching; rebuild stats only")
    dry_run: bool = Field(False, description="Execution: record decisions without placing orders")
    days: Optional[int] = Field(None, ge=1, le=30, description="Score verification window")

    @field_validator("sport")
    @classmethod
    def validate_sport(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.lower()
        if v not in SUPPORTED_SPORTS:
            raise ValueError(f"sport must be one of {', '.join(SUPPORTED_SPORTS)}")
        return v

    @model_validator(mode="after")
    def validate_range(self) -> "JobTrigger":
        if self.end_date and not self.start_date:
            raise ValueError("end_date requires start_date")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {"sport": "nba", "start_date": "2024-01-01", "end_date": "2024-01-31"}
        }
    }


class JobAccepted(BaseModel):
    job_id: int
    accepted: bool = True


class JobRunResponse(BaseModel):
    id: int
    job_name: str
    status: str
    started_at: Optional[dt.datetime] = None
    finished_at: Optional[dt.datetime] = None
    details: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Edges and segments
# ---------------------------------------------------------------------------

class DailyEdgeResponse(BaseModel):
    game_id: int
    sport_id: str
    date_local: dt.date
    start_time_utc: Optional[dt.datetime] = None
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    segment_key: Optional[str] = None
    n_h2h: int
    p05: Optional[float] = None
    p95: Optional[float] = None
    median: Optional[float] = None
    is_visible: bool
    line: Optional[float] = None
    line_bookmaker: Optional[str] = None
    line_percentile: Optional[float] = None
    percentile_position: Optional[float] = None
    signal: Optional[str] = None
    edge_strength: Optional[str] = None
    hit_probability: Optional[float] = None
    over_probability: Optional[float] = None
    under_probability: Optional[float] = None
    best_over_edge: Optional[float] = None
    best_under_edge: Optional[float] = None


class DailyEdgesResponse(BaseModel):
    date: dt.date
    sport: Optional[str] = None
    total_games: int
    with_edge: int
    edges: List[DailyEdgeResponse]


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class VenueOrderResponse(BaseModel):
    id: int
    created_at: dt.datetime
    game_id: int
    sport_id: Optional[str] = None
    ticker: Optional[str] = None
    side: Optional[str] = None
    count: Optional[int] = None
    price: Optional[int] = None
    signal_type: Optional[str] = None
    edge_strength: Optional[str] = None
    percentile_position: Optional[float] = None
    status: str
    reason: Optional[str] = None
    venue_order_id: Optional[str] = None
    result: Optional[str] = None
    pnl_cents: Optional[int] = None

    model_config = {"from_attributes": True}


class SettleOrder(BaseModel):
    """Payload for PUT /admin/orders/{order_id}/settle."""

    result: Literal["win", "loss", "void"]
    pnl_cents: int = Field(..., description="Realized P&L in cents (negative for a loss)")

    @model_validator(mode="after")
    def validate_sign(self) -> "SettleOrder":
        if self.result == "loss" and self.pnl_cents > 0:
            raise ValueError("a loss cannot have positive pnl_cents")
        if self.result == "win" and self.pnl_cents < 0:
            raise ValueError("a win cannot have negative pnl_cents")
        return self
