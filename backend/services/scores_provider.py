"""
ESPN scoreboard client for historical final scores.
https://site.api.espn.com/apis/site/v2/sports/{sport}/{league}/scoreboard?dates=YYYYMMDD

The raw payload is parsed in exactly one place (``parse_scoreboard``) into
validated ``GameRecord`` models.  Events that fail validation are counted
and dropped; nothing downstream touches provider JSON.

Retry policy
------------
429 and 5xx responses, connection errors and timeouts are retried up to
four attempts with exponential backoff (1s, 2s, 4s; ``Retry-After`` is
honoured when present).  Any other 4xx raises ``ScoresProviderError``
immediately.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

import requests
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from backend.core.sport_config import SportConfig, get_sport_config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 15
MAX_ATTEMPTS = 4
POSTSEASON_TYPE = 3

# ESPN status.type.state → our game status
_STATE_MAP = {"pre": "scheduled", "in": "live", "post": "final"}


class ScoresProviderError(RuntimeError):
    """Raised when a scoreboard cannot be fetched."""


class RetryableStatusError(RuntimeError):
    """Raised for retryable status codes (429, 5xx)."""

    def __init__(self, response: requests.Response):
        self.response = response
        super().__init__(f"retryable status {response.status_code}")

    def retry_after_seconds(self) -> Optional[float]:
        raw = self.response.headers.get("Retry-After") if self.response.headers else None
        if not raw:
            return None
        try:
            return max(0.0, float(raw))
        except (TypeError, ValueError):
            return None


# ---------------------------------------------------------------------------
# Parsing boundary
# ---------------------------------------------------------------------------

def _parse_espn_datetime(value: str) -> datetime:
    """ESPN dates look like ``2024-01-15T00:30Z``; returns naive UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def decade_for(season_year: int) -> str:
    return f"{math.floor(season_year / 10) * 10}s"


class GameRecord(BaseModel):
    """One scoreboard event, validated."""

    event_id: str = Field(..., min_length=1)
    start_time_utc: datetime
    status: Literal["scheduled", "live", "final"]
    season_year: int = Field(..., ge=1900, le=2200)
    is_playoff: bool = False

    home_abbrev: str = Field(..., min_length=1, max_length=10)
    away_abbrev: str = Field(..., min_length=1, max_length=10)
    home_name: str = ""
    away_name: str = ""
    home_score: Optional[int] = Field(None, ge=0)
    away_score: Optional[int] = Field(None, ge=0)

    @field_validator("start_time_utc", mode="before")
    @classmethod
    def parse_start_time(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _parse_espn_datetime(v)
        return v

    @model_validator(mode="after")
    def final_has_scores(self) -> "GameRecord":
        if self.status == "final" and (self.home_score is None or self.away_score is None):
            raise ValueError("final game is missing a score")
        if self.home_abbrev.upper() == self.away_abbrev.upper():
            raise ValueError("home and away teams are the same")
        return self

    @property
    def is_final(self) -> bool:
        return self.status == "final"

    @property
    def total(self) -> Optional[int]:
        if self.home_score is None or self.away_score is None:
            return None
        return self.home_score + self.away_score

    @property
    def decade(self) -> str:
        return decade_for(self.season_year)


@dataclass
class ScoreboardResult:
    day: date
    records: List[GameRecord] = field(default_factory=list)
    rejected: int = 0
    response_time_ms: int = 0


def _event_to_fields(event: Dict) -> Dict:
    competition = event["competitions"][0]
    sides = {c["homeAway"]: c for c in competition["competitors"]}
    home, away = sides["home"], sides["away"]

    status = (competition.get("status") or event.get("status") or {}).get("type", {})
    state = _STATE_MAP.get(status.get("state"), "scheduled")
    if status.get("completed"):
        state = "final"

    season = event.get("season") or {}
    start = event.get("date") or competition.get("date")
    return {
        "event_id": str(event["id"]),
        "start_time_utc": start,
        "status": state,
        "season_year": season.get("year") or _parse_espn_datetime(start).year,
        "is_playoff": season.get("type") == POSTSEASON_TYPE,
        "home_abbrev": home["team"]["abbreviation"],
        "away_abbrev": away["team"]["abbreviation"],
        "home_name": home["team"].get("displayName", ""),
        "away_name": away["team"].get("displayName", ""),
        "home_score": home.get("score") if state != "scheduled" else None,
        "away_score": away.get("score") if state != "scheduled" else None,
    }


def parse_scoreboard(payload: Dict) -> Tuple[List[GameRecord], int]:
    """Parse a scoreboard payload into ``(records, rejected_count)``."""
    records: List[GameRecord] = []
    rejected = 0
    events = payload.get("events") if isinstance(payload, dict) else None
    if not isinstance(events, list):
        return records, rejected
    for event in events:
        if not isinstance(event, dict):
            rejected += 1
            continue
        try:
            records.append(GameRecord(**_event_to_fields(event)))
        except (ValidationError, KeyError, IndexError, TypeError, ValueError) as exc:
            rejected += 1
            logger.warning("Rejected scoreboard event %s: %s", event.get("id"), exc)
    return records, rejected


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class ScoresProvider:
    """Client for one sport's scoreboard endpoint."""

    def __init__(
        self,
        sport: str,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = 1.0,
    ):
        self.config: SportConfig = get_sport_config(sport)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    @property
    def source_name(self) -> str:
        return f"espn_{self.config.sport_id}"

    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RetryableStatusError):
            retry_after = exc.retry_after_seconds()
            if retry_after is not None:
                return min(retry_after, 60.0)
        return self.base_delay * 2 ** (retry_state.attempt_number - 1)

    def fetch_scoreboard(self, day: date) -> Dict:
        """Raw scoreboard JSON for one date."""
        params = {"dates": day.strftime("%Y%m%d")}
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.max_attempts),
                retry=retry_if_exception_type(
                    (RetryableStatusError, requests.ConnectionError, requests.Timeout)
                ),
                wait=self._wait,
                reraise=True,
            ):
                with attempt:
                    response = self.session.get(
                        self.config.scoreboard_url, params=params, timeout=self.timeout,
                    )
                    if response.status_code == 429 or 500 <= response.status_code <= 599:
                        raise RetryableStatusError(response)
                    response.raise_for_status()
            payload = response.json()
        except RetryableStatusError as exc:
            raise ScoresProviderError(
                f"{self.source_name} {day} failed with status "
                f"{exc.response.status_code} after {self.max_attempts} attempts"
            ) from exc
        except requests.RequestException as exc:
            raise ScoresProviderError(f"{self.source_name} {day} failed: {exc}") from exc
        except ValueError as exc:
            # 200 with a non-JSON body (maintenance pages)
            raise ScoresProviderError(f"{self.source_name} {day} returned invalid JSON: {exc}") from exc

        if not isinstance(payload, dict):
            raise ScoresProviderError(f"{self.source_name} {day} returned an unexpected payload")
        return payload

    def fetch_games(self, day: date) -> ScoreboardResult:
        started = datetime.utcnow()
        payload = self.fetch_scoreboard(day)
        records, rejected = parse_scoreboard(payload)
        elapsed_ms = int((datetime.utcnow() - started).total_seconds() * 1000)
        logger.debug(
            "%s %s: %d events parsed, %d rejected", self.source_name, day, len(records), rejected,
        )
        return ScoreboardResult(day=day, records=records, rejected=rejected, response_time_ms=elapsed_ms)
