"""
The Odds API integration for live totals lines.
https://the-odds-api.com/

Only the full-game totals market is consumed.  The reference book is
DraftKings (``REFERENCE_BOOK``); when it has not posted a total the line is
left unset rather than borrowed from another book.

Team names from the feed are matched to franchise canonical names: exact
(case-insensitive) first, then a rapidfuzz ``token_set_ratio`` fallback
with a high cutoff so that city-only overlaps ("Los Angeles ...") are not
confused.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import requests
from rapidfuzz import fuzz, process

from backend.core.sport_config import get_sport_config

logger = logging.getLogger(__name__)

BASE_URL = "https://api.the-odds-api.com/v4"
REFERENCE_BOOK = "draftkings"
FUZZY_CUTOFF = 85


class OddsAPIClient:
    """Client for The Odds API"""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 10):
        self.api_key = api_key or os.getenv("THE_ODDS_API_KEY")
        if not self.api_key:
            raise ValueError("THE_ODDS_API_KEY not set in environment")
        self.timeout = timeout

    def get_totals(self, sport: str, regions: str = "us") -> List[Dict]:
        """
        Fetch current totals for a sport.

        Returns the raw event list; an empty list on any request error.
        """
        sport_key = get_sport_config(sport).odds_api_sport_key
        url = f"{BASE_URL}/sports/{sport_key}/odds"
        params = {
            "apiKey": self.api_key,
            "regions": regions,
            "markets": "totals",
            "bookmakers": REFERENCE_BOOK,
            "oddsFormat": "american",
        }

        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()

            logger.info(
                "Odds API %s: %d events fetched. Quota: %s used, %s remaining",
                sport_key,
                len(data),
                response.headers.get("x-requests-used"),
                response.headers.get("x-requests-remaining"),
            )
            return data

        except requests.exceptions.RequestException as e:
            logger.error("Odds API error for %s: %s", sport_key, e)
            return []


def parse_total_line(event: Dict, bookmaker: str = REFERENCE_BOOK) -> Optional[float]:
    """The bookmaker's full-game total for one event, or None."""
    for book in event.get("bookmakers") or []:
        if book.get("key") != bookmaker:
            continue
        for market in book.get("markets") or []:
            if market.get("key") != "totals":
                continue
            outcomes = market.get("outcomes") or []
            if outcomes and outcomes[0].get("point") is not None:
                return float(outcomes[0]["point"])
    return None


def match_team_name(name: str, choices: Sequence[str]) -> Optional[str]:
    """Best canonical name for a feed team name, or None below the cutoff."""
    name = (name or "").strip()
    if not name or not choices:
        return None

    for choice in choices:
        if choice.lower() == name.lower():
            return choice

    result = process.extractOne(name, choices, scorer=fuzz.token_set_ratio, score_cutoff=FUZZY_CUTOFF)
    if result:
        logger.debug("Fuzzy matched '%s' to '%s' with score %.0f", name, result[0], result[1])
        return result[0]
    return None


def parse_commence_time(event: Dict) -> Optional[datetime]:
    """``commence_time`` as naive UTC, or None when absent or malformed."""
    raw = event.get("commence_time")
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
