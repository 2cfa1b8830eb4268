"""Sport-level configuration: all sport-specific constants in one place.

This module is the **registry** for every constant that differs between
sports.  Nowhere else in the codebase should provider URLs, abbreviation
aliases, franchise lineages, or season windows be hard-coded.

Architecture
------------
:class:`SportConfig` is a frozen dataclass carrying all per-sport constants.
Named constructors (:meth:`SportConfig.nba`, :meth:`SportConfig.nfl`,
:meth:`SportConfig.nhl`, :meth:`SportConfig.mlb`) return pre-populated
instances.  To add a new sport:

1. Add a ``@classmethod`` constructor here.
2. Register it in :data:`_CONSTRUCTORS`.
3. The identity resolver, ingestor and odds matcher pick it up through
   :func:`get_sport_config`.

Identity tables
---------------
Two lookups turn a raw scoreboard abbreviation into a franchise:

``abbrev_aliases``
    Provider code → internal code (``"GS"`` → ``"GSW"``).  Codes that are
    not listed pass through unchanged.
``franchise_names``
    Internal code → canonical franchise name.  Historical codes of relocated
    teams map to the *current* franchise (``"SEA"`` → Oklahoma City Thunder),
    which is what makes head-to-head history survive relocations.  A code
    missing here is unmappable and the record is skipped by the caller.

Typical usage::

    from backend.core.sport_config import get_sport_config

    cfg = get_sport_config("nba")
    cfg.canonical_name("SEA")   # 'Oklahoma City Thunder'
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, Final, List, Mapping, Optional, Tuple


#: Sport identifier strings used in API routes and DB records.
SPORT_ID_NBA: Final[str] = "nba"
SPORT_ID_NFL: Final[str] = "nfl"
SPORT_ID_NHL: Final[str] = "nhl"
SPORT_ID_MLB: Final[str] = "mlb"

SUPPORTED_SPORTS: Final[Tuple[str, ...]] = (
    SPORT_ID_NBA,
    SPORT_ID_NFL,
    SPORT_ID_NHL,
    SPORT_ID_MLB,
)

_ESPN_BASE: Final[str] = "https://site.api.espn.com/apis/site/v2/sports"


@dataclass(frozen=True)
class SportConfig:
    """Immutable configuration bundle for a single sport.

    Attributes:
        sport_id: Short identifier (``"nba"``, ``"nfl"`` ...) used in API
            routes, DB records and provider keys.
        sport_name: Human-readable name for logging.
        scoreboard_url: ESPN scoreboard endpoint queried with
            ``?dates=YYYYMMDD``.
        odds_api_sport_key: The sport key passed to The Odds API.
        season_start: ``(month, day, year_offset)`` of the first day of the
            season that *ends* in season-year ``Y``.  ``year_offset`` is
            relative to ``Y`` (NBA seasons start the previous October).
        season_end: ``(month, day, year_offset)`` of the last day.
        abbrev_aliases: Provider code → internal code.
        franchise_names: Internal code → canonical franchise name.
    """

    sport_id: str
    sport_name: str
    scoreboard_url: str
    odds_api_sport_key: str
    season_start: Tuple[int, int, int]
    season_end: Tuple[int, int, int]
    abbrev_aliases: Mapping[str, str]
    franchise_names: Mapping[str, str]

    # ------------------------------------------------------------------ #
    #  Named constructors                                                  #
    # ------------------------------------------------------------------ #

    @classmethod
    def nba(cls) -> SportConfig:
        """Return the NBA configuration.

        Relocations covered: Seattle → Oklahoma City, Vancouver → Memphis,
        New Jersey → Brooklyn, New Orleans/Oklahoma City (2005-07) → Pelicans.
        """
        return cls(
            sport_id=SPORT_ID_NBA,
            sport_name="NBA",
            scoreboard_url=f"{_ESPN_BASE}/basketball/nba/scoreboard",
            odds_api_sport_key="basketball_nba",
            season_start=(10, 1, -1),
            season_end=(6, 30, 0),
            abbrev_aliases={
                "GS": "GSW", "NY": "NYK", "NO": "NOP", "SA": "SAS",
                "UTAH": "UTA", "WSH": "WAS",
            },
            franchise_names={
                "ATL": "Atlanta Hawks", "BOS": "Boston Celtics", "BKN": "Brooklyn Nets",
                "CHA": "Charlotte Hornets", "CHI": "Chicago Bulls", "CLE": "Cleveland Cavaliers",
                "DAL": "Dallas Mavericks", "DEN": "Denver Nuggets", "DET": "Detroit Pistons",
                "GSW": "Golden State Warriors", "HOU": "Houston Rockets", "IND": "Indiana Pacers",
                "LAC": "LA Clippers", "LAL": "Los Angeles Lakers", "MEM": "Memphis Grizzlies",
                "MIA": "Miami Heat", "MIL": "Milwaukee Bucks", "MIN": "Minnesota Timberwolves",
                "NOP": "New Orleans Pelicans", "NYK": "New York Knicks",
                "OKC": "Oklahoma City Thunder", "ORL": "Orlando Magic",
                "PHI": "Philadelphia 76ers", "PHX": "Phoenix Suns", "PHO": "Phoenix Suns",
                "POR": "Portland Trail Blazers", "SAC": "Sacramento Kings",
                "SAS": "San Antonio Spurs", "TOR": "Toronto Raptors", "UTA": "Utah Jazz",
                "WAS": "Washington Wizards",
                # Historical codes
                "NJN": "Brooklyn Nets", "SEA": "Oklahoma City Thunder",
                "VAN": "Memphis Grizzlies", "NOH": "New Orleans Pelicans",
                "NOK": "New Orleans Pelicans",
            },
        )

    @classmethod
    def nfl(cls) -> SportConfig:
        """Return the NFL configuration.

        Relocations covered: Oakland → Las Vegas, San Diego → LA Chargers,
        St. Louis → LA Rams.
        """
        return cls(
            sport_id=SPORT_ID_NFL,
            sport_name="NFL",
            scoreboard_url=f"{_ESPN_BASE}/football/nfl/scoreboard",
            odds_api_sport_key="americanfootball_nfl",
            season_start=(9, 1, 0),
            season_end=(2, 15, 1),
            abbrev_aliases={"JAX": "JAC", "WSH": "WAS"},
            franchise_names={
                "ARI": "Arizona Cardinals", "ATL": "Atlanta Falcons", "BAL": "Baltimore Ravens",
                "BUF": "Buffalo Bills", "CAR": "Carolina Panthers", "CHI": "Chicago Bears",
                "CIN": "Cincinnati Bengals", "CLE": "Cleveland Browns", "DAL": "Dallas Cowboys",
                "DEN": "Denver Broncos", "DET": "Detroit Lions", "GB": "Green Bay Packers",
                "HOU": "Houston Texans", "IND": "Indianapolis Colts",
                "JAC": "Jacksonville Jaguars", "KC": "Kansas City Chiefs",
                "LV": "Las Vegas Raiders", "LAC": "Los Angeles Chargers",
                "LAR": "Los Angeles Rams", "MIA": "Miami Dolphins", "MIN": "Minnesota Vikings",
                "NE": "New England Patriots", "NO": "New Orleans Saints",
                "NYG": "New York Giants", "NYJ": "New York Jets",
                "PHI": "Philadelphia Eagles", "PIT": "Pittsburgh Steelers",
                "SF": "San Francisco 49ers", "SEA": "Seattle Seahawks",
                "TB": "Tampa Bay Buccaneers", "TEN": "Tennessee Titans",
                "WAS": "Washington Commanders",
                # Historical codes
                "OAK": "Las Vegas Raiders", "SD": "Los Angeles Chargers",
                "STL": "Los Angeles Rams",
            },
        )

    @classmethod
    def nhl(cls) -> SportConfig:
        """Return the NHL configuration.

        Relocations covered: Atlanta → Winnipeg, Hartford → Carolina,
        Quebec → Colorado, Phoenix → Arizona.
        """
        return cls(
            sport_id=SPORT_ID_NHL,
            sport_name="NHL",
            scoreboard_url=f"{_ESPN_BASE}/hockey/nhl/scoreboard",
            odds_api_sport_key="icehockey_nhl",
            season_start=(10, 1, -1),
            season_end=(6, 30, 0),
            abbrev_aliases={
                "LA": "LAK", "UTAH": "UTA", "WSH": "WAS", "VGK": "VEG", "NAS": "NSH",
            },
            franchise_names={
                "ANA": "Anaheim Ducks", "ARI": "Arizona Coyotes", "BOS": "Boston Bruins",
                "BUF": "Buffalo Sabres", "CGY": "Calgary Flames", "CAR": "Carolina Hurricanes",
                "CHI": "Chicago Blackhawks", "COL": "Colorado Avalanche",
                "CBJ": "Columbus Blue Jackets", "DAL": "Dallas Stars",
                "DET": "Detroit Red Wings", "EDM": "Edmonton Oilers",
                "FLA": "Florida Panthers", "LAK": "Los Angeles Kings", "MIN": "Minnesota Wild",
                "MTL": "Montreal Canadiens", "NSH": "Nashville Predators",
                "NJ": "New Jersey Devils", "NYI": "New York Islanders",
                "NYR": "New York Rangers", "OTT": "Ottawa Senators",
                "PHI": "Philadelphia Flyers", "PIT": "Pittsburgh Penguins",
                "SJ": "San Jose Sharks", "SEA": "Seattle Kraken", "STL": "St. Louis Blues",
                "TB": "Tampa Bay Lightning", "TOR": "Toronto Maple Leafs",
                "VAN": "Vancouver Canucks", "VEG": "Vegas Golden Knights",
                "WPG": "Winnipeg Jets", "WAS": "Washington Capitals",
                "UTA": "Utah Hockey Club",
                # Historical codes
                "PHX": "Arizona Coyotes", "ATL": "Winnipeg Jets",
                "HFD": "Carolina Hurricanes", "QUE": "Colorado Avalanche",
            },
        )

    @classmethod
    def mlb(cls) -> SportConfig:
        """Return the MLB configuration.

        Relocations covered: Montreal → Washington, Florida → Miami,
        Anaheim → Los Angeles Angels.
        """
        return cls(
            sport_id=SPORT_ID_MLB,
            sport_name="MLB",
            scoreboard_url=f"{_ESPN_BASE}/baseball/mlb/scoreboard",
            odds_api_sport_key="baseball_mlb",
            season_start=(3, 1, 0),
            season_end=(11, 15, 0),
            abbrev_aliases={"CHW": "CWS", "WSH": "WAS"},
            franchise_names={
                "ARI": "Arizona Diamondbacks", "ATL": "Atlanta Braves",
                "BAL": "Baltimore Orioles", "BOS": "Boston Red Sox", "CHC": "Chicago Cubs",
                "CWS": "Chicago White Sox", "CIN": "Cincinnati Reds",
                "CLE": "Cleveland Guardians", "COL": "Colorado Rockies",
                "DET": "Detroit Tigers", "HOU": "Houston Astros", "KC": "Kansas City Royals",
                "LAA": "Los Angeles Angels", "LAD": "Los Angeles Dodgers",
                "MIA": "Miami Marlins", "MIL": "Milwaukee Brewers", "MIN": "Minnesota Twins",
                "NYM": "New York Mets", "NYY": "New York Yankees",
                "OAK": "Oakland Athletics", "PHI": "Philadelphia Phillies",
                "PIT": "Pittsburgh Pirates", "SD": "San Diego Padres",
                "SF": "San Francisco Giants", "SEA": "Seattle Mariners",
                "STL": "St. Louis Cardinals", "TB": "Tampa Bay Rays",
                "TEX": "Texas Rangers", "TOR": "Toronto Blue Jays",
                "WAS": "Washington Nationals",
                # Historical codes
                "FLA": "Miami Marlins", "MON": "Washington Nationals",
                "ANA": "Los Angeles Angels",
            },
        )

    # ------------------------------------------------------------------ #
    #  Identity helpers                                                    #
    # ------------------------------------------------------------------ #

    def normalize_abbrev(self, raw: str) -> str:
        """Map a provider abbreviation to the internal code."""
        code = (raw or "").strip().upper()
        return self.abbrev_aliases.get(code, code)

    def canonical_name(self, raw: str) -> Optional[str]:
        """Return the franchise name for a raw provider code, or None if unmapped."""
        return self.franchise_names.get(self.normalize_abbrev(raw))

    def provider_team_key(self, raw: str) -> str:
        """Natural key of the Team row for a provider abbreviation."""
        return f"espn-{self.sport_id}-{self.normalize_abbrev(raw)}"

    def provider_game_key(self, event_id: str) -> str:
        return f"espn-{self.sport_id}-{event_id}"

    # ------------------------------------------------------------------ #
    #  Season windows                                                      #
    # ------------------------------------------------------------------ #

    def season_window(self, season_year: int) -> Tuple[date, date]:
        """Return ``(start, end)`` calendar dates of season ``season_year``."""
        s_month, s_day, s_off = self.season_start
        e_month, e_day, e_off = self.season_end
        return (
            date(season_year + s_off, s_month, s_day),
            date(season_year + e_off, e_month, e_day),
        )

    def season_ranges(self, years_back: int, today: Optional[date] = None) -> List[Tuple[date, date]]:
        """Season windows for the current season and ``years_back`` prior ones.

        Windows are truncated at ``today``; windows that start in the future
        are dropped.  Ordered most recent first.
        """
        today = today or date.today()
        ranges: List[Tuple[date, date]] = []
        for year in range(today.year + 1, today.year - years_back - 1, -1):
            start, end = self.season_window(year)
            if start > today:
                continue
            ranges.append((start, min(end, today)))
        return ranges

    def __repr__(self) -> str:
        return (
            f"SportConfig(sport_id={self.sport_id!r}, "
            f"franchises={len(set(self.franchise_names.values()))})"
        )


_CONSTRUCTORS: Dict[str, object] = {
    SPORT_ID_NBA: SportConfig.nba,
    SPORT_ID_NFL: SportConfig.nfl,
    SPORT_ID_NHL: SportConfig.nhl,
    SPORT_ID_MLB: SportConfig.mlb,
}


def get_sport_config(sport_id: str) -> SportConfig:
    """Return the :class:`SportConfig` for ``sport_id``.

    Raises:
        ValueError: if the sport is not supported.
    """
    try:
        return _CONSTRUCTORS[sport_id.lower()]()
    except KeyError:
        raise ValueError(
            f"Unsupported sport {sport_id!r}; expected one of {', '.join(SUPPORTED_SPORTS)}"
        ) from None
