"""
Team identity resolution.

Raw scoreboard abbreviations go through two per-sport tables (see
``backend.core.sport_config``): provider alias → internal code, then
internal code → canonical franchise name.  Franchise and Team rows are
created lazily on first sighting.

Creation races between concurrent ingestion runs are settled by the
database: each insert runs in a SAVEPOINT, and on a unique-constraint
violation the savepoint is rolled back and the winner's row is re-read
by its natural key.

Caches live on an ``IdentityContext`` owned by a single ingestion run.
"""

import logging
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.core.sport_config import SportConfig, get_sport_config
from backend.models import Franchise, Team

logger = logging.getLogger(__name__)


def _get_or_create(db: Session, model, lookup: Dict, defaults: Dict) -> int:
    """Return the id of the row matching ``lookup``, inserting it if absent."""
    row = db.query(model.id).filter_by(**lookup).first()
    if row is not None:
        return row[0]

    try:
        with db.begin_nested():
            obj = model(**lookup, **defaults)
            db.add(obj)
            db.flush()
        return obj.id
    except IntegrityError:
        # Lost the race: another writer inserted the same natural key
        row = db.query(model.id).filter_by(**lookup).first()
        if row is None:
            raise
        logger.debug("Resolved %s creation race for %s", model.__tablename__, lookup)
        return row[0]


def find_franchise(db: Session, sport: str, raw_abbrev: str) -> Optional[int]:
    """Read-only lookup: franchise id for a raw code if the franchise exists."""
    canonical = get_sport_config(sport).canonical_name(raw_abbrev)
    if canonical is None:
        return None
    row = (
        db.query(Franchise.id)
        .filter(Franchise.sport_id == sport, Franchise.canonical_name == canonical)
        .first()
    )
    return row[0] if row else None


class IdentityContext:
    """Per-run identity resolver with memoised lookups.

    Usage::

        ctx = IdentityContext(db)
        franchise_id = ctx.resolve_franchise("nba", "SEA")   # Thunder
        team_id = ctx.resolve_or_create_team(
            "nba", "espn-nba-SEA", "Seattle SuperSonics", "SEA", franchise_id,
        )
    """

    def __init__(self, db: Session):
        self.db = db
        self._configs: Dict[str, SportConfig] = {}
        self._franchises: Dict[Tuple[str, str], Optional[int]] = {}
        self._teams: Dict[Tuple[str, str], int] = {}

    def clear(self) -> None:
        self._franchises.clear()
        self._teams.clear()

    def config(self, sport: str) -> SportConfig:
        if sport not in self._configs:
            self._configs[sport] = get_sport_config(sport)
        return self._configs[sport]

    def resolve_franchise(self, sport: str, raw_abbrev: str) -> Optional[int]:
        """Franchise id for a raw provider code, or None when the code is unmapped."""
        key = (sport, raw_abbrev)
        if key in self._franchises:
            return self._franchises[key]

        canonical = self.config(sport).canonical_name(raw_abbrev)
        if canonical is None:
            logger.warning("Unmapped %s team code %r", sport.upper(), raw_abbrev)
            franchise_id = None
        else:
            franchise_id = _get_or_create(
                self.db,
                Franchise,
                {"sport_id": sport, "canonical_name": canonical},
                {},
            )

        self._franchises[key] = franchise_id
        return franchise_id

    def resolve_or_create_team(
        self,
        sport: str,
        provider_key: str,
        display_name: str,
        abbrev: str,
        franchise_id: Optional[int],
    ) -> int:
        key = (sport, provider_key)
        if key in self._teams:
            return self._teams[key]

        team_id = _get_or_create(
            self.db,
            Team,
            {"sport_id": sport, "provider_team_key": provider_key},
            {
                "name": display_name or abbrev,
                "abbrev": abbrev,
                "franchise_id": franchise_id,
            },
        )
        self._teams[key] = team_id
        return team_id
