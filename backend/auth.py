"""
Shared API key authentication.

Keys come from API_KEY_USER1..API_KEY_USER5.  Admin triggers (batch jobs,
settlement) additionally require the caller to be listed in ADMIN_USERS
(comma-separated, default "user1").

Keys are read on first use rather than at import time so the app module can
be imported before the environment is configured.
"""

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader
import os
from functools import lru_cache
from typing import Dict, FrozenSet
from dotenv import load_dotenv

load_dotenv()

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

MAX_USERS = 5


@lru_cache(maxsize=1)
def get_valid_api_keys() -> Dict[str, str]:
    """Map of API key -> user identifier."""
    keys = {}
    for i in range(1, MAX_USERS + 1):
        key = os.getenv(f"API_KEY_USER{i}")
        if key:
            keys[key] = f"user{i}"

    if not keys:
        # Development fallback (never use in production)
        if os.getenv("ENVIRONMENT") == "development":
            keys["dev-key-insecure"] = "dev_user"
        else:
            raise ValueError("No API keys configured! Set API_KEY_USER1 in environment")

    return keys


@lru_cache(maxsize=1)
def get_admin_users() -> FrozenSet[str]:
    raw = os.getenv("ADMIN_USERS", "user1")
    admins = {u.strip() for u in raw.split(",") if u.strip()}
    if os.getenv("ENVIRONMENT") == "development":
        admins.add("dev_user")
    return frozenset(admins)


def reset_auth_cache() -> None:
    """Forget loaded keys (after the environment changes)."""
    get_valid_api_keys.cache_clear()
    get_admin_users.cache_clear()


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    """Return the user identifier for a valid ``X-API-Key`` header."""
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    try:
        valid = get_valid_api_keys()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    if api_key not in valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return valid[api_key]


async def verify_admin_api_key(user: str = Security(verify_api_key)) -> str:
    if user not in get_admin_users():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return user
