"""
Signed REST client for the event-contract trading venue (Kalshi).

Every request carries three headers:

  KALSHI-ACCESS-KEY        the API key id
  KALSHI-ACCESS-TIMESTAMP  unix seconds, as a string
  KALSHI-ACCESS-SIGNATURE  base64(RSA-PSS-SHA256(timestamp + METHOD + path + body))

``path`` is the endpoint path below the API base (``/portfolio/orders``)
and ``body`` is the exact JSON string sent, empty for GETs.  PSS uses MGF1
with SHA-256 and a 32-byte salt.

GETs are retried on 429/5xx/network errors.  Order submission (POST) is
sent exactly once.
"""

import base64
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from backend.services.scores_provider import RetryableStatusError

logger = logging.getLogger(__name__)

PROD_BASE_URL = "https://trading-api.kalshi.com/trade-api/v2"
DEMO_BASE_URL = "https://demo-api.kalshi.co/trade-api/v2"
PSS_SALT_LENGTH = 32


class TradingVenueError(RuntimeError):
    """Raised when the venue rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SigningError(RuntimeError):
    """Raised when the private key cannot be loaded or used."""


def load_private_key(pem: str):
    """Load an RSA private key from PEM text (PKCS#8 or PKCS#1).

    Literal ``\\n`` sequences, as produced by single-line env vars, are
    turned back into newlines.
    """
    text = (pem or "").replace("\\n", "\n").strip()
    try:
        return serialization.load_pem_private_key(text.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningError(f"Could not load trading venue private key: {exc}") from exc


def sign_message(private_key, message: str) -> str:
    try:
        signature = private_key.sign(
            message.encode("utf-8"),
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=PSS_SALT_LENGTH),
            hashes.SHA256(),
        )
    except (ValueError, TypeError, AttributeError) as exc:
        raise SigningError(f"Signing failed: {exc}") from exc
    return base64.b64encode(signature).decode("ascii")


def canonical_message(timestamp: str, method: str, path: str, body: str = "") -> str:
    return f"{timestamp}{method.upper()}{path}{body}"


class TradingVenueClient:
    """Client for the trading venue's portfolio endpoints."""

    def __init__(
        self,
        api_key_id: Optional[str] = None,
        private_key_pem: Optional[str] = None,
        use_demo: Optional[bool] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10,
        max_attempts: int = 3,
        base_delay: float = 1.0,
    ):
        self.api_key_id = api_key_id or os.getenv("KALSHI_API_KEY_ID")
        pem = private_key_pem or os.getenv("KALSHI_PRIVATE_KEY")
        if not self.api_key_id or not pem:
            raise ValueError("KALSHI_API_KEY_ID and KALSHI_PRIVATE_KEY must be set in environment")
        self._private_key = load_private_key(pem)

        if use_demo is None:
            use_demo = os.getenv("KALSHI_USE_DEMO", "false").lower() == "true"
        self.is_demo = use_demo
        self.base_url = DEMO_BASE_URL if use_demo else PROD_BASE_URL

        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def signed_headers(self, method: str, path: str, body: str = "", timestamp: Optional[str] = None) -> Dict[str, str]:
        timestamp = timestamp or str(int(time.time()))
        signature = sign_message(self._private_key, canonical_message(timestamp, method, path, body))
        return {
            "Content-Type": "application/json",
            "KALSHI-ACCESS-KEY": self.api_key_id,
            "KALSHI-ACCESS-SIGNATURE": signature,
            "KALSHI-ACCESS-TIMESTAMP": timestamp,
        }

    def _send(self, method: str, path: str, body: str) -> requests.Response:
        headers = self.signed_headers(method, path, body)
        return self.session.request(
            method,
            f"{self.base_url}{path}",
            data=body or None,
            headers=headers,
            timeout=self.timeout,
        )

    def _wait(self, retry_state) -> float:
        return self.base_delay * 2 ** (retry_state.attempt_number - 1)

    def _request(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        retryable = method.upper() == "GET"

        try:
            if retryable:
                for attempt in Retrying(
                    stop=stop_after_attempt(self.max_attempts),
                    retry=retry_if_exception_type(
                        (RetryableStatusError, requests.ConnectionError, requests.Timeout)
                    ),
                    wait=self._wait,
                    reraise=True,
                ):
                    with attempt:
                        response = self._send(method, path, body)
                        if response.status_code == 429 or 500 <= response.status_code <= 599:
                            raise RetryableStatusError(response)
            else:
                response = self._send(method, path, body)
        except RetryableStatusError as exc:
            raise TradingVenueError(
                f"{method} {path} failed with status {exc.response.status_code} after retries",
                status_code=exc.response.status_code,
            ) from exc
        except requests.RequestException as exc:
            raise TradingVenueError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise TradingVenueError(
                f"{method} {path} failed with status {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise TradingVenueError(
                f"{method} {path} returned a non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise TradingVenueError(f"{method} {path} returned an unexpected payload", status_code=response.status_code)
        return data

    # ------------------------------------------------------------------ #

    def create_order(
        self,
        ticker: str,
        side: str,
        count: int,
        price: int,
        client_order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Place a limit buy; ``price`` in cents applies to the chosen side."""
        if side not in ("yes", "no"):
            raise ValueError(f"side must be 'yes' or 'no', got {side!r}")
        payload: Dict[str, Any] = {
            "ticker": ticker,
            "action": "buy",
            "side": side,
            "type": "limit",
            "count": int(count),
            f"{side}_price": int(price),
        }
        if client_order_id:
            payload["client_order_id"] = client_order_id
        logger.info("Submitting order %s %s x%d @ %dc", ticker, side, count, price)
        return self._request("POST", "/portfolio/orders", payload)

    def get_balance(self) -> Dict[str, Any]:
        return self._request("GET", "/portfolio/balance")

    def get_positions(self) -> List[Dict[str, Any]]:
        data = self._request("GET", "/portfolio/positions")
        return data.get("market_positions") or []
