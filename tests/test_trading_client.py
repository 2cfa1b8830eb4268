"""
Tests for the signed trading venue client
Run with: pytest tests/test_trading_client.py -v
"""

import base64
import json
from unittest.mock import MagicMock

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from backend.services.trading_client import (
    DEMO_BASE_URL,
    PROD_BASE_URL,
    SigningError,
    TradingVenueClient,
    TradingVenueError,
    canonical_message,
    load_private_key,
)


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def pem(rsa_key):
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _make_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = {}
    body = json.dumps(payload or {})
    response.content = body.encode("utf-8")
    response.text = body
    response.json.return_value = payload or {}
    return response


def _client(pem, session, **kwargs):
    return TradingVenueClient(
        api_key_id="key-123", private_key_pem=pem, session=session, base_delay=0, **kwargs
    )


def _verify(rsa_key, signature_b64, message):
    rsa_key.public_key().verify(
        base64.b64decode(signature_b64),
        message.encode("utf-8"),
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=32),
        hashes.SHA256(),
    )


class TestSigning:

    def test_signature_verifies(self, rsa_key, pem):
        client = _client(pem, MagicMock(), use_demo=True)

        headers = client.signed_headers("GET", "/portfolio/balance", timestamp="1700000000")

        assert headers["KALSHI-ACCESS-KEY"] == "key-123"
        assert headers["KALSHI-ACCESS-TIMESTAMP"] == "1700000000"
        _verify(rsa_key, headers["KALSHI-ACCESS-SIGNATURE"], "1700000000GET/portfolio/balance")

    def test_signature_covers_body(self, rsa_key, pem):
        client = _client(pem, MagicMock(), use_demo=True)
        headers = client.signed_headers("POST", "/portfolio/orders", body='{"count":1}', timestamp="1")

        with pytest.raises(InvalidSignature):
            _verify(rsa_key, headers["KALSHI-ACCESS-SIGNATURE"], '1POST/portfolio/orders{"count":2}')

    def test_canonical_message(self):
        assert canonical_message("1", "post", "/x", "{}") == "1POST/x{}"

    def test_escaped_newlines_accepted(self, pem):
        single_line = pem.replace("\n", "\\n")
        assert load_private_key(single_line) is not None

    def test_garbage_key_raises(self):
        with pytest.raises(SigningError):
            load_private_key("not a key")


class TestConfiguration:

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("KALSHI_API_KEY_ID", raising=False)
        monkeypatch.delenv("KALSHI_PRIVATE_KEY", raising=False)
        with pytest.raises(ValueError):
            TradingVenueClient()

    def test_demo_from_env(self, pem, monkeypatch):
        monkeypatch.setenv("KALSHI_USE_DEMO", "true")
        client = _client(pem, MagicMock())
        assert client.is_demo
        assert client.base_url == DEMO_BASE_URL

    def test_prod_by_default(self, pem, monkeypatch):
        monkeypatch.delenv("KALSHI_USE_DEMO", raising=False)
        assert _client(pem, MagicMock()).base_url == PROD_BASE_URL


class TestRequests:

    def test_create_order_payload(self, rsa_key, pem):
        session = MagicMock()
        session.request.return_value = _make_response(201, {"order": {"order_id": "o-1", "status": "resting"}})
        client = _client(pem, session, use_demo=True)

        response = client.create_order("KXNBATOTAL-20240115", "no", 14, 68, client_order_id="cid-1")

        assert response["order"]["order_id"] == "o-1"
        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "POST"
        assert url == f"{DEMO_BASE_URL}/portfolio/orders"
        body = json.loads(kwargs["data"])
        assert body == {
            "ticker": "KXNBATOTAL-20240115",
            "action": "buy",
            "side": "no",
            "type": "limit",
            "count": 14,
            "no_price": 68,
            "client_order_id": "cid-1",
        }
        headers = kwargs["headers"]
        _verify(
            rsa_key,
            headers["KALSHI-ACCESS-SIGNATURE"],
            headers["KALSHI-ACCESS-TIMESTAMP"] + "POST/portfolio/orders" + kwargs["data"],
        )

    def test_post_is_never_retried(self, pem):
        session = MagicMock()
        session.request.return_value = _make_response(503)

        with pytest.raises(TradingVenueError) as exc_info:
            _client(pem, session, use_demo=True).create_order("T", "yes", 1, 50)

        assert exc_info.value.status_code == 503
        assert session.request.call_count == 1

    def test_get_is_retried(self, pem):
        session = MagicMock()
        session.request.side_effect = [_make_response(503), _make_response(200, {"balance": 12345})]

        balance = _client(pem, session, use_demo=True).get_balance()

        assert balance == {"balance": 12345}
        assert session.request.call_count == 2

    def test_get_gives_up(self, pem):
        session = MagicMock()
        session.request.return_value = _make_response(429)

        with pytest.raises(TradingVenueError):
            _client(pem, session, use_demo=True).get_positions()

        assert session.request.call_count == 3

    def test_client_error_not_retried(self, pem):
        session = MagicMock()
        session.request.return_value = _make_response(401, {"error": "unauthorized"})

        with pytest.raises(TradingVenueError) as exc_info:
            _client(pem, session, use_demo=True).get_balance()

        assert exc_info.value.status_code == 401
        assert session.request.call_count == 1

    def test_positions_list(self, pem):
        session = MagicMock()
        session.request.return_value = _make_response(200, {"market_positions": [{"ticker": "T", "position": 3}]})
        assert _client(pem, session, use_demo=True).get_positions() == [{"ticker": "T", "position": 3}]

    def test_non_json_body_is_venue_error(self, pem):
        response = _make_response(200)
        response.content = b"<html>maintenance</html>"
        response.text = "<html>maintenance</html>"
        response.json.side_effect = ValueError("Expecting value")
        session = MagicMock()
        session.request.return_value = response

        with pytest.raises(TradingVenueError, match="non-JSON"):
            _client(pem, session, use_demo=True).create_order("T", "yes", 1, 50)

    def test_list_payload_is_venue_error(self, pem):
        session = MagicMock()
        session.request.return_value = _make_response(200, [{"order_id": "x"}])

        with pytest.raises(TradingVenueError, match="unexpected payload"):
            _client(pem, session, use_demo=True).create_order("T", "yes", 1, 50)

    def test_invalid_side(self, pem):
        with pytest.raises(ValueError):
            _client(pem, MagicMock(), use_demo=True).create_order("T", "maybe", 1, 50)
