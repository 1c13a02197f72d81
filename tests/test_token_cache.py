"""Tests for the gateway access token cache."""

import asyncio
import base64
from datetime import timedelta
from unittest.mock import patch

import pytest
import requests
from sqlalchemy import select

from pos_payments.database import AccessToken, AccessTokenRepository, get_db_context
from pos_payments.exceptions import (
    GatewayAuthError,
    GatewayConfigError,
    GatewayRequestError,
    GatewayTimeoutError,
)
from pos_payments.gateway import TokenCache, TokenState, GatewayTransport

from conftest import VALID_TOKEN, make_response, token_response

REQUEST_PATH = "pos_payments.gateway.transport.requests.request"


@pytest.fixture
def cache(settings, session_factory, clock):
    return TokenCache(
        settings,
        session_factory=session_factory,
        transport=GatewayTransport(settings.timeout_seconds),
        clock=clock,
    )


async def _all_tokens(session_factory):
    async with get_db_context(session_factory) as session:
        result = await session.execute(select(AccessToken).order_by(AccessToken.id))
        return list(result.scalars().all())


class TestTokenFetch:
    """Tests for obtaining a token from the gateway."""

    async def test_fetches_and_stores_token(self, cache, settings, session_factory, clock):
        """A cold cache fetches a token with Basic auth and persists it."""
        with patch(REQUEST_PATH, return_value=token_response()) as mock_request:
            token = await cache.get_valid_token()

        assert token == VALID_TOKEN
        assert cache.state == TokenState.ACTIVE

        args, kwargs = mock_request.call_args
        assert args[0] == "GET"
        assert args[1] == "https://sandbox.example.com/oauth/v1/generate"
        assert kwargs["params"] == {"grant_type": "client_credentials"}
        expected = base64.b64encode(b"test_consumer_key:test_consumer_secret").decode()
        assert kwargs["headers"]["Authorization"] == f"Basic {expected}"
        assert kwargs["timeout"] == settings.timeout_seconds

        rows = await _all_tokens(session_factory)
        assert len(rows) == 1
        assert rows[0].is_active is True
        assert rows[0].expires_at == clock.now + timedelta(seconds=3599)

    async def test_second_call_reuses_token(self, cache):
        """Inside the validity window the same token is returned without a second call."""
        with patch(REQUEST_PATH, return_value=token_response()) as mock_request:
            first = await cache.get_valid_token()
            second = await cache.get_valid_token()

        assert first == second
        assert mock_request.call_count == 1

    async def test_reuses_stored_token(self, settings, session_factory, clock):
        """A fresh cache picks up a still-valid token from the database."""
        async with get_db_context(session_factory) as session:
            await AccessTokenRepository(session).create(
                "stored_" + "b" * 30, clock.now + timedelta(hours=1), created_at=clock.now
            )

        cache = TokenCache(settings, session_factory=session_factory, clock=clock)
        with patch(REQUEST_PATH) as mock_request:
            token = await cache.get_valid_token()

        assert token == "stored_" + "b" * 30
        mock_request.assert_not_called()

    async def test_stale_stored_token_is_replaced(self, cache, session_factory, clock):
        """An expired stored token is deactivated and a new one fetched."""
        async with get_db_context(session_factory) as session:
            await AccessTokenRepository(session).create(
                "expired_" + "c" * 30, clock.now - timedelta(minutes=1),
                created_at=clock.now - timedelta(hours=1),
            )

        with patch(REQUEST_PATH, return_value=token_response()):
            token = await cache.get_valid_token()

        assert token == VALID_TOKEN
        rows = await _all_tokens(session_factory)
        assert [r.is_active for r in rows] == [False, True]
        assert rows[0].superseded_at == clock.now

    async def test_refresh_supersedes_previous_tokens(self, cache, session_factory, clock):
        """After a refresh exactly one row is active."""
        with patch(REQUEST_PATH, return_value=token_response("first_" + "d" * 30)):
            await cache.get_valid_token()

        clock.advance(seconds=3599)
        with patch(REQUEST_PATH, return_value=token_response("second_" + "e" * 30)):
            token = await cache.get_valid_token()

        assert token == "second_" + "e" * 30
        rows = await _all_tokens(session_factory)
        assert [r.is_active for r in rows] == [False, True]


class TestRefreshBuffer:
    """Tests for the 5 minute safety buffer."""

    async def test_valid_one_second_outside_buffer(self, cache, clock):
        """A token expiring at now + 5min + 1s is still handed out."""
        with patch(REQUEST_PATH, return_value=token_response(expires_in="3600")) as mock_request:
            await cache.get_valid_token()
            clock.advance(seconds=3600 - 301)
            await cache.get_valid_token()

        assert mock_request.call_count == 1

    async def test_refreshed_one_second_inside_buffer(self, cache, clock):
        """A token expiring at now + 4min59s triggers a refresh."""
        with patch(REQUEST_PATH, return_value=token_response(expires_in="3600")) as mock_request:
            await cache.get_valid_token()
            clock.advance(seconds=3600 - 299)
            await cache.get_valid_token()

        assert mock_request.call_count == 2


class TestSingleFlight:
    """Tests for concurrent refresh de-duplication."""

    async def test_concurrent_misses_make_one_gateway_call(self, cache):
        """Two callers missing the cache at once share one refresh."""
        with patch(REQUEST_PATH, return_value=token_response()) as mock_request:
            tokens = await asyncio.gather(
                cache.get_valid_token(),
                cache.get_valid_token(),
                cache.get_valid_token(),
            )

        assert tokens == [VALID_TOKEN] * 3
        assert mock_request.call_count == 1


class TestInvalidate:
    """Tests for dropping a rejected token."""

    async def test_invalidate_forces_refresh(self, cache, session_factory):
        """After invalidate() the rejected token is not reused, even from storage."""
        with patch(REQUEST_PATH, return_value=token_response("rejected_" + "f" * 30)):
            await cache.get_valid_token()

        cache.invalidate()
        assert cache.state == TokenState.SUPERSEDED

        with patch(REQUEST_PATH, return_value=token_response("replacement_" + "g" * 30)) as mock_request:
            token = await cache.get_valid_token()

        assert token == "replacement_" + "g" * 30
        assert mock_request.call_count == 1
        rows = await _all_tokens(session_factory)
        assert [r.is_active for r in rows] == [False, True]


class TestTokenErrors:
    """Tests for token endpoint failure classification."""

    @pytest.mark.parametrize(
        "status_code,error",
        [
            (401, GatewayAuthError),
            (400, GatewayConfigError),
            (503, GatewayRequestError),
        ],
    )
    async def test_status_classification(self, cache, status_code, error):
        """Non-2xx answers map onto the error taxonomy."""
        with patch(REQUEST_PATH, return_value=make_response(status_code, text="denied")):
            with pytest.raises(error) as exc_info:
                await cache.get_valid_token()

        assert exc_info.value.status_code == status_code
        assert exc_info.value.body == "denied"
        assert cache.state == TokenState.SUPERSEDED

    async def test_timeout(self, cache):
        """A timed-out token request raises GatewayTimeoutError."""
        with patch(REQUEST_PATH, side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(GatewayTimeoutError):
                await cache.get_valid_token()

    async def test_connection_error(self, cache):
        """A connection failure raises GatewayRequestError."""
        with patch(REQUEST_PATH, side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(GatewayRequestError):
                await cache.get_valid_token()

    @pytest.mark.parametrize("token", ["", "short_token"])
    async def test_implausible_token(self, cache, session_factory, token):
        """An empty or short token in a 2xx body is an auth failure and is not stored."""
        with patch(REQUEST_PATH, return_value=token_response(token)):
            with pytest.raises(GatewayAuthError):
                await cache.get_valid_token()

        assert await _all_tokens(session_factory) == []

    async def test_unparseable_lifetime(self, cache):
        """A non-numeric expires_in is rejected."""
        with patch(REQUEST_PATH, return_value=token_response(expires_in="soon")):
            with pytest.raises(GatewayRequestError):
                await cache.get_valid_token()
