"""Shared test fixtures and configuration."""

import os
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MPESA_CONSUMER_KEY", "test_consumer_key")
os.environ.setdefault("MPESA_CONSUMER_SECRET", "test_consumer_secret")
os.environ.setdefault("MPESA_SHORTCODE", "174379")
os.environ.setdefault("MPESA_PASSKEY", "test_passkey")
os.environ.setdefault("SWEEPS_ENABLED", "false")

from pos_payments.config import GatewaySettings
from pos_payments.database import Base, create_async_engine, get_async_session_factory

VALID_TOKEN = "tok_" + "a" * 40
SAMPLE_MESSAGE = (
    "RK61H8I2Q7 Confirmed. Ksh500.00 received from JOHN DOE 254712345678 "
    "on 12/10/2024 at 2:30 PM"
)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_response(
    status_code: int = 200,
    json_body: Optional[Dict[str, Any]] = None,
    text: Optional[str] = None,
) -> MagicMock:
    """Stand-in for a requests.Response."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    if json_body is not None:
        response.json.return_value = json_body
        response.text = text if text is not None else str(json_body)
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = text or ""
    return response


def token_response(token: str = VALID_TOKEN, expires_in: str = "3599") -> MagicMock:
    return make_response(200, {"access_token": token, "expires_in": expires_in})


@pytest.fixture
def clock():
    """Clock frozen at 2024-12-10 08:00 UTC."""
    return FrozenClock(datetime(2024, 12, 10, 8, 0, 0))


@pytest.fixture
def settings() -> GatewaySettings:
    """Gateway settings without a till number (paybill mode)."""
    return GatewaySettings(
        consumer_key="test_consumer_key",
        consumer_secret="test_consumer_secret",
        shortcode="174379",
        passkey="test_passkey",
        callback_url="https://pos.example.com/mpesa/callback",
        confirmation_url="https://pos.example.com/mpesa/confirm",
        validation_url="https://pos.example.com/mpesa/validate",
        base_url="https://sandbox.example.com",
        timeout_seconds=5,
    )


@pytest.fixture
def till_settings(settings) -> GatewaySettings:
    """Gateway settings with a till number (buy goods mode)."""
    return settings.model_copy(update={"till_number": "6509715"})


@pytest.fixture
def mock_token_cache():
    """Token cache that always hands out the same token."""
    cache = MagicMock()
    cache.get_valid_token = AsyncMock(return_value=VALID_TOKEN)
    cache.invalidate = MagicMock()
    return cache


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine."""
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def file_engine(tmp_path):
    """SQLite database file, for tests that race several sessions."""
    engine = create_async_engine(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'pos_payments.db'}",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    """Session factory handing out one connection per session."""
    return get_async_session_factory(file_engine)
