"""Access token cache for the payment gateway.

Lookup order on every call:

1. The in-memory token, when it is still valid beyond the refresh buffer.
   This path takes no lock and does not touch the database.
2. The newest active row in the ``access_tokens`` table.
3. A fresh token from the gateway. Only one refresh is ever in flight per
   process; concurrent callers wait on the same lock and then reuse the
   token the winner stored.

Tokens are treated as expired ``REFRESH_BUFFER_SECONDS`` before the
gateway-reported expiry, so a token is never handed out for a request that
could outlive it.
"""

import asyncio
import base64
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import GatewaySettings
from ..database import AccessTokenRepository, get_db_context, utcnow
from ..exceptions import GatewayAuthError, GatewayRequestError
from .transport import GatewayTransport, classify_error, is_success, parse_json

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
REFRESH_BUFFER_SECONDS = 300
MIN_TOKEN_LENGTH = 20


class TokenState(str, enum.Enum):
    """Where the cache stands.

    SUPERSEDED covers "no usable token held": the initial state, after an
    invalidation, and after a failed refresh.
    """
    FETCHING = "fetching"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: datetime
    token_id: Optional[int] = None

    def is_usable(self, now: datetime, buffer_seconds: int = REFRESH_BUFFER_SECONDS) -> bool:
        return (
            len(self.value) > MIN_TOKEN_LENGTH
            and self.expires_at > now + timedelta(seconds=buffer_seconds)
        )


class TokenCache:
    """Hands out a valid bearer token, refreshing it at most once at a time."""

    def __init__(
        self,
        settings: GatewaySettings,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        transport: Optional[GatewayTransport] = None,
        clock: Callable[[], datetime] = utcnow,
        buffer_seconds: int = REFRESH_BUFFER_SECONDS,
    ):
        """Initialize the cache.

        Args:
            settings: Gateway credentials and base URL.
            session_factory: Session factory for the token table. Defaults to
                the global factory created by init_db().
            transport: HTTP transport. Defaults to one using the settings timeout.
            clock: Returns naive UTC "now"; injectable for expiry tests.
            buffer_seconds: Safety margin before the reported expiry.
        """
        self.settings = settings
        self._session_factory = session_factory
        self.transport = transport or GatewayTransport(settings.timeout_seconds)
        self._clock = clock
        self.buffer_seconds = buffer_seconds

        self._lock = asyncio.Lock()
        self._current: Optional[CachedToken] = None
        self._rejected_token_id: Optional[int] = None
        self.state = TokenState.SUPERSEDED

    async def get_valid_token(self) -> str:
        """Return a token valid for at least the buffer window.

        Raises:
            GatewayAuthError: Credentials rejected or no usable token returned.
            GatewayConfigError: Gateway rejected the token request as malformed.
            GatewayTimeoutError: Token endpoint did not answer in time.
            GatewayRequestError: Any other token endpoint failure.
        """
        cached = self._current
        if cached is not None and cached.is_usable(self._clock(), self.buffer_seconds):
            return cached.value

        async with self._lock:
            # Another caller may have refreshed while we waited.
            now = self._clock()
            cached = self._current
            if cached is not None and cached.is_usable(now, self.buffer_seconds):
                return cached.value

            stored = await self._load_stored(now)
            if stored is not None:
                self._activate(stored)
                logger.debug(f"Reusing stored access token {stored.token_id}")
                return stored.value

            return await self._refresh()

    def invalidate(self) -> None:
        """Drop the in-memory token after the gateway rejected it.

        The stored row is superseded on the next refresh, which happens on the
        next get_valid_token() call.
        """
        if self._current is not None:
            logger.warning("Access token rejected by gateway, invalidating cached token")
            self._rejected_token_id = self._current.token_id
        self._current = None
        self.state = TokenState.SUPERSEDED

    def _activate(self, token: CachedToken) -> None:
        self._current = token
        self.state = TokenState.ACTIVE

    async def _load_stored(self, now: datetime) -> Optional[CachedToken]:
        async with get_db_context(self._session_factory) as session:
            repo = AccessTokenRepository(session)
            row = await repo.get_current()
            if row is None:
                return None
            if row.is_usable(now, self.buffer_seconds) and row.id != self._rejected_token_id:
                return CachedToken(row.access_token, row.expires_at, row.id)
            await repo.deactivate(row.id, now)
            logger.info(f"Deactivated stale access token {row.id}")
            return None

    async def _refresh(self) -> str:
        self.state = TokenState.FETCHING
        try:
            value, lifetime = await self._request_token()
            now = self._clock()
            expires_at = now + timedelta(seconds=lifetime)
            async with get_db_context(self._session_factory) as session:
                repo = AccessTokenRepository(session)
                superseded = await repo.deactivate_all(now)
                row = await repo.create(value, expires_at, created_at=now)
                token_id = row.id
        except Exception:
            self._current = None
            self.state = TokenState.SUPERSEDED
            raise

        self._activate(CachedToken(value, expires_at, token_id))
        logger.info(
            f"Obtained new access token {token_id} valid for {lifetime}s "
            f"(superseded {superseded})"
        )
        return value

    async def _request_token(self) -> Tuple[str, int]:
        credentials = f"{self.settings.consumer_key}:{self.settings.consumer_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")

        response = await self.transport.request(
            "GET",
            f"{self.settings.base_url}{TOKEN_PATH}",
            headers={"Authorization": f"Basic {encoded}"},
            params={"grant_type": "client_credentials"},
        )
        if not is_success(response):
            logger.error(f"Token request failed with status {response.status_code}")
            raise classify_error(response, "Token request")

        body = parse_json(response, "Token request")
        value = body.get("access_token") or ""
        if len(value) <= MIN_TOKEN_LENGTH:
            raise GatewayAuthError(
                "Gateway returned no usable access token",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            lifetime = int(str(body.get("expires_in")).strip())
        except (TypeError, ValueError) as e:
            raise GatewayRequestError(
                f"Unparseable token lifetime: {body.get('expires_in')!r}",
                status_code=response.status_code,
                body=response.text,
            ) from e
        return value, lifetime
