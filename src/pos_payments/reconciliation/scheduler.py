"""Periodic expiry and matcher sweeps on independent timers."""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import GatewaySettings
from ..database import get_db_context, utcnow
from ..registry import QRPaymentRegistry
from .matcher import ReconciliationMatcher
from .models import MatchReport

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs ``expire_stale`` and a matcher pass, each on its own interval.

    A failing sweep is logged and retried on the next tick; it never stops
    the other sweep or the loop itself.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        expire_interval_seconds: float = 60.0,
        match_interval_seconds: float = 120.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.expire_interval_seconds = expire_interval_seconds
        self.match_interval_seconds = match_interval_seconds
        self._clock = clock
        self._tasks: List[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> "SweepScheduler":
        return cls(
            session_factory=session_factory,
            expire_interval_seconds=settings.expire_interval_seconds,
            match_interval_seconds=settings.match_interval_seconds,
        )

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def run_expire_once(self) -> int:
        async with get_db_context(self._session_factory) as session:
            return await QRPaymentRegistry(session, clock=self._clock).expire_stale()

    async def run_match_once(self) -> MatchReport:
        async with get_db_context(self._session_factory) as session:
            return await ReconciliationMatcher(session, clock=self._clock).run_pass()

    def start(self) -> None:
        """Start both sweeps as background tasks on the running loop."""
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(
                self._loop("expire", self.expire_interval_seconds, self.run_expire_once)
            ),
            asyncio.create_task(
                self._loop("match", self.match_interval_seconds, self.run_match_once)
            ),
        ]
        logger.info(
            f"Sweeps started (expire every {self.expire_interval_seconds}s, "
            f"match every {self.match_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Signal both sweeps to stop and wait for them to finish."""
        if self._stopping is not None:
            self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Sweeps stopped")
        self._tasks = []

    async def _loop(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[object]],
    ) -> None:
        consecutive_failures = 0
        while not self._stopping.is_set():
            try:
                await job()
                if consecutive_failures > 0:
                    logger.info(f"{name} sweep recovered after {consecutive_failures} failures")
                consecutive_failures = 0
            except Exception as e:
                consecutive_failures += 1
                if consecutive_failures == 1 or consecutive_failures % 10 == 0:
                    logger.error(f"{name} sweep failed ({consecutive_failures} consecutive): {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
