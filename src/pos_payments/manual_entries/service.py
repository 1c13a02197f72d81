"""Service layer for cashier-transcribed payment confirmations."""

import logging
from datetime import datetime
from typing import Callable, Optional, List

from sqlalchemy.ext.asyncio import AsyncSession

from ..database import ManualEntry, ManualEntryRepository, ManualEntryStatus, utcnow
from .parser import ManualEntryParser

logger = logging.getLogger(__name__)

SUPERVISOR_QUEUE_STATUSES = [
    ManualEntryStatus.PENDING.value,
    ManualEntryStatus.VERIFIED.value,
]


class ManualEntryService:
    """Create, verify and link manual entries.

    Entries move pending -> verified | invalid by a supervisor, then
    verified -> linked once attached to a sale. Transitions are conditional
    updates and return False when the entry is unknown or not in the
    required state.
    """

    def __init__(
        self,
        session: AsyncSession,
        parser: Optional[ManualEntryParser] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the service with a database session.

        Args:
            session: AsyncSession instance for database operations.
            parser: Message parser. Defaults to the standard extractor chain.
            clock: Returns naive UTC "now".
        """
        self.session = session
        self.repo = ManualEntryRepository(session)
        self.parser = parser or ManualEntryParser(clock=clock)
        self._clock = clock

    async def create_entry(self, raw_message: str, entered_by_user_id: int) -> ManualEntry:
        """Parse and store a pasted confirmation as a pending entry.

        Incomplete parses are stored too, flagged ``needs_correction``.

        Raises:
            ValueError: If the message is blank.
        """
        if not raw_message or not raw_message.strip():
            raise ValueError("Payment message must not be empty")

        result = self.parser.parse(raw_message)
        if result.transaction_code:
            existing = await self.repo.get_by_transaction_code(result.transaction_code)
            if existing is not None:
                logger.warning(
                    f"Transaction code {result.transaction_code} already entered "
                    f"as manual entry {existing.id} ({existing.status})"
                )

        entry = await self.repo.create(
            raw_message=raw_message.strip(),
            entered_by_user_id=entered_by_user_id,
            fields=result.to_entry_fields(),
        )
        logger.info(
            f"Created manual entry {entry.id} code={entry.transaction_code or '-'} "
            f"amount={entry.amount} confidence={entry.parse_confidence}"
        )
        return entry

    async def get(self, entry_id: int) -> Optional[ManualEntry]:
        return await self.repo.get_by_id(entry_id)

    async def get_by_transaction_code(self, transaction_code: str) -> Optional[ManualEntry]:
        return await self.repo.get_by_transaction_code(transaction_code)

    async def verify(self, entry_id: int, accept: bool, notes: Optional[str] = None) -> bool:
        """Supervisor decision: pending -> verified (accept) or invalid."""
        status = ManualEntryStatus.VERIFIED if accept else ManualEntryStatus.INVALID
        changed = await self.repo.transition(
            entry_id,
            ManualEntryStatus.PENDING.value,
            {
                "is_verified": accept,
                "verified_at": self._clock(),
                "status": status.value,
                "verification_notes": notes,
            },
        )
        if changed:
            logger.info(f"Manual entry {entry_id} marked {status.value}")
        else:
            logger.warning(f"Manual entry {entry_id} is unknown or no longer pending")
        return changed

    async def link_to_sale(self, entry_id: int, sale_id: int) -> bool:
        """Verified -> linked with the sale id."""
        changed = await self.repo.transition(
            entry_id,
            ManualEntryStatus.VERIFIED.value,
            {"sale_id": sale_id, "status": ManualEntryStatus.LINKED.value},
        )
        if changed:
            logger.info(f"Linked manual entry {entry_id} to sale {sale_id}")
        else:
            logger.warning(f"Manual entry {entry_id} is unknown or not verified, cannot link")
        return changed

    async def list_pending(self, limit: int = 100) -> List[ManualEntry]:
        """Supervisor queue: pending or verified entries, newest first."""
        return await self.repo.list_by_status(SUPERVISOR_QUEUE_STATUSES, limit=limit)

    async def list_with_codes(self, limit: int = 500) -> List[ManualEntry]:
        """Pending, verified or linked entries carrying a transaction code.

        These may still be confirmed by a gateway transaction with the same code.
        """
        statuses = SUPERVISOR_QUEUE_STATUSES + [ManualEntryStatus.LINKED.value]
        entries = await self.repo.list_by_status(statuses, limit=limit)
        return [e for e in entries if e.transaction_code]
