"""Repository layer for mobile-money persistence operations.

State transitions are single conditional UPDATE statements (compare-and-swap
on the current status or version), so two writers racing on the same row
cannot both succeed: the loser sees a rowcount of zero.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AccessToken,
    QRPayment,
    QRPaymentStatus,
    ManualEntry,
    ManualEntryStatus,
    UnmatchedTransaction,
    utcnow,
)

logger = logging.getLogger(__name__)


class AccessTokenRepository:
    """Repository for the rolling single-active-row AccessToken table."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_current(self) -> Optional[AccessToken]:
        """Get the newest active token, if any."""
        result = await self.session.execute(
            select(AccessToken)
            .where(AccessToken.is_active.is_(True))
            .order_by(AccessToken.created_at.desc(), AccessToken.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def deactivate_all(self, now: Optional[datetime] = None) -> int:
        """Supersede every active token.

        Returns:
            Number of rows deactivated.
        """
        result = await self.session.execute(
            update(AccessToken)
            .where(AccessToken.is_active.is_(True))
            .values(is_active=False, superseded_at=now or utcnow())
        )
        return result.rowcount

    async def deactivate(self, token_id: int, now: Optional[datetime] = None) -> bool:
        """Supersede a single token by id."""
        result = await self.session.execute(
            update(AccessToken)
            .where(AccessToken.id == token_id, AccessToken.is_active.is_(True))
            .values(is_active=False, superseded_at=now or utcnow())
        )
        return result.rowcount == 1

    async def create(
        self,
        access_token: str,
        expires_at: datetime,
        token_type: str = "Bearer",
        created_at: Optional[datetime] = None,
    ) -> AccessToken:
        """Persist a new active token."""
        token = AccessToken(
            access_token=access_token,
            token_type=token_type,
            expires_at=expires_at,
            created_at=created_at or utcnow(),
            is_active=True,
        )
        self.session.add(token)
        await self.session.flush()
        logger.debug(f"Stored access token {token.id} expiring at {expires_at.isoformat()}")
        return token


class QRPaymentRepository:
    """Repository for QRPayment CRUD and status transitions."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        reference: str,
        amount: Decimal,
        created_by_user_id: int,
        created_at: datetime,
        expires_at: datetime,
        customer_phone: Optional[str] = None,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
        till_number: Optional[str] = None,
    ) -> QRPayment:
        """Create a pending QR payment."""
        payment = QRPayment(
            reference=reference,
            amount=amount,
            created_by_user_id=created_by_user_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
            description=description,
            till_number=till_number,
            created_at=created_at,
            expires_at=expires_at,
            status=QRPaymentStatus.PENDING.value,
        )
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_by_reference(self, reference: str) -> Optional[QRPayment]:
        """Get a QR payment by its reference."""
        result = await self.session.execute(
            select(QRPayment).where(QRPayment.reference == reference)
        )
        return result.scalar_one_or_none()

    async def reference_exists(self, reference: str) -> bool:
        result = await self.session.execute(
            select(QRPayment.id).where(QRPayment.reference == reference)
        )
        return result.first() is not None

    async def mark_paid(
        self,
        reference: str,
        receipt_number: str,
        transaction_code: str,
        paid_at: datetime,
    ) -> bool:
        """Pending -> Paid compare-and-swap.

        Returns:
            True only for the caller whose update moved the row out of pending.
        """
        result = await self.session.execute(
            update(QRPayment)
            .where(
                QRPayment.reference == reference,
                QRPayment.status == QRPaymentStatus.PENDING.value,
            )
            .values(
                status=QRPaymentStatus.PAID.value,
                paid_at=paid_at,
                receipt_number=receipt_number,
                transaction_code=transaction_code,
            )
        )
        return result.rowcount == 1

    async def set_sale(
        self,
        reference: str,
        sale_id: int,
        required_status: Optional[str] = None,
    ) -> bool:
        """Record the sale association, optionally only from a given status."""
        stmt = update(QRPayment).where(QRPayment.reference == reference)
        if required_status is not None:
            stmt = stmt.where(QRPayment.status == required_status)
        result = await self.session.execute(stmt.values(sale_id=sale_id))
        return result.rowcount == 1

    async def expire_stale(self, now: datetime) -> int:
        """Pending rows past their expiry -> Expired.

        Returns:
            Number of rows expired.
        """
        result = await self.session.execute(
            update(QRPayment)
            .where(
                QRPayment.status == QRPaymentStatus.PENDING.value,
                QRPayment.expires_at <= now,
            )
            .values(status=QRPaymentStatus.EXPIRED.value)
        )
        return result.rowcount

    async def list_pending(
        self,
        now: datetime,
        limit: int = 100,
        oldest_first: bool = False,
    ) -> List[QRPayment]:
        """List pending QR payments that have not yet expired."""
        order = QRPayment.created_at.asc() if oldest_first else QRPayment.created_at.desc()
        result = await self.session.execute(
            select(QRPayment)
            .where(
                QRPayment.status == QRPaymentStatus.PENDING.value,
                QRPayment.expires_at > now,
            )
            .order_by(order, QRPayment.id)
            .limit(limit)
        )
        return list(result.scalars().all())


class ManualEntryRepository:
    """Repository for ManualEntry CRUD and status transitions."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        raw_message: str,
        entered_by_user_id: int,
        fields: Dict[str, Any],
    ) -> ManualEntry:
        """Create a pending manual entry from parsed fields.

        Args:
            raw_message: Unparsed confirmation text as pasted by the cashier.
            entered_by_user_id: Cashier user id.
            fields: Parsed column values (transaction_code, amount, ...).
        """
        missing_fields = fields.pop("missing_fields", None)
        entry = ManualEntry(
            raw_message=raw_message,
            entered_by_user_id=entered_by_user_id,
            status=ManualEntryStatus.PENDING.value,
            **fields,
        )
        entry.missing_fields = missing_fields
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_id(self, entry_id: int) -> Optional[ManualEntry]:
        result = await self.session.execute(
            select(ManualEntry).where(ManualEntry.id == entry_id)
        )
        return result.scalar_one_or_none()

    async def get_by_transaction_code(self, transaction_code: str) -> Optional[ManualEntry]:
        result = await self.session.execute(
            select(ManualEntry)
            .where(ManualEntry.transaction_code == transaction_code.upper())
            .order_by(ManualEntry.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        entry_id: int,
        from_status: str,
        values: Dict[str, Any],
    ) -> bool:
        """Apply ``values`` only if the entry is still in ``from_status``."""
        result = await self.session.execute(
            update(ManualEntry)
            .where(ManualEntry.id == entry_id, ManualEntry.status == from_status)
            .values(**values)
        )
        return result.rowcount == 1

    async def list_by_status(
        self,
        statuses: List[str],
        limit: int = 100,
    ) -> List[ManualEntry]:
        result = await self.session.execute(
            select(ManualEntry)
            .where(ManualEntry.status.in_(statuses))
            .order_by(ManualEntry.created_at.desc(), ManualEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class UnmatchedTransactionRepository:
    """Repository for the unmatched-transaction store."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        transaction_code: str,
        amount: Decimal,
        received_at: Optional[datetime] = None,
        till_number: Optional[str] = None,
        phone_number: Optional[str] = None,
        customer_name: Optional[str] = None,
        sale_id: Optional[int] = None,
    ) -> UnmatchedTransaction:
        """Record a gateway-confirmed transaction (callback ingester entry point)."""
        txn = UnmatchedTransaction(
            transaction_code=transaction_code,
            amount=amount,
            received_at=received_at or utcnow(),
            till_number=till_number,
            phone_number=phone_number,
            customer_name=customer_name,
            sale_id=sale_id,
            is_used=sale_id is not None,
            version=0,
        )
        self.session.add(txn)
        await self.session.flush()
        logger.info(f"Recorded unmatched transaction {transaction_code} for {amount}")
        return txn

    async def get_by_code(self, transaction_code: str) -> Optional[UnmatchedTransaction]:
        result = await self.session.execute(
            select(UnmatchedTransaction)
            .where(UnmatchedTransaction.transaction_code == transaction_code)
        )
        return result.scalar_one_or_none()

    async def list_unconsumed(self, limit: int = 500) -> List[UnmatchedTransaction]:
        """Unconsumed transactions, earliest received first."""
        result = await self.session.execute(
            select(UnmatchedTransaction)
            .where(UnmatchedTransaction.sale_id.is_(None))
            .order_by(UnmatchedTransaction.received_at.asc(), UnmatchedTransaction.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def consume(
        self,
        txn_id: int,
        expected_version: int,
        sale_id: int,
        matched_reference: Optional[str] = None,
    ) -> bool:
        """Claim a transaction if nobody else has since ``expected_version``."""
        result = await self.session.execute(
            update(UnmatchedTransaction)
            .where(
                UnmatchedTransaction.id == txn_id,
                UnmatchedTransaction.version == expected_version,
                UnmatchedTransaction.sale_id.is_(None),
            )
            .values(
                sale_id=sale_id,
                is_used=True,
                matched_reference=matched_reference,
                version=expected_version + 1,
            )
        )
        return result.rowcount == 1

    async def release(self, txn_id: int, expected_version: int) -> bool:
        """Undo a claim made at ``expected_version - 1``."""
        result = await self.session.execute(
            update(UnmatchedTransaction)
            .where(
                UnmatchedTransaction.id == txn_id,
                UnmatchedTransaction.version == expected_version,
            )
            .values(
                sale_id=None,
                is_used=False,
                matched_reference=None,
                version=expected_version + 1,
            )
        )
        return result.rowcount == 1
