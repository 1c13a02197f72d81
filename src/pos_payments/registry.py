"""Registry for short-lived, amount-bound QR payments."""

import enum
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, List

from sqlalchemy.ext.asyncio import AsyncSession

from .config import GatewaySettings
from .database import QRPayment, QRPaymentRepository, QRPaymentStatus, utcnow

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "QR"
REFERENCE_SUFFIX_DIGITS = 8
DEFAULT_TTL_MINUTES = 30
_MAX_REFERENCE_ATTEMPTS = 5


class RedemptionOutcome(str, enum.Enum):
    """Result of an attempt to move a QR payment to paid."""
    PAID = "paid"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"


def generate_reference(now: datetime) -> str:
    """``QR`` + UTC ``yyyyMMddHHmmss`` + 8 random digits."""
    suffix = secrets.randbelow(10 ** REFERENCE_SUFFIX_DIGITS)
    return f"{REFERENCE_PREFIX}{now.strftime('%Y%m%d%H%M%S')}{suffix:0{REFERENCE_SUFFIX_DIGITS}d}"


def build_qr_payload(till_number: str, amount: Decimal, reference: str, merchant_name: str) -> str:
    """Text encoded into the scannable code."""
    return f"Till:{till_number}|Amount:{amount}|Ref:{reference}|Desc:{merchant_name} Payment"


class QRPaymentRegistry:
    """Creates QR payments and moves them through pending -> paid | expired.

    Paid and expired are terminal. Every transition is a conditional UPDATE,
    so concurrent confirmations of the same reference resolve to exactly one
    winner. The registry never commits; callers own the session boundary.
    """

    def __init__(
        self,
        session: AsyncSession,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        till_number: Optional[str] = None,
        require_paid_before_link: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.repo = QRPaymentRepository(session)
        self.ttl = timedelta(minutes=ttl_minutes)
        self.till_number = till_number
        self.require_paid_before_link = require_paid_before_link
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        settings: GatewaySettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> "QRPaymentRegistry":
        return cls(
            session,
            ttl_minutes=settings.qr_ttl_minutes,
            till_number=settings.payee_identifier,
            require_paid_before_link=settings.require_paid_before_link,
            clock=clock,
        )

    async def create(
        self,
        amount: Decimal,
        created_by_user_id: int,
        customer_phone: Optional[str] = None,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> QRPayment:
        """Create a pending QR payment expiring after the TTL.

        Raises:
            ValueError: If the amount is not positive.
            RuntimeError: If no unused reference could be generated.
        """
        amount = Decimal(str(amount)).quantize(Decimal("0.01"))
        if amount <= 0:
            raise ValueError(f"QR payment amount must be positive, got {amount}")

        now = self._clock()
        for _ in range(_MAX_REFERENCE_ATTEMPTS):
            reference = generate_reference(now)
            if not await self.repo.reference_exists(reference):
                break
        else:
            raise RuntimeError("Could not generate a unique QR payment reference")

        payment = await self.repo.create(
            reference=reference,
            amount=amount,
            created_by_user_id=created_by_user_id,
            created_at=now,
            expires_at=now + self.ttl,
            customer_phone=customer_phone,
            customer_name=customer_name,
            description=description,
            till_number=self.till_number,
        )
        logger.info(f"Created QR payment {reference} for {amount}, expires {payment.expires_at.isoformat()}")
        return payment

    async def get(self, reference: str) -> Optional[QRPayment]:
        return await self.repo.get_by_reference(reference)

    async def redeem(
        self,
        reference: str,
        receipt_number: str,
        transaction_code: str,
    ) -> RedemptionOutcome:
        """Pending -> paid, exactly once per reference.

        Unknown and already-resolved references are logged, never raised.
        """
        if await self.repo.mark_paid(reference, receipt_number, transaction_code, self._clock()):
            logger.info(f"QR payment {reference} paid by {transaction_code}")
            return RedemptionOutcome.PAID

        existing = await self.repo.get_by_reference(reference)
        if existing is None:
            logger.warning(f"Redemption for unknown QR reference {reference}")
            return RedemptionOutcome.NOT_FOUND

        logger.warning(
            f"Duplicate redemption of QR payment {reference} by {transaction_code} "
            f"(status {existing.status})"
        )
        return RedemptionOutcome.DUPLICATE

    async def mark_paid(
        self,
        reference: str,
        receipt_number: str,
        transaction_code: str,
    ) -> bool:
        outcome = await self.redeem(reference, receipt_number, transaction_code)
        return outcome is RedemptionOutcome.PAID

    async def link_to_sale(self, reference: str, sale_id: int) -> bool:
        """Associate the payment with a sale.

        With ``require_paid_before_link`` off, a pending payment may be linked
        ahead of confirmation (the sale reserves it).
        """
        required = QRPaymentStatus.PAID.value if self.require_paid_before_link else None
        linked = await self.repo.set_sale(reference, sale_id, required_status=required)
        if linked:
            logger.info(f"Linked QR payment {reference} to sale {sale_id}")
        else:
            logger.warning(f"Could not link QR payment {reference} to sale {sale_id}")
        return linked

    async def expire_stale(self) -> int:
        """Expire pending payments whose expiry has passed."""
        count = await self.repo.expire_stale(self._clock())
        if count:
            logger.info(f"Expired {count} stale QR payments")
        return count

    async def list_pending(self, limit: int = 100, oldest_first: bool = False) -> List[QRPayment]:
        """Pending, unexpired payments, newest first unless ``oldest_first``."""
        return await self.repo.list_pending(self._clock(), limit=limit, oldest_first=oldest_first)
