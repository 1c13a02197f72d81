"""Mobile-money service layer used by the sale flow and the HTTP API."""

import base64
import logging
from datetime import datetime
from decimal import Decimal
from io import BytesIO
from typing import Callable, Optional, Dict, Any, List

import qrcode
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .config import GatewaySettings
from .database import (
    ManualEntry,
    QRPayment,
    QRPaymentStatus,
    UnmatchedTransaction,
    UnmatchedTransactionRepository,
    utcnow,
)
from .exceptions import GatewayConfigError, GatewayError, InvalidStateError, NotFoundError
from .gateway import PaymentGatewayClient, PushResult
from .manual_entries import ManualEntryService
from .reconciliation import MatchReport, ReconciliationMatcher
from .registry import QRPaymentRegistry, build_qr_payload

logger = logging.getLogger(__name__)


def render_qr_png_base64(payload: str) -> str:
    """Render ``payload`` as a PNG QR code, base64 encoded."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class QRPaymentTicket(BaseModel):
    """What the till needs to display a QR payment."""
    reference: str = Field(..., description="QR payment reference")
    amount: Decimal = Field(..., description="Amount to pay")
    till_number: Optional[str] = Field(None, description="Payee till or shortcode")
    payload: str = Field(..., description="Text encoded in the code")
    qr_image_base64: str = Field(..., description="PNG image, base64 encoded")
    image_source: str = Field(default="local", description="'local' or 'gateway'")
    created_at: datetime
    expires_at: datetime


class MobileMoneyService:
    """Facade over the gateway client, QR registry, manual entries and matcher.

    Bound to one database session. Gateway-backed operations require a
    PaymentGatewayClient; the rest work without one.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: GatewaySettings,
        gateway: Optional[PaymentGatewayClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the service with a database session.

        Args:
            session: AsyncSession instance for database operations.
            settings: Gateway and QR settings.
            gateway: Gateway client for push, status and QR generation calls.
            clock: Returns naive UTC "now".
        """
        self.session = session
        self.settings = settings
        self.gateway = gateway
        self._clock = clock
        self.registry = QRPaymentRegistry.from_settings(session, settings, clock=clock)
        self.manual_entries = ManualEntryService(session, clock=clock)
        self.transactions = UnmatchedTransactionRepository(session)

    def _require_gateway(self) -> PaymentGatewayClient:
        if self.gateway is None:
            raise GatewayConfigError("Payment gateway client is not configured")
        return self.gateway

    # Push payments

    async def request_push(
        self,
        phone: str,
        amount: Decimal,
        account_reference: str,
        description: str,
    ) -> PushResult:
        return await self._require_gateway().initiate_stk_push(
            phone, amount, account_reference, description
        )

    async def query_push_status(self, checkout_request_id: str) -> Dict[str, Any]:
        return await self._require_gateway().query_status(checkout_request_id)

    # QR payments

    async def create_qr_payment(
        self,
        amount: Decimal,
        created_by_user_id: int,
        customer_phone: Optional[str] = None,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
        use_gateway_qr: bool = False,
    ) -> QRPaymentTicket:
        """Create a pending QR payment and render its code.

        With ``use_gateway_qr`` the image comes from the gateway's QR endpoint;
        if that call fails the code is rendered locally instead.
        """
        if not self.settings.payee_identifier:
            raise GatewayConfigError("No till number or shortcode configured for QR payments")
        payment = await self.registry.create(
            amount=amount,
            created_by_user_id=created_by_user_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
            description=description,
        )
        payload = build_qr_payload(
            payment.till_number or self.settings.payee_identifier,
            payment.amount,
            payment.reference,
            self.settings.merchant_name,
        )

        image = None
        source = "local"
        if use_gateway_qr:
            try:
                response = await self._require_gateway().generate_qr_code(
                    self.settings.merchant_name, payment.reference, payment.amount
                )
                image = response.get("QRCode")
                source = "gateway"
            except GatewayError as e:
                logger.warning(f"Gateway QR generation failed for {payment.reference}, rendering locally: {e}")
        if not image:
            image = render_qr_png_base64(payload)
            source = "local"

        return QRPaymentTicket(
            reference=payment.reference,
            amount=payment.amount,
            till_number=payment.till_number,
            payload=payload,
            qr_image_base64=image,
            image_source=source,
            created_at=payment.created_at,
            expires_at=payment.expires_at,
        )

    async def confirm_qr_payment(
        self,
        reference: str,
        receipt_number: str,
        transaction_code: str,
    ) -> bool:
        """Gateway confirmation path; False for duplicates and unknown references."""
        return await self.registry.mark_paid(reference, receipt_number, transaction_code)

    async def get_qr_status(self, reference: str) -> QRPayment:
        """Current state of a QR payment, after giving the matcher a chance.

        Raises:
            NotFoundError: Unknown reference.
        """
        payment = await self.registry.get(reference)
        if payment is None:
            raise NotFoundError(f"QR payment {reference} not found")
        if payment.status == QRPaymentStatus.PENDING.value:
            await self.run_matcher()
            await self.session.refresh(payment)
        return payment

    async def list_pending_qr_payments(self, limit: int = 100) -> List[QRPayment]:
        return await self.registry.list_pending(limit=limit)

    async def expire_stale_qr_payments(self) -> int:
        return await self.registry.expire_stale()

    # Manual entries

    async def submit_manual_receipt(self, raw_message: str, user_id: int) -> int:
        """Store a pasted confirmation for supervisor verification.

        Returns:
            The new manual entry id.
        """
        entry = await self.manual_entries.create_entry(raw_message, user_id)
        return entry.id

    async def get_manual_entry(self, entry_id: int) -> ManualEntry:
        entry = await self.manual_entries.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Manual entry {entry_id} not found")
        return entry

    async def verify_manual_receipt(
        self,
        entry_id: int,
        accept: bool,
        notes: Optional[str] = None,
    ) -> ManualEntry:
        """Supervisor decision on a pending entry.

        Raises:
            NotFoundError: Unknown entry id.
            InvalidStateError: Entry already verified or rejected.
        """
        entry = await self.get_manual_entry(entry_id)
        if not await self.manual_entries.verify(entry_id, accept, notes):
            raise InvalidStateError(f"Manual entry {entry_id} is {entry.status}, not pending")
        await self.session.refresh(entry)
        return entry

    async def list_pending_manual_entries(self, limit: int = 100) -> List[ManualEntry]:
        return await self.manual_entries.list_pending(limit=limit)

    # Sale linking

    async def link_payment_to_sale(
        self,
        sale_id: int,
        reference: Optional[str] = None,
        entry_id: Optional[int] = None,
    ) -> bool:
        """Link a QR payment (by reference) or a manual entry (by id) to a sale.

        Raises:
            ValueError: Neither or both of reference and entry_id given.
            NotFoundError: Unknown reference or entry id.
            InvalidStateError: Record cannot be linked in its current state.
        """
        if (reference is None) == (entry_id is None):
            raise ValueError("Provide exactly one of reference or entry_id")

        if reference is not None:
            payment = await self.registry.get(reference)
            if payment is None:
                raise NotFoundError(f"QR payment {reference} not found")
            if not await self.registry.link_to_sale(reference, sale_id):
                raise InvalidStateError(f"QR payment {reference} is {payment.status}, cannot link")
            return True

        entry = await self.get_manual_entry(entry_id)
        if not await self.manual_entries.link_to_sale(entry_id, sale_id):
            raise InvalidStateError(f"Manual entry {entry_id} is {entry.status}, not verified")
        return True

    # Reconciliation

    async def record_unmatched_transaction(
        self,
        transaction_code: str,
        amount: Decimal,
        received_at: Optional[datetime] = None,
        till_number: Optional[str] = None,
        phone_number: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> UnmatchedTransaction:
        """Entry point for the callback ingester. Repeated codes are ignored."""
        code = transaction_code.strip().upper()
        existing = await self.transactions.get_by_code(code)
        if existing is not None:
            logger.info(f"Transaction {code} already recorded")
            return existing
        return await self.transactions.create(
            transaction_code=code,
            amount=Decimal(str(amount)),
            received_at=received_at or self._clock(),
            till_number=till_number or self.settings.payee_identifier or None,
            phone_number=phone_number,
            customer_name=customer_name,
        )

    async def run_matcher(self) -> MatchReport:
        matcher = ReconciliationMatcher(self.session, registry=self.registry, clock=self._clock)
        return await matcher.run_pass()

    async def register_callback_urls(self) -> Dict[str, Any]:
        return await self._require_gateway().register_callback_urls()
