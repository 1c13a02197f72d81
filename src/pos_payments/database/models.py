"""SQLAlchemy models for mobile-money payment persistence."""

import json
import enum
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Consumer marker for an unmatched transaction claimed by a QR match with no sale.
QR_MATCH_SENTINEL = -1


def utcnow() -> datetime:
    """Naive UTC now, the convention for every timestamp column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class QRPaymentStatus(str, enum.Enum):
    """Lifecycle of a QR payment. PAID and EXPIRED are terminal."""
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"


class ManualEntryStatus(str, enum.Enum):
    """Lifecycle of a manually transcribed confirmation."""
    PENDING = "pending"
    VERIFIED = "verified"
    INVALID = "invalid"
    LINKED = "linked"


class AccessToken(Base):
    """Gateway access token. Superseded rows are kept for audit."""
    __tablename__ = "access_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    access_token: Mapped[str] = mapped_column(String(500), nullable=False)
    token_type: Mapped[str] = mapped_column(String(50), nullable=False, default="Bearer")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_access_tokens_is_active", "is_active"),
    )

    def is_usable(self, now: datetime, buffer_seconds: int) -> bool:
        """Active, plausible, and not expiring within the buffer window."""
        return (
            bool(self.is_active)
            and bool(self.access_token)
            and len(self.access_token) > 20
            and self.expires_at > now + timedelta(seconds=buffer_seconds)
        )


class QRPayment(Base):
    """Short-lived, amount-bound payment request rendered as a scannable code."""
    __tablename__ = "qr_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    till_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_by_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=QRPaymentStatus.PENDING.value
    )

    # Completion details
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    receipt_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    transaction_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sale_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_qr_payments_status", "status"),
        Index("ix_qr_payments_expires_at", "expires_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert QR payment to dictionary representation."""
        return {
            "reference": self.reference,
            "amount": str(self.amount),
            "customer_phone": self.customer_phone,
            "customer_name": self.customer_name,
            "description": self.description,
            "till_number": self.till_number,
            "created_by_user_id": self.created_by_user_id,
            "status": self.status,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "receipt_number": self.receipt_number,
            "transaction_code": self.transaction_code,
            "sale_id": self.sale_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class ManualEntry(Base):
    """Cashier-transcribed payment confirmation awaiting supervisor verification."""
    __tablename__ = "manual_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raw_message: Mapped[str] = mapped_column(Text, nullable=False)

    # Parsed fields
    transaction_code: Mapped[str] = mapped_column(String(50), nullable=False, default="", index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    sender_phone: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    sender_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    parse_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    needs_correction: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    missing_fields_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    entered_by_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Verification
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ManualEntryStatus.PENDING.value
    )
    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sale_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_manual_entries_status", "status"),
    )

    @property
    def missing_fields(self) -> List[str]:
        """Parsed fields that fell back to defaults."""
        if self.missing_fields_json:
            return json.loads(self.missing_fields_json)
        return []

    @missing_fields.setter
    def missing_fields(self, value: Optional[List[str]]) -> None:
        self.missing_fields_json = json.dumps(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert manual entry to dictionary representation."""
        return {
            "id": self.id,
            "raw_message": self.raw_message,
            "transaction_code": self.transaction_code,
            "amount": str(self.amount),
            "sender_phone": self.sender_phone,
            "sender_name": self.sender_name,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "parse_confidence": self.parse_confidence,
            "needs_correction": self.needs_correction,
            "missing_fields": self.missing_fields,
            "entered_by_user_id": self.entered_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "is_verified": self.is_verified,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "status": self.status,
            "verification_notes": self.verification_notes,
            "sale_id": self.sale_id,
        }


class UnmatchedTransaction(Base):
    """Gateway-confirmed payment not tied to a push or QR session on receipt.

    Rows are written by the callback ingester. ``sale_id`` is the consumer
    marker; ``version`` backs compare-and-swap consumption.
    """
    __tablename__ = "unmatched_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    till_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sale_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    matched_reference: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_unmatched_transactions_received_at", "received_at"),
        Index("ix_unmatched_transactions_sale_id", "sale_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_code": self.transaction_code,
            "till_number": self.till_number,
            "amount": str(self.amount),
            "phone_number": self.phone_number,
            "customer_name": self.customer_name,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "is_used": self.is_used,
            "sale_id": self.sale_id,
            "matched_reference": self.matched_reference,
        }
