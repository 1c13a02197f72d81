"""Models for matching unmatched transactions against open payments."""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field

from ..database import utcnow


class QRCandidate(BaseModel):
    """Snapshot of a pending QR payment taken at the start of a pass."""
    model_config = ConfigDict(from_attributes=True)

    reference: str = Field(..., description="QR payment reference")
    amount: Decimal = Field(..., description="Requested amount")
    created_at: datetime = Field(..., description="Start of the payment window")
    expires_at: datetime = Field(..., description="End of the payment window")


class TransactionCandidate(BaseModel):
    """Snapshot of an unconsumed transaction taken at the start of a pass."""
    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Row id")
    transaction_code: str = Field(..., description="Gateway transaction code")
    amount: Decimal = Field(..., description="Amount received")
    received_at: datetime = Field(..., description="Time the gateway confirmed it")
    version: int = Field(..., description="Compare-and-swap counter at snapshot time")


class EntryCandidate(BaseModel):
    """Snapshot of a manual entry that carries a transaction code."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_code: str
    amount: Decimal
    status: str
    sale_id: Optional[int] = None


class MatchedPair(BaseModel):
    """A transaction consumed by a QR payment."""
    reference: str = Field(..., description="QR payment reference marked paid")
    transaction_code: str = Field(..., description="Transaction consumed")
    amount: Decimal = Field(..., description="Amount received")
    received_at: datetime = Field(..., description="Time the gateway confirmed it")
    candidates: int = Field(default=1, description="Qualifying transactions seen")
    matched_at: datetime = Field(default_factory=utcnow)


class EntryConfirmation(BaseModel):
    """A transaction consumed by the manual entry quoting its code."""
    entry_id: int
    transaction_code: str
    amount: Decimal
    auto_verified: bool = False
    matched_at: datetime = Field(default_factory=utcnow)


class MatchError(BaseModel):
    """A pair that failed and was skipped."""
    reference: str = Field(..., description="QR reference or manual entry key")
    transaction_code: Optional[str] = None
    error: str = Field(..., description="Exception type and message")


class MatchReport(BaseModel):
    """Outcome of one matcher pass."""
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Statistics
    pending_checked: int = Field(default=0)
    transactions_checked: int = Field(default=0)
    entries_checked: int = Field(default=0)

    # Detailed records
    matched: List[MatchedPair] = Field(default_factory=list)
    entry_confirmations: List[EntryConfirmation] = Field(default_factory=list)
    multiple_candidates: List[str] = Field(
        default_factory=list,
        description="QR references that had more than one qualifying transaction",
    )
    ambiguous: List[str] = Field(
        default_factory=list,
        description="QR references left unresolved because of a tie on received_at",
    )
    amount_mismatches: List[int] = Field(
        default_factory=list,
        description="Manual entries whose code matched but amount did not",
    )
    lost_races: List[str] = Field(
        default_factory=list,
        description="QR references resolved by another writer during the pass",
    )
    errors: List[MatchError] = Field(default_factory=list)

    @property
    def total_matched(self) -> int:
        return len(self.matched) + len(self.entry_confirmations)

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return counts plus the references needing review."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "statistics": {
                "pending_checked": self.pending_checked,
                "transactions_checked": self.transactions_checked,
                "entries_checked": self.entries_checked,
                "qr_matched": len(self.matched),
                "entries_confirmed": len(self.entry_confirmations),
                "errors": len(self.errors),
            },
            "multiple_candidates": list(self.multiple_candidates),
            "ambiguous": list(self.ambiguous),
            "amount_mismatches": list(self.amount_mismatches),
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the complete report including all records."""
        result = self.to_summary_dict()
        result["matched"] = [m.model_dump(mode="json") for m in self.matched]
        result["entry_confirmations"] = [c.model_dump(mode="json") for c in self.entry_confirmations]
        result["lost_races"] = list(self.lost_races)
        result["errors"] = [e.model_dump() for e in self.errors]
        return result
