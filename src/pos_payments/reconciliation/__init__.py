"""Reconciliation of gateway-confirmed transactions.

Features:
- Match unmatched transactions to pending QR payments by amount and window
- Confirm manual entries whose transaction code the gateway reported
- Periodic expiry and matcher sweeps
"""

from .models import (
    QRCandidate,
    TransactionCandidate,
    EntryCandidate,
    MatchedPair,
    EntryConfirmation,
    MatchError,
    MatchReport,
)
from .matcher import ReconciliationMatcher
from .scheduler import SweepScheduler

__all__ = [
    # Models
    "QRCandidate",
    "TransactionCandidate",
    "EntryCandidate",
    "MatchedPair",
    "EntryConfirmation",
    "MatchError",
    "MatchReport",
    # Core Components
    "ReconciliationMatcher",
    "SweepScheduler",
]
