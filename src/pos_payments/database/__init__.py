"""Database module for mobile-money payment persistence."""

from .models import (
    AccessToken,
    QRPayment,
    ManualEntry,
    UnmatchedTransaction,
    Base,
    QRPaymentStatus,
    ManualEntryStatus,
    QR_MATCH_SENTINEL,
    utcnow,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    get_db_context,
)
from .repository import (
    AccessTokenRepository,
    QRPaymentRepository,
    ManualEntryRepository,
    UnmatchedTransactionRepository,
)

__all__ = [
    # Models
    "AccessToken",
    "QRPayment",
    "ManualEntry",
    "UnmatchedTransaction",
    "Base",
    "QRPaymentStatus",
    "ManualEntryStatus",
    "QR_MATCH_SENTINEL",
    "utcnow",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "get_db_context",
    # Repositories
    "AccessTokenRepository",
    "QRPaymentRepository",
    "ManualEntryRepository",
    "UnmatchedTransactionRepository",
]
