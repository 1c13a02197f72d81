"""Mobile-money payment reconciliation core for a point-of-sale back office."""

from .config import GatewaySettings
from .exceptions import (
    PaymentsError,
    GatewayError,
    GatewayAuthError,
    GatewayConfigError,
    GatewayTimeoutError,
    GatewayRequestError,
    PushInitiationError,
    NotFoundError,
    InvalidStateError,
)
from .registry import QRPaymentRegistry, RedemptionOutcome
from .services import MobileMoneyService, QRPaymentTicket

__version__ = "0.1.0"

__all__ = [
    "GatewaySettings",
    "PaymentsError",
    "GatewayError",
    "GatewayAuthError",
    "GatewayConfigError",
    "GatewayTimeoutError",
    "GatewayRequestError",
    "PushInitiationError",
    "NotFoundError",
    "InvalidStateError",
    "QRPaymentRegistry",
    "RedemptionOutcome",
    "MobileMoneyService",
    "QRPaymentTicket",
]
