"""Mobile-money gateway access: token cache, transport and client."""

from .base import PushRequest, PushResult, build_password, normalize_msisdn
from .client import PaymentGatewayClient
from .token_cache import TokenCache, TokenState, CachedToken
from .transport import GatewayTransport

__all__ = [
    "PushRequest",
    "PushResult",
    "build_password",
    "normalize_msisdn",
    "PaymentGatewayClient",
    "TokenCache",
    "TokenState",
    "CachedToken",
    "GatewayTransport",
]
