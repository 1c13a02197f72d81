"""Exception hierarchy for the mobile-money payments core.

Gateway errors carry the HTTP status and raw body so callers (usually the
sale flow) can show a meaningful "push failed" message or decide on an
alternate payment path.
"""

from typing import Optional


class PaymentsError(Exception):
    """Base exception for payments core errors."""
    pass


class GatewayError(PaymentsError):
    """Base exception for failures talking to the payment gateway."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "status_code": self.status_code,
            "body": self.body,
        }


class GatewayAuthError(GatewayError):
    """Credentials rejected by the gateway, or no usable token returned."""
    pass


class GatewayConfigError(GatewayError):
    """Gateway rejected the request as malformed (e.g. wrong shortcode).

    Raised without a status code when nothing was sent because the gateway
    side is not configured here.
    """
    pass


class GatewayTimeoutError(GatewayError):
    """Gateway did not answer within the configured timeout.

    For a push request the outcome is unknown: poll the status endpoint or
    wait for the callback instead of retrying.
    """
    pass


class GatewayRequestError(GatewayError):
    """Any other gateway failure (unexpected status, connection error, bad body)."""
    pass


class PushInitiationError(GatewayRequestError):
    """The gateway refused to initiate a push payment."""
    pass


class NotFoundError(PaymentsError):
    """Unknown QR reference or manual entry id."""
    pass


class InvalidStateError(PaymentsError):
    """Requested transition is not allowed from the record's current state."""
    pass
