"""Gateway and sweep configuration loaded from the environment."""

import os
from typing import Optional

from pydantic import BaseModel, Field

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


class GatewaySettings(BaseModel):
    """Settings for the mobile-money gateway and the reconciliation sweeps."""
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    till_number: Optional[str] = None
    callback_url: str = ""
    confirmation_url: str = ""
    validation_url: str = ""
    base_url: str = SANDBOX_BASE_URL
    timeout_seconds: float = Field(default=30.0, gt=0)
    merchant_name: str = "PixelSolution"

    # QR payments
    qr_ttl_minutes: int = 30
    require_paid_before_link: bool = False

    # Periodic sweeps
    sweeps_enabled: bool = True
    expire_interval_seconds: float = Field(default=60.0, gt=0)
    match_interval_seconds: float = Field(default=120.0, gt=0)

    @property
    def payee_identifier(self) -> str:
        """Till number when configured, otherwise the shortcode."""
        return self.till_number or self.shortcode

    @property
    def has_credentials(self) -> bool:
        return all((self.consumer_key, self.consumer_secret, self.shortcode, self.passkey))

    @classmethod
    def from_env(cls, require_credentials: bool = True, **overrides) -> "GatewaySettings":
        """Build settings from ``MPESA_*`` and ``SWEEP*`` environment variables.

        Explicit keyword overrides take precedence over the environment. With
        ``require_credentials`` off, missing credentials are left empty so the
        parts of the system that never call the gateway can still run.

        Raises:
            ValueError: If a required credential is neither passed nor set.
        """
        required = {
            "consumer_key": "MPESA_CONSUMER_KEY",
            "consumer_secret": "MPESA_CONSUMER_SECRET",
            "shortcode": "MPESA_SHORTCODE",
            "passkey": "MPESA_PASSKEY",
        }
        values = {}
        for field_name, env_name in required.items():
            value = overrides.pop(field_name, None) or os.getenv(env_name)
            if not value and require_credentials:
                raise ValueError(
                    f"{env_name} must be provided either as argument or environment variable"
                )
            values[field_name] = value or ""

        values.update({
            "till_number": os.getenv("MPESA_TILL_NUMBER") or None,
            "callback_url": os.getenv("MPESA_CALLBACK_URL", ""),
            "confirmation_url": os.getenv("MPESA_CONFIRMATION_URL", ""),
            "validation_url": os.getenv("MPESA_VALIDATION_URL", ""),
            "base_url": os.getenv("MPESA_BASE_URL", SANDBOX_BASE_URL).rstrip("/"),
            "timeout_seconds": float(os.getenv("MPESA_TIMEOUT_SECONDS", "30")),
            "merchant_name": os.getenv("MPESA_MERCHANT_NAME", "PixelSolution"),
            "require_paid_before_link": _env_flag("QR_REQUIRE_PAID_BEFORE_LINK", False),
            "sweeps_enabled": _env_flag("SWEEPS_ENABLED", True),
            "expire_interval_seconds": float(os.getenv("SWEEP_EXPIRE_INTERVAL_SECONDS", "60")),
            "match_interval_seconds": float(os.getenv("SWEEP_MATCH_INTERVAL_SECONDS", "120")),
        })
        values.update(overrides)
        return cls(**values)
