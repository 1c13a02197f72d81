import base64
import re
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Hard gateway limits on free-text fields
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

PAYBILL_TRANSACTION = "CustomerPayBillOnline"
BUY_GOODS_TRANSACTION = "CustomerBuyGoodsOnline"

_MSISDN_RE = re.compile(r"^(?:\+?254|0)?([17]\d{8})$")


def format_timestamp(moment: datetime) -> str:
    """Gateway timestamp, ``yyyyMMddHHmmss``."""
    return moment.strftime(TIMESTAMP_FORMAT)


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """``base64(shortcode + passkey + timestamp)``."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def truncate(value: Optional[str], limit: int) -> str:
    value = value or ""
    return value[:limit]


def to_whole_units(amount: Union[Decimal, int, float, str]) -> int:
    """The gateway only accepts whole currency units."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_msisdn(phone: str) -> str:
    """Normalize a Kenyan mobile number to the 12-digit ``2547XXXXXXXX`` form.

    Numbers that do not look like a local mobile number are returned stripped
    but otherwise unchanged; the gateway is the authority on validity.
    """
    cleaned = re.sub(r"[\s-]", "", phone or "")
    match = _MSISDN_RE.match(cleaned)
    if match:
        return f"254{match.group(1)}"
    return cleaned


# Canonical models
class PushRequest(BaseModel):
    """STK push request body, serialized with the gateway's field names."""
    model_config = ConfigDict(populate_by_name=True)

    business_short_code: str = Field(alias="BusinessShortCode")
    password: str = Field(alias="Password")
    timestamp: str = Field(alias="Timestamp")
    transaction_type: str = Field(default=PAYBILL_TRANSACTION, alias="TransactionType")
    amount: int = Field(alias="Amount", gt=0)
    party_a: str = Field(alias="PartyA")
    party_b: str = Field(alias="PartyB")
    phone_number: str = Field(alias="PhoneNumber")
    callback_url: str = Field(alias="CallBackURL")
    account_reference: str = Field(alias="AccountReference", max_length=ACCOUNT_REFERENCE_MAX)
    transaction_desc: str = Field(alias="TransactionDesc", max_length=TRANSACTION_DESC_MAX)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class PushResult(BaseModel):
    """Gateway answer to a push request. Response codes are opaque here."""
    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: str = Field(default="", alias="MerchantRequestID")
    checkout_request_id: str = Field(default="", alias="CheckoutRequestID")
    response_code: str = Field(default="", alias="ResponseCode")
    response_description: str = Field(default="", alias="ResponseDescription")
    customer_message: str = Field(default="", alias="CustomerMessage")
    request: Optional[PushRequest] = None
    raw_provider_response: Optional[Dict[str, Any]] = None

    @field_validator(
        "merchant_request_id",
        "checkout_request_id",
        "response_code",
        "response_description",
        "customer_message",
        mode="before",
    )
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return "" if value is None else str(value)
