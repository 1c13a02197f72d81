"""Client for the mobile-money gateway (STK push, status query, QR, C2B URLs)."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Dict, Any, Union

import requests

from ..config import GatewaySettings
from ..exceptions import GatewayConfigError, GatewayRequestError, PushInitiationError
from .base import (
    ACCOUNT_REFERENCE_MAX,
    TRANSACTION_DESC_MAX,
    BUY_GOODS_TRANSACTION,
    PAYBILL_TRANSACTION,
    PushRequest,
    PushResult,
    build_password,
    format_timestamp,
    normalize_msisdn,
    to_whole_units,
    truncate,
)
from .token_cache import TokenCache
from .transport import GatewayTransport, classify_error, is_success, parse_json

logger = logging.getLogger(__name__)

STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
QR_GENERATE_PATH = "/mpesa/qrcode/v1/generate"
C2B_REGISTER_PATH = "/mpesa/c2b/v1/registerurl"

# Dynamic QR transaction code for Buy Goods
QR_TRX_CODE = "BG"
QR_SIZE = "300"


def _mask_phone(phone: str) -> str:
    if len(phone) <= 4:
        return phone
    return f"{'*' * (len(phone) - 4)}{phone[-4:]}"


class PaymentGatewayClient:
    """Talks to the gateway with a bearer token from the TokenCache.

    Every call uses the transport timeout and is never retried here: a push
    that timed out may still have reached the customer's phone, so the
    caller should poll query_status() instead of sending it again.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        token_cache: TokenCache,
        transport: Optional[GatewayTransport] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.token_cache = token_cache
        self.transport = transport or token_cache.transport
        # Gateway timestamps are merchant local time.
        self._clock = clock

    def _password(self, timestamp: str) -> str:
        return build_password(self.settings.shortcode, self.settings.passkey, timestamp)

    async def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        token = await self.token_cache.get_valid_token()
        response = await self.transport.request(
            "POST",
            f"{self.settings.base_url}{path}",
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            json=payload,
        )
        if response.status_code == 401:
            self.token_cache.invalidate()
        return response

    def build_push_request(
        self,
        phone: str,
        amount: Union[Decimal, int, float, str],
        account_reference: str,
        description: str,
    ) -> PushRequest:
        """Assemble the signed push body.

        Raises:
            ValueError: If the amount rounds to less than one whole unit.
        """
        whole_amount = to_whole_units(amount)
        if whole_amount < 1:
            raise ValueError(f"Push amount must be at least 1, got {amount}")

        msisdn = normalize_msisdn(phone)
        timestamp = format_timestamp(self._clock())
        transaction_type = (
            BUY_GOODS_TRANSACTION if self.settings.till_number else PAYBILL_TRANSACTION
        )
        return PushRequest(
            business_short_code=self.settings.shortcode,
            password=self._password(timestamp),
            timestamp=timestamp,
            transaction_type=transaction_type,
            amount=whole_amount,
            party_a=msisdn,
            party_b=self.settings.payee_identifier,
            phone_number=msisdn,
            callback_url=self.settings.callback_url,
            account_reference=truncate(account_reference, ACCOUNT_REFERENCE_MAX),
            transaction_desc=truncate(description, TRANSACTION_DESC_MAX),
        )

    async def initiate_stk_push(
        self,
        phone: str,
        amount: Union[Decimal, int, float, str],
        account_reference: str,
        description: str,
    ) -> PushResult:
        """Ask the gateway to prompt the customer's phone for payment.

        Args:
            phone: Customer phone number; local forms are normalized to 2547XXXXXXXX.
            amount: Amount, rounded half-up to whole units.
            account_reference: Shown to the customer, truncated to 12 characters.
            description: Truncated to 13 characters.

        Returns:
            PushResult with the gateway's request ids and response code.

        Raises:
            PushInitiationError: Gateway answered with a non-2xx status.
            GatewayTimeoutError: No answer in time; the push outcome is unknown.
            GatewayError: Token acquisition or transport failure.
        """
        request = self.build_push_request(phone, amount, account_reference, description)
        logger.info(
            f"Initiating STK push of {request.amount} from {_mask_phone(request.phone_number)} "
            f"ref {request.account_reference}"
        )

        response = await self._post(STK_PUSH_PATH, request.to_payload())
        if not is_success(response):
            logger.error(f"STK push failed with status {response.status_code}: {response.text}")
            raise PushInitiationError(
                f"STK push failed with status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        body = parse_json(response, "STK push")
        result = PushResult.model_validate(
            {**body, "request": request, "raw_provider_response": body}
        )
        logger.info(
            f"STK push accepted: checkout {result.checkout_request_id} "
            f"code {result.response_code}"
        )
        return result

    async def query_status(self, checkout_request_id: str) -> Dict[str, Any]:
        """Query the outcome of an earlier push.

        The gateway payload is returned as-is; a still-processing push is
        reported by the gateway with a non-2xx status and a JSON body, which
        is also returned rather than raised.

        Raises:
            GatewayAuthError: Token rejected (cache invalidated).
            GatewayError: Non-JSON failure response or transport failure.
        """
        timestamp = format_timestamp(self._clock())
        payload = {
            "BusinessShortCode": self.settings.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        response = await self._post(STK_QUERY_PATH, payload)
        if response.status_code == 401:
            raise classify_error(response, "STK status query")

        try:
            body = parse_json(response, "STK status query")
        except GatewayRequestError:
            if is_success(response):
                raise
            raise classify_error(response, "STK status query")

        if not is_success(response):
            logger.warning(
                f"Status query for {checkout_request_id} returned {response.status_code}: "
                f"{body.get('errorMessage') or body.get('ResultDesc')}"
            )
        return body

    async def generate_qr_code(
        self,
        merchant_name: Optional[str],
        ref_no: str,
        amount: Union[Decimal, int, float, str],
        trx_code: str = QR_TRX_CODE,
        size: str = QR_SIZE,
    ) -> Dict[str, Any]:
        """Ask the gateway for a dynamic QR image bound to ``ref_no``.

        Returns:
            Gateway payload; ``QRCode`` holds the base64 image on success.
        """
        payload = {
            "MerchantName": merchant_name or self.settings.merchant_name,
            "RefNo": ref_no,
            "Amount": to_whole_units(amount),
            "TrxCode": trx_code,
            "CPI": self.settings.payee_identifier,
            "Size": str(size),
        }
        response = await self._post(QR_GENERATE_PATH, payload)
        if not is_success(response):
            logger.error(f"QR generation for {ref_no} failed with status {response.status_code}")
            raise classify_error(response, "QR generation")
        return parse_json(response, "QR generation")

    async def register_callback_urls(self) -> Dict[str, Any]:
        """Register the C2B confirmation and validation URLs for the payee.

        An "already registered" answer counts as success.

        Raises:
            GatewayConfigError: URLs not configured, or rejected by the gateway.
        """
        if not self.settings.confirmation_url or not self.settings.validation_url:
            raise GatewayConfigError(
                "MPESA_CONFIRMATION_URL and MPESA_VALIDATION_URL must be configured"
            )

        payload = {
            "ShortCode": self.settings.payee_identifier,
            "ResponseType": "Completed",
            "ConfirmationURL": self.settings.confirmation_url,
            "ValidationURL": self.settings.validation_url,
        }
        response = await self._post(C2B_REGISTER_PATH, payload)
        if is_success(response):
            logger.info(f"Registered callback URLs for {self.settings.payee_identifier}")
            return parse_json(response, "URL registration")

        if "already registered" in (response.text or "").lower():
            logger.info(f"Callback URLs already registered for {self.settings.payee_identifier}")
            return {"ResponseDescription": "already registered", "raw": response.text}

        logger.error(f"URL registration failed with status {response.status_code}: {response.text}")
        raise classify_error(response, "URL registration")
