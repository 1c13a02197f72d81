"""Blocking HTTP calls to the gateway, run off the event loop."""

import asyncio
import logging
from typing import Optional, Dict, Any

import requests

from ..exceptions import (
    GatewayError,
    GatewayAuthError,
    GatewayConfigError,
    GatewayTimeoutError,
    GatewayRequestError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def is_success(response: requests.Response) -> bool:
    return 200 <= response.status_code < 300


def classify_error(response: requests.Response, operation: str) -> GatewayError:
    """Map a failed gateway response onto the error taxonomy.

    401 means bad credentials, 400 a malformed request (wrong shortcode,
    bad passkey); anything else is kept generic with status and body.
    """
    status = response.status_code
    body = response.text
    if status == 401:
        return GatewayAuthError(
            f"{operation} failed: gateway rejected credentials (401)",
            status_code=status,
            body=body,
        )
    if status == 400:
        return GatewayConfigError(
            f"{operation} failed: gateway rejected request (400), check configuration",
            status_code=status,
            body=body,
        )
    return GatewayRequestError(
        f"{operation} failed with status {status}",
        status_code=status,
        body=body,
    )


def parse_json(response: requests.Response, operation: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as e:
        raise GatewayRequestError(
            f"{operation} returned a non-JSON body",
            status_code=response.status_code,
            body=response.text,
        ) from e
    if not isinstance(body, dict):
        raise GatewayRequestError(
            f"{operation} returned an unexpected payload",
            status_code=response.status_code,
            body=response.text,
        )
    return body


class GatewayTransport:
    """Sends requests with an explicit timeout. Never retries."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        """Send one request in a worker thread.

        Raises:
            GatewayTimeoutError: No answer within ``timeout_seconds``.
            GatewayRequestError: Connection or other transport failure.
        """
        try:
            return await asyncio.to_thread(
                requests.request,
                method,
                url,
                headers=headers,
                json=json,
                params=params,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Gateway {method} {url} timed out after {self.timeout_seconds}s")
            raise GatewayTimeoutError(
                f"Gateway did not respond within {self.timeout_seconds} seconds"
            ) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Gateway {method} {url} failed: {type(e).__name__}")
            raise GatewayRequestError(f"Failed to reach gateway: {e}") from e
