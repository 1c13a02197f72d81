"""HTTP API for push payments, QR payments, manual entries and reconciliation."""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import PUSH_RATE_LIMIT, limiter, verify_api_key
from .config import GatewaySettings
from .database import close_db, get_db, init_db
from .exceptions import (
    GatewayConfigError,
    GatewayError,
    GatewayTimeoutError,
    InvalidStateError,
    NotFoundError,
)
from .gateway import GatewayTransport, PaymentGatewayClient, TokenCache
from .reconciliation import SweepScheduler
from .services import MobileMoneyService

logger = logging.getLogger(__name__)

_gateway_client: Optional[PaymentGatewayClient] = None


def get_settings() -> GatewaySettings:
    try:
        return GatewaySettings.from_env(require_credentials=False)
    except ValueError as e:
        logger.error(f"Gateway settings invalid: {e}")
        raise HTTPException(status_code=500, detail="Server configuration error")


async def get_gateway_client(
    settings: GatewaySettings = Depends(get_settings),
) -> Optional[PaymentGatewayClient]:
    """Process-wide client, so the token cache is shared across requests.

    None when the gateway credentials are not configured; only the routes
    that call the gateway fail then.
    """
    global _gateway_client
    if _gateway_client is None:
        if not settings.has_credentials:
            logger.warning("Gateway credentials not configured, gateway routes unavailable")
            return None
        transport = GatewayTransport(settings.timeout_seconds)
        token_cache = TokenCache(settings, transport=transport)
        _gateway_client = PaymentGatewayClient(settings, token_cache, transport=transport)
    return _gateway_client


def get_service(
    db: AsyncSession = Depends(get_db),
    settings: GatewaySettings = Depends(get_settings),
    gateway: Optional[PaymentGatewayClient] = Depends(get_gateway_client),
) -> MobileMoneyService:
    return MobileMoneyService(db, settings, gateway=gateway)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    scheduler = None
    try:
        settings = GatewaySettings.from_env(require_credentials=False)
    except ValueError as e:
        logger.warning(f"Sweeps not started: {e}")
        settings = None
    if settings is not None and settings.sweeps_enabled:
        scheduler = SweepScheduler.from_settings(settings)
        scheduler.start()
    yield
    if scheduler is not None:
        await scheduler.stop()
    await close_db()


app = FastAPI(title="POS Mobile-Money Payments", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if isinstance(exc, GatewayTimeoutError):
        status_code = 504
    elif isinstance(exc, GatewayConfigError) and exc.status_code is None:
        # Nothing was sent; the gateway is not set up on this side
        status_code = 503
    else:
        status_code = 502
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


# Request bodies

class PushBody(BaseModel):
    phone: str = Field(..., min_length=9, description="Customer phone number")
    amount: Decimal = Field(..., gt=0, description="Amount in whole currency units")
    account_reference: str = Field(..., min_length=1, description="Truncated to 12 characters")
    description: str = Field(default="Payment", description="Truncated to 13 characters")


class QRPaymentBody(BaseModel):
    amount: Decimal = Field(..., gt=0)
    created_by_user_id: int
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    description: Optional[str] = None
    use_gateway_qr: bool = False


class LinkBody(BaseModel):
    sale_id: int


class ManualEntryBody(BaseModel):
    raw_message: str = Field(..., min_length=1, description="Confirmation text as received")
    entered_by_user_id: int


class VerifyBody(BaseModel):
    accept: bool
    notes: Optional[str] = None


# Push payments

payments_router = APIRouter(prefix="/payments", tags=["payments"])


@payments_router.post("/push")
@limiter.limit(PUSH_RATE_LIMIT)
async def request_push(
    request: Request,
    body: PushBody,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    """Send a payment prompt to the customer's phone."""
    try:
        result = await service.request_push(
            body.phone, body.amount, body.account_reference, body.description
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.model_dump(mode="json", exclude={"request"})


@payments_router.get("/push/{checkout_request_id}")
async def query_push_status(
    checkout_request_id: str,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    return await service.query_push_status(checkout_request_id)


# QR payments

qr_router = APIRouter(prefix="/qr-payments", tags=["qr-payments"])


@qr_router.post("", status_code=201)
async def create_qr_payment(
    body: QRPaymentBody,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    try:
        ticket = await service.create_qr_payment(
            amount=body.amount,
            created_by_user_id=body.created_by_user_id,
            customer_phone=body.customer_phone,
            customer_name=body.customer_name,
            description=body.description,
            use_gateway_qr=body.use_gateway_qr,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ticket.model_dump(mode="json")


@qr_router.get("/pending")
async def list_pending_qr_payments(
    limit: int = Query(default=100, ge=1, le=500),
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    payments = await service.list_pending_qr_payments(limit=limit)
    return {"items": [p.to_dict() for p in payments], "count": len(payments)}


@qr_router.get("/{reference}")
async def get_qr_status(
    reference: str,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    """Polled by the till while the customer pays."""
    payment = await service.get_qr_status(reference)
    return payment.to_dict()


@qr_router.post("/{reference}/link")
async def link_qr_payment(
    reference: str,
    body: LinkBody,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    await service.link_payment_to_sale(body.sale_id, reference=reference)
    return {"reference": reference, "sale_id": body.sale_id, "linked": True}


# Manual entries

manual_router = APIRouter(prefix="/manual-entries", tags=["manual-entries"])


@manual_router.post("", status_code=201)
async def submit_manual_receipt(
    body: ManualEntryBody,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    try:
        entry_id = await service.submit_manual_receipt(body.raw_message, body.entered_by_user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    entry = await service.get_manual_entry(entry_id)
    return entry.to_dict()


@manual_router.get("/pending")
async def list_pending_manual_entries(
    limit: int = Query(default=100, ge=1, le=500),
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    """Supervisor queue."""
    entries = await service.list_pending_manual_entries(limit=limit)
    return {"items": [e.to_dict() for e in entries], "count": len(entries)}


@manual_router.post("/{entry_id}/verify")
async def verify_manual_receipt(
    entry_id: int,
    body: VerifyBody,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    entry = await service.verify_manual_receipt(entry_id, body.accept, body.notes)
    return entry.to_dict()


@manual_router.post("/{entry_id}/link")
async def link_manual_entry(
    entry_id: int,
    body: LinkBody,
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    await service.link_payment_to_sale(body.sale_id, entry_id=entry_id)
    return {"entry_id": entry_id, "sale_id": body.sale_id, "linked": True}


# Reconciliation and gateway setup

reconciliation_router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@reconciliation_router.post("/run")
async def run_matcher(
    include_details: bool = Query(default=False, description="Include matched records"),
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    report = await service.run_matcher()
    return report.to_full_dict() if include_details else report.to_summary_dict()


gateway_router = APIRouter(prefix="/gateway", tags=["gateway"])


@gateway_router.post("/register-urls")
async def register_callback_urls(
    api_key: str = Depends(verify_api_key),
    service: MobileMoneyService = Depends(get_service),
):
    return await service.register_callback_urls()


@app.get("/health")
async def health():
    return {"status": "ok"}


app.include_router(payments_router)
app.include_router(qr_router)
app.include_router(manual_router)
app.include_router(reconciliation_router)
app.include_router(gateway_router)
