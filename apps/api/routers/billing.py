"""Billing router: package purchases, provider callbacks and enterprise contact."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.enterprise_contact import EnterpriseContact
from routers.auth_scope import AuthContext, ensure_account_scope, get_auth_context, get_optional_auth_context
from routers.errors import to_http_exception
from routers.rate_limit import rate_limit
from services import purchases
from services.errors import (
    CreditsError,
    PaymentDeclined,
    PaymentProviderError,
    ProviderVerificationFailed,
    UnknownSession,
)
from services.payments import SUPPORTED_PROVIDERS, payment_capabilities

router = APIRouter()
logger = logging.getLogger(__name__)

PAYPAL_HANDLED_EVENTS = (
    "CHECKOUT.ORDER.APPROVED",
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.DECLINED",
)
RAZORPAY_HANDLED_EVENTS = ("payment.captured", "payment.failed")


class PurchaseRequest(BaseModel):
    package_id: str
    provider: str = "paypal"
    account_id: Optional[str] = None


class PayPalCaptureRequest(BaseModel):
    order_id: str = Field(min_length=1)


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class EnterpriseContactRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    company: Optional[str] = Field(default=None, max_length=200)
    message: Optional[str] = Field(default=None, max_length=5000)


def _capture_response(entry) -> Dict[str, Any]:
    return {
        "status": "captured",
        "transaction": entry.to_dict(),
        "credits_added": entry.amount,
        "balance_after": entry.balance_after,
    }


@router.get("/providers")
async def billing_providers():
    capabilities = payment_capabilities()
    return {
        "providers": [name for name in SUPPORTED_PROVIDERS if capabilities.get(name)],
        "razorpay_key_id": settings.RAZORPAY_KEY_ID or None,
        "paypal_mode": settings.PAYPAL_MODE,
    }


@router.post("/purchase")
async def create_purchase(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, request.account_id)
    try:
        outcome = await purchases.initiate_purchase(
            db,
            scoped_account_id,
            request.package_id,
            provider=request.provider,
        )
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
    return outcome.to_dict()


@router.get("/purchase/{purchase_session_id}")
async def get_purchase(
    purchase_session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        purchase = await purchases.get_purchase(db, auth.account_id, purchase_session_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
    return purchase.to_dict()


@router.post("/purchase/{purchase_session_id}/cancel")
async def cancel_purchase(
    purchase_session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        purchase = await purchases.cancel_purchase(db, auth.account_id, purchase_session_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
    return purchase.to_dict()


@router.post("/paypal/capture")
async def paypal_capture(
    request: PayPalCaptureRequest,
    _rate_limit: None = Depends(rate_limit("billing_capture", limit=60, window_seconds=3600)),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Capture an approved PayPal order and credit the purchase."""
    try:
        entry = await purchases.reconcile_payment(db, "paypal", {"order_id": request.order_id})
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
    return _capture_response(entry)


@router.post("/razorpay/verify")
async def razorpay_verify(
    request: RazorpayVerifyRequest,
    _rate_limit: None = Depends(rate_limit("billing_capture", limit=60, window_seconds=3600)),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Verify a Razorpay checkout signature and credit the purchase."""
    try:
        entry = await purchases.reconcile_payment(db, "razorpay", request.model_dump())
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
    return _capture_response(entry)


async def _handle_webhook(db: AsyncSession, provider: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Webhooks answer 2xx unless a retry could help or the payload is forged."""
    try:
        entry = await purchases.reconcile_payment(db, provider, payload)
    except UnknownSession:
        return {"status": "ignored"}
    except PaymentDeclined:
        return {"status": "failed"}
    except ProviderVerificationFailed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PaymentProviderError as exc:
        logger.warning("%s webhook hit a provider error; asking for retry: %s", provider, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except CreditsError as exc:
        logger.info("%s webhook not applied: %s", provider, exc)
        return {"status": "ignored", "detail": str(exc)}
    return {"status": "captured", "transaction_id": entry.id}


@router.post("/paypal/webhook")
async def paypal_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc

    # Order state is read back from PayPal, so the event body is only used to find the order.
    if str(payload.get("event_type") or "") not in PAYPAL_HANDLED_EVENTS:
        return {"status": "ignored"}
    return await _handle_webhook(db, "paypal", payload)


@router.post("/razorpay/webhook")
async def razorpay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = (await request.body()).decode("utf-8", errors="replace")
    signature = request.headers.get("x-razorpay-signature", "")
    try:
        event = json.loads(body or "{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc

    if str(event.get("event") or "") not in RAZORPAY_HANDLED_EVENTS:
        return {"status": "ignored"}
    return await _handle_webhook(db, "razorpay", {"webhook_body": body, "webhook_signature": signature})


@router.post(
    "/enterprise/contact",
    dependencies=[Depends(rate_limit("enterprise_contact", limit=5, window_seconds=3600))],
)
async def enterprise_contact(
    request: EnterpriseContactRequest,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    email = request.email.strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=400, detail="A valid email is required.")
    contact = EnterpriseContact(
        account_id=auth.account_id if auth else None,
        name=request.name.strip(),
        email=email,
        company=(request.company or "").strip() or None,
        message=(request.message or "").strip() or None,
    )
    db.add(contact)
    await db.commit()
    logger.info("Enterprise contact request %s from %s", contact.id, email)
    return {
        "status": "received",
        "contact_id": contact.id,
        "contact_email": settings.ENTERPRISE_CONTACT_EMAIL,
    }
