"""Payment provider adapters.

Each provider exposes two calls: ``create_order`` opens a checkout with the
external gateway and ``verify_callback`` decides whether a callback is
authentic and what was actually paid. Amounts are integer minor units
(cents/paise) on both sides of the boundary.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import razorpay
from razorpay.errors import SignatureVerificationError

from config import paypal_configured, razorpay_configured, settings
from services.errors import PaymentProviderError
from services.payments.types import ProviderKey, ProviderOrder, VerifiedPayment

logger = logging.getLogger(__name__)


def _to_minor_units(value: Any) -> Optional[int]:
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, TypeError, ValueError):
        return None


def _to_major_units(amount: int) -> str:
    return f"{Decimal(int(amount)) / Decimal(100):.2f}"


class BasePaymentProvider(ABC):
    provider_name: ProviderKey

    @abstractmethod
    async def create_order(self, *, amount: int, currency: str, metadata: Dict[str, str]) -> ProviderOrder:
        raise NotImplementedError

    @abstractmethod
    async def verify_callback(self, payload: Dict[str, Any]) -> VerifiedPayment:
        raise NotImplementedError

    @abstractmethod
    def order_id_from_payload(self, payload: Dict[str, Any]) -> Optional[str]:
        """Extract the provider order id a callback refers to, without trusting anything else in it."""
        raise NotImplementedError


class PayPalProvider(BasePaymentProvider):
    """PayPal Orders v2. Callbacks are verified by reading order state back from PayPal."""

    provider_name: ProviderKey = "paypal"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        brand_name: str = "",
        return_url: str = "",
        cancel_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_seconds: float = 20.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = "https://api-m.paypal.com" if mode == "live" else "https://api-m.sandbox.paypal.com"
        self.brand_name = brand_name
        self.return_url = return_url
        self.cancel_url = cancel_url
        self._transport = transport
        self._timeout = timeout_seconds

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout, transport=self._transport)

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            raise PaymentProviderError("paypal", f"OAuth token request failed ({response.status_code})")
        token = response.json().get("access_token")
        if not token:
            raise PaymentProviderError("paypal", "OAuth token response did not include an access token")
        return str(token)

    async def create_order(self, *, amount: int, currency: str, metadata: Dict[str, str]) -> ProviderOrder:
        purchase_session_id = metadata.get("purchase_session_id", "")
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": purchase_session_id,
                    "custom_id": purchase_session_id,
                    "description": metadata.get("description") or "Credit package",
                    "amount": {"currency_code": currency, "value": _to_major_units(amount)},
                }
            ],
            "application_context": {
                "brand_name": self.brand_name,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
            },
        }
        try:
            async with self._client() as client:
                token = await self._access_token(client)
                response = await client.post(
                    "/v2/checkout/orders",
                    json=body,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "PayPal-Request-Id": f"order:{purchase_session_id}",
                    },
                )
        except httpx.HTTPError as exc:
            raise PaymentProviderError("paypal", f"order creation failed: {exc}") from exc

        if response.status_code not in (200, 201):
            raise PaymentProviderError("paypal", f"order creation failed ({response.status_code})")
        data = response.json()
        order_id = data.get("id")
        if not order_id:
            raise PaymentProviderError("paypal", "order response did not include an id")
        approve_url = next(
            (link.get("href") for link in data.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return ProviderOrder(
            provider="paypal",
            provider_order_id=str(order_id),
            amount=int(amount),
            currency=currency,
            checkout={"order_id": str(order_id), "approval_url": approve_url},
        )

    def order_id_from_payload(self, payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("order_id"):
            return str(payload["order_id"])
        resource = payload.get("resource") or {}
        event_type = str(payload.get("event_type") or "")
        if event_type.startswith("CHECKOUT.ORDER") and resource.get("id"):
            return str(resource["id"])
        related = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        return str(related) if related else None

    async def verify_callback(self, payload: Dict[str, Any]) -> VerifiedPayment:
        order_id = self.order_id_from_payload(payload)
        if not order_id:
            return VerifiedPayment(
                valid=False, provider_order_id=None, amount=None, currency=None, reason="missing order id"
            )

        try:
            async with self._client() as client:
                token = await self._access_token(client)
                headers = {"Authorization": f"Bearer {token}", "PayPal-Request-Id": f"capture:{order_id}"}
                response = await client.post(f"/v2/checkout/orders/{order_id}/capture", json={}, headers=headers)
                if response.status_code == 422:
                    # Already captured, declined or not yet approved: read the order as it stands.
                    response = await client.get(f"/v2/checkout/orders/{order_id}", headers=headers)
        except httpx.HTTPError as exc:
            raise PaymentProviderError("paypal", f"capture failed: {exc}") from exc

        if response.status_code == 404:
            return VerifiedPayment(
                valid=False, provider_order_id=order_id, amount=None, currency=None, reason="order not found"
            )
        if response.status_code not in (200, 201):
            raise PaymentProviderError("paypal", f"capture failed ({response.status_code})")

        return self._verified_from_order(order_id, response.json())

    @staticmethod
    def _verified_from_order(order_id: str, data: Dict[str, Any]) -> VerifiedPayment:
        if str(data.get("id") or "") != order_id:
            return VerifiedPayment(
                valid=False, provider_order_id=order_id, amount=None, currency=None, reason="order id mismatch"
            )
        units = data.get("purchase_units") or [{}]
        captures = ((units[0].get("payments") or {}).get("captures")) or []
        capture = captures[0] if captures else {}
        amount_block = capture.get("amount") or units[0].get("amount") or {}

        order_status = str(data.get("status") or "").upper()
        capture_status = str(capture.get("status") or "").upper()
        if order_status == "COMPLETED" and capture_status in ("", "COMPLETED"):
            status = "captured"
        elif order_status == "VOIDED" or capture_status in ("DECLINED", "DENIED", "FAILED"):
            status = "failed"
        else:
            status = "pending"

        return VerifiedPayment(
            valid=True,
            provider_order_id=order_id,
            amount=_to_minor_units(amount_block.get("value")),
            currency=amount_block.get("currency_code"),
            payment_id=capture.get("id"),
            status=status,
        )


class RazorpayProvider(BasePaymentProvider):
    """Razorpay orders. Checkout callbacks and webhooks are HMAC-verified by the SDK."""

    provider_name: ProviderKey = "razorpay"

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        client: Optional[razorpay.Client] = None,
    ) -> None:
        self.key_id = key_id
        self.webhook_secret = webhook_secret
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    async def create_order(self, *, amount: int, currency: str, metadata: Dict[str, str]) -> ProviderOrder:
        purchase_session_id = metadata.get("purchase_session_id", "")
        request = {
            "amount": int(amount),
            "currency": currency,
            "receipt": f"ps_{purchase_session_id}"[:40],
            "payment_capture": 1,
            "notes": {key: str(value) for key, value in metadata.items()},
        }
        try:
            order = await asyncio.to_thread(self.client.order.create, request)
        except Exception as exc:
            raise PaymentProviderError("razorpay", f"order creation failed: {exc}") from exc

        order_id = order.get("id") if isinstance(order, dict) else None
        if not order_id:
            raise PaymentProviderError("razorpay", "order response did not include an id")
        return ProviderOrder(
            provider="razorpay",
            provider_order_id=str(order_id),
            amount=int(order.get("amount", amount)),
            currency=str(order.get("currency", currency)),
            checkout={"key_id": self.key_id, "order_id": str(order_id), "amount": int(amount), "currency": currency},
        )

    @staticmethod
    def _webhook_event(payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return json.loads(payload.get("webhook_body") or "{}")
        except (TypeError, ValueError):
            return {}

    def order_id_from_payload(self, payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("razorpay_order_id"):
            return str(payload["razorpay_order_id"])
        if "webhook_body" in payload:
            event = self._webhook_event(payload)
            entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
            order_id = entity.get("order_id")
            return str(order_id) if order_id else None
        return None

    async def verify_callback(self, payload: Dict[str, Any]) -> VerifiedPayment:
        if "webhook_body" in payload:
            return await self._verify_webhook(payload)
        return await self._verify_checkout(payload)

    async def _verify_checkout(self, payload: Dict[str, Any]) -> VerifiedPayment:
        order_id = payload.get("razorpay_order_id")
        payment_id = payload.get("razorpay_payment_id")
        signature = payload.get("razorpay_signature")
        if not (order_id and payment_id and signature):
            return VerifiedPayment(
                valid=False, provider_order_id=order_id, amount=None, currency=None, reason="missing fields"
            )
        try:
            verified = self.client.utility.verify_payment_signature(
                {
                    "razorpay_order_id": order_id,
                    "razorpay_payment_id": payment_id,
                    "razorpay_signature": signature,
                }
            )
        except SignatureVerificationError:
            verified = False
        if verified is False:
            return VerifiedPayment(
                valid=False, provider_order_id=order_id, amount=None, currency=None, reason="bad signature"
            )

        try:
            payment = await asyncio.to_thread(self.client.payment.fetch, payment_id)
        except Exception as exc:
            raise PaymentProviderError("razorpay", f"payment lookup failed: {exc}") from exc
        return self._verified_from_payment(order_id, payment)

    async def _verify_webhook(self, payload: Dict[str, Any]) -> VerifiedPayment:
        body = payload.get("webhook_body") or ""
        signature = payload.get("webhook_signature") or ""
        if not (self.webhook_secret and signature):
            return VerifiedPayment(
                valid=False, provider_order_id=None, amount=None, currency=None, reason="unsigned webhook"
            )
        try:
            verified = self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except SignatureVerificationError:
            verified = False
        order_id = self.order_id_from_payload(payload)
        if verified is False:
            return VerifiedPayment(
                valid=False, provider_order_id=order_id, amount=None, currency=None, reason="bad signature"
            )
        event = self._webhook_event(payload)
        entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
        return self._verified_from_payment(order_id, entity)

    @staticmethod
    def _verified_from_payment(order_id: Optional[str], payment: Dict[str, Any]) -> VerifiedPayment:
        if not order_id or str(payment.get("order_id") or "") != str(order_id):
            return VerifiedPayment(
                valid=False, provider_order_id=order_id, amount=None, currency=None, reason="order id mismatch"
            )
        raw_status = str(payment.get("status") or "").lower()
        if raw_status == "captured":
            status = "captured"
        elif raw_status == "failed":
            status = "failed"
        else:
            status = "pending"
        amount = payment.get("amount")
        return VerifiedPayment(
            valid=True,
            provider_order_id=str(order_id),
            amount=int(amount) if amount is not None else None,
            currency=payment.get("currency"),
            payment_id=payment.get("id"),
            status=status,
        )


_PROVIDER_OVERRIDES: Dict[str, BasePaymentProvider] = {}


def register_payment_provider(provider: BasePaymentProvider) -> None:
    """Replace the configured provider for ``provider.provider_name``."""
    _PROVIDER_OVERRIDES[provider.provider_name] = provider


def reset_payment_providers() -> None:
    _PROVIDER_OVERRIDES.clear()


def payment_capabilities() -> Dict[str, bool]:
    return {"paypal": paypal_configured(), "razorpay": razorpay_configured()}


def get_payment_provider(provider: str) -> BasePaymentProvider:
    key = str(provider or "").strip().lower()
    if key in _PROVIDER_OVERRIDES:
        return _PROVIDER_OVERRIDES[key]
    if key == "paypal":
        if not paypal_configured():
            raise PaymentProviderError("paypal", "provider is not configured")
        return PayPalProvider(
            client_id=settings.PAYPAL_CLIENT_ID,
            client_secret=settings.PAYPAL_CLIENT_SECRET,
            mode=settings.PAYPAL_MODE,
            brand_name=settings.PAYPAL_BRAND_NAME,
            return_url=settings.PAYMENT_RETURN_URL,
            cancel_url=settings.PAYMENT_CANCEL_URL,
        )
    if key == "razorpay":
        if not razorpay_configured():
            raise PaymentProviderError("razorpay", "provider is not configured")
        return RazorpayProvider(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
        )
    logger.warning("Unsupported payment provider requested: %s", provider)
    raise PaymentProviderError(key or "unknown", "unsupported payment provider")
