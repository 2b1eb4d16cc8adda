"""Purchase orchestration: package checkout, provider reconciliation and expiry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_package import CreditPackage
from models.credit_transaction import CreditTransaction
from models.purchase_session import PURCHASE_OPEN_STATUSES, PurchaseSession
from services import ledger
from services.errors import (
    InvalidSessionState,
    PackageNotFound,
    PaymentDeclined,
    PaymentProviderError,
    ProviderVerificationFailed,
    UnknownSession,
)
from services.packages import get_package
from services.payments import get_payment_provider

logger = logging.getLogger(__name__)

OutcomeKind = Literal["granted", "requires_contact", "requires_payment"]


@dataclass
class PurchaseOutcome:
    kind: OutcomeKind
    package_id: str
    package_name: str
    credits: int
    transaction: Optional[CreditTransaction] = None
    already_claimed: bool = False
    purchase_session: Optional[PurchaseSession] = None
    checkout: Dict[str, Any] = field(default_factory=dict)
    contact_email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "package_id": self.package_id,
            "package_name": self.package_name,
            "credits": self.credits,
        }
        if self.transaction is not None:
            payload["transaction"] = self.transaction.to_dict()
            payload["balance_after"] = self.transaction.balance_after
            payload["already_claimed"] = self.already_claimed
        if self.purchase_session is not None:
            payload["purchase_session"] = self.purchase_session.to_dict()
            payload["checkout"] = self.checkout
        if self.contact_email:
            payload["contact_email"] = self.contact_email
        return payload


def free_claim_key(package_id: str, account_id: str) -> str:
    return f"package:{package_id}:{account_id}"


async def _transaction_by_key(db: AsyncSession, key: str) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.idempotency_key == key))
    return result.scalar_one_or_none()


def _open_purchase(purchase_id: str):
    """UPDATE statement that only matches the purchase while it is still open."""
    return update(PurchaseSession).where(
        PurchaseSession.id == purchase_id,
        PurchaseSession.status.in_(PURCHASE_OPEN_STATUSES),
    )


async def _transition(db: AsyncSession, purchase: PurchaseSession, **values: Any) -> bool:
    """Move an open purchase session to a new state; False if it already left the open states."""
    result = await db.execute(
        _open_purchase(purchase.id).values(**values).execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(purchase)
    return bool(result.rowcount)


async def _package_any_state(db: AsyncSession, package_id: str) -> CreditPackage:
    # Captures honour the package bought even if it was deactivated since.
    package = (await db.execute(select(CreditPackage).where(CreditPackage.id == package_id))).scalar_one_or_none()
    if package is None:
        raise PackageNotFound(f"Package {package_id} not found")
    return package


async def initiate_purchase(
    db: AsyncSession,
    account_id: str,
    package_id: str,
    *,
    provider: str = "paypal",
) -> PurchaseOutcome:
    account = await ledger.get_account(db, account_id)
    package = await get_package(db, package_id)

    if package.is_enterprise:
        return PurchaseOutcome(
            kind="requires_contact",
            package_id=package.id,
            package_name=package.name,
            credits=0,
            contact_email=settings.ENTERPRISE_CONTACT_EMAIL,
        )

    if package.is_free:
        key = free_claim_key(package.id, account.id)
        previous = await _transaction_by_key(db, key)
        entry = await ledger.apply(
            db,
            account.id,
            delta=package.total_credits,
            kind="purchase",
            reason=f"Claimed {package.name} package",
            idempotency_key=key,
            metadata={"package_id": package.id, "package_name": package.name, "price": 0},
        )
        return PurchaseOutcome(
            kind="granted",
            package_id=package.id,
            package_name=package.name,
            credits=package.total_credits,
            transaction=entry,
            already_claimed=previous is not None,
        )

    gateway = get_payment_provider(provider)
    purchase = PurchaseSession(
        id=str(uuid.uuid4()),
        account_id=account.id,
        package_id=package.id,
        provider=gateway.provider_name,
        status="created",
        amount=package.price,
        currency=package.currency,
    )
    db.add(purchase)
    await db.commit()

    try:
        order = await gateway.create_order(
            amount=package.price,
            currency=package.currency,
            metadata={
                "purchase_session_id": purchase.id,
                "account_id": account.id,
                "package_id": package.id,
                "description": f"{package.name} credit package ({package.total_credits} credits)",
            },
        )
    except PaymentProviderError as exc:
        await _transition(db, purchase, status="failed", failure_reason=str(exc)[:500])
        logger.warning("Order creation failed for purchase %s: %s", purchase.id, exc)
        raise

    if not await _transition(db, purchase, status="awaiting_provider", provider_order_id=order.provider_order_id):
        logger.warning("Purchase %s became %s while its order was created", purchase.id, purchase.status)
        raise InvalidSessionState(f"Purchase session is {purchase.status}")
    logger.info(
        "Purchase %s awaiting %s order %s (%s %s)",
        purchase.id,
        purchase.provider,
        order.provider_order_id,
        purchase.amount,
        purchase.currency,
    )
    return PurchaseOutcome(
        kind="requires_payment",
        package_id=package.id,
        package_name=package.name,
        credits=package.total_credits,
        purchase_session=purchase,
        checkout=order.checkout,
    )


async def _find_by_order(db: AsyncSession, provider: str, provider_order_id: str) -> Optional[PurchaseSession]:
    result = await db.execute(
        select(PurchaseSession)
        .where(
            PurchaseSession.provider == provider,
            PurchaseSession.provider_order_id == provider_order_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _mark_failed(db: AsyncSession, purchase: PurchaseSession, reason: str) -> None:
    if not await _transition(db, purchase, status="failed", failure_reason=reason[:500]):
        logger.info("Purchase %s is already %s; not marking it failed", purchase.id, purchase.status)


def _refuse_closed(purchase: PurchaseSession, order_id: str) -> InvalidSessionState:
    logger.error(
        "Callback for %s purchase %s (order %s) needs manual review",
        purchase.status,
        purchase.id,
        order_id,
    )
    return InvalidSessionState(f"Purchase session is {purchase.status}")


async def reconcile_payment(db: AsyncSession, provider: str, payload: Dict[str, Any]) -> CreditTransaction:
    """Turn a provider callback into exactly one purchase entry.

    The payload is only used to locate the session; what gets credited comes
    from the package recorded on the session once the provider confirms the
    payment. Every status change is conditional on the session still being
    open, so a racing callback or cancel can never overwrite a final state.
    """
    gateway = get_payment_provider(provider)
    order_id = gateway.order_id_from_payload(payload)
    if not order_id:
        logger.warning("SECURITY: %s callback without an order id", provider)
        raise UnknownSession("Callback does not reference an order")

    purchase = await _find_by_order(db, gateway.provider_name, order_id)
    if purchase is None:
        logger.warning("SECURITY: %s callback for unknown order %s", provider, order_id)
        raise UnknownSession(f"No purchase session for order {order_id}")

    if purchase.status == "captured":
        existing = await _transaction_by_key(db, purchase.id)
        if existing is not None:
            return existing
    elif purchase.is_terminal:
        raise _refuse_closed(purchase, order_id)

    verified = await gateway.verify_callback(payload)
    if not verified.valid or verified.provider_order_id != order_id:
        reason = verified.reason or "verification failed"
        logger.warning("SECURITY: %s verification failed for order %s: %s", provider, order_id, reason)
        await _mark_failed(db, purchase, f"verification failed: {reason}")
        raise ProviderVerificationFailed(f"Payment verification failed: {reason}", provider_order_id=order_id)

    if verified.status == "failed":
        await _mark_failed(db, purchase, "payment failed at provider")
        raise PaymentDeclined(gateway.provider_name, "payment failed")
    if verified.status != "captured":
        raise InvalidSessionState("Payment has not been captured yet")

    if verified.amount != purchase.amount or (verified.currency or "").upper() != purchase.currency.upper():
        logger.warning(
            "SECURITY: amount mismatch for order %s: paid %s %s, expected %s %s",
            order_id,
            verified.amount,
            verified.currency,
            purchase.amount,
            purchase.currency,
        )
        await _mark_failed(db, purchase, "amount or currency mismatch")
        raise ProviderVerificationFailed("Paid amount does not match the package price", provider_order_id=order_id)

    package = await _package_any_state(db, purchase.package_id)
    try:
        entry = await ledger.apply(
            db,
            purchase.account_id,
            delta=package.total_credits,
            kind="purchase",
            reason=f"Purchased {package.name} package via {gateway.provider_name}",
            idempotency_key=purchase.id,
            session_id=purchase.id,
            metadata={
                "package_id": package.id,
                "package_name": package.name,
                "provider": gateway.provider_name,
                "provider_order_id": order_id,
                "provider_payment_id": verified.payment_id,
                "amount": purchase.amount,
                "currency": purchase.currency,
            },
            guard=_open_purchase(purchase.id).values(
                status="captured",
                provider_payment_id=verified.payment_id,
                failure_reason=None,
            ),
        )
    except InvalidSessionState:
        await db.refresh(purchase)
        existing = await _transaction_by_key(db, purchase.id)
        if purchase.status == "captured" and existing is not None:
            return existing
        raise _refuse_closed(purchase, order_id)

    await db.refresh(purchase)
    logger.info("Purchase %s captured via %s order %s", purchase.id, gateway.provider_name, order_id)
    return entry


async def get_purchase(db: AsyncSession, account_id: str, purchase_session_id: str) -> PurchaseSession:
    result = await db.execute(
        select(PurchaseSession)
        .where(
            PurchaseSession.id == purchase_session_id,
            PurchaseSession.account_id == account_id,
        )
        .execution_options(populate_existing=True)
    )
    purchase = result.scalar_one_or_none()
    if purchase is None:
        raise UnknownSession(f"Purchase session {purchase_session_id} not found")
    return purchase


async def cancel_purchase(db: AsyncSession, account_id: str, purchase_session_id: str) -> PurchaseSession:
    purchase = await get_purchase(db, account_id, purchase_session_id)
    if not purchase.is_terminal and await _transition(
        db, purchase, status="cancelled", failure_reason="cancelled by user"
    ):
        logger.info("Purchase %s cancelled", purchase.id)
        return purchase
    if purchase.status == "captured":
        raise InvalidSessionState("Purchase already captured")
    return purchase


async def expire_abandoned_purchases(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=max(int(settings.PURCHASE_SESSION_TTL_HOURS), 1))
    result = await db.execute(
        update(PurchaseSession)
        .where(
            PurchaseSession.status.in_(PURCHASE_OPEN_STATUSES),
            PurchaseSession.created_at < cutoff,
        )
        .values(status="cancelled", failure_reason="expired")
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    expired = int(result.rowcount or 0)
    if expired:
        logger.info("Expired %s abandoned purchase sessions", expired)
    return expired
