"""PurchaseSession model for provider-backed credit purchases."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base


PURCHASE_TERMINAL_STATUSES = ("captured", "failed", "cancelled")
PURCHASE_OPEN_STATUSES = ("created", "awaiting_provider")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PurchaseSession(Base):
    """One checkout attempt for one package through one provider."""

    __tablename__ = "purchase_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    package_id = Column(String, ForeignKey("credit_packages.id"), nullable=False)
    provider = Column(String, nullable=False)
    provider_order_id = Column(String, nullable=True, unique=True, index=True)
    provider_payment_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="created")
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    account = relationship("Account", back_populates="purchase_sessions")
    package = relationship("CreditPackage")

    __table_args__ = (
        Index("ix_purchase_sessions_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in PURCHASE_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "purchase_session_id": self.id,
            "package_id": self.package_id,
            "provider": self.provider,
            "provider_order_id": self.provider_order_id,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
