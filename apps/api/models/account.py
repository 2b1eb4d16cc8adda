"""Account model: identity plus the cached balance projection."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


PLAN_FREE = "Free"
PLAN_PRO = "Pro"
PLAN_PRO_PLUS = "Pro+"
PLAN_ENTERPRISE = "Enterprise"

PRO_EARNED_THRESHOLD = 5000
PRO_PLUS_EARNED_THRESHOLD = 15000
PRIVATE_AUDIT_TIERS = (PLAN_PRO, PLAN_PRO_PLUS, PLAN_ENTERPRISE)


def plan_tier_for(total_credits_earned: int, override: str = None) -> str:
    if override:
        return override
    earned = int(total_credits_earned or 0)
    if earned >= PRO_PLUS_EARNED_THRESHOLD:
        return PLAN_PRO_PLUS
    if earned >= PRO_EARNED_THRESHOLD:
        return PLAN_PRO
    return PLAN_FREE


class Account(Base):
    """Credit account. Balance columns are written only by the ledger."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    balance = Column(Integer, nullable=False, default=0)
    total_credits_used = Column(Integer, nullable=False, default=0)
    total_credits_earned = Column(Integer, nullable=False, default=0)
    ledger_seq = Column(Integer, nullable=False, default=0)
    plan_tier_override = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    transactions = relationship("CreditTransaction", back_populates="account")
    purchase_sessions = relationship("PurchaseSession", back_populates="account")
    audit_sessions = relationship("AuditSession", back_populates="account")

    @property
    def plan_tier(self) -> str:
        return plan_tier_for(self.total_credits_earned, self.plan_tier_override)

    @property
    def can_create_private_audits(self) -> bool:
        return self.plan_tier in PRIVATE_AUDIT_TIERS
