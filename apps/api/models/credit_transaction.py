"""CreditTransaction model: the append-only credit ledger."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_TYPES = ("initial", "purchase", "bonus", "deduction", "refund")
EARNING_TYPES = ("initial", "purchase", "bonus")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditTransaction(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False, unique=True, index=True)
    session_id = Column(String, nullable=True, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    account = relationship("Account", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("account_id", "seq", name="uq_credit_transactions_account_seq"),
        Index("ix_credit_transactions_account_type", "account_id", "type"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "reason": self.reason,
            "session_id": self.session_id,
            "metadata": self.metadata_json,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
