"""AuditSession model for credit-backed contract audits."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


AUDIT_OPEN_STATUSES = ("initial", "reserved", "streaming")
AUDIT_TERMINAL_STATUSES = ("completed", "error")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditSession(Base):
    """One submission of contract code for analysis."""

    __tablename__ = "audit_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="initial")  # initial, reserved, streaming, completed, error
    contract_code = Column(Text, nullable=False)
    contract_language = Column(String, nullable=False, default="solidity")
    is_public = Column(Boolean, nullable=False, default=False)
    title = Column(String, nullable=True)
    reserved_credits = Column(Integer, nullable=False)
    credits_charged = Column(Integer, nullable=True)
    pricing_factors = Column(JSON, nullable=True)
    engine_session_key = Column(String, nullable=True)
    settlement_outcome = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    account = relationship("Account", back_populates="audit_sessions")
    result = relationship("AuditResult", back_populates="session", uselist=False)

    __table_args__ = (
        Index("ix_audit_sessions_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in AUDIT_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "session_id": self.id,
            "status": self.status,
            "contract_language": self.contract_language,
            "is_public": self.is_public,
            "title": self.title,
            "reserved_credits": self.reserved_credits,
            "credits_charged": self.credits_charged,
            "error": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
