"""EnterpriseContact model for manual Enterprise package requests."""

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class EnterpriseContact(Base):
    """Sales contact request. Never touches the ledger."""

    __tablename__ = "enterprise_contacts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    company = Column(String, nullable=True)
    message = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="new")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
