"""CreditPackage model for the purchasable package catalog."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func
import uuid

from database import Base


ENTERPRISE_PACKAGE_NAME = "Enterprise"


class CreditPackage(Base):
    """Purchasable bundle of credits. Price is in cents."""

    __tablename__ = "credit_packages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False, unique=True)
    credits = Column(Integer, nullable=False)
    bonus_credits = Column(Integer, nullable=False, default=0)
    total_credits = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    popular = Column(Boolean, nullable=False, default=False)
    savings = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_free(self) -> bool:
        return int(self.price or 0) == 0 and not self.is_enterprise

    @property
    def is_enterprise(self) -> bool:
        return self.name == ENTERPRISE_PACKAGE_NAME

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "bonus_credits": self.bonus_credits,
            "total_credits": self.total_credits,
            "price": self.price,
            "currency": self.currency,
            "popular": self.popular,
            "savings": self.savings,
        }
