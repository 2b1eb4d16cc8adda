"""Payment provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional


ProviderKey = Literal["paypal", "razorpay"]
PaymentStatus = Literal["captured", "failed", "pending"]

SUPPORTED_PROVIDERS = ("paypal", "razorpay")


@dataclass(frozen=True)
class ProviderOrder:
    provider: ProviderKey
    provider_order_id: str
    amount: int
    currency: str
    checkout: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerifiedPayment:
    valid: bool
    provider_order_id: Optional[str]
    amount: Optional[int]
    currency: Optional[str]
    payment_id: Optional[str] = None
    status: PaymentStatus = "pending"
    reason: Optional[str] = None
