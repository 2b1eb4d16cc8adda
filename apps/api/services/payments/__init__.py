"""Public payment provider utilities."""

from services.payments.providers import (
    BasePaymentProvider,
    PayPalProvider,
    RazorpayProvider,
    get_payment_provider,
    payment_capabilities,
    register_payment_provider,
    reset_payment_providers,
)
from services.payments.types import SUPPORTED_PROVIDERS, ProviderKey, ProviderOrder, VerifiedPayment

__all__ = [
    "BasePaymentProvider",
    "PayPalProvider",
    "ProviderKey",
    "ProviderOrder",
    "RazorpayProvider",
    "SUPPORTED_PROVIDERS",
    "VerifiedPayment",
    "get_payment_provider",
    "payment_capabilities",
    "register_payment_provider",
    "reset_payment_providers",
]
