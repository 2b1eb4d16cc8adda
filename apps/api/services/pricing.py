"""Audit pricing: how many credits a submission reserves up front."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict

from config import settings


BASE_AUDIT_CREDITS = 10

ANALYSIS_MULTIPLIERS: Dict[str, float] = {
    "security": 1.0,
    "optimization": 0.8,
    "full": 1.4,
}

LANGUAGE_MULTIPLIERS: Dict[str, float] = {
    "solidity": 1.0,
    "rust": 1.3,
    "go": 1.1,
    "vyper": 1.2,
    "cairo": 1.4,
    "move": 1.3,
}

SUPPORTED_LANGUAGES = tuple(LANGUAGE_MULTIPLIERS.keys())


@dataclass(frozen=True)
class PricingFactors:
    code_length: int
    complexity: int
    has_imports: bool
    analysis_type: str
    language: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def estimate_audit_factors(code: str, language: str, analysis_type: str = "security") -> PricingFactors:
    code = code or ""
    code_length = len(code)
    # One complexity point per started kilobyte, capped at 10.
    complexity = min(10, max(1, math.ceil(code_length / 1000)))
    return PricingFactors(
        code_length=code_length,
        complexity=complexity,
        has_imports=("import" in code or "pragma" in code),
        analysis_type=(analysis_type or "security").strip().lower(),
        language=(language or "solidity").strip().lower(),
    )


def calculate_credits_needed(factors: PricingFactors) -> int:
    """Size-weighted cost, clamped to the configured bounds."""
    cost = float(BASE_AUDIT_CREDITS)

    if factors.code_length > 0:
        cost *= max(1.0, math.log10(factors.code_length / 100) * 0.5)

    cost *= 1 + (factors.complexity - 1) * 0.2

    if factors.has_imports:
        cost *= 1.5

    cost *= ANALYSIS_MULTIPLIERS.get(factors.analysis_type, 1.0)
    cost *= LANGUAGE_MULTIPLIERS.get(factors.language, 1.0)

    return _clamp(math.ceil(cost))


def _clamp(credits: int) -> int:
    low = max(1, int(settings.AUDIT_MIN_CREDITS))
    high = max(low, int(settings.AUDIT_MAX_CREDITS))
    return max(low, min(high, int(credits)))


def reserved_credits_for(code: str, language: str, analysis_type: str = "security") -> tuple[int, Dict[str, Any]]:
    """Return ``(credits, pricing_factors)`` for an audit submission."""
    factors = estimate_audit_factors(code, language, analysis_type)
    if settings.AUDIT_PRICING_MODE == "flat":
        credits = max(1, int(settings.AUDIT_FLAT_COST))
        details = {"mode": "flat", **factors.to_dict()}
        return credits, details
    credits = calculate_credits_needed(factors)
    return credits, {"mode": "size", **factors.to_dict()}
