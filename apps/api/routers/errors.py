"""Translate domain errors into HTTP responses."""

from fastapi import HTTPException

from services.errors import (
    CreditsError,
    EngineDispatchFailed,
    EngineStreamFailed,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidSessionState,
    PackageNotFound,
    PaymentDeclined,
    PaymentProviderError,
    PlanRestriction,
    ProviderVerificationFailed,
    UnknownAccount,
    UnknownSession,
)


def to_http_exception(exc: CreditsError) -> HTTPException:
    if isinstance(exc, InsufficientBalance):
        return HTTPException(
            status_code=402,
            detail={
                "code": "insufficient_credits",
                "message": str(exc),
                "required": exc.required,
                "available": exc.available,
            },
        )
    if isinstance(exc, PlanRestriction):
        return HTTPException(
            status_code=403,
            detail={"code": "plan_restriction", "message": str(exc), "plan_required": exc.plan_required},
        )
    if isinstance(exc, (UnknownAccount, UnknownSession, PackageNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (IdempotencyConflict, InvalidSessionState)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PaymentDeclined):
        return HTTPException(status_code=400, detail={"code": "payment_failed", "message": str(exc)})
    if isinstance(exc, ProviderVerificationFailed):
        return HTTPException(status_code=400, detail={"code": "payment_verification_failed", "message": str(exc)})
    if isinstance(exc, (PaymentProviderError, EngineDispatchFailed, EngineStreamFailed)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
