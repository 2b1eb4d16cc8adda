"""
Authentication router: account session sync and current account retrieval.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.errors import to_http_exception
from routers.rate_limit import rate_limit
from services import ledger
from services.errors import CreditsError
from services.session_token import (
    IdentityVerificationUnavailable,
    create_session_token,
    decode_identity_token,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class SessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    identity_token: str = Field(min_length=1, max_length=8192)
    display_name: Optional[str] = Field(default=None, max_length=120)


class SessionResponse(BaseModel):
    account_id: str
    email: str
    balance: int
    plan_tier: str
    session_token: str
    session_expires_at: int


class CurrentAccountResponse(BaseModel):
    account_id: str
    email: str
    display_name: Optional[str] = None
    balance: int
    total_used: int
    total_earned: int
    plan_tier: str
    can_create_private_audits: bool


@router.post(
    "/session",
    response_model=SessionResponse,
    dependencies=[Depends(rate_limit("auth_session", limit=20, window_seconds=60))],
)
async def create_session(
    request: SessionRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Exchange a signed identity assertion for a backend session token.

    First sight of an email creates the account and grants the initial credits.
    """
    try:
        identity = decode_identity_token(request.identity_token)
    except IdentityVerificationUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ValueError as exc:
        logger.warning("SECURITY: rejected identity assertion: %s", exc)
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    try:
        account = await ledger.ensure_account(
            db,
            email=identity["email"],
            display_name=request.display_name or identity.get("name"),
        )
    except CreditsError as exc:
        raise to_http_exception(exc) from exc

    session = create_session_token(account.id, account.email)
    return SessionResponse(
        account_id=account.id,
        email=account.email,
        balance=account.balance,
        plan_tier=account.plan_tier,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me", response_model=CurrentAccountResponse)
async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        account = await ledger.get_account(db, auth.account_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc

    return CurrentAccountResponse(
        account_id=account.id,
        email=account.email,
        display_name=account.display_name,
        balance=account.balance,
        total_used=account.total_credits_used,
        total_earned=account.total_credits_earned,
        plan_tier=account.plan_tier,
        can_create_private_audits=account.can_create_private_audits,
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
