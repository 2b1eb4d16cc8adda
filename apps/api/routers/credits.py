"""Credits router: balance, history, package catalog and cost estimates."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_account_scope, get_auth_context
from routers.errors import to_http_exception
from routers.rate_limit import rate_limit
from services import ledger
from services.errors import CreditsError
from services.packages import list_packages
from services.pricing import SUPPORTED_LANGUAGES, reserved_credits_for

router = APIRouter()
logger = logging.getLogger(__name__)


class CalculateRequest(BaseModel):
    code: str = Field(min_length=1)
    language: str = "solidity"
    analysis_type: Literal["security", "optimization", "full"] = "security"


@router.get("/balance")
async def credits_balance(
    account_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_account_id = ensure_account_scope(auth.account_id, account_id)
    try:
        return await ledger.get_balance_summary(db, scoped_account_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc


@router.get("/transactions")
async def credit_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    entries = await ledger.list_transactions(db, auth.account_id, limit=limit, offset=offset)
    return {
        "account_id": auth.account_id,
        "transactions": [entry.to_dict() for entry in entries],
        "limit": limit,
        "offset": offset,
    }


@router.get("/packages")
async def credit_packages(db: AsyncSession = Depends(get_db)):
    packages = await list_packages(db)
    return {"packages": [package.to_dict() for package in packages]}


@router.post(
    "/calculate",
    dependencies=[Depends(rate_limit("credits_calculate", limit=120, window_seconds=60))],
)
async def calculate_cost(request: CalculateRequest):
    """Preview what an audit of ``code`` would reserve."""
    language = request.language.strip().lower()
    if language not in SUPPORTED_LANGUAGES:
        raise HTTPException(status_code=400, detail=f"Unsupported contract language: {language}")
    credits, factors = reserved_credits_for(request.code, language, request.analysis_type)
    return {"credits": credits, "factors": factors}


@router.get("/verify")
async def verify_ledger(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Replay the account's transaction log against its cached balance."""
    try:
        return await ledger.verify_account(db, auth.account_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
