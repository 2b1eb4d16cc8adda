"""
Audit router: create credit-backed audit sessions and follow their reports.
"""

import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.audit_session import AuditSession
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.errors import to_http_exception
from routers.rate_limit import rate_limit
from services.audit_sessions import AuditSessionManager, get_audit_session_manager
from services.errors import CreditsError
from services.session_token import decode_session_token
from services.stream_relay import RelayEvent

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_CONTRACT_CHARS = 500_000
SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class CreateAuditRequest(BaseModel):
    contract_code: str = Field(min_length=1, max_length=MAX_CONTRACT_CHARS)
    contract_language: str = "solidity"
    is_public: bool = True
    title: Optional[str] = Field(default=None, max_length=200)


class CreateAuditResponse(BaseModel):
    session_id: str
    status: str
    reserved_credits: int
    is_public: bool


def _viewer_account_id(auth: Optional[AuthContext], token: Optional[str]) -> Optional[str]:
    if auth is not None:
        return auth.account_id
    if token:
        # EventSource cannot send headers, so the stream also accepts ?token=.
        try:
            return str(decode_session_token(token).get("sub", "")) or None
        except ValueError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
    return None


@router.post(
    "/sessions",
    response_model=CreateAuditResponse,
    dependencies=[Depends(rate_limit("audit_create", limit=30, window_seconds=3600))],
)
async def create_audit_session(
    request: CreateAuditRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    manager: AuditSessionManager = Depends(get_audit_session_manager),
):
    """Reserve credits for an audit and start the analysis in the background."""
    try:
        session = await manager.create(
            db,
            auth.account_id,
            code=request.contract_code,
            language=request.contract_language,
            is_public=request.is_public,
            title=request.title,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CreditsError as exc:
        raise to_http_exception(exc) from exc

    manager.start(session.id)
    return CreateAuditResponse(
        session_id=session.id,
        status=session.status,
        reserved_credits=session.reserved_credits,
        is_public=session.is_public,
    )


@router.get("/sessions")
async def list_audit_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    manager: AuditSessionManager = Depends(get_audit_session_manager),
):
    sessions = await manager.list_sessions(db, auth.account_id, limit=limit, offset=offset)
    return {"sessions": [session.to_dict() for session in sessions], "limit": limit, "offset": offset}


@router.get("/sessions/{session_id}")
async def get_audit_session(
    session_id: str,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
    manager: AuditSessionManager = Depends(get_audit_session_manager),
):
    try:
        session = await manager.get_session(db, auth.account_id if auth else None, session_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
    return session.to_dict()


async def _persisted_events(session: AuditSession, report: Optional[str]) -> AsyncIterator[str]:
    if session.status == "completed":
        if report:
            yield RelayEvent(kind="content", data={"body": report}).to_sse()
        yield RelayEvent(
            kind="complete",
            data={"status": "completed", "credits_charged": session.credits_charged},
        ).to_sse()
    elif session.status == "error":
        yield RelayEvent(
            kind="error",
            data={
                "message": session.error_message or "Analysis failed",
                "refunded_credits": session.reserved_credits,
            },
        ).to_sse()
    else:
        yield f"event: status\ndata: {json.dumps({'status': session.status, 'session_id': session.id})}\n\n"


@router.get("/sessions/{session_id}/stream")
async def stream_audit_session(
    session_id: str,
    token: Optional[str] = Query(default=None),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
    manager: AuditSessionManager = Depends(get_audit_session_manager),
):
    """
    Server-sent events for one audit session.

    Replays fragments already produced, then follows live output until the
    terminal ``complete`` or ``error`` event. Closing the connection does not
    affect the analysis or its settlement.
    """
    viewer = _viewer_account_id(auth, token)
    try:
        session = await manager.get_session(db, viewer, session_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc

    if manager.relay.has_channel(session_id):
        async def live_events() -> AsyncIterator[str]:
            async for event in manager.relay.subscribe(session_id):
                yield event.to_sse()

        return StreamingResponse(live_events(), media_type="text/event-stream", headers=SSE_HEADERS)

    result = await manager.get_result(db, session_id)
    report = result.formatted_report if result else None
    return StreamingResponse(_persisted_events(session, report), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/sessions/{session_id}/cancel")
async def cancel_audit_session(
    session_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    manager: AuditSessionManager = Depends(get_audit_session_manager),
):
    """Abort an audit; a session that has not completed is refunded in full."""
    try:
        session = await manager.cancel(db, auth.account_id, session_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc
    return session.to_dict()


@router.get("/sessions/{session_id}/result")
async def get_audit_result(
    session_id: str,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
    manager: AuditSessionManager = Depends(get_audit_session_manager),
):
    try:
        session = await manager.get_session(db, auth.account_id if auth else None, session_id)
    except CreditsError as exc:
        raise to_http_exception(exc) from exc

    if session.status == "error":
        raise HTTPException(status_code=409, detail=session.error_message or "Audit failed")
    if session.status != "completed":
        raise HTTPException(status_code=409, detail=f"Audit is still {session.status}")

    result = await manager.get_result(db, session_id)
    return {
        **session.to_dict(),
        "report": result.formatted_report if result else "",
        "raw_response": result.raw_response if result else "",
    }
