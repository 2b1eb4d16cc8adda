"""Audit session lifecycle: reserve, dispatch, stream, settle.

A session is created together with its credit reservation. The engine run
happens in a background task that feeds the stream relay, and every way a
session can end (engine result, engine error, cancellation, watchdog,
restart recovery) goes through :meth:`AuditSessionManager.settle`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.account import PLAN_PRO
from models.audit_result import AuditResult
from models.audit_session import AUDIT_OPEN_STATUSES, AUDIT_TERMINAL_STATUSES, AuditSession
from services import ledger
from services.analysis_engine import AnalysisEngine, get_analysis_engine
from services.errors import (
    EngineDispatchFailed,
    EngineStreamFailed,
    PlanRestriction,
    UnknownSession,
)
from services.locks import KeyedLock
from services.pricing import SUPPORTED_LANGUAGES, reserved_credits_for
from services.stream_relay import StreamRelay

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "Audit timed out before the analysis finished"
CANCEL_REASON = "Audit cancelled"
RECOVERY_REASON = "Audit was interrupted by a service restart"
EMPTY_STREAM_REASON = "Analysis engine returned no output"
MISSING_REPORT_REASON = "Audit report was lost before it could be stored"


def refund_key(session_id: str) -> str:
    return f"{session_id}:refund"


class AuditSessionManager:
    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        engine_factory: Optional[Callable[[], AnalysisEngine]] = None,
        relay: Optional[StreamRelay] = None,
    ) -> None:
        self.session_maker = session_maker or async_session_maker
        self.engine_factory = engine_factory or get_analysis_engine
        self.relay = relay or StreamRelay()
        self._settle_locks = KeyedLock()
        self._tasks: Dict[str, asyncio.Task] = {}

    # Creation

    async def create(
        self,
        db: AsyncSession,
        account_id: str,
        *,
        code: str,
        language: str,
        is_public: bool = True,
        title: Optional[str] = None,
    ) -> AuditSession:
        """Persist a ``reserved`` session and its deduction in one commit.

        Raises InsufficientBalance (nothing persisted) when the account
        cannot cover the reservation.
        """
        if not code or not code.strip():
            raise ValueError("Contract code is required")
        language = (language or "solidity").strip().lower()
        if language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported contract language: {language}")

        account = await ledger.get_account(db, account_id)
        if not is_public and not account.can_create_private_audits:
            raise PlanRestriction("Private audits require a Pro plan or higher", plan_required=PLAN_PRO)

        credits, factors = reserved_credits_for(code, language)
        session = AuditSession(
            id=str(uuid.uuid4()),
            account_id=account.id,
            status="reserved",
            contract_code=code,
            contract_language=language,
            is_public=bool(is_public),
            title=(title or "").strip() or None,
            reserved_credits=credits,
            pricing_factors=factors,
            created_at=datetime.now(timezone.utc),
        )
        db.add(session)
        await ledger.apply(
            db,
            account.id,
            delta=-credits,
            kind="deduction",
            reason="audit-reservation",
            idempotency_key=session.id,
            session_id=session.id,
            metadata={"pricing": factors, "language": language},
        )
        self.relay.open(session.id)
        logger.info("Audit session %s reserved %s credits for account %s", session.id, credits, account.id)
        return session

    # Execution

    def start(self, session_id: str) -> asyncio.Task:
        existing = self._tasks.get(session_id)
        if existing is not None and not existing.done():
            return existing
        self.relay.open(session_id)
        task = asyncio.create_task(self._run(session_id), name=f"audit-session:{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _task: self._tasks.pop(session_id, None))
        return task

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def wait(self, session_id: str) -> None:
        """Block until the background run for ``session_id`` (if any) has finished."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _mark_streaming(self, session_id: str, engine_session_key: str) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                update(AuditSession)
                .where(
                    AuditSession.id == session_id,
                    AuditSession.status == "reserved",
                    AuditSession.settlement_outcome.is_(None),
                )
                .values(status="streaming", engine_session_key=engine_session_key)
            )
            await db.commit()
            return bool(result.rowcount)

    async def _run(self, session_id: str) -> None:
        async with self.session_maker() as db:
            session = await db.get(AuditSession, session_id)
            if session is None or session.status != "reserved" or session.settlement_outcome:
                return
            code, language = session.contract_code, session.contract_language

        try:
            engine = self.engine_factory()
            handle = await engine.dispatch(code=code, language=language)
        except EngineDispatchFailed as exc:
            logger.warning("Engine dispatch failed for audit %s: %s", session_id, exc)
            await self.settle(session_id, "error", reason=str(exc))
            return
        except Exception:
            logger.exception("Unexpected dispatch error for audit %s", session_id)
            await self.settle(session_id, "error", reason="Analysis could not be started")
            return

        if not await self._mark_streaming(session_id, handle.session_key):
            # Settled (cancelled or timed out) while dispatch was in flight.
            await engine.close(handle)
            return

        chunks: List[str] = []
        outcome: Optional[str] = None
        reason: Optional[str] = None
        events = engine.stream(handle)
        try:
            async for event in events:
                if event.kind == "fragment":
                    chunks.append(event.text)
                    self.relay.publish_fragment(session_id, event.text)
                elif event.kind == "completed":
                    outcome = "completed"
                    break
                else:
                    outcome, reason = "error", event.text or "Analysis failed"
                    break
        except EngineStreamFailed as exc:
            logger.warning("Engine stream failed for audit %s: %s", session_id, exc)
            outcome, reason = "error", str(exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unexpected stream error for audit %s", session_id)
            outcome, reason = "error", "Analysis stream failed"
        finally:
            await events.aclose()

        if outcome is None:
            outcome = "completed" if chunks else "error"
            reason = None if chunks else EMPTY_STREAM_REASON

        await self.settle(session_id, outcome, reason=reason, report="".join(chunks))

    # Settlement

    async def settle(
        self,
        session_id: str,
        outcome: str,
        *,
        reason: Optional[str] = None,
        report: Optional[str] = None,
    ) -> AuditSession:
        """Bring a session to its terminal state exactly once.

        The first caller claims the outcome with a conditional update; later
        callers (and restarts) only finish the claimed outcome, whatever they
        asked for. A ``completed`` claim needs a report, which commits together
        with the claim. The refund idempotency key is derived here and nowhere
        else.
        """
        session, _ = await self._settle(session_id, outcome, reason=reason, report=report)
        return session

    async def _settle(
        self,
        session_id: str,
        outcome: str,
        *,
        reason: Optional[str],
        report: Optional[str],
    ) -> Tuple[AuditSession, bool]:
        if outcome not in AUDIT_TERMINAL_STATUSES:
            raise ValueError(f"Unknown settlement outcome: {outcome}")
        if outcome == "completed" and not report:
            outcome, reason = "error", reason or EMPTY_STREAM_REASON

        async with self._settle_locks.hold(session_id):
            async with self.session_maker() as db:
                claim = await db.execute(
                    update(AuditSession)
                    .where(
                        AuditSession.id == session_id,
                        AuditSession.settlement_outcome.is_(None),
                    )
                    .values(settlement_outcome=outcome)
                )
                claimed = bool(claim.rowcount)
                if claimed and outcome == "completed":
                    db.add(AuditResult(session_id=session_id, raw_response=report, formatted_report=report))
                await db.commit()

                session = await self._load(db, session_id)
                if session is None:
                    logger.warning("SECURITY: settlement requested for unknown audit session %s", session_id)
                    raise UnknownSession(f"Audit session {session_id} not found")

                final = session.settlement_outcome
                missing_report = (
                    final == "completed"
                    and session.status != "completed"
                    and await self.get_result(db, session_id) is None
                )
                if missing_report:
                    # Nothing to deliver for this charge; refund instead.
                    logger.warning("Audit session %s was claimed as completed without a report", session_id)
                    await db.execute(
                        update(AuditSession)
                        .where(AuditSession.id == session_id, AuditSession.settlement_outcome == "completed")
                        .values(settlement_outcome="error")
                    )
                    await db.commit()
                    session = await self._load(db, session_id)
                    final, reason, claimed = "error", MISSING_REPORT_REASON, True
                elif claimed:
                    logger.info("Audit session %s settling as %s", session_id, final)
                elif final != outcome:
                    logger.info(
                        "Audit session %s already settled as %s; ignoring %s",
                        session_id,
                        final,
                        outcome,
                    )

                if session.status != final:
                    await self._finish(db, session, final, reason=reason if claimed else None)

                if final == "completed":
                    self.relay.complete(session_id, credits_charged=session.credits_charged)
                else:
                    self.relay.fail(
                        session_id,
                        session.error_message or "Analysis failed",
                        refunded_credits=session.reserved_credits,
                    )
                return session, claimed

    async def _load(self, db: AsyncSession, session_id: str) -> Optional[AuditSession]:
        result = await db.execute(
            select(AuditSession).where(AuditSession.id == session_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _finish(
        self,
        db: AsyncSession,
        session: AuditSession,
        outcome: str,
        *,
        reason: Optional[str],
    ) -> None:
        now = datetime.now(timezone.utc)
        if outcome == "completed":
            session.status = "completed"
            session.credits_charged = session.reserved_credits
            session.completed_at = now
            await db.commit()
            logger.info("Audit session %s completed; charged %s credits", session.id, session.credits_charged)
            return

        session.status = "error"
        session.credits_charged = None
        session.error_message = session.error_message or reason or "Analysis failed"
        session.completed_at = now
        # The refund commits the status change with it.
        await ledger.apply(
            db,
            session.account_id,
            delta=session.reserved_credits,
            kind="refund",
            reason=f"Refund for audit {session.id}: {session.error_message}"[:255],
            idempotency_key=refund_key(session.id),
            session_id=session.id,
        )
        logger.info("Audit session %s failed; refunded %s credits", session.id, session.reserved_credits)

    async def cancel(self, db: AsyncSession, account_id: str, session_id: str) -> AuditSession:
        session = await self.get_session(db, account_id, session_id, owner_only=True)
        if session.is_terminal:
            return session
        settled, claimed = await self._settle(session_id, "error", reason=CANCEL_REASON, report=None)
        if claimed:
            self._stop(session_id)
        return settled

    def _stop(self, session_id: str) -> None:
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            task.cancel()

    # Background maintenance

    async def expire_stalled_sessions(self, now: Optional[datetime] = None) -> int:
        """Force sessions older than the watchdog interval to ``error`` and refund them.

        Returns the number of sessions this pass settled; sessions that reached
        their outcome first are left alone.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=max(int(settings.AUDIT_WATCHDOG_SECONDS), 1))
        async with self.session_maker() as db:
            result = await db.execute(
                select(AuditSession.id).where(
                    AuditSession.status.in_(AUDIT_OPEN_STATUSES),
                    AuditSession.created_at < cutoff,
                )
            )
            stalled = list(result.scalars().all())

        expired = 0
        for session_id in stalled:
            try:
                _, claimed = await self._settle(session_id, "error", reason=TIMEOUT_REASON, report=None)
            except Exception:
                logger.exception("Watchdog could not settle audit session %s", session_id)
                continue
            if claimed:
                self._stop(session_id)
                expired += 1
        if expired:
            logger.warning("Watchdog expired %s stalled audit sessions", expired)
        self.relay.prune()
        return expired

    async def recover_unsettled_sessions(self) -> int:
        """Finish every session a previous process left open.

        Sessions whose outcome was already claimed are finished with that
        outcome. The rest lost their engine stream with the process and are
        refunded.
        """
        async with self.session_maker() as db:
            result = await db.execute(
                select(AuditSession.id, AuditSession.settlement_outcome).where(
                    AuditSession.status.in_(AUDIT_OPEN_STATUSES)
                )
            )
            pending = [(row[0], row[1]) for row in result.all()]

        recovered = 0
        for session_id, claimed_outcome in pending:
            if self.is_running(session_id):
                continue
            try:
                await self.settle(session_id, claimed_outcome or "error", reason=RECOVERY_REASON)
            except Exception:
                logger.exception("Recovery could not settle audit session %s", session_id)
                continue
            recovered += 1
        if recovered:
            logger.warning("Recovered %s unsettled audit sessions", recovered)
        return recovered

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Reads

    async def get_session(
        self,
        db: AsyncSession,
        account_id: Optional[str],
        session_id: str,
        *,
        owner_only: bool = False,
    ) -> AuditSession:
        session = await self._load(db, session_id)
        if session is None:
            raise UnknownSession(f"Audit session {session_id} not found")
        is_owner = account_id is not None and session.account_id == account_id
        if not is_owner and (owner_only or not session.is_public):
            raise UnknownSession(f"Audit session {session_id} not found")
        return session

    async def list_sessions(
        self,
        db: AsyncSession,
        account_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> List[AuditSession]:
        result = await db.execute(
            select(AuditSession)
            .where(AuditSession.account_id == account_id)
            .order_by(AuditSession.created_at.desc())
            .offset(max(int(offset), 0))
            .limit(min(max(int(limit), 1), 100))
        )
        return list(result.scalars().all())

    async def get_result(self, db: AsyncSession, session_id: str) -> Optional[AuditResult]:
        result = await db.execute(select(AuditResult).where(AuditResult.session_id == session_id))
        return result.scalar_one_or_none()


_manager: Optional[AuditSessionManager] = None


def get_audit_session_manager() -> AuditSessionManager:
    global _manager
    if _manager is None:
        _manager = AuditSessionManager()
    return _manager


def set_audit_session_manager(manager: Optional[AuditSessionManager]) -> None:
    global _manager
    _manager = manager
