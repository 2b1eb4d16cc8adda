"""Credit ledger: the append-only transaction log and the only balance mutator.

Every balance change goes through :func:`apply`. It serializes per account
(an in-process keyed lock plus a row lock on the account), refuses debits
that would go negative, and is idempotent on ``idempotency_key``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.sql.dml import Update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_transaction import EARNING_TYPES, TRANSACTION_TYPES, CreditTransaction
from services.errors import (
    CreditsError,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidSessionState,
    UnknownAccount,
)
from services.locks import KeyedLock

logger = logging.getLogger(__name__)

_account_locks = KeyedLock()

RECENT_TRANSACTIONS_LIMIT = 20


async def _find_by_key(db: AsyncSession, idempotency_key: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _lock_account(db: AsyncSession, account_id: str) -> Optional[Account]:
    result = await db.execute(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _apply_totals(account: Account, kind: str, delta: int) -> None:
    if kind in EARNING_TYPES:
        account.total_credits_earned = int(account.total_credits_earned or 0) + delta
    elif kind in ("deduction", "refund"):
        account.total_credits_used = int(account.total_credits_used or 0) - delta


async def apply(
    db: AsyncSession,
    account_id: str,
    *,
    delta: int,
    kind: str,
    reason: str,
    idempotency_key: str,
    session_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    guard: Optional[Update] = None,
) -> CreditTransaction:
    """Append one ledger entry and move the balance, atomically.

    Commits the caller's unit of work together with the entry, so objects the
    caller added to ``db`` beforehand are persisted with it, or rolled back
    with it when the debit is refused.

    ``guard`` is a conditional UPDATE (typically a session status transition)
    executed inside the same transaction. When it matches no row nothing is
    written and InvalidSessionState is raised. A replayed key returns the
    existing entry without running the guard.
    """
    if kind not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {kind}")
    if not idempotency_key:
        raise ValueError("idempotency_key is required")
    delta = int(delta)

    async with _account_locks.hold(account_id):
        try:
            account = await _lock_account(db, account_id)
            if account is None or not account.is_active:
                raise UnknownAccount(f"Account {account_id} not found")

            existing = await _find_by_key(db, idempotency_key)
            if existing is not None:
                if existing.account_id != account_id:
                    raise IdempotencyConflict(f"Idempotency key {idempotency_key} belongs to another account")
                await db.commit()
                return existing

            next_balance = int(account.balance or 0) + delta
            if next_balance < 0:
                raise InsufficientBalance(account_id, required=-delta, available=int(account.balance or 0))

            if guard is not None:
                transitioned = await db.execute(guard.execution_options(synchronize_session=False))
                if not transitioned.rowcount:
                    raise InvalidSessionState(f"Session for {idempotency_key} is no longer open")

            seq = int(account.ledger_seq or 0) + 1
            entry = CreditTransaction(
                id=str(uuid.uuid4()),
                account_id=account_id,
                seq=seq,
                type=kind,
                amount=delta,
                balance_after=next_balance,
                reason=reason,
                idempotency_key=idempotency_key,
                session_id=session_id,
                metadata_json=metadata,
            )
            account.balance = next_balance
            account.ledger_seq = seq
            _apply_totals(account, kind, delta)
            db.add(entry)
            await db.commit()
        except IntegrityError:
            # Another writer (another process) committed the same key first.
            await db.rollback()
            existing = await _find_by_key(db, idempotency_key)
            if existing is None or existing.account_id != account_id:
                raise
            return existing
        except CreditsError:
            await db.rollback()
            raise

    logger.info(
        "Ledger %s %+d for account %s (balance_after=%s, key=%s)",
        kind,
        delta,
        account_id,
        entry.balance_after,
        idempotency_key,
    )
    return entry


async def get_account(db: AsyncSession, account_id: str) -> Account:
    result = await db.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise UnknownAccount(f"Account {account_id} not found")
    return account


async def ensure_account(
    db: AsyncSession,
    *,
    email: str,
    display_name: Optional[str] = None,
    initial_credits: Optional[int] = None,
) -> Account:
    """Return the account for ``email``, creating it with its initial grant on first sight."""
    account = (await db.execute(select(Account).where(Account.email == email))).scalar_one_or_none()

    if account is None:
        account = Account(
            id=str(uuid.uuid4()),
            email=email,
            display_name=display_name,
            balance=0,
            total_credits_used=0,
            total_credits_earned=0,
            ledger_seq=0,
        )
        db.add(account)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            account = (await db.execute(select(Account).where(Account.email == email))).scalar_one_or_none()
            if account is None:
                raise
    elif display_name and account.display_name != display_name:
        account.display_name = display_name
        await db.commit()

    grant = settings.INITIAL_CREDITS if initial_credits is None else int(initial_credits)
    if grant > 0:
        await apply(
            db,
            account.id,
            delta=grant,
            kind="initial",
            reason="Initial free credits",
            idempotency_key=f"initial:{account.id}",
        )
    return await get_account(db, account.id)


async def list_transactions(
    db: AsyncSession,
    account_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.seq.desc())
        .offset(max(int(offset), 0))
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def get_balance_summary(db: AsyncSession, account_id: str) -> Dict[str, Any]:
    account = await get_account(db, account_id)
    recent = await list_transactions(db, account_id, limit=RECENT_TRANSACTIONS_LIMIT)
    return {
        "account_id": account.id,
        "balance": account.balance,
        "total_used": account.total_credits_used,
        "total_earned": account.total_credits_earned,
        "plan_tier": account.plan_tier,
        "can_create_private_audits": account.can_create_private_audits,
        "recent_transactions": [entry.to_dict() for entry in recent],
    }


async def verify_account(db: AsyncSession, account_id: str) -> Dict[str, Any]:
    """Replay the log and compare it against the cached projection."""
    account = await get_account(db, account_id)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.seq.asc())
    )
    entries = result.scalars().all()

    running = 0
    earned = 0
    used = 0
    mismatched_seqs: List[int] = []
    for expected_seq, entry in enumerate(entries, start=1):
        running += int(entry.amount)
        if entry.type in EARNING_TYPES:
            earned += int(entry.amount)
        elif entry.type in ("deduction", "refund"):
            used -= int(entry.amount)
        if entry.balance_after != running or entry.seq != expected_seq or running < 0:
            mismatched_seqs.append(int(entry.seq))

    ok = (
        not mismatched_seqs
        and running == account.balance
        and earned == account.total_credits_earned
        and used == account.total_credits_used
        and len(entries) == account.ledger_seq
    )
    if not ok:
        logger.error(
            "Ledger replay mismatch for account %s: replayed=%s cached=%s mismatched_seqs=%s",
            account_id,
            running,
            account.balance,
            mismatched_seqs,
        )
    return {
        "account_id": account_id,
        "ok": ok,
        "balance": account.balance,
        "replayed_balance": running,
        "transaction_count": len(entries),
        "mismatched_seqs": mismatched_seqs,
    }
