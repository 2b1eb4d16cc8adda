"""Startup recovery and periodic maintenance for sessions left open."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from database import async_session_maker
from services.audit_sessions import AuditSessionManager
from services.purchases import expire_abandoned_purchases

logger = logging.getLogger(__name__)


async def expire_stale_purchase_sessions(now: Optional[datetime] = None, session_maker=None) -> int:
    """Cancel checkouts nobody completed within the purchase TTL."""
    maker = session_maker or async_session_maker
    async with maker() as db:
        return await expire_abandoned_purchases(db, now=now)


async def recover_after_restart(manager: AuditSessionManager) -> Dict[str, int]:
    """Settle audit sessions a previous process left open and expire stale checkouts."""
    recovered = await manager.recover_unsettled_sessions()
    expired = await expire_stale_purchase_sessions(session_maker=manager.session_maker)
    return {"audit_sessions_recovered": recovered, "purchase_sessions_expired": expired}


async def run_watchdog_pass(manager: AuditSessionManager, now: Optional[datetime] = None) -> Dict[str, int]:
    timed_out = await manager.expire_stalled_sessions(now=now)
    expired = await expire_stale_purchase_sessions(now=now, session_maker=manager.session_maker)
    return {"audit_sessions_timed_out": timed_out, "purchase_sessions_expired": expired}
