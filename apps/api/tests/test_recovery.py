from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from config import settings
from conftest import FakePaymentProvider, ScriptedEngine, completed_script
from models.audit_session import AuditSession
from models.credit_package import CreditPackage
from models.purchase_session import PurchaseSession
from services import ledger
from services.audit_sessions import AuditSessionManager
from services.packages import ensure_default_packages
from services.payments import register_payment_provider
from services.purchases import initiate_purchase
from services.recovery import recover_after_restart, run_watchdog_pass
from services.stream_relay import StreamRelay

CONTRACT = "contract Vault { function withdraw() external {} }"


@pytest.fixture(autouse=True)
def flat_pricing(monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_PRICING_MODE", "flat")
    monkeypatch.setattr(settings, "AUDIT_FLAT_COST", 10)


def _manager(session_maker) -> AuditSessionManager:
    return AuditSessionManager(
        session_maker, engine_factory=lambda: ScriptedEngine(completed_script("ok")), relay=StreamRelay()
    )


async def _pro_package_id(db) -> str:
    await ensure_default_packages(db)
    result = await db.execute(select(CreditPackage.id).where(CreditPackage.name == "Pro"))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_restart_recovery_refunds_open_audits(session_maker, db, make_account):
    account = await make_account(balance=100)
    await _manager(session_maker).create(db, account.id, code=CONTRACT, language="solidity")

    result = await recover_after_restart(_manager(session_maker))

    assert result == {"audit_sessions_recovered": 1, "purchase_sessions_expired": 0}
    async with session_maker() as check:
        statuses = (await check.execute(select(AuditSession.status))).scalars().all()
        assert statuses == ["error"]
        assert (await ledger.verify_account(check, account.id))["balance"] == 100


@pytest.mark.asyncio
async def test_watchdog_pass_expires_audits_and_checkouts(session_maker, db, make_account):
    register_payment_provider(FakePaymentProvider("paypal"))
    account = await make_account(balance=100)
    manager = _manager(session_maker)
    await manager.create(db, account.id, code=CONTRACT, language="solidity")
    await initiate_purchase(db, account.id, await _pro_package_id(db))

    now = datetime.now(timezone.utc)
    assert await run_watchdog_pass(manager, now=now) == {"audit_sessions_timed_out": 0, "purchase_sessions_expired": 0}

    later = now + timedelta(hours=settings.PURCHASE_SESSION_TTL_HOURS, seconds=1)
    assert await run_watchdog_pass(manager, now=later) == {
        "audit_sessions_timed_out": 1,
        "purchase_sessions_expired": 1,
    }
    async with session_maker() as check:
        assert (await check.execute(select(PurchaseSession.status))).scalars().all() == ["cancelled"]
        assert (await ledger.get_account(check, account.id)).balance == 100
