import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from services import ledger
from services.analysis_engine import AnalysisEngine, EngineEvent, EngineHandle
from services.audit_sessions import AuditSessionManager, set_audit_session_manager
from services.errors import EngineDispatchFailed
from services.packages import ensure_default_packages
from services.payments import BasePaymentProvider, ProviderOrder, VerifiedPayment, reset_payment_providers
from services.stream_relay import StreamRelay


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit.reset_local_counters()
    yield
    rate_limit.reset_local_counters()
    app.state.disable_rate_limits = previous


IDENTITY_SECRET = "frontend-identity-signing-secret-for-tests"


@pytest.fixture(autouse=True)
def identity_signing_secret(monkeypatch):
    monkeypatch.setattr(settings, "IDENTITY_TOKEN_SECRET", IDENTITY_SECRET)
    monkeypatch.setattr(settings, "IDENTITY_TOKEN_ISSUER", "")


@pytest.fixture(autouse=True)
def reset_registered_providers():
    reset_payment_providers()
    yield
    reset_payment_providers()


class ScriptedEngine(AnalysisEngine):
    """Analysis engine double that replays a fixed list of events."""

    def __init__(
        self,
        events: Sequence[EngineEvent] = (),
        *,
        dispatch_error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.events = list(events)
        self.dispatch_error = dispatch_error
        self.stream_error = stream_error
        self.gate = gate
        self.dispatched: List[str] = []
        self.closed = 0

    async def dispatch(self, *, code: str, language: str) -> EngineHandle:
        if self.dispatch_error is not None:
            raise self.dispatch_error
        self.dispatched.append(language)
        return EngineHandle(session_key=f"engine-{len(self.dispatched)}")

    async def stream(self, handle: EngineHandle):
        try:
            if self.gate is not None:
                await self.gate.wait()
            for event in self.events:
                yield event
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.closed += 1

    async def close(self, handle: EngineHandle) -> None:
        self.closed += 1


class FakePaymentProvider(BasePaymentProvider):
    """Payment provider double. Orders are captured at their full price unless told otherwise."""

    def __init__(self, provider_name: str = "paypal", *, create_error: Optional[Exception] = None) -> None:
        self.provider_name = provider_name
        self.create_error = create_error
        self.orders: Dict[str, ProviderOrder] = {}
        self.outcomes: Dict[str, VerifiedPayment] = {}
        self.verify_calls = 0
        # Callbacks whose payload carries a ``hold`` name wait on that event inside verification.
        self.holds: Dict[str, asyncio.Event] = {}
        self.held = asyncio.Event()

    async def create_order(self, *, amount: int, currency: str, metadata: Dict[str, str]) -> ProviderOrder:
        if self.create_error is not None:
            raise self.create_error
        order_id = f"ORDER-{len(self.orders) + 1}"
        order = ProviderOrder(
            provider=self.provider_name,
            provider_order_id=order_id,
            amount=amount,
            currency=currency,
            checkout={"order_id": order_id, "approval_url": f"https://pay.example.com/{order_id}"},
        )
        self.orders[order_id] = order
        return order

    def order_id_from_payload(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("order_id")

    async def verify_callback(self, payload: Dict[str, Any]) -> VerifiedPayment:
        self.verify_calls += 1
        order_id = payload.get("order_id")
        hold = self.holds.get(payload.get("hold", ""))
        if hold is not None:
            self.held.set()
            await hold.wait()
        if payload.get("forged"):
            return VerifiedPayment(
                valid=False, provider_order_id=order_id, amount=None, currency=None, reason="signature mismatch"
            )
        if order_id in self.outcomes:
            return self.outcomes[order_id]
        order = self.orders[order_id]
        return VerifiedPayment(
            valid=True,
            provider_order_id=order_id,
            amount=order.amount,
            currency=order.currency,
            payment_id=f"PAY-{order_id}",
            status="captured",
        )


def completed_script(*fragments: str) -> List[EngineEvent]:
    return [EngineEvent(kind="fragment", text=text) for text in fragments] + [EngineEvent(kind="completed")]


def failing_dispatch() -> ScriptedEngine:
    return ScriptedEngine(dispatch_error=EngineDispatchFailed("Analysis failed (503): engine unavailable"))


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def make_account(session_maker):
    counter = {"n": 0}

    async def _make(balance: int = 100, email: Optional[str] = None):
        counter["n"] += 1
        async with session_maker() as session:
            account = await ledger.ensure_account(
                session,
                email=email or f"user{counter['n']}@example.com",
                initial_credits=balance,
            )
        return account

    return _make


@pytest_asyncio.fixture
async def integration_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    async with session_maker() as session:
        await ensure_default_packages(session)

    engine = ScriptedEngine(completed_script("## Findings\n", "No critical issues."))
    manager = AuditSessionManager(session_maker, engine_factory=lambda: engine, relay=StreamRelay())
    set_audit_session_manager(manager)
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, manager, engine

    await manager.shutdown()
    app.dependency_overrides.pop(get_db, None)
    set_audit_session_manager(None)


def identity_token(email: str, *, secret: str = IDENTITY_SECRET, ttl_seconds: int = 300, **claims: Any) -> str:
    """Sign an identity assertion the way the frontend auth server does."""
    now = int(time.time())
    payload = {
        "sub": f"auth0|{email}",
        "email": email,
        "email_verified": True,
        "aud": settings.IDENTITY_TOKEN_AUDIENCE,
        "iat": now,
        "exp": now + ttl_seconds,
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


async def login(client: AsyncClient, email: str = "owner@example.com") -> dict:
    response = await client.post(
        "/auth/session", json={"identity_token": identity_token(email), "display_name": "Owner"}
    )
    assert response.status_code == 200, response.text
    payload = response.json()
    return {
        "account_id": payload["account_id"],
        "headers": {"Authorization": f"Bearer {payload['session_token']}"},
        "token": payload["session_token"],
    }
