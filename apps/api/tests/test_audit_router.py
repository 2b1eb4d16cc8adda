import asyncio
import json

import pytest
from redis.exceptions import RedisError

from config import settings
from conftest import identity_token, login
from main import app
from routers import rate_limit
from services import ledger
from services.pricing import reserved_credits_for

CONTRACT = "pragma solidity ^0.8.0;\ncontract Vault { function withdraw() external {} }"


def _sse_events(text: str):
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        events.append((lines.get("event"), json.loads(lines.get("data", "{}"))))
    return events


async def _create(client, headers, **overrides):
    payload = {"contract_code": CONTRACT, "contract_language": "solidity", **overrides}
    return await client.post("/audit/sessions", json=payload, headers=headers)


@pytest.mark.asyncio
async def test_audit_lifecycle_over_http(integration_client):
    client, _, manager, _ = integration_client
    session = await login(client)
    expected_cost, _ = reserved_credits_for(CONTRACT, "solidity")

    created = await _create(client, session["headers"], title="Vault v1")
    assert created.status_code == 200
    body = created.json()
    assert body["status"] == "reserved"
    assert body["reserved_credits"] == expected_cost

    await manager.wait(body["session_id"])

    stream = await client.get(f"/audit/sessions/{body['session_id']}/stream", params={"token": session["token"]})
    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(stream.text)
    assert [name for name, _ in events] == ["content", "content", "complete"]
    assert events[0][1] == {"body": "## Findings\n"}
    assert events[-1][1]["credits_charged"] == expected_cost

    result = await client.get(f"/audit/sessions/{body['session_id']}/result", headers=session["headers"])
    assert result.status_code == 200
    assert result.json()["report"] == "## Findings\nNo critical issues."
    assert result.json()["title"] == "Vault v1"

    listing = await client.get("/audit/sessions", headers=session["headers"])
    assert [item["session_id"] for item in listing.json()["sessions"]] == [body["session_id"]]

    balance = await client.get("/credits/balance", headers=session["headers"])
    assert balance.json()["balance"] == 1000 - expected_cost
    verify = await client.get("/credits/verify", headers=session["headers"])
    assert verify.json()["ok"] is True


@pytest.mark.asyncio
async def test_stream_after_relay_pruned_uses_stored_report(integration_client):
    client, _, manager, _ = integration_client
    session = await login(client)
    created = (await _create(client, session["headers"])).json()
    await manager.wait(created["session_id"])
    manager.relay.discard(created["session_id"])

    stream = await client.get(f"/audit/sessions/{created['session_id']}/stream", headers=session["headers"])

    events = _sse_events(stream.text)
    assert [name for name, _ in events] == ["content", "complete"]
    assert events[0][1]["body"] == "## Findings\nNo critical issues."


@pytest.mark.asyncio
async def test_insufficient_credits_returns_402(integration_client, monkeypatch):
    client, _, _, _ = integration_client
    monkeypatch.setattr(settings, "AUDIT_PRICING_MODE", "flat")
    monkeypatch.setattr(settings, "AUDIT_FLAT_COST", 5000)
    session = await login(client)

    response = await _create(client, session["headers"])

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "insufficient_credits"
    assert (detail["required"], detail["available"]) == (5000, 1000)
    listing = await client.get("/audit/sessions", headers=session["headers"])
    assert listing.json()["sessions"] == []


@pytest.mark.asyncio
async def test_private_audit_on_free_plan_is_forbidden(integration_client):
    client, _, _, _ = integration_client
    session = await login(client)

    response = await _create(client, session["headers"], is_public=False)

    assert response.status_code == 403
    assert response.json()["detail"]["plan_required"] == "Pro"


@pytest.mark.asyncio
async def test_private_audit_is_hidden_from_other_accounts(integration_client):
    client, session_maker, manager, _ = integration_client
    owner = await login(client, "owner@example.com")
    async with session_maker() as db:
        await ledger.apply(
            db, owner["account_id"], delta=5000, kind="purchase", reason="Pro", idempotency_key="pro-grant"
        )
    stranger = await login(client, "stranger@example.com")

    created = (await _create(client, owner["headers"], is_public=False)).json()
    await manager.wait(created["session_id"])

    assert (await client.get(f"/audit/sessions/{created['session_id']}", headers=owner["headers"])).status_code == 200
    hidden = await client.get(f"/audit/sessions/{created['session_id']}", headers=stranger["headers"])
    anonymous = await client.get(f"/audit/sessions/{created['session_id']}/result")
    assert hidden.status_code == 404
    assert anonymous.status_code == 404


@pytest.mark.asyncio
async def test_cancel_refunds_a_running_audit(integration_client):
    client, _, manager, engine = integration_client
    engine.gate = asyncio.Event()
    session = await login(client)
    created = (await _create(client, session["headers"])).json()

    cancelled = await client.post(f"/audit/sessions/{created['session_id']}/cancel", headers=session["headers"])
    engine.gate.set()
    await manager.wait(created["session_id"])

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "error"
    balance = await client.get("/credits/balance", headers=session["headers"])
    assert balance.json()["balance"] == 1000
    result = await client.get(f"/audit/sessions/{created['session_id']}/result", headers=session["headers"])
    assert result.status_code == 409


@pytest.mark.asyncio
async def test_audit_routes_validate_input_and_auth(integration_client):
    client, _, _, _ = integration_client
    session = await login(client)

    assert (await _create(client, {})).status_code == 401
    assert (await _create(client, session["headers"], contract_language="cobol")).status_code == 400
    assert (await _create(client, session["headers"], contract_code="")).status_code == 422
    missing = await client.get("/audit/sessions/does-not-exist", headers=session["headers"])
    assert missing.status_code == 404
    bad_token = await client.get("/audit/sessions/does-not-exist/stream", params={"token": "garbage"})
    assert bad_token.status_code == 401


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counters(integration_client, monkeypatch):
    client, _, _, _ = integration_client

    async def redis_down(*_args, **_kwargs):
        raise RedisError("connection refused")

    monkeypatch.setattr(rate_limit, "_consume_redis_quota", redis_down)
    app.state.disable_rate_limits = False

    statuses = []
    for _ in range(21):
        response = await client.post("/auth/session", json={"identity_token": identity_token("burst@example.com")})
        statuses.append(response.status_code)

    assert statuses[:20] == [200] * 20
    assert statuses[20] == 429
