import pytest

from config import settings
from conftest import identity_token, login


@pytest.mark.asyncio
async def test_signed_identity_creates_one_account_per_email(integration_client):
    client, _, _, _ = integration_client

    first = await client.post("/auth/session", json={"identity_token": identity_token("dev@protocol.xyz")})
    second = await client.post(
        "/auth/session", json={"identity_token": identity_token("DEV@protocol.xyz"), "display_name": "Dev"}
    )

    assert first.status_code == 200
    assert first.json()["email"] == "dev@protocol.xyz"
    assert first.json()["balance"] == 1000
    assert second.json()["account_id"] == first.json()["account_id"]
    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {second.json()['session_token']}"})
    assert me.json()["display_name"] == "Dev"


@pytest.mark.asyncio
async def test_session_request_cannot_name_another_account(integration_client):
    client, _, _, _ = integration_client
    victim = await login(client, "victim@example.com")

    hijack = await client.post(
        "/auth/session",
        json={"identity_token": identity_token("attacker@evil.test"), "account_id": victim["account_id"]},
    )
    bare_email = await client.post("/auth/session", json={"email": "victim@example.com"})

    assert hijack.status_code == 422
    assert bare_email.status_code == 422
    attacker = await login(client, "attacker@evil.test")
    assert attacker["account_id"] != victim["account_id"]


@pytest.mark.asyncio
async def test_forged_or_expired_identity_is_rejected(integration_client):
    client, _, _, _ = integration_client

    forged = identity_token("victim@example.com", secret="not-the-frontend-signing-secret")
    expired = identity_token("victim@example.com", ttl_seconds=-60)
    wrong_audience = identity_token("victim@example.com", aud="some-other-api")
    unverified = identity_token("victim@example.com", email_verified=False)

    for token in (forged, expired, wrong_audience, unverified):
        response = await client.post("/auth/session", json={"identity_token": token})
        assert response.status_code == 401, token


@pytest.mark.asyncio
async def test_backend_session_token_is_not_an_identity(integration_client):
    client, _, _, _ = integration_client
    session = await login(client, "owner@example.com")

    response = await client.post("/auth/session", json={"identity_token": session["token"]})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_identity_exchange_unavailable_without_secret(integration_client, monkeypatch):
    client, _, _, _ = integration_client
    monkeypatch.setattr(settings, "IDENTITY_TOKEN_SECRET", "")

    response = await client.post("/auth/session", json={"identity_token": identity_token("dev@protocol.xyz")})

    assert response.status_code == 503
