import hashlib
import hmac
import json
from unittest.mock import patch

import pytest
import razorpay

from config import settings
from conftest import FakePaymentProvider, login
from services.payments import RazorpayProvider, register_payment_provider

WEBHOOK_SECRET = "rzp_webhook_secret_for_tests"


async def _package_id(client, name: str) -> str:
    response = await client.get("/credits/packages")
    assert response.status_code == 200
    return next(package["id"] for package in response.json()["packages"] if package["name"] == name)


@pytest.mark.asyncio
async def test_new_account_starts_with_initial_credits(integration_client):
    client, _, _, _ = integration_client
    session = await login(client, "new-user@example.com")

    balance = await client.get("/credits/balance", headers=session["headers"])
    me = await client.get("/auth/me", headers=session["headers"])

    assert balance.status_code == 200
    assert balance.json()["balance"] == 1000
    assert balance.json()["plan_tier"] == "Free"
    assert [entry["type"] for entry in balance.json()["recent_transactions"]] == ["initial"]
    assert me.json()["can_create_private_audits"] is False

    again = await login(client, "new-user@example.com")
    assert again["account_id"] == session["account_id"]
    balance = await client.get("/credits/balance", headers=session["headers"])
    assert balance.json()["balance"] == 1000


@pytest.mark.asyncio
async def test_credit_routes_require_a_session(integration_client):
    client, _, _, _ = integration_client

    assert (await client.get("/credits/balance")).status_code == 401
    assert (await client.get("/credits/balance", headers={"Authorization": "Bearer not-a-token"})).status_code == 401
    assert (await client.post("/billing/purchase", json={"package_id": "x"})).status_code == 401


@pytest.mark.asyncio
async def test_balance_is_scoped_to_the_session_account(integration_client):
    client, _, _, _ = integration_client
    alice = await login(client, "alice@example.com")
    bob = await login(client, "bob@example.com")

    response = await client.get(
        "/credits/balance", params={"account_id": bob["account_id"]}, headers=alice["headers"]
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_package_catalog_and_cost_preview(integration_client):
    client, _, _, _ = integration_client

    packages = (await client.get("/credits/packages")).json()["packages"]
    preview = await client.post("/credits/calculate", json={"code": "pragma solidity ^0.8.0;", "language": "solidity"})
    unsupported = await client.post("/credits/calculate", json={"code": "print(1)", "language": "python"})

    assert [package["name"] for package in packages] == ["Free", "Pro", "Pro+", "Enterprise"]
    assert next(package for package in packages if package["name"] == "Pro")["price"] == 2999
    assert preview.status_code == 200
    assert preview.json()["credits"] == 15
    assert unsupported.status_code == 400


@pytest.mark.asyncio
async def test_free_package_claim_is_idempotent(integration_client):
    client, _, _, _ = integration_client
    session = await login(client)
    free_id = await _package_id(client, "Free")

    first = await client.post("/billing/purchase", json={"package_id": free_id}, headers=session["headers"])
    second = await client.post("/billing/purchase", json={"package_id": free_id}, headers=session["headers"])

    assert first.status_code == 200
    assert first.json()["kind"] == "granted"
    assert first.json()["balance_after"] == 2000
    assert second.json()["already_claimed"] is True
    balance = await client.get("/credits/balance", headers=session["headers"])
    assert balance.json()["balance"] == 2000


@pytest.mark.asyncio
async def test_paid_purchase_captures_once(integration_client):
    client, _, _, _ = integration_client
    register_payment_provider(FakePaymentProvider("paypal"))
    session = await login(client)
    pro_id = await _package_id(client, "Pro")

    created = await client.post(
        "/billing/purchase", json={"package_id": pro_id, "provider": "paypal"}, headers=session["headers"]
    )
    assert created.status_code == 200
    body = created.json()
    assert body["kind"] == "requires_payment"
    order_id = body["checkout"]["order_id"]

    capture = await client.post("/billing/paypal/capture", json={"order_id": order_id}, headers=session["headers"])
    webhook = await client.post(
        "/billing/paypal/webhook",
        json={"event_type": "CHECKOUT.ORDER.APPROVED", "order_id": order_id},
    )

    assert capture.status_code == 200
    assert capture.json()["credits_added"] == 5000
    assert capture.json()["balance_after"] == 6000
    assert webhook.json()["transaction_id"] == capture.json()["transaction"]["id"]
    purchase = await client.get(
        f"/billing/purchase/{body['purchase_session']['purchase_session_id']}", headers=session["headers"]
    )
    assert purchase.json()["status"] == "captured"
    me = await client.get("/auth/me", headers=session["headers"])
    assert me.json()["plan_tier"] == "Pro"


@pytest.mark.asyncio
async def test_capture_of_unknown_order_is_not_found(integration_client):
    client, _, _, _ = integration_client
    register_payment_provider(FakePaymentProvider("paypal"))
    session = await login(client)

    capture = await client.post("/billing/paypal/capture", json={"order_id": "ORDER-404"}, headers=session["headers"])
    webhook = await client.post(
        "/billing/paypal/webhook", json={"event_type": "PAYMENT.CAPTURE.COMPLETED", "order_id": "ORDER-404"}
    )
    unrelated = await client.post("/billing/paypal/webhook", json={"event_type": "BILLING.PLAN.CREATED"})

    assert capture.status_code == 404
    assert webhook.json() == {"status": "ignored"}
    assert unrelated.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_razorpay_webhook_signature_is_enforced(integration_client):
    client, _, _, _ = integration_client
    provider = RazorpayProvider(
        key_id="rzp_test_key",
        key_secret="rzp_secret",
        webhook_secret=WEBHOOK_SECRET,
        client=razorpay.Client(auth=("rzp_test_key", "rzp_secret")),
    )
    register_payment_provider(provider)
    session = await login(client)
    pro_id = await _package_id(client, "Pro")

    with patch.object(
        provider.client.order, "create", return_value={"id": "order_rzp_1", "amount": 2999, "currency": "USD"}
    ):
        created = await client.post(
            "/billing/purchase", json={"package_id": pro_id, "provider": "razorpay"}, headers=session["headers"]
        )
    assert created.json()["checkout"]["order_id"] == "order_rzp_1"

    body = json.dumps(
        {
            "event": "payment.captured",
            "payload": {
                "payment": {
                    "entity": {
                        "id": "pay_rzp_1",
                        "order_id": "order_rzp_1",
                        "status": "captured",
                        "amount": 2999,
                        "currency": "USD",
                    }
                }
            },
        }
    )
    signature = hmac.new(WEBHOOK_SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()

    forged = await client.post(
        "/billing/razorpay/webhook",
        content=body,
        headers={"x-razorpay-signature": "f" * 64, "content-type": "application/json"},
    )
    assert forged.status_code == 400
    balance = await client.get("/credits/balance", headers=session["headers"])
    assert balance.json()["balance"] == 1000

    purchase_id = created.json()["purchase_session"]["purchase_session_id"]
    purchase = await client.get(f"/billing/purchase/{purchase_id}", headers=session["headers"])
    assert purchase.json()["status"] == "failed"

    replay = await client.post(
        "/billing/razorpay/webhook",
        content=body,
        headers={"x-razorpay-signature": signature, "content-type": "application/json"},
    )
    assert replay.json()["status"] == "ignored"
    balance = await client.get("/credits/balance", headers=session["headers"])
    assert balance.json()["balance"] == 1000


@pytest.mark.asyncio
async def test_enterprise_package_and_contact(integration_client):
    client, _, _, _ = integration_client
    session = await login(client)
    enterprise_id = await _package_id(client, "Enterprise")

    outcome = await client.post("/billing/purchase", json={"package_id": enterprise_id}, headers=session["headers"])
    contact = await client.post(
        "/billing/enterprise/contact",
        json={"name": "Ada", "email": "ada@protocol.xyz", "company": "Protocol Labs", "message": "Need 20 audits"},
    )

    assert outcome.json()["kind"] == "requires_contact"
    assert contact.status_code == 200
    assert contact.json()["status"] == "received"
    assert contact.json()["contact_id"]


@pytest.mark.asyncio
async def test_unconfigured_provider_is_a_gateway_error(integration_client, monkeypatch):
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_ID", "")
    client, _, _, _ = integration_client
    session = await login(client)
    pro_id = await _package_id(client, "Pro")

    response = await client.post(
        "/billing/purchase", json={"package_id": pro_id, "provider": "paypal"}, headers=session["headers"]
    )

    assert response.status_code == 502
