import httpx
import pytest

from api.server import config, create_app
from conftest import create_request
from schemas.payment_definitions import GatewayStatusResult, PaymentStatus

FOUNDER = {"X-Founder-Id": "founder-1"}


@pytest.fixture
async def client(service):
    app = create_app(service, run_reconciliation=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


async def create(client, **overrides):
    response = await client.post("/api/v1/payments/create", json=create_request(**overrides), headers=FOUNDER)
    assert response.status_code == 200, response.text
    return response.json()


# =============================================================================
# Health
# =============================================================================

async def test_health(client):
    response = await client.get("/health")
    body = response.json()
    assert body["status"] == "healthy"
    assert body["paymentStore"] == "InMemoryPaymentRepository"
    assert "telr" in body["supportedProviders"]
    assert "X-Request-ID" in response.headers


async def test_readiness_and_liveness(client):
    assert (await client.get("/ready")).json() == {"ready": True}
    assert (await client.get("/live")).json() == {"live": True}


# =============================================================================
# Dashboard endpoints
# =============================================================================

async def test_create_payment(client):
    body = await create(client)
    assert body["success"] is True
    assert body["orderReference"].startswith("DR_")
    assert body["paymentUrl"].startswith("https://")


async def test_create_requires_founder(client):
    response = await client.post("/api/v1/payments/create", json=create_request())
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "User not authenticated"}


async def test_create_rejects_invalid_body(client):
    response = await client.post("/api/v1/payments/create", json=create_request(amount="-5"), headers=FOUNDER)
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid request data"
    assert body["details"][0]["field"] == "amount"


async def test_create_gateway_failure_is_generic_502(client, telr_gateway):
    telr_gateway.create_success = False
    response = await client.post("/api/v1/payments/create", json=create_request(), headers=FOUNDER)
    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "Failed to create payment order"}


async def test_create_is_rate_limited(client):
    for _ in range(10):
        await create(client)
    response = await client.post("/api/v1/payments/create", json=create_request(), headers=FOUNDER)
    assert response.status_code == 429
    assert response.json()["success"] is False
    assert "Retry-After" in response.headers


async def test_create_amount_too_small_to_settle_is_400(client, service):
    response = await client.post("/api/v1/payments/create", json=create_request(amount="0.1"), headers=FOUNDER)
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert await service.repository.list_for_founder("founder-1") == []


async def test_spoofed_forwarded_header_does_not_reset_limit(client):
    for _ in range(10):
        await create(client)
    response = await client.post(
        "/api/v1/payments/create",
        json=create_request(),
        headers={**FOUNDER, "X-Forwarded-For": "203.0.113.77"},
    )
    assert response.status_code == 429


async def test_status_polls_and_reports(client, telr_gateway, service):
    created = await create(client)
    telr_gateway.poll_result = GatewayStatusResult(success=True, status=PaymentStatus.COMPLETED)

    response = await client.get(f"/api/v1/payments/status/{created['orderReference']}", headers=FOUNDER)
    await service.drain_background_tasks()

    body = response.json()
    assert body["status"] == "completed"
    assert "successfully" in body["message"]
    assert body["transaction"]["orderReference"] == created["orderReference"]
    assert "gatewayResponse" not in body["transaction"]


async def test_status_of_another_founders_payment_is_forbidden(client):
    created = await create(client)
    response = await client.get(
        f"/api/v1/payments/status/{created['orderReference']}", headers={"X-Founder-Id": "intruder"}
    )
    assert response.status_code == 403


async def test_status_not_found(client):
    response = await client.get("/api/v1/payments/status/DR_missing", headers=FOUNDER)
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Payment not found"}


async def test_history_subscriptions_and_access(client, service):
    created = await create(client)
    assert (await client.get("/api/v1/payments/access", headers=FOUNDER)).json()["hasAccess"] is False

    await service.update_status(created["orderReference"], PaymentStatus.COMPLETED)
    await service.drain_background_tasks()

    history = (await client.get("/api/v1/payments/history", headers=FOUNDER)).json()
    assert [t["status"] for t in history["transactions"]] == ["completed"]

    subs = (await client.get("/api/v1/payments/subscriptions", headers=FOUNDER)).json()
    assert subs["subscriptions"][0]["planType"] == "premium"

    assert (await client.get("/api/v1/payments/access", headers=FOUNDER)).json()["hasAccess"] is True


# =============================================================================
# Gateway-facing endpoints
# =============================================================================

async def test_webhook_form_post(client, service):
    created = await create(client)
    response = await client.post(
        "/api/v1/webhooks/telr", data={"cartid": created["orderReference"], "status": "A"}
    )
    await service.drain_background_tasks()

    assert response.status_code == 200
    assert response.json() == {"success": True, "processed": True}

    again = await client.post("/api/v1/webhook/telr", json={"cartid": created["orderReference"], "status": "A"})
    assert again.json() == {"success": True, "processed": False}


async def test_webhook_bad_signature_is_401(client, telr_gateway):
    created = await create(client)
    telr_gateway.signature_valid = False
    response = await client.post(
        "/api/v1/webhooks/telr",
        json={"cartid": created["orderReference"], "status": "A"},
        headers={"x-telr-signature": "nope"},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid webhook signature"


async def test_webhook_unsupported_provider(client):
    response = await client.post("/api/v1/webhooks/stripe", json={"id": "evt_1"})
    assert response.status_code == 400


async def test_return_with_status_redirects_to_result(client, service):
    created = await create(client)
    ref = created["orderReference"]

    response = await client.post(
        f"/api/v1/payments/telr/return?ref={ref}", data={"cartid": ref, "status": "C"}
    )
    await service.drain_background_tasks()

    assert response.status_code == 303
    assert response.headers["location"] == f"{config.FRONTEND_URL}/payment/cancelled?ref={ref}"


async def test_return_without_status_polls(client, telr_gateway, service):
    created = await create(client)
    ref = created["orderReference"]

    response = await client.get(f"/api/v1/payments/telr/return?ref={ref}")

    assert response.status_code == 303
    assert response.headers["location"] == f"{config.FRONTEND_URL}/payment/pending?ref={ref}"
    assert telr_gateway.status_checks == [f"GW-{ref}"]


async def test_return_for_unknown_reference_redirects_to_error(client):
    response = await client.get("/api/v1/payments/telr/return?ref=DR_missing")
    assert response.status_code == 303
    assert response.headers["location"].startswith(f"{config.FRONTEND_URL}/payment/error?error=")


async def test_return_is_rate_limited(client):
    for _ in range(30):
        response = await client.get("/api/v1/payments/telr/return?ref=DR_missing")
        assert response.status_code == 303
    response = await client.get("/api/v1/payments/telr/return?ref=DR_missing")
    assert response.status_code == 429


async def test_callback_endpoint(client, service):
    created = await create(client)
    response = await client.post(
        "/api/v1/payments/telr/callback", json={"cartid": created["orderReference"], "status": "E"}
    )
    await service.drain_background_tasks()
    assert response.json() == {"success": True, "processed": True}


async def test_telr_get_callback_redirects(client, service):
    created = await create(client)
    ref = created["orderReference"]
    response = await client.get("/api/v1/webhooks/telr", params={"cartid": ref, "status": "A"})
    await service.drain_background_tasks()

    assert response.status_code == 303
    assert response.headers["location"] == f"{config.FRONTEND_URL}/payment/success?ref={ref}"
