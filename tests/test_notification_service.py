import json
from decimal import Decimal

import httpx

from schemas.payment_definitions import GatewayProvider, PaymentStatus, PaymentTransaction, StatusSource
from services.notification_service import (
    LoggingNotificationService,
    WebhookNotificationService,
    create_notification_service,
)


def transaction():
    return PaymentTransaction(
        founder_id="founder-1",
        order_reference="DR_1",
        gateway_provider=GatewayProvider.PAYTABS,
        amount=Decimal("100.00"),
        currency="USD",
        metadata={"paymentAmount": "367", "paymentCurrency": "AED", "planType": "basic"},
    )


async def test_webhook_notifications_post_events():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(200)

    service = WebhookNotificationService(
        "https://hooks.example.test/team",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    await service.notify_status_change(transaction(), PaymentStatus.COMPLETED, StatusSource.WEBHOOK)
    await service.send_follow_up_email(transaction())

    assert [e["event"] for e in received] == ["payment.status_changed", "email.payment_follow_up"]
    assert received[0]["orderReference"] == "DR_1"
    assert received[0]["paymentCurrency"] == "AED"
    assert received[1]["planType"] == "basic"


def test_factory_selects_by_environment(monkeypatch):
    monkeypatch.delenv("NOTIFICATION_WEBHOOK_URL", raising=False)
    assert isinstance(create_notification_service(), LoggingNotificationService)

    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.test/team")
    assert isinstance(create_notification_service(), WebhookNotificationService)
