"""Shared fixtures: in-memory ledger, scripted gateway, recording notifications."""

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
import pytest

from api.rate_limit import ALL_LIMITERS
from gateways.base import IPaymentGateway
from gateways.status_mapper import map_telr_webhook_status
from schemas.payment_definitions import (
    GatewayOrderResult,
    GatewayProvider,
    GatewayStatusResult,
    GatewayWebhookResult,
    PaymentOrderData,
    PaymentStatus,
)
from services.currency_service import CurrencyConfig, CurrencyService
from services.notification_service import INotificationService
from services.payment_service import PaymentService, PaymentSettings
from storage.payment_repository import InMemoryPaymentRepository


TEST_RATE = Decimal("3.6725")


class ScriptedGateway(IPaymentGateway):
    """Gateway double. Behaves like Telr: returns its own order ref on create."""

    provider = GatewayProvider.TELR

    def __init__(self, provider: GatewayProvider = GatewayProvider.TELR):
        super().__init__(http_client=None)
        self.provider = provider
        self.orders: List[PaymentOrderData] = []
        self.status_checks: List[str] = []
        self.create_success = True
        self.create_raises: Optional[Exception] = None
        self.poll_result = GatewayStatusResult(success=True, status=PaymentStatus.PENDING)
        self.signature_valid = True

    async def create_order(self, order):
        self.orders.append(order)
        if self.create_raises is not None:
            raise self.create_raises
        if not self.create_success:
            return GatewayOrderResult(success=False, raw={"error": "declined by processor"})
        ref = f"GW-{order.order_id}"
        return GatewayOrderResult(
            success=True,
            order_reference=ref,
            payment_url=f"https://pay.example.test/{ref}",
            raw={"order": {"ref": ref}},
        )

    async def check_status(self, reference):
        self.status_checks.append(reference)
        return self.poll_result

    async def process_webhook(self, payload: Mapping[str, Any], signature=None):
        ref = payload.get("cartid") or payload.get("order_ref")
        if not ref:
            return GatewayWebhookResult(success=False, raw=dict(payload))
        return GatewayWebhookResult(
            success=True,
            order_reference=ref,
            status=map_telr_webhook_status(payload.get("status")),
            gateway_status=payload.get("status"),
            raw=dict(payload),
        )

    def validate_webhook(self, payload, signature=None):
        return self.signature_valid


class RecordingNotifications(INotificationService):
    def __init__(self):
        self.events: List[Tuple[str, str]] = []
        self.fail_on: Optional[str] = None

    def _record(self, event: str, order_reference: str):
        if self.fail_on == event:
            raise RuntimeError(f"{event} unavailable")
        self.events.append((event, order_reference))

    async def notify_status_change(self, transaction, status, source):
        self._record(f"status:{status.value}", transaction.order_reference)

    async def notify_team_payment_success(self, transaction, subscription):
        self._record("team_success", transaction.order_reference)

    async def send_payment_confirmation_email(self, transaction):
        self._record("confirmation_email", transaction.order_reference)

    async def send_follow_up_email(self, transaction):
        self._record("follow_up_email", transaction.order_reference)

    def count(self, event: str) -> int:
        return sum(1 for name, _ in self.events if name == event)


def rate_transport(rate: Any = 3.6725, status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"rates": {"AED": rate}})
    return httpx.MockTransport(handler)


def single_source():
    return [("test-source", "https://fx.example.test/{base}", lambda data, base, target: data["rates"].get(target))]


@pytest.fixture(autouse=True)
def reset_rate_limiters():
    for limiter in ALL_LIMITERS:
        limiter.reset()
    yield
    for limiter in ALL_LIMITERS:
        limiter.reset()


@pytest.fixture
def repository():
    return InMemoryPaymentRepository()


@pytest.fixture
def currency_service():
    return CurrencyService(
        config=CurrencyConfig(),
        http_client=httpx.AsyncClient(transport=rate_transport()),
        sources=single_source(),
    )


@pytest.fixture
def telr_gateway():
    return ScriptedGateway(GatewayProvider.TELR)


@pytest.fixture
def paytabs_gateway():
    return ScriptedGateway(GatewayProvider.PAYTABS)


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def settings():
    return PaymentSettings(
        public_base_url="http://payments.example.test/",
        follow_up_email_delay_seconds=0,
        email_cooldown_seconds=60,
    )


@pytest.fixture
async def service(repository, currency_service, notifications, settings, telr_gateway, paytabs_gateway):
    svc = PaymentService(
        repository=repository,
        currency_service=currency_service,
        notifications=notifications,
        settings=settings,
        gateways={GatewayProvider.TELR: telr_gateway, GatewayProvider.PAYTABS: paytabs_gateway},
    )
    yield svc
    await svc.close()


def create_request(**overrides) -> Dict[str, Any]:
    body = {"amount": "100", "currency": "USD", "description": "Deal Room unlock", "planType": "premium"}
    body.update(overrides)
    return body
