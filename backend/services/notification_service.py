# services/notification_service.py
# ============================================================================
# NOTIFICATION COLLABORATOR
# ============================================================================
# Best-effort outbound notifications. Email rendering and delivery live in an
# external service; this module only hands it structured events. Callers never
# let a failure here affect payment state.
# ============================================================================

import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog

from schemas.payment_definitions import (
    PaymentStatus,
    PaymentTransaction,
    StatusSource,
    UserSubscription,
)

logger = structlog.get_logger().bind(component="notifications")


def _transaction_summary(transaction: PaymentTransaction) -> Dict[str, Any]:
    return {
        "transactionId": transaction.id,
        "orderReference": transaction.order_reference,
        "founderId": transaction.founder_id,
        "gatewayProvider": transaction.gateway_provider.value,
        "amount": str(transaction.amount),
        "currency": transaction.currency,
        "paymentAmount": transaction.metadata.get("paymentAmount"),
        "paymentCurrency": transaction.metadata.get("paymentCurrency"),
        "planType": transaction.plan_type.value,
    }


class INotificationService(ABC):
    @abstractmethod
    async def notify_status_change(
        self, transaction: PaymentTransaction, status: PaymentStatus, source: StatusSource
    ) -> None:
        pass

    @abstractmethod
    async def notify_team_payment_success(
        self, transaction: PaymentTransaction, subscription: UserSubscription
    ) -> None:
        pass

    @abstractmethod
    async def send_payment_confirmation_email(self, transaction: PaymentTransaction) -> None:
        pass

    @abstractmethod
    async def send_follow_up_email(self, transaction: PaymentTransaction) -> None:
        pass

    async def close(self):
        pass


class LoggingNotificationService(INotificationService):
    """Used when no team channel is configured."""

    async def notify_status_change(self, transaction, status, source):
        logger.info(
            "payment_status_notification",
            status=status.value,
            source=source.value,
            **_transaction_summary(transaction),
        )

    async def notify_team_payment_success(self, transaction, subscription):
        logger.info(
            "payment_success_notification",
            subscription_id=subscription.id,
            **_transaction_summary(transaction),
        )

    async def send_payment_confirmation_email(self, transaction):
        logger.info("payment_confirmation_email", **_transaction_summary(transaction))

    async def send_follow_up_email(self, transaction):
        logger.info("payment_follow_up_email", **_transaction_summary(transaction))


class WebhookNotificationService(INotificationService):
    """Posts every event as JSON to a team webhook (Slack-compatible relay, email worker, ...)."""

    def __init__(self, url: str, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def _deliver(self, event: str, payload: Dict[str, Any]):
        response = await self._client.post(self.url, json={"event": event, **payload})
        response.raise_for_status()
        logger.info("notification_delivered", event_name=event, order_reference=payload.get("orderReference"))

    async def notify_status_change(self, transaction, status, source):
        await self._deliver(
            "payment.status_changed",
            {**_transaction_summary(transaction), "status": status.value, "source": source.value},
        )

    async def notify_team_payment_success(self, transaction, subscription):
        await self._deliver(
            "payment.succeeded",
            {**_transaction_summary(transaction), "subscriptionId": subscription.id},
        )

    async def send_payment_confirmation_email(self, transaction):
        await self._deliver("email.payment_confirmation", _transaction_summary(transaction))

    async def send_follow_up_email(self, transaction):
        await self._deliver("email.payment_follow_up", _transaction_summary(transaction))

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


def create_notification_service(http_client: Optional[httpx.AsyncClient] = None) -> INotificationService:
    url = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
    if url:
        return WebhookNotificationService(url, http_client=http_client)
    return LoggingNotificationService()
