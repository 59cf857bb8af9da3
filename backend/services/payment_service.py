"""
Payment Orchestration Service
=============================
Reconciles one payment lifecycle reported through three channels:

- the browser return from the hosted payment page
- the server-to-server webhook / IPN
- a status poll (client-triggered or the reconciliation sweep)

All three funnel through update_status(). A transition is applied at most
once per order reference:

1. a per-order asyncio.Lock serializes channels inside this process
2. the repository's conditional update (pending -> terminal only) decides
   the winner across processes

Only the winner logs the transition, notifies the team and, on completion,
creates the subscription. Subscription creation is additionally guarded by the
audit log and the subscription table; confirmation emails by a keyed
cooldown claim in the repository.
"""

import asyncio
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

import structlog

from gateways.base import GatewayRegistry, IPaymentGateway, gateway_registry
from gateways.status_mapper import can_transition, is_final_status
from schemas.payment_definitions import (
    CreatePaymentRequest,
    CurrencyConversion,
    CustomerData,
    GatewayProvider,
    GatewayStatusResult,
    PaymentCreationResult,
    PaymentLog,
    PaymentLogAction,
    PaymentOrderData,
    PaymentStatus,
    PaymentStatusResult,
    PaymentTransaction,
    ReturnUrls,
    StatusSource,
    StatusUpdateResult,
    UserSubscription,
    WebhookOutcome,
    quantize_amount,
    utcnow,
)
from schemas.payment_errors import (
    DuplicateSubscriptionError,
    GatewayError,
    PaymentAccessDeniedError,
    PaymentValidationError,
    TransactionNotFoundError,
    WebhookVerificationError,
)
from services.currency_service import CurrencyService
from services.notification_service import INotificationService, LoggingNotificationService
from storage.payment_repository import IPaymentRepository


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class PaymentSettings:
    public_base_url: str = "https://localhost:8000"
    default_provider: GatewayProvider = GatewayProvider.TELR
    subscription_days: int = 365
    email_cooldown_seconds: float = 60
    follow_up_email_delay_seconds: float = 3
    stale_pending_minutes: int = 10

    @classmethod
    def from_env(cls) -> "PaymentSettings":
        return cls(
            public_base_url=os.getenv("PUBLIC_BASE_URL") or os.getenv("FRONTEND_URL") or "https://localhost:8000",
            default_provider=GatewayProvider(os.getenv("DEFAULT_GATEWAY_PROVIDER", "telr").lower()),
            subscription_days=int(os.getenv("SUBSCRIPTION_DAYS", "365")),
            email_cooldown_seconds=float(os.getenv("EMAIL_COOLDOWN_SECONDS", "60")),
            follow_up_email_delay_seconds=float(os.getenv("FOLLOW_UP_EMAIL_DELAY_SECONDS", "3")),
            stale_pending_minutes=int(os.getenv("RECONCILIATION_THRESHOLD", "10")),
        )

    @property
    def https_base_url(self) -> str:
        """Hosted pages only accept https return targets."""
        host = self.public_base_url.strip()
        for prefix in ("https://", "http://"):
            if host.startswith(prefix):
                host = host[len(prefix):]
        return f"https://{host.rstrip('/')}"


@dataclass
class _OrderLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


def generate_order_reference() -> str:
    return f"DR_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def format_price(amount: Decimal, currency: str) -> str:
    if currency == "USD":
        return f"${amount}"
    return f"{amount} {currency}"


# =============================================================================
# SERVICE
# =============================================================================

class PaymentService:
    """Provider-agnostic payment state machine."""

    def __init__(
        self,
        repository: IPaymentRepository,
        currency_service: CurrencyService,
        notifications: Optional[INotificationService] = None,
        settings: Optional[PaymentSettings] = None,
        registry: GatewayRegistry = gateway_registry,
        gateways: Optional[Dict[GatewayProvider, IPaymentGateway]] = None,
    ):
        self.repository = repository
        self.currency = currency_service
        self.notifications = notifications or LoggingNotificationService()
        self.settings = settings or PaymentSettings.from_env()
        self.registry = registry
        self._gateways: Dict[GatewayProvider, IPaymentGateway] = dict(gateways or {})

        self._order_locks: Dict[str, _OrderLock] = {}
        self._order_locks_mutex = asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()

        self.logger = structlog.get_logger().bind(component="payment_service")

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def gateway_for(self, provider: Any) -> IPaymentGateway:
        key = self.registry.resolve(provider)
        gateway = self._gateways.get(key)
        if gateway is None:
            gateway = self.registry.create(key)
            self._gateways[key] = gateway
        return gateway

    @asynccontextmanager
    async def _order_lock(self, order_reference: str):
        """Serialize work on one order. The entry is dropped once nobody holds or awaits it."""
        async with self._order_locks_mutex:
            entry = self._order_locks.get(order_reference)
            if entry is None:
                entry = self._order_locks[order_reference] = _OrderLock()
            entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            async with self._order_locks_mutex:
                entry.holders -= 1
                if entry.holders == 0:
                    self._order_locks.pop(order_reference, None)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain_background_tasks(self):
        """Wait for fire-and-forget side effects (tests, shutdown)."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _log_action(
        self,
        transaction: PaymentTransaction,
        action: PaymentLogAction,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ):
        await self.repository.append_log(
            PaymentLog(
                transaction_id=transaction.id,
                gateway_provider=transaction.gateway_provider,
                action=action,
                request_data=request_data,
                response_data=response_data,
            )
        )

    def build_return_urls(self, order_reference: str, provider: GatewayProvider) -> ReturnUrls:
        base = f"{self.settings.https_base_url}/api/v1/payments/{provider.value}"
        browser_return = f"{base}/return?ref={order_reference}"
        return ReturnUrls(
            authorised=browser_return,
            declined=browser_return,
            cancelled=browser_return,
            callback=f"{base}/callback",
        )

    async def _conversion_for(self, amount: Decimal, display_currency: str) -> CurrencyConversion:
        settlement = self.currency.settlement_currency_for(display_currency)
        if settlement == display_currency:
            value = quantize_amount(amount)
            if value <= 0:
                raise PaymentValidationError("Amount is too small")
            return CurrencyConversion(
                amount=value,
                currency=display_currency,
                original_amount=value,
                original_currency=display_currency,
                rate=Decimal("1"),
                source="identity",
            )
        return await self.currency.convert(amount, settlement)

    # -------------------------------------------------------------------------
    # Order creation (channel zero)
    # -------------------------------------------------------------------------

    async def create_payment(
        self,
        founder_id: str,
        request: CreatePaymentRequest,
        customer: Optional[CustomerData] = None,
    ) -> PaymentCreationResult:
        if not founder_id:
            raise PaymentValidationError("Founder id is required")

        provider = self.registry.resolve(request.gateway_provider or self.settings.default_provider)
        # Misconfigured gateways fail here, before a transaction exists
        gateway = self.gateway_for(provider)

        order_reference = generate_order_reference()
        log = self.logger.bind(order_reference=order_reference, founder_id=founder_id, provider=provider.value)

        conversion = await self._conversion_for(request.amount, request.currency)
        metadata = {
            **request.metadata,
            "purpose": request.purpose,
            "planType": request.plan_type.value if request.plan_type else None,
            **conversion.as_metadata(),
        }

        transaction = await self.repository.create_transaction(
            PaymentTransaction(
                founder_id=founder_id,
                order_reference=order_reference,
                gateway_provider=provider,
                amount=quantize_amount(request.amount),
                currency=request.currency,
                description=request.description,
                metadata={k: v for k, v in metadata.items() if v is not None},
            )
        )
        await self._log_action(
            transaction,
            PaymentLogAction.CREATED,
            request_data={
                "orderReference": order_reference,
                "amount": str(transaction.amount),
                "currency": transaction.currency,
                "purpose": request.purpose,
                "founderId": founder_id,
            },
        )
        log.info(
            "payment_created",
            display=f"{conversion.original_amount} {conversion.original_currency}",
            settlement=f"{conversion.amount} {conversion.currency}",
            rate=str(conversion.rate),
            rate_source=conversion.source,
        )

        customer = customer or request.customer
        if customer is not None and not customer.ref:
            customer = customer.model_copy(update={"ref": founder_id})

        order = PaymentOrderData(
            order_id=order_reference,
            amount=conversion.amount,
            currency=conversion.currency,
            description=f"{request.description} ({format_price(conversion.original_amount, conversion.original_currency)})",
            return_urls=self.build_return_urls(order_reference, provider),
            customer=customer,
            metadata={
                "founderId": founder_id,
                "planType": metadata.get("planType"),
                "purpose": request.purpose or request.metadata.get("purpose"),
                "displayAmount": str(conversion.original_amount),
                "displayCurrency": conversion.original_currency,
            },
        )

        try:
            result = await gateway.create_order(order)
        except Exception as e:
            log.exception("gateway_create_order_crashed")
            await self._fail_creation(transaction, {"error": str(e)})
            raise GatewayError(context={"order_reference": order_reference}) from e

        if not result.success:
            log.error("gateway_order_creation_failed", gateway_response=result.raw)
            await self._fail_creation(transaction, result.raw)
            raise GatewayError(context={"order_reference": order_reference, "gateway_response": result.raw})

        await self.repository.update_transaction(
            transaction.id,
            gateway_transaction_id=result.order_reference,
            payment_url=result.payment_url,
            expires_at=result.expires_at,
            gateway_response=result.raw,
        )
        await self._log_action(transaction, PaymentLogAction.ORDER_CREATED, response_data=result.raw)
        log.info("payment_order_created", gateway_reference=result.order_reference)

        return PaymentCreationResult(
            success=True,
            order_reference=order_reference,
            payment_url=result.payment_url,
            expires_at=result.expires_at,
        )

    async def _fail_creation(self, transaction: PaymentTransaction, raw: Dict[str, Any]):
        await self.repository.transition_status(
            transaction.order_reference, PaymentStatus.FAILED, gateway_response=raw
        )
        await self._log_action(transaction, PaymentLogAction.CREATION_FAILED, response_data=raw)

    # -------------------------------------------------------------------------
    # Channel (c): polling
    # -------------------------------------------------------------------------

    def _query_reference(self, transaction: PaymentTransaction) -> Optional[str]:
        """Reference the processor expects on a status query."""
        if transaction.gateway_provider == GatewayProvider.PAYTABS:
            raw = transaction.gateway_response or {}
            tran_ref = raw.get("paytabs_tran_ref") or raw.get("tran_ref")
            if not tran_ref or tran_ref == transaction.order_reference:
                return None
            return str(tran_ref)
        return transaction.gateway_transaction_id

    async def check_payment_status(
        self, order_reference: str, founder_id: Optional[str] = None
    ) -> PaymentStatusResult:
        transaction = await self.repository.get_by_order_reference(order_reference)
        if transaction is None:
            raise TransactionNotFoundError()
        if founder_id is not None and transaction.founder_id != founder_id:
            raise PaymentAccessDeniedError()

        log = self.logger.bind(order_reference=order_reference, provider=transaction.gateway_provider.value)

        if is_final_status(transaction.status):
            return PaymentStatusResult(status=transaction.status, transaction=transaction)

        query_reference = self._query_reference(transaction)
        if query_reference is None:
            log.warning("status_query_reference_missing", detail="using stored status")
            return PaymentStatusResult(status=transaction.status, transaction=transaction)

        try:
            gateway = self.gateway_for(transaction.gateway_provider)
        except GatewayError as e:
            log.error("status_poll_gateway_unavailable", error=e.message)
            return PaymentStatusResult(status=transaction.status, transaction=transaction)

        result: GatewayStatusResult = await gateway.check_status(query_reference)
        if not result.success or result.status == PaymentStatus.UNKNOWN:
            log.warning("status_poll_inconclusive", gateway_success=result.success, detail="using stored status")
            return PaymentStatusResult(status=transaction.status, transaction=transaction)

        outcome = await self.update_status(
            order_reference,
            result.status,
            source=StatusSource.POLL,
            gateway_status=result.gateway_status,
            gateway_response=result.raw,
        )
        return PaymentStatusResult(status=outcome.transaction.status, transaction=outcome.transaction)

    # -------------------------------------------------------------------------
    # Channels (a) and (b): browser return and webhook/IPN
    # -------------------------------------------------------------------------

    async def handle_webhook(
        self,
        provider: Any,
        payload: Dict[str, Any],
        signature: Optional[str] = None,
        source: StatusSource = StatusSource.WEBHOOK,
    ) -> WebhookOutcome:
        provider = self.registry.resolve(provider)
        gateway = self.gateway_for(provider)
        log = self.logger.bind(provider=provider.value, source=source.value)

        if not gateway.validate_webhook(payload, signature):
            log.warning("webhook_rejected", reason="invalid signature")
            raise WebhookVerificationError()

        result = await gateway.process_webhook(payload, signature)
        if not result.success or not result.order_reference:
            log.warning("webhook_unprocessable", payload_keys=sorted(payload.keys()))
            raise PaymentValidationError("Failed to process webhook")

        transaction = await self.repository.get_by_order_reference(result.order_reference)
        if transaction is None:
            transaction = await self.repository.get_by_gateway_reference(result.order_reference)
        if transaction is None:
            log.warning("webhook_transaction_not_found", reference=result.order_reference)
            raise TransactionNotFoundError("Transaction not found for webhook")

        if transaction.gateway_provider != provider:
            log.warning(
                "webhook_provider_mismatch",
                order_reference=transaction.order_reference,
                expected=transaction.gateway_provider.value,
            )
            raise WebhookVerificationError()

        outcome = await self.update_status(
            transaction.order_reference,
            result.status,
            source=source,
            gateway_status=result.gateway_status,
            gateway_response=result.raw,
        )
        return WebhookOutcome(
            success=True,
            processed=outcome.changed,
            order_reference=transaction.order_reference,
            status=outcome.transaction.status,
        )

    # -------------------------------------------------------------------------
    # The single transition primitive
    # -------------------------------------------------------------------------

    async def update_status(
        self,
        order_reference: str,
        new_status: PaymentStatus,
        source: StatusSource = StatusSource.MANUAL,
        gateway_status: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> StatusUpdateResult:
        log = self.logger.bind(order_reference=order_reference, source=source.value)

        async with self._order_lock(order_reference):
            current = await self.repository.get_by_order_reference(order_reference)
            if current is None:
                raise TransactionNotFoundError()

            if new_status == PaymentStatus.UNKNOWN or new_status == current.status:
                return StatusUpdateResult(changed=False, transaction=current)

            if not can_transition(current.status, new_status):
                if is_final_status(current.status) and is_final_status(new_status):
                    log.warning(
                        "conflicting_terminal_status_ignored",
                        current=current.status.value,
                        reported=new_status.value,
                    )
                return StatusUpdateResult(changed=False, transaction=current)

            updated = await self.repository.transition_status(
                order_reference,
                new_status,
                gateway_status=gateway_status,
                gateway_response=gateway_response,
            )
            if updated is None:
                # Another instance won the conditional update
                latest = await self.repository.get_by_order_reference(order_reference)
                return StatusUpdateResult(changed=False, transaction=latest or current)

            action = (
                PaymentLogAction.WEBHOOK_RECEIVED
                if source == StatusSource.WEBHOOK
                else PaymentLogAction.STATUS_UPDATED
            )
            await self._log_action(
                updated,
                action,
                request_data={"source": source.value, "from": current.status.value, "to": new_status.value},
                response_data=gateway_response,
            )

        log.info("status_transition", previous=current.status.value, status=new_status.value)
        self._spawn(self._notify_status_change(updated, new_status, source))

        if new_status == PaymentStatus.COMPLETED:
            await self._create_subscription(updated)

        return StatusUpdateResult(changed=True, transaction=updated)

    # -------------------------------------------------------------------------
    # Exactly-once side effects (best effort, never raise)
    # -------------------------------------------------------------------------

    async def _notify_status_change(self, transaction: PaymentTransaction, status: PaymentStatus, source: StatusSource):
        try:
            await self.notifications.notify_status_change(transaction, status, source)
        except Exception as e:
            self.logger.error(
                "status_notification_failed", order_reference=transaction.order_reference, error=str(e)
            )

    async def _create_subscription(self, transaction: PaymentTransaction) -> Optional[UserSubscription]:
        log = self.logger.bind(order_reference=transaction.order_reference, transaction_id=transaction.id)
        try:
            if await self.repository.has_log(transaction.id, PaymentLogAction.SUBSCRIPTION_CREATED):
                log.info("subscription_skipped", reason="already logged")
                return None
            if await self.repository.get_subscription_by_transaction(transaction.id) is not None:
                log.info("subscription_skipped", reason="already exists")
                return None

            now = utcnow()
            subscription = UserSubscription(
                founder_id=transaction.founder_id,
                payment_transaction_id=transaction.id,
                plan_type=transaction.plan_type,
                gateway_provider=transaction.gateway_provider,
                starts_at=now,
                expires_at=now + timedelta(days=self.settings.subscription_days),
            )
            try:
                await self.repository.create_subscription(subscription)
            except DuplicateSubscriptionError:
                log.info("subscription_skipped", reason="insert conflict")
                return None

            await self._log_action(
                transaction,
                PaymentLogAction.SUBSCRIPTION_CREATED,
                response_data={"subscriptionId": subscription.id, "planType": subscription.plan_type.value},
            )
            log.info("subscription_created", plan_type=subscription.plan_type.value)
        except Exception:
            log.exception("subscription_creation_failed")
            return None

        self._spawn(self._send_success_effects(transaction, subscription))
        return subscription

    async def _send_success_effects(self, transaction: PaymentTransaction, subscription: UserSubscription):
        log = self.logger.bind(order_reference=transaction.order_reference)

        try:
            await self.notifications.notify_team_payment_success(transaction, subscription)
        except Exception as e:
            log.error("team_notification_failed", error=str(e))

        try:
            claimed = await self.repository.try_claim_key(
                f"payment_emails:{transaction.id}", self.settings.email_cooldown_seconds
            )
        except Exception as e:
            log.error("email_cooldown_claim_failed", error=str(e))
            return
        if not claimed:
            log.info("payment_emails_suppressed", reason="cooldown active")
            return

        try:
            await self.notifications.send_payment_confirmation_email(transaction)
            await self._log_action(transaction, PaymentLogAction.EMAILS_SENT, response_data={"email": "confirmation"})
        except Exception as e:
            log.error("confirmation_email_failed", error=str(e))

        await asyncio.sleep(self.settings.follow_up_email_delay_seconds)
        try:
            await self.notifications.send_follow_up_email(transaction)
        except Exception as e:
            log.error("follow_up_email_failed", error=str(e))

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    async def get_payment_history(self, founder_id: str, limit: int = 50) -> List[PaymentTransaction]:
        return await self.repository.list_for_founder(founder_id, limit=limit)

    async def get_user_subscriptions(self, founder_id: str) -> List[UserSubscription]:
        return await self.repository.list_subscriptions(founder_id)

    async def has_deal_room_access(self, founder_id: str) -> bool:
        transactions = await self.repository.list_for_founder(founder_id, limit=500)
        return any(t.status == PaymentStatus.COMPLETED for t in transactions)

    async def list_stale_pending(
        self, older_than_minutes: Optional[int] = None, limit: int = 10
    ) -> List[PaymentTransaction]:
        minutes = older_than_minutes if older_than_minutes is not None else self.settings.stale_pending_minutes
        return await self.repository.list_stale_pending(utcnow() - timedelta(minutes=minutes), limit=limit)

    async def close(self):
        await self.drain_background_tasks()
        for gateway in self._gateways.values():
            await gateway.close()
        await self.currency.close()
        await self.notifications.close()
