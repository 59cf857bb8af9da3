# gateways/telr.py
# ============================================================================
# TELR HOSTED PAYMENT PAGE
# ============================================================================
# Create and check share one JSON endpoint, disambiguated by "method".
# Webhooks arrive as form fields with a single-character status and an
# x-telr-signature header.
# ============================================================================

import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from gateways.base import IPaymentGateway, clean_text, format_amount, gateway_registry
from gateways.signatures import has_required_fields, verify_signature
from gateways.status_mapper import map_telr_api_status, map_telr_webhook_status
from schemas.payment_definitions import (
    CustomerData,
    GatewayOrderResult,
    GatewayProvider,
    GatewayStatusResult,
    GatewayWebhookResult,
    PaymentOrderData,
    PaymentStatus,
    utcnow,
)
from schemas.payment_errors import GatewayConfigurationError

logger = structlog.get_logger().bind(component="telr_gateway")

ORDER_TTL = timedelta(minutes=30)
# Telr rejects orders carrying more than 7 extra variables
MAX_EXTRA_VARS = 7
EXTRA_KEYS = ("founderId", "planType", "purpose", "displayAmount", "displayCurrency")

REFERENCE_KEYS = ("order_ref", "cartid", "OrderRef")
STATUS_KEYS = ("status", "STATUS")
TRANSACTION_KEYS = ("tranref", "transaction_ref", "PAYID")


@dataclass
class TelrConfig:
    store_id: str
    auth_key: str
    test_mode: bool = False
    webhook_secret: str = ""
    endpoint: str = "https://secure.telr.com/gateway/order.json"
    timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "TelrConfig":
        return cls(
            store_id=os.getenv("TELR_STORE_ID", ""),
            auth_key=os.getenv("TELR_AUTH_KEY", ""),
            test_mode=os.getenv("TELR_TEST_MODE", "false").lower() == "true",
            webhook_secret=os.getenv("TELR_WEBHOOK_SECRET", ""),
            endpoint=os.getenv("TELR_ENDPOINT", "https://secure.telr.com/gateway/order.json"),
            timeout_seconds=float(os.getenv("TELR_TIMEOUT", "15")),
        )


def _first(payload: Mapping[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


@gateway_registry.register(GatewayProvider.TELR)
class TelrGateway(IPaymentGateway):
    provider = GatewayProvider.TELR

    def __init__(self, config: Optional[TelrConfig] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or TelrConfig.from_env()
        if not self.config.store_id or not self.config.auth_key:
            raise GatewayConfigurationError(context={"provider": "telr"})
        try:
            self._store = int(self.config.store_id)
        except ValueError:
            raise GatewayConfigurationError(context={"provider": "telr", "reason": "store id is not numeric"})
        super().__init__(http_client=http_client, timeout=self.config.timeout_seconds)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _customer(self, customer: CustomerData) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if customer.ref:
            body["ref"] = clean_text(customer.ref, 64)
        if customer.email:
            body["email"] = clean_text(customer.email, 254)
        if customer.phone:
            body["phone"] = clean_text(customer.phone, 20)
        if customer.name:
            body["name"] = {
                k: v for k, v in {
                    "title": clean_text(customer.name.title, 10),
                    "forenames": clean_text(customer.name.forenames, 50),
                    "surname": clean_text(customer.name.surname, 50),
                }.items() if v
            }
        return {k: v for k, v in body.items() if v}

    def _extra(self, order: PaymentOrderData) -> Dict[str, str]:
        extra = {"gateway": self.provider.value}
        for key in EXTRA_KEYS:
            value = order.metadata.get(key)
            if value not in (None, ""):
                extra[key] = str(value)
        return dict(list(extra.items())[:MAX_EXTRA_VARS])

    def build_create_request(self, order: PaymentOrderData) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "method": "create",
            "store": self._store,
            "authkey": self.config.auth_key,
            "framed": 1,
            "order": {
                "cartid": order.order_id,
                "test": "1" if self.config.test_mode else "0",
                "amount": format_amount(order.amount),
                "currency": order.currency,
                "description": clean_text(order.description, 63) or order.order_id,
            },
            "return": {
                "authorised": order.return_urls.authorised,
                "declined": order.return_urls.declined,
                "cancelled": order.return_urls.cancelled,
            },
            "extra": self._extra(order),
        }
        if order.customer:
            customer = self._customer(order.customer)
            if customer:
                body["customer"] = customer
        return body

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    async def create_order(self, order: PaymentOrderData) -> GatewayOrderResult:
        body = self.build_create_request(order)
        try:
            result = await self._post_json(self.config.endpoint, body)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("telr_create_failed", order_id=order.order_id, error=str(e))
            return GatewayOrderResult(success=False, raw={"error": str(e)})

        if result.get("error"):
            logger.error("telr_create_rejected", order_id=order.order_id, error=result.get("error"))
            return GatewayOrderResult(success=False, raw=result)

        telr_order = result.get("order") or {}
        if not telr_order.get("ref") or not telr_order.get("url"):
            logger.error("telr_unexpected_response", order_id=order.order_id, response=result)
            return GatewayOrderResult(success=False, raw=result)

        logger.info("telr_order_created", order_id=order.order_id, telr_ref=telr_order["ref"])
        return GatewayOrderResult(
            success=True,
            order_reference=str(telr_order["ref"]),
            payment_url=telr_order["url"],
            expires_at=utcnow() + ORDER_TTL,
            raw=result,
        )

    async def check_status(self, reference: str) -> GatewayStatusResult:
        body = {
            "method": "check",
            "store": self._store,
            "authkey": self.config.auth_key,
            "order": {"ref": reference},
        }
        try:
            result = await self._post_json(self.config.endpoint, body)
        except httpx.TimeoutException:
            logger.warning("telr_check_timeout", reference=reference)
            return GatewayStatusResult(success=False, status=PaymentStatus.UNKNOWN, raw={"error": "timeout"})
        except (httpx.HTTPError, ValueError) as e:
            logger.error("telr_check_failed", reference=reference, error=str(e))
            return GatewayStatusResult(success=False, status=PaymentStatus.UNKNOWN, raw={"error": str(e)})

        error = result.get("error")
        if error:
            message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
            if "not found" in message.lower():
                logger.warning("telr_order_not_found", reference=reference)
                return GatewayStatusResult(success=True, status=PaymentStatus.UNKNOWN, raw=result)
            logger.error("telr_check_rejected", reference=reference, error=error)
            return GatewayStatusResult(success=False, status=PaymentStatus.UNKNOWN, raw=result)

        telr_order = result.get("order") or {}
        status_block = telr_order.get("status") or {}
        code = status_block.get("code")
        text = status_block.get("text")

        amount = None
        if telr_order.get("amount") not in (None, ""):
            try:
                amount = Decimal(str(telr_order["amount"]))
            except InvalidOperation:
                amount = None

        return GatewayStatusResult(
            success=True,
            status=map_telr_api_status(code, text),
            gateway_status=text,
            transaction_id=(telr_order.get("transaction") or {}).get("ref"),
            amount=amount,
            currency=telr_order.get("currency"),
            raw=result,
        )

    async def process_webhook(
        self, payload: Mapping[str, Any], signature: Optional[str] = None
    ) -> GatewayWebhookResult:
        order_reference = _first(payload, REFERENCE_KEYS)
        nested = payload.get("order") if isinstance(payload.get("order"), Mapping) else {}
        if order_reference is None and nested.get("ref"):
            order_reference = str(nested["ref"])
        if order_reference is None:
            return GatewayWebhookResult(success=False, raw=dict(payload))

        raw_status = _first(payload, STATUS_KEYS)
        return GatewayWebhookResult(
            success=True,
            order_reference=order_reference,
            status=map_telr_webhook_status(raw_status),
            gateway_status=raw_status,
            transaction_id=_first(payload, TRANSACTION_KEYS),
            raw=dict(payload),
        )

    def validate_webhook(self, payload: Mapping[str, Any], signature: Optional[str] = None) -> bool:
        if self.config.webhook_secret:
            return verify_signature(payload, signature, self.config.webhook_secret)

        logger.warning("webhook_signature_skipped", provider="telr", reason="no webhook secret configured")
        if has_required_fields(payload, REFERENCE_KEYS, STATUS_KEYS):
            return True
        nested = payload.get("order") if isinstance(payload, Mapping) else None
        return isinstance(nested, Mapping) and bool(nested.get("ref")) and bool(nested.get("status"))
