# gateways/paytabs.py
# ============================================================================
# PAYTABS HOSTED PAYMENT PAGE
# ============================================================================
# Separate JSON endpoints for create (/payment/request) and query
# (/payment/query). The browser return is a form POST (respStatus, cartId,
# tranRef, signature); the IPN is a JSON POST with nested payment_result.
#
# PayTabs assigns its own tran_ref after creation. Status queries must use
# that tran_ref, never our cart id.
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
from gateways.status_mapper import map_paytabs_api_status, map_paytabs_webhook_status
from schemas.payment_definitions import (
    GatewayOrderResult,
    GatewayProvider,
    GatewayStatusResult,
    GatewayWebhookResult,
    PaymentOrderData,
    PaymentStatus,
    utcnow,
)
from schemas.payment_errors import GatewayConfigurationError

logger = structlog.get_logger().bind(component="paytabs_gateway")

ORDER_TTL = timedelta(minutes=20)
SUCCESS_RESPONSE_CODE = "2000"

REFERENCE_KEYS = ("cartId", "cart_id", "tran_ref")
STATUS_KEYS = ("respStatus", "response_status")
TRANSACTION_KEYS = ("tranRef", "tran_ref")


@dataclass
class PayTabsConfig:
    profile_id: str
    server_key: str
    test_mode: bool = False
    region: str = "global"
    base_url: str = "https://secure.paytabs.com"
    webhook_secret: str = ""
    timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "PayTabsConfig":
        server_key = os.getenv("PAYTABS_SERVER_KEY", "")
        return cls(
            profile_id=os.getenv("PAYTABS_PROFILE_ID", ""),
            server_key=server_key,
            test_mode=os.getenv("PAYTABS_TEST_MODE", "false").lower() == "true",
            region=os.getenv("PAYTABS_REGION", "global"),
            # UAE accounts use the .com host regardless of region
            base_url=os.getenv("PAYTABS_BASE_URL", "https://secure.paytabs.com"),
            # PayTabs signs callbacks with the server key
            webhook_secret=os.getenv("PAYTABS_WEBHOOK_SECRET", server_key),
            timeout_seconds=float(os.getenv("PAYTABS_TIMEOUT", "15")),
        )

    @property
    def request_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/payment/request"

    @property
    def query_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/payment/query"


def _first(payload: Mapping[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _is_not_found(result: Mapping[str, Any]) -> bool:
    """PayTabs answers this way for expired or purged transactions."""
    code = result.get("code")
    message = str(result.get("message") or "")
    try:
        code = int(code)
    except (TypeError, ValueError):
        return False
    return (code == 2 and message == "No entries found") or (
        code == 113 and "Transaction not found" in message
    )


@gateway_registry.register(GatewayProvider.PAYTABS)
class PayTabsGateway(IPaymentGateway):
    provider = GatewayProvider.PAYTABS

    def __init__(self, config: Optional[PayTabsConfig] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or PayTabsConfig.from_env()
        if not self.config.profile_id or not self.config.server_key:
            raise GatewayConfigurationError(context={"provider": "paytabs"})
        try:
            self._profile_id = int(self.config.profile_id)
        except ValueError:
            raise GatewayConfigurationError(context={"provider": "paytabs", "reason": "profile id is not numeric"})
        super().__init__(http_client=http_client, timeout=self.config.timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        return {"authorization": self.config.server_key}

    def build_create_request(self, order: PaymentOrderData) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "profile_id": self._profile_id,
            "tran_type": "sale",
            "tran_class": "ecom",
            "cart_id": order.order_id,
            "cart_currency": order.currency,
            "cart_amount": float(format_amount(order.amount)),
            "cart_description": clean_text(order.description, 128) or order.order_id,
            "return": order.return_urls.authorised,
            "callback": order.return_urls.callback,
            "framed": True,
        }

        customer = order.customer
        if customer and customer.email:
            name = customer.name.full_name if customer.name else ""
            # Address fields are never forwarded
            details = {
                "name": clean_text(name, 100) or "Customer",
                "email": clean_text(customer.email, 254),
                "phone": clean_text(customer.phone, 20),
            }
            body["customer_details"] = {k: v for k, v in details.items() if v}
        return body

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    async def create_order(self, order: PaymentOrderData) -> GatewayOrderResult:
        body = self.build_create_request(order)
        try:
            result = await self._post_json(self.config.request_url, body, headers=self._headers())
        except httpx.HTTPStatusError as e:
            logger.error("paytabs_create_failed", order_id=order.order_id, status_code=e.response.status_code)
            return GatewayOrderResult(success=False, raw={"error": e.response.text[:500]})
        except (httpx.HTTPError, ValueError) as e:
            logger.error("paytabs_create_failed", order_id=order.order_id, error=str(e))
            return GatewayOrderResult(success=False, raw={"error": str(e)})

        if not result.get("redirect_url") or not result.get("tran_ref"):
            logger.error("paytabs_create_rejected", order_id=order.order_id, response=result)
            return GatewayOrderResult(success=False, raw=result)

        logger.info("paytabs_order_created", order_id=order.order_id, tran_ref=result["tran_ref"])
        return GatewayOrderResult(
            success=True,
            order_reference=order.order_id,
            payment_url=result["redirect_url"],
            expires_at=utcnow() + ORDER_TTL,
            raw={
                **result,
                "internal_cart_id": order.order_id,
                "paytabs_tran_ref": result["tran_ref"],
            },
        )

    async def check_status(self, reference: str) -> GatewayStatusResult:
        body = {"profile_id": self._profile_id, "tran_ref": reference}
        try:
            response = await self._http().post(
                self.config.query_url,
                json=body,
                headers={"Content-Type": "application/json", **self._headers()},
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            logger.warning("paytabs_query_timeout", tran_ref=reference)
            return GatewayStatusResult(success=False, status=PaymentStatus.UNKNOWN, raw={"error": "timeout"})
        except httpx.HTTPError as e:
            logger.error("paytabs_query_failed", tran_ref=reference, error=str(e))
            return GatewayStatusResult(success=False, status=PaymentStatus.UNKNOWN, raw={"error": str(e)})

        try:
            result = response.json()
        except ValueError:
            logger.error("paytabs_query_invalid_json", tran_ref=reference, status_code=response.status_code)
            return GatewayStatusResult(
                success=False, status=PaymentStatus.UNKNOWN, raw={"error": response.text[:500]}
            )
        if not isinstance(result, dict):
            return GatewayStatusResult(success=False, status=PaymentStatus.UNKNOWN, raw={"error": "unexpected response"})

        if _is_not_found(result):
            logger.warning("paytabs_transaction_not_found", tran_ref=reference)
            return GatewayStatusResult(success=True, status=PaymentStatus.UNKNOWN, raw=result)

        payment_result = result.get("payment_result") or {}
        resp_status = payment_result.get("response_status")
        if response.is_error or not resp_status:
            logger.error("paytabs_query_rejected", tran_ref=reference, response=result)
            return GatewayStatusResult(success=False, status=PaymentStatus.UNKNOWN, raw=result)

        amount = None
        if result.get("cart_amount") not in (None, ""):
            try:
                amount = Decimal(str(result["cart_amount"]))
            except InvalidOperation:
                amount = None

        return GatewayStatusResult(
            success=True,
            status=map_paytabs_api_status(resp_status),
            gateway_status=resp_status,
            transaction_id=payment_result.get("transaction_id") or result.get("tran_ref"),
            amount=amount,
            currency=result.get("cart_currency"),
            raw=result,
        )

    async def process_webhook(
        self, payload: Mapping[str, Any], signature: Optional[str] = None
    ) -> GatewayWebhookResult:
        order_reference = _first(payload, REFERENCE_KEYS)
        if order_reference is None:
            return GatewayWebhookResult(success=False, raw=dict(payload))

        raw_status = _first(payload, STATUS_KEYS)
        nested = payload.get("payment_result")
        if raw_status is None and isinstance(nested, Mapping):
            raw_status = nested.get("response_status")

        return GatewayWebhookResult(
            success=True,
            order_reference=order_reference,
            status=map_paytabs_webhook_status(raw_status),
            gateway_status=raw_status,
            transaction_id=_first(payload, TRANSACTION_KEYS),
            raw=dict(payload),
        )

    def validate_webhook(self, payload: Mapping[str, Any], signature: Optional[str] = None) -> bool:
        signature = signature or (payload.get("signature") if isinstance(payload, Mapping) else None)
        if self.config.webhook_secret:
            return verify_signature(payload, signature, self.config.webhook_secret)

        logger.warning("webhook_signature_skipped", provider="paytabs", reason="no webhook secret configured")
        if has_required_fields(payload, REFERENCE_KEYS, STATUS_KEYS):
            return True
        if not isinstance(payload, Mapping) or _first(payload, REFERENCE_KEYS) is None:
            return False
        nested = payload.get("payment_result")
        return isinstance(nested, Mapping) and bool(nested.get("response_status"))
