# gateways/base.py
# ============================================================================
# GATEWAY CAPABILITY INTERFACE + REGISTRY
# ============================================================================
# One stateless implementation per provider, selected by name. Gateways never
# touch storage; they only translate between the processor's wire format and
# the canonical gateway contracts.
# ============================================================================

import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

import httpx
import structlog

from schemas.payment_definitions import (
    GatewayProvider,
    GatewayOrderResult,
    GatewayStatusResult,
    GatewayWebhookResult,
    PaymentOrderData,
    quantize_amount,
)
from schemas.payment_errors import PaymentValidationError

logger = structlog.get_logger().bind(component="gateway_registry")

_UNSAFE_CHARS = re.compile(r"[<>\"'`\x00-\x1f\x7f]")


def clean_text(value: Optional[str], max_length: int) -> Optional[str]:
    """Strip markup/control characters and truncate free text sent to a processor."""
    if value is None:
        return None
    cleaned = _UNSAFE_CHARS.sub("", str(value)).strip()
    return cleaned[:max_length] or None


def format_amount(amount: Decimal) -> str:
    return str(quantize_amount(amount))


# ============================================================================
# SECTION 1: INTERFACE
# ============================================================================

class IPaymentGateway(ABC):
    """Capability contract every payment processor implements."""

    provider: GatewayProvider

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self._client = http_client
        self._owns_client = http_client is None
        self.timeout = timeout

    @abstractmethod
    async def create_order(self, order: PaymentOrderData) -> GatewayOrderResult:
        """Create a hosted-page order. Never raises for network/parse failures."""
        pass

    @abstractmethod
    async def check_status(self, reference: str) -> GatewayStatusResult:
        """Query the processor. Not-found, errors and timeouts map to UNKNOWN."""
        pass

    @abstractmethod
    async def process_webhook(
        self, payload: Mapping[str, Any], signature: Optional[str] = None
    ) -> GatewayWebhookResult:
        pass

    @abstractmethod
    def validate_webhook(self, payload: Mapping[str, Any], signature: Optional[str] = None) -> bool:
        pass

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def _post_json(
        self,
        url: str,
        body: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        response = await self._http().post(
            url,
            json=body,
            headers={"Content-Type": "application/json", "Accept": "application/json", **(headers or {})},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("unexpected response shape")
        return data

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


# ============================================================================
# SECTION 2: REGISTRY / FACTORY
# ============================================================================

class GatewayRegistry:
    """
    Factory keyed by provider name.

    Usage:
        registry = GatewayRegistry()

        @registry.register(GatewayProvider.TELR)
        class TelrGateway(IPaymentGateway): ...

        gateway = registry.create("telr")
    """

    def __init__(self):
        self._factories: Dict[GatewayProvider, Callable[..., IPaymentGateway]] = {}

    def register(self, provider: GatewayProvider):
        def decorator(cls: Type[IPaymentGateway]) -> Type[IPaymentGateway]:
            self._factories[provider] = cls
            logger.debug("gateway_registered", provider=provider.value, cls=cls.__name__)
            return cls
        return decorator

    def resolve(self, provider: Any) -> GatewayProvider:
        try:
            return GatewayProvider(provider.value if isinstance(provider, GatewayProvider) else str(provider).lower())
        except ValueError:
            raise PaymentValidationError(f"Unsupported payment gateway: {provider}")

    def create(self, provider: Any, http_client: Optional[httpx.AsyncClient] = None, **kwargs) -> IPaymentGateway:
        key = self.resolve(provider)
        factory = self._factories.get(key)
        if factory is None:
            raise PaymentValidationError(f"Unsupported payment gateway: {provider}")
        return factory(http_client=http_client, **kwargs)

    @property
    def supported_providers(self) -> List[str]:
        return [p.value for p in self._factories]


gateway_registry = GatewayRegistry()
