# schemas/payment_definitions.py
# ============================================================================
# DEAL ROOM PAYMENTS - DOMAIN SCHEMAS
# ============================================================================
# Canonical status taxonomy, persisted entities and gateway contracts.
# ============================================================================

from typing import Dict, Any, Optional
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_amount(value: Decimal, places: str = "0.01") -> Decimal:
    """Round a money amount half-up to the given precision."""
    return Decimal(value).quantize(Decimal(places), rounding=ROUND_HALF_UP)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    # Provider could not resolve the transaction. Never persisted.
    UNKNOWN = "unknown"


FINAL_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.EXPIRED,
})


class GatewayProvider(str, Enum):
    TELR = "telr"
    PAYTABS = "paytabs"


class PaymentLogAction(str, Enum):
    CREATED = "created"
    ORDER_CREATED = "order_created"
    CREATION_FAILED = "creation_failed"
    STATUS_UPDATED = "status_updated"
    WEBHOOK_RECEIVED = "webhook_received"
    SUBSCRIPTION_CREATED = "subscription_created"
    EMAILS_SENT = "emails_sent"


class StatusSource(str, Enum):
    """Channel that reported a status."""
    RETURN = "return"
    WEBHOOK = "webhook"
    POLL = "poll"
    MANUAL = "manual"


class PlanType(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"
    ONE_TIME = "one-time"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# ============================================================================
# SECTION 2: GATEWAY CONTRACTS
# ============================================================================

class CustomerName(BaseModel):
    title: Optional[str] = None
    forenames: Optional[str] = None
    surname: Optional[str] = None

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.forenames, self.surname) if p]
        return " ".join(parts).strip()


class CustomerData(BaseModel):
    """Customer details forwarded to the hosted payment page."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ref: Optional[str] = None
    email: Optional[str] = None
    name: Optional[CustomerName] = None
    phone: Optional[str] = None

    @classmethod
    def from_full_name(cls, full_name: Optional[str], **kwargs) -> "CustomerData":
        if not full_name:
            return cls(**kwargs)
        parts = full_name.strip().split(" ")
        forenames = " ".join(parts[:-1]) or parts[-1]
        surname = parts[-1] if len(parts) > 1 else ""
        return cls(name=CustomerName(forenames=forenames, surname=surname), **kwargs)


class ReturnUrls(BaseModel):
    """Three browser redirect targets plus the server-to-server callback."""
    authorised: str
    declined: str
    cancelled: str
    callback: str


class PaymentOrderData(BaseModel):
    """Order handed to a gateway. Amount is in the settlement currency."""
    order_id: str
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    description: str
    return_urls: ReturnUrls
    customer: Optional[CustomerData] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GatewayOrderResult(BaseModel):
    success: bool
    # Telr returns its own order ref here; PayTabs echoes our cart id and
    # carries its tran_ref in raw["paytabs_tran_ref"].
    order_reference: str = ""
    payment_url: str = ""
    expires_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class GatewayStatusResult(BaseModel):
    success: bool
    status: PaymentStatus = PaymentStatus.UNKNOWN
    gateway_status: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class GatewayWebhookResult(BaseModel):
    success: bool
    order_reference: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_status: Optional[str] = None
    transaction_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# SECTION 3: PERSISTED ENTITIES
# ============================================================================

class PaymentTransaction(BaseModel):
    """One row per payment attempt.

    ``amount``/``currency`` are what the user was shown. What the card was
    actually charged lives in ``metadata["paymentAmount"]`` and
    ``metadata["paymentCurrency"]``.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    founder_id: str
    order_reference: str
    gateway_provider: GatewayProvider
    gateway_transaction_id: Optional[str] = None

    amount: Decimal
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_status: Optional[str] = None
    description: Optional[str] = None

    payment_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    gateway_response: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @computed_field
    @property
    def plan_type(self) -> PlanType:
        raw = self.metadata.get("planType")
        try:
            return PlanType(raw) if raw else PlanType.ONE_TIME
        except ValueError:
            return PlanType.ONE_TIME


class PaymentLog(BaseModel):
    """Append-only audit entry."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str
    gateway_provider: GatewayProvider
    action: PaymentLogAction
    request_data: Optional[Dict[str, Any]] = None
    response_data: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class UserSubscription(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    founder_id: str
    payment_transaction_id: str
    plan_type: PlanType
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    gateway_provider: GatewayProvider
    starts_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 4: SERVICE INPUTS / OUTPUTS
# ============================================================================

class CreatePaymentRequest(BaseModel):
    """Body of POST /create."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    amount: Decimal = Field(gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    description: str = Field(min_length=1, max_length=500)
    purpose: Optional[str] = None
    plan_type: Optional[PlanType] = None
    gateway_provider: Optional[GatewayProvider] = None
    customer: Optional[CustomerData] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class RateQuote(BaseModel):
    rate: Decimal
    source: str
    is_fallback: bool = False
    fetched_at: datetime = Field(default_factory=utcnow)


class CurrencyConversion(BaseModel):
    amount: Decimal
    currency: str
    original_amount: Decimal
    original_currency: str
    rate: Decimal
    source: str
    is_fallback: bool = False

    def as_metadata(self) -> Dict[str, Any]:
        """Audit fields recorded on the transaction."""
        return {
            "displayAmount": str(self.original_amount),
            "displayCurrency": self.original_currency,
            "paymentAmount": str(self.amount),
            "paymentCurrency": self.currency,
            "conversionRate": str(self.rate),
            "rateSource": self.source,
            "rateIsFallback": self.is_fallback,
        }


class PaymentCreationResult(BaseModel):
    success: bool
    order_reference: str
    payment_url: str
    expires_at: Optional[datetime] = None


class PaymentStatusResult(BaseModel):
    status: PaymentStatus
    transaction: PaymentTransaction


class StatusUpdateResult(BaseModel):
    changed: bool
    transaction: PaymentTransaction


class WebhookOutcome(BaseModel):
    success: bool
    processed: bool
    order_reference: str
    status: PaymentStatus
