# gateways/status_mapper.py
# ============================================================================
# CANONICAL STATUS MAPPING
# ============================================================================
# Each provider reports status in its own vocabulary (numeric codes, single
# letters, free text). These functions fold every variant into PaymentStatus.
# Unrecognized values map to PENDING, never FAILED.
# ============================================================================

from typing import Any, Optional, Union

import structlog

from schemas.payment_definitions import PaymentStatus, FINAL_STATUSES

logger = structlog.get_logger().bind(component="status_mapper")


# ============================================================================
# TELR
# ============================================================================

TELR_API_CODES = {
    0: PaymentStatus.CANCELLED,
    1: PaymentStatus.PENDING,
    2: PaymentStatus.FAILED,
    3: PaymentStatus.COMPLETED,
}

TELR_API_TEXTS = {
    "cancelled": PaymentStatus.CANCELLED,
    "pending": PaymentStatus.PENDING,
    "declined": PaymentStatus.FAILED,
    "paid": PaymentStatus.COMPLETED,
}

# The webhook numeric codes are not the same table as the API codes.
TELR_WEBHOOK_CODES = {
    "A": PaymentStatus.COMPLETED,
    "PAID": PaymentStatus.COMPLETED,
    "COMPLETED": PaymentStatus.COMPLETED,
    "3": PaymentStatus.COMPLETED,
    "C": PaymentStatus.CANCELLED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "1": PaymentStatus.CANCELLED,
    "E": PaymentStatus.FAILED,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
    "2": PaymentStatus.FAILED,
    "H": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "0": PaymentStatus.PENDING,
}


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def map_telr_api_status(code: Union[int, str, None], text: Optional[str] = None) -> PaymentStatus:
    """Map a Telr ``order.status`` (code + text) pair.

    The numeric code is authoritative. The text is only consulted when the
    code is missing or outside the known table.
    """
    parsed = _as_int(code)
    if parsed in TELR_API_CODES:
        return TELR_API_CODES[parsed]

    if text:
        mapped = TELR_API_TEXTS.get(text.strip().lower())
        if mapped is not None:
            return mapped

    logger.warning("unknown_provider_status", provider="telr", channel="api", code=code, text=text)
    return PaymentStatus.PENDING


def map_telr_webhook_status(status: Optional[str]) -> PaymentStatus:
    key = (status or "").strip().upper()
    mapped = TELR_WEBHOOK_CODES.get(key)
    if mapped is None:
        logger.warning("unknown_provider_status", provider="telr", channel="webhook", status=status)
        return PaymentStatus.PENDING
    return mapped


# ============================================================================
# PAYTABS
# ============================================================================

PAYTABS_CODES = {
    "A": PaymentStatus.COMPLETED,
    "PAID": PaymentStatus.COMPLETED,
    "APPROVED": PaymentStatus.COMPLETED,
    "AUTHORISED": PaymentStatus.COMPLETED,
    "D": PaymentStatus.FAILED,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
    "P": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "C": PaymentStatus.CANCELLED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "E": PaymentStatus.EXPIRED,
    "ERROR": PaymentStatus.EXPIRED,
    "EXPIRED": PaymentStatus.EXPIRED,
}


def _map_paytabs(resp_status: Optional[str], channel: str) -> PaymentStatus:
    key = (resp_status or "").strip().upper()
    mapped = PAYTABS_CODES.get(key)
    if mapped is None:
        logger.warning("unknown_provider_status", provider="paytabs", channel=channel, status=resp_status)
        return PaymentStatus.PENDING
    return mapped


def map_paytabs_api_status(resp_status: Optional[str]) -> PaymentStatus:
    return _map_paytabs(resp_status, "api")


def map_paytabs_webhook_status(resp_status: Optional[str]) -> PaymentStatus:
    return _map_paytabs(resp_status, "webhook")


# ============================================================================
# HELPERS
# ============================================================================

def is_final_status(status: PaymentStatus) -> bool:
    return status in FINAL_STATUSES


def is_successful_status(status: PaymentStatus) -> bool:
    return status == PaymentStatus.COMPLETED


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    """Only pending -> terminal is a real transition."""
    return current == PaymentStatus.PENDING and new in FINAL_STATUSES


USER_MESSAGES = {
    PaymentStatus.COMPLETED: "Payment completed successfully! Your package has been activated.",
    PaymentStatus.PENDING: "Payment is being processed. Please wait a moment.",
    PaymentStatus.FAILED: "Payment was declined. Please check your payment details and try again.",
    PaymentStatus.CANCELLED: "Payment was cancelled. No charges have been made to your account.",
    PaymentStatus.EXPIRED: "Payment session has expired. Please start a new payment.",
}


def user_friendly_message(status: PaymentStatus) -> str:
    return USER_MESSAGES.get(
        status, "Payment status unknown. Please contact support if this persists."
    )


HTTP_STATUS_CODES = {
    PaymentStatus.COMPLETED: 200,
    PaymentStatus.PENDING: 202,
    PaymentStatus.FAILED: 402,
    PaymentStatus.CANCELLED: 400,
    PaymentStatus.EXPIRED: 408,
}


def http_status_for(status: PaymentStatus) -> int:
    return HTTP_STATUS_CODES.get(status, 500)
