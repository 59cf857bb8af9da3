# gateways/signatures.py
# ============================================================================
# WEBHOOK AUTHENTICITY
# ============================================================================
# Canonical signing string:
#   1. drop the "signature" field
#   2. drop empty values (None, "", empty containers)
#   3. sort keys
#   4. URL-encode key and value, join as key=value&key=value
# The string is signed with HMAC-SHA256 and compared in constant time.
# ============================================================================

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import quote

import structlog

logger = structlog.get_logger().bind(component="signatures")

SIGNATURE_FIELD = "signature"

# Characters encodeURIComponent leaves untouched, so signatures computed by
# either side of the wire agree.
_URI_SAFE = "-_.!~*'()"


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (dict, list, tuple)):
        return len(value) == 0
    return False


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, Decimal, str)):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return str(value)


def canonical_signing_string(payload: Mapping[str, Any]) -> str:
    parts = []
    for key in sorted(k for k in payload.keys() if k != SIGNATURE_FIELD):
        value = payload[key]
        if _is_empty(value):
            continue
        parts.append(f"{quote(str(key), safe=_URI_SAFE)}={quote(_stringify(value), safe=_URI_SAFE)}")
    return "&".join(parts)


def compute_signature(payload: Mapping[str, Any], secret: str) -> str:
    if not secret:
        raise ValueError("secret is required")
    return hmac.new(
        secret.encode("utf-8"),
        canonical_signing_string(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(payload: Mapping[str, Any], signature: Optional[str], secret: Optional[str]) -> bool:
    """Return True only when ``signature`` matches the payload. Fails closed."""
    try:
        if not signature or not secret:
            return False
        expected = compute_signature(payload, secret)
        return hmac.compare_digest(
            expected.encode("ascii"),
            signature.strip().lower().encode("utf-8"),
        )
    except Exception as e:
        logger.error("signature_verification_error", error=str(e))
        return False


def has_required_fields(
    payload: Any,
    reference_keys: Iterable[str],
    status_keys: Iterable[str],
) -> bool:
    """Structural check used when no webhook secret is configured."""
    if not isinstance(payload, Mapping):
        return False
    has_ref = any(not _is_empty(payload.get(k)) for k in reference_keys)
    has_status = any(not _is_empty(payload.get(k)) for k in status_keys)
    return has_ref and has_status
