"""
Reconciliation Sweep - The Safety Net
=====================================
Background task that finds payments still `pending` well after creation and
polls their gateway through the normal status check, so a lost webhook or an
abandoned return redirect cannot strand a payment.

Features:
- Runs every 5 minutes
- Picks pending transactions older than 10 minutes
- Bounded batch per cycle
- Configurable thresholds
"""

import os
import asyncio
from typing import Dict, Any, Optional

import structlog

from schemas.payment_errors import PaymentError
from services.payment_service import PaymentService

# Configure logger
logger = structlog.get_logger().bind(component="reconciliation")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconciliationConfig:
    """Reconciliation sweep configuration"""

    # How often to sweep (seconds)
    CHECK_INTERVAL = int(os.getenv("RECONCILIATION_INTERVAL", "300"))

    # Age before a pending payment is re-polled (minutes)
    STALE_THRESHOLD = int(os.getenv("RECONCILIATION_THRESHOLD", "10"))

    # Maximum transactions polled per cycle
    MAX_PER_CYCLE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "10"))

    ENABLED = os.getenv("RECONCILIATION_ENABLED", "true").lower() == "true"


config = ReconciliationConfig()


# =============================================================================
# SWEEP
# =============================================================================

async def reconcile_once(
    service: PaymentService,
    threshold_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Poll every stale pending transaction once. Returns cycle counters."""
    stale = await service.list_stale_pending(
        older_than_minutes=threshold_minutes if threshold_minutes is not None else config.STALE_THRESHOLD,
        limit=limit if limit is not None else config.MAX_PER_CYCLE,
    )

    stats = {"checked": 0, "resolved": 0, "still_pending": 0, "errors": 0}
    if not stale:
        return stats

    logger.info("stale_payments_found", count=len(stale))

    for transaction in stale:
        stats["checked"] += 1
        try:
            result = await service.check_payment_status(transaction.order_reference)
        except PaymentError as e:
            stats["errors"] += 1
            logger.error(
                "reconciliation_check_failed",
                order_reference=transaction.order_reference,
                error=e.message,
            )
            continue

        if result.transaction.is_final:
            stats["resolved"] += 1
            logger.info(
                "payment_reconciled",
                order_reference=transaction.order_reference,
                status=result.status.value,
            )
        else:
            stats["still_pending"] += 1

    logger.info("reconciliation_cycle_complete", **stats)
    return stats


async def reconciliation_loop(service: PaymentService):
    """
    Background task that runs every CHECK_INTERVAL seconds.

    Cancelled by the server lifespan on shutdown.
    """
    logger.info(
        "reconciliation_loop_started",
        interval=config.CHECK_INTERVAL,
        threshold=config.STALE_THRESHOLD,
        enabled=config.ENABLED,
    )

    if not config.ENABLED:
        logger.info("reconciliation_loop_disabled")
        return

    while True:
        try:
            await reconcile_once(service)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Persistence outages surface here; the next cycle retries
            logger.error("reconciliation_loop_error", error=str(e))

        await asyncio.sleep(config.CHECK_INTERVAL)
