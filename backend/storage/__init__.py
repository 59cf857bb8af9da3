# storage/__init__.py
# ============================================================================
# DEAL ROOM PAYMENTS - STORAGE MODULE
# ============================================================================
# Payment ledger repositories (in-memory and PostgreSQL)
# ============================================================================

from storage.payment_repository import (
    IPaymentRepository,
    InMemoryPaymentRepository,
    PostgresPaymentRepository,
)

__all__ = [
    "IPaymentRepository",
    "InMemoryPaymentRepository",
    "PostgresPaymentRepository",
]
