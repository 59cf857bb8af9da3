# storage/payment_repository.py
# ============================================================================
# PAYMENT LEDGER REPOSITORY
# ============================================================================
# Interface + in-memory implementation (tests, single instance dev) +
# PostgreSQL implementation (asyncpg).
#
# Status changes go through transition_status(), a conditional update that
# only applies pending -> terminal. Two channels racing on the same order
# reference therefore see exactly one winner.
# ============================================================================

import asyncio
import json
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

from database import Database
from schemas.payment_definitions import (
    FINAL_STATUSES,
    PaymentLog,
    PaymentLogAction,
    PaymentStatus,
    PaymentTransaction,
    UserSubscription,
    utcnow,
)
from schemas.payment_errors import DuplicateSubscriptionError

logger = structlog.get_logger().bind(component="payment_repository")

# Columns update_transaction() may touch. Status is excluded on purpose:
# it only moves through transition_status().
UPDATABLE_FIELDS = frozenset({
    "gateway_transaction_id",
    "gateway_status",
    "payment_url",
    "expires_at",
    "gateway_response",
    "metadata",
})


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentRepository(ABC):

    # --- transactions -------------------------------------------------------

    @abstractmethod
    async def create_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        pass

    @abstractmethod
    async def get_by_order_reference(self, order_reference: str) -> Optional[PaymentTransaction]:
        pass

    @abstractmethod
    async def get_by_gateway_reference(self, gateway_reference: str) -> Optional[PaymentTransaction]:
        pass

    @abstractmethod
    async def list_for_founder(self, founder_id: str, limit: int = 50) -> List[PaymentTransaction]:
        pass

    @abstractmethod
    async def list_stale_pending(self, older_than: datetime, limit: int = 10) -> List[PaymentTransaction]:
        pass

    @abstractmethod
    async def update_transaction(self, transaction_id: str, **fields) -> Optional[PaymentTransaction]:
        """Update non-status fields."""
        pass

    @abstractmethod
    async def transition_status(
        self,
        order_reference: str,
        new_status: PaymentStatus,
        gateway_status: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentTransaction]:
        """Move a pending transaction to a terminal status.

        Returns the updated transaction, or None when the row was not pending
        (someone else already applied a transition) or the target is not terminal.
        """
        pass

    # --- audit log ----------------------------------------------------------

    @abstractmethod
    async def append_log(self, entry: PaymentLog) -> PaymentLog:
        pass

    @abstractmethod
    async def get_logs(self, transaction_id: str) -> List[PaymentLog]:
        pass

    @abstractmethod
    async def has_log(self, transaction_id: str, action: PaymentLogAction) -> bool:
        pass

    # --- subscriptions ------------------------------------------------------

    @abstractmethod
    async def create_subscription(self, subscription: UserSubscription) -> UserSubscription:
        """Raises DuplicateSubscriptionError if the transaction already has one."""
        pass

    @abstractmethod
    async def get_subscription_by_transaction(self, transaction_id: str) -> Optional[UserSubscription]:
        pass

    @abstractmethod
    async def list_subscriptions(self, founder_id: str) -> List[UserSubscription]:
        pass

    # --- keyed expiring claims ---------------------------------------------

    @abstractmethod
    async def try_claim_key(self, key: str, ttl_seconds: float) -> bool:
        """Claim ``key`` for ``ttl_seconds``. False while an unexpired claim exists."""
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryPaymentRepository(IPaymentRepository):
    """Lock-guarded in-memory ledger. State is per process."""

    def __init__(self, clock=time.monotonic):
        self._transactions: Dict[str, PaymentTransaction] = {}
        self._by_reference: Dict[str, str] = {}
        self._logs: List[PaymentLog] = []
        self._subscriptions: Dict[str, UserSubscription] = {}
        self._claims: Dict[str, float] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    async def create_transaction(self, transaction):
        async with self._lock:
            if transaction.order_reference in self._by_reference:
                raise ValueError(f"duplicate order reference {transaction.order_reference}")
            self._transactions[transaction.id] = self._copy(transaction)
            self._by_reference[transaction.order_reference] = transaction.id
            return self._copy(transaction)

    async def get_transaction(self, transaction_id):
        async with self._lock:
            return self._copy(self._transactions.get(transaction_id))

    async def get_by_order_reference(self, order_reference):
        async with self._lock:
            tx_id = self._by_reference.get(order_reference)
            return self._copy(self._transactions.get(tx_id)) if tx_id else None

    async def get_by_gateway_reference(self, gateway_reference):
        async with self._lock:
            for tx in self._transactions.values():
                if tx.gateway_transaction_id == gateway_reference:
                    return self._copy(tx)
            return None

    async def list_for_founder(self, founder_id, limit=50):
        async with self._lock:
            rows = [t for t in self._transactions.values() if t.founder_id == founder_id]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return [self._copy(t) for t in rows[:limit]]

    async def list_stale_pending(self, older_than, limit=10):
        async with self._lock:
            rows = [
                t for t in self._transactions.values()
                if t.status == PaymentStatus.PENDING and t.created_at < older_than
            ]
        rows.sort(key=lambda t: t.created_at)
        return [self._copy(t) for t in rows[:limit]]

    async def update_transaction(self, transaction_id, **fields):
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        async with self._lock:
            current = self._transactions.get(transaction_id)
            if current is None:
                return None
            if current.gateway_transaction_id:
                # Write-once
                fields.pop("gateway_transaction_id", None)
            updated = current.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
            self._transactions[transaction_id] = updated
            return self._copy(updated)

    async def transition_status(self, order_reference, new_status, gateway_status=None, gateway_response=None):
        if new_status not in FINAL_STATUSES:
            return None
        async with self._lock:
            tx_id = self._by_reference.get(order_reference)
            current = self._transactions.get(tx_id) if tx_id else None
            if current is None or current.status != PaymentStatus.PENDING:
                return None
            update: Dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
            if gateway_status is not None:
                update["gateway_status"] = gateway_status
            if gateway_response is not None:
                update["gateway_response"] = gateway_response
            updated = current.model_copy(update=update, deep=True)
            self._transactions[tx_id] = updated
            return self._copy(updated)

    async def append_log(self, entry):
        async with self._lock:
            self._logs.append(self._copy(entry))
            return entry

    async def get_logs(self, transaction_id):
        async with self._lock:
            return [self._copy(e) for e in self._logs if e.transaction_id == transaction_id]

    async def has_log(self, transaction_id, action):
        async with self._lock:
            return any(e.transaction_id == transaction_id and e.action == action for e in self._logs)

    async def create_subscription(self, subscription):
        async with self._lock:
            if subscription.payment_transaction_id in self._subscriptions:
                raise DuplicateSubscriptionError(context={"transaction_id": subscription.payment_transaction_id})
            self._subscriptions[subscription.payment_transaction_id] = self._copy(subscription)
            return subscription

    async def get_subscription_by_transaction(self, transaction_id):
        async with self._lock:
            return self._copy(self._subscriptions.get(transaction_id))

    async def list_subscriptions(self, founder_id):
        async with self._lock:
            rows = [s for s in self._subscriptions.values() if s.founder_id == founder_id]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return [self._copy(s) for s in rows]

    async def try_claim_key(self, key, ttl_seconds):
        async with self._lock:
            now = self._clock()
            for stale in [k for k, exp in self._claims.items() if exp <= now]:
                del self._claims[stale]
            expires = self._claims.get(key)
            if expires is not None and expires > now:
                return False
            self._claims[key] = now + ttl_seconds
            return True


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

def _json(value: Any) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_transaction(row: asyncpg.Record) -> PaymentTransaction:
    data = dict(row)
    data["id"] = str(data["id"])
    data["gateway_response"] = _load_json(data.get("gateway_response"))
    data["metadata"] = _load_json(data.get("metadata")) or {}
    return PaymentTransaction(**data)


def _row_to_log(row: asyncpg.Record) -> PaymentLog:
    data = dict(row)
    data["id"] = str(data["id"])
    data["transaction_id"] = str(data["transaction_id"])
    data["request_data"] = _load_json(data.get("request_data"))
    data["response_data"] = _load_json(data.get("response_data"))
    return PaymentLog(**data)


def _row_to_subscription(row: asyncpg.Record) -> UserSubscription:
    data = dict(row)
    data["id"] = str(data["id"])
    data["payment_transaction_id"] = str(data["payment_transaction_id"])
    return UserSubscription(**data)


class PostgresPaymentRepository(IPaymentRepository):
    """asyncpg-backed ledger using the shared Database pool."""

    async def create_transaction(self, transaction):
        row = await Database.fetch_one(
            """
            INSERT INTO payment_transactions
            (id, founder_id, order_reference, gateway_provider, gateway_transaction_id,
             amount, currency, status, gateway_status, description, payment_url,
             expires_at, gateway_response, metadata, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            RETURNING *
            """,
            transaction.id,
            transaction.founder_id,
            transaction.order_reference,
            transaction.gateway_provider.value,
            transaction.gateway_transaction_id,
            transaction.amount,
            transaction.currency,
            transaction.status.value,
            transaction.gateway_status,
            transaction.description,
            transaction.payment_url,
            transaction.expires_at,
            _json(transaction.gateway_response),
            _json(transaction.metadata),
            transaction.created_at,
            transaction.updated_at,
        )
        return _row_to_transaction(row)

    async def get_transaction(self, transaction_id):
        row = await Database.fetch_one("SELECT * FROM payment_transactions WHERE id = $1", transaction_id)
        return _row_to_transaction(row) if row else None

    async def get_by_order_reference(self, order_reference):
        row = await Database.fetch_one(
            "SELECT * FROM payment_transactions WHERE order_reference = $1", order_reference
        )
        return _row_to_transaction(row) if row else None

    async def get_by_gateway_reference(self, gateway_reference):
        row = await Database.fetch_one(
            "SELECT * FROM payment_transactions WHERE gateway_transaction_id = $1 LIMIT 1",
            gateway_reference,
        )
        return _row_to_transaction(row) if row else None

    async def list_for_founder(self, founder_id, limit=50):
        rows = await Database.fetch_all(
            """
            SELECT * FROM payment_transactions
            WHERE founder_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            founder_id,
            limit,
        )
        return [_row_to_transaction(r) for r in rows]

    async def list_stale_pending(self, older_than, limit=10):
        rows = await Database.fetch_all(
            """
            SELECT * FROM payment_transactions
            WHERE status = 'pending' AND created_at < $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            older_than,
            limit,
        )
        return [_row_to_transaction(r) for r in rows]

    async def update_transaction(self, transaction_id, **fields):
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not fields:
            return await self.get_transaction(transaction_id)

        set_clauses = []
        params: List[Any] = []
        for i, (name, value) in enumerate(fields.items(), start=1):
            if name in ("gateway_response", "metadata"):
                value = _json(value)
            if name == "gateway_transaction_id":
                # Write-once
                set_clauses.append(f"{name} = COALESCE({name}, ${i})")
            else:
                set_clauses.append(f"{name} = ${i}")
            params.append(value)
        params.append(transaction_id)

        row = await Database.fetch_one(
            f"""
            UPDATE payment_transactions
            SET {', '.join(set_clauses)}, updated_at = NOW()
            WHERE id = ${len(params)}
            RETURNING *
            """,
            *params,
        )
        return _row_to_transaction(row) if row else None

    async def transition_status(self, order_reference, new_status, gateway_status=None, gateway_response=None):
        if new_status not in FINAL_STATUSES:
            return None
        row = await Database.fetch_one(
            """
            UPDATE payment_transactions
            SET status = $2,
                gateway_status = COALESCE($3, gateway_status),
                gateway_response = COALESCE($4::jsonb, gateway_response),
                updated_at = NOW()
            WHERE order_reference = $1 AND status = 'pending'
            RETURNING *
            """,
            order_reference,
            new_status.value,
            gateway_status,
            _json(gateway_response),
        )
        return _row_to_transaction(row) if row else None

    async def append_log(self, entry):
        await Database.execute(
            """
            INSERT INTO payment_logs
            (id, transaction_id, gateway_provider, action, request_data, response_data, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            entry.id,
            entry.transaction_id,
            entry.gateway_provider.value,
            entry.action.value,
            _json(entry.request_data),
            _json(entry.response_data),
            entry.created_at,
        )
        return entry

    async def get_logs(self, transaction_id):
        rows = await Database.fetch_all(
            "SELECT * FROM payment_logs WHERE transaction_id = $1 ORDER BY created_at ASC",
            transaction_id,
        )
        return [_row_to_log(r) for r in rows]

    async def has_log(self, transaction_id, action):
        row = await Database.fetch_one(
            "SELECT 1 FROM payment_logs WHERE transaction_id = $1 AND action = $2 LIMIT 1",
            transaction_id,
            action.value,
        )
        return row is not None

    async def create_subscription(self, subscription):
        try:
            await Database.execute(
                """
                INSERT INTO user_subscriptions
                (id, founder_id, payment_transaction_id, plan_type, status,
                 gateway_provider, starts_at, expires_at, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                subscription.id,
                subscription.founder_id,
                subscription.payment_transaction_id,
                subscription.plan_type.value,
                subscription.status.value,
                subscription.gateway_provider.value,
                subscription.starts_at,
                subscription.expires_at,
                subscription.created_at,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateSubscriptionError(context={"transaction_id": subscription.payment_transaction_id})
        return subscription

    async def get_subscription_by_transaction(self, transaction_id):
        row = await Database.fetch_one(
            "SELECT * FROM user_subscriptions WHERE payment_transaction_id = $1", transaction_id
        )
        return _row_to_subscription(row) if row else None

    async def list_subscriptions(self, founder_id):
        rows = await Database.fetch_all(
            "SELECT * FROM user_subscriptions WHERE founder_id = $1 ORDER BY created_at DESC",
            founder_id,
        )
        return [_row_to_subscription(r) for r in rows]

    async def try_claim_key(self, key, ttl_seconds):
        row = await Database.fetch_one(
            """
            INSERT INTO payment_idempotency_keys (key, expires_at)
            VALUES ($1, NOW() + make_interval(secs => $2))
            ON CONFLICT (key) DO UPDATE
                SET expires_at = EXCLUDED.expires_at, created_at = NOW()
                WHERE payment_idempotency_keys.expires_at < NOW()
            RETURNING key
            """,
            key,
            float(ttl_seconds),
        )
        return row is not None
