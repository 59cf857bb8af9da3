from decimal import Decimal

import pytest

from schemas.payment_definitions import (
    GatewayProvider,
    PaymentLog,
    PaymentLogAction,
    PaymentStatus,
    PaymentTransaction,
    PlanType,
    UserSubscription,
    utcnow,
)
from schemas.payment_errors import DuplicateSubscriptionError
from storage.payment_repository import InMemoryPaymentRepository


def transaction(ref="DR_1", **overrides):
    data = dict(
        founder_id="founder-1",
        order_reference=ref,
        gateway_provider=GatewayProvider.TELR,
        amount=Decimal("100.00"),
        currency="USD",
    )
    data.update(overrides)
    return PaymentTransaction(**data)


async def test_order_reference_is_unique(repository):
    await repository.create_transaction(transaction())
    with pytest.raises(ValueError):
        await repository.create_transaction(transaction())


async def test_returned_models_are_copies(repository):
    tx = await repository.create_transaction(transaction())
    tx.metadata["tampered"] = True
    stored = await repository.get_by_order_reference("DR_1")
    assert "tampered" not in stored.metadata


async def test_transition_only_from_pending(repository):
    await repository.create_transaction(transaction())

    first = await repository.transition_status("DR_1", PaymentStatus.COMPLETED, gateway_status="A")
    second = await repository.transition_status("DR_1", PaymentStatus.FAILED)

    assert first.status == PaymentStatus.COMPLETED
    assert first.gateway_status == "A"
    assert second is None
    assert (await repository.get_by_order_reference("DR_1")).status == PaymentStatus.COMPLETED


async def test_transition_to_non_terminal_is_refused(repository):
    await repository.create_transaction(transaction())
    assert await repository.transition_status("DR_1", PaymentStatus.UNKNOWN) is None
    assert await repository.transition_status("DR_missing", PaymentStatus.FAILED) is None


async def test_gateway_transaction_id_is_write_once(repository):
    tx = await repository.create_transaction(transaction())
    await repository.update_transaction(tx.id, gateway_transaction_id="GW-1")
    updated = await repository.update_transaction(tx.id, gateway_transaction_id="GW-2", payment_url="https://p")
    assert updated.gateway_transaction_id == "GW-1"
    assert updated.payment_url == "https://p"
    assert (await repository.get_by_gateway_reference("GW-1")).id == tx.id


async def test_update_rejects_protected_fields(repository):
    tx = await repository.create_transaction(transaction())
    with pytest.raises(ValueError):
        await repository.update_transaction(tx.id, status=PaymentStatus.COMPLETED)


async def test_logs_and_has_log(repository):
    tx = await repository.create_transaction(transaction())
    await repository.append_log(PaymentLog(
        transaction_id=tx.id, gateway_provider=tx.gateway_provider, action=PaymentLogAction.CREATED
    ))
    assert await repository.has_log(tx.id, PaymentLogAction.CREATED)
    assert not await repository.has_log(tx.id, PaymentLogAction.SUBSCRIPTION_CREATED)
    assert len(await repository.get_logs(tx.id)) == 1


async def test_one_subscription_per_transaction(repository):
    sub = UserSubscription(
        founder_id="founder-1",
        payment_transaction_id="tx-1",
        plan_type=PlanType.BASIC,
        gateway_provider=GatewayProvider.TELR,
        expires_at=utcnow(),
    )
    await repository.create_subscription(sub)
    with pytest.raises(DuplicateSubscriptionError):
        await repository.create_subscription(sub.model_copy(update={"id": "other"}))
    assert len(await repository.list_subscriptions("founder-1")) == 1


async def test_claim_key_respects_ttl():
    now = [0.0]
    repo = InMemoryPaymentRepository(clock=lambda: now[0])

    assert await repo.try_claim_key("emails:1", 60)
    assert not await repo.try_claim_key("emails:1", 60)
    now[0] = 61.0
    assert await repo.try_claim_key("emails:1", 60)


async def test_expired_claims_are_pruned():
    now = [0.0]
    repo = InMemoryPaymentRepository(clock=lambda: now[0])

    await repo.try_claim_key("emails:1", 60)
    await repo.try_claim_key("emails:2", 60)
    now[0] = 100.0
    await repo.try_claim_key("emails:3", 60)

    assert set(repo._claims) == {"emails:3"}
