"""
Failure Injection Tests.

Validates resilience against component failures: courier circuit breaker,
post-commit effects that fail, and margin bookkeeping.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from backend.app.domain.shipments.effects import ShipmentCreated, RecordMargin, WalletDebited, effect_from_payload
from backend.app.domain.shipments.orchestrator import ShipmentOrchestrator
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.margin_record import MarginRecord
from backend.app.models.notification import Notification
from backend.app.schemas.shipment import ShipmentCreate, PartQuantity
from backend.app.services.effect_dispatcher import EffectDispatcher
from backend.app.services.margin_recorder import MarginRecorder
from backend.app.services.notification_emitter import NotificationEmitter
from backend.tests.conftest import actor_for


class BrokenEmitter(NotificationEmitter):
    async def emit(self, db, effect):
        raise ConnectionError("push gateway down")


async def _create_shipment(db, network, fake_courier):
    request = ShipmentCreate(
        recipient_id=network.service_center.id,
        parts=[PartQuantity(part_id=network.p1.id, quantity=2)],
        idempotency_key="failure-1",
    )
    return await ShipmentOrchestrator(fake_courier).create_shipment(db, request, actor_for(network.brand))


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Circuit opens after threshold failures and rejects further calls."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=60, name="test")
    calls = []

    async def failing_func():
        calls.append(1)
        raise ValueError("Boom")

    for _ in range(2):
        with pytest.raises(ValueError):
            await cb.call(failing_func)

    with pytest.raises(CircuitOpenError):
        await cb.call(failing_func)

    assert cb.state == "OPEN"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_circuit_breaker_recovers_after_trial_call():
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=60, name="test")

    async def failing_func():
        raise ValueError("Boom")

    async def ok_func():
        return "ok"

    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"

    # Pretend the reset timeout elapsed
    cb.last_failure_time = 0
    assert await cb.call(ok_func) == "ok"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_hung_calls_cut_by_timeout_open_the_circuit():
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=60, name="test")

    async def hanging_func():
        await asyncio.sleep(5)

    for _ in range(2):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cb.call(hanging_func), timeout=0.01)

    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        await cb.call(hanging_func)


@pytest.mark.asyncio
async def test_effects_are_delivered(db_session, network, fake_courier):
    fake_courier.configure(cost_estimate=Decimal("61.50"))
    outcome = await _create_shipment(db_session, network, fake_courier)

    failed = await EffectDispatcher(db_session).dispatch(outcome.effects)

    assert failed == 0
    margins = (await db_session.execute(select(MarginRecord))).scalars().all()
    assert len(margins) == 1
    assert margins[0].margin == Decimal("26.50")
    assert margins[0].tracking_id == outcome.shipment.tracking_id

    notifications = (await db_session.execute(select(Notification))).scalars().all()
    assert {n.user_id for n in notifications} == {network.brand.id, network.service_center.id}
    assert {n.event_kind for n in notifications} >= {"ShipmentCreated", "WalletDebited", "ShipmentStatusChanged"}


@pytest.mark.asyncio
async def test_failed_effect_is_dead_lettered(db_session, network, fake_courier):
    fake_courier.configure(cost_estimate=Decimal("61.50"))
    outcome = await _create_shipment(db_session, network, fake_courier)

    failed = await EffectDispatcher(db_session, emitter=BrokenEmitter()).dispatch(outcome.effects)

    # Notifications fail, the margin effect still goes through
    assert failed == len(outcome.effects) - 1
    assert len((await db_session.execute(select(MarginRecord))).scalars().all()) == 1

    items = (await db_session.execute(select(DeadLetterQueue).order_by(DeadLetterQueue.id))).scalars().all()
    assert len(items) == failed
    assert items[0].task_name == "effect.ShipmentCreated"
    assert items[0].status == DLQStatus.FAILED
    assert "push gateway down" in items[0].error_message
    assert items[0].payload["shipment_id"] == outcome.shipment.id


@pytest.mark.asyncio
async def test_dead_lettered_effect_can_be_redelivered(db_session, network, fake_courier):
    outcome = await _create_shipment(db_session, network, fake_courier)
    debit = next(e for e in outcome.effects if isinstance(e, WalletDebited))
    await EffectDispatcher(db_session, emitter=BrokenEmitter()).dispatch([debit])
    item = (await db_session.execute(select(DeadLetterQueue))).scalar_one()

    assert await EffectDispatcher(db_session, emitter=BrokenEmitter()).redeliver(item) is False
    item = await db_session.get(DeadLetterQueue, item.id)
    assert (item.status, item.retry_count) == (DLQStatus.FAILED, 1)

    assert await EffectDispatcher(db_session).redeliver(item) is True
    item = await db_session.get(DeadLetterQueue, item.id)
    assert (item.status, item.retry_count) == (DLQStatus.PROCESSED, 2)
    notes = (await db_session.execute(select(Notification))).scalars().all()
    assert [n.event_kind for n in notes] == ["WalletDebited"]


@pytest.mark.asyncio
async def test_dispatcher_survives_dlq_write_failure(db_session, mocker):
    effect = ShipmentCreated(shipment_id=1, initiator_id=1, recipient_id=2, status="BOOKED")
    mocker.patch.object(db_session, "commit", side_effect=RuntimeError("database gone"))

    failed = await EffectDispatcher(db_session, emitter=BrokenEmitter()).dispatch([effect])

    assert failed == 1


def test_effect_payload_round_trip():
    effect = RecordMargin(shipment_id=3, customer_price=Decimal("88.00"), courier_cost=None, tracking_id="T1")

    rebuilt = effect_from_payload(effect.kind, effect.payload())

    assert rebuilt == effect
    with pytest.raises(ValueError):
        effect_from_payload("Unknown", {})


def test_margin_calculation():
    assert MarginRecorder.calculate(Decimal("88.00"), Decimal("61.50")) == (Decimal("26.50"), Decimal("30.11"))
    assert MarginRecorder.calculate(Decimal("50.00"), Decimal("60.00")) == (Decimal("-10.00"), Decimal("-20.00"))
    assert MarginRecorder.calculate(Decimal("0"), Decimal("10.00"))[1] == Decimal("0.00")


@pytest.mark.asyncio
async def test_margin_skipped_without_courier_cost(db_session, network, fake_courier):
    outcome = await _create_shipment(db_session, network, fake_courier)

    record = await MarginRecorder.record(db_session, outcome.shipment.id, Decimal("88.00"), None)

    assert record is None
    assert await MarginRecorder.list_records(db_session) == []
