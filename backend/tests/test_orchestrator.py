"""
Shipment orchestrator: creation, courier partial failure, retry, cancellation
and courier-reported status side effects.

Rate card in the fixtures: 50/box, 20/kg above 0.5kg per box, 10% markup.
Two P1 parts (2kg) in one box therefore cost 88.00.
"""

import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select, func

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    InsufficientBalanceError, InsufficientStockError, ShipmentValidationError,
    InvalidStatusTransitionError, PricingConfigurationError, InsufficientPermissionsError,
)
from backend.app.core.reliability import CircuitBreaker
from backend.app.domain.ledger.inventory_ledger import InventoryLedger
from backend.app.domain.ledger.wallet_ledger import WalletLedger
from backend.app.domain.shipments.effects import ShipmentCreated, ShipmentStatusChanged, WalletDebited, RecordMargin, WalletCredited
from backend.app.domain.shipments.orchestrator import ShipmentOrchestrator
from backend.app.integrations.courier.dtdc_adapter import DTDCCourierGateway
from backend.app.integrations.courier.fake_adapter import FakeCourierGateway
from backend.app.models.enums import UserRole
from backend.app.models.insurance import CarrierRisk, NoInsurance
from backend.app.models.ledger_enums import InventoryAction, WalletTransactionType
from backend.app.models.part import Part
from backend.app.models.rate_card import RateCard
from backend.app.models.shipment import Shipment
from backend.app.models.shipment_enums import ShipmentStatus, ShipmentType, ReturnReason, ShipmentPriority
from backend.app.schemas.shipment import ShipmentCreate, BoxAllocation, PartQuantity
from backend.tests.conftest import actor_for, make_user, make_rate_card


def _request(recipient_id, parts, key="key-1", **kwargs):
    return ShipmentCreate(
        recipient_id=recipient_id,
        parts=[PartQuantity(part_id=pid, quantity=qty) for pid, qty in parts],
        idempotency_key=key,
        **kwargs,
    )


async def _shipment_count(db):
    return (await db.execute(select(func.count(Shipment.id)))).scalar_one()


@pytest.fixture
def orchestrator(fake_courier):
    return ShipmentOrchestrator(fake_courier)


@pytest.mark.asyncio
async def test_forward_shipment_is_booked_and_charged(db_session, network, orchestrator, fake_courier):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )
    shipment = outcome.shipment

    assert shipment.status == ShipmentStatus.BOOKED
    assert shipment.shipment_type == ShipmentType.FORWARD
    assert shipment.courier_payer == UserRole.BRAND
    assert shipment.payer_account_id == network.brand.id
    assert shipment.charged_amount == Decimal("88.00")
    assert shipment.tracking_id == "FAKE0000000001"
    assert shipment.boxes[0].tracking_id == "FAKE0000000001"
    assert outcome.booking.success is True
    assert outcome.wallet_balance == Decimal("912.00")
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("912.00")

    balance = await InventoryLedger.get_balance(db_session, network.brand.id, network.p1.id)
    assert (balance.on_hand, balance.reserved, balance.available) == (10, 2, 8)

    history = await orchestrator.status_history(db_session, shipment.id)
    assert [e.to_status for e in history] == [
        ShipmentStatus.INITIATED, ShipmentStatus.PRICED, ShipmentStatus.PERSISTED, ShipmentStatus.BOOKED,
    ]
    assert fake_courier.booked[0].reference == f"SF-{shipment.id}"

    kinds = [type(e) for e in outcome.effects]
    assert kinds[0] is ShipmentCreated
    assert WalletDebited in kinds
    assert ShipmentStatusChanged in kinds
    assert RecordMargin in kinds


@pytest.mark.asyncio
async def test_debit_is_linked_to_shipment(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
    )

    transactions = await WalletLedger.list_transactions(db_session, network.brand.id)
    debit = transactions[0]
    assert debit.reference == f"shipment:{network.brand.id}:key-1:debit"
    assert debit.shipment_id == outcome.shipment.id
    assert outcome.shipment.wallet_debit_reference == debit.reference


@pytest.mark.asyncio
async def test_courier_failure_keeps_debit_and_leaves_awb_pending(db_session, network, orchestrator, fake_courier):
    fake_courier.configure(should_succeed=False, failure_reason="DTDC gateway returned 503")

    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )

    assert outcome.shipment.status == ShipmentStatus.AWB_PENDING
    assert outcome.booking.success is False
    assert "503" in outcome.booking.error
    assert outcome.shipment.last_courier_error == outcome.booking.error
    assert outcome.shipment.tracking_id is None
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("912.00")
    assert not any(isinstance(e, RecordMargin) for e in outcome.effects)


@pytest.mark.asyncio
async def test_retry_books_without_charging_again(db_session, network, orchestrator, fake_courier):
    fake_courier.configure(should_succeed=False)
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )
    fake_courier.configure(should_succeed=True)

    retried = await orchestrator.retry_booking(db_session, outcome.shipment.id, actor_for(network.brand))

    assert retried.shipment.status == ShipmentStatus.BOOKED
    assert retried.shipment.courier_attempts == 2
    assert retried.shipment.last_courier_error is None
    assert retried.booking.tracking_id is not None
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("912.00")

    # Booked shipments are returned as-is
    again = await orchestrator.retry_booking(db_session, outcome.shipment.id, actor_for(network.brand))
    assert again.replayed is True
    assert again.booking.tracking_id == retried.booking.tracking_id


@pytest.mark.asyncio
async def test_retry_rejects_shipments_not_pending(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
    )
    await orchestrator.cancel(db_session, outcome.shipment.id, actor_for(network.brand))

    with pytest.raises(InvalidStatusTransitionError):
        await orchestrator.retry_booking(db_session, outcome.shipment.id, actor_for(network.brand))


@pytest.mark.asyncio
async def test_missing_tracking_id_is_treated_as_courier_failure(db_session, network, orchestrator, fake_courier):
    fake_courier.configure(missing_tracking_references={"SF-1"})

    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
    )

    assert outcome.shipment.id == 1
    assert outcome.shipment.status == ShipmentStatus.AWB_PENDING
    assert "tracking id" in outcome.booking.error


@pytest.mark.asyncio
async def test_same_idempotency_key_returns_original(db_session, network, orchestrator, fake_courier):
    request = _request(network.service_center.id, [(network.p1.id, 2)])
    first = await orchestrator.create_shipment(db_session, request, actor_for(network.brand))
    second = await orchestrator.create_shipment(db_session, request, actor_for(network.brand))

    assert second.replayed is True
    assert second.shipment.id == first.shipment.id
    assert second.effects == []
    assert len(fake_courier.booked) == 1
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("912.00")
    assert await _shipment_count(db_session) == 1


@pytest.mark.asyncio
async def test_insufficient_balance_creates_nothing(db_session, network, orchestrator, fake_courier):
    brand_id, recipient_id, part_id = network.brand.id, network.service_center.id, network.p1.id
    actor = actor_for(network.brand)
    await WalletLedger.check_and_deduct(db_session, brand_id, Decimal("950.00"), "drain", actor)
    await db_session.commit()

    with pytest.raises(InsufficientBalanceError) as exc:
        await orchestrator.create_shipment(db_session, _request(recipient_id, [(part_id, 2)]), actor)

    assert exc.value.shortfall == Decimal("38.00")
    assert await _shipment_count(db_session) == 0
    balance = await InventoryLedger.get_balance(db_session, brand_id, part_id)
    assert balance.reserved == 0
    assert fake_courier.booked == []


@pytest.mark.asyncio
async def test_insufficient_stock_creates_nothing(db_session, network, orchestrator):
    brand_id, recipient_id, part_id = network.brand.id, network.service_center.id, network.p1.id

    with pytest.raises(InsufficientStockError):
        await orchestrator.create_shipment(
            db_session, _request(recipient_id, [(part_id, 11)]), actor_for(network.brand),
        )

    assert await _shipment_count(db_session) == 0
    # The debit taken before the reservation was rolled back with it
    assert await WalletLedger.get_balance(db_session, brand_id) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_partner_outside_brand_network_rejected(db_session, network, orchestrator):
    outsider = await make_user(db_session, UserRole.SERVICE_CENTER, "rogue@partner.test")
    await db_session.commit()

    with pytest.raises(ShipmentValidationError) as exc:
        await orchestrator.create_shipment(
            db_session, _request(outsider.id, [(network.p1.id, 1)]), actor_for(network.brand),
        )

    assert "authorized network" in exc.value.message


@pytest.mark.asyncio
async def test_parts_of_another_brand_rejected(db_session, network, orchestrator):
    other_brand = await make_user(db_session, UserRole.BRAND, "ops@other.test")
    foreign = Part(brand_id=other_brand.id, code="X1", name="Foreign", weight_kg=Decimal("1"), price=Decimal("10"))
    db_session.add(foreign)
    await db_session.commit()

    with pytest.raises(ShipmentValidationError) as exc:
        await orchestrator.create_shipment(
            db_session, _request(network.service_center.id, [(foreign.id, 1)]), actor_for(network.brand),
        )

    assert exc.value.details["part_ids"] == [foreign.id]


@pytest.mark.asyncio
async def test_box_allocation_must_cover_request(db_session, network, orchestrator):
    request = _request(
        network.service_center.id,
        [(network.p1.id, 2)],
        boxes=[BoxAllocation(parts=[PartQuantity(part_id=network.p1.id, quantity=1)])],
    )

    with pytest.raises(ShipmentValidationError) as exc:
        await orchestrator.create_shipment(db_session, request, actor_for(network.brand))

    assert exc.value.details["parts"][str(network.p1.id)] == {"requested": 2, "allocated": 1}


@pytest.mark.asyncio
async def test_multi_box_shipment(db_session, network, orchestrator):
    request = _request(
        network.service_center.id,
        [(network.p1.id, 2)],
        boxes=[
            BoxAllocation(parts=[PartQuantity(part_id=network.p1.id, quantity=1)], length_cm=Decimal("30")),
            BoxAllocation(parts=[PartQuantity(part_id=network.p1.id, quantity=1)]),
        ],
    )

    outcome = await orchestrator.create_shipment(db_session, request, actor_for(network.brand))

    assert [b.sequence for b in outcome.shipment.boxes] == [1, 2]
    assert outcome.shipment.charged_amount == Decimal("132.00")


@pytest.mark.asyncio
async def test_insurance_is_recorded_on_shipment(db_session, network, orchestrator):
    request = _request(
        network.service_center.id, [(network.p2.id, 1)],
        insurance_requested=True, declared_value=Decimal("6000"),
    )

    outcome = await orchestrator.create_shipment(db_session, request, actor_for(network.brand))

    assert isinstance(outcome.shipment.insurance, CarrierRisk)
    assert outcome.shipment.insurance.cost == Decimal("141.60")
    assert outcome.shipment.charged_amount == Decimal("229.60")


@pytest.mark.asyncio
async def test_insurance_skipped_below_threshold(db_session, network, orchestrator):
    request = _request(network.service_center.id, [(network.p1.id, 2)], insurance_requested=True)

    plan, _ = await orchestrator.estimate(db_session, request, actor_for(network.brand))
    outcome = await orchestrator.create_shipment(db_session, request, actor_for(network.brand))

    assert plan.cost.insurance_skipped_reason is not None
    assert isinstance(outcome.shipment.insurance, NoInsurance)


@pytest.mark.asyncio
async def test_estimate_has_no_side_effects(db_session, network, orchestrator, fake_courier):
    request = _request(network.service_center.id, [(network.p1.id, 2)], priority=ShipmentPriority.HIGH)

    plan, balance = await orchestrator.estimate(db_session, request, actor_for(network.brand))

    assert plan.cost.total == Decimal("132.00")
    assert balance == Decimal("1000.00")
    assert await _shipment_count(db_session) == 0
    assert fake_courier.booked == []


@pytest.mark.asyncio
async def test_brand_rate_card_overrides_global(db_session, network, orchestrator):
    await make_rate_card(
        db_session, ShipmentType.FORWARD, brand_id=network.brand.id, payer_role=UserRole.BRAND,
        base_rate_per_box=Decimal("40.00"), markup_percent=Decimal("0"),
    )
    await db_session.commit()

    plan, _ = await orchestrator.estimate(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )

    assert plan.cost.pricing_source == "BRAND_OVERRIDE"
    assert plan.cost.total == Decimal("70.00")


@pytest.mark.asyncio
async def test_no_active_rate_card(db_session, network, orchestrator):
    for card in (await db_session.execute(select(RateCard))).scalars():
        card.is_active = False
    await db_session.commit()

    with pytest.raises(PricingConfigurationError):
        await orchestrator.estimate(
            db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
        )


@pytest.mark.asyncio
async def test_cancel_restores_stock_and_refunds(db_session, network, orchestrator, fake_courier):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )

    cancelled = await orchestrator.cancel(db_session, outcome.shipment.id, actor_for(network.brand), "Order withdrawn")

    assert cancelled.shipment.status == ShipmentStatus.CANCELLED
    assert cancelled.wallet_balance == Decimal("1000.00")
    assert any(isinstance(e, WalletCredited) for e in cancelled.effects)
    assert fake_courier.cancelled == [outcome.shipment.tracking_id]
    balance = await InventoryLedger.get_balance(db_session, network.brand.id, network.p1.id)
    assert (balance.on_hand, balance.reserved) == (10, 0)

    again = await orchestrator.cancel(db_session, outcome.shipment.id, actor_for(network.brand))
    assert again.replayed is True
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_cancel_awb_pending_skips_courier(db_session, network, orchestrator, fake_courier):
    fake_courier.configure(should_succeed=False)
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
    )

    cancelled = await orchestrator.cancel(db_session, outcome.shipment.id, actor_for(network.brand))

    assert cancelled.shipment.status == ShipmentStatus.CANCELLED
    assert fake_courier.cancelled == []


@pytest.mark.asyncio
async def test_only_initiator_or_payer_can_cancel(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
    )

    with pytest.raises(InsufficientPermissionsError):
        await orchestrator.cancel(db_session, outcome.shipment.id, actor_for(network.customer))


@pytest.mark.asyncio
async def test_dispatch_commits_reserved_stock(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )
    admin = actor_for(network.admin)

    await orchestrator.apply_courier_status(db_session, outcome.shipment.id, ShipmentStatus.DISPATCHED, admin)

    balance = await InventoryLedger.get_balance(db_session, network.brand.id, network.p1.id)
    assert (balance.on_hand, balance.reserved, balance.available) == (8, 0, 8)
    entries = await InventoryLedger.list_entries(db_session, network.brand.id, network.p1.id)
    assert entries[0].action == InventoryAction.TRANSFER_OUT
    assert entries[0].destination_id == network.service_center.id

    with pytest.raises(InvalidStatusTransitionError):
        await orchestrator.cancel(db_session, outcome.shipment.id, admin)


@pytest.mark.asyncio
async def test_rto_returns_stock(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )
    admin = actor_for(network.admin)
    for target in (ShipmentStatus.DISPATCHED, ShipmentStatus.IN_TRANSIT, ShipmentStatus.RTO):
        await orchestrator.apply_courier_status(db_session, outcome.shipment.id, target, admin)

    balance = await InventoryLedger.get_balance(db_session, network.brand.id, network.p1.id)
    assert (balance.on_hand, balance.reserved) == (10, 0)
    assert await InventoryLedger.replay_balance(db_session, network.brand.id, network.p1.id) == (10, 0)


@pytest.mark.asyncio
async def test_status_must_follow_transition_table(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
    )
    admin = actor_for(network.admin)

    with pytest.raises(InvalidStatusTransitionError):
        await orchestrator.apply_courier_status(db_session, outcome.shipment.id, ShipmentStatus.DELIVERED, admin)

    with pytest.raises(ShipmentValidationError):
        await orchestrator.apply_courier_status(db_session, outcome.shipment.id, ShipmentStatus.CANCELLED, admin)


@pytest.mark.asyncio
async def test_repeated_status_is_noop(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.brand),
    )
    admin = actor_for(network.admin)

    await orchestrator.apply_courier_status(db_session, outcome.shipment.id, ShipmentStatus.DISPATCHED, admin)
    repeat = await orchestrator.apply_courier_status(db_session, outcome.shipment.id, ShipmentStatus.DISPATCHED, admin)

    assert repeat.replayed is True
    assert repeat.effects == []


@pytest.mark.asyncio
async def test_excess_return_is_restocked_on_delivery(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session, _request(network.brand.id, [(network.p1.id, 1)]), actor_for(network.service_center),
    )
    shipment = outcome.shipment

    assert shipment.shipment_type == ShipmentType.REVERSE
    assert shipment.return_reason == ReturnReason.EXCESS
    assert shipment.payer_account_id == network.service_center.id
    assert shipment.charged_amount == Decimal("66.00")
    assert await WalletLedger.get_balance(db_session, network.service_center.id) == Decimal("934.00")

    admin = actor_for(network.admin)
    for target in (ShipmentStatus.DISPATCHED, ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED):
        await orchestrator.apply_courier_status(db_session, shipment.id, target, admin)

    balance = await InventoryLedger.get_balance(db_session, network.brand.id, network.p1.id)
    assert balance.on_hand == 11


@pytest.mark.asyncio
async def test_defective_return_is_paid_by_brand_and_not_restocked(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session,
        _request(network.brand.id, [(network.p1.id, 1)], return_reason=ReturnReason.DEFECTIVE),
        actor_for(network.service_center),
    )
    shipment = outcome.shipment

    assert shipment.payer_account_id == network.brand.id
    assert await WalletLedger.get_balance(db_session, network.service_center.id) == Decimal("1000.00")

    admin = actor_for(network.admin)
    for target in (ShipmentStatus.DISPATCHED, ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED):
        await orchestrator.apply_courier_status(db_session, shipment.id, target, admin)

    balance = await InventoryLedger.get_balance(db_session, network.brand.id, network.p1.id)
    assert balance.on_hand == 10


@pytest.mark.asyncio
async def test_customer_warranty_return(db_session, network, orchestrator):
    outcome = await orchestrator.create_shipment(
        db_session,
        _request(network.service_center.id, [(network.p1.id, 1)], brand_id=network.brand.id),
        actor_for(network.customer),
    )

    assert outcome.shipment.return_reason == ReturnReason.WARRANTY_RETURN
    assert outcome.shipment.payer_account_id == network.customer.id


@pytest.mark.asyncio
async def test_brand_required_when_no_brand_party(db_session, network, orchestrator):
    with pytest.raises(ShipmentValidationError):
        await orchestrator.create_shipment(
            db_session, _request(network.service_center.id, [(network.p1.id, 1)]), actor_for(network.customer),
        )


class ExplodingCourier(FakeCourierGateway):
    async def book_consignment(self, request):
        raise KeyError(0)


class HangingCourier(FakeCourierGateway):
    async def book_consignment(self, request):
        await asyncio.sleep(5)
        return await super().book_consignment(request)


@pytest.mark.asyncio
async def test_unexpected_courier_error_leaves_awb_pending(db_session, network, fake_courier):
    outcome = await ShipmentOrchestrator(ExplodingCourier()).create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )
    shipment_id = outcome.shipment.id

    assert outcome.shipment.status == ShipmentStatus.AWB_PENDING
    assert "KeyError" in outcome.booking.error
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("912.00")

    retried = await ShipmentOrchestrator(fake_courier).retry_booking(db_session, shipment_id, actor_for(network.brand))
    assert retried.shipment.status == ShipmentStatus.BOOKED


@pytest.mark.asyncio
async def test_malformed_courier_reply_leaves_awb_pending(db_session, network):
    def handler(request):
        return httpx.Response(200, json={"success": True, "data": [42]})

    gateway = DTDCCourierGateway(
        base_url="https://courier.test/api",
        api_key="test-key",
        customer_code="CUST01",
        circuit_breaker=CircuitBreaker(failure_threshold=3, reset_timeout=60, name="test"),
        transport=httpx.MockTransport(handler),
    )
    async with gateway:
        outcome = await ShipmentOrchestrator(gateway).create_shipment(
            db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
        )

    assert outcome.shipment.status == ShipmentStatus.AWB_PENDING
    assert outcome.booking.success is False
    assert "consignment data" in outcome.booking.error


@pytest.mark.asyncio
async def test_courier_timeout_leaves_awb_pending_without_refund(db_session, network, monkeypatch):
    monkeypatch.setattr(settings, "courier_timeout_seconds", 0.05)

    outcome = await ShipmentOrchestrator(HangingCourier()).create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)]), actor_for(network.brand),
    )

    assert outcome.shipment.status == ShipmentStatus.AWB_PENDING
    assert "timed out" in outcome.booking.error
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("912.00")
    transactions = await WalletLedger.list_transactions(db_session, network.brand.id)
    assert [t.type for t in transactions] == [WalletTransactionType.DEBIT, WalletTransactionType.CREDIT]
    assert transactions[1].reference == f"seed:{network.brand.id}"


@pytest.mark.asyncio
async def test_idempotency_key_is_scoped_to_initiator(db_session, network, orchestrator):
    theirs = await orchestrator.create_shipment(
        db_session,
        _request(network.brand.id, [(network.p1.id, 1)], key="shared-key", return_reason=ReturnReason.EXCESS),
        actor_for(network.service_center),
    )
    theirs_id = theirs.shipment.id

    mine = await orchestrator.create_shipment(
        db_session, _request(network.service_center.id, [(network.p1.id, 2)], key="shared-key"),
        actor_for(network.brand),
    )

    assert mine.replayed is False
    assert mine.shipment.id != theirs_id
    assert mine.shipment.initiator_id == network.brand.id
    assert mine.shipment.wallet_debit_reference == f"shipment:{network.brand.id}:shared-key:debit"
    assert await WalletLedger.get_balance(db_session, network.brand.id) == Decimal("912.00")
    assert await _shipment_count(db_session) == 2
