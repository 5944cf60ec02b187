"""
Shipment Orchestrator (Domain Logic).

Drives a shipment from request to courier booking and through its
courier-reported lifecycle.

Creation flow:
1. Idempotency check (existing shipment for the key is returned as-is)
2. Validate parties, brand network and parts; classify; price
3. One transaction: wallet debit -> stock reservation -> shipment graph -> commit
4. Courier booking outside any transaction
5. Apply the booking result in a new short transaction (BOOKED or AWB_PENDING)

A courier failure never rolls back the debit or the shipment. The shipment
is left AWB_PENDING and retry_booking re-runs step 4-5 only.

Every mutating call returns the pending effects (notifications, margin) for
the EffectDispatcher to send after commit.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    AppException, ShipmentValidationError, ResourceNotFoundError, InsufficientPermissionsError,
    InsufficientBalanceError, InvalidStatusTransitionError, InconsistentCourierResponseError,
    InsufficientStockError, IdempotencyConflictError,
)
from backend.app.domain.actor import Actor
from backend.app.domain.ledger.inventory_ledger import InventoryLedger
from backend.app.domain.ledger.wallet_ledger import WalletLedger
from backend.app.domain.pricing.pricing_engine import (
    CostBreakdown, compute_cost, is_express, is_remote_area, to_money, ZERO,
)
from backend.app.domain.pricing.rate_card_resolver import RateCardResolver
from backend.app.domain.shipments.classifier import (
    ShipmentClassification, PayerAssignment, classify_shipment, assign_courier_payer,
)
from backend.app.domain.shipments.effects import (
    Effect, ShipmentCreated, ShipmentStatusChanged, WalletDebited, WalletCredited, RecordMargin,
)
from backend.app.domain.shipments.state_machine import (
    ensure_transition, CANCELLABLE_STATUSES, COURIER_REPORTED_STATUSES,
)
from backend.app.integrations.courier.port import (
    ConsignmentAddress, ConsignmentRequest, ConsignmentResult, CourierGateway,
)
from backend.app.models.brand_authorization import BrandAuthorization
from backend.app.models.enums import UserRole, AuthorizationStatus
from backend.app.models.insurance import NoInsurance, CarrierRisk
from backend.app.models.part import Part
from backend.app.models.shipment import Shipment, Box, BoxPart, ShipmentStatusEvent
from backend.app.models.shipment_enums import (
    ShipmentStatus, ShipmentType, ShipmentDirection, ReturnReason, BoxStatus, ActorKind,
)
from backend.app.models.user import User
from backend.app.schemas.shipment import ShipmentCreate

logger = logging.getLogger(__name__)

# Reverse deliveries that go back into the brand's sellable stock
RESTOCKABLE_RETURNS = (ReturnReason.EXCESS, ReturnReason.WRONG_PART)


@dataclass(frozen=True)
class BookingSummary:
    success: bool
    tracking_id: Optional[str] = None
    tracking_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ShipmentOutcome:
    shipment: Shipment
    booking: Optional[BookingSummary] = None
    effects: List[Effect] = field(default_factory=list)
    replayed: bool = False
    wallet_balance: Optional[Decimal] = None


@dataclass
class PlannedBox:
    sequence: int
    parts: List[Tuple[int, int]]
    weight: Decimal
    value: Decimal
    length_cm: Optional[Decimal] = None
    width_cm: Optional[Decimal] = None
    height_cm: Optional[Decimal] = None


@dataclass
class ShipmentPlan:
    """Everything decided before any write: parties, classification, boxes, price."""
    initiator: User
    recipient: User
    brand_id: int
    classification: ShipmentClassification
    payer: PayerAssignment
    payer_account_id: int
    quantities: Dict[int, int]
    boxes: List[PlannedBox]
    total_weight: Decimal
    total_value: Decimal
    declared_value: Decimal
    remote: bool
    cost: CostBreakdown

    @property
    def reserves_stock(self) -> bool:
        return (
            self.classification.shipment_type == ShipmentType.FORWARD
            and self.classification.direction == ShipmentDirection.BRAND
        )


@dataclass
class BulkItemOutcome:
    index: int
    shipment: Optional[Shipment] = None
    booking: Optional[BookingSummary] = None
    error: Optional[AppException] = None

    @property
    def success(self) -> bool:
        return self.shipment is not None


@dataclass
class BulkOutcome:
    batch_key: str
    items: List[BulkItemOutcome]
    effects: List[Effect] = field(default_factory=list)
    wallet_balances: Dict[int, Decimal] = field(default_factory=dict)
    replayed: bool = False

    @property
    def created(self) -> List[Shipment]:
        return [i.shipment for i in self.items if i.shipment is not None]

    @property
    def total_charged(self) -> Decimal:
        return to_money(sum((to_money(s.charged_amount) for s in self.created), ZERO))


def debit_reference(initiator_id: int, idempotency_key: str) -> str:
    return f"shipment:{initiator_id}:{idempotency_key}:debit"


def bulk_debit_reference(initiator_id: int, batch_key: str, payer_id: int) -> str:
    return f"bulk:{initiator_id}:{batch_key}:payer:{payer_id}:debit"


def refund_reference(shipment_id: int) -> str:
    return f"shipment:{shipment_id}:refund"


def reservation_reference(shipment_id: int, part_id: int) -> str:
    return f"shipment:{shipment_id}:part:{part_id}"


def courier_reference(shipment_id: int) -> str:
    return f"SF-{shipment_id}"


def _address(user: User) -> ConsignmentAddress:
    return ConsignmentAddress(
        name=user.name,
        phone=user.phone or "",
        line1=user.address_line1 or "",
        line2=user.address_line2 or "",
        city=user.city or "",
        state=user.state or "",
        pincode=user.pincode or "",
    )


def _warehouse_address() -> ConsignmentAddress:
    return ConsignmentAddress(
        name=settings.warehouse_name,
        phone=settings.warehouse_phone,
        line1=settings.warehouse_address_line1,
        city=settings.warehouse_city,
        state=settings.warehouse_state,
        pincode=settings.warehouse_pincode,
    )


class ShipmentOrchestrator:

    def __init__(self, gateway: CourierGateway):
        self.gateway = gateway

    # ------------------------------------------------------------------
    # Planning (read-only)
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_party(db: AsyncSession, user_id: int, label: str) -> User:
        user = await db.get(User, user_id)
        if user is None or not user.is_active:
            raise ShipmentValidationError(f"{label} {user_id} not found or inactive", details={label: user_id})
        return user

    @staticmethod
    async def _ensure_authorized(db: AsyncSession, brand_id: int, partner: User):
        if partner.role not in (UserRole.DISTRIBUTOR, UserRole.SERVICE_CENTER):
            return
        result = await db.execute(
            select(BrandAuthorization).where(
                BrandAuthorization.brand_id == brand_id,
                BrandAuthorization.partner_id == partner.id,
                BrandAuthorization.status == AuthorizationStatus.ACTIVE,
            )
        )
        if result.scalar_one_or_none() is None:
            raise ShipmentValidationError(
                f"{partner.role.value} {partner.id} is not in brand {brand_id}'s authorized network",
                details={"brand_id": brand_id, "partner_id": partner.id},
            )

    @staticmethod
    def _resolve_brand(request: ShipmentCreate, initiator: User, recipient: User) -> int:
        if initiator.role == UserRole.BRAND:
            brand_id = initiator.id
        elif recipient.role == UserRole.BRAND:
            brand_id = recipient.id
        elif request.brand_id is not None:
            brand_id = request.brand_id
        else:
            raise ShipmentValidationError("brand_id is required when neither party is a brand")
        if request.brand_id is not None and request.brand_id != brand_id:
            raise ShipmentValidationError(
                "brand_id does not match the brand taking part in the shipment",
                details={"brand_id": request.brand_id},
            )
        return brand_id

    @staticmethod
    def _payer_account(payer: PayerAssignment, initiator: User, recipient: User, brand_id: int) -> int:
        if payer.payer == initiator.role:
            return initiator.id
        if payer.payer == recipient.role:
            return recipient.id
        if payer.payer == UserRole.BRAND:
            return brand_id
        raise ShipmentValidationError(f"No account found for courier payer {payer.payer.value}")

    @staticmethod
    def _allocate_boxes(request: ShipmentCreate, quantities: Dict[int, int], parts: Dict[int, Part]) -> List[PlannedBox]:
        """Validate the box allocation; per part, box quantities must add up to the request."""
        if not request.boxes:
            allocations = [(list(quantities.items()), None)]
        else:
            allocations = [([(p.part_id, p.quantity) for p in b.parts], b) for b in request.boxes]

        allocated: Dict[int, int] = defaultdict(int)
        boxes = []
        for sequence, (lines, box) in enumerate(allocations, start=1):
            merged: Dict[int, int] = defaultdict(int)
            for part_id, qty in lines:
                if part_id not in quantities:
                    raise ShipmentValidationError(
                        f"Box {sequence} contains part {part_id} that was not requested",
                        details={"box": sequence, "part_id": part_id},
                    )
                merged[part_id] += qty
                allocated[part_id] += qty

            weight = sum((Decimal(str(parts[pid].weight_kg)) * q for pid, q in merged.items()), Decimal("0"))
            value = sum((Decimal(str(parts[pid].price)) * q for pid, q in merged.items()), Decimal("0"))
            boxes.append(PlannedBox(
                sequence=sequence,
                parts=sorted(merged.items()),
                weight=weight,
                value=to_money(value),
                length_cm=box.length_cm if box else None,
                width_cm=box.width_cm if box else None,
                height_cm=box.height_cm if box else None,
            ))

        mismatched = {pid: (qty, allocated.get(pid, 0)) for pid, qty in quantities.items() if allocated.get(pid, 0) != qty}
        if mismatched:
            raise ShipmentValidationError(
                "Box quantities do not match requested quantities",
                details={
                    "parts": {str(pid): {"requested": r, "allocated": a} for pid, (r, a) in mismatched.items()}
                },
            )
        return boxes

    async def plan(self, db: AsyncSession, request: ShipmentCreate, actor: Actor) -> ShipmentPlan:
        """Validate, classify and price a request without writing anything."""
        if actor.id is None:
            raise ShipmentValidationError("Shipments must be initiated by a party")

        initiator = await self._get_party(db, actor.id, "initiator")
        recipient = await self._get_party(db, request.recipient_id, "recipient")
        if initiator.id == recipient.id:
            raise ShipmentValidationError("Initiator and recipient must differ")

        classification = classify_shipment(initiator.role, recipient.role, request.return_reason)
        payer = assign_courier_payer(classification)

        brand_id = self._resolve_brand(request, initiator, recipient)
        brand = await self._get_party(db, brand_id, "brand")
        if brand.role != UserRole.BRAND:
            raise ShipmentValidationError(f"Party {brand_id} is not a brand", details={"brand_id": brand_id})
        await self._ensure_authorized(db, brand_id, initiator)
        await self._ensure_authorized(db, brand_id, recipient)

        quantities = {p.part_id: p.quantity for p in request.parts}
        result = await db.execute(select(Part).where(Part.id.in_(quantities.keys())))
        parts = {p.id: p for p in result.scalars().all()}
        invalid = [
            pid for pid in quantities
            if pid not in parts or parts[pid].brand_id != brand_id or not parts[pid].is_active
        ]
        if invalid:
            raise ShipmentValidationError(
                "Unknown, inactive or foreign parts requested",
                details={"part_ids": invalid, "brand_id": brand_id},
            )

        boxes = self._allocate_boxes(request, quantities, parts)
        total_weight = sum((b.weight for b in boxes), Decimal("0"))
        total_value = to_money(sum((b.value for b in boxes), Decimal("0")))
        declared_value = to_money(request.declared_value if request.declared_value is not None else total_value)

        payer_account_id = self._payer_account(payer, initiator, recipient, brand_id)
        terms = await RateCardResolver.resolve(db, classification.shipment_type, payer.payer, brand_id)
        remote = is_remote_area(recipient.pincode)
        cost = compute_cost(
            terms,
            box_count=len(boxes),
            total_weight=total_weight,
            is_express=is_express(request.priority),
            is_remote_area=remote,
            declared_value=declared_value,
            insurance_requested=request.insurance_requested,
        )

        return ShipmentPlan(
            initiator=initiator,
            recipient=recipient,
            brand_id=brand_id,
            classification=classification,
            payer=payer,
            payer_account_id=payer_account_id,
            quantities=quantities,
            boxes=boxes,
            total_weight=total_weight,
            total_value=total_value,
            declared_value=declared_value,
            remote=remote,
            cost=cost,
        )

    async def estimate(self, db: AsyncSession, request: ShipmentCreate, actor: Actor) -> Tuple[ShipmentPlan, Decimal]:
        """Price a request with no side effects. Returns the plan and the payer's balance."""
        plan = await self.plan(db, request, actor)
        balance = await WalletLedger.get_balance(db, plan.payer_account_id)
        return plan, balance

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _record_event(
        db: AsyncSession,
        shipment: Shipment,
        from_status: Optional[ShipmentStatus],
        to_status: ShipmentStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ):
        db.add(ShipmentStatusEvent(
            shipment_id=shipment.id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            **actor.audit_fields(),
        ))

    def _transition(
        self,
        db: AsyncSession,
        shipment: Shipment,
        target: ShipmentStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> ShipmentStatusChanged:
        current = shipment.status
        ensure_transition(shipment.id, current, target)
        shipment.status = target
        self._record_event(db, shipment, current, target, actor, reason)
        return ShipmentStatusChanged(
            shipment_id=shipment.id,
            recipients=tuple(sorted({shipment.initiator_id, shipment.recipient_id, shipment.payer_account_id})),
            from_status=current.value,
            to_status=target.value,
            reason=reason,
            tracking_id=shipment.tracking_id,
        )

    async def _persist_shipment(
        self,
        db: AsyncSession,
        plan: ShipmentPlan,
        request: ShipmentCreate,
        idempotency_key: str,
        actor: Actor,
        wallet_reference: Optional[str],
        bulk_reference: Optional[str] = None,
    ) -> Shipment:
        """
        Write the shipment graph and reserve stock. Runs inside the caller's
        transaction; the wallet debit for wallet_reference must already exist
        or be written by the caller in the same transaction.
        """
        cost = plan.cost
        if cost.insurance_applied:
            insurance = CarrierRisk(declared_value=plan.declared_value, cost=cost.insurance_cost)
        else:
            insurance = NoInsurance()

        shipment = Shipment(
            brand_id=plan.brand_id,
            initiator_id=plan.initiator.id,
            initiator_role=plan.initiator.role,
            recipient_id=plan.recipient.id,
            recipient_role=plan.recipient.role,
            shipment_type=plan.classification.shipment_type,
            direction=plan.classification.direction,
            return_reason=plan.classification.return_reason,
            courier_payer=plan.payer.payer,
            payer_account_id=plan.payer_account_id,
            priority=request.priority,
            status=ShipmentStatus.INITIATED,
            total_weight=plan.total_weight,
            total_value=plan.total_value,
            declared_value=plan.declared_value,
            is_remote_area=plan.remote,
            insurance=insurance,
            base_cost=cost.base_cost,
            weight_charge=cost.weight_charge,
            express_charge=cost.express_charge,
            remote_surcharge=cost.remote_surcharge,
            markup=cost.markup,
            insurance_premium=cost.insurance_premium,
            insurance_gst=cost.insurance_gst,
            estimated_cost=cost.total,
            charged_amount=cost.total,
            rate_card_id=cost.rate_card_id,
            pricing_source=cost.pricing_source,
            wallet_debit_reference=wallet_reference,
            courier_attempts=0,
            idempotency_key=idempotency_key,
            bulk_reference=bulk_reference,
            notes=request.notes,
            boxes=[
                Box(
                    sequence=b.sequence,
                    weight_kg=b.weight,
                    value=b.value,
                    length_cm=b.length_cm,
                    width_cm=b.width_cm,
                    height_cm=b.height_cm,
                    status=BoxStatus.PENDING,
                    parts=[BoxPart(part_id=pid, quantity=q) for pid, q in b.parts],
                )
                for b in plan.boxes
            ],
        )
        db.add(shipment)
        await db.flush()

        shipment.courier_reference = courier_reference(shipment.id)
        self._record_event(db, shipment, None, ShipmentStatus.INITIATED, actor)
        self._transition(db, shipment, ShipmentStatus.PRICED, actor, f"Priced at {cost.total} ({cost.pricing_source})")

        if plan.reserves_stock:
            for part_id, qty in sorted(plan.quantities.items()):
                await InventoryLedger.reserve(
                    db,
                    brand_id=plan.brand_id,
                    part_id=part_id,
                    quantity=qty,
                    reference=reservation_reference(shipment.id, part_id),
                    actor=actor,
                    shipment_id=shipment.id,
                )

        self._transition(db, shipment, ShipmentStatus.PERSISTED, actor)
        await db.flush()
        return shipment

    async def _find_by_key(self, db: AsyncSession, initiator_id: int, idempotency_key: str) -> Optional[Shipment]:
        """Keys are scoped to the initiating party."""
        result = await db.execute(
            select(Shipment).where(
                Shipment.initiator_id == initiator_id,
                Shipment.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Courier booking
    # ------------------------------------------------------------------

    async def _consignment_request(self, db: AsyncSession, shipment: Shipment) -> ConsignmentRequest:
        sender = await db.get(User, shipment.initiator_id)
        recipient = await db.get(User, shipment.recipient_id)
        return self._build_consignment(shipment, sender, recipient)

    @staticmethod
    def _build_consignment(shipment: Shipment, sender: User, recipient: User) -> ConsignmentRequest:
        first = shipment.boxes[0] if shipment.boxes else None
        return ConsignmentRequest(
            reference=shipment.courier_reference or courier_reference(shipment.id),
            shipment_type=shipment.shipment_type,
            sender=_address(sender),
            recipient=_address(recipient),
            return_address=_warehouse_address(),
            weight_kg=Decimal(str(shipment.total_weight)),
            declared_value=Decimal(str(shipment.declared_value)),
            num_pieces=max(len(shipment.boxes), 1),
            length_cm=first.length_cm if first else None,
            width_cm=first.width_cm if first else None,
            height_cm=first.height_cm if first else None,
        )

    async def _call_gateway(self, request: ConsignmentRequest) -> Tuple[Optional[ConsignmentResult], Optional[str]]:
        """Book with the courier, converting every tolerated failure into an error string."""
        try:
            result = await asyncio.wait_for(
                self.gateway.book_consignment(request), timeout=settings.courier_timeout_seconds
            )
        except asyncio.TimeoutError:
            error = f"Courier timed out after {settings.courier_timeout_seconds}s"
        except AppException as e:
            error = e.message
        except Exception as e:
            # Stock and money are already committed; the shipment must still reach AWB_PENDING
            logger.exception("Unexpected courier error for %s", request.reference)
            return None, f"Unexpected courier error: {type(e).__name__}: {e}"
        else:
            if result.success and result.tracking_id:
                return result, None
            error = result.error or "Courier reported success without a tracking id"
        logger.warning("Courier booking failed for %s: %s", request.reference, error)
        return None, error

    async def _tracking_id_taken(self, db: AsyncSession, tracking_id: str, shipment_id: int) -> bool:
        result = await db.execute(
            select(Shipment.id).where(Shipment.tracking_id == tracking_id, Shipment.id != shipment_id)
        )
        return result.first() is not None

    async def _apply_booking(
        self,
        db: AsyncSession,
        shipment: Shipment,
        result: Optional[ConsignmentResult],
        error: Optional[str],
        actor: Actor,
        claimed: Optional[set] = None,
    ) -> Tuple[BookingSummary, List[Effect]]:
        """Move the shipment to BOOKED or AWB_PENDING. Caller commits."""
        effects: List[Effect] = []
        shipment.courier_attempts = (shipment.courier_attempts or 0) + 1

        if result is not None:
            tracking_id = result.tracking_id
            duplicate = (claimed is not None and tracking_id in claimed) or await self._tracking_id_taken(
                db, tracking_id, shipment.id
            )
            if duplicate:
                error = InconsistentCourierResponseError(
                    f"Courier returned tracking id {tracking_id} already used by another shipment",
                    details={"tracking_id": tracking_id},
                ).message
                logger.error("Duplicate tracking id %s for shipment %s", tracking_id, shipment.id)
                result = None
            elif claimed is not None:
                claimed.add(tracking_id)

        if result is None:
            shipment.last_courier_error = error
            if shipment.status != ShipmentStatus.AWB_PENDING:
                effects.append(self._transition(db, shipment, ShipmentStatus.AWB_PENDING, actor, error))
            await db.flush()
            return BookingSummary(success=False, error=error), effects

        shipment.tracking_id = result.tracking_id
        shipment.tracking_url = result.tracking_url
        shipment.last_courier_error = None
        if result.cost_estimate is not None:
            shipment.actual_courier_cost = to_money(result.cost_estimate)
        for box in shipment.boxes:
            box.tracking_id = result.tracking_id
            box.status = BoxStatus.BOOKED
        effects.append(self._transition(db, shipment, ShipmentStatus.BOOKED, actor, f"AWB {result.tracking_id}"))
        effects.append(RecordMargin(
            shipment_id=shipment.id,
            customer_price=to_money(shipment.charged_amount),
            courier_cost=shipment.actual_courier_cost,
            tracking_id=result.tracking_id,
        ))
        await db.flush()
        logger.info("Shipment %s booked with AWB %s", shipment.id, result.tracking_id)
        return BookingSummary(success=True, tracking_id=result.tracking_id, tracking_url=result.tracking_url), effects

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_shipment(
        self,
        db: AsyncSession,
        request: ShipmentCreate,
        actor: Actor,
        idempotency_key: Optional[str] = None,
    ) -> ShipmentOutcome:
        """
        Create a single shipment.

        Raises:
            ShipmentValidationError, ClassificationError, PricingConfigurationError,
            InsufficientBalanceError, InsufficientStockError: nothing is persisted.
        """
        key = idempotency_key or request.idempotency_key
        if not key:
            raise ShipmentValidationError("An idempotency key is required to create a shipment")

        existing = await self._find_by_key(db, actor.id, key)
        if existing is not None:
            logger.info("Shipment create replayed for key %s -> %s", key, existing.id)
            return ShipmentOutcome(shipment=existing, replayed=True)

        plan = await self.plan(db, request, actor)
        wallet_ref = debit_reference(actor.id, key)

        try:
            # Money first, then stock, both before the courier call
            debit = await WalletLedger.check_and_deduct(
                db,
                owner_id=plan.payer_account_id,
                amount=plan.cost.total,
                reference=wallet_ref,
                actor=actor,
                description=f"Courier charges ({key})",
            )
            shipment = await self._persist_shipment(db, plan, request, key, actor, wallet_ref)
            debit.transaction.shipment_id = shipment.id
            consignment = self._build_consignment(shipment, plan.initiator, plan.recipient)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await self._find_by_key(db, actor.id, key)
            if existing is None:
                raise
            return ShipmentOutcome(shipment=existing, replayed=True)
        except Exception:
            await db.rollback()
            raise

        effects: List[Effect] = [
            WalletDebited(
                owner_id=plan.payer_account_id,
                amount=plan.cost.total,
                balance_after=debit.balance_after,
                reference=wallet_ref,
                shipment_id=shipment.id,
            ),
        ]

        result, error = await self._call_gateway(consignment)
        booking, booking_effects = await self._apply_booking(db, shipment, result, error, actor)
        await db.commit()

        effects.insert(0, ShipmentCreated(
            shipment_id=shipment.id,
            initiator_id=shipment.initiator_id,
            recipient_id=shipment.recipient_id,
            status=shipment.status.value,
            tracking_id=shipment.tracking_id,
        ))
        effects.extend(booking_effects)
        return ShipmentOutcome(
            shipment=shipment, booking=booking, effects=effects, wallet_balance=debit.balance_after,
        )

    async def create_bulk(
        self,
        db: AsyncSession,
        requests: List[ShipmentCreate],
        batch_key: str,
        actor: Actor,
    ) -> BulkOutcome:
        """
        Create many shipments with a single wallet deduction per payer.

        Items that fail validation or pricing are reported individually. If a
        payer's aggregate deduction fails the whole batch is rejected with
        InsufficientBalanceError before any shipment row is written.
        """
        if not batch_key:
            raise ShipmentValidationError("A batch key is required for bulk shipment creation")
        if len(requests) > settings.bulk_max_items:
            raise ShipmentValidationError(
                f"At most {settings.bulk_max_items} shipments per batch",
                details={"requested": len(requests)},
            )

        existing = await db.execute(
            select(Shipment)
            .where(Shipment.initiator_id == actor.id, Shipment.bulk_reference == batch_key)
            .order_by(Shipment.id)
        )
        existing_rows = list(existing.scalars().all())
        if existing_rows:
            logger.info("Bulk batch %s replayed (%d shipments)", batch_key, len(existing_rows))
            return BulkOutcome(
                batch_key=batch_key,
                items=[
                    BulkItemOutcome(index=i, shipment=s, booking=BookingSummary(
                        success=s.tracking_id is not None, tracking_id=s.tracking_id,
                        tracking_url=s.tracking_url, error=s.last_courier_error,
                    ))
                    for i, s in enumerate(existing_rows)
                ],
                replayed=True,
            )

        # Phase 1: plan every item, with a running stock pre-check
        items = [BulkItemOutcome(index=i) for i in range(len(requests))]
        planned: List[Tuple[int, ShipmentPlan]] = []
        pending_stock: Dict[Tuple[int, int], int] = defaultdict(int)
        keys_seen = set()
        for i, request in enumerate(requests):
            try:
                key = request.idempotency_key or f"{batch_key}:{i}"
                if key in keys_seen or await self._find_by_key(db, actor.id, key) is not None:
                    raise IdempotencyConflictError(key, "Idempotency key already used by another shipment")
                keys_seen.add(key)
                plan = await self.plan(db, request, actor)
                if plan.reserves_stock:
                    for part_id, qty in plan.quantities.items():
                        balance = await InventoryLedger.get_balance(db, plan.brand_id, part_id)
                        already = pending_stock[(plan.brand_id, part_id)]
                        if already + qty > balance.available:
                            raise InsufficientStockError(
                                brand_id=plan.brand_id, part_id=part_id,
                                available=max(balance.available - already, 0), requested=qty,
                            )
                    for part_id, qty in plan.quantities.items():
                        pending_stock[(plan.brand_id, part_id)] += qty
            except AppException as e:
                logger.info("Bulk %s item %d rejected: %s", batch_key, i, e.message)
                items[i].error = e
                continue
            planned.append((i, plan))

        if not planned:
            return BulkOutcome(batch_key=batch_key, items=items)

        totals: Dict[int, Decimal] = defaultdict(lambda: ZERO)
        for _, plan in planned:
            totals[plan.payer_account_id] += plan.cost.total

        # Phase 2: one deduction per payer, then every shipment, one transaction
        effects: List[Effect] = []
        balances: Dict[int, Decimal] = {}
        bookings: List[Tuple[BulkItemOutcome, Shipment, ConsignmentRequest]] = []
        try:
            for payer_id, total in sorted(totals.items()):
                ref = bulk_debit_reference(actor.id, batch_key, payer_id)
                debit = await WalletLedger.check_and_deduct(
                    db,
                    owner_id=payer_id,
                    amount=total,
                    reference=ref,
                    actor=actor,
                    description=f"Bulk courier charges ({batch_key})",
                )
                balances[payer_id] = debit.balance_after
                effects.append(WalletDebited(
                    owner_id=payer_id, amount=to_money(total), balance_after=debit.balance_after, reference=ref,
                ))

            for i, plan in planned:
                request = requests[i]
                key = request.idempotency_key or f"{batch_key}:{i}"
                shipment = await self._persist_shipment(
                    db, plan, request, key, actor,
                    wallet_reference=bulk_debit_reference(actor.id, batch_key, plan.payer_account_id),
                    bulk_reference=batch_key,
                )
                items[i].shipment = shipment
                bookings.append((items[i], shipment, self._build_consignment(shipment, plan.initiator, plan.recipient)))
            await db.commit()
        except InsufficientBalanceError:
            await db.rollback()
            logger.warning("Bulk %s rejected: insufficient balance for aggregate %s", batch_key, dict(totals))
            raise
        except Exception:
            await db.rollback()
            raise

        # Phase 3: courier calls in bounded batches, no DB access
        results: List[Tuple[Optional[ConsignmentResult], Optional[str]]] = []
        size = max(settings.bulk_batch_size, 1)
        for start in range(0, len(bookings), size):
            if start:
                await asyncio.sleep(settings.bulk_batch_delay_seconds)
            chunk = bookings[start:start + size]
            results.extend(await asyncio.gather(*(self._call_gateway(req) for _, _, req in chunk)))

        # Phase 4: apply results in one short transaction
        claimed: set = set()
        for (item, shipment, _), (result, error) in zip(bookings, results):
            item.booking, booking_effects = await self._apply_booking(
                db, shipment, result, error, actor, claimed=claimed,
            )
            effects.append(ShipmentCreated(
                shipment_id=shipment.id,
                initiator_id=shipment.initiator_id,
                recipient_id=shipment.recipient_id,
                status=shipment.status.value,
                tracking_id=shipment.tracking_id,
            ))
            effects.extend(booking_effects)
        await db.commit()

        return BulkOutcome(batch_key=batch_key, items=items, effects=effects, wallet_balances=balances)

    async def get_shipment(self, db: AsyncSession, shipment_id: int, actor: Actor) -> Shipment:
        shipment = await db.get(Shipment, shipment_id)
        if shipment is None:
            raise ResourceNotFoundError("Shipment", shipment_id)
        self._ensure_can_view(shipment, actor)
        return shipment

    @staticmethod
    def _ensure_can_view(shipment: Shipment, actor: Actor):
        if actor.is_admin:
            return
        parties = {shipment.initiator_id, shipment.recipient_id, shipment.payer_account_id, shipment.brand_id}
        if actor.id not in parties:
            raise InsufficientPermissionsError("You do not have access to this shipment")

    @staticmethod
    def _ensure_can_manage(shipment: Shipment, actor: Actor):
        if actor.is_admin or actor.kind == ActorKind.SYSTEM:
            return
        if actor.id not in (shipment.initiator_id, shipment.payer_account_id):
            raise InsufficientPermissionsError("Only the initiator or payer can manage this shipment")

    async def status_history(self, db: AsyncSession, shipment_id: int) -> List[ShipmentStatusEvent]:
        result = await db.execute(
            select(ShipmentStatusEvent)
            .where(ShipmentStatusEvent.shipment_id == shipment_id)
            .order_by(ShipmentStatusEvent.id)
        )
        return list(result.scalars().all())

    async def list_shipments(
        self,
        db: AsyncSession,
        actor: Actor,
        status: Optional[ShipmentStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Shipment], int]:
        """Shipments the actor takes part in, newest first. Admins see everything."""
        query = select(Shipment)
        if not actor.is_admin:
            query = query.where(or_(
                Shipment.initiator_id == actor.id,
                Shipment.recipient_id == actor.id,
                Shipment.payer_account_id == actor.id,
                Shipment.brand_id == actor.id,
            ))
        if status is not None:
            query = query.where(Shipment.status == status)

        total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
        result = await db.execute(
            query.order_by(Shipment.created_at.desc(), Shipment.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def retry_booking(self, db: AsyncSession, shipment_id: int, actor: Actor) -> ShipmentOutcome:
        """Re-run only the courier step for an AWB_PENDING shipment. Never re-prices or re-debits."""
        shipment = await db.get(Shipment, shipment_id)
        if shipment is None:
            raise ResourceNotFoundError("Shipment", shipment_id)
        self._ensure_can_manage(shipment, actor)

        if shipment.status == ShipmentStatus.BOOKED:
            return ShipmentOutcome(
                shipment=shipment,
                booking=BookingSummary(success=True, tracking_id=shipment.tracking_id, tracking_url=shipment.tracking_url),
                replayed=True,
            )
        if shipment.status != ShipmentStatus.AWB_PENDING:
            raise InvalidStatusTransitionError(shipment.id, shipment.status.value, ShipmentStatus.BOOKED.value)

        consignment = await self._consignment_request(db, shipment)
        await db.commit()  # end the read transaction before the courier call

        result, error = await self._call_gateway(consignment)
        booking, effects = await self._apply_booking(db, shipment, result, error, actor)
        await db.commit()
        return ShipmentOutcome(shipment=shipment, booking=booking, effects=effects)

    async def cancel(
        self, db: AsyncSession, shipment_id: int, actor: Actor, reason: Optional[str] = None
    ) -> ShipmentOutcome:
        """
        Cancel before dispatch: release stock, refund the charged amount and
        void the courier booking (best effort). Cancelling twice is a no-op.
        """
        shipment = await db.get(Shipment, shipment_id, with_for_update=True)
        if shipment is None:
            raise ResourceNotFoundError("Shipment", shipment_id)
        self._ensure_can_manage(shipment, actor)

        if shipment.status == ShipmentStatus.CANCELLED:
            return ShipmentOutcome(shipment=shipment, replayed=True)
        if shipment.status not in CANCELLABLE_STATUSES:
            raise InvalidStatusTransitionError(shipment.id, shipment.status.value, ShipmentStatus.CANCELLED.value)

        effects: List[Effect] = []
        balance = None
        try:
            for reservation in await InventoryLedger.reservations_for_shipment(db, shipment.id):
                await InventoryLedger.release(db, reservation, actor, reason or "Shipment cancelled")

            amount = to_money(shipment.charged_amount)
            if amount > 0 and shipment.wallet_debit_reference:
                ref = refund_reference(shipment.id)
                refund = await WalletLedger.refund(
                    db,
                    owner_id=shipment.payer_account_id,
                    amount=amount,
                    reference=ref,
                    original_reference=shipment.wallet_debit_reference,
                    actor=actor,
                    shipment_id=shipment.id,
                    description=f"REFUND: shipment #{shipment.id} cancelled",
                )
                balance = refund.balance_after
                if not refund.replayed:
                    effects.append(WalletCredited(
                        owner_id=shipment.payer_account_id,
                        amount=amount,
                        balance_after=refund.balance_after,
                        reference=ref,
                        shipment_id=shipment.id,
                    ))

            for box in shipment.boxes:
                box.status = BoxStatus.CANCELLED
            effects.insert(0, self._transition(db, shipment, ShipmentStatus.CANCELLED, actor, reason))
            tracking_id = shipment.tracking_id
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if tracking_id:
            try:
                voided = await self.gateway.cancel_consignment(tracking_id)
            except AppException as e:
                voided = False
                logger.warning("Courier cancel failed for %s: %s", tracking_id, e.message)
            if not voided:
                logger.warning("Courier did not confirm cancellation of AWB %s", tracking_id)

        logger.info("Shipment %s cancelled by %s", shipment.id, actor.name)
        return ShipmentOutcome(shipment=shipment, effects=effects, wallet_balance=balance)

    async def apply_courier_status(
        self,
        db: AsyncSession,
        shipment_id: int,
        new_status: ShipmentStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> ShipmentOutcome:
        """Apply a courier-reported status. Repeating the current status is a no-op."""
        if new_status not in COURIER_REPORTED_STATUSES:
            raise ShipmentValidationError(
                f"{new_status.value} is not a courier-reported status",
                details={"allowed": sorted(s.value for s in COURIER_REPORTED_STATUSES)},
            )

        shipment = await db.get(Shipment, shipment_id, with_for_update=True)
        if shipment is None:
            raise ResourceNotFoundError("Shipment", shipment_id)
        if shipment.status == new_status:
            return ShipmentOutcome(shipment=shipment, replayed=True)

        try:
            effect = self._transition(db, shipment, new_status, actor, reason)
            await self._apply_status_side_effects(db, shipment, new_status, actor)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Shipment %s moved to %s", shipment.id, new_status.value)
        return ShipmentOutcome(shipment=shipment, effects=[effect])

    async def _apply_status_side_effects(
        self, db: AsyncSession, shipment: Shipment, status: ShipmentStatus, actor: Actor
    ):
        if status == ShipmentStatus.DISPATCHED:
            consumed = shipment.recipient_role == UserRole.CUSTOMER
            for reservation in await InventoryLedger.reservations_for_shipment(db, shipment.id):
                await InventoryLedger.commit(
                    db, reservation, actor, destination_id=shipment.recipient_id, consumed=consumed,
                )
            for box in shipment.boxes:
                box.status = BoxStatus.DISPATCHED

        elif status == ShipmentStatus.DELIVERED:
            for box in shipment.boxes:
                box.status = BoxStatus.DELIVERED
            if (
                shipment.shipment_type == ShipmentType.REVERSE
                and shipment.recipient_role == UserRole.BRAND
                and shipment.return_reason in RESTOCKABLE_RETURNS
            ):
                for box in shipment.boxes:
                    for line in box.parts:
                        await InventoryLedger.receive(
                            db,
                            brand_id=shipment.brand_id,
                            part_id=line.part_id,
                            quantity=line.quantity,
                            actor=actor,
                            source_id=shipment.initiator_id,
                            shipment_id=shipment.id,
                            note=f"{shipment.return_reason.value} return",
                        )

        elif status == ShipmentStatus.RTO:
            for reservation in await InventoryLedger.reservations_for_shipment(db, shipment.id):
                await InventoryLedger.release(db, reservation, actor, "Returned to origin")
            for box in shipment.boxes:
                box.status = BoxStatus.RETURNED
