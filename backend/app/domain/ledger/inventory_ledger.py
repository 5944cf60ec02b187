"""
Inventory Ledger (Domain Logic).

Append-only stock movements per (brand, part) with the balance projection
updated in the same transaction. Callers own the transaction: every method
flushes, none commits.

Balance effects per action:
    ADD, TRANSFER_IN       on_hand += q
    RESERVE                reserved += q
    RELEASE                reserved -= q
    TRANSFER_OUT, CONSUMED on_hand -= q, reserved -= q   (commit of a reservation)
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from backend.app.core.exceptions import (
    InsufficientStockError, IdempotencyConflictError, LedgerIntegrityError,
)
from backend.app.domain.actor import Actor
from backend.app.models.inventory import InventoryBalance, InventoryLedgerEntry, InventoryReservation
from backend.app.models.ledger_enums import InventoryAction, ReservationStatus

logger = logging.getLogger(__name__)

# (on_hand delta sign, reserved delta sign)
ACTION_EFFECTS = {
    InventoryAction.ADD: (1, 0),
    InventoryAction.TRANSFER_IN: (1, 0),
    InventoryAction.RESERVE: (0, 1),
    InventoryAction.RELEASE: (0, -1),
    InventoryAction.TRANSFER_OUT: (-1, -1),
    InventoryAction.CONSUMED: (-1, -1),
}


class InventoryLedger:

    @staticmethod
    async def _lock_balance(db: AsyncSession, brand_id: int, part_id: int) -> InventoryBalance:
        """Fetch the balance row under a row lock, creating an empty one if needed."""
        result = await db.execute(
            select(InventoryBalance)
            .where(InventoryBalance.brand_id == brand_id, InventoryBalance.part_id == part_id)
            .with_for_update()
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            balance = InventoryBalance(brand_id=brand_id, part_id=part_id, on_hand=0, reserved=0)
            db.add(balance)
            await db.flush()
        return balance

    @staticmethod
    async def _append(
        db: AsyncSession,
        balance: InventoryBalance,
        action: InventoryAction,
        quantity: int,
        actor: Actor,
        source_id: Optional[int] = None,
        destination_id: Optional[int] = None,
        shipment_id: Optional[int] = None,
        reservation_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> InventoryLedgerEntry:
        on_hand_sign, reserved_sign = ACTION_EFFECTS[action]
        balance.on_hand += on_hand_sign * quantity
        balance.reserved += reserved_sign * quantity

        entry = InventoryLedgerEntry(
            brand_id=balance.brand_id,
            part_id=balance.part_id,
            action=action,
            quantity=quantity,
            source_id=source_id,
            destination_id=destination_id,
            on_hand_after=balance.on_hand,
            reserved_after=balance.reserved,
            shipment_id=shipment_id,
            reservation_id=reservation_id,
            note=note,
            **actor.audit_fields(),
        )
        db.add(entry)
        await db.flush()
        return entry

    @staticmethod
    def _require_positive(quantity: int):
        if quantity is None or quantity <= 0:
            raise LedgerIntegrityError("Quantity must be positive", details={"quantity": quantity})

    @staticmethod
    async def add_stock(
        db: AsyncSession,
        brand_id: int,
        part_id: int,
        quantity: int,
        actor: Actor,
        source_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> InventoryLedgerEntry:
        InventoryLedger._require_positive(quantity)
        balance = await InventoryLedger._lock_balance(db, brand_id, part_id)
        entry = await InventoryLedger._append(
            db, balance, InventoryAction.ADD, quantity, actor,
            source_id=source_id, destination_id=brand_id, note=note,
        )
        logger.info("Stock added: brand=%s part=%s qty=%s on_hand=%s", brand_id, part_id, quantity, balance.on_hand)
        return entry

    @staticmethod
    async def reserve(
        db: AsyncSession,
        brand_id: int,
        part_id: int,
        quantity: int,
        reference: str,
        actor: Actor,
        shipment_id: Optional[int] = None,
    ) -> InventoryReservation:
        """
        Earmark stock for a shipment.

        Raises:
            InsufficientStockError: quantity exceeds available stock.
            IdempotencyConflictError: reference reused for a different reservation.
        """
        InventoryLedger._require_positive(quantity)

        existing = await db.execute(
            select(InventoryReservation).where(InventoryReservation.reference == reference)
        )
        reservation = existing.scalar_one_or_none()
        if reservation is not None:
            if (reservation.brand_id, reservation.part_id, reservation.quantity) != (brand_id, part_id, quantity):
                raise IdempotencyConflictError(reference)
            return reservation

        balance = await InventoryLedger._lock_balance(db, brand_id, part_id)
        if quantity > balance.available:
            raise InsufficientStockError(
                brand_id=brand_id, part_id=part_id, available=balance.available, requested=quantity,
            )

        reservation = InventoryReservation(
            reference=reference,
            brand_id=brand_id,
            part_id=part_id,
            shipment_id=shipment_id,
            quantity=quantity,
            status=ReservationStatus.RESERVED,
        )
        db.add(reservation)
        await db.flush()

        await InventoryLedger._append(
            db, balance, InventoryAction.RESERVE, quantity, actor,
            source_id=brand_id, shipment_id=shipment_id, reservation_id=reservation.id,
        )
        return reservation

    @staticmethod
    async def commit(
        db: AsyncSession,
        reservation: InventoryReservation,
        actor: Actor,
        destination_id: Optional[int] = None,
        consumed: bool = False,
    ) -> Optional[InventoryLedgerEntry]:
        """
        Turn a reservation into an outbound movement.

        TRANSFER_OUT when the destination holds stock, CONSUMED when it is an
        end customer. on_hand and reserved drop together so available stays put.
        """
        if reservation.status == ReservationStatus.COMMITTED:
            return None
        if reservation.status == ReservationStatus.RELEASED:
            raise LedgerIntegrityError(
                "Cannot commit a released reservation",
                details={"reference": reservation.reference},
            )

        balance = await InventoryLedger._lock_balance(db, reservation.brand_id, reservation.part_id)
        action = InventoryAction.CONSUMED if consumed else InventoryAction.TRANSFER_OUT
        entry = await InventoryLedger._append(
            db, balance, action, reservation.quantity, actor,
            source_id=reservation.brand_id, destination_id=destination_id,
            shipment_id=reservation.shipment_id, reservation_id=reservation.id,
        )
        reservation.status = ReservationStatus.COMMITTED
        await db.flush()
        return entry

    @staticmethod
    async def release(
        db: AsyncSession,
        reservation: InventoryReservation,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Optional[InventoryLedgerEntry]:
        """
        Undo a reservation. Idempotent.

        A committed reservation is returned to stock with a TRANSFER_IN.
        """
        if reservation.status == ReservationStatus.RELEASED:
            return None

        balance = await InventoryLedger._lock_balance(db, reservation.brand_id, reservation.part_id)
        action = (
            InventoryAction.TRANSFER_IN
            if reservation.status == ReservationStatus.COMMITTED
            else InventoryAction.RELEASE
        )
        entry = await InventoryLedger._append(
            db, balance, action, reservation.quantity, actor,
            destination_id=reservation.brand_id,
            shipment_id=reservation.shipment_id, reservation_id=reservation.id,
            note=reason,
        )
        reservation.status = ReservationStatus.RELEASED
        await db.flush()
        return entry

    @staticmethod
    async def receive(
        db: AsyncSession,
        brand_id: int,
        part_id: int,
        quantity: int,
        actor: Actor,
        source_id: Optional[int] = None,
        shipment_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> InventoryLedgerEntry:
        """Stock coming back into the brand's holding (reverse delivery)."""
        InventoryLedger._require_positive(quantity)
        balance = await InventoryLedger._lock_balance(db, brand_id, part_id)
        return await InventoryLedger._append(
            db, balance, InventoryAction.TRANSFER_IN, quantity, actor,
            source_id=source_id, destination_id=brand_id, shipment_id=shipment_id, note=note,
        )

    @staticmethod
    async def reservations_for_shipment(db: AsyncSession, shipment_id: int) -> List[InventoryReservation]:
        result = await db.execute(
            select(InventoryReservation)
            .where(InventoryReservation.shipment_id == shipment_id)
            .order_by(InventoryReservation.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_balance(db: AsyncSession, brand_id: int, part_id: int) -> InventoryBalance:
        result = await db.execute(
            select(InventoryBalance).where(
                InventoryBalance.brand_id == brand_id, InventoryBalance.part_id == part_id
            )
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            return InventoryBalance(brand_id=brand_id, part_id=part_id, on_hand=0, reserved=0)
        return balance

    @staticmethod
    async def list_entries(
        db: AsyncSession, brand_id: int, part_id: int, limit: int = 100
    ) -> List[InventoryLedgerEntry]:
        result = await db.execute(
            select(InventoryLedgerEntry)
            .where(InventoryLedgerEntry.brand_id == brand_id, InventoryLedgerEntry.part_id == part_id)
            .order_by(InventoryLedgerEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def replay_balance(db: AsyncSession, brand_id: int, part_id: int) -> Tuple[int, int]:
        """Fold the movement log into (on_hand, reserved)."""
        result = await db.execute(
            select(InventoryLedgerEntry.action, InventoryLedgerEntry.quantity)
            .where(InventoryLedgerEntry.brand_id == brand_id, InventoryLedgerEntry.part_id == part_id)
            .order_by(InventoryLedgerEntry.id)
        )
        on_hand = reserved = 0
        for action, quantity in result.all():
            on_hand_sign, reserved_sign = ACTION_EFFECTS[action]
            on_hand += on_hand_sign * quantity
            reserved += reserved_sign * quantity
        return on_hand, reserved
