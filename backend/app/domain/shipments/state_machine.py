"""
Shipment status transition table.
"""

from typing import Dict, FrozenSet

from backend.app.core.exceptions import InvalidStatusTransitionError
from backend.app.models.shipment_enums import ShipmentStatus as S

TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.INITIATED: frozenset({S.PRICED, S.CANCELLED}),
    S.PRICED: frozenset({S.PERSISTED, S.CANCELLED}),
    S.PERSISTED: frozenset({S.BOOKED, S.AWB_PENDING, S.CANCELLED}),
    S.AWB_PENDING: frozenset({S.BOOKED, S.CANCELLED}),
    S.BOOKED: frozenset({S.DISPATCHED, S.CANCELLED}),
    S.DISPATCHED: frozenset({S.IN_TRANSIT}),
    S.IN_TRANSIT: frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED, S.RTO, S.FAILED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED, S.RTO, S.FAILED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
    S.RTO: frozenset(),
    S.FAILED: frozenset(),
}

# Reported by the courier (tracking webhook or operator) rather than driven internally
COURIER_REPORTED_STATUSES = frozenset({
    S.DISPATCHED, S.IN_TRANSIT, S.OUT_FOR_DELIVERY, S.DELIVERED, S.RTO, S.FAILED,
})

CANCELLABLE_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if S.CANCELLED in targets)


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(shipment_id: int, current: S, target: S):
    if not can_transition(current, target):
        raise InvalidStatusTransitionError(shipment_id, current.value, target.value)
