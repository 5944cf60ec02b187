"""
Pending side effects produced by the orchestrator.

They describe what should happen after the core transaction commits
(notifications, margin bookkeeping). The EffectDispatcher sends them; a
failure there never reaches the caller of the orchestrator.
"""

from dataclasses import dataclass, asdict, fields
from decimal import Decimal
from typing import Optional, Tuple


@dataclass(frozen=True)
class Effect:
    kind = "Effect"

    def payload(self) -> dict:
        data = asdict(self)
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in data.items()}


@dataclass(frozen=True)
class ShipmentCreated(Effect):
    kind = "ShipmentCreated"
    shipment_id: int
    initiator_id: int
    recipient_id: int
    status: str
    tracking_id: Optional[str] = None


@dataclass(frozen=True)
class ShipmentStatusChanged(Effect):
    kind = "ShipmentStatusChanged"
    shipment_id: int
    recipients: Tuple[int, ...]
    from_status: Optional[str]
    to_status: str
    reason: Optional[str] = None
    tracking_id: Optional[str] = None


@dataclass(frozen=True)
class WalletDebited(Effect):
    kind = "WalletDebited"
    owner_id: int
    amount: Decimal
    balance_after: Decimal
    reference: str
    shipment_id: Optional[int] = None


@dataclass(frozen=True)
class WalletCredited(Effect):
    kind = "WalletCredited"
    owner_id: int
    amount: Decimal
    balance_after: Decimal
    reference: str
    shipment_id: Optional[int] = None


@dataclass(frozen=True)
class RecordMargin(Effect):
    kind = "RecordMargin"
    shipment_id: int
    customer_price: Decimal
    courier_cost: Optional[Decimal]
    tracking_id: Optional[str] = None


NOTIFICATION_EFFECTS = (ShipmentCreated, ShipmentStatusChanged, WalletDebited, WalletCredited)

EFFECT_TYPES = {
    cls.kind: cls for cls in (ShipmentCreated, ShipmentStatusChanged, WalletDebited, WalletCredited, RecordMargin)
}

_DECIMAL_FIELDS = {"amount", "balance_after", "customer_price", "courier_cost"}


def effect_from_payload(kind: str, payload: dict) -> Effect:
    """Rebuild an effect from its dead-lettered payload."""
    cls = EFFECT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown effect kind: {kind}")
    values = {}
    for f in fields(cls):
        value = payload.get(f.name)
        if value is not None and f.name in _DECIMAL_FIELDS:
            value = Decimal(value)
        elif value is not None and f.name == "recipients":
            value = tuple(value)
        values[f.name] = value
    return cls(**values)
