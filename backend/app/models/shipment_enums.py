"""
Shipment enumerations.
"""

import enum


class ShipmentType(str, enum.Enum):
    FORWARD = "FORWARD"
    REVERSE = "REVERSE"


class ShipmentDirection(str, enum.Enum):
    """Which party's leg of the network the shipment belongs to."""
    BRAND = "BRAND"
    DISTRIBUTOR = "DISTRIBUTOR"
    SERVICE_CENTER = "SERVICE_CENTER"


class ReturnReason(str, enum.Enum):
    DEFECTIVE = "DEFECTIVE"
    EXCESS = "EXCESS"
    WRONG_PART = "WRONG_PART"
    WARRANTY_RETURN = "WARRANTY_RETURN"


class ShipmentPriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle status enumeration."""
    INITIATED = "INITIATED"  # Request accepted, nothing reserved yet
    PRICED = "PRICED"  # Cost breakdown computed
    PERSISTED = "PERSISTED"  # Funds and stock reserved, graph stored
    AWB_PENDING = "AWB_PENDING"  # Courier booking failed, retry required
    BOOKED = "BOOKED"  # Courier accepted, tracking id assigned
    DISPATCHED = "DISPATCHED"  # Picked up by courier
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RTO = "RTO"  # Returned to origin
    FAILED = "FAILED"


class BoxStatus(str, enum.Enum):
    PENDING = "PENDING"
    BOOKED = "BOOKED"
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class ActorKind(str, enum.Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"
