"""
Shipment Classifier.

Pure mapping from (initiator role, recipient role, return reason) to the
shipment type, direction and the party responsible for the courier fee.
Role pairs outside the table are a configuration error, never a guess.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from backend.app.core.exceptions import ClassificationError
from backend.app.models.enums import UserRole
from backend.app.models.shipment_enums import ShipmentType, ShipmentDirection, ReturnReason


@dataclass(frozen=True)
class ShipmentClassification:
    shipment_type: ShipmentType
    direction: ShipmentDirection
    return_reason: Optional[ReturnReason] = None


@dataclass(frozen=True)
class PayerAssignment:
    payer: UserRole
    justification: str


@dataclass(frozen=True)
class _Route:
    shipment_type: ShipmentType
    direction: ShipmentDirection
    # Reasons the initiator may pick; the first is the default.
    allowed_reasons: Tuple[ReturnReason, ...] = ()


CLASSIFICATION_TABLE: Dict[Tuple[UserRole, UserRole], _Route] = {
    (UserRole.BRAND, UserRole.SERVICE_CENTER): _Route(ShipmentType.FORWARD, ShipmentDirection.BRAND),
    (UserRole.BRAND, UserRole.DISTRIBUTOR): _Route(ShipmentType.FORWARD, ShipmentDirection.BRAND),
    (UserRole.DISTRIBUTOR, UserRole.SERVICE_CENTER): _Route(ShipmentType.FORWARD, ShipmentDirection.DISTRIBUTOR),
    (UserRole.SERVICE_CENTER, UserRole.CUSTOMER): _Route(ShipmentType.FORWARD, ShipmentDirection.SERVICE_CENTER),
    (UserRole.SERVICE_CENTER, UserRole.BRAND): _Route(
        ShipmentType.REVERSE,
        ShipmentDirection.SERVICE_CENTER,
        (ReturnReason.EXCESS, ReturnReason.DEFECTIVE, ReturnReason.WRONG_PART),
    ),
    (UserRole.CUSTOMER, UserRole.SERVICE_CENTER): _Route(
        ShipmentType.REVERSE,
        ShipmentDirection.SERVICE_CENTER,
        (ReturnReason.WARRANTY_RETURN,),
    ),
}

FORWARD_PAYERS: Dict[ShipmentDirection, PayerAssignment] = {
    ShipmentDirection.BRAND: PayerAssignment(UserRole.BRAND, "Brand pays for outbound shipments to its network"),
    ShipmentDirection.SERVICE_CENTER: PayerAssignment(
        UserRole.SERVICE_CENTER, "Service center pays for deliveries to its customers"
    ),
    ShipmentDirection.DISTRIBUTOR: PayerAssignment(
        UserRole.SERVICE_CENTER, "Service center pays for parts ordered from a distributor"
    ),
}

REVERSE_PAYERS: Dict[ReturnReason, PayerAssignment] = {
    ReturnReason.DEFECTIVE: PayerAssignment(UserRole.BRAND, "Brand pays to recover defective parts"),
    ReturnReason.WRONG_PART: PayerAssignment(UserRole.BRAND, "Brand pays when it shipped the wrong part"),
    ReturnReason.EXCESS: PayerAssignment(UserRole.SERVICE_CENTER, "Service center pays to return excess stock"),
    ReturnReason.WARRANTY_RETURN: PayerAssignment(UserRole.CUSTOMER, "Customer pays for warranty returns"),
}


def classify_shipment(
    initiator_role: UserRole,
    recipient_role: UserRole,
    return_reason: Optional[ReturnReason] = None,
) -> ShipmentClassification:
    """
    Classify a shipment by who sends it to whom.

    Raises:
        ClassificationError: unmapped role pair, or a return reason that the
            route does not accept.
    """
    route = CLASSIFICATION_TABLE.get((initiator_role, recipient_role))
    if route is None:
        raise ClassificationError(
            f"No shipment route configured from {initiator_role.value} to {recipient_role.value}",
            details={"initiator_role": initiator_role.value, "recipient_role": recipient_role.value},
        )

    if route.shipment_type == ShipmentType.FORWARD:
        if return_reason is not None:
            raise ClassificationError(
                "Forward shipments do not carry a return reason",
                details={"return_reason": return_reason.value},
            )
        return ShipmentClassification(route.shipment_type, route.direction)

    if len(route.allowed_reasons) == 1:
        # The route fixes the reason (customer warranty returns).
        reason = route.allowed_reasons[0]
    elif return_reason is None:
        reason = route.allowed_reasons[0]
    elif return_reason in route.allowed_reasons:
        reason = return_reason
    else:
        raise ClassificationError(
            f"Return reason {return_reason.value} is not valid for "
            f"{initiator_role.value} to {recipient_role.value}",
            details={
                "return_reason": return_reason.value,
                "allowed": [r.value for r in route.allowed_reasons],
            },
        )

    return ShipmentClassification(route.shipment_type, route.direction, reason)


def assign_courier_payer(classification: ShipmentClassification) -> PayerAssignment:
    """Decide which party's wallet is charged for the courier fee."""
    if classification.shipment_type == ShipmentType.FORWARD:
        return FORWARD_PAYERS[classification.direction]
    return REVERSE_PAYERS[classification.return_reason]
