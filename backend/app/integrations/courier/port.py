"""Courier gateway port: abstract interface for courier integrations.

The orchestrator programs against this port; adapters are swapped via the
COURIER_ADAPTER setting.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from backend.app.models.shipment_enums import ShipmentType


class ConsignmentAddress(BaseModel):
    name: str
    phone: str = ""
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    pincode: str


class ConsignmentRequest(BaseModel):
    """Everything the courier needs to accept a booking."""
    reference: str = Field(..., description="Caller-generated reference, stable across retries")
    shipment_type: ShipmentType
    sender: ConsignmentAddress
    recipient: ConsignmentAddress
    return_address: ConsignmentAddress
    weight_kg: Decimal
    declared_value: Decimal
    num_pieces: int = Field(..., ge=1)
    length_cm: Optional[Decimal] = None
    width_cm: Optional[Decimal] = None
    height_cm: Optional[Decimal] = None


class ConsignmentResult(BaseModel):
    success: bool
    tracking_id: Optional[str] = None
    tracking_url: Optional[str] = None
    cost_estimate: Optional[Decimal] = None
    error: Optional[str] = None


class CourierGateway(ABC):
    """Abstract interface for courier adapters."""

    name: str = "courier"

    @abstractmethod
    async def book_consignment(self, request: ConsignmentRequest) -> ConsignmentResult:
        """Book a consignment with the courier.

        Raises:
            CourierUnavailableError: transport failure, timeout, non-2xx reply.
            InconsistentCourierResponseError: success reported without a tracking id.
        """
        ...

    @abstractmethod
    async def cancel_consignment(self, tracking_id: str) -> bool:
        """Ask the courier to void a booked consignment. Returns True if it did."""
        ...

    async def close(self):
        """Release any held connections."""
        return None
