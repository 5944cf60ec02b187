"""
DTDC Courier Adapter.

httpx client for the DTDC customer integration API (softdata booking and
consignment cancel). Every call runs through the courier circuit breaker
with a bounded timeout.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from backend.app.core.config import settings
from backend.app.core.exceptions import CourierUnavailableError, InconsistentCourierResponseError
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError, courier_circuit_breaker
from backend.app.integrations.courier.port import (
    ConsignmentAddress, ConsignmentRequest, ConsignmentResult, CourierGateway,
)
from backend.app.models.shipment_enums import ShipmentType

logger = logging.getLogger(__name__)

MIN_WEIGHT_KG = Decimal("0.1")
MIN_DECLARED_VALUE = Decimal("100")


def _address(address: ConsignmentAddress) -> Dict[str, str]:
    return {
        "name": address.name[:50],
        "phone": address.phone,
        "alternate_phone": "",
        "address_line_1": address.line1[:100],
        "address_line_2": address.line2[:100],
        "pincode": address.pincode,
        "city": address.city,
        "state": address.state,
    }


def _first_consignment(data) -> Optional[Dict[str, Any]]:
    """`data` is a list of consignments; some accounts get a single object back."""
    if isinstance(data, dict):
        return data
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return None


def _charges(value, reference: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        cost = Decimal(str(value))
    except InvalidOperation:
        cost = None
    if cost is None or not cost.is_finite():
        logger.warning("Ignoring unreadable courier charges %r for %s", value, reference)
        return None
    return cost


class DTDCCourierGateway(CourierGateway):
    """DTDC implementation of the courier gateway."""

    name = "dtdc"

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        customer_code: str = None,
        service_type: str = None,
        timeout: float = None,
        circuit_breaker: CircuitBreaker = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.courier_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.courier_api_key
        self.customer_code = customer_code if customer_code is not None else settings.courier_customer_code
        self.service_type = service_type or settings.courier_service_type
        self.timeout = timeout or settings.courier_timeout_seconds
        self.circuit_breaker = circuit_breaker or courier_circuit_breaker
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "api-key": self.api_key,
                "User-Agent": "SpareFlow-Fulfillment/1.0",
            },
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def build_payload(self, request: ConsignmentRequest) -> Dict[str, Any]:
        """Softdata payload for one consignment."""
        weight = max(request.weight_kg, MIN_WEIGHT_KG)
        declared_value = max(request.declared_value, MIN_DECLARED_VALUE)

        # Reverse pickups collect from the sender and return to the recipient
        origin, destination = request.sender, request.recipient
        return_to = request.recipient if request.shipment_type == ShipmentType.REVERSE else request.return_address

        consignment = {
            "customer_code": self.customer_code,
            "service_type_id": self.service_type,
            "load_type": "NON-DOCUMENT",
            "description": "Spare Parts and Electronic Components",
            "dimension_unit": "cm",
            "length": str(request.length_cm or "30.0"),
            "width": str(request.width_cm or "20.0"),
            "height": str(request.height_cm or "15.0"),
            "weight_unit": "kg",
            "weight": str(weight),
            "declared_value": str(declared_value),
            "num_pieces": str(request.num_pieces),
            "origin_details": _address(origin),
            "destination_details": _address(destination),
            "return_details": _address(return_to),
            "customer_reference_number": request.reference,
            "is_risk_surcharge_applicable": "false",
            "reference_number": request.reference,
        }
        if request.shipment_type == ShipmentType.REVERSE:
            consignment["consignment_type"] = "reverse"
        return {"consignments": [consignment]}

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            response = await self.client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise CourierUnavailableError(
                f"Courier timed out after {self.timeout}s", details={"path": path}
            ) from e
        except httpx.HTTPError as e:
            raise CourierUnavailableError(f"Courier transport error: {e}", details={"path": path}) from e

        if response.status_code >= 400:
            raise CourierUnavailableError(
                f"Courier returned HTTP {response.status_code}",
                details={"path": path, "status_code": response.status_code, "body": response.text[:500]},
            )
        return response

    async def book_consignment(self, request: ConsignmentRequest) -> ConsignmentResult:
        payload = self.build_payload(request)
        try:
            response = await self.circuit_breaker.call(self._post, "/consignment/softdata", payload)
        except CircuitOpenError as e:
            raise CourierUnavailableError(str(e), details={"reference": request.reference}) from e

        try:
            body = response.json()
        except ValueError as e:
            raise InconsistentCourierResponseError(
                "Courier returned a non-JSON body", details={"reference": request.reference}
            ) from e

        if not isinstance(body, dict):
            raise InconsistentCourierResponseError(
                "Courier returned an unexpected response body",
                details={"reference": request.reference, "body": str(body)[:500]},
            )

        if not body.get("success"):
            error = body.get("message") or body.get("error") or "Booking rejected by courier"
            logger.warning("Courier rejected booking %s: %s", request.reference, error)
            return ConsignmentResult(success=False, error=str(error))

        first = _first_consignment(body.get("data"))
        if first is None:
            raise InconsistentCourierResponseError(
                "Courier reported success without consignment data",
                details={"reference": request.reference, "data": str(body.get("data"))[:500]},
            )
        tracking_id = first.get("awbNumber") or first.get("awb_number") or first.get("referenceNumber")
        if not tracking_id:
            raise InconsistentCourierResponseError(
                "Courier reported success without a tracking id",
                details={"reference": request.reference},
            )

        cost = _charges(first.get("charges") or first.get("total_charges"), request.reference)
        return ConsignmentResult(
            success=True,
            tracking_id=str(tracking_id),
            tracking_url=f"{settings.courier_tracking_url}{tracking_id}",
            cost_estimate=cost,
        )

    async def cancel_consignment(self, tracking_id: str) -> bool:
        payload = {"AWBNo": [tracking_id], "customerCode": self.customer_code}
        try:
            response = await self.circuit_breaker.call(self._post, "/consignment/cancel", payload)
        except CircuitOpenError as e:
            raise CourierUnavailableError(str(e), details={"tracking_id": tracking_id}) from e

        try:
            body = response.json()
        except ValueError:
            return False
        return isinstance(body, dict) and bool(body.get("success", False))
