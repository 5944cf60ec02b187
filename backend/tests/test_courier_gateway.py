"""
Courier adapters: DTDC wire handling and the fake courier used in tests.
"""

import json
from decimal import Decimal

import httpx
import pytest

from backend.app.core.exceptions import CourierUnavailableError, InconsistentCourierResponseError
from backend.app.core.reliability import CircuitBreaker
from backend.app.integrations.courier.dtdc_adapter import DTDCCourierGateway
from backend.app.integrations.courier.fake_adapter import FakeCourierGateway
from backend.app.integrations.courier.port import ConsignmentAddress, ConsignmentRequest
from backend.app.models.shipment_enums import ShipmentType


def _consignment(reference="SF-1", shipment_type=ShipmentType.FORWARD, **kwargs) -> ConsignmentRequest:
    values = dict(
        reference=reference,
        shipment_type=shipment_type,
        sender=ConsignmentAddress(name="Brand Warehouse", phone="9000000001", line1="1 Industrial Area", pincode="110001"),
        recipient=ConsignmentAddress(name="City Service Center", phone="9000000002", line1="7 MG Road", pincode="560001"),
        return_address=ConsignmentAddress(name="Returns Desk", line1="Plot 12", pincode="122001"),
        weight_kg=Decimal("2.000"),
        declared_value=Decimal("200.00"),
        num_pieces=1,
    )
    values.update(kwargs)
    return ConsignmentRequest(**values)


def _gateway(handler, breaker=None) -> DTDCCourierGateway:
    return DTDCCourierGateway(
        base_url="https://courier.test/api",
        api_key="test-key",
        customer_code="CUST01",
        timeout=1.0,
        circuit_breaker=breaker or CircuitBreaker(failure_threshold=3, reset_timeout=60, name="test"),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_dtdc_successful_booking():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["api_key"] = request.headers["api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "data": [{"awbNumber": "D1234567", "charges": 61.5}]})

    async with _gateway(handler) as gateway:
        result = await gateway.book_consignment(_consignment())

    assert result.success is True
    assert result.tracking_id == "D1234567"
    assert result.tracking_url.endswith("D1234567")
    assert result.cost_estimate == Decimal("61.5")
    assert seen["path"] == "/api/consignment/softdata"
    assert seen["api_key"] == "test-key"
    consignment = seen["body"]["consignments"][0]
    assert consignment["customer_reference_number"] == "SF-1"
    assert consignment["customer_code"] == "CUST01"
    assert consignment["return_details"]["name"] == "Returns Desk"


@pytest.mark.asyncio
async def test_dtdc_reverse_payload_returns_to_recipient():
    gateway = _gateway(lambda request: httpx.Response(200, json={}))
    payload = gateway.build_payload(_consignment(shipment_type=ShipmentType.REVERSE))
    await gateway.close()

    consignment = payload["consignments"][0]
    assert consignment["consignment_type"] == "reverse"
    assert consignment["return_details"]["name"] == "City Service Center"


@pytest.mark.asyncio
async def test_dtdc_payload_applies_minimums():
    gateway = _gateway(lambda request: httpx.Response(200, json={}))
    payload = gateway.build_payload(_consignment(weight_kg=Decimal("0.01"), declared_value=Decimal("5")))
    await gateway.close()

    consignment = payload["consignments"][0]
    assert consignment["weight"] == "0.1"
    assert consignment["declared_value"] == "100"


@pytest.mark.asyncio
async def test_dtdc_rejection_is_reported_not_raised():
    def handler(request):
        return httpx.Response(200, json={"success": False, "message": "Pincode not serviceable"})

    async with _gateway(handler) as gateway:
        result = await gateway.book_consignment(_consignment())

    assert result.success is False
    assert result.error == "Pincode not serviceable"


@pytest.mark.asyncio
async def test_dtdc_success_without_awb_is_inconsistent():
    def handler(request):
        return httpx.Response(200, json={"success": True, "data": [{}]})

    async with _gateway(handler) as gateway:
        with pytest.raises(InconsistentCourierResponseError):
            await gateway.book_consignment(_consignment())


@pytest.mark.asyncio
async def test_dtdc_single_object_data_is_accepted():
    def handler(request):
        return httpx.Response(200, json={"success": True, "data": {"awbNumber": "X1", "charges": "n/a"}})

    async with _gateway(handler) as gateway:
        result = await gateway.book_consignment(_consignment())

    assert result.tracking_id == "X1"
    assert result.cost_estimate is None


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    [{"awbNumber": "X1"}],
    {"success": True, "data": ["X1"]},
    {"success": True, "data": "X1"},
    {"success": True, "data": []},
])
async def test_dtdc_unexpected_body_shape_is_inconsistent(body):
    async with _gateway(lambda request: httpx.Response(200, json=body)) as gateway:
        with pytest.raises(InconsistentCourierResponseError):
            await gateway.book_consignment(_consignment())


@pytest.mark.asyncio
async def test_dtdc_server_error():
    async with _gateway(lambda request: httpx.Response(500, text="upstream down")) as gateway:
        with pytest.raises(CourierUnavailableError) as exc:
            await gateway.book_consignment(_consignment())

    assert exc.value.details["status_code"] == 500


@pytest.mark.asyncio
async def test_dtdc_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with _gateway(handler) as gateway:
        with pytest.raises(CourierUnavailableError) as exc:
            await gateway.book_consignment(_consignment())

    assert "timed out" in exc.value.message


@pytest.mark.asyncio
async def test_dtdc_circuit_opens_after_repeated_failures():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60, name="dtdc-test")
    async with _gateway(handler, breaker) as gateway:
        for _ in range(2):
            with pytest.raises(CourierUnavailableError):
                await gateway.book_consignment(_consignment())

        with pytest.raises(CourierUnavailableError) as exc:
            await gateway.book_consignment(_consignment())

    assert breaker.state == "OPEN"
    assert "OPEN" in exc.value.message
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_dtdc_cancel():
    def handler(request):
        assert json.loads(request.content)["AWBNo"] == ["D1234567"]
        return httpx.Response(200, json={"success": True})

    async with _gateway(handler) as gateway:
        assert await gateway.cancel_consignment("D1234567") is True


@pytest.mark.asyncio
async def test_fake_courier_is_deterministic_per_reference():
    fake = FakeCourierGateway()

    first = await fake.book_consignment(_consignment("SF-1"))
    again = await fake.book_consignment(_consignment("SF-1"))
    other = await fake.book_consignment(_consignment("SF-2"))

    assert first.tracking_id == again.tracking_id == "FAKE0000000001"
    assert other.tracking_id == "FAKE0000000002"


@pytest.mark.asyncio
async def test_fake_courier_scripted_failures():
    fake = FakeCourierGateway()
    fake.configure(timeout_references={"SF-2"}, missing_tracking_references={"SF-3"})

    assert (await fake.book_consignment(_consignment("SF-1"))).success is True
    with pytest.raises(CourierUnavailableError):
        await fake.book_consignment(_consignment("SF-2"))
    with pytest.raises(InconsistentCourierResponseError):
        await fake.book_consignment(_consignment("SF-3"))

    fake.configure(should_succeed=False, failure_reason="Courier down")
    with pytest.raises(CourierUnavailableError) as exc:
        await fake.book_consignment(_consignment("SF-4"))
    assert exc.value.message == "Courier down"


@pytest.mark.asyncio
async def test_dtdc_cancel_with_unexpected_body():
    async with _gateway(lambda request: httpx.Response(200, json=["ok"])) as gateway:
        assert await gateway.cancel_consignment("D1234567") is False
