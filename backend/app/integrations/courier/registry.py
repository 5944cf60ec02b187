"""Courier adapter registry: pluggable courier integration."""

from backend.app.core.config import settings
from backend.app.integrations.courier.port import CourierGateway

_gateway_instance = None


def get_courier_gateway() -> CourierGateway:
    """Return the configured courier adapter (singleton).

    Uses FakeCourierGateway by default. In production, set COURIER_ADAPTER=dtdc.
    Also usable as a FastAPI dependency.
    """
    global _gateway_instance
    if _gateway_instance is None:
        adapter = settings.courier_adapter
        if adapter == "fake":
            from backend.app.integrations.courier.fake_adapter import FakeCourierGateway

            _gateway_instance = FakeCourierGateway()
        elif adapter == "dtdc":
            from backend.app.integrations.courier.dtdc_adapter import DTDCCourierGateway

            _gateway_instance = DTDCCourierGateway()
        else:
            raise ValueError(f"Unknown courier adapter: {adapter}")
    return _gateway_instance


async def reset_courier_gateway():
    """Close and drop the singleton (shutdown and tests)."""
    global _gateway_instance
    if _gateway_instance is not None:
        await _gateway_instance.close()
    _gateway_instance = None
