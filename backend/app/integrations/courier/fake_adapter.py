"""Fake courier adapter: deterministic courier for testing and development.

Generates sequential tracking ids. Failure behaviour is configurable per
reference so tests can script partial failures inside a bulk run.
"""

import asyncio
from decimal import Decimal
from typing import Dict, List, Optional, Set

from backend.app.core.config import settings
from backend.app.core.exceptions import CourierUnavailableError, InconsistentCourierResponseError
from backend.app.integrations.courier.port import ConsignmentRequest, ConsignmentResult, CourierGateway


class FakeCourierGateway(CourierGateway):
    """Fake courier that always succeeds by default."""

    name = "fake"

    def __init__(self):
        self.reset()

    def reset(self):
        self.should_succeed = True
        self.failure_reason = "Courier unavailable"
        self.cost_estimate: Optional[Decimal] = None
        self.timeout_references: Set[str] = set()
        self.missing_tracking_references: Set[str] = set()
        self.fixed_tracking_id: Optional[str] = None
        self.cancel_succeeds = True
        self.booked: List[ConsignmentRequest] = []
        self.cancelled: List[str] = []
        self._references: Dict[str, str] = {}
        self._counter = 0

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Courier unavailable",
        cost_estimate: Optional[Decimal] = None,
        timeout_references: Optional[Set[str]] = None,
        missing_tracking_references: Optional[Set[str]] = None,
        fixed_tracking_id: Optional[str] = None,
        cancel_succeeds: bool = True,
    ):
        """Configure the fake courier behavior for testing."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.cost_estimate = cost_estimate
        self.timeout_references = set(timeout_references or ())
        self.missing_tracking_references = set(missing_tracking_references or ())
        self.fixed_tracking_id = fixed_tracking_id
        self.cancel_succeeds = cancel_succeeds

    async def book_consignment(self, request: ConsignmentRequest) -> ConsignmentResult:
        await asyncio.sleep(0)
        if request.reference in self.timeout_references:
            raise CourierUnavailableError(
                f"Courier timed out after {settings.courier_timeout_seconds}s",
                details={"reference": request.reference},
            )
        if not self.should_succeed:
            raise CourierUnavailableError(self.failure_reason, details={"reference": request.reference})
        if request.reference in self.missing_tracking_references:
            raise InconsistentCourierResponseError(
                "Courier reported success without a tracking id",
                details={"reference": request.reference},
            )

        # Same reference books the same consignment, as the real API dedups on it
        tracking_id = self._references.get(request.reference)
        if tracking_id is None:
            self._counter += 1
            tracking_id = self.fixed_tracking_id or f"FAKE{self._counter:010d}"
            self._references[request.reference] = tracking_id
        self.booked.append(request)

        return ConsignmentResult(
            success=True,
            tracking_id=tracking_id,
            tracking_url=f"{settings.courier_tracking_url}{tracking_id}",
            cost_estimate=self.cost_estimate,
        )

    async def cancel_consignment(self, tracking_id: str) -> bool:
        if not self.cancel_succeeds:
            return False
        self.cancelled.append(tracking_id)
        return True
