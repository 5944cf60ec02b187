"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
"""

import logging
from decimal import Decimal
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class ShipmentValidationError(AppException):
    """Raised when a shipment request is malformed or references invalid parties/parts."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class ClassificationError(AppException):
    """Raised when a role pair has no shipment classification configured."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFIG_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class PricingConfigurationError(AppException):
    """Raised when no active rate card covers a shipment."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFIG_002",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class InsufficientStockError(AppException):
    """Raised when a reservation exceeds available stock."""

    def __init__(self, brand_id: int, part_id: int, available: int, requested: int):
        self.brand_id = brand_id
        self.part_id = part_id
        self.available = available
        self.requested = requested
        super().__init__(
            message=f"Insufficient stock for part {part_id}: available {available}, requested {requested}",
            error_code="ERR_STOCK_001",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "brand_id": brand_id,
                "part_id": part_id,
                "available": available,
                "requested": requested,
            }
        )


class InsufficientBalanceError(AppException):
    """Raised when a wallet cannot cover a deduction. Balance is left untouched."""

    def __init__(self, current: Decimal, required: Decimal):
        self.current = current
        self.required = required
        self.shortfall = required - current
        super().__init__(
            message=f"Insufficient wallet balance. Required: {required}, Available: {current}",
            error_code="ERR_WALLET_001",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={
                "current": str(current),
                "required": str(required),
                "shortfall": str(self.shortfall),
            }
        )


class IdempotencyConflictError(AppException):
    """Raised when an idempotency reference is reused with different parameters."""

    def __init__(self, reference: str, message: str = None):
        super().__init__(
            message=message or f"Reference '{reference}' was already used with different parameters",
            error_code="ERR_IDEMPOTENCY_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"reference": reference}
        )


class LedgerIntegrityError(AppException):
    """Raised when a ledger write would break its invariants (bad amount, over-refund, reuse of a closed reservation)."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_LEDGER_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class InvalidStatusTransitionError(AppException):
    """Raised when a shipment status change is not allowed."""

    def __init__(self, shipment_id: int, current: str, target: str):
        super().__init__(
            message=f"Shipment {shipment_id} cannot move from {current} to {target}",
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"shipment_id": shipment_id, "current": current, "target": target}
        )


class CourierUnavailableError(AppException):
    """Raised by courier adapters on transport errors, timeouts and non-2xx replies."""

    def __init__(self, message: str = "Courier service unavailable", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_COURIER_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class InconsistentCourierResponseError(AppException):
    """Raised when the courier reports success without a usable tracking id."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_COURIER_002",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.error_code, exc.message, extra={"path": request.url.path})
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_errors(exc)
            }
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Strip non-serializable context (e.g. raised ValueErrors) from pydantic errors."""
    errors = []
    for err in exc.errors():
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        errors.append(err)
    return errors


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__, extra={"path": request.url.path})

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
