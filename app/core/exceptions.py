from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Ledger outcomes


class UnknownTransactionError(AppError):
    """Provider event for a checkout this service never recorded."""

    def __init__(self, checkout_ref: str):
        super().__init__(
            "Unknown checkout reference",
            code="UNKNOWN_TRANSACTION",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"checkout_ref": checkout_ref},
        )


class OrphanedPaymentError(AppError):
    """Payment for a user that no longer exists; needs manual reconciliation."""

    def __init__(self, checkout_ref: str, user_id: str):
        super().__init__(
            "Payment belongs to a user that no longer exists",
            code="ORPHANED_PAYMENT",
            status_code=status.HTTP_409_CONFLICT,
            details={"checkout_ref": checkout_ref, "user_id": user_id},
        )


class InsufficientBalanceError(AppError):
    def __init__(self, required: int, available: int):
        super().__init__(
            "Insufficient credits",
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "available": available},
        )


class TransactionInitFailedError(AppError):
    def __init__(self, message: str = "Could not start checkout", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="TRANSACTION_INIT_FAILED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )


class ConcurrencyConflictError(AppError):
    """A guarded update lost a race; retry the whole operation."""

    def __init__(self, message: str = "Concurrent update, retry the request", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="CONCURRENCY_CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class StorageUnavailableError(AppError):
    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(
            message,
            code="STORAGE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class SettlementUnreconciledError(AppError):
    """A settlement was half applied and could not be undone; the balance needs a manual check."""

    def __init__(self, checkout_ref: str, user_id: str, credits: int, restored: bool):
        super().__init__(
            "Settlement could not be completed",
            code="SETTLEMENT_UNRECONCILED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"checkout_ref": checkout_ref, "user_id": user_id, "credits": credits, "restored": restored},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_encoder(exc.errors())},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
