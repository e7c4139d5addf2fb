from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    retryable = False

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
    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND"):
        super().__init__(message, code=code, status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None, code: str = "CONFLICT"):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None, code: str = "BAD_REQUEST"):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Validation


class InvalidAmountError(BadRequestError):
    def __init__(self, amount: int, minimum: int):
        super().__init__(
            f"Amount must be at least {minimum}",
            details={"amount": amount, "minimum": minimum},
            code="INVALID_AMOUNT",
        )


class InvalidQuantityError(BadRequestError):
    def __init__(self, qty: int, maximum: int):
        super().__init__(
            f"Quantity must be between 1 and {maximum}",
            details={"qty": qty, "maximum": maximum},
            code="INVALID_QUANTITY",
        )


class InsufficientStockError(BadRequestError):
    def __init__(self, product_key: str, requested: int, available: int):
        super().__init__(
            "Not enough stock for this order",
            details={"product_key": product_key, "requested": requested, "available": available},
            code="INSUFFICIENT_STOCK",
        )


class InsufficientBalanceError(BadRequestError):
    def __init__(self, balance: int, required: int):
        super().__init__(
            "Insufficient balance",
            details={"balance": balance, "required": required},
            code="INSUFFICIENT_BALANCE",
        )


# Not found


class PaymentNotFoundError(NotFoundError):
    """Deliberately generic: does not say whether the payment was processed, expired or never existed."""

    def __init__(self):
        super().__init__("No such pending payment", code="PAYMENT_NOT_FOUND")


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_key: str):
        super().__init__("Product not found", code="PRODUCT_NOT_FOUND")
        self.details = {"product_key": product_key}


class UserNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("User not found", code="USER_NOT_FOUND")


# Conflicts


class AlreadyPendingError(ConflictError):
    def __init__(self, payment_id: str | None):
        super().__init__(
            "You already have a pending payment. Pay or cancel it first.",
            details={"payment_id": payment_id},
            code="ALREADY_PENDING",
        )
        self.payment_id = payment_id


class PaymentClosedError(ConflictError):
    def __init__(self, payment_id: str, payment_status: str | None = None):
        super().__init__(
            "This payment can no longer be changed",
            details={"payment_id": payment_id, "status": payment_status},
            code="PAYMENT_CLOSED",
        )


# Provider


class ProviderError(AppError):
    """QRIS provider call failed: network, http_status, malformed or rejected."""

    retryable = True

    NETWORK = "network"
    HTTP_STATUS = "http_status"
    MALFORMED = "malformed"
    REJECTED = "rejected"

    def __init__(self, kind: str, message: str = "", http_status: int | None = None):
        super().__init__(
            message or f"Payment provider error ({kind})",
            code="PROVIDER_ERROR",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"kind": kind, "http_status": http_status},
        )
        self.kind = kind
        self.http_status = http_status


class ProviderRejectedError(AppError):
    retryable = True

    def __init__(self, cause: ProviderError):
        super().__init__(
            "Could not create the payment right now. Please try again later.",
            code="PROVIDER_REJECTED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"kind": cause.kind, "http_status": cause.http_status},
        )


# Fulfillment


class FulfillmentError(AppError):
    def __init__(self, payment_id: str, reason: str):
        super().__init__(
            "Payment received but the order could not be delivered. Contact support with your payment id.",
            code="FULFILLMENT_FAILED",
            status_code=status.HTTP_409_CONFLICT,
            details={"payment_id": payment_id, "reason": reason},
        )
        self.payment_id = payment_id
        self.reason = reason


# Store


class StoreError(AppError):
    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(message, code="STORE_ERROR", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class StoreConflictError(StoreError):
    def __init__(self, key: str):
        super().__init__(f"Too many concurrent updates for {key}")
        self.code = "STORE_CONFLICT"


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
