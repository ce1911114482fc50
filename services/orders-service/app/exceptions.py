"""Order flow errors.

Raised by the cart, checkout, ledger, OTP and cancellation services when a
business rule is violated. Each error is an ``AppException`` so FastAPI can
render it directly; the ``kind`` attribute is the stable discriminant the
exception handler in ``app.main`` returns to clients.
"""
from fastapi import status

from shared.utils import AppException


class OrderFlowError(AppException):
    kind = "OrderFlowError"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(status_code=self.http_status, detail=detail)


class ValidationError(OrderFlowError):
    """Bad input shape: empty cart, invalid quantity, incomplete address, unknown reason."""
    kind = "ValidationError"


class InsufficientStock(OrderFlowError):
    kind = "InsufficientStock"
    http_status = status.HTTP_409_CONFLICT


class ProductUnavailable(OrderFlowError):
    """The product was deleted or is not approved for sale."""
    kind = "ProductUnavailable"
    http_status = status.HTTP_409_CONFLICT


class ConcurrentStockChange(OrderFlowError):
    """A reservation lost a race with another checkout; the user must retry."""
    kind = "ConcurrentStockChange"
    http_status = status.HTTP_409_CONFLICT


class ConcurrentCartChange(OrderFlowError):
    kind = "ConcurrentCartChange"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, detail: str = "Your cart changed while it was being updated. Please try again."):
        super().__init__(detail)


class InvalidOrExpiredOTP(OrderFlowError):
    kind = "InvalidOrExpiredOTP"

    def __init__(self, detail: str = "Invalid or expired OTP."):
        super().__init__(detail)


class InvalidState(OrderFlowError):
    """The transition is not legal from the order's current status."""
    kind = "InvalidState"
    http_status = status.HTTP_409_CONFLICT


class CancellationWindowClosed(InvalidState):
    kind = "CancellationWindowClosed"


class PermissionDenied(OrderFlowError):
    kind = "PermissionDenied"
    http_status = status.HTTP_403_FORBIDDEN


class NotFound(OrderFlowError):
    kind = "NotFound"
    http_status = status.HTTP_404_NOT_FOUND
