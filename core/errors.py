"""Domain errors raised by the order, coupon and payment services.

Routes never translate these by hand: ``main.py`` registers a single handler
that turns any ``StoreError`` into ``{"detail": message}`` with the class's
HTTP status.
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse


class StoreError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = status.HTTP_400_BAD_REQUEST


class CouponRejected(ValidationError):
    def __init__(self, code: str, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason


class InsufficientStockError(ValidationError):
    pass


class AuthorizationError(StoreError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(StoreError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(StoreError):
    status_code = status.HTTP_409_CONFLICT


class SignatureError(StoreError):
    status_code = status.HTTP_400_BAD_REQUEST


class GatewayError(StoreError):
    status_code = status.HTTP_502_BAD_GATEWAY


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
