"""Error taxonomy for the payments service.

Every failure the engine surfaces is a ``PaymentsError`` subclass, so callers
can branch on the type (or ``code``) instead of matching message text.
"""

from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from libs.common.logging import get_logger

logger = get_logger(__name__)


class PaymentsError(Exception):
    """Base exception for payment lifecycle errors."""

    code = "payments_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFound(PaymentsError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Unauthorized(PaymentsError):
    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(PaymentsError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class ValidationError(PaymentsError):
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class SellerNotPayable(PaymentsError):
    code = "seller_not_payable"
    status_code = status.HTTP_409_CONFLICT


class AlreadyRefunded(PaymentsError):
    code = "already_refunded"
    status_code = status.HTTP_409_CONFLICT


class NoChargeFound(PaymentsError):
    code = "no_charge_found"
    status_code = status.HTTP_409_CONFLICT


class MissingMetadata(PaymentsError):
    code = "missing_metadata"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class SignatureVerificationFailed(PaymentsError):
    code = "signature_verification_failed"
    status_code = status.HTTP_400_BAD_REQUEST


class GatewayError(PaymentsError):
    """The remote payment provider call failed."""

    code = "gateway_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        gateway_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        self.http_status = http_status
        self.gateway_code = gateway_code
        super().__init__(message, details=details)


class PersistenceError(PaymentsError):
    code = "persistence_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


async def _payments_error_handler(request: Request, exc: PaymentsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Render ``PaymentsError`` subclasses as structured JSON responses."""
    app.add_exception_handler(PaymentsError, _payments_error_handler)
