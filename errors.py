"""
Domain errors for the hall booking service.

Every error the core raises is a ``DomainError``. The HTTP layer turns them
into responses through ``register_error_handlers``; the body always carries
a machine-readable ``code`` so clients can tell a conflict from a bad field.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainError(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "domain_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationFailed(DomainError):
    """Missing or malformed input; raised before the ledger is touched."""

    status_code = HTTP_422_UNPROCESSABLE
    default_code = "validation_failed"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {}
        if field:
            details.setdefault("field", field)
        super().__init__(message, details=details, **kwargs)
        self.field = field


class InvalidRange(ValidationFailed):
    default_code = "invalid_range"


class VenueNotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "venue_not_found"


class BookingNotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "booking_not_found"


class PermissionDenied(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "permission_denied"


class SlotConflict(DomainError):
    """One or more requested slots are already claimed. Routine, not retried."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "slot_conflict"


class PersistenceError(DomainError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "persistence_error"


class NotificationError(DomainError):
    """Delivery failed. Logged by the dispatcher, never returned to a caller."""

    default_code = "notification_error"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        http_exc = exc.to_http_exception()
        return JSONResponse(status_code=http_exc.status_code, content=http_exc.detail)
