"""Traducción de errores de dominio a `HTTPException`."""

from __future__ import annotations

from fastapi import HTTPException

from leadrouter.core.logging import get_logger
from leadrouter.repositories.base import RepositoryError
from leadrouter.services.ai_engine import AIEngineConfigError, AIEngineError
from leadrouter.services.authority import AuthorityError, ConversationNotFoundError, PermissionDeniedError
from leadrouter.services.delivery_monitor import DeliveryLogNotFoundError, DeliveryMonitorError
from leadrouter.services.phone import InvalidPhoneError
from leadrouter.services.transfer import LeadNotFoundError, TransferError
from leadrouter.services.transports import TransportConfigError, TransportError

logger = get_logger(__name__)

NotFound = (ConversationNotFoundError, LeadNotFoundError, DeliveryLogNotFoundError)

DomainError = (
    InvalidPhoneError,
    *NotFound,
    PermissionDeniedError,
    AuthorityError,
    TransferError,
    DeliveryMonitorError,
    AIEngineError,
    TransportError,
    RepositoryError,
)


def to_http(exc: Exception) -> HTTPException:
    """400 validación, 403 permiso, 404 inexistente, 409 estado, 500 configuración, 502 upstream."""
    if isinstance(exc, InvalidPhoneError):
        return HTTPException(status_code=400, detail=f"phone_{exc.reason}")
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail="not_found")
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=403, detail="forbidden")
    if isinstance(exc, (AuthorityError, TransferError, DeliveryMonitorError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (AIEngineConfigError, TransportConfigError)):
        logger.error("api.configuration_error", extra={"error": str(exc)})
        return HTTPException(status_code=500, detail=str(exc))
    if isinstance(exc, (AIEngineError, TransportError, RepositoryError)):
        logger.error("api.upstream_error", extra={"error": str(exc), "kind": type(exc).__name__})
        return HTTPException(status_code=502, detail="upstream_error")
    logger.exception("api.unexpected_error", extra={"error": str(exc)})
    return HTTPException(status_code=500, detail="internal_error")
