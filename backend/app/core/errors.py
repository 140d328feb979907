"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        CampusSafetyError,
        NotFoundError,
        ValidationError,
        RateLimitError,
        register_error_handlers,
    )

    raise NotFoundError("EmergencyAlert", id="EMG-4F2A9C01B7DE")
"""

from __future__ import annotations

import logging
import math
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class CampusSafetyError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        self.headers = headers or {}


class ValidationError(CampusSafetyError):
    """Submission is malformed or incomplete (400)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class AuthenticationError(CampusSafetyError):
    """Missing, invalid or expired bearer token (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTHENTICATION_REQUIRED",
            headers={"WWW-Authenticate": "Bearer"},
        )


class PermissionDeniedError(CampusSafetyError):
    """Authenticated caller lacks the required role (403)."""

    def __init__(self, required_roles: List[str], role: Optional[str] = None):
        super().__init__(
            message=f"Requires one of roles: {', '.join(required_roles)}",
            status_code=403,
            error_code="PERMISSION_DENIED",
            details={"required_roles": required_roles, "role": role},
        )


class NotFoundError(CampusSafetyError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class InvalidTransitionError(CampusSafetyError):
    """Requested status change is not in the lifecycle table (409)."""

    def __init__(self, alert_id: str, current: str, requested: str):
        super().__init__(
            message=f"Cannot move alert {alert_id} from '{current}' to '{requested}'",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"alert_id": alert_id, "current": current, "requested": requested},
        )


class RateLimitError(CampusSafetyError):
    """Rate limit exceeded (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: float = 60,
        *,
        policy: Optional[str] = None,
    ):
        seconds = max(1, math.ceil(retry_after))
        self.retry_after = seconds
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": seconds, "policy": policy},
            headers={"Retry-After": str(seconds)},
        )


class ServiceUnavailableError(CampusSafetyError):
    """Persistence layer unreachable (503)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Service '{service}' unavailable: {message}",
            status_code=503,
            error_code="SERVICE_UNAVAILABLE",
            details={"service": service, **details},
        )


class NotificationDeliveryError(CampusSafetyError):
    """
    Fanout or email could not be delivered.

    Internal only: logged by the lifecycle controller, never rendered
    to a reporter or an operator.
    """

    def __init__(self, channel: str, message: str = "", alert_id: Optional[str] = None):
        super().__init__(
            message=f"Delivery via {channel} failed: {message}",
            status_code=500,
            error_code="NOTIFICATION_DELIVERY_ERROR",
            details={"alert_id": alert_id, "channel": channel},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(CampusSafetyError)
    async def handle_campus_safety_error(request: Request, exc: CampusSafetyError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request, exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        logger.warning("Request validation failed: %s", errors)
        return _build_error_response(
            400, "VALIDATION_ERROR", "Request body failed validation",
            {"errors": errors}, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            400, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
