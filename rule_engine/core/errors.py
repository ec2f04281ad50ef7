"""
Error taxonomy and shared error-handling helpers.

Services raise the exceptions defined here; the API layer maps them to
HTTP responses through :func:`register_exception_handlers`.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class RuleEngineError(Exception):
    """Base class for errors surfaced to callers of the rule engine."""

    status_code = 500
    default_message = "Rule engine error"

    def __init__(self, message: Optional[str] = None, *, errors: Optional[list[dict[str, Any]]] = None) -> None:
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message}
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(RuleEngineError):
    """Malformed or missing fields on a Rule, RuleVersion, condition or action payload."""

    status_code = 400
    default_message = "Validation error"


class AgencyRequired(RuleEngineError):
    status_code = 400
    default_message = "Agency context required"


class AccessDenied(RuleEngineError):
    status_code = 403
    default_message = "Access denied"


class NotFound(RuleEngineError):
    status_code = 404
    default_message = "Not found"


class VersionConflict(RuleEngineError):
    """Version number allocation kept colliding after all retries."""

    status_code = 409
    default_message = "Could not allocate a version number"


def pydantic_errors(exc: Any, *, item: Optional[str] = None, index: Optional[int] = None) -> list[dict[str, Any]]:
    """Flatten a pydantic ValidationError into the structured field-error list."""
    items: list[dict[str, Any]] = []
    for err in exc.errors():
        entry: dict[str, Any] = {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg"),
            "type": err.get("type"),
        }
        if item is not None:
            entry["item"] = item
        if index is not None:
            entry["index"] = index
        items.append(entry)
    return items


def _format_extra(extra: dict | None) -> str:
    if not extra:
        return ""
    parts: list[str] = []
    for key, value in extra.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return f" {' '.join(parts)}" if parts else ""


def log_exception(logger: logging.Logger, msg: str, *, extra: dict | None = None, exc: Exception | None = None) -> None:
    """
    Log an exception with context. Uses logger.exception for stack traces.
    """
    suffix = _format_extra(extra)
    if exc is not None:
        logger.error(f"{msg}{suffix}: {exc}", exc_info=exc)
        return
    logger.exception(f"{msg}{suffix}")


def register_exception_handlers(app: FastAPI) -> None:
    logger = logging.getLogger("api.errors")

    @app.exception_handler(RuleEngineError)
    async def _rule_engine_error(request: Request, exc: RuleEngineError) -> JSONResponse:
        if exc.status_code >= 500:
            log_exception(logger, "Unhandled rule engine error", extra={"path": request.url.path}, exc=exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = ValidationError("Invalid request", errors=pydantic_errors(exc, item="request"))
        return JSONResponse(status_code=error.status_code, content=error.to_payload())
