"""Domain error taxonomy and its HTTP rendering.

Core modules raise these; the API layer never translates them by hand.
The handler registered in ``register_error_handlers`` maps each kind to a
status code and a consistent JSON body.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("incidentdesk.errors")


class DeskError(Exception):
    """Base class for every error the incident core surfaces to callers."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "detail": self.message, "details": self.details}


class ValidationError(DeskError):
    """Missing required field or unrecognized enum value."""

    kind = "validation_error"
    status_code = 400


class NotFound(DeskError):
    """Referenced incident, user or assignee does not exist."""

    kind = "not_found"
    status_code = 404


class InvalidTransition(DeskError):
    """Current state does not satisfy the operation's precondition."""

    kind = "invalid_transition"
    status_code = 409


class ConcurrentModification(InvalidTransition):
    kind = "concurrent_modification"


class PermissionDenied(DeskError):
    """Actor role insufficient for the requested mutation."""

    kind = "permission_denied"
    status_code = 403


def register_error_handlers(app: FastAPI) -> None:
    """Register the DeskError handler on the app."""

    @app.exception_handler(DeskError)
    async def desk_error_handler(request: Request, exc: DeskError):
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error("unhandled desk error: %s", exc.message)
        body = exc.to_dict()
        body["request_id"] = request_id
        return JSONResponse(status_code=exc.status_code, content=body)
