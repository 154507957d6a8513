"""Structured exception hierarchy following RFC 7807 Problem Details.

All IRDesk domain exceptions extend ``IRDeskError``. The incident core
raises them directly; the FastAPI exception handler registered in
``app.py`` converts them to ``application/problem+json`` responses.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger()


class IRDeskError(Exception):
    """Base exception for all IRDesk domain errors."""

    status_code: int = 500
    error_type: str = "about:blank"
    title: str = "Internal Server Error"

    def __init__(
        self,
        detail: str = "",
        *,
        instance: str = "",
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.detail = detail or self.title
        self.instance = instance
        self.extra = extra or {}
        super().__init__(self.detail)

    def to_problem_detail(self) -> dict[str, Any]:
        """RFC 7807 Problem Details JSON object."""
        body: dict[str, Any] = {
            "type": self.error_type,
            "title": self.title,
            "status": self.status_code,
            "detail": self.detail,
        }
        if self.instance:
            body["instance"] = self.instance
        if self.extra:
            body.update(self.extra)
        return body


class NotFoundError(IRDeskError):
    status_code = 404
    error_type = "urn:irdesk:error:not-found"
    title = "Not Found"


class ConflictError(IRDeskError):
    status_code = 409
    error_type = "urn:irdesk:error:conflict"
    title = "Conflict"


class InvalidTransitionError(ConflictError):
    error_type = "urn:irdesk:error:invalid-transition"
    title = "Invalid Status Transition"


class ValidationError(IRDeskError):
    status_code = 422
    error_type = "urn:irdesk:error:validation"
    title = "Validation Error"


class UnknownActionError(ValidationError):
    error_type = "urn:irdesk:error:unknown-action"
    title = "Unknown Response Action"


class ActionExecutionError(IRDeskError):
    status_code = 502
    error_type = "urn:irdesk:error:action-execution"
    title = "Action Execution Failed"


class PersistenceError(IRDeskError):
    status_code = 503
    error_type = "urn:irdesk:error:persistence"
    title = "Persistence Failure"


@contextmanager
def error_context(
    error_cls: type[IRDeskError] = IRDeskError,
    detail: str = "",
    **kwargs: Any,
) -> Iterator[None]:
    """Context manager that wraps unexpected exceptions into structured errors.

    Usage::

        with error_context(PersistenceError, detail="incident write failed"):
            await session.commit()
    """
    try:
        yield
    except IRDeskError:
        raise
    except Exception as exc:
        msg = detail or str(exc)
        raise error_cls(msg, **kwargs) from exc


def irdesk_exception_handler(_request: Request, exc: IRDeskError) -> JSONResponse:
    """FastAPI exception handler for IRDeskError subclasses."""
    logger.warning(
        "irdesk_error",
        error_type=exc.error_type,
        status=exc.status_code,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_problem_detail(),
        media_type="application/problem+json",
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all IRDesk exception handlers on the FastAPI app."""
    app.add_exception_handler(IRDeskError, irdesk_exception_handler)  # type: ignore[arg-type]
