"""Error taxonomy and normalized HTTP error handlers."""

import logging
from typing import Any, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from mentor.core.logging import get_request_id, log_event


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class DuplicateEntryError(ConflictError):
    """A ledger entry already exists for the day and is not older than the new write.

    Callers retrying an identical write never see this; they get the existing
    entry back instead.
    """
    code = "duplicate_entry"

    def __init__(self, message: str, *, existing: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.existing = existing


class InsufficientBankError(ConflictError):
    code = "insufficient_bank"


class BankDayNotAllowedError(ValidationError):
    code = "bank_day_not_allowed"
    status_code = 422


class SyncTransientError(AppError):
    """Network failure, timeout or 5xx from the remote store."""
    code = "sync_transient"
    status_code = 503
    retryable = True


class SyncStalledError(AppError):
    code = "sync_stalled"
    status_code = 503


class SyncConflictError(ConflictError):
    code = "sync_conflict"


class RemoteRejectedError(AppError):
    """Remote store refused the request (auth, row-level security, bad payload)."""
    code = "remote_rejected"
    status_code = 502


def _extract_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _respond(rid: str, status_code: int, code: str, message: str, **error_fields) -> JSONResponse:
    """Render the {"error": {...}, "detail": ...} body every failing route returns."""
    error = {"code": code, "message": message, "request_id": rid, **error_fields}
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": message},
        headers={"x-request-id": rid},
    )


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    fields = {}
    existing = getattr(exc, "existing", None)
    if existing is not None and hasattr(existing, "model_dump"):
        # Lets a client treat a duplicate as success-with-existing-value.
        fields["existing"] = existing.model_dump(mode="json")
    log_event(
        "error" if exc.status_code >= 500 else "warning",
        "app.error",
        request_id=rid,
        error_code=exc.code,
        extra={"error_message": exc.message, "status": exc.status_code, "path": request.url.path},
    )
    return _respond(rid, exc.status_code, exc.code, exc.message, **fields)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    log_event("warning", "http.error", request_id=rid, error_code=code, extra={"status": exc.status_code})
    return _respond(rid, exc.status_code, code, exc.detail or "HTTP error")


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logging.getLogger("mentor").error(
        "unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"}
    )
    return _respond(rid, 500, "internal_error", "Unexpected error")
