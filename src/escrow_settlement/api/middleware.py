"""FastAPI middleware for request tracing and error handling.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware: injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware: catches domain exceptions -> structured JSON errors
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from escrow_settlement.domain.exceptions import (
    AlreadySettledError,
    CostTooHighError,
    DeadlinePassedError,
    DuplicateOperationError,
    EmptyEscrowError,
    EscrowError,
    EscrowRecordNotFoundError,
    GasTooHighError,
    InvalidRecipientError,
    LedgerNotConfiguredError,
    LedgerRPCError,
    LedgerTimeoutError,
    NotAdminError,
    NotFoundOnChainError,
    NotTaskOwnerError,
    TaskNotFoundError,
    TransactionRevertedError,
    UnknownApplicationStatusError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

# First match wins, so subclasses must come before their bases.
_STATUS_BY_ERROR: tuple[tuple[type[EscrowError], int], ...] = (
    (NotFoundOnChainError, 404),
    (EscrowRecordNotFoundError, 404),
    (TaskNotFoundError, 404),
    (NotTaskOwnerError, 403),
    (NotAdminError, 403),
    (AlreadySettledError, 409),
    (DuplicateOperationError, 409),
    (DeadlinePassedError, 409),
    (EmptyEscrowError, 422),
    (InvalidRecipientError, 422),
    (GasTooHighError, 422),
    (CostTooHighError, 422),
    (UnknownApplicationStatusError, 422),
    (TransactionRevertedError, 502),
    (LedgerRPCError, 502),
    (LedgerTimeoutError, 504),
    (LedgerNotConfiguredError, 503),
)


def status_for(exc: EscrowError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except EscrowError as exc:
            status_code = status_for(exc)
            content: dict = {"error": exc.code, "message": exc.message}
            tx_hash = getattr(exc, "tx_hash", None)
            if tx_hash:
                content["tx_hash"] = tx_hash
            log = logger.error if status_code >= 500 else logger.warning
            log("domain.error", code=exc.code, error=exc.message, status_code=status_code)
            return JSONResponse(status_code=status_code, content=content)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters: middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
