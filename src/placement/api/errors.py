from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from placement.domain.errors import (
    AlreadyAssignedError,
    ConcurrencyConflictError,
    InsufficientCapacityError,
    InvalidTransitionError,
    LedgerHaltedError,
    LedgerInvariantError,
    NotFoundError,
    PlacementError,
)

from .schemas import ErrorBody

logger = logging.getLogger(__name__)

# Checked in order; the first matching class wins.
STATUS_BY_ERROR: tuple[tuple[type[PlacementError], int], ...] = (
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (ConcurrencyConflictError, 409),
    (InsufficientCapacityError, 409),
    (AlreadyAssignedError, 409),
    (LedgerHaltedError, 503),
    (LedgerInvariantError, 503),
)


def status_for(error: PlacementError) -> int:
    for kind, status in STATUS_BY_ERROR:
        if isinstance(error, kind):
            return status
    return 422


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PlacementError)
    async def placement_error_handler(request: Request, exc: PlacementError):
        status = status_for(exc)
        if status >= 500:
            logger.error("placement request failed", extra={"code": exc.error_code, "path": request.url.path})
        body = ErrorBody.from_error(exc)
        return JSONResponse(status_code=status, content=jsonable_encoder(body))


__all__ = ["install_error_handlers", "status_for", "STATUS_BY_ERROR"]
