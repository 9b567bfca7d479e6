"""Translate ledger service errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from clubdk_api.services.exceptions import (
    InsufficientPointsError,
    InvalidTransitionError,
    LedgerConsistencyError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
)

_STATUS_BY_ERROR: tuple[tuple[type[LedgerError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (InsufficientPointsError, status.HTTP_409_CONFLICT),
    (LedgerConsistencyError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (LedgerValidationError, 422),
)


def http_error_for(exc: LedgerError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": exc.code, "message": str(exc)},
    )
