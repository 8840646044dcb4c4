"""Translate domain errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from rewardloop_api.services.errors import (
    AlreadyRedeemedError,
    CapExceededError,
    CommunicationNotFoundError,
    DuplicateReferenceError,
    EventValidationError,
    InsufficientBalanceError,
    MemberNotFoundError,
    OutOfStockError,
    RewardLoopError,
    RewardNotFoundError,
    VoucherNotFoundError,
)

_STATUS_BY_ERROR: tuple[tuple[type[RewardLoopError], int], ...] = (
    (EventValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MemberNotFoundError, status.HTTP_404_NOT_FOUND),
    (RewardNotFoundError, status.HTTP_404_NOT_FOUND),
    (VoucherNotFoundError, status.HTTP_404_NOT_FOUND),
    (CommunicationNotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateReferenceError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (AlreadyRedeemedError, status.HTTP_409_CONFLICT),
    (OutOfStockError, status.HTTP_409_CONFLICT),
    (CapExceededError, status.HTTP_409_CONFLICT),
)


def http_error(exc: RewardLoopError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc) or error_type.__name__)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


__all__ = ["http_error"]
