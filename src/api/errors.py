from fastapi import HTTPException, status

from src.services.errors import (
    AlreadyFinalizedError,
    AlreadyRedeemedError,
    GatewayError,
    InsufficientStockError,
    NotFoundError,
    OrderError,
    PaymentPendingError,
    ValidationError,
    WrongStateError,
)

_STATUS_CODES = (
    (InsufficientStockError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyFinalizedError, status.HTTP_409_CONFLICT),
    (AlreadyRedeemedError, status.HTTP_409_CONFLICT),
    (WrongStateError, status.HTTP_409_CONFLICT),
    (PaymentPendingError, status.HTTP_202_ACCEPTED),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
)


def http_error(exc: OrderError) -> HTTPException:
    """Translate a domain error into the response the client sees."""
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code == status.HTTP_409_CONFLICT:
        # Stale-state signals carry a machine-readable reason so clients can refresh
        return HTTPException(status_code=status_code, detail={"reason": exc.reason, "message": str(exc)})
    return HTTPException(status_code=status_code, detail=str(exc))
