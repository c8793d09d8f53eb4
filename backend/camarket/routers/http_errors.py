from fastapi import HTTPException

from camarket.services.errors import (
    ConflictError,
    CouponExhaustedError,
    CouponIneligibleError,
    MarketplaceError,
    NotFoundError,
    PermissionDeniedError,
)


def raise_http_error(exc: MarketplaceError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (ConflictError, CouponExhaustedError)):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, CouponIneligibleError):
        raise HTTPException(status_code=400, detail={"message": str(exc), "reason": exc.reason})
    raise HTTPException(status_code=400, detail=str(exc))
