from typing import Optional


class MarketplaceError(ValueError):
    """Base class for errors returned to callers of the settlement core."""


class ValidationError(MarketplaceError):
    pass


class NotFoundError(MarketplaceError):
    pass


class PermissionDeniedError(MarketplaceError):
    pass


class InvalidTransitionError(MarketplaceError):
    def __init__(self, current: str, target: str, detail: Optional[str] = None) -> None:
        self.current = current
        self.target = target
        message = f"Invalid transition: {current} -> {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class RetryExhaustedError(MarketplaceError):
    pass


class CouponIneligibleError(MarketplaceError):
    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or f"Coupon not applicable: {reason}")


class RaceLostError(MarketplaceError):
    """Lost a race for an exclusive resource; expected under contention."""


class ConflictError(RaceLostError):
    pass


class CouponExhaustedError(RaceLostError, CouponIneligibleError):
    def __init__(self, message: Optional[str] = None) -> None:
        CouponIneligibleError.__init__(self, "usage_limit_reached", message or "Coupon usage limit reached")
