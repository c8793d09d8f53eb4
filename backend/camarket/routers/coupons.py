from typing import Optional

from fastapi import APIRouter, Header, Query

from camarket.auth import assert_actor_authorized
from camarket.models import ActorRef, Coupon, CouponCreate, CouponPreviewRequest, CouponQuote, CouponUpdate, CouponUsage
from camarket.routers.http_errors import raise_http_error
from camarket.services.coupon_ledger import coupon_ledger
from camarket.services.errors import MarketplaceError

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("", response_model=Coupon)
def create_coupon(
    payload: CouponCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return coupon_ledger.create_coupon(
            code=payload.code,
            discount_value=payload.discount_value,
            valid_until=payload.valid_until,
            discount_type=payload.discount_type,
            valid_from=payload.valid_from,
            description=payload.description,
            max_discount_amount=payload.max_discount_amount,
            min_order_amount=payload.min_order_amount,
            max_usage_limit=payload.max_usage_limit,
            max_usage_per_user=payload.max_usage_per_user,
            applicable_service_types=payload.applicable_service_types,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("", response_model=list[Coupon])
def list_coupons(
    is_active: Optional[bool] = Query(default=None),
    search: Optional[str] = Query(default=None),
):
    return coupon_ledger.list_coupons(is_active=is_active, search=search)


@router.get("/users/{user_id}/available", response_model=list[Coupon])
def list_available_coupons(user_id: str):
    return coupon_ledger.list_active_for_user(user_id)


@router.get("/users/{user_id}/usages", response_model=list[CouponUsage])
def list_user_coupon_usages(user_id: str):
    return coupon_ledger.list_usages_for_user(user_id)


@router.post("/preview", response_model=CouponQuote)
def preview_coupon(payload: CouponPreviewRequest):
    try:
        return coupon_ledger.preview(
            code=payload.code,
            user_id=payload.user_id,
            order_amount=payload.order_amount,
            service_category=payload.service_category,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{code}", response_model=Coupon)
def get_coupon(code: str):
    try:
        return coupon_ledger.get_by_code(code)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{code}/deactivate", response_model=Coupon)
def deactivate_coupon(
    code: str,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return coupon_ledger.deactivate(code)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{code}/usages", response_model=list[CouponUsage])
def list_coupon_usages(code: str):
    try:
        return coupon_ledger.list_usages(code)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.patch("/{code}", response_model=Coupon)
def update_coupon(
    code: str,
    payload: CouponUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return coupon_ledger.update_coupon(code, **payload.model_dump(exclude_none=True))
    except MarketplaceError as exc:
        raise_http_error(exc)
