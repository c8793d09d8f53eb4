from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from camarket.auth import assert_actor_authorized
from camarket.models import (
    ActorRef,
    ChargeCommand,
    EscrowScheduleCommand,
    Payment,
    PaymentCompleteCommand,
    PaymentFailCommand,
    RefundCommand,
)
from camarket.routers.http_errors import raise_http_error
from camarket.services.errors import MarketplaceError
from camarket.services.lifecycle_manager import lifecycle_manager
from camarket.services.settlement_engine import settlement_engine

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=Payment)
def initiate_charge(
    payload: ChargeCommand,
    authorization: Optional[str] = Header(default=None),
):
    try:
        request = lifecycle_manager.get(payload.service_request_id)
        assert_actor_authorized(actor=ActorRef.client(request.user_id), authorization=authorization)
        return settlement_engine.initiate_charge(
            request_id=payload.service_request_id,
            kind=payload.payment_type,
            base_amount=payload.base_amount,
            coupon_code=payload.coupon_code,
            is_escrow=payload.is_escrow,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("", response_model=list[Payment])
def list_payments(
    request_id: Optional[str] = Query(default=None),
    payer_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
):
    if request_id:
        return settlement_engine.list_for_request(request_id)
    if not payer_id:
        raise HTTPException(status_code=400, detail="request_id or payer_id is required")
    try:
        return settlement_engine.list_for_payer(payer_id, page=page, limit=limit)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/escrow/due", response_model=list[Payment])
def due_escrow_releases(as_of: Optional[str] = Query(default=None)):
    try:
        return settlement_engine.due_escrow_releases(as_of=as_of)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{payment_id}", response_model=Payment)
def get_payment(payment_id: str):
    try:
        return settlement_engine.get(payment_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{payment_id}/commission", response_model=Payment)
def apply_commission(
    payment_id: str,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return settlement_engine.apply_commission(payment_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{payment_id}/complete", response_model=Payment)
def complete_payment(
    payment_id: str,
    payload: PaymentCompleteCommand,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return settlement_engine.mark_completed(payment_id, payload.gateway_ref)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{payment_id}/fail", response_model=Payment)
def fail_payment(
    payment_id: str,
    payload: PaymentFailCommand,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return settlement_engine.mark_failed(payment_id, payload.reason)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{payment_id}/retry", response_model=Payment)
def retry_payment(
    payment_id: str,
    authorization: Optional[str] = Header(default=None),
):
    try:
        payment = settlement_engine.get(payment_id)
        assert_actor_authorized(actor=ActorRef.client(payment.payer_id), authorization=authorization)
        return settlement_engine.retry(payment_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{payment_id}/refund", response_model=Payment)
def refund_payment(
    payment_id: str,
    payload: RefundCommand,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return settlement_engine.refund(payment_id, payload.reason, amount=payload.amount)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{payment_id}/escrow", response_model=Payment)
def schedule_escrow_release(
    payment_id: str,
    payload: EscrowScheduleCommand,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return settlement_engine.schedule_escrow_release(payment_id, payload.release_date)
    except MarketplaceError as exc:
        raise_http_error(exc)
