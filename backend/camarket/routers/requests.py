from typing import Optional

from fastapi import APIRouter, Header, Query

from camarket.auth import assert_actor_authorized
from camarket.models import (
    ActorRef,
    CancelCommand,
    EscalateCommand,
    Metadata,
    ProviderActionRequest,
    RejectCommand,
    RequestStatusChange,
    ServiceRequest,
    ServiceRequestCreate,
)
from camarket.routers.http_errors import raise_http_error
from camarket.services.errors import MarketplaceError
from camarket.services.lifecycle_manager import lifecycle_manager

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequest)
def submit_request(
    payload: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.client(payload.user_id), authorization=authorization)
    try:
        return lifecycle_manager.submit(
            user_id=payload.user_id,
            ca_service_id=payload.ca_service_id,
            purpose=payload.purpose,
            additional_notes=payload.additional_notes,
            metadata=Metadata(values=payload.metadata),
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("", response_model=list[ServiceRequest])
def list_requests(
    user_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
):
    if user_id:
        return lifecycle_manager.list_for_user(user_id)
    if provider_id:
        return lifecycle_manager.list_for_provider(provider_id, status=status)
    return lifecycle_manager.list_open()


@router.get("/{request_id}", response_model=ServiceRequest)
def get_request(request_id: str):
    try:
        return lifecycle_manager.get(request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{request_id}/history", response_model=list[RequestStatusChange])
def request_history(request_id: str):
    try:
        return lifecycle_manager.history(request_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/accept", response_model=ServiceRequest)
def accept_request(
    request_id: str,
    payload: ProviderActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.provider(payload.provider_id), authorization=authorization)
    try:
        return lifecycle_manager.accept(request_id, payload.provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/reject", response_model=ServiceRequest)
def reject_request(
    request_id: str,
    payload: RejectCommand,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.provider(payload.provider_id), authorization=authorization)
    try:
        return lifecycle_manager.reject(
            request_id,
            payload.provider_id,
            reason=payload.reason,
            route=payload.route,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/start", response_model=ServiceRequest)
def start_request(
    request_id: str,
    payload: ProviderActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.provider(payload.provider_id), authorization=authorization)
    try:
        return lifecycle_manager.start(request_id, payload.provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(
    request_id: str,
    payload: CancelCommand,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=payload.actor, authorization=authorization)
    try:
        return lifecycle_manager.cancel(
            request_id,
            payload.actor,
            reason=payload.reason,
            fee_applies=payload.fee_applies,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/escalate", response_model=ServiceRequest)
def escalate_request(
    request_id: str,
    payload: EscalateCommand,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=payload.actor, authorization=authorization)
    try:
        return lifecycle_manager.escalate(request_id, payload.actor)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{request_id}/complete", response_model=ServiceRequest)
def complete_request(
    request_id: str,
    payload: ProviderActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.provider(payload.provider_id), authorization=authorization)
    try:
        return lifecycle_manager.complete(request_id, payload.provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
