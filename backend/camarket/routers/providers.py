from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from camarket.auth import assert_actor_authorized
from camarket.models import (
    ActorRef,
    Offering,
    OfferingCreate,
    Provider,
    ProviderCreate,
    RatingSummary,
    Review,
    ReviewCreate,
    ReviewUpdate,
)
from camarket.routers.http_errors import raise_http_error
from camarket.services.directory import directory
from camarket.services.errors import MarketplaceError
from camarket.services.rating_aggregator import rating_aggregator

router = APIRouter(prefix="/providers", tags=["providers"])


@router.post("", response_model=Provider)
def create_provider(
    payload: ProviderCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.system(), authorization=authorization)
    try:
        return directory.add_provider(
            name=payload.name,
            commission_percentage=payload.commission_percentage,
            created_by=payload.created_by,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/ranking", response_model=list[RatingSummary])
def rank_providers(provider_id: list[str] = Query(...)):
    if not provider_id:
        raise HTTPException(status_code=400, detail="At least one provider_id is required")
    return rating_aggregator.rank(provider_id)


@router.get("/{provider_id}", response_model=Provider)
def get_provider(provider_id: str):
    try:
        return directory.get_provider(provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{provider_id}/offerings", response_model=Offering)
def create_offering(
    provider_id: str,
    payload: OfferingCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.provider(provider_id), authorization=authorization)
    try:
        return directory.add_offering(
            provider_id=provider_id,
            category=payload.category,
            price=payload.price,
            currency=payload.currency,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/reviews", response_model=list[Review])
def list_reviews(provider_id: str):
    return directory.list_reviews(provider_id)


@router.post("/{provider_id}/reviews", response_model=Review)
def create_review(
    provider_id: str,
    payload: ReviewCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.client(payload.user_id), authorization=authorization)
    try:
        return directory.add_review(
            provider_id=provider_id,
            user_id=payload.user_id,
            rating=payload.rating,
            comment=payload.comment,
            service_request_id=payload.service_request_id,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.patch("/{provider_id}/reviews/{review_id}", response_model=Review)
def update_review(
    provider_id: str,
    review_id: str,
    payload: ReviewUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.client(payload.user_id), authorization=authorization)
    try:
        return directory.update_review(
            review_id=review_id,
            user_id=payload.user_id,
            rating=payload.rating,
            comment=payload.comment,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.delete("/{provider_id}/reviews/{review_id}", response_model=dict)
def delete_review(
    provider_id: str,
    review_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor=ActorRef.client(user_id), authorization=authorization)
    try:
        directory.delete_review(review_id=review_id, user_id=user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return {"status": "deleted"}


@router.get("/{provider_id}/rating", response_model=RatingSummary)
def provider_rating(provider_id: str):
    try:
        directory.get_provider(provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return rating_aggregator.aggregate(provider_id)
