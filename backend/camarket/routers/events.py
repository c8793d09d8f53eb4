from typing import Optional

from fastapi import APIRouter, Query

from camarket.models import DomainEvent
from camarket.services.event_emitter import event_emitter

router = APIRouter(prefix="/events", tags=["events"])


@router.get("", response_model=list[DomainEvent])
def recent_events(
    request_id: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None, alias="type"),
    limit: int = Query(default=100, ge=1, le=500),
):
    return event_emitter.recent(request_id=request_id, event_type=event_type, limit=limit)
