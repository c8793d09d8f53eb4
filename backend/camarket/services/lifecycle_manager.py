import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from camarket.models import ActorRef, DomainEvent, Metadata, RequestStatusChange, ServiceRequest
from camarket.services.database import (
    Database,
    Transaction,
    database,
    dump_metadata,
    load_metadata,
    to_iso,
    utcnow,
)
from camarket.services.directory import load_offering, load_provider
from camarket.services.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from camarket.services.event_emitter import build_event
from camarket.services.settlement_engine import PaymentSettlementEngine, settlement_engine
from camarket.settings import ESCROW_HOLD_DAYS

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, set[str]] = {
    "pending": {"accepted", "rejected", "cancelled"},
    "accepted": {"in_progress", "pending", "rejected", "cancelled"},
    "in_progress": {"completed", "cancelled"},
}

REJECTABLE_STATUSES = {"pending", "accepted"}
ASSIGNED_STATUSES = {"accepted", "in_progress", "completed"}
TERMINAL_REQUEST_STATUSES = {"completed", "rejected", "cancelled"}


@dataclass
class RequestChange:
    request: ServiceRequest
    events: List[DomainEvent] = field(default_factory=list)
    from_status: Optional[str] = None
    note: str = ""

    @property
    def changed(self) -> bool:
        return bool(self.events)


def check_assignment(request: ServiceRequest) -> None:
    if request.status == "pending" and request.ca_id is not None:
        raise ValidationError("Pending requests cannot carry an assigned provider")
    if request.status in ASSIGNED_STATUSES and request.ca_id is None:
        raise ValidationError(f"Requests in {request.status} need an assigned provider")


def plan_transition(
    request: ServiceRequest,
    target: str,
    actor: ActorRef,
    now: str,
    event_type: str,
    note: str = "",
    **changes,
) -> RequestChange:
    if target not in ALLOWED_TRANSITIONS.get(request.status, set()):
        raise InvalidTransitionError(request.status, target, f"request {request.id}")
    updated = request.model_copy(update={"status": target, "updated_at": now, **changes})
    check_assignment(updated)
    event = build_event(
        event_type,
        actor,
        request_id=request.id,
        payload={"from_status": request.status, "to_status": target, "note": note},
        timestamp=now,
    )
    return RequestChange(request=updated, events=[event], from_status=request.status, note=note)


def plan_reject(
    request: ServiceRequest,
    provider_id: str,
    reason: str,
    route: str,
    now: str,
) -> RequestChange:
    if request.status not in REJECTABLE_STATUSES:
        raise InvalidTransitionError(request.status, route, f"request {request.id}")
    if route not in {"pending", "rejected"}:
        raise ValidationError("Invalid route. Allowed: pending, rejected")
    if request.status == "accepted" and request.ca_id != provider_id:
        raise PermissionDeniedError("Only the assigned provider can reject an accepted request")

    actor = ActorRef.provider(provider_id)
    if request.status == "pending" and route == "pending":
        # A prospective provider passes; the request stays in the pool.
        event = build_event(
            "request.declined",
            actor,
            request_id=request.id,
            payload={"from_status": "pending", "to_status": "pending", "note": reason},
            timestamp=now,
        )
        return RequestChange(request=request, events=[event], from_status="pending", note=reason)

    ca_id = None if route == "pending" else (request.ca_id or provider_id)
    return plan_transition(request, route, actor, now, "request.rejected", note=reason, ca_id=ca_id)


def plan_escalation(request: ServiceRequest, actor: ActorRef, now: str) -> RequestChange:
    if request.status in TERMINAL_REQUEST_STATUSES:
        raise InvalidTransitionError(request.status, "escalated", f"request {request.id}")
    if request.escalated_at:
        return RequestChange(request=request)
    updated = request.model_copy(update={"escalated_at": now, "updated_at": now})
    event = build_event(
        "request.escalated",
        actor,
        request_id=request.id,
        payload={"status": request.status},
        timestamp=now,
    )
    return RequestChange(request=updated, events=[event])


def request_from_row(row: sqlite3.Row) -> ServiceRequest:
    return ServiceRequest(
        id=row["id"],
        user_id=row["user_id"],
        ca_id=row["ca_id"],
        ca_service_id=row["ca_service_id"],
        status=row["status"],
        purpose=row["purpose"],
        additional_notes=row["additional_notes"],
        cancellation_reason=row["cancellation_reason"],
        cancellation_fee_due=bool(row["cancellation_fee_due"]),
        escalated_at=row["escalated_at"],
        completed_at=row["completed_at"],
        metadata=load_metadata(row["metadata_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class RequestLifecycleManager:
    def __init__(
        self,
        database: Database,
        settlement: PaymentSettlementEngine,
        clock: Callable[[], datetime] = utcnow,
        escrow_hold_days: int = ESCROW_HOLD_DAYS,
    ) -> None:
        self.database = database
        self.settlement = settlement
        self.clock = clock
        self.escrow_hold_days = escrow_hold_days

    def _load(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise NotFoundError("Service request not found")
        return request_from_row(row)

    def _record_history(self, conn: sqlite3.Connection, change: RequestChange, actor: ActorRef) -> None:
        conn.execute(
            """
            INSERT INTO request_status_history (id, service_request_id, actor_kind, actor_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                f"rsh_{uuid4().hex[:10]}",
                change.request.id,
                actor.kind,
                actor.id,
                change.from_status,
                change.request.status,
                change.note,
                change.request.updated_at,
            ),
        )

    def _apply(self, tx: Transaction, before: ServiceRequest, change: RequestChange, actor: ActorRef) -> ServiceRequest:
        after = change.request
        if after is not before:
            cursor = tx.conn.execute(
                """
                UPDATE service_requests
                SET ca_id = ?, status = ?, cancellation_reason = ?, cancellation_fee_due = ?,
                    escalated_at = ?, completed_at = ?, metadata_json = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    after.ca_id,
                    after.status,
                    after.cancellation_reason,
                    1 if after.cancellation_fee_due else 0,
                    after.escalated_at,
                    after.completed_at,
                    dump_metadata(after.metadata),
                    after.updated_at,
                    after.id,
                    before.status,
                ),
            )
            if cursor.rowcount == 0:
                current = self._load(tx.conn, before.id)
                raise InvalidTransitionError(current.status, after.status, f"request {before.id}")
        if change.from_status is not None:
            self._record_history(tx.conn, change, actor)
        for event in change.events:
            tx.emit(event)
        return after

    def _assert_assigned_provider(self, request: ServiceRequest, provider_id: str, action: str) -> None:
        if request.ca_id != provider_id:
            raise PermissionDeniedError(f"Only the assigned provider can {action} this request")

    def _assert_participant(self, request: ServiceRequest, actor: ActorRef) -> None:
        if actor.kind == "client" and actor.id != request.user_id:
            raise PermissionDeniedError("Only the requester can act on this request")
        if actor.kind == "provider" and actor.id != request.ca_id:
            raise PermissionDeniedError("Only the assigned provider can act on this request")

    def submit(
        self,
        user_id: str,
        ca_service_id: str,
        purpose: str = "",
        additional_notes: str = "",
        metadata: Optional[Metadata] = None,
    ) -> ServiceRequest:
        if not user_id.strip():
            raise ValidationError("user_id is required")
        now = to_iso(self.clock())
        with self.database.transaction() as tx:
            offering = load_offering(tx.conn, ca_service_id)
            if offering is None:
                raise ValidationError("Catalog offering does not exist")
            if not offering.is_active:
                raise ValidationError("Catalog offering is not active")
            request = ServiceRequest(
                id=f"sr_{uuid4().hex[:12]}",
                user_id=user_id,
                ca_service_id=ca_service_id,
                status="pending",
                purpose=purpose,
                additional_notes=additional_notes,
                metadata=metadata or Metadata(),
                created_at=now,
                updated_at=now,
            )
            tx.conn.execute(
                """
                INSERT INTO service_requests (
                    id, user_id, ca_id, ca_service_id, status, purpose, additional_notes,
                    cancellation_fee_due, metadata_json, created_at, updated_at
                )
                VALUES (?, ?, NULL, ?, 'pending', ?, ?, 0, ?, ?, ?)
                """,
                (
                    request.id,
                    request.user_id,
                    request.ca_service_id,
                    request.purpose,
                    request.additional_notes,
                    dump_metadata(request.metadata),
                    request.created_at,
                    request.updated_at,
                ),
            )
            actor = ActorRef.client(user_id)
            change = RequestChange(
                request=request,
                events=[
                    build_event(
                        "request.submitted",
                        actor,
                        request_id=request.id,
                        payload={"ca_service_id": ca_service_id, "category": offering.category},
                        timestamp=now,
                    )
                ],
                note="request submitted",
            )
            self._record_history(tx.conn, change, actor)
            for event in change.events:
                tx.emit(event)
        logger.info("Request %s submitted by %s for offering %s", request.id, user_id, ca_service_id)
        return request

    def accept(self, request_id: str, provider_id: str) -> ServiceRequest:
        """Assign a pending request to exactly one provider.

        The assignment is a single conditional UPDATE; a caller that loses
        the race sees zero affected rows and gets ``ConflictError``.
        """
        now = to_iso(self.clock())
        with self.database.transaction() as tx:
            provider = load_provider(tx.conn, provider_id)
            if provider.status != "active":
                raise ValidationError(f"Provider {provider_id} is {provider.status}")
            cursor = tx.conn.execute(
                """
                UPDATE service_requests SET ca_id = ?, status = 'accepted', updated_at = ?
                WHERE id = ? AND status = 'pending' AND ca_id IS NULL
                """,
                (provider_id, now, request_id),
            )
            if cursor.rowcount == 0:
                current = self._load(tx.conn, request_id)
                if current.status in ASSIGNED_STATUSES:
                    logger.info("Provider %s lost the race for request %s", provider_id, request_id)
                    raise ConflictError(f"Request {request_id} is already assigned to another provider")
                raise InvalidTransitionError(current.status, "accepted", f"request {request_id}")

            accepted = self._load(tx.conn, request_id)
            actor = ActorRef.provider(provider_id)
            change = RequestChange(
                request=accepted,
                events=[
                    build_event(
                        "request.accepted",
                        actor,
                        request_id=request_id,
                        payload={"from_status": "pending", "to_status": "accepted", "ca_id": provider_id},
                        timestamp=now,
                    )
                ],
                from_status="pending",
                note="accepted",
            )
            self._record_history(tx.conn, change, actor)
            for event in change.events:
                tx.emit(event)
        logger.info("Request %s accepted by %s", request_id, provider_id)
        return accepted

    def reject(
        self,
        request_id: str,
        provider_id: str,
        reason: str = "",
        route: str = "rejected",
    ) -> ServiceRequest:
        now = to_iso(self.clock())
        with self.database.transaction() as tx:
            request = self._load(tx.conn, request_id)
            change = plan_reject(request, provider_id, reason, route, now)
            rejected = self._apply(tx, request, change, ActorRef.provider(provider_id))
        logger.info("Request %s rejected by %s (route=%s)", request_id, provider_id, route)
        return rejected

    def start(self, request_id: str, provider_id: str) -> ServiceRequest:
        now = to_iso(self.clock())
        with self.database.transaction() as tx:
            request = self._load(tx.conn, request_id)
            if request.status == "accepted":
                self._assert_assigned_provider(request, provider_id, "start")
            actor = ActorRef.provider(provider_id)
            change = plan_transition(request, "in_progress", actor, now, "request.started", note="work started")
            started = self._apply(tx, request, change, actor)
        logger.info("Request %s started by %s", request_id, provider_id)
        return started

    def cancel(
        self,
        request_id: str,
        actor: ActorRef,
        reason: str = "",
        fee_applies: bool = False,
    ) -> ServiceRequest:
        """Cancel a non-terminal request.

        ``fee_applies`` is the caller's policy decision that the request is
        past the cancellation-fee boundary; the fee itself is charged later
        through the settlement engine.
        """
        now = to_iso(self.clock())
        with self.database.transaction() as tx:
            request = self._load(tx.conn, request_id)
            if request.status not in TERMINAL_REQUEST_STATUSES:
                self._assert_participant(request, actor)
            fee_due = fee_applies and self.settlement.has_completed_charge(request_id, tx)
            change = plan_transition(
                request,
                "cancelled",
                actor,
                now,
                "request.cancelled",
                note=reason,
                cancellation_reason=reason,
                cancellation_fee_due=fee_due,
            )
            change.events[0].payload["cancellation_fee_due"] = fee_due
            cancelled = self._apply(tx, request, change, actor)
            self.settlement.cancel_pending_for_request(request_id, reason or "request cancelled", tx)
        logger.info("Request %s cancelled by %s:%s (fee due: %s)", request_id, actor.kind, actor.id, fee_due)
        return cancelled

    def escalate(self, request_id: str, actor: Optional[ActorRef] = None) -> ServiceRequest:
        actor = actor or ActorRef.system()
        now = to_iso(self.clock())
        with self.database.transaction() as tx:
            request = self._load(tx.conn, request_id)
            change = plan_escalation(request, actor, now)
            if not change.changed:
                return request
            self._assert_participant(request, actor)
            escalated = self._apply(tx, request, change, actor)
        logger.info("Request %s escalated by %s:%s", request_id, actor.kind, actor.id)
        return escalated

    def complete(self, request_id: str, provider_id: str) -> ServiceRequest:
        completed_at = self.clock()
        now = to_iso(completed_at)
        with self.database.transaction() as tx:
            request = self._load(tx.conn, request_id)
            if request.status == "in_progress":
                self._assert_assigned_provider(request, provider_id, "complete")
            actor = ActorRef.provider(provider_id)
            change = plan_transition(
                request,
                "completed",
                actor,
                now,
                "request.completed",
                note="work completed",
                completed_at=now,
            )
            completed = self._apply(tx, request, change, actor)
            release_date = to_iso(completed_at + timedelta(days=self.escrow_hold_days))
            scheduled = self.settlement.schedule_escrow_for_request(request_id, release_date, tx)
        logger.info("Request %s completed; %s escrow release(s) scheduled", request_id, len(scheduled))
        return completed

    def get(self, request_id: str) -> ServiceRequest:
        with self.database.read() as conn:
            return self._load(conn, request_id)

    def history(self, request_id: str) -> List[RequestStatusChange]:
        with self.database.read() as conn:
            self._load(conn, request_id)
            rows = conn.execute(
                "SELECT * FROM request_status_history WHERE service_request_id = ? ORDER BY created_at, rowid",
                (request_id,),
            ).fetchall()
        return [
            RequestStatusChange(
                id=row["id"],
                service_request_id=row["service_request_id"],
                actor=ActorRef(kind=row["actor_kind"], id=row["actor_id"]),
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def list_for_user(self, user_id: str) -> List[ServiceRequest]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM service_requests WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [request_from_row(row) for row in rows]

    def list_for_provider(self, provider_id: str, status: Optional[str] = None) -> List[ServiceRequest]:
        query = "SELECT * FROM service_requests WHERE ca_id = ?"
        params: List[str] = [provider_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"
        with self.database.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [request_from_row(row) for row in rows]

    def list_open(self) -> List[ServiceRequest]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM service_requests WHERE status = 'pending' ORDER BY created_at",
            ).fetchall()
        return [request_from_row(row) for row in rows]


lifecycle_manager = RequestLifecycleManager(database=database, settlement=settlement_engine)
