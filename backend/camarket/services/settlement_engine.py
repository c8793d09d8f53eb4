import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional
from uuid import uuid4

from camarket.models import MAX_PAYMENT_RETRIES, ActorRef, DomainEvent, Metadata, Payment
from camarket.services.coupon_ledger import CouponLedger, coupon_ledger
from camarket.services.database import (
    Database,
    Transaction,
    database,
    dump_metadata,
    load_metadata,
    parse_timestamp,
    to_iso,
    utcnow,
)
from camarket.services.directory import load_offering, load_provider
from camarket.services.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    RetryExhaustedError,
    ValidationError,
)
from camarket.services.event_emitter import build_event
from camarket.services.money import ZERO, money_text, parse_money, round2

logger = logging.getLogger(__name__)

CHARGE_KINDS = {"booking_fee", "service_fee", "cancellation_fee"}
CLOSED_REQUEST_STATUSES = {"rejected", "cancelled"}
OPEN_CHARGE_STATUSES = ("pending", "completed")
FULL_REFUND_REQUEST_STATUSES = {"pending", "accepted"}
SERVICE_FEE_REFUND_SHARE = Decimal("0.5")

PAYMENT_COLUMNS = (
    "id",
    "service_request_id",
    "payer_id",
    "payee_id",
    "amount",
    "currency",
    "payment_type",
    "status",
    "gateway_payment_id",
    "is_escrow",
    "escrow_release_date",
    "commission_percentage",
    "commission_amount",
    "net_amount",
    "coupon_id",
    "discount_amount",
    "original_amount",
    "payment_date",
    "refund_date",
    "refund_reason",
    "failure_reason",
    "retry_count",
    "last_retry_at",
    "refund_of_payment_id",
    "metadata_json",
    "created_at",
    "updated_at",
)


@dataclass
class PaymentChange:
    payment: Payment
    events: List[DomainEvent] = field(default_factory=list)


def payment_from_row(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        service_request_id=row["service_request_id"],
        payer_id=row["payer_id"],
        payee_id=row["payee_id"],
        amount=parse_money(row["amount"]),
        currency=row["currency"],
        payment_type=row["payment_type"],
        status=row["status"],
        gateway_payment_id=row["gateway_payment_id"],
        is_escrow=bool(row["is_escrow"]),
        escrow_release_date=row["escrow_release_date"],
        commission_percentage=parse_money(row["commission_percentage"]),
        commission_amount=parse_money(row["commission_amount"]),
        net_amount=parse_money(row["net_amount"]),
        coupon_id=row["coupon_id"],
        discount_amount=parse_money(row["discount_amount"]) or ZERO,
        original_amount=parse_money(row["original_amount"]),
        payment_date=row["payment_date"],
        refund_date=row["refund_date"],
        refund_reason=row["refund_reason"],
        failure_reason=row["failure_reason"],
        retry_count=row["retry_count"],
        last_retry_at=row["last_retry_at"],
        refund_of_payment_id=row["refund_of_payment_id"],
        metadata=load_metadata(row["metadata_json"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def payment_to_row(payment: Payment) -> tuple:
    return (
        payment.id,
        payment.service_request_id,
        payment.payer_id,
        payment.payee_id,
        money_text(payment.amount),
        payment.currency,
        payment.payment_type,
        payment.status,
        payment.gateway_payment_id,
        1 if payment.is_escrow else 0,
        payment.escrow_release_date,
        money_text(payment.commission_percentage),
        money_text(payment.commission_amount),
        money_text(payment.net_amount),
        payment.coupon_id,
        money_text(payment.discount_amount),
        money_text(payment.original_amount),
        payment.payment_date,
        payment.refund_date,
        payment.refund_reason,
        payment.failure_reason,
        payment.retry_count,
        payment.last_retry_at,
        payment.refund_of_payment_id,
        dump_metadata(payment.metadata),
        payment.created_at,
        payment.updated_at,
    )


def _payment_event(event_type: str, payment: Payment, timestamp: str, **payload) -> DomainEvent:
    body = {
        "payment_id": payment.id,
        "payment_type": payment.payment_type,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
    }
    body.update(payload)
    return build_event(
        event_type,
        ActorRef.system(),
        request_id=payment.service_request_id,
        payload=body,
        timestamp=timestamp,
    )


def _require_status(payment: Payment, expected: str, target: str) -> None:
    if payment.status != expected:
        raise InvalidTransitionError(payment.status, target, f"payment {payment.id}")


def apply_commission(payment: Payment, current_percentage: Decimal, now: str) -> PaymentChange:
    if payment.payment_type != "service_fee":
        raise ValidationError("Commission applies to service fees only")
    if payment.commission_amount is not None:
        return PaymentChange(payment=payment)
    if payment.status not in {"pending", "completed"}:
        raise InvalidTransitionError(payment.status, "commission_applied", f"payment {payment.id}")
    percentage = payment.commission_percentage if payment.commission_percentage is not None else current_percentage
    commission = round2(payment.amount * percentage / Decimal(100))
    updated = payment.model_copy(
        update={
            "commission_percentage": round2(percentage),
            "commission_amount": commission,
            "net_amount": payment.amount - commission,
            "updated_at": now,
        }
    )
    return PaymentChange(payment=updated)


def complete_payment(payment: Payment, gateway_ref: str, now: str) -> PaymentChange:
    _require_status(payment, "pending", "completed")
    if not gateway_ref.strip():
        raise ValidationError("gateway_ref is required")
    updated = payment.model_copy(
        update={
            "status": "completed",
            "gateway_payment_id": gateway_ref.strip(),
            "payment_date": now,
            "failure_reason": None,
            "updated_at": now,
        }
    )
    return PaymentChange(updated, [_payment_event("payment.completed", updated, now, gateway_ref=gateway_ref.strip())])


def fail_payment(payment: Payment, reason: str, now: str) -> PaymentChange:
    _require_status(payment, "pending", "failed")
    updated = payment.model_copy(update={"status": "failed", "failure_reason": reason, "updated_at": now})
    return PaymentChange(updated, [_payment_event("payment.failed", updated, now, reason=reason)])


def retry_payment(payment: Payment, now: str) -> PaymentChange:
    if payment.payment_type == "refund":
        raise ValidationError("Refund entries cannot be retried")
    _require_status(payment, "failed", "pending")
    if payment.retry_count >= MAX_PAYMENT_RETRIES:
        raise RetryExhaustedError(
            f"Payment {payment.id} reached {MAX_PAYMENT_RETRIES} retries; initiate a new charge"
        )
    updated = payment.model_copy(
        update={
            "status": "pending",
            "retry_count": payment.retry_count + 1,
            "last_retry_at": now,
            "updated_at": now,
        }
    )
    return PaymentChange(updated, [_payment_event("payment.retried", updated, now, retry_count=updated.retry_count)])


def cancel_payment(payment: Payment, reason: str, now: str) -> PaymentChange:
    _require_status(payment, "pending", "cancelled")
    updated = payment.model_copy(update={"status": "cancelled", "failure_reason": reason, "updated_at": now})
    return PaymentChange(updated, [_payment_event("payment.cancelled", updated, now, reason=reason)])


def refundable_amount(payment: Payment, request_status: str) -> Decimal:
    """Cancellation policy: booking fees come back in full until work starts,
    service fees are refunded at half, cancellation fees are kept."""
    if payment.payment_type == "booking_fee":
        return payment.amount if request_status in FULL_REFUND_REQUEST_STATUSES else ZERO
    if payment.payment_type == "service_fee":
        return round2(payment.amount * SERVICE_FEE_REFUND_SHARE)
    return ZERO


def refund_entries(
    payment: Payment,
    request_status: str,
    reason: str,
    now: str,
    amount: Optional[Decimal] = None,
) -> tuple[Payment, PaymentChange]:
    """Return the refunded source payment and the new refund ledger entry.

    ``amount`` lets the caller refund less than the policy allows, never more.
    """
    if payment.payment_type == "refund":
        raise ValidationError("Refund entries cannot be refunded")
    if payment.status != "completed" or payment.refund_date:
        raise InvalidTransitionError(payment.status, "refunded", f"payment {payment.id}")
    allowed = refundable_amount(payment, request_status)
    if allowed <= ZERO:
        raise ValidationError("No refund available for this payment")
    if amount is not None:
        amount = round2(amount)
        if amount <= ZERO or amount > allowed:
            raise ValidationError(f"Refund amount must be between 0.01 and {allowed}")
    refund_amount = allowed if amount is None else amount
    source = payment.model_copy(
        update={"status": "refunded", "refund_date": now, "refund_reason": reason, "updated_at": now}
    )
    entry = Payment(
        id=f"pay_{uuid4().hex[:12]}",
        service_request_id=payment.service_request_id,
        payer_id=payment.payee_id or "system",
        payee_id=payment.payer_id,
        amount=refund_amount,
        currency=payment.currency,
        payment_type="refund",
        status="pending",
        original_amount=payment.amount,
        refund_reason=reason,
        refund_of_payment_id=payment.id,
        created_at=now,
        updated_at=now,
    )
    events = [
        _payment_event(
            "payment.refunded",
            source,
            now,
            reason=reason,
            refund_payment_id=entry.id,
            refund_amount=str(refund_amount),
        ),
        _payment_event("gateway.refund_requested", entry, now, source_payment_id=payment.id),
    ]
    return source, PaymentChange(entry, events)


def schedule_release(payment: Payment, release_date: str, now: str) -> PaymentChange:
    if not payment.is_escrow:
        raise ValidationError("Payment is not held in escrow")
    _require_status(payment, "completed", "escrow_release_scheduled")
    updated = payment.model_copy(update={"escrow_release_date": release_date, "updated_at": now})
    return PaymentChange(
        updated,
        [_payment_event("gateway.escrow_release_scheduled", updated, now, release_date=release_date)],
    )


class PaymentSettlementEngine:
    def __init__(
        self,
        database: Database,
        coupons: CouponLedger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.coupons = coupons
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock())

    def _load(self, conn: sqlite3.Connection, payment_id: str) -> Payment:
        row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if not row:
            raise NotFoundError("Payment not found")
        return payment_from_row(row)

    def _insert(self, conn: sqlite3.Connection, payment: Payment) -> None:
        placeholders = ", ".join("?" for _ in PAYMENT_COLUMNS)
        conn.execute(
            f"INSERT INTO payments ({', '.join(PAYMENT_COLUMNS)}) VALUES ({placeholders})",
            payment_to_row(payment),
        )

    def _save(self, conn: sqlite3.Connection, payment: Payment, expected_status: str) -> None:
        assignments = ", ".join(f"{column} = ?" for column in PAYMENT_COLUMNS[1:])
        values = payment_to_row(payment)
        cursor = conn.execute(
            f"UPDATE payments SET {assignments} WHERE id = ? AND status = ?",
            values[1:] + (payment.id, expected_status),
        )
        if cursor.rowcount == 0:
            current = self._load(conn, payment.id)
            raise InvalidTransitionError(current.status, payment.status, f"payment {payment.id}")

    def _commit_change(self, tx: Transaction, before: Payment, change: PaymentChange) -> Payment:
        self._save(tx.conn, change.payment, before.status)
        for event in change.events:
            tx.emit(event)
        return change.payment

    def _open_charge(self, conn: sqlite3.Connection, request_id: str, kind: str) -> Optional[Payment]:
        row = conn.execute(
            """
            SELECT * FROM payments
            WHERE service_request_id = ? AND payment_type = ? AND status IN (?, ?)
            ORDER BY created_at LIMIT 1
            """,
            (request_id, kind) + OPEN_CHARGE_STATUSES,
        ).fetchone()
        return payment_from_row(row) if row else None

    def initiate_charge(
        self,
        request_id: str,
        kind: str,
        base_amount: Decimal,
        coupon_code: Optional[str] = None,
        is_escrow: bool = False,
        metadata: Optional[Metadata] = None,
        tx: Optional[Transaction] = None,
    ) -> Payment:
        if kind not in CHARGE_KINDS:
            raise ValidationError(f"Invalid charge kind: {kind}. Refunds are created via refund()")
        base_amount = round2(base_amount)
        if base_amount < ZERO:
            raise ValidationError("base_amount must be >= 0")

        with self.database.transaction(tx) as unit:
            conn = unit.conn
            request = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
            if not request:
                raise NotFoundError("Service request not found")
            if kind == "cancellation_fee":
                if not request["cancellation_fee_due"]:
                    raise ValidationError("No cancellation fee is due for this request")
            elif request["status"] in CLOSED_REQUEST_STATUSES:
                raise InvalidTransitionError(request["status"], "charged", f"request {request_id}")
            if kind == "service_fee" and not request["ca_id"]:
                raise ValidationError(f"{kind} requires an assigned provider")

            existing = self._open_charge(conn, request_id, kind)
            if existing is not None:
                # One live charge per kind; a repeated submit gets the charge already on file.
                logger.info("Request %s already has %s %s (%s)", request_id, kind, existing.id, existing.status)
                return existing

            offering = load_offering(conn, request["ca_service_id"])
            payment_id = f"pay_{uuid4().hex[:12]}"
            discount = ZERO
            coupon_id = None
            if coupon_code:
                usage = self.coupons.validate_and_reserve(
                    code=coupon_code,
                    user_id=request["user_id"],
                    order_amount=base_amount,
                    service_category=offering.category if offering else None,
                    service_request_id=request_id,
                    payment_id=payment_id,
                    tx=unit,
                )
                discount = min(usage.discount_amount, base_amount)
                coupon_id = usage.coupon_id

            now = self._now()
            payment = Payment(
                id=payment_id,
                service_request_id=request_id,
                payer_id=request["user_id"],
                payee_id=request["ca_id"] if kind != "booking_fee" else None,
                amount=base_amount - discount,
                currency=offering.currency if offering else "INR",
                payment_type=kind,
                status="pending",
                is_escrow=is_escrow,
                coupon_id=coupon_id,
                discount_amount=discount,
                original_amount=base_amount,
                metadata=metadata or Metadata(),
                created_at=now,
                updated_at=now,
            )
            self._insert(conn, payment)
            unit.emit(
                build_event(
                    "payment.initiated",
                    ActorRef.client(payment.payer_id),
                    request_id=request_id,
                    payload={
                        "payment_id": payment.id,
                        "payment_type": kind,
                        "amount": str(payment.amount),
                        "discount_amount": str(discount),
                        "currency": payment.currency,
                    },
                    timestamp=now,
                )
            )
        logger.info("Initiated %s %s for request %s (%s %s)", kind, payment.id, request_id, payment.amount, payment.currency)
        return payment

    def apply_commission(self, payment_id: str, tx: Optional[Transaction] = None) -> Payment:
        with self.database.transaction(tx) as unit:
            payment = self._load(unit.conn, payment_id)
            if payment.payment_type != "service_fee":
                raise ValidationError("Commission applies to service fees only")
            if payment.commission_amount is not None:
                return payment
            if not payment.payee_id:
                raise ValidationError("Service fee has no payee")
            provider = load_provider(unit.conn, payment.payee_id)
            change = apply_commission(payment, provider.commission_percentage, self._now())
            return self._commit_change(unit, payment, change)

    def mark_completed(self, payment_id: str, gateway_ref: str) -> Payment:
        with self.database.transaction() as unit:
            payment = self._load(unit.conn, payment_id)
            change = complete_payment(payment, gateway_ref, self._now())
            if change.payment.payment_type == "service_fee" and change.payment.commission_amount is None:
                provider = load_provider(unit.conn, change.payment.payee_id)
                commissioned = apply_commission(change.payment, provider.commission_percentage, self._now())
                change = PaymentChange(commissioned.payment, change.events)
            completed = self._commit_change(unit, payment, change)
        logger.info("Payment %s completed via %s", payment_id, gateway_ref)
        return completed

    def mark_failed(self, payment_id: str, reason: str) -> Payment:
        with self.database.transaction() as unit:
            payment = self._load(unit.conn, payment_id)
            failed = self._commit_change(unit, payment, fail_payment(payment, reason, self._now()))
        logger.info("Payment %s failed: %s", payment_id, reason)
        return failed

    def retry(self, payment_id: str) -> Payment:
        with self.database.transaction() as unit:
            payment = self._load(unit.conn, payment_id)
            other = None
            if payment.payment_type in CHARGE_KINDS:
                other = self._open_charge(unit.conn, payment.service_request_id, payment.payment_type)
            if other is not None and other.id != payment.id:
                raise ConflictError(f"Request already has an open {payment.payment_type}: {other.id}")
            retried = self._commit_change(unit, payment, retry_payment(payment, self._now()))
        logger.info("Payment %s retry %s/%s", payment_id, retried.retry_count, MAX_PAYMENT_RETRIES)
        return retried

    def refund(self, payment_id: str, reason: str, amount: Optional[Decimal] = None) -> Payment:
        """Refund a completed payment as a new ``refund`` ledger entry.

        The refundable amount follows ``refundable_amount`` for the request's
        current status; ``amount`` may lower it but never raise it.
        """
        with self.database.transaction() as unit:
            payment = self._load(unit.conn, payment_id)
            request = unit.conn.execute(
                "SELECT status FROM service_requests WHERE id = ?", (payment.service_request_id,)
            ).fetchone()
            if not request:
                raise NotFoundError("Service request not found")
            source, entry = refund_entries(payment, request["status"], reason, self._now(), amount)
            cursor = unit.conn.execute(
                """
                UPDATE payments SET status = 'refunded', refund_date = ?, refund_reason = ?, updated_at = ?
                WHERE id = ? AND status = 'completed' AND refund_date IS NULL
                """,
                (source.refund_date, source.refund_reason, source.updated_at, payment_id),
            )
            if cursor.rowcount == 0:
                current = self._load(unit.conn, payment_id)
                raise InvalidTransitionError(current.status, "refunded", f"payment {payment_id}")
            self._insert(unit.conn, entry.payment)
            for event in entry.events:
                unit.emit(event)
        logger.info("Payment %s refunded as %s", payment_id, entry.payment.id)
        return entry.payment

    def schedule_escrow_release(
        self,
        payment_id: str,
        release_date: str,
        tx: Optional[Transaction] = None,
    ) -> Payment:
        release_at = to_iso(parse_timestamp(release_date, field="release_date"))
        with self.database.transaction(tx) as unit:
            payment = self._load(unit.conn, payment_id)
            scheduled = self._commit_change(unit, payment, schedule_release(payment, release_at, self._now()))
        logger.info("Escrow release for %s scheduled at %s", payment_id, release_at)
        return scheduled

    def schedule_escrow_for_request(self, request_id: str, release_date: str, tx: Transaction) -> List[Payment]:
        rows = tx.conn.execute(
            """
            SELECT id FROM payments
            WHERE service_request_id = ? AND payment_type = 'service_fee' AND status = 'completed' AND is_escrow = 1
            """,
            (request_id,),
        ).fetchall()
        return [self.schedule_escrow_release(row["id"], release_date, tx=tx) for row in rows]

    def cancel_pending_for_request(self, request_id: str, reason: str, tx: Transaction) -> List[Payment]:
        rows = tx.conn.execute(
            "SELECT * FROM payments WHERE service_request_id = ? AND status = 'pending'",
            (request_id,),
        ).fetchall()
        cancelled = []
        for row in rows:
            payment = payment_from_row(row)
            cancelled.append(self._commit_change(tx, payment, cancel_payment(payment, reason, self._now())))
        return cancelled

    def has_completed_charge(self, request_id: str, tx: Transaction) -> bool:
        row = tx.conn.execute(
            """
            SELECT 1 FROM payments
            WHERE service_request_id = ? AND status = 'completed' AND payment_type != 'refund'
            LIMIT 1
            """,
            (request_id,),
        ).fetchone()
        return row is not None

    def due_escrow_releases(self, as_of: Optional[str] = None) -> List[Payment]:
        cutoff = to_iso(parse_timestamp(as_of, field="as_of")) if as_of else self._now()
        with self.database.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM payments
                WHERE is_escrow = 1 AND status = 'completed'
                  AND escrow_release_date IS NOT NULL AND escrow_release_date <= ?
                ORDER BY escrow_release_date
                """,
                (cutoff,),
            ).fetchall()
        return [payment_from_row(row) for row in rows]

    def get(self, payment_id: str) -> Payment:
        with self.database.read() as conn:
            return self._load(conn, payment_id)

    def list_for_request(self, request_id: str) -> List[Payment]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM payments WHERE service_request_id = ? ORDER BY created_at",
                (request_id,),
            ).fetchall()
        return [payment_from_row(row) for row in rows]

    def list_for_payer(self, payer_id: str, page: int = 1, limit: int = 10) -> List[Payment]:
        """Payment history for one payer, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be >= 1")
        with self.database.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM payments WHERE payer_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (payer_id, limit, (page - 1) * limit),
            ).fetchall()
        return [payment_from_row(row) for row in rows]


settlement_engine = PaymentSettlementEngine(database=database, coupons=coupon_ledger)
