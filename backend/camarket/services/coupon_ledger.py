import json
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional
from uuid import uuid4

from camarket.models import (
    MAX_PAYMENT_RETRIES,
    SERVICE_CATEGORIES,
    ActorRef,
    Coupon,
    CouponEligibility,
    CouponQuote,
    CouponUsage,
    Metadata,
)
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
from camarket.services.errors import (
    ConflictError,
    CouponExhaustedError,
    CouponIneligibleError,
    NotFoundError,
    ValidationError,
)
from camarket.services.event_emitter import build_event
from camarket.services.money import ZERO, money_text, parse_money, round2

logger = logging.getLogger(__name__)


def coupon_from_row(row: sqlite3.Row) -> Coupon:
    service_types = json.loads(row["applicable_service_types_json"]) if row["applicable_service_types_json"] else None
    return Coupon(
        id=row["id"],
        code=row["code"],
        description=row["description"],
        discount_type=row["discount_type"],
        discount_value=parse_money(row["discount_value"]),
        max_discount_amount=parse_money(row["max_discount_amount"]),
        min_order_amount=parse_money(row["min_order_amount"]) or ZERO,
        max_usage_limit=row["max_usage_limit"],
        usage_count=row["usage_count"],
        max_usage_per_user=row["max_usage_per_user"],
        valid_from=row["valid_from"],
        valid_until=row["valid_until"],
        is_active=bool(row["is_active"]),
        applicable_service_types=service_types,
        metadata=load_metadata(row["metadata_json"]),
        created_at=row["created_at"],
    )


def usage_from_row(row: sqlite3.Row) -> CouponUsage:
    return CouponUsage(
        id=row["id"],
        coupon_id=row["coupon_id"],
        user_id=row["user_id"],
        service_request_id=row["service_request_id"],
        payment_id=row["payment_id"],
        original_amount=parse_money(row["original_amount"]),
        discount_amount=parse_money(row["discount_amount"]),
        final_amount=parse_money(row["final_amount"]),
        used_at=row["used_at"],
        metadata=load_metadata(row["metadata_json"]),
    )


def normalize_code(code: str) -> str:
    return code.strip().upper()


def compute_discount(coupon: Coupon, order_amount: Decimal) -> Decimal:
    order_amount = round2(order_amount)
    if order_amount <= ZERO:
        return ZERO
    if coupon.discount_type == "percentage":
        discount = order_amount * coupon.discount_value / Decimal(100)
        if coupon.max_discount_amount is not None and discount > coupon.max_discount_amount:
            discount = coupon.max_discount_amount
    else:
        discount = coupon.discount_value
    # A coupon can never make the payable amount negative.
    return min(round2(discount), order_amount)


class CouponLedger:
    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.database = database
        self.clock = clock

    def create_coupon(
        self,
        code: str,
        discount_value: Decimal,
        valid_until: str,
        discount_type: str = "percentage",
        valid_from: Optional[str] = None,
        description: str = "",
        max_discount_amount: Optional[Decimal] = None,
        min_order_amount: Decimal = ZERO,
        max_usage_limit: Optional[int] = None,
        max_usage_per_user: int = 1,
        applicable_service_types: Optional[List[str]] = None,
        metadata: Optional[Metadata] = None,
    ) -> Coupon:
        normalized = normalize_code(code)
        if not normalized:
            raise ValidationError("Coupon code is required")
        if discount_type not in {"percentage", "fixed"}:
            raise ValidationError("Invalid discount_type. Allowed: percentage, fixed")
        if discount_value < 0:
            raise ValidationError("discount_value must be >= 0")
        if discount_type == "percentage" and discount_value > 100:
            raise ValidationError("Percentage discount cannot exceed 100")
        if max_usage_limit is not None and max_usage_limit < 0:
            raise ValidationError("max_usage_limit must be >= 0")
        if max_usage_per_user < 1:
            raise ValidationError("max_usage_per_user must be >= 1")
        for category in applicable_service_types or []:
            if category not in SERVICE_CATEGORIES:
                raise ValidationError(f"Unknown service category: {category}")

        starts = parse_timestamp(valid_from, field="valid_from") if valid_from else self.clock()
        ends = parse_timestamp(valid_until, field="valid_until")
        if ends <= starts:
            raise ValidationError("valid_until must be after valid_from")

        coupon = Coupon(
            id=f"cpn_{uuid4().hex[:10]}",
            code=normalized,
            description=description,
            discount_type=discount_type,
            discount_value=round2(discount_value),
            max_discount_amount=round2(max_discount_amount) if max_discount_amount is not None else None,
            min_order_amount=round2(min_order_amount),
            max_usage_limit=max_usage_limit,
            usage_count=0,
            max_usage_per_user=max_usage_per_user,
            valid_from=to_iso(starts),
            valid_until=to_iso(ends),
            is_active=True,
            applicable_service_types=applicable_service_types,
            metadata=metadata or Metadata(),
            created_at=to_iso(self.clock()),
        )
        with self.database.transaction() as tx:
            exists = tx.conn.execute("SELECT 1 FROM coupons WHERE code = ?", (coupon.code,)).fetchone()
            if exists:
                raise ConflictError(f"Coupon code {coupon.code} already exists")
            tx.conn.execute(
                """
                INSERT INTO coupons (
                    id, code, description, discount_type, discount_value, max_discount_amount,
                    min_order_amount, max_usage_limit, usage_count, max_usage_per_user,
                    valid_from, valid_until, is_active, applicable_service_types_json, metadata_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    coupon.id,
                    coupon.code,
                    coupon.description,
                    coupon.discount_type,
                    money_text(coupon.discount_value),
                    money_text(coupon.max_discount_amount),
                    money_text(coupon.min_order_amount),
                    coupon.max_usage_limit,
                    coupon.max_usage_per_user,
                    coupon.valid_from,
                    coupon.valid_until,
                    json.dumps(applicable_service_types) if applicable_service_types is not None else None,
                    dump_metadata(coupon.metadata),
                    coupon.created_at,
                ),
            )
        logger.info("Coupon %s created (%s %s)", coupon.code, coupon.discount_type, coupon.discount_value)
        return coupon

    def _load_by_code(self, conn: sqlite3.Connection, code: str) -> Coupon:
        row = conn.execute("SELECT * FROM coupons WHERE code = ?", (normalize_code(code),)).fetchone()
        if not row:
            raise NotFoundError("Coupon not found")
        return coupon_from_row(row)

    def get_by_code(self, code: str) -> Coupon:
        with self.database.read() as conn:
            return self._load_by_code(conn, code)

    def deactivate(self, code: str) -> Coupon:
        with self.database.transaction() as tx:
            coupon = self._load_by_code(tx.conn, code)
            tx.conn.execute("UPDATE coupons SET is_active = 0 WHERE id = ?", (coupon.id,))
            logger.info("Coupon %s deactivated", coupon.code)
            return self._load_by_code(tx.conn, code)

    def list_usages(self, code: str) -> List[CouponUsage]:
        with self.database.read() as conn:
            coupon = self._load_by_code(conn, code)
            rows = conn.execute(
                "SELECT * FROM coupon_usages WHERE coupon_id = ? ORDER BY used_at",
                (coupon.id,),
            ).fetchall()
        return [usage_from_row(row) for row in rows]

    def list_usages_for_user(self, user_id: str) -> List[CouponUsage]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM coupon_usages WHERE user_id = ? ORDER BY used_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [usage_from_row(row) for row in rows]

    def list_coupons(self, is_active: Optional[bool] = None, search: Optional[str] = None) -> List[Coupon]:
        query = "SELECT * FROM coupons WHERE 1 = 1"
        params: List[object] = []
        if is_active is not None:
            query += " AND is_active = ?"
            params.append(1 if is_active else 0)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            query += " AND (code LIKE ? OR description LIKE ?)"
            params.extend([pattern, pattern])
        query += " ORDER BY created_at DESC, rowid DESC"
        with self.database.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [coupon_from_row(row) for row in rows]

    def list_active_for_user(self, user_id: str) -> List[Coupon]:
        """Coupons the user could still redeem right now, biggest discount first.

        Order amount and category are unknown here, so only the time window
        and the usage caps are applied.
        """
        now = self.clock()
        available = []
        with self.database.read() as conn:
            rows = conn.execute("SELECT * FROM coupons WHERE is_active = 1").fetchall()
            for row in rows:
                coupon = coupon_from_row(row)
                if not parse_timestamp(coupon.valid_from) <= now <= parse_timestamp(coupon.valid_until):
                    continue
                if coupon.max_usage_limit is not None and coupon.usage_count >= coupon.max_usage_limit:
                    continue
                if self._user_usage_count(conn, coupon.id, user_id) >= coupon.max_usage_per_user:
                    continue
                available.append(coupon)
        return sorted(available, key=lambda coupon: (-coupon.discount_value, coupon.code))

    def update_coupon(
        self,
        code: str,
        description: Optional[str] = None,
        discount_value: Optional[Decimal] = None,
        max_discount_amount: Optional[Decimal] = None,
        min_order_amount: Optional[Decimal] = None,
        max_usage_limit: Optional[int] = None,
        max_usage_per_user: Optional[int] = None,
        valid_from: Optional[str] = None,
        valid_until: Optional[str] = None,
        applicable_service_types: Optional[List[str]] = None,
    ) -> Coupon:
        """Change coupon terms. The code and discount type are fixed once issued."""
        if discount_value is not None and discount_value < 0:
            raise ValidationError("discount_value must be >= 0")
        if max_usage_limit is not None and max_usage_limit < 0:
            raise ValidationError("max_usage_limit must be >= 0")
        if max_usage_per_user is not None and max_usage_per_user < 1:
            raise ValidationError("max_usage_per_user must be >= 1")
        for category in applicable_service_types or []:
            if category not in SERVICE_CATEGORIES:
                raise ValidationError(f"Unknown service category: {category}")

        with self.database.transaction() as tx:
            current = self._load_by_code(tx.conn, code)
            starts = parse_timestamp(valid_from or current.valid_from, field="valid_from")
            ends = parse_timestamp(valid_until or current.valid_until, field="valid_until")
            if ends <= starts:
                raise ValidationError("valid_until must be after valid_from")
            updated = current.model_copy(
                update={
                    "description": current.description if description is None else description,
                    "discount_value": current.discount_value if discount_value is None else round2(discount_value),
                    "max_discount_amount": (
                        current.max_discount_amount if max_discount_amount is None else round2(max_discount_amount)
                    ),
                    "min_order_amount": current.min_order_amount if min_order_amount is None else round2(min_order_amount),
                    "max_usage_limit": current.max_usage_limit if max_usage_limit is None else max_usage_limit,
                    "max_usage_per_user": (
                        current.max_usage_per_user if max_usage_per_user is None else max_usage_per_user
                    ),
                    "valid_from": to_iso(starts),
                    "valid_until": to_iso(ends),
                    "applicable_service_types": (
                        current.applicable_service_types if applicable_service_types is None else applicable_service_types
                    ),
                }
            )
            if updated.discount_type == "percentage" and updated.discount_value > 100:
                raise ValidationError("Percentage discount cannot exceed 100")
            if updated.max_usage_limit is not None and updated.max_usage_limit < current.usage_count:
                raise ValidationError(f"max_usage_limit cannot drop below the {current.usage_count} redemptions made")
            tx.conn.execute(
                """
                UPDATE coupons
                SET description = ?, discount_value = ?, max_discount_amount = ?, min_order_amount = ?,
                    max_usage_limit = ?, max_usage_per_user = ?, valid_from = ?, valid_until = ?,
                    applicable_service_types_json = ?
                WHERE id = ?
                """,
                (
                    updated.description,
                    money_text(updated.discount_value),
                    money_text(updated.max_discount_amount),
                    money_text(updated.min_order_amount),
                    updated.max_usage_limit,
                    updated.max_usage_per_user,
                    updated.valid_from,
                    updated.valid_until,
                    json.dumps(updated.applicable_service_types)
                    if updated.applicable_service_types is not None
                    else None,
                    current.id,
                ),
            )
            logger.info("Coupon %s updated", current.code)
            return self._load_by_code(tx.conn, code)

    def _user_usage_count(self, conn: sqlite3.Connection, coupon_id: str, user_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM coupon_usages WHERE coupon_id = ? AND user_id = ?",
            (coupon_id, user_id),
        ).fetchone()
        return int(row["total"])

    def _check(
        self,
        conn: sqlite3.Connection,
        coupon: Coupon,
        user_id: str,
        order_amount: Decimal,
        service_category: Optional[str],
        reusing: bool = False,
    ) -> CouponEligibility:
        """Eligibility in a fixed reason order.

        ``reusing`` skips the usage caps for a redemption that is already
        counted and is only moving to a new payment.
        """
        now = self.clock()
        if not coupon.is_active:
            return CouponEligibility(eligible=False, reason="inactive")
        if now < parse_timestamp(coupon.valid_from):
            return CouponEligibility(eligible=False, reason="not_yet_valid")
        if now > parse_timestamp(coupon.valid_until):
            return CouponEligibility(eligible=False, reason="expired")
        if not reusing and coupon.max_usage_limit is not None and coupon.usage_count >= coupon.max_usage_limit:
            return CouponEligibility(eligible=False, reason="usage_limit_reached")
        if order_amount < coupon.min_order_amount:
            return CouponEligibility(eligible=False, reason="below_min_order")
        if coupon.applicable_service_types is not None and service_category not in coupon.applicable_service_types:
            return CouponEligibility(eligible=False, reason="category_not_applicable")
        if not reusing and self._user_usage_count(conn, coupon.id, user_id) >= coupon.max_usage_per_user:
            return CouponEligibility(eligible=False, reason="per_user_limit_reached")
        return CouponEligibility(eligible=True)

    def validate(
        self,
        coupon: Coupon,
        user_id: str,
        order_amount: Decimal,
        service_category: Optional[str] = None,
    ) -> CouponEligibility:
        with self.database.read() as conn:
            return self._check(conn, coupon, user_id, order_amount, service_category)

    def compute_discount(self, coupon: Coupon, order_amount: Decimal) -> Decimal:
        return compute_discount(coupon, order_amount)

    def preview(
        self,
        code: str,
        user_id: str,
        order_amount: Decimal,
        service_category: Optional[str] = None,
    ) -> CouponQuote:
        order_amount = round2(order_amount)
        with self.database.read() as conn:
            coupon = self._load_by_code(conn, code)
            eligibility = self._check(conn, coupon, user_id, order_amount, service_category)
        discount = compute_discount(coupon, order_amount) if eligibility.eligible else ZERO
        return CouponQuote(
            code=coupon.code,
            eligible=eligibility.eligible,
            reason=eligibility.reason,
            original_amount=order_amount,
            discount_amount=discount,
            final_amount=order_amount - discount,
        )

    def _payment_released(self, conn: sqlite3.Connection, payment_id: Optional[str]) -> bool:
        # A redemption is freed when its payment was cancelled or failed with no retries left.
        if not payment_id:
            return False
        row = conn.execute("SELECT status, retry_count FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if not row:
            return False
        return row["status"] == "cancelled" or (
            row["status"] == "failed" and row["retry_count"] >= MAX_PAYMENT_RETRIES
        )

    def _transfer_usage(
        self,
        unit: Transaction,
        coupon: Coupon,
        usage: CouponUsage,
        order_amount: Decimal,
        service_category: Optional[str],
        payment_id: Optional[str],
    ) -> CouponUsage:
        eligibility = self._check(unit.conn, coupon, usage.user_id, order_amount, service_category, reusing=True)
        if not eligibility.eligible:
            raise CouponIneligibleError(eligibility.reason or "ineligible")
        discount = compute_discount(coupon, order_amount)
        moved = usage.model_copy(
            update={
                "payment_id": payment_id,
                "original_amount": order_amount,
                "discount_amount": discount,
                "final_amount": order_amount - discount,
                "used_at": to_iso(self.clock()),
            }
        )
        cursor = unit.conn.execute(
            """
            UPDATE coupon_usages
            SET payment_id = ?, original_amount = ?, discount_amount = ?, final_amount = ?, used_at = ?
            WHERE id = ? AND payment_id = ?
            """,
            (
                moved.payment_id,
                money_text(moved.original_amount),
                money_text(moved.discount_amount),
                money_text(moved.final_amount),
                moved.used_at,
                usage.id,
                usage.payment_id,
            ),
        )
        if cursor.rowcount == 0:
            raise ConflictError("Coupon redemption changed concurrently")
        unit.emit(
            build_event(
                "coupon.redeemed",
                ActorRef.client(usage.user_id),
                request_id=usage.service_request_id,
                payload={
                    "coupon_code": coupon.code,
                    "discount_amount": str(discount),
                    "payment_id": payment_id,
                    "previous_payment_id": usage.payment_id,
                },
                timestamp=moved.used_at,
            )
        )
        return moved

    def validate_and_reserve(
        self,
        code: str,
        user_id: str,
        order_amount: Decimal,
        service_category: Optional[str],
        service_request_id: str,
        payment_id: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> CouponUsage:
        """Redeem a coupon once for a service request.

        Validation, the usage-count increment and the ledger insert happen in
        one transaction; concurrent redemptions near ``max_usage_limit`` can
        never push the count past the cap. A redemption held by a cancelled
        or permanently failed payment moves to the new payment instead of
        counting again.
        """
        order_amount = round2(order_amount)
        with self.database.transaction(tx) as unit:
            conn = unit.conn
            coupon = self._load_by_code(conn, code)
            if not conn.execute("SELECT 1 FROM service_requests WHERE id = ?", (service_request_id,)).fetchone():
                raise NotFoundError("Service request not found")

            already = conn.execute(
                "SELECT * FROM coupon_usages WHERE coupon_id = ? AND service_request_id = ?",
                (coupon.id, service_request_id),
            ).fetchone()
            if already:
                if not self._payment_released(conn, already["payment_id"]):
                    raise CouponIneligibleError("already_redeemed", "Coupon already redeemed for this request")
                usage = self._transfer_usage(
                    unit, coupon, usage_from_row(already), order_amount, service_category, payment_id
                )
                logger.info(
                    "Coupon %s moved from payment %s to %s for request %s",
                    coupon.code,
                    already["payment_id"],
                    payment_id,
                    service_request_id,
                )
                return usage

            eligibility = self._check(conn, coupon, user_id, order_amount, service_category)
            if not eligibility.eligible:
                if eligibility.reason == "usage_limit_reached":
                    logger.info("Coupon %s exhausted for request %s", coupon.code, service_request_id)
                    raise CouponExhaustedError()
                raise CouponIneligibleError(eligibility.reason or "ineligible")

            cursor = conn.execute(
                """
                UPDATE coupons SET usage_count = usage_count + 1
                WHERE id = ? AND (max_usage_limit IS NULL OR usage_count < max_usage_limit)
                """,
                (coupon.id,),
            )
            if cursor.rowcount == 0:
                logger.info("Coupon %s exhausted for request %s", coupon.code, service_request_id)
                raise CouponExhaustedError()

            discount = compute_discount(coupon, order_amount)
            usage = CouponUsage(
                id=f"cu_{uuid4().hex[:10]}",
                coupon_id=coupon.id,
                user_id=user_id,
                service_request_id=service_request_id,
                payment_id=payment_id,
                original_amount=order_amount,
                discount_amount=discount,
                final_amount=order_amount - discount,
                used_at=to_iso(self.clock()),
            )
            conn.execute(
                """
                INSERT INTO coupon_usages (
                    id, coupon_id, user_id, service_request_id, payment_id,
                    original_amount, discount_amount, final_amount, used_at, metadata_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    usage.id,
                    usage.coupon_id,
                    usage.user_id,
                    usage.service_request_id,
                    usage.payment_id,
                    money_text(usage.original_amount),
                    money_text(usage.discount_amount),
                    money_text(usage.final_amount),
                    usage.used_at,
                    dump_metadata(usage.metadata),
                ),
            )
            unit.emit(
                build_event(
                    "coupon.redeemed",
                    ActorRef.client(user_id),
                    request_id=service_request_id,
                    payload={
                        "coupon_code": coupon.code,
                        "discount_amount": str(discount),
                        "payment_id": payment_id,
                    },
                    timestamp=usage.used_at,
                )
            )
        logger.info("Coupon %s redeemed by %s for request %s", coupon.code, user_id, service_request_id)
        return usage


coupon_ledger = CouponLedger(database=database)
