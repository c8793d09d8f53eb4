import logging
import sqlite3
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from camarket.models import SERVICE_CATEGORIES, Offering, Provider, Review
from camarket.services.database import Database, database, to_iso, utcnow
from camarket.services.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from camarket.services.money import money_text, parse_money, round2
from camarket.settings import DEFAULT_COMMISSION_PERCENTAGE, DEFAULT_CURRENCY

logger = logging.getLogger(__name__)


def provider_from_row(row: sqlite3.Row) -> Provider:
    return Provider(
        id=row["id"],
        name=row["name"],
        status=row["status"],
        commission_percentage=Decimal(row["commission_percentage"]),
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def offering_from_row(row: sqlite3.Row) -> Offering:
    return Offering(
        id=row["id"],
        provider_id=row["provider_id"],
        category=row["category"],
        price=parse_money(row["price"]),
        currency=row["currency"],
        is_active=bool(row["is_active"]),
    )


def review_from_row(row: sqlite3.Row) -> Review:
    return Review(
        id=row["id"],
        provider_id=row["provider_id"],
        user_id=row["user_id"],
        service_request_id=row["service_request_id"],
        rating=row["rating"],
        comment=row["comment"],
        is_verified=bool(row["is_verified"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def load_provider(conn: sqlite3.Connection, provider_id: str) -> Provider:
    row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
    if not row:
        raise NotFoundError("Provider not found")
    return provider_from_row(row)


def load_offering(conn: sqlite3.Connection, offering_id: str) -> Optional[Offering]:
    row = conn.execute("SELECT * FROM offerings WHERE id = ?", (offering_id,)).fetchone()
    return offering_from_row(row) if row else None


class Directory:
    """Providers, their catalog offerings and the reviews written about them."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def add_provider(
        self,
        name: str,
        commission_percentage: Optional[Decimal] = None,
        created_by: Optional[str] = None,
        status: str = "active",
    ) -> Provider:
        if not name.strip():
            raise ValidationError("Provider name is required")
        percentage = DEFAULT_COMMISSION_PERCENTAGE if commission_percentage is None else commission_percentage
        if percentage < 0 or percentage > 100:
            raise ValidationError("commission_percentage must be between 0 and 100")
        provider = Provider(
            id=f"ca_{uuid4().hex[:10]}",
            name=name.strip(),
            status=status,
            commission_percentage=round2(percentage),
            created_by=created_by,
            created_at=to_iso(utcnow()),
        )
        with self.database.transaction() as tx:
            tx.conn.execute(
                """
                INSERT INTO providers (id, name, status, commission_percentage, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    provider.id,
                    provider.name,
                    provider.status,
                    money_text(provider.commission_percentage),
                    provider.created_by,
                    provider.created_at,
                ),
            )
        return provider

    def get_provider(self, provider_id: str) -> Provider:
        with self.database.read() as conn:
            return load_provider(conn, provider_id)

    def set_provider_status(self, provider_id: str, status: str) -> Provider:
        if status not in {"active", "inactive", "suspended", "rejected", "pending_registration"}:
            raise ValidationError(f"Unknown provider status: {status}")
        with self.database.transaction() as tx:
            load_provider(tx.conn, provider_id)
            tx.conn.execute("UPDATE providers SET status = ? WHERE id = ?", (status, provider_id))
            return load_provider(tx.conn, provider_id)

    def set_commission(self, provider_id: str, commission_percentage: Decimal) -> Provider:
        if commission_percentage < 0 or commission_percentage > 100:
            raise ValidationError("commission_percentage must be between 0 and 100")
        with self.database.transaction() as tx:
            load_provider(tx.conn, provider_id)
            tx.conn.execute(
                "UPDATE providers SET commission_percentage = ? WHERE id = ?",
                (money_text(commission_percentage), provider_id),
            )
            logger.info("Commission for %s set to %s%%", provider_id, commission_percentage)
            return load_provider(tx.conn, provider_id)

    def add_offering(
        self,
        provider_id: str,
        category: str,
        price: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> Offering:
        if category not in SERVICE_CATEGORIES:
            raise ValidationError(f"Unknown service category: {category}")
        offering = Offering(
            id=f"off_{uuid4().hex[:10]}",
            provider_id=provider_id,
            category=category,
            price=round2(price) if price is not None else None,
            currency=(currency or DEFAULT_CURRENCY).upper(),
        )
        with self.database.transaction() as tx:
            load_provider(tx.conn, provider_id)
            tx.conn.execute(
                """
                INSERT INTO offerings (id, provider_id, category, price, currency, is_active)
                VALUES (?, ?, ?, ?, ?, 1)
                """,
                (offering.id, offering.provider_id, offering.category, money_text(offering.price), offering.currency),
            )
        return offering

    def get_offering(self, offering_id: str) -> Offering:
        with self.database.read() as conn:
            offering = load_offering(conn, offering_id)
        if not offering:
            raise NotFoundError("Offering not found")
        return offering

    def set_offering_active(self, offering_id: str, is_active: bool) -> Offering:
        with self.database.transaction() as tx:
            cursor = tx.conn.execute(
                "UPDATE offerings SET is_active = ? WHERE id = ?",
                (1 if is_active else 0, offering_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Offering not found")
            return load_offering(tx.conn, offering_id)

    def _is_verified_engagement(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        user_id: str,
        service_request_id: Optional[str],
    ) -> bool:
        if not service_request_id:
            return False
        row = conn.execute(
            "SELECT user_id, ca_id, status FROM service_requests WHERE id = ?",
            (service_request_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("Service request not found")
        return row["status"] == "completed" and row["ca_id"] == provider_id and row["user_id"] == user_id

    def add_review(
        self,
        provider_id: str,
        user_id: str,
        rating: int,
        comment: str = "",
        service_request_id: Optional[str] = None,
    ) -> Review:
        if rating < 1 or rating > 5:
            raise ValidationError("rating must be between 1 and 5")
        now = to_iso(utcnow())
        with self.database.transaction() as tx:
            load_provider(tx.conn, provider_id)
            verified = self._is_verified_engagement(tx.conn, provider_id, user_id, service_request_id)
            if service_request_id and tx.conn.execute(
                "SELECT 1 FROM reviews WHERE user_id = ? AND service_request_id = ?",
                (user_id, service_request_id),
            ).fetchone():
                raise ConflictError("A review for this request already exists; edit it instead")
            review = Review(
                id=f"rev_{uuid4().hex[:10]}",
                provider_id=provider_id,
                user_id=user_id,
                service_request_id=service_request_id,
                rating=rating,
                comment=comment,
                is_verified=verified,
                created_at=now,
                updated_at=now,
            )
            tx.conn.execute(
                """
                INSERT INTO reviews (id, provider_id, user_id, service_request_id, rating, comment, is_verified, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    review.id,
                    review.provider_id,
                    review.user_id,
                    review.service_request_id,
                    review.rating,
                    review.comment,
                    1 if review.is_verified else 0,
                    review.created_at,
                    review.updated_at,
                ),
            )
        return review

    def _load_own_review(self, conn: sqlite3.Connection, review_id: str, user_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
        if not row:
            raise NotFoundError("Review not found")
        if row["user_id"] != user_id:
            raise PermissionDeniedError("Only the author can change this review")
        return row

    def update_review(
        self,
        review_id: str,
        user_id: str,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> Review:
        if rating is not None and (rating < 1 or rating > 5):
            raise ValidationError("rating must be between 1 and 5")
        with self.database.transaction() as tx:
            row = self._load_own_review(tx.conn, review_id, user_id)
            tx.conn.execute(
                "UPDATE reviews SET rating = ?, comment = ?, updated_at = ? WHERE id = ?",
                (
                    rating if rating is not None else row["rating"],
                    comment if comment is not None else row["comment"],
                    to_iso(utcnow()),
                    review_id,
                ),
            )
            updated = tx.conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
            return review_from_row(updated)

    def delete_review(self, review_id: str, user_id: str) -> None:
        with self.database.transaction() as tx:
            self._load_own_review(tx.conn, review_id, user_id)
            tx.conn.execute("DELETE FROM reviews WHERE id = ?", (review_id,))

    def list_reviews(self, provider_id: str) -> List[Review]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM reviews WHERE provider_id = ? ORDER BY created_at DESC",
                (provider_id,),
            ).fetchall()
        return [review_from_row(row) for row in rows]


directory = Directory(database=database)
