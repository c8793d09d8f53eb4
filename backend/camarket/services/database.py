import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from camarket.models import DomainEvent, Metadata
from camarket.services.errors import ValidationError
from camarket.services.event_emitter import EventEmitter, event_emitter
from camarket.settings import DB_BUSY_TIMEOUT_SECONDS, DB_PATH

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS providers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    commission_percentage TEXT NOT NULL,
    created_by TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS offerings (
    id TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL REFERENCES providers(id),
    category TEXT NOT NULL,
    price TEXT,
    currency TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS service_requests (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    ca_id TEXT REFERENCES providers(id),
    ca_service_id TEXT NOT NULL REFERENCES offerings(id),
    status TEXT NOT NULL DEFAULT 'pending',
    purpose TEXT NOT NULL DEFAULT '',
    additional_notes TEXT NOT NULL DEFAULT '',
    cancellation_reason TEXT,
    cancellation_fee_due INTEGER NOT NULL DEFAULT 0,
    escalated_at TEXT,
    completed_at TEXT,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (status != 'pending' OR ca_id IS NULL),
    CHECK (status NOT IN ('accepted', 'in_progress', 'completed') OR ca_id IS NOT NULL)
);

CREATE TABLE IF NOT EXISTS request_status_history (
    id TEXT PRIMARY KEY,
    service_request_id TEXT NOT NULL REFERENCES service_requests(id),
    actor_kind TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    service_request_id TEXT NOT NULL REFERENCES service_requests(id),
    payer_id TEXT NOT NULL,
    payee_id TEXT,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    payment_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    gateway_payment_id TEXT,
    is_escrow INTEGER NOT NULL DEFAULT 0,
    escrow_release_date TEXT,
    commission_percentage TEXT,
    commission_amount TEXT,
    net_amount TEXT,
    coupon_id TEXT REFERENCES coupons(id),
    discount_amount TEXT NOT NULL DEFAULT '0.00',
    original_amount TEXT NOT NULL,
    payment_date TEXT,
    refund_date TEXT,
    refund_reason TEXT,
    failure_reason TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0 AND retry_count <= 3),
    last_retry_at TEXT,
    refund_of_payment_id TEXT UNIQUE REFERENCES payments(id),
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS coupons (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    discount_type TEXT NOT NULL,
    discount_value TEXT NOT NULL,
    max_discount_amount TEXT,
    min_order_amount TEXT NOT NULL DEFAULT '0.00',
    max_usage_limit INTEGER,
    usage_count INTEGER NOT NULL DEFAULT 0,
    max_usage_per_user INTEGER NOT NULL DEFAULT 1,
    valid_from TEXT NOT NULL,
    valid_until TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    applicable_service_types_json TEXT,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    CHECK (max_usage_limit IS NULL OR usage_count <= max_usage_limit)
);

CREATE TABLE IF NOT EXISTS coupon_usages (
    id TEXT PRIMARY KEY,
    coupon_id TEXT NOT NULL REFERENCES coupons(id),
    user_id TEXT NOT NULL,
    service_request_id TEXT NOT NULL REFERENCES service_requests(id),
    payment_id TEXT REFERENCES payments(id) DEFERRABLE INITIALLY DEFERRED,
    original_amount TEXT NOT NULL,
    discount_amount TEXT NOT NULL,
    final_amount TEXT NOT NULL,
    used_at TEXT NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    UNIQUE (coupon_id, service_request_id)
);

CREATE TABLE IF NOT EXISTS reviews (
    id TEXT PRIMARY KEY,
    provider_id TEXT NOT NULL REFERENCES providers(id),
    user_id TEXT NOT NULL,
    service_request_id TEXT REFERENCES service_requests(id),
    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    comment TEXT NOT NULL DEFAULT '',
    is_verified INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, service_request_id)
);

CREATE INDEX IF NOT EXISTS idx_service_requests_user ON service_requests (user_id);
CREATE INDEX IF NOT EXISTS idx_service_requests_ca ON service_requests (ca_id);
CREATE INDEX IF NOT EXISTS idx_service_requests_status ON service_requests (status);
CREATE INDEX IF NOT EXISTS idx_history_request ON request_status_history (service_request_id);
CREATE INDEX IF NOT EXISTS idx_payments_request ON payments (service_request_id);
CREATE INDEX IF NOT EXISTS idx_payments_status ON payments (status);
CREATE INDEX IF NOT EXISTS idx_payments_escrow ON payments (is_escrow, escrow_release_date);
CREATE INDEX IF NOT EXISTS idx_payments_payer ON payments (payer_id, created_at);
CREATE UNIQUE INDEX IF NOT EXISTS uq_payments_open_charge ON payments (service_request_id, payment_type)
    WHERE payment_type != 'refund' AND status IN ('pending', 'completed');
CREATE INDEX IF NOT EXISTS idx_coupon_usages_user ON coupon_usages (coupon_id, user_id);
CREATE INDEX IF NOT EXISTS idx_coupon_usages_used_by ON coupon_usages (user_id, used_at);
CREATE INDEX IF NOT EXISTS idx_reviews_provider ON reviews (provider_id);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str, *, field: str = "timestamp") -> datetime:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field}; expected ISO-8601 date or datetime") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def dump_metadata(metadata: Metadata) -> str:
    return json.dumps(metadata.model_dump(), sort_keys=True)


def load_metadata(raw: Optional[str]) -> Metadata:
    try:
        data = json.loads(raw or "{}")
        if not data:
            return Metadata()
        return Metadata.model_validate(data)
    except ValueError:
        logger.warning("Discarding malformed metadata: %r", raw)
        return Metadata()


@dataclass
class Transaction:
    """One atomic unit of work; events are published only after COMMIT."""

    conn: sqlite3.Connection
    events: List[DomainEvent] = field(default_factory=list)

    def emit(self, event: DomainEvent) -> None:
        self.events.append(event)


class Database:
    def __init__(
        self,
        db_path: str,
        emitter: Optional[EventEmitter] = None,
        busy_timeout: int = DB_BUSY_TIMEOUT_SECONDS,
    ) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self.emitter = emitter or EventEmitter()
        self.busy_timeout = busy_timeout
        self._init_db()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, outer: Optional[Transaction] = None) -> Iterator[Transaction]:
        if outer is not None:
            # Join the caller's unit of work; it owns COMMIT and publishing.
            yield outer
            return

        conn = self.connect()
        try:
            # IMMEDIATE takes the write lock up front so check-then-write runs serialised.
            conn.execute("BEGIN IMMEDIATE")
            tx = Transaction(conn=conn)
            try:
                yield tx
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
        self.emitter.publish(tx.events)


database = Database(db_path=DB_PATH, emitter=event_emitter)
