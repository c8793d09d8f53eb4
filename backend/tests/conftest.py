import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level singletons open their database on import; keep them off the repo's data dir.
os.environ.setdefault("CAMARKET_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="camarket-"), "api.sqlite3"))

from camarket.services.coupon_ledger import CouponLedger
from camarket.services.database import Database
from camarket.services.directory import Directory
from camarket.services.event_emitter import EventEmitter
from camarket.services.lifecycle_manager import RequestLifecycleManager
from camarket.services.rating_aggregator import RatingAggregator
from camarket.services.settlement_engine import PaymentSettlementEngine


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def market(tmp_path, clock):
    emitter = EventEmitter()
    database = Database(db_path=str(tmp_path / "market.sqlite3"), emitter=emitter)
    coupons = CouponLedger(database=database, clock=clock)
    settlement = PaymentSettlementEngine(database=database, coupons=coupons, clock=clock)
    return SimpleNamespace(
        database=database,
        emitter=emitter,
        directory=Directory(database=database),
        coupons=coupons,
        settlement=settlement,
        lifecycle=RequestLifecycleManager(database=database, settlement=settlement, clock=clock, escrow_hold_days=7),
        ratings=RatingAggregator(database=database),
        clock=clock,
    )


@pytest.fixture
def provider(market):
    return market.directory.add_provider(name="Mehta & Co", commission_percentage=Decimal("8.00"))


@pytest.fixture
def offering(market, provider):
    return market.directory.add_offering(
        provider_id=provider.id,
        category="gst_return_filing",
        price=Decimal("1000.00"),
    )
