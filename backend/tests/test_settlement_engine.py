import sqlite3
import threading
from decimal import Decimal

import pytest

from camarket.models import ActorRef
from camarket.services.errors import (
    ConflictError,
    CouponIneligibleError,
    InvalidTransitionError,
    RetryExhaustedError,
    ValidationError,
)
from camarket.services.settlement_engine import apply_commission, refundable_amount


@pytest.fixture
def accepted_request(market, provider, offering):
    request = market.lifecycle.submit(user_id="user_1", ca_service_id=offering.id)
    return market.lifecycle.accept(request.id, provider.id)


def test_completion_applies_provider_commission(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    assert payment.status == "pending"
    assert payment.payee_id == accepted_request.ca_id
    assert payment.currency == "INR"

    completed = market.settlement.mark_completed(payment.id, "gw_001")

    assert completed.status == "completed"
    assert completed.gateway_payment_id == "gw_001"
    assert completed.commission_percentage == Decimal("8.00")
    assert completed.commission_amount == Decimal("80.00")
    assert completed.net_amount == Decimal("920.00")


def test_commission_is_pinned_once_applied(market, provider, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    market.settlement.apply_commission(payment.id)
    market.directory.set_commission(provider.id, Decimal("20"))

    again = market.settlement.apply_commission(payment.id)
    completed = market.settlement.mark_completed(payment.id, "gw_002")

    assert again.commission_amount == Decimal("80.00")
    assert completed.commission_amount == Decimal("80.00")
    assert completed.net_amount == Decimal("920.00")


def test_commission_rounds_half_even(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    change = apply_commission(payment, Decimal("0.0125"), "2026-03-01T09:00:00+00:00")
    assert change.payment.commission_amount == Decimal("0.12")
    assert change.payment.net_amount == Decimal("999.88")
    assert market.settlement.get(payment.id).commission_amount is None


def test_commission_only_applies_to_service_fees(market, accepted_request):
    booking = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    assert booking.payee_id is None
    with pytest.raises(ValidationError):
        market.settlement.apply_commission(booking.id)


def test_retry_is_capped_at_three(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("500"))
    for attempt in range(1, 4):
        market.settlement.mark_failed(payment.id, "card declined")
        retried = market.settlement.retry(payment.id)
        assert retried.status == "pending"
        assert retried.retry_count == attempt
    market.settlement.mark_failed(payment.id, "card declined")

    with pytest.raises(RetryExhaustedError):
        market.settlement.retry(payment.id)
    assert market.settlement.get(payment.id).retry_count == 3


def test_retry_requires_failed_payment(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("500"))
    with pytest.raises(InvalidTransitionError):
        market.settlement.retry(payment.id)


def test_refund_creates_single_linked_entry(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    market.settlement.mark_completed(payment.id, "gw_003")

    entry = market.settlement.refund(payment.id, "service not delivered")

    assert entry.payment_type == "refund"
    assert entry.status == "pending"
    assert entry.refund_of_payment_id == payment.id
    assert entry.payee_id == "user_1"
    assert entry.amount == Decimal("500.00")
    assert entry.original_amount == Decimal("1000.00")
    source = market.settlement.get(payment.id)
    assert source.status == "refunded"
    assert source.refund_reason == "service not delivered"
    with pytest.raises(InvalidTransitionError):
        market.settlement.refund(payment.id, "again")
    with pytest.raises(ValidationError):
        market.settlement.refund(entry.id, "refund of a refund")
    event_types = [event.type for event in market.emitter.recent(request_id=accepted_request.id)]
    assert "payment.refunded" in event_types
    assert "gateway.refund_requested" in event_types


def test_concurrent_refunds_create_one_entry(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    market.settlement.mark_completed(payment.id, "gw_004")
    barrier = threading.Barrier(4)
    entries = []
    errors = []

    def attempt():
        barrier.wait()
        try:
            entries.append(market.settlement.refund(payment.id, "duplicate click"))
        except InvalidTransitionError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=attempt) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(entries) == 1
    assert len(errors) == 3
    refunds = [row for row in market.settlement.list_for_request(accepted_request.id) if row.payment_type == "refund"]
    assert len(refunds) == 1


def test_refund_requires_completed_payment(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    with pytest.raises(InvalidTransitionError):
        market.settlement.refund(payment.id, "too early")


def test_charge_with_coupon_records_discount(market, accepted_request):
    market.coupons.create_coupon(code="gst10", discount_value=Decimal("10"), valid_until="2026-12-31T00:00:00Z")

    payment = market.settlement.initiate_charge(
        accepted_request.id, "service_fee", Decimal("1000"), coupon_code="GST10"
    )

    assert payment.original_amount == Decimal("1000.00")
    assert payment.discount_amount == Decimal("100.00")
    assert payment.amount == Decimal("900.00")
    usages = market.coupons.list_usages("GST10")
    assert [usage.payment_id for usage in usages] == [payment.id]


def test_ineligible_coupon_rolls_back_charge(market, accepted_request):
    market.coupons.create_coupon(
        code="BIGORDER",
        discount_value=Decimal("500"),
        discount_type="fixed",
        min_order_amount=Decimal("5000"),
        valid_until="2026-12-31T00:00:00Z",
    )
    with pytest.raises(CouponIneligibleError) as exc:
        market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"), coupon_code="BIGORDER")
    assert exc.value.reason == "below_min_order"
    assert market.settlement.list_for_request(accepted_request.id) == []
    assert market.coupons.get_by_code("BIGORDER").usage_count == 0


def test_charge_guards(market, offering, accepted_request):
    with pytest.raises(ValidationError):
        market.settlement.initiate_charge(accepted_request.id, "refund", Decimal("10"))
    with pytest.raises(ValidationError):
        market.settlement.initiate_charge(accepted_request.id, "cancellation_fee", Decimal("10"))

    unassigned = market.lifecycle.submit(user_id="user_2", ca_service_id=offering.id)
    with pytest.raises(ValidationError):
        market.settlement.initiate_charge(unassigned.id, "service_fee", Decimal("10"))

    market.lifecycle.cancel(unassigned.id, ActorRef.client("user_2"))
    with pytest.raises(InvalidTransitionError):
        market.settlement.initiate_charge(unassigned.id, "booking_fee", Decimal("10"))


def test_complete_requires_gateway_reference(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    with pytest.raises(ValidationError):
        market.settlement.mark_completed(payment.id, "  ")
    market.settlement.mark_completed(payment.id, "gw_005")
    with pytest.raises(InvalidTransitionError):
        market.settlement.mark_completed(payment.id, "gw_006")


def test_escrow_release_scheduling(market, provider, offering, accepted_request):
    other = market.lifecycle.submit(user_id="user_2", ca_service_id=offering.id)
    market.lifecycle.accept(other.id, provider.id)
    plain = market.settlement.initiate_charge(other.id, "service_fee", Decimal("300"))
    held = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("700"), is_escrow=True)
    with pytest.raises(InvalidTransitionError):
        market.settlement.schedule_escrow_release(held.id, "2026-03-10")
    market.settlement.mark_completed(plain.id, "gw_007")
    market.settlement.mark_completed(held.id, "gw_008")

    with pytest.raises(ValidationError):
        market.settlement.schedule_escrow_release(plain.id, "2026-03-10")
    with pytest.raises(ValidationError):
        market.settlement.schedule_escrow_release(held.id, "next tuesday")

    scheduled = market.settlement.schedule_escrow_release(held.id, "2026-03-10")

    assert scheduled.escrow_release_date == "2026-03-10T00:00:00+00:00"
    assert market.settlement.due_escrow_releases(as_of="2026-03-09T00:00:00Z") == []
    assert [payment.id for payment in market.settlement.due_escrow_releases(as_of="2026-03-10T00:00:00Z")] == [held.id]


def test_repeated_charge_returns_the_open_payment(market, accepted_request):
    market.coupons.create_coupon(code="gst10", discount_value=Decimal("10"), valid_until="2026-12-31T00:00:00Z")
    first = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"), coupon_code="GST10")
    again = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"), coupon_code="GST10")
    assert again.id == first.id
    assert market.coupons.get_by_code("GST10").usage_count == 1

    market.settlement.mark_completed(first.id, "gw_dup")
    after_completion = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))

    assert after_completion.id == first.id
    assert after_completion.status == "completed"
    service_fees = [p for p in market.settlement.list_for_request(accepted_request.id) if p.payment_type == "service_fee"]
    assert len(service_fees) == 1
    initiated = market.emitter.recent(request_id=accepted_request.id, event_type="payment.initiated")
    assert len(initiated) == 1


def test_concurrent_charges_create_one_payment(market, accepted_request):
    barrier = threading.Barrier(6)
    ids = []

    def attempt():
        barrier.wait()
        ids.append(market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000")).id)

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(ids) == 6
    assert len(set(ids)) == 1
    assert len(market.settlement.list_for_request(accepted_request.id)) == 1


def test_failed_charge_can_be_replaced_but_not_revived(market, accepted_request):
    failed = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    market.settlement.mark_failed(failed.id, "card declined")

    replacement = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    assert replacement.id != failed.id

    with pytest.raises(ConflictError):
        market.settlement.retry(failed.id)
    assert market.settlement.get(failed.id).status == "failed"
    with pytest.raises(sqlite3.IntegrityError):
        with market.database.transaction() as tx:
            tx.conn.execute("UPDATE payments SET status = 'pending' WHERE id = ?", (failed.id,))


def test_cancellation_fee_is_charged_once(market, accepted_request):
    booking = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    market.settlement.mark_completed(booking.id, "gw_booking")
    market.lifecycle.cancel(accepted_request.id, ActorRef.client("user_1"), reason="changed my mind", fee_applies=True)

    fee = market.settlement.initiate_charge(accepted_request.id, "cancellation_fee", Decimal("250"))
    assert market.settlement.initiate_charge(accepted_request.id, "cancellation_fee", Decimal("250")).id == fee.id
    market.settlement.mark_completed(fee.id, "gw_fee")
    assert market.settlement.initiate_charge(accepted_request.id, "cancellation_fee", Decimal("250")).id == fee.id

    fees = [p for p in market.settlement.list_for_request(accepted_request.id) if p.payment_type == "cancellation_fee"]
    assert [p.status for p in fees] == ["completed"]


def test_booking_fee_refunded_in_full_before_work_starts(market, accepted_request):
    booking = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    market.settlement.mark_completed(booking.id, "gw_booking")

    entry = market.settlement.refund(booking.id, "changed my mind")

    assert entry.amount == Decimal("199.00")
    refunded = market.emitter.recent(request_id=accepted_request.id, event_type="payment.refunded")
    assert refunded[-1].payload["refund_amount"] == "199.00"


def test_booking_fee_not_refundable_once_work_started(market, provider, accepted_request):
    booking = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    market.settlement.mark_completed(booking.id, "gw_booking")
    market.lifecycle.start(accepted_request.id, provider.id)

    with pytest.raises(ValidationError, match="No refund available"):
        market.settlement.refund(booking.id, "too late")
    assert market.settlement.get(booking.id).status == "completed"


def test_cancellation_fee_is_not_refundable(market, accepted_request):
    booking = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    market.settlement.mark_completed(booking.id, "gw_booking")
    market.lifecycle.cancel(accepted_request.id, ActorRef.client("user_1"), fee_applies=True)
    fee = market.settlement.initiate_charge(accepted_request.id, "cancellation_fee", Decimal("250"))
    market.settlement.mark_completed(fee.id, "gw_fee")

    with pytest.raises(ValidationError, match="No refund available"):
        market.settlement.refund(fee.id, "dispute")


def test_refund_amount_cannot_exceed_policy(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    market.settlement.mark_completed(payment.id, "gw_partial")

    with pytest.raises(ValidationError):
        market.settlement.refund(payment.id, "partial", amount=Decimal("600"))
    assert market.settlement.get(payment.id).status == "completed"

    entry = market.settlement.refund(payment.id, "partial", amount=Decimal("200"))
    assert entry.amount == Decimal("200.00")


def test_refundable_amount_by_payment_kind(market, accepted_request):
    payment = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("333.33"))
    assert refundable_amount(payment, "in_progress") == Decimal("166.66")
    booking = payment.model_copy(update={"payment_type": "booking_fee"})
    assert refundable_amount(booking, "pending") == Decimal("333.33")
    assert refundable_amount(booking, "completed") == Decimal("0")


def test_payment_history_for_payer_is_newest_first(market, clock, provider, offering, accepted_request):
    booking = market.settlement.initiate_charge(accepted_request.id, "booking_fee", Decimal("199"))
    clock.advance(minutes=5)
    service = market.settlement.initiate_charge(accepted_request.id, "service_fee", Decimal("1000"))
    other = market.lifecycle.submit(user_id="user_2", ca_service_id=offering.id)
    market.lifecycle.accept(other.id, provider.id)
    market.settlement.initiate_charge(other.id, "booking_fee", Decimal("199"))

    history = market.settlement.list_for_payer("user_1")

    assert [p.id for p in history] == [service.id, booking.id]
    assert [p.id for p in market.settlement.list_for_payer("user_1", page=2, limit=1)] == [booking.id]
    assert market.settlement.list_for_payer("user_1", page=3, limit=1) == []
    with pytest.raises(ValidationError):
        market.settlement.list_for_payer("user_1", page=0)
