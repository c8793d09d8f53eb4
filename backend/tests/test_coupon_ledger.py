import threading
from decimal import Decimal

import pytest

from camarket.services.coupon_ledger import compute_discount
from camarket.services.errors import (
    ConflictError,
    CouponExhaustedError,
    CouponIneligibleError,
    NotFoundError,
    RaceLostError,
    ValidationError,
)


def _coupon(market, code="WELCOME", **overrides):
    params = {"discount_value": Decimal("10"), "valid_until": "2026-12-31T00:00:00Z"}
    params.update(overrides)
    return market.coupons.create_coupon(code=code, **params)


def _request(market, offering, user_id="user_1"):
    return market.lifecycle.submit(user_id=user_id, ca_service_id=offering.id)


def test_twenty_concurrent_redemptions_respect_cap_of_five(market, offering):
    _coupon(market, code="FIRST5", max_usage_limit=5)
    requests = [_request(market, offering, user_id=f"user_{index}") for index in range(20)]
    barrier = threading.Barrier(len(requests))
    redeemed = []
    exhausted = []

    def redeem(request):
        barrier.wait()
        try:
            redeemed.append(
                market.coupons.validate_and_reserve(
                    code="FIRST5",
                    user_id=request.user_id,
                    order_amount=Decimal("1000"),
                    service_category="gst_return_filing",
                    service_request_id=request.id,
                )
            )
        except CouponExhaustedError as exc:
            exhausted.append(exc)

    threads = [threading.Thread(target=redeem, args=(request,)) for request in requests]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(redeemed) == 5
    assert len(exhausted) == 15
    assert all(isinstance(exc, RaceLostError) for exc in exhausted)
    assert market.coupons.get_by_code("FIRST5").usage_count == 5
    assert len(market.coupons.list_usages("FIRST5")) == 5


def test_percentage_discount_is_capped(market):
    coupon = _coupon(market, discount_value=Decimal("20"), max_discount_amount=Decimal("150"))
    assert compute_discount(coupon, Decimal("500")) == Decimal("100.00")
    assert compute_discount(coupon, Decimal("1000")) == Decimal("150.00")
    assert compute_discount(coupon, Decimal("0")) == Decimal("0.00")


def test_fixed_discount_never_exceeds_order(market):
    coupon = _coupon(market, code="FLAT300", discount_type="fixed", discount_value=Decimal("300"))
    assert compute_discount(coupon, Decimal("1000")) == Decimal("300.00")
    assert compute_discount(coupon, Decimal("120")) == Decimal("120.00")


def test_preview_reports_quote_without_consuming(market):
    _coupon(market)
    quote = market.coupons.preview("welcome", "user_1", Decimal("1000"), "tax_filing")
    assert quote.eligible is True
    assert quote.discount_amount == Decimal("100.00")
    assert quote.final_amount == Decimal("900.00")
    assert market.coupons.get_by_code("WELCOME").usage_count == 0


@pytest.mark.parametrize(
    "overrides, order_amount, category, reason",
    [
        ({"min_order_amount": Decimal("2000")}, Decimal("1000"), "tax_filing", "below_min_order"),
        ({"applicable_service_types": ["audit_services"]}, Decimal("1000"), "tax_filing", "category_not_applicable"),
        ({"valid_from": "2026-04-01T00:00:00Z"}, Decimal("1000"), "tax_filing", "not_yet_valid"),
        ({"max_usage_limit": 0}, Decimal("1000"), "tax_filing", "usage_limit_reached"),
    ],
)
def test_preview_ineligibility_reasons(market, overrides, order_amount, category, reason):
    _coupon(market, **overrides)
    quote = market.coupons.preview("WELCOME", "user_1", order_amount, category)
    assert quote.eligible is False
    assert quote.reason == reason
    assert quote.final_amount == order_amount


def test_expired_and_inactive_coupons(market, clock):
    _coupon(market, code="SHORT", valid_until="2026-03-02T00:00:00Z")
    _coupon(market, code="OFF")
    market.coupons.deactivate("off")
    assert market.coupons.preview("OFF", "user_1", Decimal("100"), "tax_filing").reason == "inactive"
    clock.advance(days=2)
    assert market.coupons.preview("SHORT", "user_1", Decimal("100"), "tax_filing").reason == "expired"


def test_per_user_limit_and_single_redemption_per_request(market, offering):
    _coupon(market, max_usage_per_user=1)
    first = _request(market, offering)
    second = _request(market, offering)
    market.coupons.validate_and_reserve("WELCOME", "user_1", Decimal("1000"), "gst_return_filing", first.id)

    with pytest.raises(CouponIneligibleError) as per_user:
        market.coupons.validate_and_reserve("WELCOME", "user_1", Decimal("1000"), "gst_return_filing", second.id)
    assert per_user.value.reason == "per_user_limit_reached"

    _coupon(market, code="MULTI", max_usage_per_user=5)
    market.coupons.validate_and_reserve("MULTI", "user_1", Decimal("1000"), "gst_return_filing", first.id)
    with pytest.raises(CouponIneligibleError) as again:
        market.coupons.validate_and_reserve("MULTI", "user_1", Decimal("1000"), "gst_return_filing", first.id)
    assert again.value.reason == "already_redeemed"
    assert market.coupons.get_by_code("MULTI").usage_count == 1


def test_unknown_coupon_or_request(market, offering):
    request = _request(market, offering)
    with pytest.raises(NotFoundError):
        market.coupons.validate_and_reserve("NOPE", "user_1", Decimal("100"), "tax_filing", request.id)
    _coupon(market)
    with pytest.raises(NotFoundError):
        market.coupons.validate_and_reserve("WELCOME", "user_1", Decimal("100"), "tax_filing", "sr_missing")


def test_create_coupon_validation(market):
    _coupon(market)
    with pytest.raises(ConflictError):
        _coupon(market, code="welcome")
    with pytest.raises(ValidationError):
        _coupon(market, code="TOOMUCH", discount_value=Decimal("120"))
    with pytest.raises(ValidationError):
        _coupon(market, code="BACKWARDS", valid_from="2026-06-01", valid_until="2026-05-01")
    with pytest.raises(ValidationError):
        _coupon(market, code="NOWHERE", applicable_service_types=["dog_walking"])


def test_list_coupons_filters_by_state_and_text(market):
    _coupon(market, description="First order discount")
    _coupon(market, code="AUDIT300", discount_type="fixed", discount_value=Decimal("300"), description="Audit season")
    _coupon(market, code="OLDAUDIT", description="Retired audit promo")
    market.coupons.deactivate("OLDAUDIT")

    assert {c.code for c in market.coupons.list_coupons()} == {"WELCOME", "AUDIT300", "OLDAUDIT"}
    assert {c.code for c in market.coupons.list_coupons(is_active=True)} == {"WELCOME", "AUDIT300"}
    assert {c.code for c in market.coupons.list_coupons(search="audit")} == {"AUDIT300", "OLDAUDIT"}
    assert [c.code for c in market.coupons.list_coupons(is_active=False, search="retired")] == ["OLDAUDIT"]


def test_available_coupons_for_user(market, offering, clock):
    _coupon(market, code="TEN", discount_value=Decimal("10"))
    _coupon(market, code="FLAT300", discount_type="fixed", discount_value=Decimal("300"))
    _coupon(market, code="LATER", valid_from="2026-04-01T00:00:00Z")
    _coupon(market, code="GONE", max_usage_limit=0)
    _coupon(market, code="USED")
    request = _request(market, offering)
    market.coupons.validate_and_reserve("USED", "user_1", Decimal("1000"), "gst_return_filing", request.id)

    assert [c.code for c in market.coupons.list_active_for_user("user_1")] == ["FLAT300", "TEN"]
    assert [c.code for c in market.coupons.list_active_for_user("user_2")] == ["FLAT300", "TEN", "USED"]
    clock.advance(days=31)
    assert "LATER" in {c.code for c in market.coupons.list_active_for_user("user_2")}


def test_usage_history_for_user_is_newest_first(market, offering, clock):
    _coupon(market, code="ONE")
    _coupon(market, code="TWO")
    first = _request(market, offering)
    second = _request(market, offering)
    market.coupons.validate_and_reserve("ONE", "user_1", Decimal("1000"), "gst_return_filing", first.id)
    clock.advance(hours=1)
    market.coupons.validate_and_reserve("TWO", "user_1", Decimal("500"), "gst_return_filing", second.id)

    history = market.coupons.list_usages_for_user("user_1")

    assert [usage.service_request_id for usage in history] == [second.id, first.id]
    assert history[0].discount_amount == Decimal("50.00")
    assert market.coupons.list_usages_for_user("user_2") == []


def test_update_coupon_terms(market, offering):
    _coupon(market, max_usage_limit=5)
    request = _request(market, offering)
    market.coupons.validate_and_reserve("WELCOME", "user_1", Decimal("1000"), "gst_return_filing", request.id)

    updated = market.coupons.update_coupon(
        "welcome",
        description="Spring offer",
        discount_value=Decimal("15"),
        max_usage_limit=1,
        valid_until="2026-06-30T00:00:00Z",
    )

    assert updated.code == "WELCOME"
    assert updated.description == "Spring offer"
    assert updated.discount_value == Decimal("15.00")
    assert updated.max_usage_limit == 1
    assert updated.usage_count == 1
    assert updated.valid_until == "2026-06-30T00:00:00+00:00"
    assert market.coupons.preview("WELCOME", "user_2", Decimal("100"), "tax_filing").reason == "usage_limit_reached"

    with pytest.raises(ValidationError):
        market.coupons.update_coupon("WELCOME", max_usage_limit=0)
    with pytest.raises(ValidationError):
        market.coupons.update_coupon("WELCOME", discount_value=Decimal("150"))
    with pytest.raises(ValidationError):
        market.coupons.update_coupon("WELCOME", valid_until="2026-01-01T00:00:00Z")
    with pytest.raises(NotFoundError):
        market.coupons.update_coupon("NOPE", description="x")
    assert market.coupons.get_by_code("WELCOME").discount_value == Decimal("15.00")


def test_coupon_moves_to_new_charge_after_payment_gives_up(market, provider, offering):
    _coupon(market, max_usage_per_user=1)
    request = _request(market, offering)
    market.lifecycle.accept(request.id, provider.id)
    first = market.settlement.initiate_charge(request.id, "service_fee", Decimal("1000"), coupon_code="WELCOME")
    market.settlement.mark_failed(first.id, "card declined")

    with pytest.raises(CouponIneligibleError) as held:
        market.settlement.initiate_charge(request.id, "service_fee", Decimal("1000"), coupon_code="WELCOME")
    assert held.value.reason == "already_redeemed"

    for _ in range(3):
        market.settlement.retry(first.id)
        market.settlement.mark_failed(first.id, "card declined")
    second = market.settlement.initiate_charge(request.id, "service_fee", Decimal("1000"), coupon_code="WELCOME")

    assert second.id != first.id
    assert second.discount_amount == Decimal("100.00")
    assert second.amount == Decimal("900.00")
    usages = market.coupons.list_usages("WELCOME")
    assert [usage.payment_id for usage in usages] == [second.id]
    assert market.coupons.get_by_code("WELCOME").usage_count == 1
    redeemed = market.emitter.recent(request_id=request.id, event_type="coupon.redeemed")
    assert any(event.payload.get("previous_payment_id") == first.id for event in redeemed)
