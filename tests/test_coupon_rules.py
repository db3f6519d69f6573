from datetime import datetime, timedelta
from decimal import Decimal

from sqlmodel import select

from helpers import make_coupon, make_user
from freshmart.models.coupon import CouponType, CouponUsage
from freshmart.services.coupon import (
    CatalogSnapshot,
    CouponService,
    CouponView,
    RejectionReason,
    check_coupon,
)

NOW = datetime(2026, 6, 1, 12, 0)


def view(code="SAVE50", discount="50", min_order="0", coupon_type=CouponType.REGULAR, target=None,
         expiry=NOW + timedelta(days=10)):
    return CouponView(
        code=code,
        discount_amount=Decimal(discount),
        expiry_date=expiry,
        min_order_amount=Decimal(min_order),
        coupon_type=coupon_type,
        target_username=target,
    )

def reason(result):
    return result.rejection.reason if result.rejection else None


def test_unknown_code_is_invalid():
    result = check_coupon("nope", None, 500, "bob", has_used=False, prior_orders=0, now=NOW)
    assert reason(result) == RejectionReason.INVALID_CODE
    assert result.rejection.code == "NOPE"

def test_expired():
    result = check_coupon("SAVE50", view(expiry=NOW - timedelta(seconds=1)), 500, "bob", False, 0, now=NOW)
    assert reason(result) == RejectionReason.EXPIRED
    assert result.rejection.message == "Coupon expired"

def test_already_redeemed():
    result = check_coupon("SAVE50", view(), 500, "bob", has_used=True, prior_orders=0, now=NOW)
    assert reason(result) == RejectionReason.ALREADY_REDEEMED

def test_tiered_codes_skip_the_ledger():
    result = check_coupon("ABOVE2000", view(code="ABOVE2000", min_order="2000"), 2100, "bob",
                          has_used=True, prior_orders=3, now=NOW)
    assert result.is_valid

def test_tiered_code_needs_its_threshold_even_without_a_minimum():
    result = check_coupon("NEPAL100", view(code="NEPAL100", discount="100"), 500, "bob", False, 0, now=NOW)
    assert reason(result) == RejectionReason.BELOW_MINIMUM
    assert result.rejection.message == "Order must be at least Rs. 8000 to use this coupon."

    assert check_coupon("NEPAL100", view(code="NEPAL100", discount="100"), 8000, "bob", False, 0, now=NOW).is_valid

def test_below_minimum_message():
    result = check_coupon("SAVE50", view(min_order="500"), 499, "bob", False, 0, now=NOW)
    assert reason(result) == RejectionReason.BELOW_MINIMUM
    assert result.rejection.message == "Order must be at least Rs. 500 to use this coupon."

def test_minimum_is_inclusive():
    assert check_coupon("SAVE50", view(min_order="500"), 500, "bob", False, 0, now=NOW).is_valid

def test_targeted_coupon_matches_trimmed_case_insensitive_username():
    coupon = view(code="GIFT", target=" Alice ")
    assert check_coupon("gift", coupon, 10, "alice", False, 0, now=NOW).is_valid
    assert check_coupon("gift", coupon, 10, "ALICE  ", False, 0, now=NOW).is_valid

def test_targeted_coupon_rejects_other_users():
    result = check_coupon("GIFT", view(code="GIFT", target="Alice"), 10, "bob", False, 0, now=NOW)
    assert reason(result) == RejectionReason.NOT_YOUR_COUPON
    assert result.rejection.message == "This coupon is not available for your account."

def test_gift_coupons_ignore_minimum_order():
    targeted = view(code="GIFT", min_order="5000", target="bob")
    special = view(code="SPECIAL", min_order="5000", coupon_type=CouponType.SPECIAL_GIFT)
    assert check_coupon("GIFT", targeted, 10, "bob", False, 0, now=NOW).is_valid
    assert check_coupon("SPECIAL", special, 10, "bob", False, 0, now=NOW).is_valid

def test_first_order_only():
    coupon = view(code="WELCOME", coupon_type=CouponType.FIRST_ORDER)
    assert check_coupon("WELCOME", coupon, 10, "bob", False, prior_orders=0, now=NOW).is_valid
    result = check_coupon("WELCOME", coupon, 10, "bob", False, prior_orders=1, now=NOW)
    assert reason(result) == RejectionReason.FIRST_ORDER_ONLY

def test_first_failing_rule_wins():
    # expired and below minimum: expiry is checked first
    coupon = view(min_order="1000", expiry=NOW - timedelta(days=1))
    assert reason(check_coupon("SAVE50", coupon, 10, "bob", True, 0, now=NOW)) == RejectionReason.EXPIRED

def test_snapshot_first_order_coupon_skips_targeted():
    snapshot = CatalogSnapshot(coupons=[
        view(code="MINE", coupon_type=CouponType.FIRST_ORDER, target="bob"),
        view(code="WELCOME", coupon_type=CouponType.FIRST_ORDER),
    ], username="bob")
    assert snapshot.first_order_coupon().code == "WELCOME"
    assert snapshot.find("welcome").code == "WELCOME"

def test_snapshot_uses_ledger_codes():
    snapshot = CatalogSnapshot(coupons=[view()], username="bob", used_codes={"SAVE50"})
    assert reason(snapshot.validate("save50", 100, now=NOW)) == RejectionReason.ALREADY_REDEEMED


# Database backed

def test_validate_targeted_coupon_for_wrong_user_leaves_ledger_untouched(session):
    bob = make_user(session, "bob")
    make_coupon(session, "ALICEGIFT", 200, coupon_type=CouponType.SPECIAL_GIFT, target="Alice")

    result = CouponService(session).validate("alicegift", 1000, bob)

    assert reason(result) == RejectionReason.NOT_YOUR_COUPON
    assert session.exec(select(CouponUsage)).all() == []

def test_inactive_coupon_is_invalid(session):
    bob = make_user(session, "bob")
    coupon = make_coupon(session, "OLD", 20)
    coupon.is_active = False
    session.add(coupon)
    session.commit()

    assert reason(CouponService(session).validate("OLD", 100, bob)) == RejectionReason.INVALID_CODE

def test_mark_used_is_idempotent(session):
    bob = make_user(session, "bob")
    make_coupon(session, "SAVE50", 50)
    ledger = CouponService(session).ledger

    assert ledger.has_used("SAVE50", bob.id) is False
    assert ledger.mark_used("save50", bob.id) is True
    assert ledger.mark_used("SAVE50", bob.id) is False
    session.commit()

    assert ledger.has_used("SAVE50", bob.id) is True
    assert len(session.exec(select(CouponUsage)).all()) == 1
    assert ledger.used_codes(bob.id) == {"SAVE50"}

def test_mark_used_unknown_coupon(session):
    bob = make_user(session, "bob")
    assert CouponService(session).ledger.mark_used("GHOST", bob.id) is False

def test_list_visible_hides_gifts_for_other_users(session):
    make_coupon(session, "SAVE50", 50)
    make_coupon(session, "ALICEGIFT", 200, target="Alice")
    service = CouponService(session)

    assert [c.code for c in service.list_visible("bob")] == ["SAVE50"]
    assert sorted(c.code for c in service.list_visible("alice")) == ["ALICEGIFT", "SAVE50"]
    assert [c.code for c in service.list_visible(None)] == ["SAVE50"]
