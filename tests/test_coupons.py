from datetime import date, timedelta

import pytest

from coupons import (
    check_coupon, compute_discount, create_coupon, normalize_code, set_coupon_active, update_coupon,
    validate_coupon,
)
from database import create_document
from errors import Conflict, InvalidInput
from orders import order_total
from schemas import Coupon

DAY = date(2024, 6, 15)


def coupon(**overrides):
    doc = {
        "code": "SAVE",
        "discount_type": "percentage",
        "discount_value": 10,
        "minimum_purchase": None,
        "expiry_date": None,
        "is_active": True,
    }
    doc.update(overrides)
    return doc


def test_unknown_code(db):
    result = validate_coupon(db, "NOPE", 50)
    assert not result.valid
    assert result.message == "Invalid coupon code"


def test_checks_run_in_order():
    expired_and_inactive = coupon(is_active=False, expiry_date=(DAY - timedelta(days=3)).isoformat())
    assert check_coupon(expired_and_inactive, 50, DAY).message == "This coupon is inactive"

    expired_and_small = coupon(expiry_date=(DAY - timedelta(days=1)).isoformat(), minimum_purchase=100)
    assert check_coupon(expired_and_small, 50, DAY).message == "This coupon has expired"


def test_expiry_yesterday_invalid_today_valid():
    assert not check_coupon(coupon(expiry_date=(DAY - timedelta(days=1)).isoformat()), 50, DAY).valid
    assert check_coupon(coupon(expiry_date=DAY.isoformat()), 50, DAY).valid


def test_minimum_purchase():
    result = check_coupon(coupon(minimum_purchase=100), 99.99, DAY)
    assert not result.valid
    assert result.message == "This coupon requires a minimum purchase of $100.00"
    assert check_coupon(coupon(minimum_purchase=100), 100, DAY).valid


def test_welcome10_on_88(db, welcome10):
    result = validate_coupon(db, " welcome10 ", 88.0)
    assert result.valid
    assert result.code == "WELCOME10"
    assert result.discount_type == "percentage"
    assert result.discount == 8.8
    assert order_total(88.0, discount=result.discount) == 79.2


def test_fixed_discount_is_clamped_to_subtotal():
    assert compute_discount("fixed", 20, 15) == 15
    result = check_coupon(coupon(discount_type="fixed", discount_value=20), 15, DAY)
    assert result.discount == 15
    assert order_total(15, discount=result.discount) == 0.0


def test_validation_without_subtotal_skips_amounts():
    result = check_coupon(coupon(minimum_purchase=100), None, DAY)
    assert result.valid
    assert result.discount == 0.0


def test_create_normalizes_and_rejects_duplicates(db):
    created = create_coupon(db, Coupon(code=" spring ", discount_type="fixed", discount_value=5))
    assert created["code"] == "SPRING"
    with pytest.raises(Conflict):
        create_coupon(db, Coupon(code="Spring", discount_type="percentage", discount_value=5))


def test_percentage_over_100_rejected(db):
    with pytest.raises(InvalidInput):
        create_coupon(db, Coupon(code="HUGE", discount_type="percentage", discount_value=150))


def test_toggle_and_update(db):
    cid = create_document(db, "coupons", Coupon(code="FLASH", discount_type="fixed", discount_value=5))
    set_coupon_active(db, cid, False)
    assert validate_coupon(db, "FLASH", 50).message == "This coupon is inactive"

    updated = update_coupon(db, cid, {"is_active": True, "discount_value": 7})
    assert updated["discount_value"] == 7
    assert validate_coupon(db, "flash", 50).discount == 7


def test_normalize_code():
    assert normalize_code("  abc10 ") == "ABC10"
