from datetime import timedelta

import pytest
from bson import ObjectId

import coupons
from database import db, now_utc
from errors import Conflict, CouponExpired, LimitExceeded, MinimumNotMet, NotFound, ValidationFailed
from schemas import Coupon


def _items(*products_and_qty):
    return [{"product_id": str(p["_id"]), "quantity": q} for p, q in products_and_qty]


def test_validate_caps_percentage_at_maximum_discount(user, make_coupon):
    make_coupon(code="BIG20", value=20, maximum_discount=50)

    result = coupons.validate_coupon("big20", str(user["_id"]), 1000)

    assert result["valid"] is True
    assert result["code"] == "BIG20"
    assert result["discount_amount"] == 50


def test_validate_fixed_never_exceeds_cart_total(user, make_coupon):
    make_coupon(code="FLAT25", discount_type="fixed", value=25)

    assert coupons.validate_coupon("FLAT25", str(user["_id"]), 100)["discount_amount"] == 25
    assert coupons.validate_coupon("FLAT25", str(user["_id"]), 15)["discount_amount"] == 15


def test_validate_unknown_code(user):
    with pytest.raises(NotFound):
        coupons.validate_coupon("NOPE", str(user["_id"]), 100)


@pytest.mark.parametrize("overrides", [
    {"is_active": False},
    {"valid_until": now_utc() - timedelta(minutes=1)},
    {"valid_from": now_utc() + timedelta(days=1)},
    {"usage_limit": 3, "used_count": 3},
])
def test_validate_rejects_unusable_coupon(user, make_coupon, overrides):
    make_coupon(**overrides)

    with pytest.raises(CouponExpired):
        coupons.validate_coupon("SAVE10", str(user["_id"]), 100)


def test_validate_minimum_amount(user, make_coupon):
    make_coupon(minimum_amount=50)

    with pytest.raises(MinimumNotMet):
        coupons.validate_coupon("SAVE10", str(user["_id"]), 49.99)
    assert coupons.validate_coupon("SAVE10", str(user["_id"]), 50)["discount_amount"] == 5


def test_apply_ten_percent_on_two_item_cart(user, make_coupon, make_product):
    make_coupon()
    a = make_product(price=60)
    b = make_product(price=20)

    result = coupons.apply_coupon("SAVE10", str(user["_id"]), _items((a, 1), (b, 2)))

    assert result == {"code": "SAVE10", "discount_amount": 10, "final_total": 90}
    coupon = db["coupon"].find_one({"code": "SAVE10"})
    assert coupon["used_count"] == 1
    assert coupon["used_by"][0]["user_id"] == str(user["_id"])
    assert coupon["used_by"][0]["order_amount"] == 100


def test_user_limit_one_allows_single_use(user, make_coupon, make_product):
    make_coupon(user_limit=1)
    p = make_product(price=50)
    uid = str(user["_id"])

    coupons.apply_coupon("SAVE10", uid, _items((p, 1)))
    with pytest.raises(LimitExceeded):
        coupons.apply_coupon("SAVE10", uid, _items((p, 1)))
    with pytest.raises(LimitExceeded):
        coupons.validate_coupon("SAVE10", uid, 50)

    assert db["coupon"].find_one({"code": "SAVE10"})["used_count"] == 1


def test_apply_only_discounts_eligible_items(user, make_coupon, make_product):
    shoes = make_product(price=40, category_ids=["shoes"])
    socks = make_product(price=10, category_ids=["socks"])
    sale_shoes = make_product(price=50, category_ids=["shoes"])
    make_coupon(value=50, applicable_categories=["shoes"], excluded_products=[str(sale_shoes["_id"])])

    result = coupons.apply_coupon("SAVE10", str(user["_id"]), _items((shoes, 1), (socks, 1), (sale_shoes, 1)))

    assert result["discount_amount"] == 20
    assert result["final_total"] == 80


def test_apply_fixed_is_capped_to_eligible_subtotal(user, make_coupon, make_product):
    cheap = make_product(price=8)
    other = make_product(price=100)
    make_coupon(discount_type="fixed", value=25, applicable_products=[str(cheap["_id"])])

    result = coupons.apply_coupon("SAVE10", str(user["_id"]), _items((cheap, 1), (other, 1)))

    assert result["discount_amount"] == 8
    assert result["final_total"] == 100


def test_validate_and_apply_share_minimum_basis(user, make_coupon, make_product):
    eligible = make_product(price=20)
    other = make_product(price=30)
    make_coupon(minimum_amount=50, applicable_products=[str(eligible["_id"])])
    uid = str(user["_id"])

    # Whole cart counts toward the minimum in both paths
    assert coupons.validate_coupon("SAVE10", uid, 50)["valid"]
    with pytest.raises(MinimumNotMet):
        coupons.validate_coupon("SAVE10", uid, 20)
    with pytest.raises(MinimumNotMet):
        coupons.apply_coupon("SAVE10", uid, _items((eligible, 1)))

    result = coupons.apply_coupon("SAVE10", uid, _items((eligible, 1), (other, 1)))
    assert result["discount_amount"] == 2


def test_apply_skips_unknown_products(user, make_coupon, make_product):
    make_coupon()
    p = make_product(price=30)
    items = _items((p, 1)) + [{"product_id": "000000000000000000000000", "quantity": 4}]

    assert coupons.apply_coupon("SAVE10", str(user["_id"]), items)["final_total"] == 27


def test_redeem_retries_after_concurrent_update(make_user, make_coupon):
    first, second = make_user(), make_user()
    coupon = make_coupon(usage_limit=5)
    stale = dict(coupon)

    coupons.redeem_coupon(coupon, str(first["_id"]), 100, 10)
    coupons.redeem_coupon(stale, str(second["_id"]), 100, 10)

    fresh = db["coupon"].find_one({"_id": coupon["_id"]})
    assert fresh["used_count"] == 2
    assert fresh["version"] == 2
    assert {u["user_id"] for u in fresh["used_by"]} == {str(first["_id"]), str(second["_id"])}


def test_stale_redemption_cannot_exceed_user_limit(user, make_coupon):
    coupon = make_coupon(user_limit=1)
    stale = dict(coupon)
    uid = str(user["_id"])

    coupons.redeem_coupon(coupon, uid, 100, 10)
    with pytest.raises(LimitExceeded):
        coupons.redeem_coupon(stale, uid, 100, 10)

    assert db["coupon"].find_one({"_id": coupon["_id"]})["used_count"] == 1


def test_stale_redemption_cannot_exceed_usage_limit(make_user, make_coupon):
    coupon = make_coupon(usage_limit=1)
    stale = dict(coupon)

    coupons.redeem_coupon(coupon, str(make_user()["_id"]), 100, 10)
    with pytest.raises(CouponExpired):
        coupons.redeem_coupon(stale, str(make_user()["_id"]), 100, 10)


def test_redeem_gives_up_when_version_keeps_moving(user, make_coupon, monkeypatch):
    coupon = make_coupon()
    monkeypatch.setattr(coupons, "_version_filter", lambda c: {"_id": c["_id"], "version": -1})

    with pytest.raises(Conflict):
        coupons.redeem_coupon(coupon, str(user["_id"]), 100, 10)


def test_release_coupon_restores_usage(user, make_coupon):
    coupon = make_coupon()
    uid = str(user["_id"])
    redemption = coupons.redeem_coupon(coupon, uid, 100, 10, order_id="o-1")
    assert ObjectId.is_valid(redemption)

    assert coupons.release_coupon(coupon["_id"], redemption) is True
    assert coupons.release_coupon(coupon["_id"], redemption) is False

    fresh = db["coupon"].find_one({"_id": coupon["_id"]})
    assert fresh["used_count"] == 0
    assert fresh["used_by"] == []
    assert coupons.validate_coupon("SAVE10", uid, 100)["valid"]


def test_update_coupon_rejects_a_taken_code(admin, make_coupon):
    make_coupon(code="SPRING")
    autumn = make_coupon(code="AUTUMN")
    now = now_utc()
    payload = Coupon(code="spring", discount_type="fixed", value=5,
                     valid_from=now, valid_until=now + timedelta(days=3))

    with pytest.raises(ValidationFailed, match="Coupon code already exists"):
        coupons.update_coupon(str(autumn["_id"]), payload)

    assert db["coupon"].find_one({"_id": autumn["_id"]})["code"] == "AUTUMN"
