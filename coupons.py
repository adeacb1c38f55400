"""
Single-code coupons.

``validate_coupon`` previews a discount against a cart total without touching
the coupon. ``apply_coupon`` prices the submitted items and redeems the
coupon: the ``used_by`` entry and ``used_count`` bump are written together by
one update guarded on the coupon's ``version``, so two concurrent redemptions
cannot both slip past ``user_limit`` or ``usage_limit``.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import config
from carts import CartLine, CartSnapshot, build_snapshot
from database import db, create_document, money, now_utc, paginate, public, to_object_id
from errors import Conflict, CouponExpired, LimitExceeded, MinimumNotMet, NotFound, ValidationFailed
from schemas import Coupon, CouponType

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def find_coupon(code: str) -> Dict[str, Any]:
    coupon = db["coupon"].find_one({"code": normalize_code(code)})
    if not coupon:
        raise NotFound("Invalid coupon code")
    return coupon


def user_usage(coupon: Dict[str, Any], user_id: str) -> int:
    return sum(1 for use in coupon.get("used_by", []) if use.get("user_id") == user_id)


def is_active_now(coupon: Dict[str, Any], now=None) -> bool:
    now = now or now_utc()
    limit = coupon.get("usage_limit")
    return (
        coupon.get("is_active", False)
        and coupon["valid_from"] <= now <= coupon["valid_until"]
        and (limit is None or coupon.get("used_count", 0) < limit)
    )


def check_usable(coupon: Dict[str, Any], user_id: str, cart_total: float) -> None:
    """Raise unless ``user_id`` may use ``coupon`` on a cart worth ``cart_total``."""
    if not is_active_now(coupon):
        raise CouponExpired("Coupon has expired or is not active")
    if user_usage(coupon, user_id) >= coupon.get("user_limit", 1):
        raise LimitExceeded("You have already used this coupon the maximum number of times")
    minimum = coupon.get("minimum_amount") or 0
    if cart_total < minimum:
        raise MinimumNotMet(f"Minimum order amount of ${minimum:.2f} required")


def coupon_amount(coupon: Dict[str, Any], base: float) -> float:
    if base <= 0:
        return 0.0
    if coupon["discount_type"] == CouponType.percentage.value:
        amount = base * coupon["value"] / 100
        cap = coupon.get("maximum_discount")
        if cap is not None and amount > cap:
            amount = cap
    else:
        amount = min(coupon["value"], base)
    return money(amount)


def is_line_eligible(coupon: Dict[str, Any], line: CartLine) -> bool:
    products = coupon.get("applicable_products") or []
    categories = coupon.get("applicable_categories") or []
    excluded = coupon.get("excluded_products") or []
    if products and line.product_id not in products:
        return False
    if categories and not set(categories) & set(line.category_ids):
        return False
    return line.product_id not in excluded


def validate_coupon(code: str, user_id: str, cart_total: float) -> Dict[str, Any]:
    coupon = find_coupon(code)
    check_usable(coupon, user_id, cart_total)
    return {
        "valid": True,
        "code": coupon["code"],
        "discount_type": coupon["discount_type"],
        "value": coupon["value"],
        "discount_amount": coupon_amount(coupon, cart_total),
    }


def evaluate_coupon(code: str, user_id: str, snapshot: CartSnapshot,
                    base_total: Optional[float] = None) -> Dict[str, Any]:
    """Price ``code`` against ``snapshot`` without redeeming it.

    ``base_total`` caps the amount when other promotions already reduced the
    cart.
    """
    coupon = find_coupon(code)
    cart_total = snapshot.total_price
    check_usable(coupon, user_id, cart_total)
    applicable_total = money(sum(line.subtotal for line in snapshot.lines if is_line_eligible(coupon, line)))
    amount = coupon_amount(coupon, applicable_total)
    if base_total is not None:
        amount = money(min(amount, max(0.0, base_total)))
    return {
        "coupon": coupon,
        "cart_total": cart_total,
        "applicable_total": applicable_total,
        "discount_amount": amount,
    }


def _version_filter(coupon: Dict[str, Any]) -> Dict[str, Any]:
    if "version" in coupon:
        return {"_id": coupon["_id"], "version": coupon["version"]}
    return {"_id": coupon["_id"], "version": {"$exists": False}}


def redeem_coupon(coupon: Dict[str, Any], user_id: str, order_amount: float, discount_amount: float,
                  order_id: Optional[str] = None) -> str:
    """Record one use of ``coupon`` by ``user_id``; returns the redemption id."""
    for attempt in range(config.COUPON_MAX_RETRIES):
        check_usable(coupon, user_id, order_amount)
        redemption_id = str(ObjectId())
        entry = {
            "redemption_id": redemption_id,
            "user_id": user_id,
            "order_id": order_id,
            "used_at": now_utc(),
            "order_amount": money(order_amount),
            "discount_amount": money(discount_amount),
        }
        res = db["coupon"].update_one(
            _version_filter(coupon),
            {"$inc": {"used_count": 1, "version": 1}, "$push": {"used_by": entry}},
        )
        if res.modified_count == 1:
            logger.info("Coupon %s redeemed by %s (%.2f off)", coupon["code"], user_id, discount_amount)
            return redemption_id
        logger.warning("Coupon %s changed during redemption, retry %d", coupon["code"], attempt + 1)
        coupon = db["coupon"].find_one({"_id": coupon["_id"]})
        if coupon is None:
            raise NotFound("Invalid coupon code")
    raise Conflict("Coupon is being used concurrently, please retry")


def release_coupon(coupon_id, redemption_id: str) -> bool:
    res = db["coupon"].update_one(
        {"_id": coupon_id, "used_by.redemption_id": redemption_id},
        {"$pull": {"used_by": {"redemption_id": redemption_id}}, "$inc": {"used_count": -1, "version": 1}},
    )
    if res.modified_count:
        logger.warning("Coupon %s redemption %s released", coupon_id, redemption_id)
    return bool(res.modified_count)


def apply_coupon(code: str, user_id: str, cart_items: List[Dict[str, Any]]) -> Dict[str, Any]:
    snapshot = build_snapshot(cart_items)
    result = evaluate_coupon(code, user_id, snapshot)
    coupon = result["coupon"]
    amount = result["discount_amount"]
    redeem_coupon(coupon, user_id, result["cart_total"], amount)
    return {
        "code": coupon["code"],
        "discount_amount": amount,
        "final_total": money(max(0.0, result["cart_total"] - amount)),
    }


# Admin

def _check_definition(payload: Coupon) -> None:
    if payload.valid_until <= payload.valid_from:
        raise ValidationFailed("valid_until must be after valid_from")
    if payload.discount_type == CouponType.percentage.value and payload.value > 100:
        raise ValidationFailed("Percentage coupons cannot exceed 100")


def create_coupon(payload: Coupon, created_by: str) -> Dict[str, Any]:
    _check_definition(payload)
    if db["coupon"].find_one({"code": payload.code}):
        raise ValidationFailed("Coupon code already exists")
    doc = payload.model_dump()
    doc.update({"used_count": 0, "used_by": [], "version": 0, "created_by": created_by})
    try:
        cid = create_document("coupon", doc)
    except DuplicateKeyError:
        raise ValidationFailed("Coupon code already exists")
    return get_coupon(cid)


def list_coupons(is_active: Optional[bool] = None, discount_type: Optional[str] = None,
                 page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if is_active is not None:
        query["is_active"] = is_active
    if discount_type:
        query["discount_type"] = discount_type
    return paginate("coupon", query, page=page, limit=limit, sort=[("created_at", -1)])


def get_coupon(coupon_id: str) -> Dict[str, Any]:
    coupon = db["coupon"].find_one({"_id": to_object_id(coupon_id, "Coupon")})
    if not coupon:
        raise NotFound("Coupon not found")
    return public(coupon)


def update_coupon(coupon_id: str, payload: Coupon) -> Dict[str, Any]:
    _check_definition(payload)
    oid = to_object_id(coupon_id, "Coupon")
    clash = db["coupon"].find_one({"code": payload.code, "_id": {"$ne": oid}})
    if clash:
        raise ValidationFailed("Coupon code already exists")
    changes = payload.model_dump()
    changes["updated_at"] = now_utc()
    try:
        res = db["coupon"].update_one({"_id": oid}, {"$set": changes, "$inc": {"version": 1}})
    except DuplicateKeyError:
        raise ValidationFailed("Coupon code already exists")
    if res.matched_count == 0:
        raise NotFound("Coupon not found")
    return get_coupon(coupon_id)


def delete_coupon(coupon_id: str) -> None:
    res = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "Coupon")})
    if res.deleted_count == 0:
        raise NotFound("Coupon not found")
