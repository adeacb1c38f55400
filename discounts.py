"""
Automatic discount rules.

Rules are evaluated against a ``CartSnapshot`` and the customer's order
history. ``calculate_discount`` picks the better of stacking every applicable
stackable rule or taking the single largest rule.
"""
import logging
from typing import Any, Dict, List, Optional, Set, Union

from carts import CartSnapshot
from database import db, create_document, money, now_utc, paginate, public, to_object_id
from errors import NotFound, ValidationFailed
from schemas import CustomerSegment, Discount, DiscountType, OrderStatus

logger = logging.getLogger(__name__)

VIP_SPEND = 1000
BULK_ORDER_COUNT = 5
BULK_CART_ITEMS = 10


def active_discounts(now=None) -> List[Dict[str, Any]]:
    now = now or now_utc()
    cursor = db["discount"].find({
        "is_active": True,
        "start_date": {"$lte": now},
        "end_date": {"$gte": now},
    }).sort([("priority", -1), ("value", -1)])
    return [d for d in cursor if d.get("max_usage") is None or d.get("usage_count", 0) < d["max_usage"]]


def _placed_orders(user_id: str) -> Dict[str, Any]:
    return {"user_id": user_id, "status": {"$ne": OrderStatus.cancelled.value}}


def customer_segments(user_id: str, snapshot: CartSnapshot) -> Set[str]:
    orders = list(db["order"].find(_placed_orders(user_id), {"total_price": 1}))
    spent = sum(o.get("total_price", 0) for o in orders)
    segments = set()
    if not orders:
        segments.add(CustomerSegment.new_customer.value)
    else:
        segments.add(CustomerSegment.returning_customer.value)
    if spent >= VIP_SPEND:
        segments.add(CustomerSegment.vip_customer.value)
    if len(orders) >= BULK_ORDER_COUNT or snapshot.total_items >= BULK_CART_ITEMS:
        segments.add(CustomerSegment.bulk_buyer.value)
    return segments


def is_discount_applicable(discount: Dict[str, Any], snapshot: CartSnapshot, user_id: str) -> bool:
    conditions = discount.get("conditions") or {}
    total = snapshot.total_price

    if conditions.get("min_order_amount") and total < conditions["min_order_amount"]:
        return False
    if conditions.get("max_order_amount") and total > conditions["max_order_amount"]:
        return False

    products = conditions.get("applicable_products") or []
    if products and not set(products) & set(snapshot.product_ids()):
        return False

    categories = conditions.get("applicable_categories") or []
    if categories:
        cart_categories = {c for line in snapshot.lines for c in line.category_ids}
        if not set(categories) & cart_categories:
            return False

    segments = conditions.get("customer_segments") or []
    if segments and not set(segments) & customer_segments(user_id, snapshot):
        return False

    if conditions.get("first_time_only") and db["order"].count_documents(_placed_orders(user_id)) > 0:
        return False

    per_customer = conditions.get("max_usage_per_customer")
    if per_customer:
        query = _placed_orders(user_id)
        query["applied_discounts.discount_id"] = str(discount["_id"])
        if db["order"].count_documents(query) >= per_customer:
            return False

    return True


def calculate_discount_amount(discount: Dict[str, Any], snapshot: CartSnapshot) -> float:
    kind = discount["discount_type"]
    total = snapshot.total_price

    if kind == DiscountType.percentage.value:
        return money(total * discount.get("value", 0) / 100)

    if kind == DiscountType.fixed_amount.value:
        return money(min(discount.get("value", 0), total))

    if kind == DiscountType.buy_x_get_y.value:
        buy = discount.get("buy_quantity") or 0
        get = discount.get("get_quantity") or 0
        if buy <= 0 or get <= 0:
            return 0.0
        eligible = snapshot.lines
        products = (discount.get("conditions") or {}).get("applicable_products") or []
        if products:
            eligible = [line for line in eligible if line.product_id in products]
        free_units = sum(line.quantity for line in eligible) // buy * get
        amount = 0.0
        # Free units come out of the cheapest eligible stock first
        for line in sorted(eligible, key=lambda l: l.unit_price):
            if free_units <= 0:
                break
            take = min(free_units, line.quantity)
            amount += take * line.unit_price
            free_units -= take
        return money(amount)

    if kind == DiscountType.free_shipping.value:
        return money(snapshot.shipping_cost or 0)

    return 0.0


def _applied(discount: Dict[str, Any], amount: float) -> Dict[str, Any]:
    return {
        "discount_id": str(discount["_id"]),
        "name": discount.get("name"),
        "discount_type": discount["discount_type"],
        "amount": amount,
    }


def calculate_discount(snapshot: CartSnapshot, user_id: str) -> Dict[str, Any]:
    applicable = [d for d in active_discounts() if is_discount_applicable(d, snapshot, user_id)]

    best_amount = 0.0
    best: List[Dict[str, Any]] = []
    strategy = None

    stackable = [d for d in applicable if d.get("stackable")]
    if stackable:
        stacked = [_applied(d, calculate_discount_amount(d, snapshot)) for d in stackable]
        stacked_total = money(sum(a["amount"] for a in stacked))
        if stacked_total > best_amount:
            best_amount, best, strategy = stacked_total, stacked, "stacked"

    for discount in applicable:
        amount = calculate_discount_amount(discount, snapshot)
        if amount > best_amount:
            best_amount, best, strategy = amount, [_applied(discount, amount)], "single"

    return {
        "applied_discounts": best,
        "strategy": strategy,
        "total_discount": best_amount,
        "final_total": money(max(0.0, snapshot.total_price - best_amount)),
    }


def record_usage(discount_id: str) -> bool:
    discount = db["discount"].find_one({"_id": to_object_id(discount_id, "Discount")})
    if discount is None:
        return False
    filt: Dict[str, Any] = {"_id": discount["_id"]}
    if discount.get("max_usage") is not None:
        filt["usage_count"] = {"$lt": discount["max_usage"]}
    res = db["discount"].update_one(filt, {"$inc": {"usage_count": 1}})
    return bool(res.modified_count)


def release_usage(discount_id: str) -> None:
    db["discount"].update_one(
        {"_id": to_object_id(discount_id, "Discount"), "usage_count": {"$gt": 0}},
        {"$inc": {"usage_count": -1}},
    )


def validate_discount(data: Union[Discount, Dict[str, Any]]) -> List[str]:
    if isinstance(data, Discount):
        data = data.model_dump()
    errors = []
    if data["start_date"] >= data["end_date"]:
        errors.append("End date must be after start date")
    kind = data["discount_type"]
    value = data.get("value") or 0
    if kind == DiscountType.percentage.value and (value <= 0 or value > 100):
        errors.append("Percentage discount must be between 1 and 100")
    if kind == DiscountType.fixed_amount.value and value <= 0:
        errors.append("Fixed amount discount must be greater than 0")
    if kind == DiscountType.buy_x_get_y.value:
        if not data.get("buy_quantity") or data["buy_quantity"] <= 0:
            errors.append("Buy quantity must be greater than 0")
        if not data.get("get_quantity") or data["get_quantity"] <= 0:
            errors.append("Get quantity must be greater than 0")
    return errors


# Admin

def create_discount(payload: Discount, created_by: str) -> Dict[str, Any]:
    errors = validate_discount(payload)
    if errors:
        raise ValidationFailed("; ".join(errors))
    doc = payload.model_dump()
    doc.update({"usage_count": 0, "created_by": created_by})
    did = create_document("discount", doc)
    logger.info("Discount %s created by %s", payload.name, created_by)
    return get_discount(did)


def list_discounts(is_active: Optional[bool] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if is_active is not None:
        query["is_active"] = is_active
    return paginate("discount", query, page=page, limit=limit, sort=[("priority", -1), ("created_at", -1)])


def get_discount(discount_id: str) -> Dict[str, Any]:
    discount = db["discount"].find_one({"_id": to_object_id(discount_id, "Discount")})
    if not discount:
        raise NotFound("Discount not found")
    return public(discount)


def update_discount(discount_id: str, payload: Discount) -> Dict[str, Any]:
    errors = validate_discount(payload)
    if errors:
        raise ValidationFailed("; ".join(errors))
    changes = payload.model_dump()
    changes["updated_at"] = now_utc()
    res = db["discount"].update_one({"_id": to_object_id(discount_id, "Discount")}, {"$set": changes})
    if res.matched_count == 0:
        raise NotFound("Discount not found")
    return get_discount(discount_id)


def delete_discount(discount_id: str) -> None:
    res = db["discount"].delete_one({"_id": to_object_id(discount_id, "Discount")})
    if res.deleted_count == 0:
        raise NotFound("Discount not found")
