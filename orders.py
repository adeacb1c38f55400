"""
Order assembly and order lifecycle.

``create_order`` runs as a unit of work: every step that mutates shared state
(stock reservation, coupon redemption, discount usage) registers a
compensation, and any failure before the order is stored runs the recorded
compensations in reverse order before re-raising.

Status changes go through ``TRANSITIONS``; a move that is not listed there is
rejected with ``InvalidState``.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import config
from carts import build_snapshot, delete_cart
from coupons import redeem_coupon, release_coupon
from database import db, get_next_sequence, money, now_utc, paginate, public, to_object_id
from discounts import record_usage, release_usage
from errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from inventory import release_stock, reserve_stock
from pricing import price_snapshot
from schemas import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

S = OrderStatus
TRANSITIONS = {
    S.pending: {S.confirmed, S.processing, S.cancelled},
    S.confirmed: {S.processing, S.cancelled},
    S.processing: {S.shipped, S.cancelled},
    S.shipped: {S.delivered, S.returned},
    S.delivered: {S.returned},
    S.cancelled: set(),
    S.returned: set(),
}
NOT_CANCELLABLE = {S.shipped, S.delivered}


class Compensations:
    """Undo actions recorded while an order is being assembled."""

    def __init__(self) -> None:
        self._actions: List[tuple] = []

    def add(self, description: str, fn: Callable, *args) -> None:
        self._actions.append((description, fn, args))

    def run(self) -> int:
        """Run recorded actions newest first; returns how many failed."""
        failed = 0
        for description, fn, args in reversed(self._actions):
            try:
                fn(*args)
            except Exception:
                failed += 1
                logger.exception("Compensation failed: %s", description)
        self._actions.clear()
        return failed


def next_order_number() -> str:
    seq = get_next_sequence("order")
    return f"ORD-{now_utc():%Y%m%d}-{seq:08d}"


def _order_line(line) -> Dict[str, Any]:
    product = line.product
    return {
        "product_id": line.product_id,
        "quantity": line.quantity,
        "unit_price": line.unit_price,
        "subtotal": money(line.subtotal),
        "variant": line.variant,
        "snapshot": {
            "title": product.get("title"),
            "image": (product.get("images") or [None])[0],
            "sku": product.get("sku"),
        },
    }


def create_order(user: Dict[str, Any], items: List[Dict[str, Any]], shipping_address: Dict[str, Any],
                 payment_info: Dict[str, Any], billing_address: Optional[Dict[str, Any]] = None,
                 tax_price: float = 0.0, shipping_price: float = 0.0, coupon_code: Optional[str] = None,
                 expected_total: Optional[float] = None, notes: Optional[str] = None) -> Dict[str, Any]:
    if not items:
        raise ValidationFailed("Order must contain at least one item")
    user_id = str(user["_id"])
    order_id = ObjectId()
    order_ref = str(order_id)

    snapshot = build_snapshot(items, shipping_cost=shipping_price, strict=True)
    for line in snapshot.lines:
        if not line.product.get("is_active", True):
            raise NotFound(f"Product not found: {line.product_id}")

    undo = Compensations()
    try:
        for line in snapshot.lines:
            if line.product.get("track_inventory", True):
                reserve_stock(line.product, line.quantity, order_ref=order_ref, user_id=user_id)
                undo.add(f"restock {line.product_id}", release_stock, line.product_id, line.quantity,
                         "Order creation rolled back", order_ref, user_id)

        quote = price_snapshot(snapshot, user_id, coupon_code=coupon_code, tax_price=tax_price)

        coupon_line = quote.coupon_line
        coupon_info = None
        if coupon_line is not None:
            redemption_id = redeem_coupon(coupon_line.coupon, user_id, quote.items_price, coupon_line.amount,
                                          order_id=order_ref)
            undo.add(f"release coupon {coupon_line.code}", release_coupon, coupon_line.coupon["_id"], redemption_id)
            coupon_info = {"code": coupon_line.code, "discount": coupon_line.amount, "redemption_id": redemption_id}

        for applied in quote.applied_discounts:
            if not record_usage(applied["discount_id"]):
                raise Conflict(f"Discount {applied['name']} is no longer available, please retry")
            undo.add(f"release discount {applied['discount_id']}", release_usage, applied["discount_id"])

        if expected_total is not None and abs(expected_total - quote.total_price) > 0.01:
            logger.warning("Order %s: client total %.2f differs from computed %.2f",
                           order_ref, expected_total, quote.total_price)

        now = now_utc()
        payment = dict(payment_info)
        payment.update({"payment_status": PaymentStatus.pending.value, "paid_at": None})
        order = {
            "_id": order_id,
            "order_number": next_order_number(),
            "user_id": user_id,
            "items": [_order_line(line) for line in snapshot.lines],
            "shipping_address": shipping_address,
            "billing_address": billing_address or shipping_address,
            "payment_info": payment,
            "items_price": quote.items_price,
            "tax_price": quote.tax_price,
            "shipping_price": quote.shipping_price,
            "discount_amount": quote.discount_amount,
            "total_price": quote.total_price,
            "coupon": coupon_info,
            "applied_discounts": quote.applied_discounts,
            "status": S.pending.value,
            "status_history": [{"status": S.pending.value, "date": now, "note": "Order placed"}],
            "notes": notes,
            "created_at": now,
            "updated_at": now,
        }
        _store(order)
    except Exception:
        failed = undo.run()
        logger.warning("Order %s for %s rolled back (%d compensation failures)", order_ref, user_id, failed)
        raise

    delete_cart(user_id)
    logger.info("Order %s (%s) created for %s: %.2f", order["order_number"], order_ref, user_id,
                order["total_price"])
    return _render(order, user)


def _store(order: Dict[str, Any]) -> None:
    for attempt in range(config.ORDER_NUMBER_MAX_RETRIES):
        try:
            db["order"].insert_one(order)
            return
        except DuplicateKeyError:
            logger.warning("Order number %s already taken (attempt %d)", order["order_number"], attempt + 1)
            order["order_number"] = next_order_number()
    raise Conflict("Could not allocate an order number, please retry")


def _render(order: Dict[str, Any], user: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = public(order)
    if user is None and ObjectId.is_valid(order["user_id"]):
        user = db["user"].find_one({"_id": ObjectId(order["user_id"])})
    if user is not None:
        out["user"] = {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email")}
    return out


def _load(order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    return order


def _can_access(order: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return order["user_id"] == str(user["_id"]) or bool(user.get("is_admin"))


def get_order(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = _load(order_id)
    if not _can_access(order, user):
        raise Forbidden("Not authorized to access this order")
    return _render(order)


def list_orders(user: Dict[str, Any], status: Optional[str] = None, page: int = 1,
                limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if not user.get("is_admin"):
        query["user_id"] = str(user["_id"])
    if status:
        query["status"] = status
    return paginate("order", query, page=page, limit=limit, sort=[("created_at", -1)])


def _transition(order: Dict[str, Any], new_status: OrderStatus, note: str,
                extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    current = order["status"]
    now = now_utc()
    changes = {"status": new_status.value, "updated_at": now}
    changes.update(extra or {})
    res = db["order"].update_one(
        {"_id": order["_id"], "status": current},
        {"$set": changes, "$push": {"status_history": {"status": current, "date": now, "note": note}}},
    )
    if res.modified_count == 0:
        raise Conflict("Order status changed concurrently, please retry")
    logger.info("Order %s: %s -> %s", order.get("order_number"), current, new_status.value)
    return db["order"].find_one({"_id": order["_id"]})


def update_order_status(order_id: str, status: str, acting_user: Dict[str, Any],
                        note: Optional[str] = None) -> Dict[str, Any]:
    try:
        new_status = OrderStatus(status)
    except ValueError:
        raise ValidationFailed(f"Invalid order status: {status}")
    order = _load(order_id)
    if new_status == S.cancelled:
        return cancel_order(order_id, acting_user, note=note)

    current = OrderStatus(order["status"])
    if new_status not in TRANSITIONS[current]:
        raise InvalidState(f"Cannot change order status from {current.value} to {new_status.value}")

    now = now_utc()
    extra: Dict[str, Any] = {}
    if new_status == S.shipped:
        extra["shipped_at"] = now
    elif new_status == S.delivered:
        extra["delivered_at"] = now
        extra["payment_info.payment_status"] = PaymentStatus.paid.value
        extra["payment_info.paid_at"] = now
    if note:
        extra["notes"] = note
    updated = _transition(order, new_status, note or f"Status changed from {current.value} to {new_status.value}",
                          extra)
    return _render(updated)


def cancel_order(order_id: str, acting_user: Dict[str, Any], note: Optional[str] = None) -> Dict[str, Any]:
    order = _load(order_id)
    if not _can_access(order, acting_user):
        raise Forbidden("Not authorized to cancel this order")
    current = OrderStatus(order["status"])
    if current in NOT_CANCELLABLE:
        raise InvalidState("Cannot cancel order that has been shipped or delivered")
    if S.cancelled not in TRANSITIONS[current]:
        raise InvalidState(f"Cannot cancel order with status {current.value}")

    # Flip the status first so a concurrent cancel cannot restock twice
    updated = _transition(order, S.cancelled, note or "Order cancelled", {"cancelled_at": now_utc()})
    order_ref = str(order["_id"])
    for item in order.get("items", []):
        release_stock(item["product_id"], item["quantity"], "Order cancelled", order_ref, str(acting_user["_id"]))
    logger.info("Order %s cancelled by %s", order.get("order_number"), acting_user["_id"])
    return _render(updated)


def order_stats() -> Dict[str, Any]:
    breakdown = list(db["order"].aggregate([
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_amount": {"$sum": "$total_price"}}},
    ]))
    revenue = sum(b["total_amount"] for b in breakdown if b["_id"] in (S.shipped.value, S.delivered.value))
    return {
        "total_orders": db["order"].count_documents({}),
        "total_revenue": money(revenue),
        "status_breakdown": [
            {"status": b["_id"], "count": b["count"], "total_amount": money(b["total_amount"])}
            for b in breakdown
        ],
    }
