"""
Stock movements.

Every change to ``product.inventory`` goes through a single-document atomic
update and leaves a write-once ``inventory_log`` entry. Decrements are
conditional on the stock still being sufficient, so concurrent orders cannot
drive a tracked product below zero.
"""
import logging
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

import config
from catalog import get_product_doc
from database import db, money, now_utc, paginate, to_object_id
from errors import InsufficientStock, ValidationFailed
from schemas import InventoryChange

logger = logging.getLogger(__name__)


def _log(product_id: str, change_type: InventoryChange, quantity: int, previous: int, new: int,
         reason: str, order_id: Optional[str] = None, user_id: Optional[str] = None,
         notes: Optional[str] = None) -> None:
    db["inventory_log"].insert_one({
        "product_id": product_id,
        "change_type": change_type.value,
        "quantity": quantity,
        "previous_quantity": previous,
        "new_quantity": new,
        "reason": reason,
        "order_id": order_id,
        "user_id": user_id,
        "notes": notes,
        "created_at": now_utc(),
    })


def reserve_stock(product: Dict[str, Any], quantity: int, order_ref: Optional[str] = None,
                  user_id: Optional[str] = None) -> int:
    """Atomically take ``quantity`` units of a tracked product; returns the new level."""
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"], "track_inventory": True, "inventory": {"$gte": quantity}},
        {"$inc": {"inventory": -quantity}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InsufficientStock(f"Insufficient stock for {product.get('title')}")
    new_qty = updated["inventory"]
    _log(str(product["_id"]), InventoryChange.sold, quantity, new_qty + quantity, new_qty,
         "Order placed", order_id=order_ref, user_id=user_id)
    logger.info("Reserved %s x %s (left %s)", quantity, product["_id"], new_qty)
    return new_qty


def release_stock(product_id: str, quantity: int, reason: str, order_ref: Optional[str] = None,
                  user_id: Optional[str] = None) -> Optional[int]:
    """Put ``quantity`` units back; a no-op for missing or untracked products."""
    updated = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id, "Product"), "track_inventory": True},
        {"$inc": {"inventory": quantity}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        return None
    new_qty = updated["inventory"]
    _log(product_id, InventoryChange.returned, quantity, new_qty - quantity, new_qty, reason,
         order_id=order_ref, user_id=user_id)
    logger.info("Released %s x %s (now %s): %s", quantity, product_id, new_qty, reason)
    return new_qty


def adjust_stock(product_id: str, delta: int, reason: str, user_id: Optional[str] = None,
                 notes: Optional[str] = None) -> Dict[str, Any]:
    if delta == 0:
        raise ValidationFailed("Adjustment must be non-zero")
    product = get_product_doc(product_id)
    filt: Dict[str, Any] = {"_id": product["_id"]}
    if delta < 0:
        filt["inventory"] = {"$gte": -delta}
    updated = db["product"].find_one_and_update(
        filt,
        {"$inc": {"inventory": delta}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InsufficientStock("Insufficient stock for adjustment")
    new_qty = updated["inventory"]
    previous = new_qty - delta
    _log(product_id, InventoryChange.adjustment, abs(delta), previous, new_qty, reason,
         user_id=user_id, notes=notes)
    logger.info("Adjusted %s by %+d (%s -> %s)", product_id, delta, previous, new_qty)
    return {
        "product_id": product_id,
        "previous_quantity": previous,
        "new_quantity": new_qty,
        "adjustment": delta,
    }


def inventory_logs(product_id: Optional[str] = None, change_type: Optional[str] = None,
                   page: int = 1, limit: int = 20) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    if product_id:
        filters["product_id"] = product_id
    if change_type:
        filters["change_type"] = change_type
    return paginate("inventory_log", filters, page=page, limit=limit, sort=[("created_at", -1)])


def inventory_stats(threshold: Optional[int] = None) -> Dict[str, Any]:
    if threshold is None:
        threshold = config.LOW_STOCK_THRESHOLD
    low, out = [], []
    total_value = 0.0
    total_quantity = 0
    count = 0
    for p in db["product"].find({"is_active": True}):
        count += 1
        qty = p.get("inventory", 0)
        total_quantity += qty
        total_value += p.get("price", 0) * qty
        if not p.get("track_inventory", True):
            continue
        summary = {"id": str(p["_id"]), "title": p.get("title"), "inventory": qty}
        if qty == 0:
            out.append(summary)
        elif qty < threshold:
            low.append(summary)
    return {
        "low_stock_products": low,
        "out_of_stock_products": out,
        "stats": {
            "total_value": money(total_value),
            "total_products": count,
            "total_quantity": total_quantity,
        },
    }
