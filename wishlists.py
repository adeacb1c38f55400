"""
Per-user wishlist.

Lines are ``{product_id, added_at}``; products that disappear or are
deactivated are dropped the next time the wishlist is read.
"""
import logging
from typing import Any, Dict, List

import carts
from catalog import find_product, get_product_doc
from database import db, now_utc
from errors import InsufficientStock, NotFound, ValidationFailed

logger = logging.getLogger(__name__)


def _render(user_id: str, items: List[Dict[str, Any]], products: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    out = []
    for it in items:
        product = products[it["product_id"]]
        out.append({
            "product_id": it["product_id"],
            "added_at": it.get("added_at"),
            "product": {
                "id": it["product_id"],
                "title": product.get("title"),
                "price": product.get("price"),
                "image": (product.get("images") or [None])[0],
                "inventory": product.get("inventory", 0),
            },
        })
    return {"user_id": user_id, "items": out, "total_items": len(out)}


def get_wishlist(user_id: str) -> Dict[str, Any]:
    wishlist = db["wishlist"].find_one({"user_id": user_id})
    if wishlist is None:
        return {"user_id": user_id, "items": [], "total_items": 0}
    items = wishlist.get("items", [])
    products = {}
    kept = []
    for it in items:
        product = find_product(it["product_id"])
        if product is None or not product.get("is_active", True):
            continue
        products[it["product_id"]] = product
        kept.append(it)
    if len(kept) != len(items):
        logger.info("Pruning %d stale wishlist lines for %s", len(items) - len(kept), user_id)
        db["wishlist"].update_one({"user_id": user_id},
                                  {"$set": {"items": kept, "updated_at": now_utc()}})
    return _render(user_id, kept, products)


def add_to_wishlist(user_id: str, product_id: str) -> Dict[str, Any]:
    product = get_product_doc(product_id)
    if not product.get("is_active", True):
        raise NotFound(f"Product not found: {product_id}")
    if db["wishlist"].find_one({"user_id": user_id, "items.product_id": product_id}):
        raise ValidationFailed("Product already in wishlist")
    db["wishlist"].update_one(
        {"user_id": user_id},
        {"$push": {"items": {"product_id": product_id, "added_at": now_utc()}},
         "$set": {"updated_at": now_utc()},
         "$setOnInsert": {"created_at": now_utc()}},
        upsert=True,
    )
    return get_wishlist(user_id)


def remove_from_wishlist(user_id: str, product_id: str) -> Dict[str, Any]:
    if db["wishlist"].find_one({"user_id": user_id}) is None:
        raise NotFound("Wishlist not found")
    db["wishlist"].update_one({"user_id": user_id},
                              {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": now_utc()}})
    return get_wishlist(user_id)


def clear_wishlist(user_id: str) -> Dict[str, Any]:
    res = db["wishlist"].update_one({"user_id": user_id},
                                    {"$set": {"items": [], "updated_at": now_utc()}})
    if res.matched_count == 0:
        raise NotFound("Wishlist not found")
    return {"user_id": user_id, "items": [], "total_items": 0}


def move_to_cart(user_id: str, product_id: str) -> Dict[str, Any]:
    """Add one unit of a wished product to the cart and drop it from the wishlist."""
    product = get_product_doc(product_id)
    if product.get("track_inventory", True) and product.get("inventory", 0) < 1:
        raise InsufficientStock("Product out of stock")
    cart = carts.add_item(user_id, product_id, 1)
    db["wishlist"].update_one({"user_id": user_id},
                              {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": now_utc()}})
    logger.info("Moved %s from wishlist to cart for %s", product_id, user_id)
    return cart
