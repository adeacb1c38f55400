"""
Per-user shopping cart.

A cart document holds ``{product_id, quantity, variant, added_at}`` lines;
``total_items`` and ``total_price`` are recomputed from live catalog prices
on every read and write.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from catalog import find_product, get_product_doc
from database import db, money, now_utc
from errors import InsufficientStock, NotFound, ValidationFailed

logger = logging.getLogger(__name__)


@dataclass
class CartLine:
    product: Dict[str, Any]
    quantity: int
    variant: Optional[str] = None

    @property
    def product_id(self) -> str:
        return str(self.product["_id"])

    @property
    def unit_price(self) -> float:
        return float(self.product.get("price", 0))

    @property
    def subtotal(self) -> float:
        return self.unit_price * self.quantity

    @property
    def category_ids(self) -> List[str]:
        return [str(c) for c in self.product.get("category_ids", [])]


@dataclass
class CartSnapshot:
    """Priced view of a set of lines, the input to promotion evaluation."""

    lines: List[CartLine] = field(default_factory=list)
    shipping_cost: float = 0.0

    @property
    def total_price(self) -> float:
        return money(sum(line.subtotal for line in self.lines))

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self.lines)

    def product_ids(self) -> List[str]:
        return [line.product_id for line in self.lines]


def build_snapshot(items: Iterable[Dict[str, Any]], shipping_cost: float = 0.0,
                   strict: bool = False) -> CartSnapshot:
    """Resolve ``{product_id, quantity, variant}`` dicts against the catalog.

    Unknown products are skipped unless ``strict`` is set.
    """
    lines = []
    for item in items:
        product = find_product(str(item["product_id"]))
        if product is None:
            if strict:
                raise NotFound(f"Product not found: {item['product_id']}")
            continue
        lines.append(CartLine(product=product, quantity=int(item["quantity"]), variant=item.get("variant")))
    return CartSnapshot(lines=lines, shipping_cost=shipping_cost)


def _is_available(product: Optional[Dict[str, Any]], quantity: int) -> bool:
    if not product or not product.get("is_active", True):
        return False
    if product.get("track_inventory", True) and product.get("inventory", 0) < quantity:
        return False
    return True


def _check_stock(product: Dict[str, Any], quantity: int) -> None:
    if product.get("track_inventory", True) and product.get("inventory", 0) < quantity:
        raise InsufficientStock(f"Insufficient stock for {product.get('title')}")


def _save(user_id: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    lines = []
    kept = []
    for it in items:
        product = find_product(it["product_id"])
        if not _is_available(product, it["quantity"]):
            logger.info("Pruning %s from cart of %s", it["product_id"], user_id)
            continue
        kept.append(it)
        lines.append(CartLine(product=product, quantity=it["quantity"], variant=it.get("variant")))
    snapshot = CartSnapshot(lines=lines)
    db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {
            "items": kept,
            "total_items": snapshot.total_items,
            "total_price": snapshot.total_price,
            "updated_at": now_utc(),
        }, "$setOnInsert": {"created_at": now_utc()}},
        upsert=True,
    )
    return _render(user_id, kept, snapshot)


def _render(user_id: str, items: List[Dict[str, Any]], snapshot: CartSnapshot) -> Dict[str, Any]:
    out_items = []
    for it, line in zip(items, snapshot.lines):
        out_items.append({
            "product_id": it["product_id"],
            "quantity": it["quantity"],
            "variant": it.get("variant"),
            "added_at": it.get("added_at"),
            "product": {
                "id": line.product_id,
                "title": line.product.get("title"),
                "price": line.unit_price,
                "image": (line.product.get("images") or [None])[0],
                "inventory": line.product.get("inventory", 0),
            },
            "subtotal": money(line.subtotal),
        })
    return {
        "user_id": user_id,
        "items": out_items,
        "total_items": snapshot.total_items,
        "total_price": snapshot.total_price,
    }


def _load_items(user_id: str) -> Optional[List[Dict[str, Any]]]:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart is None:
        return None
    return list(cart.get("items", []))


def get_cart(user_id: str) -> Dict[str, Any]:
    items = _load_items(user_id)
    if items is None:
        return {"user_id": user_id, "items": [], "total_items": 0, "total_price": 0}
    return _save(user_id, items)


def get_snapshot(user_id: str, shipping_cost: float = 0.0) -> CartSnapshot:
    items = _load_items(user_id) or []
    snapshot = build_snapshot(items, shipping_cost=shipping_cost)
    snapshot.lines = [line for line in snapshot.lines if _is_available(line.product, line.quantity)]
    return snapshot


def add_item(user_id: str, product_id: str, quantity: int = 1, variant: Optional[str] = None) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationFailed("Quantity must be a positive integer")
    product = get_product_doc(product_id)
    if not product.get("is_active", True):
        raise NotFound(f"Product not found: {product_id}")
    items = _load_items(user_id) or []
    existing = next((it for it in items if it["product_id"] == product_id and it.get("variant") == variant), None)
    wanted = quantity + (existing["quantity"] if existing else 0)
    _check_stock(product, wanted)
    if existing:
        existing["quantity"] = wanted
    else:
        items.append({"product_id": product_id, "quantity": quantity, "variant": variant, "added_at": now_utc()})
    return _save(user_id, items)


def update_item(user_id: str, product_id: str, quantity: int, variant: Optional[str] = None) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationFailed("Quantity must be a positive integer")
    items = _load_items(user_id)
    if items is None:
        raise NotFound("Cart not found")
    match = next((it for it in items if it["product_id"] == product_id
                  and (variant is None or it.get("variant") == variant)), None)
    if match is None:
        raise NotFound("Item not found in cart")
    _check_stock(get_product_doc(product_id), quantity)
    match["quantity"] = quantity
    return _save(user_id, items)


def remove_item(user_id: str, product_id: str) -> Dict[str, Any]:
    items = _load_items(user_id)
    if items is None:
        raise NotFound("Cart not found")
    return _save(user_id, [it for it in items if it["product_id"] != product_id])


def clear_cart(user_id: str) -> Dict[str, Any]:
    if _load_items(user_id) is None:
        raise NotFound("Cart not found")
    return _save(user_id, [])


def merge_guest_cart(user_id: str, guest_items: List[Dict[str, Any]]) -> Dict[str, Any]:
    items = _load_items(user_id) or []
    for guest in guest_items:
        pid = str(guest["product_id"])
        product = find_product(pid)
        if product is None:
            continue
        variant = guest.get("variant")
        existing = next((it for it in items if it["product_id"] == pid and it.get("variant") == variant), None)
        wanted = int(guest["quantity"]) + (existing["quantity"] if existing else 0)
        if product.get("track_inventory", True):
            # Merged lines are capped at stock instead of being pruned
            wanted = min(wanted, product.get("inventory", 0))
        if wanted <= 0:
            continue
        if existing:
            existing["quantity"] = wanted
        else:
            items.append({"product_id": pid, "quantity": wanted, "variant": variant, "added_at": now_utc()})
    return _save(user_id, items)


def delete_cart(user_id: str) -> None:
    db["cart"].delete_one({"user_id": user_id})
