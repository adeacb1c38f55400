from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from database import db, create_document, now_utc, paginate, public, to_object_id
from errors import NotFound, ValidationFailed
from schemas import Category, Product


SORTS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "newest": [("created_at", -1)],
    "title": [("title", 1)],
    "rating": [("ratings.average", -1)],
}


def find_product(product_id: str) -> Optional[Dict[str, Any]]:
    if not ObjectId.is_valid(product_id):
        return None
    return db["product"].find_one({"_id": ObjectId(product_id)})


def get_product_doc(product_id: str) -> Dict[str, Any]:
    product = find_product(product_id)
    if not product:
        raise NotFound(f"Product not found: {product_id}")
    return product


def list_products(q: Optional[str] = None, category: Optional[str] = None, brand: Optional[str] = None,
                  sort: Optional[str] = None, page: int = 1, page_size: int = 12,
                  min_price: Optional[float] = None, max_price: Optional[float] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"is_active": True}
    if q:
        filt["$or"] = [
            {"title": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category:
        filt["category_ids"] = category
    if brand:
        filt["brand"] = brand
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    return paginate("product", filt, page=page, limit=page_size, sort=SORTS.get(sort))


def get_product(slug_or_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"slug": slug_or_id}) or find_product(slug_or_id)
    if not product:
        raise NotFound("Product not found")
    return public(product)


def create_product(payload: Product) -> Dict[str, Any]:
    if db["product"].find_one({"slug": payload.slug}):
        raise ValidationFailed("Slug already exists")
    try:
        pid = create_document("product", payload)
    except DuplicateKeyError:
        raise ValidationFailed("Slug already exists")
    return public(db["product"].find_one({"_id": ObjectId(pid)}))


def update_product(product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    # Stock only moves through the inventory ledger
    changes = {k: v for k, v in changes.items() if k not in {"_id", "id", "inventory", "created_at"}}
    if "price" in changes and (not isinstance(changes["price"], (int, float)) or changes["price"] < 0):
        raise ValidationFailed("Price must be a non-negative number")
    changes["updated_at"] = now_utc()
    oid = to_object_id(product_id, "Product")
    if "slug" in changes and db["product"].find_one({"slug": changes["slug"], "_id": {"$ne": oid}}):
        raise ValidationFailed("Slug already exists")
    try:
        res = db["product"].update_one({"_id": oid}, {"$set": changes})
    except DuplicateKeyError:
        raise ValidationFailed("Slug already exists")
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return public(db["product"].find_one({"_id": oid}))


def delete_product(product_id: str) -> None:
    res = db["product"].delete_one({"_id": to_object_id(product_id, "Product")})
    if res.deleted_count == 0:
        raise NotFound("Product not found")


def list_categories():
    return [public(c) for c in db["category"].find({}).sort("name", 1)]


def create_category(payload: Category) -> Dict[str, Any]:
    if db["category"].find_one({"slug": payload.slug}):
        raise ValidationFailed("Category slug already exists")
    cid = create_document("category", payload)
    return public(db["category"].find_one({"_id": ObjectId(cid)}))
