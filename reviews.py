"""
Product reviews.

One review per (product, user). The product's ``ratings`` summary
(``average`` and ``count`` over approved reviews) is recomputed whenever a
review is created, re-rated or deleted.
"""
import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from catalog import get_product_doc
from database import db, now_utc, paginate, public, to_object_id
from errors import Forbidden, NotFound, ValidationFailed
from schemas import OrderStatus, Review

logger = logging.getLogger(__name__)

EDITABLE = {"rating", "title", "comment", "images"}


def refresh_rating(product_id: str) -> Dict[str, Any]:
    ratings = [r["rating"] for r in db["review"].find({"product_id": product_id, "is_approved": True})]
    summary = {
        "average": round(sum(ratings) / len(ratings), 2) if ratings else 0,
        "count": len(ratings),
    }
    db["product"].update_one({"_id": to_object_id(product_id, "Product")}, {"$set": {"ratings": summary}})
    return summary


def _get(review_id: str) -> Dict[str, Any]:
    review = db["review"].find_one({"_id": to_object_id(review_id, "Review")})
    if not review:
        raise NotFound("Review not found")
    return review


def _is_admin(user: Dict[str, Any]) -> bool:
    return bool(user.get("is_admin"))


def create_review(user: Dict[str, Any], payload: Review) -> Dict[str, Any]:
    user_id = str(user["_id"])
    product = get_product_doc(payload.product_id)
    product_id = str(product["_id"])
    if db["review"].find_one({"product_id": product_id, "user_id": user_id}):
        raise ValidationFailed("You have already reviewed this product")
    purchased = db["order"].find_one({
        "user_id": user_id,
        "items.product_id": product_id,
        "status": OrderStatus.delivered.value,
    })
    now = now_utc()
    doc = payload.model_dump()
    doc.update({
        "product_id": product_id,
        "user_id": user_id,
        "user_name": user.get("name"),
        "is_verified_purchase": purchased is not None,
        "is_approved": True,
        "helpful_votes": 0,
        "voted_by": [],
        "replies": [],
        "created_at": now,
        "updated_at": now,
    })
    try:
        db["review"].insert_one(doc)
    except DuplicateKeyError:
        raise ValidationFailed("You have already reviewed this product")
    refresh_rating(product_id)
    logger.info("Review %s on %s by %s (%d stars)", doc["_id"], product_id, user_id, doc["rating"])
    return public(doc)


def product_reviews(product_id: str, rating: Optional[int] = None, page: int = 1, limit: int = 5) -> Dict[str, Any]:
    query: Dict[str, Any] = {"product_id": product_id, "is_approved": True}
    if rating:
        query["rating"] = rating
    result = paginate("review", query, page=page, limit=limit, sort=[("created_at", -1)])
    breakdown = db["review"].aggregate([
        {"$match": {"product_id": product_id, "is_approved": True}},
        {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
        {"$sort": {"_id": -1}},
    ])
    result["rating_breakdown"] = [{"rating": b["_id"], "count": b["count"]} for b in breakdown]
    return result


def user_reviews(user_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    return paginate("review", {"user_id": user_id}, page=page, limit=limit, sort=[("created_at", -1)])


def update_review(review_id: str, user: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    review = _get(review_id)
    if review["user_id"] != str(user["_id"]):
        raise Forbidden("Not authorized to update this review")
    changes = {k: v for k, v in changes.items() if k in EDITABLE and v is not None}
    changes["updated_at"] = now_utc()
    db["review"].update_one({"_id": review["_id"]}, {"$set": changes})
    if "rating" in changes:
        refresh_rating(review["product_id"])
    return public(db["review"].find_one({"_id": review["_id"]}))


def delete_review(review_id: str, user: Dict[str, Any]) -> None:
    review = _get(review_id)
    if review["user_id"] != str(user["_id"]) and not _is_admin(user):
        raise Forbidden("Not authorized to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    refresh_rating(review["product_id"])
    logger.info("Review %s deleted by %s", review_id, user["_id"])


def vote_review(review_id: str, user: Dict[str, Any], helpful: bool) -> Dict[str, Any]:
    """Count one vote per user; only helpful votes move ``helpful_votes``."""
    user_id = str(user["_id"])
    oid = to_object_id(review_id, "Review")
    res = db["review"].update_one(
        {"_id": oid, "voted_by": {"$ne": user_id}},
        {"$push": {"voted_by": user_id}, "$inc": {"helpful_votes": 1 if helpful else 0}},
    )
    if res.matched_count == 0:
        _get(review_id)
        raise ValidationFailed("You have already voted on this review")
    return public(db["review"].find_one({"_id": oid}))


def reply_to_review(review_id: str, user: Dict[str, Any], message: str) -> Dict[str, Any]:
    review = _get(review_id)
    reply = {
        "id": str(ObjectId()),
        "user_id": str(user["_id"]),
        "user_name": user.get("name"),
        "message": message,
        "created_at": now_utc(),
    }
    db["review"].update_one({"_id": review["_id"]}, {"$push": {"replies": reply}})
    return public(db["review"].find_one({"_id": review["_id"]}))
