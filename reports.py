"""
Admin reports over orders and stock.

Revenue counts only orders that left the warehouse (``shipped`` or
``delivered``).
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import db, money, naive_utc, now_utc
from errors import ValidationFailed
from inventory import inventory_stats
from schemas import OrderStatus

FULFILLED = [OrderStatus.shipped.value, OrderStatus.delivered.value]
PERIOD_DAYS = {"week": 7, "month": 30, "year": 365}


def inventory_report(threshold: Optional[int] = None) -> Dict[str, Any]:
    stats = inventory_stats(threshold)
    return {
        "total_products": stats["stats"]["total_products"],
        "total_value": stats["stats"]["total_value"],
        "low_stock_count": len(stats["low_stock_products"]),
        "out_of_stock_count": len(stats["out_of_stock_products"]),
        "low_stock_products": stats["low_stock_products"],
        "out_of_stock_products": stats["out_of_stock_products"],
    }


def _window(start_date: Optional[datetime], end_date: Optional[datetime], period: str) -> Dict[str, Any]:
    if start_date or end_date:
        window = {}
        if start_date:
            window["$gte"] = naive_utc(start_date)
        if end_date:
            window["$lte"] = naive_utc(end_date)
        return window
    if period not in PERIOD_DAYS:
        raise ValidationFailed(f"Unknown period: {period}")
    return {"$gte": now_utc() - timedelta(days=PERIOD_DAYS[period])}


def _titles(product_ids: List[str]) -> Dict[str, str]:
    oids = [ObjectId(pid) for pid in product_ids if ObjectId.is_valid(pid)]
    return {str(p["_id"]): p.get("title") for p in db["product"].find({"_id": {"$in": oids}})}


def sales_report(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                 period: str = "month") -> Dict[str, Any]:
    match = {"status": {"$in": FULFILLED}, "created_at": _window(start_date, end_date, period)}

    days: Dict[str, Dict[str, Any]] = {}
    for order in db["order"].find(match, {"created_at": 1, "total_price": 1}):
        day = days.setdefault(order["created_at"].strftime("%Y-%m-%d"), {"total_orders": 0, "total_revenue": 0.0})
        day["total_orders"] += 1
        day["total_revenue"] += order["total_price"]
    daily = [
        {
            "date": date,
            "total_orders": d["total_orders"],
            "total_revenue": money(d["total_revenue"]),
            "average_order_value": money(d["total_revenue"] / d["total_orders"]),
        }
        for date, d in sorted(days.items())
    ]

    top = list(db["order"].aggregate([
        {"$match": match},
        {"$unwind": "$items"},
        {"$group": {
            "_id": "$items.product_id",
            "total_sold": {"$sum": "$items.quantity"},
            "revenue": {"$sum": "$items.subtotal"},
        }},
        {"$sort": {"total_sold": -1}},
        {"$limit": 10},
    ]))
    titles = _titles([t["_id"] for t in top])

    total_revenue = sum(d["total_revenue"] for d in days.values())
    total_orders = sum(d["total_orders"] for d in days.values())
    return {
        "period": period,
        "summary": {
            "total_revenue": money(total_revenue),
            "total_orders": total_orders,
            "average_order_value": money(total_revenue / total_orders) if total_orders else 0,
        },
        "daily_sales": daily,
        "top_selling_products": [
            {"product_id": t["_id"], "title": titles.get(t["_id"]), "total_sold": t["total_sold"],
             "revenue": money(t["revenue"])}
            for t in top
        ],
    }


def customer_report(limit: int = 20) -> Dict[str, Any]:
    top = list(db["order"].aggregate([
        {"$match": {"status": {"$in": FULFILLED}}},
        {"$group": {
            "_id": "$user_id",
            "total_orders": {"$sum": 1},
            "total_spent": {"$sum": "$total_price"},
        }},
        {"$sort": {"total_spent": -1}},
        {"$limit": limit},
    ]))
    oids = [ObjectId(t["_id"]) for t in top if ObjectId.is_valid(t["_id"])]
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": oids}})}

    top_customers = []
    for t in top:
        user = users.get(t["_id"])
        if user is None:
            continue
        top_customers.append({
            "customer": {"id": t["_id"], "name": user.get("name"), "email": user.get("email")},
            "total_orders": t["total_orders"],
            "total_spent": money(t["total_spent"]),
            "average_order_value": money(t["total_spent"] / t["total_orders"]),
        })

    counts = [c["order_count"] for c in db["order"].aggregate([
        {"$group": {"_id": "$user_id", "order_count": {"$sum": 1}}},
    ])]
    return {
        "customer_stats": {
            "total_customers": len(counts),
            "one_time_customers": sum(1 for n in counts if n == 1),
            "repeat_customers": sum(1 for n in counts if n > 1),
        },
        "top_customers": top_customers,
    }
