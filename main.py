import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import carts
import catalog
import config
import coupons
import discounts
import inventory
import orders
import reports
import reviews
import wishlists
from auth import authenticate, create_token, get_current_user, register_user, require_admin, user_summary
from database import db, ensure_indexes
from errors import StoreError
from pricing import price_snapshot
from schemas import Address, Category, Coupon, Discount, OrderStatus, PaymentInfo, Product, Review

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    yield


# App setup
app = FastAPI(title="Storefront API", version="0.2.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration = (time.perf_counter() - start) * 1000
    level = logging.WARNING if response.status_code >= 400 else logging.INFO
    logger.log(level, "%s %s - %s - %.0fms", request.method, request.url.path, response.status_code, duration)
    return response


# Error envelope

def _fail(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"success": False, "message": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return _fail(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    response = _fail(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = {".".join(str(p) for p in err["loc"] if p != "body"): err["msg"] for err in exc.errors()}
    return _fail(400, "Validation errors", errors=errors)


# Request schemas
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant: Optional[str] = None


class CartMergeRequest(BaseModel):
    guest_cart: List[CartItemIn]


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    variant: Optional[str] = None


class CreateOrderRequest(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_info: PaymentInfo
    tax_price: float = Field(0, ge=0)
    shipping_price: float = Field(0, ge=0)
    total_price: Optional[float] = Field(None, ge=0)
    coupon_code: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class CouponValidateRequest(BaseModel):
    code: str
    cart_total: float = Field(..., ge=0)


class CouponApplyRequest(BaseModel):
    code: str
    cart_items: List[CartItemIn] = Field(..., min_length=1)


class QuoteRequest(BaseModel):
    coupon_code: Optional[str] = None
    shipping_price: float = Field(0, ge=0)
    tax_price: float = Field(0, ge=0)


class StockAdjustment(BaseModel):
    product_id: str
    quantity: int
    reason: str
    notes: Optional[str] = None


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, min_length=5, max_length=100)
    comment: Optional[str] = Field(None, min_length=10, max_length=500)


class VoteRequest(BaseModel):
    helpful: bool


class ReplyRequest(BaseModel):
    message: str = Field(..., min_length=5, max_length=300)


# Health and helpers
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest):
    user = register_user(payload.name, payload.email, payload.password)
    return {"success": True, "token": create_token(user), "user": user_summary(user)}


@app.post("/auth/login")
def login(payload: LoginRequest):
    user = authenticate(payload.email, payload.password)
    return {"success": True, "token": create_token(user), "user": user_summary(user)}


@app.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    profile = user_summary(current_user)
    profile["addresses"] = current_user.get("addresses", [])
    return {"success": True, "user": profile}


# Catalog
@app.get("/categories")
def list_categories():
    return {"success": True, "categories": catalog.list_categories()}


@app.post("/categories", status_code=201)
def create_category(payload: Category, admin: dict = Depends(require_admin)):
    return {"success": True, "category": catalog.create_category(payload)}


@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, brand: Optional[str] = None,
                  sort: Optional[str] = None, page: int = 1, page_size: int = 12, min_price: Optional[float] = None,
                  max_price: Optional[float] = None):
    result = catalog.list_products(q=q, category=category, brand=brand, sort=sort, page=page,
                                   page_size=page_size, min_price=min_price, max_price=max_price)
    return {"success": True, **result}


@app.get("/products/{slug}")
def get_product(slug: str):
    return {"success": True, "product": catalog.get_product(slug)}


@app.post("/products", status_code=201)
def create_product(payload: Product, admin: dict = Depends(require_admin)):
    return {"success": True, "product": catalog.create_product(payload)}


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: Dict[str, Any] = Body(...), admin: dict = Depends(require_admin)):
    return {"success": True, "product": catalog.update_product(product_id, payload)}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin)):
    catalog.delete_product(product_id)
    return {"success": True, "message": "Product deleted"}


# Cart
@app.get("/cart")
def get_cart(user: dict = Depends(get_current_user)):
    return {"success": True, "cart": carts.get_cart(str(user["_id"]))}


@app.post("/cart/add")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user)):
    cart = carts.add_item(str(user["_id"]), item.product_id, item.quantity, item.variant)
    return {"success": True, "message": "Item added to cart", "cart": cart}


@app.put("/cart/update")
def cart_update(item: CartItemIn, user: dict = Depends(get_current_user)):
    cart = carts.update_item(str(user["_id"]), item.product_id, item.quantity, item.variant)
    return {"success": True, "message": "Cart updated", "cart": cart}


@app.delete("/cart/remove/{product_id}")
def cart_remove(product_id: str, user: dict = Depends(get_current_user)):
    cart = carts.remove_item(str(user["_id"]), product_id)
    return {"success": True, "message": "Item removed from cart", "cart": cart}


@app.delete("/cart/clear")
def cart_clear(user: dict = Depends(get_current_user)):
    return {"success": True, "message": "Cart cleared", "cart": carts.clear_cart(str(user["_id"]))}


@app.post("/cart/merge")
def cart_merge(payload: CartMergeRequest, user: dict = Depends(get_current_user)):
    cart = carts.merge_guest_cart(str(user["_id"]), [i.model_dump() for i in payload.guest_cart])
    return {"success": True, "message": "Guest cart merged successfully", "cart": cart}


@app.post("/cart/quote")
def cart_quote(payload: QuoteRequest, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    snapshot = carts.get_snapshot(uid, shipping_cost=payload.shipping_price)
    quote = price_snapshot(snapshot, uid, coupon_code=payload.coupon_code, tax_price=payload.tax_price)
    return {"success": True, "quote": quote.to_dict()}


# Orders
@app.post("/orders", status_code=201)
def create_order(payload: CreateOrderRequest, user: dict = Depends(get_current_user)):
    order = orders.create_order(
        user,
        items=[i.model_dump() for i in payload.items],
        shipping_address=payload.shipping_address.model_dump(),
        billing_address=payload.billing_address.model_dump() if payload.billing_address else None,
        payment_info=payload.payment_info.model_dump(),
        tax_price=payload.tax_price,
        shipping_price=payload.shipping_price,
        coupon_code=payload.coupon_code,
        expected_total=payload.total_price,
        notes=payload.notes,
    )
    return {"success": True, "order": order}


@app.get("/orders")
def list_orders(status: Optional[OrderStatus] = None, page: int = 1, limit: int = 10,
                user: dict = Depends(get_current_user)):
    result = orders.list_orders(user, status=status.value if status else None, page=page, limit=limit)
    return {"success": True, **result}


@app.get("/orders/stats")
def order_stats(admin: dict = Depends(require_admin)):
    return {"success": True, "stats": orders.order_stats()}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user)):
    return {"success": True, "order": orders.get_order(order_id, user)}


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, admin: dict = Depends(require_admin)):
    order = orders.update_order_status(order_id, payload.status.value, admin, note=payload.note)
    return {"success": True, "message": "Order status updated successfully", "order": order}


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(get_current_user)):
    order = orders.cancel_order(order_id, user)
    return {"success": True, "message": "Order cancelled successfully", "order": order}


# Coupons
@app.post("/coupons/validate")
def validate_coupon(payload: CouponValidateRequest, user: dict = Depends(get_current_user)):
    preview = coupons.validate_coupon(payload.code, str(user["_id"]), payload.cart_total)
    return {"success": True, "message": "Coupon is valid", "coupon": preview}


@app.post("/coupons/apply")
def apply_coupon(payload: CouponApplyRequest, user: dict = Depends(get_current_user)):
    discount = coupons.apply_coupon(payload.code, str(user["_id"]), [i.model_dump() for i in payload.cart_items])
    return {"success": True, "message": "Coupon applied successfully", "discount": discount}


@app.get("/coupons")
def list_coupons(is_active: Optional[bool] = None, discount_type: Optional[str] = None, page: int = 1,
                 limit: int = 10, admin: dict = Depends(require_admin)):
    return {"success": True, **coupons.list_coupons(is_active, discount_type, page, limit)}


@app.post("/coupons", status_code=201)
def create_coupon(payload: Coupon, admin: dict = Depends(require_admin)):
    return {"success": True, "coupon": coupons.create_coupon(payload, str(admin["_id"]))}


@app.get("/coupons/{coupon_id}")
def get_coupon(coupon_id: str, admin: dict = Depends(require_admin)):
    return {"success": True, "coupon": coupons.get_coupon(coupon_id)}


@app.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: Coupon, admin: dict = Depends(require_admin)):
    return {"success": True, "coupon": coupons.update_coupon(coupon_id, payload)}


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: dict = Depends(require_admin)):
    coupons.delete_coupon(coupon_id)
    return {"success": True, "message": "Coupon deleted successfully"}


# Discounts
@app.post("/discounts/calculate")
def calculate_discount(shipping_cost: float = Body(0, embed=True), user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    result = discounts.calculate_discount(carts.get_snapshot(uid, shipping_cost=shipping_cost), uid)
    return {"success": True, **result}


@app.get("/discounts")
def list_discounts(is_active: Optional[bool] = None, page: int = 1, limit: int = 10,
                   admin: dict = Depends(require_admin)):
    return {"success": True, **discounts.list_discounts(is_active, page, limit)}


@app.post("/discounts", status_code=201)
def create_discount(payload: Discount, admin: dict = Depends(require_admin)):
    return {"success": True, "discount": discounts.create_discount(payload, str(admin["_id"]))}


@app.get("/discounts/{discount_id}")
def get_discount(discount_id: str, admin: dict = Depends(require_admin)):
    return {"success": True, "discount": discounts.get_discount(discount_id)}


@app.put("/discounts/{discount_id}")
def update_discount(discount_id: str, payload: Discount, admin: dict = Depends(require_admin)):
    return {"success": True, "discount": discounts.update_discount(discount_id, payload)}


@app.delete("/discounts/{discount_id}")
def delete_discount(discount_id: str, admin: dict = Depends(require_admin)):
    discounts.delete_discount(discount_id)
    return {"success": True, "message": "Discount deleted successfully"}


# Inventory
@app.post("/inventory/adjust")
def adjust_stock(payload: StockAdjustment, admin: dict = Depends(require_admin)):
    result = inventory.adjust_stock(payload.product_id, payload.quantity, payload.reason,
                                    user_id=str(admin["_id"]), notes=payload.notes)
    return {"success": True, "data": result}


@app.get("/inventory/logs")
def inventory_logs(product_id: Optional[str] = None, change_type: Optional[str] = None, page: int = 1,
                   limit: int = 20, admin: dict = Depends(require_admin)):
    return {"success": True, **inventory.inventory_logs(product_id, change_type, page, limit)}


@app.get("/inventory/stats")
def inventory_stats(threshold: Optional[int] = None, admin: dict = Depends(require_admin)):
    return {"success": True, "data": inventory.inventory_stats(threshold)}


# Wishlist
@app.get("/wishlist")
def get_wishlist(user: dict = Depends(get_current_user)):
    return {"success": True, "wishlist": wishlists.get_wishlist(str(user["_id"]))}


@app.post("/wishlist/add/{product_id}")
def wishlist_add(product_id: str, user: dict = Depends(get_current_user)):
    wishlist = wishlists.add_to_wishlist(str(user["_id"]), product_id)
    return {"success": True, "message": "Product added to wishlist", "wishlist": wishlist}


@app.delete("/wishlist/remove/{product_id}")
def wishlist_remove(product_id: str, user: dict = Depends(get_current_user)):
    wishlist = wishlists.remove_from_wishlist(str(user["_id"]), product_id)
    return {"success": True, "message": "Product removed from wishlist", "wishlist": wishlist}


@app.delete("/wishlist/clear")
def wishlist_clear(user: dict = Depends(get_current_user)):
    return {"success": True, "message": "Wishlist cleared", "wishlist": wishlists.clear_wishlist(str(user["_id"]))}


@app.post("/wishlist/move-to-cart/{product_id}")
def wishlist_move_to_cart(product_id: str, user: dict = Depends(get_current_user)):
    cart = wishlists.move_to_cart(str(user["_id"]), product_id)
    return {"success": True, "message": "Product moved to cart successfully", "cart": cart}


# Reviews
@app.post("/reviews", status_code=201)
def create_review(payload: Review, user: dict = Depends(get_current_user)):
    return {"success": True, "review": reviews.create_review(user, payload)}


@app.get("/reviews/product/{product_id}")
def product_reviews(product_id: str, rating: Optional[int] = None, page: int = 1, limit: int = 5):
    return {"success": True, **reviews.product_reviews(product_id, rating, page, limit)}


@app.get("/reviews/user")
def user_reviews(page: int = 1, limit: int = 10, user: dict = Depends(get_current_user)):
    return {"success": True, **reviews.user_reviews(str(user["_id"]), page, limit)}


@app.put("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, user: dict = Depends(get_current_user)):
    review = reviews.update_review(review_id, user, payload.model_dump(exclude_unset=True))
    return {"success": True, "review": review}


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, user: dict = Depends(get_current_user)):
    reviews.delete_review(review_id, user)
    return {"success": True, "message": "Review deleted successfully"}


@app.post("/reviews/{review_id}/vote")
def vote_review(review_id: str, payload: VoteRequest, user: dict = Depends(get_current_user)):
    reviews.vote_review(review_id, user, payload.helpful)
    return {"success": True, "message": "Vote recorded successfully"}


@app.post("/reviews/{review_id}/reply")
def reply_to_review(review_id: str, payload: ReplyRequest, admin: dict = Depends(require_admin)):
    review = reviews.reply_to_review(review_id, admin, payload.message)
    return {"success": True, "message": "Reply added successfully", "review": review}


# Reports
@app.get("/reports/inventory")
def inventory_report(threshold: Optional[int] = None, admin: dict = Depends(require_admin)):
    return {"success": True, "inventory": reports.inventory_report(threshold)}


@app.get("/reports/sales")
def sales_report(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None, period: str = "month",
                 admin: dict = Depends(require_admin)):
    return {"success": True, "report": reports.sales_report(start_date, end_date, period)}


@app.get("/reports/customers")
def customer_report(limit: int = 20, admin: dict = Depends(require_admin)):
    return {"success": True, "report": reports.customer_report(limit)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
