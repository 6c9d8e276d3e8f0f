import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Literal, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

import orders
from auth import (
    create_access_token,
    get_current_user,
    hash_password,
    is_admin,
    public_user,
    require_admin,
    verify_password,
)
from database import create_document, db, ensure_indexes
from schemas import (
    REVENUE_STATUSES,
    VERIFIED_PURCHASE_STATUSES,
    CartItemIn,
    CartLine,
    CartQuantity,
    CheckoutInput,
    LoginInput,
    OrderInput,
    OrderStatus,
    Product as ProductSchema,
    ProductCategory,
    ProductIn,
    ProductUpdate,
    RegisterInput,
    Review as ReviewSchema,
    ReviewIn,
    ReviewUpdate,
    StatusUpdate,
    StockUpdate,
    User as UserSchema,
    UserUpdate,
)
from utils import icontains, now_utc, paginate, parse_object_id, serialize_doc

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MAX_CART_QUANTITY = 99

RATE_LIMIT_WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", 15 * 60 * 1000))
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", 100))


def rate_limit() -> str:
    """Per-client request budget, read on every request."""
    window_seconds = max(1, RATE_LIMIT_WINDOW_MS // 1000)
    return f"{RATE_LIMIT_MAX_REQUESTS} per {window_seconds} seconds"


limiter = Limiter(key_func=get_remote_address, default_limits=[rate_limit])


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)
app.state.limiter = limiter

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": err.get("msg")})
    return JSONResponse(status_code=400, content={"detail": "Validation failed", "errors": errors})


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("Rate limit hit by %s on %s %s", get_remote_address(request), request.method, request.url.path)
    return JSONResponse(status_code=429, content={"detail": "Too many requests from this IP, please try again later."})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": "Resource already exists"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# Helpers

def _users_by_id(user_ids: Iterable[str]) -> Dict[str, dict]:
    oids = [parse_object_id(uid, "user") for uid in set(user_ids) if uid]
    if not oids:
        return {}
    found = db["user"].find({"_id": {"$in": oids}}, {"username": 1, "first_name": 1, "last_name": 1, "email": 1})
    return {str(u["_id"]): serialize_doc(u) for u in found}


def _products_by_id(product_ids: Iterable[str]) -> Dict[str, dict]:
    oids = [parse_object_id(pid, "product") for pid in set(product_ids) if pid]
    if not oids:
        return {}
    found = db["product"].find({"_id": {"$in": oids}}, {"name": 1, "price": 1, "images": 1, "stock": 1, "is_active": 1})
    return {str(p["_id"]): serialize_doc(p) for p in found}


def _user_filter(search: str) -> Dict[str, Any]:
    pattern = icontains(search)
    return {"$or": [
        {"username": pattern},
        {"email": pattern},
        {"first_name": pattern},
        {"last_name": pattern},
    ]}


# Routes
@app.get("/")
def read_root():
    return {"message": "Storefront API"}


@app.get("/health")
def health():
    return {"status": "OK", "timestamp": now_utc().isoformat()}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    if db["user"].find_one({"username": payload.username}):
        raise HTTPException(status_code=409, detail="Username already taken")
    user_model = UserSchema(
        username=payload.username,
        email=email,
        password_hash=hash_password(payload.password),
        first_name=payload.first_name,
        last_name=payload.last_name,
        role="user",
    )
    user_id = create_document("user", user_model)
    token = create_access_token({"sub": user_id})
    user = db["user"].find_one({"_id": parse_object_id(user_id, "user")})
    return TokenResponse(access_token=token, user=public_user(user))


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginInput):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=public_user(user))


@app.get("/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


# Products
@app.get("/products")
def list_products(
    search: Optional[str] = Query(None, min_length=1),
    category: Optional[ProductCategory] = None,
    brand: Optional[str] = Query(None, min_length=1),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    sort_by: Literal["name", "price", "created_at", "stock"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=50),
):
    query: Dict[str, Any] = {"is_active": True}
    if search:
        pattern = icontains(search)
        query["$or"] = [
            {"name": pattern},
            {"description": pattern},
            {"brand": pattern},
            {"tags": pattern},
        ]
    if category:
        query["category"] = category
    if brand:
        query["brand"] = icontains(brand)
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter

    collection = db["product"]
    total = collection.count_documents(query)
    cursor = collection.find(query).sort(sort_by, 1 if sort_order == "asc" else -1)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    products = [serialize_doc(d) for d in cursor]
    return {
        "products": products,
        "pagination": paginate(total, page, limit),
        "filters": {
            "categories": sorted(collection.distinct("category", {"is_active": True})),
            "brands": sorted(collection.distinct("brand", {"is_active": True})),
        },
    }


@app.get("/products/{product_id}")
def get_product(product_id: str):
    product = db["product"].find_one({"_id": parse_object_id(product_id, "product")})
    if not product or not product.get("is_active", False):
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(product)


@app.post("/products", status_code=201)
def create_product(data: ProductIn, current_user: dict = Depends(require_admin)):
    product = ProductSchema(**data.model_dump(), created_by=current_user["id"])
    product_id = create_document("product", product)
    created = db["product"].find_one({"_id": parse_object_id(product_id, "product")})
    logger.info("Product %s created by %s with stock %d", product_id, current_user["id"], product.stock)
    return serialize_doc(created)


@app.put("/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(require_admin)):
    obj_id = parse_object_id(product_id, "product")
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    update_dict["updated_at"] = now_utc()
    res = db["product"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(db["product"].find_one({"_id": obj_id}))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_admin)):
    obj_id = parse_object_id(product_id, "product")
    # Soft delete keeps carts and past orders pointing at a real document
    res = db["product"].update_one({"_id": obj_id}, {"$set": {"is_active": False, "updated_at": now_utc()}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"ok": True}


@app.put("/products/{product_id}/stock")
def update_stock(product_id: str, data: StockUpdate, current_user: dict = Depends(require_admin)):
    obj_id = parse_object_id(product_id, "product")
    product = db["product"].find_one_and_update(
        {"_id": obj_id},
        {"$set": {"stock": data.stock, "updated_at": now_utc()}},
        return_document=ReturnDocument.BEFORE,
    )
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Stock of product %s adjusted by %s: %s -> %d", product_id, current_user["id"], product.get("stock"), data.stock)
    return serialize_doc(db["product"].find_one({"_id": obj_id}))


# Cart

def _get_or_create_cart(user_id: str) -> dict:
    db["cart"].update_one(
        {"user_id": user_id},
        {"$setOnInsert": {"items": [], "created_at": now_utc(), "updated_at": now_utc()}},
        upsert=True,
    )
    return db["cart"].find_one({"user_id": user_id})


def _save_cart_items(cart: dict, items: List[dict]) -> None:
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": now_utc()}})
    cart["items"] = items


def _cart_response(cart: dict, products: Optional[Dict[str, dict]] = None) -> dict:
    items = cart.get("items", [])
    if products is None:
        products = _products_by_id(it["product_id"] for it in items)
    lines = [{**it, "product": products.get(it["product_id"])} for it in items]
    return {
        "id": str(cart["_id"]),
        "user_id": cart["user_id"],
        "items": lines,
        "total_items": sum(int(it["quantity"]) for it in items),
        "total_amount": orders.order_total(items),
    }


def _available_product(product_id: str, not_found: str = "Product not found") -> dict:
    product = db["product"].find_one({"_id": parse_object_id(product_id, "product")})
    if not product or not product.get("is_active", False):
        raise HTTPException(status_code=404, detail=not_found)
    return product


@app.get("/cart")
def get_cart(current_user: dict = Depends(get_current_user)):
    cart = _get_or_create_cart(current_user["id"])
    items = cart.get("items", [])
    products = _products_by_id(it["product_id"] for it in items)
    # Drop lines whose product was removed or deactivated
    active = [it for it in items if products.get(it["product_id"], {}).get("is_active")]
    if len(active) != len(items):
        _save_cart_items(cart, active)
    return _cart_response(cart, products)


@app.post("/cart/add")
def add_to_cart(item: CartItemIn, current_user: dict = Depends(get_current_user)):
    product = _available_product(item.product_id)
    stock = int(product.get("stock", 0))
    if stock < item.quantity:
        raise HTTPException(status_code=400, detail=f"Only {stock} items available in stock")

    cart = _get_or_create_cart(current_user["id"])
    items = cart.get("items", [])
    for it in items:
        if it["product_id"] == item.product_id:
            new_quantity = int(it["quantity"]) + item.quantity
            if new_quantity > stock:
                raise HTTPException(status_code=400, detail=f"Cannot add more items. Only {stock} available in stock")
            if new_quantity > MAX_CART_QUANTITY:
                raise HTTPException(status_code=400, detail=f"Quantity must be between 1 and {MAX_CART_QUANTITY}")
            it["quantity"] = new_quantity
            it["price"] = float(product["price"])
            break
    else:
        line = CartLine(id=str(ObjectId()), product_id=item.product_id, quantity=item.quantity, price=float(product["price"]))
        items.append(line.model_dump())
    _save_cart_items(cart, items)
    return _cart_response(cart)


@app.put("/cart/update/{item_id}")
def update_cart_item(item_id: str, payload: CartQuantity, current_user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = cart.get("items", [])
    line = next((it for it in items if it["id"] == item_id), None)
    if line is None:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    product = _available_product(line["product_id"], not_found="Product no longer available")
    stock = int(product.get("stock", 0))
    if stock < payload.quantity:
        raise HTTPException(status_code=400, detail=f"Only {stock} items available in stock")
    line["quantity"] = payload.quantity
    line["price"] = float(product["price"])
    _save_cart_items(cart, items)
    return _cart_response(cart)


@app.delete("/cart/remove/{item_id}")
def remove_cart_item(item_id: str, current_user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    _save_cart_items(cart, [it for it in cart.get("items", []) if it["id"] != item_id])
    return _cart_response(cart)


@app.delete("/cart/clear")
def clear_cart(current_user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    _save_cart_items(cart, [])
    return _cart_response(cart, {})


@app.post("/cart/checkout", status_code=201)
def checkout(payload: CheckoutInput, current_user: dict = Depends(get_current_user)):
    return orders.checkout_cart(
        current_user["id"],
        payload.shipping_address.model_dump(),
        payload.billing_address.model_dump(),
        payload.payment_method,
        payload.notes,
    )


# Orders
@app.post("/orders", status_code=201)
def create_order(payload: OrderInput, current_user: dict = Depends(get_current_user)):
    return orders.place_order(
        current_user["id"],
        [line.model_dump() for line in payload.items],
        payload.shipping_address.model_dump(),
        payload.billing_address.model_dump(),
        payload.payment_method,
        payload.notes,
    )


def _order_page(query: Dict[str, Any], page: int, limit: int) -> dict:
    collection = db["order"]
    total = collection.count_documents(query)
    cursor = collection.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"orders": [serialize_doc(o) for o in cursor], "pagination": paginate(total, page, limit)}


@app.get("/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    user_id: Optional[str] = None,
    order_number: Optional[str] = Query(None, min_length=1),
    user_search: Optional[str] = Query(None, min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
):
    query: Dict[str, Any] = {}
    if not is_admin(current_user):
        query["user_id"] = current_user["id"]
    elif user_id:
        parse_object_id(user_id, "user")
        query["user_id"] = user_id
    if status:
        query["status"] = status
    if order_number:
        query["order_number"] = icontains(order_number)
    if is_admin(current_user) and user_search:
        matching = [str(u["_id"]) for u in db["user"].find(_user_filter(user_search), {"_id": 1})]
        if "user_id" in query:
            matching = [uid for uid in matching if uid == query["user_id"]]
        query["user_id"] = {"$in": matching}
    return _order_page(query, page, limit)


@app.get("/orders/my")
def my_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
):
    query: Dict[str, Any] = {"user_id": current_user["id"]}
    if status:
        query["status"] = status
    return _order_page(query, page, limit)


@app.get("/orders/stats/summary")
def order_stats(current_user: dict = Depends(require_admin)):
    collection = db["order"]
    breakdown = collection.aggregate([
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_value": {"$sum": "$total_amount"}}},
    ])
    revenue = list(collection.aggregate([
        {"$match": {"status": {"$in": list(REVENUE_STATUSES)}}},
        {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
    ]))
    return {
        "total_orders": collection.count_documents({}),
        "total_revenue": round(revenue[0]["total"], 2) if revenue else 0,
        "status_breakdown": sorted(
            ({"status": s["_id"], "count": s["count"], "total_value": round(s["total_value"], 2)} for s in breakdown),
            key=lambda s: s["status"],
        ),
    }


@app.get("/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    order = db["order"].find_one({"_id": parse_object_id(order_id, "order")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if not is_admin(current_user) and order["user_id"] != current_user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    order = serialize_doc(order)
    order["user"] = _users_by_id([order["user_id"]]).get(order["user_id"])
    return order


@app.put("/orders/{order_id}/status")
def set_order_status(order_id: str, payload: StatusUpdate, current_user: dict = Depends(require_admin)):
    return orders.update_order_status(parse_object_id(order_id, "order"), payload.status, payload.tracking_number)


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, current_user: dict = Depends(get_current_user)):
    return orders.cancel_order(parse_object_id(order_id, "order"), current_user)


# Reviews

def _with_authors(reviews: List[dict]) -> List[dict]:
    users = _users_by_id(r["user_id"] for r in reviews)
    for r in reviews:
        r["user"] = users.get(r["user_id"])
    return reviews


def _rating_stats(product_id: str) -> Optional[dict]:
    stats = list(db["review"].aggregate([
        {"$match": {"product_id": product_id, "reported": False}},
        {"$group": {
            "_id": None,
            "average_rating": {"$avg": "$rating"},
            "total_reviews": {"$sum": 1},
            "ratings": {"$push": "$rating"},
        }},
    ]))
    if not stats:
        return None
    ratings = stats[0]["ratings"]
    return {
        "average_rating": round(stats[0]["average_rating"], 1),
        "total_reviews": stats[0]["total_reviews"],
        "distribution": [{"rating": r, "count": ratings.count(r)} for r in range(1, 6)],
    }


def _visible_review(review_id: str) -> dict:
    review = db["review"].find_one({"_id": parse_object_id(review_id, "review")})
    if not review or review.get("reported"):
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@app.get("/reviews")
def list_reviews(
    product: Optional[str] = None,
    user: Optional[str] = None,
    rating: Optional[int] = Query(None, ge=1, le=5),
    sort_by: Literal["rating", "created_at", "helpful"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
):
    query: Dict[str, Any] = {"reported": False}
    if product:
        parse_object_id(product, "product")
        query["product_id"] = product
    if user:
        parse_object_id(user, "user")
        query["user_id"] = user
    if rating:
        query["rating"] = rating

    collection = db["review"]
    total = collection.count_documents(query)
    cursor = collection.find(query).sort(sort_by, 1 if sort_order == "asc" else -1)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    return {
        "reviews": _with_authors([serialize_doc(r) for r in cursor]),
        "pagination": paginate(total, page, limit),
        "rating_stats": _rating_stats(product) if product else None,
    }


@app.get("/reviews/my")
def my_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
):
    query = {"user_id": current_user["id"]}
    total = db["review"].count_documents(query)
    cursor = db["review"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    reviews = [serialize_doc(r) for r in cursor]
    products = _products_by_id(r["product_id"] for r in reviews)
    for r in reviews:
        r["product"] = products.get(r["product_id"])
    return {"reviews": reviews, "pagination": paginate(total, page, limit)}


@app.get("/reviews/{review_id}")
def get_review(review_id: str):
    review = serialize_doc(_visible_review(review_id))
    return _with_authors([review])[0]


@app.post("/reviews", status_code=201)
def create_review(payload: ReviewIn, current_user: dict = Depends(get_current_user)):
    _available_product(payload.product_id)
    if db["review"].find_one({"product_id": payload.product_id, "user_id": current_user["id"]}):
        raise HTTPException(status_code=409, detail="You have already reviewed this product")
    purchased = db["order"].find_one({
        "user_id": current_user["id"],
        "items.product_id": payload.product_id,
        "status": {"$in": list(VERIFIED_PURCHASE_STATUSES)},
    })
    review = ReviewSchema(**payload.model_dump(), user_id=current_user["id"], verified=purchased is not None)
    review_id = create_document("review", review)
    return serialize_doc(db["review"].find_one({"_id": parse_object_id(review_id, "review")}))


@app.put("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, current_user: dict = Depends(get_current_user)):
    review = _visible_review(review_id)
    if review["user_id"] != current_user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    updates["updated_at"] = now_utc()
    db["review"].update_one({"_id": review["_id"]}, {"$set": updates})
    return serialize_doc(db["review"].find_one({"_id": review["_id"]}))


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user)):
    review = db["review"].find_one({"_id": parse_object_id(review_id, "review")})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if review["user_id"] != current_user["id"] and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Access denied")
    db["review"].delete_one({"_id": review["_id"]})
    return {"ok": True}


@app.put("/reviews/{review_id}/helpful")
def mark_helpful(review_id: str, current_user: dict = Depends(get_current_user)):
    review = db["review"].find_one_and_update(
        {"_id": parse_object_id(review_id, "review"), "reported": False},
        {"$inc": {"helpful": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return {"helpful": review["helpful"]}


@app.put("/reviews/{review_id}/report")
def toggle_report(review_id: str, current_user: dict = Depends(require_admin)):
    obj_id = parse_object_id(review_id, "review")
    review = db["review"].find_one({"_id": obj_id})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    db["review"].update_one({"_id": obj_id}, {"$set": {"reported": not review.get("reported", False), "updated_at": now_utc()}})
    return serialize_doc(db["review"].find_one({"_id": obj_id}))


# Users

def _require_self_or_admin(user_id: str, current_user: dict) -> None:
    if not is_admin(current_user) and current_user["id"] != user_id:
        raise HTTPException(status_code=403, detail="Access denied")


@app.get("/users")
def list_users(
    search: Optional[str] = Query(None, min_length=1),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: dict = Depends(require_admin),
):
    query = _user_filter(search) if search else {}
    total = db["user"].count_documents(query)
    cursor = db["user"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"users": [public_user(u) for u in cursor], "pagination": paginate(total, page, limit)}


@app.get("/users/{user_id}/details")
def user_details(user_id: str, current_user: dict = Depends(require_admin)):
    user = db["user"].find_one({"_id": parse_object_id(user_id, "user")})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    recent = [serialize_doc(o) for o in db["order"].find({"user_id": user_id}).sort("created_at", -1).limit(10)]
    cart = db["cart"].find_one({"user_id": user_id})
    by_status = db["order"].aggregate([
        {"$match": {"user_id": user_id}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ])
    return {
        "user": public_user(user),
        "orders": recent,
        "cart": _cart_response(cart) if cart else {"items": []},
        "statistics": {
            "total_orders": db["order"].count_documents({"user_id": user_id}),
            "total_spent": round(sum(o.get("total_amount", 0) for o in recent), 2),
            "cart_items": len(cart.get("items", [])) if cart else 0,
            "orders_by_status": {s["_id"]: s["count"] for s in by_status},
        },
    }


@app.get("/users/{user_id}")
def get_user(user_id: str, current_user: dict = Depends(get_current_user)):
    _require_self_or_admin(user_id, current_user)
    user = db["user"].find_one({"_id": parse_object_id(user_id, "user")})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@app.put("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, current_user: dict = Depends(get_current_user)):
    _require_self_or_admin(user_id, current_user)
    obj_id = parse_object_id(user_id, "user")
    updates = payload.model_dump(exclude_unset=True)
    if "email" in updates:
        updates["email"] = updates["email"].lower()
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    clashes = [{field: updates[field]} for field in ("username", "email") if field in updates]
    if clashes:
        existing = db["user"].find_one({"_id": {"$ne": obj_id}, "$or": clashes})
        if existing:
            field = "username" if existing.get("username") == updates.get("username") else "email"
            raise HTTPException(status_code=409, detail=f"This {field} is already taken")

    updates["updated_at"] = now_utc()
    user = db["user"].find_one_and_update({"_id": obj_id}, {"$set": updates}, return_document=ReturnDocument.AFTER)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, current_user: dict = Depends(require_admin)):
    if current_user["id"] == user_id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    res = db["user"].delete_one({"_id": parse_object_id(user_id, "user")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    return {"ok": True}


@app.put("/users/{user_id}/toggle-status")
def toggle_user_status(user_id: str, current_user: dict = Depends(require_admin)):
    if current_user["id"] == user_id:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    obj_id = parse_object_id(user_id, "user")
    user = db["user"].find_one({"_id": obj_id})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    is_active = not user.get("is_active", True)
    db["user"].update_one({"_id": obj_id}, {"$set": {"is_active": is_active, "updated_at": now_utc()}})
    logger.info("User %s %s by %s", user_id, "activated" if is_active else "deactivated", current_user["id"])
    return public_user(db["user"].find_one({"_id": obj_id}))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
