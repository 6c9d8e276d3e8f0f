"""
Cart to order reconciliation.

Checkout validates every line against live product stock, reserves the stock
with a conditional decrement per product, stores an order whose prices are the
catalog prices at that moment, and empties the cart. Cancelling (by the owner
or through an admin status change) puts back exactly what the order took.

A reservation is a single `find_one_and_update` guarded by
`stock >= quantity`, so two checkouts racing for the last units cannot both
win. Lines reserved before a failing line are released again, leaving no
partial mutation behind.
"""

import logging
import random
import time
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import is_admin
from database import db
from schemas import CANCELLABLE_STATUSES, Order
from utils import now_utc, serialize_doc

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5
DELIVERY_ESTIMATE = timedelta(days=7)


class ProductUnavailable(HTTPException):
    def __init__(self, product_id: str, name: Optional[str] = None):
        self.product_id = product_id
        super().__init__(status_code=400, detail=f"Product {name or product_id} is no longer available")


class InsufficientStock(HTTPException):
    def __init__(self, product_id: str, name: str, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        self.shortfall = requested - available
        super().__init__(
            status_code=400,
            detail=(
                f"Insufficient stock for {name}. Available: {available}, "
                f"Requested: {requested}, Short by: {self.shortfall}"
            ),
        )


class CancellationRejected(HTTPException):
    def __init__(self, status: str):
        self.status = status
        super().__init__(status_code=400, detail=f"Order cannot be cancelled. Current status: {status}")


def generate_order_number() -> str:
    timestamp = int(time.time() * 1000)
    return f"ORD-{timestamp}-{random.randint(0, 999):03d}"


def merge_lines(lines: Iterable[Dict[str, Any]]) -> "OrderedDict[str, int]":
    """Collapse lines for the same product into one requested quantity."""
    requested: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        product_id = str(line["product_id"])
        requested[product_id] = requested.get(product_id, 0) + int(line["quantity"])
    return requested


def order_total(items: Iterable[Dict[str, Any]]) -> float:
    return round(sum(item["price"] * item["quantity"] for item in items), 2)


def _find_product(product_id: str) -> Optional[dict]:
    if not ObjectId.is_valid(product_id):
        return None
    return db["product"].find_one({"_id": ObjectId(product_id)})


def check_stock(requested: Dict[str, int]) -> Dict[str, dict]:
    """Validate every requested line without writing anything.

    Raises ProductUnavailable for a missing or inactive product and
    InsufficientStock when a product cannot cover its quantity.
    """
    products = {}
    for product_id, quantity in requested.items():
        product = _find_product(product_id)
        if not product or not product.get("is_active", False):
            raise ProductUnavailable(product_id, product.get("name") if product else None)
        available = int(product.get("stock", 0))
        if available < quantity:
            raise InsufficientStock(product_id, product["name"], available, quantity)
        products[product_id] = product
    return products


def release_stock(items: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Give the quantities of `items` back to their products.

    Products that no longer exist are skipped; inactive ones are restocked.
    Returns the quantity restored per product id.
    """
    restored: Dict[str, int] = {}
    for item in items:
        product_id = str(item["product_id"])
        if not ObjectId.is_valid(product_id):
            continue
        quantity = int(item["quantity"])
        result = db["product"].update_one(
            {"_id": ObjectId(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": now_utc()}},
        )
        if result.matched_count:
            restored[product_id] = restored.get(product_id, 0) + quantity
    return restored


def reserve_stock(requested: Dict[str, int]) -> List[dict]:
    """Decrement stock for every line, all or nothing.

    Returns order items carrying the unit price read in the same write, so the
    price stored on the order is the one in effect when the stock was taken.
    """
    reserved: List[dict] = []
    try:
        for product_id, quantity in requested.items():
            product = db["product"].find_one_and_update(
                {"_id": ObjectId(product_id), "is_active": True, "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
            if product is None:
                logger.warning("Stock for product %s changed during checkout, rolling back", product_id)
                check_stock({product_id: quantity})
                raise HTTPException(status_code=409, detail="Stock changed during checkout, please retry")
            reserved.append({
                "product_id": product_id,
                "name": product["name"],
                "quantity": quantity,
                "price": float(product["price"]),
            })
    except Exception:
        release_stock(reserved)
        raise
    return reserved


def _insert_order(doc: dict) -> dict:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        try:
            doc["_id"] = db["order"].insert_one(doc).inserted_id
            return doc
        except DuplicateKeyError:
            logger.warning("Order number %s already taken, regenerating", doc["order_number"])
            doc.pop("_id", None)
            doc["order_number"] = generate_order_number()
    raise HTTPException(status_code=409, detail="Could not allocate an order number, please retry")


def place_order(
    user_id: str,
    lines: Iterable[Dict[str, Any]],
    shipping_address: dict,
    billing_address: dict,
    payment_method: str,
    notes: Optional[str] = None,
) -> dict:
    requested = merge_lines(lines)
    if not requested:
        raise HTTPException(status_code=400, detail="Order must contain at least one item")
    check_stock(requested)
    items = reserve_stock(requested)

    try:
        now = now_utc()
        order = Order(
            order_number=generate_order_number(),
            user_id=user_id,
            items=items,
            total_amount=order_total(items),
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            notes=notes,
            estimated_delivery=now + DELIVERY_ESTIMATE,
        )
        doc = order.model_dump()
        doc["created_at"] = now
        doc["updated_at"] = now
        doc = _insert_order(doc)
    except Exception:
        release_stock(items)
        raise

    logger.info("Order %s placed by user %s for %.2f", doc["order_number"], user_id, doc["total_amount"])
    return serialize_doc(doc)


def checkout_cart(user_id: str, shipping_address: dict, billing_address: dict, payment_method: str, notes: Optional[str] = None) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")
    order = place_order(user_id, cart["items"], shipping_address, billing_address, payment_method, notes)
    # Lines added while the order was being placed stay in the cart.
    checked_out = [line["id"] for line in cart["items"]]
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$pull": {"items": {"id": {"$in": checked_out}}}, "$set": {"updated_at": now_utc()}},
    )
    return order


def _load_order(order_id: ObjectId) -> dict:
    order = db["order"].find_one({"_id": order_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def cancel_order(order_id: ObjectId, user: dict) -> dict:
    order = _load_order(order_id)
    if not is_admin(user) and order["user_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    if order["status"] not in CANCELLABLE_STATUSES:
        raise CancellationRejected(order["status"])

    # Only the caller that flips the status restores stock.
    result = db["order"].update_one(
        {"_id": order_id, "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": {"status": "cancelled", "updated_at": now_utc()}},
    )
    if result.modified_count == 0:
        raise CancellationRejected(_load_order(order_id)["status"])

    release_stock(order["items"])
    logger.info("Order %s cancelled by user %s", order["order_number"], user["id"])
    return serialize_doc(_load_order(order_id))


def update_order_status(order_id: ObjectId, status: str, tracking_number: Optional[str] = None) -> dict:
    order = _load_order(order_id)
    current = order["status"]
    if current == "cancelled":
        raise HTTPException(status_code=400, detail="Order is cancelled and its status can no longer change")

    updates: Dict[str, Any] = {"status": status, "updated_at": now_utc()}
    if tracking_number:
        updates["tracking_number"] = tracking_number
    result = db["order"].update_one({"_id": order_id, "status": current}, {"$set": updates})
    if result.matched_count == 0:
        raise HTTPException(status_code=409, detail="Order status changed concurrently, please retry")

    if status == "cancelled":
        release_stock(order["items"])
    logger.info("Order %s moved from %s to %s", order["order_number"], current, status)
    return serialize_doc(_load_order(order_id))
