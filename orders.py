"""
Order placement and lifecycle.

Inventory is accounted in units: an order line of `quantity` packs of
`variant.quantity` units consumes `total_items = quantity * variant.quantity`
units. Creation reserves exactly that many units per line; cancellation and
deletion give the same number back.

Status flow:

    pending -> processing -> shipped -> delivered
       \\___________\\___________\\______-> cancelled

delivered and cancelled are terminal; any update after them raises
InvalidTransition.
"""
import logging
import re
from datetime import datetime
from typing import List, Optional

from pymongo import ReturnDocument

from catalog import release_stock, reserve_stock
from database import paginate, serialize_doc, to_object_id, utcnow
from errors import InsufficientStock, InvalidInput, InvalidTransition, InvalidVariant, NotFound
from schemas import (
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    Address,
    CustomerInfo,
    Order,
    OrderItem,
    OrderItemRequest,
    Payment,
    Variant,
)

logger = logging.getLogger(__name__)

FLOW = ("pending", "processing", "shipped", "delivered")
TERMINAL = ("delivered", "cancelled")
OBJECT_ID = re.compile(r"^[0-9a-fA-F]{24}$")


def _describe_variants(variants) -> str:
    return ", ".join(f"{v['quantity']} units ({v.get('discount', 0)}% off)" for v in variants)


def _match_variant(variants, pack: int, discount: float):
    for v in variants:
        if int(v.get("quantity", 0)) == pack and float(v.get("discount", 0)) == float(discount):
            return v
    return None


def price_line(product: dict, item: OrderItemRequest) -> OrderItem:
    """Validate one requested line against its product and price it."""
    name = product.get("name") or item.name or str(product["_id"])
    pack = item.selected_quantity
    variants = product.get("variants") or []

    variant = _match_variant(variants, pack, item.discount)
    if variant is None and variants and pack > 1:
        raise InvalidVariant(
            f"Invalid variant for {name}. Available variants: {_describe_variants(variants)}. "
            "Single unit orders are always allowed."
        )
    discount = float(variant["discount"]) if variant else 0.0

    total_items = item.quantity * pack
    stock = int(product.get("stock", 0))
    if stock < total_items:
        raise InsufficientStock(f"Insufficient stock for {name}. Available: {stock}, Requested: {total_items}")

    price = float(product.get("price", 0))
    final_price = price - price * discount / 100
    return OrderItem(
        product=str(product["_id"]),
        name=name,
        price=price,
        quantity=item.quantity,
        unit_type=item.unit_type or product.get("unit_type") or "unit",
        variant=Variant(quantity=pack, discount=discount),
        total_items=total_items,
        final_price=final_price,
        subtotal=final_price * item.quantity,
    )


def next_order_number(db, now: datetime) -> str:
    counter = db["counter"].find_one_and_update(
        {"_id": f"order-{now.year}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"ORD-{now.year}-{counter['seq']:06d}"


def _restore_stock(db, order: dict) -> None:
    for item in order.get("items", []):
        units = item.get("total_items") or item["quantity"]
        release_stock(db, item["product"], units)
    logger.info("Restored stock for order %s", order.get("order_number") or order["_id"])


def _load(db, order_id) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFound("Order not found")
    return order


def create_order(db, customer_info: CustomerInfo, items: List[OrderItemRequest], payment_method: str = "cash_on_delivery",
                 total: Optional[float] = None, user_id: Optional[str] = None, tax: float = 0, shipping_cost: float = 0,
                 discount: float = 0, billing_address: Optional[Address] = None, notes: Optional[str] = None) -> dict:
    if not customer_info or not items:
        raise InvalidInput("Order data is incomplete")

    lines = []
    for item in items:
        product = db["product"].find_one({"_id": to_object_id(item.product_id)})
        if not product:
            raise NotFound(f"Product {item.name or item.product_id} not found")
        lines.append(price_line(product, item))

    reserved = []
    for line in lines:
        if not reserve_stock(db, line.product, line.total_items):
            for done in reserved:
                release_stock(db, done.product, done.total_items)
            product = db["product"].find_one({"_id": to_object_id(line.product)}) or {}
            raise InsufficientStock(
                f"Insufficient stock for {line.name}. Available: {product.get('stock', 0)}, Requested: {line.total_items}"
            )
        reserved.append(line)

    subtotal = sum(line.subtotal for line in lines)
    shipping = Address(
        name=customer_info.full_name,
        street=customer_info.address,
        city=customer_info.city,
        state=customer_info.state,
        zip_code=customer_info.zip_code,
        country=customer_info.country,
        phone=customer_info.phone,
    )

    now = utcnow()
    try:
        order = Order(
            order_number=next_order_number(db, now),
            user=user_id,
            customer_info=customer_info,
            shipping_address=shipping,
            billing_address=billing_address,
            items=lines,
            subtotal=subtotal,
            tax=tax,
            shipping_cost=shipping_cost,
            discount=discount,
            total=total if total is not None else subtotal,
            payment=Payment(method=payment_method),
            notes=notes,
        )
        doc = order.model_dump()
        doc["created_at"] = now
        doc["updated_at"] = now
        doc["_id"] = db["order"].insert_one(doc).inserted_id
    except Exception:
        for line in reserved:
            release_stock(db, line.product, line.total_items)
        raise

    logger.info("Created order %s with %s item(s), total %.2f", doc["order_number"], len(lines), doc["total"])
    return serialize_doc(doc)


def list_orders(db, status=None, user_id=None, limit=50, skip=0, sort_by="created_at", sort_order=-1):
    query = {}
    if status:
        query["status"] = status
    if user_id:
        query["user"] = user_id
    page = paginate(db["order"], query, limit, skip, sort_by, sort_order)
    return {
        "orders": serialize_doc(page["items"]),
        "total": page["total"],
        "page": page["page"],
        "total_pages": page["total_pages"],
    }


def get_user_orders(db, user_id, status=None, limit=20, skip=0):
    return list_orders(db, status=status, user_id=user_id, limit=limit, skip=skip)


def get_order(db, order_id_or_number: str) -> dict:
    if OBJECT_ID.match(order_id_or_number or ""):
        order = db["order"].find_one({"_id": to_object_id(order_id_or_number)})
    else:
        order = db["order"].find_one({"order_number": order_id_or_number})
    if not order:
        raise NotFound("Order not found")
    return serialize_doc(order)


def update_order_status(db, order_id, status: str, tracking: Optional[dict] = None,
                        cancel_reason: Optional[str] = None, notes: Optional[str] = None) -> dict:
    if status not in ORDER_STATUSES:
        raise InvalidInput("Invalid order status")
    order = _load(db, order_id)
    current = order.get("status", "pending")

    if current in TERMINAL:
        raise InvalidTransition(f"Order is already {current} and can no longer change status")
    if status != "cancelled" and FLOW.index(status) < FLOW.index(current):
        raise InvalidTransition(f"Cannot move order from {current} back to {status}")

    now = utcnow()
    changes = {"status": status, "updated_at": now}
    if status == "shipped" and tracking:
        changes["tracking.carrier"] = tracking.get("carrier")
        changes["tracking.tracking_number"] = tracking.get("tracking_number")
        changes["tracking.shipped_at"] = now
    if status == "delivered":
        changes["tracking.delivered_at"] = now
        changes["payment.status"] = "completed"
        if not (order.get("payment") or {}).get("paid_at"):
            changes["payment.paid_at"] = now
    if status == "cancelled":
        changes["cancelled_at"] = now
        changes["cancel_reason"] = cancel_reason or "Cancelled by user"
    if notes:
        changes["notes"] = notes

    # guarded on the status we read so a concurrent cancel cannot restore twice
    result = db["order"].update_one({"_id": order["_id"], "status": current}, {"$set": changes})
    if result.modified_count == 0:
        raise InvalidTransition("Order status changed concurrently, please retry")

    if status == "cancelled":
        _restore_stock(db, order)

    logger.info("Order %s: %s -> %s", order.get("order_number"), current, status)
    return serialize_doc(db["order"].find_one({"_id": order["_id"]}))


def update_payment_status(db, order_id, status: str, transaction_id: Optional[str] = None) -> dict:
    if status not in PAYMENT_STATUSES:
        raise InvalidInput("Invalid payment status")
    order = _load(db, order_id)
    changes = {"payment.status": status, "updated_at": utcnow()}
    if transaction_id:
        changes["payment.transaction_id"] = transaction_id
    if status == "completed":
        changes["payment.paid_at"] = utcnow()
    db["order"].update_one({"_id": order["_id"]}, {"$set": changes})
    return serialize_doc(db["order"].find_one({"_id": order["_id"]}))


def delete_order(db, order_id) -> dict:
    order = db["order"].find_one_and_delete({"_id": to_object_id(order_id)})
    if not order:
        raise NotFound("Order not found")
    if order.get("status") != "cancelled":
        _restore_stock(db, order)
    logger.info("Deleted order %s", order.get("order_number"))
    return {"message": "Order deleted successfully"}


def order_stats(db, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None, user_id=None) -> dict:
    query = {}
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = start_date
        if end_date:
            query["created_at"]["$lte"] = end_date
    if user_id:
        query["user"] = user_id

    stats = {
        "total_orders": db["order"].count_documents(query),
        "total_revenue": 0,
        "average_order_value": 0,
    }
    for status in ORDER_STATUSES:
        stats[f"{status}_orders"] = db["order"].count_documents({**query, "status": status})

    totals = list(db["order"].aggregate([
        {"$match": query},
        {"$group": {"_id": None, "revenue": {"$sum": "$total"}, "average": {"$avg": "$total"}}},
    ]))
    if totals:
        stats["total_revenue"] = totals[0]["revenue"] or 0
        stats["average_order_value"] = totals[0]["average"] or 0
    return stats
