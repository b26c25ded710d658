"""
Orders

Order items carry their own farmer attribution, either as a flat
`farmerEmail` or nested under `farmer.email`. Documents are normalized to the
flat shape when they are read, and everything below works on that shape.

A multi-farmer order keeps one status per farmer. The top-level status is the
status all farmers share, or "mixed" while they differ.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from pymongo import UpdateOne

from cart import check_reorder
from database import now_utc
from errors import InsufficientStock, InvalidOrderStatus, InvalidStatusTransition, OrderNotFound, ProductNotFound
from schemas import ORDER_STATUSES, FarmerStatus, Order, OrderItem, StatusEntry
from utils import as_number, as_object_id, id_filter, round_half_up, serialize_doc

logger = logging.getLogger("farmfresh.orders")

MIXED_STATUS = "mixed"

# Forward moves may skip steps; cancelling is only possible before shipping.
ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "shipped", "delivered", "cancelled"},
    "confirmed": {"shipped", "delivered", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}


def item_farmer_email(item: Dict[str, Any]) -> Optional[str]:
    farmer = item.get("farmer")
    nested = farmer.get("email") if isinstance(farmer, dict) else None
    return item.get("farmerEmail") or nested


def normalize_order_item(item: Dict[str, Any]) -> dict:
    normalized = dict(item)
    farmer = item.get("farmer") if isinstance(item.get("farmer"), dict) else {}
    normalized["farmerEmail"] = item_farmer_email(item)
    normalized["farmerName"] = item.get("farmerName") or farmer.get("name")
    normalized["farmerId"] = item.get("farmerId") or farmer.get("id")
    normalized["price"] = as_number(item.get("price"), 0)
    normalized["quantity"] = as_number(item.get("quantity"), 0)
    if item.get("productId") is not None:
        normalized["productId"] = str(item["productId"])
    return normalized


def farmer_statuses(order: Dict[str, Any]) -> Dict[str, str]:
    """Per-farmer statuses, falling back to the order status for farmers without an entry."""
    recorded = {
        entry.get("farmerEmail"): entry.get("status")
        for entry in order.get("farmerStatusesArr") or []
        if entry.get("farmerEmail")
    }
    fallback = order.get("status") or "pending"
    if fallback == MIXED_STATUS:
        fallback = "pending"
    statuses = {}
    for email in order_farmer_emails(order):
        statuses[email] = recorded.get(email, fallback)
    for email, status in recorded.items():
        statuses.setdefault(email, status)
    return statuses


def order_farmer_emails(order: Dict[str, Any]) -> List[str]:
    emails: List[str] = []
    for email in list(order.get("farmerEmails") or []) + [item_farmer_email(it) for it in order.get("items") or []]:
        if email and email not in emails:
            emails.append(email)
    return emails


def normalize_order(order: Dict[str, Any]) -> dict:
    normalized = serialize_doc(order)
    normalized["items"] = [normalize_order_item(it) for it in order.get("items") or []]
    normalized["farmerStatuses"] = farmer_statuses(normalized)
    normalized.pop("farmerStatusesArr", None)
    return normalized


def scope_order_to_farmer(order: Optional[Dict[str, Any]], farmer_email: Optional[str]) -> dict:
    """The part of an order one farmer is responsible for: {subtotal, items}.

    A single-farmer order with a cached numeric farmerSubtotal is returned as
    is. Otherwise the farmer's items are summed; when no item can be
    attributed to the farmer the full item list comes back so callers never
    render an empty order.
    """
    if not order or not farmer_email:
        return {"subtotal": (order or {}).get("farmerSubtotal"), "items": (order or {}).get("items") or []}

    items = order.get("items") or []
    cached = order.get("farmerSubtotal")
    all_match = all(item_farmer_email(it) == farmer_email for it in items)
    if all_match and isinstance(cached, (int, float)) and not isinstance(cached, bool):
        return {"subtotal": cached, "items": items}

    filtered = [it for it in items if item_farmer_email(it) == farmer_email]
    subtotal = sum(as_number(it.get("price"), 0) * as_number(it.get("quantity"), 0) for it in filtered)
    return {"subtotal": subtotal, "items": filtered or items}


def derive_order_status(statuses: Dict[str, str], fallback: str) -> str:
    distinct = set(statuses.values())
    if not distinct:
        return fallback
    if len(distinct) == 1:
        return distinct.pop()
    return MIXED_STATUS


def check_transition(current: str, requested: str):
    if requested not in ORDER_STATUSES:
        raise InvalidOrderStatus(requested)
    if current == requested:
        return
    if requested not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current, requested)


def build_order_filter(user_id=None, farmer_email=None, status=None, product_id=None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if user_id:
        query["userId"] = user_id
    if status:
        query["status"] = status
    if product_id:
        query["items.productId"] = product_id
    if farmer_email:
        query["$or"] = [
            {"items.farmerEmail": farmer_email},
            {"items.farmer.email": farmer_email},
            {"farmerEmails": farmer_email},
        ]
    return query


def list_orders(db, user_id=None, farmer_email=None, status=None, product_id=None,
                page: int = 1, limit: int = 50) -> dict:
    query = build_order_filter(user_id, farmer_email, status, product_id)
    page = max(1, page)
    limit = max(1, limit)
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)

    orders = []
    for doc in cursor:
        order = normalize_order(doc)
        if farmer_email:
            scoped = scope_order_to_farmer(order, farmer_email)
            order["items"] = scoped["items"]
            order["farmerSubtotal"] = scoped["subtotal"]
        orders.append(order)

    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": -(-total // limit),
            "hasNext": page * limit < total,
            "hasPrev": page > 1,
        },
    }


def get_order(db, order_id: str) -> dict:
    oid = as_object_id(order_id)
    doc = db["order"].find_one({"_id": oid}) if oid is not None else None
    if not doc:
        raise OrderNotFound()
    return normalize_order(doc)


def reorder(db, order_id: str, user_id: str) -> dict:
    """Re-check one of the buyer's past orders against today's stock and prices."""
    oid = as_object_id(order_id)
    doc = db["order"].find_one({"_id": oid, "userId": user_id}) if oid is not None else None
    if not doc:
        raise OrderNotFound()
    items = [normalize_order_item(it) for it in doc.get("items") or []]
    check = check_reorder(db, items)
    logger.info("reorder_checked order_id=%s available=%d of=%d", order_id, len(check["items"]), len(items))
    return {
        "orderId": str(doc["_id"]),
        "originalTotal": doc.get("total"),
        "originalSubtotal": doc.get("subtotal"),
        **check,
    }


def _restock(db, product_ids: List[Any], quantities: List[int]):
    ops = [
        UpdateOne(id_filter(pid), {"$inc": {"stock": qty}, "$set": {"updatedAt": now_utc()}})
        for pid, qty in zip(product_ids, quantities)
    ]
    if ops:
        db["product"].bulk_write(ops)


def place_order(db, user: Dict[str, Any], items: List[Dict[str, Any]], delivery_fee: float = 0,
                service_fee: float = 0, delivery_address: Optional[str] = None,
                payment_method: str = "cod") -> dict:
    """Check out a list of {productId, quantity}; stock is decremented here."""
    requested = []
    for item in items:
        product = None
        oid = as_object_id(item.get("productId"))
        if oid is not None:
            product = db["product"].find_one({"_id": oid, "status": {"$ne": "deleted"}})
        if product is None:
            raise ProductNotFound(f"Product {item.get('name') or item.get('productId')} not found")
        quantity = max(1, int(as_number(item.get("quantity"), 1)))
        if int(as_number(product.get("stock"), 0)) < quantity:
            raise InsufficientStock(product.get("name"), quantity, int(as_number(product.get("stock"), 0)))
        requested.append((product, quantity))

    taken_ids, taken_qty = [], []
    for product, quantity in requested:
        result = db["product"].update_one(
            {"_id": product["_id"], "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updatedAt": now_utc()}},
        )
        if result.modified_count == 0:
            _restock(db, taken_ids, taken_qty)
            fresh = db["product"].find_one({"_id": product["_id"]}) or {}
            raise InsufficientStock(product.get("name"), quantity, int(as_number(fresh.get("stock"), 0)))
        taken_ids.append(product["_id"])
        taken_qty.append(quantity)

    order_items = []
    for product, quantity in requested:
        farmer = product.get("farmer") or {}
        price = float(as_number(product.get("price"), 0))
        order_items.append(OrderItem(
            productId=str(product["_id"]),
            name=product.get("name"),
            price=price,
            quantity=quantity,
            subtotal=round_half_up(price * quantity, 2),
            image=product.get("image") or (product.get("images") or [None])[0],
            farmerEmail=farmer.get("email"),
            farmerName=farmer.get("name") or "Local Farmer",
            farmerId=farmer.get("id") or product.get("farmerId"),
        ))

    subtotal = round_half_up(sum(it.subtotal for it in order_items), 2)
    emails = order_farmer_emails({"items": [it.model_dump() for it in order_items]})
    order = Order(
        userId=str(user["_id"]),
        items=order_items,
        status="pending",
        subtotal=subtotal,
        deliveryFee=delivery_fee,
        serviceFee=service_fee,
        total=round_half_up(subtotal + delivery_fee + service_fee, 2),
        farmerSubtotal=subtotal if len(emails) == 1 else None,
        farmerEmails=emails,
        farmerStatusesArr=[FarmerStatus(farmerEmail=email) for email in emails],
        statusHistory=[StatusEntry(status="pending", at=now_utc(), note="Order placed")],
        customerName=user.get("name"),
        customerEmail=user.get("email"),
        customerPhone=user.get("phone"),
        deliveryAddress=delivery_address,
        paymentMethod=payment_method,
    )
    doc = order.model_dump()
    now = now_utc()
    doc["createdAt"] = now
    doc["updatedAt"] = now
    inserted = db["order"].insert_one(doc).inserted_id
    db["cart"].delete_one({"userId": str(user["_id"])})

    logger.info("order_placed order_id=%s user_id=%s items=%d total=%s",
                inserted, doc["userId"], len(order_items), doc["total"])
    doc["_id"] = inserted
    return normalize_order(doc)


def _affected_items(order: Dict[str, Any], farmers: Iterable[str]) -> List[dict]:
    farmers = set(farmers)
    items = order.get("items") or []
    if not order_farmer_emails(order):
        return list(items)
    return [it for it in items if item_farmer_email(it) in farmers]


def update_order_status(db, order_id: str, status: str, farmer_email: Optional[str] = None,
                        note: Optional[str] = None) -> dict:
    oid = as_object_id(order_id)
    doc = db["order"].find_one({"_id": oid}) if oid is not None else None
    if not doc:
        raise OrderNotFound()
    if status not in ORDER_STATUSES:
        raise InvalidOrderStatus(status)

    statuses = farmer_statuses(doc)
    if farmer_email and farmer_email in statuses:
        targets = [farmer_email]
    else:
        targets = list(statuses)

    if targets:
        for email in targets:
            check_transition(statuses[email], status)
        moved = [email for email in targets if statuses[email] != status]
        if not moved:
            return normalize_order(doc)
        for email in moved:
            statuses[email] = status
        new_status = derive_order_status(statuses, status)
        affected = _affected_items(doc, moved)
    else:
        current = doc.get("status") or "pending"
        check_transition(current, status)
        if current == status:
            return normalize_order(doc)
        new_status = status
        affected = list(doc.get("items") or [])

    if affected and status == "cancelled":
        _restock(db, [it.get("productId") for it in affected],
                 [int(as_number(it.get("quantity"), 0)) for it in affected])
    if affected and status == "delivered":
        db["product"].bulk_write([
            UpdateOne(id_filter(it.get("productId")),
                      {"$inc": {"purchaseCount": int(as_number(it.get("quantity"), 0))},
                       "$set": {"updatedAt": now_utc()}})
            for it in affected
        ])

    now = now_utc()
    entry = StatusEntry(status=status, at=now, note=note,
                        farmerEmail=farmer_email if len(targets) == 1 else None)
    db["order"].update_one(
        {"_id": oid},
        {"$set": {
            "status": new_status,
            "farmerStatusesArr": [FarmerStatus(farmerEmail=e, status=s).model_dump() for e, s in statuses.items()],
            "updatedAt": now,
         },
         "$push": {"statusHistory": entry.model_dump()}},
    )
    logger.info("order_status_changed order_id=%s status=%s farmer=%s top_level=%s affected=%d",
                order_id, status, farmer_email, new_status, len(affected))
    return get_order(db, order_id)
