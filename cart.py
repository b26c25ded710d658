"""
Cart reconciliation

A submitted cart is checked against the live catalog before it is saved:
unknown or deleted products are dropped, quantities are coerced to whole
numbers, stock is checked (never reserved) and the total is recomputed.
The saved cart always replaces the previous one.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from database import now_utc
from errors import InsufficientStock
from schemas import CartItem
from utils import as_number, as_object_id, round_half_up

logger = logging.getLogger("farmfresh.cart")


def coerce_quantity(value) -> int:
    """Whole quantity of at least 1; anything unparseable counts as 1."""
    if isinstance(value, bool):
        return 1
    try:
        quantity = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 1
    return max(1, quantity)


def pick_price(requested, stored) -> float:
    # A positive client price wins so display-price drift does not block the
    # cart; zero, negative or garbage falls back to the stored price.
    price = as_number(requested, 0)
    if price > 0:
        return float(price)
    return float(as_number(stored, 0))


def load_products(db, product_ids) -> Dict[str, dict]:
    oids = [oid for oid in (as_object_id(pid) for pid in product_ids) if oid is not None]
    if not oids:
        return {}
    cursor = db["product"].find(
        {"_id": {"$in": oids}, "status": {"$ne": "deleted"}},
        {"name": 1, "price": 1, "stock": 1, "image": 1, "images": 1, "status": 1},
    )
    return {str(p["_id"]): p for p in cursor}


def cart_line(product: Dict[str, Any], item: Dict[str, Any]) -> dict:
    """One accepted cart line for a requested item; raises InsufficientStock."""
    quantity = coerce_quantity(item.get("quantity"))
    available = int(as_number(product.get("stock"), 0))
    name = product.get("name") or "product"
    if quantity > available:
        raise InsufficientStock(name, quantity, available)

    return CartItem(
        productId=str(product["_id"]),
        name=name,
        price=pick_price(item.get("price"), product.get("price")),
        quantity=quantity,
        image=product.get("image") or (product.get("images") or [None])[0],
    ).model_dump()


def reconcile_items(db, items: List[Dict[str, Any]]) -> Tuple[List[dict], float]:
    """Validate requested line items and return (accepted items, total).

    Raises InsufficientStock for the first item asking for more than is on
    hand; nothing is written in that case.
    """
    products = load_products(db, [it.get("productId") for it in items if isinstance(it, dict)])

    accepted: List[dict] = []
    running = Decimal("0")
    for item in items:
        if not isinstance(item, dict):
            continue
        product = products.get(str(item.get("productId")))
        if product is None:
            logger.info("cart_item_dropped product_id=%s", item.get("productId"))
            continue

        line = cart_line(product, item)
        accepted.append(line)
        running += Decimal(str(line["price"])) * line["quantity"]

    return accepted, round_half_up(running, 2)


def check_reorder(db, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Sort a past order's items into cart-ready lines and the ones that cannot be bought again.

    Lines are priced at today's stored price. Nothing is written; the caller
    saves the returned lines as the cart.
    """
    items = [it for it in items if isinstance(it, dict)]
    products = load_products(db, [it.get("productId") for it in items])

    result: Dict[str, Any] = {"items": [], "unavailableItems": [], "stockIssues": [], "priceChanges": []}
    running = Decimal("0")
    for item in items:
        product_id = str(item.get("productId"))
        product = products.get(product_id)
        if product is None or product.get("status", "active") != "active":
            result["unavailableItems"].append({
                "productId": product_id,
                "name": item.get("name"),
                "reason": "Product no longer available" if product is None else "Product is currently inactive",
            })
            continue
        try:
            line = cart_line(product, {"productId": product_id, "quantity": item.get("quantity")})
        except InsufficientStock as exc:
            result["stockIssues"].append({
                "productId": product_id,
                "name": exc.product_name,
                "requestedQuantity": exc.requested,
                "availableStock": exc.available,
                "reason": f"Only {exc.available} items available",
            })
            continue

        previous = float(as_number(item.get("price"), 0))
        if abs(line["price"] - previous) > 0.01:
            result["priceChanges"].append({
                "productId": product_id,
                "name": line["name"],
                "originalPrice": previous,
                "currentPrice": line["price"],
            })
        result["items"].append(line)
        running += Decimal(str(line["price"])) * line["quantity"]

    result["estimatedSubtotal"] = round_half_up(running, 2)
    result["fullReorderPossible"] = bool(items) and len(result["items"]) == len(items)
    return result


def get_cart(db, user_id: str) -> dict:
    cart = db["cart"].find_one({"userId": user_id}) or {}
    items = cart.get("items") or []
    return {
        "items": items,
        "total": cart.get("total", 0),
        "itemCount": len(items),
        "totalItems": sum(int(as_number(it.get("quantity"), 0)) for it in items),
    }


def save_cart(db, user_id: str, items: List[Dict[str, Any]]) -> dict:
    accepted, total = reconcile_items(db, items)
    now = now_utc()
    db["cart"].update_one(
        {"userId": user_id},
        {"$set": {"items": accepted, "total": total, "updatedAt": now},
         "$setOnInsert": {"createdAt": now}},
        upsert=True,
    )
    logger.info("cart_saved user_id=%s items=%d total=%s", user_id, len(accepted), total)
    return {"items": accepted, "total": total, "itemCount": len(accepted)}


def clear_cart(db, user_id: str) -> dict:
    result = db["cart"].delete_one({"userId": user_id})
    return {"deletedCount": result.deleted_count, "wasCleared": result.deleted_count > 0}
