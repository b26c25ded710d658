"""
Product reviews and rating aggregates

A product's averageRating and review counts are always recomputed from every
review that references it, never adjusted incrementally. Concurrent writers
may race on that recomputation; the last one to finish wins.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from pymongo.errors import PyMongoError

from database import now_utc
from errors import AlreadyReviewed, NotFoundOrUnauthorized, RatingOutOfRange, ReviewNotAllowed
from orders import farmer_statuses, item_farmer_email
from schemas import Review
from utils import as_number, as_object_id, id_filter, id_variants, round_half_up, serialize_doc

logger = logging.getLogger("farmfresh.reviews")


def parse_rating(value) -> int:
    if isinstance(value, bool) or value is None:
        raise RatingOutOfRange()
    try:
        rating = float(value)
    except (TypeError, ValueError):
        raise RatingOutOfRange()
    if not rating.is_integer() or not 1 <= rating <= 5:
        raise RatingOutOfRange()
    return int(rating)


def rating_stats(reviews: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    ratings = [as_number(r.get("rating"), 0) for r in reviews]
    if not ratings:
        return {"averageRating": 0, "reviewCount": 0}
    total = sum(Decimal(str(r)) for r in ratings)
    return {
        "averageRating": round_half_up(total / len(ratings), 1),
        "reviewCount": len(ratings),
    }


def recompute_product_rating(db, product_id) -> Dict[str, Any]:
    reviews = db["review"].find({"productId": {"$in": id_variants(product_id)}}, {"rating": 1})
    stats = rating_stats(reviews)
    db["product"].update_one(
        id_filter(product_id),
        {"$set": {
            "averageRating": stats["averageRating"],
            "reviewCount": stats["reviewCount"],
            "totalReviews": stats["reviewCount"],
            "updatedAt": now_utc(),
        }},
    )
    return {"averageRating": stats["averageRating"], "totalRatings": stats["reviewCount"]}


def _refresh_aggregate(db, product_id) -> Dict[str, Any]:
    # The review write has already landed; a failed recompute leaves the
    # aggregate stale until the next review write.
    try:
        return recompute_product_rating(db, product_id)
    except PyMongoError:
        logger.exception("rating_recompute_failed product_id=%s", product_id)
        return {"averageRating": None, "totalRatings": None}


def _owned_review(db, review_id: str, user_id: str) -> dict:
    oid = as_object_id(review_id)
    review = None
    if oid is not None and user_id:
        review = db["review"].find_one({"_id": oid, "userId": user_id})
    if not review:
        raise NotFoundOrUnauthorized()
    return review


def update_review(db, review_id: str, user_id: str, rating, comment: str) -> Dict[str, Any]:
    value = parse_rating(rating)
    review = _owned_review(db, review_id, user_id)
    db["review"].update_one(
        {"_id": review["_id"]},
        {"$set": {"rating": value, "comment": comment, "updatedAt": now_utc()}},
    )
    logger.info("review_updated review_id=%s product_id=%s rating=%d", review_id, review["productId"], value)
    return {"success": True, **_refresh_aggregate(db, review["productId"])}


def delete_review(db, review_id: str, user_id: str) -> Dict[str, Any]:
    review = _owned_review(db, review_id, user_id)
    db["review"].delete_one({"_id": review["_id"]})
    logger.info("review_deleted review_id=%s product_id=%s", review_id, review["productId"])
    return {"success": True, **_refresh_aggregate(db, review["productId"])}


def _user_id_variants(db, user_id: str) -> List[Any]:
    """Every id the person behind user_id may have reviewed under.

    Accounts are matched by email, so a second account with the same address
    counts as the same reviewer.
    """
    variants = id_variants(user_id)
    user = db["user"].find_one({"$or": [{"_id": {"$in": variants}}, {"email": user_id}]})
    email = (user or {}).get("email")
    if not email:
        return variants
    for other in db["user"].find({"email": email}, {"_id": 1}):
        for v in id_variants(other["_id"]):
            if v not in variants:
                variants.append(v)
    if email not in variants:
        variants.append(email)
    return variants


def _delivered_purchase(db, product_ids: List[Any], user_id: str) -> Optional[dict]:
    """The buyer's newest order in which this product has reached them.

    A multi-farmer order can stay "mixed" for good (one farmer delivered,
    another cancelled), so the product's own farmer status counts too.
    """
    query = {
        "userId": {"$in": id_variants(user_id)},
        "items.productId": {"$in": product_ids},
        "$or": [{"status": "delivered"}, {"farmerStatusesArr.status": "delivered"}],
    }
    for order in db["order"].find(query).sort("createdAt", -1):
        if order.get("status") == "delivered":
            return order
        statuses = farmer_statuses(order)
        for item in order.get("items") or []:
            if item.get("productId") in product_ids and statuses.get(item_farmer_email(item)) == "delivered":
                return order
    return None


def check_review_eligibility(db, product_id: str, user_id: str) -> Dict[str, Any]:
    """Read-only review eligibility for (product, user)."""
    products = id_variants(product_id)
    purchase = _delivered_purchase(db, products, user_id)
    existing = db["review"].find_one({
        "productId": {"$in": products},
        "userId": {"$in": _user_id_variants(db, user_id)},
    })

    result: Dict[str, Any] = {
        "canReview": bool(purchase) and not existing,
        "hasPurchased": bool(purchase),
        "hasReviewed": bool(existing),
    }
    if existing:
        result["existingReview"] = {
            "id": str(existing["_id"]),
            "rating": existing.get("rating"),
            "comment": existing.get("comment"),
            "createdAt": existing.get("createdAt"),
        }
    if not purchase:
        result["reason"] = "You must purchase and receive this product before writing a review"
    elif existing:
        result["reason"] = "You have already reviewed this product"
    else:
        result["reason"] = "You can write a review for this product"
        result["orderDetails"] = {
            "orderId": str(purchase["_id"]),
            "orderDate": purchase.get("createdAt"),
            "deliveredDate": purchase.get("updatedAt"),
        }
    return result


def create_review(db, product_id: str, user_id: str, rating, comment: str) -> Dict[str, Any]:
    value = parse_rating(rating)
    eligibility = check_review_eligibility(db, product_id, user_id)
    if not eligibility["hasPurchased"]:
        raise ReviewNotAllowed()
    if eligibility["hasReviewed"]:
        raise AlreadyReviewed()

    user = db["user"].find_one({"_id": {"$in": id_variants(user_id)}}) or {}
    reviewer = user.get("name") or (user.get("email") or "").split("@")[0] or "Anonymous"
    review = Review(productId=str(product_id), userId=user_id, rating=value, comment=comment or "", reviewer=reviewer)

    doc = review.model_dump()
    doc["createdAt"] = doc["updatedAt"] = now_utc()
    inserted = db["review"].insert_one(doc).inserted_id
    logger.info("review_created review_id=%s product_id=%s rating=%d", inserted, product_id, value)
    return {"success": True, "reviewId": str(inserted), **_refresh_aggregate(db, product_id)}


def list_product_reviews(db, product_id: str, page: int = 1, limit: int = 5,
                         user_id: Optional[str] = None) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, limit)
    docs = list(db["review"].find({"productId": {"$in": id_variants(product_id)}}).sort("createdAt", -1))
    if user_id:
        # stable sort keeps newest-first inside each group
        docs.sort(key=lambda d: 0 if d.get("userId") == user_id else 1)

    total = len(docs)
    window = docs[(page - 1) * limit: page * limit]
    reviews = []
    for doc in window:
        review = serialize_doc(doc)
        review["reviewer"] = review.get("reviewer") or "Anonymous"
        reviews.append(review)
    return {
        "reviews": reviews,
        "pagination": {
            "currentPage": page,
            "totalPages": -(-total // limit),
            "totalReviews": total,
            "hasMore": total > page * limit,
        },
    }
