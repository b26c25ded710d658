import logging
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import orders
import reviews
from errors import AlreadyReviewed, NotFoundOrUnauthorized, RatingOutOfRange, ReviewNotAllowed


def _review(db, product_id, user_id, rating, minutes_ago=0, **extra):
    doc = {
        "productId": product_id,
        "userId": user_id,
        "rating": rating,
        "comment": "ok",
        "createdAt": datetime(2024, 5, 1, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago),
        **extra,
    }
    return str(db["review"].insert_one(doc).inserted_id)


def _delivered_order(db, user_id, product_id, status="delivered"):
    db["order"].insert_one({
        "userId": user_id,
        "status": status,
        "items": [{"productId": product_id, "quantity": 1, "price": 2}],
    })


@pytest.mark.parametrize("ratings,average", [
    ([4, 5, 3], 4.0),
    ([4, 5], 4.5),
    ([1, 2, 2], 1.7),
    ([5, 4, 4, 4], 4.3),
    ([], 0),
])
def test_rating_stats(ratings, average):
    stats = reviews.rating_stats({"rating": r} for r in ratings)
    assert stats == {"averageRating": average, "reviewCount": len(ratings)}


@pytest.mark.parametrize("value", [0, 6, 4.5, "x", None, True, -1])
def test_parse_rating_rejects(value):
    with pytest.raises(RatingOutOfRange):
        reviews.parse_rating(value)


@pytest.mark.parametrize("value,expected", [(1, 1), ("4", 4), (5.0, 5)])
def test_parse_rating_accepts(value, expected):
    assert reviews.parse_rating(value) == expected


def test_recompute_scans_every_review(db, make_product):
    pid = make_product()
    for rating in (4, 5, 3):
        _review(db, pid, str(ObjectId()), rating)

    assert reviews.recompute_product_rating(db, pid) == {"averageRating": 4.0, "totalRatings": 3}
    product = db["product"].find_one({"_id": ObjectId(pid)})
    assert product["averageRating"] == 4.0
    assert product["reviewCount"] == product["totalReviews"] == 3


def test_deleting_last_review_resets_aggregate(db, make_product):
    pid = make_product(averageRating=5, reviewCount=1)
    review_id = _review(db, pid, "u1", 5)

    result = reviews.delete_review(db, review_id, "u1")

    assert result == {"success": True, "averageRating": 0, "totalRatings": 0}
    product = db["product"].find_one({"_id": ObjectId(pid)})
    assert product["averageRating"] == 0
    assert product["reviewCount"] == 0


def test_update_review_recomputes(db, make_product):
    pid = make_product()
    mine = _review(db, pid, "u1", 2)
    _review(db, pid, "u2", 5)

    result = reviews.update_review(db, mine, "u1", 4, "better now")

    assert result["averageRating"] == 4.5
    assert db["review"].find_one({"_id": ObjectId(mine)})["comment"] == "better now"


def test_bad_rating_is_rejected_before_any_write(db, make_product):
    pid = make_product()
    mine = _review(db, pid, "u1", 2)
    with pytest.raises(RatingOutOfRange):
        reviews.update_review(db, mine, "u1", 9, "nope")
    assert db["review"].find_one({"_id": ObjectId(mine)})["rating"] == 2


@pytest.mark.parametrize("review_id,user_id", [
    ("mine", "u2"),
    (str(ObjectId()), "u1"),
    ("not-an-id", "u1"),
    ("mine", ""),
])
def test_foreign_or_missing_review_looks_the_same(db, make_product, review_id, user_id):
    pid = make_product()
    mine = _review(db, pid, "u1", 3)
    target = mine if review_id == "mine" else review_id

    with pytest.raises(NotFoundOrUnauthorized) as exc:
        reviews.delete_review(db, target, user_id)
    assert exc.value.message == "Review not found or unauthorized"
    assert exc.value.status_code == 404
    assert db["review"].count_documents({}) == 1


@pytest.mark.parametrize("action", ["update", "delete"])
def test_failed_recompute_keeps_the_review_write(db, make_product, monkeypatch, caplog, action):
    pid = make_product(averageRating=5, reviewCount=1)
    review_id = _review(db, pid, "u1", 5)

    def broken(*args):
        raise PyMongoError("primary stepped down")

    monkeypatch.setattr(reviews, "recompute_product_rating", broken)
    with caplog.at_level(logging.ERROR, logger="farmfresh.reviews"):
        if action == "update":
            result = reviews.update_review(db, review_id, "u1", 2, "changed")
        else:
            result = reviews.delete_review(db, review_id, "u1")

    assert result == {"success": True, "averageRating": None, "totalRatings": None}
    assert "rating_recompute_failed" in caplog.text
    if action == "update":
        assert db["review"].find_one({"_id": ObjectId(review_id)})["rating"] == 2
    else:
        assert db["review"].count_documents({}) == 0
    assert db["product"].find_one({"_id": ObjectId(pid)})["averageRating"] == 5


# Eligibility

def test_cannot_review_without_purchase(db, make_product, make_user):
    pid = make_product()
    user = make_user()
    result = reviews.check_review_eligibility(db, pid, str(user["_id"]))
    assert result["canReview"] is False
    assert result["hasPurchased"] is False
    assert result["hasReviewed"] is False


def test_pending_order_is_not_a_purchase(db, make_product, make_user):
    pid = make_product()
    user_id = str(make_user()["_id"])
    _delivered_order(db, user_id, pid, status="shipped")
    assert reviews.check_review_eligibility(db, pid, user_id)["hasPurchased"] is False


def test_delivered_purchase_can_review(db, make_product, make_user):
    pid = make_product()
    user_id = str(make_user()["_id"])
    _delivered_order(db, user_id, pid)

    result = reviews.check_review_eligibility(db, pid, user_id)

    assert result["canReview"] is True
    assert "orderDetails" in result


def test_delivered_farmer_in_mixed_order_counts_as_purchase(db, make_product, make_user):
    kale = make_product("Kale", farmer_email="frank@farm.example")
    plums = make_product("Plums", farmer_email="olive@farm.example")
    user = make_user()
    user_id = str(user["_id"])
    placed = orders.place_order(db, user, [{"productId": kale, "quantity": 1}, {"productId": plums, "quantity": 1}])
    orders.update_order_status(db, placed["id"], "delivered", farmer_email="frank@farm.example")
    final = orders.update_order_status(db, placed["id"], "cancelled", farmer_email="olive@farm.example")
    assert final["status"] == orders.MIXED_STATUS

    delivered = reviews.check_review_eligibility(db, kale, user_id)
    assert delivered["hasPurchased"] is True
    assert delivered["canReview"] is True
    assert delivered["orderDetails"]["orderId"] == placed["id"]

    cancelled = reviews.check_review_eligibility(db, plums, user_id)
    assert cancelled["hasPurchased"] is False
    assert cancelled["canReview"] is False


def test_existing_review_blocks_and_is_returned(db, make_product, make_user):
    pid = make_product()
    user_id = str(make_user()["_id"])
    _delivered_order(db, user_id, pid)
    review_id = _review(db, pid, user_id, 4)

    result = reviews.check_review_eligibility(db, pid, user_id)

    assert result["canReview"] is False
    assert result["hasPurchased"] is True
    assert result["hasReviewed"] is True
    assert result["existingReview"]["id"] == review_id


def test_review_by_same_email_account_counts(db, make_product, make_user):
    pid = make_product()
    first = make_user(name="Bea", email="bea@example.com")
    second = make_user(name="Bea (google)", email="bea@example.com")
    _review(db, pid, str(first["_id"]), 5)
    _delivered_order(db, str(second["_id"]), pid)

    result = reviews.check_review_eligibility(db, pid, str(second["_id"]))

    assert result["hasPurchased"] is True
    assert result["hasReviewed"] is True
    assert result["canReview"] is False


def test_create_review(db, make_product, make_user):
    pid = make_product()
    user_id = str(make_user(name="Bea")["_id"])
    _delivered_order(db, user_id, pid)

    result = reviews.create_review(db, pid, user_id, 5, "lovely")

    assert result["averageRating"] == 5.0
    assert result["totalRatings"] == 1
    assert db["review"].find_one({"_id": ObjectId(result["reviewId"])})["reviewer"] == "Bea"
    with pytest.raises(AlreadyReviewed):
        reviews.create_review(db, pid, user_id, 4, "again")


def test_create_review_requires_purchase(db, make_product, make_user):
    pid = make_product()
    with pytest.raises(ReviewNotAllowed):
        reviews.create_review(db, pid, str(make_user()["_id"]), 5, "never bought it")
    assert db["review"].count_documents({}) == 0


def test_list_puts_own_review_first(db, make_product):
    pid = make_product()
    _review(db, pid, "u1", 4, minutes_ago=30)
    _review(db, pid, "u2", 5, minutes_ago=10)
    _review(db, pid, "u3", 3, minutes_ago=20)

    newest_first = reviews.list_product_reviews(db, pid)
    assert [r["userId"] for r in newest_first["reviews"]] == ["u2", "u3", "u1"]

    own_first = reviews.list_product_reviews(db, pid, limit=2, user_id="u1")
    assert [r["userId"] for r in own_first["reviews"]] == ["u1", "u2"]
    assert own_first["pagination"] == {"currentPage": 1, "totalPages": 2, "totalReviews": 3, "hasMore": True}


# HTTP surface

def test_review_endpoints(client, db, make_product, make_user):
    pid = make_product()
    user_id = str(make_user()["_id"])
    _delivered_order(db, user_id, pid)

    res = client.get(f"/products/{pid}/can-review", params={"userId": user_id})
    assert res.json()["canReview"] is True

    res = client.post(f"/products/{pid}/reviews", json={"userId": user_id, "rating": 4, "comment": "good"})
    assert res.status_code == 200
    review_id = res.json()["reviewId"]

    res = client.put(f"/reviews/{review_id}", json={"userId": user_id, "rating": 7, "comment": "x"})
    assert res.status_code == 400
    assert res.json() == {"error": "Rating must be between 1 and 5"}

    res = client.delete(f"/reviews/{review_id}", params={"userId": "someone-else"})
    assert res.status_code == 404
    assert res.json() == {"error": "Review not found or unauthorized"}

    res = client.delete(f"/reviews/{review_id}", params={"userId": user_id})
    assert res.json() == {"success": True, "averageRating": 0, "totalRatings": 0}


def test_can_review_needs_user(client, make_product):
    res = client.get(f"/products/{make_product()}/can-review")
    assert res.status_code == 401
    assert res.json() == {"canReview": False, "reason": "User not authenticated"}


def test_review_without_purchase_is_forbidden(client, make_product, make_user):
    pid = make_product()
    res = client.post(f"/products/{pid}/reviews",
                      json={"userId": str(make_user()["_id"]), "rating": 5, "comment": "hm"})
    assert res.status_code == 403
