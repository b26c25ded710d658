import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from fastapi import Depends, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import cart as cart_service
import messaging
import orders as order_service
import reviews as review_service
from database import create_document, db, get_documents, now_utc
from errors import MarketError
from schemas import PRODUCT_STATUSES, Farmer as FarmerSchema, FarmerRef, Favorite as FavoriteSchema
from schemas import Product as ProductSchema, User as UserSchema
from utils import as_object_id, round_half_up, serialize_doc

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger("farmfresh")


def ensure_indexes(database):
    database["cart"].create_index("userId", unique=True, name="carts_user_idx")
    database["favorite"].create_index([("userId", 1), ("productId", 1)], unique=True, name="favorites_user_product_idx")
    database["review"].create_index([("productId", 1), ("createdAt", -1)], name="reviews_product_date_idx")
    database["review"].create_index([("productId", 1), ("userId", 1)], name="reviews_product_user_idx")
    database["order"].create_index([("userId", 1), ("createdAt", -1)], name="orders_user_date_idx")
    database["order"].create_index("farmerEmails", name="orders_farmer_idx")
    database["product"].create_index([("status", 1), ("category", 1), ("createdAt", -1)], name="products_primary_idx")
    database["conversation"].create_index([("participants", 1), ("lastMessageAt", -1)], name="conversations_idx")
    database["message"].create_index([("conversationId", 1), ("createdAt", -1)], name="messages_conversation_idx")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is None:
        logger.warning("database_not_configured")
    else:
        ensure_indexes(db)
    yield


# App setup
app = FastAPI(title="FarmFresh Marketplace API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


# Utilities
def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "userType": user.get("userType", "customer"),
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                           database=Depends(get_db)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_token(credentials.credentials)
    oid = as_object_id(payload.get("sub"))
    user = database["user"].find_one({"_id": oid}) if oid is not None else None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def require_farmer(user: dict = Depends(get_current_user)) -> dict:
    if user.get("userType") != "farmer":
        raise HTTPException(status_code=403, detail="Farmer account required")
    return user


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "userType": user.get("userType", "customer"),
        "phone": user.get("phone"),
        "address": user.get("address"),
    }


# Error responses are always {"error": message}
@app.exception_handler(MarketError)
async def market_error_handler(request, exc: MarketError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        where = ".".join(str(p) for p in errors[0].get("loc", ())[1:])
        message = f"{where}: {errors[0].get('msg')}" if where else errors[0].get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    userType: str = Field("customer", pattern="^(customer|farmer)$")
    phone: Optional[str] = None
    farmName: Optional[str] = None
    location: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProductIn(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    description: str = ""
    category: Optional[str] = None
    stock: int = Field(0, ge=0)
    image: Optional[str] = None
    images: List[str] = []
    tags: List[str] = []
    isOrganic: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    isOrganic: Optional[bool] = None
    status: Optional[str] = Field(None, pattern="^(active|inactive)$")


class CartRequest(BaseModel):
    items: List[Dict[str, Any]]


class OrderItemIn(BaseModel):
    productId: str
    quantity: int = Field(1, ge=1)
    name: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    deliveryFee: float = Field(0, ge=0)
    serviceFee: float = Field(0, ge=0)
    deliveryAddress: Optional[str] = None
    paymentMethod: str = "cod"


class OrderStatusUpdate(BaseModel):
    status: str
    farmerEmail: Optional[str] = None
    note: Optional[str] = None


class ReviewIn(BaseModel):
    userId: str
    rating: float
    comment: str = Field(..., min_length=1)


class FavoriteIn(BaseModel):
    userId: str
    productId: str


class MessageIn(BaseModel):
    receiverId: str
    content: str


@app.get("/")
def root():
    return {"message": "FarmFresh API running"}


# Auth
@app.post("/auth/register")
def register(payload: RegisterRequest, database=Depends(get_db)):
    email = payload.email.lower()
    if database["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        name=payload.name,
        email=email,
        hashedPassword=hash_password(payload.password),
        userType=payload.userType,
        phone=payload.phone,
    )
    user_id = create_document("user", user, database=database)
    if payload.userType == "farmer":
        farmer = FarmerSchema(name=payload.name, email=email, userId=user_id,
                              farmName=payload.farmName, location=payload.location)
        create_document("farmer", farmer, database=database)
    created = database["user"].find_one({"_id": as_object_id(user_id)})
    logger.info("user_registered user_id=%s user_type=%s", user_id, payload.userType)
    return {"token": create_token(created), "user": public_user(created)}


@app.post("/auth/login")
def login(payload: LoginRequest, database=Depends(get_db)):
    user = database["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashedPassword", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": public_user(user)}


@app.get("/me")
async def me(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)


# Products
SORTS = {
    "price_asc": ("price", 1),
    "price_desc": ("price", -1),
    "rating": ("averageRating", -1),
    "newest": ("createdAt", -1),
    "popular": ("purchaseCount", -1),
}


def build_product_filter(search=None, category=None, farmer_email=None, farmer_id=None, min_price=None,
                         max_price=None, min_rating=None, dashboard=False) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"status": {"$ne": "deleted"}}
    if not (farmer_email or farmer_id or dashboard):
        filt["status"] = {"$nin": ["deleted", "inactive"]}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"category": pattern}]
    if category and category != "All Categories":
        filt["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if farmer_email or farmer_id:
        owner = []
        if farmer_email:
            owner.append({"farmer.email": farmer_email})
        if farmer_id:
            owner += [{"farmerId": farmer_id}, {"farmer.id": farmer_id}]
        filt["$and"] = [{"$or": owner}]
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if min_rating is not None:
        filt["averageRating"] = {"$gte": min_rating}
    return filt


@app.get("/products")
def list_products(search: Optional[str] = None, category: Optional[str] = None, farmerEmail: Optional[str] = None,
                  farmerId: Optional[str] = None, minPrice: Optional[float] = None, maxPrice: Optional[float] = None,
                  minRating: Optional[float] = None, sort: Optional[str] = None, dashboard: bool = False,
                  page: int = 1, limit: int = 12, database=Depends(get_db)):
    page, limit = max(1, page), max(1, min(limit, 100))
    filt = build_product_filter(search, category, farmerEmail, farmerId, minPrice, maxPrice, minRating, dashboard)
    total = database["product"].count_documents(filt)
    field, direction = SORTS.get(sort, ("createdAt", -1))
    cursor = database["product"].find(filt).sort(field, direction).skip((page - 1) * limit).limit(limit)
    return {
        "products": [serialize_doc(p) for p in cursor],
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": -(-total // limit)},
    }


def _load_product(database, product_id: str) -> dict:
    oid = as_object_id(product_id)
    product = database["product"].find_one({"_id": oid, "status": {"$ne": "deleted"}}) if oid is not None else None
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def _owned_product(database, product_id: str, user: dict) -> dict:
    product = _load_product(database, product_id)
    if (product.get("farmer") or {}).get("email") != user.get("email"):
        raise HTTPException(status_code=403, detail="Not your product")
    return product


@app.get("/products/{product_id}")
def get_product(product_id: str, database=Depends(get_db)):
    return serialize_doc(_load_product(database, product_id))


@app.post("/products")
async def create_product(payload: ProductIn, user: dict = Depends(require_farmer), database=Depends(get_db)):
    farmer = database["farmer"].find_one({"email": user.get("email")}) or {}
    product = ProductSchema(
        **payload.model_dump(),
        farmerId=str(farmer["_id"]) if farmer else str(user["_id"]),
        farmer=FarmerRef(
            id=str(farmer["_id"]) if farmer else str(user["_id"]),
            name=user.get("name"),
            farmName=farmer.get("farmName"),
            email=user.get("email"),
        ),
    )
    product_id = create_document("product", product, database=database)
    logger.info("product_created product_id=%s farmer=%s", product_id, user.get("email"))
    return {"id": product_id}


@app.put("/products/{product_id}")
async def update_product(product_id: str, payload: ProductUpdate, user: dict = Depends(require_farmer),
                         database=Depends(get_db)):
    product = _owned_product(database, product_id, user)
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    updates["updatedAt"] = now_utc()
    database["product"].update_one({"_id": product["_id"]}, {"$set": updates})
    return serialize_doc(database["product"].find_one({"_id": product["_id"]}))


@app.delete("/products/{product_id}")
async def delete_product(product_id: str, user: dict = Depends(require_farmer), database=Depends(get_db)):
    product = _owned_product(database, product_id, user)
    database["product"].update_one({"_id": product["_id"]}, {"$set": {"status": "deleted", "updatedAt": now_utc()}})
    logger.info("product_deleted product_id=%s", product_id)
    return {"id": product_id, "deleted": True}


@app.get("/categories")
def list_categories(database=Depends(get_db)):
    counts: Dict[str, int] = {}
    for p in get_documents("product", {"status": PRODUCT_STATUSES[0]}, database=database):
        if p.get("category"):
            counts[p["category"]] = counts.get(p["category"], 0) + 1
    return {"categories": [{"name": name, "count": counts[name]} for name in sorted(counts)]}


# Farmers
@app.get("/farmers")
def list_farmers(search: Optional[str] = None, database=Depends(get_db)):
    filt: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"farmName": pattern}, {"location": pattern}]
    return {"farmers": [serialize_doc(f) for f in database["farmer"].find(filt).sort("name", 1)]}


@app.get("/farmers/{farmer_id}")
def get_farmer(farmer_id: str, database=Depends(get_db)):
    oid = as_object_id(farmer_id)
    farmer = database["farmer"].find_one({"_id": oid}) if oid is not None else None
    if not farmer:
        raise HTTPException(status_code=404, detail="Farmer not found")
    products = list(database["product"].find(
        {"farmer.email": farmer.get("email"), "status": "active"}).sort("createdAt", -1))
    rated = [p for p in products if p.get("reviewCount")]
    review_total = sum(p["reviewCount"] for p in rated)
    average = round_half_up(sum(p.get("averageRating", 0) * p["reviewCount"] for p in rated) / review_total, 1) \
        if review_total else 0
    return {
        "farmer": serialize_doc(farmer),
        "products": [serialize_doc(p) for p in products],
        "stats": {"productCount": len(products), "averageRating": average, "totalReviews": review_total},
    }


# Cart
@app.get("/cart")
async def get_cart(user: dict = Depends(get_current_user), database=Depends(get_db)):
    return cart_service.get_cart(database, str(user["_id"]))


@app.post("/cart")
async def save_cart(payload: CartRequest, user: dict = Depends(get_current_user), database=Depends(get_db)):
    result = cart_service.save_cart(database, str(user["_id"]), payload.items)
    return {"message": "Cart updated successfully", **result}


@app.delete("/cart")
async def clear_cart(user: dict = Depends(get_current_user), database=Depends(get_db)):
    return {"message": "Cart cleared successfully", **cart_service.clear_cart(database, str(user["_id"]))}


# Orders
@app.post("/orders")
async def checkout(payload: CheckoutRequest, user: dict = Depends(get_current_user), database=Depends(get_db)):
    order = order_service.place_order(
        database,
        user,
        [it.model_dump() for it in payload.items],
        delivery_fee=payload.deliveryFee,
        service_fee=payload.serviceFee,
        delivery_address=payload.deliveryAddress,
        payment_method=payload.paymentMethod,
    )
    return {"message": "Order created successfully", "orderId": order["id"], "order": order}


@app.get("/orders")
async def list_orders(userId: Optional[str] = None, farmerEmail: Optional[str] = None, status: Optional[str] = None,
                      productId: Optional[str] = None, page: int = 1, limit: int = 50,
                      user: dict = Depends(get_current_user), database=Depends(get_db)):
    if farmerEmail and farmerEmail != user.get("email"):
        raise HTTPException(status_code=403, detail="Cannot view another farmer's orders")
    if userId and userId != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Cannot view another user's orders")
    if not userId and not farmerEmail:
        userId = str(user["_id"])
    return order_service.list_orders(database, userId, farmerEmail, status, productId, page, min(limit, 1000))


def _order_role(order: dict, user: dict) -> Optional[str]:
    if user.get("email") in order.get("farmerStatuses", {}):
        return "farmer"
    if order.get("userId") == str(user["_id"]):
        return "buyer"
    return None


@app.get("/orders/{order_id}")
async def get_order(order_id: str, user: dict = Depends(get_current_user), database=Depends(get_db)):
    order = order_service.get_order(database, order_id)
    role = _order_role(order, user)
    if role is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if role == "farmer":
        scoped = order_service.scope_order_to_farmer(order, user.get("email"))
        order = {**order, "items": scoped["items"], "farmerSubtotal": scoped["subtotal"]}
    return order


@app.patch("/orders/{order_id}")
async def update_order(order_id: str, payload: OrderStatusUpdate, user: dict = Depends(get_current_user),
                       database=Depends(get_db)):
    order = order_service.get_order(database, order_id)
    role = _order_role(order, user)
    if role == "farmer":
        if payload.farmerEmail and payload.farmerEmail != user.get("email"):
            raise HTTPException(status_code=403, detail="Cannot update another farmer's items")
        farmer_email = user.get("email")
    elif role == "buyer" and payload.status == "cancelled":
        farmer_email = None
    elif role == "buyer":
        raise HTTPException(status_code=403, detail="Buyers can only cancel orders")
    else:
        raise HTTPException(status_code=404, detail="Order not found")
    updated = order_service.update_order_status(database, order_id, payload.status, farmer_email, payload.note)
    return {"message": "Order updated successfully", "order": updated}


@app.post("/orders/{order_id}/reorder")
async def reorder(order_id: str, user: dict = Depends(get_current_user), database=Depends(get_db)):
    return order_service.reorder(database, order_id, str(user["_id"]))


# Reviews
@app.get("/products/{product_id}/reviews")
def product_reviews(product_id: str, page: int = 1, limit: int = 5, userId: Optional[str] = None,
                    database=Depends(get_db)):
    return review_service.list_product_reviews(database, product_id, page, limit, userId)


@app.post("/products/{product_id}/reviews")
def create_review(product_id: str, payload: ReviewIn, database=Depends(get_db)):
    _load_product(database, product_id)
    return review_service.create_review(database, product_id, payload.userId, payload.rating, payload.comment)


@app.get("/products/{product_id}/can-review")
def can_review(product_id: str, userId: Optional[str] = None, database=Depends(get_db)):
    if not userId:
        return JSONResponse(status_code=401, content={"canReview": False, "reason": "User not authenticated"})
    return review_service.check_review_eligibility(database, product_id, userId)


@app.put("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewIn, database=Depends(get_db)):
    return review_service.update_review(database, review_id, payload.userId, payload.rating, payload.comment)


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, userId: str, database=Depends(get_db)):
    return review_service.delete_review(database, review_id, userId)


# Favorites
@app.get("/favorites")
def list_favorites(userId: str, database=Depends(get_db)):
    favorites = list(database["favorite"].find({"userId": userId}).sort("createdAt", -1))
    ids = [oid for oid in (as_object_id(f["productId"]) for f in favorites) if oid is not None]
    products = {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": ids}, "status": {"$ne": "deleted"}})}
    items = []
    for fav in favorites:
        product = products.get(fav["productId"])
        if product:
            items.append({**serialize_doc(product), "favoritedAt": fav.get("createdAt")})
    return {"favorites": items, "count": len(items)}


@app.post("/favorites")
def add_favorite(payload: FavoriteIn, database=Depends(get_db)):
    _load_product(database, payload.productId)
    fav = FavoriteSchema(**payload.model_dump()).model_dump()
    result = database["favorite"].update_one(
        fav, {"$setOnInsert": {"createdAt": now_utc()}}, upsert=True
    )
    if result.upserted_id is None:
        raise HTTPException(status_code=400, detail="Product already in favorites")
    return {"message": "Added to favorites", "id": str(result.upserted_id)}


@app.delete("/favorites")
def remove_favorite(userId: str, productId: str, database=Depends(get_db)):
    result = database["favorite"].delete_one({"userId": userId, "productId": productId})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Favorite not found")
    return {"message": "Removed from favorites"}


# Messages
@app.get("/messages")
async def list_conversations(user: dict = Depends(get_current_user), database=Depends(get_db)):
    return {"conversations": messaging.list_conversations(database, str(user["_id"]))}


@app.post("/messages")
async def send_message(payload: MessageIn, user: dict = Depends(get_current_user), database=Depends(get_db)):
    return messaging.send_message(database, str(user["_id"]), payload.receiverId, payload.content)


@app.get("/messages/{conversation_id}")
async def conversation_messages(conversation_id: str, user: dict = Depends(get_current_user), database=Depends(get_db)):
    return messaging.get_messages(database, conversation_id, str(user["_id"]))


@app.put("/messages/{conversation_id}/read")
async def mark_conversation_read(conversation_id: str, user: dict = Depends(get_current_user), database=Depends(get_db)):
    return {"success": True, "modifiedCount": messaging.mark_read(database, conversation_id, str(user["_id"]))}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
