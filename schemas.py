"""
Database Schemas for the FarmFresh marketplace

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Product -> collection "product"

Field names are the camelCase names used on the wire and in stored documents.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")
PRODUCT_STATUSES = ("active", "inactive", "deleted")

# Accounts and sellers

class FarmDetails(BaseModel):
    farmName: Optional[str] = None
    specialization: Optional[str] = None
    farmSize: Optional[float] = None
    farmSizeUnit: str = "acres"

class User(BaseModel):
    name: str
    email: EmailStr
    hashedPassword: str
    userType: str = Field("customer", description="customer|farmer")
    phone: Optional[str] = None
    address: Optional[str] = None
    bio: Optional[str] = None
    farmDetails: Optional[FarmDetails] = None

class Farmer(BaseModel):
    name: str
    email: EmailStr
    userId: Optional[str] = None
    farmName: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    profilePicture: Optional[str] = None
    specializations: List[str] = Field(default_factory=list)
    verified: bool = False
    isCertified: bool = False

# Catalog

class FarmerRef(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    farmName: Optional[str] = None
    email: Optional[str] = None

class Product(BaseModel):
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    status: str = Field("active", description="active|inactive|deleted")
    stock: int = Field(0, ge=0)
    image: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    isOrganic: bool = False
    averageRating: float = Field(0, ge=0, le=5)
    reviewCount: int = Field(0, ge=0)
    totalReviews: int = Field(0, ge=0)
    purchaseCount: int = Field(0, ge=0)
    farmerId: Optional[str] = None
    farmer: Optional[FarmerRef] = None

class Review(BaseModel):
    productId: str
    userId: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    reviewer: Optional[str] = None

class Favorite(BaseModel):
    userId: str
    productId: str

# Cart and orders

class CartItem(BaseModel):
    productId: str
    name: Optional[str] = None
    price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=1)
    image: Optional[str] = None

class Cart(BaseModel):
    userId: str
    items: List[CartItem] = Field(default_factory=list)
    total: float = 0

class OrderItem(BaseModel):
    productId: str
    name: Optional[str] = None
    price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=1)
    subtotal: float = 0
    image: Optional[str] = None
    farmerEmail: Optional[str] = None
    farmerName: Optional[str] = None
    farmerId: Optional[str] = None

class FarmerStatus(BaseModel):
    farmerEmail: str
    status: str = "pending"

class StatusEntry(BaseModel):
    status: str
    at: datetime
    note: Optional[str] = None
    farmerEmail: Optional[str] = None

class Order(BaseModel):
    userId: str
    items: List[OrderItem]
    status: str = Field("pending", description="pending|confirmed|shipped|delivered|cancelled|mixed")
    subtotal: float = 0
    deliveryFee: float = 0
    serviceFee: float = 0
    total: float = 0
    farmerSubtotal: Optional[float] = None
    farmerEmails: List[str] = Field(default_factory=list)
    farmerStatusesArr: List[FarmerStatus] = Field(default_factory=list)
    statusHistory: List[StatusEntry] = Field(default_factory=list)
    customerName: Optional[str] = None
    customerEmail: Optional[str] = None
    customerPhone: Optional[str] = None
    deliveryAddress: Optional[str] = None
    paymentMethod: str = "cod"

# Messaging

class Conversation(BaseModel):
    participants: List[str]
    lastMessage: str = ""
    lastMessageSender: Optional[str] = None
    lastMessageAt: datetime

class Message(BaseModel):
    conversationId: str
    senderId: str
    receiverId: str
    content: str = ""
    messageType: str = "text"
    isRead: bool = False
    readAt: Optional[datetime] = None
