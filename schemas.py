"""
Database Schemas

MongoDB collection schemas as Pydantic models. The lowercased model name is
the collection name:
- User -> "user" collection
- Product -> "product" collection
- Order -> "order" collection
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

DEFAULT_AVATAR = "default.jpeg"

Role = Literal["user", "admin"]
Category = Literal["beverages", "snacks"]
OrderStatus = Literal["pending", "rejected", "paid"]


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    username: str = Field(..., min_length=1, description="Unique handle")
    email: EmailStr = Field(..., description="Email address, unique")
    phone_number: str = Field(..., description="Contact phone number")
    password_hash: str = Field(..., description="Password hash (server-side)")
    role: Role = Field("user", description="Role: user | admin")
    avatar: str = Field(DEFAULT_AVATAR, description="Avatar object key")
    verified: bool = Field(False, description="Whether the email address was confirmed")
    password_changed_at: Optional[datetime] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Product name, unique")
    price: float = Field(..., ge=0, description="Unit price")
    discount: float = Field(0, ge=0, le=100, description="Discount percentage")
    summary: str
    description: str
    category: Category
    ingredients: List[str] = Field(default_factory=list)
    thumbnail: Optional[str] = Field(None, description="Thumbnail object key")
    images: List[str] = Field(default_factory=list, description="Image object keys")
    ratings: float = Field(0, ge=0, le=5, description="Average rating 0-5")
    author: Optional[str] = Field(None, description="Id of the admin who created it")


class OrderItem(BaseModel):
    product: str = Field(..., description="Product ObjectId as string")
    quantity: int = Field(..., ge=1)
    amount: float = Field(..., ge=0, description="price * quantity")
    discount: float = Field(..., ge=0, description="amount * discount / 100")


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    owner: str = Field(..., description="User ObjectId as string")
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    total_discount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
