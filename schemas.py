"""
Database Schemas

MongoDB collection schemas as Pydantic models, plus the request bodies the
API accepts. Model name lowercased is the collection name.
References to other documents are stored as ObjectId.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


# Collections

class User(Document):
    username: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    phone: Optional[str] = None
    address: Optional[str] = None


class Review(Document):
    user: ObjectId
    rating: int = Field(..., ge=1, le=5)
    comment: str
    created_at: datetime = Field(default_factory=_now)


class Product(Document):
    title: str
    description: str
    price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    quantity: int = Field(..., ge=0)
    seller: ObjectId
    categories: List[ObjectId] = Field(default_factory=list)
    reviews: List[Review] = Field(default_factory=list)


class Category(Document):
    name: str
    products: List[ObjectId] = Field(default_factory=list)


class CartLine(Document):
    product: ObjectId
    quantity: int = Field(..., ge=1)


class Cart(Document):
    user_id: ObjectId
    items: List[CartLine] = Field(default_factory=list)
    total_price: float = 0.0


class OrderLine(Document):
    product: ObjectId
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase time")


class Order(Document):
    user_id: ObjectId
    items: List[OrderLine]
    total_amount: float
    status: Literal["pending"] = "pending"
    idempotency_key: Optional[str] = None


class Bazaar(Document):
    name: str
    status: Literal["active", "coming_soon"] = "active"
    partition_info: str
    open_dates: str
    open_times: str
    location: str
    categories: List[ObjectId] = Field(default_factory=list)


class BazaarCategory(Document):
    name: str
    brands_names: str
    images: List[str] = Field(default_factory=list)
    bazaar: Optional[ObjectId] = None


# Request bodies

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterInput(CamelModel):
    username: str
    email: EmailStr
    password: str
    confirm_password: str = Field(..., alias="confirmPassword")
    phone: Optional[str] = None
    address: Optional[str] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class CartLineInput(CamelModel):
    product_id: str = Field(..., alias="productId")
    quantity: int


class ProductIn(BaseModel):
    title: str
    description: str
    price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    quantity: int = Field(..., ge=0)
    categories: List[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    images: Optional[List[str]] = None
    quantity: Optional[int] = Field(None, ge=0)
    categories: Optional[List[str]] = None


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str


class CategoryNames(BaseModel):
    names: List[str]


class BazaarIn(CamelModel):
    name: str
    status: Literal["active", "coming_soon"] = "active"
    partition_info: str = Field(..., alias="partitionInfo")
    open_dates: str = Field(..., alias="openDates")
    open_times: str = Field(..., alias="openTimes")
    location: str
    categories_ids: List[str] = Field(default_factory=list, alias="categoriesIds")

    @field_validator("categories_ids", mode="before")
    @classmethod
    def split_ids(cls, v):
        # accepts "id1, id2" as well as a list
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class BazaarUpdate(CamelModel):
    name: Optional[str] = None
    status: Optional[Literal["active", "coming_soon"]] = None
    partition_info: Optional[str] = Field(None, alias="partitionInfo")
    open_dates: Optional[str] = Field(None, alias="openDates")
    open_times: Optional[str] = Field(None, alias="openTimes")
    location: Optional[str] = None
    categories_ids: Optional[List[str]] = Field(None, alias="categoriesIds")

    @field_validator("categories_ids", mode="before")
    @classmethod
    def split_ids(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class BazaarCategoryIn(CamelModel):
    name: str
    brands_names: str = Field(..., alias="brandsNames")
    images: List[str] = Field(default_factory=list)


class BazaarCategoryUpdate(CamelModel):
    name: Optional[str] = None
    brands_names: Optional[str] = Field(None, alias="brandsNames")
    images: Optional[List[str]] = None


class BazaarCategoryBulk(BaseModel):
    categories: List[dict]
