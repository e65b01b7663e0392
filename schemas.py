"""
Database Schemas for the Farm Market

Each Pydantic model below represents a collection in MongoDB. The collection
name is the snake_case plural of the class name (OrderItems -> "order_items")
and field names match the marketplace column names byte-for-byte.

The second half of the module holds the normalized domain records that the
gateway builds from raw rows.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator

UserRole = Literal["farmer", "consumer"]
OrderStatus = Literal["pending", "confirmed", "completed", "cancelled"]

DEFAULT_CATEGORY = "Uncategorized"
DEFAULT_UNIT = "each"


# -----------------------------
# Collections
# -----------------------------

class Users(BaseModel):
    email: EmailStr
    username: str = Field(..., min_length=1)
    contact_info: Optional[str] = None
    user_role: UserRole
    password_hash: str


class Farmers(BaseModel):
    user_id: str
    farm_name: str
    farm_location: str
    profile_image: Optional[str] = None


class Consumers(BaseModel):
    user_id: str
    location: str = ""
    profile_image: Optional[str] = None


class Products(BaseModel):
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    stock_level: int = Field(..., ge=0)
    farmer_id: str
    image_url: Optional[str] = None
    category: str = DEFAULT_CATEGORY
    is_organic: bool = False
    unit: str = DEFAULT_UNIT


class Orders(BaseModel):
    consumer_id: str
    order_date: datetime
    total_price: float = Field(..., ge=0)
    status: OrderStatus = "pending"


class OrderItems(BaseModel):
    order_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price_per_item: float = Field(..., ge=0)


class Payments(BaseModel):
    order_id: str
    transaction_id: str
    amount: float = Field(..., ge=0)
    payment_method: str
    status: Literal["pending", "completed", "failed"] = "pending"


class Messages(BaseModel):
    sender_id: str
    receiver_id: str
    content: str
    timestamp: datetime
    is_read: bool = False


# -----------------------------
# Domain records
# -----------------------------

def _as_utc(value: Any) -> Any:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Record(BaseModel):
    id: str

    @classmethod
    def from_row(cls, row: Dict[str, Any], **extra):
        data = {k: v for k, v in row.items() if k != "_id"}
        data["id"] = str(row.get("_id", row.get("id")))
        data.update(extra)
        return cls.model_validate(data)


class User(Record):
    email: str
    username: str
    contact_info: Optional[str] = None
    user_role: UserRole
    created_at: Optional[UtcDatetime] = None


class FarmerProfile(Record):
    user_id: str
    farm_name: str = ""
    farm_location: str = ""
    profile_image: Optional[str] = None


class ConsumerProfile(Record):
    user_id: str
    location: str = ""
    profile_image: Optional[str] = None


class Product(Record):
    name: str
    description: str = ""
    price: float
    stock_level: int = Field(..., ge=0)
    farmer_id: str
    image_url: Optional[str] = None
    category: str = DEFAULT_CATEGORY
    is_organic: bool = False
    unit: str = DEFAULT_UNIT
    created_at: Optional[UtcDatetime] = None
    farm_name: Optional[str] = None
    farmer_name: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        return v or ""

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return v or DEFAULT_CATEGORY

    @field_validator("unit", mode="before")
    @classmethod
    def _unit(cls, v):
        return v or DEFAULT_UNIT

    @field_validator("is_organic", mode="before")
    @classmethod
    def _organic(cls, v):
        return bool(v)


class OrderItem(Record):
    order_id: str
    product_id: str
    quantity: int
    price_per_item: float
    product_name: Optional[str] = None


class Order(Record):
    consumer_id: str
    order_date: UtcDatetime
    total_price: float
    status: OrderStatus
    items: List[OrderItem] = []


class Payment(Record):
    order_id: str
    transaction_id: str
    amount: float
    payment_method: str
    status: str
    created_at: Optional[UtcDatetime] = None


class Message(Record):
    sender_id: str
    receiver_id: str
    content: str
    timestamp: UtcDatetime
    is_read: bool = False
