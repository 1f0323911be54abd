from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from lifecycle import AuctionStatus, AuctionType


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# User schemas
class UserBase(CamelModel):
    username: str = Field(..., min_length=3)
    email: str
    full_name: str
    phone: Optional[str] = None
    address: Optional[str] = None


class UserCreate(UserBase):
    password: str = Field(..., min_length=6)
    is_seller: bool = False


class User(UserBase):
    id: int
    is_admin: bool
    is_seller: bool
    created_at: datetime


# Category schemas
class CategoryCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None


class Category(CategoryCreate):
    id: int
    item_count: int


# Product schemas
class ProductCreate(CamelModel):
    title: str = Field(..., min_length=1)
    description: str
    image_url: str
    category_id: int
    initial_price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    increment: Decimal = Field(Decimal("10"), gt=0, max_digits=12, decimal_places=2)
    auction_type: AuctionType = AuctionType.TRADITIONAL
    start_date: datetime
    end_date: datetime

    @field_validator("start_date", "end_date")
    @classmethod
    def to_naive_utc(cls, v):
        return _naive_utc(v)

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self


class ProductUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    category_id: Optional[int] = None


class Product(CamelModel):
    id: int
    title: str
    description: str
    image_url: str
    seller_id: int
    category_id: int
    initial_price: float
    current_price: float
    increment: float
    auction_type: AuctionType
    start_date: datetime
    end_date: datetime
    is_active: bool
    is_sold: bool
    created_at: datetime
    bid_count: int
    # status shown to clients is always re-derived from the clock
    status: AuctionStatus = Field(validation_alias="live_status", serialization_alias="status")


# Bid schemas
class BidCreate(CamelModel):
    product_id: int
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    is_auto_bid: bool = False
    max_amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    notes: Optional[str] = None


class BidDetail(CamelModel):
    id: int
    product_id: int
    user_id: int
    amount: float  # Decimal is rendered as a JSON number
    is_auto_bid: bool
    max_amount: Optional[float] = None
    notes: Optional[str] = None
    created_at: datetime


# Watchlist schemas
class WatchlistCreate(CamelModel):
    product_id: int


class WatchlistItem(CamelModel):
    id: int
    user_id: int
    product_id: int
    created_at: datetime


class WatchlistEntry(WatchlistItem):
    product: Optional[Product] = None


class SweepResult(CamelModel):
    updated: int


# Authentication schemas
class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    username: Optional[str] = None

