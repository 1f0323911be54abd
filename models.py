from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base
from lifecycle import effective_status


def utcnow():
    """Naive UTC timestamp, the form every DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_seller = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    products = relationship("Product", back_populates="seller")
    bids = relationship("Bid", back_populates="user")


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)
    item_count = Column(Integer, default=0, nullable=False)

    products = relationship("Product", back_populates="category")


class Product(Base):
    """An item under auction."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    image_url = Column(String, nullable=False)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    initial_price = Column(Numeric(12, 2), nullable=False)
    current_price = Column(Numeric(12, 2), nullable=False)
    increment = Column(Numeric(12, 2), nullable=False, default=10)
    auction_type = Column(String, nullable=False, default="traditional")
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_sold = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    bid_count = Column(Integer, default=0, nullable=False)
    status = Column(String, default="upcoming", nullable=False)
    version = Column(Integer, nullable=False)

    seller = relationship("User", back_populates="products")
    category = relationship("Category", back_populates="products")
    bids = relationship("Bid", back_populates="product")

    __mapper_args__ = {"version_id_col": version}

    @property
    def live_status(self):
        return effective_status(self, utcnow()).value


class Bid(Base):
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    is_auto_bid = Column(Boolean, default=False, nullable=False)
    max_amount = Column(Numeric(12, 2), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="bids")
    product = relationship("Product", back_populates="bids")


class Watchlist(Base):
    __tablename__ = "watchlists"
    __table_args__ = (UniqueConstraint("user_id", "product_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product")
