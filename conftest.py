import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ["LOG_LEVEL"] = "WARNING"

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from database import Base, SessionLocal, engine
from main import app
from models import Category, Product, User

NOW = datetime(2030, 1, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_user(db):
    def _make_user(username, is_seller=False, is_admin=False):
        user = User(
            username=username,
            email=f"{username}@example.com",
            hashed_password="not-a-real-hash",
            full_name=username.title(),
            is_seller=is_seller,
            is_admin=is_admin,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make_user


@pytest.fixture
def category(db):
    category = Category(name="Electronics", description="Electronic devices and gadgets", item_count=0)
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


@pytest.fixture
def make_product(db, category):
    def _make_product(seller, current_price="250", increment="10", start=None, end=None, **fields):
        start = start or NOW - timedelta(days=1)
        end = end or NOW + timedelta(days=7)
        product = Product(
            title=fields.pop("title", "Vintage camera"),
            description="A camera in working order",
            image_url="https://example.com/camera.png",
            seller_id=seller.id,
            category_id=category.id,
            initial_price=Decimal(current_price),
            current_price=Decimal(current_price),
            increment=Decimal(increment),
            start_date=start,
            end_date=end,
            bid_count=0,
            status=fields.pop("status", "active"),
            **fields,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product
    return _make_product
