import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auction import status_clause
from auth import get_password_hash
from exceptions import HasBids, NotFound
from lifecycle import AuctionStatus, derive_status
from models import Bid, Category, Product, User, Watchlist, utcnow
from schemas import CategoryCreate, ProductCreate, ProductUpdate, UserCreate

logger = logging.getLogger(__name__)


# Users
def get_user_by_username(db: Session, username: str):
    return db.query(User).filter(User.username == username).first()


def get_user_by_email(db: Session, email: str):
    return db.query(User).filter(User.email == email).first()


def create_user(db: Session, user: UserCreate, is_admin: bool = False):
    db_user = User(
        username=user.username,
        email=user.email,
        hashed_password=get_password_hash(user.password),
        full_name=user.full_name,
        phone=user.phone,
        address=user.address,
        is_seller=user.is_seller,
        is_admin=is_admin,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


# Categories
def get_categories(db: Session) -> List[Category]:
    return db.query(Category).order_by(Category.name).all()


def get_category_by_name(db: Session, name: str) -> Optional[Category]:
    return db.query(Category).filter(Category.name == name).first()


def get_category(db: Session, category_id: int) -> Category:
    category = db.get(Category, category_id)
    if category is None:
        raise NotFound(f"Category {category_id} not found")
    return category


def create_category(db: Session, category: CategoryCreate) -> Category:
    db_category = Category(**category.model_dump(), item_count=0)
    db.add(db_category)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(db_category)
    return db_category


# Products
def list_products(
    db: Session,
    category_id: Optional[int] = None,
    seller_id: Optional[int] = None,
    status: Optional[AuctionStatus] = None,
    is_active: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> List[Product]:
    query = db.query(Product)
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    if seller_id is not None:
        query = query.filter(Product.seller_id == seller_id)
    if is_active is not None:
        query = query.filter(Product.is_active == is_active)
    if status is not None:
        query = query.filter(status_clause(AuctionStatus(status), now or utcnow()))
    return query.order_by(Product.end_date, Product.id).all()


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found")
    return product


def create_product(db: Session, product: ProductCreate, seller_id: int, now: Optional[datetime] = None) -> Product:
    now = now or utcnow()
    category = get_category(db, product.category_id)
    db_product = Product(
        title=product.title,
        description=product.description,
        image_url=product.image_url,
        seller_id=seller_id,
        category_id=product.category_id,
        initial_price=product.initial_price,
        current_price=product.initial_price,
        increment=product.increment,
        auction_type=product.auction_type.value,
        start_date=product.start_date,
        end_date=product.end_date,
        bid_count=0,
        status=derive_status(now, product.start_date, product.end_date).value,
    )
    category.item_count += 1
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    logger.info("seller %s listed product %s (%s)", seller_id, db_product.id, db_product.status)
    return db_product


def update_product(db: Session, product: Product, changes: ProductUpdate) -> Product:
    data = changes.model_dump(exclude_unset=True)
    if data.get("category_id") not in (None, product.category_id):
        new_category = get_category(db, data["category_id"])
        old_category = db.get(Category, product.category_id)
        if old_category is not None:
            old_category.item_count = max(0, old_category.item_count - 1)
        new_category.item_count += 1
    for field, value in data.items():
        if value is not None:
            setattr(product, field, value)
    db.commit()
    db.refresh(product)
    return product


def delete_product(db: Session, product: Product):
    if product.bid_count > 0:
        raise HasBids("Cannot delete an auction that has bids")
    category = db.get(Category, product.category_id)
    if category is not None:
        category.item_count = max(0, category.item_count - 1)
    db.query(Watchlist).filter(Watchlist.product_id == product.id).delete()
    db.delete(product)
    db.commit()
    logger.info("product %s deleted", product.id)


# Bids
def get_bid(db: Session, bid_id: int) -> Bid:
    bid = db.get(Bid, bid_id)
    if bid is None:
        raise NotFound(f"Bid {bid_id} not found")
    return bid


def list_bids_for_product(db: Session, product_id: int) -> List[Bid]:
    """Leading bid first: highest amount, earliest bid on ties."""
    return (
        db.query(Bid)
        .filter(Bid.product_id == product_id)
        .order_by(Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc())
        .all()
    )


def list_bids_for_user(db: Session, user_id: int) -> List[Bid]:
    return (
        db.query(Bid)
        .filter(Bid.user_id == user_id)
        .order_by(Bid.created_at.desc(), Bid.id.desc())
        .all()
    )


# Watchlists
def get_watchlist(db: Session, user_id: int) -> List[Watchlist]:
    return db.query(Watchlist).filter(Watchlist.user_id == user_id).order_by(Watchlist.created_at).all()


def get_watchlist_item(db: Session, user_id: int, product_id: int) -> Optional[Watchlist]:
    return db.query(Watchlist).filter(
        Watchlist.user_id == user_id, Watchlist.product_id == product_id
    ).first()


def add_to_watchlist(db: Session, user_id: int, product_id: int) -> Watchlist:
    item = Watchlist(user_id=user_id, product_id=product_id)
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def remove_from_watchlist(db: Session, user_id: int, product_id: int) -> bool:
    item = get_watchlist_item(db, user_id, product_id)
    if item is None:
        return False
    db.delete(item)
    db.commit()
    return True
