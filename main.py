from datetime import timedelta
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
import crud
from auction import mark_sold, place_bid, sweep_statuses
from auth import (
    authenticate_user, create_access_token, ensure_owner_or_admin,
    get_current_admin, get_current_seller, get_current_user,
)
from database import Base, engine, get_db
from exceptions import AuctionError
from lifecycle import AuctionStatus
from log import configure_logging
from models import User, utcnow
from schemas import (
    BidCreate, BidDetail,
    Category, CategoryCreate,
    Product, ProductCreate, ProductUpdate,
    SweepResult, Token,
    User as UserSchema, UserCreate,
    WatchlistCreate, WatchlistEntry, WatchlistItem,
)

configure_logging(config.LOG_LEVEL)
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Online Auction API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request data", "code": "validation_error", "errors": jsonable_encoder(exc.errors())},
    )


# Authentication Endpoint
@app.post("/login/", response_model=Token)
async def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(
        data={"sub": user.username},
        expires_delta=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {"access_token": access_token, "token_type": "bearer"}


# User Endpoints
@app.post("/users/", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
async def create_user(user: UserCreate, db: Session = Depends(get_db)):
    if crud.get_user_by_username(db, user.username):
        raise HTTPException(status_code=400, detail="Username already registered")
    if crud.get_user_by_email(db, user.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    return crud.create_user(db, user)


@app.get("/users/me", response_model=UserSchema)
async def read_users_me(current_user: User = Depends(get_current_user)):
    return current_user


@app.get("/users/{user_id}/bids/", response_model=List[BidDetail])
async def list_user_bids(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ensure_owner_or_admin(current_user, user_id, "Not authorized to view these bids")
    return crud.list_bids_for_user(db, user_id)


@app.get("/users/{user_id}/watchlist/", response_model=List[WatchlistEntry])
async def get_watchlist(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ensure_owner_or_admin(current_user, user_id, "Not authorized to view this watchlist")
    return crud.get_watchlist(db, user_id)


# Category Endpoints
@app.get("/categories/", response_model=List[Category])
async def list_categories(db: Session = Depends(get_db)):
    return crud.get_categories(db)


@app.get("/categories/{category_id}/", response_model=Category)
async def get_category(category_id: int, db: Session = Depends(get_db)):
    return crud.get_category(db, category_id)


@app.post("/categories/", response_model=Category, status_code=status.HTTP_201_CREATED)
async def create_category(
    category: CategoryCreate,
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    if crud.get_category_by_name(db, category.name):
        raise HTTPException(status_code=400, detail="Category already exists")
    try:
        return crud.create_category(db, category)
    except IntegrityError:
        raise HTTPException(status_code=400, detail="Category already exists")


# Product (auction) Endpoints
@app.get("/products/", response_model=List[Product])
async def list_products(
    categoryId: Optional[int] = None,
    sellerId: Optional[int] = None,
    status: Optional[AuctionStatus] = None,
    isActive: Optional[bool] = None,
    db: Session = Depends(get_db)
):
    return crud.list_products(db, category_id=categoryId, seller_id=sellerId, status=status, is_active=isActive)


@app.get("/products/{product_id}/", response_model=Product)
async def get_product(product_id: int, db: Session = Depends(get_db)):
    return crud.get_product(db, product_id)


@app.post("/products/", response_model=Product, status_code=status.HTTP_201_CREATED)
async def create_product(
    product: ProductCreate,
    current_user: User = Depends(get_current_seller),
    db: Session = Depends(get_db)
):
    if product.end_date <= utcnow():
        raise HTTPException(status_code=400, detail="End date must be in the future")
    return crud.create_product(db, product, seller_id=current_user.id)


@app.put("/products/{product_id}/", response_model=Product)
async def update_product(
    product_id: int,
    product_update: ProductUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_product = crud.get_product(db, product_id)
    ensure_owner_or_admin(current_user, db_product.seller_id, "Not authorized to update this product")
    return crud.update_product(db, db_product, product_update)


@app.delete("/products/{product_id}/", status_code=status.HTTP_204_NO_CONTENT)
async def delete_product(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_product = crud.get_product(db, product_id)
    ensure_owner_or_admin(current_user, db_product.seller_id, "Not authorized to delete this product")
    crud.delete_product(db, db_product)
    return None


@app.post("/products/{product_id}/sold", response_model=Product)
async def sell_product(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_product = crud.get_product(db, product_id)
    ensure_owner_or_admin(current_user, db_product.seller_id, "Not authorized to sell this product")
    return mark_sold(db, product_id)


@app.get("/products/{product_id}/bids/", response_model=List[BidDetail])
async def list_product_bids(product_id: int, db: Session = Depends(get_db)):
    crud.get_product(db, product_id)
    return crud.list_bids_for_product(db, product_id)


# Bid Endpoints
@app.get("/bids/", response_model=List[BidDetail])
async def list_bids(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return crud.list_bids_for_user(db, current_user.id)


@app.post("/bids/", response_model=BidDetail, status_code=status.HTTP_201_CREATED)
async def create_bid(
    bid: BidCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_bid, _ = place_bid(
        db,
        product_id=bid.product_id,
        user_id=current_user.id,
        amount=bid.amount,
        is_auto_bid=bid.is_auto_bid,
        max_amount=bid.max_amount,
        notes=bid.notes,
    )
    return db_bid


@app.get("/bids/{bid_id}/", response_model=BidDetail)
async def get_bid(
    bid_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    bid = crud.get_bid(db, bid_id)
    ensure_owner_or_admin(current_user, bid.user_id, "Not authorized to view this bid")
    return bid


# Watchlist Endpoints
@app.post("/watchlist/", response_model=WatchlistItem, status_code=status.HTTP_201_CREATED)
async def add_to_watchlist(
    item: WatchlistCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    crud.get_product(db, item.product_id)
    if crud.get_watchlist_item(db, current_user.id, item.product_id):
        raise HTTPException(status_code=400, detail="Item already in watchlist")
    return crud.add_to_watchlist(db, current_user.id, item.product_id)


@app.delete("/watchlist/{product_id}/", status_code=status.HTTP_204_NO_CONTENT)
async def remove_from_watchlist(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if not crud.remove_from_watchlist(db, current_user.id, product_id):
        raise HTTPException(status_code=404, detail="Watchlist item not found")
    return None


# Admin Endpoints
@app.post("/admin/sweep", response_model=SweepResult)
async def sweep(
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    return {"updated": sweep_statuses(db)}


if __name__ == "__main__":
    uvicorn.run(app, host=config.HOST, port=config.PORT)
