"""
Auction lifecycle engine.

Holds the bid acceptance rule and the two status transitions that do not
come from a bid: the optional sweep and the sold transition. The clock-only
status rules live in ``lifecycle``.

Stored ``Product.status`` is only a lazily corrected cache. Whether a bid is
accepted, and what the API shows, is always decided by ``effective_status``.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

import config
from exceptions import (
    AuctionClosed, BidBelowIncrement, BidConflict, BidTooLow, InvalidAutoBid,
    InvalidTransition, NotFound, SelfBid,
)
from lifecycle import (
    BIDDABLE, AuctionStatus, AuctionType, advance_status, derive_status, effective_status,
)
from models import Bid, Product, utcnow

logger = logging.getLogger(__name__)


def status_clause(status: AuctionStatus, now: datetime):
    """SQL filter selecting the products whose effective status is ``status``."""
    if status is AuctionStatus.SOLD:
        return Product.is_sold.is_(True)
    unsold = Product.is_sold.is_(False)
    if status is AuctionStatus.UPCOMING:
        return and_(unsold, Product.start_date > now)
    if status is AuctionStatus.ACTIVE:
        return and_(unsold, Product.start_date <= now, Product.end_date > now)
    return and_(unsold, Product.end_date <= now)


class TraditionalRule:
    """Ascending price, highest bid wins."""

    def minimum_bid(self, product: Product) -> Decimal:
        return product.current_price + product.increment

    def validate(self, product: Product, amount: Decimal):
        minimum = self.minimum_bid(product)
        if amount <= product.current_price:
            raise BidTooLow(
                f"Bid amount must be higher than the current price of {product.current_price}",
                minimum,
            )
        if amount < minimum:
            raise BidBelowIncrement(f"Bid amount must be at least {minimum}", minimum)

    def apply(self, product: Product, bid: Bid):
        product.current_price = bid.amount
        product.bid_count += 1


# reverse and sealed auctions have no rule of their own yet
RULES = {
    AuctionType.TRADITIONAL: TraditionalRule(),
    AuctionType.REVERSE: TraditionalRule(),
    AuctionType.SEALED: TraditionalRule(),
}


def rule_for(auction_type: str):
    return RULES[AuctionType(auction_type)]


class AuctionLocks:
    """
    One lock per auction id, so bids on different auctions never wait on each other.

    An entry lives only while someone holds or waits on it, so the map stays as
    small as the number of auctions being written to right now.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def __len__(self):
        with self._guard:
            return len(self._locks)

    @contextmanager
    def __call__(self, product_id: int):
        with self._guard:
            entry = self._locks.get(product_id)
            if entry is None:
                entry = self._locks[product_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[product_id]


auction_locks = AuctionLocks()


def _to_decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def place_bid(
    db: Session,
    product_id: int,
    user_id: int,
    amount,
    is_auto_bid: bool = False,
    max_amount=None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Bid, Product]:
    """
    Validates a bid and applies it to the auction in one transaction.

    Checks run in order and the first failure is raised: the auction exists,
    its status allows bidding, the bidder is not the seller, the amount beats
    the current price, the amount clears the increment, and an auto-bid has a
    ceiling above the amount. A rejected bid leaves no trace.

    Calls for the same auction are serialised by a per-auction lock. A write
    by another process is detected through the product's version counter and
    the whole check is re-run against the fresh row.
    """
    amount = _to_decimal(amount)
    max_amount = _to_decimal(max_amount)
    with auction_locks(product_id):
        attempt = 0
        while True:
            attempt += 1
            try:
                return _apply_bid(db, product_id, user_id, amount, is_auto_bid, max_amount, notes, now or utcnow())
            except StaleDataError:
                db.rollback()
                if attempt >= config.BID_RETRY_ATTEMPTS:
                    logger.warning("bid on product %s lost %s version checks, giving up", product_id, attempt)
                    raise BidConflict("The auction changed while the bid was being placed, please retry")
                logger.info("bid on product %s hit a concurrent update, retrying", product_id)
            except SQLAlchemyError:
                db.rollback()
                raise


def _apply_bid(db, product_id, user_id, amount, is_auto_bid, max_amount, notes, now):
    product = db.get(Product, product_id, populate_existing=True)
    if product is None:
        raise NotFound(f"Product {product_id} not found")

    status = effective_status(product, now)
    if status not in BIDDABLE:
        logger.info("rejected bid on product %s: auction is %s", product_id, status.value)
        raise AuctionClosed("This auction is not active or upcoming")

    if user_id == product.seller_id:
        logger.info("rejected bid on product %s: seller %s bid on own auction", product_id, user_id)
        raise SelfBid("Sellers cannot bid on their own auctions")

    rule = rule_for(product.auction_type)
    try:
        rule.validate(product, amount)
    except (BidTooLow, BidBelowIncrement) as err:
        logger.info("rejected bid on product %s: %s", product_id, err.code)
        raise

    if is_auto_bid and (max_amount is None or max_amount <= amount):
        raise InvalidAutoBid("An auto-bid needs a maximum amount greater than the bid amount")

    bid = Bid(
        product_id=product.id,
        user_id=user_id,
        amount=amount,
        is_auto_bid=bool(is_auto_bid),
        max_amount=max_amount if is_auto_bid else None,
        notes=notes,
        created_at=now,
    )
    rule.apply(product, bid)
    advance_status(product, status)
    db.add(bid)
    db.commit()
    db.refresh(bid)
    db.refresh(product)
    logger.info(
        "accepted bid %s on product %s: amount=%s bid_count=%s",
        bid.id, product.id, bid.amount, product.bid_count,
    )
    return bid, product


def sweep_statuses(db: Session, now: Optional[datetime] = None) -> int:
    """
    Brings every unsold auction's stored status up to date. Returns the number changed.

    Each auction is written under its own lock and in its own transaction. A
    row that a concurrent write changed first is skipped; the next bid or
    sweep corrects it.
    """
    now = now or utcnow()
    updated = 0
    product_ids = [
        product_id
        for (product_id,) in db.query(Product.id).filter(
            Product.is_sold.is_(False),
            Product.status != AuctionStatus.ENDED.value,
        ).order_by(Product.id)
    ]
    for product_id in product_ids:
        with auction_locks(product_id):
            product = db.get(Product, product_id, populate_existing=True)
            if product is None or product.is_sold:
                continue
            if not advance_status(product, derive_status(now, product.start_date, product.end_date)):
                continue
            try:
                db.commit()
            except StaleDataError:
                db.rollback()
                logger.info("status sweep skipped product %s: changed concurrently", product_id)
                continue
            except SQLAlchemyError:
                db.rollback()
                raise
            updated += 1
    logger.info("status sweep advanced %s auctions", updated)
    return updated


def mark_sold(db: Session, product_id: int, now: Optional[datetime] = None) -> Product:
    """Terminal transition ended -> sold. Needs at least one bid."""
    now = now or utcnow()
    with auction_locks(product_id):
        product = db.get(Product, product_id, populate_existing=True)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        status = effective_status(product, now)
        if status is AuctionStatus.SOLD:
            raise InvalidTransition("This auction is already sold")
        if status is not AuctionStatus.ENDED:
            raise InvalidTransition("Only ended auctions can be marked as sold")
        if product.bid_count == 0:
            raise InvalidTransition("An auction without bids cannot be sold")
        product.is_sold = True
        product.is_active = False
        advance_status(product, AuctionStatus.SOLD)
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        db.refresh(product)
        logger.info("product %s marked as sold at %s", product.id, product.current_price)
        return product
