"""
Auction status rules that depend on nothing but the clock and a product's
schedule fields.
"""

import enum
from datetime import datetime


class AuctionStatus(str, enum.Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    ENDED = "ended"
    SOLD = "sold"


class AuctionType(str, enum.Enum):
    TRADITIONAL = "traditional"
    REVERSE = "reverse"
    SEALED = "sealed"


_STATUS_ORDER = [AuctionStatus.UPCOMING, AuctionStatus.ACTIVE, AuctionStatus.ENDED, AuctionStatus.SOLD]
BIDDABLE = (AuctionStatus.UPCOMING, AuctionStatus.ACTIVE)


def derive_status(now: datetime, start_date: datetime, end_date: datetime) -> AuctionStatus:
    """Status implied by the clock alone, over the half-open window [start, end)."""
    if now < start_date:
        return AuctionStatus.UPCOMING
    if now < end_date:
        return AuctionStatus.ACTIVE
    return AuctionStatus.ENDED


def effective_status(product, now: datetime) -> AuctionStatus:
    if product.is_sold:
        return AuctionStatus.SOLD
    return derive_status(now, product.start_date, product.end_date)


def advance_status(product, status: AuctionStatus) -> bool:
    """Moves the stored status forward to ``status``. Never moves it back."""
    current = AuctionStatus(product.status)
    if _STATUS_ORDER.index(status) <= _STATUS_ORDER.index(current):
        return False
    product.status = status.value
    return True
