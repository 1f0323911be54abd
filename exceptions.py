"""
Errors raised by the auction engine and the persistence helpers.

Each error knows the HTTP status it maps to; ``main.py`` renders them as
``{"detail": ..., "code": ...}`` plus any extra fields.
"""

from decimal import Decimal


class AuctionError(Exception):
    status_code = 400
    code = "auction_error"

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        for key, value in self.extra.items():
            body[key] = float(value) if isinstance(value, Decimal) else value
        return body


class NotFound(AuctionError):
    status_code = 404
    code = "not_found"


class AuctionClosed(AuctionError):
    code = "auction_closed"


class SelfBid(AuctionError):
    code = "self_bid"


class BidTooLow(AuctionError):
    code = "bid_too_low"

    def __init__(self, message: str, minimum_amount: Decimal):
        super().__init__(message, minimumAmount=minimum_amount)
        self.minimum_amount = minimum_amount


class BidBelowIncrement(AuctionError):
    code = "bid_below_increment"

    def __init__(self, message: str, minimum_amount: Decimal):
        super().__init__(message, minimumAmount=minimum_amount)
        self.minimum_amount = minimum_amount


class InvalidAutoBid(AuctionError):
    code = "invalid_auto_bid"


class HasBids(AuctionError):
    code = "has_bids"


class InvalidTransition(AuctionError):
    code = "invalid_transition"


class BidConflict(AuctionError):
    status_code = 409
    code = "bid_conflict"
