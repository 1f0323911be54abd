import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

import auction
import config
from auction import TraditionalRule, auction_locks, mark_sold, place_bid, rule_for, sweep_statuses
from conftest import NOW
from crud import list_bids_for_product, list_bids_for_user, list_products
from exceptions import (
    AuctionClosed, BidBelowIncrement, BidConflict, BidTooLow, InvalidAutoBid,
    InvalidTransition, NotFound, SelfBid,
)
from lifecycle import AuctionStatus, advance_status, derive_status, effective_status
from models import Bid, Product, utcnow


@pytest.fixture
def seller(make_user):
    return make_user("seller", is_seller=True)


@pytest.fixture
def buyer(make_user):
    return make_user("buyer")


def bid_count(db):
    return db.query(Bid).count()


# Status derivation
def test_derive_status_half_open_window():
    start = NOW
    end = NOW + timedelta(hours=1)
    assert derive_status(start - timedelta(seconds=1), start, end) is AuctionStatus.UPCOMING
    assert derive_status(start, start, end) is AuctionStatus.ACTIVE
    assert derive_status(end - timedelta(microseconds=1), start, end) is AuctionStatus.ACTIVE
    assert derive_status(end, start, end) is AuctionStatus.ENDED
    assert derive_status(end + timedelta(days=3), start, end) is AuctionStatus.ENDED


def test_sold_overrides_clock(seller, make_product):
    product = make_product(seller, is_sold=True, status="sold")
    assert effective_status(product, NOW) is AuctionStatus.SOLD


def test_live_status_follows_clock_and_sold_flag(seller, make_product):
    now = utcnow()
    finished = make_product(seller, start=now - timedelta(days=2), end=now - timedelta(days=1), status="active")
    assert finished.live_status == "ended"
    finished.is_sold = True
    assert finished.live_status == "sold"

    upcoming = make_product(seller, start=now + timedelta(days=1), end=now + timedelta(days=2))
    assert upcoming.live_status == "upcoming"


def test_advance_status_never_goes_back(seller, make_product):
    product = make_product(seller, status="ended")
    assert advance_status(product, AuctionStatus.ACTIVE) is False
    assert product.status == "ended"
    assert advance_status(product, AuctionStatus.SOLD) is True
    assert product.status == "sold"


# Bid validation and application
def test_bid_below_increment_then_accepted(db, seller, buyer, make_product):
    product = make_product(seller, current_price="250", increment="10")

    with pytest.raises(BidBelowIncrement) as exc_info:
        place_bid(db, product.id, buyer.id, "255", now=NOW)
    assert exc_info.value.minimum_amount == Decimal("260")
    assert bid_count(db) == 0

    bid, updated = place_bid(db, product.id, buyer.id, "260", now=NOW)
    assert bid.amount == Decimal("260")
    assert bid.created_at == NOW
    assert updated.current_price == Decimal("260")
    assert updated.bid_count == 1


def test_early_bid_on_upcoming_auction(db, seller, buyer, make_product):
    start = NOW + timedelta(days=1)
    product = make_product(seller, current_price="100", increment="5", start=start, status="upcoming")

    _, updated = place_bid(db, product.id, buyer.id, "105", now=NOW)
    assert updated.status == "upcoming"
    assert updated.bid_count == 1

    # the next bid after the start date corrects the stored status
    _, updated = place_bid(db, product.id, buyer.id, "110", now=start)
    assert updated.status == "active"


def test_stale_stored_status_is_corrected_by_bid(db, seller, buyer, make_product):
    product = make_product(seller, status="upcoming")
    _, updated = place_bid(db, product.id, buyer.id, "260", now=NOW)
    assert updated.status == "active"


def test_bid_on_ended_auction_is_rejected(db, seller, buyer, make_product):
    product = make_product(seller, start=NOW - timedelta(days=7), end=NOW - timedelta(minutes=1))

    with pytest.raises(AuctionClosed):
        place_bid(db, product.id, buyer.id, "1000", now=NOW)

    db.refresh(product)
    assert product.current_price == Decimal("250")
    assert product.bid_count == 0
    assert bid_count(db) == 0


def test_bid_at_end_date_is_rejected(db, seller, buyer, make_product):
    product = make_product(seller, end=NOW)
    with pytest.raises(AuctionClosed):
        place_bid(db, product.id, buyer.id, "260", now=NOW)


def test_bid_on_sold_auction_is_rejected(db, seller, buyer, make_product):
    product = make_product(seller, is_sold=True, status="sold")
    with pytest.raises(AuctionClosed):
        place_bid(db, product.id, buyer.id, "260", now=NOW)


def test_equal_sequential_bids(db, seller, make_user, make_product):
    first = make_user("first")
    second = make_user("second")
    product = make_product(seller, current_price="290", increment="10")

    place_bid(db, product.id, first.id, "300", now=NOW)
    with pytest.raises(BidTooLow) as exc_info:
        place_bid(db, product.id, second.id, "300", now=NOW + timedelta(seconds=1))
    assert exc_info.value.minimum_amount == Decimal("310")

    db.refresh(product)
    assert product.current_price == Decimal("300")
    assert product.bid_count == 1


def test_missing_auction(db, buyer):
    with pytest.raises(NotFound):
        place_bid(db, 404, buyer.id, "10", now=NOW)


def test_seller_cannot_bid_on_own_auction(db, seller, make_product):
    product = make_product(seller)
    with pytest.raises(SelfBid):
        place_bid(db, product.id, seller.id, "500", now=NOW)
    assert bid_count(db) == 0


def test_closed_check_runs_before_self_bid_check(db, seller, make_product):
    product = make_product(seller, end=NOW - timedelta(hours=1))
    with pytest.raises(AuctionClosed):
        place_bid(db, product.id, seller.id, "1", now=NOW)


def test_self_bid_check_runs_before_amount_checks(db, seller, make_product):
    product = make_product(seller)
    with pytest.raises(SelfBid):
        place_bid(db, product.id, seller.id, "1", now=NOW)


@pytest.mark.parametrize("max_amount", [None, "260", "200"])
def test_auto_bid_needs_a_higher_ceiling(db, seller, buyer, make_product, max_amount):
    product = make_product(seller)
    with pytest.raises(InvalidAutoBid):
        place_bid(db, product.id, buyer.id, "260", is_auto_bid=True, max_amount=max_amount, now=NOW)
    db.refresh(product)
    assert product.bid_count == 0
    assert bid_count(db) == 0


def test_auto_bid_is_recorded(db, seller, buyer, make_product):
    product = make_product(seller)
    bid, _ = place_bid(
        db, product.id, buyer.id, "260", is_auto_bid=True, max_amount="400", notes="up to 400", now=NOW
    )
    assert bid.is_auto_bid is True
    assert bid.max_amount == Decimal("400")
    assert bid.notes == "up to 400"


def test_max_amount_without_auto_bid_is_ignored(db, seller, buyer, make_product):
    product = make_product(seller)
    bid, _ = place_bid(db, product.id, buyer.id, "260", max_amount="400", now=NOW)
    assert bid.is_auto_bid is False
    assert bid.max_amount is None


def test_price_is_monotonic_and_count_matches(db, seller, make_user, make_product):
    bidders = [make_user(f"bidder{i}") for i in range(3)]
    product = make_product(seller, current_price="100", increment="5")
    amounts = ["105", "110", "125.50", "131", "200"]

    previous = Decimal("100")
    for i, amount in enumerate(amounts):
        _, updated = place_bid(db, product.id, bidders[i % 3].id, amount, now=NOW + timedelta(seconds=i))
        assert updated.current_price >= previous
        assert updated.current_price == Decimal(amount)
        previous = updated.current_price

    assert product.bid_count == len(amounts)
    assert bid_count(db) == len(amounts)


def test_floats_are_compared_as_decimals(db, seller, buyer, make_product):
    product = make_product(seller, current_price="0.10", increment="0.20")
    _, updated = place_bid(db, product.id, buyer.id, 0.3, now=NOW)
    assert updated.current_price == Decimal("0.30")


def test_rule_lookup_by_auction_type():
    for auction_type in ("traditional", "reverse", "sealed"):
        assert isinstance(rule_for(auction_type), TraditionalRule)
    with pytest.raises(ValueError):
        rule_for("dutch")


# Serialisation
def test_lock_entries_are_dropped_after_release():
    with auction_locks(1):
        with auction_locks(2):
            assert len(auction_locks) == 2
        assert len(auction_locks) == 1
    assert len(auction_locks) == 0


def test_same_auction_shares_one_lock():
    holding = threading.Event()
    release = threading.Event()
    acquired = []

    def hold():
        with auction_locks(7):
            holding.set()
            release.wait(5)

    def contend():
        with auction_locks(7):
            acquired.append(True)

    holder = threading.Thread(target=hold)
    holder.start()
    holding.wait(5)
    contender = threading.Thread(target=contend)
    contender.start()
    contender.join(0.2)
    assert acquired == []
    assert len(auction_locks) == 1

    release.set()
    holder.join(5)
    contender.join(5)
    assert acquired == [True]
    assert len(auction_locks) == 0


def test_bid_leaves_no_lock_behind(db, seller, buyer, make_product):
    product = make_product(seller)
    place_bid(db, product.id, buyer.id, "260", now=NOW)
    with pytest.raises(BidTooLow):
        place_bid(db, product.id, buyer.id, "260", now=NOW)
    assert len(auction_locks) == 0


def test_bid_is_retried_after_version_conflict(db, seller, buyer, make_product, monkeypatch):
    product = make_product(seller)
    real_apply = auction._apply_bid
    calls = []

    def flaky_apply(*args):
        calls.append(args)
        if len(calls) == 1:
            raise StaleDataError("row changed")
        return real_apply(*args)

    monkeypatch.setattr(auction, "_apply_bid", flaky_apply)
    _, updated = place_bid(db, product.id, buyer.id, "260", now=NOW)
    assert len(calls) == 2
    assert updated.bid_count == 1


def test_bid_gives_up_after_repeated_conflicts(db, seller, buyer, make_product, monkeypatch):
    product = make_product(seller)

    def always_stale(*args):
        raise StaleDataError("row changed")

    monkeypatch.setattr(auction, "_apply_bid", always_stale)
    monkeypatch.setattr(config, "BID_RETRY_ATTEMPTS", 2)
    with pytest.raises(BidConflict):
        place_bid(db, product.id, buyer.id, "260", now=NOW)


def test_bid_bumps_version(db, seller, buyer, make_product):
    product = make_product(seller)
    version = product.version
    place_bid(db, product.id, buyer.id, "260", now=NOW)
    assert product.version == version + 1


# Queries
def test_bids_for_auction_leading_first(db, seller, buyer, make_product):
    product = make_product(seller)
    for amount, minute in (("100", 1), ("150", 2), ("150", 3)):
        db.add(Bid(product_id=product.id, user_id=buyer.id, amount=Decimal(amount),
                   created_at=NOW + timedelta(minutes=minute)))
    db.commit()

    bids = list_bids_for_product(db, product.id)
    assert [(b.amount, b.created_at.minute) for b in bids] == [
        (Decimal("150"), 2), (Decimal("150"), 3), (Decimal("100"), 1),
    ]


def test_bids_for_user_newest_first(db, seller, buyer, make_product):
    first = make_product(seller, title="first")
    second = make_product(seller, title="second")
    place_bid(db, first.id, buyer.id, "260", now=NOW)
    place_bid(db, second.id, buyer.id, "300", now=NOW + timedelta(minutes=5))
    place_bid(db, first.id, buyer.id, "270", now=NOW + timedelta(minutes=10))

    bids = list_bids_for_user(db, buyer.id)
    assert [b.amount for b in bids] == [Decimal("270"), Decimal("300"), Decimal("260")]


def test_filter_products_by_status_and_seller(db, make_user, make_product):
    alice = make_user("alice", is_seller=True)
    bob = make_user("bob", is_seller=True)
    upcoming = make_product(alice, start=NOW + timedelta(days=1), status="upcoming")
    active = make_product(alice)
    ended = make_product(bob, end=NOW - timedelta(hours=1))
    sold = make_product(bob, end=NOW - timedelta(hours=1), is_sold=True, status="sold")

    def ids(**filters):
        return [p.id for p in list_products(db, now=NOW, **filters)]

    assert ids(status=AuctionStatus.UPCOMING) == [upcoming.id]
    assert ids(status=AuctionStatus.ACTIVE) == [active.id]
    assert ids(status=AuctionStatus.ENDED) == [ended.id]
    assert ids(status=AuctionStatus.SOLD) == [sold.id]
    assert sorted(ids(seller_id=alice.id)) == sorted([upcoming.id, active.id])
    assert ids(seller_id=bob.id, status=AuctionStatus.ENDED) == [ended.id]
    assert ids(seller_id=alice.id, status=AuctionStatus.ENDED) == []


# Sweep and sold transition
def test_sweep_advances_stored_status(db, seller, make_product):
    started = make_product(seller, start=NOW - timedelta(hours=1), status="upcoming")
    finished = make_product(seller, end=NOW - timedelta(hours=1), status="active")
    untouched = make_product(seller, start=NOW + timedelta(hours=1), status="upcoming")

    assert sweep_statuses(db, now=NOW) == 2
    assert db.get(Product, started.id).status == "active"
    assert db.get(Product, finished.id).status == "ended"
    assert db.get(Product, untouched.id).status == "upcoming"
    assert sweep_statuses(db, now=NOW) == 0


def test_sweep_skips_rows_changed_concurrently(db, seller, make_product, monkeypatch):
    started = make_product(seller, start=NOW - timedelta(hours=1), status="upcoming")
    finished = make_product(seller, end=NOW - timedelta(hours=1), status="active")
    real_commit = db.commit
    calls = []

    def flaky_commit():
        calls.append(1)
        if len(calls) == 1:
            raise StaleDataError("row changed")
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)
    assert sweep_statuses(db, now=NOW) == 1
    assert db.get(Product, started.id, populate_existing=True).status == "upcoming"
    assert db.get(Product, finished.id, populate_existing=True).status == "ended"
    assert len(auction_locks) == 0

    assert sweep_statuses(db, now=NOW) == 1
    assert db.get(Product, started.id, populate_existing=True).status == "active"


def test_mark_sold_requires_ended_auction_with_bids(db, seller, buyer, make_product):
    product = make_product(seller, end=NOW + timedelta(hours=1))
    with pytest.raises(InvalidTransition):
        mark_sold(db, product.id, now=NOW)

    later = NOW + timedelta(hours=2)
    with pytest.raises(InvalidTransition):
        mark_sold(db, product.id, now=later)

    place_bid(db, product.id, buyer.id, "260", now=NOW)
    sold = mark_sold(db, product.id, now=later)
    assert sold.is_sold is True
    assert sold.status == "sold"
    assert effective_status(sold, later) is AuctionStatus.SOLD

    with pytest.raises(InvalidTransition):
        mark_sold(db, product.id, now=later)


def test_mark_sold_missing_auction(db):
    with pytest.raises(NotFound):
        mark_sold(db, 12345, now=NOW)
