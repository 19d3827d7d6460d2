import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

from database.models import Auction, Bid, Stream, BidStatus
from server.errors import RejectionReason, CommandRejected


def _run_in_threads(targets):
    threads = [threading.Thread(target=t) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert not any(t.is_alive() for t in threads)


def test_racing_bids_on_same_snapshot(session_factory, services, make_auction):
    """Two bids validated against the same standing bid: exactly one is accepted."""
    auction = make_auction(current_bid=Decimal("20.00"), min_increment=Decimal("5.00"))
    acceptor = services.bids
    original_validate = acceptor.validate
    barrier = threading.Barrier(2, timeout=10)

    def validate_then_wait(snapshot, bidder_id, amount, now):
        result = original_validate(snapshot, bidder_id, amount, now)
        barrier.wait()
        return result

    outcomes = {}
    errors = []

    def bid(bidder_id, amount):
        def run():
            db = session_factory()
            try:
                outcomes[bidder_id] = acceptor.submit_bid(db, auction.id, bidder_id, amount)
            except Exception as e:
                errors.append(e)
            finally:
                db.close()
        return run

    with patch.object(acceptor, "validate", side_effect=validate_then_wait):
        _run_in_threads([bid("buyer-a", Decimal("25")), bid("buyer-b", Decimal("30"))])

    assert errors == []
    accepted = [o for o in outcomes.values() if o.accepted]
    rejected = [o for o in outcomes.values() if not o.accepted]
    assert len(accepted) == 1
    assert len(rejected) == 1
    assert rejected[0].reason == RejectionReason.BID_SUPERSEDED

    db = session_factory()
    try:
        fresh = db.query(Auction).filter(Auction.id == auction.id).one()
        assert fresh.current_bid == accepted[0].amount
        assert fresh.current_bidder_id == accepted[0].bidder_id
        assert fresh.bid_count == 1
        assert fresh.version == 2
        ledger = db.query(Bid).filter(Bid.auction_id == auction.id).all()
        assert sorted(b.status for b in ledger) == [BidStatus.ACCEPTED.value, BidStatus.REJECTED.value]
    finally:
        db.close()


def test_many_concurrent_bidders_keep_ledger_consistent(session_factory, services, make_auction):
    auction = make_auction(min_increment=Decimal("1.00"))
    errors = []

    def bidder(bidder_id, amounts):
        def run():
            db = session_factory()
            try:
                for amount in amounts:
                    services.bids.submit_bid(db, auction.id, bidder_id, amount)
            except Exception as e:
                errors.append(e)
            finally:
                db.close()
        return run

    _run_in_threads([
        bidder(f"buyer-{n}", [Decimal(11 + n + 4 * step) for step in range(5)])
        for n in range(4)
    ])
    assert errors == []

    db = session_factory()
    try:
        fresh = db.query(Auction).filter(Auction.id == auction.id).one()
        ledger = db.query(Bid).filter(Bid.auction_id == auction.id).order_by(Bid.id).all()
        accepted = [b for b in ledger if b.status == BidStatus.ACCEPTED.value]

        assert len(ledger) == 20
        assert accepted
        assert [b.amount for b in accepted] == sorted(b.amount for b in accepted)
        assert len({b.amount for b in accepted}) == len(accepted)
        assert fresh.current_bid == accepted[-1].amount
        assert fresh.current_bidder_id == accepted[-1].bidder_id
        assert fresh.bid_count == len(accepted)
        assert fresh.version == 1 + len(accepted)
        for previous, current in zip(accepted, accepted[1:]):
            assert current.bidder_id != previous.bidder_id
    finally:
        db.close()


def test_racing_stream_starts(session_factory, services, seller, live_stream, db_session):
    """Two items started at once: the stream's single slot goes to one of them."""
    for product_id in ("lamp", "chair"):
        services.queue.add_item(db_session, seller, live_stream.id, product_id, Decimal("10"))

    lifecycle = services.lifecycle
    original_build = lifecycle.build
    barrier = threading.Barrier(2, timeout=10)

    def wait_then_build(*args, **kwargs):
        barrier.wait()
        return original_build(*args, **kwargs)

    results = {}

    def start(product_id):
        def run():
            db = session_factory()
            try:
                results[product_id] = services.queue.start_auction(db, seller, live_stream.id, product_id).id
            except CommandRejected as e:
                results[product_id] = e.reason
            finally:
                db.close()
        return run

    with patch.object(lifecycle, "build", side_effect=wait_then_build):
        _run_in_threads([start("lamp"), start("chair")])

    winners = [v for v in results.values() if isinstance(v, int)]
    assert len(winners) == 1
    assert [v for v in results.values() if not isinstance(v, int)] == [RejectionReason.AUCTION_ALREADY_ACTIVE]

    db = session_factory()
    try:
        stream = db.query(Stream).filter(Stream.id == live_stream.id).one()
        assert stream.active_auction_id == winners[0]
        assert db.query(Auction).count() == 1
    finally:
        db.close()


def test_racing_standalone_creates_for_one_product(session_factory, services, seller):
    """Both creates pass the open-auction check; the index lets only one commit."""
    lifecycle = services.lifecycle
    original_build = lifecycle.build
    barrier = threading.Barrier(2, timeout=10)

    def build_then_wait(*args, **kwargs):
        auction = original_build(*args, **kwargs)
        barrier.wait()
        return auction

    results = []

    def create(starting_bid):
        def run():
            db = session_factory()
            try:
                results.append(lifecycle.create(db, seller, "sku-1", starting_bid).id)
            except CommandRejected as e:
                results.append(e.reason)
            finally:
                db.close()
        return run

    with patch.object(lifecycle, "build", side_effect=build_then_wait):
        _run_in_threads([create(Decimal("25")), create(Decimal("30"))])

    assert len([r for r in results if isinstance(r, int)]) == 1
    assert [r for r in results if not isinstance(r, int)] == [RejectionReason.AUCTION_ALREADY_ACTIVE]

    db = session_factory()
    try:
        assert db.query(Auction).filter(Auction.product_id == "sku-1").count() == 1
    finally:
        db.close()
