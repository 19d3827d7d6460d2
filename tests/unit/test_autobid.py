import pytest
from unittest.mock import patch
from datetime import datetime, timedelta
from decimal import Decimal

from database.models import AutoBid, Bid, AuctionStatus, BidSource, BidStatus, IncrementStrategy
from server.config import AuctionRules
from server.errors import RejectionReason, CommandRejected, NotFound, PermissionDenied, PersistenceUnavailable
from server.events import EventBus
from server.identity import Actor
from server.services import build_services

SELLER_ID = "seller-1"
T0 = datetime(2026, 1, 1, 9, 0, 0)


@pytest.fixture
def auction(make_auction):
    return make_auction(starting_bid=Decimal("10.00"), min_increment=Decimal("5.00"))


@pytest.fixture
def add_rule(db_session):
    """Insert a proxy rule directly so setup does not trigger a cascade."""
    def _add(auction_id, bidder_id, ceiling, order=0, **extra):
        rule = AutoBid(
            auction_id=auction_id,
            bidder_id=bidder_id,
            ceiling=Decimal(str(ceiling)),
            created_at=T0 + timedelta(seconds=order),
            **extra
        )
        db_session.add(rule)
        db_session.commit()
        db_session.refresh(rule)
        return rule
    return _add


def _rule(db_session, rule_id):
    db_session.expire_all()
    return db_session.query(AutoBid).filter(AutoBid.id == rule_id).first()


def _ledger(db_session, auction_id):
    return [
        (b.bidder_id, b.amount, b.source, b.status)
        for b in db_session.query(Bid).filter(Bid.auction_id == auction_id).order_by(Bid.id)
    ]


class TestCascade:
    def test_converges_to_second_highest_plus_increment(self, db_session, services, auction, add_rule):
        x = add_rule(auction.id, "x", 30, order=0)
        y = add_rule(auction.id, "y", 50, order=1)
        z = add_rule(auction.id, "z", 100, order=2)

        outcome = services.bids.submit_bid(db_session, auction.id, "human", "20")

        assert outcome.accepted is True
        assert outcome.auto_bids_placed == 1
        assert outcome.high_bid == Decimal("55.00")
        assert outcome.high_bidder_id == "z"

        for rule in (x, y):
            stale = _rule(db_session, rule.id)
            assert stale.is_active is False
            assert stale.deactivation_reason == RejectionReason.CEILING_EXCEEDED.value
        winner = _rule(db_session, z.id)
        assert winner.is_active is True
        assert winner.current_proxy_bid == Decimal("55.00")

        assert _ledger(db_session, auction.id) == [
            ("human", Decimal("20.00"), BidSource.MANUAL.value, BidStatus.ACCEPTED.value),
            ("z", Decimal("55.00"), BidSource.AUTO.value, BidStatus.ACCEPTED.value),
        ]

    def test_equal_ceilings_earliest_rule_wins(self, db_session, services, auction, add_rule):
        first = add_rule(auction.id, "x", 50, order=0)
        second = add_rule(auction.id, "y", 50, order=1)

        outcome = services.bids.submit_bid(db_session, auction.id, "human", "20")

        assert outcome.high_bid == Decimal("50.00")
        assert outcome.high_bidder_id == "x"
        assert _rule(db_session, first.id).is_active is True
        loser = _rule(db_session, second.id)
        assert loser.is_active is False
        assert loser.deactivation_reason == RejectionReason.OUTBID_BY_EQUAL_CEILING.value

    def test_rival_rule_outbids_weaker_rule(self, db_session, services, auction, add_rule):
        holder_rule = add_rule(auction.id, "holder", 80, order=0)
        add_rule(auction.id, "rival", 100, order=1)

        outcome = services.bids.submit_bid(db_session, auction.id, "holder", "20")

        assert outcome.high_bid == Decimal("85.00")
        assert outcome.high_bidder_id == "rival"
        beaten = _rule(db_session, holder_rule.id)
        assert beaten.is_active is False
        assert beaten.deactivation_reason == RejectionReason.CEILING_EXCEEDED.value

    def test_holder_rule_defends_equal_ceiling(self, db_session, services, auction, add_rule):
        add_rule(auction.id, "holder", 100, order=0)
        rival = add_rule(auction.id, "rival", 100, order=1)

        outcome = services.bids.submit_bid(db_session, auction.id, "holder", "20")

        assert outcome.high_bid == Decimal("100.00")
        assert outcome.high_bidder_id == "holder"
        assert outcome.auto_bids_placed == 2
        assert _rule(db_session, rival.id).deactivation_reason == RejectionReason.OUTBID_BY_EQUAL_CEILING.value
        assert [(bidder, amount) for bidder, amount, _, _ in _ledger(db_session, auction.id)] == [
            ("holder", Decimal("20.00")),
            ("rival", Decimal("95.00")),
            ("holder", Decimal("100.00")),
        ]

    def test_holder_rule_does_not_bid_against_itself(self, db_session, services, auction, add_rule):
        add_rule(auction.id, "holder", 100, order=0)

        outcome = services.bids.submit_bid(db_session, auction.id, "holder", "20")

        assert outcome.auto_bids_placed == 0
        assert outcome.high_bid == Decimal("20.00")

    def test_custom_increment_step(self, db_session, services, auction, add_rule):
        add_rule(auction.id, "proxy", 100, increment_strategy=IncrementStrategy.CUSTOM.value,
                 custom_increment=Decimal("7.00"))

        outcome = services.bids.submit_bid(db_session, auction.id, "human", "20")

        assert outcome.high_bid == Decimal("27.00")

    def test_rejected_proxy_bid_stops_cascade(self, db_session, services, auction, add_rule):
        add_rule(auction.id, SELLER_ID, 100)

        outcome = services.bids.submit_bid(db_session, auction.id, "human", "20")

        assert outcome.auto_bids_placed == 0
        assert outcome.high_bidder_id == "human"
        ledger = _ledger(db_session, auction.id)
        assert ledger[-1][0] == SELLER_ID
        assert ledger[-1][3] == BidStatus.REJECTED.value

    def test_proxy_bids_extend_the_clock(self, db_session, make_auction, add_rule):
        services = build_services(rules=AuctionRules(anti_snipe_window_seconds=600), events=EventBus())
        auction = make_auction(min_increment=Decimal("5.00"))
        add_rule(auction.id, "proxy", 100)

        services.bids.submit_bid(db_session, auction.id, "human", "20")

        proxy_bid = db_session.query(Bid).filter(Bid.bidder_id == "proxy").one()
        assert proxy_bid.extended is True
        db_session.refresh(auction)
        assert auction.timer_extensions == 2

    def test_persistence_error_stops_cascade_quietly(self, db_session, services, auction, add_rule):
        add_rule(auction.id, "proxy", 100)
        engine = services.auto_bids

        with patch.object(services.bids, "submit_bid", side_effect=PersistenceUnavailable("down")):
            placed = engine.process_auto_bids(db_session, auction.id, "human", Decimal("20"))

        assert placed == 0

    def test_step_limit(self, db_session, make_auction, add_rule):
        services = build_services(rules=AuctionRules(auto_bid_max_steps=1), events=EventBus())
        auction = make_auction(min_increment=Decimal("5.00"))
        add_rule(auction.id, "holder", 100, order=0)
        add_rule(auction.id, "rival", 100, order=1)

        outcome = services.bids.submit_bid(db_session, auction.id, "holder", "20")

        assert outcome.auto_bids_placed == 1
        assert outcome.high_bidder_id == "rival"


class TestConfigure:
    def test_configure_places_opening_proxy_bid(self, db_session, services, auction):
        services.bids.submit_bid(db_session, auction.id, "human", "20")

        rule = services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("50"))

        assert rule.is_active is True
        assert rule.current_proxy_bid == Decimal("25.00")
        db_session.refresh(auction)
        assert auction.current_bidder_id == "proxy"

    def test_configure_on_scheduled_auction_waits(self, db_session, services, make_auction):
        auction = make_auction(status=AuctionStatus.SCHEDULED.value, started_at=None, ends_at=None)

        rule = services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("50"))

        assert rule.current_proxy_bid is None
        assert db_session.query(Bid).count() == 0

    def test_reconfigure_keeps_priority(self, db_session, services, make_auction):
        auction = make_auction(status=AuctionStatus.SCHEDULED.value, started_at=None, ends_at=None)
        first = services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("50"))
        created_at = first.created_at

        updated = services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("75"))

        assert updated.id == first.id
        assert updated.created_at == created_at
        assert updated.ceiling == Decimal("75.00")
        assert db_session.query(AutoBid).count() == 1

    def test_reconfigure_reactivates_cancelled_rule(self, db_session, services, make_auction):
        auction = make_auction(status=AuctionStatus.SCHEDULED.value, started_at=None, ends_at=None)
        rule = services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("50"))
        services.auto_bids.cancel(db_session, Actor("proxy"), rule.id)

        rule = services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("60"))

        assert rule.is_active is True
        assert rule.deactivation_reason is None

    def test_ceiling_below_minimum(self, db_session, services, auction):
        with pytest.raises(CommandRejected) as exc_info:
            services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("12"))
        assert exc_info.value.reason == RejectionReason.BID_TOO_LOW

    def test_seller_cannot_configure(self, db_session, services, auction):
        with pytest.raises(CommandRejected) as exc_info:
            services.auto_bids.configure(db_session, Actor(SELLER_ID), auction.id, Decimal("50"))
        assert exc_info.value.reason == RejectionReason.SELLER_CANNOT_BID

    def test_closed_auction(self, db_session, services, make_auction):
        auction = make_auction(status=AuctionStatus.SOLD.value)
        with pytest.raises(CommandRejected) as exc_info:
            services.auto_bids.configure(db_session, Actor("proxy"), auction.id, Decimal("50"))
        assert exc_info.value.reason == RejectionReason.AUCTION_NOT_ACTIVE

    def test_custom_strategy_needs_increment(self, db_session, services, auction):
        with pytest.raises(ValueError):
            services.auto_bids.configure(
                db_session, Actor("proxy"), auction.id, Decimal("50"), IncrementStrategy.CUSTOM, None
            )

    def test_unknown_auction(self, db_session, services):
        with pytest.raises(NotFound):
            services.auto_bids.configure(db_session, Actor("proxy"), 404, Decimal("50"))


class TestCancel:
    def test_cancel_deactivates(self, db_session, services, auction, add_rule):
        rule = add_rule(auction.id, "proxy", 100)

        cancelled = services.auto_bids.cancel(db_session, Actor("proxy"), rule.id)

        assert cancelled.is_active is False
        assert cancelled.deactivation_reason == RejectionReason.CANCELLED_BY_BIDDER.value
        assert db_session.query(AutoBid).count() == 1

    def test_cancelled_rule_no_longer_bids(self, db_session, services, auction, add_rule):
        rule = add_rule(auction.id, "proxy", 100)
        services.auto_bids.cancel(db_session, Actor("proxy"), rule.id)

        outcome = services.bids.submit_bid(db_session, auction.id, "human", "20")

        assert outcome.auto_bids_placed == 0

    def test_cannot_cancel_someone_elses_rule(self, db_session, services, auction, add_rule):
        rule = add_rule(auction.id, "proxy", 100)
        with pytest.raises(PermissionDenied):
            services.auto_bids.cancel(db_session, Actor("intruder"), rule.id)

    def test_cancel_unknown_rule(self, db_session, services):
        with pytest.raises(NotFound):
            services.auto_bids.cancel(db_session, Actor("proxy"), 12345)


def test_rules_for_bidder(db_session, services, auction, make_auction, add_rule):
    other = make_auction(product_id="prod-2")
    add_rule(auction.id, "proxy", 100, order=0)
    add_rule(other.id, "proxy", 40, order=1)
    add_rule(other.id, "someone-else", 40, order=2)

    rules = services.auto_bids.rules_for_bidder(db_session, "proxy")

    assert [r.auction_id for r in rules] == [other.id, auction.id]
