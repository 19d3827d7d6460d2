"""
Bid acceptance.

A bid is validated against a snapshot of the auction and committed with a
conditional UPDATE keyed on the snapshot's version. Two bids racing on the
same auction therefore cannot both win: the loser sees zero rows updated,
is recorded as rejected, and the caller learns it was superseded.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import Auction, Bid, AuctionStatus, AuctionMode, BidStatus, BidSource
from .autobid import AutoBidEngine, deactivate_rules
from .config import AuctionRules
from .errors import RejectionReason, NotFound, PersistenceUnavailable, describe
from .events import EventBus, EventType, AuctionEvent

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(CENT)
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value}") from e
    if amount <= 0:
        raise ValueError("Amount must be positive")
    return amount


@dataclass
class BidOutcome:
    """Result of a bid submission, including the standing after any proxy cascade."""

    accepted: bool
    auction_id: int
    bidder_id: str
    amount: Decimal
    bid_id: Optional[int] = None
    reason: Optional[RejectionReason] = None
    extended: bool = False
    sold_via_buyout: bool = False
    ends_at: Optional[datetime] = None
    high_bid: Optional[Decimal] = None
    high_bidder_id: Optional[str] = None
    bid_count: int = 0
    status: Optional[str] = None
    auto_bids_placed: int = 0

    @property
    def message(self) -> Optional[str]:
        return describe(self.reason) if self.reason else None

    def update_standing(self, auction: Auction):
        self.high_bid = auction.current_bid
        self.high_bidder_id = auction.current_bidder_id
        self.bid_count = auction.bid_count
        self.ends_at = auction.ends_at
        self.status = auction.status


class BidAcceptor:
    """Validates and commits bids; the only writer of an auction's standing bid."""

    def __init__(self, rules: Optional[AuctionRules] = None, events: Optional[EventBus] = None):
        self.rules = rules or AuctionRules.from_env()
        self.events = events or EventBus()
        self.auto_bids = AutoBidEngine(self, self.rules)

    def submit_bid(self, db: Session, auction_id: int, bidder_id: str, amount,
                   source: BidSource = BidSource.MANUAL) -> BidOutcome:
        """
        Submit a bid and, for accepted manual bids, run the proxy cascade.

        Every attempt, accepted or rejected, lands in the ledger.

        Raises:
            NotFound: auction does not exist
            ValueError: amount is not a positive decimal
            PersistenceUnavailable: the store failed; the bid was not accepted
        """
        amount = to_money(amount)
        try:
            outcome = self._place(db, auction_id, bidder_id, amount, source)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record bid by {bidder_id} on auction {auction_id}: {e}")
            raise PersistenceUnavailable("Bid could not be recorded") from e

        if outcome.accepted and source == BidSource.MANUAL and not outcome.sold_via_buyout:
            outcome.auto_bids_placed = self.auto_bids.process_auto_bids(db, auction_id, bidder_id, amount)
            if outcome.auto_bids_placed:
                try:
                    auction = db.query(Auction).filter(Auction.id == auction_id).first()
                    outcome.update_standing(auction)
                except SQLAlchemyError as e:
                    # The bid itself is committed; report the pre-cascade standing
                    db.rollback()
                    logger.warning(f"Could not reload auction {auction_id} after auto-bids: {e}")
        return outcome

    def _place(self, db: Session, auction_id: int, bidder_id: str, amount: Decimal, source: BidSource) -> BidOutcome:
        auction = db.query(Auction).filter(Auction.id == auction_id).first()
        if not auction:
            raise NotFound("Auction", auction_id)

        now = datetime.utcnow()
        reason = self.validate(auction, bidder_id, amount, now)
        if reason is not None:
            return self._reject(db, auction, bidder_id, amount, source, reason)

        if self.is_buyout(auction, amount):
            return self._commit_buyout(db, auction, bidder_id, amount, source)
        return self._commit_bid(db, auction, bidder_id, amount, source)

    def validate(self, auction: Auction, bidder_id: str, amount: Decimal, now: datetime) -> Optional[RejectionReason]:
        """First failing rule wins; None when the bid may be committed."""
        if auction.status != AuctionStatus.ACTIVE.value or auction.ends_at is None or now >= auction.ends_at:
            return RejectionReason.AUCTION_NOT_ACTIVE
        if amount < Decimal(auction.current_bid) + Decimal(auction.min_increment):
            return RejectionReason.BID_TOO_LOW
        if auction.current_bidder_id == bidder_id:
            return RejectionReason.ALREADY_HIGH_BIDDER
        if auction.seller_id == bidder_id:
            return RejectionReason.SELLER_CANNOT_BID
        return None

    @staticmethod
    def is_buyout(auction: Auction, amount: Decimal) -> bool:
        if auction.buyout_price is None:
            return False
        return amount >= Decimal(auction.buyout_price)

    @staticmethod
    def buyout_sale_price(auction: Auction, amount: Decimal) -> Decimal:
        """The buyout price, or the bid itself once the standing bid has climbed within an increment of it."""
        buyout = Decimal(auction.buyout_price)
        if buyout >= Decimal(auction.current_bid) + Decimal(auction.min_increment):
            return buyout
        return amount

    def should_extend(self, auction: Auction, commit_time: datetime) -> bool:
        if auction.mode != AuctionMode.STANDARD.value:
            return False
        if auction.timer_extensions >= auction.max_timer_extensions:
            return False
        remaining = auction.ends_at - commit_time
        return remaining < timedelta(seconds=self.rules.anti_snipe_window_seconds)

    def _cas_update(self, db: Session, auction: Auction, commit_time: datetime, values: dict) -> int:
        return db.query(Auction).filter(
            Auction.id == auction.id,
            Auction.version == auction.version,
            Auction.status == AuctionStatus.ACTIVE.value,
            Auction.ends_at > commit_time
        ).update(values, synchronize_session=False)

    def _commit_bid(self, db: Session, auction: Auction, bidder_id: str, amount: Decimal, source: BidSource) -> BidOutcome:
        commit_time = datetime.utcnow()
        values = {
            "current_bid": amount,
            "current_bidder_id": bidder_id,
            "bid_count": Auction.bid_count + 1,
            "version": Auction.version + 1,
            "updated_at": commit_time,
        }
        if auction.reserve_price is None or amount >= Decimal(auction.reserve_price):
            values["reserve_met"] = True

        extended = self.should_extend(auction, commit_time)
        if extended:
            values["ends_at"] = auction.ends_at + timedelta(seconds=self.rules.extension_seconds)
            values["timer_extensions"] = Auction.timer_extensions + 1
            if auction.original_ends_at is None:
                values["original_ends_at"] = auction.ends_at

        auction_id = auction.id
        if self._cas_update(db, auction, commit_time, values) == 0:
            db.rollback()
            return self._reject_after_conflict(db, auction_id, bidder_id, amount, source, commit_time)

        bid = Bid(
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            status=BidStatus.ACCEPTED.value,
            source=source.value,
            extended=extended,
            submitted_at=commit_time
        )
        db.add(bid)
        db.commit()
        db.refresh(auction)

        outcome = BidOutcome(
            accepted=True, auction_id=auction_id, bidder_id=bidder_id, amount=amount,
            bid_id=bid.id, extended=extended
        )
        outcome.update_standing(auction)
        logger.info(
            f"Bid {bid.id} accepted on auction {auction_id}: {amount} by {bidder_id} ({source.value})"
            + (f", clock extended to {auction.ends_at}" if extended else "")
        )

        self.events.publish(db, AuctionEvent.from_auction(EventType.BID_ACCEPTED, auction))
        if extended:
            self.events.publish(db, AuctionEvent.from_auction(EventType.AUCTION_EXTENDED, auction))
        return outcome

    def _commit_buyout(self, db: Session, auction: Auction, bidder_id: str, amount: Decimal,
                       source: BidSource) -> BidOutcome:
        commit_time = datetime.utcnow()
        price = self.buyout_sale_price(auction, amount)
        values = {
            "status": AuctionStatus.SOLD_VIA_BUYOUT.value,
            "current_bid": price,
            "current_bidder_id": bidder_id,
            "bid_count": Auction.bid_count + 1,
            "version": Auction.version + 1,
            "reserve_met": True,
            "ended_at": commit_time,
            "close_reason": "buyout",
            "updated_at": commit_time,
        }
        auction_id = auction.id
        if self._cas_update(db, auction, commit_time, values) == 0:
            db.rollback()
            return self._reject_after_conflict(db, auction_id, bidder_id, price, source, commit_time)

        bid = Bid(
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=price,
            status=BidStatus.ACCEPTED.value,
            source=source.value,
            is_buyout=True,
            submitted_at=commit_time
        )
        db.add(bid)
        deactivate_rules(db, auction_id, RejectionReason.AUCTION_ENDED)
        db.commit()
        db.refresh(auction)

        outcome = BidOutcome(
            accepted=True, auction_id=auction_id, bidder_id=bidder_id, amount=price,
            bid_id=bid.id, sold_via_buyout=True
        )
        outcome.update_standing(auction)
        logger.info(f"Auction {auction_id} sold via buyout to {bidder_id} at {price}")

        self.events.publish(db, AuctionEvent.from_auction(EventType.BID_ACCEPTED, auction))
        self.events.publish(db, AuctionEvent.from_auction(EventType.AUCTION_SOLD, auction))
        return outcome

    def _reject_after_conflict(self, db: Session, auction_id: int, bidder_id: str, amount: Decimal,
                               source: BidSource, commit_time: datetime) -> BidOutcome:
        """The conditional update matched nothing: classify against fresh state."""
        fresh = db.query(Auction).filter(Auction.id == auction_id).first()
        if fresh.status != AuctionStatus.ACTIVE.value or fresh.ends_at is None or fresh.ends_at <= commit_time:
            reason = RejectionReason.AUCTION_NOT_ACTIVE
        else:
            reason = RejectionReason.BID_SUPERSEDED
        logger.info(f"Bid by {bidder_id} on auction {auction_id} lost a concurrent update ({reason.value})")
        return self._reject(db, fresh, bidder_id, amount, source, reason)

    def _reject(self, db: Session, auction: Auction, bidder_id: str, amount: Decimal,
                source: BidSource, reason: RejectionReason) -> BidOutcome:
        outcome = BidOutcome(accepted=False, auction_id=auction.id, bidder_id=bidder_id, amount=amount, reason=reason)
        outcome.update_standing(auction)

        bid = Bid(
            auction_id=auction.id,
            bidder_id=bidder_id,
            amount=amount,
            status=BidStatus.REJECTED.value,
            rejection_reason=reason.value,
            source=source.value,
            submitted_at=datetime.utcnow()
        )
        db.add(bid)
        db.commit()
        outcome.bid_id = bid.id
        logger.info(f"Bid by {bidder_id} on auction {auction.id} rejected: {reason.value}")
        return outcome
