"""
Auction state machine.

    scheduled -> active -> ended -> sold | passed
    active -> sold_via_buyout        (bid acceptor)
    scheduled | active(no bids) -> cancelled

Every transition is a conditional UPDATE on the expected source status, so
a transition racing with another (or with a bid) applies at most once.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import Auction, AuctionStatus, AuctionMode, TERMINAL_AUCTION_STATUSES
from .autobid import deactivate_rules
from .config import AuctionRules
from .errors import RejectionReason, CommandRejected, NotFound, PersistenceUnavailable
from .events import EventBus, EventType, AuctionEvent
from .identity import Actor, require_seller, require_owner

logger = logging.getLogger(__name__)

CLOSE_NO_BIDS = "NoBids"
CLOSE_RESERVE_NOT_MET = "ReserveNotMet"
CLOSE_TIME_EXPIRED = "time_expired"
CLOSE_ENDED_BY_SELLER = "ended_by_seller"


def settlement_for(auction: Auction) -> Tuple[AuctionStatus, Optional[str]]:
    """What settling the auction right now would produce: (status, close_reason)."""
    if not auction.bid_count or auction.current_bidder_id is None:
        return AuctionStatus.PASSED, CLOSE_NO_BIDS
    if auction.reserve_price is not None and Decimal(auction.current_bid) < Decimal(auction.reserve_price):
        return AuctionStatus.PASSED, CLOSE_RESERVE_NOT_MET
    return AuctionStatus.SOLD, None


class AuctionStateMachine:
    """Owns auction creation and every status transition except buyout."""

    def __init__(self, rules: Optional[AuctionRules] = None, events: Optional[EventBus] = None):
        self.rules = rules or AuctionRules.from_env()
        self.events = events or EventBus()

    def _get(self, db: Session, auction_id: int) -> Auction:
        auction = db.query(Auction).filter(Auction.id == auction_id).first()
        if not auction:
            raise NotFound("Auction", auction_id)
        return auction

    def build(self, db: Session, actor: Actor, product_id: str, starting_bid: Decimal,
              min_increment: Optional[Decimal] = None, duration_seconds: Optional[int] = None,
              mode: AuctionMode = AuctionMode.STANDARD, reserve_price: Optional[Decimal] = None,
              buyout_price: Optional[Decimal] = None, max_timer_extensions: Optional[int] = None,
              scheduled_start_utc: Optional[datetime] = None, stream_id: Optional[int] = None) -> Auction:
        """Validate and add a scheduled auction to the session without committing."""
        require_seller(actor)
        starting_bid = Decimal(starting_bid)
        if starting_bid <= 0:
            raise ValueError("starting_bid must be positive")
        min_increment = Decimal(min_increment) if min_increment is not None else self.rules.default_min_increment
        if min_increment <= 0:
            raise ValueError("min_increment must be positive")
        duration_seconds = duration_seconds or self.rules.default_duration_seconds
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        if reserve_price is not None and Decimal(reserve_price) <= 0:
            raise ValueError("reserve_price must be positive")
        if buyout_price is not None and Decimal(buyout_price) <= starting_bid:
            raise ValueError("buyout_price must be above starting_bid")
        if max_timer_extensions is None:
            max_timer_extensions = self.rules.max_timer_extensions

        # A product is auctioned by at most one live auction at a time; the
        # uq_auctions_open_product index catches creates racing past this check
        open_auction = db.query(Auction).filter(
            Auction.product_id == product_id,
            Auction.status.notin_(TERMINAL_AUCTION_STATUSES)
        ).first()
        if open_auction:
            raise CommandRejected(
                RejectionReason.AUCTION_ALREADY_ACTIVE,
                f"Product {product_id} already has auction {open_auction.id}"
            )

        auction = Auction(
            product_id=product_id,
            seller_id=actor.user_id,
            stream_id=stream_id,
            status=AuctionStatus.SCHEDULED.value,
            mode=AuctionMode(mode).value,
            starting_bid=starting_bid,
            current_bid=starting_bid,
            min_increment=min_increment,
            reserve_price=reserve_price,
            buyout_price=buyout_price,
            reserve_met=reserve_price is None,
            duration_seconds=duration_seconds,
            max_timer_extensions=max_timer_extensions,
            scheduled_start_utc=scheduled_start_utc,
            version=1,
        )
        db.add(auction)
        return auction

    def create(self, db: Session, actor: Actor, product_id: str, starting_bid: Decimal, **options) -> Auction:
        """Create a scheduled auction. Standalone auctions with scheduled_start_utc are started by the worker."""
        auction = self.build(db, actor, product_id, starting_bid, **options)
        try:
            db.commit()
            db.refresh(auction)
        except IntegrityError:
            db.rollback()
            logger.info(f"Concurrent create for product {product_id} lost to another open auction")
            raise CommandRejected(RejectionReason.AUCTION_ALREADY_ACTIVE, f"Product {product_id} already has an open auction")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to create auction for product {product_id}: {e}")
            raise PersistenceUnavailable("Auction could not be created") from e
        logger.info(f"Created auction {auction.id} for product {product_id} (seller {actor.user_id})")
        return auction

    def _transition(self, db: Session, auction_id: int, criteria, values: dict,
                    reason: RejectionReason = RejectionReason.INVALID_TRANSITION,
                    deactivate: bool = False) -> Auction:
        values.setdefault("version", Auction.version + 1)
        values.setdefault("updated_at", datetime.utcnow())
        try:
            rows = db.query(Auction).filter(Auction.id == auction_id, *criteria).update(
                values, synchronize_session=False
            )
            if rows == 0:
                db.rollback()
                raise CommandRejected(reason)
            if deactivate:
                deactivate_rules(db, auction_id, RejectionReason.AUCTION_ENDED)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Transition failed for auction {auction_id}: {e}")
            raise PersistenceUnavailable("Auction state could not be saved") from e
        return self._get(db, auction_id)

    def start(self, db: Session, auction_id: int, actor: Optional[Actor] = None) -> Auction:
        """scheduled -> active. The clock starts now. actor is None for the worker."""
        auction = self._get(db, auction_id)
        if actor is not None:
            require_owner(actor, auction.seller_id, "auction")
        now = datetime.utcnow()
        auction = self._transition(
            db, auction_id,
            [Auction.status == AuctionStatus.SCHEDULED.value],
            {
                "status": AuctionStatus.ACTIVE.value,
                "started_at": now,
                "ends_at": now + timedelta(seconds=auction.duration_seconds),
            },
            reason=RejectionReason.AUCTION_ALREADY_ACTIVE if auction.status == AuctionStatus.ACTIVE.value
            else RejectionReason.INVALID_TRANSITION
        )
        logger.info(f"Auction {auction_id} started, ends at {auction.ends_at}")
        self.events.publish(db, AuctionEvent.from_auction(EventType.AUCTION_STARTED, auction))
        return auction

    def end(self, db: Session, auction_id: int, actor: Optional[Actor] = None) -> Auction:
        """
        active -> ended.

        Without an actor this is the clock: it only applies once ends_at has
        passed, so a bid that extended the clock in the meantime wins.
        """
        auction = self._get(db, auction_id)
        now = datetime.utcnow()
        criteria = [Auction.status == AuctionStatus.ACTIVE.value]
        if actor is not None:
            require_owner(actor, auction.seller_id, "auction")
            close_reason = CLOSE_ENDED_BY_SELLER
        else:
            criteria.append(Auction.ends_at <= now)
            close_reason = CLOSE_TIME_EXPIRED

        auction = self._transition(
            db, auction_id, criteria,
            {"status": AuctionStatus.ENDED.value, "ended_at": now, "close_reason": close_reason},
            reason=RejectionReason.AUCTION_NOT_ACTIVE,
            deactivate=True
        )
        logger.info(f"Auction {auction_id} ended ({close_reason}) at {auction.current_bid}")
        self.events.publish(db, AuctionEvent.from_auction(EventType.AUCTION_ENDED, auction))
        return auction

    def settle(self, db: Session, auction_id: int) -> Auction:
        """ended -> sold when a bid meets the reserve, otherwise passed."""
        auction = self._get(db, auction_id)
        status, close_reason = settlement_for(auction)
        values = {"status": status.value}
        if close_reason:
            values["close_reason"] = close_reason
        else:
            values["reserve_met"] = True

        auction = self._transition(db, auction_id, [Auction.status == AuctionStatus.ENDED.value], values)
        if status == AuctionStatus.SOLD:
            logger.info(f"Auction {auction_id} sold to {auction.current_bidder_id} at {auction.current_bid}")
            event_type = EventType.AUCTION_SOLD
        else:
            logger.info(f"Auction {auction_id} passed ({close_reason})")
            event_type = EventType.AUCTION_PASSED
        self.events.publish(db, AuctionEvent.from_auction(event_type, auction))
        return auction

    def close(self, db: Session, auction_id: int, actor: Optional[Actor] = None) -> Auction:
        """End the auction if it is still running, then settle it."""
        auction = self._get(db, auction_id)
        if auction.status == AuctionStatus.ACTIVE.value:
            self.end(db, auction_id, actor)
        elif actor is not None:
            require_owner(actor, auction.seller_id, "auction")
        return self.settle(db, auction_id)

    def cancel(self, db: Session, auction_id: int, actor: Actor) -> Auction:
        """Cancel a scheduled auction, or an active one nobody has bid on."""
        auction = self._get(db, auction_id)
        require_owner(actor, auction.seller_id, "auction")
        auction = self._transition(
            db, auction_id,
            [or_(
                Auction.status == AuctionStatus.SCHEDULED.value,
                and_(Auction.status == AuctionStatus.ACTIVE.value, Auction.bid_count == 0)
            )],
            {"status": AuctionStatus.CANCELLED.value, "ended_at": datetime.utcnow(), "close_reason": "cancelled"},
            deactivate=True
        )
        logger.info(f"Auction {auction_id} cancelled by {actor.user_id}")
        self.events.publish(db, AuctionEvent.from_auction(EventType.AUCTION_CANCELLED, auction))
        return auction
