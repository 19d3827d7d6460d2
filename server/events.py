"""
In-process auction event feed.

State changes are published after they are committed. Subscribers run
synchronously with the publishing session (the stream/queue coordinator
relies on this); the bounded per-auction history backs the polling
endpoint that clients use to render countdowns and bid updates.
"""
import threading
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Deque, List, Optional

from sqlalchemy.orm import Session

from database import Auction
from .config import EVENT_HISTORY_SIZE, EVENT_HISTORY_AUCTIONS

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    AUCTION_STARTED = "auction_started"
    BID_ACCEPTED = "bid_accepted"
    AUCTION_EXTENDED = "auction_extended"
    AUCTION_ENDED = "auction_ended"
    AUCTION_SOLD = "auction_sold"
    AUCTION_PASSED = "auction_passed"
    AUCTION_CANCELLED = "auction_cancelled"
    ITEM_PINNED = "item_pinned"


@dataclass
class AuctionEvent:
    type: EventType
    auction_id: Optional[int]
    stream_id: Optional[int] = None
    product_id: Optional[str] = None
    status: Optional[str] = None
    mode: Optional[str] = None
    current_bid: Optional[Decimal] = None
    current_bidder_id: Optional[str] = None
    bid_count: int = 0
    ends_at: Optional[datetime] = None
    seq: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_auction(cls, event_type: EventType, auction: Auction) -> "AuctionEvent":
        return cls(
            type=event_type,
            auction_id=auction.id,
            stream_id=auction.stream_id,
            product_id=auction.product_id,
            status=auction.status,
            mode=auction.mode,
            current_bid=auction.current_bid,
            current_bidder_id=auction.current_bidder_id,
            bid_count=auction.bid_count,
            ends_at=auction.ends_at,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data


Subscriber = Callable[[Session, AuctionEvent], None]


class EventBus:
    """Fan-out of committed auction events to observers."""

    def __init__(self, history_size: int = EVENT_HISTORY_SIZE, max_auctions: int = EVENT_HISTORY_AUCTIONS):
        self._subscribers: List[Subscriber] = []
        # Least recently published first; closed auctions stop publishing and age out
        self._history: "OrderedDict[int, Deque[AuctionEvent]]" = OrderedDict()
        self._history_size = history_size
        self._max_auctions = max_auctions
        self._seq = 0
        self._lock = threading.Lock()  # Protects _seq, _history and _subscribers

    def subscribe(self, handler: Subscriber):
        with self._lock:
            self._subscribers.append(handler)

    def publish(self, db: Session, event: AuctionEvent) -> AuctionEvent:
        with self._lock:
            self._seq += 1
            event.seq = self._seq
            if event.auction_id is not None:
                self._history.setdefault(event.auction_id, deque(maxlen=self._history_size)).append(event)
                self._history.move_to_end(event.auction_id)
                while len(self._history) > self._max_auctions:
                    evicted, _ = self._history.popitem(last=False)
                    logger.debug(f"Dropped event history for auction {evicted}")
            subscribers = list(self._subscribers)

        logger.debug(f"Event {event.seq} {event.type.value} for auction {event.auction_id}")
        for handler in subscribers:
            try:
                handler(db, event)
            except Exception as e:
                # State is already committed at this point
                logger.error(f"Event handler failed for {event.type.value} on auction {event.auction_id}: {e}", exc_info=True)
                db.rollback()
        return event

    def recent(self, auction_id: int, since: int = 0) -> List[AuctionEvent]:
        """Events for an auction with a sequence number greater than `since`."""
        with self._lock:
            history = self._history.get(auction_id)
            if not history:
                return []
            return [e for e in history if e.seq > since]
