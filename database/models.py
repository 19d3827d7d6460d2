from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Text, Boolean, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base, relationship
from enum import Enum

Base = declarative_base()


class AuctionStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ENDED = "ended"
    SOLD = "sold"
    SOLD_VIA_BUYOUT = "sold_via_buyout"
    PASSED = "passed"
    CANCELLED = "cancelled"


TERMINAL_AUCTION_STATUSES = (
    AuctionStatus.SOLD.value,
    AuctionStatus.SOLD_VIA_BUYOUT.value,
    AuctionStatus.PASSED.value,
    AuctionStatus.CANCELLED.value,
)

# Partial index predicate: at most one non-terminal auction per product
OPEN_AUCTION_CLAUSE = "status NOT IN (" + ", ".join(f"'{s}'" for s in TERMINAL_AUCTION_STATUSES) + ")"


class AuctionMode(str, Enum):
    STANDARD = "standard"
    SUDDEN_DEATH = "sudden_death"


class BidStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class BidSource(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class IncrementStrategy(str, Enum):
    MINIMUM = "minimum"
    CUSTOM = "custom"


class StreamStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"


class QueueItemStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    SOLD = "sold"
    PASSED = "passed"


class Stream(Base):
    __tablename__ = "streams"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    status = Column(String, nullable=False, default=StreamStatus.SCHEDULED.value, index=True)
    pinned_product_id = Column(String, nullable=True)
    # Plain column (no FK) to avoid a cycle with auctions.stream_id
    active_auction_id = Column(Integer, nullable=True)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    queue_items = relationship("QueueItem", back_populates="stream", order_by="QueueItem.display_order")


class Auction(Base):
    __tablename__ = "auctions"
    __table_args__ = (
        Index("uq_auctions_open_product", "product_id", unique=True,
              postgresql_where=text(OPEN_AUCTION_CLAUSE), sqlite_where=text(OPEN_AUCTION_CLAUSE)),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    stream_id = Column(Integer, ForeignKey("streams.id"), nullable=True, index=True)
    status = Column(String, nullable=False, default=AuctionStatus.SCHEDULED.value, index=True)
    mode = Column(String, nullable=False, default=AuctionMode.STANDARD.value)
    starting_bid = Column(Numeric(12, 2), nullable=False)
    current_bid = Column(Numeric(12, 2), nullable=False)
    current_bidder_id = Column(String, nullable=True)
    bid_count = Column(Integer, nullable=False, default=0)
    min_increment = Column(Numeric(12, 2), nullable=False)
    reserve_price = Column(Numeric(12, 2), nullable=True)
    buyout_price = Column(Numeric(12, 2), nullable=True)
    reserve_met = Column(Boolean, nullable=False, default=False)
    duration_seconds = Column(Integer, nullable=False)
    timer_extensions = Column(Integer, nullable=False, default=0)
    max_timer_extensions = Column(Integer, nullable=False, default=10)
    scheduled_start_utc = Column(DateTime, nullable=True, index=True)
    started_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True, index=True)
    original_ends_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    close_reason = Column(Text, nullable=True)
    # Compare-and-swap token, bumped on every accepted bid and transition
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    bids = relationship("Bid", back_populates="auction", order_by="Bid.id")
    auto_bids = relationship("AutoBid", back_populates="auction")


class Bid(Base):
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    bidder_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False)
    rejection_reason = Column(String, nullable=True)
    source = Column(String, nullable=False, default=BidSource.MANUAL.value)
    is_buyout = Column(Boolean, nullable=False, default=False)
    extended = Column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    auction = relationship("Auction", back_populates="bids")


class AutoBid(Base):
    __tablename__ = "auto_bids"
    __table_args__ = (UniqueConstraint("auction_id", "bidder_id", name="uq_auto_bids_auction_bidder"),)

    id = Column(Integer, primary_key=True, index=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    bidder_id = Column(String, nullable=False, index=True)
    ceiling = Column(Numeric(12, 2), nullable=False)
    increment_strategy = Column(String, nullable=False, default=IncrementStrategy.MINIMUM.value)
    custom_increment = Column(Numeric(12, 2), nullable=True)
    current_proxy_bid = Column(Numeric(12, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    deactivation_reason = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    auction = relationship("Auction", back_populates="auto_bids")


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (UniqueConstraint("stream_id", "product_id", name="uq_queue_items_stream_product"),)

    id = Column(Integer, primary_key=True, index=True)
    stream_id = Column(Integer, ForeignKey("streams.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=QueueItemStatus.UPCOMING.value, index=True)
    starting_bid = Column(Numeric(12, 2), nullable=False)
    min_increment = Column(Numeric(12, 2), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    mode = Column(String, nullable=False, default=AuctionMode.STANDARD.value)
    reserve_price = Column(Numeric(12, 2), nullable=True)
    buyout_price = Column(Numeric(12, 2), nullable=True)
    max_timer_extensions = Column(Integer, nullable=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=True)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    stream = relationship("Stream", back_populates="queue_items")
