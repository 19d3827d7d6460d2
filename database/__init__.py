from .models import (
    Auction, Bid, AutoBid, Stream, QueueItem,
    AuctionStatus, AuctionMode, BidStatus, BidSource, IncrementStrategy, StreamStatus, QueueItemStatus,
    TERMINAL_AUCTION_STATUSES,
)
from .session import build_engine, init_db, get_db, SessionLocal

__all__ = [
    "Auction", "Bid", "AutoBid", "Stream", "QueueItem",
    "AuctionStatus", "AuctionMode", "BidStatus", "BidSource", "IncrementStrategy", "StreamStatus", "QueueItemStatus",
    "TERMINAL_AUCTION_STATUSES", "build_engine", "init_db", "get_db", "SessionLocal",
]
