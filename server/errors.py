"""Rejection reasons and error types raised by the auction core."""
from enum import Enum
from typing import Optional


class RejectionReason(str, Enum):
    AUCTION_NOT_ACTIVE = "AuctionNotActive"
    BID_TOO_LOW = "BidTooLow"
    ALREADY_HIGH_BIDDER = "AlreadyHighBidder"
    BID_SUPERSEDED = "BidSuperseded"
    SELLER_CANNOT_BID = "SellerCannotBid"
    AUCTION_ALREADY_ACTIVE = "AuctionAlreadyActive"
    RESERVE_NOT_MET = "ReserveNotMet"
    AUCTION_HAS_WINNER = "AuctionHasWinner"
    INVALID_TRANSITION = "InvalidTransition"
    QUEUE_ITEM_NOT_AVAILABLE = "QueueItemNotAvailable"
    # Auto-bid deactivation reasons (informational)
    OUTBID_BY_EQUAL_CEILING = "OutbidByEqualCeiling"
    CEILING_EXCEEDED = "CeilingExceeded"
    AUCTION_ENDED = "AuctionEnded"
    CANCELLED_BY_BIDDER = "CancelledByBidder"


REJECTION_MESSAGES = {
    RejectionReason.AUCTION_NOT_ACTIVE: "This auction is not accepting bids right now.",
    RejectionReason.BID_TOO_LOW: "Your bid is below the minimum next bid.",
    RejectionReason.ALREADY_HIGH_BIDDER: "You are already the highest bidder.",
    RejectionReason.BID_SUPERSEDED: "Someone just outbid you. Try a higher amount.",
    RejectionReason.SELLER_CANNOT_BID: "Sellers cannot bid on their own auctions.",
    RejectionReason.AUCTION_ALREADY_ACTIVE: "Another auction is already running.",
    RejectionReason.RESERVE_NOT_MET: "The reserve price was not met.",
    RejectionReason.AUCTION_HAS_WINNER: "This item has a winning bid and cannot be passed.",
    RejectionReason.INVALID_TRANSITION: "The auction cannot move to that state.",
    RejectionReason.QUEUE_ITEM_NOT_AVAILABLE: "That item is not available in the queue.",
    RejectionReason.OUTBID_BY_EQUAL_CEILING: "An earlier auto-bid with the same maximum wins the tie.",
    RejectionReason.CEILING_EXCEEDED: "Bidding passed your auto-bid maximum.",
    RejectionReason.AUCTION_ENDED: "The auction has ended.",
    RejectionReason.CANCELLED_BY_BIDDER: "Auto-bid cancelled.",
}


def describe(reason: RejectionReason) -> str:
    return REJECTION_MESSAGES.get(reason, reason.value)


class AuctionError(Exception):
    """Base class for errors surfaced by the auction core."""


class NotFound(AuctionError, LookupError):
    def __init__(self, kind: str, key):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class PermissionDenied(AuctionError):
    pass


class PersistenceUnavailable(AuctionError):
    """The store could not be reached; nothing was committed."""


class CommandRejected(AuctionError):
    """A seller command was refused without side effects."""

    def __init__(self, reason: RejectionReason, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail or describe(reason)
        super().__init__(f"{reason.value}: {self.detail}")
