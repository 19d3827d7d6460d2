from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from database import AuctionMode, IncrementStrategy


class AuthRequest(BaseModel):
    username: str
    password: str
    role: str = "buyer"


class AuthResponse(BaseModel):
    token: str


class AuctionOptions(BaseModel):
    min_increment: Optional[Decimal] = Field(default=None, gt=0)
    duration_seconds: Optional[int] = Field(default=None, gt=0)
    mode: AuctionMode = AuctionMode.STANDARD
    reserve_price: Optional[Decimal] = Field(default=None, gt=0)
    buyout_price: Optional[Decimal] = Field(default=None, gt=0)
    max_timer_extensions: Optional[int] = Field(default=None, ge=0)


class CreateAuctionRequest(AuctionOptions):
    product_id: str
    starting_bid: Decimal = Field(gt=0)
    scheduled_start_utc: Optional[datetime] = None


class AuctionResponse(BaseModel):
    id: int
    product_id: str
    seller_id: str
    stream_id: Optional[int]
    status: str
    mode: str
    starting_bid: Decimal
    current_bid: Decimal
    current_bidder_id: Optional[str]
    bid_count: int
    min_increment: Decimal
    reserve_price: Optional[Decimal]
    buyout_price: Optional[Decimal]
    reserve_met: bool
    duration_seconds: int
    timer_extensions: int
    max_timer_extensions: int
    scheduled_start_utc: Optional[datetime]
    started_at: Optional[datetime]
    ends_at: Optional[datetime]
    original_ends_at: Optional[datetime]
    ended_at: Optional[datetime]
    close_reason: Optional[str]

    model_config = {"from_attributes": True}


class BidRequest(BaseModel):
    auction_id: int
    amount: Decimal = Field(gt=0)


class BidResponse(BaseModel):
    accepted: bool
    bid_id: Optional[int] = None
    auction_id: int
    amount: Decimal
    extended: bool = False
    sold_via_buyout: bool = False
    high_bid: Optional[Decimal] = None
    high_bidder_id: Optional[str] = None
    bid_count: int = 0
    ends_at: Optional[datetime] = None
    status: Optional[str] = None
    auto_bids_placed: int = 0

    model_config = {"from_attributes": True}


class LedgerEntryResponse(BaseModel):
    id: int
    auction_id: int
    bidder_id: str
    amount: Decimal
    status: str
    rejection_reason: Optional[str]
    source: str
    is_buyout: bool
    extended: bool
    submitted_at: datetime

    model_config = {"from_attributes": True}


class AutoBidRequest(BaseModel):
    auction_id: int
    ceiling: Decimal = Field(gt=0)
    increment_strategy: IncrementStrategy = IncrementStrategy.MINIMUM
    custom_increment: Optional[Decimal] = Field(default=None, gt=0)


class AutoBidResponse(BaseModel):
    id: int
    auction_id: int
    bidder_id: str
    ceiling: Decimal
    increment_strategy: str
    custom_increment: Optional[Decimal]
    current_proxy_bid: Optional[Decimal]
    is_active: bool
    deactivation_reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class EventResponse(BaseModel):
    seq: int
    type: str
    auction_id: Optional[int]
    stream_id: Optional[int]
    product_id: Optional[str]
    status: Optional[str]
    mode: Optional[str]
    current_bid: Optional[Decimal]
    current_bidder_id: Optional[str]
    bid_count: int
    ends_at: Optional[datetime]
    created_at: datetime


class CreateStreamRequest(BaseModel):
    title: str


class StreamResponse(BaseModel):
    id: int
    seller_id: str
    title: str
    status: str
    pinned_product_id: Optional[str]
    active_auction_id: Optional[int]
    started_at: Optional[datetime]
    ended_at: Optional[datetime]

    model_config = {"from_attributes": True}


class QueueItemRequest(AuctionOptions):
    product_id: str
    starting_bid: Decimal = Field(gt=0)
    display_order: Optional[int] = None


class QueueItemResponse(BaseModel):
    id: int
    stream_id: int
    product_id: str
    display_order: int
    status: str
    starting_bid: Decimal
    min_increment: Optional[Decimal]
    duration_seconds: Optional[int]
    mode: str
    reserve_price: Optional[Decimal]
    buyout_price: Optional[Decimal]
    auction_id: Optional[int]
    started_at: Optional[datetime]
    ended_at: Optional[datetime]

    model_config = {"from_attributes": True}


class BulkQueueRequest(BaseModel):
    items: List[QueueItemRequest]


class BulkQueueError(BaseModel):
    product_id: Optional[str]
    error: str


class BulkQueueResponse(BaseModel):
    queued: List[QueueItemResponse]
    errors: List[BulkQueueError]


class ReorderRequest(BaseModel):
    product_ids: List[str]


class MarkSoldRequest(BaseModel):
    auction_id: Optional[int] = None
