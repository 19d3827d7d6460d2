from fastapi import FastAPI, Depends, HTTPException, Header
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional, List
import jwt
import logging

from database import get_db, Auction, Bid, Stream
from .config import SECRET_KEY, TOKEN_TTL_DAYS
from .errors import AuctionError, NotFound, PermissionDenied, PersistenceUnavailable, CommandRejected, describe
from .identity import Actor, BUYER, SELLER
from .models import (
    AuthRequest, AuthResponse, CreateAuctionRequest, AuctionResponse, BidRequest, BidResponse,
    LedgerEntryResponse, AutoBidRequest, AutoBidResponse, EventResponse, CreateStreamRequest,
    StreamResponse, QueueItemRequest, QueueItemResponse, BulkQueueRequest, BulkQueueResponse,
    ReorderRequest, MarkSoldRequest
)
from .services import build_services

logger = logging.getLogger(__name__)

app = FastAPI(title="Live Auction")
services = build_services()

ITEM_OPTIONS = ("min_increment", "duration_seconds", "mode", "reserve_price", "buyout_price", "max_timer_extensions")


def verify_token(authorization: str = Header(None)) -> Actor:
    """Verify the bearer token and resolve the calling actor."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    token = authorization.split(" ")[1]
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Actor(user_id=user_id, role=payload.get("role", BUYER))


def _to_http(e: Exception) -> HTTPException:
    """Translate core errors into HTTP responses."""
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PermissionDenied):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, PersistenceUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, CommandRejected):
        return HTTPException(status_code=409, detail={"reason": e.reason.value, "message": e.detail})
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Unhandled auction error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


def _get_auction(db: Session, auction_id: int) -> Auction:
    auction = db.query(Auction).filter(Auction.id == auction_id).first()
    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")
    return auction


def _item_options(request) -> dict:
    return {name: getattr(request, name) for name in ITEM_OPTIONS}


@app.post("/auth", response_model=AuthResponse)
def auth(request: AuthRequest):
    """Authenticate user and return API token."""
    # Simplified auth - in production, verify credentials properly
    if request.role not in (BUYER, SELLER):
        raise HTTPException(status_code=400, detail=f"Unknown role: {request.role}")
    token = jwt.encode(
        {
            "sub": request.username,
            "role": request.role,
            "exp": datetime.utcnow() + timedelta(days=TOKEN_TTL_DAYS)
        },
        SECRET_KEY,
        algorithm="HS256"
    )
    return AuthResponse(token=token)


# Auctions

@app.post("/auctions", response_model=AuctionResponse)
def create_auction(request: CreateAuctionRequest, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """Create a standalone auction. It starts at scheduled_start_utc, or when the seller starts it."""
    try:
        auction = services.lifecycle.create(
            db, actor, request.product_id, request.starting_bid,
            scheduled_start_utc=request.scheduled_start_utc,
            **_item_options(request)
        )
    except (AuctionError, ValueError) as e:
        raise _to_http(e)
    return AuctionResponse.model_validate(auction)


@app.get("/auctions", response_model=List[AuctionResponse])
def list_auctions(status: Optional[str] = None, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """List auctions, optionally filtered by status."""
    query = db.query(Auction)
    if status:
        query = query.filter(Auction.status == status)
    return [AuctionResponse.model_validate(a) for a in query.order_by(Auction.id).all()]


@app.get("/auctions/{auction_id}", response_model=AuctionResponse)
def get_auction(auction_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    return AuctionResponse.model_validate(_get_auction(db, auction_id))


@app.post("/auctions/{auction_id}/start", response_model=AuctionResponse)
def start_auction(auction_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        auction = services.lifecycle.start(db, auction_id, actor)
    except AuctionError as e:
        raise _to_http(e)
    return AuctionResponse.model_validate(auction)


@app.post("/auctions/{auction_id}/end", response_model=AuctionResponse)
def end_auction(auction_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """End bidding now and settle (sold if the reserve is met, otherwise passed)."""
    try:
        auction = services.lifecycle.close(db, auction_id, actor)
    except AuctionError as e:
        raise _to_http(e)
    return AuctionResponse.model_validate(auction)


@app.post("/auctions/{auction_id}/cancel", response_model=AuctionResponse)
def cancel_auction(auction_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        auction = services.lifecycle.cancel(db, auction_id, actor)
    except AuctionError as e:
        raise _to_http(e)
    return AuctionResponse.model_validate(auction)


@app.get("/auctions/{auction_id}/bids", response_model=List[LedgerEntryResponse])
def get_ledger(auction_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """Every bid attempt on an auction in submission order, rejected ones included."""
    _get_auction(db, auction_id)
    bids = db.query(Bid).filter(Bid.auction_id == auction_id).order_by(Bid.id).all()
    return [LedgerEntryResponse.model_validate(b) for b in bids]


@app.get("/auctions/{auction_id}/events", response_model=List[EventResponse])
def get_events(auction_id: int, since: int = 0, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """Events newer than `since`, for clients polling countdowns and bid updates."""
    _get_auction(db, auction_id)
    return [EventResponse(**e.to_dict()) for e in services.events.recent(auction_id, since)]


# Bids

@app.post("/bids", response_model=BidResponse)
def submit_bid(request: BidRequest, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """Submit a bid. Rejections answer 409 with the reason."""
    try:
        outcome = services.bids.submit_bid(db, request.auction_id, actor.user_id, request.amount)
    except (AuctionError, ValueError) as e:
        raise _to_http(e)

    if not outcome.accepted:
        raise HTTPException(status_code=409, detail={
            "reason": outcome.reason.value,
            "message": describe(outcome.reason),
            "high_bid": str(outcome.high_bid) if outcome.high_bid is not None else None,
        })
    return BidResponse.model_validate(outcome)


@app.get("/bids/mine", response_model=List[LedgerEntryResponse])
def my_bids(auction_id: Optional[int] = None, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    query = db.query(Bid).filter(Bid.bidder_id == actor.user_id)
    if auction_id is not None:
        query = query.filter(Bid.auction_id == auction_id)
    return [LedgerEntryResponse.model_validate(b) for b in query.order_by(Bid.id.desc()).all()]


# Auto-bids

@app.post("/autobids", response_model=AutoBidResponse)
def set_auto_bid(request: AutoBidRequest, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """Create or update a proxy rule. On a running auction the rule may bid immediately."""
    try:
        rule = services.auto_bids.configure(
            db, actor, request.auction_id, request.ceiling,
            request.increment_strategy, request.custom_increment
        )
    except (AuctionError, ValueError) as e:
        raise _to_http(e)
    return AutoBidResponse.model_validate(rule)


@app.get("/autobids/mine", response_model=List[AutoBidResponse])
def my_auto_bids(db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    rules = services.auto_bids.rules_for_bidder(db, actor.user_id)
    return [AutoBidResponse.model_validate(r) for r in rules]


@app.delete("/autobids/{rule_id}", response_model=AutoBidResponse)
def cancel_auto_bid(rule_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        rule = services.auto_bids.cancel(db, actor, rule_id)
    except AuctionError as e:
        raise _to_http(e)
    return AutoBidResponse.model_validate(rule)


# Streams

@app.post("/streams", response_model=StreamResponse)
def create_stream(request: CreateStreamRequest, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        stream = services.queue.create_stream(db, actor, request.title)
    except AuctionError as e:
        raise _to_http(e)
    return StreamResponse.model_validate(stream)


@app.get("/streams/{stream_id}", response_model=StreamResponse)
def get_stream(stream_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    stream = db.query(Stream).filter(Stream.id == stream_id).first()
    if not stream:
        raise HTTPException(status_code=404, detail="Stream not found")
    return StreamResponse.model_validate(stream)


@app.post("/streams/{stream_id}/live", response_model=StreamResponse)
def go_live(stream_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        stream = services.queue.go_live(db, actor, stream_id)
    except AuctionError as e:
        raise _to_http(e)
    return StreamResponse.model_validate(stream)


@app.post("/streams/{stream_id}/end", response_model=StreamResponse)
def end_stream(stream_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        stream = services.queue.end_stream(db, actor, stream_id)
    except AuctionError as e:
        raise _to_http(e)
    return StreamResponse.model_validate(stream)


@app.get("/streams/{stream_id}/queue", response_model=List[QueueItemResponse])
def list_queue(stream_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        items = services.queue.list_queue(db, stream_id)
    except AuctionError as e:
        raise _to_http(e)
    return [QueueItemResponse.model_validate(i) for i in items]


@app.post("/streams/{stream_id}/queue", response_model=QueueItemResponse)
def add_queue_item(stream_id: int, request: QueueItemRequest, db: Session = Depends(get_db),
                   actor: Actor = Depends(verify_token)):
    try:
        item = services.queue.add_item(
            db, actor, stream_id, request.product_id, request.starting_bid,
            display_order=request.display_order, **_item_options(request)
        )
    except (AuctionError, ValueError) as e:
        raise _to_http(e)
    return QueueItemResponse.model_validate(item)


@app.post("/streams/{stream_id}/queue/bulk", response_model=BulkQueueResponse)
def add_queue_items_bulk(stream_id: int, request: BulkQueueRequest, db: Session = Depends(get_db),
                         actor: Actor = Depends(verify_token)):
    """Queue several products; per-item failures are reported, not raised."""
    entries = [item.model_dump() for item in request.items]
    try:
        result = services.queue.add_items_bulk(db, actor, stream_id, entries)
    except AuctionError as e:
        raise _to_http(e)
    return BulkQueueResponse(
        queued=[QueueItemResponse.model_validate(i) for i in result["queued"]],
        errors=result["errors"]
    )


@app.put("/streams/{stream_id}/queue/order", response_model=List[QueueItemResponse])
def reorder_queue(stream_id: int, request: ReorderRequest, db: Session = Depends(get_db),
                  actor: Actor = Depends(verify_token)):
    try:
        items = services.queue.reorder(db, actor, stream_id, request.product_ids)
    except (AuctionError, ValueError) as e:
        raise _to_http(e)
    return [QueueItemResponse.model_validate(i) for i in items]


@app.delete("/streams/{stream_id}/queue/{product_id}")
def remove_queue_item(stream_id: int, product_id: str, db: Session = Depends(get_db),
                      actor: Actor = Depends(verify_token)):
    try:
        services.queue.remove_item(db, actor, stream_id, product_id)
    except AuctionError as e:
        raise _to_http(e)
    return {"message": "Item removed"}


@app.post("/streams/{stream_id}/queue/{product_id}/pin", response_model=StreamResponse)
def pin_item(stream_id: int, product_id: str, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    try:
        stream = services.queue.pin(db, actor, stream_id, product_id)
    except AuctionError as e:
        raise _to_http(e)
    return StreamResponse.model_validate(stream)


@app.post("/streams/{stream_id}/queue/{product_id}/start", response_model=AuctionResponse)
def start_item_auction(stream_id: int, product_id: str, db: Session = Depends(get_db),
                       actor: Actor = Depends(verify_token)):
    try:
        auction = services.queue.start_auction(db, actor, stream_id, product_id)
    except (AuctionError, ValueError) as e:
        raise _to_http(e)
    return AuctionResponse.model_validate(auction)


@app.post("/streams/{stream_id}/queue/{product_id}/sold", response_model=QueueItemResponse)
def mark_item_sold(stream_id: int, product_id: str, request: Optional[MarkSoldRequest] = None,
                   db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    auction_id = request.auction_id if request else None
    try:
        item = services.queue.mark_sold(db, actor, stream_id, product_id, auction_id)
    except AuctionError as e:
        raise _to_http(e)
    return QueueItemResponse.model_validate(item)


@app.post("/streams/{stream_id}/queue/{product_id}/passed", response_model=QueueItemResponse)
def mark_item_passed(stream_id: int, product_id: str, db: Session = Depends(get_db),
                     actor: Actor = Depends(verify_token)):
    try:
        item = services.queue.mark_passed(db, actor, stream_id, product_id)
    except AuctionError as e:
        raise _to_http(e)
    return QueueItemResponse.model_validate(item)


@app.post("/streams/{stream_id}/advance", response_model=Optional[QueueItemResponse])
def advance_queue(stream_id: int, db: Session = Depends(get_db), actor: Actor = Depends(verify_token)):
    """Pin the next upcoming item. Returns null when the queue is exhausted."""
    try:
        item = services.queue.advance(db, actor, stream_id)
    except AuctionError as e:
        raise _to_http(e)
    if item is None:
        return None
    return QueueItemResponse.model_validate(item)
