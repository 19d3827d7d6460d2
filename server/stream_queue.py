"""
Live stream product queue.

A stream holds an ordered queue of products and runs at most one auction
at a time. The active slot is claimed with a conditional update on
streams.active_auction_id and released when the auction reaches a
terminal state, which the coordinator learns from the event bus.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import Stream, QueueItem, Auction, StreamStatus, QueueItemStatus, AuctionStatus, AuctionMode
from .errors import RejectionReason, CommandRejected, NotFound, PersistenceUnavailable
from .events import EventBus, EventType, AuctionEvent
from .identity import Actor, require_seller, require_owner
from .lifecycle import AuctionStateMachine, settlement_for

logger = logging.getLogger(__name__)

ITEM_OPTION_FIELDS = (
    "min_increment", "duration_seconds", "mode", "reserve_price", "buyout_price", "max_timer_extensions",
)

# Terminal auction event -> queue item status
RELEASE_STATUS = {
    EventType.AUCTION_SOLD: QueueItemStatus.SOLD,
    EventType.AUCTION_PASSED: QueueItemStatus.PASSED,
    EventType.AUCTION_CANCELLED: QueueItemStatus.UPCOMING,
}


class StreamQueueCoordinator:
    def __init__(self, lifecycle: AuctionStateMachine, events: EventBus):
        self.lifecycle = lifecycle
        self.events = events
        events.subscribe(self.on_auction_event)

    # Streams

    def _stream(self, db: Session, stream_id: int) -> Stream:
        stream = db.query(Stream).filter(Stream.id == stream_id).first()
        if not stream:
            raise NotFound("Stream", stream_id)
        return stream

    def _owned_stream(self, db: Session, actor: Actor, stream_id: int) -> Stream:
        stream = self._stream(db, stream_id)
        require_owner(actor, stream.seller_id, "stream")
        return stream

    def _commit(self, db: Session, what: str):
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to save {what}: {e}")
            raise PersistenceUnavailable(f"Could not save {what}") from e

    def create_stream(self, db: Session, actor: Actor, title: str) -> Stream:
        require_seller(actor)
        stream = Stream(seller_id=actor.user_id, title=title, status=StreamStatus.SCHEDULED.value)
        db.add(stream)
        self._commit(db, "stream")
        db.refresh(stream)
        logger.info(f"Created stream {stream.id} for seller {actor.user_id}")
        return stream

    def go_live(self, db: Session, actor: Actor, stream_id: int) -> Stream:
        stream = self._owned_stream(db, actor, stream_id)
        if stream.status != StreamStatus.SCHEDULED.value:
            raise CommandRejected(RejectionReason.INVALID_TRANSITION, f"Stream is {stream.status}")
        stream.status = StreamStatus.LIVE.value
        stream.started_at = datetime.utcnow()
        self._commit(db, "stream")
        logger.info(f"Stream {stream_id} is live")
        return stream

    def end_stream(self, db: Session, actor: Actor, stream_id: int) -> Stream:
        stream = self._owned_stream(db, actor, stream_id)
        if stream.status == StreamStatus.ENDED.value:
            raise CommandRejected(RejectionReason.INVALID_TRANSITION, "Stream already ended")
        if stream.active_auction_id is not None:
            raise CommandRejected(
                RejectionReason.AUCTION_ALREADY_ACTIVE,
                f"Auction {stream.active_auction_id} must finish before the stream ends"
            )
        stream.status = StreamStatus.ENDED.value
        stream.ended_at = datetime.utcnow()
        stream.pinned_product_id = None
        self._commit(db, "stream")
        logger.info(f"Stream {stream_id} ended")
        return stream

    # Queue management

    def _item(self, db: Session, stream_id: int, product_id: str) -> QueueItem:
        item = db.query(QueueItem).filter(
            QueueItem.stream_id == stream_id,
            QueueItem.product_id == product_id
        ).first()
        if not item:
            raise NotFound("Queue item", product_id)
        return item

    def list_queue(self, db: Session, stream_id: int) -> List[QueueItem]:
        self._stream(db, stream_id)
        return db.query(QueueItem).filter(
            QueueItem.stream_id == stream_id
        ).order_by(QueueItem.display_order.asc(), QueueItem.id.asc()).all()

    def _new_item(self, db: Session, stream: Stream, product_id: str, starting_bid: Decimal,
                  display_order: Optional[int], options: Dict[str, Any]) -> QueueItem:
        if Decimal(starting_bid) <= 0:
            raise ValueError("starting_bid must be positive")
        existing = db.query(QueueItem).filter(
            QueueItem.stream_id == stream.id,
            QueueItem.product_id == product_id
        ).first()
        if existing:
            raise CommandRejected(RejectionReason.QUEUE_ITEM_NOT_AVAILABLE, f"Product {product_id} is already queued")

        if display_order is None:
            last = db.query(func.max(QueueItem.display_order)).filter(QueueItem.stream_id == stream.id).scalar()
            display_order = (last or 0) + 1

        item = QueueItem(
            stream_id=stream.id,
            product_id=product_id,
            display_order=display_order,
            status=QueueItemStatus.UPCOMING.value,
            starting_bid=starting_bid,
        )
        for name in ITEM_OPTION_FIELDS:
            value = options.get(name)
            if value is not None:
                setattr(item, name, AuctionMode(value).value if name == "mode" else value)
        db.add(item)
        db.flush()
        return item

    def add_item(self, db: Session, actor: Actor, stream_id: int, product_id: str, starting_bid: Decimal,
                 display_order: Optional[int] = None, **options) -> QueueItem:
        stream = self._owned_stream(db, actor, stream_id)
        if stream.status == StreamStatus.ENDED.value:
            raise CommandRejected(RejectionReason.INVALID_TRANSITION, "Stream has ended")
        item = self._new_item(db, stream, product_id, starting_bid, display_order, options)
        self._commit(db, "queue item")
        db.refresh(item)
        logger.info(f"Queued product {product_id} on stream {stream_id} at position {item.display_order}")
        return item

    def add_items_bulk(self, db: Session, actor: Actor, stream_id: int, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Queue several products in one call.

        Each entry needs product_id and starting_bid; other item options are
        optional. Bad entries are reported and skipped, the rest are queued.

        Returns:
            Dict with 'queued' (list of QueueItem) and 'errors' (list of dicts)
        """
        stream = self._owned_stream(db, actor, stream_id)
        if stream.status == StreamStatus.ENDED.value:
            raise CommandRejected(RejectionReason.INVALID_TRANSITION, "Stream has ended")

        queued = []
        errors = []
        for entry in entries:
            product_id = entry.get("product_id")
            try:
                options = {k: entry.get(k) for k in ITEM_OPTION_FIELDS}
                item = self._new_item(db, stream, product_id, entry["starting_bid"], entry.get("display_order"), options)
                queued.append(item)
            except (CommandRejected, ValueError, KeyError) as e:
                errors.append({"product_id": product_id, "error": str(e)})

        self._commit(db, "queue items")
        for item in queued:
            db.refresh(item)
        logger.info(f"Bulk queue on stream {stream_id}: {len(queued)} queued, {len(errors)} failed")
        return {"queued": queued, "errors": errors}

    def reorder(self, db: Session, actor: Actor, stream_id: int, product_ids: List[str]) -> List[QueueItem]:
        """Rewrite display order of upcoming items. Every upcoming product must appear exactly once."""
        self._owned_stream(db, actor, stream_id)
        upcoming = db.query(QueueItem).filter(
            QueueItem.stream_id == stream_id,
            QueueItem.status == QueueItemStatus.UPCOMING.value
        ).all()
        by_product = {item.product_id: item for item in upcoming}
        if len(product_ids) != len(set(product_ids)) or set(product_ids) != set(by_product):
            raise ValueError("product_ids must list every upcoming item exactly once")

        # Upcoming items go after anything already started or closed
        base = db.query(func.max(QueueItem.display_order)).filter(
            QueueItem.stream_id == stream_id,
            QueueItem.status != QueueItemStatus.UPCOMING.value
        ).scalar() or 0
        for position, product_id in enumerate(product_ids, start=1):
            by_product[product_id].display_order = base + position
        self._commit(db, "queue order")
        return self.list_queue(db, stream_id)

    def remove_item(self, db: Session, actor: Actor, stream_id: int, product_id: str):
        stream = self._owned_stream(db, actor, stream_id)
        item = self._item(db, stream_id, product_id)
        if item.status != QueueItemStatus.UPCOMING.value:
            raise CommandRejected(RejectionReason.QUEUE_ITEM_NOT_AVAILABLE, f"Item is {item.status}")
        if stream.pinned_product_id == product_id:
            stream.pinned_product_id = None
        db.delete(item)
        self._commit(db, "queue item")
        logger.info(f"Removed product {product_id} from stream {stream_id}")

    # Live control

    def pin(self, db: Session, actor: Actor, stream_id: int, product_id: str) -> Stream:
        """Feature a product in the stream without starting bidding."""
        stream = self._owned_stream(db, actor, stream_id)
        item = self._item(db, stream_id, product_id)
        if item.status not in (QueueItemStatus.UPCOMING.value, QueueItemStatus.ACTIVE.value):
            raise CommandRejected(RejectionReason.QUEUE_ITEM_NOT_AVAILABLE, f"Item is {item.status}")
        if stream.active_auction_id is not None and item.auction_id != stream.active_auction_id:
            raise CommandRejected(RejectionReason.AUCTION_ALREADY_ACTIVE)
        stream.pinned_product_id = product_id
        self._commit(db, "pin")
        self.events.publish(db, AuctionEvent(
            type=EventType.ITEM_PINNED, auction_id=item.auction_id, stream_id=stream_id, product_id=product_id
        ))
        return stream

    def start_auction(self, db: Session, actor: Actor, stream_id: int, product_id: str) -> Auction:
        """
        Start bidding on a queued product.

        The stream's single active slot is claimed atomically; a second
        start while an auction runs is rejected with AuctionAlreadyActive.
        """
        stream = self._owned_stream(db, actor, stream_id)
        if stream.status != StreamStatus.LIVE.value:
            raise CommandRejected(RejectionReason.INVALID_TRANSITION, "Stream is not live")
        item = self._item(db, stream_id, product_id)
        if item.status != QueueItemStatus.UPCOMING.value:
            raise CommandRejected(RejectionReason.QUEUE_ITEM_NOT_AVAILABLE, f"Item is {item.status}")
        if stream.active_auction_id is not None:
            raise CommandRejected(RejectionReason.AUCTION_ALREADY_ACTIVE)

        options = {name: getattr(item, name) for name in ITEM_OPTION_FIELDS}
        auction = self.lifecycle.build(db, actor, product_id, item.starting_bid, stream_id=stream_id, **options)
        try:
            db.flush()
            claimed = db.query(Stream).filter(
                Stream.id == stream_id,
                Stream.active_auction_id.is_(None)
            ).update({
                "active_auction_id": auction.id,
                "pinned_product_id": product_id,
                "updated_at": datetime.utcnow(),
            }, synchronize_session=False)
            if claimed == 0:
                db.rollback()
                raise CommandRejected(RejectionReason.AUCTION_ALREADY_ACTIVE)

            item.status = QueueItemStatus.ACTIVE.value
            item.auction_id = auction.id
            item.started_at = datetime.utcnow()
            db.commit()
        except IntegrityError:
            db.rollback()
            raise CommandRejected(RejectionReason.AUCTION_ALREADY_ACTIVE, f"Product {product_id} already has an open auction")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to start auction for {product_id} on stream {stream_id}: {e}")
            raise PersistenceUnavailable("Auction could not be started") from e

        return self.lifecycle.start(db, auction.id, actor)

    def _settled_auction(self, db: Session, stream: Stream, item: QueueItem, auction_id: Optional[int]) -> Optional[Auction]:
        auction_id = auction_id or item.auction_id
        if auction_id is None:
            return None
        auction = db.query(Auction).filter(Auction.id == auction_id).first()
        if not auction or auction.stream_id != stream.id or auction.product_id != item.product_id:
            raise CommandRejected(RejectionReason.QUEUE_ITEM_NOT_AVAILABLE, "Auction does not belong to this item")
        return auction

    def _close_without_auction(self, db: Session, stream: Stream, item: QueueItem, status: QueueItemStatus) -> QueueItem:
        if item.status != QueueItemStatus.UPCOMING.value:
            raise CommandRejected(RejectionReason.QUEUE_ITEM_NOT_AVAILABLE, f"Item is {item.status}")
        item.status = status.value
        item.ended_at = datetime.utcnow()
        if stream.pinned_product_id == item.product_id:
            stream.pinned_product_id = None
        self._commit(db, "queue item")
        logger.info(f"Product {item.product_id} on stream {stream.id} marked {status.value} without bidding")
        return item

    def mark_sold(self, db: Session, actor: Actor, stream_id: int, product_id: str,
                  auction_id: Optional[int] = None) -> QueueItem:
        """
        Close the item as sold.

        With a running auction this ends bidding and settles; it is refused
        with ReserveNotMet, leaving everything untouched, when the standing
        bid would not sell.
        """
        stream = self._owned_stream(db, actor, stream_id)
        item = self._item(db, stream_id, product_id)
        auction = self._settled_auction(db, stream, item, auction_id)
        if auction is None:
            return self._close_without_auction(db, stream, item, QueueItemStatus.SOLD)

        if auction.status in (AuctionStatus.SOLD.value, AuctionStatus.SOLD_VIA_BUYOUT.value):
            db.refresh(item)
            return item
        if auction.status == AuctionStatus.PASSED.value:
            raise CommandRejected(RejectionReason.RESERVE_NOT_MET, "Auction already passed")
        if auction.status not in (AuctionStatus.ACTIVE.value, AuctionStatus.ENDED.value):
            raise CommandRejected(RejectionReason.INVALID_TRANSITION, f"Auction is {auction.status}")

        status, close_reason = settlement_for(auction)
        if status != AuctionStatus.SOLD:
            raise CommandRejected(RejectionReason.RESERVE_NOT_MET, close_reason)

        self.lifecycle.close(db, auction.id, actor)
        db.refresh(item)
        return item

    def mark_passed(self, db: Session, actor: Actor, stream_id: int, product_id: str) -> QueueItem:
        """Close the item unsold. Refused with AuctionHasWinner when a qualifying bid stands."""
        stream = self._owned_stream(db, actor, stream_id)
        item = self._item(db, stream_id, product_id)
        auction = self._settled_auction(db, stream, item, None)
        if auction is None:
            return self._close_without_auction(db, stream, item, QueueItemStatus.PASSED)

        if auction.status == AuctionStatus.PASSED.value:
            db.refresh(item)
            return item
        if auction.status in (AuctionStatus.SOLD.value, AuctionStatus.SOLD_VIA_BUYOUT.value):
            raise CommandRejected(RejectionReason.AUCTION_HAS_WINNER)
        if auction.status not in (AuctionStatus.ACTIVE.value, AuctionStatus.ENDED.value):
            raise CommandRejected(RejectionReason.INVALID_TRANSITION, f"Auction is {auction.status}")

        status, _ = settlement_for(auction)
        if status == AuctionStatus.SOLD:
            raise CommandRejected(RejectionReason.AUCTION_HAS_WINNER)

        self.lifecycle.close(db, auction.id, actor)
        db.refresh(item)
        return item

    def advance(self, db: Session, actor: Actor, stream_id: int) -> Optional[QueueItem]:
        """
        Pin the next upcoming item after the current one.

        Bidding is not started; the seller does that explicitly. Returns
        None and clears the pin when the queue is exhausted.
        """
        stream = self._owned_stream(db, actor, stream_id)
        if stream.active_auction_id is not None:
            raise CommandRejected(RejectionReason.AUCTION_ALREADY_ACTIVE)

        upcoming = db.query(QueueItem).filter(
            QueueItem.stream_id == stream_id,
            QueueItem.status == QueueItemStatus.UPCOMING.value
        ).order_by(QueueItem.display_order.asc(), QueueItem.id.asc()).all()

        pinned = next((i for i in upcoming if i.product_id == stream.pinned_product_id), None)
        if pinned is None:
            next_item = upcoming[0] if upcoming else None
        else:
            later = [i for i in upcoming if (i.display_order, i.id) > (pinned.display_order, pinned.id)]
            next_item = later[0] if later else None

        if next_item is None:
            stream.pinned_product_id = None
            self._commit(db, "pin")
            logger.info(f"Stream {stream_id} queue exhausted")
            return None
        self.pin(db, actor, stream_id, next_item.product_id)
        return next_item

    # Observer

    def on_auction_event(self, db: Session, event: AuctionEvent):
        """Release the stream slot when a stream auction reaches a terminal state."""
        item_status = RELEASE_STATUS.get(event.type)
        if item_status is None or event.stream_id is None:
            return

        item = db.query(QueueItem).filter(
            QueueItem.stream_id == event.stream_id,
            QueueItem.auction_id == event.auction_id
        ).first()
        if item and item.status == QueueItemStatus.ACTIVE.value:
            item.status = item_status.value
            if item_status == QueueItemStatus.UPCOMING:
                item.auction_id = None
                item.started_at = None
            else:
                item.ended_at = datetime.utcnow()

        values = {"active_auction_id": None, "updated_at": datetime.utcnow()}
        if item_status != QueueItemStatus.UPCOMING and event.product_id is not None:
            db.query(Stream).filter(
                Stream.id == event.stream_id,
                Stream.pinned_product_id == event.product_id
            ).update({"pinned_product_id": None}, synchronize_session=False)
        db.query(Stream).filter(
            Stream.id == event.stream_id,
            Stream.active_auction_id == event.auction_id
        ).update(values, synchronize_session=False)
        db.commit()
        logger.info(f"Stream {event.stream_id} released auction {event.auction_id} ({item_status.value})")
