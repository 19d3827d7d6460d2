import time
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from database import SessionLocal, Auction, AuctionStatus
from .config import WORKER_POLL_SECONDS
from .errors import CommandRejected
from .services import Services, build_services

logger = logging.getLogger(__name__)


class Worker:
    """Auction clock: starts scheduled auctions and closes expired ones."""

    def __init__(self, services: Optional[Services] = None, poll_seconds: float = WORKER_POLL_SECONDS):
        self.services = services or build_services()
        self.poll_seconds = poll_seconds
        self.running = False

    def _start_due_auctions(self, db: Session, now: datetime) -> int:
        """Start standalone auctions whose scheduled start has arrived. Stream auctions start on seller command."""
        due = db.query(Auction.id).filter(
            Auction.status == AuctionStatus.SCHEDULED.value,
            Auction.stream_id.is_(None),
            Auction.scheduled_start_utc.isnot(None),
            Auction.scheduled_start_utc <= now
        ).all()

        started = 0
        for (auction_id,) in due:
            try:
                self.services.lifecycle.start(db, auction_id)
                started += 1
            except CommandRejected:
                # Started or cancelled by someone else since the query
                logger.debug(f"Auction {auction_id} no longer scheduled")
            except Exception as e:
                logger.error(f"Error starting auction {auction_id}: {e}", exc_info=True)
                db.rollback()
        return started

    def _close_expired_auctions(self, db: Session, now: datetime) -> int:
        """End active auctions past their deadline and settle them."""
        expired = db.query(Auction.id).filter(
            Auction.status == AuctionStatus.ACTIVE.value,
            Auction.ends_at <= now
        ).all()

        closed = 0
        for (auction_id,) in expired:
            try:
                self.services.lifecycle.end(db, auction_id)
                self.services.lifecycle.settle(db, auction_id)
                closed += 1
            except CommandRejected:
                # A late bid extended the clock, or the auction closed another way
                logger.debug(f"Auction {auction_id} not closed this round")
            except Exception as e:
                logger.error(f"Error closing auction {auction_id}: {e}", exc_info=True)
                db.rollback()
        return closed

    def _settle_ended_auctions(self, db: Session) -> int:
        """Settle auctions left in ended (worker stopped between end and settle)."""
        stuck = db.query(Auction.id).filter(Auction.status == AuctionStatus.ENDED.value).all()

        settled = 0
        for (auction_id,) in stuck:
            try:
                self.services.lifecycle.settle(db, auction_id)
                settled += 1
            except CommandRejected:
                logger.debug(f"Auction {auction_id} already settled")
            except Exception as e:
                logger.error(f"Error settling auction {auction_id}: {e}", exc_info=True)
                db.rollback()
        return settled

    def tick(self, db: Session, now: Optional[datetime] = None):
        now = now or datetime.utcnow()
        self._start_due_auctions(db, now)
        self._close_expired_auctions(db, now)
        self._settle_ended_auctions(db)

    def run_loop(self):
        """Main worker loop."""
        self.running = True
        logger.info("Worker loop started")

        while self.running:
            try:
                db = SessionLocal()
                try:
                    self.tick(db)
                finally:
                    db.close()

                time.sleep(self.poll_seconds)

            except KeyboardInterrupt:
                logger.info("Worker loop interrupted")
                self.running = False
                break
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                time.sleep(1)

    def stop(self):
        """Stop the worker loop."""
        self.running = False
