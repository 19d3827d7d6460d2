"""
Proxy (auto-bid) rules and the cascade that plays them out.

After every accepted manual bid the engine looks at the standing proxy
rules of the other bidders and places bids on their behalf through the
regular bid acceptor, so synthesized bids are ledgered and extend the
clock exactly like manual ones.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import Auction, AutoBid, AuctionStatus, BidSource, IncrementStrategy
from .errors import RejectionReason, CommandRejected, NotFound, PermissionDenied, PersistenceUnavailable
from .identity import Actor

logger = logging.getLogger(__name__)

CONFIGURABLE_STATUSES = (AuctionStatus.SCHEDULED.value, AuctionStatus.ACTIVE.value)


def active_rules(db: Session, auction_id: int) -> List[AutoBid]:
    """Active rules, strongest first: highest ceiling, then earliest created."""
    return db.query(AutoBid).filter(
        AutoBid.auction_id == auction_id,
        AutoBid.is_active.is_(True)
    ).order_by(AutoBid.ceiling.desc(), AutoBid.created_at.asc(), AutoBid.id.asc()).all()


def deactivate_rules(db: Session, auction_id: int, reason: RejectionReason, rule_ids: Optional[Iterable[int]] = None) -> int:
    """Mark rules inactive without committing. All active rules of the auction when rule_ids is None."""
    query = db.query(AutoBid).filter(
        AutoBid.auction_id == auction_id,
        AutoBid.is_active.is_(True)
    )
    if rule_ids is not None:
        rule_ids = list(rule_ids)
        if not rule_ids:
            return 0
        query = query.filter(AutoBid.id.in_(rule_ids))
    return query.update({
        "is_active": False,
        "deactivation_reason": reason.value,
        "updated_at": datetime.utcnow(),
    }, synchronize_session=False)


def rule_step(rule: AutoBid, auction: Auction) -> Decimal:
    if rule.increment_strategy == IncrementStrategy.CUSTOM.value and rule.custom_increment:
        return max(Decimal(rule.custom_increment), Decimal(auction.min_increment))
    return Decimal(auction.min_increment)


class AutoBidEngine:
    """Evaluates proxy rules after accepted bids and configures them for bidders."""

    def __init__(self, acceptor, rules):
        self.acceptor = acceptor
        self.rules = rules

    def process_auto_bids(self, db: Session, auction_id: int, triggering_bidder_id: Optional[str],
                          triggering_amount: Optional[Decimal]) -> int:
        """
        Run the proxy cascade for an auction until no rule can improve on the standing bid.

        Each step either places one bid that strictly raises the price or
        deactivates at least one rule, so the loop is bounded by the number
        of rules (auto_bid_max_steps is a hard stop on top of that).

        A synthesized bid that is rejected stops the cascade; the next
        manual bid re-triggers evaluation.

        Returns:
            Number of accepted synthesized bids.
        """
        placed = 0
        try:
            for _ in range(self.rules.auto_bid_max_steps):
                auction = db.query(Auction).filter(Auction.id == auction_id).first()
                if auction is None or auction.status != AuctionStatus.ACTIVE.value:
                    return placed

                plan = self._next_step(db, auction)
                if plan is None:
                    return placed
                rule, amount = plan
                if rule is None:
                    # Only deactivations happened this round
                    continue

                outcome = self.acceptor.submit_bid(db, auction_id, rule.bidder_id, amount, source=BidSource.AUTO)
                if not outcome.accepted:
                    logger.info(
                        f"Auto-bid cascade on auction {auction_id} stopped: proxy bid {amount} for "
                        f"{rule.bidder_id} rejected ({outcome.reason.value})"
                    )
                    return placed

                placed += 1
                db.query(AutoBid).filter(AutoBid.id == rule.id).update(
                    {"current_proxy_bid": amount, "updated_at": datetime.utcnow()},
                    synchronize_session=False
                )
                db.commit()

            logger.warning(
                f"Auto-bid cascade on auction {auction_id} hit the step limit "
                f"({self.rules.auto_bid_max_steps}) after trigger by {triggering_bidder_id} at {triggering_amount}"
            )
            return placed
        except (PersistenceUnavailable, SQLAlchemyError) as e:
            db.rollback()
            logger.error(f"Auto-bid cascade on auction {auction_id} stopped by persistence error: {e}")
            return placed

    def _next_step(self, db: Session, auction: Auction):
        """
        Decide the next proxy action.

        Returns None when nothing more can happen, (None, None) when rules
        were only deactivated, or (rule, amount) for a bid to place.
        """
        current = Decimal(auction.current_bid)
        minimum = current + Decimal(auction.min_increment)
        holder = auction.current_bidder_id

        rules = active_rules(db, auction.id)
        holder_rule = next((r for r in rules if r.bidder_id == holder), None)
        challengers = [r for r in rules if r.bidder_id != holder]

        exceeded = [r.id for r in challengers if Decimal(r.ceiling) < minimum]
        qualifying = [r for r in challengers if Decimal(r.ceiling) >= minimum]
        if exceeded:
            deactivate_rules(db, auction.id, RejectionReason.CEILING_EXCEEDED, exceeded)
            db.commit()
            logger.info(f"Deactivated {len(exceeded)} exceeded auto-bid rule(s) on auction {auction.id}")

        if not qualifying:
            return None

        # The holder's own rule competes for price but never bids against itself
        pool = list(qualifying)
        if holder_rule is not None:
            pool.append(holder_rule)
        pool.sort(key=lambda r: (-Decimal(r.ceiling), r.created_at, r.id))
        leader = pool[0]

        if leader is holder_rule:
            # Holder's rule wins; the strongest challenger pushes as far as it can and loses
            challenger = qualifying[0]
            if Decimal(challenger.ceiling) < Decimal(holder_rule.ceiling):
                return challenger, Decimal(challenger.ceiling)
            amount = Decimal(challenger.ceiling) - Decimal(auction.min_increment)
            if amount < minimum:
                deactivate_rules(db, auction.id, RejectionReason.OUTBID_BY_EQUAL_CEILING, [challenger.id])
                db.commit()
                return None, None
            return challenger, amount

        runner_up = pool[1] if len(pool) > 1 else None
        ceiling = Decimal(leader.ceiling)
        step = rule_step(leader, auction)

        if runner_up is not None and Decimal(runner_up.ceiling) == ceiling:
            tied = [r.id for r in pool[1:] if Decimal(r.ceiling) == ceiling]
            deactivate_rules(db, auction.id, RejectionReason.OUTBID_BY_EQUAL_CEILING, tied)
            db.commit()
            return leader, ceiling

        floor = current + step
        if runner_up is not None:
            floor = max(floor, Decimal(runner_up.ceiling) + step)
        return leader, min(ceiling, floor)

    def configure(self, db: Session, actor: Actor, auction_id: int, ceiling: Decimal,
                  increment_strategy: IncrementStrategy = IncrementStrategy.MINIMUM,
                  custom_increment: Optional[Decimal] = None) -> AutoBid:
        """Create or update the caller's proxy rule for an auction."""
        auction = db.query(Auction).filter(Auction.id == auction_id).first()
        if not auction:
            raise NotFound("Auction", auction_id)
        if auction.status not in CONFIGURABLE_STATUSES:
            raise CommandRejected(RejectionReason.AUCTION_NOT_ACTIVE)
        if auction.seller_id == actor.user_id:
            raise CommandRejected(RejectionReason.SELLER_CANNOT_BID)
        if increment_strategy == IncrementStrategy.CUSTOM and (custom_increment is None or custom_increment <= 0):
            raise ValueError("custom_increment must be positive for the custom strategy")

        ceiling = Decimal(ceiling)
        minimum = Decimal(auction.current_bid) + Decimal(auction.min_increment)
        if ceiling < minimum:
            raise CommandRejected(RejectionReason.BID_TOO_LOW, f"Auto-bid must be at least {minimum}")

        try:
            rule = db.query(AutoBid).filter(
                AutoBid.auction_id == auction_id,
                AutoBid.bidder_id == actor.user_id
            ).first()
            if rule is None:
                rule = AutoBid(auction_id=auction_id, bidder_id=actor.user_id, created_at=datetime.utcnow())
                db.add(rule)
            # Existing rules keep created_at, and with it their tie-break priority
            rule.ceiling = ceiling
            rule.increment_strategy = increment_strategy.value
            rule.custom_increment = custom_increment if increment_strategy == IncrementStrategy.CUSTOM else None
            rule.is_active = True
            rule.deactivation_reason = None
            rule.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(rule)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to save auto-bid for {actor.user_id} on auction {auction_id}: {e}")
            raise PersistenceUnavailable("Auto-bid could not be saved") from e

        logger.info(f"Auto-bid {rule.id} set for {actor.user_id} on auction {auction_id} up to {ceiling}")

        if auction.status == AuctionStatus.ACTIVE.value and auction.current_bidder_id != actor.user_id:
            self.process_auto_bids(db, auction_id, auction.current_bidder_id, auction.current_bid)
            db.refresh(rule)
        return rule

    def cancel(self, db: Session, actor: Actor, rule_id: int) -> AutoBid:
        """Deactivate the caller's rule. Rules are never deleted."""
        rule = db.query(AutoBid).filter(AutoBid.id == rule_id).first()
        if not rule:
            raise NotFound("Auto-bid", rule_id)
        if rule.bidder_id != actor.user_id:
            raise PermissionDenied("Cannot cancel another user's auto-bid")
        try:
            deactivate_rules(db, rule.auction_id, RejectionReason.CANCELLED_BY_BIDDER, [rule.id])
            db.commit()
            db.refresh(rule)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceUnavailable("Auto-bid could not be cancelled") from e
        return rule

    def rules_for_bidder(self, db: Session, bidder_id: str) -> List[AutoBid]:
        return db.query(AutoBid).filter(AutoBid.bidder_id == bidder_id).order_by(AutoBid.created_at.desc()).all()
