from dataclasses import dataclass
from typing import Optional

from .autobid import AutoBidEngine
from .bidding import BidAcceptor
from .config import AuctionRules
from .events import EventBus
from .lifecycle import AuctionStateMachine
from .stream_queue import StreamQueueCoordinator


@dataclass
class Services:
    """The wired auction core shared by the API and the worker."""

    rules: AuctionRules
    events: EventBus
    lifecycle: AuctionStateMachine
    bids: BidAcceptor
    auto_bids: AutoBidEngine
    queue: StreamQueueCoordinator


def build_services(rules: Optional[AuctionRules] = None, events: Optional[EventBus] = None) -> Services:
    rules = rules or AuctionRules.from_env()
    events = events or EventBus()
    lifecycle = AuctionStateMachine(rules, events)
    bids = BidAcceptor(rules, events)
    queue = StreamQueueCoordinator(lifecycle, events)
    return Services(
        rules=rules,
        events=events,
        lifecycle=lifecycle,
        bids=bids,
        auto_bids=bids.auto_bids,
        queue=queue,
    )
