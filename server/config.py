"""
Runtime settings for the auction service.

Values come from the environment (a local .env file is honoured) so the
same build can run with short clocks in tests and real ones in production.
"""
import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "30"))
WORKER_POLL_SECONDS = float(os.getenv("WORKER_POLL_SECONDS", "0.5"))
EVENT_HISTORY_SIZE = int(os.getenv("EVENT_HISTORY_SIZE", "200"))
EVENT_HISTORY_AUCTIONS = int(os.getenv("EVENT_HISTORY_AUCTIONS", "1000"))


@dataclass(frozen=True)
class AuctionRules:
    """Timing and pricing rules shared by the bidding core."""

    anti_snipe_window_seconds: int = 15
    extension_seconds: int = 15
    max_timer_extensions: int = 10
    default_min_increment: Decimal = Decimal("1.00")
    default_duration_seconds: int = 300
    auto_bid_max_steps: int = 100

    @classmethod
    def from_env(cls) -> "AuctionRules":
        return cls(
            anti_snipe_window_seconds=int(os.getenv("ANTI_SNIPE_WINDOW_SECONDS", "15")),
            extension_seconds=int(os.getenv("ANTI_SNIPE_EXTENSION_SECONDS", "15")),
            max_timer_extensions=int(os.getenv("MAX_TIMER_EXTENSIONS", "10")),
            default_min_increment=Decimal(os.getenv("DEFAULT_MIN_INCREMENT", "1.00")),
            default_duration_seconds=int(os.getenv("DEFAULT_DURATION_SECONDS", "300")),
            auto_bid_max_steps=int(os.getenv("AUTO_BID_MAX_STEPS", "100")),
        )
