from dataclasses import dataclass
from .errors import PermissionDenied

BUYER = "buyer"
SELLER = "seller"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, passed explicitly into every core operation."""

    user_id: str
    role: str = BUYER

    @property
    def is_seller(self) -> bool:
        return self.role == SELLER


def require_seller(actor: Actor):
    if not actor.is_seller:
        raise PermissionDenied("Seller account required")


def require_owner(actor: Actor, owner_id: str, what: str = "resource"):
    """Seller-only mutation on something the caller must own."""
    require_seller(actor)
    if owner_id != actor.user_id:
        raise PermissionDenied(f"You do not own this {what}")
