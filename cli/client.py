import requests
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
import pytz
from .config import SERVER_URL, get_token, get_timezone


class AuctionClient:
    """Client for communicating with the auction server."""

    def __init__(self, server_url: Optional[str] = None):
        self.server_url = server_url or SERVER_URL
        self.token: Optional[str] = get_token()
        self.timezone = pytz.timezone(get_timezone())

    def _get_headers(self) -> Dict[str, str]:
        """Get headers with authentication."""
        if not self.token:
            raise ValueError("Not authenticated. Run 'live-auction auth' first.")
        return {"Authorization": f"Bearer {self.token}"}

    def _check(self, response: requests.Response):
        """Raise with the server's detail (rejection reason and message when present)."""
        if response.ok:
            return
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            response.raise_for_status()
            return
        if isinstance(detail, dict) and "reason" in detail:
            detail = f"{detail['reason']}: {detail.get('message', '')}"
        raise requests.exceptions.HTTPError(f"{response.status_code} {response.reason}: {detail}", response=response)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = requests.request(method, f"{self.server_url}{path}", headers=self._get_headers(), **kwargs)
        self._check(response)
        return response.json()

    def authenticate(self, username: str, password: str, role: str = "buyer") -> str:
        """Authenticate and return token."""
        response = requests.post(
            f"{self.server_url}/auth",
            json={"username": username, "password": password, "role": role}
        )
        self._check(response)
        self.token = response.json()["token"]
        return self.token

    # Auctions and bids

    def create_auction(self, product_id: str, starting_bid: Decimal, **options) -> Dict[str, Any]:
        payload = {"product_id": product_id, "starting_bid": str(starting_bid)}
        payload.update({k: str(v) if isinstance(v, Decimal) else v for k, v in options.items() if v is not None})
        return self._request("POST", "/auctions", json=payload)

    def list_auctions(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"status": status} if status else None
        return self._request("GET", "/auctions", params=params)

    def get_auction(self, auction_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/auctions/{auction_id}")

    def auction_command(self, auction_id: int, command: str) -> Dict[str, Any]:
        """start, end or cancel."""
        return self._request("POST", f"/auctions/{auction_id}/{command}")

    def get_ledger(self, auction_id: int) -> List[Dict[str, Any]]:
        return self._request("GET", f"/auctions/{auction_id}/bids")

    def get_events(self, auction_id: int, since: int = 0) -> List[Dict[str, Any]]:
        return self._request("GET", f"/auctions/{auction_id}/events", params={"since": since})

    def place_bid(self, auction_id: int, amount: Decimal) -> Dict[str, Any]:
        return self._request("POST", "/bids", json={"auction_id": auction_id, "amount": str(amount)})

    def my_bids(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/bids/mine")

    # Auto-bids

    def set_auto_bid(self, auction_id: int, ceiling: Decimal, custom_increment: Optional[Decimal] = None) -> Dict[str, Any]:
        payload = {"auction_id": auction_id, "ceiling": str(ceiling)}
        if custom_increment is not None:
            payload["increment_strategy"] = "custom"
            payload["custom_increment"] = str(custom_increment)
        return self._request("POST", "/autobids", json=payload)

    def cancel_auto_bid(self, rule_id: int) -> Dict[str, Any]:
        return self._request("DELETE", f"/autobids/{rule_id}")

    def my_auto_bids(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/autobids/mine")

    # Streams and queue

    def create_stream(self, title: str) -> Dict[str, Any]:
        return self._request("POST", "/streams", json={"title": title})

    def get_stream(self, stream_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/streams/{stream_id}")

    def stream_command(self, stream_id: int, command: str) -> Any:
        """live, end or advance."""
        return self._request("POST", f"/streams/{stream_id}/{command}")

    def list_queue(self, stream_id: int) -> List[Dict[str, Any]]:
        return self._request("GET", f"/streams/{stream_id}/queue")

    def add_queue_item(self, stream_id: int, product_id: str, starting_bid: Decimal,
                       duration_seconds: Optional[int] = None) -> Dict[str, Any]:
        payload = {"product_id": product_id, "starting_bid": str(starting_bid)}
        if duration_seconds:
            payload["duration_seconds"] = duration_seconds
        return self._request("POST", f"/streams/{stream_id}/queue", json=payload)

    def add_queue_items_bulk(self, stream_id: int, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._request("POST", f"/streams/{stream_id}/queue/bulk", json={"items": items})

    def queue_command(self, stream_id: int, product_id: str, command: str) -> Dict[str, Any]:
        """pin, start, sold or passed."""
        return self._request("POST", f"/streams/{stream_id}/queue/{product_id}/{command}")

    # Display helpers

    def to_local_time(self, utc_time_str: str) -> str:
        """Convert UTC time string to local timezone string."""
        dt_utc = datetime.fromisoformat(utc_time_str.replace("Z", "+00:00"))
        if dt_utc.tzinfo is None:
            dt_utc = pytz.UTC.localize(dt_utc)
        return dt_utc.astimezone(self.timezone).strftime("%Y-%m-%d %H:%M:%S")

    def time_remaining(self, ends_at_utc: Optional[str]) -> str:
        """Countdown for a live auction: "4m 05s", "12s", or "Ended"."""
        if not ends_at_utc:
            return "-"
        dt_end = datetime.fromisoformat(ends_at_utc.replace("Z", "+00:00"))
        if dt_end.tzinfo is None:
            dt_end = pytz.UTC.localize(dt_end)

        seconds = int((dt_end - datetime.now(pytz.UTC)).total_seconds())
        if seconds <= 0:
            return "Ended"
        if seconds < 60:
            return f"{seconds}s"
        if seconds < 3600:
            return f"{seconds // 60}m {seconds % 60:02d}s"
        return f"{seconds // 3600}h {(seconds % 3600) // 60:02d}m"
