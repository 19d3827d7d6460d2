#!/usr/bin/env python3
import click
import time
import pytz
from decimal import Decimal
from .client import AuctionClient
from .config import save_session, get_identity, set_timezone
from .bulk_parser import parse_bulk_input, parse_amount
import sys


def _money(value) -> str:
    if value is None:
        return "-"
    return f"${Decimal(str(value)):.2f}"


def _amount_arg(text: str) -> Decimal:
    amount = parse_amount(text)
    if amount is None:
        raise click.BadParameter(f"Invalid amount: {text}")
    return amount


def _print_table(headers, rows, min_width: int = 6):
    """Print rows in a box-drawn table."""
    col_widths = [
        max([len(headers[i]), min_width] + [len(str(row[i])) for row in rows])
        for i in range(len(headers))
    ]

    def build_separator(left, middle, right, widths):
        return left + middle.join("─" * (w + 2) for w in widths) + right

    click.echo(build_separator("┌", "┬", "┐", col_widths))
    click.echo("│ " + " │ ".join(f"{headers[i]:<{col_widths[i]}}" for i in range(len(headers))) + " │")
    click.echo(build_separator("├", "┼", "┤", col_widths))
    for row in rows:
        click.echo("│ " + " │ ".join(f"{str(row[i]):<{col_widths[i]}}" for i in range(len(row))) + " │")
    click.echo(build_separator("└", "┴", "┘", col_widths))


def _fail(action: str, e: Exception):
    click.echo(f"Failed to {action}: {e}", err=True)
    sys.exit(1)


@click.group()
def cli():
    """Live Auction CLI"""
    pass


@cli.command()
@click.option("--username", prompt="Username")
@click.option("--password", prompt="Password", hide_input=True)
@click.option("--role", type=click.Choice(["buyer", "seller"]), default="buyer", show_default=True)
def auth(username, password, role):
    """Authenticate with the server."""
    try:
        client = AuctionClient()
        token = client.authenticate(username, password, role)
        save_session(token, username, role)
        click.echo(f"Authenticated as {username} ({role})")
    except Exception as e:
        click.echo(f"Authentication failed: {e}", err=True)
        sys.exit(1)


@cli.command()
def whoami():
    """Show who the stored token belongs to."""
    identity = get_identity()
    if identity is None:
        click.echo("Not authenticated. Run: live-auction auth", err=True)
        sys.exit(1)
    click.echo(f"{identity['username']} ({identity['role']})")


@cli.command()
@click.argument("tz_name")
def timezone(tz_name):
    """Set the timezone used to display times."""
    if tz_name not in pytz.all_timezones_set:
        click.echo(f"Unknown timezone: {tz_name}", err=True)
        sys.exit(1)
    set_timezone(tz_name)
    click.echo(f"Timezone set to {tz_name}")


@cli.command()
@click.argument("auction_id", type=int)
@click.argument("amount", type=str)
def bid(auction_id, amount):
    """Place a bid on an auction."""
    try:
        client = AuctionClient()
        result = client.place_bid(auction_id, _amount_arg(amount))
        if result.get("sold_via_buyout"):
            click.echo(f"Bought it! Auction {auction_id} sold to you at {_money(result['amount'])}")
            return
        click.echo(f"Bid accepted: {_money(result['amount'])}")
        if result.get("extended"):
            click.echo(f"Clock extended, ends at {client.to_local_time(result['ends_at'])}")
        if result.get("auto_bids_placed"):
            click.echo(f"Auto-bids responded: high bid now {_money(result['high_bid'])} by {result['high_bidder_id']}")
    except click.BadParameter as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    except Exception as e:
        _fail("place bid", e)


@cli.command()
@click.argument("auction_id", type=int, required=False)
def status(auction_id):
    """Show one auction, or list all auctions."""
    try:
        client = AuctionClient()
        if auction_id is None:
            auctions = client.list_auctions()
            if not auctions:
                click.echo("No auctions found.")
                return
            rows = [
                (
                    a["id"], a["product_id"], a["status"], _money(a["current_bid"]),
                    a.get("current_bidder_id") or "-", a["bid_count"], client.time_remaining(a.get("ends_at"))
                )
                for a in auctions
            ]
            _print_table(["ID", "Product", "Status", "Current", "Leader", "Bids", "Ends"], rows)
            return

        a = client.get_auction(auction_id)
        rows = [
            ("ID", a["id"]),
            ("Product", a["product_id"]),
            ("Seller", a["seller_id"]),
            ("Stream", a.get("stream_id") or "-"),
            ("Status", a["status"]),
            ("Mode", a["mode"]),
            ("Current Bid", _money(a["current_bid"])),
            ("High Bidder", a.get("current_bidder_id") or "-"),
            ("Bids", a["bid_count"]),
            ("Min Increment", _money(a["min_increment"])),
            ("Reserve", "met" if a["reserve_met"] else ("not met" if a.get("reserve_price") else "-")),
            ("Buyout", _money(a.get("buyout_price"))),
            ("Ends At", client.to_local_time(a["ends_at"]) if a.get("ends_at") else "-"),
            ("Remaining", client.time_remaining(a.get("ends_at"))),
            ("Extensions", f"{a['timer_extensions']}/{a['max_timer_extensions']}"),
        ]
        if a.get("close_reason"):
            rows.append(("Close Reason", a["close_reason"]))
        _print_table(["Field", "Value"], rows, min_width=20)
    except Exception as e:
        _fail("get status", e)


@cli.command()
@click.argument("auction_id", type=int)
def bids(auction_id):
    """Show the bid ledger for an auction."""
    try:
        client = AuctionClient()
        entries = client.get_ledger(auction_id)
        if not entries:
            click.echo("No bids recorded for this auction.")
            return
        rows = [
            (
                e["id"], client.to_local_time(e["submitted_at"]), e["bidder_id"], _money(e["amount"]),
                e["source"], e["status"], e.get("rejection_reason") or ("buyout" if e["is_buyout"] else "-")
            )
            for e in entries
        ]
        _print_table(["ID", "Time", "Bidder", "Amount", "Source", "Result", "Note"], rows)
    except Exception as e:
        _fail("get bids", e)


@cli.command()
@click.argument("auction_id", type=int)
@click.option("--since", type=int, default=0, help="Only events after this sequence number")
@click.option("--follow", is_flag=True, help="Keep polling for new events")
@click.option("--interval", type=float, default=1.0, show_default=True)
def events(auction_id, since, follow, interval):
    """Show auction events (bids, extensions, closes)."""
    try:
        client = AuctionClient()
        while True:
            for event in client.get_events(auction_id, since):
                since = max(since, event["seq"])
                click.echo(
                    f"[{event['seq']}] {client.to_local_time(event['created_at'])} {event['type']}: "
                    f"{_money(event.get('current_bid'))} by {event.get('current_bidder_id') or '-'}, "
                    f"ends {client.time_remaining(event.get('ends_at'))}"
                )
            if not follow:
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        click.echo("\nStopped.", err=True)
    except Exception as e:
        _fail("get events", e)


@cli.group()
def auction():
    """Standalone auctions (sellers)."""
    pass


@auction.command("create")
@click.argument("product_id")
@click.argument("starting_bid", type=str)
@click.option("--increment", type=str, default=None)
@click.option("--duration", type=int, default=None, help="Seconds")
@click.option("--mode", type=click.Choice(["standard", "sudden_death"]), default="standard")
@click.option("--reserve", type=str, default=None)
@click.option("--buyout", type=str, default=None)
def auction_create(product_id, starting_bid, increment, duration, mode, reserve, buyout):
    """Create a scheduled auction for a product."""
    try:
        client = AuctionClient()
        result = client.create_auction(
            product_id, _amount_arg(starting_bid),
            min_increment=_amount_arg(increment) if increment else None,
            duration_seconds=duration,
            mode=mode,
            reserve_price=_amount_arg(reserve) if reserve else None,
            buyout_price=_amount_arg(buyout) if buyout else None,
        )
        click.echo(f"Auction {result['id']} created for {product_id} at {_money(result['starting_bid'])}")
    except Exception as e:
        _fail("create auction", e)


def _auction_command(command: str, done: str):
    @auction.command(command, help=f"{command.capitalize()} an auction.")
    @click.argument("auction_id", type=int)
    def run(auction_id):
        try:
            result = AuctionClient().auction_command(auction_id, command)
            click.echo(f"Auction {auction_id} {done} ({result['status']})")
        except Exception as e:
            _fail(f"{command} auction", e)
    return run


_auction_command("start", "started")
_auction_command("end", "ended")
_auction_command("cancel", "cancelled")


@cli.group()
def autobid():
    """Auto-bid (proxy) rules."""
    pass


@autobid.command("set")
@click.argument("auction_id", type=int)
@click.argument("ceiling", type=str)
@click.option("--increment", type=str, default=None, help="Custom step instead of the auction minimum")
def autobid_set(auction_id, ceiling, increment):
    """Bid for me up to CEILING."""
    try:
        client = AuctionClient()
        rule = client.set_auto_bid(auction_id, _amount_arg(ceiling), _amount_arg(increment) if increment else None)
        click.echo(f"Auto-bid {rule['id']} active up to {_money(rule['ceiling'])}")
        if rule.get("current_proxy_bid"):
            click.echo(f"Placed {_money(rule['current_proxy_bid'])} on your behalf")
        if not rule["is_active"]:
            click.echo(f"Rule deactivated: {rule.get('deactivation_reason')}")
    except Exception as e:
        _fail("set auto-bid", e)


@autobid.command("cancel")
@click.argument("rule_id", type=int)
def autobid_cancel(rule_id):
    """Deactivate one of your auto-bids."""
    try:
        AuctionClient().cancel_auto_bid(rule_id)
        click.echo(f"Auto-bid {rule_id} cancelled.")
    except Exception as e:
        _fail("cancel auto-bid", e)


@autobid.command("list")
def autobid_list():
    """List your auto-bids."""
    try:
        rules = AuctionClient().my_auto_bids()
        if not rules:
            click.echo("No auto-bids.")
            return
        rows = [
            (
                r["id"], r["auction_id"], _money(r["ceiling"]), _money(r.get("current_proxy_bid")),
                "active" if r["is_active"] else (r.get("deactivation_reason") or "inactive")
            )
            for r in rules
        ]
        _print_table(["ID", "Auction", "Ceiling", "Last Proxy", "State"], rows)
    except Exception as e:
        _fail("list auto-bids", e)


@cli.group()
def stream():
    """Live streams (sellers)."""
    pass


@stream.command("create")
@click.argument("title")
def stream_create(title):
    """Create a stream."""
    try:
        result = AuctionClient().create_stream(title)
        click.echo(f"Stream {result['id']} created: {result['title']}")
    except Exception as e:
        _fail("create stream", e)


@stream.command("live")
@click.argument("stream_id", type=int)
def stream_live(stream_id):
    """Take a stream live."""
    try:
        AuctionClient().stream_command(stream_id, "live")
        click.echo(f"Stream {stream_id} is live.")
    except Exception as e:
        _fail("go live", e)


@stream.command("end")
@click.argument("stream_id", type=int)
def stream_end(stream_id):
    """End a stream."""
    try:
        AuctionClient().stream_command(stream_id, "end")
        click.echo(f"Stream {stream_id} ended.")
    except Exception as e:
        _fail("end stream", e)


@cli.group()
def queue():
    """Stream product queue (sellers)."""
    pass


@queue.command("list")
@click.argument("stream_id", type=int)
def queue_list(stream_id):
    """Show a stream's queue."""
    try:
        client = AuctionClient()
        info = client.get_stream(stream_id)
        items = client.list_queue(stream_id)
        click.echo(f"{info['title']} ({info['status']})  pinned: {info.get('pinned_product_id') or '-'}")
        if not items:
            click.echo("Queue is empty.")
            return
        rows = [
            (i["display_order"], i["product_id"], i["status"], _money(i["starting_bid"]), i.get("auction_id") or "-")
            for i in items
        ]
        _print_table(["#", "Product", "Status", "Start", "Auction"], rows)
    except Exception as e:
        _fail("list queue", e)


@queue.command("add")
@click.argument("stream_id", type=int)
@click.argument("product_id")
@click.argument("starting_bid", type=str)
@click.option("--duration", type=int, default=None, help="Seconds")
def queue_add(stream_id, product_id, starting_bid, duration):
    """Queue a product on a stream."""
    try:
        item = AuctionClient().add_queue_item(stream_id, product_id, _amount_arg(starting_bid), duration)
        click.echo(f"Queued {product_id} at position {item['display_order']}")
    except Exception as e:
        _fail("queue product", e)


@queue.command("add-bulk")
@click.argument("stream_id", type=int)
def queue_add_bulk(stream_id):
    """Queue products from stdin.

    One product per line: product_id starting_bid [duration_seconds],
    separated by commas, tabs or spaces. Ignores blank lines and lines
    starting with #.
    """
    try:
        parsed = parse_bulk_input(sys.stdin.readlines())

        request_items = []
        for row_num, product_id, starting_bid, duration, _, error in parsed:
            if error is None:
                item = {"product_id": product_id, "starting_bid": str(starting_bid)}
                if duration:
                    item["duration_seconds"] = duration
                request_items.append(item)

        server_errors = {}
        queued = {}
        if request_items:
            response = AuctionClient().add_queue_items_bulk(stream_id, request_items)
            queued = {i["product_id"]: i for i in response["queued"]}
            server_errors = {e["product_id"]: e["error"] for e in response["errors"]}

        rows = []
        for row_num, product_id, starting_bid, duration, _, error in parsed:
            if error is None and product_id in queued:
                rows.append((row_num, product_id, _money(starting_bid), "Queued", queued[product_id]["display_order"], "-"))
            else:
                reason = error or server_errors.get(product_id, "Not processed")
                result = "Duplicate" if reason.startswith("Duplicate") else "Error"
                rows.append((row_num, product_id or "-", _money(starting_bid), result, "-", reason))

        added = sum(1 for r in rows if r[3] == "Queued")
        duplicates = sum(1 for r in rows if r[3] == "Duplicate")
        errors = len(rows) - added - duplicates
        click.echo(f"Processed: {len(rows)}  Queued: {added}  Errors: {errors}  Duplicates: {duplicates}\n")
        if rows:
            _print_table(["Row", "Product", "Start", "Result", "Position", "Reason"], rows)
    except KeyboardInterrupt:
        click.echo("\nCancelled.", err=True)
        sys.exit(1)
    except Exception as e:
        _fail("bulk queue products", e)


def _queue_command(command: str, done: str, doc: str):
    @queue.command(command, help=doc)
    @click.argument("stream_id", type=int)
    @click.argument("product_id")
    def run(stream_id, product_id):
        try:
            result = AuctionClient().queue_command(stream_id, product_id, command)
            if command == "start":
                click.echo(f"Auction {result['id']} live for {product_id}, ends {result['ends_at']}")
            else:
                click.echo(f"{product_id} {done}")
        except Exception as e:
            _fail(f"{command} {product_id}", e)
    return run


_queue_command("pin", "pinned", "Feature a product without starting bidding.")
_queue_command("start", "started", "Start bidding on a queued product.")
_queue_command("sold", "marked sold", "Close the product as sold.")
_queue_command("passed", "marked passed", "Close the product unsold.")


@queue.command("advance")
@click.argument("stream_id", type=int)
def queue_advance(stream_id):
    """Pin the next upcoming product."""
    try:
        item = AuctionClient().stream_command(stream_id, "advance")
        if item:
            click.echo(f"Pinned {item['product_id']}")
        else:
            click.echo("Queue exhausted.")
    except Exception as e:
        _fail("advance queue", e)


if __name__ == "__main__":
    cli()
