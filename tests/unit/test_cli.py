import pytest
from unittest.mock import patch
from click.testing import CliRunner

from cli.main import cli


@patch("cli.main.AuctionClient")
def test_bid_accepted(mock_client_cls):
    client = mock_client_cls.return_value
    client.place_bid.return_value = {"amount": "25.00", "extended": False, "auto_bids_placed": 0}

    result = CliRunner().invoke(cli, ["bid", "7", "$25"])

    assert result.exit_code == 0
    assert "Bid accepted: $25.00" in result.output
    args = client.place_bid.call_args.args
    assert args[0] == 7
    assert str(args[1]) == "25"


@patch("cli.main.AuctionClient")
def test_bid_reports_proxy_response(mock_client_cls):
    mock_client_cls.return_value.place_bid.return_value = {
        "amount": "20.00", "extended": False, "auto_bids_placed": 1, "high_bid": "21.00", "high_bidder_id": "buyer-1"
    }

    result = CliRunner().invoke(cli, ["bid", "7", "20"])

    assert "high bid now $21.00 by buyer-1" in result.output


@patch("cli.main.AuctionClient")
def test_bid_invalid_amount(mock_client_cls):
    result = CliRunner().invoke(cli, ["bid", "7", "lots"])
    assert result.exit_code == 1
    mock_client_cls.return_value.place_bid.assert_not_called()


@patch("cli.main.AuctionClient")
def test_bid_rejected(mock_client_cls):
    mock_client_cls.return_value.place_bid.side_effect = Exception("409 Conflict: BidTooLow: too low")

    result = CliRunner().invoke(cli, ["bid", "7", "11"])

    assert result.exit_code == 1
    assert "BidTooLow" in result.output


@patch("cli.main.AuctionClient")
def test_queue_add_bulk(mock_client_cls):
    client = mock_client_cls.return_value
    client.add_queue_items_bulk.return_value = {
        "queued": [{"product_id": "lamp", "display_order": 1}],
        "errors": [{"product_id": "chair", "error": "Product chair is already queued"}],
    }

    result = CliRunner().invoke(cli, ["queue", "add-bulk", "3"], input="lamp 10\nchair 25 60\nlamp 12\nrug cheap\n")

    assert result.exit_code == 0
    sent = client.add_queue_items_bulk.call_args.args[1]
    assert sent == [
        {"product_id": "lamp", "starting_bid": "10"},
        {"product_id": "chair", "starting_bid": "25", "duration_seconds": 60},
    ]
    assert "Processed: 4  Queued: 1  Errors: 2  Duplicates: 1" in result.output


@patch("cli.main.AuctionClient")
def test_queue_advance_exhausted(mock_client_cls):
    mock_client_cls.return_value.stream_command.return_value = None
    result = CliRunner().invoke(cli, ["queue", "advance", "3"])
    assert "Queue exhausted." in result.output


@patch("cli.main.AuctionClient")
def test_auction_end(mock_client_cls):
    mock_client_cls.return_value.auction_command.return_value = {"status": "sold"}

    result = CliRunner().invoke(cli, ["auction", "end", "9"])

    assert result.exit_code == 0
    mock_client_cls.return_value.auction_command.assert_called_once_with(9, "end")
    assert "Auction 9 ended (sold)" in result.output


def test_timezone_rejects_unknown_zone():
    result = CliRunner().invoke(cli, ["timezone", "Mars/Olympus"])
    assert result.exit_code == 1


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    import cli.config as config
    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(config, "CONFIG_FILE", tmp_path / "config.json")
    monkeypatch.setattr(config, "TOKEN_FILE", tmp_path / "token.txt")
    return tmp_path


@patch("cli.main.AuctionClient")
def test_auth_then_whoami(mock_client_cls, config_dir):
    mock_client_cls.return_value.authenticate.return_value = "tok-123"

    result = CliRunner().invoke(cli, ["auth", "--username", "sam", "--password", "pw", "--role", "seller"])
    assert result.exit_code == 0
    assert (config_dir / "token.txt").read_text() == "tok-123"

    result = CliRunner().invoke(cli, ["whoami"])
    assert result.output.strip() == "sam (seller)"


def test_whoami_without_token(config_dir):
    result = CliRunner().invoke(cli, ["whoami"])
    assert result.exit_code == 1


def test_timezone_is_saved(config_dir):
    from cli.config import get_timezone

    result = CliRunner().invoke(cli, ["timezone", "Europe/Paris"])

    assert result.exit_code == 0
    assert get_timezone() == "Europe/Paris"
