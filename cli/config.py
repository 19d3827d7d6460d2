import os
import json
from pathlib import Path
from typing import Optional, Dict, Any

CONFIG_DIR = Path(os.getenv("AUCTION_CONFIG_DIR", Path.home() / ".live-auction"))
CONFIG_FILE = CONFIG_DIR / "config.json"
TOKEN_FILE = CONFIG_DIR / "token.txt"
SERVER_URL = os.getenv("AUCTION_SERVER_URL", "http://localhost:8000")


def _read_config() -> Dict[str, Any]:
    if CONFIG_FILE.exists():
        return json.loads(CONFIG_FILE.read_text())
    return {}


def _update_config(**values):
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    config = _read_config()
    config.update(values)
    CONFIG_FILE.write_text(json.dumps(config, indent=2))


def get_token() -> Optional[str]:
    if TOKEN_FILE.exists():
        return TOKEN_FILE.read_text().strip() or None
    return None


def save_session(token: str, username: str, role: str):
    """Store the bearer token and who it was issued to."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    TOKEN_FILE.write_text(token)
    TOKEN_FILE.chmod(0o600)
    _update_config(username=username, role=role)


def get_identity() -> Optional[Dict[str, str]]:
    """The signed-in username and role, if any."""
    config = _read_config()
    if get_token() and config.get("username"):
        return {"username": config["username"], "role": config.get("role", "buyer")}
    return None


def set_timezone(tz_name: str):
    _update_config(timezone=tz_name)


def get_timezone() -> str:
    """Display timezone: configured, else the system zone from /etc/localtime, else UTC."""
    configured = _read_config().get("timezone")
    if configured:
        return configured

    localtime = Path("/etc/localtime")
    if localtime.exists():
        parts = localtime.resolve().parts
        for marker in ("zoneinfo", "zoneinfo.default"):
            if marker in parts:
                name = "/".join(parts[parts.index(marker) + 1:])
                if name:
                    return name
    return "UTC"
