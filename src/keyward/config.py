"""Runtime configuration, read from ``KEYWARD_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


DEFAULT_HOME = Path.home() / ".keyward"
DEFAULT_RELAYS = ["wss://relay.nsec.app"]
DEFAULT_WALLET_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
    "wss://nostr.wine",
]
DEFAULT_API_URL = "http://localhost:3333"
DEFAULT_APP_NAME = "keyward"
DEFAULT_HANDSHAKE_TIMEOUT = 45.0
SESSION_TTL_SECONDS = 24 * 3600


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class KeywardConfig:
    home: Path = DEFAULT_HOME
    relays: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    wallet_relays: list[str] = field(default_factory=lambda: list(DEFAULT_WALLET_RELAYS))
    api_url: str = DEFAULT_API_URL
    auth_enabled: bool = False
    api_key: Optional[str] = None
    app_name: str = DEFAULT_APP_NAME
    app_url: str = DEFAULT_API_URL
    login_url: str = "/login"
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    session_ttl_seconds: int = SESSION_TTL_SECONDS
    request_timeout: float = 30.0

    @property
    def session_dir(self) -> Path:
        return self.home / "session"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / ".keyward-secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls) -> "KeywardConfig":
        home = Path(os.getenv("KEYWARD_HOME") or (Path.home() / ".keyward"))
        api_url = os.getenv("KEYWARD_API_URL", DEFAULT_API_URL).rstrip("/")
        return cls(
            home=home,
            relays=_env_list("KEYWARD_RELAYS", DEFAULT_RELAYS),
            wallet_relays=_env_list("KEYWARD_WALLET_RELAYS", DEFAULT_WALLET_RELAYS),
            api_url=api_url,
            auth_enabled=_env_bool("KEYWARD_ENABLE_AUTHENTICATION", False),
            api_key=os.getenv("KEYWARD_API_KEY") or None,
            app_name=os.getenv("KEYWARD_APP_NAME", DEFAULT_APP_NAME),
            app_url=os.getenv("KEYWARD_APP_URL", api_url),
            login_url=os.getenv("KEYWARD_LOGIN_URL", "/login"),
            handshake_timeout=float(
                os.getenv("KEYWARD_HANDSHAKE_TIMEOUT", str(DEFAULT_HANDSHAKE_TIMEOUT))
            ),
        )
