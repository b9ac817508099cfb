"""Configuration helpers for the check-in relay and client."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

from dotenv import load_dotenv

from . import crypto
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "tcp://127.0.0.1:9000"


@dataclass(slots=True)
class Settings:
    """Runtime configuration values loaded from environment variables."""

    signing_secret: str
    relay_url: str = DEFAULT_RELAY_URL
    cooldown_period_minutes: float = 10.0
    max_message_chars: int = 42
    max_history_size: int = 100
    signature_window_seconds: float = 300.0
    relay_tokens: Dict[str, str] = field(default_factory=dict)
    avatar_template: Optional[str] = None
    snippets_path: Optional[Path] = None
    auth_token: Optional[str] = None
    log_level: str = "INFO"

    @property
    def cooldown_period(self) -> float:
        """Cooldown in seconds."""
        return self.cooldown_period_minutes * 60.0

    def avatar_for(self, identity: str) -> Optional[str]:
        if not self.avatar_template:
            return None
        return self.avatar_template.format(identity=identity)


def parse_relay_url(url: str) -> Tuple[str, int]:
    """`tcp://host:port` -> (host, port)."""
    parts = urlsplit(url)
    if parts.scheme != "tcp":
        raise ConfigurationError(f"relay URL must use tcp://, got {url!r}")
    try:
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"relay URL has an invalid port: {url!r}") from exc
    if not parts.hostname or port is None:
        raise ConfigurationError(f"relay URL needs host and port: {url!r}")
    return parts.hostname, port


def parse_tokens(raw: Optional[str]) -> Dict[str, str]:
    """'tok1=alice,tok2=bob' -> {'tok1': 'alice', 'tok2': 'bob'}."""
    tokens: Dict[str, str] = {}
    if not raw:
        return tokens
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        token, sep, identity = item.partition("=")
        if not sep or not token or not identity:
            raise ConfigurationError(f"CHECKINS_RELAY_TOKENS entry must be token=identity, got {item!r}")
        tokens[token.strip()] = identity.strip()
    return tokens


def _number(name: str, default: str, cast):
    raw = os.getenv(name, default)
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def load_settings(env_file: str | None = None) -> Settings:
    """Load settings from the environment, optionally from a specific file."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    secret = os.getenv("CHECKINS_SIGNING_SECRET")
    if not secret:
        raise ConfigurationError("CHECKINS_SIGNING_SECRET must be configured")
    if len(secret.encode("utf-8")) < crypto.MIN_SECRET_BYTES:
        logger.warning("CHECKINS_SIGNING_SECRET is shorter than %d bytes", crypto.MIN_SECRET_BYTES)

    relay_url = os.getenv("CHECKINS_RELAY_URL", DEFAULT_RELAY_URL)
    parse_relay_url(relay_url)

    snippets = os.getenv("CHECKINS_SNIPPETS_PATH")

    return Settings(
        signing_secret=secret,
        relay_url=relay_url,
        cooldown_period_minutes=_number("CHECKINS_COOLDOWN_MINUTES", "10", float),
        max_message_chars=_number("CHECKINS_MAX_MESSAGE_CHARS", "42", int),
        max_history_size=_number("CHECKINS_MAX_HISTORY", "100", int),
        signature_window_seconds=_number("CHECKINS_SIGNATURE_WINDOW", "300", float),
        relay_tokens=parse_tokens(os.getenv("CHECKINS_RELAY_TOKENS")),
        avatar_template=os.getenv("CHECKINS_AVATAR_TEMPLATE") or None,
        snippets_path=Path(snippets).expanduser() if snippets else None,
        auth_token=os.getenv("CHECKINS_AUTH_TOKEN") or None,
        log_level=os.getenv("CHECKINS_LOG_LEVEL", "INFO").upper(),
    )


__all__ = ["Settings", "load_settings", "parse_relay_url", "parse_tokens"]
