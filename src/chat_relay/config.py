"""Configuration for Chat Relay.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./chat_relay.yaml``
  3. ``~/.config/chat-relay/config.yaml``
  4. Built-in defaults

Secrets never live in the file by default: the upstream credential is read
from the environment variable named by ``upstream.api_key_env`` on every
request, so rotating it does not need a restart.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class UpstreamSpec:
    """The chat-completion service the relay forwards to."""

    url: str = "https://api.deepseek.com/v1"
    model: str = "deepseek-chat"
    api_key: str = ""
    api_key_env: str = "DEEPSEEK_API_KEY"
    model_env: str = "MODEL_NAME"
    temperature: float = 0.9
    max_tokens: int = 2048
    timeout: float = 120
    connect_timeout: float = 30
    read_timeout: float = 60

    def resolve_api_key(self) -> str | None:
        """Return the credential, or None when it is not configured."""
        return os.environ.get(self.api_key_env) or self.api_key or None

    def resolve_model(self) -> str:
        return os.environ.get(self.model_env) or self.model


@dataclass
class ServerSpec:
    host: str = "127.0.0.1"
    port: int = 3001
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "info"


@dataclass
class ClientSpec:
    """Settings for the relay client and its render loop."""

    base_url: str = "http://localhost:3001"
    timeout: float = 120
    frame_interval: float = 1 / 60  # one render per display refresh
    max_retries: int = 3
    backoff_base: float = 1  # seconds -- exponential: 1, 2, 4


@dataclass
class StorageSpec:
    db_path: str = "~/.chat_relay/conversations.db"
    keep_conversations: int = 50
    title_length: int = 20


@dataclass
class RelayConfig:
    """Top-level config for Chat Relay."""

    upstream: UpstreamSpec = field(default_factory=UpstreamSpec)
    server: ServerSpec = field(default_factory=ServerSpec)
    client: ClientSpec = field(default_factory=ClientSpec)
    storage: StorageSpec = field(default_factory=StorageSpec)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./chat_relay.yaml"),
    Path.home() / ".config" / "chat-relay" / "config.yaml",
]


def _parse_section(cls: type, raw: dict[str, Any] | None) -> Any:
    """Build dataclass *cls* from *raw*, ignoring unknown and null keys."""
    if not raw:
        return cls()
    known = {
        k: v for k, v in raw.items()
        if v is not None and k in cls.__dataclass_fields__
    }
    unknown = sorted(set(raw) - set(cls.__dataclass_fields__))
    if unknown:
        _logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return cls(**known)


def _apply_env(config: RelayConfig) -> RelayConfig:
    port = os.environ.get("PORT")
    if port:
        try:
            config.server.port = int(port)
        except ValueError:
            _logger.warning("Ignoring non-numeric PORT=%r", port)
    return config


def load_config(path: str | Path | None = None) -> RelayConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    RelayConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s - using defaults", path)
            return _apply_env(RelayConfig())
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found - using defaults")
        return _apply_env(RelayConfig())

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return _apply_env(RelayConfig(
        upstream=_parse_section(UpstreamSpec, raw.get("upstream")),
        server=_parse_section(ServerSpec, raw.get("server")),
        client=_parse_section(ClientSpec, raw.get("client")),
        storage=_parse_section(StorageSpec, raw.get("storage")),
    ))
