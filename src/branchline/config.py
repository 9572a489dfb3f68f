"""Configuration for branchline.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./branchline.yaml``
  3. ``~/.config/branchline/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ServerSpec:
    """Where the Ollama server lives and how long to wait for it."""

    base_url: str = "http://localhost:11434"
    timeout_ms: float = 120000
    enable_retry: bool = True


@dataclass
class RetrySpec:
    """Backoff for non-streaming requests.  Streams are never retried."""

    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_multiplier: float = 2


@dataclass
class StorageSpec:
    db_path: str = "~/.branchline/chat.db"

    @property
    def resolved_path(self) -> str:
        if self.db_path == ":memory:":
            return self.db_path
        return str(Path(self.db_path).expanduser())


@dataclass
class StreamingSpec:
    """Throttling applied above the tree engine while a reply streams."""

    append_interval_ms: float = 50
    context_throttle_ms: float = 500


@dataclass
class BranchlineConfig:
    """Top-level config."""

    server: ServerSpec = field(default_factory=ServerSpec)
    retry: RetrySpec = field(default_factory=RetrySpec)
    storage: StorageSpec = field(default_factory=StorageSpec)
    streaming: StreamingSpec = field(default_factory=StreamingSpec)

    # Used when a conversation does not name its own model
    default_model: str = "llama3.2"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./branchline.yaml"),
    Path.home() / ".config" / "branchline" / "config.yaml",
]


def _parse_section(cls: type, raw: Any) -> Any:
    """Build dataclass *cls* from a mapping, ignoring unknown keys."""
    if not isinstance(raw, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in raw.items() if k in known and v is not None}
    unknown = set(raw) - known
    if unknown:
        _logger.debug("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**kwargs)


def parse_config(raw: dict[str, Any]) -> BranchlineConfig:
    """Build a ``BranchlineConfig`` from an already-loaded mapping."""
    return BranchlineConfig(
        server=_parse_section(ServerSpec, raw.get("server")),
        retry=_parse_section(RetrySpec, raw.get("retry")),
        storage=_parse_section(StorageSpec, raw.get("storage")),
        streaming=_parse_section(StreamingSpec, raw.get("streaming")),
        default_model=raw.get("default_model") or "llama3.2",
    )


def load_config(path: str | Path | None = None) -> BranchlineConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    BranchlineConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return BranchlineConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return BranchlineConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return parse_config(raw)
