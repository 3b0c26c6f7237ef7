"""
Configuration management for smriti index stores.

The configuration is stored as a TOML file in the store directory.
It specifies the history source and the ingestion and ranking policy.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "smriti.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIRNAME = ".smriti"


def get_default_store_path() -> Path:
    """Store directory: SMRITI_STORE_PATH if set, else ~/.smriti."""
    env = os.environ.get("SMRITI_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIRNAME


@dataclass
class ProviderConfig:
    """Configuration for a single pluggable collaborator."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestConfig:
    """Ingestion policy."""
    # Most recent history entries requested per bulk pass
    history_window: int = 50_000
    # Quiet period after the last visit before an ingest runs
    debounce_seconds: float = 10.0
    # Bounded wait on the history source; a timeout yields no new items
    history_timeout: float = 30.0
    # Apply RFC 3986 normalization to http(s) URLs before keying items
    canonicalize_urls: bool = False


@dataclass
class SearchConfig:
    """Ranking policy. Weights are per matched query token."""
    limit: int = 50
    title_exact: float = 4.0
    other_exact: float = 3.0
    title_prefix: float = 2.0
    other_prefix: float = 1.0
    infix: float = 0.5
    min_infix_length: int = 1


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    ingest: IngestConfig = field(default_factory=IngestConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    history: ProviderConfig = field(default_factory=lambda: ProviderConfig("none"))

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def index_path(self) -> Path:
        """Path to the SQLite index database."""
        return self.path / "index.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _section(cls, data: dict):
    """Build a policy dataclass from a TOML table, ignoring unknown keys."""
    known = cls.__dataclass_fields__
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            continue
        default = known[key].default
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ValueError(f"Config value {key!r} must be true or false")
        elif isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Config value {key!r} must be a number")
            value = int(value) if isinstance(default, int) else float(value)
        kwargs[key] = value
    return cls(**kwargs)


def _validate(config: StoreConfig) -> None:
    if config.ingest.history_window < 1:
        raise ValueError("ingest.history_window must be at least 1")
    if config.ingest.debounce_seconds < 0:
        raise ValueError("ingest.debounce_seconds must not be negative")
    if config.ingest.history_timeout <= 0:
        raise ValueError("ingest.history_timeout must be positive")
    if config.search.limit < 1:
        raise ValueError("search.limit must be at least 1")


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    history = data.get("history", {"name": "none"})
    config = StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        ingest=_section(IngestConfig, data.get("ingest", {})),
        search=_section(SearchConfig, data.get("search", {})),
        history=ProviderConfig(
            name=history.get("name", "none"),
            params={k: v for k, v in history.items() if k != "name"},
        ),
    )
    _validate(config)
    return config


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    from dataclasses import asdict

    config.path.mkdir(parents=True, exist_ok=True)

    history = {"name": config.history.name}
    history.update(config.history.params)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "ingest": asdict(config.ingest),
        "search": asdict(config.search),
        "history": history,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = StoreConfig(path=store_path)
        save_config(config)
        return config
