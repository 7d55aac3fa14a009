"""
Configuration management for logbridge.

Settings come from ~/.mcp-logs/bridge-config.json when present, then from
environment variables, which take priority.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_ROOT = Path.home() / ".mcp-logs"
CONFIG_PATH = DEFAULT_ROOT / "bridge-config.json"

# Sub-directory holding page-connection sessions.
PAGE_NAMESPACE = "browser"


def _filter_dataclass_fields(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter dict to only include fields that exist in the dataclass."""
    valid_fields = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid_fields}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}, using {default}")
        return default


@dataclass
class BridgeConfig:
    """
    Complete logbridge configuration.

    retention_days decides both archive-vs-delete at finalize time (0 deletes)
    and how long archived logs are kept. stale_minutes is the age after which
    an active session with no recent writes is force-finalized.
    """

    root: str = str(DEFAULT_ROOT)
    retention_days: int = 1
    stale_minutes: int = 60
    rate_limit_per_second: int = 200
    max_frame_bytes: int = 512 * 1024
    lock_timeout_seconds: float = 5.0
    lock_poll_seconds: float = 0.01
    lock_stale_seconds: float = 30.0
    sweep_interval_seconds: float = 0.0

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser()

    @property
    def page_root_path(self) -> Path:
        return self.root_path / PAGE_NAMESPACE

    @property
    def archive_on_finalize(self) -> bool:
        return self.retention_days > 0

    @classmethod
    def load(cls, path: Path | None = None) -> "BridgeConfig":
        """
        Load configuration from file, then apply environment overrides.

        Args:
            path: Optional config file path. Defaults to ~/.mcp-logs/bridge-config.json

        Returns:
            BridgeConfig with file values merged over defaults
        """
        if path is None:
            path = CONFIG_PATH

        data: dict[str, Any] = {}
        if path.exists():
            try:
                data = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Could not read config {path}: {e}; using defaults")
                data = {}

        config = cls(**_filter_dataclass_fields(data, cls))
        config.apply_env()
        return config

    def apply_env(self) -> None:
        """Apply environment variable overrides in place."""
        home = os.getenv("LOGBRIDGE_HOME")
        if home:
            self.root = home
        self.retention_days = max(0, _env_int("AI_KEEP_LOGS", self.retention_days))
        self.stale_minutes = max(1, _env_int("LOGBRIDGE_STALE_MINUTES", self.stale_minutes))
        self.rate_limit_per_second = max(1, _env_int("LOGBRIDGE_RATE_LIMIT", self.rate_limit_per_second))
        self.max_frame_bytes = max(1, _env_int("LOGBRIDGE_MAX_FRAME_BYTES", self.max_frame_bytes))

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)


def ensure_storage(root: Path) -> Path:
    """
    Create the storage tree under root and check that it is writable.

    Raises:
        StorageUnavailableError: If the directories cannot be created or written
    """
    root = Path(root).expanduser()
    try:
        for sub in ("active", "archive", ".locks"):
            (root / sub).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageUnavailableError(str(root), str(e)) from e

    if not os.access(root, os.W_OK) or not os.access(root / "active", os.W_OK):
        raise StorageUnavailableError(str(root), "directory is not writable")
    return root


# Default configuration instance
default_config = BridgeConfig()


__all__ = [
    "BridgeConfig",
    "CONFIG_PATH",
    "DEFAULT_ROOT",
    "PAGE_NAMESPACE",
    "default_config",
    "ensure_storage",
]
