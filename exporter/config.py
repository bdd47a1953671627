"""
config.py - Exporter configuration.

Loaded from a TOML file and validated with pydantic. The polling loop
re-reads the file at the start of every cycle so whitelist edits take effect
on the next cycle.
"""

import logging
import tomllib
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger("config")

CONFIG_FILE_NAME = "config.toml"


class MaxMindCredentials(BaseModel):
    """Basic-auth credentials for the MaxMind GeoIP2 web service."""

    username: str
    password: str


class ExporterConfig(BaseModel):
    """Validated exporter settings."""

    rpc: str = "http://localhost:8899"
    target: str = "0.0.0.0:9179"
    pubkey_whitelist: List[str] = Field(default_factory=list)
    maxmind: Optional[MaxMindCredentials] = None
    poll_interval_sec: float = Field(default=10.0, gt=0)
    apy_window: int = Field(default=5, ge=1)
    rpc_timeout_sec: float = Field(default=30.0, gt=0)
    geo_concurrency: int = Field(default=8, ge=1)

    @field_validator("target")
    @classmethod
    def _check_target(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not port.isdigit() or not (1 <= int(port) <= 65535):
            raise ValueError(f"target must be HOST:PORT, got {value!r}")
        return value

    @property
    def target_host(self) -> str:
        return self.target.rpartition(":")[0] or "0.0.0.0"

    @property
    def target_port(self) -> int:
        return int(self.target.rpartition(":")[2])


def load_config(path: str) -> ExporterConfig:
    """Read and validate a TOML config file. Raises ValueError on bad input."""
    try:
        with open(path, "rb") as fh:
            raw = tomllib.load(fh)
    except OSError as e:
        raise ValueError(f"cannot read config {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"invalid TOML in {path}: {e}") from e
    try:
        return ExporterConfig.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"invalid config {path}: {e}") from e


class ConfigWatcher:
    """Keeps the last good configuration, reloading from disk on demand."""

    def __init__(self, path: Optional[str], initial: ExporterConfig):
        self.path = path
        self.current = initial

    @classmethod
    def from_path(cls, path: Optional[str]) -> "ConfigWatcher":
        if path is None:
            return cls(None, ExporterConfig())
        if not Path(path).exists():
            raise SystemExit(f"Config file not found: {path}")
        try:
            return cls(path, load_config(path))
        except ValueError as e:
            raise SystemExit(str(e))

    def reload(self) -> ExporterConfig:
        if self.path is None:
            return self.current
        try:
            self.current = load_config(self.path)
        except ValueError as e:
            logger.warning("Keeping previous configuration: %s", e)
        return self.current
