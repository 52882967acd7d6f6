"""
Configuration for the serial link engine and the WebSocket bridge.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_PORT = "/dev/ttyUSB0"
DEFAULT_BAUD = 9600


@dataclass(slots=True)
class LinkConfig:
    """Serial port and reliability policy."""
    port: str = DEFAULT_PORT
    baud: int = DEFAULT_BAUD
    rtscts: bool = True
    read_size: int = 128
    read_timeout_s: float = 0.05
    write_timeout_s: float = 0.5
    retry_interval_s: float = 0.5  # age before an unconfirmed message is re-sent
    max_retries: int = 3  # re-sends before a DeliveryFailure
    sweep_period_s: float = 0.1
    sync_timeout_s: float = 2.0
    log_period_ms: int = 1000  # periodic telemetry log interval

    def __post_init__(self) -> None:
        if self.retry_interval_s <= 0:
            raise ValueError("retry_interval_s must be > 0")
        if self.sweep_period_s <= 0:
            raise ValueError("sweep_period_s must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.read_size <= 0:
            raise ValueError("read_size must be > 0")
        if self.log_period_ms <= 0:
            raise ValueError("log_period_ms must be > 0")


@dataclass(slots=True)
class ServerConfig:
    """WebSocket bridge configuration."""
    host: str = "0.0.0.0"
    port: int = 8765
    telemetry_hz: float = 5.0


@dataclass(slots=True)
class GroundStationConfig:
    link: LinkConfig = field(default_factory=LinkConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GroundStationConfig":
        data = data or {}
        config = cls()
        if "link" in data:
            config.link = LinkConfig(**_known(LinkConfig, data["link"]))
        if "server" in data:
            config.server = ServerConfig(**_known(ServerConfig, data["server"]))
        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "GroundStationConfig":
        """Load configuration from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {"link": asdict(self.link), "server": asdict(self.server)}

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def _known(cls, section: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    unknown = set(section or {}) - names
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return dict(section or {})
