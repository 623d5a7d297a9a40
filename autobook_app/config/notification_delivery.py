"""Configuration for notification senders."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class HttpSenderConfig:
    """Configuration for webhook delivery of notifications."""
    url: str
    method: str = "POST"
    headers: Optional[dict[str, str]] = None
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class FileSenderConfig:
    """Configuration for JSON lines file delivery."""
    output_path: str
    append_mode: bool = True
    create_dirs: bool = True


@dataclass(frozen=True)
class StdoutSenderConfig:
    """Configuration for stdout delivery."""
    format: str = "json"  # json, pretty
    include_timestamp: bool = True
