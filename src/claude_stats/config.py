"""Agent configuration written by the setup flow"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def normalize_server_url(url: str) -> str:
    """Strip trailing slashes so endpoint paths can be appended directly."""
    return url.rstrip("/")


@dataclass(frozen=True)
class StatsConfig:
    """Submission settings: who is reporting and where to."""

    username: str
    server_url: str
    enabled: bool = False

    @property
    def is_active(self) -> bool:
        """True when the agent should do any work at all."""
        return self.enabled and bool(self.server_url)

    @property
    def submit_url(self) -> str:
        return f"{self.server_url}/api/usage/submit"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatsConfig":
        server_url = data.get("serverUrl")
        username = data.get("username")
        return cls(
            username=str(username) if username is not None else "",
            server_url=normalize_server_url(server_url) if isinstance(server_url, str) else "",
            enabled=data.get("enabled") is True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "serverUrl": self.server_url,
            "enabled": self.enabled,
        }


def load_config(config_file: Path) -> Optional[StatsConfig]:
    """Load config from *config_file*.

    Returns None when the file is missing, unreadable or not a JSON object;
    the agent treats all of those as "not configured".
    """
    if not config_file.exists():
        return None

    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Unreadable config file %s: %s", config_file, e)
        return None

    if not isinstance(data, dict):
        logger.warning("Config file %s is not a JSON object", config_file)
        return None
    return StatsConfig.from_dict(data)
