"""
Configuration for the desk services.

Settings come from the environment (optionally a .env file). The last desk
address that connected is kept in a small JSON state file so restarts skip
scanning.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from desk_control.protocol import MAX_POSITION, MIN_POSITION

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = Path.home() / ".config" / "ikea-desk-control" / "state.json"
DEFAULT_MQTT_URL = "mqtt://localhost:1883"


@dataclass
class Settings:
    """Runtime settings for the controller and its bus bridges."""

    desk_address: str | None = None
    min_position: float = MIN_POSITION
    max_position: float = MAX_POSITION
    mqtt_url: str = DEFAULT_MQTT_URL
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_identifier: str = "desk"
    state_file: Path = DEFAULT_STATE_FILE
    log_level: str = "INFO"


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from the environment.

    Args:
        env_file: Optional .env file; the default lookup is used when omitted

    Raises:
        ValueError: If a numeric variable cannot be parsed or the range is empty
    """
    load_dotenv(env_file)

    settings = Settings(
        desk_address=os.getenv("DESK_ADDRESS") or None,
        min_position=_float("DESK_MIN_POSITION", MIN_POSITION),
        max_position=_float("DESK_MAX_POSITION", MAX_POSITION),
        mqtt_url=os.getenv("MQTT_URL", DEFAULT_MQTT_URL),
        mqtt_username=os.getenv("MQTT_USERNAME") or None,
        mqtt_password=os.getenv("MQTT_PASSWORD") or None,
        mqtt_identifier=os.getenv("MQTT_IDENTIFIER", "desk"),
        state_file=Path(os.getenv("DESK_STATE_FILE", str(DEFAULT_STATE_FILE))).expanduser(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    if settings.min_position >= settings.max_position:
        raise ValueError(
            f"DESK_MIN_POSITION ({settings.min_position}) must be below "
            f"DESK_MAX_POSITION ({settings.max_position})"
        )

    return settings


class DeviceStore:
    """Persists the last-known desk address."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load_address(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return None
        if not isinstance(data, dict):
            return None
        return data.get("address") or None

    def save_address(self, address: str) -> None:
        if self.load_address() == address:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"address": address}) + "\n")
        logger.info("Saved desk address %s", address)
