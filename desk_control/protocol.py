"""
IKEA Idåsen / Linak desk protocol.

Protocol reverse-engineered from:
- https://github.com/anson-vandoren/linak-desk-spec
- https://github.com/j5lien/esphome-idasen-desk-controller
"""

import math
import struct
from dataclasses import dataclass

from desk_control.errors import MalformedPayloadError

# === LINAK BLE UUIDS ===
UUID_CONTROL_SERVICE = "99fa0001-338a-1024-8a49-009c0215f78a"
UUID_COMMAND = "99fa0002-338a-1024-8a49-009c0215f78a"

UUID_POSITION_SERVICE = "99fa0020-338a-1024-8a49-009c0215f78a"
UUID_POSITION = "99fa0021-338a-1024-8a49-009c0215f78a"

UUID_MOVE_TO_SERVICE = "99fa0030-338a-1024-8a49-009c0215f78a"
UUID_MOVE_TO = "99fa0031-338a-1024-8a49-009c0215f78a"

# === COMMANDS ===
CMD_UP = bytes([0x47, 0x00])
CMD_DOWN = bytes([0x46, 0x00])
CMD_STOP = bytes([0xFF, 0x00])
# Re-arms the move-to characteristic between movement sequences
CMD_UNDEFINED = bytes([0xFE, 0x00])

# === CONSTANTS (cm) ===
MIN_POSITION = 62.0
MAX_POSITION = 127.0


@dataclass(frozen=True)
class DeskState:
    """Snapshot of the desk decoded from the position characteristic."""

    device_id: str
    position: float
    speed: float
    raw_position: int


def decode_position(data: bytes, offset: float = MIN_POSITION) -> tuple[float, float, int]:
    """
    Decode a position characteristic payload.

    Args:
        data: Raw payload, ``uint16 raw_position || int16 raw_speed`` little-endian
        offset: Physical position of raw value 0

    Returns:
        Tuple of (position, speed, raw_position)

    Raises:
        MalformedPayloadError: If fewer than 4 bytes are present
    """
    if data is None or len(data) < 4:
        raise MalformedPayloadError(f"Position payload too short: {bytes(data or b'').hex()}")

    raw_position, raw_speed = struct.unpack_from("<Hh", data)
    return offset + raw_position / 100, raw_speed / 100, raw_position


def decode_state(device_id: str, data: bytes, offset: float = MIN_POSITION) -> DeskState:
    """Decode a payload into a DeskState for the given device."""
    position, speed, raw_position = decode_position(data, offset)
    return DeskState(device_id=device_id, position=position, speed=speed, raw_position=raw_position)


def raw_target(position: float, offset: float = MIN_POSITION) -> int:
    """Convert a physical position to the firmware's raw hundredths, rounding half away from zero."""
    scaled = (position - offset) * 100
    raw = int(math.copysign(math.floor(abs(scaled) + 0.5), scaled))
    if not 0 <= raw <= 0xFFFF:
        raise MalformedPayloadError(f"Position {position} is outside the encodable range")
    return raw


def encode_move_to(raw_position: int) -> bytes:
    """Encode a raw target for the move-to characteristic."""
    return struct.pack("<H", raw_position)
