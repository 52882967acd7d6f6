"""Message catalog for the rover serial link.

Every message is a ``(major_type, subtype)`` tagged variant. The catalog below
is the fixed table that says which pairs exist, which payload lengths each
one accepts and whether the far end must confirm it. Multi-byte payload
fields are big-endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, FrozenSet, Optional, Tuple


MAX_PAYLOAD_LENGTH = 15
COORD_SCALE = 1_000_000
MAX_WAYPOINT_INDEX = 0xFF
MAX_ALTITUDE = 0xFFFF

CONFIRM_STRUCT = struct.Struct(">H")
TELEMETRY_STRUCT = struct.Struct(">Bf")
STATE_STRUCT = struct.Struct(">BB")
WAYPOINT_STRUCT = struct.Struct(">BiiH")
SETTING_STRUCT = struct.Struct(">Bf")


class MajorType(IntEnum):
    PROTOCOL = 0
    TELEMETRY = 1
    COMMAND = 2
    SETTINGS = 3


class ProtocolSubtype(IntEnum):
    SYNC = 0
    CONFIRM = 1


class TelemetrySubtype(IntEnum):
    TELEMETRY = 0
    STATE = 1
    STRING = 2


class CommandSubtype(IntEnum):
    ADD_WAYPOINT = 0
    ALTER_WAYPOINT = 1
    DELETE_WAYPOINT = 2
    SEND_ROVER_TO = 3


class SettingsSubtype(IntEnum):
    SET = 0
    REPORT = 1
    POLL = 2


@dataclass(frozen=True, slots=True)
class MessageSpec:
    name: str
    lengths: FrozenSet[int]
    requires_confirmation: bool = False


CATALOG: Dict[Tuple[int, int], MessageSpec] = {
    (MajorType.PROTOCOL, ProtocolSubtype.SYNC): MessageSpec("SYNC", frozenset({0})),
    (MajorType.PROTOCOL, ProtocolSubtype.CONFIRM): MessageSpec("CONFIRM", frozenset({CONFIRM_STRUCT.size})),
    (MajorType.TELEMETRY, TelemetrySubtype.TELEMETRY): MessageSpec(
        "TELEMETRY", frozenset({TELEMETRY_STRUCT.size})
    ),
    (MajorType.TELEMETRY, TelemetrySubtype.STATE): MessageSpec("STATE", frozenset({STATE_STRUCT.size})),
    (MajorType.TELEMETRY, TelemetrySubtype.STRING): MessageSpec(
        "STRING", frozenset(range(1, MAX_PAYLOAD_LENGTH + 1))
    ),
    (MajorType.COMMAND, CommandSubtype.ADD_WAYPOINT): MessageSpec(
        "ADD_WAYPOINT", frozenset({WAYPOINT_STRUCT.size}), requires_confirmation=True
    ),
    (MajorType.COMMAND, CommandSubtype.ALTER_WAYPOINT): MessageSpec(
        "ALTER_WAYPOINT", frozenset({WAYPOINT_STRUCT.size}), requires_confirmation=True
    ),
    # An empty DELETE clears the whole list on the vehicle.
    (MajorType.COMMAND, CommandSubtype.DELETE_WAYPOINT): MessageSpec(
        "DELETE_WAYPOINT", frozenset({0, 1}), requires_confirmation=True
    ),
    (MajorType.COMMAND, CommandSubtype.SEND_ROVER_TO): MessageSpec(
        "SEND_ROVER_TO", frozenset({1}), requires_confirmation=True
    ),
    (MajorType.SETTINGS, SettingsSubtype.SET): MessageSpec(
        "SET_SETTING", frozenset({SETTING_STRUCT.size}), requires_confirmation=True
    ),
    (MajorType.SETTINGS, SettingsSubtype.REPORT): MessageSpec(
        "SETTING_REPORT", frozenset({SETTING_STRUCT.size})
    ),
    (MajorType.SETTINGS, SettingsSubtype.POLL): MessageSpec("POLL_SETTING", frozenset({1})),
}


def lookup(major_type: int, subtype: int) -> Optional[MessageSpec]:
    return CATALOG.get((major_type, subtype))


def is_known_header(major_type: int, subtype: int, payload_length: int) -> bool:
    """True when the pair exists and allows ``payload_length`` payload bytes."""
    spec = lookup(major_type, subtype)
    return spec is not None and payload_length in spec.lengths


@dataclass(frozen=True, slots=True)
class Message:
    """One unit of protocol exchange; the checksum is derived at encode time."""

    major_type: MajorType
    subtype: int
    payload: bytes = field(default=b"")

    def __post_init__(self) -> None:
        object.__setattr__(self, "major_type", MajorType(self.major_type))
        object.__setattr__(self, "subtype", int(self.subtype))
        object.__setattr__(self, "payload", bytes(self.payload))

    @property
    def payload_length(self) -> int:
        return len(self.payload)

    @property
    def spec(self) -> Optional[MessageSpec]:
        return lookup(self.major_type, self.subtype)

    @property
    def name(self) -> str:
        spec = self.spec
        if spec is None:
            return f"{self.major_type.name}/{self.subtype}"
        return spec.name

    @property
    def requires_confirmation(self) -> bool:
        spec = self.spec
        return spec is not None and spec.requires_confirmation

    def __repr__(self) -> str:
        return (
            f"Message({self.name}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


def _check_index(index: int) -> int:
    index = int(index)
    if not 0 <= index <= MAX_WAYPOINT_INDEX:
        raise ValueError(f"Index must be 0-{MAX_WAYPOINT_INDEX}, got {index}")
    return index


def sync_message() -> Message:
    return Message(MajorType.PROTOCOL, ProtocolSubtype.SYNC)


def confirmation_message(checksum: int) -> Message:
    return Message(MajorType.PROTOCOL, ProtocolSubtype.CONFIRM, CONFIRM_STRUCT.pack(checksum & 0xFFFF))


def telemetry_message(channel: int, value: float) -> Message:
    return Message(
        MajorType.TELEMETRY,
        TelemetrySubtype.TELEMETRY,
        TELEMETRY_STRUCT.pack(int(channel) & 0xFF, float(value)),
    )


def state_message(state: int, substate: int) -> Message:
    return Message(MajorType.TELEMETRY, TelemetrySubtype.STATE, STATE_STRUCT.pack(state & 0xFF, substate & 0xFF))


def string_message(text: str) -> Message:
    return Message(MajorType.TELEMETRY, TelemetrySubtype.STRING, text.encode("ascii", errors="replace"))


def _waypoint_message(
    subtype: CommandSubtype, index: int, latitude: float, longitude: float, altitude: int
) -> Message:
    if not -90.0 <= latitude <= 90.0:
        raise ValueError(f"Latitude must be -90..90, got {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise ValueError(f"Longitude must be -180..180, got {longitude}")
    altitude = int(altitude)
    if not 0 <= altitude <= MAX_ALTITUDE:
        raise ValueError(f"Altitude must be 0-{MAX_ALTITUDE}, got {altitude}")
    payload = WAYPOINT_STRUCT.pack(
        _check_index(index),
        int(round(latitude * COORD_SCALE)),
        int(round(longitude * COORD_SCALE)),
        altitude,
    )
    return Message(MajorType.COMMAND, subtype, payload)


def add_waypoint_message(index: int, latitude: float, longitude: float, altitude: int = 0) -> Message:
    return _waypoint_message(CommandSubtype.ADD_WAYPOINT, index, latitude, longitude, altitude)


def alter_waypoint_message(index: int, latitude: float, longitude: float, altitude: int = 0) -> Message:
    return _waypoint_message(CommandSubtype.ALTER_WAYPOINT, index, latitude, longitude, altitude)


def delete_waypoint_message(index: int) -> Message:
    return Message(MajorType.COMMAND, CommandSubtype.DELETE_WAYPOINT, bytes([_check_index(index)]))


def clear_waypoints_message() -> Message:
    return Message(MajorType.COMMAND, CommandSubtype.DELETE_WAYPOINT)


def send_rover_to_message(index: int) -> Message:
    return Message(MajorType.COMMAND, CommandSubtype.SEND_ROVER_TO, bytes([_check_index(index)]))


def set_setting_message(index: int, value: float) -> Message:
    return Message(MajorType.SETTINGS, SettingsSubtype.SET, SETTING_STRUCT.pack(_check_index(index), float(value)))


def setting_report_message(index: int, value: float) -> Message:
    return Message(
        MajorType.SETTINGS, SettingsSubtype.REPORT, SETTING_STRUCT.pack(_check_index(index), float(value))
    )


def poll_setting_message(index: int) -> Message:
    return Message(MajorType.SETTINGS, SettingsSubtype.POLL, bytes([_check_index(index)]))


def parse_confirmation(payload: bytes) -> int:
    return CONFIRM_STRUCT.unpack(payload)[0]


def parse_telemetry(payload: bytes) -> Tuple[int, float]:
    channel, value = TELEMETRY_STRUCT.unpack(payload)
    return channel, value


def parse_state(payload: bytes) -> Tuple[int, int]:
    state, substate = STATE_STRUCT.unpack(payload)
    return state, substate


def parse_text(payload: bytes) -> str:
    return payload.split(b"\x00")[0].decode("ascii", errors="replace")


def parse_waypoint(payload: bytes) -> Tuple[int, float, float, int]:
    index, lat_raw, lon_raw, altitude = WAYPOINT_STRUCT.unpack(payload)
    return index, lat_raw / COORD_SCALE, lon_raw / COORD_SCALE, altitude


def parse_setting(payload: bytes) -> Tuple[int, float]:
    index, value = SETTING_STRUCT.unpack(payload)
    return index, value
