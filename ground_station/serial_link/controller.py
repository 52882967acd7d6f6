from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .messages import (
    MAX_ALTITUDE,
    MAX_WAYPOINT_INDEX,
    Message,
    add_waypoint_message,
    clear_waypoints_message,
    send_rover_to_message,
)


MAX_WAYPOINTS = MAX_WAYPOINT_INDEX + 1


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(slots=True)
class Waypoint:
    latitude: float
    longitude: float
    altitude: int = 0

    def __post_init__(self) -> None:
        self.latitude = float(self.latitude)
        self.longitude = float(self.longitude)
        self.altitude = int(self.altitude)
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude must be -90..90, got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude must be -180..180, got {self.longitude}")
        if not 0 <= self.altitude <= MAX_ALTITUDE:
            raise ValueError(f"Altitude must be 0-{MAX_ALTITUDE}, got {self.altitude}")

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude, "altitude": self.altitude}


@dataclass(slots=True)
class WaypointList:
    """Ground-side copy of the mission; re-sent in full after every reconnect."""

    waypoints: List[Waypoint] = field(default_factory=list)
    target: int = 0

    def __len__(self) -> int:
        return len(self.waypoints)

    def _check_index(self, index: int, allow_end: bool = False) -> int:
        index = int(index)
        upper = len(self.waypoints) if allow_end else len(self.waypoints) - 1
        if not 0 <= index <= upper:
            raise ValueError(f"Waypoint index out of range: {index}")
        return index

    def add(self, waypoint: Waypoint, index: Optional[int] = None) -> int:
        if len(self.waypoints) >= MAX_WAYPOINTS:
            raise ValueError(f"Waypoint list is full ({MAX_WAYPOINTS})")
        if index is None:
            index = len(self.waypoints)
        index = self._check_index(index, allow_end=True)
        self.waypoints.insert(index, waypoint)
        if index <= self.target and len(self.waypoints) > 1:
            self.target += 1
        return index

    def alter(self, index: int, waypoint: Waypoint) -> int:
        index = self._check_index(index)
        self.waypoints[index] = waypoint
        return index

    def delete(self, index: int) -> int:
        index = self._check_index(index)
        del self.waypoints[index]
        if index < self.target:
            self.target -= 1
        self.target = int(_clamp(self.target, 0, max(0, len(self.waypoints) - 1)))
        return index

    def clear(self) -> None:
        self.waypoints.clear()
        self.target = 0

    def set_target(self, index: int) -> int:
        self.target = self._check_index(index)
        return self.target

    def get(self, index: int) -> Waypoint:
        return self.waypoints[self._check_index(index)]

    def sync_messages(self) -> List[Message]:
        """Messages that rebuild this list on the vehicle from scratch."""
        messages = [clear_waypoints_message()]
        for index, waypoint in enumerate(self.waypoints):
            messages.append(
                add_waypoint_message(index, waypoint.latitude, waypoint.longitude, waypoint.altitude)
            )
        if self.waypoints:
            messages.append(send_rover_to_message(self.target))
        return messages

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "waypoints": [waypoint.to_dict() for waypoint in self.waypoints],
        }
