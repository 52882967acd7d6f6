from __future__ import annotations

import threading
from collections import deque
from enum import IntEnum
from typing import Callable, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

TelemetryListener = Callable[[float], None]

NEUTRAL_VALUE = 0.0


class Channel(IntEnum):
    LATITUDE = 0
    LONGITUDE = 1
    HEADING = 2
    PITCH = 3
    ROLL = 4
    SPEED = 5
    VOLTAGE = 6
    AMPERAGE = 7
    DISTANCE = 8
    GPS_NUM_SAT = 9
    GPS_HDOP = 10
    ALTITUDE = 11


class TelemetryRegistry:
    """Latest value and listener list for every telemetry channel.

    Values and listener lists are each guarded by a lock; listeners are
    called outside it, synchronously and in registration order.
    """

    __slots__ = ("_values", "_listeners", "_lock")

    def __init__(self) -> None:
        self._values: Dict[Channel, float] = {channel: NEUTRAL_VALUE for channel in Channel}
        self._listeners: Dict[Channel, List[TelemetryListener]] = {channel: [] for channel in Channel}
        self._lock = threading.Lock()

    def register_listener(self, channel: Channel, listener: TelemetryListener) -> None:
        channel = Channel(channel)
        with self._lock:
            self._listeners[channel].append(listener)

    def publish(self, channel: Channel, value: float) -> None:
        channel = Channel(channel)
        value = float(value)
        with self._lock:
            self._values[channel] = value
            listeners = list(self._listeners[channel])

        for listener in listeners:
            try:
                listener(value)
            except Exception:
                logger.exception("telemetry listener failed", channel=channel.name, value=value)

    def get(self, channel: Channel) -> float:
        with self._lock:
            return self._values[Channel(channel)]

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {channel.name: value for channel, value in self._values.items()}

    def reset(self) -> None:
        with self._lock:
            for channel in self._values:
                self._values[channel] = NEUTRAL_VALUE


class RollingAverage:
    """Fixed-window mean meant to be registered as a telemetry listener."""

    def __init__(self, window: int, initial: float = NEUTRAL_VALUE) -> None:
        if window <= 0:
            raise ValueError("window must be > 0")
        self._samples: Deque[float] = deque([float(initial)] * window, maxlen=window)
        self._lock = threading.Lock()

    def __call__(self, value: float) -> None:
        with self._lock:
            self._samples.append(float(value))

    @property
    def value(self) -> float:
        with self._lock:
            return sum(self._samples) / len(self._samples)

    def rounded(self) -> int:
        return int(self.value + 0.5)


def channel_from_id(raw: int) -> Optional[Channel]:
    try:
        return Channel(raw)
    except ValueError:
        return None
