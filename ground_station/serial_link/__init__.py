from .config import GroundStationConfig, LinkConfig
from .controller import Waypoint, WaypointList
from .errors import ChecksumMismatch, DeliveryFailure, EncodingError, LinkError, TransportError, Truncated
from .messages import MajorType, Message
from .protocol import decode, encode
from .receiver import FrameParser, LinkReceiver
from .sender import ConfirmationTracker, MessageSender
from .telemetry import Channel, RollingAverage, TelemetryRegistry
from .transport import LinkClient

__all__ = [
    "Channel",
    "ChecksumMismatch",
    "ConfirmationTracker",
    "DeliveryFailure",
    "EncodingError",
    "FrameParser",
    "GroundStationConfig",
    "LinkClient",
    "LinkConfig",
    "LinkError",
    "LinkReceiver",
    "MajorType",
    "Message",
    "MessageSender",
    "RollingAverage",
    "TelemetryRegistry",
    "TransportError",
    "Truncated",
    "Waypoint",
    "WaypointList",
    "decode",
    "encode",
]
