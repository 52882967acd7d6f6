from __future__ import annotations

from enum import Enum
from typing import Callable, List, Optional

import structlog

from .errors import ChecksumMismatch, Truncated
from .messages import (
    MajorType,
    Message,
    ProtocolSubtype,
    SettingsSubtype,
    TelemetrySubtype,
    is_known_header,
    parse_confirmation,
    parse_setting,
    parse_state,
    parse_telemetry,
    parse_text,
)
from .protocol import decode, frame_size, message_checksum, unpack_header
from .telemetry import TelemetryRegistry, channel_from_id

logger = structlog.get_logger(__name__)


class ReceiverState(Enum):
    SEEKING_HEADER = "seeking_header"
    READING_PAYLOAD = "reading_payload"
    VALIDATING_CHECKSUM = "validating_checksum"


class FrameParser:
    """Streaming parser with checksum-aware re-sync for variable-size frames."""

    __slots__ = ("_buffer", "state", "dropped_bytes", "crc_error_frames")

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.state = ReceiverState.SEEKING_HEADER
        self.dropped_bytes = 0
        self.crc_error_frames = 0

    def reset(self) -> None:
        self._buffer.clear()
        self.state = ReceiverState.SEEKING_HEADER

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[Message]:
        messages: List[Message] = []
        if data:
            self._buffer.extend(data)

        while self._buffer:
            header = self._buffer[0]
            if not is_known_header(*unpack_header(header)):
                self.state = ReceiverState.SEEKING_HEADER
                self.dropped_bytes += 1
                del self._buffer[0]
                continue

            size = frame_size(header)
            if len(self._buffer) < size:
                self.state = ReceiverState.READING_PAYLOAD
                break

            self.state = ReceiverState.VALIDATING_CHECKSUM
            try:
                message = decode(self._buffer[:size])
            except ChecksumMismatch:
                # Restart one byte past the rejected header, not past the whole span.
                self.crc_error_frames += 1
                self.dropped_bytes += 1
                del self._buffer[0]
                self.state = ReceiverState.SEEKING_HEADER
                continue
            except Truncated:
                self.state = ReceiverState.READING_PAYLOAD
                break

            del self._buffer[:size]
            self.state = ReceiverState.SEEKING_HEADER
            messages.append(message)

        return messages


StateHandler = Callable[[int, int], None]
ConfirmationHandler = Callable[[int], None]
SyncHandler = Callable[[], None]
TextHandler = Callable[[str], None]
SettingHandler = Callable[[int, float], None]
CommandHandler = Callable[[Message], None]


class LinkReceiver:
    """Turns the raw inbound byte stream into dispatched protocol events.

    Malformed input never raises out of :meth:`feed`; it is counted and the
    parser re-synchronizes. A handler that raises is logged and the remaining
    frames of the same chunk are still dispatched.
    """

    def __init__(
        self,
        registry: TelemetryRegistry,
        on_confirmation: Optional[ConfirmationHandler] = None,
        on_sync: Optional[SyncHandler] = None,
        on_state: Optional[StateHandler] = None,
        on_text: Optional[TextHandler] = None,
        on_setting: Optional[SettingHandler] = None,
        on_command: Optional[CommandHandler] = None,
        on_confirm_request: Optional[ConfirmationHandler] = None,
    ) -> None:
        self.registry = registry
        self.parser = FrameParser()
        self.on_confirmation = on_confirmation
        self.on_sync = on_sync
        self.on_state = on_state
        self.on_text = on_text
        self.on_setting = on_setting
        self.on_command = on_command
        self.on_confirm_request = on_confirm_request
        self.frames_ok = 0

    @property
    def state(self) -> ReceiverState:
        return self.parser.state

    def reset(self) -> None:
        self.parser.reset()

    def feed(self, data: bytes) -> List[Message]:
        messages = self.parser.feed(data)
        for message in messages:
            self.frames_ok += 1
            try:
                self.dispatch(message)
            except Exception:
                logger.exception("dispatch failed", message=repr(message))
        return messages

    def dispatch(self, message: Message) -> None:
        if message.requires_confirmation and self.on_confirm_request is not None:
            self.on_confirm_request(message_checksum(message))

        major = message.major_type
        subtype = message.subtype

        if major is MajorType.TELEMETRY:
            if subtype == TelemetrySubtype.TELEMETRY:
                self._dispatch_telemetry(message)
            elif subtype == TelemetrySubtype.STATE:
                state, substate = parse_state(message.payload)
                if self.on_state is not None:
                    self.on_state(state, substate)
            elif subtype == TelemetrySubtype.STRING:
                if self.on_text is not None:
                    self.on_text(parse_text(message.payload))
            return

        if major is MajorType.PROTOCOL:
            if subtype == ProtocolSubtype.CONFIRM:
                if self.on_confirmation is not None:
                    self.on_confirmation(parse_confirmation(message.payload))
            elif subtype == ProtocolSubtype.SYNC:
                if self.on_sync is not None:
                    self.on_sync()
            return

        if major is MajorType.SETTINGS and subtype == SettingsSubtype.REPORT:
            if self.on_setting is not None:
                index, value = parse_setting(message.payload)
                self.on_setting(index, value)
            return

        if self.on_command is not None:
            self.on_command(message)

    def _dispatch_telemetry(self, message: Message) -> None:
        raw_channel, value = parse_telemetry(message.payload)
        channel = channel_from_id(raw_channel)
        if channel is None:
            logger.warning("unknown telemetry channel", channel=raw_channel, value=value)
            return
        self.registry.publish(channel, value)


def decode_stream_chunks(chunks, registry: Optional[TelemetryRegistry] = None) -> List[Message]:
    """Feed ``chunks`` through a fresh receiver and return every valid message."""
    receiver = LinkReceiver(registry if registry is not None else TelemetryRegistry())
    out: List[Message] = []
    for chunk in chunks:
        out.extend(receiver.feed(chunk))
    return out
