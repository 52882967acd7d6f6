from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .messages import Message


class LinkError(Exception):
    """Base class for every error raised by the serial link engine."""


class EncodingError(LinkError, ValueError):
    pass


class DecodeError(LinkError, ValueError):
    pass


class ChecksumMismatch(DecodeError):
    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Invalid frame checksum: got 0x{received:04X}, expected 0x{expected:04X}")
        self.expected = expected
        self.received = received


class Truncated(DecodeError):
    def __init__(self, needed: int, available: int) -> None:
        super().__init__(f"Truncated frame: need {needed} bytes, have {available}")
        self.needed = needed
        self.available = available


class DeliveryFailure(LinkError):
    """A confirmation-required message was never acknowledged."""

    def __init__(self, message: "Message", checksum: int, attempts: int) -> None:
        super().__init__(
            f"{message.name} (checksum 0x{checksum:04X}) not confirmed after {attempts} attempts"
        )
        self.message = message
        self.checksum = checksum
        self.attempts = attempts


class TransportError(LinkError, OSError):
    pass
