from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .config import LinkConfig
from .errors import DeliveryFailure, TransportError
from .messages import Message
from .protocol import encode, message_checksum

logger = structlog.get_logger(__name__)

FailureListener = Callable[[DeliveryFailure], None]
Writer = Callable[[bytes], None]


@dataclass(slots=True)
class PendingConfirmation:
    message: Message
    checksum: int
    sent_at: float
    retries: int = 0


class ConfirmationTracker:
    """Unacknowledged outbound messages keyed by the checksum the ack echoes.

    Distinct messages can share a checksum, so each key holds a list of
    entries in send order. A confirmation resolves the oldest one.
    """

    __slots__ = ("_pending", "_lock")

    def __init__(self) -> None:
        self._pending: Dict[int, List[PendingConfirmation]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._pending.values())

    def __contains__(self, checksum: int) -> bool:
        with self._lock:
            return checksum in self._pending

    def register(self, message: Message, checksum: int, now: float) -> PendingConfirmation:
        entry = PendingConfirmation(message=message, checksum=checksum, sent_at=now)
        with self._lock:
            entries = self._pending.setdefault(checksum, [])
            for position, existing in enumerate(entries):
                if existing.message == message:
                    # Re-sending the same message restarts its retry budget.
                    entries[position] = entry
                    break
            else:
                entries.append(entry)
        return entry

    def resolve(self, checksum: int) -> bool:
        with self._lock:
            entries = self._pending.get(checksum)
            if not entries:
                return False
            entries.pop(0)
            if not entries:
                del self._pending[checksum]
            return True

    def remove(self, message: Message, checksum: int) -> bool:
        with self._lock:
            entries = self._pending.get(checksum, [])
            for position, existing in enumerate(entries):
                if existing.message == message:
                    del entries[position]
                    if not entries:
                        del self._pending[checksum]
                    return True
            return False

    def expire(
        self, now: float, retry_interval_s: float, max_retries: int
    ) -> Tuple[List[PendingConfirmation], List[PendingConfirmation]]:
        """Split stale entries into ones to re-send and ones that ran out of retries.

        Re-sent entries are stamped with ``now`` and their retry count is
        incremented; failed entries are removed from the table.
        """
        resend: List[PendingConfirmation] = []
        failed: List[PendingConfirmation] = []
        with self._lock:
            for checksum, entries in list(self._pending.items()):
                kept: List[PendingConfirmation] = []
                for entry in entries:
                    if now - entry.sent_at < retry_interval_s:
                        kept.append(entry)
                        continue
                    if entry.retries >= max_retries:
                        failed.append(entry)
                        continue
                    entry.retries += 1
                    entry.sent_at = now
                    kept.append(entry)
                    resend.append(
                        PendingConfirmation(entry.message, entry.checksum, entry.sent_at, entry.retries)
                    )
                if kept:
                    self._pending[checksum] = kept
                else:
                    del self._pending[checksum]
        return resend, failed

    def discard_all(self) -> int:
        with self._lock:
            count = sum(len(entries) for entries in self._pending.values())
            self._pending.clear()
        return count

    def pending(self) -> List[PendingConfirmation]:
        with self._lock:
            return [
                PendingConfirmation(e.message, e.checksum, e.sent_at, e.retries)
                for entries in self._pending.values()
                for e in entries
            ]


class MessageSender:
    """Encodes and writes outbound messages and retries the ones needing a confirmation.

    ``write`` must raise :class:`TransportError` when the bytes could not be
    handed to the transport. Delivery failures are reported only through the
    listeners added with :meth:`add_failure_listener`.
    """

    def __init__(
        self,
        write: Writer,
        config: Optional[LinkConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._write = write
        self.config = config if config is not None else LinkConfig()
        self._clock = clock
        self.tracker = ConfirmationTracker()
        self._failure_listeners: List[FailureListener] = []
        self._listeners_lock = threading.Lock()
        self.retransmits = 0
        self.delivery_failures = 0

    def add_failure_listener(self, listener: FailureListener) -> None:
        with self._listeners_lock:
            self._failure_listeners.append(listener)

    def send(self, message: Message) -> int:
        """Write ``message`` and return its checksum."""
        frame = encode(message)
        checksum = message_checksum(message)

        # Registered before writing so a fast confirmation cannot beat the entry.
        if message.requires_confirmation:
            self.tracker.register(message, checksum, self._clock())

        try:
            self._write(frame)
        except TransportError:
            if message.requires_confirmation:
                self.tracker.remove(message, checksum)
            raise
        return checksum

    def on_confirmation_received(self, checksum: int) -> bool:
        resolved = self.tracker.resolve(checksum)
        if resolved:
            logger.debug("message confirmed", checksum=f"0x{checksum:04X}")
        else:
            logger.debug("ignoring unmatched confirmation", checksum=f"0x{checksum:04X}")
        return resolved

    def sweep(self) -> List[DeliveryFailure]:
        """Re-send stale messages and report the ones out of retries.

        Called periodically from the retry thread. A write failure while
        re-sending propagates as :class:`TransportError`.
        """
        resend, failed = self.tracker.expire(
            self._clock(), self.config.retry_interval_s, self.config.max_retries
        )

        failures: List[DeliveryFailure] = []
        for entry in failed:
            failure = DeliveryFailure(entry.message, entry.checksum, attempts=entry.retries + 1)
            self.delivery_failures += 1
            logger.warning(
                "delivery failed",
                message=entry.message.name,
                checksum=f"0x{entry.checksum:04X}",
                attempts=failure.attempts,
            )
            self._notify_failure(failure)
            failures.append(failure)

        for entry in resend:
            self.retransmits += 1
            logger.info(
                "re-sending unconfirmed message",
                message=entry.message.name,
                checksum=f"0x{entry.checksum:04X}",
                retry=entry.retries,
            )
            self._write(encode(entry.message))

        return failures

    def discard_pending(self) -> int:
        """Drop every pending entry without retry or failure notification."""
        return self.tracker.discard_all()

    def _notify_failure(self, failure: DeliveryFailure) -> None:
        with self._listeners_lock:
            listeners = list(self._failure_listeners)
        for listener in listeners:
            try:
                listener(failure)
            except Exception:
                logger.exception("delivery failure listener failed")
