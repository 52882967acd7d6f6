from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog

from .states import describe_state
from .transport import LinkClient

logger = structlog.get_logger(__name__)


class TelemetryLogger:
    """Appends a JSONL snapshot of every telemetry channel at a fixed period.

    The period may be changed while running; the new value applies from the
    next tick.
    """

    def __init__(self, client: LinkClient, path: str, period_ms: int) -> None:
        self._client = client
        self._path = Path(path).expanduser()
        self._period_ms = 0
        self.set_period(period_ms)
        self._file = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.records_written = 0

    @property
    def period_ms(self) -> int:
        return self._period_ms

    @property
    def running(self) -> bool:
        return self._thread is not None

    def set_period(self, period_ms: int) -> None:
        period_ms = int(period_ms)
        if period_ms <= 0:
            raise ValueError("period_ms must be > 0")
        self._period_ms = period_ms

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="link-telemetry-log", daemon=True)
            self._thread.start()
        logger.info("telemetry log started", path=str(self._path), period_ms=self._period_ms)

    def stop(self) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return

        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=1.0)

        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
        logger.info("telemetry log stopped", records=self.records_written)

    def write_record(self) -> None:
        states = self._client.get_state()
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "connected": self._client.connected,
            "telemetry": self._client.get_telemetry(),
            "state": [describe_state(state, substate) for state, substate in sorted(states.items())],
        }
        with self._lock:
            if self._file is None:
                return
            self._file.write(json.dumps(record, ensure_ascii=True) + "\n")
            self._file.flush()
            self.records_written += 1

    def _loop(self) -> None:
        while not self._stop_event.wait(self._period_ms / 1000.0):
            try:
                self.write_record()
            except OSError as exc:
                logger.error("telemetry log write failed", path=str(self._path), error=str(exc))
                return
