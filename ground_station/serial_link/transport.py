from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import serial
from serial.tools import list_ports as serial_list_ports
import structlog

from .config import LinkConfig
from .controller import Waypoint, WaypointList
from .errors import DeliveryFailure, TransportError
from .messages import (
    Message,
    add_waypoint_message,
    alter_waypoint_message,
    clear_waypoints_message,
    confirmation_message,
    delete_waypoint_message,
    poll_setting_message,
    send_rover_to_message,
    set_setting_message,
    sync_message,
)
from .receiver import LinkReceiver, StateHandler
from .sender import MessageSender
from .telemetry import Channel, TelemetryListener, TelemetryRegistry

logger = structlog.get_logger(__name__)

ConnectionListener = Callable[[bool], None]
TextListener = Callable[[str], None]
SettingListener = Callable[[int, float], None]
CommandListener = Callable[[Message], None]


@dataclass(slots=True)
class LinkStats:
    tx_frames_ok: int = 0
    tx_errors: int = 0
    rx_frames_ok: int = 0
    rx_crc_errors: int = 0
    rx_parse_drops: int = 0
    retransmits: int = 0
    delivery_failures: int = 0
    pending_confirmations: int = 0


def list_ports() -> List[Dict[str, str]]:
    """Serial ports visible to pyserial, sorted by device name."""
    return [
        {"device": port.device, "description": port.description}
        for port in sorted(serial_list_ports.comports(), key=lambda port: port.device)
    ]


class LinkClient:
    """One serial link to one vehicle: owns the transport and both engine threads."""

    def __init__(
        self,
        port: Optional[str] = None,
        baud: Optional[int] = None,
        config: Optional[LinkConfig] = None,
        waypoints: Optional[WaypointList] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config if config is not None else LinkConfig()
        if port is not None:
            config = dataclasses.replace(config, port=port)
        if baud is not None:
            config = dataclasses.replace(config, baud=int(baud))
        self.config = config

        self.registry = TelemetryRegistry()
        self.sender = MessageSender(self._serial_write, self.config, clock)
        self.receiver = LinkReceiver(
            self.registry,
            on_confirmation=self.sender.on_confirmation_received,
            on_sync=self._on_sync,
            on_state=self._on_state,
            on_text=self._on_text,
            on_setting=self._on_setting,
            on_command=self._on_command,
            on_confirm_request=self._on_confirm_request,
        )

        self._waypoints = waypoints if waypoints is not None else WaypointList()
        self._waypoints_lock = threading.Lock()

        self._states: Dict[int, int] = {}
        self._state_lock = threading.Lock()
        self._state_handler: Optional[StateHandler] = None

        self._connection_listeners: List[ConnectionListener] = []
        self._text_listeners: List[TextListener] = []
        self._setting_listeners: List[SettingListener] = []
        self._command_listeners: List[CommandListener] = []
        self._listeners_lock = threading.Lock()

        self._stats = LinkStats()
        self._stats_lock = threading.Lock()

        self._serial = None
        self._serial_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._sync_event = threading.Event()
        self._rx_thread: Optional[threading.Thread] = None
        self._retry_thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()

        self._running = False
        self._log_enabled = False

    @property
    def connected(self) -> bool:
        return self._running

    # Lifecycle

    def open(self, transport=None) -> None:
        """Bind ``transport`` (or open the configured serial port) and start the link.

        After the engine threads are running a SYNC is sent and the whole
        waypoint list is re-sent so the vehicle recovers the mission after a
        reconnect.
        """
        with self._lifecycle_lock:
            if self._running:
                return

            if transport is None:
                transport = self._open_serial()

            with self._serial_lock:
                self._serial = transport

            self.receiver.reset()
            self._sync_event.clear()
            self._stop_event.clear()
            self._rx_thread = threading.Thread(target=self._rx_loop, name="link-rx", daemon=True)
            self._retry_thread = threading.Thread(target=self._retry_loop, name="link-retry", daemon=True)
            self._rx_thread.start()
            self._retry_thread.start()
            self._running = True

        logger.info("link opened", port=self.config.port, baud=self.config.baud)
        self._notify_connection(True)

        with self._waypoints_lock:
            resync = self._waypoints.sync_messages()
        self.send(sync_message())
        for message in resync:
            self.send(message)

    def close(self) -> None:
        """Stop both threads, drop pending confirmations and reset telemetry."""
        with self._lifecycle_lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            threads = [self._rx_thread, self._retry_thread]
            self._rx_thread = None
            self._retry_thread = None

        current = threading.current_thread()
        for thread in threads:
            if thread is not None and thread is not current:
                thread.join(timeout=1.5)

        with self._serial_lock:
            if self._serial is not None:
                try:
                    self._serial.close()
                except (serial.SerialException, OSError) as exc:
                    logger.warning("error closing transport", error=str(exc))
                finally:
                    self._serial = None

        # After the transport is gone so no send can register behind our back.
        discarded = self.sender.discard_pending()
        self.registry.reset()
        with self._state_lock:
            self._states.clear()
        self.receiver.reset()

        logger.info("link closed", discarded_confirmations=discarded)
        self._notify_connection(False)

    def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        if timeout is None:
            timeout = self.config.sync_timeout_s
        return self._sync_event.wait(timeout)

    def set_log_enabled(self, enabled: bool) -> None:
        self._log_enabled = bool(enabled)

    # Outbound commands

    def send(self, message: Message) -> int:
        try:
            return self.sender.send(message)
        except TransportError as exc:
            self._handle_transport_loss(exc)
            raise

    def add_waypoint(
        self, latitude: float, longitude: float, altitude: int = 0, index: Optional[int] = None
    ) -> int:
        with self._waypoints_lock:
            waypoint = Waypoint(latitude, longitude, altitude)
            index = self._waypoints.add(waypoint, index)
            message = add_waypoint_message(index, waypoint.latitude, waypoint.longitude, waypoint.altitude)
        self._send_if_connected(message)
        return index

    def alter_waypoint(self, index: int, latitude: float, longitude: float, altitude: int = 0) -> int:
        with self._waypoints_lock:
            waypoint = Waypoint(latitude, longitude, altitude)
            index = self._waypoints.alter(index, waypoint)
            message = alter_waypoint_message(index, waypoint.latitude, waypoint.longitude, waypoint.altitude)
        self._send_if_connected(message)
        return index

    def delete_waypoint(self, index: int) -> int:
        with self._waypoints_lock:
            index = self._waypoints.delete(index)
        self._send_if_connected(delete_waypoint_message(index))
        return index

    def clear_waypoints(self) -> None:
        with self._waypoints_lock:
            self._waypoints.clear()
        self._send_if_connected(clear_waypoints_message())

    def send_rover_to(self, index: int) -> int:
        with self._waypoints_lock:
            index = self._waypoints.set_target(index)
        self._send_if_connected(send_rover_to_message(index))
        return index

    def set_setting(self, index: int, value: float) -> int:
        return self.send(set_setting_message(index, value))

    def poll_setting(self, index: int) -> int:
        return self.send(poll_setting_message(index))

    # Consumers

    def register_listener(self, channel: Channel, listener: TelemetryListener) -> None:
        self.registry.register_listener(channel, listener)

    def set_state_handler(self, handler: Optional[StateHandler]) -> None:
        with self._state_lock:
            self._state_handler = handler

    def add_failure_listener(self, listener: Callable[[DeliveryFailure], None]) -> None:
        self.sender.add_failure_listener(listener)

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        with self._listeners_lock:
            self._connection_listeners.append(listener)

    def add_text_listener(self, listener: TextListener) -> None:
        with self._listeners_lock:
            self._text_listeners.append(listener)

    def add_setting_listener(self, listener: SettingListener) -> None:
        with self._listeners_lock:
            self._setting_listeners.append(listener)

    def add_command_listener(self, listener: CommandListener) -> None:
        with self._listeners_lock:
            self._command_listeners.append(listener)

    def get_telemetry(self, channel: Optional[Channel] = None):
        if channel is None:
            return self.registry.snapshot()
        return self.registry.get(channel)

    def get_state(self) -> Dict[int, int]:
        with self._state_lock:
            return dict(self._states)

    def get_waypoints(self) -> dict:
        with self._waypoints_lock:
            return self._waypoints.to_dict()

    def get_stats(self) -> LinkStats:
        with self._stats_lock:
            stats = dataclasses.replace(self._stats)
        stats.rx_frames_ok = self.receiver.frames_ok
        stats.rx_crc_errors = self.receiver.parser.crc_error_frames
        stats.rx_parse_drops = self.receiver.parser.dropped_bytes
        stats.retransmits = self.sender.retransmits
        stats.delivery_failures = self.sender.delivery_failures
        stats.pending_confirmations = len(self.sender.tracker)
        return stats

    # Internals

    def _open_serial(self):
        try:
            ser = serial.Serial(
                port=self.config.port,
                baudrate=self.config.baud,
                timeout=self.config.read_timeout_s,
                write_timeout=self.config.write_timeout_s,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                rtscts=self.config.rtscts,
            )
        except (serial.SerialException, ValueError) as exc:
            raise TransportError(f"Could not open {self.config.port}: {exc}") from exc
        ser.reset_input_buffer()
        ser.reset_output_buffer()
        return ser

    def _serial_write(self, frame: bytes) -> None:
        with self._serial_lock:
            ser = self._serial
            if ser is None or not ser.is_open:
                with self._stats_lock:
                    self._stats.tx_errors += 1
                raise TransportError("serial not open")
            try:
                ser.write(frame)
            except (serial.SerialException, OSError) as exc:
                with self._stats_lock:
                    self._stats.tx_errors += 1
                raise TransportError(f"serial write failed: {exc}") from exc

        with self._stats_lock:
            self._stats.tx_frames_ok += 1
        if self._log_enabled:
            logger.info("[TX]", frame=frame.hex(" "))

    def _send_if_connected(self, message: Message) -> None:
        # Offline edits reach the vehicle with the full re-send on open().
        if self._running:
            self.send(message)

    def _handle_transport_loss(self, exc: Exception) -> None:
        if not self._running:
            return
        logger.error("transport lost", error=str(exc))
        self.close()

    def _notify_connection(self, connected: bool) -> None:
        with self._listeners_lock:
            listeners = list(self._connection_listeners)
        for listener in listeners:
            try:
                listener(connected)
            except Exception:
                logger.exception("connection listener failed")

    def _on_sync(self) -> None:
        logger.info("sync reply received")
        self._sync_event.set()

    def _on_state(self, state: int, substate: int) -> None:
        with self._state_lock:
            self._states[state] = substate
            handler = self._state_handler
        if handler is not None:
            handler(state, substate)

    def _on_text(self, text: str) -> None:
        logger.info("vehicle message", text=text)
        with self._listeners_lock:
            listeners = list(self._text_listeners)
        for listener in listeners:
            listener(text)

    def _on_setting(self, index: int, value: float) -> None:
        with self._listeners_lock:
            listeners = list(self._setting_listeners)
        for listener in listeners:
            listener(index, value)

    def _on_command(self, message: Message) -> None:
        with self._listeners_lock:
            listeners = list(self._command_listeners)
        for listener in listeners:
            listener(message)

    def _on_confirm_request(self, checksum: int) -> None:
        self.send(confirmation_message(checksum))

    def _rx_loop(self) -> None:
        while not self._stop_event.is_set():
            with self._serial_lock:
                ser = self._serial

            if ser is None or not ser.is_open:
                self._stop_event.wait(0.02)
                continue

            try:
                chunk = ser.read(self.config.read_size)
            except (serial.SerialException, OSError) as exc:
                self._handle_transport_loss(exc)
                return

            if not chunk:
                continue

            if self._log_enabled:
                logger.info("[RX]", data=bytes(chunk).hex(" "))
            self.receiver.feed(chunk)

    def _retry_loop(self) -> None:
        while not self._stop_event.wait(self.config.sweep_period_s):
            try:
                self.sender.sweep()
            except TransportError as exc:
                self._handle_transport_loss(exc)
                return
