from __future__ import annotations

import argparse
import json
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import GroundStationConfig
from .errors import DeliveryFailure, LinkError
from .logconfig import configure_logging
from .states import describe_state
from .telemetry import Channel, RollingAverage
from .telemetry_log import TelemetryLogger
from .transport import LinkClient, list_ports


HELP_TEXT = """Commands:
  help
  status
  wp list
  wp add <lat> <lon> [alt]
  wp alter <index> <lat> <lon> [alt]
  wp del <index>
  wp clear
  goto <index>
  set <setting> <value>
  poll <setting>
  ports
  logperiod <ms>
  watch on|off
  log on|off
  quit
"""

GPS_AVERAGE_WINDOW = 10


class SessionLogger:
    def __init__(self, path: Optional[str]) -> None:
        self._path = Path(path).expanduser() if path else None
        self._file = None
        self._lock = threading.Lock()
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")

    def write(self, event: str, command: str, telemetry: Optional[dict], extra: Optional[dict] = None) -> None:
        if self._file is None:
            return
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "command": command,
            "telemetry": telemetry,
            "extra": extra or {},
        }
        with self._lock:
            self._file.write(json.dumps(payload, ensure_ascii=True) + "\n")
            self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def _parse_on_off(raw: str) -> bool:
    if raw == "on":
        return True
    if raw == "off":
        return False
    raise ValueError("expected 'on' or 'off'")


def _format_telemetry(client: LinkClient, sats: RollingAverage, hdop: RollingAverage) -> str:
    if not client.connected:
        return "telemetry: N/A (link down)"
    values = client.get_telemetry()
    return (
        "telemetry: "
        f"lat={values['LATITUDE']:.6f} "
        f"lng={values['LONGITUDE']:.6f} "
        f"dir={values['HEADING']:.1f} "
        f"ptc={values['PITCH'] - 90:.1f} "
        f"rol={values['ROLL'] - 90:.1f} "
        f"mph={values['SPEED']:.2f} "
        f"vcc={values['VOLTAGE']:.2f} "
        f"sats~{sats.rounded()} "
        f"hdop~{hdop.value:.2f}"
    )


def _format_states(client: LinkClient) -> str:
    states = client.get_state()
    if not states:
        return "state: N/A"
    return "state: " + " | ".join(describe_state(state, substate) for state, substate in sorted(states.items()))


def _watch_loop(
    client: LinkClient,
    stop_event: threading.Event,
    enabled_ref: dict,
    period_s: float,
    sats: RollingAverage,
    hdop: RollingAverage,
) -> None:
    while not stop_event.is_set():
        if enabled_ref.get("watch", False):
            print(_format_telemetry(client, sats, hdop))
        stop_event.wait(period_s)


def _print_ports() -> None:
    ports = list_ports()
    if not ports:
        print("(no serial ports found)")
    for port in ports:
        print(f"{port['device']}  {port['description']}")


def _require(parts: list, counts: tuple, usage: str) -> None:
    if len(parts) not in counts:
        raise ValueError(f"usage: {usage}")


def _handle_waypoint(client: LinkClient, parts: list) -> None:
    if len(parts) < 2:
        raise ValueError("usage: wp list|add|alter|del|clear")
    sub = parts[1].lower()

    if sub == "list":
        waypoints = client.get_waypoints()
        for index, wp in enumerate(waypoints["waypoints"]):
            marker = "*" if index == waypoints["target"] else " "
            print(f"{marker}{index:3d}: {wp['latitude']:.6f}, {wp['longitude']:.6f} alt={wp['altitude']}")
        if not waypoints["waypoints"]:
            print("(no waypoints)")

    elif sub == "add":
        _require(parts, (4, 5), "wp add <lat> <lon> [alt]")
        altitude = int(parts[4]) if len(parts) == 5 else 0
        index = client.add_waypoint(float(parts[2]), float(parts[3]), altitude)
        print(f"waypoint {index} added")

    elif sub == "alter":
        _require(parts, (5, 6), "wp alter <index> <lat> <lon> [alt]")
        altitude = int(parts[5]) if len(parts) == 6 else 0
        index = client.alter_waypoint(int(parts[2]), float(parts[3]), float(parts[4]), altitude)
        print(f"waypoint {index} altered")

    elif sub == "del":
        _require(parts, (3,), "wp del <index>")
        index = client.delete_waypoint(int(parts[2]))
        print(f"waypoint {index} deleted")

    elif sub == "clear":
        client.clear_waypoints()
        print("waypoints cleared")

    else:
        raise ValueError("usage: wp list|add|alter|del|clear")


def run_cli(args: argparse.Namespace) -> int:
    configure_logging(verbose=args.verbose)
    if args.list_ports:
        _print_ports()
        return 0

    config = GroundStationConfig.from_yaml(Path(args.config)) if args.config else GroundStationConfig()
    client = LinkClient(port=args.port, baud=args.baud, config=config.link)
    logger = SessionLogger(args.log_file)
    telemetry_log = (
        TelemetryLogger(client, args.telemetry_log, config.link.log_period_ms) if args.telemetry_log else None
    )

    sats = RollingAverage(GPS_AVERAGE_WINDOW)
    hdop = RollingAverage(GPS_AVERAGE_WINDOW)
    client.register_listener(Channel.GPS_NUM_SAT, sats)
    client.register_listener(Channel.GPS_HDOP, hdop)

    def on_failure(failure: DeliveryFailure) -> None:
        print(f"\ndelivery failed: {failure}")
        logger.write(event="delivery_failure", command=failure.message.name, telemetry=None,
                     extra={"checksum": failure.checksum, "attempts": failure.attempts})

    def on_state(state: int, substate: int) -> None:
        logger.write(event="state", command="", telemetry=None,
                     extra={"state": state, "substate": substate, "text": describe_state(state, substate)})

    def on_connection(connected: bool) -> None:
        if not connected:
            print("\nlink down")
        logger.write(event="connection", command="", telemetry=None, extra={"connected": connected})

    client.add_failure_listener(on_failure)
    client.set_state_handler(on_state)
    client.add_connection_listener(on_connection)
    client.add_text_listener(lambda text: print(f"\nvehicle: {text}"))

    watch_state = {"watch": False}
    watch_stop = threading.Event()
    watch_thread = threading.Thread(
        target=_watch_loop,
        args=(client, watch_stop, watch_state, 1.0 / max(0.1, float(args.telemetry_print_hz)), sats, hdop),
        daemon=True,
        name="link-watch",
    )

    try:
        client.open()
        watch_thread.start()
        if telemetry_log is not None:
            telemetry_log.start()
        if client.wait_for_sync():
            print("Link synchronized. Type 'help' for commands.")
        else:
            print("No sync reply yet. Type 'help' for commands.")

        while True:
            try:
                raw = input("link> ").strip()
            except EOFError:
                raw = "quit"

            if not raw:
                continue

            parts = raw.split()
            cmd = parts[0].lower()

            try:
                if cmd == "help":
                    print(HELP_TEXT, end="")

                elif cmd == "status":
                    stats = client.get_stats()
                    print(f"connected: {client.connected}")
                    print(_format_telemetry(client, sats, hdop))
                    print(_format_states(client))
                    print(
                        "stats: "
                        f"tx_ok={stats.tx_frames_ok} tx_err={stats.tx_errors} "
                        f"rx_ok={stats.rx_frames_ok} rx_crc={stats.rx_crc_errors} "
                        f"rx_drop={stats.rx_parse_drops} retx={stats.retransmits} "
                        f"failed={stats.delivery_failures} pending={stats.pending_confirmations}"
                    )

                elif cmd == "wp":
                    _handle_waypoint(client, parts)

                elif cmd == "goto":
                    if len(parts) != 2:
                        raise ValueError("usage: goto <index>")
                    index = client.send_rover_to(int(parts[1]))
                    print(f"target={index}")

                elif cmd == "set":
                    if len(parts) != 3:
                        raise ValueError("usage: set <setting> <value>")
                    client.set_setting(int(parts[1]), float(parts[2]))
                    print(f"setting {parts[1]} <- {float(parts[2])}")

                elif cmd == "poll":
                    if len(parts) != 2:
                        raise ValueError("usage: poll <setting>")
                    client.poll_setting(int(parts[1]))

                elif cmd == "ports":
                    _print_ports()

                elif cmd == "logperiod":
                    if len(parts) != 2:
                        raise ValueError("usage: logperiod <ms>")
                    if telemetry_log is None:
                        raise ValueError("telemetry log disabled (start with --telemetry-log)")
                    telemetry_log.set_period(int(parts[1]))
                    print(f"logperiod={telemetry_log.period_ms}ms")

                elif cmd == "watch":
                    if len(parts) != 2:
                        raise ValueError("usage: watch on|off")
                    watch_state["watch"] = _parse_on_off(parts[1].lower())
                    print(f"watch={'on' if watch_state['watch'] else 'off'}")

                elif cmd == "log":
                    if len(parts) != 2:
                        raise ValueError("usage: log on|off")
                    enabled = _parse_on_off(parts[1].lower())
                    client.set_log_enabled(enabled)
                    print(f"log={'on' if enabled else 'off'}")

                elif cmd == "quit":
                    print("exiting...")
                    logger.write(event="command", command=raw, telemetry=client.get_telemetry())
                    break

                else:
                    print("unknown command. try: help")

                logger.write(
                    event="command",
                    command=raw,
                    telemetry=client.get_telemetry(),
                    extra={"stats": asdict(client.get_stats())},
                )

            except (ValueError, LinkError) as exc:
                print(f"error: {exc}")

    except KeyboardInterrupt:
        print("\ninterrupted by user")

    except LinkError as exc:
        print(f"error: {exc}")
        return 1

    finally:
        watch_stop.set()
        if watch_thread.is_alive():
            watch_thread.join(timeout=1.0)
        if telemetry_log is not None:
            telemetry_log.stop()
        client.close()
        logger.close()

    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rover serial link client")
    parser.add_argument("--port", default=None, help="Serial port (default: from config, /dev/ttyUSB0)")
    parser.add_argument("--baud", type=int, default=None, help="Baud rate (default: from config, 9600)")
    parser.add_argument("--config", default=None, help="Optional YAML configuration file")
    parser.add_argument("--list-ports", action="store_true", help="Print the available serial ports and exit")
    parser.add_argument(
        "--telemetry-print-hz",
        type=float,
        default=2.0,
        help="Telemetry print rate when watch=on (default: 2)",
    )
    parser.add_argument("--log-file", default=None, help="Optional JSONL session log path")
    parser.add_argument(
        "--telemetry-log",
        default=None,
        help="Optional JSONL telemetry log path, written every link.log_period_ms",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser
