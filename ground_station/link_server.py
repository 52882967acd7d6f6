from __future__ import annotations

import argparse
import asyncio
import json
import threading
import time
from collections import deque
from dataclasses import asdict
from pathlib import Path
from typing import Any, Deque, Dict, Optional, Set

import structlog
import websockets
from websockets.exceptions import ConnectionClosed

from .serial_link.config import GroundStationConfig, ServerConfig
from .serial_link.errors import DeliveryFailure, LinkError
from .serial_link.logconfig import configure_logging
from .serial_link.states import describe_state
from .serial_link.transport import LinkClient, list_ports

logger = structlog.get_logger(__name__)

MAX_PENDING_EVENTS = 256


class LinkServer:
    """Bridges one :class:`LinkClient` to WebSocket clients as JSON.

    Clients send ``{"cmd": ...}`` objects and get one reply per request;
    telemetry snapshots and link events are broadcast to every client at
    ``telemetry_hz``.
    """

    def __init__(self, client: LinkClient, config: Optional[ServerConfig] = None) -> None:
        self._client = client
        self._config = config if config is not None else ServerConfig()
        self._connections: Set[Any] = set()
        self._events: Deque[Dict[str, Any]] = deque(maxlen=MAX_PENDING_EVENTS)
        self._events_lock = threading.Lock()

        client.add_failure_listener(self._on_failure)
        client.add_connection_listener(self._on_connection)
        client.add_text_listener(self._on_text)
        client.add_setting_listener(self._on_setting)

    # Engine callbacks run on the link threads; they only queue events.

    def _push_event(self, event: Dict[str, Any]) -> None:
        event["timestamp"] = time.time()
        with self._events_lock:
            self._events.append(event)

    def _on_failure(self, failure: DeliveryFailure) -> None:
        self._push_event(
            {
                "event": "delivery_failure",
                "message": failure.message.name,
                "checksum": failure.checksum,
                "attempts": failure.attempts,
            }
        )

    def _on_connection(self, connected: bool) -> None:
        self._push_event({"event": "connection", "connected": connected})

    def _on_text(self, text: str) -> None:
        self._push_event({"event": "text", "text": text})

    def _on_setting(self, index: int, value: float) -> None:
        self._push_event({"event": "setting", "index": index, "value": value})

    def drain_events(self) -> list:
        with self._events_lock:
            events = list(self._events)
            self._events.clear()
        return events

    def status(self) -> Dict[str, Any]:
        states = self._client.get_state()
        return {
            "connected": self._client.connected,
            "telemetry": self._client.get_telemetry(),
            "state": [
                {"state": state, "substate": substate, "text": describe_state(state, substate)}
                for state, substate in sorted(states.items())
            ],
            "waypoints": self._client.get_waypoints(),
            "stats": asdict(self._client.get_stats()),
        }

    def handle_raw(self, raw: str) -> Dict[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            return {"ok": False, "error": f"invalid_json: {exc}"}

        if not isinstance(data, dict):
            return {"ok": False, "error": "payload must be object"}

        cmd = data.get("cmd")
        try:
            if cmd == "status":
                return {"ok": True, "state": self.status()}
            if cmd == "ports":
                return {"ok": True, "ports": list_ports()}

            if cmd == "connect":
                self._client.open()
            elif cmd == "disconnect":
                self._client.close()
            elif cmd == "add_waypoint":
                index = self._client.add_waypoint(
                    float(data["latitude"]),
                    float(data["longitude"]),
                    int(data.get("altitude", 0)),
                    index=None if data.get("index") is None else int(data["index"]),
                )
                return {"ok": True, "index": index}
            elif cmd == "alter_waypoint":
                index = self._client.alter_waypoint(
                    int(data["index"]),
                    float(data["latitude"]),
                    float(data["longitude"]),
                    int(data.get("altitude", 0)),
                )
                return {"ok": True, "index": index}
            elif cmd == "delete_waypoint":
                return {"ok": True, "index": self._client.delete_waypoint(int(data["index"]))}
            elif cmd == "clear_waypoints":
                self._client.clear_waypoints()
            elif cmd == "send_rover_to":
                return {"ok": True, "index": self._client.send_rover_to(int(data["index"]))}
            elif cmd == "set_setting":
                checksum = self._client.set_setting(int(data["index"]), float(data["value"]))
                return {"ok": True, "checksum": checksum}
            elif cmd == "poll_setting":
                self._client.poll_setting(int(data["index"]))
            else:
                return {"ok": False, "error": f"unknown cmd: {cmd!r}"}

        except KeyError as exc:
            return {"ok": False, "error": f"missing field: {exc.args[0]}"}
        except (TypeError, ValueError, LinkError) as exc:
            return {"ok": False, "error": str(exc)}

        return {"ok": True}

    async def _ws_handler(self, websocket) -> None:
        self._connections.add(websocket)
        try:
            await websocket.send(json.dumps({"ok": True, "message": "ground station ready"}, ensure_ascii=True))
            async for raw in websocket:
                # open/close and serial writes block; keep them off the event loop.
                response = await asyncio.to_thread(self.handle_raw, raw)
                await websocket.send(json.dumps(response, ensure_ascii=True))
        except ConnectionClosed:
            pass
        finally:
            self._connections.discard(websocket)

    async def _broadcast(self, payload: Dict[str, Any]) -> None:
        text = json.dumps(payload, ensure_ascii=True)
        for websocket in list(self._connections):
            try:
                await websocket.send(text)
            except ConnectionClosed:
                self._connections.discard(websocket)

    async def _telemetry_loop(self) -> None:
        period_s = 1.0 / max(0.1, float(self._config.telemetry_hz))
        while True:
            await asyncio.sleep(period_s)
            if not self._connections:
                continue
            for event in self.drain_events():
                await self._broadcast(event)
            await self._broadcast({"event": "telemetry", "state": self.status(), "timestamp": time.time()})

    async def serve(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop if stop is not None else asyncio.Event()
        async with websockets.serve(self._ws_handler, self._config.host, self._config.port):
            logger.info("WebSocket server listening", host=self._config.host, port=self._config.port)
            telemetry_task = asyncio.create_task(self._telemetry_loop())
            try:
                await stop.wait()
            finally:
                telemetry_task.cancel()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ground station WebSocket bridge for the rover serial link")
    parser.add_argument("--config", default=None, help="Optional YAML configuration file")
    parser.add_argument("--port", default=None, help="Serial port (overrides config)")
    parser.add_argument("--baud", type=int, default=None, help="Baud rate (overrides config)")
    parser.add_argument("--ws-host", default=None, help="WebSocket bind host (overrides config)")
    parser.add_argument("--ws-port", type=int, default=None, help="WebSocket port (overrides config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)

    config = GroundStationConfig.from_yaml(Path(args.config)) if args.config else GroundStationConfig()
    if args.ws_host is not None:
        config.server.host = args.ws_host
    if args.ws_port is not None:
        config.server.port = args.ws_port

    client = LinkClient(port=args.port, baud=args.baud, config=config.link)
    server = LinkServer(client, config.server)
    try:
        client.open()
    except LinkError as exc:
        logger.error("could not open link, waiting for a connect command", error=str(exc))

    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        pass
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
