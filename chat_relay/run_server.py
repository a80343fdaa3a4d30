import argparse
import asyncio
import json
import logging
import os
import signal
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from .database import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT, MessageLog, StorageError
from .server import BroadcastHandler
from .tables import PresenceRegistry
from .transport import HEARTBEAT_INTERVAL, HEARTBEAT_TIMEOUT, WebSocketTransport

DEFAULT_PORT = 3000
STATUS_INTERVAL = 20


def parse_address(value: str, default_port: int = DEFAULT_PORT) -> tuple[str, int]:
    """Split ws://host:port, host:port, :port or a bare port into (host, port)."""
    if "://" in value:
        url = urlparse(value)
        return url.hostname or "127.0.0.1", url.port or default_port
    host, _, port = value.rpartition(":")
    return host or "0.0.0.0", int(port)


def collect_origins(cli_origins: list[str] | None) -> list[str]:
    """ORIGIN (comma separated) followed by --origin flags, first occurrence kept."""
    configured = os.getenv("ORIGIN", "").split(",") + list(cli_origins or [])
    return list(dict.fromkeys(o.strip() for o in configured if o.strip()))


def cors_origin(request_origin: Optional[str], origins: List[str]) -> Optional[str]:
    # a browser accepts exactly one origin (or *) in Access-Control-Allow-Origin
    if not origins:
        return "*"
    if request_origin in origins:
        return request_origin
    return None


def history_limit(raw: Optional[str]) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_HISTORY_LIMIT
    if limit <= 0:
        return DEFAULT_HISTORY_LIMIT
    return min(limit, MAX_HISTORY_LIMIT)


def route_status(path: str, registry: PresenceRegistry, message_log: MessageLog) -> Tuple[int, Dict[str, Any]]:
    """Answer a GET on the status/history endpoint."""
    u = urlparse(path)
    if u.path == "/":
        try:
            stored = message_log.count()
        except StorageError as e:
            logging.warning("Message count unavailable: %s", e)
            stored = None
        return 200, {
            "status": "online",
            "message": "WebSocket chat server is running",
            "onlineUsers": len(registry),
            "storedMessages": stored,
        }
    if u.path == "/health":
        return 200, {"status": "ok", "timestamp": int(time.time() * 1000)}
    if u.path == "/api/messages":
        qs = parse_qs(u.query)
        limit = history_limit((qs.get("limit") or [None])[0])
        try:
            messages = message_log.recent_messages(limit)
        except StorageError:
            logging.exception("Error fetching messages")
            return 500, {"success": False, "error": "Failed to fetch messages"}
        return 200, {"success": True, "messages": [m.to_payload() for m in messages]}
    return 404, {"success": False, "error": "NO_ROUTE"}


def make_status_server(host: str, port: int, registry: PresenceRegistry, message_log: MessageLog,
                       origins: List[str]) -> ThreadingHTTPServer:

    class _StatusHandler(BaseHTTPRequestHandler):
        server_version = "ChatRelay-Status/1.0"

        def _reply(self, code: int, body: dict) -> None:
            data = json.dumps(body, separators=(",", ":")).encode("utf-8")
            headers = {"Content-Type": "application/json", "Content-Length": str(len(data))}
            allowed = cors_origin(self.headers.get("Origin"), origins)
            if allowed is not None:
                headers["Access-Control-Allow-Origin"] = allowed
            if origins:
                headers["Vary"] = "Origin"
            self.send_response(code)
            for name, value in headers.items():
                self.send_header(name, value)
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self):
            try:
                code, body = route_status(self.path, registry, message_log)
            except Exception:
                logging.exception("HTTP GET error")
                code, body = 500, {"success": False, "error": "SERVER_ERROR"}
            self._reply(code, body)

        def log_message(self, format, *args):
            logging.debug("[HTTP] " + format, *args)

    return ThreadingHTTPServer((host, port), _StatusHandler)


async def _status_printer(registry: PresenceRegistry, transport: WebSocketTransport, interval: float):
    while True:
        await asyncio.sleep(interval)
        logging.info("Online users: %s", len(registry))
        logging.info("Open connections: %s", len(transport))


async def _run(
    host: str,
    port: int,
    registry: PresenceRegistry,
    message_log: MessageLog,
    origins: list[str],
    ping_interval: float,
    ping_timeout: float,
    status_interval: float,
) -> None:
    transport = WebSocketTransport()
    transport.bind(BroadcastHandler(registry, message_log, transport))
    await transport.serve(
        host,
        port,
        origins=origins,
        ping_interval=ping_interval or None,
        ping_timeout=ping_timeout or None,
    )

    stop = asyncio.Event()

    # Install signal handlers when supported
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows may not support SIGTERM
            pass

    status_task = None
    if status_interval > 0:
        status_task = asyncio.create_task(_status_printer(registry, transport, status_interval))

    logging.info("[CORS] Allowed origins: %s", ", ".join(origins) if origins else "all")
    try:
        await stop.wait()
    finally:
        if status_task:
            status_task.cancel()
            try:
                await status_task
            except asyncio.CancelledError:
                pass
        await transport.close()
        logging.info("Server shutdown complete")


def build_parser() -> argparse.ArgumentParser:
    default_bind = f"ws://127.0.0.1:{os.getenv('PORT', DEFAULT_PORT)}"
    parser = argparse.ArgumentParser(description="Group chat relay server")
    parser.add_argument(
        "--bind",
        default=os.getenv("BIND", default_bind),
        help="Websocket bind address ws://host:port",
    )
    parser.add_argument(
        "--http",
        default=os.getenv("HTTP_BIND", "127.0.0.1:8080"),
        help="Bind address for the status/history HTTP endpoint. Use host:port or 'off' to disable.",
    )
    parser.add_argument(
        "--db",
        default=os.getenv("CHAT_DB", "chat_messages.db"),
        help="SQLite file holding the message log",
    )
    parser.add_argument(
        "--origin", action="append", help="Allowed browser origin (repeatable)"
    )
    parser.add_argument(
        "--ping-interval",
        type=float,
        default=float(os.getenv("PING_INTERVAL", HEARTBEAT_INTERVAL)),
        help="Seconds between keepalive pings, 0 disables",
    )
    parser.add_argument(
        "--ping-timeout",
        type=float,
        default=float(os.getenv("PING_TIMEOUT", HEARTBEAT_TIMEOUT)),
        help="Seconds to wait for a pong before dropping the connection",
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=float(os.getenv("STATUS_INTERVAL", STATUS_INTERVAL)),
        help="Seconds between status log lines, 0 disables",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level name",
    )
    return parser


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s"
    )

    registry = PresenceRegistry()
    message_log = MessageLog(args.db)
    origins = collect_origins(args.origin)

    httpd = None
    if args.http and args.http.lower() != "off":
        http_host, http_port = parse_address(args.http)
        httpd = make_status_server(http_host, http_port, registry, message_log, origins)
        threading.Thread(target=httpd.serve_forever, daemon=True).start()
        logging.info("[HTTP] listening on http://%s:%s", http_host, http_port)

    host, port = parse_address(args.bind)
    try:
        asyncio.run(_run(
            host,
            port,
            registry,
            message_log,
            origins,
            args.ping_interval,
            args.ping_timeout,
            args.status_interval,
        ))
    except KeyboardInterrupt:
        logging.info("Shutting down")
    finally:
        if httpd:
            httpd.shutdown()


if __name__ == "__main__":
    main()
