#!/usr/bin/env python3
"""
WhatsApp bridge daemon - owns the store writer and ingests protocol events.

The external protocol client connects to a UNIX domain socket and pushes
events using NDJSON framing (one request per line, any number of lines per
connection). A single ingestion thread drains them into the local store, so
a slow backfill never blocks the socket and readers are never starved.

Requests:
    {"id": "...", "v": 1, "method": "event", "params": {"type": "message", "message": {...}}}
    {"id": "...", "v": 1, "method": "health", "params": {}}

Responses:
    {"id": "...", "ok": true, "result": {...}, "error": null, "meta": {"server_ms": 0.4, "protocol_v": 1}}

Usage:
    wabridge-daemon start --foreground
    wabridge-daemon status
    wabridge-daemon stop
"""

import argparse
import json
import logging
import os
import queue
import signal
import socket
import socketserver
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from wabridge.config import load_config, resolve_path, setup_logging
from wabridge.errors import MalformedEventError, WriterLockError
from wabridge.events import EventNormalizer, parse_event
from wabridge.ingestion import IngestionEngine, IngestionLoop
from wabridge.protocol import Session, SocketProtocolClient, json_line
from wabridge.store import MessageStore

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
SUBMIT_TIMEOUT_S = 5.0


def _now_iso() -> str:
    return datetime.now().isoformat()


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _is_socket_listening(socket_path: Path, timeout_s: float = 0.15) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(socket_path))
        return True
    except OSError:
        return False


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


@dataclass
class DaemonConfig:
    """Daemon configuration."""

    socket_path: Path
    pid_path: Path


class BridgeService:
    """
    The daemon's method surface.

    Kept separate from the socket server so request dispatch can be tested
    with a fake service.
    """

    def __init__(
        self,
        *,
        loop: IngestionLoop,
        store: MessageStore,
        socket_path: Path,
        session: Optional[Session] = None,
        started_at: Optional[str] = None,
    ):
        self.loop = loop
        self.store = store
        self.socket_path = socket_path
        self.session = session
        self.started_at = started_at or _now_iso()

    def health(self) -> dict[str, Any]:
        try:
            store_stats = self.store.stats()
        except Exception as e:
            logger.warning(f"Store stats unavailable: {e}")
            store_stats = None

        return {
            "pid": os.getpid(),
            "started_at": self.started_at,
            "socket": str(self.socket_path),
            "store_db": str(self.store.db_path),
            "store": store_stats,
            "ingesting": self.loop.running,
            "ingestion": dict(self.loop.stats),
            "discarded_events": self.loop.normalizer.discarded,
            "session": self.session.describe() if self.session else None,
        }

    def event(self, params: dict[str, Any]) -> dict[str, Any]:
        """Parse and queue one protocol event."""
        event = parse_event(params)
        self.loop.submit(event, timeout_s=SUBMIT_TIMEOUT_S)
        return {"accepted": True, "type": params.get("type")}


class RequestHandler(socketserver.StreamRequestHandler):
    """NDJSON request handler; serves lines until the client disconnects."""

    server: "DaemonServer"

    def handle(self) -> None:
        for raw in self.rfile:
            if not raw.strip():
                continue

            started = time.perf_counter()
            try:
                req = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                resp = _error_response(None, "INVALID_JSON", str(exc), started, PROTOCOL_VERSION)
            else:
                resp = self.server.dispatch(req, started_at=started)

            self.wfile.write(json_line(resp))
            self.wfile.flush()


def _error_response(req_id, code: str, message: str, started_at: float, v) -> dict[str, Any]:
    return {
        "id": req_id,
        "ok": False,
        "result": None,
        "error": {"code": code, "message": message, "details": None},
        "meta": {"server_ms": (time.perf_counter() - started_at) * 1000, "protocol_v": v},
    }


class DaemonServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    """Unix stream server with a simple dispatcher, one thread per connection."""

    daemon_threads = True

    def __init__(self, socket_path: Path, service: BridgeService):
        self.socket_path = socket_path
        self.service = service
        super().__init__(str(socket_path), RequestHandler)

    def dispatch(self, req: Any, *, started_at: float) -> dict[str, Any]:
        if not isinstance(req, dict):
            return _error_response(None, "INVALID_REQUEST", "request must be an object", started_at, PROTOCOL_VERSION)

        req_id = req.get("id")
        method = req.get("method")
        params = req.get("params") or {}
        v = req.get("v", PROTOCOL_VERSION)

        try:
            if not isinstance(method, str) or not method:
                raise ValueError("missing method")
            if not isinstance(params, dict):
                raise ValueError("params must be an object")

            if method == "health":
                result = self.service.health()
            elif method == "event":
                result = self.service.event(params)
            else:
                return _error_response(req_id, "UNKNOWN_METHOD", method, started_at, v)

            return {
                "id": req_id,
                "ok": True,
                "result": result,
                "error": None,
                "meta": {"server_ms": (time.perf_counter() - started_at) * 1000, "protocol_v": v},
            }
        except MalformedEventError as exc:
            logger.warning(f"Discarding malformed event: {exc}")
            return _error_response(req_id, "MALFORMED_EVENT", str(exc), started_at, v)
        except queue.Full:
            logger.warning("Ingestion queue full; asking protocol client to retry")
            return _error_response(req_id, "BUSY", "ingestion queue full, retry later", started_at, v)
        except Exception as exc:
            logger.error(f"Error dispatching {method}: {exc}", exc_info=True)
            return _error_response(req_id, "ERROR", str(exc), started_at, v)


def _ensure_state_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _serve(cfg: DaemonConfig, config: dict) -> int:
    """Open the writer, start ingestion and serve until signalled."""
    store = MessageStore(
        resolve_path(config["paths"]["store_db"]),
        busy_timeout_ms=config["store"]["busy_timeout_ms"],
    )
    try:
        writer = store.open_writer()
    except WriterLockError as exc:
        logger.error(str(exc))
        print(f"Cannot start: {exc}", file=sys.stderr)
        return 1

    session = Session(
        SocketProtocolClient(resolve_path(config["protocol"]["socket"])),
        send_timeout_s=config["protocol"]["send_timeout_s"],
    )
    loop = IngestionLoop(IngestionEngine(writer), EventNormalizer(), session=session)
    service = BridgeService(loop=loop, store=store, socket_path=cfg.socket_path, session=session)

    server = DaemonServer(cfg.socket_path, service)
    os.chmod(cfg.socket_path, 0o600)

    def _handle_sig(signum: int, _frame) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _handle_sig)
    signal.signal(signal.SIGINT, _handle_sig)

    loop.start()
    logger.info(f"Bridge daemon started pid={os.getpid()} socket={cfg.socket_path} store={store.db_path}")
    try:
        server.serve_forever()
    finally:
        server.server_close()
        loop.stop()
        writer.close()
        session.close()
        _unlink_quietly(cfg.socket_path)
        _unlink_quietly(cfg.pid_path)
        logger.info("Bridge daemon stopped")
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config) if args.config else None)
    cfg = _daemon_config(args, config)
    _ensure_state_dir(cfg.socket_path)
    _ensure_state_dir(cfg.pid_path)

    if cfg.socket_path.exists() and _is_socket_listening(cfg.socket_path):
        print(f"Daemon already running at {cfg.socket_path}", file=sys.stderr)
        return 1
    if cfg.socket_path.exists():
        _unlink_quietly(cfg.socket_path)

    if args.foreground:
        setup_logging(config, "bridge_daemon.log")
        cfg.pid_path.write_text(str(os.getpid()))
        print(f"[daemon] started pid={os.getpid()} socket={cfg.socket_path}", file=sys.stderr)
        return _serve(cfg, config)

    # Minimal detach: use a child process to own the server.
    pid = os.fork()
    if pid > 0:
        cfg.pid_path.write_text(str(pid))
        print(f"Started daemon pid={pid} socket={cfg.socket_path}")
        return 0

    os.setsid()
    with open(os.devnull, "rb", buffering=0) as devnull_in, open(os.devnull, "ab", buffering=0) as devnull_out:
        os.dup2(devnull_in.fileno(), 0)
        os.dup2(devnull_out.fileno(), 1)
        os.dup2(devnull_out.fileno(), 2)

    setup_logging(config, "bridge_daemon.log")
    return _serve(cfg, config)


def cmd_status(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config) if args.config else None)
    cfg = _daemon_config(args, config)
    pid = _read_text(cfg.pid_path)
    running = cfg.socket_path.exists() and _is_socket_listening(cfg.socket_path)
    if running:
        print(f"running pid={pid or 'unknown'} socket={cfg.socket_path}")
        return 0
    print(f"not running (socket={cfg.socket_path})")
    return 1


def cmd_stop(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config) if args.config else None)
    cfg = _daemon_config(args, config)
    pid_s = _read_text(cfg.pid_path)
    if not pid_s:
        if cfg.socket_path.exists():
            print("pidfile missing; removing stale socket", file=sys.stderr)
            _unlink_quietly(cfg.socket_path)
        print("not running")
        return 1

    try:
        pid = int(pid_s)
    except ValueError:
        print("invalid pidfile", file=sys.stderr)
        return 2

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print("process not found; cleaning stale files", file=sys.stderr)
        _unlink_quietly(cfg.socket_path)
    except OSError as exc:
        print(f"failed to signal daemon: {exc}", file=sys.stderr)
        return 2

    _unlink_quietly(cfg.pid_path)
    print("stopped")
    return 0


def _daemon_config(args: argparse.Namespace, config: dict) -> DaemonConfig:
    return DaemonConfig(
        socket_path=Path(args.socket) if args.socket else resolve_path(config["daemon"]["socket"]),
        pid_path=Path(args.pidfile) if args.pidfile else resolve_path(config["daemon"]["pidfile"]),
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="WhatsApp bridge daemon")
    parser.add_argument("--config", default=None, help="config file path (default: config/wabridge.json)")
    parser.add_argument("--socket", default=None, help="UNIX socket path (default: from config)")
    parser.add_argument("--pidfile", default=None, help="pidfile path (default: from config)")

    sub = parser.add_subparsers(dest="cmd", required=True)
    p_start = sub.add_parser("start", help="Start daemon")
    p_start.add_argument("--foreground", action="store_true", help="Run in foreground (recommended while developing)")
    p_start.set_defaults(func=cmd_start)

    p_status = sub.add_parser("status", help="Check daemon status")
    p_status.set_defaults(func=cmd_status)

    p_stop = sub.add_parser("stop", help="Stop daemon")
    p_stop.set_defaults(func=cmd_stop)

    args = parser.parse_args()
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
