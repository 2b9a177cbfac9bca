"""
Tests for the bridge daemon's NDJSON endpoint and CLI commands.
"""

import argparse
import json
import socket
import tempfile
import threading
from pathlib import Path

import pytest

from wabridge.daemon import BridgeService, DaemonServer, cmd_status, cmd_stop
from wabridge.events import EventNormalizer
from wabridge.ingestion import IngestionEngine, IngestionLoop


class FakeService:
    def health(self):
        return {"ok": True}

    def event(self, params):
        return {"accepted": True, "type": params.get("type")}


def _call_many(socket_path: Path, payloads: list) -> list:
    """Send several NDJSON lines on one connection and read one reply per line."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.settimeout(5)
        s.connect(str(socket_path))
        s.sendall(b"".join(
            p if isinstance(p, bytes) else (json.dumps(p) + "\n").encode("utf-8")
            for p in payloads
        ))
        buf = bytearray()
        while buf.count(b"\n") < len(payloads):
            chunk = s.recv(4096)
            if not chunk:
                break
            buf.extend(chunk)
    return [json.loads(line) for line in bytes(buf).splitlines() if line.strip()]


def _call(socket_path: Path, payload) -> dict:
    return _call_many(socket_path, [payload])[0]


def _short_socket_path() -> Path:
    # AF_UNIX has a short path length limit; pytest tmp_path can exceed it.
    d = Path(tempfile.mkdtemp(prefix="wabridge-d-", dir="/tmp"))
    return d / "bridge.sock"


@pytest.fixture
def running_server():
    """Start a DaemonServer for a service; stops and cleans up afterwards."""
    started = []

    def _start(service):
        sock = _short_socket_path()
        server = DaemonServer(sock, service)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        started.append((server, sock))
        return sock

    yield _start

    for server, sock in started:
        server.shutdown()
        server.server_close()
        sock.unlink(missing_ok=True)
        sock.parent.rmdir()


class TestDispatch:
    """Request dispatch with a fake service."""

    def test_unknown_method(self, running_server):
        sock = running_server(FakeService())
        resp = _call(sock, {"id": "1", "v": 1, "method": "nope", "params": {}})
        assert resp["id"] == "1"
        assert resp["ok"] is False
        assert resp["error"]["code"] == "UNKNOWN_METHOD"

    def test_health_ok(self, running_server):
        sock = running_server(FakeService())
        resp = _call(sock, {"id": "3", "v": 1, "method": "health", "params": {}})
        assert resp["ok"] is True
        assert resp["result"]["ok"] is True
        assert "meta" in resp and "server_ms" in resp["meta"]

    def test_invalid_json(self, running_server):
        sock = running_server(FakeService())
        resp = _call(sock, b"{not json\n")
        assert resp["ok"] is False
        assert resp["error"]["code"] == "INVALID_JSON"

    def test_missing_method(self, running_server):
        sock = running_server(FakeService())
        resp = _call(sock, {"id": "4", "params": {}})
        assert resp["ok"] is False
        assert "missing method" in resp["error"]["message"]

    def test_many_requests_on_one_connection(self, running_server):
        sock = running_server(FakeService())
        replies = _call_many(sock, [
            {"id": str(i), "method": "event", "params": {"type": "message"}} for i in range(5)
        ])
        assert [r["id"] for r in replies] == ["0", "1", "2", "3", "4"]
        assert all(r["ok"] for r in replies)


class TestBridgeService:
    """End-to-end: events over the socket land in the store."""

    @pytest.fixture
    def loop(self, engine):
        loop = IngestionLoop(engine, EventNormalizer(), poll_interval_s=0.01)
        loop.start()
        yield loop
        loop.stop()

    def test_events_are_ingested(self, running_server, store, loop):
        sock = running_server(BridgeService(loop=loop, store=store, socket_path=Path("/tmp/x.sock")))
        replies = _call_many(sock, [
            {"id": "c", "method": "event", "params": {
                "type": "connection", "state": "connected", "own_jid": "15557777@s.whatsapp.net",
            }},
            {"id": "h", "method": "event", "params": {
                "type": "history_sync",
                "conversations": [{
                    "jid": "g1@g.us", "name": "Group One",
                    "messages": [
                        {"id": "2", "sender": "15550001@s.whatsapp.net", "timestamp": 105, "content": "there"},
                        {"id": "1", "sender": "15550001@s.whatsapp.net", "timestamp": 100, "content": "hi"},
                    ],
                }],
            }},
            {"id": "m", "method": "event", "params": {
                "type": "message",
                "message": {"id": "1", "chat_jid": "g1@g.us", "timestamp": 100, "content": "hi"},
            }},
        ])
        assert all(r["ok"] for r in replies)

        loop.drain()
        assert store.stats()["messages"] == 2
        assert loop.stats["connection_events"] == 1

    def test_malformed_event_reported(self, running_server, store, loop):
        sock = running_server(BridgeService(loop=loop, store=store, socket_path=Path("/tmp/x.sock")))
        resp = _call(sock, {"id": "x", "method": "event", "params": {"type": "typing"}})
        assert resp["ok"] is False
        assert resp["error"]["code"] == "MALFORMED_EVENT"

    def test_health_reports_store_and_ingestion(self, running_server, store, loop):
        sock = running_server(BridgeService(loop=loop, store=store, socket_path=Path("/tmp/x.sock")))
        result = _call(sock, {"id": "h", "method": "health", "params": {}})["result"]
        assert result["ingesting"] is True
        assert result["store"]["messages"] == 0
        assert result["store_db"] == str(store.db_path)
        assert result["session"] is None


class TestCommands:
    """CLI subcommands against a daemon that is not running."""

    def _args(self, tmp_path):
        return argparse.Namespace(
            config=str(tmp_path / "wabridge.json"),
            socket=str(tmp_path / "bridge.sock"),
            pidfile=str(tmp_path / "bridge.pid"),
        )

    def test_status_not_running(self, tmp_path, capsys):
        assert cmd_status(self._args(tmp_path)) == 1
        assert "not running" in capsys.readouterr().out

    def test_stop_without_pidfile(self, tmp_path, capsys):
        assert cmd_stop(self._args(tmp_path)) == 1
        assert "not running" in capsys.readouterr().out

    def test_stop_with_invalid_pidfile(self, tmp_path):
        args = self._args(tmp_path)
        Path(args.pidfile).write_text("not-a-pid")
        assert cmd_stop(args) == 2
