"""
Protocol client contract and session lifecycle.

The messaging protocol itself (pairing, transport encryption, multi-device
crypto) lives in an external protocol client process. This module holds:

- ``ProtocolClient``: what the bridge needs from that process (a send call)
- ``SocketProtocolClient``: NDJSON-over-UNIX-socket implementation
- ``Session``: the one live session per process, with an explicit
  open -> (connected | disconnected | logged_out) -> closed lifecycle

Wire format (one JSON object per line, one request per connection):
    -> {"id": "...", "v": 1, "method": "send", "params": {"destination": "...", "body": "..."}}
    <- {"id": "...", "ok": true, "result": {"detail": "..."}, "error": null}
"""

import json
import logging
import socket
import threading
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from wabridge.events import CONNECTED, LOGGED_OUT, ConnectionStateEvent

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
CLOSED = "closed"


class ProtocolClient(ABC):
    """Outbound side of the external protocol client."""

    @abstractmethod
    def send(self, destination: str, body: str, timeout_s: float) -> Tuple[bool, str]:
        """
        Send a text message.

        Returns:
            (ok, detail) as reported by the protocol client

        Raises:
            TimeoutError: if no answer arrives within timeout_s
            OSError: if the protocol client cannot be reached
        """
        pass

    def close(self) -> None:
        """Release client resources."""
        pass


def json_line(obj: Any) -> bytes:
    return (json.dumps(obj, separators=(",", ":"), default=str) + "\n").encode("utf-8")


def _build_request(method: str, params: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(uuid.uuid4()), "v": 1, "method": method, "params": params}


class SocketProtocolClient(ProtocolClient):
    """Talks to the protocol client over its UNIX socket."""

    def __init__(self, socket_path):
        self.socket_path = Path(socket_path)

    def _call(self, request: Dict[str, Any], timeout_s: float) -> Dict[str, Any]:
        # timeout_s bounds the whole exchange, not each recv
        deadline = time.monotonic() + timeout_s
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(self.socket_path))
            s.sendall(json_line(request))

            # Read one NDJSON response line.
            buf = bytearray()
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout("protocol client response exceeded deadline")
                s.settimeout(remaining)
                chunk = s.recv(4096)
                if not chunk:
                    break
                buf.extend(chunk)
                if b"\n" in chunk:
                    break
            line = bytes(buf).split(b"\n", 1)[0]
            if not line:
                raise ConnectionError("empty response from protocol client")
            return json.loads(line.decode("utf-8"))

    def send(self, destination: str, body: str, timeout_s: float) -> Tuple[bool, str]:
        request = _build_request("send", {"destination": destination, "body": body})
        try:
            resp = self._call(request, timeout_s)
        except socket.timeout as e:
            raise TimeoutError(f"protocol client did not answer within {timeout_s}s") from e
        except json.JSONDecodeError as e:
            return False, f"Invalid response from protocol client: {e}"

        if resp.get("ok"):
            result = resp.get("result") or {}
            return True, str(result.get("detail") or "sent")
        error = resp.get("error") or {}
        return False, str(error.get("message") or "send rejected by protocol client")


class Session:
    """
    The process-wide protocol session handle.

    Created once at startup, updated from connection events, closed on
    shutdown or forced logout. Components receive the handle explicitly.
    """

    def __init__(self, client: ProtocolClient, send_timeout_s: float = 10.0):
        self.client = client
        self.send_timeout_s = send_timeout_s
        self.state = UNKNOWN
        self.own_jid: Optional[str] = None
        self.reason: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self.state == CLOSED

    @property
    def can_send(self) -> bool:
        return self.state not in (CLOSED, LOGGED_OUT)

    def apply(self, event: ConnectionStateEvent) -> None:
        """Track connection lifecycle from a connection event."""
        with self._lock:
            if self.state == CLOSED:
                return
            self.state = event.state
            self.reason = event.reason
            if event.state == CONNECTED and event.own_jid:
                self.own_jid = event.own_jid
        if event.state == LOGGED_OUT:
            logger.warning(f"Session invalidated by protocol client: {event.reason or 'logged out'}")

    def send(self, destination: str, body: str) -> Tuple[bool, str]:
        """Forward a send to the protocol client with the session's timeout."""
        if not self.can_send:
            return False, f"Session is {self.state}; re-pair the protocol client to send"
        return self.client.send(destination, body, self.send_timeout_s)

    def close(self) -> None:
        with self._lock:
            if self.state == CLOSED:
                return
            self.state = CLOSED
        self.client.close()
        logger.info("Protocol session closed")

    def describe(self) -> Dict[str, Any]:
        return {"state": self.state, "own_jid": self.own_jid, "reason": self.reason}
