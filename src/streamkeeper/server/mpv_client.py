"""mpv JSON IPC client.

Communicates with mpv via its Unix domain socket using the JSON IPC protocol.
A reader thread owns the socket's receive side: replies are routed back to
the waiting request by ``request_id`` and unsolicited event messages
(``file-loaded``, ``end-file``, ...) are handed to ``on_event``.
Ref: https://mpv.io/manual/master/#json-ipc
"""

import json
import logging
import queue
import socket
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class MPVError(Exception):
    """Error communicating with mpv."""


class MPVClient:
    """Client for mpv's JSON IPC protocol over Unix socket.

    Usage:
        client = MPVClient("/tmp/mpv-socket", on_event=print)
        client.connect()
        client.set_property("pause", False)
        client.command("loadfile", "http://host/live", "replace")
    """

    def __init__(
        self,
        socket_path: str = "/tmp/streamkeeper-mpv-socket",
        on_event: Callable[[dict], None] | None = None,
        on_disconnect: Callable[[], None] | None = None,
    ):
        self.socket_path = socket_path
        self.on_event = on_event
        self.on_disconnect = on_disconnect
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()
        self._request_id = 0
        self._waiting: dict[int, queue.Queue] = {}
        self._reader: threading.Thread | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self, timeout: float = 5.0) -> bool:
        """Connect to the mpv IPC socket and start the reader thread.

        Returns True if connected, False if socket doesn't exist yet.
        """
        with self._lock:
            if self._sock is not None:
                return True
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.settimeout(timeout)
                sock.connect(self.socket_path)
            except (FileNotFoundError, ConnectionRefusedError):
                sock.close()
                logger.debug("mpv socket not available at %s", self.socket_path)
                return False
            except OSError as e:
                sock.close()
                logger.warning("Failed to connect to mpv: %s", e)
                return False

            sock.settimeout(None)
            self._sock = sock
            self._closing = False
            self._reader = threading.Thread(
                target=self._read_loop, args=(sock,),
                daemon=True, name="mpv-ipc-reader",
            )
            self._reader.start()
            logger.info("Connected to mpv at %s", self.socket_path)
            return True

    def disconnect(self):
        """Close the connection. Does not fire on_disconnect."""
        with self._lock:
            sock, self._sock = self._sock, None
            self._closing = True
        if sock:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                sock.close()
            except OSError:
                pass
        reader, self._reader = self._reader, None
        if reader and reader is not threading.current_thread():
            reader.join(timeout=2)
        self._fail_waiting()

    def _fail_waiting(self):
        with self._lock:
            waiting, self._waiting = self._waiting, {}
        for q in waiting.values():
            q.put_nowait(None)

    def _read_loop(self, sock: socket.socket):
        """Read newline-delimited JSON until the socket closes."""
        buffer = b""
        while True:
            try:
                chunk = sock.recv(4096)
            except OSError:
                break
            if not chunk:
                break
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                if line.strip():
                    self._handle_line(line)

        with self._lock:
            unexpected = not self._closing and self._sock is sock
            if unexpected:
                self._sock = None
        self._fail_waiting()
        if unexpected:
            logger.warning("mpv IPC connection lost (%s)", self.socket_path)
            if self.on_disconnect:
                self.on_disconnect()

    def _handle_line(self, line: bytes):
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed IPC line: %r", line[:80])
            return

        if "event" in msg:
            if self.on_event:
                try:
                    self.on_event(msg)
                except Exception:
                    logger.exception("mpv event handler failed for %s", msg.get("event"))
            return

        with self._lock:
            q = self._waiting.pop(msg.get("request_id"), None)
        if q is not None:
            q.put_nowait(msg)

    def _send(self, data: dict, timeout: float = 5.0) -> dict | None:
        """Send a JSON command and wait for the response."""
        with self._lock:
            sock = self._sock
            if sock is None:
                return None
            self._request_id += 1
            request_id = self._request_id
            q: queue.Queue = queue.Queue(maxsize=1)
            self._waiting[request_id] = q

        data["request_id"] = request_id
        msg = json.dumps(data) + "\n"
        try:
            sock.sendall(msg.encode("utf-8"))
        except OSError:
            with self._lock:
                self._waiting.pop(request_id, None)
            return None

        try:
            return q.get(timeout=timeout)
        except queue.Empty:
            with self._lock:
                self._waiting.pop(request_id, None)
            logger.debug("mpv did not answer request %d in %.1fs", request_id, timeout)
            return None

    def command(self, *args) -> dict | None:
        """Send a command to mpv.

        Examples:
            client.command("quit")
            client.command("loadfile", "http://host/live", "replace")
        """
        return self._send({"command": list(args)})

    def get_property(self, name: str, default=None):
        """Get an mpv property value.

        Common properties:
            time-pos     - Current position in seconds
            pause        - Whether paused (bool)
            idle-active  - Whether mpv is idle (not playing)
            demuxer-cache-duration - Seconds buffered ahead
        """
        resp = self._send({"command": ["get_property", name]})
        if resp and resp.get("error") == "success":
            return resp.get("data")
        return default

    def set_property(self, name: str, value) -> bool:
        """Set an mpv property value."""
        resp = self._send({"command": ["set_property", name, value]})
        return resp is not None and resp.get("error") == "success"

    def loadfile(self, url: str) -> None:
        """Replace whatever mpv is playing with url.

        Raises MPVError if mpv rejects the command or does not answer.
        """
        resp = self.command("loadfile", url, "replace")
        if resp is None:
            raise MPVError("mpv did not answer loadfile")
        if resp.get("error") != "success":
            raise MPVError(f"loadfile failed: {resp.get('error')}")

    def quit(self) -> bool:
        """Tell mpv to exit."""
        resp = self.command("quit")
        self.disconnect()
        return resp is not None
