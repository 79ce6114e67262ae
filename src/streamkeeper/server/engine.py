"""mpv-backed streaming engine.

One ``MPVEngine`` is one playback instance: an mpv process started idle with
an IPC socket, bound to a display surface, playing a single stream URL.
mpv IPC events are translated into three engine events:

    file-loaded              -> LOADING_COMPLETE
    end-file (reason=eof)    -> STREAM_END
    end-file (reason=error)  -> ERROR
    IPC connection dropped   -> ERROR (mpv died)

Callbacks run on the IPC reader thread; callers that need a particular
thread must marshal themselves.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from enum import Enum
from typing import IO, Callable

from streamkeeper.config import ServerConfig, SessionConfig
from streamkeeper.server.mpv_client import MPVClient, MPVError
from streamkeeper.server.surface import DisplaySurface

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """The engine could not be started or driven."""


class EngineEvent(str, Enum):
    ERROR = "error"
    LOADING_COMPLETE = "loading_complete"
    STREAM_END = "stream_end"


class ErrorType:
    NETWORK_ERROR = "NetworkError"
    MEDIA_ERROR = "MediaError"
    OTHER_ERROR = "OtherError"


def classify_file_error(file_error: str) -> str:
    """Map mpv's end-file ``file_error`` string onto an ErrorType."""
    text = (file_error or "").lower()
    if "loading failed" in text or "network" in text or "timeout" in text:
        return ErrorType.NETWORK_ERROR
    if "unrecognized" in text or "format" in text or "codec" in text or "demux" in text:
        return ErrorType.MEDIA_ERROR
    return ErrorType.OTHER_ERROR


def build_mpv_command(
    session: SessionConfig,
    surface: DisplaySurface,
    server: ServerConfig,
) -> list[str]:
    """Build the mpv argv for one session.

    mpv starts idle and paused; load() issues loadfile and play() unpauses.
    """
    cmd = [
        server.mpv_path,
        f"--input-ipc-server={server.mpv_socket}",
        f"--hwdec={server.mpv_hwdec}",
        "--idle=yes",
        "--pause",
        "--osc=no",
        "--no-terminal",
        *surface.mpv_args(),
    ]

    if session.transport_type:
        cmd.append(f"--demuxer-lavf-format={session.transport_type}")

    # Live stream optimizations
    if session.is_live:
        cmd.extend([
            "--profile=low-latency",
            "--cache=yes",
            "--cache-secs=10",
            "--demuxer-lavf-o=fflags=+discardcorrupt",
            "--framedrop=decoder+vo",
        ])

    if not session.has_audio:
        cmd.append("--aid=no")
    else:
        cmd.append("--audio-stream-silence")
    if not session.has_video:
        cmd.append("--vid=no")

    return cmd


class MPVEngine:
    """A single mpv playback instance.

    Lifecycle mirrors a browser player object: construct, ``on()`` for
    callbacks, ``attach_media_element()``, ``load()``, ``play()``,
    ``destroy()``. An engine is single-use; build a new one to restart.
    """

    def __init__(
        self,
        session: SessionConfig,
        server: ServerConfig | None = None,
        client_factory: Callable[..., MPVClient] = MPVClient,
    ):
        self.session = session
        self.server = server or ServerConfig()
        self.url = session.resolve_url(self.server.stream_origin)
        self.mpv = client_factory(
            self.server.mpv_socket,
            on_event=self._on_mpv_event,
            on_disconnect=self._on_mpv_disconnect,
        )
        self._listeners: dict[EngineEvent, list[Callable]] = {e: [] for e in EngineEvent}
        self._surface: DisplaySurface | None = None
        self._process: subprocess.Popen | None = None
        self._log: IO | None = None
        self._loaded = False
        self._destroyed = False

    def on(self, event: EngineEvent, callback: Callable) -> None:
        self._listeners[EngineEvent(event)].append(callback)

    def _emit(self, event: EngineEvent, *args) -> None:
        if self._destroyed:
            return
        for callback in list(self._listeners[event]):
            callback(*args)

    def attach_media_element(self, surface: DisplaySurface) -> None:
        """Bind this instance to a display surface. Must precede load()."""
        if self._process is not None:
            raise EngineError("cannot attach a surface after load()")
        self._surface = surface

    def load(self) -> None:
        """Spawn mpv, connect IPC and start loading the stream URL."""
        if self._destroyed:
            raise EngineError("engine already destroyed")
        if self._surface is None:
            raise EngineError("no display surface attached")

        self._remove_stale_socket()
        cmd = build_mpv_command(self.session, self._surface, self.server)
        os.makedirs(os.path.dirname(self.server.mpv_log_file) or ".", exist_ok=True)
        self._log = open(self.server.mpv_log_file, "a")

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=self._log,
                stderr=self._log,
                env=self._surface.environment(),
            )
        except FileNotFoundError as e:
            raise EngineError(f"mpv not found at {self.server.mpv_path!r}") from e
        except OSError as e:
            raise EngineError(f"failed to start mpv: {e}") from e

        self._wait_for_ipc()
        logger.info("Loading %s on %s", self.url, self._surface.describe())
        try:
            self.mpv.loadfile(self.url)
        except MPVError as e:
            raise EngineError(str(e)) from e

    def _wait_for_ipc(self) -> None:
        deadline = time.monotonic() + self.server.ipc_connect_timeout
        while time.monotonic() < deadline:
            exit_code = self._process.poll()
            if exit_code is not None:
                raise EngineError(f"mpv exited during startup (exit={exit_code})")
            if self.mpv.connect():
                return
            time.sleep(0.25)
        raise EngineError(
            f"mpv IPC not available after {self.server.ipc_connect_timeout:.0f}s"
        )

    def play(self) -> None:
        if not self.mpv.set_property("pause", False):
            raise EngineError("mpv refused to unpause")

    def destroy(self) -> None:
        """Stop mpv and release the socket. Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        try:
            if self.mpv.connected:
                self.mpv.quit()
            else:
                self.mpv.disconnect()
        finally:
            self._kill_process()
            if self._log:
                self._log.close()
                self._log = None

    def _kill_process(self) -> None:
        proc, self._process = self._process, None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=5)

    def _remove_stale_socket(self) -> None:
        path = self.server.mpv_socket
        if os.path.exists(path):
            try:
                os.remove(path)
                logger.debug("Removed stale mpv socket: %s", path)
            except OSError as e:
                logger.warning("Could not remove stale socket %s: %s", path, e)

    def _on_mpv_event(self, msg: dict) -> None:
        name = msg.get("event")
        if name == "file-loaded":
            if not self._loaded:
                self._loaded = True
                self._emit(EngineEvent.LOADING_COMPLETE)
        elif name == "end-file":
            reason = msg.get("reason")
            if reason == "eof":
                self._emit(EngineEvent.STREAM_END)
            elif reason == "error":
                detail = msg.get("file_error", "unknown error")
                self._emit(EngineEvent.ERROR, classify_file_error(detail), detail, msg)

    def _on_mpv_disconnect(self) -> None:
        exit_code = self._process.poll() if self._process else None
        self._emit(
            EngineEvent.ERROR, ErrorType.OTHER_ERROR,
            "mpv IPC connection lost", {"exit_code": exit_code},
        )

    def status(self) -> dict:
        """Best-effort playback status for status endpoints."""
        if self._destroyed or not self.mpv.connected:
            return {"connected": False, "url": self.url}
        return {
            "connected": True,
            "url": self.url,
            "paused": self.mpv.get_property("pause", False),
            "position": self.mpv.get_property("time-pos", 0),
            "buffered": self.mpv.get_property("demuxer-cache-duration", 0),
        }
