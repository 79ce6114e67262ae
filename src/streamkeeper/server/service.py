"""Playback service - runs the session owner and controller on one loop.

The owner and controller are single-threaded; they live on an asyncio event
loop driven by a dedicated ``playback-loop`` thread. Flask request threads
and the Telegram bot reach them only through ``call()``, which marshals the
work onto the loop and waits for the result.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from functools import partial
from typing import Any, Callable

from streamkeeper.config import Config
from streamkeeper.server.engine import MPVEngine
from streamkeeper.server.events import EventBus
from streamkeeper.server.reconnect import ReconnectController
from streamkeeper.server.session import SessionOwner
from streamkeeper.server.surface import DisplaySurface

logger = logging.getLogger(__name__)


class ServiceNotRunning(RuntimeError):
    """Raised when work that must run on the playback loop is requested
    while the loop thread is down."""


class PlaybackService:
    """Owns the event loop thread, the session owner and the controller."""

    def __init__(
        self,
        config: Config | None = None,
        engine_factory: Callable | None = None,
        event_bus: EventBus | None = None,
        surface: DisplaySurface | None = None,
    ):
        self.config = config or Config()
        self.event_bus = event_bus or EventBus()
        if engine_factory is None:
            engine_factory = partial(MPVEngine, server=self.config.server)
        self.surface = surface or DisplaySurface.from_config(self.config.display)

        self.loop = asyncio.new_event_loop()
        self.owner = SessionOwner(
            self.config.session, self.surface, engine_factory,
            self.loop, event_bus=self.event_bus,
        )
        self.controller = ReconnectController(
            self.owner, self.loop, self.config.reconnect, event_bus=self.event_bus,
        )
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self.loop.is_running()

    def start(self):
        """Start the loop thread and bring up the first session."""
        if self._thread is not None:
            return
        ready = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(ready,), daemon=True, name="playback-loop",
        )
        self._thread.start()
        ready.wait(timeout=5)
        self.loop.call_soon_threadsafe(self.controller.start)
        logger.info("Playback service started (%s)", self.surface.describe())

    def _run(self, ready: threading.Event):
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(ready.set)
        try:
            self.loop.run_forever()
        finally:
            self.loop.close()

    def stop(self):
        """Cancel pending retries, destroy the session and stop the loop."""
        if self._thread is None:
            self.controller.shutdown()
            return
        try:
            self.call(self.controller.shutdown, timeout=15)
        except Exception as e:
            logger.warning("Error during shutdown: %s", e)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=10)
        self._thread = None
        logger.info("Playback service stopped")

    def call(self, fn: Callable[[], Any], timeout: float = 30.0) -> Any:
        """Run fn on the loop thread and return its result.

        Before start() (tests, --no-player) fn runs inline on the caller's
        thread. Only read-only work may go through that path.
        """
        if not self.is_running:
            return fn()
        if threading.current_thread() is self._thread:
            return fn()

        async def invoke():
            return fn()

        future = asyncio.run_coroutine_threadsafe(invoke(), self.loop)
        return future.result(timeout=timeout)

    def request_reconnect(self) -> dict:
        """Manual reconnect from any thread. Returns the new snapshot.

        Raises ServiceNotRunning when the loop is down: a session created
        then would have nothing delivering its events or firing retries.
        """
        if not self.is_running:
            raise ServiceNotRunning("playback loop is not running")

        def run():
            self.controller.manual_reconnect()
            return self.controller.snapshot()
        return self.call(run)

    def status(self) -> dict:
        status = self.call(self.controller.snapshot)
        session = self.owner.session
        engine_status = {}
        if session is not None and hasattr(session.engine, "status"):
            try:
                engine_status = session.engine.status()
            except Exception as e:
                logger.debug("Engine status unavailable: %s", e)
        status["engine"] = engine_status
        status["running"] = self.is_running
        status["url"] = self.config.session.url
        return status
