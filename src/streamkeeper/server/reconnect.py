"""Reconnection controller - keeps the playback session alive.

Reacts to session lifecycle events: a successful load clears the attempt
counter, an error or stream end schedules a delayed recreation. Delays grow
by ``backoff_multiplier`` per failure up to ``max_delay_ms``; after
``max_attempts`` consecutive failures automatic recovery stops until
``manual_reconnect()`` is called.

All methods run on the controller's event loop. The only pending work is a
single ``asyncio.TimerHandle`` for the next recreation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from streamkeeper.config import ReconnectConfig
from streamkeeper.server.session import SessionEvent, SessionEventType, SessionOwner

if TYPE_CHECKING:
    from streamkeeper.server.events import EventBus

logger = logging.getLogger(__name__)


@dataclass
class ReconnectState:
    attempt_count: int = 0
    current_delay_ms: float = 0.0
    pending_timer: asyncio.TimerHandle | None = None

    @property
    def retry_pending(self) -> bool:
        return self.pending_timer is not None and not self.pending_timer.cancelled()


class ReconnectController:
    """Failure policy and destroy/recreate orchestration for one owner."""

    def __init__(
        self,
        owner: SessionOwner,
        loop: asyncio.AbstractEventLoop,
        policy: ReconnectConfig | None = None,
        event_bus: "EventBus | None" = None,
    ):
        self.owner = owner
        self.policy = policy or ReconnectConfig()
        self.event_bus = event_bus
        self._loop = loop
        self.state = ReconnectState(current_delay_ms=self.policy.base_delay_ms)
        self.recreations = 0
        self._handlers = {
            SessionEventType.ERROR: self._handle_error,
            SessionEventType.LOAD_COMPLETE: self._handle_load_complete,
            SessionEventType.STREAM_END: self._handle_stream_end,
        }
        owner.set_listener(self.dispatch)

    @property
    def exhausted(self) -> bool:
        return self.state.attempt_count >= self.policy.max_attempts

    def start(self):
        """Bring up the first session."""
        logger.info("Starting playback session")
        self._recreate()

    def shutdown(self):
        """Cancel any pending retry and release the session."""
        self._cancel_pending()
        self.owner.destroy_session()
        logger.info("Reconnection controller stopped")

    def dispatch(self, event: SessionEvent):
        """Route a lifecycle event through the handler table."""
        self._handlers[event.type](event)

    def _handle_error(self, event: SessionEvent):
        self.on_error(event.kind, event.detail)

    def _handle_load_complete(self, event: SessionEvent):
        self.on_load_complete()

    def _handle_stream_end(self, event: SessionEvent):
        self.on_stream_end()

    def on_load_complete(self):
        # Delay is left alone; only manual_reconnect() shrinks it.
        self.state.attempt_count = 0
        logger.info(
            "Stream loaded, attempts reset (next delay stays %.0fms)",
            self.state.current_delay_ms,
        )
        self._emit("loaded", "Stream loaded", f"next delay {self.state.current_delay_ms:.0f}ms")

    def on_error(self, kind: str = "", detail: str = ""):
        logger.warning("Session error: %s %s", kind, detail)
        self.handle_failure()

    def on_stream_end(self):
        logger.info("Session stream ended")
        self.handle_failure()

    def handle_failure(self):
        state = self.state
        max_attempts = self.policy.max_attempts
        if state.attempt_count >= max_attempts:
            logger.error("Max reconnection attempts reached (%d)", max_attempts)
            self._emit(
                "exhausted",
                "Max reconnection attempts reached",
                f"{state.attempt_count}/{max_attempts} attempts failed; waiting for manual reconnect",
            )
            return

        state.attempt_count += 1
        delay_ms = state.current_delay_ms
        logger.info(
            "Reconnection attempt %d/%d in %.0fms",
            state.attempt_count, max_attempts, delay_ms,
        )
        self._emit(
            "retry",
            f"Reconnecting ({state.attempt_count}/{max_attempts})",
            f"in {delay_ms:.0f}ms",
        )

        self._cancel_pending()
        state.pending_timer = self._loop.call_later(delay_ms / 1000, self._on_retry_timer)

        state.current_delay_ms = min(
            state.current_delay_ms * self.policy.backoff_multiplier,
            self.policy.max_delay_ms,
        )

    def manual_reconnect(self):
        """Reset backoff and recreate the session immediately."""
        self.state.attempt_count = 0
        self.state.current_delay_ms = self.policy.base_delay_ms
        self._cancel_pending()
        logger.info("Manual reconnect requested")
        self._emit("reconnect", "Manual reconnect", "backoff reset")
        self._recreate()

    def _on_retry_timer(self):
        self.state.pending_timer = None
        logger.info("Attempting to reconnect to stream...")
        self._recreate()

    def _cancel_pending(self):
        timer, self.state.pending_timer = self.state.pending_timer, None
        if timer is not None:
            timer.cancel()
            logger.debug("Cancelled pending reconnect")

    def _recreate(self):
        self.recreations += 1
        session = self.owner.create_session()
        if session is not None:
            self._emit("session", f"Session #{session.generation} created", session.surface.describe())

    def snapshot(self) -> dict:
        """Plain-dict view of the controller for status endpoints."""
        session = self.owner.session
        return {
            "attempt_count": self.state.attempt_count,
            "max_attempts": self.policy.max_attempts,
            "current_delay_ms": self.state.current_delay_ms,
            "retry_pending": self.state.retry_pending,
            "exhausted": self.exhausted,
            "recreations": self.recreations,
            "session": {
                "generation": session.generation,
                "state": session.state.value,
            } if session else None,
        }

    def _emit(self, event_type: str, title: str = "", detail: str = ""):
        if self.event_bus:
            self.event_bus.emit(event_type, title, detail)
