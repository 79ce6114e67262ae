"""Session owner - creates, wires and destroys the single playback session.

The owner is the boundary between the streaming engine and the
reconnection controller. Engine callbacks arrive on the engine's own thread;
the owner turns them into ``SessionEvent`` values and posts them onto the
controller's event loop, dropping anything sent by a session that has
already been replaced. Nothing the engine raises gets past this module.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from streamkeeper.config import SessionConfig
from streamkeeper.server.engine import EngineEvent, ErrorType
from streamkeeper.server.surface import DisplaySurface

if TYPE_CHECKING:
    from streamkeeper.server.events import EventBus

logger = logging.getLogger(__name__)


class SessionEventType(Enum):
    ERROR = "error"
    LOAD_COMPLETE = "load_complete"
    STREAM_END = "stream_end"


@dataclass(frozen=True)
class SessionEvent:
    """A lifecycle signal raised by the current session."""

    type: SessionEventType
    generation: int
    kind: str = ""
    detail: str = ""

    @classmethod
    def error(cls, generation: int, kind: str, detail: str) -> SessionEvent:
        return cls(SessionEventType.ERROR, generation, kind, detail)


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    PLAYING = "playing"
    ENDED = "ended"
    ERRORED = "errored"


@dataclass
class PlaybackSession:
    """Handle to one engine instance bound to one display surface."""

    generation: int
    engine: Any
    surface: DisplaySurface
    state: SessionState = SessionState.UNINITIALIZED
    created_at: float = field(default=0.0)

    @property
    def terminal(self) -> bool:
        return self.state in (SessionState.ENDED, SessionState.ERRORED)


class SessionOwner:
    """Owns the one PlaybackSession against a fixed config and surface.

    Args:
        config: Stream every session plays.
        surface: Externally owned display the sessions attach to.
        engine_factory: Called with ``config`` to build a fresh engine.
        loop: Event loop the listener runs on.
        event_bus: Optional diagnostic sink.
    """

    def __init__(
        self,
        config: SessionConfig,
        surface: DisplaySurface,
        engine_factory: Callable[[SessionConfig], Any],
        loop: asyncio.AbstractEventLoop,
        event_bus: "EventBus | None" = None,
    ):
        self.config = config
        self.surface = surface
        self.engine_factory = engine_factory
        self.event_bus = event_bus
        self._loop = loop
        self._listener: Callable[[SessionEvent], None] | None = None
        self._session: PlaybackSession | None = None
        self._generation = 0

    @property
    def session(self) -> PlaybackSession | None:
        return self._session

    def set_listener(self, listener: Callable[[SessionEvent], None]) -> None:
        """Register the single consumer of lifecycle events."""
        self._listener = listener

    def create_session(self) -> PlaybackSession | None:
        """Tear down any existing session, then build and start a new one.

        Start failures are reported as an ERROR event, never raised. Returns
        None only when the engine could not even be constructed.
        """
        self.destroy_session()

        self._generation += 1
        generation = self._generation
        try:
            engine = self.engine_factory(self.config)
        except Exception as e:
            logger.warning("Failed to construct engine: %s", e)
            self._emit("start_error", "Engine construction failed", str(e))
            self._post(SessionEvent.error(generation, ErrorType.OTHER_ERROR, str(e)))
            return None

        session = PlaybackSession(
            generation=generation,
            engine=engine,
            surface=self.surface,
            created_at=self._loop.time(),
        )
        self._session = session
        self._wire(session)

        session.state = SessionState.STARTING
        try:
            engine.attach_media_element(self.surface)
            engine.load()
            engine.play()
        except Exception as e:
            logger.warning("Error starting player: %s", e)
            self._emit("start_error", "Error starting player", str(e))
            self._post(SessionEvent.error(generation, ErrorType.OTHER_ERROR, str(e)))
        else:
            logger.info("Session #%d started", generation)
        return session

    def destroy_session(self) -> None:
        """Release the current engine. Never raises."""
        session, self._session = self._session, None
        if session is None:
            return
        try:
            session.engine.destroy()
        except Exception as e:
            logger.warning("Error destroying old player: %s", e)
            self._emit("teardown_error", "Error destroying old player", str(e))
        else:
            logger.debug("Session #%d destroyed", session.generation)

    def _wire(self, session: PlaybackSession) -> None:
        gen = session.generation
        engine = session.engine

        def on_error(error_type="", error_detail="", error_info=None):
            logger.warning("Player error: %s %s %s", error_type, error_detail, error_info or "")
            self._post_threadsafe(SessionEvent.error(gen, str(error_type), str(error_detail)))

        def on_loading_complete(*_):
            logger.info("Stream loading complete")
            self._post_threadsafe(SessionEvent(SessionEventType.LOAD_COMPLETE, gen))

        def on_stream_end(*_):
            logger.info("Stream ended, attempting to reconnect...")
            self._post_threadsafe(SessionEvent(SessionEventType.STREAM_END, gen))

        engine.on(EngineEvent.ERROR, on_error)
        engine.on(EngineEvent.LOADING_COMPLETE, on_loading_complete)
        engine.on(EngineEvent.STREAM_END, on_stream_end)

    def _post(self, event: SessionEvent) -> None:
        self._loop.call_soon(self._deliver, event)

    def _post_threadsafe(self, event: SessionEvent) -> None:
        try:
            self._loop.call_soon_threadsafe(self._deliver, event)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Dropped %s: event loop closed", event.type.value)

    def _deliver(self, event: SessionEvent) -> None:
        """Runs on the loop. Updates session state and forwards the event."""
        session = self._session
        if event.generation != self._generation:
            logger.debug(
                "Ignoring %s from stale session #%d", event.type.value, event.generation,
            )
            return

        if session is not None:
            if event.type is SessionEventType.LOAD_COMPLETE:
                session.state = SessionState.PLAYING
            elif event.type is SessionEventType.STREAM_END:
                session.state = SessionState.ENDED
            else:
                session.state = SessionState.ERRORED

        if self._listener:
            self._listener(event)

    def _emit(self, event_type: str, title: str = "", detail: str = "") -> None:
        if self.event_bus:
            self.event_bus.emit(event_type, title, detail)
