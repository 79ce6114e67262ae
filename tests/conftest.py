"""Shared test fixtures for the streamkeeper test suite."""

import pytest

from streamkeeper.config import Config, ReconnectConfig, ServerConfig, SessionConfig
from streamkeeper.server.app import create_app
from streamkeeper.server.engine import EngineError, EngineEvent
from streamkeeper.server.events import EventBus
from streamkeeper.server.reconnect import ReconnectController
from streamkeeper.server.service import PlaybackService
from streamkeeper.server.session import SessionOwner
from streamkeeper.server.surface import DisplaySurface


class FakeTimerHandle:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def cancelled(self):
        return self._cancelled


class FakeLoop:
    """Manual-clock stand-in for the asyncio loop the controller runs on."""

    def __init__(self):
        self.now = 0.0
        self._ready = []
        self._timers = []

    def time(self):
        return self.now

    def call_soon(self, callback, *args):
        self._ready.append((callback, args))

    call_soon_threadsafe = call_soon

    def call_later(self, delay, callback, *args):
        handle = FakeTimerHandle(self.now + delay, callback, args)
        self._timers.append(handle)
        return handle

    @property
    def pending_timers(self):
        return [t for t in self._timers if not t.cancelled()]

    def run_ready(self):
        while self._ready:
            callback, args = self._ready.pop(0)
            callback(*args)

    def advance(self, seconds):
        """Move the clock forward, firing due timers in order."""
        target = self.now + seconds
        self.run_ready()
        while True:
            due = sorted(
                (t for t in self.pending_timers if t.when <= target),
                key=lambda t: t.when,
            )
            if not due:
                break
            timer = due[0]
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback(*timer.args)
            self.run_ready()
        self.now = target


class FakeEngine:
    """Records lifecycle calls; tests fire engine events by hand."""

    def __init__(self, config, fail_load=False, fail_destroy=False):
        self.config = config
        self.fail_load = fail_load
        self.fail_destroy = fail_destroy
        self.listeners = {}
        self.surface = None
        self.loaded = False
        self.playing = False
        self.destroyed = False

    def on(self, event, callback):
        self.listeners.setdefault(EngineEvent(event), []).append(callback)

    def fire(self, event, *args):
        for callback in self.listeners.get(event, []):
            callback(*args)

    def attach_media_element(self, surface):
        self.surface = surface

    def load(self):
        if self.fail_load:
            raise EngineError("connection refused")
        self.loaded = True

    def play(self):
        self.playing = True

    def destroy(self):
        if self.fail_destroy:
            raise RuntimeError("engine wedged")
        self.destroyed = True

    def status(self):
        return {"connected": self.playing}


class FakeEngineFactory:
    def __init__(self):
        self.engines = []
        self.fail_construct = False
        self.fail_load = False
        self.fail_destroy = False

    def __call__(self, config):
        if self.fail_construct:
            raise RuntimeError("no decoder available")
        engine = FakeEngine(config, fail_load=self.fail_load, fail_destroy=self.fail_destroy)
        self.engines.append(engine)
        return engine

    @property
    def latest(self):
        return self.engines[-1]


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def engine_factory():
    return FakeEngineFactory()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def surface():
    return DisplaySurface(wid=0x2a00003, fullscreen=False)


@pytest.fixture
def owner(fake_loop, engine_factory, event_bus, surface):
    return SessionOwner(SessionConfig(), surface, engine_factory, fake_loop, event_bus=event_bus)


@pytest.fixture
def controller(owner, fake_loop, event_bus):
    return ReconnectController(owner, fake_loop, ReconnectConfig(), event_bus=event_bus)


@pytest.fixture
def config(tmp_path):
    return Config(server=ServerConfig(
        mpv_socket=str(tmp_path / "mpv.sock"),
        data_dir=str(tmp_path / "data"),
    ))


@pytest.fixture
def service(config, engine_factory, surface):
    """A playback service whose loop thread is not started."""
    svc = PlaybackService(config, engine_factory=engine_factory, surface=surface)
    yield svc
    if not svc.loop.is_closed():
        svc.loop.close()


@pytest.fixture
def app(config, service):
    """Create a Flask test app around an unstarted service."""
    app = create_app(config, service=service)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()


@pytest.fixture
def running_service(config, engine_factory, surface):
    """A playback service with its loop thread started."""
    svc = PlaybackService(config, engine_factory=engine_factory, surface=surface)
    svc.start()
    yield svc
    svc.stop()


@pytest.fixture
def running_client(config, running_service):
    """Flask test client around a started service."""
    app = create_app(config, service=running_service)
    app.config["TESTING"] = True
    return app.test_client()
