"""Configuration loader for streamkeeper."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urljoin

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python 3.9-3.10 fallback


@dataclass(frozen=True)
class SessionConfig:
    """Fixed description of the stream a playback session plays.

    Built once at startup and never mutated. Every recreated session uses
    the same values.
    """

    url: str = "/live"
    is_live: bool = True
    has_audio: bool = True
    has_video: bool = True
    transport_type: str = "flv"

    def resolve_url(self, origin: str) -> str:
        """Resolve a relative stream URL (e.g. ``/live``) against origin."""
        if "://" in self.url or not origin:
            return self.url
        return urljoin(origin, self.url)


@dataclass
class ReconnectConfig:
    """Backoff policy for the reconnection controller."""

    base_delay_ms: float = 2000
    backoff_multiplier: float = 1.5
    max_delay_ms: float = 30000
    max_attempts: int = 10


@dataclass
class DisplayConfig:
    """Where sessions are rendered. Empty values mean auto-detect."""

    wid: int | None = None            # X11 window id to embed into
    wayland_display: str = ""
    fullscreen: bool = True


@dataclass
class TelegramConfig:
    """Configuration for the Telegram bot."""

    bot_token: str = ""
    allowed_users: list[int] = field(default_factory=list)
    enabled: bool = False


@dataclass
class ServerConfig:
    """Configuration for the control server and the mpv engine."""

    host: str = "0.0.0.0"
    port: int = 5050
    mpv_socket: str = "/tmp/streamkeeper-mpv-socket"
    mpv_path: str = "mpv"
    mpv_hwdec: str = "auto"
    mpv_log_file: str = ""
    stream_origin: str = "http://127.0.0.1:8089"
    ipc_connect_timeout: float = 10.0
    data_dir: str = ""

    def __post_init__(self):
        if not self.data_dir:
            self.data_dir = os.path.expanduser("~/.streamkeeper")
        if not self.mpv_log_file:
            self.mpv_log_file = os.path.join(self.data_dir, "mpv.log")


@dataclass
class Config:
    """Top-level streamkeeper configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


def load_config(path: str | None = None) -> Config:
    """Load configuration from streamkeeper.toml.

    Search order:
    1. Explicit path argument
    2. ./streamkeeper.toml
    3. ~/.config/streamkeeper/streamkeeper.toml
    4. Defaults
    """
    search_paths = []
    if path:
        search_paths.append(Path(path))
    search_paths.extend([
        Path("streamkeeper.toml"),
        Path.home() / ".config" / "streamkeeper" / "streamkeeper.toml",
    ])

    for p in search_paths:
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            return _parse_config(data)

    return Config()


def _parse_config(data: dict) -> Config:
    """Parse a TOML dict into Config."""
    config = Config()

    if "server" in data:
        s = data["server"]
        config.server = ServerConfig(
            host=s.get("host", config.server.host),
            port=s.get("port", config.server.port),
            mpv_socket=s.get("mpv_socket", config.server.mpv_socket),
            mpv_path=s.get("mpv_path", config.server.mpv_path),
            mpv_hwdec=s.get("mpv_hwdec", config.server.mpv_hwdec),
            mpv_log_file=s.get("mpv_log_file", ""),
            stream_origin=s.get("stream_origin", config.server.stream_origin),
            ipc_connect_timeout=s.get("ipc_connect_timeout", config.server.ipc_connect_timeout),
            data_dir=s.get("data_dir", ""),
        )

    if "session" in data:
        s = data["session"]
        config.session = SessionConfig(
            url=s.get("url", config.session.url),
            is_live=s.get("is_live", config.session.is_live),
            has_audio=s.get("has_audio", config.session.has_audio),
            has_video=s.get("has_video", config.session.has_video),
            transport_type=s.get("transport_type", s.get("type", config.session.transport_type)),
        )

    if "reconnect" in data:
        r = data["reconnect"]
        config.reconnect = ReconnectConfig(
            base_delay_ms=r.get("base_delay_ms", config.reconnect.base_delay_ms),
            backoff_multiplier=r.get("backoff_multiplier", config.reconnect.backoff_multiplier),
            max_delay_ms=r.get("max_delay_ms", config.reconnect.max_delay_ms),
            max_attempts=r.get("max_attempts", config.reconnect.max_attempts),
        )

    if "display" in data:
        d = data["display"]
        config.display = DisplayConfig(
            wid=d.get("wid"),
            wayland_display=d.get("wayland_display", ""),
            fullscreen=d.get("fullscreen", True),
        )

    if "telegram" in data:
        t = data["telegram"]
        config.telegram = TelegramConfig(
            bot_token=t.get("bot_token", ""),
            allowed_users=t.get("allowed_users", []),
            enabled=t.get("enabled", bool(t.get("bot_token"))),
        )

    return config
