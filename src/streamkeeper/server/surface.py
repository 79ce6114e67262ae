"""Display surface the playback session renders into.

The surface is owned by whoever runs streamkeeper (a kiosk window, a Wayland
compositor). Sessions are attached to it; nothing here creates or resizes it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from streamkeeper.config import DisplayConfig

logger = logging.getLogger(__name__)


def detect_wayland() -> str | None:
    """Auto-detect Wayland display socket.

    Checks XDG_RUNTIME_DIR for wayland-* sockets. Returns the socket name
    (e.g. 'wayland-0') or None if not found.
    """
    if os.environ.get("WAYLAND_DISPLAY"):
        return os.environ["WAYLAND_DISPLAY"]

    runtime_dir = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
    try:
        for entry in sorted(os.listdir(runtime_dir)):
            if entry.startswith("wayland-") and not entry.endswith(".lock"):
                logger.info("Auto-detected Wayland: %s", entry)
                return entry
    except (FileNotFoundError, PermissionError):
        pass

    logger.debug("No Wayland display found")
    return None


@dataclass(frozen=True)
class DisplaySurface:
    """Reference to an externally-owned output target."""

    wid: int | None = None
    wayland_display: str | None = None
    fullscreen: bool = True

    @classmethod
    def from_config(cls, config: DisplayConfig) -> DisplaySurface:
        """Build a surface from config, auto-detecting Wayland when unset."""
        wayland = config.wayland_display or None
        if config.wid is None and wayland is None:
            wayland = detect_wayland()
        return cls(wid=config.wid, wayland_display=wayland, fullscreen=config.fullscreen)

    def mpv_args(self) -> list[str]:
        """mpv command-line options that bind its output to this surface."""
        args = ["--force-window=immediate"]
        if self.wid is not None:
            args.append(f"--wid={self.wid}")
        elif self.fullscreen:
            args.append("--fullscreen")
        return args

    def environment(self, base: dict[str, str] | None = None) -> dict[str, str]:
        """Process environment mpv needs to reach the compositor."""
        env = dict(os.environ if base is None else base)
        if self.wayland_display:
            env["WAYLAND_DISPLAY"] = self.wayland_display
            env.setdefault("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
        return env

    def describe(self) -> str:
        if self.wid is not None:
            return f"window {self.wid:#x}"
        if self.wayland_display:
            return f"wayland {self.wayland_display}"
        return "default display"
