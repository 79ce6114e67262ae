"""streamkeeper - keeps a live playback session alive across stream failures."""

from streamkeeper.__about__ import __version__

__all__ = ["__version__"]
