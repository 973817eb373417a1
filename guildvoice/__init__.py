"""Per-guild voice session manager: connections, playback and ffmpeg transcoders."""

__version__ = "0.1.0"
