"""Engine settings: where the ffmpeg binary lives and runtime knobs.

Lookup order for the binary:
  1. An explicit ffmpeg_binary argument.
  2. The CLIPENCODE_FFMPEG_BINARY environment variable.
  3. The binary bundled with (or located by) imageio_ffmpeg.
  4. "ffmpeg" on PATH.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass

import imageio_ffmpeg

LOGGER = logging.getLogger(__name__)

ENV_FFMPEG_BINARY = "CLIPENCODE_FFMPEG_BINARY"
ENV_HTTP_TIMEOUT = "CLIPENCODE_HTTP_TIMEOUT"
ENV_FRAME_QUEUE_SIZE = "CLIPENCODE_FRAME_QUEUE_SIZE"

INSTALLATION_INSTRUCTIONS = """\
FFmpeg must be installed and reachable.

Installation instructions:
  pip:     pip install imageio-ffmpeg   (ships a static ffmpeg build)
  Linux:   sudo apt install ffmpeg
  macOS:   brew install ffmpeg
  Windows: download from https://ffmpeg.org/download.html and add it to PATH

Custom path:
  export CLIPENCODE_FFMPEG_BINARY=/path/to/ffmpeg
"""


def default_ffmpeg_binary() -> str:
    """Return the best guess for the ffmpeg executable.

    Never raises: when nothing is found the plain name "ffmpeg" is returned
    and the availability check reports the failure.
    """
    env_value = os.getenv(ENV_FFMPEG_BINARY)
    if env_value:
        return env_value
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as exc:
        LOGGER.debug("imageio_ffmpeg could not locate ffmpeg: %s", exc)
    return shutil.which("ffmpeg") or "ffmpeg"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r", name, raw)
        return default


def http_timeout_from_env() -> float:
    """Per-request HTTP timeout for URL media, at least one second."""
    return max(1.0, _env_float(ENV_HTTP_TIMEOUT, 60.0))


@dataclass(frozen=True)
class EngineSettings:
    """Runtime knobs shared by the providers and the asset resolver."""

    ffmpeg_binary: str = "ffmpeg"
    http_timeout: float = 60.0
    frame_queue_size: int = 4
    terminate_timeout: float = 5.0
    kill_timeout: float = 2.0

    @classmethod
    def from_env(cls, *, ffmpeg_binary: str | None = None) -> "EngineSettings":
        return cls(
            ffmpeg_binary=ffmpeg_binary or default_ffmpeg_binary(),
            http_timeout=http_timeout_from_env(),
            frame_queue_size=max(1, _env_int(ENV_FRAME_QUEUE_SIZE, 4)),
        )


__all__ = [
    "ENV_FFMPEG_BINARY",
    "ENV_FRAME_QUEUE_SIZE",
    "ENV_HTTP_TIMEOUT",
    "EngineSettings",
    "INSTALLATION_INSTRUCTIONS",
    "default_ffmpeg_binary",
    "http_timeout_from_env",
]
