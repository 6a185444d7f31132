"""Encoding provider contract and capability-based strategy selection.

A provider owns one heavyweight engine resource and hands out sessions:

  - ProcessEncoderProvider:   ffmpeg as a child process (native hosts)
  - EmbeddedEncoderProvider:  ffmpeg driven through imageio_ffmpeg's writer
  - SandboxedEncoderProvider: buffered, isolated encode returning a handle

Which one a registry picks is a pure function of RuntimeCapabilities, so
every strategy stays importable and testable on every host.
"""

from __future__ import annotations

import abc
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum

import imageio_ffmpeg

from .config import SessionConfig
from .errors import EngineUnavailableError
from .session import EncodingSession
from .settings import INSTALLATION_INSTRUCTIONS

LOGGER = logging.getLogger(__name__)


class EncoderProvider(abc.ABC):
    """Strategy interface for a concrete engine backend."""

    name: str = "None"

    def __init__(self) -> None:
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Whether the engine can be located and loaded. Never raises."""

    @abc.abstractmethod
    def start_session(self, config: SessionConfig) -> EncodingSession:
        """Start the engine for one render.

        Raises:
            EngineUnavailableError: engine missing, or provider disposed.
            InvalidConfigurationError: config the engine cannot express.
        """

    def dispose(self) -> None:
        """Release the engine resource. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self._release()

    def _release(self) -> None:
        pass

    def _ensure_usable(self) -> None:
        if self._disposed:
            raise EngineUnavailableError(f"{self.name} provider has been disposed")
        if not self.is_available():
            raise EngineUnavailableError(
                f"FFmpeg is not available for the {self.name} provider",
                installation_instructions=INSTALLATION_INSTRUCTIONS,
            )


# ── Strategy selection ────────────────────────────────────────────


class ProviderKind(str, Enum):
    PROCESS = "process"
    EMBEDDED = "embedded"
    SANDBOXED = "sandboxed"


@dataclass(frozen=True)
class RuntimeCapabilities:
    sandboxed: bool = False
    can_spawn_processes: bool = True
    has_embedded_engine: bool = False


def select_provider_kind(capabilities: RuntimeCapabilities) -> ProviderKind | None:
    """Pick the strategy for a runtime target. None when nothing can run."""
    if capabilities.sandboxed:
        return ProviderKind.SANDBOXED
    if capabilities.can_spawn_processes:
        return ProviderKind.PROCESS
    if capabilities.has_embedded_engine:
        return ProviderKind.EMBEDDED
    return None


def _has_bundled_engine() -> bool:
    try:
        imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        return False
    return True


def detect_capabilities() -> RuntimeCapabilities:
    """Inspect the running interpreter."""
    sandboxed = sys.platform in ("emscripten", "wasi")
    can_spawn = not sandboxed and (hasattr(os, "fork") or sys.platform == "win32")
    caps = RuntimeCapabilities(
        sandboxed=sandboxed,
        can_spawn_processes=can_spawn,
        has_embedded_engine=not sandboxed and _has_bundled_engine(),
    )
    LOGGER.debug("Detected runtime capabilities: %s", caps)
    return caps


__all__ = [
    "EncoderProvider",
    "ProviderKind",
    "RuntimeCapabilities",
    "detect_capabilities",
    "select_provider_kind",
]
