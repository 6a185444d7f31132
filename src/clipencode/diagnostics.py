"""Engine diagnostics: is ffmpeg usable here, which provider, which version."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import EncoderError
from .settings import INSTALLATION_INSTRUCTIONS

if TYPE_CHECKING:
    from .registry import EncoderRegistry

LOGGER = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"version\s+(\S+)")


@dataclass(frozen=True)
class EngineDiagnostics:
    is_available: bool
    provider_name: str
    version: str | None = None
    error_message: str | None = None
    installation_instructions: str | None = None

    def __str__(self) -> str:
        if self.is_available:
            suffix = f" ({self.version})" if self.version else ""
            return f"FFmpeg is available via {self.provider_name}{suffix}"
        return f"FFmpeg is NOT available: {self.error_message or 'Unknown error'}"


def engine_version(binary: str, timeout: float = 10.0) -> str | None:
    """Run `<binary> -version` and return the version token, or None."""
    try:
        proc = subprocess.run(
            [binary, "-version"], capture_output=True, text=True, timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        LOGGER.debug("Version check of %s failed: %s", binary, exc)
        return None
    if proc.returncode != 0:
        return None
    first_line = proc.stdout.splitlines()[0] if proc.stdout else ""
    match = _VERSION_RE.search(first_line)
    if match:
        return match.group(1)
    return first_line.strip() or None


def check(registry: "EncoderRegistry") -> EngineDiagnostics:
    """Report on the registry's current provider. Never raises."""
    try:
        provider = registry.provider
        if provider.is_available():
            binary = getattr(provider, "ffmpeg_binary", None)
            return EngineDiagnostics(
                is_available=True,
                provider_name=provider.name,
                version=engine_version(binary) if binary else None,
            )
        return EngineDiagnostics(
            is_available=False,
            provider_name=provider.name,
            error_message="FFmpeg executable not found",
            installation_instructions=INSTALLATION_INSTRUCTIONS,
        )
    except EncoderError as exc:
        return EngineDiagnostics(
            is_available=False,
            provider_name="None",
            error_message=exc.message,
            installation_instructions=INSTALLATION_INSTRUCTIONS,
        )
