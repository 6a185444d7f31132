"""Error taxonomy for the encoding backend.

Every failure surfaces as one of these types on the session's completion
value or directly from the call that detected it. Nothing is retried:

  - EngineUnavailableError: the engine cannot be located or loaded.
    Carries installation instructions.
  - InvalidConfigurationError: a second concurrent session, or a value the
    builder / orchestrator cannot express.
  - AssetResolutionError: a bundled asset read or remote fetch failed.
    Fatal for the whole render.
  - EngineExecutionError: the engine exited nonzero. Carries the exit code
    and the verbatim diagnostic output.
  - CancelledError: user-initiated; distinct so callers can branch on it.

SessionStateError is not part of the runtime taxonomy: it flags a caller
contract violation (a frame submitted after finalize or a terminal state).
"""

from __future__ import annotations

from typing import Any, Sequence


class EncoderError(RuntimeError):
    """Base error for the clipencode package."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EngineUnavailableError(EncoderError):
    """Raised when the selected engine cannot be located or loaded."""

    def __init__(self, message: str, *, installation_instructions: str | None = None) -> None:
        super().__init__(message)
        self.installation_instructions = installation_instructions

    def __str__(self) -> str:
        if self.installation_instructions:
            return f"{self.message}\n\n{self.installation_instructions}"
        return self.message


class InvalidConfigurationError(EncoderError):
    """Raised for configurations that cannot be expressed or are not allowed."""

    def __init__(
        self,
        message: str,
        *,
        field_name: str | None = None,
        invalid_value: Any = None,
    ) -> None:
        super().__init__(message)
        self.field_name = field_name
        self.invalid_value = invalid_value

    def __str__(self) -> str:
        if self.field_name is not None:
            return f"{self.message} (field: {self.field_name}, value: {self.invalid_value!r})"
        return self.message


class AssetResolutionError(EncoderError):
    """Raised when a bundled asset or remote media reference cannot be materialized."""

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.source = source
        self.details = details

    def __str__(self) -> str:
        parts = [self.message]
        if self.source:
            parts.append(f"Source: {self.source}")
        if self.details:
            parts.append(f"Details: {self.details}")
        return "\n".join(parts)


class EngineExecutionError(EncoderError):
    """Raised when the engine fails or exits with a nonzero status."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        diagnostics: str | None = None,
        command: Sequence[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        self.command = tuple(command) if command is not None else None

    def __str__(self) -> str:
        text = self.message
        if self.exit_code is not None:
            text += f" (exit code: {self.exit_code})"
        if self.diagnostics:
            text += f"\n\nEngine output:\n{self.diagnostics}"
        return text


class CancelledError(EncoderError):
    """Raised by a session's completion value after an explicit cancel."""

    def __init__(self, message: str = "Encoding cancelled by user") -> None:
        super().__init__(message)


class SessionStateError(EncoderError):
    """Raised when a session is used outside the state that allows the call."""


__all__ = [
    "AssetResolutionError",
    "CancelledError",
    "EncoderError",
    "EngineExecutionError",
    "EngineUnavailableError",
    "InvalidConfigurationError",
    "SessionStateError",
]
