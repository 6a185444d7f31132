"""Session registry — which provider to use, and at most one render at a time.

There is no module-level instance: build an EncoderRegistry and pass it to
whoever starts renders. Concurrent renders need separate registries.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Mapping

from .config import SessionConfig
from .embedded_provider import EmbeddedEncoderProvider
from .errors import EncoderError, EngineUnavailableError, InvalidConfigurationError
from .process_provider import ProcessEncoderProvider
from .provider import (
    EncoderProvider,
    ProviderKind,
    RuntimeCapabilities,
    detect_capabilities,
    select_provider_kind,
)
from .sandboxed_provider import SandboxedEncoderProvider
from .session import EncodingSession
from .settings import INSTALLATION_INSTRUCTIONS

LOGGER = logging.getLogger(__name__)

ProviderFactory = Callable[[], EncoderProvider]

DEFAULT_FACTORIES: dict[ProviderKind, ProviderFactory] = {
    ProviderKind.PROCESS: ProcessEncoderProvider,
    ProviderKind.EMBEDDED: EmbeddedEncoderProvider,
    ProviderKind.SANDBOXED: SandboxedEncoderProvider,
}


class EncoderRegistry:
    """Selects, caches and owns providers; enforces one active session.

    Args:
        capabilities: Runtime target description. Detected when omitted.
        factories: Provider constructors per kind, merged over the defaults.
    """

    def __init__(
        self,
        capabilities: RuntimeCapabilities | None = None,
        factories: Mapping[ProviderKind, ProviderFactory] | None = None,
    ) -> None:
        self._capabilities = capabilities
        self._factories = {**DEFAULT_FACTORIES, **(factories or {})}
        self._custom: EncoderProvider | None = None
        self._default: EncoderProvider | None = None
        self._active: EncodingSession | None = None
        self._lock = threading.Lock()

    # ── Provider selection ────────────────────────────────────────

    @property
    def capabilities(self) -> RuntimeCapabilities:
        if self._capabilities is None:
            self._capabilities = detect_capabilities()
        return self._capabilities

    def set_provider(self, provider: EncoderProvider) -> None:
        """Use provider instead of the default; the cached default is disposed."""
        self._custom = provider
        if self._default is not None:
            self._default.dispose()
            self._default = None

    def clear_provider(self) -> None:
        """Dispose the custom provider and go back to the default."""
        if self._custom is not None:
            self._custom.dispose()
            self._custom = None

    @property
    def provider(self) -> EncoderProvider:
        if self._custom is not None:
            return self._custom
        if self._default is None:
            kind = select_provider_kind(self.capabilities)
            if kind is None:
                raise EngineUnavailableError(
                    "No encoding engine can run on this platform",
                    installation_instructions=INSTALLATION_INSTRUCTIONS,
                )
            LOGGER.debug("Creating default %s provider", kind.value)
            self._default = self._factories[kind]()
        return self._default

    @property
    def provider_name(self) -> str:
        try:
            return self.provider.name
        except EncoderError:
            return "None"

    def is_available(self) -> bool:
        try:
            return self.provider.is_available()
        except EncoderError:
            return False

    # ── Sessions ──────────────────────────────────────────────────

    @property
    def active_session(self) -> EncodingSession | None:
        session = self._active
        if session is not None and session.is_terminal:
            return None
        return session

    def ensure_idle(self) -> None:
        """Raise InvalidConfigurationError if a session is still running."""
        if self.active_session is not None:
            raise InvalidConfigurationError(
                "An encoding session is already active; finalize or cancel it first",
                field_name="session",
                invalid_value=self._active.state.value,
            )

    def start_session(self, config: SessionConfig) -> EncodingSession:
        with self._lock:
            self.ensure_idle()
            session = self.provider.start_session(config)
            self._active = session
        session.add_done_callback(self._on_session_done)
        return session

    def _on_session_done(self, session: EncodingSession) -> None:
        with self._lock:
            if self._active is session:
                self._active = None

    def dispose(self) -> None:
        """Cancel any running session and dispose every provider."""
        session = self.active_session
        if session is not None:
            session.cancel()
        if self._custom is not None:
            self._custom.dispose()
        if self._default is not None:
            self._default.dispose()
        self._custom = None
        self._default = None
