"""Asset resolver — logical media references to engine-readable local paths.

  - Bundled assets ("assets/...", "packages/...") are copied byte-for-byte
    into a private temp directory for the batch and flagged for deletion.
  - Local files pass through unchanged; the caller still owns them.
  - URLs are fetched with requests and streamed to disk. Any failure aborts
    the whole batch; nothing is retried and no partial batch is returned.

Every batch gets its own directory, and every file name is prefixed with
its position in the batch, so the same source referenced twice resolves to
two independent files.
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Sequence

import requests

from .config import AudioSource, AudioSourceType, RenderConfig, ResolvedInput
from .errors import AssetResolutionError
from .settings import EngineSettings, http_timeout_from_env

LOGGER = logging.getLogger(__name__)

BATCH_DIR_PREFIX = "clipencode_assets_"
CHUNK_SIZE = 64 * 1024

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

AssetLoader = Callable[[str], bytes]
Reference = AudioSource | tuple[AudioSource, float]


def sanitize_filename(name: str) -> str:
    """Replace every character outside [A-Za-z0-9._-] with an underscore."""
    cleaned = _UNSAFE_CHARS.sub("_", name)
    return cleaned or "media"


def _basename(uri: str) -> str:
    # Drop query string / fragment for URLs before taking the last segment.
    path = re.split(r"[?#]", uri, maxsplit=1)[0]
    return path.rstrip("/").rsplit("/", 1)[-1]


def release_inputs(inputs: Iterable[ResolvedInput], scratch_dir: Path | None = None) -> None:
    """Delete flagged inputs and the batch directory. Never raises."""
    for item in inputs:
        if not item.delete_after_use:
            continue
        try:
            item.path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Failed to delete temporary input %s: %s", item.path, exc)
    if scratch_dir is not None:
        try:
            shutil.rmtree(scratch_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.warning("Failed to remove asset directory %s: %s", scratch_dir, exc)


@dataclass
class ResolvedBatch:
    """Inputs of one resolution call plus the directory that holds their copies."""

    inputs: tuple[ResolvedInput, ...] = ()
    scratch_dir: Path | None = None
    _released: bool = field(default=False, repr=False)

    @property
    def temporary_paths(self) -> list[Path]:
        return [i.path for i in self.inputs if i.delete_after_use]

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        release_inputs(self.inputs, self.scratch_dir)


class AssetResolver:
    """Materializes AudioSource references as ResolvedInput entries.

    Args:
        bundle_root: Directory bundled asset names are relative to.
        asset_loader: Callable returning an asset's bytes by name. Takes
            precedence over bundle_root.
        http_session: requests.Session used for URL sources.
        timeout: Per-request timeout in seconds. Defaults to
            settings.http_timeout, or CLIPENCODE_HTTP_TIMEOUT when no settings
            are given.
        settings: EngineSettings supplying the default timeout.
    """

    def __init__(
        self,
        bundle_root: str | Path | None = None,
        asset_loader: AssetLoader | None = None,
        http_session: requests.Session | None = None,
        timeout: float | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._bundle_root = Path(bundle_root) if bundle_root is not None else None
        self._asset_loader = asset_loader
        self._session = http_session or requests.Session()
        if timeout is None:
            timeout = settings.http_timeout if settings is not None else http_timeout_from_env()
        self._timeout = timeout

    def resolve(self, references: Sequence[Reference]) -> ResolvedBatch:
        """Resolve references in order. Raises AssetResolutionError on any failure."""
        normalized = [r if isinstance(r, tuple) else (r, 0.0) for r in references]
        scratch_dir: Path | None = None
        resolved: list[ResolvedInput] = []

        try:
            for index, (source, seek) in enumerate(normalized):
                if source.kind is AudioSourceType.FILE:
                    resolved.append(self._resolve_file(source, seek))
                    continue
                if scratch_dir is None:
                    scratch_dir = Path(tempfile.mkdtemp(prefix=BATCH_DIR_PREFIX))
                target = scratch_dir / f"{index}_{sanitize_filename(_basename(source.uri))}"
                if source.kind is AudioSourceType.ASSET:
                    self._copy_asset(source.uri, target)
                else:
                    self._download(source.uri, target)
                resolved.append(
                    ResolvedInput(path=target, seek_seconds=seek, delete_after_use=True, source=source.uri)
                )
        except AssetResolutionError:
            release_inputs(resolved, scratch_dir)
            raise
        except OSError as exc:
            release_inputs(resolved, scratch_dir)
            raise AssetResolutionError(
                "Failed to write resolved media to disk", details=str(exc),
            ) from exc

        LOGGER.info(
            "Resolved %d media inputs (%d temporary)",
            len(resolved), sum(1 for r in resolved if r.delete_after_use),
        )
        return ResolvedBatch(inputs=tuple(resolved), scratch_dir=scratch_dir)

    def resolve_render_inputs(self, config: RenderConfig) -> ResolvedBatch:
        """Resolve a job's media in filter-graph input order.

        Embedded videos come first (seeked to their trim start), then audio
        tracks.
        """
        references: list[Reference] = [
            (video.source, video.trim_start_seconds) for video in config.embedded_videos
        ]
        references += [track.source for track in config.audio_tracks]
        return self.resolve(references)

    # ── Per-kind resolution ────────────────────────────────────────

    def _resolve_file(self, source: AudioSource, seek: float) -> ResolvedInput:
        path = Path(source.uri)
        if not path.is_file():
            raise AssetResolutionError("Media file not found", source=source.uri)
        return ResolvedInput(path=path, seek_seconds=seek, delete_after_use=False, source=source.uri)

    def _copy_asset(self, name: str, target: Path) -> None:
        if self._asset_loader is not None:
            try:
                data = self._asset_loader(name)
            except (OSError, KeyError) as exc:
                raise AssetResolutionError("Failed to load bundled asset", source=name, details=str(exc)) from exc
            target.write_bytes(data)
            return

        if self._bundle_root is None:
            raise AssetResolutionError(
                "No asset bundle configured",
                source=name,
                details="Pass bundle_root or asset_loader to AssetResolver",
            )
        asset_path = self._bundle_root / name
        try:
            shutil.copyfile(asset_path, target)
        except OSError as exc:
            raise AssetResolutionError("Failed to load bundled asset", source=name, details=str(exc)) from exc

    def _download(self, url: str, target: Path) -> None:
        LOGGER.debug("Downloading %s -> %s", url, target)
        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                if not 200 <= response.status_code < 300:
                    raise AssetResolutionError(
                        "Failed to download media",
                        source=url,
                        details=f"HTTP {response.status_code}",
                    )
                with open(target, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
        except requests.RequestException as exc:
            target.unlink(missing_ok=True)
            raise AssetResolutionError("Failed to download media", source=url, details=str(exc)) from exc


__all__ = [
    "AssetResolver",
    "BATCH_DIR_PREFIX",
    "ResolvedBatch",
    "release_inputs",
    "sanitize_filename",
]
