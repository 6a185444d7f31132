"""Render manifest loader — RenderConfig from YAML.

Lets a render job be described on disk instead of built in code. Follows
the ${var} path substitution used across the package's manifests.

Render manifest schema:
  paths:
    media: "/data/media"
  video:
    fps: 30
    frames: 300                     # total composition frames
    resolution: [1080, 1920]
  encoding:                         # optional
    quality: high                   # low | medium | high | lossless
    crf: 20                         # overrides the quality tier
    preset: fast
    frame_format: raw_rgba          # raw_rgba | png
  audio:                            # optional
    - source: "${media}/music.mp3"  # asset path, file path or URL
      start_frame: 0
      duration_in_frames: 300
      trim_start_frame: 0
      trim_end_frame: null
      volume: 0.8
      fade_in_frames: 15
      fade_out_frames: 30
      loop: false
      sync:                         # optional, resolved at load time
        start_anchor: intro         # embedded video id or anchors: key
        end_anchor: outro
        start_offset: 0
        end_offset: 0
        behavior: stop_when_ends    # stop_when_ends | loop_to_match
  anchors:                          # optional named frame ranges
    outro: [240, 300]
  embedded_videos:                  # optional
    - id: intro
      path: "${media}/intro.mp4"
      start_frame: 60
      duration_in_frames: 120
      trim_start_seconds: 2.0
      size: [540, 960]
      position: [0, 0]
      include_audio: true
      volume: 1.0
      fade_in_frames: 0
      fade_out_frames: 0
      composite: false
"""

import re
from pathlib import Path

import yaml

from .config import (
    AudioSource,
    AudioSyncConfig,
    AudioTrackConfig,
    EmbeddedVideoConfig,
    EncodingConfig,
    FrameFormat,
    RenderConfig,
    RenderQuality,
    SyncBehavior,
    TimelineConfig,
)
from .errors import InvalidConfigurationError


VALID_QUALITIES = {q.value for q in RenderQuality}

VALID_FRAME_FORMATS = {f.value for f in FrameFormat}

VALID_SYNC_BEHAVIORS = {b.value for b in SyncBehavior}


# ── Path utilities ─────────────────────────────────────────────────

def resolve_path_vars(text: str, paths: dict[str, str]) -> str:
    """Replace ${name} variables in a string using the paths dict."""
    def _replace(match):
        key = match.group(1)
        if key not in paths:
            raise InvalidConfigurationError(
                f"Unknown path variable: ${{{key}}}", field_name="paths", invalid_value=key,
            )
        return paths[key]
    return re.sub(r"\$\{(\w+)\}", _replace, text)


# ── Field helpers ──────────────────────────────────────────────────

def _require(entry: dict, key: str, where: str):
    if key not in entry or entry[key] is None:
        raise InvalidConfigurationError(f"{where}: missing required field '{key}'", field_name=key)
    return entry[key]


def _non_negative_int(value, key: str, where: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidConfigurationError(
            f"{where}: '{key}' must be an integer", field_name=key, invalid_value=value,
        ) from None
    if number < 0:
        raise InvalidConfigurationError(
            f"{where}: '{key}' must be >= 0, got {number}", field_name=key, invalid_value=value,
        )
    return number


def _pair(value, key: str, where: str) -> tuple:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise InvalidConfigurationError(
            f"{where}: '{key}' must be a two-element list", field_name=key, invalid_value=value,
        )
    return tuple(value)


# ── Section parsers ────────────────────────────────────────────────

def _parse_timeline(video: dict) -> TimelineConfig:
    fps = _non_negative_int(_require(video, "fps", "video"), "fps", "video")
    if fps == 0:
        raise InvalidConfigurationError("video: 'fps' must be > 0", field_name="fps", invalid_value=fps)
    frames = _non_negative_int(_require(video, "frames", "video"), "frames", "video")
    width, height = _pair(_require(video, "resolution", "video"), "resolution", "video")
    return TimelineConfig(
        fps=fps,
        duration_in_frames=frames,
        width=_non_negative_int(width, "resolution", "video"),
        height=_non_negative_int(height, "resolution", "video"),
    )


def _parse_encoding(raw: dict | None) -> EncodingConfig | None:
    if raw is None:
        return None
    quality = str(raw.get("quality", RenderQuality.MEDIUM.value))
    if quality not in VALID_QUALITIES:
        raise InvalidConfigurationError(
            f"encoding: unknown quality '{quality}'. Valid: {sorted(VALID_QUALITIES)}",
            field_name="quality",
            invalid_value=quality,
        )
    frame_format = str(raw.get("frame_format", FrameFormat.RAW_RGBA.value))
    if frame_format not in VALID_FRAME_FORMATS:
        raise InvalidConfigurationError(
            f"encoding: unknown frame_format '{frame_format}'. Valid: {sorted(VALID_FRAME_FORMATS)}",
            field_name="frame_format",
            invalid_value=frame_format,
        )
    crf = raw.get("crf")
    return EncodingConfig(
        quality=RenderQuality(quality),
        crf_override=_non_negative_int(crf, "crf", "encoding") if crf is not None else None,
        preset_override=raw.get("preset"),
        frame_format=FrameFormat(frame_format),
        video_codec=str(raw.get("codec", "libx264")),
        pixel_format=str(raw.get("pixel_format", "yuv420p")),
    )


def _parse_sync(raw: dict | None, where: str) -> AudioSyncConfig | None:
    if raw is None:
        return None
    behavior = str(raw.get("behavior", SyncBehavior.STOP_WHEN_ENDS.value))
    if behavior not in VALID_SYNC_BEHAVIORS:
        raise InvalidConfigurationError(
            f"{where}: unknown sync behavior '{behavior}'. Valid: {sorted(VALID_SYNC_BEHAVIORS)}",
            field_name="behavior",
            invalid_value=behavior,
        )
    return AudioSyncConfig(
        start_anchor=raw.get("start_anchor"),
        end_anchor=raw.get("end_anchor"),
        start_offset=int(raw.get("start_offset", 0)),
        end_offset=int(raw.get("end_offset", 0)),
        behavior=SyncBehavior(behavior),
    )


def _parse_anchors(raw: dict | None) -> dict[str, tuple[int, int | None]]:
    anchors = {}
    for name, value in (raw or {}).items():
        start, end = _pair(value, str(name), "anchors")
        anchors[str(name)] = (
            _non_negative_int(start, str(name), "anchors"),
            _non_negative_int(end, str(name), "anchors") if end is not None else None,
        )
    return anchors


def _parse_audio_track(entry: dict, i: int, paths: dict) -> AudioTrackConfig:
    where = f"Audio track {i}"
    source = resolve_path_vars(str(_require(entry, "source", where)), paths)
    trim_end = entry.get("trim_end_frame")
    sync = _parse_sync(entry.get("sync"), where)
    if sync is None:
        _require(entry, "duration_in_frames", where)
    return AudioTrackConfig(
        source=AudioSource.infer(source),
        start_frame=_non_negative_int(entry.get("start_frame", 0), "start_frame", where),
        duration_in_frames=_non_negative_int(
            entry.get("duration_in_frames") or 0, "duration_in_frames", where,
        ),
        trim_start_frame=_non_negative_int(entry.get("trim_start_frame", 0), "trim_start_frame", where),
        trim_end_frame=_non_negative_int(trim_end, "trim_end_frame", where) if trim_end is not None else None,
        volume=float(entry.get("volume", 1.0)),
        fade_in_frames=_non_negative_int(entry.get("fade_in_frames", 0), "fade_in_frames", where),
        fade_out_frames=_non_negative_int(entry.get("fade_out_frames", 0), "fade_out_frames", where),
        loop=bool(entry.get("loop", False)),
        sync=sync,
    )


def _parse_embedded_video(entry: dict, i: int, paths: dict) -> EmbeddedVideoConfig:
    where = f"Embedded video {i}"
    path = resolve_path_vars(str(_require(entry, "path", where)), paths)
    width, height = _pair(entry.get("size", [0, 0]), "size", where)
    x, y = _pair(entry.get("position", [0, 0]), "position", where)
    trim = float(entry.get("trim_start_seconds", 0.0))
    if trim < 0:
        raise InvalidConfigurationError(
            f"{where}: 'trim_start_seconds' must be >= 0, got {trim}",
            field_name="trim_start_seconds",
            invalid_value=trim,
        )
    return EmbeddedVideoConfig(
        video_path=path,
        id=str(entry.get("id", f"video_{i}")),
        start_frame=_non_negative_int(entry.get("start_frame", 0), "start_frame", where),
        duration_in_frames=_non_negative_int(
            _require(entry, "duration_in_frames", where), "duration_in_frames", where,
        ),
        trim_start_seconds=trim,
        width=_non_negative_int(width, "size", where),
        height=_non_negative_int(height, "size", where),
        position_x=float(x),
        position_y=float(y),
        include_audio=bool(entry.get("include_audio", True)),
        audio_volume=float(entry.get("volume", 1.0)),
        audio_fade_in_frames=_non_negative_int(entry.get("fade_in_frames", 0), "fade_in_frames", where),
        audio_fade_out_frames=_non_negative_int(entry.get("fade_out_frames", 0), "fade_out_frames", where),
        composite=bool(entry.get("composite", False)),
    )


# ── Manifest loading ──────────────────────────────────────────────

def load_render_manifest(manifest_path: str | Path) -> RenderConfig:
    """Load and validate a render manifest.

    Processing pipeline:
      1. Parse YAML.
      2. Validate video timing and resolution.
      3. Resolve ${path} variables in audio sources and video paths.
      4. Validate each embedded video entry; reject duplicate ids.
      5. Validate each audio track and place synced tracks on their
         anchors (embedded video ids or the anchors: block).

    Args:
        manifest_path: Path to the YAML render manifest.

    Returns:
        A frozen RenderConfig.

    Raises:
        InvalidConfigurationError: Missing or invalid fields.
        FileNotFoundError: Missing manifest file.
    """
    with open(manifest_path) as f:
        raw = yaml.safe_load(f) or {}

    if "video" not in raw:
        raise InvalidConfigurationError("Render manifest: missing required 'video' section", field_name="video")

    paths = raw.get("paths", {}) or {}
    timeline = _parse_timeline(raw["video"])
    encoding = _parse_encoding(raw.get("encoding"))

    videos = []
    seen_ids = set()
    for i, entry in enumerate(raw.get("embedded_videos", []) or []):
        video = _parse_embedded_video(entry, i, paths)
        if video.id in seen_ids:
            raise InvalidConfigurationError(
                f"Duplicate embedded video id: '{video.id}'", field_name="id", invalid_value=video.id,
            )
        seen_ids.add(video.id)
        videos.append(video)

    # Embedded videos are anchors too; explicit anchors win on a name clash.
    anchors = {v.id: (v.start_frame, v.end_frame) for v in videos}
    anchors.update(_parse_anchors(raw.get("anchors")))

    tracks = tuple(
        _parse_audio_track(entry, i, paths).resolve_sync(anchors)
        for i, entry in enumerate(raw.get("audio", []) or [])
    )

    return RenderConfig(
        timeline=timeline,
        audio_tracks=tracks,
        embedded_videos=tuple(videos),
        encoding=encoding,
    )


def validate_manifest_sources(config: RenderConfig) -> None:
    """Check that local (non-URL, non-asset) sources exist on disk.

    Raises:
        FileNotFoundError: If a local media file is missing.
    """
    sources = [t.source for t in config.audio_tracks] + [v.source for v in config.embedded_videos]
    for source in sources:
        if source.kind.value == "file" and not Path(source.uri).exists():
            raise FileNotFoundError(f"Media file not found: {source.uri}")
