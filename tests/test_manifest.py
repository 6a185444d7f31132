"""Tests for the render manifest loader."""

import tempfile

import pytest
import yaml

from clipencode.config import AudioSourceType, FrameFormat, RenderQuality
from clipencode.errors import InvalidConfigurationError
from clipencode.manifest import (
    load_render_manifest,
    resolve_path_vars,
    validate_manifest_sources,
)


def _write_manifest(content: dict) -> str:
    """Write a manifest dict to a temp YAML file, return path."""
    f = tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False)
    yaml.dump(content, f)
    f.close()
    return f.name


def _minimal_manifest(**overrides):
    m = {
        "video": {"fps": 30, "frames": 90, "resolution": [640, 360]},
    }
    m.update(overrides)
    return m


class TestResolvePathVars:
    def test_substitutes(self):
        assert resolve_path_vars("${media}/a.mp3", {"media": "/data"}) == "/data/a.mp3"

    def test_unknown_var_raises(self):
        with pytest.raises(InvalidConfigurationError, match="Unknown path variable"):
            resolve_path_vars("${nope}/a.mp3", {})

    def test_no_vars_passthrough(self):
        assert resolve_path_vars("/abs/a.mp3", {}) == "/abs/a.mp3"


class TestLoadRenderManifest:
    def test_minimal(self):
        config = load_render_manifest(_write_manifest(_minimal_manifest()))
        assert config.timeline.fps == 30
        assert config.timeline.duration_in_frames == 90
        assert (config.timeline.width, config.timeline.height) == (640, 360)
        assert config.audio_tracks == ()
        assert config.embedded_videos == ()
        assert config.encoding is None

    def test_missing_video_section(self):
        with pytest.raises(InvalidConfigurationError, match="video"):
            load_render_manifest(_write_manifest({"audio": []}))

    def test_zero_fps_rejected(self):
        m = _minimal_manifest(video={"fps": 0, "frames": 10, "resolution": [2, 2]})
        with pytest.raises(InvalidConfigurationError, match="fps"):
            load_render_manifest(_write_manifest(m))

    def test_bad_resolution(self):
        m = _minimal_manifest(video={"fps": 30, "frames": 10, "resolution": [640]})
        with pytest.raises(InvalidConfigurationError, match="resolution"):
            load_render_manifest(_write_manifest(m))

    def test_encoding_section(self):
        m = _minimal_manifest(encoding={
            "quality": "high", "preset": "fast", "frame_format": "png",
        })
        encoding = load_render_manifest(_write_manifest(m)).encoding
        assert encoding.quality is RenderQuality.HIGH
        assert encoding.crf == 18
        assert encoding.preset == "fast"
        assert encoding.frame_format is FrameFormat.PNG

    def test_crf_override(self):
        m = _minimal_manifest(encoding={"quality": "low", "crf": 20})
        assert load_render_manifest(_write_manifest(m)).encoding.crf == 20

    def test_unknown_quality(self):
        m = _minimal_manifest(encoding={"quality": "ultra"})
        with pytest.raises(InvalidConfigurationError, match="quality"):
            load_render_manifest(_write_manifest(m))

    def test_audio_tracks_with_path_vars(self):
        m = _minimal_manifest(
            paths={"media": "/data/media"},
            audio=[
                {"source": "${media}/music.mp3", "duration_in_frames": 90, "volume": 0.5,
                 "fade_out_frames": 15, "loop": True},
                {"source": "https://example.com/sfx.wav", "start_frame": 30, "duration_in_frames": 10},
                {"source": "assets/click.wav", "duration_in_frames": 5, "trim_end_frame": 3},
            ],
        )
        tracks = load_render_manifest(_write_manifest(m)).audio_tracks
        assert len(tracks) == 3
        assert tracks[0].source.uri == "/data/media/music.mp3"
        assert tracks[0].source.kind is AudioSourceType.FILE
        assert tracks[0].volume == 0.5
        assert tracks[0].loop is True
        assert tracks[1].source.kind is AudioSourceType.URL
        assert tracks[1].start_frame == 30
        assert tracks[2].source.kind is AudioSourceType.ASSET
        assert tracks[2].trim_end_frame == 3

    def test_audio_track_requires_duration(self):
        m = _minimal_manifest(audio=[{"source": "/a.mp3"}])
        with pytest.raises(InvalidConfigurationError, match="duration_in_frames"):
            load_render_manifest(_write_manifest(m))

    def test_negative_frame_rejected(self):
        m = _minimal_manifest(audio=[{"source": "/a.mp3", "duration_in_frames": 10, "start_frame": -1}])
        with pytest.raises(InvalidConfigurationError, match="start_frame"):
            load_render_manifest(_write_manifest(m))

    def test_embedded_videos(self):
        m = _minimal_manifest(embedded_videos=[{
            "id": "intro", "path": "/clips/intro.mp4", "start_frame": 15,
            "duration_in_frames": 45, "trim_start_seconds": 1.5,
            "size": [320, 180], "position": [10, 20], "include_audio": False,
            "composite": True,
        }])
        video = load_render_manifest(_write_manifest(m)).embedded_videos[0]
        assert video.id == "intro"
        assert video.trim_start_seconds == 1.5
        assert (video.width, video.height) == (320, 180)
        assert (video.position_x, video.position_y) == (10.0, 20.0)
        assert video.include_audio is False
        assert video.composite is True

    def test_duplicate_video_ids(self):
        entry = {"id": "dup", "path": "/a.mp4", "duration_in_frames": 10}
        m = _minimal_manifest(embedded_videos=[entry, dict(entry)])
        with pytest.raises(InvalidConfigurationError, match="Duplicate"):
            load_render_manifest(_write_manifest(m))

    def test_negative_trim_rejected(self):
        m = _minimal_manifest(embedded_videos=[
            {"path": "/a.mp4", "duration_in_frames": 10, "trim_start_seconds": -1},
        ])
        with pytest.raises(InvalidConfigurationError, match="trim_start_seconds"):
            load_render_manifest(_write_manifest(m))


class TestAudioSync:
    def test_synced_to_embedded_video(self):
        m = _minimal_manifest(
            embedded_videos=[{"id": "intro", "path": "/a.mp4", "start_frame": 15, "duration_in_frames": 30}],
            audio=[{"source": "/a.mp3", "sync": {"start_anchor": "intro", "end_anchor": "intro"}}],
        )
        track = load_render_manifest(_write_manifest(m)).audio_tracks[0]
        assert track.start_frame == 15
        assert track.duration_in_frames == 30
        assert track.sync is None

    def test_explicit_anchor_and_loop(self):
        m = _minimal_manifest(
            anchors={"outro": [60, 90]},
            audio=[{
                "source": "/a.mp3", "start_frame": 10,
                "sync": {"end_anchor": "outro", "end_offset": -5, "behavior": "loop_to_match"},
            }],
        )
        track = load_render_manifest(_write_manifest(m)).audio_tracks[0]
        assert track.start_frame == 10
        assert track.duration_in_frames == 75
        assert track.loop is True

    def test_unknown_behavior(self):
        m = _minimal_manifest(audio=[{"source": "/a.mp3", "sync": {"behavior": "stretch"}}])
        with pytest.raises(InvalidConfigurationError, match="sync behavior"):
            load_render_manifest(_write_manifest(m))


class TestValidateManifestSources:
    def test_missing_local_file(self):
        m = _minimal_manifest(audio=[{"source": "/nonexistent/a.mp3", "duration_in_frames": 10}])
        config = load_render_manifest(_write_manifest(m))
        with pytest.raises(FileNotFoundError):
            validate_manifest_sources(config)

    def test_urls_and_assets_not_checked(self, source_audio):
        m = _minimal_manifest(audio=[
            {"source": "https://example.com/a.mp3", "duration_in_frames": 10},
            {"source": "assets/a.mp3", "duration_in_frames": 10},
            {"source": str(source_audio), "duration_in_frames": 10},
        ])
        validate_manifest_sources(load_render_manifest(_write_manifest(m)))
