"""Tests for the filter graph builder.

Graph strings are compared exactly: the builder must be deterministic.
"""

import pytest

from clipencode.config import (
    AudioSource,
    AudioTrackConfig,
    EmbeddedVideoConfig,
    EncodingConfig,
    RenderConfig,
    TimelineConfig,
)
from clipencode.errors import InvalidConfigurationError
from clipencode.filter_graph import FilterGraphBuilder, build

_CANVAS = "[0:v]fps=30,format=yuv420p[v_out]"


def _config(tracks=(), videos=(), encoding=None, fps=30):
    return RenderConfig(
        timeline=TimelineConfig(fps=fps, duration_in_frames=90, width=640, height=360),
        audio_tracks=tuple(tracks),
        embedded_videos=tuple(videos),
        encoding=encoding,
    )


def _track(**overrides):
    values = dict(source=AudioSource.infer("/media/music.mp3"), start_frame=0, duration_in_frames=30)
    values.update(overrides)
    return AudioTrackConfig(**values)


def _video(**overrides):
    values = dict(video_path="/media/clip.mp4", id="clip", start_frame=0, duration_in_frames=30)
    values.update(overrides)
    return EmbeddedVideoConfig(**values)


class TestVideoChain:
    def test_canvas_only(self):
        graph = build(_config())
        assert graph.graph == _CANVAS
        assert graph.video_output_label == "[v_out]"
        assert graph.audio_output_label is None
        assert graph.embedded_video_count == 0

    def test_pixel_format_from_encoding(self):
        graph = build(_config(encoding=EncodingConfig(pixel_format="yuv444p"), fps=24))
        assert graph.graph == "[0:v]fps=24,format=yuv444p[v_out]"

    def test_embedded_video_without_composite_is_audio_only(self):
        graph = build(_config(videos=[_video(include_audio=False)]))
        assert graph.graph == _CANVAS
        assert graph.embedded_video_count == 1

    def test_composited_video_overlay(self):
        video = _video(
            start_frame=30, duration_in_frames=60, width=320, height=180,
            position_x=10, position_y=20, include_audio=False, composite=True,
        )
        assert build(_config(videos=[video])).graph == ";".join([
            "[0:v]fps=30,format=yuv420p[v_base]",
            "[1:v]trim=duration=2.000,setpts=PTS-STARTPTS+1.000/TB,scale=320:180[v_clip_0]",
            "[v_base][v_clip_0]overlay=x=10:y=20:enable='between(t,1.000,3.000)'[v_out]",
        ])

    def test_two_composited_videos_chain(self):
        first = _video(id="a", duration_in_frames=30, include_audio=False, composite=True)
        second = _video(id="b", start_frame=30, duration_in_frames=30, include_audio=False, composite=True)
        graph = build(_config(videos=[first, second])).graph
        parts = graph.split(";")
        assert parts[2] == "[v_base][v_clip_0]overlay=x=0:y=0:enable='between(t,0.000,1.000)'[v_ov_0]"
        assert parts[4] == "[v_ov_0][v_clip_1]overlay=x=0:y=0:enable='between(t,1.000,2.000)'[v_out]"
        assert parts[3].startswith("[2:v]trim=duration=1.000,")


class TestAudioTracks:
    def test_single_track_relabelled(self):
        graph = build(_config(tracks=[_track(start_frame=30, duration_in_frames=60)]))
        assert graph.graph == (
            _CANVAS + ";[1:a]atrim=start=0:end=2.000,asetpts=PTS-STARTPTS,adelay=1000|1000[a_mix_out]"
        )
        assert graph.audio_output_label == "[a_mix_out]"

    def test_full_track_chain(self):
        track = _track(
            duration_in_frames=60, trim_start_frame=15, trim_end_frame=45, loop=True,
            fade_in_frames=15, fade_out_frames=30, volume=0.5,
        )
        chain = build(_config(tracks=[track])).graph.split(";")[1]
        assert chain == (
            "[1:a]atrim=start=0.500:end=1.500,asetpts=PTS-STARTPTS,"
            "aloop=loop=-1:size=2e9,"
            "atrim=start=0:end=2.000,asetpts=PTS-STARTPTS,"
            "afade=t=in:st=0:d=0.500,afade=t=out:st=1.000:d=1.000,"
            "volume=0.5[a_mix_out]"
        )

    def test_trim_end_beyond_duration_uses_duration(self):
        track = _track(duration_in_frames=30, trim_start_frame=30, trim_end_frame=300)
        chain = build(_config(tracks=[track])).graph.split(";")[1]
        assert chain.startswith("[1:a]atrim=start=1.000:end=2.000,asetpts=PTS-STARTPTS,atrim=start=0:end=1.000")

    def test_fade_out_longer_than_clip_starts_at_zero(self):
        chain = build(_config(tracks=[_track(duration_in_frames=15, fade_out_frames=30)])).graph
        assert "afade=t=out:st=0.000:d=1.000" in chain

    def test_multiple_tracks_mixed(self):
        graph = build(_config(tracks=[_track(), _track(start_frame=15)])).graph
        parts = graph.split(";")
        assert parts[1] == "[1:a]atrim=start=0:end=1.000,asetpts=PTS-STARTPTS[a_track_0]"
        assert parts[2] == "[2:a]atrim=start=0:end=1.000,asetpts=PTS-STARTPTS,adelay=500|500[a_track_1]"
        assert parts[3] == "[a_track_0][a_track_1]amix=inputs=2:duration=longest:dropout_transition=0[a_mix_out]"


class TestEmbeddedAudio:
    def test_embedded_audio_and_track_mixed(self):
        video = _video(start_frame=15, duration_in_frames=45)
        graph = build(_config(videos=[video], tracks=[_track()])).graph
        assert graph.split(";")[1:] == [
            "[1:a]atrim=start=0:end=1.500,asetpts=PTS-STARTPTS,adelay=500|500[a_embedded_0]",
            "[2:a]atrim=start=0:end=1.000,asetpts=PTS-STARTPTS[a_track_0]",
            "[a_embedded_0][a_track_0]amix=inputs=2:duration=longest:dropout_transition=0[a_mix_out]",
        ]

    def test_embedded_fades_and_volume(self):
        video = _video(duration_in_frames=60, audio_fade_in_frames=6, audio_fade_out_frames=15, audio_volume=0.25)
        chain = build(_config(videos=[video])).graph.split(";")[1]
        assert chain == (
            "[1:a]atrim=start=0:end=2.000,asetpts=PTS-STARTPTS,"
            "afade=t=in:st=0:d=0.200,afade=t=out:st=1.500:d=0.500,volume=0.25[a_mix_out]"
        )

    @pytest.mark.parametrize("video", [
        _video(include_audio=False),
        _video(duration_in_frames=0),
    ])
    def test_skipped_embedded_audio(self, video):
        graph = build(_config(videos=[video]))
        assert graph.audio_output_label is None

    def test_track_index_counts_all_videos(self):
        graph = build(_config(videos=[_video(include_audio=False)], tracks=[_track()])).graph
        assert graph.split(";")[1].startswith("[2:a]")


class TestCompleteness:
    @pytest.mark.parametrize("tracks, videos, has_audio", [
        ([], [], False),
        ([], [_video(include_audio=False)], False),
        ([_track()], [], True),
        ([], [_video()], True),
        ([_track(), _track()], [_video(), _video(id="b")], True),
    ])
    def test_audio_label_iff_audio_source(self, tracks, videos, has_audio):
        graph = build(_config(tracks=tracks, videos=videos))
        assert (graph.audio_output_label is not None) == has_audio
        if has_audio:
            assert graph.graph.endswith("[a_mix_out]")

    def test_deterministic(self):
        config = _config(
            tracks=[_track(volume=0.8, fade_in_frames=3), _track(loop=True)],
            videos=[_video(composite=True, width=100, height=50)],
        )
        assert FilterGraphBuilder().build(config) == FilterGraphBuilder().build(config)


class TestInvalidJobs:
    def test_zero_fps(self):
        config = _config(tracks=[_track()], fps=0)
        with pytest.raises(InvalidConfigurationError, match="fps") as excinfo:
            build(config)
        assert excinfo.value.field_name == "fps"

    def test_zero_width(self):
        config = RenderConfig(timeline=TimelineConfig(fps=30, duration_in_frames=90, width=0, height=360))
        with pytest.raises(InvalidConfigurationError, match="width"):
            build(config)

    def test_trim_end_before_trim_start(self):
        config = _config(tracks=[_track(trim_start_frame=30, trim_end_frame=10)])
        with pytest.raises(InvalidConfigurationError, match="trim_end_frame") as excinfo:
            build(config)
        assert excinfo.value.field_name == "trim_end_frame"

    def test_trim_end_equal_to_trim_start_allowed(self):
        graph = build(_config(tracks=[_track(trim_start_frame=30, trim_end_frame=30)]))
        assert "atrim=start=1.000:end=1.000" in graph.graph
