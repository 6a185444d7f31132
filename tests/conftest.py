"""Shared test fixtures for clipencode tests.

Two kinds of engine are used:
  - the real ffmpeg bundled with imageio_ffmpeg, for end-to-end encodes;
  - a small Python script standing in for ffmpeg, for orchestration tests
    (exit codes, cancellation, progress) that must be fast and predictable.
"""

import stat
import subprocess
import sys

import pytest
import imageio_ffmpeg

from clipencode.settings import EngineSettings

_FFMPEG = imageio_ffmpeg.get_ffmpeg_exe()


_FAKE_ENGINE = '''\
import os
import sys
import time

args = sys.argv[1:]
if "-version" in args:
    print("ffmpeg version 9.9-fake Copyright (c) the test suite")
    sys.exit(0)

width, height = (int(v) for v in args[args.index("-video_size") + 1].split("x"))
frame_size = width * height * 4
delay = float(os.environ.get("FAKE_ENGINE_DELAY", "0"))
exit_code = int(os.environ.get("FAKE_ENGINE_EXIT", "0"))

sys.stderr.write("Input #0, rawvideo, from 'pipe:':\\n")
sys.stderr.flush()

source = args[args.index("-i") + 1]
stream = sys.stdin.buffer if source == "-" else open(source, "rb")

count = 0
firsts = []
while True:
    data = stream.read(frame_size)
    if len(data) < frame_size:
        break
    count += 1
    firsts.append(data[0])
    if delay:
        time.sleep(delay)
    sys.stderr.write(
        "frame=%5d fps= 30 q=28.0 size=     %dkB time=00:00:00.00 bitrate=N/A speed=1x\\r"
        % (count, count)
    )
    sys.stderr.flush()

if exit_code != 0:
    sys.stderr.write("\\n[libx264] something went wrong\\nConversion failed!\\n")
    sys.exit(exit_code)

with open(args[-1], "wb") as fh:
    fh.write(b"fake-video:%d:" % count + bytes(firsts))
sys.exit(0)
'''


@pytest.fixture
def ffmpeg_exe():
    return _FFMPEG


@pytest.fixture
def fake_engine(tmp_path):
    """Path to an executable script that behaves like a tiny ffmpeg.

    Reads raw RGBA frames from stdin (or the first -i file), reports frame=N on stderr, writes a
    small output file on EOF. FAKE_ENGINE_EXIT and FAKE_ENGINE_DELAY in
    the environment control failures and slowness.
    """
    script = tmp_path / "fake_ffmpeg.py"
    script.write_text(f"#!{sys.executable}\n" + _FAKE_ENGINE)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


@pytest.fixture
def fake_settings(fake_engine):
    """EngineSettings pointing at the stand-in engine, with short timeouts."""
    return EngineSettings(ffmpeg_binary=fake_engine, terminate_timeout=2.0, kill_timeout=2.0)


@pytest.fixture
def source_video(tmp_path):
    """Create a 3-second test video (320x240, 10fps) with a sine tone."""
    out = tmp_path / "source.mp4"
    subprocess.run(
        [
            _FFMPEG, "-y",
            "-f", "lavfi", "-i", "color=c=blue:s=320x240:d=3:r=10",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=3",
            "-shortest",
            "-c:v", "libx264", "-crf", "28", "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-b:a", "32k",
            str(out),
        ],
        check=True,
        capture_output=True,
    )
    return out


@pytest.fixture
def source_audio(tmp_path):
    """Create a 2-second 440 Hz WAV file."""
    out = tmp_path / "tone.wav"
    subprocess.run(
        [
            _FFMPEG, "-y",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=2",
            "-c:a", "pcm_s16le",
            str(out),
        ],
        check=True,
        capture_output=True,
    )
    return out


def rgba_frame(width, height, index=0):
    """A solid frame whose color changes with index."""
    shade = (index * 7) % 256
    return bytes((shade, 255 - shade, 128, 255)) * (width * height)


@pytest.fixture
def make_frame():
    return rgba_frame


@pytest.fixture
def png_bytes():
    """Encode a tiny RGBA PNG with Pillow."""
    import io

    from PIL import Image

    def _make(width, height, color=(255, 0, 0, 255)):
        buf = io.BytesIO()
        Image.new("RGBA", (width, height), color).save(buf, format="PNG")
        return buf.getvalue()

    return _make


