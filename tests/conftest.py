"""Shared test fixtures."""

import hashlib
import json
import os
import shutil
import stat
import subprocess
import sys
from pathlib import Path

import pytest

# Stands in for ffmpeg. It understands "-i <input>" and a trailing output
# argument, and emits FAKEJPEG followed by the sha256 of the input bytes.
FAKE_FFMPEG = r'''
import hashlib
import json
import os
import sys
import time

argv = sys.argv[1:]
log = os.environ.get("FAKE_FFMPEG_LOG")
if log:
    with open(log, "a") as f:
        f.write(json.dumps(argv) + "\n")

src = argv[argv.index("-i") + 1] if "-i" in argv else "pipe:0"
dst = argv[-1] if argv else "pipe:1"

limit = int(os.environ.get("FAKE_FFMPEG_READ_LIMIT", "-1"))
if src == "pipe:0":
    data = sys.stdin.buffer.read(limit) if limit >= 0 else sys.stdin.buffer.read()
    os.close(sys.stdin.fileno())
else:
    try:
        with open(src, "rb") as f:
            data = f.read()
    except OSError as e:
        sys.stderr.write(f"{src}: {e.strerror}\n")
        sys.exit(1)

time.sleep(float(os.environ.get("FAKE_FFMPEG_DELAY", "0")))

stderr = os.environ.get("FAKE_FFMPEG_STDERR", "fake ffmpeg version 0\n")
stderr *= int(os.environ.get("FAKE_FFMPEG_STDERR_REPEAT", "1"))
sys.stderr.write(stderr)

if not data:
    sys.stderr.write("pipe:0: Invalid data found when processing input\n")
    sys.exit(1)

if os.environ.get("FAKE_FFMPEG_NOTHING") == "1":
    sys.stderr.write("Output file is empty, nothing was encoded\n")
    sys.exit(0)

image = b"FAKEJPEG" + hashlib.sha256(data).hexdigest().encode()
if dst == "pipe:1":
    sys.stdout.buffer.write(image)
else:
    with open(dst, "wb") as f:
        f.write(image)

sys.exit(int(os.environ.get("FAKE_FFMPEG_EXIT", "0")))
'''


def fake_image(data: bytes) -> bytes:
    """What the fake ffmpeg produces for ``data``."""
    return b"FAKEJPEG" + hashlib.sha256(data).hexdigest().encode()


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> str:
    script = tmp_path / "fake-ffmpeg"
    script.write_text(f"#!{sys.executable}\n{FAKE_FFMPEG}")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


@pytest.fixture
def ffmpeg_log(tmp_path: Path, monkeypatch) -> Path:
    """Record every fake ffmpeg argv, one JSON list per line."""
    log = tmp_path / "argv.log"
    monkeypatch.setenv("FAKE_FFMPEG_LOG", str(log))
    return log


def read_argv_log(log: Path) -> list[list[str]]:
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text().splitlines()]


@pytest.fixture
def video_bytes() -> bytes:
    return os.urandom(64 * 1024)


@pytest.fixture
def video_file(tmp_path: Path, video_bytes: bytes) -> Path:
    path = tmp_path / "clip.webm"
    path.write_bytes(video_bytes)
    return path


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None, reason="ffmpeg not on PATH"
)


@pytest.fixture(scope="session")
def sample_video(tmp_path_factory) -> Path:
    """A 2-second 320x240 test clip rendered by the real ffmpeg."""
    if shutil.which("ffmpeg") is None:
        pytest.skip("ffmpeg not on PATH")
    output = tmp_path_factory.mktemp("media") / "sample video.mkv"
    cmd = [
        "ffmpeg", "-y",
        "-f", "lavfi", "-i", "testsrc=size=320x240:rate=25:duration=2",
        "-pix_fmt", "yuv420p",
        str(output),
    ]
    subprocess.run(cmd, capture_output=True, check=True)
    return output
