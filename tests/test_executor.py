"""Tests for the process executor, run against a fake ffmpeg script."""

import io
import threading
import time
from pathlib import Path

import pytest

from conftest import fake_image
from thumbforge.endpoints import STDOUT_TOKENS
from thumbforge.executor import (
    DuplexChannel,
    Protocol,
    StreamingOutput,
    iter_source,
    run_blocking,
    run_duplex,
    run_streaming,
    select_protocol,
)
from thumbforge.ffutil import EncodingError, ProcessExitError, ProcessSpawnError, build_args
from thumbforge.models import Dimensions, InMemoryStream, LocalPath, NullEndpoint, RemoteURL

SIZE = Dimensions(50, None)


def _args(src: str, dst=STDOUT_TOKENS) -> list[str]:
    if isinstance(dst, str):
        dst = (dst,)
    return build_args(src, dst, SIZE)


# ---------------------------------------------------------------------------
# Protocol selection
# ---------------------------------------------------------------------------

class TestSelectProtocol:
    @pytest.mark.parametrize(
        "input_ep",
        [LocalPath("a.mp4"), InMemoryStream(io.BytesIO()), RemoteURL("http://x/a.mp4")],
    )
    def test_blocking(self, input_ep):
        assert select_protocol(input_ep, LocalPath("o.png")) is Protocol.BLOCKING
        assert select_protocol(input_ep, InMemoryStream(io.BytesIO())) is Protocol.BLOCKING

    def test_streaming(self):
        assert select_protocol(LocalPath("a.mp4"), NullEndpoint()) is Protocol.STREAMING

    def test_duplex_when_both_null(self):
        assert select_protocol(NullEndpoint(), NullEndpoint()) is Protocol.DUPLEX

    def test_override_is_always_duplex(self):
        assert select_protocol(LocalPath("a.mp4"), LocalPath("o.png"), override=True) is Protocol.DUPLEX

    def test_output_without_input(self):
        with pytest.raises(ValueError, match="input is required"):
            select_protocol(NullEndpoint(), LocalPath("o.png"))


def test_iter_source_file_and_iterable():
    assert b"".join(iter_source(io.BytesIO(b"abc"))) == b"abc"
    assert list(iter_source([b"a", b"", b"b"])) == [b"a", b"b"]


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------

class TestRunBlocking:
    def test_file_to_file(self, fake_ffmpeg, video_file, video_bytes, tmp_path):
        out = tmp_path / "thumb.png"
        session = run_blocking(fake_ffmpeg, _args(str(video_file), str(out)))
        assert session.returncode == 0
        assert out.read_bytes() == fake_image(video_bytes)
        assert "fake ffmpeg" in session.stderr

    def test_stream_to_stream(self, fake_ffmpeg, video_bytes):
        sink = io.BytesIO()
        run_blocking(fake_ffmpeg, _args("pipe:0"), source=io.BytesIO(video_bytes), sink=sink)
        assert sink.getvalue() == fake_image(video_bytes)

    def test_caller_streams_left_open(self, fake_ffmpeg, video_bytes):
        source, sink = io.BytesIO(video_bytes), io.BytesIO()
        run_blocking(fake_ffmpeg, _args("pipe:0"), source=source, sink=sink)
        assert not source.closed
        assert not sink.closed

    def test_iterable_source(self, fake_ffmpeg, video_bytes):
        sink = io.BytesIO()
        chunks = [video_bytes[i:i + 1000] for i in range(0, len(video_bytes), 1000)]
        run_blocking(fake_ffmpeg, _args("pipe:0"), source=iter(chunks), sink=sink)
        assert sink.getvalue() == fake_image(video_bytes)

    def test_nonzero_exit(self, fake_ffmpeg, tmp_path):
        with pytest.raises(ProcessExitError) as exc:
            run_blocking(fake_ffmpeg, _args(str(tmp_path / "missing.mp4"), str(tmp_path / "o.png")))
        lines = str(exc.value).split("\n")
        assert lines[0] == f"{fake_ffmpeg} exited 1"
        assert lines[1] == f"{fake_ffmpeg} stderr:"
        assert "missing.mp4" in exc.value.stderr

    def test_exit_code_from_process(self, fake_ffmpeg, video_file, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_FFMPEG_EXIT", "3")
        with pytest.raises(ProcessExitError) as exc:
            run_blocking(fake_ffmpeg, _args(str(video_file), str(tmp_path / "o.png")))
        assert exc.value.returncode == 3

    def test_nothing_encoded_with_clean_exit(self, fake_ffmpeg, video_file, tmp_path, monkeypatch):
        monkeypatch.setenv("FAKE_FFMPEG_NOTHING", "1")
        with pytest.raises(EncodingError):
            run_blocking(fake_ffmpeg, _args(str(video_file), str(tmp_path / "o.png")))

    def test_large_stderr_fully_captured_before_deciding(
        self, fake_ffmpeg, video_file, tmp_path, monkeypatch
    ):
        # The marker is written last, after far more than a pipe buffer of stderr.
        monkeypatch.setenv("FAKE_FFMPEG_STDERR", "x" * 1023 + "\n")
        monkeypatch.setenv("FAKE_FFMPEG_STDERR_REPEAT", "512")
        monkeypatch.setenv("FAKE_FFMPEG_NOTHING", "1")
        with pytest.raises(EncodingError) as exc:
            run_blocking(fake_ffmpeg, _args(str(video_file), str(tmp_path / "o.png")))
        assert len(exc.value.stderr) > 512 * 1024
        assert exc.value.stderr.endswith("nothing was encoded\n")

    def test_ffmpeg_stops_reading_early(self, fake_ffmpeg, monkeypatch):
        monkeypatch.setenv("FAKE_FFMPEG_READ_LIMIT", "1024")
        data = b"v" * (4 * 1024 * 1024)
        sink = io.BytesIO()
        session = run_blocking(fake_ffmpeg, _args("pipe:0"), source=io.BytesIO(data), sink=sink)
        assert sink.getvalue() == fake_image(data[:1024])
        assert session.input_error is None

    def test_input_reader_finished_on_return(self, fake_ffmpeg, monkeypatch):
        monkeypatch.setenv("FAKE_FFMPEG_READ_LIMIT", "1024")

        class SlowSource:
            def __init__(self):
                self.calls = 0
                self.thread = None

            def read(self, n):
                self.thread = threading.current_thread()
                self.calls += 1
                if self.calls > 1:
                    time.sleep(1)
                return b"v" * n

        source = SlowSource()
        run_blocking(fake_ffmpeg, _args("pipe:0"), source=source, sink=io.BytesIO())
        assert source.thread is not None
        assert not source.thread.is_alive()

    def test_generator_source_closed_when_ffmpeg_stops_reading(self, fake_ffmpeg, monkeypatch):
        monkeypatch.setenv("FAKE_FFMPEG_READ_LIMIT", "1024")
        closed = []

        def endless():
            try:
                while True:
                    yield b"v" * 4096
            finally:
                closed.append(True)

        run_blocking(fake_ffmpeg, _args("pipe:0"), source=endless(), sink=io.BytesIO())
        assert closed == [True]

    def test_input_error_chained(self, fake_ffmpeg):
        def broken():
            raise OSError("connection reset")
            yield b""

        with pytest.raises(ProcessExitError) as exc:
            run_blocking(fake_ffmpeg, _args("pipe:0"), source=broken(), sink=io.BytesIO())
        assert isinstance(exc.value.__cause__, OSError)

    def test_sink_error_raised_after_success(self, fake_ffmpeg, video_bytes):
        class ReadOnly(io.BytesIO):
            def write(self, data):
                raise io.UnsupportedOperation("not writable")

        with pytest.raises(io.UnsupportedOperation):
            run_blocking(fake_ffmpeg, _args("pipe:0"), source=io.BytesIO(video_bytes), sink=ReadOnly())

    def test_missing_executable(self, tmp_path, video_file):
        path = str(tmp_path / "no-such-ffmpeg")
        with pytest.raises(ProcessSpawnError) as exc:
            run_blocking(path, _args(str(video_file), str(tmp_path / "o.png")))
        lines = str(exc.value).split("\n")
        assert lines[0] == f"{path} exited 127"
        assert lines[1] == f"{path} stderr:"

    def test_sessions_are_independent(self, fake_ffmpeg, video_file, video_bytes, tmp_path):
        outs = [tmp_path / "a.png", tmp_path / "b.png"]
        sessions = [run_blocking(fake_ffmpeg, _args(str(video_file), str(o))) for o in outs]
        assert sessions[0] is not sessions[1]
        assert outs[0].read_bytes() == outs[1].read_bytes() == fake_image(video_bytes)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestRunStreaming:
    def test_returns_before_ffmpeg_finishes(self, fake_ffmpeg, video_file, monkeypatch):
        monkeypatch.setenv("FAKE_FFMPEG_DELAY", "0.5")
        stream = run_streaming(fake_ffmpeg, _args(str(video_file)))
        assert isinstance(stream, StreamingOutput)
        assert stream.session.returncode is None
        assert not stream.session.closed
        stream.read()

    def test_same_bytes_as_blocking(self, fake_ffmpeg, video_file, tmp_path):
        out = tmp_path / "thumb.png"
        run_blocking(fake_ffmpeg, _args(str(video_file), str(out)))

        stream = run_streaming(fake_ffmpeg, _args(str(video_file)))
        assert b"".join(stream) == out.read_bytes()

    def test_stream_input(self, fake_ffmpeg, video_bytes):
        stream = run_streaming(fake_ffmpeg, _args("pipe:0"), source=io.BytesIO(video_bytes))
        assert stream.read() == fake_image(video_bytes)

    def test_single_pass(self, fake_ffmpeg, video_file):
        stream = run_streaming(fake_ffmpeg, _args(str(video_file)))
        assert stream.read()
        assert stream.read() == b""
        assert list(stream) == []

    def test_failure_surfaces_at_eof(self, fake_ffmpeg, tmp_path):
        stream = run_streaming(fake_ffmpeg, _args(str(tmp_path / "missing.mp4")))
        with pytest.raises(ProcessExitError, match="exited 1"):
            stream.read(4096)

    def test_close_early(self, fake_ffmpeg, monkeypatch):
        monkeypatch.setenv("FAKE_FFMPEG_DELAY", "5")
        stream = run_streaming(fake_ffmpeg, _args("pipe:0"), source=io.BytesIO(b"abc"))
        with stream:
            pass
        assert stream.session.closed
        assert stream.read() == b""


# ---------------------------------------------------------------------------
# Duplex
# ---------------------------------------------------------------------------

class TestRunDuplex:
    def test_round_trip(self, fake_ffmpeg, video_bytes):
        channel = run_duplex(fake_ffmpeg, ["-i", "pipe:0", "pipe:1"])
        assert isinstance(channel, DuplexChannel)
        assert channel.write(video_bytes) == len(video_bytes)
        channel.close_input()
        assert channel.read() == fake_image(video_bytes)
        assert channel.wait() == 0

    def test_wait_reports_failure(self, fake_ffmpeg):
        channel = run_duplex(fake_ffmpeg, ["-i", "pipe:0", "pipe:1"])
        channel.close_input()
        assert channel.read() == b""
        with pytest.raises(ProcessExitError):
            channel.wait()

    def test_context_manager_closes(self, fake_ffmpeg):
        with run_duplex(fake_ffmpeg, ["-i", "pipe:0", "pipe:1"]) as channel:
            channel.write(b"frame")
        assert channel.session.closed
