"""Spawn ffmpeg and supervise its stdio in one of three protocols.

Blocking
    Wait until ffmpeg's stdout and stderr are both closed, then decide success
    from the exit code and the captured stderr.
Streaming
    Return ffmpeg's stdout at once as a lazy, single-pass byte source. The run
    is checked when the caller reads it to EOF.
Duplex
    Return one channel whose writes go to ffmpeg's stdin and whose reads come
    from its stdout.

A session is complete only once every stdio stream has closed. ffmpeg can exit
before its last stderr bytes have been read, so the exit status alone is
recorded but never used to decide the outcome.
"""

import enum
import logging
import subprocess
import threading
from typing import IO, Iterable, Iterator

from thumbforge.ffutil import ProcessSpawnError, check_result
from thumbforge.models import Endpoint, NullEndpoint

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class Protocol(enum.Enum):
    BLOCKING = "blocking"
    STREAMING = "streaming"
    DUPLEX = "duplex"


def select_protocol(input_ep: Endpoint, output_ep: Endpoint, override: bool = False) -> Protocol:
    """Pick the execution protocol from the endpoint kinds.

    A raw argument override always runs Duplex, as does a call with neither
    input nor output.
    """
    input_null = isinstance(input_ep, NullEndpoint)
    output_null = isinstance(output_ep, NullEndpoint)

    if override or (input_null and output_null):
        return Protocol.DUPLEX
    if input_null:
        raise ValueError("An input is required when an output is given")
    if output_null:
        return Protocol.STREAMING
    return Protocol.BLOCKING


def iter_source(source: IO[bytes] | Iterable[bytes]) -> Iterator[bytes]:
    """Yield byte chunks from a file-like object or an iterable of chunks."""
    if hasattr(source, "read"):
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk
    else:
        for chunk in source:
            if chunk:
                yield chunk


class ProcessSession:
    """One live ffmpeg process, its three pipes and its stderr buffer.

    Args:
        path: ffmpeg executable.
        argv: Arguments after the executable.
        source: Optional bytes to feed into stdin (file-like or iterable). A
            file-like source is left open; an iterable with ``close()`` is
            closed once ffmpeg stops reading.
        sink: Optional writable that receives stdout. Only used when
            ``pump_stdout`` is true; with no sink stdout is drained and dropped.
        pump_stdout: Read stdout on a background thread. Streaming and Duplex
            leave stdout to the caller.
        keep_stdin: Leave stdin open for the caller when there is no source.
    """

    def __init__(
        self,
        path: str,
        argv: list[str] | tuple[str, ...],
        source: IO[bytes] | Iterable[bytes] | None = None,
        sink: IO[bytes] | None = None,
        pump_stdout: bool = True,
        keep_stdin: bool = False,
    ):
        self.path = path
        self.argv = list(argv)
        self.source = source
        self.sink = sink
        self.pump_stdout = pump_stdout
        self.keep_stdin = keep_stdin

        self.returncode: int | None = None
        self.input_error: BaseException | None = None
        self.output_error: BaseException | None = None

        self._proc: subprocess.Popen | None = None
        self._stderr_chunks: list[bytes] = []
        self._stderr: str | None = None
        self._pumps: list[threading.Thread] = []

        # Completion latch: set when both stdout and stderr have reached EOF.
        self._open_streams = {"stdout", "stderr"}
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._exited = threading.Event()
        self._finished = False

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> "ProcessSession":
        cmd = [self.path, *self.argv]
        logger.debug("Spawning %s", cmd)
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Could not start %s: %s", self.path, e)
            raise ProcessSpawnError(self.path, e) from e

        self._spawn_thread(self._pump_stderr, "stderr", pump=True)
        if self.pump_stdout:
            self._spawn_thread(self._pump_stdout, "stdout", pump=True)
        if self.source is not None:
            self._spawn_thread(self._pump_stdin, "stdin", pump=True)
        elif not self.keep_stdin:
            self._proc.stdin.close()
        self._spawn_thread(self._watch_exit, "exit")
        return self

    @property
    def stdin(self) -> IO[bytes]:
        return self._proc.stdin

    @property
    def stdout(self) -> IO[bytes]:
        return self._proc.stdout

    @property
    def stderr(self) -> str:
        """Captured stderr. Complete only after :meth:`wait` returns."""
        if self._stderr is not None:
            return self._stderr
        return b"".join(self._stderr_chunks).decode("utf-8", errors="replace")

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def stream_closed(self, name: str) -> None:
        """Record EOF on ``stdout`` or ``stderr``; the last one fires the latch."""
        with self._lock:
            self._open_streams.discard(name)
            if not self._open_streams:
                self._closed.set()

    def wait(self, check: bool = True) -> int:
        """Block until all stdio has closed and the exit status is known.

        The input pump is joined as well, so the caller owns its input stream
        again once this returns.

        Raises:
            ProcessExitError: ffmpeg exited non-zero.
            EncodingError: ffmpeg exited 0 but reported nothing was encoded.
        """
        self._closed.wait()
        self._exited.wait()
        for t in self._pumps:
            t.join()

        if not self._finished:
            self._finished = True
            self._stderr = b"".join(self._stderr_chunks).decode("utf-8", errors="replace")
            if self.returncode != 0:
                logger.warning("%s exited %s", self.path, self.returncode)
            else:
                logger.debug("%s exited 0", self.path)

        if check:
            try:
                check_result(self.path, self.returncode, self._stderr)
            except Exception as e:
                if self.input_error is not None:
                    raise e from self.input_error
                raise
            if self.output_error is not None:
                raise self.output_error
        return self.returncode

    def kill(self) -> None:
        """Abandon the run. Partial output is left as is."""
        if self._proc is not None and self._proc.poll() is None:
            logger.debug("Killing %s (pid %s)", self.path, self._proc.pid)
            self._proc.kill()

    # -- pumps --------------------------------------------------------------

    def _spawn_thread(self, target, name: str, pump: bool = False) -> None:
        t = threading.Thread(target=target, name=f"thumbforge-{name}", daemon=True)
        t.start()
        if pump:
            self._pumps.append(t)

    def _pump_stdin(self) -> None:
        stdin = self._proc.stdin
        try:
            for chunk in iter_source(self.source):
                stdin.write(chunk)
        except BrokenPipeError:
            # ffmpeg stops reading once it has its frame.
            logger.debug("%s closed stdin before the input ended", self.path)
        except Exception as e:
            self.input_error = e
            logger.warning("Reading input for %s failed: %s", self.path, e)
        finally:
            try:
                stdin.close()
            except BrokenPipeError:
                pass
            # File-like sources belong to the caller; generators are ours to close.
            if not hasattr(self.source, "read") and hasattr(self.source, "close"):
                self.source.close()

    def _pump_stdout(self) -> None:
        stdout = self._proc.stdout
        try:
            for chunk in iter(lambda: stdout.read1(CHUNK_SIZE), b""):
                if self.sink is None or self.output_error is not None:
                    continue
                try:
                    self.sink.write(chunk)
                except Exception as e:
                    # Keep draining so ffmpeg is never blocked on a full pipe.
                    self.output_error = e
                    logger.warning("Writing output from %s failed: %s", self.path, e)
        finally:
            stdout.close()
            self.stream_closed("stdout")

    def _pump_stderr(self) -> None:
        stderr = self._proc.stderr
        try:
            for chunk in iter(lambda: stderr.read1(CHUNK_SIZE), b""):
                self._stderr_chunks.append(chunk)
        finally:
            stderr.close()
            self.stream_closed("stderr")

    def _watch_exit(self) -> None:
        self.returncode = self._proc.wait()
        logger.debug("%s (pid %s) exit status %s", self.path, self._proc.pid, self.returncode)
        self._exited.set()


class StreamingOutput:
    """ffmpeg's stdout as a lazy, single-pass byte source.

    Reading to EOF completes the session; a failed run raises the same
    ``ProcessExitError`` / ``EncodingError`` a Blocking run would.
    """

    def __init__(self, session: ProcessSession):
        self.session = session
        self._stdout = session.stdout
        self._eof = False

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self._eof or size == 0:
            return b""
        data = self._stdout.read() if size is None or size < 0 else self._stdout.read1(size)
        if not data or size is None or size < 0:
            self._finish()
        return data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    def _finish(self) -> None:
        self._eof = True
        self._stdout.close()
        self.session.stream_closed("stdout")
        self.session.wait()

    def close(self) -> None:
        """Stop reading early. ffmpeg is killed if it is still running."""
        if self._eof:
            return
        self._eof = True
        self._stdout.close()
        self.session.stream_closed("stdout")
        self.session.kill()
        self.session.wait(check=False)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class DuplexChannel:
    """A bidirectional byte channel over ffmpeg's stdin and stdout."""

    def __init__(self, session: ProcessSession):
        self.session = session
        self._stdin = session.stdin
        self._stdout = session.stdout
        self._eof = False

    def write(self, data: bytes) -> int:
        self._stdin.write(data)
        self._stdin.flush()
        return len(data)

    def close_input(self) -> None:
        if not self._stdin.closed:
            self._stdin.close()

    def read(self, size: int = -1) -> bytes:
        if self._eof or size == 0:
            return b""
        data = self._stdout.read() if size is None or size < 0 else self._stdout.read1(size)
        if not data or size is None or size < 0:
            self._eof = True
            self._stdout.close()
            self.session.stream_closed("stdout")
        return data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    def wait(self, check: bool = True) -> int:
        """Wait for the run to finish; stdout must have been read to EOF."""
        return self.session.wait(check=check)

    def close(self) -> None:
        self.close_input()
        if not self._eof:
            self._eof = True
            self._stdout.close()
            self.session.stream_closed("stdout")
            self.session.kill()
        self.session.wait(check=False)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def run_blocking(
    path: str,
    argv: list[str],
    source: IO[bytes] | Iterable[bytes] | None = None,
    sink: IO[bytes] | None = None,
) -> ProcessSession:
    """Run ffmpeg to completion and return the finished session.

    Raises:
        ProcessSpawnError, ProcessExitError, EncodingError
    """
    session = ProcessSession(path, argv, source=source, sink=sink).start()
    session.wait()
    return session


def run_streaming(
    path: str,
    argv: list[str],
    source: IO[bytes] | Iterable[bytes] | None = None,
) -> StreamingOutput:
    """Start ffmpeg and hand back its stdout without waiting for it to exit."""
    session = ProcessSession(path, argv, source=source, pump_stdout=False).start()
    return StreamingOutput(session)


def run_duplex(path: str, argv: list[str]) -> DuplexChannel:
    session = ProcessSession(path, argv, pump_stdout=False, keep_stdin=True).start()
    return DuplexChannel(session)
