"""FFmpeg/ffprobe helpers: argument building, failure types and probing."""

import json
import shutil
import subprocess

from thumbforge.models import Dimensions, Percentage, RemoteProbe, SizeSpec

NOTHING_ENCODED = "nothing was encoded"

# Exit status reported when the executable could not be started at all.
SPAWN_FAILED_CODE = 127


class FFmpegNotFoundError(RuntimeError):
    pass


class TranscoderError(RuntimeError):
    """A transcoder run failed; carries the captured stderr."""

    headline = "exited"

    def __init__(self, path: str, returncode: int | None, stderr: str = ""):
        self.path = path
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(self.format_message())

    def format_message(self) -> str:
        return f"{self.path} {self.headline}\n{self.path} stderr:\n\n{self.stderr}"


class ProcessExitError(TranscoderError):
    @property
    def headline(self) -> str:
        return f"exited {self.returncode}"


class ProcessSpawnError(ProcessExitError):
    """The executable is missing or not runnable."""

    def __init__(self, path: str, error: OSError):
        self.error = error
        super().__init__(path, SPAWN_FAILED_CODE, str(error))


class EncodingError(TranscoderError):
    """ffmpeg exited cleanly but produced no frames."""

    headline = "failed to encode file"


class ProbeError(RuntimeError):
    pass


def check_ffmpeg(path: str = "ffmpeg") -> None:
    """Raise FFmpegNotFoundError if ``path`` is not an executable."""
    if shutil.which(path) is None:
        raise FFmpegNotFoundError(f"{path} not found on PATH")


def check_result(path: str, returncode: int, stderr: str) -> None:
    """Raise the matching TranscoderError for a finished run.

    A non-zero exit wins over the "nothing was encoded" check; some failures
    exit 0 while writing nothing.
    """
    if returncode != 0:
        raise ProcessExitError(path, returncode, stderr)
    if NOTHING_ENCODED in stderr:
        raise EncodingError(path, returncode, stderr)


def _percent_factor(value: int) -> str:
    """Exact decimal for value/100, e.g. 50 -> "0.5", 1234567 -> "12345.67"."""
    whole, rem = divmod(value, 100)
    if rem == 0:
        return str(whole)
    return f"{whole}.{rem:02d}".rstrip("0")


def scale_filter(size: SizeSpec) -> str:
    if isinstance(size, Percentage):
        factor = _percent_factor(size.value)
        return f"scale=iw*{factor}:ih*{factor}"
    if isinstance(size, Dimensions):
        width = size.width if size.width is not None else -1
        height = size.height if size.height is not None else -1
        return f"scale={width}:{height}"
    raise TypeError(f"Unsupported size directive: {size!r}")


def build_args(
    input_token: str,
    output_tokens: tuple[str, ...] | list[str],
    size: SizeSpec,
    seek: str = "00:00:00",
) -> list[str]:
    """Return the ffmpeg argument vector for a one-frame thumbnail.

    The order is significant to ffmpeg: overwrite flag, input, frame count,
    seek, scale filter, then the output.
    """
    return [
        "-y",
        "-i", input_token,
        "-vframes", "1",
        "-ss", seek,
        "-vf", scale_filter(size),
        *output_tokens,
    ]


def _int_or_none(value) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _float_or_none(value) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_probe_format(data: dict) -> RemoteProbe:
    fmt = data.get("format") or {}
    return RemoteProbe(
        bit_rate=_int_or_none(fmt.get("bit_rate")),
        size=_int_or_none(fmt.get("size")),
        duration=_float_or_none(fmt.get("duration")),
    )


def probe_remote(url: str, ffprobe_path: str = "ffprobe", timeout: float | None = None) -> RemoteProbe:
    """Read bit rate, byte size and duration of a remote container via ffprobe."""
    cmd = [
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        url,
    ]
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, check=True, timeout=timeout
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise ProbeError(f"ffprobe failed for {url}: {e}") from e

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe returned invalid JSON for {url}") from e

    return parse_probe_format(data)
