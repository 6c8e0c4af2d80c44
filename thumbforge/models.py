"""Shared data types used across ThumbForge."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Union


class InvalidSizeError(ValueError):
    """Raised for a malformed or semantically empty size string."""

    def __init__(self, message: str = "Invalid size string"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Size directives
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Percentage:
    """Scale both axes to ``value`` percent of the source dimensions."""

    value: int


@dataclass(frozen=True)
class Dimensions:
    """Explicit pixel size; ``None`` on one side preserves the aspect ratio."""

    width: int | None = None
    height: int | None = None

    def __post_init__(self):
        if self.width is None and self.height is None:
            raise InvalidSizeError()


SizeSpec = Union[Percentage, Dimensions]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LocalPath:
    path: str


@dataclass(frozen=True)
class InMemoryStream:
    """A caller-owned file-like object. Never closed by ThumbForge."""

    handle: IO[bytes] = field(compare=False)


@dataclass(frozen=True)
class RemoteURL:
    url: str


@dataclass(frozen=True)
class NullEndpoint:
    pass


Endpoint = Union[LocalPath, InMemoryStream, RemoteURL, NullEndpoint]


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionRequest:
    """Everything needed for one ffmpeg invocation, fixed before spawning."""

    input: Endpoint
    output: Endpoint
    size: SizeSpec | None
    ffmpeg_path: str
    argv: tuple[str, ...]
    seek: str = "00:00:00"
    override: bool = False


@dataclass
class ThumbnailResult:
    """Outcome of a Blocking run."""

    output: Endpoint
    returncode: int
    stderr: str = ""
    used_fallback: bool = False


@dataclass(frozen=True)
class RemoteProbe:
    """Container metadata used to size the fallback download."""

    bit_rate: int | None = None
    size: int | None = None
    duration: float | None = None

    @property
    def complete(self) -> bool:
        return None not in (self.bit_rate, self.size, self.duration)


@dataclass(frozen=True)
class FallbackPlan:
    byte_limit: int
    temp_path: Path
