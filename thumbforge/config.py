"""Thumbnail configuration and executable path resolution."""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

DEFAULT_SEEK = "00:00:00"
DEFAULT_FALLBACK_BYTE_LIMIT = 2 * 1024 * 1024
DEFAULT_HTTP_TIMEOUT = 120.0

FFMPEG_ENV = "FFMPEG_PATH"
FFPROBE_ENV = "FFPROBE_PATH"


@dataclass
class ThumbnailConfig:
    """Per-request options.

    ``args`` replaces the generated ffmpeg arguments entirely and always runs
    the Duplex protocol.
    """

    path: str | None = None
    seek: str = DEFAULT_SEEK
    args: list[str] | None = None
    probe_path: str | None = None
    fallback_byte_limit: int = DEFAULT_FALLBACK_BYTE_LIMIT
    http_timeout: float = DEFAULT_HTTP_TIMEOUT


def resolve_ffmpeg_path(config: ThumbnailConfig, environ: Mapping[str, str] | None = None) -> str:
    """Explicit config value, then ``$FFMPEG_PATH``, then ``ffmpeg``."""
    environ = os.environ if environ is None else environ
    return config.path or environ.get(FFMPEG_ENV) or "ffmpeg"


def resolve_ffprobe_path(config: ThumbnailConfig, environ: Mapping[str, str] | None = None) -> str:
    """Explicit config value, then ``$FFPROBE_PATH``, then ``ffprobe``."""
    environ = os.environ if environ is None else environ
    return config.probe_path or environ.get(FFPROBE_ENV) or "ffprobe"


def load_config(path: str | Path) -> ThumbnailConfig:
    """Load a ThumbnailConfig from a JSON file."""
    path = Path(path)
    data = json.loads(path.read_text())

    if not isinstance(data, dict):
        raise ValueError("Config must be a JSON object")

    known = {f.name for f in fields(ThumbnailConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

    args = data.get("args")
    if args is not None and (
        not isinstance(args, list) or not all(isinstance(a, str) for a in args)
    ):
        raise ValueError("Config 'args' must be a list of strings")

    return ThumbnailConfig(**data)
