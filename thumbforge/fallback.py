"""Partial-download fallback for remote inputs that fail to stream.

When piping a remote resource straight into ffmpeg fails, the container is
probed, a byte cutoff covering the container overhead plus about one second of
payload is estimated, that prefix is downloaded into a temporary file and
ffmpeg is run again against the file.
"""

import contextlib
import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Iterator
from urllib.parse import urlparse

import requests

from thumbforge import ffutil
from thumbforge.config import DEFAULT_FALLBACK_BYTE_LIMIT
from thumbforge.models import FallbackPlan, RemoteProbe

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK = 128 * 1024


class FallbackExhaustedError(RuntimeError):
    """Probing or downloading the remote resource failed during fallback."""


def estimate_cutoff(probe: RemoteProbe, default: int = DEFAULT_FALLBACK_BYTE_LIMIT) -> int:
    """Bytes needed to decode at least one frame near the start.

    With complete metadata this is the container overhead (total size minus
    payload) plus one second of payload, capped at the total size. Otherwise,
    or if the estimate is not positive, ``default`` is used.
    """
    if not probe.complete:
        return default

    byte_rate = probe.bit_rate / 8
    overhead = probe.size - byte_rate * probe.duration
    cutoff = math.ceil(overhead + byte_rate)
    if cutoff <= 0:
        return default
    return min(cutoff, probe.size) if probe.size > 0 else cutoff


def download_partial(url: str, target: Path, max_bytes: int, timeout: float | None = None) -> int:
    """Write at most ``max_bytes`` from the start of ``url`` to ``target``.

    Returns the number of bytes written.
    """
    max_bytes = max(1, int(max_bytes))
    headers = {"Range": f"bytes=0-{max_bytes - 1}"}
    with requests.get(url, stream=True, timeout=timeout, allow_redirects=True, headers=headers) as resp:
        logger.debug(
            "download partial %s -> %s %s range=%s",
            url, resp.url, resp.status_code, headers["Range"],
        )
        if resp.status_code not in (200, 206):
            raise requests.HTTPError(
                f"Failed to download media: HTTP {resp.status_code}", response=resp
            )

        written = 0
        with open(target, "wb") as f:
            for chunk in resp.iter_content(DOWNLOAD_CHUNK):
                if not chunk:
                    continue
                remaining = max_bytes - written
                if len(chunk) >= remaining:
                    f.write(chunk[:remaining])
                    written += remaining
                    break
                f.write(chunk)
                written += len(chunk)
    return written


@contextlib.contextmanager
def scoped_tempfile(url: str) -> Iterator[Path]:
    """Yield a fresh temp file path that is removed on exit."""
    suffix = Path(urlparse(url).path).suffix
    fd, name = tempfile.mkstemp(prefix="thumbforge_", suffix=suffix)
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)
        logger.debug("Removed fallback file %s", path)


@contextlib.contextmanager
def prepare_fallback(
    url: str,
    ffprobe_path: str = "ffprobe",
    default_limit: int = DEFAULT_FALLBACK_BYTE_LIMIT,
    timeout: float | None = None,
) -> Iterator[FallbackPlan]:
    """Probe, estimate and download; yield the plan with the local prefix.

    The temporary file exists only inside the ``with`` block.

    Raises:
        FallbackExhaustedError: the probe or the download failed.
    """
    with scoped_tempfile(url) as temp_path:
        try:
            probe = ffutil.probe_remote(url, ffprobe_path, timeout=timeout)
        except ffutil.ProbeError as e:
            raise FallbackExhaustedError(f"Could not probe {url}: {e}") from e

        plan = FallbackPlan(
            byte_limit=estimate_cutoff(probe, default_limit),
            temp_path=temp_path,
        )
        logger.info(
            "Falling back to a %d byte partial download of %s (%s)",
            plan.byte_limit, url, "estimated" if probe.complete else "default limit",
        )

        try:
            written = download_partial(url, temp_path, plan.byte_limit, timeout=timeout)
        except (requests.RequestException, OSError) as e:
            raise FallbackExhaustedError(f"Could not download {url}: {e}") from e
        logger.debug("Downloaded %d bytes of %s to %s", written, url, temp_path)

        yield plan
