"""Orchestrator: turns a generate() call into one ffmpeg run."""

import logging
from typing import IO, Iterator, Mapping

import requests

from thumbforge import ffutil
from thumbforge.config import DEFAULT_SEEK, ThumbnailConfig, resolve_ffmpeg_path, resolve_ffprobe_path
from thumbforge.endpoints import output_tokens, resolve_input, resolve_output
from thumbforge.executor import (
    CHUNK_SIZE,
    DuplexChannel,
    Protocol,
    StreamingOutput,
    run_blocking,
    run_duplex,
    run_streaming,
    select_protocol,
)
from thumbforge.fallback import prepare_fallback
from thumbforge.models import (
    Endpoint,
    ExecutionRequest,
    InMemoryStream,
    RemoteURL,
    ThumbnailResult,
)
from thumbforge.sizespec import parse_size

logger = logging.getLogger(__name__)


def _remote_chunks(url: str, timeout: float | None) -> Iterator[bytes]:
    """Stream a remote resource. Runs lazily on the stdin pump thread."""
    with requests.get(url, stream=True, timeout=timeout, allow_redirects=True) as resp:
        resp.raise_for_status()
        yield from resp.iter_content(CHUNK_SIZE)


def _source_for(endpoint: Endpoint, timeout: float | None):
    if isinstance(endpoint, InMemoryStream):
        return endpoint.handle
    if isinstance(endpoint, RemoteURL):
        return _remote_chunks(endpoint.url, timeout)
    return None


def _sink_for(endpoint: Endpoint) -> IO[bytes] | None:
    if isinstance(endpoint, InMemoryStream):
        return endpoint.handle
    return None


def build_request(
    input,
    output,
    size: str | None,
    config: ThumbnailConfig,
    environ: Mapping[str, str] | None = None,
) -> ExecutionRequest:
    """Resolve endpoints, parse the size and fix the ffmpeg argument vector."""
    seek = config.seek or DEFAULT_SEEK
    input_token, input_ep = resolve_input(input)
    output_tokens, output_ep = resolve_output(output)

    if config.args is not None:
        return ExecutionRequest(
            input=input_ep,
            output=output_ep,
            size=None,
            ffmpeg_path=resolve_ffmpeg_path(config, environ),
            argv=tuple(config.args),
            seek=seek,
            override=True,
        )

    parsed = parse_size(size)
    return ExecutionRequest(
        input=input_ep,
        output=output_ep,
        size=parsed,
        ffmpeg_path=resolve_ffmpeg_path(config, environ),
        argv=tuple(ffutil.build_args(input_token, output_tokens, parsed, seek)),
        seek=seek,
    )


def generate(
    input,
    output,
    size: str | None = None,
    config: ThumbnailConfig | None = None,
    environ: Mapping[str, str] | None = None,
) -> ThumbnailResult | StreamingOutput | DuplexChannel:
    """Generate a thumbnail from a video.

    Args:
        input: Local path, ``http(s)`` URL, readable binary stream, or None.
        output: Local path, writable binary stream, or None for stdout.
        size: ``"<w>x<h>"`` (either side may be ``?``) or ``"<n>%"``. Ignored
            when ``config.args`` is set.
        config: Per-call options; see ThumbnailConfig.
        environ: Environment used to resolve executable paths. Defaults to
            ``os.environ``.

    Returns:
        ThumbnailResult once the image is written (input and output given),
        StreamingOutput over the image bytes (output is None), or a
        DuplexChannel (input and output both None, or raw ``config.args``).

    Raises:
        InvalidSizeError: the size string is malformed.
        ProcessSpawnError: ffmpeg could not be started.
        ProcessExitError / EncodingError: ffmpeg failed (Blocking).
        FallbackExhaustedError: a remote input failed and the partial
            download could not be prepared.
    """
    config = config or ThumbnailConfig()
    request = build_request(input, output, size, config, environ)
    protocol = select_protocol(request.input, request.output, request.override)
    logger.debug("Running %s protocol for %s", protocol.value, request.input)

    if protocol is Protocol.DUPLEX:
        return run_duplex(request.ffmpeg_path, list(request.argv))

    source = _source_for(request.input, config.http_timeout)
    if protocol is Protocol.STREAMING:
        return run_streaming(request.ffmpeg_path, list(request.argv), source)

    sink = _sink_for(request.output)
    try:
        session = run_blocking(request.ffmpeg_path, list(request.argv), source, sink)
    except ffutil.ProcessSpawnError:
        raise
    except ffutil.TranscoderError:
        if not isinstance(request.input, RemoteURL):
            raise
        logger.warning("Streaming %s into ffmpeg failed; trying a partial download", request.input.url)
        return _generate_from_prefix(request, config, environ)

    return ThumbnailResult(
        output=request.output,
        returncode=session.returncode,
        stderr=session.stderr,
    )


def _generate_from_prefix(
    request: ExecutionRequest,
    config: ThumbnailConfig,
    environ: Mapping[str, str] | None,
) -> ThumbnailResult:
    """Retry a failed remote run once against a downloaded prefix."""
    with prepare_fallback(
        request.input.url,
        ffprobe_path=resolve_ffprobe_path(config, environ),
        default_limit=config.fallback_byte_limit,
        timeout=config.http_timeout,
    ) as plan:
        argv = ffutil.build_args(
            str(plan.temp_path), output_tokens(request.output), request.size, request.seek
        )
        session = run_blocking(request.ffmpeg_path, argv, sink=_sink_for(request.output))

    return ThumbnailResult(
        output=request.output,
        returncode=session.returncode,
        stderr=session.stderr,
        used_fallback=True,
    )
