"""Classify caller-supplied inputs and outputs into endpoints."""

import os
from urllib.parse import urlparse

from thumbforge.models import (
    Endpoint,
    InMemoryStream,
    LocalPath,
    NullEndpoint,
    RemoteURL,
)

STDIN_TOKEN = "pipe:0"
# A single JPEG frame on stdout.
STDOUT_TOKENS = ("-f", "image2pipe", "-c:v", "mjpeg", "pipe:1")

REMOTE_SCHEMES = ("http", "https")


def is_remote(value: str) -> bool:
    return urlparse(value).scheme.lower() in REMOTE_SCHEMES


def resolve_input(value) -> tuple[str, Endpoint]:
    """Return the ffmpeg input token and endpoint for ``value``.

    Streams and remote URLs are both fed through stdin; the URL is kept on the
    endpoint so the bytes can be fetched later.
    """
    if value is None:
        return STDIN_TOKEN, NullEndpoint()
    if isinstance(value, str):
        if is_remote(value):
            return STDIN_TOKEN, RemoteURL(value)
        return value, LocalPath(value)
    if isinstance(value, os.PathLike):
        path = os.fspath(value)
        return path, LocalPath(path)
    if not hasattr(value, "read"):
        raise TypeError(f"Unsupported input type: {type(value).__name__}")
    return STDIN_TOKEN, InMemoryStream(value)


def output_tokens(endpoint: Endpoint) -> tuple[str, ...]:
    if isinstance(endpoint, LocalPath):
        return (endpoint.path,)
    if isinstance(endpoint, (InMemoryStream, NullEndpoint)):
        return STDOUT_TOKENS
    raise TypeError(f"Not an output endpoint: {endpoint!r}")


def resolve_output(value) -> tuple[tuple[str, ...], Endpoint]:
    """Return the ffmpeg output tokens and endpoint for ``value``."""
    if value is None:
        endpoint = NullEndpoint()
    elif isinstance(value, (str, os.PathLike)):
        endpoint = LocalPath(os.fspath(value))
    elif hasattr(value, "write"):
        endpoint = InMemoryStream(value)
    else:
        raise TypeError(f"Unsupported output type: {type(value).__name__}")
    return output_tokens(endpoint), endpoint
