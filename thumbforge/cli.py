"""Thin CLI entry point: builds a ThumbnailConfig and calls the engine."""

import argparse
import logging
import shutil
import sys
from pathlib import Path

from thumbforge.config import DEFAULT_SEEK, ThumbnailConfig, load_config
from thumbforge.engine import generate
from thumbforge.fallback import FallbackExhaustedError
from thumbforge.ffutil import TranscoderError
from thumbforge.models import InvalidSizeError


def setup_logging(verbose: bool) -> logging.Logger:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logging.getLogger("thumbforge")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="thumbforge",
        description="ThumbForge: grab a single thumbnail frame from a video with ffmpeg.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    gen = sub.add_parser("generate", help="Generate a thumbnail")
    gen.add_argument("input", help="Video path, http(s) URL, or '-' for stdin")
    gen.add_argument("--output", "-o", help="Image path, or '-' for stdout (default)")
    gen.add_argument("--size", "-s", default="240x?", help="Size like 240x100, 240x?, ?x100 or 50%%")
    gen.add_argument("--seek", default=None, help=f"Time offset hh:mm:ss[.ms] (default {DEFAULT_SEEK})")
    gen.add_argument("--config", "-c", type=Path, help="Path to a JSON config file")
    gen.add_argument("--ffmpeg", help="ffmpeg executable (default: $FFMPEG_PATH or ffmpeg)")
    gen.add_argument("--ffprobe", help="ffprobe executable (default: $FFPROBE_PATH or ffprobe)")

    serve = sub.add_parser("serve", help="Launch the HTTP API")
    serve.add_argument("--port", type=int, default=8322, help="Port to listen on")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    serve.add_argument("--config", "-c", type=Path, help="Path to a JSON config file")

    return parser


def _config_from_args(args: argparse.Namespace) -> ThumbnailConfig:
    config = load_config(args.config) if args.config else ThumbnailConfig()
    if getattr(args, "seek", None):
        config.seek = args.seek
    if getattr(args, "ffmpeg", None):
        config.path = args.ffmpeg
    if getattr(args, "ffprobe", None):
        config.probe_path = args.ffprobe
    return config


def run_generate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _config_from_args(args)
    source = sys.stdin.buffer if args.input == "-" else args.input
    to_stdout = args.output in (None, "-")

    try:
        if to_stdout:
            stream = generate(source, None, args.size, config)
            shutil.copyfileobj(stream, sys.stdout.buffer)
            sys.stdout.buffer.flush()
        else:
            result = generate(source, args.output, args.size, config)
            if result.used_fallback:
                logger.info("Used a partial download of %s", args.input)
            logger.info("Wrote %s", args.output)
    except (InvalidSizeError, TranscoderError, FallbackExhaustedError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logger = setup_logging(args.verbose)

    if args.command == "serve":
        from thumbforge.web import create_app
        app = create_app(_config_from_args(args))
        print(f"ThumbForge API: http://{args.host}:{args.port}")
        app.run(host=args.host, port=args.port, debug=False)
        return

    sys.exit(run_generate(args, logger))
