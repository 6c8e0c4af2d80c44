"""HTTP routes for ThumbForge."""

import dataclasses
import io
import logging

from flask import Blueprint, Response, current_app, jsonify, request, send_file

from thumbforge.config import resolve_ffmpeg_path
from thumbforge.endpoints import is_remote
from thumbforge.engine import generate
from thumbforge.executor import CHUNK_SIZE
from thumbforge.fallback import FallbackExhaustedError
from thumbforge.ffutil import FFmpegNotFoundError, TranscoderError, check_ffmpeg
from thumbforge.models import InvalidSizeError
from thumbforge.sizespec import parse_size

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__)

DEFAULT_SIZE = "240x?"


def _request_config(seek: str | None):
    config = current_app.config["THUMBNAIL_CONFIG"]
    if seek:
        config = dataclasses.replace(config, seek=seek)
    return config


@bp.route("/api/health")
def health():
    path = resolve_ffmpeg_path(current_app.config["THUMBNAIL_CONFIG"])
    try:
        check_ffmpeg(path)
    except FFmpegNotFoundError as e:
        return jsonify({"ffmpeg": path, "found": False, "error": str(e)}), 503
    return jsonify({"ffmpeg": path, "found": True})


@bp.route("/api/thumbnail", methods=["POST"])
def thumbnail_from_upload():
    if "file" not in request.files:
        return jsonify({"error": "No file provided"}), 400

    f = request.files["file"]
    size = request.form.get("size", DEFAULT_SIZE)
    try:
        parse_size(size)
    except InvalidSizeError as e:
        return jsonify({"error": str(e)}), 400

    try:
        stream = generate(f.stream, None, size, _request_config(request.form.get("seek")))
        # A run that fails before producing output raises here, not mid-body.
        first = stream.read(CHUNK_SIZE)
    except TranscoderError as e:
        logger.warning("Thumbnail for upload %s failed: %s", f.filename, e)
        return jsonify({"error": str(e)}), 502

    def body():
        # The upload stream must stay open until ffmpeg has read it.
        with stream:
            if first:
                yield first
            yield from stream

    return Response(body(), mimetype="image/jpeg")


@bp.route("/api/thumbnail", methods=["GET"])
def thumbnail_from_url():
    url = request.args.get("url")
    if not url or not is_remote(url):
        return jsonify({"error": "An http(s) url is required"}), 400

    buf = io.BytesIO()
    try:
        result = generate(
            url,
            buf,
            request.args.get("size", DEFAULT_SIZE),
            _request_config(request.args.get("seek")),
        )
    except InvalidSizeError as e:
        return jsonify({"error": str(e)}), 400
    except (TranscoderError, FallbackExhaustedError) as e:
        logger.warning("Thumbnail for %s failed: %s", url, e)
        return jsonify({"error": str(e)}), 502

    buf.seek(0)
    resp = send_file(buf, mimetype="image/jpeg")
    resp.headers["X-Thumbforge-Fallback"] = "1" if result.used_fallback else "0"
    return resp
