"""Flask application factory for the ThumbForge HTTP API."""

from flask import Flask, jsonify

from thumbforge.config import ThumbnailConfig


def create_app(config: ThumbnailConfig | None = None) -> Flask:
    app = Flask(__name__)
    app.config["THUMBNAIL_CONFIG"] = config or ThumbnailConfig()
    app.config["MAX_CONTENT_LENGTH"] = 2 * 1024 * 1024 * 1024  # 2 GB

    from thumbforge.web.routes import bp
    app.register_blueprint(bp)

    @app.errorhandler(413)
    def request_entity_too_large(error):
        return jsonify({"error": "File too large"}), 413

    return app
