from __future__ import annotations

import logging
import os
import random
import time as timelib

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app_config import GameConfig, load_config, validate_runtime_config
from blueprints.api import create_api_blueprint
from categories import CategoryBank
from game_store import get_game_store
from image_storage import get_image_storage
from nano_banana import NanoBananaService

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
)

# ─────────────────────────────────────────────
# Hard-capped file handler (no deletion)
# ─────────────────────────────────────────────


class MaxSizeFileHandler(logging.FileHandler):
    def __init__(self, filename, max_bytes, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, **kwargs)

    def emit(self, record):
        try:
            if os.path.exists(self.baseFilename):
                if os.path.getsize(self.baseFilename) >= self.max_bytes:
                    return
            super().emit(record)
        except Exception:
            self.handleError(record)


# ─────────────────────────────────────────────
# Logging configuration
# ─────────────────────────────────────────────


def _root_file_handler(log_file: str) -> MaxSizeFileHandler | None:
    path = os.path.abspath(log_file)
    for handler in logging.getLogger().handlers:
        if isinstance(handler, MaxSizeFileHandler) and handler.baseFilename == path:
            return handler
    return None


def configure_logging(app: Flask, config: GameConfig) -> None:
    formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    # One capped handler per log file, shared by every app built in this process.
    file_handler = _root_file_handler(config.log_file)
    if file_handler is None:
        file_handler = MaxSizeFileHandler(config.log_file, max_bytes=config.log_max_bytes)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        # Library modules log through the root logger; cap them into the same file.
        logging.getLogger().addHandler(file_handler)

    # Reset Flask logger
    root_handlers = logging.getLogger().handlers
    for handler in list(app.logger.handlers):
        app.logger.removeHandler(handler)
        if handler not in root_handlers:
            handler.close()
    app.logger.setLevel(logging.INFO)
    app.logger.propagate = False

    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    # Silence Werkzeug access logs
    logging.getLogger("werkzeug").setLevel(logging.ERROR)

    app.logger.info("Logging initialised")


def register_request_logging(app: Flask) -> None:
    @app.before_request
    def start_timer():
        g.start_time = timelib.time()

    @app.after_request
    def log_request(response):
        duration = round(timelib.time() - g.get("start_time", timelib.time()), 3)

        app.logger.info(
            "%s %s (%s) -> %s [%ss]",
            request.method,
            request.path,
            request.endpoint,
            response.status_code,
            duration,
        )

        return response

    @app.teardown_request
    def log_exception(exception):
        if exception:
            app.logger.warning(
                "Unhandled exception on %s %s: %s",
                request.method,
                request.path,
                type(exception).__name__,
            )

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify(error=e.name, description=e.description), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        app.logger.error(
            "Unhandled exception",
            exc_info=(type(e), e, e.__traceback__),
        )
        return (
            jsonify(
                error="Internal Server Error",
                description="The server encountered an internal error.",
            ),
            500,
        )


def create_app(config: GameConfig | None = None) -> Flask:
    config = config or load_config()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["MAX_CONTENT_LENGTH"] = config.max_upload_bytes + 64 * 1024
    configure_logging(app, config)
    register_request_logging(app)
    validate_runtime_config(config)

    store = get_game_store(config)
    rng = random.Random()
    category_bank = CategoryBank(store, rng=rng)
    image_storage = get_image_storage(config)
    game_service = NanoBananaService(
        store=store,
        categories=category_bank,
        image_storage=image_storage,
        rng=rng,
    )
    game_service.LONG_POLL_SECONDS = config.long_poll_seconds

    app.register_blueprint(
        create_api_blueprint(
            game_service=game_service,
            category_bank=category_bank,
            image_storage=image_storage,
            long_poll_seconds=config.long_poll_seconds,
        )
    )
    app.extensions["nano_banana"] = game_service
    return app


if __name__ == "__main__":
    runtime_config = load_config()
    app = create_app(runtime_config)
    app.run(debug=not runtime_config.is_prod, host=runtime_config.host, port=runtime_config.port)
