from flask import Blueprint, abort, current_app, jsonify, send_file

from blueprints.api_routes.categories import register_category_api_routes
from blueprints.api_routes.games import register_game_api_routes
from image_storage import LocalImageStorage


def create_api_blueprint(*, game_service, category_bank, image_storage, long_poll_seconds: float = 25):
    bp = Blueprint("api", __name__)
    context = {
        "game_service": game_service,
        "category_bank": category_bank,
        "long_poll_seconds": long_poll_seconds,
    }

    @bp.route("/api/health", endpoint="api_health")
    def api_health():
        return jsonify(ok=True, game=game_service.GAME_NAME)

    @bp.route("/uploads/<path:key>", endpoint="uploaded_image")
    def uploaded_image(key: str):
        if not isinstance(image_storage, LocalImageStorage):
            abort(404)
        path = image_storage.path_for(key)
        if path is None:
            current_app.logger.warning("Upload not found: %s", key)
            abort(404)
        return send_file(path)

    register_game_api_routes(bp, context)
    register_category_api_routes(bp, context)
    return bp
