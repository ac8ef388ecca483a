from dataclasses import asdict

from flask import request

from api_errors import build_responder

URL_PREFIX = "/api/nano-banana"


def register_category_api_routes(bp, context):
    game_service = context["game_service"]
    category_bank = context["category_bank"]

    _respond = build_responder(
        log_label="Category",
        unavailable_code="categories_unavailable",
        unavailable_message="Categories are temporarily unavailable.",
    )

    @bp.route(f"{URL_PREFIX}/categories", methods=["GET"], endpoint="api_list_categories")
    def api_list_categories():
        round_type = (request.args.get("round_type") or "").strip().lower() or None
        return _respond(
            lambda: {
                "categories": [
                    asdict(entry) for entry in category_bank.list_categories(round_type)
                ]
            }
        )

    @bp.route(
        f"{URL_PREFIX}/sessions/<string:session_code>/categories/import",
        methods=["POST"],
        endpoint="api_import_categories",
    )
    def api_import_categories(session_code: str):
        upload = request.files.get("file")
        if upload is not None:
            player_id = (request.form.get("player_id") or "").strip()
            csv_text = upload.read().decode("utf-8-sig", errors="replace")
        else:
            data = request.get_json(silent=True) or {}
            player_id = (data.get("player_id") or "").strip()
            csv_text = data.get("csv") or ""

        def _run():
            result = game_service.import_categories(session_code, player_id, csv_text)
            return {
                "count": result["count"],
                "message": result["message"],
                "categories": [asdict(entry) for entry in result["categories"]],
            }

        return _respond(_run)
