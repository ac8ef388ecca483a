from dataclasses import asdict

from flask import request

from api_errors import build_responder, error_response
from round_timer import remaining_seconds

URL_PREFIX = "/api/nano-banana"


def state_payload(state, player_id: str = "") -> dict:
    payload = state.to_dict()
    payload["revision"] = state.revision()
    payload["timer_remaining"] = remaining_seconds(
        state.timer_started_at, state.timer_duration
    )
    if player_id:
        payload["viewer"] = {
            "player_id": player_id,
            "is_admin": player_id == state.admin_id,
            "is_competitor": player_id in state.selected_players,
            "in_session": player_id in state.players,
        }
    return payload


def register_game_api_routes(bp, context):
    game_service = context["game_service"]
    long_poll_seconds = float(context.get("long_poll_seconds") or 25)

    _respond = build_responder(
        log_label="Nano Banana",
        unavailable_code="nano_banana_unavailable",
        unavailable_message="Nano Banana Challenge is temporarily unavailable.",
    )

    def _json_body() -> dict:
        return request.get_json(silent=True) or {}

    def _actor(data: dict) -> str:
        return (data.get("player_id") or "").strip()

    def _rule(path: str, endpoint: str, view_func, methods) -> None:
        bp.add_url_rule(
            f"{URL_PREFIX}{path}",
            endpoint=f"api_nano_banana_{endpoint}",
            view_func=view_func,
            methods=methods,
        )

    # ------------------------
    # Sessions and roster
    # ------------------------

    def _bootstrap():
        return _respond(game_service.bootstrap)

    def _create_session():
        data = _json_body()
        return _respond(
            lambda: game_service.host_session(
                player_name=(data.get("player_name") or "").strip(),
                icon=data.get("icon"),
                player_id=_actor(data) or None,
            )
        )

    def _session_exists(session_code: str):
        return _respond(lambda: {"exists": game_service.verify_session(session_code)})

    def _join_session(session_code: str):
        data = _json_body()
        return _respond(
            lambda: game_service.join_session(
                session_code=session_code,
                player_name=(data.get("player_name") or "").strip(),
                icon=data.get("icon"),
                player_id=_actor(data) or None,
            )
        )

    def _session_state(session_code: str):
        player_id = (request.args.get("player_id") or "").strip()
        return _respond(
            lambda: state_payload(game_service.get_game_state(session_code), player_id)
        )

    def _session_changes(session_code: str):
        revision = (request.args.get("revision") or "").strip()
        player_id = (request.args.get("player_id") or "").strip()
        timeout = request.args.get("timeout", type=float)
        if timeout is None or timeout > long_poll_seconds:
            timeout = long_poll_seconds
        return _respond(
            lambda: state_payload(
                game_service.wait_for_change(session_code, revision, timeout), player_id
            )
        )

    def _claim_admin(session_code: str):
        data = _json_body()
        return _respond(
            lambda: {"claimed": game_service.claim_admin(_actor(data), session_code)}
        )

    def _transfer_captain(session_code: str):
        data = _json_body()
        new_admin_id = (data.get("new_admin_id") or "").strip()

        def _run():
            game_service.transfer_captain(session_code, _actor(data), new_admin_id)
            return {"ok": True, "admin_id": new_admin_id}

        return _respond(_run)

    def _remove_player(session_code: str, target_id: str):
        data = _json_body()

        def _run():
            game_service.delete_player(session_code, _actor(data), target_id)
            return {"ok": True, "removed": target_id}

        return _respond(_run)

    # ------------------------
    # Rounds, submissions and votes
    # ------------------------

    def _start_round(session_code: str):
        data = _json_body()
        round_type = (data.get("round_type") or "").strip()
        return _respond(
            lambda: state_payload(
                game_service.start_round(session_code, _actor(data), round_type)
            )
        )

    def _start_timer(session_code: str):
        data = _json_body()
        return _respond(
            lambda: state_payload(game_service.start_timer(session_code, _actor(data)))
        )

    def _timer_expired(session_code: str):
        return _respond(
            lambda: {"transitioned": game_service.handle_timer_expired(session_code)}
        )

    def _upload_submission(session_code: str):
        player_id = (request.form.get("player_id") or "").strip()
        image = request.files.get("image")
        if image is None:
            return error_response(
                status=400, code="invalid_upload", message="An image file is required."
            )

        def _run():
            result = game_service.upload_submission(
                session_code,
                player_id,
                image.read(),
                image.mimetype or "",
                image.filename or "image",
            )
            return {
                "submission": asdict(result["submission"]),
                "transitioned": result["transitioned"],
            }

        return _respond(_run)

    def _submit_vote(session_code: str):
        data = _json_body()
        submission_id = (data.get("submission_id") or "").strip()
        return _respond(
            lambda: game_service.submit_vote(session_code, _actor(data), submission_id)
        )

    def _end_voting(session_code: str):
        data = _json_body()
        return _respond(
            lambda: {
                "winner_id": game_service.end_voting_early(session_code, _actor(data))
            }
        )

    def _next_round(session_code: str):
        data = _json_body()
        return _respond(
            lambda: state_payload(game_service.next_round(session_code, _actor(data)))
        )

    # ------------------------
    # Resets
    # ------------------------

    def _reset_game(session_code: str):
        data = _json_body()
        return _respond(
            lambda: state_payload(game_service.reset_game(session_code, _actor(data)))
        )

    def _end_game(session_code: str):
        data = _json_body()
        return _respond(
            lambda: state_payload(game_service.end_game(session_code, _actor(data)))
        )

    def _complete_reset(session_code: str):
        data = _json_body()
        return _respond(
            lambda: state_payload(game_service.complete_reset(session_code, _actor(data)))
        )

    session = "/sessions/<string:session_code>"
    _rule("/bootstrap", "bootstrap", _bootstrap, ["GET"])
    _rule("/sessions", "create_session", _create_session, ["POST"])
    _rule(session, "session_state", _session_state, ["GET"])
    _rule(f"{session}/exists", "session_exists", _session_exists, ["GET"])
    _rule(f"{session}/changes", "session_changes", _session_changes, ["GET"])
    _rule(f"{session}/join", "join_session", _join_session, ["POST"])
    _rule(f"{session}/claim-admin", "claim_admin", _claim_admin, ["POST"])
    _rule(f"{session}/captain", "transfer_captain", _transfer_captain, ["POST"])
    _rule(
        f"{session}/players/<string:target_id>",
        "remove_player",
        _remove_player,
        ["DELETE"],
    )
    _rule(f"{session}/rounds", "start_round", _start_round, ["POST"])
    _rule(f"{session}/timer/start", "start_timer", _start_timer, ["POST"])
    _rule(f"{session}/timer/expired", "timer_expired", _timer_expired, ["POST"])
    _rule(f"{session}/submissions", "upload_submission", _upload_submission, ["POST"])
    _rule(f"{session}/votes", "submit_vote", _submit_vote, ["POST"])
    _rule(f"{session}/voting/end", "end_voting", _end_voting, ["POST"])
    _rule(f"{session}/next-round", "next_round", _next_round, ["POST"])
    _rule(f"{session}/reset", "reset_game", _reset_game, ["POST"])
    _rule(f"{session}/end", "end_game", _end_game, ["POST"])
    _rule(f"{session}/complete-reset", "complete_reset", _complete_reset, ["POST"])
