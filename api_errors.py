from __future__ import annotations

from typing import Any

from flask import current_app, jsonify

from game_errors import NanoBananaError


def build_error_payload(
    *,
    code: str,
    message: str,
    details: Any = None,
) -> dict[str, Any]:
    payload = {
        "code": str(code).strip() or "unknown_error",
        "message": str(message).strip() or "Unknown error.",
        "details": details if details is not None else {},
    }
    # Clients that only render a single string read "error".
    payload["error"] = payload["message"]
    return payload


def error_response(
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
):
    return jsonify(build_error_payload(code=code, message=message, details=details)), int(
        status
    )


def game_error_response(exc: NanoBananaError):
    return error_response(
        status=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def build_responder(*, log_label: str, unavailable_code: str, unavailable_message: str):
    """Wrap a view body: domain errors become envelopes, failures are logged and masked."""

    def _respond(fn):
        try:
            payload = fn()
            return jsonify(payload)
        except NanoBananaError as exc:
            if exc.status_code < 500:
                return game_error_response(exc)
            current_app.logger.error("%s API failure: %s", log_label, exc)
            return error_response(
                status=exc.status_code,
                code=unavailable_code,
                message=unavailable_message,
            )
        except Exception:
            current_app.logger.exception("%s API failure", log_label)
            return error_response(
                status=500,
                code=unavailable_code,
                message=unavailable_message,
            )

    return _respond
