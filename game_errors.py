from __future__ import annotations

from typing import Any


class NanoBananaError(Exception):
    """Base class for every failure the game surfaces to a caller."""

    code = "nano_banana_error"
    default_status = 400

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code or self.default_status)
        self.details = dict(details or {})


class NotAuthorized(NanoBananaError):
    code = "not_authorized"
    default_status = 403


class PlayerNotFound(NanoBananaError):
    code = "player_not_found"
    default_status = 404


class SessionNotFound(NanoBananaError):
    code = "session_not_found"
    default_status = 404


class CannotDeleteAdmin(NanoBananaError):
    code = "cannot_delete_admin"
    default_status = 409


class InsufficientPlayers(NanoBananaError):
    code = "insufficient_players"
    default_status = 409


class PhaseConflict(NanoBananaError):
    code = "phase_conflict"
    default_status = 409


class InvalidUpload(NanoBananaError):
    code = "invalid_upload"
    default_status = 400


class InvalidImportFormat(NanoBananaError):
    code = "invalid_import_format"
    default_status = 400


class EmptyImport(NanoBananaError):
    code = "empty_import"
    default_status = 400


class SessionCreationExhausted(NanoBananaError):
    code = "session_creation_exhausted"
    default_status = 503


class StoreFailure(NanoBananaError):
    """Wraps any error raised by a persistence or storage backend."""

    code = "store_failure"
    default_status = 500
