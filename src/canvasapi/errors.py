from __future__ import annotations


class CanvasStoreError(Exception):
    status_code = 500
    code = "CANVAS_STORE_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message
        self.details = details


class AuthenticationRequired(CanvasStoreError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"


class VersionConflictUnresolved(CanvasStoreError):
    status_code = 409
    code = "VERSION_CONFLICT_UNRESOLVED"


class BackupNotFound(CanvasStoreError):
    status_code = 404
    code = "BACKUP_NOT_FOUND"


class ThreadOrCheckpointNotFound(CanvasStoreError):
    status_code = 404
    code = "THREAD_OR_CHECKPOINT_NOT_FOUND"


class DatabaseUnavailable(CanvasStoreError):
    status_code = 503
    code = "DATABASE_UNAVAILABLE"


class CanvasNotFound(CanvasStoreError):
    status_code = 404
    code = "CANVAS_NOT_FOUND"


class NodeNotFound(CanvasStoreError):
    status_code = 404
    code = "NODE_NOT_FOUND"


class InvalidCanvasPayload(CanvasStoreError):
    status_code = 400
    code = "INVALID_CANVAS_PAYLOAD"


class StorageCorrupted(CanvasStoreError):
    status_code = 500
    code = "CANVAS_STORAGE_CORRUPTED"


def require_owner(owner: str | None) -> str:
    value = str(owner or "").strip()
    if not value:
        raise AuthenticationRequired("Authentication required.")
    return value


# Codes raised as plain CanvasStoreError with an explicit status.
_CODE_STATUS = {
    "CANVAS_ID_TAKEN": 409,
    "SESSION_OWNER_MISMATCH": 403,
    "SESSION_NOT_FOUND": 404,
    "SCHEMA_MIGRATION_REQUIRED": 503,
    "INTERNAL_ERROR": 500,
}


def status_for_code(code: str) -> int:
    if code in _CODE_STATUS:
        return _CODE_STATUS[code]
    for error_class in (
        AuthenticationRequired,
        VersionConflictUnresolved,
        BackupNotFound,
        ThreadOrCheckpointNotFound,
        DatabaseUnavailable,
        CanvasNotFound,
        NodeNotFound,
        InvalidCanvasPayload,
        StorageCorrupted,
    ):
        if error_class.code == code:
            return error_class.status_code
    return CanvasStoreError.status_code
