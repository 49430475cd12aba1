from __future__ import annotations

import logging
import os
import sqlite3
import time
import uuid
from typing import Callable

from .backup_store import BackupManager
from .canvas_contract import (
    CanvasDocumentV1,
    CanvasRecordV1,
    SaveFailureV1,
    SaveOptionsV1,
    SaveResultV1,
    iso_now,
    record_document_payload,
)
from .canvas_store import CanvasStore
from .errors import (
    CanvasStoreError,
    DatabaseUnavailable,
    VersionConflictUnresolved,
    require_owner,
)
from .merge import Merger, merge_by_id
from .message_shapes import count_messages
from .metadata_store import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_SAVE_RETRY_COUNT = 3
DEFAULT_BACKOFF_BASE_MS = 100


def _env_int(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default


class VersionedSaveCoordinator:
    """Saves canvases under optimistic concurrency control.

    A save only lands when the stored version still equals the version the
    caller started from. When another writer got there first, the incoming
    nodes and edges are merged with the latest stored state and the write is
    retried with exponential backoff until the retry budget runs out.
    """

    def __init__(
        self,
        canvas_store: CanvasStore,
        backup_manager: BackupManager,
        metadata_store: MetadataStore,
        *,
        merger: Merger = merge_by_id,
        retry_count: int = DEFAULT_SAVE_RETRY_COUNT,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._canvas_store = canvas_store
        self._backup_manager = backup_manager
        self._metadata_store = metadata_store
        self._merger = merger
        self._retry_count = max(1, retry_count)
        self._backoff_base_ms = max(0, backoff_base_ms)
        self._sleep = sleep

    @classmethod
    def from_env(
        cls,
        canvas_store: CanvasStore,
        backup_manager: BackupManager,
        metadata_store: MetadataStore,
    ) -> "VersionedSaveCoordinator":
        return cls(
            canvas_store,
            backup_manager,
            metadata_store,
            retry_count=_env_int("CANVASAPI_SAVE_RETRY_COUNT", DEFAULT_SAVE_RETRY_COUNT, minimum=1),
            backoff_base_ms=_env_int("CANVASAPI_SAVE_BACKOFF_BASE_MS", DEFAULT_BACKOFF_BASE_MS, minimum=0),
        )

    def save(
        self,
        document: CanvasDocumentV1,
        owner: str | None,
        *,
        session_id: str | None = None,
        options: SaveOptionsV1 | None = None,
    ) -> SaveResultV1 | SaveFailureV1:
        options = options or SaveOptionsV1()
        session_id = session_id or str(uuid.uuid4())

        try:
            owner_id = require_owner(owner)
        except CanvasStoreError as exc:
            return self._failure(exc, session_id)

        try:
            return self._save(document, owner_id, session_id, options)
        except CanvasStoreError as exc:
            logger.warning("Save of canvas %s failed: %s (%s)", document.id, exc.message, exc.code)
            self._record_failed_attempt(session_id, owner_id, document.id)
            return self._failure(exc, session_id)
        except sqlite3.Error as exc:
            logger.error("Save of canvas %s hit a database error: %s", document.id, exc)
            self._record_failed_attempt(session_id, owner_id, document.id)
            return self._failure(
                DatabaseUnavailable("Runtime database is unavailable.", details={"cause": str(exc)}),
                session_id,
            )
        except Exception as exc:
            logger.exception("Save of canvas %s failed unexpectedly", document.id)
            self._record_failed_attempt(session_id, owner_id, document.id)
            return self._failure(
                CanvasStoreError(
                    "Unexpected error while saving.",
                    code="INTERNAL_ERROR",
                    details={"cause": type(exc).__name__},
                ),
                session_id,
            )

    def backoff_seconds(self, attempt: int) -> float:
        return (2**attempt) * self._backoff_base_ms / 1000.0

    def _save(
        self,
        document: CanvasDocumentV1,
        owner_id: str,
        session_id: str,
        options: SaveOptionsV1,
    ) -> SaveResultV1:
        existing = self._canvas_store.load_state(document.id, owner_id)
        expected_version = existing.version if existing is not None else 0
        if options.baseVersion is not None:
            expected_version = options.baseVersion
        should_backup = options.createBackup or (existing is None and len(document.nodes) > 1)
        # Raises SESSION_OWNER_MISMATCH before anything is written.
        self._metadata_store.touch_session(session_id, owner_id)

        attempts = options.retryCount or self._retry_count
        candidate = document
        conflict_resolved = False
        record: CanvasRecordV1 | None = None

        for attempt in range(attempts):
            try:
                record = self._canvas_store.write_conditionally(
                    candidate,
                    owner_id,
                    expected_version=expected_version,
                )
            except sqlite3.OperationalError as exc:
                logger.warning(
                    "Transient database error saving canvas %s (attempt %d/%d): %s",
                    document.id,
                    attempt + 1,
                    attempts,
                    exc,
                )
                if attempt + 1 >= attempts:
                    raise DatabaseUnavailable(
                        "Runtime database stayed busy while saving.",
                        details={"cause": str(exc), "attempts": attempts},
                    ) from exc
                self._sleep(self.backoff_seconds(attempt))
                continue

            if record is not None:
                break

            latest = self._canvas_store.load_state(document.id, owner_id)
            logger.info(
                "Version conflict on canvas %s: expected %d, stored %s (attempt %d/%d)",
                document.id,
                expected_version,
                latest.version if latest is not None else "none",
                attempt + 1,
                attempts,
            )
            if latest is None:
                expected_version = 0
            else:
                candidate = self._merge(candidate, latest)
                expected_version = latest.version
                conflict_resolved = True
            if attempt + 1 < attempts:
                self._sleep(self.backoff_seconds(attempt))

        if record is None:
            raise VersionConflictUnresolved(
                f"Canvas '{document.id}' could not be saved after {attempts} attempt(s).",
                details={"canvasId": document.id, "attempts": attempts},
            )

        # The write has committed; failures past this point are logged and the
        # save is still reported as saved.
        try:
            self._record_success(record, owner_id, session_id, options, conflict_resolved)
        except Exception:
            logger.warning(
                "Bookkeeping after saving canvas %s at version %d failed",
                record.id,
                record.version,
                exc_info=True,
            )

        backup_id = None
        if should_backup:
            try:
                backup_id = self._backup_manager.create_backup(record, owner_id, options.saveType).id
                self._backup_manager.prune_backups(owner_id, record.id)
            except Exception:
                logger.warning(
                    "Backup after saving canvas %s at version %d failed",
                    record.id,
                    record.version,
                    exc_info=True,
                )

        logger.info(
            "Saved canvas %s at version %d (%s%s)",
            record.id,
            record.version,
            options.saveType,
            ", merged" if conflict_resolved else "",
        )
        return SaveResultV1(
            canvasId=record.id,
            version=record.version,
            sessionId=session_id,
            backupId=backup_id,
            conflictResolved=conflict_resolved,
            timestamp=iso_now(),
        )

    def _record_success(
        self,
        record: CanvasRecordV1,
        owner_id: str,
        session_id: str,
        options: SaveOptionsV1,
        conflict_resolved: bool,
    ) -> None:
        self._metadata_store.touch_user(owner_id)
        self._metadata_store.record_save(
            record.id,
            owner_id,
            version=record.version,
            save_type=options.saveType,
            node_count=len(record.nodes),
            edge_count=len(record.edges),
            message_count=sum(count_messages(node.id, node.chatMessages) for node in record.nodes),
            conflict_resolved=conflict_resolved,
        )
        self._metadata_store.set_active_canvas(owner_id, record.id, session_id)
        self._metadata_store.touch_session(session_id, owner_id, canvas_id=record.id, saved=True)

    def _merge(self, local: CanvasDocumentV1, remote: CanvasRecordV1) -> CanvasDocumentV1:
        local_payload = record_document_payload(local)
        remote_payload = record_document_payload(remote)
        nodes, edges = self._merger(
            local_payload.get("nodes") or [],
            local_payload.get("edges") or [],
            remote_payload.get("nodes") or [],
            remote_payload.get("edges") or [],
        )
        return CanvasDocumentV1.model_validate({**local_payload, "nodes": nodes, "edges": edges})

    def _record_failed_attempt(self, session_id: str, owner_id: str, canvas_id: str) -> None:
        try:
            self._metadata_store.touch_session(session_id, owner_id, canvas_id=None, failed=True)
        except (CanvasStoreError, sqlite3.Error) as exc:
            logger.warning("Could not record failed save for session %s: %s", session_id, exc)

    @staticmethod
    def _failure(exc: CanvasStoreError, session_id: str | None) -> SaveFailureV1:
        return SaveFailureV1(
            error={"code": exc.code, "message": exc.message, "details": exc.details},
            sessionId=session_id,
            timestamp=iso_now(),
        )
