from __future__ import annotations

import gzip
import json
import logging
import sqlite3
import uuid
from typing import TYPE_CHECKING

from pydantic import ValidationError

from .canvas_contract import (
    BackupListResponseV1,
    BackupMetadataV1,
    BackupSummaryV1,
    BackupV1,
    CanvasRecordV1,
    SaveFailureV1,
    SaveOptionsV1,
    SaveResultV1,
    SaveType,
    iso_now,
    record_document_payload,
    serialize_document,
)
from .canvas_store import CanvasStore
from .errors import BackupNotFound, CanvasStoreError, DatabaseUnavailable, StorageCorrupted, require_owner
from .message_shapes import count_messages
from .metadata_store import MetadataStore
from .preferences_store import PreferencesStore
from .schema import RuntimeDatabase

if TYPE_CHECKING:
    from .save_coordinator import VersionedSaveCoordinator

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_LIST_LIMIT = 10


class BackupManager:
    """Immutable canvas snapshots with per-owner retention."""

    def __init__(
        self,
        database: RuntimeDatabase,
        canvas_store: CanvasStore,
        preferences_store: PreferencesStore,
        metadata_store: MetadataStore,
    ) -> None:
        self._db = database
        self._canvas_store = canvas_store
        self._preferences_store = preferences_store
        self._metadata_store = metadata_store

    def create_backup(
        self,
        record: CanvasRecordV1,
        owner: str,
        backup_type: SaveType = "manual",
    ) -> BackupV1:
        owner_id = require_owner(owner)
        payload = record_document_payload(record)
        serialized = serialize_document(payload)
        raw = serialized.encode("utf-8")
        preferences = self._preferences_store.get_preferences(owner_id)
        if preferences.compressionEnabled:
            encoding, blob = "gzip", gzip.compress(raw)
        else:
            encoding, blob = "json", raw

        metadata = BackupMetadataV1(
            nodeCount=len(record.nodes),
            edgeCount=len(record.edges),
            messageCount=sum(count_messages(node.id, node.chatMessages) for node in record.nodes),
        )
        backup_id = f"backup_{uuid.uuid4().hex}"
        created_at = iso_now()

        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO canvas_backups (
                    backup_id,
                    canvas_id,
                    owner_id,
                    backup_type,
                    encoding,
                    document,
                    size_bytes,
                    version,
                    node_count,
                    edge_count,
                    message_count,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    backup_id,
                    record.id,
                    owner_id,
                    backup_type,
                    encoding,
                    sqlite3.Binary(blob),
                    len(raw),
                    record.version,
                    metadata.nodeCount,
                    metadata.edgeCount,
                    metadata.messageCount,
                    created_at,
                ),
            )

        self._metadata_store.record_backup(record.id, owner_id, backup_at=created_at)
        logger.info(
            "Created %s backup %s of canvas %s at version %d (%d bytes, %s)",
            backup_type,
            backup_id,
            record.id,
            record.version,
            len(raw),
            encoding,
        )
        return BackupV1(
            id=backup_id,
            canvasId=record.id,
            ownerId=owner_id,
            backupType=backup_type,
            document=payload,
            sizeBytes=len(raw),
            version=record.version,
            metadata=metadata,
            createdAt=created_at,
        )

    def backup_canvas(self, canvas_id: str, owner: str, backup_type: SaveType = "manual") -> BackupV1:
        record = self._canvas_store.get_canvas(canvas_id, owner)
        backup = self.create_backup(record, owner, backup_type)
        self.prune_backups(owner, canvas_id)
        return backup

    def list_backups(
        self,
        canvas_id: str,
        owner: str,
        limit: int = DEFAULT_BACKUP_LIST_LIMIT,
    ) -> BackupListResponseV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT backup_id, backup_type, created_at, size_bytes, version
                FROM canvas_backups
                WHERE canvas_id = ?
                  AND owner_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (canvas_id, owner_id, max(0, int(limit))),
            ).fetchall()

        return BackupListResponseV1(
            backups=[
                BackupSummaryV1(
                    id=str(row["backup_id"]),
                    backupType=str(row["backup_type"]),
                    createdAt=str(row["created_at"]),
                    sizeBytes=int(row["size_bytes"]),
                    version=int(row["version"]),
                )
                for row in rows
            ]
        )

    def get_backup(self, canvas_id: str, backup_id: str, owner: str) -> BackupV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM canvas_backups
                WHERE backup_id = ?
                  AND canvas_id = ?
                  AND owner_id = ?
                """,
                (backup_id, canvas_id, owner_id),
            ).fetchone()
        if row is None:
            raise BackupNotFound(f"Backup '{backup_id}' was not found for canvas '{canvas_id}'.")

        try:
            return BackupV1(
                id=str(row["backup_id"]),
                canvasId=str(row["canvas_id"]),
                ownerId=str(row["owner_id"]),
                backupType=str(row["backup_type"]),
                document=self._decode(row["document"], str(row["encoding"])),
                sizeBytes=int(row["size_bytes"]),
                version=int(row["version"]),
                metadata=BackupMetadataV1(
                    nodeCount=int(row["node_count"]),
                    edgeCount=int(row["edge_count"]),
                    messageCount=int(row["message_count"]),
                ),
                createdAt=str(row["created_at"]),
            )
        except ValidationError as exc:
            raise StorageCorrupted(
                f"Backup '{backup_id}' payload is invalid.",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def restore(
        self,
        canvas_id: str,
        backup_id: str,
        owner: str,
        *,
        coordinator: "VersionedSaveCoordinator",
        session_id: str | None = None,
    ) -> SaveResultV1 | SaveFailureV1:
        """Save the backup's document as the newest version of the canvas.

        The current stored version is used as the base so the restored state
        always lands above it, and a backup of the restore point is taken.
        """
        try:
            backup = self.get_backup(canvas_id, backup_id, owner)
            current = self._canvas_store.load_state(canvas_id, owner)
        except CanvasStoreError as exc:
            logger.warning("Restore of backup %s failed: %s", backup_id, exc.message)
            return self._restore_failure(exc, session_id)
        except sqlite3.Error as exc:
            logger.error("Restore of backup %s hit a database error: %s", backup_id, exc)
            return self._restore_failure(
                DatabaseUnavailable("Runtime database is unavailable.", details={"cause": str(exc)}),
                session_id,
            )

        logger.info("Restoring canvas %s from backup %s (version %d)", canvas_id, backup_id, backup.version)
        return coordinator.save(
            backup.document,
            owner,
            session_id=session_id,
            options=SaveOptionsV1(
                saveType="manual",
                createBackup=True,
                baseVersion=current.version if current is not None else 0,
            ),
        )

    def prune_backups(self, owner: str, canvas_id: str | None = None) -> int:
        """Delete the oldest backups beyond the owner's ``maxBackupCount``.

        With a canvas id the cap applies to that canvas's backups; without one
        it applies to every backup the owner holds.
        """
        owner_id = require_owner(owner)
        keep = self._preferences_store.get_preferences(owner_id).maxBackupCount

        with self._db.connect() as conn:
            if canvas_id is None:
                rows = conn.execute(
                    """
                    SELECT backup_id, canvas_id
                    FROM canvas_backups
                    WHERE owner_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    """,
                    (owner_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT backup_id, canvas_id
                    FROM canvas_backups
                    WHERE owner_id = ?
                      AND canvas_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    """,
                    (owner_id, canvas_id),
                ).fetchall()
            excess = rows[keep:]
            if excess:
                conn.executemany(
                    "DELETE FROM canvas_backups WHERE backup_id = ?",
                    [(str(row["backup_id"]),) for row in excess],
                )

        touched = sorted({str(row["canvas_id"]) for row in excess})
        for current_id in touched:
            self._metadata_store.record_backup(current_id, owner_id)
        if excess:
            logger.info(
                "Pruned %d backup(s) for %s (keeping %d%s)",
                len(excess),
                owner_id,
                keep,
                f" for canvas {canvas_id}" if canvas_id is not None else "",
            )
        return len(excess)

    @staticmethod
    def _restore_failure(exc: CanvasStoreError, session_id: str | None) -> SaveFailureV1:
        return SaveFailureV1(
            error={"code": exc.code, "message": exc.message, "details": exc.details},
            sessionId=session_id,
            timestamp=iso_now(),
        )

    @staticmethod
    def _decode(blob: bytes | str, encoding: str) -> dict:
        try:
            if encoding == "gzip":
                text = gzip.decompress(bytes(blob)).decode("utf-8")
            elif isinstance(blob, str):
                text = blob
            else:
                text = bytes(blob).decode("utf-8")
            payload = json.loads(text)
        except (OSError, EOFError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageCorrupted("Backup payload is unreadable.") from exc
        if not isinstance(payload, dict):
            raise StorageCorrupted("Backup payload is not an object.")
        return payload
