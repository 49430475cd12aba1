from __future__ import annotations

import json
import logging
import sqlite3

from .canvas_contract import (
    ActiveCanvasV1,
    AnalyticsV1,
    BackupStatsV1,
    CanvasListResponseV1,
    CanvasSessionV1,
    CanvasSummaryV1,
    ConversationMetadataV1,
    SaveType,
    VersioningSummaryV1,
    iso_now,
)
from .errors import CanvasNotFound, CanvasStoreError, StorageCorrupted, require_owner
from .schema import RuntimeDatabase

logger = logging.getLogger(__name__)

SEARCH_RESULT_LIMIT = 50


class MetadataStore:
    """Per-canvas analytics, tags, save sessions and the owner's active canvas."""

    def __init__(self, database: RuntimeDatabase) -> None:
        self._db = database

    @classmethod
    def from_env(cls) -> "MetadataStore":
        return cls(RuntimeDatabase.from_env())

    def touch_user(self, owner: str) -> None:
        owner_id = require_owner(owner)
        timestamp = iso_now()
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO users (owner_id, created_at, last_seen_at)
                VALUES (?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET last_seen_at = excluded.last_seen_at
                """,
                (owner_id, timestamp, timestamp),
            )

    def record_save(
        self,
        canvas_id: str,
        owner: str,
        *,
        version: int,
        save_type: SaveType,
        node_count: int,
        edge_count: int,
        message_count: int,
        conflict_resolved: bool = False,
    ) -> None:
        """Count a save. Counts and the version summary only move forward, so a
        save recorded after a newer one leaves the newer figures in place.
        """
        owner_id = require_owner(owner)
        timestamp = iso_now()
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO conversation_metadata (
                    canvas_id,
                    owner_id,
                    save_count,
                    conflict_count,
                    node_count,
                    edge_count,
                    message_count,
                    last_activity,
                    current_version,
                    last_saved_at,
                    last_save_type
                ) VALUES (?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(canvas_id, owner_id) DO UPDATE SET
                    save_count = save_count + 1,
                    conflict_count = conflict_count + excluded.conflict_count,
                    node_count = CASE WHEN excluded.current_version >= current_version
                        THEN excluded.node_count ELSE node_count END,
                    edge_count = CASE WHEN excluded.current_version >= current_version
                        THEN excluded.edge_count ELSE edge_count END,
                    message_count = CASE WHEN excluded.current_version >= current_version
                        THEN excluded.message_count ELSE message_count END,
                    last_activity = excluded.last_activity,
                    current_version = MAX(current_version, excluded.current_version),
                    last_saved_at = CASE WHEN excluded.current_version >= current_version
                        THEN excluded.last_saved_at ELSE last_saved_at END,
                    last_save_type = CASE WHEN excluded.current_version >= current_version
                        THEN excluded.last_save_type ELSE last_save_type END
                """,
                (
                    canvas_id,
                    owner_id,
                    int(conflict_resolved),
                    node_count,
                    edge_count,
                    message_count,
                    timestamp,
                    version,
                    timestamp,
                    save_type,
                ),
            )

    def record_backup(self, canvas_id: str, owner: str, *, backup_at: str | None = None) -> None:
        """Refresh the retained backup count and, when given, the last backup time."""
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            if not self._canvas_exists(conn, canvas_id, owner_id):
                logger.debug("Skipping backup stats for missing canvas %s", canvas_id)
                return
            count = conn.execute(
                "SELECT COUNT(*) FROM canvas_backups WHERE canvas_id = ? AND owner_id = ?",
                (canvas_id, owner_id),
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO conversation_metadata (canvas_id, owner_id, backup_count, last_backup_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(canvas_id, owner_id) DO UPDATE SET
                    backup_count = excluded.backup_count,
                    last_backup_at = COALESCE(excluded.last_backup_at, last_backup_at)
                """,
                (canvas_id, owner_id, int(count), backup_at),
            )

    def get_metadata(self, canvas_id: str, owner: str) -> ConversationMetadataV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            if not self._canvas_exists(conn, canvas_id, owner_id):
                raise CanvasNotFound(f"Canvas '{canvas_id}' was not found.")
            return self._read(conn, canvas_id, owner_id)

    def add_tags(self, canvas_id: str, owner: str, tags: list[str]) -> ConversationMetadataV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            if not self._canvas_exists(conn, canvas_id, owner_id):
                raise CanvasNotFound(f"Canvas '{canvas_id}' was not found.")
            current = self._read(conn, canvas_id, owner_id)
            merged = list(current.tags)
            for tag in tags:
                if tag not in merged:
                    merged.append(tag)
            conn.execute(
                """
                INSERT INTO conversation_metadata (canvas_id, owner_id, tags, last_activity)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(canvas_id, owner_id) DO UPDATE SET
                    tags = excluded.tags,
                    last_activity = excluded.last_activity
                """,
                (canvas_id, owner_id, json.dumps(merged), iso_now()),
            )
            return self._read(conn, canvas_id, owner_id)

    def search_by_tags(
        self,
        owner: str,
        tags: list[str],
        *,
        query: str | None = None,
    ) -> CanvasListResponseV1:
        owner_id = require_owner(owner)
        wanted = {str(tag).strip().lower() for tag in tags if str(tag).strip()}
        text = str(query or "").strip().lower()

        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    c.canvas_id,
                    c.title,
                    c.version,
                    c.created_at,
                    c.updated_at,
                    COALESCE(m.node_count, 0) AS node_count,
                    COALESCE(m.edge_count, 0) AS edge_count,
                    COALESCE(m.tags, '[]') AS tags
                FROM canvases AS c
                LEFT JOIN conversation_metadata AS m
                    ON m.canvas_id = c.canvas_id AND m.owner_id = c.owner_id
                WHERE c.owner_id = ?
                ORDER BY c.updated_at DESC, c.canvas_id ASC
                """,
                (owner_id,),
            ).fetchall()

        matches: list[CanvasSummaryV1] = []
        for row in rows:
            if wanted and not wanted.intersection(self._parse_tags(str(row["tags"]))):
                continue
            if text and text not in str(row["title"]).lower():
                continue
            matches.append(
                CanvasSummaryV1(
                    id=str(row["canvas_id"]),
                    title=str(row["title"]),
                    version=int(row["version"]),
                    nodeCount=int(row["node_count"]),
                    edgeCount=int(row["edge_count"]),
                    createdAt=str(row["created_at"]),
                    updatedAt=str(row["updated_at"]),
                )
            )
            if len(matches) >= SEARCH_RESULT_LIMIT:
                break
        return CanvasListResponseV1(canvases=matches)

    def touch_session(
        self,
        session_id: str,
        owner: str,
        *,
        canvas_id: str | None = None,
        saved: bool = False,
        failed: bool = False,
    ) -> CanvasSessionV1:
        owner_id = require_owner(owner)
        timestamp = iso_now()
        with self._db.connect() as conn:
            existing = conn.execute(
                "SELECT owner_id FROM canvas_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if existing is not None and str(existing["owner_id"]) != owner_id:
                raise CanvasStoreError(
                    f"Session '{session_id}' belongs to another user.",
                    status_code=403,
                    code="SESSION_OWNER_MISMATCH",
                )
            conn.execute(
                """
                INSERT INTO canvas_sessions (
                    session_id,
                    owner_id,
                    canvas_id,
                    started_at,
                    last_activity,
                    save_count,
                    error_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    canvas_id = COALESCE(excluded.canvas_id, canvas_id),
                    last_activity = excluded.last_activity,
                    save_count = save_count + excluded.save_count,
                    error_count = error_count + excluded.error_count
                """,
                (
                    session_id,
                    owner_id,
                    canvas_id,
                    timestamp,
                    timestamp,
                    int(saved),
                    int(failed),
                ),
            )
            return self._read_session(conn, session_id)

    def get_session(self, session_id: str, owner: str) -> CanvasSessionV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            session = self._read_session(conn, session_id)
        if session.ownerId != owner_id:
            raise CanvasStoreError(
                f"Session '{session_id}' was not found.",
                status_code=404,
                code="SESSION_NOT_FOUND",
            )
        return session

    def set_active_canvas(self, owner: str, canvas_id: str, session_id: str | None = None) -> ActiveCanvasV1:
        owner_id = require_owner(owner)
        timestamp = iso_now()
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO active_canvases (owner_id, canvas_id, session_id, last_accessed)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    canvas_id = excluded.canvas_id,
                    session_id = excluded.session_id,
                    last_accessed = excluded.last_accessed
                """,
                (owner_id, canvas_id, session_id, timestamp),
            )
        return ActiveCanvasV1(
            ownerId=owner_id,
            activeCanvasId=canvas_id,
            sessionId=session_id,
            lastAccessed=timestamp,
        )

    def get_active_canvas(self, owner: str) -> ActiveCanvasV1 | None:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT canvas_id, session_id, last_accessed FROM active_canvases WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        if row is None:
            return None
        return ActiveCanvasV1(
            ownerId=owner_id,
            activeCanvasId=str(row["canvas_id"]),
            sessionId=row["session_id"],
            lastAccessed=str(row["last_accessed"]),
        )

    @staticmethod
    def _canvas_exists(conn: sqlite3.Connection, canvas_id: str, owner_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM canvases WHERE canvas_id = ? AND owner_id = ?",
            (canvas_id, owner_id),
        ).fetchone()
        return row is not None

    def _read(self, conn: sqlite3.Connection, canvas_id: str, owner_id: str) -> ConversationMetadataV1:
        row = conn.execute(
            "SELECT * FROM conversation_metadata WHERE canvas_id = ? AND owner_id = ?",
            (canvas_id, owner_id),
        ).fetchone()
        if row is None:
            return ConversationMetadataV1(canvasId=canvas_id, ownerId=owner_id)
        return ConversationMetadataV1(
            canvasId=canvas_id,
            ownerId=owner_id,
            analytics=AnalyticsV1(
                saveCount=int(row["save_count"]),
                conflictCount=int(row["conflict_count"]),
                nodeCount=int(row["node_count"]),
                edgeCount=int(row["edge_count"]),
                messageCount=int(row["message_count"]),
                lastActivity=row["last_activity"],
            ),
            versioning=VersioningSummaryV1(
                currentVersion=int(row["current_version"]),
                lastSavedAt=row["last_saved_at"],
                lastSaveType=row["last_save_type"],
            ),
            backup=BackupStatsV1(
                backupCount=int(row["backup_count"]),
                lastBackupAt=row["last_backup_at"],
            ),
            tags=self._parse_tags(str(row["tags"])),
        )

    @staticmethod
    def _read_session(conn: sqlite3.Connection, session_id: str) -> CanvasSessionV1:
        row = conn.execute(
            "SELECT * FROM canvas_sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            raise CanvasStoreError(
                f"Session '{session_id}' was not found.",
                status_code=404,
                code="SESSION_NOT_FOUND",
            )
        return CanvasSessionV1(
            sessionId=str(row["session_id"]),
            ownerId=str(row["owner_id"]),
            canvasId=row["canvas_id"],
            startedAt=str(row["started_at"]),
            lastActivity=str(row["last_activity"]),
            saveCount=int(row["save_count"]),
            errorCount=int(row["error_count"]),
        )

    @staticmethod
    def _parse_tags(raw: str) -> list[str]:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageCorrupted("Conversation tags are unreadable.") from exc
        if not isinstance(payload, list):
            raise StorageCorrupted("Conversation tags are not a list.")
        return [str(item) for item in payload]
