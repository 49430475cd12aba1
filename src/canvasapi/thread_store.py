from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any

from .canvas_contract import iso_now
from .errors import StorageCorrupted, ThreadOrCheckpointNotFound, require_owner
from .schema import RuntimeDatabase
from .thread_contract import (
    CheckpointCreateRequestV1,
    CheckpointListResponseV1,
    ThreadCheckpointV1,
    ThreadCreateRequestV1,
    ThreadDetailV1,
    ThreadListResponseV1,
    ThreadMetadataV1,
    ThreadNodeCreateRequestV1,
    ThreadNodeListResponseV1,
    ThreadNodeUpdateRequestV1,
    ThreadNodeV1,
    ThreadSettingsV1,
    ThreadUpdateRequestV1,
    ThreadV1,
)

logger = logging.getLogger(__name__)

MESSAGE_NODE_TYPE = "message"


class ThreadStore:
    """Conversation threads with manual or automatic checkpoints and thread nodes.

    Thread counters (``totalNodes``, ``totalCheckpoints``, ``totalMessages``)
    are recomputed from the child tables after every mutation so they cannot
    drift from what is stored.
    """

    def __init__(self, database: RuntimeDatabase) -> None:
        self._db = database

    @classmethod
    def from_env(cls) -> "ThreadStore":
        return cls(RuntimeDatabase.from_env())

    def create_thread(self, request: ThreadCreateRequestV1, owner: str) -> ThreadV1:
        owner_id = require_owner(owner)
        thread_id = str(uuid.uuid4())
        timestamp = iso_now()
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO conversation_threads (
                    thread_id,
                    owner_id,
                    title,
                    description,
                    is_active,
                    settings,
                    tags,
                    created_at,
                    last_modified
                ) VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    owner_id,
                    request.title,
                    request.description,
                    json.dumps(request.settings.model_dump(mode="json"), sort_keys=True),
                    json.dumps(request.tags),
                    timestamp,
                    timestamp,
                ),
            )
            logger.info("Created thread %s for %s", thread_id, owner_id)
            return self._read_thread(conn, thread_id, owner_id)

    def list_threads(self, owner: str) -> ThreadListResponseV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM conversation_threads
                WHERE owner_id = ?
                ORDER BY last_modified DESC, rowid DESC
                """,
                (owner_id,),
            ).fetchall()
            return ThreadListResponseV1(threads=[self._thread_from_row(row) for row in rows])

    def get_thread(self, thread_id: str, owner: str) -> ThreadDetailV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            thread = self._read_thread(conn, thread_id, owner_id)
            checkpoint_rows = conn.execute(
                """
                SELECT *
                FROM thread_checkpoints
                WHERE thread_id = ?
                  AND owner_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (thread_id, owner_id),
            ).fetchall()
            node_rows = conn.execute(
                """
                SELECT *
                FROM thread_nodes
                WHERE thread_id = ?
                  AND owner_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (thread_id, owner_id),
            ).fetchall()
        return ThreadDetailV1(
            thread=thread,
            checkpoints=[self._checkpoint_from_row(row) for row in checkpoint_rows],
            nodes=[self._node_from_row(row) for row in node_rows],
        )

    def update_thread(self, thread_id: str, patch: ThreadUpdateRequestV1, owner: str) -> ThreadV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            current = self._read_thread(conn, thread_id, owner_id)
            title = current.title if patch.title is None else (patch.title.strip() or current.title)
            description = current.description if patch.description is None else (patch.description.strip() or None)
            is_active = current.isActive if patch.isActive is None else patch.isActive
            settings = patch.settings or current.settings
            tags = current.metadata.tags if patch.tags is None else patch.tags
            conn.execute(
                """
                UPDATE conversation_threads
                SET
                    title = ?,
                    description = ?,
                    is_active = ?,
                    settings = ?,
                    tags = ?,
                    last_modified = ?
                WHERE thread_id = ?
                  AND owner_id = ?
                """,
                (
                    title,
                    description,
                    int(is_active),
                    json.dumps(settings.model_dump(mode="json"), sort_keys=True),
                    json.dumps(tags),
                    iso_now(),
                    thread_id,
                    owner_id,
                ),
            )
            if patch.settings is not None:
                self._prune_checkpoints(conn, thread_id, settings.maxCheckpoints)
                self._refresh_counters(conn, thread_id)
            return self._read_thread(conn, thread_id, owner_id)

    def delete_thread(self, thread_id: str, owner: str) -> None:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM conversation_threads WHERE thread_id = ? AND owner_id = ?",
                (thread_id, owner_id),
            )
            if cursor.rowcount == 0:
                raise ThreadOrCheckpointNotFound(f"Thread '{thread_id}' was not found.")
        logger.info("Deleted thread %s for %s", thread_id, owner_id)

    def create_checkpoint(
        self,
        thread_id: str,
        request: CheckpointCreateRequestV1,
        owner: str,
    ) -> ThreadCheckpointV1:
        owner_id = require_owner(owner)
        checkpoint_id = str(uuid.uuid4())
        timestamp = iso_now()
        with self._db.connect() as conn:
            thread = self._read_thread(conn, thread_id, owner_id)
            row = conn.execute(
                "SELECT checkpoint_version FROM conversation_threads WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()
            version = int(row["checkpoint_version"]) + 1
            canvas_data = request.canvasData
            conn.execute(
                """
                INSERT INTO thread_checkpoints (
                    checkpoint_id,
                    thread_id,
                    owner_id,
                    name,
                    description,
                    canvas_data,
                    node_count,
                    edge_count,
                    version,
                    is_auto_checkpoint,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint_id,
                    thread_id,
                    owner_id,
                    request.name.strip() or f"Checkpoint {timestamp}",
                    (request.description or "").strip() or None,
                    json.dumps(canvas_data.model_dump(mode="json"), sort_keys=True),
                    len(canvas_data.nodes),
                    len(canvas_data.edges),
                    version,
                    int(request.isAutoCheckpoint),
                    timestamp,
                ),
            )
            conn.execute(
                "UPDATE conversation_threads SET checkpoint_version = ? WHERE thread_id = ?",
                (version, thread_id),
            )
            pruned = self._prune_checkpoints(conn, thread_id, thread.settings.maxCheckpoints)
            self._refresh_counters(conn, thread_id)
            logger.info(
                "Created checkpoint %s (version %d) on thread %s, pruned %d",
                checkpoint_id,
                version,
                thread_id,
                pruned,
            )
            return self._read_checkpoint(conn, checkpoint_id, owner_id)

    def load_checkpoint(self, checkpoint_id: str, owner: str) -> ThreadCheckpointV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            return self._read_checkpoint(conn, checkpoint_id, owner_id)

    def list_checkpoints(self, thread_id: str, owner: str) -> CheckpointListResponseV1:
        return CheckpointListResponseV1(checkpoints=self.get_thread(thread_id, owner).checkpoints)

    def delete_checkpoint(self, checkpoint_id: str, owner: str) -> None:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            checkpoint = self._read_checkpoint(conn, checkpoint_id, owner_id)
            conn.execute(
                "DELETE FROM thread_checkpoints WHERE checkpoint_id = ? AND owner_id = ?",
                (checkpoint_id, owner_id),
            )
            self._refresh_counters(conn, checkpoint.threadId)

    def add_thread_node(
        self,
        thread_id: str,
        request: ThreadNodeCreateRequestV1,
        owner: str,
    ) -> ThreadNodeV1:
        owner_id = require_owner(owner)
        node_id = str(uuid.uuid4())
        timestamp = iso_now()
        payload = request.model_dump(mode="json")
        with self._db.connect() as conn:
            self._read_thread(conn, thread_id, owner_id)
            conn.execute(
                """
                INSERT INTO thread_nodes (
                    thread_id,
                    node_id,
                    owner_id,
                    payload,
                    message_count,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    node_id,
                    owner_id,
                    json.dumps(payload, sort_keys=True),
                    int(request.nodeType == MESSAGE_NODE_TYPE),
                    timestamp,
                    timestamp,
                ),
            )
            self._refresh_counters(conn, thread_id)
            return self._read_node(conn, thread_id, node_id, owner_id)

    def update_thread_node(
        self,
        thread_id: str,
        node_id: str,
        patch: ThreadNodeUpdateRequestV1,
        owner: str,
    ) -> ThreadNodeV1:
        owner_id = require_owner(owner)
        changes = patch.model_dump(mode="json", exclude_unset=True)
        with self._db.connect() as conn:
            current = self._read_node(conn, thread_id, node_id, owner_id)
            payload = current.model_dump(
                mode="json",
                exclude={"nodeId", "threadId", "ownerId", "createdAt", "lastModified"},
            )
            payload.update({key: value for key, value in changes.items() if value is not None or key == "checkpointId"})
            merged = ThreadNodeCreateRequestV1.model_validate(payload)
            conn.execute(
                """
                UPDATE thread_nodes
                SET payload = ?, message_count = ?, updated_at = ?
                WHERE thread_id = ?
                  AND node_id = ?
                  AND owner_id = ?
                """,
                (
                    json.dumps(merged.model_dump(mode="json"), sort_keys=True),
                    int(merged.nodeType == MESSAGE_NODE_TYPE),
                    iso_now(),
                    thread_id,
                    node_id,
                    owner_id,
                ),
            )
            self._refresh_counters(conn, thread_id)
            return self._read_node(conn, thread_id, node_id, owner_id)

    def list_thread_nodes(self, thread_id: str, owner: str) -> ThreadNodeListResponseV1:
        return ThreadNodeListResponseV1(nodes=self.get_thread(thread_id, owner).nodes)

    def delete_thread_node(self, thread_id: str, node_id: str, owner: str) -> None:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM thread_nodes WHERE thread_id = ? AND node_id = ? AND owner_id = ?",
                (thread_id, node_id, owner_id),
            )
            if cursor.rowcount == 0:
                raise ThreadOrCheckpointNotFound(f"Thread node '{node_id}' was not found.")
            self._refresh_counters(conn, thread_id)

    @staticmethod
    def _prune_checkpoints(conn: sqlite3.Connection, thread_id: str, keep: int) -> int:
        rows = conn.execute(
            """
            SELECT checkpoint_id
            FROM thread_checkpoints
            WHERE thread_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (thread_id,),
        ).fetchall()
        excess = [str(row["checkpoint_id"]) for row in rows[keep:]]
        if excess:
            conn.executemany(
                "DELETE FROM thread_checkpoints WHERE checkpoint_id = ?",
                [(checkpoint_id,) for checkpoint_id in excess],
            )
        return len(excess)

    @staticmethod
    def _refresh_counters(conn: sqlite3.Connection, thread_id: str) -> None:
        conn.execute(
            """
            UPDATE conversation_threads
            SET
                total_nodes = (SELECT COUNT(*) FROM thread_nodes WHERE thread_id = ?),
                total_messages = (
                    SELECT COALESCE(SUM(message_count), 0) FROM thread_nodes WHERE thread_id = ?
                ),
                total_checkpoints = (SELECT COUNT(*) FROM thread_checkpoints WHERE thread_id = ?),
                last_modified = ?
            WHERE thread_id = ?
            """,
            (thread_id, thread_id, thread_id, iso_now(), thread_id),
        )

    def _read_thread(self, conn: sqlite3.Connection, thread_id: str, owner_id: str) -> ThreadV1:
        row = conn.execute(
            "SELECT * FROM conversation_threads WHERE thread_id = ? AND owner_id = ?",
            (thread_id, owner_id),
        ).fetchone()
        if row is None:
            raise ThreadOrCheckpointNotFound(f"Thread '{thread_id}' was not found.")
        return self._thread_from_row(row)

    def _read_checkpoint(self, conn: sqlite3.Connection, checkpoint_id: str, owner_id: str) -> ThreadCheckpointV1:
        row = conn.execute(
            "SELECT * FROM thread_checkpoints WHERE checkpoint_id = ? AND owner_id = ?",
            (checkpoint_id, owner_id),
        ).fetchone()
        if row is None:
            raise ThreadOrCheckpointNotFound(f"Checkpoint '{checkpoint_id}' was not found.")
        return self._checkpoint_from_row(row)

    def _read_node(self, conn: sqlite3.Connection, thread_id: str, node_id: str, owner_id: str) -> ThreadNodeV1:
        row = conn.execute(
            "SELECT * FROM thread_nodes WHERE thread_id = ? AND node_id = ? AND owner_id = ?",
            (thread_id, node_id, owner_id),
        ).fetchone()
        if row is None:
            raise ThreadOrCheckpointNotFound(f"Thread node '{node_id}' was not found.")
        return self._node_from_row(row)

    def _thread_from_row(self, row: sqlite3.Row) -> ThreadV1:
        return ThreadV1(
            threadId=str(row["thread_id"]),
            ownerId=str(row["owner_id"]),
            title=str(row["title"]),
            description=row["description"],
            isActive=bool(row["is_active"]),
            settings=ThreadSettingsV1.model_validate(self._load_json(row["settings"], "thread settings")),
            metadata=ThreadMetadataV1(
                totalNodes=int(row["total_nodes"]),
                totalCheckpoints=int(row["total_checkpoints"]),
                totalMessages=int(row["total_messages"]),
                tags=list(self._load_json(row["tags"], "thread tags")),
            ),
            createdAt=str(row["created_at"]),
            lastModified=str(row["last_modified"]),
        )

    def _checkpoint_from_row(self, row: sqlite3.Row) -> ThreadCheckpointV1:
        return ThreadCheckpointV1.model_validate(
            {
                "checkpointId": str(row["checkpoint_id"]),
                "threadId": str(row["thread_id"]),
                "ownerId": str(row["owner_id"]),
                "name": str(row["name"]),
                "description": row["description"],
                "canvasData": self._load_json(row["canvas_data"], "checkpoint canvas data"),
                "metadata": {
                    "nodeCount": int(row["node_count"]),
                    "edgeCount": int(row["edge_count"]),
                    "version": int(row["version"]),
                    "isAutoCheckpoint": bool(row["is_auto_checkpoint"]),
                },
                "createdAt": str(row["created_at"]),
            }
        )

    def _node_from_row(self, row: sqlite3.Row) -> ThreadNodeV1:
        payload = self._load_json(row["payload"], "thread node")
        return ThreadNodeV1.model_validate(
            {
                **payload,
                "nodeId": str(row["node_id"]),
                "threadId": str(row["thread_id"]),
                "ownerId": str(row["owner_id"]),
                "createdAt": str(row["created_at"]),
                "lastModified": str(row["updated_at"]),
            }
        )

    @staticmethod
    def _load_json(raw: Any, label: str) -> Any:
        try:
            return json.loads(str(raw))
        except json.JSONDecodeError as exc:
            raise StorageCorrupted(f"Stored {label} is unreadable.") from exc
