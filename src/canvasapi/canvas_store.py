from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from pydantic import ValidationError

from .canvas_contract import (
    RECORD_ONLY_FIELDS,
    CanvasCreateRequestV1,
    CanvasDocumentV1,
    CanvasListResponseV1,
    CanvasPatchV1,
    CanvasRecordV1,
    CanvasSummaryV1,
    EdgeV1,
    LayoutUpdateRequestV1,
    NodeV1,
    document_payload,
    edge_payload,
    iso_now,
    node_payload,
    record_document_payload,
    serialize_document,
)
from .canvas_defaults import default_canvas_create_request
from .errors import (
    CanvasNotFound,
    CanvasStoreError,
    InvalidCanvasPayload,
    NodeNotFound,
    StorageCorrupted,
    VersionConflictUnresolved,
    require_owner,
)
from .message_shapes import flatten_messages, hydrate_messages, validate_messages
from .schema import RuntimeDatabase

logger = logging.getLogger(__name__)


class CanvasStore:
    """Keeps each canvas as one JSON document plus normalized node/message/edge rows.

    Every write updates the document and re-synchronizes the normalized rows
    inside the same sqlite transaction. Reads hydrate from the normalized rows
    and fall back to the document for anything not normalized yet.
    """

    def __init__(self, database: RuntimeDatabase) -> None:
        self._db = database

    @classmethod
    def from_env(cls) -> "CanvasStore":
        return cls(RuntimeDatabase.from_env())

    @property
    def database(self) -> RuntimeDatabase:
        return self._db

    def create_canvas(self, request: CanvasCreateRequestV1, owner: str) -> CanvasRecordV1:
        owner_id = require_owner(owner)
        canvas_id = request.id or f"canvas_{uuid.uuid4().hex[:16]}"
        payload = document_payload(request)
        payload["id"] = canvas_id
        document = self._validate_document(payload)

        with self._db.connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM canvases WHERE canvas_id = ?",
                (document.id,),
            ).fetchone()
            if exists is not None:
                raise CanvasStoreError(
                    f"Canvas '{document.id}' already exists.",
                    status_code=409,
                    code="CANVAS_ALREADY_EXISTS",
                )
            self._insert_canvas(conn, document_payload(document), owner_id)
            logger.info("Created canvas %s for %s", document.id, owner_id)
            return self._hydrate(conn, document.id, owner_id)

    def create_default_canvas(self, owner: str, title: str = "New Canvas") -> CanvasRecordV1:
        return self.create_canvas(default_canvas_create_request(title), owner)

    def get_canvas(self, canvas_id: str, owner: str) -> CanvasRecordV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            return self._hydrate(conn, canvas_id, owner_id)

    def load_state(self, canvas_id: str, owner: str) -> CanvasRecordV1 | None:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            if self._fetch_row(conn, canvas_id, owner_id) is None:
                return None
            return self._hydrate(conn, canvas_id, owner_id)

    def list_canvases(self, owner: str) -> CanvasListResponseV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT canvas_id, title, version, document, created_at, updated_at
                FROM canvases
                WHERE owner_id = ?
                ORDER BY updated_at DESC, canvas_id ASC
                """,
                (owner_id,),
            ).fetchall()

        summaries = []
        for row in rows:
            payload = self._parse_document(str(row["document"]))
            summaries.append(
                CanvasSummaryV1(
                    id=str(row["canvas_id"]),
                    title=str(row["title"]),
                    version=int(row["version"]),
                    nodeCount=len(payload.get("nodes") or []),
                    edgeCount=len(payload.get("edges") or []),
                    createdAt=str(row["created_at"]),
                    updatedAt=str(row["updated_at"]),
                )
            )
        return CanvasListResponseV1(canvases=summaries)

    def update_canvas(self, canvas_id: str, patch: CanvasPatchV1, owner: str) -> CanvasRecordV1:
        changes = patch.model_dump(mode="json", by_alias=True, exclude_unset=True)
        with self._edit(canvas_id, owner) as (conn, record, payload):
            for key, value in changes.items():
                if value is None and key not in {"note", "viewport", "primaryNodeId"}:
                    continue
                payload[key] = value
            self._store_document(conn, record, payload)
            self._sync_normalized(conn, record.id, record.ownerId, payload)
            return self._hydrate(conn, record.id, record.ownerId)

    def delete_canvas(self, canvas_id: str, owner: str) -> None:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM canvases WHERE canvas_id = ? AND owner_id = ?",
                (canvas_id, owner_id),
            )
            if cursor.rowcount == 0:
                raise CanvasNotFound(f"Canvas '{canvas_id}' was not found.")
            conn.execute(
                "DELETE FROM active_canvases WHERE owner_id = ? AND canvas_id = ?",
                (owner_id, canvas_id),
            )
        logger.info("Deleted canvas %s for %s", canvas_id, owner_id)

    def write_conditionally(
        self,
        document: CanvasDocumentV1,
        owner: str,
        *,
        expected_version: int,
    ) -> CanvasRecordV1 | None:
        """Write ``document`` only if the stored version still equals ``expected_version``.

        ``expected_version == 0`` means the canvas must not exist yet. Returns
        ``None`` when another writer got there first.
        """
        owner_id = require_owner(owner)
        payload = record_document_payload(document)
        with self._db.connect() as conn:
            if expected_version == 0:
                try:
                    self._insert_canvas(conn, payload, owner_id)
                except sqlite3.IntegrityError:
                    self._assert_same_owner(conn, document.id, owner_id)
                    return None
                return self._hydrate(conn, document.id, owner_id)

            cursor = conn.execute(
                """
                UPDATE canvases
                SET
                    title = ?,
                    version = ?,
                    document = ?,
                    note = ?,
                    updated_at = ?
                WHERE canvas_id = ?
                  AND owner_id = ?
                  AND version = ?
                """,
                (
                    payload.get("title") or "Untitled Canvas",
                    expected_version + 1,
                    serialize_document(payload),
                    payload.get("note"),
                    iso_now(),
                    document.id,
                    owner_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                return None
            self._sync_normalized(conn, document.id, owner_id, payload)
            return self._hydrate(conn, document.id, owner_id)

    def resync_canvas(self, canvas_id: str, owner: str) -> CanvasRecordV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            row = self._fetch_row(conn, canvas_id, owner_id)
            if row is None:
                raise CanvasNotFound(f"Canvas '{canvas_id}' was not found.")
            payload = self._parse_document(str(row["document"]))
            self._sync_normalized(conn, canvas_id, owner_id, payload)
            return self._hydrate(conn, canvas_id, owner_id)

    def add_node(self, canvas_id: str, node: NodeV1, owner: str) -> dict[str, Any]:
        with self._edit(canvas_id, owner) as (conn, record, payload):
            nodes = payload["nodes"]
            if any(item["id"] == node.id for item in nodes):
                raise CanvasStoreError(
                    f"Node '{node.id}' already exists in canvas '{canvas_id}'.",
                    status_code=409,
                    code="NODE_ALREADY_EXISTS",
                )
            added = node_payload(node)
            nodes.append(added)
            self._store_document(conn, record, payload)
            self._upsert_node_row(conn, record.id, record.ownerId, added, len(nodes) - 1)
            self._replace_message_rows(conn, record.id, added)
            return added

    def update_node(
        self,
        canvas_id: str,
        node_id: str,
        patch: dict[str, Any],
        owner: str,
    ) -> dict[str, Any]:
        changes = {key: value for key, value in patch.items() if key not in {"id", "_id"}}
        with self._edit(canvas_id, owner) as (conn, record, payload):
            index = self._node_index(payload, node_id)
            merged = {**payload["nodes"][index], **changes}
            try:
                updated = node_payload(NodeV1.model_validate(merged))
            except ValidationError as exc:
                raise InvalidCanvasPayload(
                    f"Node '{node_id}' update is invalid.",
                    details={"errors": exc.errors(include_url=False, include_context=False)},
                ) from exc
            payload["nodes"][index] = updated
            self._store_document(conn, record, payload)
            self._upsert_node_row(conn, record.id, record.ownerId, updated, index)
            if "chatMessages" in changes:
                self._replace_message_rows(conn, record.id, updated)
            return updated

    def remove_node(self, canvas_id: str, node_id: str, owner: str) -> None:
        with self._edit(canvas_id, owner) as (conn, record, payload):
            index = self._node_index(payload, node_id)
            del payload["nodes"][index]
            # Forks keep their parentNodeId even when the parent goes away.
            payload["edges"] = [
                edge for edge in payload["edges"] if node_id not in (edge.get("from"), edge.get("to"))
            ]
            self._store_document(conn, record, payload)
            conn.execute(
                "DELETE FROM canvas_nodes WHERE canvas_id = ? AND node_id = ?",
                (record.id, node_id),
            )
            conn.execute(
                """
                DELETE FROM canvas_edges
                WHERE canvas_id = ?
                  AND (source_node_id = ? OR target_node_id = ?)
                """,
                (record.id, node_id, node_id),
            )

    def update_node_messages(
        self,
        canvas_id: str,
        node_id: str,
        messages: list[dict[str, Any]],
        owner: str,
    ) -> list[dict[str, Any]]:
        try:
            validated = validate_messages(node_id, messages)
        except ValueError as exc:
            raise InvalidCanvasPayload(str(exc)) from exc

        with self._edit(canvas_id, owner) as (conn, record, payload):
            index = self._node_index(payload, node_id)
            node = payload["nodes"][index]
            node["chatMessages"] = validated
            self._store_document(conn, record, payload)
            self._replace_message_rows(conn, record.id, node)
            return flatten_messages(node_id, validated)

    def add_edge(self, canvas_id: str, edge: EdgeV1, owner: str) -> dict[str, Any]:
        with self._edit(canvas_id, owner) as (conn, record, payload):
            if any(item["id"] == edge.id for item in payload["edges"]):
                raise CanvasStoreError(
                    f"Edge '{edge.id}' already exists in canvas '{canvas_id}'.",
                    status_code=409,
                    code="EDGE_ALREADY_EXISTS",
                )
            node_ids = {item["id"] for item in payload["nodes"]}
            missing = [endpoint for endpoint in (edge.from_, edge.to) if endpoint not in node_ids]
            if missing:
                raise InvalidCanvasPayload(
                    "Edge endpoints must reference nodes of the same canvas.",
                    details={"missingNodeIds": missing},
                )
            added = edge_payload(edge)
            payload["edges"].append(added)
            self._store_document(conn, record, payload)
            self._replace_edge_rows(conn, record.id, payload["edges"])
            return added

    def remove_edge(self, canvas_id: str, edge_id: str, owner: str) -> None:
        with self._edit(canvas_id, owner) as (conn, record, payload):
            remaining = [item for item in payload["edges"] if item["id"] != edge_id]
            if len(remaining) == len(payload["edges"]):
                raise CanvasStoreError(
                    f"Edge '{edge_id}' was not found in canvas '{canvas_id}'.",
                    status_code=404,
                    code="EDGE_NOT_FOUND",
                )
            payload["edges"] = remaining
            self._store_document(conn, record, payload)
            conn.execute(
                "DELETE FROM canvas_edges WHERE canvas_id = ? AND edge_id = ?",
                (record.id, edge_id),
            )

    def update_note(self, canvas_id: str, note: str | None, owner: str) -> CanvasRecordV1:
        with self._edit(canvas_id, owner) as (conn, record, payload):
            if note is None:
                payload.pop("note", None)
            else:
                payload["note"] = note
            self._store_document(conn, record, payload)
            return self._hydrate(conn, record.id, record.ownerId)

    def update_layout(
        self,
        canvas_id: str,
        request: LayoutUpdateRequestV1,
        owner: str,
    ) -> CanvasRecordV1:
        with self._edit(canvas_id, owner) as (conn, record, payload):
            for index, node in enumerate(payload["nodes"]):
                position = request.positions.get(node["id"])
                if position is None:
                    continue
                node["position"] = position.model_dump(mode="json")
                self._upsert_node_row(conn, record.id, record.ownerId, node, index)
            if request.viewport is not None:
                payload["viewport"] = request.viewport.model_dump(mode="json")
            self._store_document(conn, record, payload)
            return self._hydrate(conn, record.id, record.ownerId)

    @contextmanager
    def _edit(
        self,
        canvas_id: str,
        owner: str,
    ) -> Iterator[tuple[sqlite3.Connection, CanvasRecordV1, dict[str, Any]]]:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            # The write lock is held from here until commit.
            conn.execute("BEGIN IMMEDIATE")
            record = self._hydrate(conn, canvas_id, owner_id)
            payload = record_document_payload(record)
            payload.setdefault("nodes", [])
            payload.setdefault("edges", [])
            yield conn, record, payload

    def _store_document(
        self,
        conn: sqlite3.Connection,
        record: CanvasRecordV1,
        payload: dict[str, Any],
    ) -> None:
        self._validate_document(payload)
        cursor = conn.execute(
            """
            UPDATE canvases
            SET
                title = ?,
                version = version + 1,
                document = ?,
                note = ?,
                updated_at = ?
            WHERE canvas_id = ?
              AND owner_id = ?
              AND version = ?
            """,
            (
                payload.get("title") or "Untitled Canvas",
                serialize_document(payload),
                payload.get("note"),
                iso_now(),
                record.id,
                record.ownerId,
                record.version,
            ),
        )
        if cursor.rowcount == 0:
            raise VersionConflictUnresolved(
                f"Canvas '{record.id}' changed while it was being edited.",
                details={"expectedVersion": record.version},
            )

    def _insert_canvas(self, conn: sqlite3.Connection, payload: dict[str, Any], owner_id: str) -> None:
        timestamp = iso_now()
        conn.execute(
            """
            INSERT INTO canvases (
                canvas_id,
                owner_id,
                title,
                version,
                document,
                note,
                created_at,
                updated_at
            ) VALUES (?, ?, ?, 1, ?, ?, ?, ?)
            """,
            (
                payload["id"],
                owner_id,
                payload.get("title") or "Untitled Canvas",
                serialize_document(payload),
                payload.get("note"),
                timestamp,
                timestamp,
            ),
        )
        self._sync_normalized(conn, payload["id"], owner_id, payload)

    def _sync_normalized(
        self,
        conn: sqlite3.Connection,
        canvas_id: str,
        owner_id: str,
        payload: dict[str, Any],
    ) -> None:
        nodes = payload.get("nodes") or []
        current_ids = {str(node["id"]) for node in nodes}
        existing_ids = {
            str(row["node_id"])
            for row in conn.execute(
                "SELECT node_id FROM canvas_nodes WHERE canvas_id = ?",
                (canvas_id,),
            ).fetchall()
        }
        stale_ids = sorted(existing_ids - current_ids)
        if stale_ids:
            conn.executemany(
                "DELETE FROM canvas_nodes WHERE canvas_id = ? AND node_id = ?",
                [(canvas_id, node_id) for node_id in stale_ids],
            )

        for index, node in enumerate(nodes):
            self._upsert_node_row(conn, canvas_id, owner_id, node, index)
            self._replace_message_rows(conn, canvas_id, node)

        self._replace_edge_rows(conn, canvas_id, payload.get("edges") or [])

    @staticmethod
    def _upsert_node_row(
        conn: sqlite3.Connection,
        canvas_id: str,
        owner_id: str,
        node: dict[str, Any],
        sort_order: int,
    ) -> None:
        row_payload = {key: value for key, value in node.items() if key != "chatMessages"}
        conn.execute(
            """
            INSERT INTO canvas_nodes (
                canvas_id,
                node_id,
                owner_id,
                node_type,
                sort_order,
                payload,
                parent_node_id,
                forked_from_message_id,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(canvas_id, node_id) DO UPDATE SET
                owner_id = excluded.owner_id,
                node_type = excluded.node_type,
                sort_order = excluded.sort_order,
                payload = excluded.payload,
                parent_node_id = excluded.parent_node_id,
                forked_from_message_id = excluded.forked_from_message_id,
                updated_at = excluded.updated_at
            """,
            (
                canvas_id,
                str(node["id"]),
                owner_id,
                str(node.get("type") or "branch"),
                sort_order,
                serialize_document(row_payload),
                node.get("parentNodeId"),
                node.get("forkedFromMessageId"),
                iso_now(),
            ),
        )

    @staticmethod
    def _replace_message_rows(conn: sqlite3.Connection, canvas_id: str, node: dict[str, Any]) -> None:
        node_id = str(node["id"])
        conn.execute(
            "DELETE FROM canvas_messages WHERE canvas_id = ? AND node_id = ?",
            (canvas_id, node_id),
        )
        flat = flatten_messages(node_id, node.get("chatMessages") or [])
        conn.executemany(
            """
            INSERT INTO canvas_messages (
                canvas_id,
                node_id,
                message_id,
                sort_order,
                role,
                content,
                timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    canvas_id,
                    node_id,
                    str(message["id"]),
                    index,
                    str(message["role"]),
                    str(message["content"]),
                    None if message.get("timestamp") is None else str(message["timestamp"]),
                )
                for index, message in enumerate(flat)
            ],
        )

    @staticmethod
    def _replace_edge_rows(conn: sqlite3.Connection, canvas_id: str, edges: list[dict[str, Any]]) -> None:
        conn.execute("DELETE FROM canvas_edges WHERE canvas_id = ?", (canvas_id,))
        conn.executemany(
            """
            INSERT OR REPLACE INTO canvas_edges (
                canvas_id,
                edge_id,
                source_node_id,
                target_node_id,
                sort_order,
                payload
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    canvas_id,
                    str(edge["id"]),
                    str(edge.get("from") or ""),
                    str(edge.get("to") or ""),
                    index,
                    serialize_document(edge),
                )
                for index, edge in enumerate(edges)
            ],
        )

    def _hydrate(self, conn: sqlite3.Connection, canvas_id: str, owner_id: str) -> CanvasRecordV1:
        row = self._fetch_row(conn, canvas_id, owner_id)
        if row is None:
            raise CanvasNotFound(f"Canvas '{canvas_id}' was not found.")

        payload = self._parse_document(str(row["document"]))
        document_nodes = list(payload.get("nodes") or [])
        embedded_by_id = {str(node.get("id")): node for node in document_nodes}

        messages_by_node: dict[str, list[dict[str, Any]]] = {}
        for message_row in conn.execute(
            """
            SELECT node_id, message_id, role, content, timestamp
            FROM canvas_messages
            WHERE canvas_id = ?
            ORDER BY node_id ASC, sort_order ASC, rowid ASC
            """,
            (canvas_id,),
        ).fetchall():
            message = {
                "id": str(message_row["message_id"]),
                "role": str(message_row["role"]),
                "content": str(message_row["content"]),
            }
            if message_row["timestamp"] is not None:
                message["timestamp"] = str(message_row["timestamp"])
            messages_by_node.setdefault(str(message_row["node_id"]), []).append(message)

        nodes: list[dict[str, Any]] = []
        normalized_ids: set[str] = set()
        for node_row in conn.execute(
            """
            SELECT node_id, payload
            FROM canvas_nodes
            WHERE canvas_id = ?
            ORDER BY sort_order ASC, rowid ASC
            """,
            (canvas_id,),
        ).fetchall():
            node_id = str(node_row["node_id"])
            node = self._parse_document(str(node_row["payload"]))
            embedded = (embedded_by_id.get(node_id) or {}).get("chatMessages") or []
            node["chatMessages"] = hydrate_messages(node_id, embedded, messages_by_node.get(node_id, []))
            nodes.append(node)
            normalized_ids.add(node_id)

        orphans = [node for node in document_nodes if str(node.get("id")) not in normalized_ids]
        if orphans:
            logger.warning(
                "Canvas %s has %d node(s) missing from the normalized tables",
                canvas_id,
                len(orphans),
            )
        nodes.extend(orphans)

        edge_rows = conn.execute(
            """
            SELECT edge_id, payload
            FROM canvas_edges
            WHERE canvas_id = ?
            ORDER BY sort_order ASC, rowid ASC
            """,
            (canvas_id,),
        ).fetchall()
        edges = [self._parse_document(str(edge_row["payload"])) for edge_row in edge_rows]
        edge_ids = {str(edge_row["edge_id"]) for edge_row in edge_rows}
        edges.extend(edge for edge in payload.get("edges") or [] if str(edge.get("id")) not in edge_ids)

        record_payload = {
            **{key: value for key, value in payload.items() if key not in RECORD_ONLY_FIELDS},
            "id": str(row["canvas_id"]),
            "nodes": nodes,
            "edges": edges,
            "ownerId": str(row["owner_id"]),
            "version": int(row["version"]),
            "createdAt": str(row["created_at"]),
            "updatedAt": str(row["updated_at"]),
        }
        try:
            return CanvasRecordV1.model_validate(record_payload)
        except ValidationError as exc:
            raise StorageCorrupted(
                f"Canvas '{canvas_id}' storage payload is invalid.",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    @staticmethod
    def _fetch_row(conn: sqlite3.Connection, canvas_id: str, owner_id: str) -> sqlite3.Row | None:
        return conn.execute(
            """
            SELECT canvas_id, owner_id, version, document, created_at, updated_at
            FROM canvases
            WHERE canvas_id = ?
              AND owner_id = ?
            """,
            (canvas_id, owner_id),
        ).fetchone()

    @staticmethod
    def _assert_same_owner(conn: sqlite3.Connection, canvas_id: str, owner_id: str) -> None:
        row = conn.execute(
            "SELECT owner_id FROM canvases WHERE canvas_id = ?",
            (canvas_id,),
        ).fetchone()
        if row is not None and str(row["owner_id"]) != owner_id:
            raise CanvasStoreError(
                f"Canvas id '{canvas_id}' is already in use.",
                status_code=409,
                code="CANVAS_ID_TAKEN",
            )

    @staticmethod
    def _node_index(payload: dict[str, Any], node_id: str) -> int:
        for index, node in enumerate(payload["nodes"]):
            if node["id"] == node_id:
                return index
        raise NodeNotFound(f"Node '{node_id}' was not found in canvas '{payload.get('id')}'.")

    @staticmethod
    def _validate_document(payload: dict[str, Any]) -> CanvasDocumentV1:
        try:
            return CanvasDocumentV1.model_validate(payload)
        except ValidationError as exc:
            raise InvalidCanvasPayload(
                "Canvas document is invalid.",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    @staticmethod
    def _parse_document(raw: str) -> dict[str, Any]:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageCorrupted("Canvas storage payload is unreadable.") from exc
        if not isinstance(payload, dict):
            raise StorageCorrupted("Canvas storage payload is not an object.")
        return payload
