from __future__ import annotations

import json
import sqlite3

import pytest

from canvasapi.canvas_store import CanvasStore
from canvasapi.errors import DatabaseUnavailable
from canvasapi.schema import ADDITIVE_COLUMNS, RuntimeDatabase, SchemaBootstrapper, table_columns

from conftest import OWNER


_FIRST_RELEASE_SCHEMA = """
CREATE TABLE canvases (
    canvas_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    version INTEGER NOT NULL,
    document TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE canvas_nodes (
    canvas_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    node_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (canvas_id, node_id),
    FOREIGN KEY (canvas_id) REFERENCES canvases(canvas_id) ON DELETE CASCADE
);

CREATE TABLE canvas_messages (
    canvas_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT,
    PRIMARY KEY (canvas_id, node_id, message_id),
    FOREIGN KEY (canvas_id, node_id)
        REFERENCES canvas_nodes(canvas_id, node_id)
        ON DELETE CASCADE
);

CREATE TABLE canvas_backups (
    backup_id TEXT PRIMARY KEY,
    canvas_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    backup_type TEXT NOT NULL,
    document BLOB NOT NULL,
    size_bytes INTEGER NOT NULL,
    version INTEGER NOT NULL,
    node_count INTEGER NOT NULL DEFAULT 0,
    edge_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
"""


def _seed_first_release_database(db_path) -> None:
    document = {
        "id": "legacy",
        "title": "Legacy canvas",
        "nodes": [
            {"id": "A", "type": "entry", "position": {"x": 0, "y": 0}, "chatMessages": []},
            {"id": "B", "type": "branch", "position": {"x": 10, "y": 0}, "chatMessages": []},
        ],
        "edges": [{"id": "e1", "from": "A", "to": "B", "meta": {}}],
    }
    with sqlite3.connect(db_path) as conn:
        conn.executescript(_FIRST_RELEASE_SCHEMA)
        conn.execute(
            """
            INSERT INTO canvases (canvas_id, owner_id, title, version, document, created_at, updated_at)
            VALUES ('legacy', ?, 'Legacy canvas', 7, ?, '2024-01-01T00:00:00+00:00', '2024-01-01T00:00:00+00:00')
            """,
            (OWNER, json.dumps(document)),
        )
        conn.execute(
            """
            INSERT INTO canvas_nodes (canvas_id, node_id, owner_id, node_type, payload, updated_at)
            VALUES ('legacy', 'A', ?, 'entry', ?, '2024-01-01T00:00:00+00:00')
            """,
            (OWNER, json.dumps(document["nodes"][0])),
        )
        conn.execute(
            """
            INSERT INTO canvas_backups (
                backup_id, canvas_id, owner_id, backup_type, document, size_bytes, version, created_at
            ) VALUES ('b-old', 'legacy', ?, 'manual', ?, 10, 6, '2024-01-01T00:00:00+00:00')
            """,
            (OWNER, json.dumps(document).encode("utf-8")),
        )


def test_bootstrap_adds_missing_columns_without_data_loss(runtime_db_path) -> None:
    _seed_first_release_database(runtime_db_path)

    store = CanvasStore(RuntimeDatabase(runtime_db_path))
    record = store.get_canvas("legacy", OWNER)

    assert record.version == 7
    assert [node.id for node in record.nodes] == ["A", "B"]
    assert [edge.id for edge in record.edges] == ["e1"]

    with sqlite3.connect(runtime_db_path) as conn:
        for table_name, column_name, _definition in ADDITIVE_COLUMNS:
            assert column_name in table_columns(conn, table_name), f"{table_name}.{column_name}"
        assert "edge_id" in table_columns(conn, "canvas_edges")
        backup = conn.execute("SELECT encoding, message_count FROM canvas_backups").fetchone()
        assert backup == ("json", 0)


def test_migrated_database_accepts_new_writes(runtime_db_path) -> None:
    _seed_first_release_database(runtime_db_path)
    store = CanvasStore(RuntimeDatabase(runtime_db_path))

    record = store.resync_canvas("legacy", OWNER)
    assert record.version == 7

    with sqlite3.connect(runtime_db_path) as conn:
        rows = conn.execute(
            "SELECT node_id, sort_order FROM canvas_nodes WHERE canvas_id = 'legacy' ORDER BY sort_order"
        ).fetchall()
    assert rows == [("A", 0), ("B", 1)]


def test_bootstrap_is_idempotent_and_memoized(runtime_db_path) -> None:
    database = RuntimeDatabase(runtime_db_path)
    assert database.schema.ready is False

    with database.connect():
        pass
    assert database.schema.ready is True
    assert SchemaBootstrapper.for_path(runtime_db_path) is database.schema

    SchemaBootstrapper.reset_registry()
    reopened = RuntimeDatabase(runtime_db_path)
    with reopened.connect() as conn:
        columns = table_columns(conn, "canvases")
    assert "note" in columns
    assert reopened.schema.ready is True


def test_incompatible_schema_is_rejected_and_not_memoized(runtime_db_path) -> None:
    with sqlite3.connect(runtime_db_path) as conn:
        conn.execute(
            "CREATE TABLE canvases (canvas_id TEXT PRIMARY KEY, owner_id TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )

    database = RuntimeDatabase(runtime_db_path)
    with pytest.raises(DatabaseUnavailable) as exc_info:
        with database.connect():
            pass

    assert exc_info.value.code == "SCHEMA_MIGRATION_REQUIRED"
    assert exc_info.value.details["table"] == "canvases"
    assert "document" in exc_info.value.details["missingColumns"]
    assert database.schema.ready is False
