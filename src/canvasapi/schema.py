from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Iterator

from .errors import DatabaseUnavailable

logger = logging.getLogger(__name__)

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS users (
    owner_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS canvases (
    canvas_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    version INTEGER NOT NULL,
    document TEXT NOT NULL,
    note TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS canvas_nodes (
    canvas_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    node_type TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    payload TEXT NOT NULL,
    parent_node_id TEXT,
    forked_from_message_id TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (canvas_id, node_id),
    FOREIGN KEY (canvas_id) REFERENCES canvases(canvas_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS canvas_messages (
    canvas_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT,
    PRIMARY KEY (canvas_id, node_id, message_id),
    FOREIGN KEY (canvas_id, node_id)
        REFERENCES canvas_nodes(canvas_id, node_id)
        ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS canvas_edges (
    canvas_id TEXT NOT NULL,
    edge_id TEXT NOT NULL,
    source_node_id TEXT NOT NULL,
    target_node_id TEXT NOT NULL,
    sort_order INTEGER NOT NULL DEFAULT 0,
    payload TEXT NOT NULL,
    PRIMARY KEY (canvas_id, edge_id),
    FOREIGN KEY (canvas_id) REFERENCES canvases(canvas_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS canvas_backups (
    backup_id TEXT PRIMARY KEY,
    canvas_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    backup_type TEXT NOT NULL,
    encoding TEXT NOT NULL DEFAULT 'json',
    document BLOB NOT NULL,
    size_bytes INTEGER NOT NULL,
    version INTEGER NOT NULL,
    node_count INTEGER NOT NULL DEFAULT 0,
    edge_count INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_metadata (
    canvas_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    save_count INTEGER NOT NULL DEFAULT 0,
    conflict_count INTEGER NOT NULL DEFAULT 0,
    node_count INTEGER NOT NULL DEFAULT 0,
    edge_count INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0,
    last_activity TEXT,
    current_version INTEGER NOT NULL DEFAULT 0,
    last_saved_at TEXT,
    last_save_type TEXT,
    backup_count INTEGER NOT NULL DEFAULT 0,
    last_backup_at TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (canvas_id, owner_id),
    FOREIGN KEY (canvas_id) REFERENCES canvases(canvas_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS canvas_sessions (
    session_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    canvas_id TEXT,
    started_at TEXT NOT NULL,
    last_activity TEXT NOT NULL,
    save_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS active_canvases (
    owner_id TEXT PRIMARY KEY,
    canvas_id TEXT NOT NULL,
    session_id TEXT,
    last_accessed TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS save_preferences (
    owner_id TEXT PRIMARY KEY,
    auto_save_interval_ms INTEGER NOT NULL,
    max_backup_count INTEGER NOT NULL,
    save_on_exit INTEGER NOT NULL,
    compression_enabled INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_threads (
    thread_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    settings TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    total_nodes INTEGER NOT NULL DEFAULT 0,
    total_checkpoints INTEGER NOT NULL DEFAULT 0,
    total_messages INTEGER NOT NULL DEFAULT 0,
    checkpoint_version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_modified TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS thread_checkpoints (
    checkpoint_id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    canvas_data TEXT NOT NULL,
    node_count INTEGER NOT NULL DEFAULT 0,
    edge_count INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL,
    is_auto_checkpoint INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (thread_id) REFERENCES conversation_threads(thread_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS thread_nodes (
    thread_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (thread_id, node_id),
    FOREIGN KEY (thread_id) REFERENCES conversation_threads(thread_id) ON DELETE CASCADE
);
"""

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_canvases_owner_updated ON canvases(owner_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_canvas_nodes_parent ON canvas_nodes(canvas_id, parent_node_id);
CREATE INDEX IF NOT EXISTS idx_canvas_messages_node ON canvas_messages(canvas_id, node_id, sort_order);
CREATE INDEX IF NOT EXISTS idx_canvas_backups_owner_canvas_created
    ON canvas_backups(owner_id, canvas_id, created_at);
CREATE INDEX IF NOT EXISTS idx_canvas_sessions_owner ON canvas_sessions(owner_id, last_activity);
CREATE INDEX IF NOT EXISTS idx_threads_owner_modified ON conversation_threads(owner_id, last_modified);
CREATE INDEX IF NOT EXISTS idx_thread_checkpoints_thread ON thread_checkpoints(thread_id, created_at);
"""

# Columns introduced after the first release. Older databases get them through
# ALTER TABLE; the definitions must carry a default when NOT NULL.
ADDITIVE_COLUMNS: tuple[tuple[str, str, str], ...] = (
    ("canvases", "note", "TEXT"),
    ("canvas_nodes", "sort_order", "INTEGER NOT NULL DEFAULT 0"),
    ("canvas_nodes", "parent_node_id", "TEXT"),
    ("canvas_nodes", "forked_from_message_id", "TEXT"),
    ("canvas_messages", "sort_order", "INTEGER NOT NULL DEFAULT 0"),
    ("canvas_edges", "sort_order", "INTEGER NOT NULL DEFAULT 0"),
    ("canvas_backups", "encoding", "TEXT NOT NULL DEFAULT 'json'"),
    ("canvas_backups", "message_count", "INTEGER NOT NULL DEFAULT 0"),
    ("conversation_metadata", "conflict_count", "INTEGER NOT NULL DEFAULT 0"),
    ("conversation_metadata", "tags", "TEXT NOT NULL DEFAULT '[]'"),
    ("canvas_sessions", "error_count", "INTEGER NOT NULL DEFAULT 0"),
    ("save_preferences", "compression_enabled", "INTEGER NOT NULL DEFAULT 0"),
    ("conversation_threads", "checkpoint_version", "INTEGER NOT NULL DEFAULT 0"),
)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "canvases": {"canvas_id", "owner_id", "title", "version", "document", "created_at", "updated_at"},
    "canvas_nodes": {"canvas_id", "node_id", "owner_id", "node_type", "payload"},
    "canvas_messages": {"canvas_id", "node_id", "message_id", "role", "content"},
    "canvas_edges": {"canvas_id", "edge_id", "source_node_id", "target_node_id", "payload"},
    "canvas_backups": {"backup_id", "canvas_id", "owner_id", "backup_type", "document", "size_bytes", "version"},
    "conversation_metadata": {"canvas_id", "owner_id", "save_count", "current_version"},
    "thread_checkpoints": {"checkpoint_id", "thread_id", "owner_id", "canvas_data", "version"},
}


class SchemaBootstrapper:
    """Creates and extends the runtime schema once per process and database file.

    Only forward, idempotent statements are issued. There is no migration
    history table and no downgrade path.
    """

    _registry: dict[str, "SchemaBootstrapper"] = {}
    _registry_lock = Lock()

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path
        self._lock = Lock()
        self._ready = False

    @classmethod
    def for_path(cls, storage_path: Path) -> "SchemaBootstrapper":
        key = str(Path(storage_path).expanduser().resolve())
        with cls._registry_lock:
            bootstrapper = cls._registry.get(key)
            if bootstrapper is None:
                bootstrapper = cls(Path(key))
                cls._registry[key] = bootstrapper
            return bootstrapper

    @classmethod
    def reset_registry(cls) -> None:
        with cls._registry_lock:
            cls._registry.clear()

    @property
    def ready(self) -> bool:
        return self._ready

    def ensure(self, conn: sqlite3.Connection) -> None:
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            try:
                self._create_schema(conn)
                self._add_missing_columns(conn)
                conn.executescript(_CREATE_INDEXES)
            except sqlite3.Error as exc:
                logger.error("Schema bootstrap failed for %s: %s", self._storage_path, exc)
                raise DatabaseUnavailable(
                    "Database schema could not be prepared.",
                    details={"cause": str(exc)},
                ) from exc
            self._assert_schema_compatible(conn)
            self._ready = True
            logger.info("Schema ready at %s", self._storage_path)

    @staticmethod
    def _create_schema(conn: sqlite3.Connection) -> None:
        conn.executescript(_CREATE_TABLES)

    def _add_missing_columns(self, conn: sqlite3.Connection) -> None:
        for table_name, column_name, definition in ADDITIVE_COLUMNS:
            columns = table_columns(conn, table_name)
            if columns and column_name not in columns:
                logger.info("Adding column %s.%s", table_name, column_name)
                conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {definition}")
        conn.commit()

    def _assert_schema_compatible(self, conn: sqlite3.Connection) -> None:
        for table_name, required_columns in REQUIRED_COLUMNS.items():
            missing = required_columns - table_columns(conn, table_name)
            if missing:
                raise DatabaseUnavailable(
                    f"Runtime schema is incompatible for table '{table_name}'. Manual migration required.",
                    code="SCHEMA_MIGRATION_REQUIRED",
                    details={"table": table_name, "missingColumns": sorted(missing)},
                )


def table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row[1]) for row in rows}


class RuntimeDatabase:
    """Opens short-lived sqlite connections against one runtime database file."""

    def __init__(self, storage_path: Path, *, timeout: float = 30.0) -> None:
        self._storage_path = Path(storage_path).expanduser()
        self._timeout = timeout
        self._schema = SchemaBootstrapper.for_path(self._storage_path)

    @classmethod
    def from_env(cls) -> "RuntimeDatabase":
        raw = os.getenv("CANVASAPI_RUNTIME_DB_PATH", "").strip()
        if raw:
            return cls(Path(raw).expanduser())
        return cls(Path.home() / ".cache" / "canvasapi" / "runtime.v1.sqlite3")

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    @property
    def schema(self) -> SchemaBootstrapper:
        return self._schema

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection with the schema in place.

        The transaction commits when the block exits cleanly and rolls back on
        any exception. The connection is always closed.
        """
        conn = self._open()
        try:
            self._schema.ensure(conn)
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _open(self) -> sqlite3.Connection:
        try:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._storage_path), timeout=self._timeout)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
        except (OSError, sqlite3.Error) as exc:
            logger.error("Cannot open runtime database %s: %s", self._storage_path, exc)
            raise DatabaseUnavailable(
                "Runtime database is unavailable.",
                details={"cause": str(exc)},
            ) from exc
        return conn
