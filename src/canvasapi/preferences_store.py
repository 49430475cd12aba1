from __future__ import annotations

import logging
import sqlite3

from .canvas_contract import SavePreferencesUpdateV1, SavePreferencesV1, iso_now
from .canvas_defaults import default_save_preferences
from .errors import require_owner
from .schema import RuntimeDatabase

logger = logging.getLogger(__name__)


class PreferencesStore:
    def __init__(self, database: RuntimeDatabase) -> None:
        self._db = database

    @classmethod
    def from_env(cls) -> "PreferencesStore":
        return cls(RuntimeDatabase.from_env())

    def get_preferences(self, owner: str) -> SavePreferencesV1:
        owner_id = require_owner(owner)
        with self._db.connect() as conn:
            return self._read(conn, owner_id)

    def update_preferences(self, owner: str, patch: SavePreferencesUpdateV1) -> SavePreferencesV1:
        owner_id = require_owner(owner)
        changes = patch.model_dump(exclude_none=True)
        with self._db.connect() as conn:
            current = self._read(conn, owner_id)
            updated = current.model_copy(update=changes)
            conn.execute(
                """
                INSERT INTO save_preferences (
                    owner_id,
                    auto_save_interval_ms,
                    max_backup_count,
                    save_on_exit,
                    compression_enabled,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    auto_save_interval_ms = excluded.auto_save_interval_ms,
                    max_backup_count = excluded.max_backup_count,
                    save_on_exit = excluded.save_on_exit,
                    compression_enabled = excluded.compression_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    owner_id,
                    updated.autoSaveIntervalMs,
                    updated.maxBackupCount,
                    int(updated.saveOnExit),
                    int(updated.compressionEnabled),
                    iso_now(),
                ),
            )
        logger.info("Updated save preferences for %s: %s", owner_id, sorted(changes))
        return updated

    @staticmethod
    def _read(conn: sqlite3.Connection, owner_id: str) -> SavePreferencesV1:
        row = conn.execute(
            """
            SELECT auto_save_interval_ms, max_backup_count, save_on_exit, compression_enabled
            FROM save_preferences
            WHERE owner_id = ?
            """,
            (owner_id,),
        ).fetchone()
        if row is None:
            return default_save_preferences()
        return SavePreferencesV1(
            autoSaveIntervalMs=int(row["auto_save_interval_ms"]),
            maxBackupCount=int(row["max_backup_count"]),
            saveOnExit=bool(row["save_on_exit"]),
            compressionEnabled=bool(row["compression_enabled"]),
        )
