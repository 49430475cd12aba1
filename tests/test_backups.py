from __future__ import annotations

import sqlite3

import pytest

from canvasapi.canvas_contract import (
    CanvasDocumentV1,
    SaveFailureV1,
    SavePreferencesUpdateV1,
    SaveResultV1,
    record_document_payload,
    serialize_document,
)
from canvasapi.errors import BackupNotFound, StorageCorrupted

from conftest import OWNER, make_document


def _with_messages(document: CanvasDocumentV1, node_id: str, messages: list[dict]) -> CanvasDocumentV1:
    payload = document.model_dump(by_alias=True)
    for node in payload["nodes"]:
        if node["id"] == node_id:
            node["chatMessages"] = messages
    return CanvasDocumentV1.model_validate(payload)


def _saved(stores, document) -> SaveResultV1:
    result = stores.coordinator.save(document, OWNER)
    assert isinstance(result, SaveResultV1)
    return result


def test_backup_captures_counts_and_serialized_size(stores) -> None:
    document = make_document(
        "c1",
        ["A", "B", "C", "D", "E"],
        [("A", "B"), ("B", "C"), ("C", "D"), ("D", "E")],
    )
    document = _with_messages(
        document,
        "A",
        [{"id": "t1", "user": {"content": "q"}, "assistant": {"content": "a"}}],
    )
    _saved(stores, document)
    record = stores.canvas_store.get_canvas("c1", OWNER)

    backup = stores.backup_manager.create_backup(record, OWNER, "manual")

    assert backup.metadata.nodeCount == 5
    assert backup.metadata.edgeCount == 4
    assert backup.metadata.messageCount == 2
    assert backup.version == record.version
    assert backup.sizeBytes == len(serialize_document(record_document_payload(record)).encode("utf-8"))

    loaded = stores.backup_manager.get_backup("c1", backup.id, OWNER)
    assert [node.id for node in loaded.document.nodes] == ["A", "B", "C", "D", "E"]
    assert loaded.document.nodes[0].chatMessages == document.nodes[0].chatMessages
    assert loaded.sizeBytes == backup.sizeBytes


def test_pruning_keeps_newest_backups_up_to_preference(stores) -> None:
    stores.preferences_store.update_preferences(OWNER, SavePreferencesUpdateV1(maxBackupCount=2))
    _saved(stores, make_document("c1", ["A"]))

    created = [stores.backup_manager.backup_canvas("c1", OWNER, "manual").id for _ in range(4)]

    listing = stores.backup_manager.list_backups("c1", OWNER)
    assert [item.id for item in listing.backups] == [created[3], created[2]]

    metadata = stores.metadata_store.get_metadata("c1", OWNER)
    assert metadata.backup.backupCount == 2
    assert metadata.backup.lastBackupAt is not None


def test_prune_without_canvas_caps_all_of_the_owners_backups(stores) -> None:
    _saved(stores, make_document("c1", ["A"]))
    _saved(stores, make_document("c2", ["A"]))
    created = {
        canvas_id: [
            stores.backup_manager.create_backup(stores.canvas_store.get_canvas(canvas_id, OWNER), OWNER).id
            for _ in range(3)
        ]
        for canvas_id in ("c1", "c2")
    }

    stores.preferences_store.update_preferences(OWNER, SavePreferencesUpdateV1(maxBackupCount=4))

    assert stores.backup_manager.prune_backups(OWNER) == 2
    assert [item.id for item in stores.backup_manager.list_backups("c1", OWNER).backups] == [created["c1"][2]]
    assert len(stores.backup_manager.list_backups("c2", OWNER).backups) == 3
    assert stores.metadata_store.get_metadata("c1", OWNER).backup.backupCount == 1
    assert stores.backup_manager.prune_backups(OWNER) == 0


def test_prune_for_one_canvas_leaves_other_canvases_alone(stores) -> None:
    _saved(stores, make_document("c1", ["A"]))
    _saved(stores, make_document("c2", ["A"]))
    for canvas_id in ("c1", "c2"):
        for _ in range(3):
            stores.backup_manager.create_backup(stores.canvas_store.get_canvas(canvas_id, OWNER), OWNER)

    stores.preferences_store.update_preferences(OWNER, SavePreferencesUpdateV1(maxBackupCount=1))

    assert stores.backup_manager.prune_backups(OWNER, "c1") == 2
    assert len(stores.backup_manager.list_backups("c1", OWNER).backups) == 1
    assert len(stores.backup_manager.list_backups("c2", OWNER).backups) == 3


def test_list_backups_respects_limit_and_owner(stores) -> None:
    _saved(stores, make_document("c1", ["A"]))
    for _ in range(3):
        stores.backup_manager.backup_canvas("c1", OWNER)

    assert len(stores.backup_manager.list_backups("c1", OWNER, limit=2).backups) == 2
    assert stores.backup_manager.list_backups("c1", "someone-else").backups == []


def test_restore_lands_above_current_version_with_backup_contents(stores) -> None:
    first = _saved(stores, make_document("c1", ["A", "B"], [("A", "B")]))
    assert first.backupId is not None
    _saved(stores, make_document("c1", ["A", "B", "C"], [("A", "B"), ("B", "C")]))

    result = stores.backup_manager.restore("c1", first.backupId, OWNER, coordinator=stores.coordinator)

    assert isinstance(result, SaveResultV1)
    assert result.version == 3
    assert result.conflictResolved is False
    assert result.backupId not in (None, first.backupId)

    record = stores.canvas_store.get_canvas("c1", OWNER)
    assert [node.id for node in record.nodes] == ["A", "B"]
    assert [edge.id for edge in record.edges] == ["e-A-B"]

    restored_backup = stores.backup_manager.get_backup("c1", result.backupId, OWNER)
    assert restored_backup.backupType == "manual"
    assert restored_backup.version == 3


def test_restore_of_missing_backup_returns_failure(stores) -> None:
    _saved(stores, make_document("c1", ["A"]))

    result = stores.backup_manager.restore("c1", "backup_missing", OWNER, coordinator=stores.coordinator)

    assert isinstance(result, SaveFailureV1)
    assert result.error.code == "BACKUP_NOT_FOUND"
    with pytest.raises(BackupNotFound):
        stores.backup_manager.get_backup("c1", "backup_missing", OWNER)


def test_restore_reports_database_errors_as_failures(stores, monkeypatch) -> None:
    first = _saved(stores, make_document("c1", ["A", "B"]))

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(stores.canvas_store, "load_state", locked)
    result = stores.backup_manager.restore(
        "c1",
        first.backupId,
        OWNER,
        coordinator=stores.coordinator,
        session_id="r-1",
    )

    assert isinstance(result, SaveFailureV1)
    assert result.error.code == "DATABASE_UNAVAILABLE"
    assert result.sessionId == "r-1"


def test_backups_survive_canvas_deletion_and_can_be_restored(stores) -> None:
    first = _saved(stores, make_document("c1", ["A", "B"]))
    stores.canvas_store.delete_canvas("c1", OWNER)

    listing = stores.backup_manager.list_backups("c1", OWNER)
    assert [item.id for item in listing.backups] == [first.backupId]

    result = stores.backup_manager.restore("c1", first.backupId, OWNER, coordinator=stores.coordinator)

    assert isinstance(result, SaveResultV1)
    assert result.version == 1
    assert [node.id for node in stores.canvas_store.get_canvas("c1", OWNER).nodes] == ["A", "B"]


def test_compressed_backups_are_gzip_encoded_and_decode_on_read(stores) -> None:
    stores.preferences_store.update_preferences(OWNER, SavePreferencesUpdateV1(compressionEnabled=True))
    _saved(stores, make_document("c1", ["A", "B", "C"]))
    record = stores.canvas_store.get_canvas("c1", OWNER)

    backup = stores.backup_manager.create_backup(record, OWNER)

    with stores.database.connect() as conn:
        row = conn.execute(
            "SELECT encoding, document FROM canvas_backups WHERE backup_id = ?",
            (backup.id,),
        ).fetchone()
    assert row["encoding"] == "gzip"
    assert bytes(row["document"])[:2] == b"\x1f\x8b"

    loaded = stores.backup_manager.get_backup("c1", backup.id, OWNER)
    assert [node.id for node in loaded.document.nodes] == ["A", "B", "C"]
    assert loaded.sizeBytes == len(serialize_document(record_document_payload(record)).encode("utf-8"))


def test_unreadable_backup_payload_raises_storage_corrupted(stores) -> None:
    _saved(stores, make_document("c1", ["A"]))
    backup = stores.backup_manager.backup_canvas("c1", OWNER)
    with stores.database.connect() as conn:
        conn.execute(
            "UPDATE canvas_backups SET encoding = 'gzip', document = ? WHERE backup_id = ?",
            (b"not gzip", backup.id),
        )

    with pytest.raises(StorageCorrupted):
        stores.backup_manager.get_backup("c1", backup.id, OWNER)
