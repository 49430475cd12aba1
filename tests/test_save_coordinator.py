from __future__ import annotations

import sqlite3
import threading
from datetime import datetime

from canvasapi.canvas_contract import SaveFailureV1, SaveOptionsV1, SaveResultV1
from canvasapi.save_coordinator import VersionedSaveCoordinator

from conftest import OWNER, make_document


def _save(stores, document, **options):
    return stores.coordinator.save(document, OWNER, options=SaveOptionsV1(**options))


def test_sequential_saves_produce_gapless_versions(stores) -> None:
    versions = []
    for node_ids in (["A"], ["A", "B"], ["A", "B", "C"]):
        result = _save(stores, make_document("c1", node_ids))
        assert isinstance(result, SaveResultV1)
        assert result.conflictResolved is False
        versions.append(result.version)

    assert versions == [1, 2, 3]
    assert [node.id for node in stores.canvas_store.get_canvas("c1", OWNER).nodes] == ["A", "B", "C"]
    assert stores.sleeps == []


def test_save_result_uses_iso_timestamps_and_mints_session_id(stores) -> None:
    result = _save(stores, make_document("c1", ["A"]))

    assert isinstance(result, SaveResultV1)
    assert isinstance(result.timestamp, str)
    datetime.fromisoformat(result.timestamp)
    assert result.sessionId

    session = stores.metadata_store.get_session(result.sessionId, OWNER)
    assert session.saveCount == 1
    assert session.canvasId == "c1"


def test_blank_owner_fails_with_authentication_required(stores) -> None:
    result = stores.coordinator.save(make_document("c1", ["A"]), "", session_id="s1")

    assert isinstance(result, SaveFailureV1)
    assert result.error.code == "AUTHENTICATION_REQUIRED"
    assert result.sessionId == "s1"
    assert stores.canvas_store.load_state("c1", OWNER) is None


def test_stale_base_version_merges_with_latest_state(stores) -> None:
    _save(stores, make_document("c1", ["A"]))
    _save(stores, make_document("c1", ["A", "B"]))

    result = _save(stores, make_document("c1", ["A", "C"]), baseVersion=1)

    assert isinstance(result, SaveResultV1)
    assert result.conflictResolved is True
    assert result.version == 3
    record = stores.canvas_store.get_canvas("c1", OWNER)
    assert [node.id for node in record.nodes] == ["A", "C", "B"]
    assert stores.sleeps == [0.1]


def test_two_saves_from_the_same_base_both_survive(stores) -> None:
    for node_ids in (["A"], ["A"], ["A"]):
        _save(stores, make_document("c1", node_ids))
    assert stores.canvas_store.get_canvas("c1", OWNER).version == 3

    first = _save(stores, make_document("c1", ["A", "B"], [("A", "B")]), baseVersion=3)
    second = _save(stores, make_document("c1", ["A", "C"], [("A", "C")]), baseVersion=3)

    assert isinstance(first, SaveResultV1) and first.version == 4 and not first.conflictResolved
    assert isinstance(second, SaveResultV1) and second.version == 5 and second.conflictResolved

    record = stores.canvas_store.get_canvas("c1", OWNER)
    assert [node.id for node in record.nodes] == ["A", "C", "B"]
    assert [edge.id for edge in record.edges] == ["e-A-C", "e-A-B"]

    metadata = stores.metadata_store.get_metadata("c1", OWNER)
    assert metadata.analytics.saveCount == 5
    assert metadata.analytics.conflictCount == 1
    assert metadata.versioning.currentVersion == 5


def test_conflicts_exhaust_retry_budget_without_overwriting(stores, monkeypatch) -> None:
    _save(stores, make_document("c1", ["A"]))
    original_write = stores.canvas_store.write_conditionally

    def always_stale(document, owner, *, expected_version):
        return None

    monkeypatch.setattr(stores.canvas_store, "write_conditionally", always_stale)
    result = _save(stores, make_document("c1", ["Z"]), retryCount=3, baseVersion=1)
    monkeypatch.setattr(stores.canvas_store, "write_conditionally", original_write)

    assert isinstance(result, SaveFailureV1)
    assert result.error.code == "VERSION_CONFLICT_UNRESOLVED"
    assert result.error.details == {"canvasId": "c1", "attempts": 3}
    assert stores.sleeps == [0.1, 0.2]

    record = stores.canvas_store.get_canvas("c1", OWNER)
    assert record.version == 1
    assert [node.id for node in record.nodes] == ["A"]


def test_failed_saves_increment_session_error_count(stores, monkeypatch) -> None:
    _save(stores, make_document("c1", ["A"]))
    monkeypatch.setattr(stores.canvas_store, "write_conditionally", lambda *args, **kwargs: None)

    for _ in range(2):
        result = stores.coordinator.save(
            make_document("c1", ["B"]),
            OWNER,
            session_id="session-x",
            options=SaveOptionsV1(retryCount=1),
        )
        assert isinstance(result, SaveFailureV1)

    session = stores.metadata_store.get_session("session-x", OWNER)
    assert session.errorCount == 2
    assert session.saveCount == 0


def test_transient_database_errors_are_retried(stores, monkeypatch) -> None:
    original_write = stores.canvas_store.write_conditionally
    calls = {"count": 0}

    def flaky_write(document, owner, *, expected_version):
        calls["count"] += 1
        if calls["count"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return original_write(document, owner, expected_version=expected_version)

    monkeypatch.setattr(stores.canvas_store, "write_conditionally", flaky_write)
    result = _save(stores, make_document("c1", ["A"]))

    assert isinstance(result, SaveResultV1)
    assert result.version == 1
    assert calls["count"] == 2
    assert stores.sleeps == [0.1]


def test_persistent_database_errors_surface_as_database_unavailable(stores, monkeypatch) -> None:
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(stores.canvas_store, "write_conditionally", locked)
    result = _save(stores, make_document("c1", ["A"]), retryCount=2)

    assert isinstance(result, SaveFailureV1)
    assert result.error.code == "DATABASE_UNAVAILABLE"


def test_first_multi_node_save_creates_backup(stores) -> None:
    result = _save(stores, make_document("c1", ["A", "B"]))

    assert isinstance(result, SaveResultV1)
    assert result.backupId is not None
    backups = stores.backup_manager.list_backups("c1", OWNER)
    assert [item.id for item in backups.backups] == [result.backupId]

    follow_up = _save(stores, make_document("c1", ["A", "B", "C"]))
    assert follow_up.backupId is None


def test_single_node_first_save_skips_backup_unless_requested(stores) -> None:
    assert _save(stores, make_document("c1", ["A"])).backupId is None

    result = _save(stores, make_document("c1", ["A"]), createBackup=True, saveType="manual")

    backup = stores.backup_manager.get_backup("c1", result.backupId, OWNER)
    assert backup.backupType == "manual"
    assert backup.version == 2


def test_successful_save_updates_metadata_and_active_pointer(stores) -> None:
    result = stores.coordinator.save(
        make_document("c1", ["A", "B"], [("A", "B")]),
        OWNER,
        session_id="s-1",
        options=SaveOptionsV1(saveType="scheduled"),
    )

    metadata = stores.metadata_store.get_metadata("c1", OWNER)
    assert metadata.analytics.nodeCount == 2
    assert metadata.analytics.edgeCount == 1
    assert metadata.versioning.lastSaveType == "scheduled"
    assert metadata.versioning.currentVersion == result.version

    active = stores.metadata_store.get_active_canvas(OWNER)
    assert active is not None
    assert active.activeCanvasId == "c1"
    assert active.sessionId == "s-1"


def test_custom_merger_is_used_for_conflicts(stores) -> None:
    def remote_wins(local_nodes, local_edges, remote_nodes, remote_edges):
        return remote_nodes, remote_edges

    coordinator = VersionedSaveCoordinator(
        stores.canvas_store,
        stores.backup_manager,
        stores.metadata_store,
        merger=remote_wins,
        sleep=lambda seconds: None,
    )
    coordinator.save(make_document("c1", ["A"]), OWNER)
    coordinator.save(make_document("c1", ["A", "B"]), OWNER)

    result = coordinator.save(make_document("c1", ["X"]), OWNER, options=SaveOptionsV1(baseVersion=1))

    assert result.conflictResolved is True
    assert [node.id for node in stores.canvas_store.get_canvas("c1", OWNER).nodes] == ["A", "B"]


def test_from_env_reads_retry_and_backoff_settings(stores, monkeypatch) -> None:
    monkeypatch.setenv("CANVASAPI_SAVE_RETRY_COUNT", "5")
    monkeypatch.setenv("CANVASAPI_SAVE_BACKOFF_BASE_MS", "50")

    coordinator = VersionedSaveCoordinator.from_env(
        stores.canvas_store,
        stores.backup_manager,
        stores.metadata_store,
    )

    assert coordinator.backoff_seconds(0) == 0.05
    assert coordinator.backoff_seconds(2) == 0.2


def test_concurrent_writers_get_gapless_versions_and_keep_every_node(stores) -> None:
    _save(stores, make_document("c1", ["A"]))
    writers = 8
    barrier = threading.Barrier(writers)
    results: list = []

    def write(index: int) -> None:
        barrier.wait()
        results.append(
            stores.coordinator.save(
                make_document("c1", ["A", f"N{index}"]),
                OWNER,
                options=SaveOptionsV1(baseVersion=1, retryCount=20),
            )
        )

    threads = [threading.Thread(target=write, args=(index,)) for index in range(writers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(isinstance(result, SaveResultV1) for result in results)
    assert sorted(result.version for result in results) == list(range(2, writers + 2))

    record = stores.canvas_store.get_canvas("c1", OWNER)
    assert record.version == writers + 1
    assert {node.id for node in record.nodes} == {"A"} | {f"N{index}" for index in range(writers)}
    assert stores.metadata_store.get_metadata("c1", OWNER).versioning.currentVersion == writers + 1


def test_failed_backup_after_commit_still_reports_saved(stores, monkeypatch) -> None:
    _save(stores, make_document("c1", ["A"]))

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(stores.backup_manager, "create_backup", locked)
    result = stores.coordinator.save(
        make_document("c1", ["A", "B"]),
        OWNER,
        session_id="s-1",
        options=SaveOptionsV1(createBackup=True),
    )

    assert isinstance(result, SaveResultV1)
    assert result.version == 2
    assert result.backupId is None
    assert [node.id for node in stores.canvas_store.get_canvas("c1", OWNER).nodes] == ["A", "B"]

    session = stores.metadata_store.get_session("s-1", OWNER)
    assert session.saveCount == 1
    assert session.errorCount == 0


def test_failed_metadata_after_commit_still_reports_saved(stores, monkeypatch) -> None:
    def unavailable(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(stores.metadata_store, "record_save", unavailable)
    result = _save(stores, make_document("c1", ["A"]))

    assert isinstance(result, SaveResultV1)
    assert result.version == 1
    assert stores.canvas_store.get_canvas("c1", OWNER).version == 1


def test_unexpected_merge_errors_become_internal_error_failures(stores) -> None:
    def duplicating(local_nodes, local_edges, remote_nodes, remote_edges):
        return local_nodes + local_nodes, local_edges

    coordinator = VersionedSaveCoordinator(
        stores.canvas_store,
        stores.backup_manager,
        stores.metadata_store,
        merger=duplicating,
        sleep=lambda seconds: None,
    )
    coordinator.save(make_document("c1", ["A"]), OWNER)
    coordinator.save(make_document("c1", ["A", "B"]), OWNER)

    result = coordinator.save(
        make_document("c1", ["C"]),
        OWNER,
        session_id="s-2",
        options=SaveOptionsV1(baseVersion=1),
    )

    assert isinstance(result, SaveFailureV1)
    assert result.error.code == "INTERNAL_ERROR"
    assert result.sessionId == "s-2"
    assert stores.canvas_store.get_canvas("c1", OWNER).version == 2
    assert stores.metadata_store.get_session("s-2", OWNER).errorCount == 1


def test_session_of_another_owner_is_rejected_before_writing(stores) -> None:
    stores.metadata_store.touch_session("shared", "someone-else")

    result = stores.coordinator.save(make_document("c1", ["A"]), OWNER, session_id="shared")

    assert isinstance(result, SaveFailureV1)
    assert result.error.code == "SESSION_OWNER_MISMATCH"
    assert stores.canvas_store.load_state("c1", OWNER) is None
