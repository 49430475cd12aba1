from __future__ import annotations

import pytest
from pydantic import ValidationError

from canvasapi.canvas_contract import SavePreferencesUpdateV1, SavePreferencesV1, TagsRequestV1
from canvasapi.errors import AuthenticationRequired, CanvasNotFound, CanvasStoreError

from conftest import OWNER, make_document


def test_preferences_default_until_updated(stores) -> None:
    assert stores.preferences_store.get_preferences(OWNER) == SavePreferencesV1()

    updated = stores.preferences_store.update_preferences(
        OWNER,
        SavePreferencesUpdateV1(maxBackupCount=3, saveOnExit=False),
    )

    assert updated.maxBackupCount == 3
    assert updated.saveOnExit is False
    assert updated.autoSaveIntervalMs == 30_000
    assert stores.preferences_store.get_preferences(OWNER) == updated
    assert stores.preferences_store.get_preferences("someone-else") == SavePreferencesV1()


def test_preferences_reject_out_of_range_values() -> None:
    with pytest.raises(ValidationError):
        SavePreferencesUpdateV1(maxBackupCount=0)
    with pytest.raises(ValidationError):
        SavePreferencesUpdateV1(autoSaveIntervalMs=10)


def test_preferences_require_owner(stores) -> None:
    with pytest.raises(AuthenticationRequired):
        stores.preferences_store.get_preferences("  ")


def test_tags_are_normalized_and_merged(stores) -> None:
    stores.coordinator.save(make_document("c1", ["A"]), OWNER)

    stores.metadata_store.add_tags("c1", OWNER, TagsRequestV1(tags=["Work", "work ", "ideas"]).tags)
    metadata = stores.metadata_store.add_tags("c1", OWNER, ["ideas", "later"])

    assert metadata.tags == ["work", "ideas", "later"]
    assert metadata.analytics.saveCount == 1


def test_metadata_for_missing_canvas_raises_not_found(stores) -> None:
    with pytest.raises(CanvasNotFound):
        stores.metadata_store.get_metadata("missing", OWNER)
    with pytest.raises(CanvasNotFound):
        stores.metadata_store.add_tags("missing", OWNER, ["x"])


def test_search_matches_any_tag_and_title_text(stores) -> None:
    stores.coordinator.save(make_document("c1", ["A"], title="Project plan"), OWNER)
    stores.coordinator.save(make_document("c2", ["A"], title="Groceries"), OWNER)
    stores.coordinator.save(make_document("c3", ["A"], title="Project retro"), OWNER)
    stores.metadata_store.add_tags("c1", OWNER, ["work"])
    stores.metadata_store.add_tags("c2", OWNER, ["home"])
    stores.metadata_store.add_tags("c3", OWNER, ["work", "review"])

    by_tag = stores.metadata_store.search_by_tags(OWNER, ["work", "home"])
    assert {item.id for item in by_tag.canvases} == {"c1", "c2", "c3"}

    narrowed = stores.metadata_store.search_by_tags(OWNER, ["work"], query="retro")
    assert [item.id for item in narrowed.canvases] == ["c3"]

    by_text = stores.metadata_store.search_by_tags(OWNER, [], query="project")
    assert {item.id for item in by_text.canvases} == {"c1", "c3"}

    assert stores.metadata_store.search_by_tags("someone-else", ["work"]).canvases == []


def test_active_canvas_follows_last_save_and_clears_on_delete(stores) -> None:
    assert stores.metadata_store.get_active_canvas(OWNER) is None

    stores.coordinator.save(make_document("c1", ["A"]), OWNER, session_id="s1")
    stores.coordinator.save(make_document("c2", ["A"]), OWNER, session_id="s2")

    active = stores.metadata_store.get_active_canvas(OWNER)
    assert active.activeCanvasId == "c2"
    assert active.sessionId == "s2"

    stores.canvas_store.delete_canvas("c2", OWNER)
    assert stores.metadata_store.get_active_canvas(OWNER) is None


def test_sessions_accumulate_and_are_owner_bound(stores) -> None:
    stores.metadata_store.touch_session("s1", OWNER, canvas_id="c1", saved=True)
    session = stores.metadata_store.touch_session("s1", OWNER, failed=True)

    assert session.canvasId == "c1"
    assert session.saveCount == 1
    assert session.errorCount == 1

    with pytest.raises(CanvasStoreError) as exc_info:
        stores.metadata_store.touch_session("s1", "intruder", saved=True)
    assert exc_info.value.status_code == 403
    assert exc_info.value.code == "SESSION_OWNER_MISMATCH"

    with pytest.raises(CanvasStoreError) as exc_info:
        stores.metadata_store.get_session("s1", "intruder")
    assert exc_info.value.code == "SESSION_NOT_FOUND"
    with pytest.raises(CanvasStoreError) as exc_info:
        stores.metadata_store.get_session("missing", OWNER)
    assert exc_info.value.status_code == 404


def test_late_record_of_older_save_does_not_move_version_backwards(stores) -> None:
    stores.coordinator.save(make_document("c1", ["A"]), OWNER)

    stores.metadata_store.record_save(
        "c1", OWNER, version=5, save_type="manual", node_count=3, edge_count=2, message_count=4
    )
    stores.metadata_store.record_save(
        "c1", OWNER, version=4, save_type="auto", node_count=1, edge_count=0, message_count=0
    )

    metadata = stores.metadata_store.get_metadata("c1", OWNER)
    assert metadata.versioning.currentVersion == 5
    assert metadata.versioning.lastSaveType == "manual"
    assert metadata.analytics.nodeCount == 3
    assert metadata.analytics.edgeCount == 2
    assert metadata.analytics.messageCount == 4
    assert metadata.analytics.saveCount == 3
