from __future__ import annotations

import importlib
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from canvasapi.backup_store import BackupManager
from canvasapi.canvas_contract import CanvasDocumentV1
from canvasapi.canvas_store import CanvasStore
from canvasapi.metadata_store import MetadataStore
from canvasapi.preferences_store import PreferencesStore
from canvasapi.save_coordinator import VersionedSaveCoordinator
from canvasapi.schema import RuntimeDatabase, SchemaBootstrapper
from canvasapi.thread_store import ThreadStore


canvasapi_module = importlib.import_module("canvasapi.app")

OWNER = "user-1"


def make_document(canvas_id: str, node_ids: list[str], edges: list[tuple[str, str]] | None = None, **extra):
    return CanvasDocumentV1.model_validate(
        {
            "id": canvas_id,
            "title": extra.pop("title", f"{canvas_id} title"),
            "nodes": [
                {"id": node_id, "type": "branch", "position": {"x": index * 10, "y": 0}}
                for index, node_id in enumerate(node_ids)
            ],
            "edges": [
                {"id": f"e-{source}-{target}", "from": source, "to": target}
                for source, target in (edges or [])
            ],
            **extra,
        }
    )


@pytest.fixture(autouse=True)
def _reset_schema_registry():
    SchemaBootstrapper.reset_registry()
    yield
    SchemaBootstrapper.reset_registry()


@pytest.fixture()
def runtime_db_path(tmp_path):
    return tmp_path / "runtime.v1.sqlite3"


@pytest.fixture()
def stores(runtime_db_path):
    sleeps: list[float] = []
    database = RuntimeDatabase(runtime_db_path)
    canvas_store = CanvasStore(database)
    preferences_store = PreferencesStore(database)
    metadata_store = MetadataStore(database)
    backup_manager = BackupManager(database, canvas_store, preferences_store, metadata_store)
    coordinator = VersionedSaveCoordinator(
        canvas_store,
        backup_manager,
        metadata_store,
        sleep=sleeps.append,
    )
    return SimpleNamespace(
        database=database,
        canvas_store=canvas_store,
        preferences_store=preferences_store,
        metadata_store=metadata_store,
        backup_manager=backup_manager,
        coordinator=coordinator,
        thread_store=ThreadStore(database),
        sleeps=sleeps,
    )


@pytest.fixture()
def client(stores, monkeypatch):
    monkeypatch.setattr(canvasapi_module, "database", stores.database)
    monkeypatch.setattr(canvasapi_module, "canvas_store", stores.canvas_store)
    monkeypatch.setattr(canvasapi_module, "preferences_store", stores.preferences_store)
    monkeypatch.setattr(canvasapi_module, "metadata_store", stores.metadata_store)
    monkeypatch.setattr(canvasapi_module, "backup_manager", stores.backup_manager)
    monkeypatch.setattr(canvasapi_module, "save_coordinator", stores.coordinator)
    monkeypatch.setattr(canvasapi_module, "thread_store", stores.thread_store)

    return TestClient(canvasapi_module.app, headers={"X-User-Id": OWNER})
