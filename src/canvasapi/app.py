from __future__ import annotations

import logging
import os
from typing import Any

import anyio
from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .backup_store import BackupManager
from .canvas_contract import (
    ActiveCanvasV1,
    BackupCreateRequestV1,
    BackupListResponseV1,
    BackupV1,
    CanvasCreateRequestV1,
    CanvasListResponseV1,
    CanvasPatchV1,
    CanvasRecordV1,
    CanvasSessionV1,
    ConversationMetadataV1,
    EdgeV1,
    ErrorBody,
    ErrorResponse,
    LayoutUpdateRequestV1,
    NodeMessagesRequestV1,
    NodeV1,
    NoteUpdateRequestV1,
    PruneRequestV1,
    PruneResponseV1,
    SaveFailureV1,
    SavePreferencesUpdateV1,
    SavePreferencesV1,
    SaveRequestV1,
    SaveResultV1,
    TagsRequestV1,
)
from .canvas_store import CanvasStore
from .errors import CanvasStoreError, InvalidCanvasPayload, require_owner, status_for_code
from .metadata_store import MetadataStore
from .preferences_store import PreferencesStore
from .save_coordinator import VersionedSaveCoordinator
from .schema import RuntimeDatabase
from .thread_contract import (
    CheckpointCreateRequestV1,
    CheckpointListResponseV1,
    ThreadCheckpointV1,
    ThreadCreateRequestV1,
    ThreadDetailV1,
    ThreadListResponseV1,
    ThreadNodeCreateRequestV1,
    ThreadNodeListResponseV1,
    ThreadNodeUpdateRequestV1,
    ThreadNodeV1,
    ThreadUpdateRequestV1,
    ThreadV1,
)
from .thread_store import ThreadStore

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = float(os.getenv("CANVASAPI_REQUEST_TIMEOUT_SECONDS", "15"))
MAX_REQUEST_BYTES = int(os.getenv("CANVASAPI_MAX_REQUEST_BYTES", "5242880"))
DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _cors_config() -> tuple[list[str], bool]:
    allow_credentials = _env_bool("CANVASAPI_CORS_ALLOW_CREDENTIALS", default=False)
    origins = [origin.strip() for origin in os.getenv("CANVASAPI_CORS_ORIGINS", "").split(",") if origin.strip()]
    if not origins:
        origins = list(DEFAULT_CORS_ORIGINS) if allow_credentials else ["*"]
    if allow_credentials and "*" in origins:
        raise RuntimeError("CORS with credentials requires explicit non-wildcard origins.")
    return origins, allow_credentials


app = FastAPI(
    title="CanvasAPI",
    description=(
        "Canvas persistence API. Versioned saves with optimistic concurrency, "
        "node-level editing, backups with retention, and conversation threads."
    ),
    version="1.0.0",
)

cors_origins, cors_allow_credentials = _cors_config()
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


database = RuntimeDatabase.from_env()
canvas_store = CanvasStore(database)
preferences_store = PreferencesStore(database)
metadata_store = MetadataStore(database)
backup_manager = BackupManager(database, canvas_store, preferences_store, metadata_store)
save_coordinator = VersionedSaveCoordinator.from_env(canvas_store, backup_manager, metadata_store)
thread_store = ThreadStore(database)


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(CanvasStoreError)
async def canvas_store_error_handler(request: Request, exc: CanvasStoreError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(
        422,
        "INVALID_REQUEST",
        "Request validation failed.",
        {"errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, "INTERNAL_ERROR", "Unexpected server error.")


@app.middleware("http")
async def request_limits_and_timeout(request, call_next):
    content_length = request.headers.get("content-length")
    if content_length is not None:
        try:
            if int(content_length) > MAX_REQUEST_BYTES:
                return _error_response(413, "REQUEST_TOO_LARGE", "Request body too large.")
        except ValueError:
            return _error_response(400, "INVALID_CONTENT_LENGTH", "Invalid Content-Length header.")

    try:
        with anyio.fail_after(REQUEST_TIMEOUT_SECONDS):
            return await call_next(request)
    except TimeoutError:
        return _error_response(504, "REQUEST_TIMEOUT", "Request timed out.")


def current_owner(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    return require_owner(x_user_id)


def _save_response(result: SaveResultV1 | SaveFailureV1) -> JSONResponse:
    if isinstance(result, SaveFailureV1):
        return JSONResponse(status_code=status_for_code(result.error.code), content=result.model_dump())
    return JSONResponse(status_code=200, content=result.model_dump())


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/canvases", response_model=CanvasListResponseV1, tags=["canvases"], responses=ERROR_RESPONSES)
def list_canvases_v1(owner: str = Depends(current_owner)) -> CanvasListResponseV1:
    return canvas_store.list_canvases(owner)


@app.get("/v1/canvases/search", response_model=CanvasListResponseV1, tags=["metadata"], responses=ERROR_RESPONSES)
def search_canvases_v1(
    tags: list[str] | None = Query(default=None),
    q: str | None = Query(default=None),
    owner: str = Depends(current_owner),
) -> CanvasListResponseV1:
    return metadata_store.search_by_tags(owner, tags or [], query=q)


@app.post(
    "/v1/canvases",
    response_model=CanvasRecordV1,
    status_code=201,
    tags=["canvases"],
    responses={**ERROR_RESPONSES, 400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def create_canvas_v1(request: CanvasCreateRequestV1, owner: str = Depends(current_owner)) -> CanvasRecordV1:
    return canvas_store.create_canvas(request, owner)


@app.post(
    "/v1/canvases/default",
    response_model=CanvasRecordV1,
    status_code=201,
    tags=["canvases"],
    responses=ERROR_RESPONSES,
)
def create_default_canvas_v1(
    title: str = Query(default="New Canvas", max_length=200),
    owner: str = Depends(current_owner),
) -> CanvasRecordV1:
    return canvas_store.create_default_canvas(owner, title)


@app.get("/v1/canvases/{id}", response_model=CanvasRecordV1, tags=["canvases"], responses=ERROR_RESPONSES)
def get_canvas_v1(id: str, owner: str = Depends(current_owner)) -> CanvasRecordV1:
    return canvas_store.get_canvas(id, owner)


@app.patch(
    "/v1/canvases/{id}",
    response_model=CanvasRecordV1,
    tags=["canvases"],
    responses={**ERROR_RESPONSES, 400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def update_canvas_v1(id: str, patch: CanvasPatchV1, owner: str = Depends(current_owner)) -> CanvasRecordV1:
    return canvas_store.update_canvas(id, patch, owner)


@app.delete("/v1/canvases/{id}", status_code=204, tags=["canvases"], responses=ERROR_RESPONSES)
def delete_canvas_v1(id: str, owner: str = Depends(current_owner)) -> Response:
    canvas_store.delete_canvas(id, owner)
    return Response(status_code=204)


@app.post(
    "/v1/canvases/{id}/save",
    response_model=SaveResultV1,
    tags=["canvases"],
    responses={**ERROR_RESPONSES, 409: {"model": SaveFailureV1}},
)
def save_canvas_v1(id: str, request: SaveRequestV1, owner: str = Depends(current_owner)) -> JSONResponse:
    if request.canvas.id != id:
        raise InvalidCanvasPayload(
            "Canvas id in the body does not match the path.",
            details={"pathId": id, "bodyId": request.canvas.id},
        )
    result = save_coordinator.save(
        request.canvas,
        owner,
        session_id=request.sessionId,
        options=request.options,
    )
    return _save_response(result)


@app.post("/v1/canvases/{id}/resync", response_model=CanvasRecordV1, tags=["canvases"], responses=ERROR_RESPONSES)
def resync_canvas_v1(id: str, owner: str = Depends(current_owner)) -> CanvasRecordV1:
    return canvas_store.resync_canvas(id, owner)


@app.post("/v1/canvases/{id}/nodes", status_code=201, tags=["nodes"], responses=ERROR_RESPONSES)
def add_node_v1(id: str, node: NodeV1, owner: str = Depends(current_owner)) -> dict[str, Any]:
    return canvas_store.add_node(id, node, owner)


@app.patch("/v1/canvases/{id}/nodes/{node_id}", tags=["nodes"], responses=ERROR_RESPONSES)
def update_node_v1(
    id: str,
    node_id: str,
    patch: dict[str, Any] = Body(...),
    owner: str = Depends(current_owner),
) -> dict[str, Any]:
    return canvas_store.update_node(id, node_id, patch, owner)


@app.delete("/v1/canvases/{id}/nodes/{node_id}", status_code=204, tags=["nodes"], responses=ERROR_RESPONSES)
def remove_node_v1(id: str, node_id: str, owner: str = Depends(current_owner)) -> Response:
    canvas_store.remove_node(id, node_id, owner)
    return Response(status_code=204)


@app.put("/v1/canvases/{id}/nodes/{node_id}/messages", tags=["nodes"], responses=ERROR_RESPONSES)
def update_node_messages_v1(
    id: str,
    node_id: str,
    request: NodeMessagesRequestV1,
    owner: str = Depends(current_owner),
) -> dict[str, Any]:
    messages = canvas_store.update_node_messages(id, node_id, request.messages, owner)
    return {"nodeId": node_id, "messages": messages}


@app.post("/v1/canvases/{id}/edges", status_code=201, tags=["edges"], responses=ERROR_RESPONSES)
def add_edge_v1(id: str, edge: EdgeV1, owner: str = Depends(current_owner)) -> dict[str, Any]:
    return canvas_store.add_edge(id, edge, owner)


@app.delete("/v1/canvases/{id}/edges/{edge_id}", status_code=204, tags=["edges"], responses=ERROR_RESPONSES)
def remove_edge_v1(id: str, edge_id: str, owner: str = Depends(current_owner)) -> Response:
    canvas_store.remove_edge(id, edge_id, owner)
    return Response(status_code=204)


@app.put("/v1/canvases/{id}/note", response_model=CanvasRecordV1, tags=["canvases"], responses=ERROR_RESPONSES)
def update_note_v1(id: str, request: NoteUpdateRequestV1, owner: str = Depends(current_owner)) -> CanvasRecordV1:
    return canvas_store.update_note(id, request.note, owner)


@app.put("/v1/canvases/{id}/layout", response_model=CanvasRecordV1, tags=["canvases"], responses=ERROR_RESPONSES)
def update_layout_v1(
    id: str,
    request: LayoutUpdateRequestV1,
    owner: str = Depends(current_owner),
) -> CanvasRecordV1:
    return canvas_store.update_layout(id, request, owner)


@app.get(
    "/v1/canvases/{id}/backups",
    response_model=BackupListResponseV1,
    tags=["backups"],
    responses=ERROR_RESPONSES,
)
def list_backups_v1(
    id: str,
    limit: int = Query(default=10, ge=1, le=100),
    owner: str = Depends(current_owner),
) -> BackupListResponseV1:
    return backup_manager.list_backups(id, owner, limit=limit)


@app.post(
    "/v1/canvases/{id}/backups",
    response_model=BackupV1,
    status_code=201,
    tags=["backups"],
    responses=ERROR_RESPONSES,
)
def create_backup_v1(
    id: str,
    request: BackupCreateRequestV1 | None = None,
    owner: str = Depends(current_owner),
) -> BackupV1:
    backup_type = request.backupType if request is not None else "manual"
    return backup_manager.backup_canvas(id, owner, backup_type)


@app.get(
    "/v1/canvases/{id}/backups/{backup_id}",
    response_model=BackupV1,
    tags=["backups"],
    responses=ERROR_RESPONSES,
)
def get_backup_v1(id: str, backup_id: str, owner: str = Depends(current_owner)) -> BackupV1:
    return backup_manager.get_backup(id, backup_id, owner)


@app.post(
    "/v1/canvases/{id}/backups/{backup_id}/restore",
    response_model=SaveResultV1,
    tags=["backups"],
    responses={**ERROR_RESPONSES, 409: {"model": SaveFailureV1}},
)
def restore_backup_v1(
    id: str,
    backup_id: str,
    session_id: str | None = Query(default=None, alias="sessionId"),
    owner: str = Depends(current_owner),
) -> JSONResponse:
    result = backup_manager.restore(
        id,
        backup_id,
        owner,
        coordinator=save_coordinator,
        session_id=session_id,
    )
    return _save_response(result)


@app.post("/v1/backups/prune", response_model=PruneResponseV1, tags=["backups"], responses=ERROR_RESPONSES)
def prune_backups_v1(
    request: PruneRequestV1 | None = None,
    owner: str = Depends(current_owner),
) -> PruneResponseV1:
    canvas_id = request.canvasId if request is not None else None
    return PruneResponseV1(deletedCount=backup_manager.prune_backups(owner, canvas_id))


@app.get(
    "/v1/canvases/{id}/metadata",
    response_model=ConversationMetadataV1,
    tags=["metadata"],
    responses=ERROR_RESPONSES,
)
def get_metadata_v1(id: str, owner: str = Depends(current_owner)) -> ConversationMetadataV1:
    return metadata_store.get_metadata(id, owner)


@app.post(
    "/v1/canvases/{id}/metadata/tags",
    response_model=ConversationMetadataV1,
    tags=["metadata"],
    responses=ERROR_RESPONSES,
)
def add_tags_v1(id: str, request: TagsRequestV1, owner: str = Depends(current_owner)) -> ConversationMetadataV1:
    return metadata_store.add_tags(id, owner, request.tags)


@app.get("/v1/active-canvas", tags=["metadata"], responses=ERROR_RESPONSES)
def get_active_canvas_v1(owner: str = Depends(current_owner)) -> ActiveCanvasV1 | None:
    return metadata_store.get_active_canvas(owner)


@app.get("/v1/sessions/{session_id}", response_model=CanvasSessionV1, tags=["metadata"], responses=ERROR_RESPONSES)
def get_session_v1(session_id: str, owner: str = Depends(current_owner)) -> CanvasSessionV1:
    return metadata_store.get_session(session_id, owner)


@app.get("/v1/preferences", response_model=SavePreferencesV1, tags=["preferences"], responses=ERROR_RESPONSES)
def get_preferences_v1(owner: str = Depends(current_owner)) -> SavePreferencesV1:
    return preferences_store.get_preferences(owner)


@app.put("/v1/preferences", response_model=SavePreferencesV1, tags=["preferences"], responses=ERROR_RESPONSES)
def update_preferences_v1(
    patch: SavePreferencesUpdateV1,
    owner: str = Depends(current_owner),
) -> SavePreferencesV1:
    return preferences_store.update_preferences(owner, patch)


@app.get("/v1/threads", response_model=ThreadListResponseV1, tags=["threads"], responses=ERROR_RESPONSES)
def list_threads_v1(owner: str = Depends(current_owner)) -> ThreadListResponseV1:
    return thread_store.list_threads(owner)


@app.post("/v1/threads", response_model=ThreadV1, status_code=201, tags=["threads"], responses=ERROR_RESPONSES)
def create_thread_v1(request: ThreadCreateRequestV1, owner: str = Depends(current_owner)) -> ThreadV1:
    return thread_store.create_thread(request, owner)


@app.get("/v1/threads/{thread_id}", response_model=ThreadDetailV1, tags=["threads"], responses=ERROR_RESPONSES)
def get_thread_v1(thread_id: str, owner: str = Depends(current_owner)) -> ThreadDetailV1:
    return thread_store.get_thread(thread_id, owner)


@app.patch("/v1/threads/{thread_id}", response_model=ThreadV1, tags=["threads"], responses=ERROR_RESPONSES)
def update_thread_v1(
    thread_id: str,
    patch: ThreadUpdateRequestV1,
    owner: str = Depends(current_owner),
) -> ThreadV1:
    return thread_store.update_thread(thread_id, patch, owner)


@app.delete("/v1/threads/{thread_id}", status_code=204, tags=["threads"], responses=ERROR_RESPONSES)
def delete_thread_v1(thread_id: str, owner: str = Depends(current_owner)) -> Response:
    thread_store.delete_thread(thread_id, owner)
    return Response(status_code=204)


@app.get(
    "/v1/threads/{thread_id}/checkpoints",
    response_model=CheckpointListResponseV1,
    tags=["threads"],
    responses=ERROR_RESPONSES,
)
def list_checkpoints_v1(thread_id: str, owner: str = Depends(current_owner)) -> CheckpointListResponseV1:
    return thread_store.list_checkpoints(thread_id, owner)


@app.post(
    "/v1/threads/{thread_id}/checkpoints",
    response_model=ThreadCheckpointV1,
    status_code=201,
    tags=["threads"],
    responses=ERROR_RESPONSES,
)
def create_checkpoint_v1(
    thread_id: str,
    request: CheckpointCreateRequestV1,
    owner: str = Depends(current_owner),
) -> ThreadCheckpointV1:
    return thread_store.create_checkpoint(thread_id, request, owner)


@app.get(
    "/v1/checkpoints/{checkpoint_id}",
    response_model=ThreadCheckpointV1,
    tags=["threads"],
    responses=ERROR_RESPONSES,
)
def load_checkpoint_v1(checkpoint_id: str, owner: str = Depends(current_owner)) -> ThreadCheckpointV1:
    return thread_store.load_checkpoint(checkpoint_id, owner)


@app.delete("/v1/checkpoints/{checkpoint_id}", status_code=204, tags=["threads"], responses=ERROR_RESPONSES)
def delete_checkpoint_v1(checkpoint_id: str, owner: str = Depends(current_owner)) -> Response:
    thread_store.delete_checkpoint(checkpoint_id, owner)
    return Response(status_code=204)


@app.get(
    "/v1/threads/{thread_id}/nodes",
    response_model=ThreadNodeListResponseV1,
    tags=["threads"],
    responses=ERROR_RESPONSES,
)
def list_thread_nodes_v1(thread_id: str, owner: str = Depends(current_owner)) -> ThreadNodeListResponseV1:
    return thread_store.list_thread_nodes(thread_id, owner)


@app.post(
    "/v1/threads/{thread_id}/nodes",
    response_model=ThreadNodeV1,
    status_code=201,
    tags=["threads"],
    responses=ERROR_RESPONSES,
)
def add_thread_node_v1(
    thread_id: str,
    request: ThreadNodeCreateRequestV1,
    owner: str = Depends(current_owner),
) -> ThreadNodeV1:
    return thread_store.add_thread_node(thread_id, request, owner)


@app.patch(
    "/v1/threads/{thread_id}/nodes/{node_id}",
    response_model=ThreadNodeV1,
    tags=["threads"],
    responses=ERROR_RESPONSES,
)
def update_thread_node_v1(
    thread_id: str,
    node_id: str,
    patch: ThreadNodeUpdateRequestV1,
    owner: str = Depends(current_owner),
) -> ThreadNodeV1:
    return thread_store.update_thread_node(thread_id, node_id, patch, owner)


@app.delete(
    "/v1/threads/{thread_id}/nodes/{node_id}",
    status_code=204,
    tags=["threads"],
    responses=ERROR_RESPONSES,
)
def delete_thread_node_v1(thread_id: str, node_id: str, owner: str = Depends(current_owner)) -> Response:
    thread_store.delete_thread_node(thread_id, node_id, owner)
    return Response(status_code=204)
