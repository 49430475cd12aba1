from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .message_shapes import validate_message, validate_messages

CANVAS_SCHEMA_VERSION = "v1"
CANVAS_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
RECORD_ONLY_FIELDS = frozenset({"schemaVersion", "ownerId", "version", "createdAt", "updatedAt"})

NodeType = Literal[
    "entry",
    "branch",
    "context",
    "externalContext",
    "llmCall",
    "userMessage",
    "group",
]
SaveType = Literal["auto", "manual", "scheduled"]


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: ErrorBody


class PositionV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: float = 0.0
    y: float = 0.0


class ViewportV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: float = 0.0
    y: float = 0.0
    zoom: float = Field(default=1.0, gt=0)


class NodeV1(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "_id"))
    type: NodeType = "branch"
    position: PositionV1 = Field(default_factory=PositionV1)
    chatMessages: list[dict[str, Any]] = Field(default_factory=list)
    parentNodeId: str | None = None
    forkedFromMessageId: str | None = None

    @field_validator("chatMessages")
    @classmethod
    def validate_chat_messages(cls, values: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [validate_message(item) for item in values]

    @model_validator(mode="after")
    def validate_message_ids(self) -> "NodeV1":
        validate_messages(self.id, self.chatMessages)
        return self


class EdgeV1(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "_id"))
    from_: str = Field(
        min_length=1,
        validation_alias=AliasChoices("from", "source", "from_"),
        serialization_alias="from",
    )
    to: str = Field(min_length=1, validation_alias=AliasChoices("to", "target"))
    meta: dict[str, Any] = Field(default_factory=dict)


class CanvasContentV1(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = Field(default="Untitled Canvas", max_length=200)
    nodes: list[NodeV1] = Field(default_factory=list)
    edges: list[EdgeV1] = Field(default_factory=list)
    note: str | None = None
    viewport: ViewportV1 | None = None
    primaryNodeId: str | None = None
    metaTags: list[str] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        text = str(value).strip()
        return text or "Untitled Canvas"

    @field_validator("nodes")
    @classmethod
    def validate_unique_node_ids(cls, values: list[NodeV1]) -> list[NodeV1]:
        seen: set[str] = set()
        for node in values:
            if node.id in seen:
                raise ValueError(f"Duplicate node id '{node.id}'.")
            seen.add(node.id)
        return values

    @field_validator("edges")
    @classmethod
    def validate_unique_edge_ids(cls, values: list[EdgeV1]) -> list[EdgeV1]:
        seen: set[str] = set()
        for edge in values:
            if edge.id in seen:
                raise ValueError(f"Duplicate edge id '{edge.id}'.")
            seen.add(edge.id)
        return values


class CanvasDocumentV1(CanvasContentV1):
    id: str = Field(validation_alias=AliasChoices("id", "_id"))

    @field_validator("id")
    @classmethod
    def validate_canvas_id(cls, value: str) -> str:
        canvas_id = str(value).strip()
        if not CANVAS_ID_PATTERN.fullmatch(canvas_id):
            raise ValueError("canvas id must match ^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
        return canvas_id


class CanvasCreateRequestV1(CanvasContentV1):
    id: str | None = None


class CanvasPatchV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, max_length=200)
    nodes: list[NodeV1] | None = None
    edges: list[EdgeV1] | None = None
    note: str | None = None
    viewport: ViewportV1 | None = None
    primaryNodeId: str | None = None
    metaTags: list[str] | None = None
    settings: dict[str, Any] | None = None


class CanvasRecordV1(CanvasDocumentV1):
    schemaVersion: Literal["v1"] = CANVAS_SCHEMA_VERSION
    ownerId: str
    version: int = Field(ge=1)
    createdAt: str
    updatedAt: str


class CanvasSummaryV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    version: int
    nodeCount: int
    edgeCount: int
    createdAt: str
    updatedAt: str


class CanvasListResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    canvases: list[CanvasSummaryV1]


class NoteUpdateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    note: str | None = None


class LayoutUpdateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    positions: dict[str, PositionV1] = Field(default_factory=dict)
    viewport: ViewportV1 | None = None


class NodeMessagesRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    messages: list[dict[str, Any]]

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, values: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [validate_message(item) for item in values]


class SaveOptionsV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    saveType: SaveType = "auto"
    createBackup: bool = False
    retryCount: int | None = Field(default=None, ge=1, le=10)
    baseVersion: int | None = Field(default=None, ge=0)


class SaveRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    canvas: CanvasDocumentV1
    sessionId: str | None = None
    options: SaveOptionsV1 = Field(default_factory=SaveOptionsV1)


class SaveResultV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: Literal[True] = True
    canvasId: str
    version: int = Field(ge=1)
    sessionId: str
    backupId: str | None = None
    conflictResolved: bool = False
    timestamp: str


class SaveFailureV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: Literal[False] = False
    error: ErrorBody
    sessionId: str | None = None
    timestamp: str


class BackupMetadataV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodeCount: int = 0
    edgeCount: int = 0
    messageCount: int = 0


class BackupV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    canvasId: str
    ownerId: str
    backupType: SaveType
    document: CanvasDocumentV1
    sizeBytes: int = Field(ge=0)
    version: int = Field(ge=1)
    metadata: BackupMetadataV1
    createdAt: str


class BackupSummaryV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    backupType: SaveType
    createdAt: str
    sizeBytes: int
    version: int


class BackupListResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backups: list[BackupSummaryV1]


class BackupCreateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backupType: SaveType = "manual"


class PruneRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    canvasId: str | None = None


class PruneResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deletedCount: int


class SavePreferencesV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    autoSaveIntervalMs: int = Field(default=30_000, ge=1_000, le=3_600_000)
    maxBackupCount: int = Field(default=10, ge=1, le=1_000)
    saveOnExit: bool = True
    compressionEnabled: bool = False


class SavePreferencesUpdateV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    autoSaveIntervalMs: int | None = Field(default=None, ge=1_000, le=3_600_000)
    maxBackupCount: int | None = Field(default=None, ge=1, le=1_000)
    saveOnExit: bool | None = None
    compressionEnabled: bool | None = None


class AnalyticsV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    saveCount: int = 0
    conflictCount: int = 0
    nodeCount: int = 0
    edgeCount: int = 0
    messageCount: int = 0
    lastActivity: str | None = None


class VersioningSummaryV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    currentVersion: int = 0
    lastSavedAt: str | None = None
    lastSaveType: SaveType | None = None


class BackupStatsV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backupCount: int = 0
    lastBackupAt: str | None = None


class ConversationMetadataV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    canvasId: str
    ownerId: str
    analytics: AnalyticsV1 = Field(default_factory=AnalyticsV1)
    versioning: VersioningSummaryV1 = Field(default_factory=VersioningSummaryV1)
    backup: BackupStatsV1 = Field(default_factory=BackupStatsV1)
    tags: list[str] = Field(default_factory=list)


class TagsRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tags: list[str] = Field(min_length=1)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, values: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw in values:
            tag = str(raw).strip().lower()
            if not tag:
                raise ValueError("tags must not be empty.")
            if tag not in normalized:
                normalized.append(tag)
        return normalized


class CanvasSessionV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sessionId: str
    ownerId: str
    canvasId: str | None = None
    startedAt: str
    lastActivity: str
    saveCount: int = 0
    errorCount: int = 0


class ActiveCanvasV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ownerId: str
    activeCanvasId: str
    sessionId: str | None = None
    lastAccessed: str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utcnow().isoformat(timespec="microseconds")


def node_payload(node: NodeV1) -> dict[str, Any]:
    return node.model_dump(mode="json", by_alias=True, exclude_none=True)


def edge_payload(edge: EdgeV1) -> dict[str, Any]:
    return edge.model_dump(mode="json", by_alias=True, exclude_none=True)


def document_payload(document: CanvasContentV1) -> dict[str, Any]:
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)


def record_document_payload(document: CanvasContentV1) -> dict[str, Any]:
    payload = document_payload(document)
    return {key: value for key, value in payload.items() if key not in RECORD_ONLY_FIELDS}


def serialize_document(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
