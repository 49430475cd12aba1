from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .canvas_contract import PositionV1, ViewportV1

DEFAULT_THREAD_TITLE = "New Conversation"
DEFAULT_MAX_CHECKPOINTS = 50


class ThreadSettingsV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    autoCheckpoint: bool = True
    checkpointInterval: int = Field(default=10, ge=1)
    maxCheckpoints: int = Field(default=DEFAULT_MAX_CHECKPOINTS, ge=1, le=1_000)


class ThreadMetadataV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    totalNodes: int = 0
    totalCheckpoints: int = 0
    totalMessages: int = 0
    tags: list[str] = Field(default_factory=list)


class ThreadV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    threadId: str
    ownerId: str
    title: str
    description: str | None = None
    isActive: bool = True
    settings: ThreadSettingsV1 = Field(default_factory=ThreadSettingsV1)
    metadata: ThreadMetadataV1 = Field(default_factory=ThreadMetadataV1)
    createdAt: str
    lastModified: str


class ThreadCreateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(default=DEFAULT_THREAD_TITLE, max_length=200)
    description: str | None = None
    settings: ThreadSettingsV1 = Field(default_factory=ThreadSettingsV1)
    tags: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        return str(value).strip() or DEFAULT_THREAD_TITLE

    @field_validator("description")
    @classmethod
    def validate_description(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class ThreadUpdateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, max_length=200)
    description: str | None = None
    isActive: bool | None = None
    settings: ThreadSettingsV1 | None = None
    tags: list[str] | None = None


class ThreadListResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    threads: list[ThreadV1]


class CheckpointCanvasDataV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    viewport: ViewportV1 = Field(default_factory=ViewportV1)


class CheckpointMetadataV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodeCount: int = 0
    edgeCount: int = 0
    version: int = Field(default=1, ge=1)
    isAutoCheckpoint: bool = False


class ThreadCheckpointV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    checkpointId: str
    threadId: str
    ownerId: str
    name: str
    description: str | None = None
    canvasData: CheckpointCanvasDataV1
    metadata: CheckpointMetadataV1
    createdAt: str


class CheckpointCreateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", max_length=200)
    description: str | None = None
    canvasData: CheckpointCanvasDataV1 = Field(default_factory=CheckpointCanvasDataV1)
    isAutoCheckpoint: bool = False


class CheckpointListResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    checkpoints: list[ThreadCheckpointV1]


class ThreadNodeConnectionsV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    incoming: list[str] = Field(default_factory=list)
    outgoing: list[str] = Field(default_factory=list)


class ThreadNodeMetadataV1(BaseModel):
    model_config = ConfigDict(extra="allow")

    isSystemNode: bool = False
    parentNodeId: str | None = None
    depth: int = Field(default=0, ge=0)
    tokens: int | None = None
    model: str | None = None


class ThreadNodeV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodeId: str
    threadId: str
    ownerId: str
    checkpointId: str | None = None
    nodeType: str = "message"
    content: str = ""
    position: PositionV1 = Field(default_factory=PositionV1)
    connections: ThreadNodeConnectionsV1 = Field(default_factory=ThreadNodeConnectionsV1)
    metadata: ThreadNodeMetadataV1 = Field(default_factory=ThreadNodeMetadataV1)
    createdAt: str
    lastModified: str


class ThreadNodeCreateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    checkpointId: str | None = None
    nodeType: str = Field(default="message", min_length=1)
    content: str = ""
    position: PositionV1 = Field(default_factory=PositionV1)
    connections: ThreadNodeConnectionsV1 = Field(default_factory=ThreadNodeConnectionsV1)
    metadata: ThreadNodeMetadataV1 = Field(default_factory=ThreadNodeMetadataV1)


class ThreadNodeUpdateRequestV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    checkpointId: str | None = None
    nodeType: str | None = Field(default=None, min_length=1)
    content: str | None = None
    position: PositionV1 | None = None
    connections: ThreadNodeConnectionsV1 | None = None
    metadata: ThreadNodeMetadataV1 | None = None


class ThreadNodeListResponseV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodes: list[ThreadNodeV1]


class ThreadDetailV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    thread: ThreadV1
    checkpoints: list[ThreadCheckpointV1]
    nodes: list[ThreadNodeV1]
