"""
Data model shared by the generation-to-workspace pipeline.
"""

from enum import Enum

from pydantic import BaseModel, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    role: Role
    content: str


class StepKind(str, Enum):
    CREATE_FILE = "CreateFile"
    RUN_COMMAND = "RunCommand"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class Step(BaseModel):
    id: int
    kind: StepKind
    path: str | None = None  # CreateFile only
    content: str = ""
    status: StepStatus = StepStatus.PENDING


class NodeKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class FileNode(BaseModel):
    """One node of the workspace tree. `path` is root-relative, slash-separated."""

    name: str
    kind: NodeKind
    path: str
    content: str | None = None  # files only
    children: list["FileNode"] = Field(default_factory=list)  # folders only

    def child(self, name: str) -> "FileNode | None":
        return next((c for c in self.children if c.name == name), None)


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    MOUNTING = "mounting"
    INSTALLING = "installing"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class SyncResult(BaseModel):
    state: SyncState
    preview_url: str | None = None
    error: str | None = None
    exit_code: int | None = None
    installed: bool = False  # install ran during this call

    @property
    def ok(self) -> bool:
        return self.state == SyncState.READY
