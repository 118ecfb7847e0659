from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, NonNegativeInt

# A track addresses a snapshot by child index at each level, root = ().
Track = Tuple[int, ...]


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_done(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class StepKind(str, Enum):
    """Closed set of workflow step kinds.

    Only post-correction (LAREX) steps write page-addressable output that can
    be imported into a collection.
    """

    LAUNCHER = "launcher"
    PREPROCESSING = "preprocessing"
    LAYOUT = "layout"
    OCR = "ocr"
    POSTCORRECTION = "postcorrection"
    TOOL = "tool"

    @property
    def import_capable(self) -> bool:
        return self is StepKind.POSTCORRECTION


class ProjectState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"
    BLOCKED = "blocked"


class SandboxState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"
    SECURED = "secured"
    CANCELED = "canceled"


class ProjectRights(BaseModel):
    read: bool = False
    write: bool = False
    execute: bool = False
    special: bool = False


class Folio(BaseModel):
    id: str
    name: str
    format: str = "png"
    keywords: Optional[List[str]] = None


class Project(BaseModel):
    id: str
    name: str
    state: ProjectState = ProjectState.ACTIVE
    rights: ProjectRights = Field(default_factory=ProjectRights)
    folios: List[Folio] = Field(default_factory=list)
    images_folder: Optional[Path] = None

    def folio_ids(self) -> set[str]:
        return {folio.id for folio in self.folios}

    def folio_image(self, folio: Folio) -> Optional[Path]:
        if self.images_folder is None:
            return None
        return self.images_folder / f"{folio.id}.{folio.format}"


class StepOrigin(BaseModel):
    kind: StepKind
    provider_id: str
    workflow_id: Optional[str] = None
    job_id: Optional[str] = None


class SnapshotLock(BaseModel):
    source_id: str
    comment: Optional[str] = None
    timestamp: datetime


class SnapshotView(BaseModel):
    track: List[int]
    label: Optional[str] = None
    description: Optional[str] = None
    lock: Optional[SnapshotLock] = None
    child_count: int = 0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    step: Optional[StepOrigin] = None


class TrackRequest(BaseModel):
    track: List[NonNegativeInt] = Field(default_factory=list)


class LockRequest(TrackRequest):
    source: str = Field(min_length=1)
    comment: Optional[str] = None


class SnapshotUpdateRequest(TrackRequest):
    label: Optional[str] = None
    description: Optional[str] = None


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class JobHandle(BaseModel):
    id: str
    status: JobStatus


class JobSummary(JobHandle):
    project_id: str
    sandbox_id: str
    parent_track: List[int]
    workflow_id: str
    short_description: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    snapshot_track: Optional[List[int]] = None


class JobDetail(JobSummary):
    step_kind: StepKind
    provider_id: str
    parameters: Dict[str, Any]
    events: List[JobEvent]
    error: Optional[str] = None


class MetsFile(BaseModel):
    id: str
    path: str
    mime_type: Optional[str] = None


class FileGroup(BaseModel):
    id: str
    files: List[MetsFile] = Field(default_factory=list)


class PhysicalPage(BaseModel):
    id: str
    folio_id: str
    file_ids: List[str] = Field(default_factory=list)


class MetsDocument(BaseModel):
    created: Optional[str] = None
    file_groups: List[FileGroup] = Field(default_factory=list)
    pages: List[PhysicalPage] = Field(default_factory=list)

    def file_group(self, group_id: str) -> Optional[FileGroup]:
        for group in self.file_groups:
            if group.id == group_id:
                return group
        return None


class Collection(BaseModel):
    id: str
    name: str
    folder: Path


class CollectionSet(BaseModel):
    id: str
    name: str
    created: datetime
    user: Optional[str] = None
    keywords: Optional[List[str]] = None
    files: List[str] = Field(default_factory=list)


class CollectionRequest(TrackRequest):
    collection_id: str
    sets: Optional[List[str]] = None
    keywords: bool = False


class ZipOptions(BaseModel):
    normalize_filenames: bool = False
    include_source_images: bool = False


class ZipRequest(TrackRequest, ZipOptions):
    pass


class ScheduleRequest(TrackRequest):
    workflow_id: str
    short_description: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ConfigMetadata(BaseModel):
    defaults: Dict[str, Any]
    step_kinds: List[str]
    sandbox_states: List[str]
    notes: Dict[str, str]


class SandboxSummary(BaseModel):
    id: str
    project_id: str
    name: str
    state: SandboxState
    root: SnapshotView


class SandboxCreateRequest(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    state: SandboxState = SandboxState.ACTIVE
    label: Optional[str] = None
    description: Optional[str] = None


class SandboxStateRequest(BaseModel):
    state: SandboxState


class WorkflowSummary(BaseModel):
    id: str
    kind: StepKind
    provider_id: str
    label: Optional[str] = None
    description: Optional[str] = None


class CollectionCreateRequest(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None


class PublishResponse(BaseModel):
    key: str
    url: Optional[str] = None
