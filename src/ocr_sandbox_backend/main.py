from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import (
    BadRequest,
    Conflict,
    MalformedDocument,
    NotAvailable,
    NotFound,
    PreconditionFailed,
    SandboxBackendError,
    ServiceUnavailable,
    TrackNotFound,
)
from .models import (
    Collection,
    CollectionCreateRequest,
    CollectionRequest,
    CollectionSet,
    ConfigMetadata,
    JobDetail,
    JobHandle,
    JobSummary,
    LockRequest,
    Project,
    PublishResponse,
    SandboxCreateRequest,
    SandboxStateRequest,
    SandboxSummary,
    ScheduleRequest,
    SnapshotUpdateRequest,
    SnapshotView,
    TrackRequest,
    WorkflowSummary,
    ZipRequest,
)
from .service import SandboxService

WORKSPACE_ENV_VARIABLE = "OCR_SANDBOX_WORKSPACE"

STATUS_CODES = {
    TrackNotFound: 404,
    NotFound: 404,
    Conflict: 409,
    NotAvailable: 403,
    PreconditionFailed: 412,
    BadRequest: 400,
    MalformedDocument: 400,
    ServiceUnavailable: 503,
}

workspace = os.environ.get(WORKSPACE_ENV_VARIABLE)
sandbox_service = SandboxService(workspace=Path(workspace) if workspace else None)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    sandbox_service.shutdown(wait=False)


app = FastAPI(title="OCR Sandbox API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service() -> SandboxService:
    return sandbox_service


@app.exception_handler(SandboxBackendError)
def handle_backend_error(request: Request, exc: SandboxBackendError) -> JSONResponse:
    status_code = next((code for error, code in STATUS_CODES.items() if isinstance(exc, error)), 500)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/config/defaults", response_model=ConfigMetadata)
def get_config_defaults(service: SandboxService = Depends(get_service)) -> ConfigMetadata:
    return service.get_config_metadata()


@app.put("/projects/{project_id}", response_model=Project)
def register_project(project_id: str, project: Project, service: SandboxService = Depends(get_service)) -> Project:
    if project.id != project_id:
        raise BadRequest(f"project id '{project.id}' does not match the path")
    return service.register_project(project)


@app.get("/projects/{project_id}/sandboxes", response_model=List[SandboxSummary])
def list_sandboxes(project_id: str, service: SandboxService = Depends(get_service)) -> List[SandboxSummary]:
    return service.list_sandboxes(project_id)


@app.post("/projects/{project_id}/sandboxes", response_model=SandboxSummary, status_code=201)
def create_sandbox(
    project_id: str, request: SandboxCreateRequest, service: SandboxService = Depends(get_service)
) -> SandboxSummary:
    return service.create_sandbox(
        project_id,
        request.id,
        name=request.name,
        state=request.state,
        label=request.label,
        description=request.description,
    )


@app.put("/projects/{project_id}/sandboxes/{sandbox_id}/state", response_model=SandboxSummary)
def set_sandbox_state(
    project_id: str, sandbox_id: str, request: SandboxStateRequest, service: SandboxService = Depends(get_service)
) -> SandboxSummary:
    return service.set_sandbox_state(project_id, sandbox_id, request.state)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot", response_model=SnapshotView)
def get_snapshot(
    project_id: str, sandbox_id: str, request: TrackRequest, service: SandboxService = Depends(get_service)
) -> SnapshotView:
    return service.get_snapshot(project_id, sandbox_id, request.track)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/derived", response_model=List[SnapshotView])
def get_derived(
    project_id: str, sandbox_id: str, request: TrackRequest, service: SandboxService = Depends(get_service)
) -> List[SnapshotView]:
    return service.get_derived(project_id, sandbox_id, request.track)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/path", response_model=List[SnapshotView])
def get_path(
    project_id: str, sandbox_id: str, request: TrackRequest, service: SandboxService = Depends(get_service)
) -> List[SnapshotView]:
    return service.get_path(project_id, sandbox_id, request.track)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/files", response_model=List[str])
def list_files(
    project_id: str, sandbox_id: str, request: TrackRequest, service: SandboxService = Depends(get_service)
) -> List[str]:
    return service.list_files(project_id, sandbox_id, request.track)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/lock", response_model=SnapshotView)
def lock_snapshot(
    project_id: str, sandbox_id: str, request: LockRequest, service: SandboxService = Depends(get_service)
) -> SnapshotView:
    return service.lock_snapshot(project_id, sandbox_id, request.track, request.source, request.comment)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/unlock", response_model=SnapshotView)
def unlock_snapshot(
    project_id: str, sandbox_id: str, request: TrackRequest, service: SandboxService = Depends(get_service)
) -> SnapshotView:
    return service.unlock_snapshot(project_id, sandbox_id, request.track)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/update", response_model=SnapshotView)
def update_snapshot(
    project_id: str, sandbox_id: str, request: SnapshotUpdateRequest, service: SandboxService = Depends(get_service)
) -> SnapshotView:
    return service.update_snapshot(project_id, sandbox_id, request.track, request.label, request.description)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/remove")
def remove_snapshot(
    project_id: str, sandbox_id: str, request: TrackRequest, service: SandboxService = Depends(get_service)
) -> Dict[str, bool]:
    return {"removed": service.remove_snapshot(project_id, sandbox_id, request.track)}


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/reset")
def reset_sandbox(project_id: str, sandbox_id: str, service: SandboxService = Depends(get_service)) -> Dict[str, bool]:
    return {"reset": service.reset_sandbox(project_id, sandbox_id)}


@app.get("/workflows", response_model=List[WorkflowSummary])
def list_workflows(service: SandboxService = Depends(get_service)) -> List[WorkflowSummary]:
    return service.list_workflows()


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/jobs", response_model=JobHandle, status_code=202)
def schedule_job(
    project_id: str, sandbox_id: str, request: ScheduleRequest, service: SandboxService = Depends(get_service)
) -> JobHandle:
    return service.schedule(
        project_id, sandbox_id, request.track, request.workflow_id, request.short_description, request.parameters
    )


@app.get("/jobs", response_model=List[JobSummary])
def list_jobs(service: SandboxService = Depends(get_service)) -> List[JobSummary]:
    return service.list_jobs()


@app.delete("/jobs")
def expunge_jobs(service: SandboxService = Depends(get_service)) -> Dict[str, int]:
    return {"removed": service.expunge_jobs()}


@app.get("/jobs/{job_id}", response_model=JobDetail)
def get_job(job_id: str, service: SandboxService = Depends(get_service)) -> JobDetail:
    return service.get_job(job_id)


@app.post("/jobs/{job_id}/cancel", response_model=JobHandle)
def cancel_job(job_id: str, service: SandboxService = Depends(get_service)) -> JobHandle:
    return service.cancel_job(job_id)


@app.delete("/jobs/{job_id}")
def remove_job(job_id: str, service: SandboxService = Depends(get_service)) -> Dict[str, str]:
    service.remove_job(job_id)
    return {"status": "removed"}


@app.post("/collections", response_model=Collection, status_code=201)
def create_collection(request: CollectionCreateRequest, service: SandboxService = Depends(get_service)) -> Collection:
    return service.create_collection(request.id, request.name)


@app.get("/collections/{collection_id}/sets", response_model=List[CollectionSet])
def list_collection_sets(collection_id: str, service: SandboxService = Depends(get_service)) -> List[CollectionSet]:
    return service.list_collection_sets(collection_id)


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/collection", response_model=List[CollectionSet])
def add_snapshot_to_collection(
    project_id: str, sandbox_id: str, request: CollectionRequest, service: SandboxService = Depends(get_service)
) -> List[CollectionSet]:
    return service.add_snapshot_to_collection(
        project_id, sandbox_id, request.track, request.collection_id, request.sets, request.keywords
    )


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/zip")
def zip_snapshot(
    project_id: str, sandbox_id: str, request: ZipRequest, service: SandboxService = Depends(get_service)
) -> StreamingResponse:
    archive = service.zip_snapshot(project_id, sandbox_id, request.track, request)
    name = "-".join(str(index) for index in request.track) or "root"
    return StreamingResponse(
        archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{sandbox_id}-{name}.zip"'},
    )


@app.post("/projects/{project_id}/sandboxes/{sandbox_id}/snapshot/publish", response_model=PublishResponse)
def publish_snapshot(
    project_id: str, sandbox_id: str, request: ZipRequest, service: SandboxService = Depends(get_service)
) -> PublishResponse:
    return service.publish_snapshot_archive(project_id, sandbox_id, request.track, request)
