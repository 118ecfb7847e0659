"""
Service boundary of the snapshot tree and job scheduling subsystem.

SandboxService wires the sandboxes, the scheduler, the collection bridge and
the exporter together and is the only entry point used by the HTTP layer.
Every public operation runs inside the same boundary: subsystem errors (see
errors.py) pass through unchanged, anything else is logged and reported as
ServiceUnavailable.
"""

from __future__ import annotations

import logging
from functools import wraps
from io import BytesIO
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .collection import CollectionBridge, LocalCollectionStore
from .configuration import build_config_metadata, make_runtime_config
from .database import JobDatabase
from .errors import NotFound, SandboxBackendError, ServiceUnavailable
from .export import zip_snapshot
from .job_manager import JobManager
from .mets import file_group_id_for
from .models import (
    Collection,
    CollectionSet,
    ConfigMetadata,
    JobDetail,
    JobHandle,
    JobSummary,
    Project,
    PublishResponse,
    SandboxState,
    SandboxSummary,
    SnapshotView,
    WorkflowSummary,
    ZipOptions,
)
from .s3_service import archive_key, publish_archive
from .sandbox import Sandbox, SandboxRegistry
from .snapshot_tree import normalize_track
from .workflow import ProviderRegistry, WorkflowRegistry, default_providers, default_workflows

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def boundary(method: F) -> F:
    """Let subsystem errors through and turn every other failure into ServiceUnavailable."""

    @wraps(method)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return method(*args, **kwargs)
        except SandboxBackendError:
            raise
        except Exception as exc:
            logger.exception(f"Unexpected failure in {method.__name__}")
            raise ServiceUnavailable(f"{method.__name__} failed, see the service log") from exc

    return wrapper  # type: ignore[return-value]


class ProjectRegistry:
    """Projects known to the service; project management itself lives elsewhere."""

    def __init__(self) -> None:
        self._projects: Dict[str, Project] = {}
        self._lock = Lock()

    def register(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = project
        return project

    def get(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
        if project is None:
            raise NotFound(f"unknown project '{project_id}'")
        return project

    def list(self) -> List[Project]:
        with self._lock:
            return sorted(self._projects.values(), key=lambda project: project.id)


class SandboxService:
    """
    Facade over sandboxes, jobs, collections and exports.

    Attributes:
        config: Effective runtime configuration (omegaconf)
        workspace: Root folder of projects, collections and the job database
    """

    def __init__(
        self,
        workspace: Optional[Path] = None,
        config_overrides: Optional[Dict[str, Any]] = None,
        providers: Optional[ProviderRegistry] = None,
        workflows: Optional[WorkflowRegistry] = None,
    ) -> None:
        self.config = make_runtime_config(config_overrides)
        self.workspace = Path(workspace or self.config.workspace.folder)
        self.projects = ProjectRegistry()
        self.sandboxes = SandboxRegistry(self.workspace / self.config.workspace.projects, self.config)
        self.collections = LocalCollectionStore(self.workspace / self.config.workspace.collections)
        self.bridge = CollectionBridge(self.collections, temporary_prefix=self.config.temporary.prefix)
        self.providers = providers or default_providers()
        self.workflows = workflows or default_workflows()

        database_path = self.config.scheduler.database
        database = JobDatabase(self.workspace / database_path) if database_path else None
        self.jobs = JobManager(self.providers, max_workers=self.config.scheduler.max_workers, database=database)
        self._config_metadata: Optional[ConfigMetadata] = None

    # -- projects and sandboxes ---------------------------------------------

    @boundary
    def register_project(self, project: Project) -> Project:
        return self.projects.register(project)

    @boundary
    def create_sandbox(
        self,
        project_id: str,
        sandbox_id: str,
        name: Optional[str] = None,
        state: SandboxState = SandboxState.ACTIVE,
        label: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SandboxSummary:
        self.projects.get(project_id)
        sandbox = self.sandboxes.create(project_id, sandbox_id, name=name, state=state, label=label, description=description)
        return _summary(sandbox)

    @boundary
    def list_sandboxes(self, project_id: str) -> List[SandboxSummary]:
        self.projects.get(project_id)
        return [_summary(sandbox) for sandbox in self.sandboxes.list(project_id)]

    @boundary
    def set_sandbox_state(self, project_id: str, sandbox_id: str, state: SandboxState) -> SandboxSummary:
        _, sandbox = self._context(project_id, sandbox_id)
        sandbox.set_state(state)
        return _summary(sandbox)

    # -- snapshot navigation ------------------------------------------------

    @boundary
    def get_snapshot(self, project_id: str, sandbox_id: str, track: Iterable[int]) -> SnapshotView:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_readable(project)
        return sandbox.view(normalize_track(track))

    @boundary
    def get_derived(self, project_id: str, sandbox_id: str, track: Iterable[int]) -> List[SnapshotView]:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_readable(project)
        return [snapshot.to_view() for snapshot in sandbox.get_derived(normalize_track(track))]

    @boundary
    def get_path(self, project_id: str, sandbox_id: str, track: Iterable[int]) -> List[SnapshotView]:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_readable(project)
        return [snapshot.to_view() for snapshot in sandbox.get_path(normalize_track(track))]

    @boundary
    def list_files(self, project_id: str, sandbox_id: str, track: Iterable[int]) -> List[str]:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_readable(project)
        return sandbox.list_files(normalize_track(track))

    # -- snapshot mutation --------------------------------------------------

    @boundary
    def lock_snapshot(
        self, project_id: str, sandbox_id: str, track: Iterable[int], source: str, comment: Optional[str] = None
    ) -> SnapshotView:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_executable(project)
        return sandbox.lock(normalize_track(track), source, comment).to_view()

    @boundary
    def unlock_snapshot(self, project_id: str, sandbox_id: str, track: Iterable[int]) -> SnapshotView:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_executable(project)
        return sandbox.unlock(normalize_track(track)).to_view()

    @boundary
    def update_snapshot(
        self,
        project_id: str,
        sandbox_id: str,
        track: Iterable[int],
        label: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SnapshotView:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_executable(project)
        return sandbox.update_configuration(normalize_track(track), label, description).to_view()

    @boundary
    def remove_snapshot(self, project_id: str, sandbox_id: str, track: Iterable[int]) -> bool:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_executable(project)
        return sandbox.remove(normalize_track(track))

    @boundary
    def reset_sandbox(self, project_id: str, sandbox_id: str) -> bool:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_executable(project)
        return sandbox.reset_root()

    # -- jobs ---------------------------------------------------------------

    @boundary
    def list_workflows(self) -> List[WorkflowSummary]:
        return [
            WorkflowSummary(
                id=workflow.id,
                kind=workflow.kind,
                provider_id=workflow.provider_id,
                label=workflow.label,
                description=workflow.description,
            )
            for workflow in self.workflows.list()
        ]

    @boundary
    def schedule(
        self,
        project_id: str,
        sandbox_id: str,
        track: Iterable[int],
        workflow_id: str,
        short_description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        project, sandbox = self._context(project_id, sandbox_id)
        workflow = self.workflows.get(workflow_id)
        return self.jobs.schedule(project, sandbox, normalize_track(track), workflow, short_description, parameters)

    @boundary
    def cancel_job(self, job_id: str) -> JobHandle:
        return self.jobs.cancel(job_id)

    @boundary
    def list_jobs(self) -> List[JobSummary]:
        return self.jobs.list_jobs()

    @boundary
    def get_job(self, job_id: str) -> JobDetail:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise NotFound(f"unknown job '{job_id}'")
        return job

    @boundary
    def wait_job(self, job_id: str, timeout: Optional[float] = None) -> JobDetail:
        return self.jobs.wait(job_id, timeout)

    @boundary
    def remove_job(self, job_id: str) -> bool:
        if not self.jobs.remove_done(job_id):
            raise NotFound(f"unknown job '{job_id}'")
        return True

    @boundary
    def expunge_jobs(self) -> int:
        return self.jobs.expunge_done()

    # -- collections and export ---------------------------------------------

    @boundary
    def create_collection(self, collection_id: str, name: Optional[str] = None) -> Collection:
        return self.collections.create_collection(collection_id, name)

    @boundary
    def list_collection_sets(self, collection_id: str) -> List[CollectionSet]:
        return self.collections.sets(self.collections.get(collection_id))

    @boundary
    def add_snapshot_to_collection(
        self,
        project_id: str,
        sandbox_id: str,
        track: Iterable[int],
        collection_id: str,
        folio_ids: Optional[Iterable[str]] = None,
        include_keywords: bool = False,
    ) -> List[CollectionSet]:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_readable(project)
        collection = self.collections.get(collection_id)
        return self.bridge.add_snapshot_to_collection(
            project, sandbox, normalize_track(track), collection, folio_ids, include_keywords
        )

    @boundary
    def zip_snapshot(
        self, project_id: str, sandbox_id: str, track: Iterable[int], options: Optional[ZipOptions] = None
    ) -> BytesIO:
        project, sandbox = self._context(project_id, sandbox_id)
        sandbox.ensure_readable(project)
        return zip_snapshot(
            project,
            sandbox,
            normalize_track(track),
            options,
            mapping_file=self.config.export.filename_mapping,
            source_prefix=self.config.export.source_prefix,
        )

    @boundary
    def publish_snapshot_archive(
        self, project_id: str, sandbox_id: str, track: Iterable[int], options: Optional[ZipOptions] = None
    ) -> PublishResponse:
        """Upload the snapshot archive to S3; the URL is None when S3 is not configured."""
        normalized = normalize_track(track)
        archive = self.zip_snapshot(project_id, sandbox_id, normalized, options)
        key = archive_key(project_id, sandbox_id, file_group_id_for("{track}", normalized))
        return PublishResponse(key=key, url=publish_archive(archive, key))

    @boundary
    def get_config_metadata(self) -> ConfigMetadata:
        if self._config_metadata is None:
            self._config_metadata = build_config_metadata()
        return self._config_metadata

    def shutdown(self, wait: bool = True) -> None:
        self.jobs.shutdown(wait=wait)

    def _context(self, project_id: str, sandbox_id: str) -> Tuple[Project, Sandbox]:
        return self.projects.get(project_id), self.sandboxes.get(project_id, sandbox_id)


def _summary(sandbox: Sandbox) -> SandboxSummary:
    return SandboxSummary(
        id=sandbox.id,
        project_id=sandbox.project_id,
        name=sandbox.name,
        state=sandbox.state,
        root=sandbox.view(()),
    )
