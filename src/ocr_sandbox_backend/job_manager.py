"""
Job scheduling and lifecycle management for sandbox workflow steps.

This module manages the end-to-end lifecycle of processing jobs:
- Availability checks and job registration
- Asynchronous step execution on a bounded thread pool
- Status tracking and event logging
- Cooperative cancellation
- Attaching the step output to the snapshot tree

A job is bound to a project, a sandbox, a parent track and a workflow
definition. The provider writes into a staging folder outside the snapshot
tree; only when it succeeds is the folder moved into the tree as a new
derived snapshot (append-after-populate), so a partially written snapshot is
never visible. Provider work runs outside the sandbox lock; only the append
and the METS registration are serialized.

Job lifecycle: queued -> running -> succeeded | failed | cancelled
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Event, Lock
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from omegaconf import OmegaConf

from .database import JobDatabase
from .errors import BadRequest, Conflict, NotFound
from .mets import StepOutput
from .models import JobDetail, JobEvent, JobHandle, JobStatus, JobSummary, Project, StepKind, StepOrigin, Track
from .sandbox import Sandbox
from .snapshot_tree import Snapshot, format_track
from .utils import ensure_directory
from .workflow import ProviderRegistry, StepCancelled, StepContext, WorkflowDefinition

logger = logging.getLogger(__name__)

JOB_CONFIG_FILE = "job.yaml"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    """
    Internal representation of a job with full state.

    Records restored from the database carry no project or sandbox; they are
    history only and always in a done state.

    Attributes:
        id: Unique job identifier (hex UUID)
        project_id: Project the sandbox belongs to
        sandbox_id: Sandbox whose tree the job extends
        parent_track: Track the new snapshot is appended under
        workflow_id: Workflow definition the job executes
        step_kind: Kind of the workflow step
        provider_id: Provider executing the step
        short_description: Optional user description, becomes the snapshot description
        status: Current execution status
        created_at: Job creation timestamp (UTC)
        updated_at: Last modification timestamp (UTC)
        parameters: Effective provider parameters
        snapshot_track: Track of the appended snapshot once succeeded
        error: Error message if the job failed
        events: Chronological list of job lifecycle events
    """

    id: str
    project_id: str
    sandbox_id: str
    parent_track: Track
    workflow_id: str
    step_kind: StepKind
    provider_id: str
    short_description: Optional[str]
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    parameters: Dict[str, Any]
    snapshot_track: Optional[Track] = None
    error: Optional[str] = None
    events: List[JobEvent] = field(default_factory=list)
    workflow_label: Optional[str] = None
    project: Optional[Project] = None
    sandbox: Optional[Sandbox] = None
    cancel_event: Event = field(default_factory=Event)
    done_event: Event = field(default_factory=Event)
    future: Optional[Future] = None

    def to_handle(self) -> JobHandle:
        return JobHandle(id=self.id, status=self.status)

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            status=self.status,
            project_id=self.project_id,
            sandbox_id=self.sandbox_id,
            parent_track=list(self.parent_track),
            workflow_id=self.workflow_id,
            short_description=self.short_description,
            created_at=self.created_at,
            updated_at=self.updated_at,
            snapshot_track=list(self.snapshot_track) if self.snapshot_track is not None else None,
        )

    def to_detail(self) -> JobDetail:
        summary = self.to_summary()
        return JobDetail(
            **summary.model_dump(),
            step_kind=self.step_kind,
            provider_id=self.provider_id,
            parameters=self.parameters,
            events=list(self.events),
            error=self.error,
        )

    def to_data(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "sandbox_id": self.sandbox_id,
            "parent_track": list(self.parent_track),
            "workflow_id": self.workflow_id,
            "step_kind": self.step_kind.value,
            "provider_id": self.provider_id,
            "short_description": self.short_description,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "parameters": self.parameters,
            "snapshot_track": list(self.snapshot_track) if self.snapshot_track is not None else None,
            "error": self.error,
            "events": [event.model_dump() for event in self.events],
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "JobRecord":
        record = cls(
            id=data["id"],
            project_id=data["project_id"],
            sandbox_id=data["sandbox_id"],
            parent_track=tuple(data["parent_track"]),
            workflow_id=data["workflow_id"],
            step_kind=StepKind(data["step_kind"]),
            provider_id=data["provider_id"],
            short_description=data["short_description"],
            status=JobStatus(data["status"]),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            parameters=data["parameters"],
            snapshot_track=tuple(data["snapshot_track"]) if data["snapshot_track"] is not None else None,
            error=data["error"],
            events=[JobEvent(**event) for event in data["events"]],
        )
        record.done_event.set()
        return record


class JobManager:
    """
    Scheduler for workflow steps on sandbox snapshot trees.

    Thread Safety:
        All job state modifications are protected by one lock, so request
        threads and worker threads see consistent job records. Snapshot tree
        changes are serialized by the lock of the affected sandbox.

    Attributes:
        providers: Step providers available to workflows
        database: Optional persistence of job records
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        max_workers: int = 1,
        database: Optional[JobDatabase] = None,
    ) -> None:
        """
        Initialize the job manager.

        Args:
            providers: Step providers available to workflows
            max_workers: Number of concurrent step executions (default: 1)
            database: Job persistence; jobs interrupted by a previous
                process are marked failed and the history is restored
        """
        self.providers = providers
        self.database = database
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sandbox-job")

        if database is not None:
            interrupted = database.fail_interrupted()
            if interrupted:
                logger.warning(f"Marked {interrupted} interrupted jobs as failed")
            for data in database.list_jobs():
                record = JobRecord.from_data(data)
                self._jobs[record.id] = record

    def schedule(
        self,
        project: Project,
        sandbox: Sandbox,
        parent_track: Track,
        workflow: WorkflowDefinition,
        short_description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        """
        Queue a workflow step whose output becomes a new snapshot under ``parent_track``.

        Args:
            project: Project owning the sandbox
            sandbox: Sandbox whose tree is extended
            parent_track: Track of the parent snapshot
            workflow: Workflow definition to execute
            short_description: Optional description of the run
            parameters: Parameters merged over the workflow parameters

        Returns:
            Handle of the queued job

        Raises:
            NotAvailable: If the project or sandbox does not accept processing
            TrackNotFound: If the parent track does not resolve
            NotFound: If the workflow provider is unknown
            BadRequest: If the provider does not implement the workflow step kind
        """
        sandbox.ensure_executable(project)
        sandbox.resolve(parent_track)
        provider = self.providers.get(workflow.provider_id)
        if provider.kind is not workflow.kind:
            raise BadRequest(
                f"provider '{provider.id}' runs {provider.kind.value} steps, not {workflow.kind.value}"
            )

        now = _now()
        record = JobRecord(
            id=uuid4().hex,
            project_id=project.id,
            sandbox_id=sandbox.id,
            parent_track=tuple(parent_track),
            workflow_id=workflow.id,
            step_kind=workflow.kind,
            provider_id=workflow.provider_id,
            short_description=short_description,
            status=JobStatus.QUEUED,
            created_at=now,
            updated_at=now,
            parameters={**workflow.parameters, **(parameters or {})},
            workflow_label=workflow.label or workflow.id,
            project=project,
            sandbox=sandbox,
        )
        record.events.append(JobEvent(timestamp=now, message="Job registered and awaiting execution."))
        self._register_job(record)
        if self.database is not None:
            self.database.save_job(record.to_data())

        future = self._executor.submit(self._run_job, record.id)
        with self._lock:
            record.future = future
        logger.info(
            f"Scheduled job {record.id} ({workflow.id}) under {format_track(record.parent_track)} "
            f"in sandbox '{sandbox.id}'"
        )
        return record.to_handle()

    def cancel(self, job_id: str) -> JobHandle:
        """
        Cancel a queued or running job.

        A queued job is cancelled immediately. A running job is signalled and
        ends as cancelled once its provider observes the request; it never
        produces a snapshot after that.

        Raises:
            NotFound: If the job is unknown
            Conflict: If the job is already done
        """
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise NotFound(f"unknown job '{job_id}'")
            if record.status.is_done:
                raise Conflict(f"job {job_id} is already {record.status.value}")
            record.cancel_event.set()
            queued = record.status is JobStatus.QUEUED
            if queued:
                record.status = JobStatus.CANCELLED
                record.updated_at = _now()
                record.done_event.set()
                if record.future is not None:
                    record.future.cancel()
            handle = record.to_handle()

        if queued:
            self._append_event(job_id, "Job cancelled before execution.")
            self._persist_status(job_id)
        else:
            self._append_event(job_id, "Cancellation requested.")
        logger.info(f"Cancel requested for job {job_id}")
        return handle

    def list_jobs(self) -> List[JobSummary]:
        """
        Get all jobs sorted by creation time (newest first).

        Thread Safety:
            Acquires lock for consistent snapshot of job state
        """
        with self._lock:
            records = sorted(self._jobs.values(), key=lambda r: r.created_at, reverse=True)
            return [record.to_summary() for record in records]

    def get_job(self, job_id: str) -> Optional[JobDetail]:
        with self._lock:
            record = self._jobs.get(job_id)
            return record.to_detail() if record else None

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobDetail:
        """
        Block until the job is done or ``timeout`` seconds passed.

        Returns:
            The job detail, done or not

        Raises:
            NotFound: If the job is unknown
        """
        with self._lock:
            record = self._jobs.get(job_id)
        if record is None:
            raise NotFound(f"unknown job '{job_id}'")
        record.done_event.wait(timeout)
        with self._lock:
            return record.to_detail()

    def remove_done(self, job_id: str) -> bool:
        """
        Drop a finished job from the registry and the database.

        Returns:
            False if the job is unknown

        Raises:
            Conflict: If the job is still queued or running
        """
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return False
            if not record.status.is_done:
                raise Conflict(f"job {job_id} is still {record.status.value}")
            del self._jobs[job_id]
        if self.database is not None:
            self.database.delete_job(job_id)
        return True

    def expunge_done(self) -> int:
        with self._lock:
            done = [job_id for job_id, record in self._jobs.items() if record.status.is_done]
            for job_id in done:
                del self._jobs[job_id]
        if self.database is not None:
            for job_id in done:
                self.database.delete_job(job_id)
        return len(done)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs and signal every running job to stop."""
        with self._lock:
            for record in self._jobs.values():
                if not record.status.is_done:
                    record.cancel_event.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _register_job(self, record: JobRecord) -> None:
        with self._lock:
            self._jobs[record.id] = record

    def _update_job(self, job_id: str, **kwargs: Any) -> None:
        """
        Update job attributes and refresh the updated_at timestamp.

        Thread Safety:
            Acquires lock before modifying job state
        """
        with self._lock:
            record = self._jobs[job_id]
            for key, value in kwargs.items():
                setattr(record, key, value)
            record.updated_at = _now()

    def _append_event(self, job_id: str, message: str) -> None:
        event = JobEvent(timestamp=_now(), message=message)
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return
            record.events.append(event)
            record.updated_at = event.timestamp
        if self.database is not None:
            self.database.add_job_event(job_id, message, event.timestamp)

    def _persist_status(self, job_id: str) -> None:
        if self.database is None:
            return
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return
            status, error, track = record.status, record.error, record.snapshot_track
        self.database.update_job_status(
            job_id, status.value, error=error, snapshot_track=list(track) if track is not None else None
        )

    def _persist_config(self, record: JobRecord, folder: Path) -> None:
        """
        Save the effective job configuration next to the staged output.

        The file moves into the snapshot folder together with the output, so
        every snapshot documents how it was produced.
        """
        config = OmegaConf.create(
            {
                "job": {
                    "id": record.id,
                    "created": record.created_at.isoformat(),
                    "description": record.short_description,
                },
                "workflow": {
                    "id": record.workflow_id,
                    "kind": record.step_kind.value,
                    "provider": record.provider_id,
                },
                "parent_track": list(record.parent_track),
                "parameters": record.parameters,
            }
        )
        OmegaConf.save(config, folder / JOB_CONFIG_FILE)

    def _start(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.status is not JobStatus.QUEUED:
                return None
            record.status = JobStatus.RUNNING
            record.updated_at = _now()
            return record

    def _run_job(self, job_id: str) -> None:
        """
        Execute one job (runs in a worker thread).

        Note:
            All job state modifications use the lock-protected helpers.
        """
        record = self._start(job_id)
        if record is None:
            return
        self._append_event(job_id, "Step execution started.")
        self._persist_status(job_id)

        sandbox = record.sandbox
        try:
            staging = sandbox.staging_folder(job_id)
            output_folder = ensure_directory(staging / sandbox.layout.data_folder)
            self._persist_config(record, staging)

            provider = self.providers.get(record.provider_id)
            context = StepContext(
                job_id=job_id,
                project=record.project,
                parent=sandbox.resolve(record.parent_track),
                output_folder=output_folder,
                parameters=dict(record.parameters),
                cancel_event=record.cancel_event,
            )
            outputs = provider.run(context)
            context.check_cancelled()

            snapshot = self._attach(record, staging, outputs)
            self._update_job(job_id, status=JobStatus.SUCCEEDED, snapshot_track=snapshot.track)
            self._append_event(job_id, f"Snapshot {format_track(snapshot.track)} appended.")
            logger.info(f"Job {job_id} succeeded with snapshot {format_track(snapshot.track)}")
        except StepCancelled:
            self._update_job(job_id, status=JobStatus.CANCELLED)
            self._append_event(job_id, "Job cancelled.")
            logger.info(f"Job {job_id} cancelled")
        except Exception as exc:
            self._update_job(job_id, status=JobStatus.FAILED, error=str(exc))
            self._append_event(job_id, f"Step failed: {exc}")
            logger.error(f"Job {job_id} failed: {exc}")
        finally:
            sandbox.discard_staging(job_id)
            self._update_job(job_id)
            self._persist_status(job_id)
            record.done_event.set()

    def _attach(self, record: JobRecord, staging: Path, outputs: Sequence[StepOutput]) -> Snapshot:
        """
        Move the staged output into the tree and register it in the METS document.

        Both happen under the sandbox lock. If the parent was removed in the
        meantime the append fails with TrackNotFound and nothing is attached.
        """
        sandbox = record.sandbox
        with sandbox.mutation():
            if record.cancel_event.is_set():
                raise StepCancelled(f"job {record.id} was cancelled")
            snapshot = sandbox.append_derived(
                record.parent_track,
                staging,
                label=record.workflow_label,
                description=record.short_description,
                step=StepOrigin(
                    kind=record.step_kind,
                    provider_id=record.provider_id,
                    workflow_id=record.workflow_id,
                    job_id=record.id,
                ),
            )
            try:
                sandbox.register_outputs(snapshot.track, outputs)
            except Exception:
                sandbox.remove(snapshot.track)
                raise
        return snapshot
