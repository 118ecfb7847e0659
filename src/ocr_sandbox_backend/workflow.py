"""
Workflow definitions and step providers.

A workflow definition binds exactly one processing step: the provider that
executes it, the step kind and the provider parameters. Providers are
opaque: they receive a StepContext, write their output into the context
output folder and declare the written files per folio. The scheduler takes
care of everything else (staging, appending the snapshot, METS registration).
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event, Lock
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .errors import NotFound
from .mets import StepOutput
from .models import Project, StepKind, Track
from .snapshot_tree import Snapshot

logger = logging.getLogger(__name__)

_IMAGE_MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}


class StepCancelled(Exception):
    """Raised by providers that observed a cancellation request."""


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    kind: StepKind
    provider_id: str
    label: Optional[str] = None
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepContext:
    """
    Everything a provider may use while executing one job.

    Attributes:
        job_id: Job identifier
        project: Project the sandbox belongs to
        parent: Snapshot the new snapshot derives from (read-only input)
        output_folder: Empty folder the provider writes its output into
        parameters: Workflow parameters merged with the job parameters
        cancel_event: Set when the job was asked to stop
    """

    job_id: str
    project: Project
    parent: Snapshot
    output_folder: Path
    parameters: Dict[str, Any]
    cancel_event: Event

    @property
    def parent_track(self) -> Track:
        return self.parent.track

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise StepCancelled(f"job {self.job_id} was cancelled")


@runtime_checkable
class StepProvider(Protocol):
    id: str
    kind: StepKind

    def run(self, context: StepContext) -> List[StepOutput]:
        """Execute the step; output paths are relative to ``context.output_folder``."""
        ...


class ProviderRegistry:
    """Step providers available to the scheduler, keyed by provider id."""

    def __init__(self) -> None:
        self._providers: Dict[str, StepProvider] = {}
        self._lock = Lock()

    def register(self, provider: StepProvider) -> None:
        with self._lock:
            self._providers[provider.id] = provider
        logger.info(f"Registered step provider '{provider.id}' ({provider.kind.value})")

    def get(self, provider_id: str) -> StepProvider:
        with self._lock:
            provider = self._providers.get(provider_id)
        if provider is None:
            raise NotFound(f"unknown step provider '{provider_id}'")
        return provider

    def list(self) -> List[StepProvider]:
        with self._lock:
            return list(self._providers.values())


class WorkflowRegistry:
    """Known workflow definitions, keyed by workflow id."""

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._lock = Lock()

    def register(self, workflow: WorkflowDefinition) -> None:
        with self._lock:
            self._workflows[workflow.id] = workflow

    def get(self, workflow_id: str) -> WorkflowDefinition:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFound(f"unknown workflow '{workflow_id}'")
        return workflow

    def list(self) -> List[WorkflowDefinition]:
        with self._lock:
            return sorted(self._workflows.values(), key=lambda workflow: workflow.id)


class FolioImageLauncher:
    """
    Launcher step: copies the project folio images into the snapshot.

    Parameters:
        folios: Optional list of folio ids to copy (default: all folios)
    """

    id = "launcher"
    kind = StepKind.LAUNCHER

    def run(self, context: StepContext) -> List[StepOutput]:
        selected = context.parameters.get("folios")
        outputs = []
        for folio in context.project.folios:
            context.check_cancelled()
            if selected is not None and folio.id not in selected:
                continue
            source = context.project.folio_image(folio)
            if source is None or not source.is_file():
                logger.warning(f"Missing image for folio '{folio.id}' of project '{context.project.id}'")
                continue
            target = context.output_folder / f"{folio.id}.{folio.format}"
            shutil.copy2(source, target)
            outputs.append(
                StepOutput(folio_id=folio.id, path=target.name, mime_type=_IMAGE_MIME_TYPES.get(folio.format.lower()))
            )
        return outputs


def default_providers() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(FolioImageLauncher())
    return registry


def default_workflows() -> WorkflowRegistry:
    registry = WorkflowRegistry()
    registry.register(
        WorkflowDefinition(
            id="launcher",
            kind=StepKind.LAUNCHER,
            provider_id=FolioImageLauncher.id,
            label="Launcher",
            description="Imports the project folio images.",
        )
    )
    return registry
