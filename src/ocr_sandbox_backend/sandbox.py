"""
Sandboxes: project-scoped containers of one snapshot tree.

A sandbox folder holds:

    <sandbox>/sandbox.json          name and state
    <sandbox>/snapshots/            root snapshot folder (see snapshot_tree)
    <sandbox>/snapshots/mets.xml    METS document describing the snapshot outputs
    <sandbox>/.staging/<job>/       output of running jobs, not yet in the tree

Thread Safety:
    Every sandbox owns one reentrant lock. All tree reads and mutations, and
    every METS read-modify-write, run under it, so the child index assigned
    on append never races with a concurrent append and readers never see a
    partially appended child. There is no locking across sandboxes.
"""

from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Iterator, List, Optional, Sequence

from omegaconf import DictConfig
from pydantic import BaseModel, ValidationError

from .errors import Conflict, NotAvailable, NotFound
from .mets import (
    StepOutput,
    file_group_id_for,
    files_for_track,
    get_page_naming,
    load_mets,
    register_file_group,
    save_mets,
)
from .models import MetsDocument, MetsFile, Project, ProjectState, SandboxState, SnapshotView, StepOrigin, Track
from .snapshot_tree import Snapshot, SnapshotLayout, SnapshotTree
from .utils import ensure_directory, sanitize_label

logger = logging.getLogger(__name__)

SANDBOX_FILE = "sandbox.json"

# Sandbox states in which snapshots are visible to holders of read or execute rights.
_OPEN_STATES = (SandboxState.ACTIVE, SandboxState.PAUSED, SandboxState.CLOSED)


class SandboxConfiguration(BaseModel):
    id: str
    project_id: str
    name: str
    state: SandboxState = SandboxState.ACTIVE


class Sandbox:
    """
    One snapshot tree together with its METS naming and state.

    Attributes:
        id: Sandbox identifier, unique within its project
        project_id: Owning project
        folder: Sandbox folder on disk
        mets_group: METS group shared by all snapshots of the sandbox
        mets_template: File group id template, see mets.file_group_id_for
    """

    def __init__(
        self,
        id: str,
        project_id: str,
        folder: Path,
        configuration: SandboxConfiguration,
        tree: SnapshotTree,
        config: DictConfig,
    ) -> None:
        self.id = id
        self.project_id = project_id
        self.folder = folder
        self._configuration = configuration
        self._tree = tree
        self._lock = RLock()
        self.mets_file: str = config.mets.file
        self.mets_group: str = config.mets.group
        self.mets_template: str = config.mets.template
        self.staging_root = folder / config.sandbox.staging.folder

    @classmethod
    def create(
        cls,
        id: str,
        project_id: str,
        folder: Path,
        config: DictConfig,
        name: Optional[str] = None,
        state: SandboxState = SandboxState.ACTIVE,
        label: Optional[str] = None,
        description: Optional[str] = None,
    ) -> "Sandbox":
        if (folder / SANDBOX_FILE).exists():
            raise Conflict(f"sandbox '{id}' already exists in project '{project_id}'")
        ensure_directory(folder)
        configuration = SandboxConfiguration(id=id, project_id=project_id, name=name or id, state=state)
        _save_configuration(folder, configuration)
        tree = SnapshotTree.create(
            folder / config.sandbox.snapshots.folder,
            SnapshotLayout.from_config(config),
            label=label,
            description=description,
        )
        logger.info(f"Created sandbox '{id}' in project '{project_id}'")
        return cls(id, project_id, folder, configuration, tree, config)

    @classmethod
    def open(cls, id: str, project_id: str, folder: Path, config: DictConfig) -> "Sandbox":
        """
        Load an existing sandbox, rebuilding its snapshot tree from disk.

        Raises:
            NotFound: If the folder holds no sandbox
        """
        path = folder / SANDBOX_FILE
        if not path.is_file():
            raise NotFound(f"unknown sandbox '{id}' in project '{project_id}'")
        try:
            configuration = SandboxConfiguration.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise NotFound(f"unreadable sandbox '{id}' in project '{project_id}' - {exc}") from exc
        # Ids are sanitized into folder names, so distinct ids may share a folder.
        if (configuration.id, configuration.project_id) != (id, project_id):
            raise NotFound(f"unknown sandbox '{id}' in project '{project_id}'")
        tree = SnapshotTree.load(folder / config.sandbox.snapshots.folder, SnapshotLayout.from_config(config))
        return cls(id, project_id, folder, configuration, tree, config)

    @property
    def name(self) -> str:
        return self._configuration.name

    @property
    def state(self) -> SandboxState:
        return self._configuration.state

    @property
    def snapshots_folder(self) -> Path:
        return self._tree.root_folder

    @property
    def layout(self) -> SnapshotLayout:
        return self._tree.layout

    @property
    def mets_path(self) -> Path:
        return self._tree.root_folder / self.mets_file

    def set_state(self, state: SandboxState) -> None:
        with self._lock:
            configuration = self._configuration.model_copy(update={"state": state})
            _save_configuration(self.folder, configuration)
            self._configuration = configuration
        logger.info(f"Sandbox '{self.id}' is now {state.value}")

    # -- availability -------------------------------------------------------

    def is_snapshot_access(self, project: Project) -> bool:
        rights = project.rights
        if self.state in _OPEN_STATES:
            return rights.read or rights.execute or rights.special
        return rights.special

    def is_executable(self, project: Project) -> bool:
        if project.state is not ProjectState.ACTIVE or not project.rights.execute:
            return False
        if self.state is SandboxState.ACTIVE:
            return True
        return self.state is SandboxState.SECURED and project.rights.special

    def ensure_readable(self, project: Project) -> None:
        if not self.is_snapshot_access(project):
            raise NotAvailable(f"snapshots of sandbox '{self.id}' are not accessible")

    def ensure_executable(self, project: Project) -> None:
        if not self.is_executable(project):
            raise NotAvailable(
                f"sandbox '{self.id}' ({self.state.value}) of project '{project.id}' "
                f"({project.state.value}) does not accept processing"
            )

    # -- snapshot tree ------------------------------------------------------

    @contextmanager
    def mutation(self) -> Iterator["Sandbox"]:
        """Hold the sandbox lock across several calls that must appear atomic."""
        with self._lock:
            yield self

    def resolve(self, track: Track) -> Snapshot:
        with self._lock:
            return self._tree.resolve(track)

    def view(self, track: Track) -> SnapshotView:
        return self.resolve(track).to_view()

    def get_derived(self, track: Track) -> List[Snapshot]:
        with self._lock:
            return self._tree.get_derived(track)

    def get_path(self, track: Track) -> List[Snapshot]:
        with self._lock:
            return self._tree.get_path(track)

    def snapshots(self) -> List[Snapshot]:
        with self._lock:
            return self._tree.snapshots()

    def append_derived(
        self,
        track: Track,
        staged_folder: Optional[Path] = None,
        label: Optional[str] = None,
        description: Optional[str] = None,
        step: Optional[StepOrigin] = None,
    ) -> Snapshot:
        with self._lock:
            return self._tree.append_derived(track, staged_folder, label=label, description=description, step=step)

    def remove_derived(self, track: Track, index: int) -> bool:
        with self._lock:
            return self._tree.remove_derived(track, index)

    def remove(self, track: Track) -> bool:
        with self._lock:
            return self._tree.remove(track)

    def reset_root(self) -> bool:
        with self._lock:
            return self._tree.reset_root()

    def lock(self, track: Track, source_id: str, comment: Optional[str] = None) -> Snapshot:
        with self._lock:
            return self._tree.lock(track, source_id, comment)

    def unlock(self, track: Track) -> Snapshot:
        with self._lock:
            return self._tree.unlock(track)

    def update_configuration(
        self, track: Track, label: Optional[str] = None, description: Optional[str] = None
    ) -> Snapshot:
        with self._lock:
            return self._tree.update_configuration(track, label, description)

    def list_files(self, track: Track) -> List[str]:
        with self._lock:
            return self._tree.list_files(track)

    # -- METS ---------------------------------------------------------------

    def file_group_id(self, track: Track) -> str:
        return file_group_id_for(self.mets_template, track, self.mets_group)

    def load_mets(self) -> MetsDocument:
        with self._lock:
            return load_mets(self.mets_path, get_page_naming(self.mets_group))

    def files_for_track(self, track: Track) -> List[MetsFile]:
        """
        Return the METS files of the snapshot at ``track``.

        Raises:
            TrackNotFound: If the track does not resolve
            PreconditionFailed: If there is no METS document or no file group for the track
        """
        with self._lock:
            self._tree.resolve(track)
            return files_for_track(self.load_mets(), self.mets_template, track, self.mets_group)

    def register_outputs(self, track: Track, outputs: Sequence[StepOutput]) -> str:
        """
        Record the output files of the snapshot at ``track`` as its METS file group.

        Output paths are relative to the snapshot data folder; they are stored
        relative to the snapshots folder, where the METS document lives. The
        document is created when the sandbox has none yet.

        Returns:
            The file group id
        """
        with self._lock:
            snapshot = self._tree.resolve(track)
            prefix = snapshot.data_folder.relative_to(self.snapshots_folder)
            rebased = [output._replace(path=(prefix / output.path).as_posix()) for output in outputs]
            naming = get_page_naming(self.mets_group)
            document = load_mets(self.mets_path, naming) if self.mets_path.is_file() else MetsDocument()
            group_id = self.file_group_id(track)
            save_mets(self.mets_path, register_file_group(document, group_id, rebased, naming))
        logger.info(f"Registered {len(rebased)} files as METS file group '{group_id}' in sandbox '{self.id}'")
        return group_id

    def resolve_file(self, file: MetsFile) -> Path:
        path = Path(file.path)
        return path if path.is_absolute() else self.snapshots_folder / path

    # -- staging ------------------------------------------------------------

    def staging_folder(self, job_id: str) -> Path:
        folder = self.staging_root / job_id
        if folder.exists():
            shutil.rmtree(folder)
        return ensure_directory(folder)

    def discard_staging(self, job_id: str) -> None:
        folder = self.staging_root / job_id
        if not folder.exists():
            return
        try:
            shutil.rmtree(folder)
        except OSError as exc:
            logger.warning(f"Could not clean up staging folder {folder} - {exc}")


class SandboxRegistry:
    """
    Open sandboxes of all projects, keyed by sandbox folder.

    Project and sandbox ids are sanitized into folder names; the ids stored
    in the sandbox folder decide which ids actually address it.

    Sandboxes are loaded from disk on first access and kept open, so every
    caller shares the same Sandbox instance and therefore the same lock.
    """

    def __init__(self, projects_root: Path, config: DictConfig) -> None:
        self.projects_root = ensure_directory(projects_root)
        self.config = config
        self._sandboxes: Dict[Path, Sandbox] = {}
        self._lock = Lock()

    def sandbox_folder(self, project_id: str, sandbox_id: str) -> Path:
        return self.projects_root / sanitize_label(project_id, "project") / "sandboxes" / sanitize_label(sandbox_id, "sandbox")

    def create(
        self,
        project_id: str,
        sandbox_id: str,
        name: Optional[str] = None,
        state: SandboxState = SandboxState.ACTIVE,
        label: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Sandbox:
        with self._lock:
            sandbox = Sandbox.create(
                sandbox_id,
                project_id,
                self.sandbox_folder(project_id, sandbox_id),
                self.config,
                name=name,
                state=state,
                label=label,
                description=description,
            )
            self._sandboxes[sandbox.folder] = sandbox
            return sandbox

    def get(self, project_id: str, sandbox_id: str) -> Sandbox:
        with self._lock:
            folder = self.sandbox_folder(project_id, sandbox_id)
            sandbox = self._sandboxes.get(folder)
            if sandbox is None:
                sandbox = Sandbox.open(sandbox_id, project_id, folder, self.config)
                self._sandboxes[folder] = sandbox
            elif (sandbox.id, sandbox.project_id) != (sandbox_id, project_id):
                raise NotFound(f"unknown sandbox '{sandbox_id}' in project '{project_id}'")
            return sandbox

    def list(self, project_id: str) -> List[Sandbox]:
        folder = self.projects_root / sanitize_label(project_id, "project") / "sandboxes"
        if not folder.is_dir():
            return []
        sandboxes = []
        for path in sorted(folder.iterdir()):
            configuration = _load_configuration(path)
            if configuration is not None and configuration.project_id == project_id:
                sandboxes.append(self.get(project_id, configuration.id))
        return sandboxes


def _load_configuration(folder: Path) -> Optional[SandboxConfiguration]:
    path = folder / SANDBOX_FILE
    if not path.is_file():
        return None
    try:
        return SandboxConfiguration.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        logger.warning(f"Skipping unreadable sandbox {folder} - {exc}")
        return None


def _save_configuration(folder: Path, configuration: SandboxConfiguration) -> None:
    path = folder / SANDBOX_FILE
    temporary = path.with_name(path.name + ".tmp")
    temporary.write_text(configuration.model_dump_json(indent=2), encoding="utf-8")
    temporary.replace(path)
