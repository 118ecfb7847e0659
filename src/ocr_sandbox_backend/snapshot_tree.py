"""
Snapshot tree storage and navigation.

A sandbox keeps its processing history as a tree of snapshots. Each snapshot
is a folder on disk:

    <snapshot>/.snapshot/snapshot.json   persisted configuration
    <snapshot>/sandbox/                  output data written by the step provider
    <snapshot>/derived/<index>/          derived snapshots

Snapshots are addressed by their track, the child index at every level below
the root. The tree keeps an arena of nodes keyed by track, so the parent of a
snapshot is simply its track without the last element.

Child indices are never reused: every snapshot persists a ``next_derived``
counter, a new child receives the current counter value and removing a child
leaves its slot empty. Tracks of unrelated snapshots therefore stay valid.

Thread Safety:
    SnapshotTree is not synchronized. The owning Sandbox serializes every
    call under its mutation lock.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from omegaconf import DictConfig
from pydantic import BaseModel, ValidationError

from .errors import BadRequest, Conflict, TrackNotFound
from .models import SnapshotLock, SnapshotView, StepOrigin, Track
from .utils import ensure_directory

logger = logging.getLogger(__name__)


def normalize_track(track: Optional[Iterable[int]]) -> Track:
    """
    Convert a wire track (list of ints) into the internal tuple form.

    Raises:
        TrackNotFound: If an element is not a non-negative integer.
    """
    if track is None:
        return ()
    normalized = tuple(track)
    for index in normalized:
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise TrackNotFound(f"invalid snapshot track {list(normalized)}")
    return normalized


def parent_track(track: Track) -> Track:
    if not track:
        raise TrackNotFound("the root snapshot has no parent")
    return track[:-1]


def is_strict_prefix(prefix: Track, track: Track) -> bool:
    return len(prefix) < len(track) and track[: len(prefix)] == prefix


def format_track(track: Track) -> str:
    return str(list(track))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotConfiguration(BaseModel):
    label: Optional[str] = None
    description: Optional[str] = None
    lock: Optional[SnapshotLock] = None
    created: datetime
    updated: datetime
    step: Optional[StepOrigin] = None
    next_derived: int = 0


@dataclass(frozen=True)
class SnapshotLayout:
    """Folder and file names inside a snapshot folder."""

    configuration_folder: str = ".snapshot"
    configuration_file: str = "snapshot.json"
    data_folder: str = "sandbox"
    derived_folder: str = "derived"

    @classmethod
    def from_config(cls, config: DictConfig) -> "SnapshotLayout":
        snapshots = config.sandbox.snapshots
        return cls(
            configuration_folder=snapshots.configuration.folder,
            configuration_file=snapshots.configuration.file,
            data_folder=snapshots.data.folder,
            derived_folder=snapshots.derived.folder,
        )

    def configuration_path(self, folder: Path) -> Path:
        return folder / self.configuration_folder / self.configuration_file

    def derived_path(self, folder: Path, index: int) -> Path:
        return folder / self.derived_folder / str(index)


@dataclass(frozen=True)
class Snapshot:
    """
    Read-only view of one tree node, detached from the live tree.

    Attributes:
        track: Address of the snapshot in its sandbox
        folder: Snapshot folder on disk
        data_folder: Folder holding the output written by the step provider
        configuration: Copy of the persisted configuration
        children: Tracks of the live derived snapshots, in creation order
    """

    track: Track
    folder: Path
    data_folder: Path
    configuration: SnapshotConfiguration
    children: Tuple[Track, ...] = ()

    @property
    def is_root(self) -> bool:
        return not self.track

    @property
    def label(self) -> Optional[str]:
        return self.configuration.label

    @property
    def description(self) -> Optional[str]:
        return self.configuration.description

    @property
    def lock(self) -> Optional[SnapshotLock]:
        return self.configuration.lock

    @property
    def is_locked(self) -> bool:
        return self.configuration.lock is not None

    @property
    def step(self) -> Optional[StepOrigin]:
        return self.configuration.step

    def to_view(self) -> SnapshotView:
        return SnapshotView(
            track=list(self.track),
            label=self.label,
            description=self.description,
            lock=self.lock,
            child_count=len(self.children),
            created=self.configuration.created,
            updated=self.configuration.updated,
            step=self.step,
        )


@dataclass
class _Node:
    track: Track
    folder: Path
    configuration: SnapshotConfiguration
    children: List[int] = field(default_factory=list)


class SnapshotTree:
    """
    Arena of snapshot nodes keyed by track, mirrored on disk.

    Use SnapshotTree.create for a new sandbox and SnapshotTree.load to
    rebuild the tree from an existing snapshots folder.
    """

    def __init__(self, root_folder: Path, layout: SnapshotLayout) -> None:
        self.root_folder = root_folder
        self.layout = layout
        self._nodes: Dict[Track, _Node] = {}

    @classmethod
    def create(
        cls,
        root_folder: Path,
        layout: SnapshotLayout,
        label: Optional[str] = None,
        description: Optional[str] = None,
        step: Optional[StepOrigin] = None,
    ) -> "SnapshotTree":
        tree = cls(root_folder, layout)
        if layout.configuration_path(root_folder).exists():
            raise Conflict(f"a snapshot tree already exists in {root_folder}")
        ensure_directory(root_folder / layout.data_folder)
        ensure_directory(root_folder / layout.derived_folder)
        now = _now()
        configuration = SnapshotConfiguration(
            label=_clean(label), description=_clean(description), created=now, updated=now, step=step
        )
        tree._save(root_folder, configuration)
        tree._nodes[()] = _Node(track=(), folder=root_folder, configuration=configuration)
        logger.info(f"Created snapshot tree in {root_folder}")
        return tree

    @classmethod
    def load(cls, root_folder: Path, layout: SnapshotLayout) -> "SnapshotTree":
        """
        Rebuild the tree from disk.

        Derived folders without a readable configuration are skipped with a
        warning; they are leftovers of interrupted writes.

        Raises:
            TrackNotFound: If the root snapshot configuration is missing.
        """
        tree = cls(root_folder, layout)
        root_configuration = tree._read(root_folder)
        if root_configuration is None:
            raise TrackNotFound(f"no root snapshot in {root_folder}")
        tree._nodes[()] = _Node(track=(), folder=root_folder, configuration=root_configuration)

        pending = [()]
        while pending:
            track = pending.pop()
            node = tree._nodes[track]
            highest = -1
            for index in tree._scan_derived(node.folder):
                highest = max(highest, index)
                child_folder = layout.derived_path(node.folder, index)
                configuration = tree._read(child_folder)
                if configuration is None:
                    logger.warning(f"Skipping inconsistent snapshot folder {child_folder}")
                    continue
                child_track = track + (index,)
                tree._nodes[child_track] = _Node(track=child_track, folder=child_folder, configuration=configuration)
                node.children.append(index)
                pending.append(child_track)
            # Heal a counter that fell behind after an interrupted append.
            if node.configuration.next_derived <= highest:
                node.configuration.next_derived = highest + 1
                tree._save(node.folder, node.configuration)
        return tree

    def resolve(self, track: Track) -> Snapshot:
        return self._snapshot(self._node(track))

    def get_derived(self, track: Track) -> List[Snapshot]:
        node = self._node(track)
        return [self._snapshot(self._nodes[track + (index,)]) for index in node.children]

    def get_path(self, track: Track) -> List[Snapshot]:
        self._node(track)
        return [self._snapshot(self._nodes[track[:depth]]) for depth in range(len(track) + 1)]

    def snapshots(self) -> List[Snapshot]:
        return [self._snapshot(node) for _, node in sorted(self._nodes.items())]

    def append_derived(
        self,
        track: Track,
        staged_folder: Optional[Path] = None,
        label: Optional[str] = None,
        description: Optional[str] = None,
        step: Optional[StepOrigin] = None,
    ) -> Snapshot:
        """
        Attach a new derived snapshot under ``track``.

        The staged folder, already populated by the provider, is moved into
        place before the node becomes visible in the arena.

        Args:
            track: Track of the parent snapshot
            staged_folder: Fully written snapshot folder to adopt; an empty
                snapshot is created when omitted
            label: Optional label
            description: Optional description
            step: Origin of the snapshot output

        Returns:
            The new snapshot; its index is the parent's pre-append slot count

        Raises:
            TrackNotFound: If the parent no longer exists
        """
        parent = self._node(track)
        index = parent.configuration.next_derived
        child_track = track + (index,)
        target = self.layout.derived_path(parent.folder, index)
        ensure_directory(target.parent)
        if staged_folder is not None:
            os.replace(staged_folder, target)
        else:
            target.mkdir()

        try:
            ensure_directory(target / self.layout.data_folder)
            ensure_directory(target / self.layout.derived_folder)
            now = _now()
            configuration = SnapshotConfiguration(
                label=_clean(label), description=_clean(description), created=now, updated=now, step=step
            )
            self._save(target, configuration)
            parent.configuration.next_derived = index + 1
            self._save(parent.folder, parent.configuration)
        except Exception:
            shutil.rmtree(target, ignore_errors=True)
            raise

        node = _Node(track=child_track, folder=target, configuration=configuration)
        self._nodes[child_track] = node
        parent.children.append(index)
        logger.info(f"Appended snapshot {format_track(child_track)} in {self.root_folder}")
        return self._snapshot(node)

    def remove_derived(self, track: Track, index: int) -> bool:
        """
        Remove the derived snapshot ``index`` of ``track`` with its subtree.

        Raises:
            TrackNotFound: If the snapshot does not exist
            Conflict: If the snapshot or one of its descendants is locked
        """
        child_track = track + (index,)
        node = self._node(child_track)
        locked = self._locked_in_subtree(child_track)
        if locked is not None:
            raise Conflict(f"snapshot {format_track(locked)} is locked")

        # Detach on disk with a rename first, so a failing delete cannot leave a half tree.
        trash = node.folder.with_name(f".removed-{index}-{uuid4().hex[:8]}")
        os.replace(node.folder, trash)
        for removed in [key for key in self._nodes if key == child_track or is_strict_prefix(child_track, key)]:
            del self._nodes[removed]
        self._nodes[track].children.remove(index)
        logger.info(f"Removed snapshot {format_track(child_track)} in {self.root_folder}")

        try:
            shutil.rmtree(trash)
        except OSError as exc:
            logger.warning(f"Could not delete removed snapshot folder {trash} - {exc}")
        return True

    def remove(self, track: Track) -> bool:
        if not track:
            return self.reset_root()
        return self.remove_derived(track[:-1], track[-1])

    def reset_root(self) -> bool:
        """
        Remove every derived snapshot of the root, keeping the root itself.

        Raises:
            Conflict: If any derived snapshot is locked
        """
        root = self._nodes[()]
        for index in root.children:
            locked = self._locked_in_subtree((index,))
            if locked is not None:
                raise Conflict(f"snapshot {format_track(locked)} is locked")
        for index in list(root.children):
            self.remove_derived((), index)
        return True

    def lock(self, track: Track, source_id: str, comment: Optional[str] = None) -> Snapshot:
        node = self._node(track)
        if node.configuration.lock is not None:
            raise Conflict(f"snapshot {format_track(track)} is already locked")
        if not source_id or not source_id.strip():
            raise BadRequest("a lock requires a source")
        updated = node.configuration.model_copy(
            update={
                "lock": SnapshotLock(source_id=source_id.strip(), comment=_clean(comment), timestamp=_now()),
                "updated": _now(),
            }
        )
        self._commit(node, updated)
        logger.info(f"Locked snapshot {format_track(track)} for '{source_id.strip()}'")
        return self._snapshot(node)

    def unlock(self, track: Track) -> Snapshot:
        node = self._node(track)
        if node.configuration.lock is None:
            raise Conflict(f"snapshot {format_track(track)} is not locked")
        self._commit(node, node.configuration.model_copy(update={"lock": None, "updated": _now()}))
        logger.info(f"Unlocked snapshot {format_track(track)}")
        return self._snapshot(node)

    def update_configuration(
        self, track: Track, label: Optional[str] = None, description: Optional[str] = None
    ) -> Snapshot:
        node = self._node(track)
        if node.configuration.lock is not None:
            raise Conflict(f"snapshot {format_track(track)} is locked")
        updated = node.configuration.model_copy(
            update={"label": _clean(label), "description": _clean(description), "updated": _now()}
        )
        self._commit(node, updated)
        logger.info(f"Updated configuration of snapshot {format_track(track)}")
        return self._snapshot(node)

    def list_files(self, track: Track) -> List[str]:
        data_folder = self._node(track).folder / self.layout.data_folder
        if not data_folder.is_dir():
            return []
        return sorted(path.relative_to(data_folder).as_posix() for path in data_folder.rglob("*") if path.is_file())

    def _node(self, track: Track) -> _Node:
        node = self._nodes.get(tuple(track))
        if node is None:
            raise TrackNotFound(f"invalid snapshot track {format_track(tuple(track))} in {self.root_folder}")
        return node

    def _snapshot(self, node: _Node) -> Snapshot:
        return Snapshot(
            track=node.track,
            folder=node.folder,
            data_folder=node.folder / self.layout.data_folder,
            configuration=node.configuration.model_copy(deep=True),
            children=tuple(node.track + (index,) for index in node.children),
        )

    def _locked_in_subtree(self, track: Track) -> Optional[Track]:
        for key in sorted(self._nodes):
            if (key == track or is_strict_prefix(track, key)) and self._nodes[key].configuration.lock is not None:
                return key
        return None

    def _commit(self, node: _Node, configuration: SnapshotConfiguration) -> None:
        # Persist first, so memory never runs ahead of disk.
        self._save(node.folder, configuration)
        node.configuration = configuration

    def _scan_derived(self, folder: Path) -> List[int]:
        derived = folder / self.layout.derived_folder
        if not derived.is_dir():
            return []
        return sorted(int(path.name) for path in derived.iterdir() if path.is_dir() and path.name.isdigit())

    def _read(self, folder: Path) -> Optional[SnapshotConfiguration]:
        path = self.layout.configuration_path(folder)
        if not path.is_file():
            return None
        try:
            return SnapshotConfiguration.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning(f"Unreadable snapshot configuration {path} - {exc}")
            return None

    def _save(self, folder: Path, configuration: SnapshotConfiguration) -> None:
        path = self.layout.configuration_path(folder)
        ensure_directory(path.parent)
        temporary = path.with_name(path.name + ".tmp")
        temporary.write_text(configuration.model_dump_json(indent=2), encoding="utf-8")
        os.replace(temporary, path)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()
