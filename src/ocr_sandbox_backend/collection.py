"""
Collection bridge: copies snapshot outputs into persistent collections.

Collections live outside any project. A collection stores named sets, one
per folio, each set being the files ``<set id>.<suffix>`` in the collection
folder plus an entry in the collection index. The bridge resolves which
output files of a snapshot belong to which folio through the sandbox METS
document and hands them to the collection store.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, NamedTuple, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from .errors import BadRequest, Conflict, NotFound
from .mets import file_folio_map
from .models import Collection, CollectionSet, Folio, Project, Track
from .sandbox import Sandbox
from .snapshot_tree import format_track
from .utils import ensure_directory, sanitize_label

logger = logging.getLogger(__name__)

COLLECTION_INDEX_FOLDER = ".collection"
COLLECTION_INDEX_FILE = "collection.json"


class SetSpec(NamedTuple):
    """A set to be created from the staged files named ``<id>.*``."""

    id: str
    name: str
    keywords: Optional[List[str]] = None


class CollectionStore(Protocol):
    def add(
        self, collection: Collection, sets: List[SetSpec], staging_folder: Path, overwrite: bool
    ) -> List[CollectionSet]:
        ...


class _CollectionIndex(BaseModel):
    id: str
    name: str
    sets: Dict[str, CollectionSet] = Field(default_factory=dict)


class LocalCollectionStore:
    """
    Collections stored as folders below ``root``.

    Thread Safety:
        One lock serializes all index updates of all collections.
    """

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(root)
        self._lock = Lock()

    def create_collection(self, collection_id: str, name: Optional[str] = None) -> Collection:
        folder = self.root / sanitize_label(collection_id, "collection")
        with self._lock:
            if self._index_path(folder).exists():
                raise Conflict(f"collection '{collection_id}' already exists")
            index = _CollectionIndex(id=collection_id, name=name or collection_id)
            self._save_index(folder, index)
        logger.info(f"Created collection '{collection_id}'")
        return Collection(id=collection_id, name=index.name, folder=folder)

    def get(self, collection_id: str) -> Collection:
        folder = self.root / sanitize_label(collection_id, "collection")
        index = self._load_index(folder)
        if index is None:
            raise NotFound(f"unknown collection '{collection_id}'")
        return Collection(id=index.id, name=index.name, folder=folder)

    def sets(self, collection: Collection) -> List[CollectionSet]:
        index = self._load_index(collection.folder)
        if index is None:
            raise NotFound(f"unknown collection '{collection.id}'")
        return sorted(index.sets.values(), key=lambda item: item.id)

    def add(
        self, collection: Collection, sets: List[SetSpec], staging_folder: Path, overwrite: bool
    ) -> List[CollectionSet]:
        """
        Create sets from staged files.

        Args:
            collection: Target collection
            sets: Sets to create; set ``id`` is the file stem prefix in the staging folder
            staging_folder: Folder holding the staged files
            overwrite: Replace existing sets with the same id; otherwise they are kept

        Returns:
            The created or replaced sets
        """
        created: List[CollectionSet] = []
        with self._lock:
            index = self._load_index(collection.folder)
            if index is None:
                raise NotFound(f"unknown collection '{collection.id}'")
            for spec in sets:
                files = sorted(path for path in staging_folder.glob(f"{spec.id}.*") if path.is_file())
                if not files:
                    logger.warning(f"No staged files for set '{spec.id}' in {staging_folder}")
                    continue
                if spec.id in index.sets:
                    if not overwrite:
                        logger.info(f"Keeping existing set '{spec.id}' in collection '{collection.id}'")
                        continue
                    for name in index.sets[spec.id].files:
                        (collection.folder / name).unlink(missing_ok=True)
                for path in files:
                    shutil.copy2(path, collection.folder / path.name)
                entry = CollectionSet(
                    id=spec.id,
                    name=spec.name,
                    created=datetime.now(timezone.utc),
                    keywords=spec.keywords,
                    files=[path.name for path in files],
                )
                index.sets[spec.id] = entry
                created.append(entry)
            self._save_index(collection.folder, index)
        logger.info(f"Added {len(created)} sets to collection '{collection.id}'")
        return created

    def _index_path(self, folder: Path) -> Path:
        return folder / COLLECTION_INDEX_FOLDER / COLLECTION_INDEX_FILE

    def _load_index(self, folder: Path) -> Optional[_CollectionIndex]:
        path = self._index_path(folder)
        if not path.is_file():
            return None
        try:
            return _CollectionIndex.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning(f"Unreadable collection index {path} - {exc}")
            return None

    def _save_index(self, folder: Path, index: _CollectionIndex) -> None:
        path = self._index_path(folder)
        ensure_directory(path.parent)
        temporary = path.with_name(path.name + ".tmp")
        temporary.write_text(index.model_dump_json(indent=2), encoding="utf-8")
        temporary.replace(path)


def normalized_file_name(folio_id: str, file_name: str) -> str:
    """
    Return ``<folioId>.<suffix>``, the suffix being what follows the folio id in ``file_name``.

    Example:
        >>> normalized_file_name("0001", "OCR-D-0_0001.xml")
        "0001.xml"
        >>> normalized_file_name("0001", "0001_page.xml")
        "0001._page.xml"
        >>> normalized_file_name("0001", "page.xml")
        "0001.page.xml"
    """
    position = file_name.find(folio_id)
    suffix = file_name if position < 0 else file_name[position + len(folio_id):]
    return folio_id + (suffix if suffix.startswith(".") else "." + suffix)


class CollectionBridge:
    """Imports snapshot outputs of import-capable steps into collections."""

    def __init__(self, store: CollectionStore, temporary_prefix: str = "ocr-sandbox-") -> None:
        self.store = store
        self.temporary_prefix = temporary_prefix

    def add_snapshot_to_collection(
        self,
        project: Project,
        sandbox: Sandbox,
        track: Track,
        collection: Collection,
        folio_ids: Optional[Iterable[str]] = None,
        include_keywords: bool = False,
    ) -> List[CollectionSet]:
        """
        Copy the output files of a snapshot into ``collection``, one set per folio.

        Files whose page is unknown, whose folio is not in the project or not
        selected, or which are missing on disk are skipped.

        Args:
            project: Project owning the sandbox
            sandbox: Sandbox holding the snapshot
            track: Snapshot track
            collection: Target collection
            folio_ids: Folios to import (default: all)
            include_keywords: Copy the folio keywords into the sets

        Returns:
            The created sets

        Raises:
            TrackNotFound: If the track does not resolve
            BadRequest: If the snapshot step does not produce importable output
            PreconditionFailed: If the METS document has no file group for the snapshot
            MalformedDocument: If the METS document cannot be parsed
        """
        snapshot = sandbox.resolve(track)
        if snapshot.step is None or not snapshot.step.kind.import_capable:
            kind = snapshot.step.kind.value if snapshot.step else "no"
            raise BadRequest(f"snapshot {format_track(track)} has {kind} step output, which cannot be imported")

        with sandbox.mutation():
            files = sandbox.files_for_track(track)
            file_folios = file_folio_map(sandbox.load_mets().pages)

        folios: Dict[str, Folio] = {folio.id: folio for folio in project.folios}
        selected = set(folio_ids) if folio_ids is not None else None

        staging = Path(tempfile.mkdtemp(prefix=self.temporary_prefix))
        try:
            specs: Dict[str, SetSpec] = {}
            for file in files:
                folio_id = file_folios.get(file.id)
                if folio_id is None or folio_id not in folios:
                    continue
                if selected is not None and folio_id not in selected:
                    continue
                source = sandbox.resolve_file(file)
                if not source.is_file():
                    logger.warning(f"Skipping missing snapshot file {source}")
                    continue
                shutil.copy2(source, staging / normalized_file_name(folio_id, source.name))
                folio = folios[folio_id]
                specs.setdefault(
                    folio_id,
                    SetSpec(id=folio_id, name=folio.name, keywords=folio.keywords if include_keywords else None),
                )
            return self.store.add(collection, list(specs.values()), staging, overwrite=True)
        finally:
            try:
                shutil.rmtree(staging)
            except OSError as exc:
                logger.warning(f"Could not clean up staging folder {staging} - {exc}")
