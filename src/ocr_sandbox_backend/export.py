"""
Zip assembly of snapshot outputs.

The archive holds the files of the snapshot METS file group, optionally
renamed to the folio display names, the source folio images under a
separate prefix on request, and a filename mapping (``<folio id>\\t<entry>``
per line) so the renamed entries can be traced back to their folios.
"""

from __future__ import annotations

import logging
import zipfile
from io import BytesIO
from typing import Dict, List, Optional, Set

from .collection import normalized_file_name
from .mets import file_folio_map
from .models import Folio, Project, Track, ZipOptions
from .sandbox import Sandbox
from .snapshot_tree import format_track
from .utils import unique_name

logger = logging.getLogger(__name__)

DEFAULT_MAPPING_FILE = "filename-mapping.tsv"
DEFAULT_SOURCE_PREFIX = "source/"


def display_name(folio: Folio, file_name: str) -> str:
    """
    Rename an output file after its folio, keeping what follows the folio id.

    Example:
        >>> display_name(Folio(id="0001", name="Title page"), "OCR-D-0_0001.xml")
        "Title page.xml"
    """
    return folio.name + normalized_file_name(folio.id, file_name)[len(folio.id):]


def build_filename_mapping(entries: List[tuple[str, str]]) -> str:
    return "".join(f"{folio_id}\t{name}\n" for folio_id, name in entries)


def zip_snapshot(
    project: Project,
    sandbox: Sandbox,
    track: Track,
    options: Optional[ZipOptions] = None,
    mapping_file: str = DEFAULT_MAPPING_FILE,
    source_prefix: str = DEFAULT_SOURCE_PREFIX,
) -> BytesIO:
    """
    Build a zip archive of the snapshot output.

    Entry names are unique case-insensitively; a collision gets a ``_N``
    suffix. Source images use their own namespace below ``source_prefix``.
    Files missing on disk are skipped with a warning.

    Args:
        project: Project owning the sandbox (folios and their images)
        sandbox: Sandbox holding the snapshot
        track: Snapshot track
        options: Renaming and source image options
        mapping_file: Archive entry name of the filename mapping
        source_prefix: Archive folder of the source images

    Returns:
        The archive, positioned at its start

    Raises:
        TrackNotFound: If the track does not resolve
        PreconditionFailed: If the METS document has no file group for the snapshot
    """
    options = options or ZipOptions()
    with sandbox.mutation():
        files = sandbox.files_for_track(track)
        file_folios = file_folio_map(sandbox.load_mets().pages)
    folios: Dict[str, Folio] = {folio.id: folio for folio in project.folios}

    taken: Set[str] = {mapping_file.lower()}
    source_taken: Set[str] = set()
    sources_added: Set[str] = set()
    mapping: List[tuple[str, str]] = []

    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for file in files:
            path = sandbox.resolve_file(file)
            if not path.is_file():
                logger.warning(f"Skipping missing snapshot file {path}")
                continue
            folio = folios.get(file_folios.get(file.id, ""))
            name = path.name
            if options.normalize_filenames and folio is not None:
                name = display_name(folio, path.name)
            entry = unique_name(name, taken)
            archive.write(path, entry)
            if folio is not None:
                mapping.append((folio.id, entry))

            if options.include_source_images and folio is not None and folio.id not in sources_added:
                sources_added.add(folio.id)
                image = project.folio_image(folio)
                if image is None or not image.is_file():
                    logger.warning(f"Skipping missing source image of folio '{folio.id}'")
                    continue
                image_name = f"{folio.name}{image.suffix}" if options.normalize_filenames else image.name
                archive.write(image, source_prefix + unique_name(image_name, source_taken))

        archive.writestr(mapping_file, build_filename_mapping(mapping))

    logger.info(f"Exported snapshot {format_track(track)} of sandbox '{sandbox.id}' with {len(mapping)} mapped files")
    buffer.seek(0)
    return buffer

