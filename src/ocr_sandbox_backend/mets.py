"""
METS adapter.

Downstream tools describe the output of every snapshot in one METS document
per sandbox: a file section with one file group per snapshot and a physical
structure map linking each page to the files produced for it. This module
parses and produces that document and translates between its ids and the
snapshot tree:

- a snapshot's file group id is derived from the sandbox METS template and
  the snapshot track (file_group_id_for)
- a page id is translated to a folio id by the page naming convention of the
  sandbox METS group (PageNaming)
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Set, Union

from .errors import MalformedDocument, PreconditionFailed
from .models import FileGroup, MetsDocument, MetsFile, PhysicalPage, Track

logger = logging.getLogger(__name__)

METS_NS = "http://www.loc.gov/METS/"
XLINK_NS = "http://www.w3.org/1999/xlink"

ET.register_namespace("mets", METS_NS)
ET.register_namespace("xlink", XLINK_NS)

DEFAULT_GROUP = "ocr4all"
ROOT_TRACK_TOKEN = "root"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def _mets(tag: str) -> str:
    return f"{{{METS_NS}}}{tag}"


_HREF = f"{{{XLINK_NS}}}href"


def file_group_id_for(template: str, track: Track, group: str = DEFAULT_GROUP) -> str:
    """
    Return the METS file group id of the snapshot at ``track``.

    The track is rendered as its indices joined by ``_`` (``root`` for the
    root snapshot), so distinct tracks never share an id as long as the
    template contains ``{track}``.

    Example:
        >>> file_group_id_for("OCR-D-{group}-{track}", (0, 2))
        "OCR-D-ocr4all-0_2"
    """
    token = "_".join(str(index) for index in track) if track else ROOT_TRACK_TOKEN
    return template.replace("{group}", group).replace("{track}", token)


class PageNaming:
    """Maps METS physical page ids to folio ids and back, by id prefix."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def folio_id(self, page_id: str) -> str:
        if not page_id.startswith(self.prefix) or len(page_id) == len(self.prefix):
            raise ValueError(f"page id '{page_id}' does not follow the '{self.prefix}<folio>' convention")
        return page_id[len(self.prefix):]

    def page_id(self, folio_id: str) -> str:
        return f"{self.prefix}{folio_id}"


_PAGE_NAMINGS: Dict[str, PageNaming] = {DEFAULT_GROUP: PageNaming("PHYS_")}


def register_page_naming(group: str, naming: PageNaming) -> None:
    _PAGE_NAMINGS[group] = naming


def get_page_naming(group: str) -> PageNaming:
    return _PAGE_NAMINGS.get(group, _PAGE_NAMINGS[DEFAULT_GROUP])


class StepOutput(NamedTuple):
    """One output file declared by a step provider, relative to the snapshots folder."""

    folio_id: str
    path: str
    mime_type: Optional[str] = None


def parse_mets(content: Union[str, bytes], naming: PageNaming) -> MetsDocument:
    """
    Parse a METS document.

    Pages whose id cannot be translated to a folio id are skipped with a
    warning.

    Args:
        content: The XML text
        naming: Page naming convention of the sandbox METS group

    Returns:
        The file groups and physical pages of the document

    Raises:
        MalformedDocument: If the XML is invalid or lacks required attributes
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise MalformedDocument(f"invalid METS XML - {exc}") from exc
    if root.tag != _mets("mets"):
        raise MalformedDocument(f"unexpected METS root element {root.tag}")

    header = root.find(_mets("metsHdr"))
    document = MetsDocument(created=header.get("CREATEDATE") if header is not None else None)

    for group_element in root.iterfind(f"{_mets('fileSec')}/{_mets('fileGrp')}"):
        group_id = _required(group_element, "USE")
        files = []
        for file_element in group_element.iterfind(_mets("file")):
            location = file_element.find(_mets("FLocat"))
            if location is None or not location.get(_HREF):
                raise MalformedDocument(f"file '{_required(file_element, 'ID')}' has no location")
            files.append(
                MetsFile(
                    id=_required(file_element, "ID"),
                    path=location.get(_HREF, ""),
                    mime_type=file_element.get("MIMETYPE"),
                )
            )
        document.file_groups.append(FileGroup(id=group_id, files=files))

    sequence = _physical_sequence(root)
    if sequence is not None:
        for page_element in sequence.iterfind(_mets("div")):
            page_id = _required(page_element, "ID")
            try:
                folio_id = naming.folio_id(page_id)
            except ValueError as exc:
                logger.warning(f"Skipping METS page - {exc}")
                continue
            file_ids = [_required(pointer, "FILEID") for pointer in page_element.iterfind(_mets("fptr"))]
            document.pages.append(PhysicalPage(id=page_id, folio_id=folio_id, file_ids=file_ids))
    return document


def load_mets(path: Path, naming: PageNaming) -> MetsDocument:
    """
    Parse the METS file at ``path``.

    Raises:
        PreconditionFailed: If the file does not exist
        MalformedDocument: If it cannot be parsed
    """
    if not path.is_file():
        raise PreconditionFailed(f"no METS document at {path}")
    return parse_mets(path.read_bytes(), naming)


def render_mets(document: MetsDocument) -> bytes:
    """Serialise ``document`` as METS XML."""
    root = ET.Element(_mets("mets"))
    ET.SubElement(root, _mets("metsHdr"), CREATEDATE=document.created or _formatted_date())

    file_section = ET.SubElement(root, _mets("fileSec"))
    for group in document.file_groups:
        group_element = ET.SubElement(file_section, _mets("fileGrp"), USE=group.id)
        for file in group.files:
            attributes = {"ID": file.id}
            if file.mime_type:
                attributes["MIMETYPE"] = file.mime_type
            file_element = ET.SubElement(group_element, _mets("file"), attributes)
            ET.SubElement(file_element, _mets("FLocat"), {"LOCTYPE": "OTHER", "OTHERLOCTYPE": "FILE", _HREF: file.path})

    structure_map = ET.SubElement(root, _mets("structMap"), TYPE="PHYSICAL")
    sequence = ET.SubElement(structure_map, _mets("div"), TYPE="physSequence")
    for page in document.pages:
        page_element = ET.SubElement(sequence, _mets("div"), TYPE="page", ID=page.id)
        for file_id in page.file_ids:
            ET.SubElement(page_element, _mets("fptr"), FILEID=file_id)

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def save_mets(path: Path, document: MetsDocument) -> None:
    temporary = path.with_name(path.name + ".tmp")
    temporary.write_bytes(render_mets(document))
    temporary.replace(path)


def file_folio_map(pages: Iterable[PhysicalPage]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for page in pages:
        for file_id in page.file_ids:
            mapping[file_id] = page.folio_id
    return mapping


def resolve_folio_for_file(file_id: str, pages: Iterable[PhysicalPage]) -> Optional[str]:
    for page in pages:
        if file_id in page.file_ids:
            return page.folio_id
    return None


def files_for_track(document: MetsDocument, template: str, track: Track, group: str = DEFAULT_GROUP) -> List[MetsFile]:
    """
    Return the files of the snapshot at ``track``.

    Raises:
        PreconditionFailed: If the document has no file group for the track,
            i.e. the step never wrote its output or the document is stale
    """
    group_id = file_group_id_for(template, track, group)
    file_group = document.file_group(group_id)
    if file_group is None:
        raise PreconditionFailed(f"no METS file group '{group_id}'")
    return list(file_group.files)


def register_file_group(
    document: MetsDocument, group_id: str, outputs: Iterable[StepOutput], naming: PageNaming
) -> MetsDocument:
    """
    Add (or replace) the file group ``group_id`` and link its files to their pages.

    Returns:
        A new document; ``document`` is left untouched
    """
    updated = document.model_copy(deep=True)
    updated.file_groups = [group for group in updated.file_groups if group.id != group_id]
    stale = {file.id for group in document.file_groups if group.id == group_id for file in group.files}
    pages = {page.folio_id: page for page in updated.pages}
    for page in updated.pages:
        page.file_ids = [file_id for file_id in page.file_ids if file_id not in stale]

    files = []
    taken: Set[str] = set()
    for output in outputs:
        # A folio may have several outputs; later ones get a _N suffix.
        base = f"{group_id}_{output.folio_id}"
        file_id, index = base, 0
        while file_id in taken:
            index += 1
            file_id = f"{base}_{index}"
        taken.add(file_id)
        files.append(MetsFile(id=file_id, path=output.path, mime_type=output.mime_type))
        page = pages.get(output.folio_id)
        if page is None:
            page = PhysicalPage(id=naming.page_id(output.folio_id), folio_id=output.folio_id)
            pages[output.folio_id] = page
            updated.pages.append(page)
        page.file_ids.append(file_id)
    updated.file_groups.append(FileGroup(id=group_id, files=files))
    return updated


def _physical_sequence(root: ET.Element) -> Optional[ET.Element]:
    structure_maps = root.findall(_mets("structMap"))
    physical = [element for element in structure_maps if element.get("TYPE", "").upper() == "PHYSICAL"]
    for structure_map in physical or structure_maps:
        sequence = structure_map.find(_mets("div"))
        if sequence is not None:
            return sequence
    return None


def _required(element: ET.Element, attribute: str) -> str:
    value = element.get(attribute)
    if not value:
        raise MalformedDocument(f"METS element {element.tag} lacks the {attribute} attribute")
    return value


def _formatted_date(date: Optional[datetime] = None) -> str:
    return (date or datetime.now()).strftime(DATE_FORMAT)[:-3]
