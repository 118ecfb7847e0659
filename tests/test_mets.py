"""
Tests for the METS adapter.

Tests cover:
- File group naming
- Parsing (file groups, pages, page naming, malformed input)
- File lookup per track
- File group registration and serialisation
"""

import logging

import pytest

from ocr_sandbox_backend.errors import MalformedDocument, PreconditionFailed
from ocr_sandbox_backend.mets import (
    PageNaming,
    StepOutput,
    file_group_id_for,
    files_for_track,
    get_page_naming,
    parse_mets,
    register_file_group,
    register_page_naming,
    render_mets,
    resolve_folio_for_file,
)
from ocr_sandbox_backend.models import MetsDocument

METS = """<?xml version="1.0" encoding="UTF-8"?>
<mets:mets xmlns:mets="http://www.loc.gov/METS/" xmlns:xlink="http://www.w3.org/1999/xlink">
  <mets:metsHdr CREATEDATE="2024-05-01T10:00:00.000"/>
  <mets:fileSec>
    <mets:fileGrp USE="FG-root">
      <mets:file ID="IMG_0001" MIMETYPE="image/png">
        <mets:FLocat LOCTYPE="OTHER" OTHERLOCTYPE="FILE" xlink:href="sandbox/0001.png"/>
      </mets:file>
    </mets:fileGrp>
    <mets:fileGrp USE="FG-0">
      <mets:file ID="FG-0_0001" MIMETYPE="application/vnd.prima.page+xml">
        <mets:FLocat LOCTYPE="OTHER" OTHERLOCTYPE="FILE" xlink:href="derived/0/sandbox/0001.xml"/>
      </mets:file>
      <mets:file ID="FG-0_0002" MIMETYPE="application/vnd.prima.page+xml">
        <mets:FLocat LOCTYPE="OTHER" OTHERLOCTYPE="FILE" xlink:href="derived/0/sandbox/0002.xml"/>
      </mets:file>
    </mets:fileGrp>
  </mets:fileSec>
  <mets:structMap TYPE="LOGICAL">
    <mets:div TYPE="monograph"/>
  </mets:structMap>
  <mets:structMap TYPE="PHYSICAL">
    <mets:div TYPE="physSequence">
      <mets:div TYPE="page" ID="PHYS_0001">
        <mets:fptr FILEID="IMG_0001"/>
        <mets:fptr FILEID="FG-0_0001"/>
      </mets:div>
      <mets:div TYPE="page" ID="PHYS_0002">
        <mets:fptr FILEID="FG-0_0002"/>
      </mets:div>
      <mets:div TYPE="page" ID="page-three">
        <mets:fptr FILEID="FG-0_0003"/>
      </mets:div>
    </mets:div>
  </mets:structMap>
</mets:mets>
"""

NAMING = PageNaming("PHYS_")


class TestFileGroupNaming:
    """Tests for file_group_id_for."""

    def test_same_track_same_id(self):
        """The id is a pure function of template and track."""
        template = "OCR-D-{group}-{track}"
        assert file_group_id_for(template, (0, 2)) == file_group_id_for(template, (0, 2))
        assert file_group_id_for(template, (0, 2)) == "OCR-D-ocr4all-0_2"

    def test_distinct_tracks_distinct_ids(self):
        """Different tracks never share a file group id."""
        tracks = [(), (0,), (1,), (0, 1), (1, 0), (10,), (1, 0, 0), (0, 10)]
        ids = {file_group_id_for("FG-{track}", track) for track in tracks}
        assert len(ids) == len(tracks)

    def test_root_token(self):
        """The root snapshot uses the 'root' token."""
        assert file_group_id_for("FG-{track}", ()) == "FG-root"
        assert file_group_id_for("{group}:{track}", (), group="custom") == "custom:root"


class TestParse:
    """Tests for parse_mets."""

    def test_file_groups_and_pages(self):
        """File groups keep their files in order; pages map to folios."""
        document = parse_mets(METS, NAMING)

        assert document.created == "2024-05-01T10:00:00.000"
        assert [group.id for group in document.file_groups] == ["FG-root", "FG-0"]
        files = document.file_group("FG-0").files
        assert [file.id for file in files] == ["FG-0_0001", "FG-0_0002"]
        assert files[0].path == "derived/0/sandbox/0001.xml"
        assert files[0].mime_type == "application/vnd.prima.page+xml"
        assert document.pages[0].folio_id == "0001"
        assert document.pages[0].file_ids == ["IMG_0001", "FG-0_0001"]

    def test_unmappable_page_is_skipped(self, caplog):
        """A page id outside the naming convention is skipped with a warning."""
        with caplog.at_level(logging.WARNING, logger="ocr_sandbox_backend.mets"):
            document = parse_mets(METS, NAMING)

        assert [page.id for page in document.pages] == ["PHYS_0001", "PHYS_0002"]
        assert "page-three" in caplog.text

    def test_invalid_xml_is_malformed(self):
        """Unparsable input fails with MalformedDocument."""
        with pytest.raises(MalformedDocument):
            parse_mets("<mets:mets", NAMING)

    def test_wrong_root_is_malformed(self):
        """A document that is not METS fails with MalformedDocument."""
        with pytest.raises(MalformedDocument):
            parse_mets("<html/>", NAMING)

    def test_file_group_without_use_is_malformed(self):
        """A file group needs its USE attribute."""
        broken = METS.replace('USE="FG-0"', "")
        with pytest.raises(MalformedDocument):
            parse_mets(broken, NAMING)

    def test_file_without_location_is_malformed(self):
        """Every file needs a location."""
        broken = METS.replace('xlink:href="derived/0/sandbox/0002.xml"', "")
        with pytest.raises(MalformedDocument):
            parse_mets(broken, NAMING)


class TestLookup:
    """Tests for file and folio lookup."""

    def test_resolve_folio_for_file(self):
        """Files resolve to the folio of the page pointing at them."""
        pages = parse_mets(METS, NAMING).pages
        assert resolve_folio_for_file("FG-0_0002", pages) == "0002"
        assert resolve_folio_for_file("IMG_0001", pages) == "0001"
        assert resolve_folio_for_file("FG-0_0003", pages) is None

    def test_files_for_track(self):
        """The files of a track are those of its file group."""
        document = parse_mets(METS, NAMING)
        files = files_for_track(document, "FG-{track}", (0,))
        assert [file.path for file in files] == ["derived/0/sandbox/0001.xml", "derived/0/sandbox/0002.xml"]

    def test_missing_file_group_fails_precondition(self):
        """A track without file group fails with PreconditionFailed."""
        document = parse_mets(METS, NAMING)
        with pytest.raises(PreconditionFailed):
            files_for_track(document, "FG-{track}", (0, 0))


class TestRegistration:
    """Tests for register_file_group and render_mets."""

    def test_register_links_files_to_pages(self):
        """Registered files join existing pages; unknown folios get new pages."""
        document = parse_mets(METS, NAMING)
        outputs = [
            StepOutput(folio_id="0001", path="derived/0/derived/0/sandbox/0001.xml"),
            StepOutput(folio_id="0004", path="derived/0/derived/0/sandbox/0004.xml", mime_type="text/xml"),
        ]

        updated = register_file_group(document, "FG-0_0", outputs, NAMING)

        assert document.file_group("FG-0_0") is None
        files = updated.file_group("FG-0_0").files
        assert [file.id for file in files] == ["FG-0_0_0001", "FG-0_0_0004"]
        pages = {page.folio_id: page for page in updated.pages}
        assert pages["0001"].file_ids[-1] == "FG-0_0_0001"
        assert pages["0004"].id == "PHYS_0004"

    def test_register_replaces_existing_group(self):
        """Registering a group id again replaces its files and page links."""
        document = parse_mets(METS, NAMING)
        outputs = [StepOutput(folio_id="0002", path="derived/0/sandbox/0002-v2.xml")]

        updated = register_file_group(document, "FG-0", outputs, NAMING)

        assert [file.path for file in updated.file_group("FG-0").files] == ["derived/0/sandbox/0002-v2.xml"]
        pages = {page.folio_id: page for page in updated.pages}
        assert pages["0001"].file_ids == ["IMG_0001"]
        assert pages["0002"].file_ids == ["FG-0_0002"]

    def test_several_outputs_of_one_folio_get_distinct_ids(self):
        """Two outputs of the same folio do not share a file id."""
        outputs = [
            StepOutput(folio_id="0001", path="sandbox/0001.png", mime_type="image/png"),
            StepOutput(folio_id="0001", path="sandbox/0001.xml"),
            StepOutput(folio_id="0002", path="sandbox/0002.xml"),
        ]

        document = register_file_group(MetsDocument(), "FG-0", outputs, NAMING)

        ids = [file.id for file in document.file_group("FG-0").files]
        assert ids == ["FG-0_0001", "FG-0_0001_1", "FG-0_0002"]
        pages = {page.folio_id: page for page in document.pages}
        assert pages["0001"].file_ids == ["FG-0_0001", "FG-0_0001_1"]

        parsed = parse_mets(render_mets(document), NAMING)
        assert [file.id for file in parsed.file_group("FG-0").files] == ids

    def test_rendered_document_parses_back(self):
        """A produced document is read back with the same groups and pages."""
        document = register_file_group(
            MetsDocument(), "FG-root", [StepOutput(folio_id="0001", path="sandbox/0001.png", mime_type="image/png")], NAMING
        )

        parsed = parse_mets(render_mets(document), NAMING)

        assert parsed.file_groups == document.file_groups
        assert parsed.pages == document.pages
        assert parsed.created is not None


class TestPageNaming:
    """Tests for page naming conventions."""

    def test_default_convention(self):
        """The default group maps PHYS_<folio> to the folio id and back."""
        naming = get_page_naming("ocr4all")
        assert naming.folio_id("PHYS_0007") == "0007"
        assert naming.page_id("0007") == "PHYS_0007"
        with pytest.raises(ValueError):
            naming.folio_id("PHYS_")

    def test_unknown_group_falls_back_to_default(self):
        """Groups without their own convention use the default one."""
        assert get_page_naming("unknown-group").prefix == "PHYS_"

    def test_registered_convention(self):
        """A group specific convention is used for its group."""
        register_page_naming("pagexml", PageNaming("page_"))
        assert get_page_naming("pagexml").folio_id("page_12") == "12"
