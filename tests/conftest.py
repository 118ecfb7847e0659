"""
Pytest configuration and fixtures for OCR Sandbox Backend tests.
"""

import os
import shutil
import tempfile
import threading
from pathlib import Path

import pytest

# Set test environment variables before importing the app
os.environ["OCR_SANDBOX_WORKSPACE"] = tempfile.mkdtemp(prefix="ocr_sandbox_test_workspace_")
os.environ["S3_BUCKET_NAME"] = ""

from fastapi.testclient import TestClient

from ocr_sandbox_backend.configuration import make_runtime_config
from ocr_sandbox_backend.job_manager import JobManager
from ocr_sandbox_backend.main import app
from ocr_sandbox_backend.mets import StepOutput
from ocr_sandbox_backend.models import Folio, Project, ProjectRights, StepKind, StepOrigin
from ocr_sandbox_backend.sandbox import Sandbox
from ocr_sandbox_backend.snapshot_tree import SnapshotLayout, SnapshotTree
from ocr_sandbox_backend.workflow import ProviderRegistry, WorkflowDefinition, WorkflowRegistry, default_providers

PAGE_XML_MIME_TYPE = "application/vnd.prima.page+xml"


class PageXmlProvider:
    """Post-correction step writing one PAGE XML file per folio."""

    id = "page-xml"
    kind = StepKind.POSTCORRECTION

    def run(self, context):
        outputs = []
        for folio in context.project.folios:
            context.check_cancelled()
            path = context.output_folder / f"{folio.id}.xml"
            path.write_text(f"<PcGts pcGtsId='{folio.id}'/>", encoding="utf-8")
            outputs.append(StepOutput(folio_id=folio.id, path=path.name, mime_type=PAGE_XML_MIME_TYPE))
        return outputs


class BlockingProvider:
    """Tool step that waits until it is released or cancelled."""

    id = "blocking"
    kind = StepKind.TOOL

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def run(self, context):
        self.started.set()
        while not self.release.wait(0.01):
            context.check_cancelled()
        return []


class FailingProvider:
    """OCR step that always fails."""

    id = "failing"
    kind = StepKind.OCR

    def run(self, context):
        (context.output_folder / "partial.txt").write_text("partial", encoding="utf-8")
        raise RuntimeError("recognition model missing")


@pytest.fixture(scope="session", autouse=True)
def test_workspace():
    """Remove the application workspace after all tests."""
    workspace = os.environ["OCR_SANDBOX_WORKSPACE"]
    yield Path(workspace)
    shutil.rmtree(workspace, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def config():
    """Runtime configuration without job persistence."""
    return make_runtime_config({"scheduler": {"database": None}})


@pytest.fixture
def layout():
    return SnapshotLayout()


@pytest.fixture
def tree(tmp_path, layout):
    """An empty snapshot tree (root only)."""
    return SnapshotTree.create(tmp_path / "snapshots", layout, label="Root")


@pytest.fixture
def project(tmp_path):
    """An active project with execute rights and three folios with images."""
    images = tmp_path / "images"
    images.mkdir()
    folios = [
        Folio(id="0001", name="Cover", keywords=["binding"]),
        Folio(id="0002", name="Page 1"),
        Folio(id="0003", name="Page 2"),
    ]
    for folio in folios:
        (images / f"{folio.id}.png").write_bytes(b"\x89PNG fake " + folio.id.encode())
    return Project(
        id="p1",
        name="Test project",
        rights=ProjectRights(read=True, write=True, execute=True),
        folios=folios,
        images_folder=images,
    )


@pytest.fixture
def sandbox(tmp_path, config):
    """An active sandbox with an empty snapshot tree."""
    return Sandbox.create("main", "p1", tmp_path / "sandbox", config, label="Root")


@pytest.fixture
def providers():
    registry = default_providers()
    registry.register(PageXmlProvider())
    registry.register(BlockingProvider())
    registry.register(FailingProvider())
    return registry


@pytest.fixture
def manager(providers):
    """A job manager with two workers and no persistence."""
    job_manager = JobManager(providers, max_workers=2)
    yield job_manager
    job_manager.shutdown(wait=False)


@pytest.fixture
def page_xml_workflow():
    return WorkflowDefinition(
        id="larex", kind=StepKind.POSTCORRECTION, provider_id=PageXmlProvider.id, label="LAREX"
    )


@pytest.fixture
def blocking_workflow():
    return WorkflowDefinition(id="blocking", kind=StepKind.TOOL, provider_id=BlockingProvider.id)


@pytest.fixture
def failing_workflow():
    return WorkflowDefinition(id="calamari", kind=StepKind.OCR, provider_id=FailingProvider.id)


@pytest.fixture
def workflows(page_xml_workflow, blocking_workflow, failing_workflow):
    registry = WorkflowRegistry()
    for workflow in (page_xml_workflow, blocking_workflow, failing_workflow):
        registry.register(workflow)
    return registry


def write_snapshot(sandbox, track, kind, files):
    """
    Append a snapshot under ``track`` holding ``files`` ({folio id: file name})
    and register them in the sandbox METS document.
    """
    snapshot = sandbox.append_derived(track, step=StepOrigin(kind=kind, provider_id="test"))
    outputs = []
    for folio_id, name in files.items():
        (snapshot.data_folder / name).write_text(f"<PcGts pcGtsId='{folio_id}'/>", encoding="utf-8")
        outputs.append(StepOutput(folio_id=folio_id, path=name, mime_type=PAGE_XML_MIME_TYPE))
    sandbox.register_outputs(snapshot.track, outputs)
    return snapshot


@pytest.fixture
def postcorrection_snapshot(sandbox):
    """Snapshot [0] with PAGE XML output for every folio of the project."""
    return write_snapshot(
        sandbox,
        (),
        StepKind.POSTCORRECTION,
        {"0001": "OCR-D-0_0001.xml", "0002": "OCR-D-0_0002.xml", "0003": "OCR-D-0_0003.xml"},
    )
