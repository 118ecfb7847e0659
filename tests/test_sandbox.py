"""
Tests for sandboxes.

Tests cover:
- Availability predicates for snapshot access and processing
- METS registration of snapshot outputs
- Sandbox registry and reloading from disk
"""

import pytest

from ocr_sandbox_backend.errors import Conflict, NotAvailable, NotFound, PreconditionFailed
from ocr_sandbox_backend.mets import StepOutput
from ocr_sandbox_backend.models import ProjectRights, ProjectState, SandboxState
from ocr_sandbox_backend.sandbox import Sandbox, SandboxRegistry


class TestAvailability:
    """Tests for the sandbox availability predicates."""

    @pytest.mark.parametrize(
        "project_state, rights, sandbox_state, expected",
        [
            (ProjectState.ACTIVE, ProjectRights(execute=True), SandboxState.ACTIVE, True),
            (ProjectState.ACTIVE, ProjectRights(read=True), SandboxState.ACTIVE, False),
            (ProjectState.INACTIVE, ProjectRights(execute=True), SandboxState.ACTIVE, False),
            (ProjectState.ACTIVE, ProjectRights(execute=True), SandboxState.PAUSED, False),
            (ProjectState.ACTIVE, ProjectRights(execute=True), SandboxState.SECURED, False),
            (ProjectState.ACTIVE, ProjectRights(execute=True, special=True), SandboxState.SECURED, True),
            (ProjectState.ACTIVE, ProjectRights(execute=True, special=True), SandboxState.CANCELED, False),
        ],
    )
    def test_executable(self, sandbox, project, project_state, rights, sandbox_state, expected):
        """Processing needs an active project with execute right and an active (or secured plus special) sandbox."""
        sandbox.set_state(sandbox_state)
        candidate = project.model_copy(update={"state": project_state, "rights": rights})

        assert sandbox.is_executable(candidate) is expected
        if not expected:
            with pytest.raises(NotAvailable):
                sandbox.ensure_executable(candidate)

    @pytest.mark.parametrize(
        "rights, sandbox_state, expected",
        [
            (ProjectRights(read=True), SandboxState.ACTIVE, True),
            (ProjectRights(execute=True), SandboxState.CLOSED, True),
            (ProjectRights(write=True), SandboxState.PAUSED, False),
            (ProjectRights(read=True), SandboxState.SECURED, False),
            (ProjectRights(special=True), SandboxState.CANCELED, True),
        ],
    )
    def test_snapshot_access(self, sandbox, project, rights, sandbox_state, expected):
        """Open sandboxes need read or execute right; secured and canceled ones the special right."""
        sandbox.set_state(sandbox_state)
        candidate = project.model_copy(update={"rights": rights})

        assert sandbox.is_snapshot_access(candidate) is expected


class TestMetsRegistration:
    """Tests for recording snapshot outputs in the sandbox METS document."""

    def test_register_creates_document(self, sandbox):
        """The first registration creates the METS document next to the root snapshot."""
        snapshot = sandbox.append_derived((), step=None)
        (snapshot.data_folder / "0001.xml").write_text("<PcGts/>", encoding="utf-8")

        group_id = sandbox.register_outputs(snapshot.track, [StepOutput(folio_id="0001", path="0001.xml")])

        assert group_id == "OCR-D-ocr4all-0"
        assert sandbox.mets_path.is_file()
        files = sandbox.files_for_track((0,))
        assert [file.path for file in files] == ["derived/0/sandbox/0001.xml"]
        assert sandbox.resolve_file(files[0]) == snapshot.data_folder / "0001.xml"

    def test_files_for_unregistered_track(self, sandbox, postcorrection_snapshot):
        """A snapshot without file group fails the precondition."""
        sandbox.append_derived(postcorrection_snapshot.track)
        with pytest.raises(PreconditionFailed):
            sandbox.files_for_track((0, 0))

    def test_files_without_document(self, sandbox):
        """A sandbox without METS document has no file groups."""
        with pytest.raises(PreconditionFailed):
            sandbox.files_for_track(())


class TestStaging:
    """Tests for job staging folders."""

    def test_staging_is_outside_the_tree(self, sandbox):
        """Staging folders are not part of the snapshot tree and are discarded on request."""
        folder = sandbox.staging_folder("job-1")
        (folder / "partial.txt").write_text("x", encoding="utf-8")

        assert not folder.is_relative_to(sandbox.snapshots_folder)
        assert sandbox.staging_folder("job-1").exists()
        assert not (folder / "partial.txt").exists()

        sandbox.discard_staging("job-1")
        assert not folder.exists()
        sandbox.discard_staging("job-1")


class TestRegistry:
    """Tests for the sandbox registry."""

    def test_get_returns_shared_instance(self, tmp_path, config):
        """All callers share one sandbox instance, and therefore one lock."""
        registry = SandboxRegistry(tmp_path / "projects", config)
        created = registry.create("p1", "main", name="Main")

        assert registry.get("p1", "main") is created
        assert [sandbox.id for sandbox in registry.list("p1")] == ["main"]
        assert registry.list("p2") == []

    def test_reopen_from_disk(self, tmp_path, config):
        """A new registry loads the sandbox state and tree from disk."""
        registry = SandboxRegistry(tmp_path / "projects", config)
        sandbox = registry.create("p1", "main")
        sandbox.append_derived((), label="ocr")
        sandbox.set_state(SandboxState.PAUSED)

        reopened = SandboxRegistry(tmp_path / "projects", config).get("p1", "main")

        assert reopened is not sandbox
        assert reopened.state is SandboxState.PAUSED
        assert reopened.resolve((0,)).label == "ocr"

    def test_unknown_sandbox(self, tmp_path, config):
        """Opening a sandbox that was never created fails with NotFound."""
        registry = SandboxRegistry(tmp_path / "projects", config)
        with pytest.raises(NotFound):
            registry.get("p1", "missing")

    def test_create_twice_conflicts(self, tmp_path, config):
        """A sandbox id can only be created once per project."""
        Sandbox.create("main", "p1", tmp_path / "main", config)
        with pytest.raises(Conflict):
            Sandbox.create("main", "p1", tmp_path / "main", config)


    def test_ids_differing_in_case_share_no_sandbox(self, tmp_path, config):
        """Ids that sanitize to the same folder only address the sandbox created under them."""
        registry = SandboxRegistry(tmp_path / "projects", config)
        created = registry.create("p1", "Main")

        assert registry.get("p1", "Main") is created
        with pytest.raises(NotFound):
            registry.get("p1", "main")
        with pytest.raises(Conflict):
            registry.create("p1", "main")
        with pytest.raises(NotFound):
            SandboxRegistry(tmp_path / "projects", config).get("p1", "main")
        assert [sandbox.id for sandbox in registry.list("p1")] == ["Main"]
