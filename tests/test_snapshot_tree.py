"""
Tests for the snapshot tree.

Tests cover:
- Track helpers
- Navigation (resolve, derived, path)
- Derivation and stable child indices
- Locking and configuration updates
- Subtree removal and root reset
- Reloading the tree from disk
"""

import json

import pytest

from ocr_sandbox_backend.errors import BadRequest, Conflict, TrackNotFound
from ocr_sandbox_backend.models import StepKind, StepOrigin
from ocr_sandbox_backend.snapshot_tree import SnapshotTree, is_strict_prefix, normalize_track, parent_track


def build(tree):
    """Root with children [0] and [1]; [0] has children [0, 0] and [0, 1]; [0, 1] has [0, 1, 0]."""
    tree.append_derived((), label="a")
    tree.append_derived((), label="b")
    tree.append_derived((0,), label="a.a")
    tree.append_derived((0,), label="a.b")
    tree.append_derived((0, 1), label="a.b.a")
    return tree


class TestTrackHelpers:
    """Tests for the track helper functions."""

    def test_normalize_accepts_lists(self):
        """Wire tracks become tuples, None is the root."""
        assert normalize_track([0, 2]) == (0, 2)
        assert normalize_track([]) == ()
        assert normalize_track(None) == ()

    @pytest.mark.parametrize("track", [[-1], [0, "1"], [True]])
    def test_normalize_rejects_invalid_elements(self, track):
        """Negative, non-integer and boolean elements do not address a snapshot."""
        with pytest.raises(TrackNotFound):
            normalize_track(track)

    def test_prefix_is_strict(self):
        """A track is not a strict prefix of itself."""
        assert is_strict_prefix((), (0,))
        assert is_strict_prefix((0,), (0, 1, 2))
        assert not is_strict_prefix((0,), (0,))
        assert not is_strict_prefix((1,), (0, 1))

    def test_root_has_no_parent(self):
        """The parent of the root cannot be taken."""
        assert parent_track((0, 3)) == (0,)
        with pytest.raises(TrackNotFound):
            parent_track(())


class TestNavigation:
    """Tests for resolve, get_derived and get_path."""

    def test_root_resolves(self, tree):
        """The empty track is the root snapshot."""
        root = tree.resolve(())
        assert root.is_root
        assert root.label == "Root"
        assert root.children == ()

    def test_get_path_ends_at_track(self, tree):
        """For every snapshot the path runs from the root to the snapshot with increasing depth."""
        build(tree)
        for snapshot in tree.snapshots():
            path = tree.get_path(snapshot.track)
            assert path[0].track == ()
            assert path[-1].track == snapshot.track
            depths = [len(item.track) for item in path]
            assert depths == list(range(len(snapshot.track) + 1))

    def test_get_derived_lists_children_in_creation_order(self, tree):
        """Derived snapshots are returned in the order they were appended."""
        build(tree)
        assert [snapshot.label for snapshot in tree.get_derived((0,))] == ["a.a", "a.b"]
        assert tree.get_derived((1,)) == []

    def test_invalid_track_is_not_found(self, tree):
        """Out-of-range indices fail at any depth."""
        build(tree)
        for track in [(2,), (0, 2), (1, 0), (0, 1, 0, 0)]:
            with pytest.raises(TrackNotFound):
                tree.resolve(track)
            with pytest.raises(TrackNotFound):
                tree.get_path(track)


class TestDerivation:
    """Tests for appending derived snapshots."""

    def test_append_then_resolve(self, tree):
        """The new child resolves and has no children of its own."""
        child = tree.append_derived((), label="ocr", description="first run")
        assert child.track == (0,)
        resolved = tree.resolve(child.track)
        assert resolved.children == ()
        assert resolved.label == "ocr"
        assert resolved.description == "first run"
        assert resolved.data_folder.is_dir()
        assert tree.resolve(()).to_view().child_count == 1

    def test_append_adopts_staged_folder(self, tree, tmp_path):
        """A populated staging folder becomes the snapshot folder."""
        staged = tmp_path / "staging" / "job"
        (staged / "sandbox").mkdir(parents=True)
        (staged / "sandbox" / "0001.xml").write_text("<PcGts/>", encoding="utf-8")

        child = tree.append_derived((), staged_folder=staged)

        assert not staged.exists()
        assert (child.data_folder / "0001.xml").is_file()
        assert tree.list_files(child.track) == ["0001.xml"]

    def test_append_records_step(self, tree):
        """The originating step is kept with the snapshot."""
        step = StepOrigin(kind=StepKind.OCR, provider_id="calamari", workflow_id="ocr", job_id="j1")
        child = tree.append_derived((), step=step)
        assert tree.resolve(child.track).step == step

    def test_append_under_missing_parent_fails(self, tree):
        """Appending under a track that does not resolve is refused."""
        with pytest.raises(TrackNotFound):
            tree.append_derived((3,))

    def test_indices_are_not_reused_after_removal(self, tree):
        """Removing a child leaves its slot empty; siblings keep their tracks."""
        build(tree)
        tree.remove((0, 0))

        assert [snapshot.track for snapshot in tree.get_derived((0,))] == [(0, 1)]
        assert tree.resolve((0, 1, 0)).label == "a.b.a"
        assert tree.append_derived((0,)).track == (0, 2)


class TestLocking:
    """Tests for lock, unlock and configuration updates."""

    def test_lock_blocks_update_until_unlocked(self, tree):
        """Updating a locked snapshot conflicts; after unlocking it succeeds."""
        tree.append_derived(())
        locked = tree.lock((0,), "job-7", "exporting")
        assert locked.lock.source_id == "job-7"
        assert locked.lock.comment == "exporting"

        with pytest.raises(Conflict):
            tree.update_configuration((0,), label="renamed")

        tree.unlock((0,))
        updated = tree.update_configuration((0,), label="renamed", description="  ")
        assert updated.label == "renamed"
        assert updated.description is None

    def test_lock_twice_conflicts(self, tree):
        """A locked snapshot cannot be locked again."""
        tree.lock((), "job-1")
        with pytest.raises(Conflict):
            tree.lock((), "job-2")
        assert tree.resolve(()).lock.source_id == "job-1"

    def test_unlock_unlocked_conflicts(self, tree):
        """Unlocking requires a lock."""
        with pytest.raises(Conflict):
            tree.unlock(())

    def test_lock_requires_source(self, tree):
        """A blank lock source is rejected."""
        with pytest.raises(BadRequest):
            tree.lock((), "   ")

    def test_append_under_locked_parent_is_allowed(self, tree):
        """Locks protect the snapshot itself, not the derivation of new snapshots."""
        tree.lock((), "job-1")
        assert tree.append_derived(()).track == (0,)


class TestRemoval:
    """Tests for removing snapshots and resetting the root."""

    def test_remove_invalidates_descendants(self, tree):
        """Every track below the removed snapshot stops resolving."""
        build(tree)
        folder = tree.resolve((0,)).folder

        assert tree.remove((0,)) is True

        for track in [(0,), (0, 0), (0, 1), (0, 1, 0)]:
            with pytest.raises(TrackNotFound):
                tree.resolve(track)
        assert tree.resolve((1,)).label == "b"
        assert not folder.exists()

    def test_remove_derived_by_index(self, tree):
        """A child is addressed by its parent track and index; siblings keep their indices."""
        build(tree)

        assert tree.remove_derived((0,), 0) is True

        assert [snapshot.track for snapshot in tree.get_derived((0,))] == [(0, 1)]
        with pytest.raises(TrackNotFound):
            tree.remove_derived((0,), 0)

    def test_locked_snapshot_is_not_removed(self, tree):
        """Removal of a locked snapshot conflicts and leaves the tree untouched."""
        build(tree)
        tree.lock((0, 1), "job-7")

        with pytest.raises(Conflict):
            tree.remove((0, 1))

        assert tree.resolve((0, 1, 0)).label == "a.b.a"

    def test_locked_descendant_protects_ancestor(self, tree):
        """An ancestor of a locked snapshot cannot be removed either."""
        build(tree)
        tree.lock((0, 1, 0), "job-7")

        with pytest.raises(Conflict):
            tree.remove((0,))
        with pytest.raises(Conflict):
            tree.reset_root()

        tree.unlock((0, 1, 0))
        assert tree.remove((0,))

    def test_reset_root_keeps_root_configuration(self, tree):
        """Resetting removes all derived snapshots but keeps the root."""
        build(tree)
        tree.update_configuration((), label="Base", description="scans")

        assert tree.remove(()) is True

        root = tree.resolve(())
        assert root.children == ()
        assert root.label == "Base"
        assert root.description == "scans"


class TestPersistence:
    """Tests for the on-disk representation."""

    def test_configuration_file_layout(self, tree, layout):
        """Each snapshot persists its configuration below its folder."""
        child = tree.append_derived((), label="ocr")
        path = layout.configuration_path(child.folder)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["label"] == "ocr"
        assert data["next_derived"] == 0
        assert child.folder == tree.root_folder / "derived" / "0"

    def test_load_rebuilds_tree(self, tree, layout):
        """Loading restores tracks, configuration, locks and the slot counters."""
        build(tree)
        tree.remove((0, 0))
        tree.lock((0, 1), "job-7", "in use")

        loaded = SnapshotTree.load(tree.root_folder, layout)

        assert [snapshot.track for snapshot in loaded.snapshots()] == [
            snapshot.track for snapshot in tree.snapshots()
        ]
        assert loaded.resolve((0, 1)).lock.comment == "in use"
        assert loaded.append_derived((0,)).track == (0, 2)

    def test_create_refuses_existing_tree(self, tree, layout):
        """A second tree cannot be created in the same folder."""
        with pytest.raises(Conflict):
            SnapshotTree.create(tree.root_folder, layout)

    def test_load_skips_inconsistent_folders(self, tree, layout):
        """A derived folder without configuration is ignored but its slot is not reused."""
        tree.append_derived(())
        (tree.root_folder / "derived" / "5" / "sandbox").mkdir(parents=True)

        loaded = SnapshotTree.load(tree.root_folder, layout)

        assert [snapshot.track for snapshot in loaded.get_derived(())] == [(0,)]
        assert loaded.append_derived(()).track == (6,)
