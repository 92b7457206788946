"""Tests for the SnapshotManager single slot and restore swap."""

import json
import os
import sys

import pytest

from conftest import FaultyFileSystem, read_tree
from siteupdate.components.snapshot_manager import SnapshotManager
from siteupdate.errors import RestoreError, SnapshotError
from siteupdate.utils.index import compute_tree_sha256


@pytest.fixture
def manager(snapshot_root):
    return SnapshotManager(str(snapshot_root))


class TestCreate:
    def test_copies_tree_and_writes_metadata(self, manager, site_root, snapshot_root):
        (site_root / "css").mkdir()
        (site_root / "css" / "site.css").write_bytes(b"body{}")

        handle = manager.create("App", str(site_root))

        slot = snapshot_root / "App_backup"
        assert handle.slot_path == str(slot)
        assert read_tree(slot / "files") == {"a.txt": b"old", "css/site.css": b"body{}"}
        assert handle.file_count == 2
        assert handle.checksum == compute_tree_sha256(str(site_root))[0]
        metadata = json.loads((slot / "snapshot.json").read_text())
        assert metadata["service_name"] == "App"
        assert metadata["source_path"] == str(site_root)

    def test_second_snapshot_replaces_first(self, manager, site_root):
        manager.create("App", str(site_root))
        (site_root / "a.txt").write_bytes(b"changed")

        handle = manager.create("App", str(site_root))

        assert len(manager.list_snapshots()) == 1
        assert read_tree(manager.slot_path("App") / "files") == {"a.txt": b"changed"}
        assert manager.find("App") == handle

    def test_missing_source_raises(self, manager, tmp_path, snapshot_root):
        with pytest.raises(SnapshotError):
            manager.create("App", str(tmp_path / "nope"))
        assert manager.find("App") is None

    def test_disk_full_leaves_no_partial_slot(self, site_root, snapshot_root):
        manager = SnapshotManager(str(snapshot_root), FaultyFileSystem(fail_copies=True))

        with pytest.raises(SnapshotError):
            manager.create("App", str(site_root))

        assert not (snapshot_root / "App_backup").exists()
        assert not (snapshot_root / "App_backup.partial").exists()

    def test_snapshot_root_inside_service_root_rejected(self, site_root):
        manager = SnapshotManager(str(site_root / "backups"))
        with pytest.raises(SnapshotError):
            manager.create("App", str(site_root))

    def test_slot_name_is_sanitized(self, manager, snapshot_root):
        slot = manager.slot_path("../etc")
        assert slot.parent == snapshot_root
        assert slot.name.startswith("_etc@")
        assert slot.name.endswith("_backup")

    @pytest.mark.parametrize("first,second", [
        ("my app", "my_app"),
        ("app.", "app"),
        ("a/b", "a_b"),
        ("a/b", "a:b"),
    ])
    def test_distinct_services_never_share_a_slot(self, manager, first, second):
        assert manager.slot_path(first) != manager.slot_path(second)

    def test_lookalike_service_keeps_its_snapshot(self, manager, tmp_path):
        first_root = tmp_path / "srv" / "first"
        second_root = tmp_path / "srv" / "second"
        for root, content in ((first_root, b"one"), (second_root, b"two")):
            root.mkdir(parents=True)
            (root / "index.html").write_bytes(content)

        first = manager.create("my app", str(first_root))
        manager.create("my_app", str(second_root))
        (first_root / "index.html").write_bytes(b"broken")

        manager.restore(first, str(first_root))

        assert (first_root / "index.html").read_bytes() == b"one"
        assert manager.find("my_app").source_path == str(second_root)

    @pytest.mark.skipif(sys.platform != "linux", reason="needs a filesystem that accepts arbitrary name bytes")
    def test_undecodable_file_name(self, manager, site_root):
        legacy_name = os.fsdecode(b"caf\xe9.txt")
        (site_root / legacy_name).write_bytes(b"latin-1")

        handle = manager.create("App", str(site_root))
        (site_root / legacy_name).write_bytes(b"changed")
        manager.restore(handle, str(site_root))

        assert handle.file_count == 2
        assert (site_root / legacy_name).read_bytes() == b"latin-1"


class TestRestore:
    def test_restores_byte_identical_tree(self, manager, site_root):
        before = compute_tree_sha256(str(site_root))
        handle = manager.create("App", str(site_root))
        (site_root / "a.txt").write_bytes(b"new")
        (site_root / "b.txt").write_bytes(b"fresh")

        manager.restore(handle, str(site_root))

        assert compute_tree_sha256(str(site_root)) == before
        assert read_tree(site_root) == {"a.txt": b"old"}
        assert not (site_root.parent / ".app.restore").exists()
        assert not (site_root.parent / ".app.rollback-old").exists()

    def test_corrupted_snapshot_leaves_root_alone(self, manager, site_root, snapshot_root):
        handle = manager.create("App", str(site_root))
        (site_root / "a.txt").write_bytes(b"new")
        (snapshot_root / "App_backup" / "files" / "a.txt").write_bytes(b"bitrot")

        with pytest.raises(RestoreError):
            manager.restore(handle, str(site_root))

        assert (site_root / "a.txt").read_bytes() == b"new"

    def test_missing_snapshot_raises(self, manager, site_root):
        handle = manager.create("App", str(site_root))
        manager.discard(handle)

        with pytest.raises(RestoreError):
            manager.restore(handle, str(site_root))

    def test_failed_swap_puts_previous_tree_back(self, site_root, snapshot_root):
        manager = SnapshotManager(str(snapshot_root), FaultyFileSystem(fail_rename_suffix=".restore"))
        handle = manager.create("App", str(site_root))
        (site_root / "a.txt").write_bytes(b"new")

        with pytest.raises(RestoreError):
            manager.restore(handle, str(site_root))

        assert (site_root / "a.txt").read_bytes() == b"new"
        assert not (site_root.parent / ".app.restore").exists()

    def test_mount_point_restored_in_place(self, site_root, snapshot_root):
        manager = SnapshotManager(str(snapshot_root), FaultyFileSystem(mounts={site_root}))
        handle = manager.create("App", str(site_root))
        inode = site_root.stat().st_ino
        (site_root / "a.txt").write_bytes(b"new")
        (site_root / "extra").mkdir()
        (site_root / "extra" / "b.txt").write_bytes(b"fresh")

        manager.restore(handle, str(site_root))

        assert read_tree(site_root) == {"a.txt": b"old"}
        assert not (site_root / "extra").exists()
        assert site_root.stat().st_ino == inode
        assert not (site_root.parent / ".app.restore").exists()

    def test_root_that_cannot_be_moved_is_restored_in_place(self, site_root, snapshot_root):
        manager = SnapshotManager(str(snapshot_root), FaultyFileSystem(fail_rename_suffix=os.sep + "app"))
        handle = manager.create("App", str(site_root))
        (site_root / "a.txt").write_bytes(b"new")

        manager.restore(handle, str(site_root))

        assert compute_tree_sha256(str(site_root))[0] == handle.checksum
        assert not (site_root.parent / ".app.rollback-old").exists()


class TestDiscard:
    def test_discard_is_idempotent(self, manager, site_root, snapshot_root):
        handle = manager.create("App", str(site_root))

        manager.discard(handle)
        manager.discard(handle)

        assert not (snapshot_root / "App_backup").exists()
        assert manager.find("App") is None

    def test_list_snapshots(self, manager, site_root, tmp_path):
        other = tmp_path / "srv" / "blog"
        other.mkdir()
        (other / "index.html").write_bytes(b"<html/>")

        manager.create("App", str(site_root))
        manager.create("Blog", str(other))

        assert [h.service_name for h in manager.list_snapshots()] == ["App", "Blog"]
