#!/usr/bin/env python3
"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Snapshot Manager for site updates

Simple single-snapshot-per-service backup of a site's file tree. Each service
gets exactly one slot that is clobbered on each update cycle.

Slot layout:
    <snapshot_root>/<service>_backup/
        snapshot.json   metadata (source path, checksum, file count)
        files/          full copy of the service root

Service names that are not already safe (characters outside [A-Za-z0-9_.-],
leading or trailing dots) get a slot named <sanitized>@<hash>_backup so that
no two services share a slot.

A slot is built under <service>_backup.partial and renamed into place once the
copy and its checksum are complete, so a slot on disk is never half written.

Usage:
    manager = SnapshotManager("/var/backups/sites")

    handle = manager.create("app", "/srv/app")
    ...
    manager.restore(handle, "/srv/app")
    manager.discard(handle)
"""

import hashlib
import json
import os
import re
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import FileSystemError, RestoreError, SnapshotError
from ..utils.index import compute_tree_sha256, log_message
from .filesystem import LocalFileSystem

METADATA_FILE = "snapshot.json"
FILES_DIR = "files"


@dataclass
class SnapshotHandle:
    """Information about a service's snapshot slot."""
    service_name: str
    slot_path: str
    source_path: str
    created_at: int
    checksum: str
    file_count: int

    @property
    def files_path(self) -> str:
        return os.path.join(self.slot_path, FILES_DIR)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SnapshotHandle':
        return cls(**data)


def _slot_name(service_name: str) -> str:
    """
    Map a service name to its slot directory name.

    Names made only of safe characters are used as they are. Any other name
    is sanitized and suffixed with '@' and a hash of the raw name; '@' never
    appears in a safe name, so two services can never share a slot.
    """
    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", service_name).strip(".")
    if safe_name and safe_name == service_name:
        return f"{safe_name}_backup"
    digest = hashlib.sha256(service_name.encode("utf-8", "surrogateescape")).hexdigest()[:12]
    return f"{safe_name or 'service'}@{digest}_backup"


def _is_within(path: str, root: str) -> bool:
    path = os.path.abspath(path)
    root = os.path.abspath(root)
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


class SnapshotManager:
    """
    Single-snapshot-per-service backup of site file trees.

    Creating a snapshot clobbers the previous one for that service.
    """

    def __init__(self, snapshot_root: str, filesystem: Optional[LocalFileSystem] = None):
        self.snapshot_root = Path(snapshot_root)
        self.fs = filesystem or LocalFileSystem()

    def slot_path(self, service_name: str) -> Path:
        """Get the snapshot slot for a specific service."""
        return self.snapshot_root / _slot_name(service_name)

    def _partial_path(self, service_name: str) -> Path:
        slot = self.slot_path(service_name)
        return slot.with_name(slot.name + ".partial")

    def create(self, service_name: str, root_path: str) -> SnapshotHandle:
        """
        Copy the service root into its snapshot slot.

        Args:
            service_name: Name of the service
            root_path: Directory to snapshot

        Returns:
            SnapshotHandle: The completed snapshot

        Raises:
            SnapshotError: if the source is unreadable or the copy cannot be written
        """
        slot = self.slot_path(service_name)
        partial = self._partial_path(service_name)

        if not self.fs.is_dir(root_path):
            raise SnapshotError(f"Snapshot source is not a directory: {root_path}", path=root_path)
        if _is_within(str(self.snapshot_root), root_path):
            raise SnapshotError(
                f"Snapshot root {self.snapshot_root} lies inside the service root {root_path}",
                path=str(self.snapshot_root),
            )

        log_message(f"[SNAPSHOT] Creating snapshot of {root_path} for {service_name}")

        try:
            self.fs.make_dirs(self.snapshot_root)

            # Clobber previous slot
            self.fs.remove_tree(partial)
            if self.fs.exists(slot):
                self.fs.remove_tree(slot)
                log_message(f"[SNAPSHOT] Clobbered previous snapshot for {service_name}")

            self.fs.make_dirs(partial)
            self.fs.copy_tree(root_path, partial / FILES_DIR)

            checksum, file_count = compute_tree_sha256(str(partial / FILES_DIR))
            handle = SnapshotHandle(
                service_name=service_name,
                slot_path=str(slot),
                source_path=os.path.abspath(root_path),
                created_at=int(time.time()),
                checksum=checksum,
                file_count=file_count,
            )
            self.fs.write_file(partial / METADATA_FILE, json.dumps(handle.to_dict(), indent=2).encode())
            self.fs.rename(partial, slot)

        except (FileSystemError, OSError) as e:
            log_message(f"[SNAPSHOT] ✗ Failed to snapshot {service_name}: {e}", "ERROR")
            self._remove_partial(partial)
            raise SnapshotError(f"Failed to snapshot {root_path}: {e}", path=root_path) from e

        log_message(f"[SNAPSHOT] ✓ Snapshot for {service_name} at {slot} ({file_count} files)")
        return handle

    def _remove_partial(self, partial: Path) -> None:
        try:
            self.fs.remove_tree(partial)
        except FileSystemError as e:
            log_message(f"[SNAPSHOT] Could not remove partial snapshot {partial}: {e}", "WARNING")

    def verify(self, handle: SnapshotHandle) -> bool:
        """Check the stored tree still matches the checksum taken at creation."""
        if not self.fs.is_dir(handle.files_path):
            return False
        try:
            checksum, _ = compute_tree_sha256(handle.files_path)
        except OSError as e:
            log_message(f"[SNAPSHOT] Could not read snapshot {handle.slot_path}: {e}", "WARNING")
            return False
        return checksum == handle.checksum

    def restore(self, handle: SnapshotHandle, root_path: str) -> None:
        """
        Replace the contents of root_path with the snapshot.

        The snapshot is copied into a staging directory next to the root and
        verified before the live root is swapped out, so the root either ends
        in the snapshot state or the previous tree is put back. A root that
        cannot be renamed (a mount point) is emptied and refilled from the
        staged copy instead, then verified again.

        Raises:
            RestoreError: if the snapshot is missing or corrupted, or the swap fails
        """
        root = Path(os.path.abspath(root_path))
        staging = root.with_name(f".{root.name}.restore")
        aside = root.with_name(f".{root.name}.rollback-old")

        log_message(f"[SNAPSHOT] Restoring {handle.service_name} from {handle.slot_path}")

        if not self.verify(handle):
            log_message(f"[SNAPSHOT] ✗ Snapshot for {handle.service_name} is missing or corrupted", "ERROR")
            raise RestoreError(
                f"Snapshot {handle.slot_path} is missing or does not match its checksum",
                path=handle.slot_path,
            )

        try:
            self.fs.remove_tree(staging)
            self.fs.remove_tree(aside)
            self.fs.copy_tree(handle.files_path, staging)
            checksum, _ = compute_tree_sha256(str(staging))
            if checksum != handle.checksum:
                raise RestoreError(f"Staged restore of {root} does not match the snapshot", path=str(staging))

            if not self._swap_in(staging, root, aside):
                self._restore_in_place(staging, root, handle)

        except RestoreError:
            self._remove_partial(staging)
            raise
        except (FileSystemError, OSError) as e:
            log_message(f"[SNAPSHOT] ✗ Restore of {handle.service_name} failed: {e}", "ERROR")
            self._remove_partial(staging)
            raise RestoreError(f"Failed to restore {root}: {e}", path=str(root)) from e

        self._remove_partial(staging)
        try:
            self.fs.remove_tree(aside)
        except FileSystemError as e:
            log_message(f"[SNAPSHOT] Restored, but could not remove {aside}: {e}", "WARNING")

        log_message(f"[SNAPSHOT] ✓ Restored {root} from snapshot")

    def _swap_in(self, staging: Path, root: Path, aside: Path) -> bool:
        """
        Rename the staged tree into place, moving the live root aside first.

        Returns:
            bool: False if the root cannot be moved (mount points, bind mounts)
        """
        if self.fs.is_mount(root):
            log_message(f"[SNAPSHOT] {root} is a mount point; restoring in place", "WARNING")
            return False
        if self.fs.exists(root):
            try:
                self.fs.rename(root, aside)
            except FileSystemError as e:
                log_message(f"[SNAPSHOT] Cannot move {root} aside ({e}); restoring in place", "WARNING")
                return False
        try:
            self.fs.rename(staging, root)
        except FileSystemError:
            if self.fs.exists(aside) and not self.fs.exists(root):
                self.fs.rename(aside, root)
                log_message(f"[SNAPSHOT] Put previous tree back at {root}", "WARNING")
            raise
        return True

    def _restore_in_place(self, staging: Path, root: Path, handle: SnapshotHandle) -> None:
        # Root keeps its inode; only its contents are replaced
        self.fs.clear_dir(root)
        self.fs.copy_tree(staging, root, merge=True)
        checksum, _ = compute_tree_sha256(str(root))
        if checksum != handle.checksum:
            raise RestoreError(f"In-place restore of {root} does not match the snapshot", path=str(root))

    def discard(self, handle: SnapshotHandle) -> None:
        """Remove the snapshot. Removing an absent snapshot is not an error."""
        slot = Path(handle.slot_path)
        try:
            self.fs.remove_tree(slot)
            self.fs.remove_tree(slot.with_name(slot.name + ".partial"))
        except FileSystemError as e:
            raise SnapshotError(f"Failed to discard snapshot {slot}: {e}", path=str(slot)) from e
        log_message(f"[SNAPSHOT] Discarded snapshot for {handle.service_name}")

    def find(self, service_name: str) -> Optional[SnapshotHandle]:
        """
        Locate the snapshot for a service.

        Returns:
            SnapshotHandle: Snapshot information or None if no complete snapshot exists
        """
        return self._load(self.slot_path(service_name))

    def _load(self, slot: Path) -> Optional[SnapshotHandle]:
        metadata_file = slot / METADATA_FILE
        if not metadata_file.is_file():
            return None
        try:
            with open(metadata_file, 'r') as f:
                return SnapshotHandle.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            log_message(f"[SNAPSHOT] Unreadable snapshot metadata {metadata_file}: {e}", "WARNING")
            return None

    def list_snapshots(self) -> List[SnapshotHandle]:
        """List all complete snapshots under the snapshot root."""
        if not self.snapshot_root.is_dir():
            return []
        handles = []
        for slot in sorted(self.snapshot_root.glob("*_backup")):
            handle = self._load(slot)
            if handle:
                handles.append(handle)
        return handles
