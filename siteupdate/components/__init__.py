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
Site Update Components

Collaborators driven by the orchestrator:
- filesystem: os/shutil wrapper with typed failures
- hosting: start/stop/query a site (systemd)
- snapshot_manager: one rotating backup per service
- artifact_applier: fetch a bundle and overlay it onto the site root
"""

from .filesystem import LocalFileSystem
from .hosting import HostingController, ServiceRef, SystemctlHostingController
from .snapshot_manager import SnapshotHandle, SnapshotManager
from .artifact_applier import Artifact, ArchiveEntry, ArtifactApplier, read_entries, resolve_destination

__all__ = [
    'LocalFileSystem',
    'HostingController',
    'ServiceRef',
    'SystemctlHostingController',
    'SnapshotHandle',
    'SnapshotManager',
    'Artifact',
    'ArchiveEntry',
    'ArtifactApplier',
    'read_entries',
    'resolve_destination',
]
