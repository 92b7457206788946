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
along with this program. If not, see <https://www.gnu.org/licenses/>.
"""

from typing import Optional

from .utils.index import log_message
from .config import UpdateConfig, load_config
from .errors import (
    SiteUpdateError,
    ResolveError,
    HostError,
    SnapshotError,
    FetchError,
    ApplyError,
    PathTraversalError,
    RestoreError,
)
from .components.artifact_applier import ArtifactApplier
from .components.hosting import SystemctlHostingController
from .orchestrator import (
    UpdateOrchestrator,
    UpdateOutcome,
    UpdateState,
    OutcomeKind,
    TreeState,
)

__version__ = "1.0.0"

# Re-export for callers (schedulers, API layers)
__all__ = [
    'log_message',
    'run_update',
    'build_orchestrator',
    'UpdateConfig',
    'load_config',
    'UpdateOrchestrator',
    'UpdateOutcome',
    'UpdateState',
    'OutcomeKind',
    'TreeState',
    'SiteUpdateError',
    'ResolveError',
    'HostError',
    'SnapshotError',
    'FetchError',
    'ApplyError',
    'PathTraversalError',
    'RestoreError',
]


def build_orchestrator(index: dict) -> UpdateOrchestrator:
    """Create an orchestrator wired to systemd from a loaded index.json."""
    settings = index.get("config", {})
    hosting = SystemctlHostingController(settings.get("services", {}))
    applier = ArtifactApplier(download_dir=settings.get("download_dir"))
    return UpdateOrchestrator(hosting, applier=applier)


def run_update(service_name: str, artifact_locator: str,
               config_path: Optional[str] = None, **overrides) -> UpdateOutcome:
    """
    Update a configured service from an artifact.

    Args:
        service_name: Name of the service in the 'services' config section
        artifact_locator: URL or path of the release bundle
        config_path: index.json to load (defaults to the packaged one)
        **overrides: UpdateConfig fields that win over the file

    Returns:
        UpdateOutcome: Success, recoverable failure or unrecoverable failure
    """
    index = load_config(config_path)
    config = UpdateConfig.from_index(service_name, artifact_locator, index, **overrides)
    return build_orchestrator(index).run_update(config)
