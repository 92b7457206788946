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
Error types for the site update system.

Every operational failure raised by a component is a SiteUpdateError so the
orchestrator can turn it into an outcome instead of letting it escape.
"""

from typing import Optional


class SiteUpdateError(Exception):
    """Base exception for site update failures."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.path = path


class ResolveError(SiteUpdateError):
    """The hosting controller does not know the service."""


class HostError(SiteUpdateError):
    """Starting or stopping the service failed."""


class SnapshotError(SiteUpdateError):
    """A snapshot could not be created or discarded."""


class FetchError(SiteUpdateError):
    """The artifact could not be retrieved (network, timeout, bad status)."""


class ApplyError(SiteUpdateError):
    """Writing an artifact entry onto the target root failed."""


class PathTraversalError(ApplyError):
    """An artifact entry would resolve outside the target root."""


class RestoreError(SiteUpdateError):
    """Restoring a snapshot onto the service root failed."""


class InvalidTransitionError(SiteUpdateError):
    """The orchestrator attempted a state change that is not allowed."""


class FileSystemError(SiteUpdateError):
    """Generic filesystem failure."""


class PermissionDeniedError(FileSystemError):
    pass


class PathNotFoundError(FileSystemError):
    pass


class DiskFullError(FileSystemError):
    pass
