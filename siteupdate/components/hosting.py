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
Hosting Controller Component

Starts, stops and queries hosted sites. The orchestrator only talks to the
HostingController interface; SystemctlHostingController drives systemd units
and is what the command line uses.
"""

import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import HostError, ResolveError
from ..utils.index import log_message


@dataclass
class ServiceRef:
    """A resolved hosted application."""
    name: str
    root_path: str
    unit: Optional[str] = None


class HostingController(ABC):
    """Contract for whatever runs the site."""

    @abstractmethod
    def resolve(self, name: str) -> ServiceRef:
        """Return the service and its root path, or raise ResolveError."""

    @abstractmethod
    def stop(self, name: str) -> None:
        """Stop the service or raise HostError."""

    @abstractmethod
    def start(self, name: str) -> None:
        """Start the service or raise HostError."""

    @abstractmethod
    def is_running(self, name: str) -> bool:
        """Report whether the service is currently active."""


class SystemctlHostingController(HostingController):
    """
    Hosting controller backed by systemd.

    Services are configured as ``{name: {"unit": ..., "root_path": ...}}``.
    A missing unit defaults to ``<name>.service``; a missing root path is read
    from the unit's WorkingDirectory.
    """

    def __init__(self, services: Optional[Dict[str, Dict[str, Any]]] = None, timeout: float = 120):
        self.services = services or {}
        self.timeout = timeout

    def _unit(self, name: str) -> str:
        return self.services.get(name, {}).get("unit") or f"{name}.service"

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["systemctl", *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise HostError(f"systemctl {' '.join(args)} timed out after {self.timeout}s") from e
        except OSError as e:
            raise HostError(f"systemctl {' '.join(args)} could not be executed: {e}") from e

    def _show(self, unit: str) -> Dict[str, str]:
        """Read unit properties via systemctl show."""
        result = self._systemctl("show", unit, "--property=LoadState", "--property=WorkingDirectory")
        if result.returncode != 0:
            raise ResolveError(f"systemctl show {unit} failed: {result.stderr.strip()}")

        properties = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                properties[key.strip()] = value.strip()
        return properties

    def resolve(self, name: str) -> ServiceRef:
        unit = self._unit(name)
        try:
            properties = self._show(unit)
        except HostError as e:
            raise ResolveError(f"Could not query {unit}: {e}") from e

        if properties.get("LoadState", "not-found") == "not-found":
            raise ResolveError(f"Service {name} ({unit}) is not known to systemd")

        root_path = self.services.get(name, {}).get("root_path") or properties.get("WorkingDirectory", "")
        # systemd prefixes optional paths with '-'
        root_path = root_path.lstrip("-")
        if not root_path:
            raise ResolveError(f"No root path configured for {name} and {unit} has no WorkingDirectory")
        if not os.path.isabs(root_path):
            raise ResolveError(f"Root path for {name} is not absolute: {root_path}")
        if not os.path.isdir(root_path):
            raise ResolveError(f"Root path for {name} does not exist: {root_path}")

        log_message(f"[HOST] Resolved {name} -> {unit} at {root_path}")
        return ServiceRef(name=name, root_path=root_path, unit=unit)

    def _control(self, action: str, name: str) -> None:
        unit = self._unit(name)
        result = self._systemctl(action, unit)
        if result.returncode != 0:
            log_message(f"[HOST] systemctl {action} {unit} failed: {result.stderr.strip()}", "ERROR")
            raise HostError(f"systemctl {action} {unit} failed: {result.stderr.strip()}")
        log_message(f"[HOST] ✓ systemctl {action} {unit}")

    def stop(self, name: str) -> None:
        self._control("stop", name)

    def start(self, name: str) -> None:
        self._control("start", name)

    def is_running(self, name: str) -> bool:
        """Check if the unit is active."""
        try:
            result = self._systemctl("is-active", "--quiet", self._unit(name))
        except HostError:
            return False
        return result.returncode == 0
