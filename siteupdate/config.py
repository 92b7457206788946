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

import copy
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .utils.index import log_message

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "index.json")

DEFAULT_CONFIG = {
    "metadata": {
        "schema_version": "1.0.0",
        "module_name": "siteupdate"
    },
    "config": {
        "snapshot_root": None,
        "download_dir": None,
        "timeout": 300,
        "start_settle_seconds": 2,
        "start_confirm_attempts": 5,
        "services": {}
    }
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from an index.json file.

    Missing keys fall back to DEFAULT_CONFIG; a missing or unreadable file
    yields the defaults.

    Returns:
        dict: Configuration data with 'metadata' and 'config' sections
    """
    path = config_path or DEFAULT_CONFIG_PATH
    merged = copy.deepcopy(DEFAULT_CONFIG)
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        log_message(f"Config file not found, using defaults: {path}", "WARNING")
        return merged
    except (OSError, ValueError) as e:
        log_message(f"Failed to load config {path}: {e}", "WARNING")
        return merged

    merged["metadata"].update(data.get("metadata", {}))
    merged["config"].update(data.get("config", {}))
    return merged


@dataclass
class UpdateConfig:
    """Everything one update run needs; passed into the orchestrator per call."""
    service_name: str
    artifact_locator: str
    snapshot_root: Optional[str] = None
    timeout: float = 300
    start_settle_seconds: float = 2
    start_confirm_attempts: int = 5

    def __post_init__(self):
        if not self.service_name:
            raise ValueError("service_name is required")
        if not self.artifact_locator:
            raise ValueError("artifact_locator is required")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.start_settle_seconds < 0:
            raise ValueError(f"start_settle_seconds must not be negative, got {self.start_settle_seconds}")
        if self.start_confirm_attempts < 1:
            raise ValueError(f"start_confirm_attempts must be at least 1, got {self.start_confirm_attempts}")

    @classmethod
    def from_index(cls, service_name: str, artifact_locator: str,
                   index: Optional[Dict[str, Any]] = None, **overrides) -> 'UpdateConfig':
        """Build a config from a loaded index.json; non-None overrides win."""
        settings = (index or DEFAULT_CONFIG).get("config", {})
        values = {
            "snapshot_root": settings.get("snapshot_root"),
            "timeout": settings.get("timeout", 300),
            "start_settle_seconds": settings.get("start_settle_seconds", 2),
            "start_confirm_attempts": settings.get("start_confirm_attempts", 5),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(service_name=service_name, artifact_locator=artifact_locator, **values)
