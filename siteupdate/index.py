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

import argparse
import json
import os
import signal
import sys
from typing import List, Optional

from . import build_orchestrator
from .components.snapshot_manager import SnapshotManager
from .config import UpdateConfig, load_config
from .errors import SnapshotError
from .utils.index import log_message, setup_update_logging

EXIT_USAGE = 64
EXIT_INTERRUPTED = 130


def _snapshot_managers(index: dict, snapshot_root: Optional[str], service_name: Optional[str] = None) -> dict:
    """Map service name -> SnapshotManager for the configured services."""
    settings = index.get("config", {})
    services = settings.get("services", {})
    names = [service_name] if service_name else sorted(services)
    root = snapshot_root or settings.get("snapshot_root")

    managers = {}
    for name in names:
        if root:
            managers[name] = SnapshotManager(root)
            continue
        root_path = services.get(name, {}).get("root_path")
        if not root_path:
            log_message(f"No snapshot root and no root_path configured for {name}", "WARNING")
            continue
        managers[name] = SnapshotManager(os.path.dirname(os.path.abspath(root_path)))
    return managers


def update_command(args, index: dict) -> int:
    config = UpdateConfig.from_index(
        args.service, args.artifact, index,
        snapshot_root=args.snapshot_root,
        timeout=args.timeout,
    )
    orchestrator = build_orchestrator(index)

    def _defer_signal(signum, frame):
        log_message(f"Received signal {signum}, requesting cancellation", "WARNING")
        orchestrator.request_cancel(config.service_name)

    previous = {sig: signal.signal(sig, _defer_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        outcome = orchestrator.run_update(config)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))

    log_message(f"Outcome: {outcome.kind.value} (tree: {outcome.tree_state.value}, state: {outcome.final_state.value})")
    if outcome.unrecoverable:
        log_message("Manual repair needed before the site can serve again", "ERROR")
    return outcome.exit_code


def snapshots_command(args, index: dict) -> int:
    managers = _snapshot_managers(index, args.snapshot_root)
    found = 0
    for name, manager in managers.items():
        handle = manager.find(name)
        if not handle:
            log_message(f"{name}: no snapshot")
            continue
        found += 1
        log_message(f"{name}: {handle.slot_path} ({handle.file_count} files, source {handle.source_path})")
    log_message(f"{found} snapshot(s) found")
    return 0


def discard_command(args, index: dict) -> int:
    managers = _snapshot_managers(index, args.snapshot_root, args.service)
    manager = managers.get(args.service)
    if manager is None:
        log_message(f"Cannot locate snapshots for {args.service}", "ERROR")
        return 1

    handle = manager.find(args.service)
    if handle is None:
        log_message(f"No snapshot for {args.service}")
        return 0
    try:
        manager.discard(handle)
    except SnapshotError as e:
        log_message(f"Failed to discard snapshot: {e}", "ERROR")
        return 1
    return 0


class UpdateArgumentParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit with EXIT_USAGE, apart from outcome codes."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    # Options shared by every subcommand; SUPPRESS keeps a value given before
    # the subcommand from being reset by the subparser default
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=argparse.SUPPRESS, help="Path to index.json")
    common.add_argument("--snapshot-root", default=argparse.SUPPRESS, help="Directory holding snapshot slots")

    parser = UpdateArgumentParser(
        description="Site update orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0    update applied, service running
  1    update failed, previous version still in place
  2    unrecoverable, manual repair needed (snapshot retained)
  64   command line usage error
  130  interrupted
        """,
    )
    parser.add_argument("--config", default=None, help="Path to index.json")
    parser.add_argument("--snapshot-root", default=None, help="Directory holding snapshot slots")
    subparsers = parser.add_subparsers(dest="command", required=True)

    update = subparsers.add_parser("update", parents=[common], help="Apply an artifact to a service")
    update.add_argument("service", help="Service name")
    update.add_argument("artifact", help="Artifact URL or path")
    update.add_argument("--timeout", type=float, default=None, help="Fetch timeout in seconds")
    update.add_argument("--json", action="store_true", help="Print the outcome as JSON")

    subparsers.add_parser("snapshots", parents=[common], help="List retained snapshots")

    discard = subparsers.add_parser("discard", parents=[common], help="Remove a service's snapshot")
    discard.add_argument("service", help="Service name")

    return parser


COMMANDS = {
    "update": update_command,
    "snapshots": snapshots_command,
    "discard": discard_command,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_update_logging()

    try:
        index = load_config(args.config)
        return COMMANDS[args.command](args, index)
    except ValueError as e:
        log_message(f"Invalid configuration: {e}", "ERROR")
        return 1
    except KeyboardInterrupt:
        log_message("Interrupted by user", "WARNING")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
