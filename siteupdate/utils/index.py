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

import hashlib
import logging
import os
import sys
from typing import Tuple

logger = logging.getLogger("siteupdate")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def setup_update_logging(level: int = logging.INFO) -> None:
    """
    Log to stdout only; the shell wrapper owns file truncation/redirection.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)
    logging.info("=" * 80)
    logging.info("SITE UPDATE SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info("=" * 80)


def log_message(message: str, level: str = "INFO"):
    """
    Log a message through the package logger.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    logger.log(_LEVELS.get(level.upper(), logging.INFO), message)


def compute_tree_sha256(root: str) -> Tuple[str, int]:
    """
    Calculate a SHA-256 checksum over a directory tree.

    Relative paths, directory names, symlink targets and file contents all
    feed the digest, walked in sorted order so the result is stable.

    Args:
        root: Directory to hash

    Returns:
        tuple: (hex digest, number of regular files hashed)

    Raises:
        OSError: if any entry cannot be read
    """
    sha256_hash = hashlib.sha256()
    file_count = 0

    # Names are hashed as raw bytes; undecodable names carry surrogate escapes
    for current, dirs, files in os.walk(root):
        dirs.sort()
        files.sort()

        rel_dir = os.path.relpath(current, root)
        sha256_hash.update(b"D:" + os.fsencode(rel_dir) + b"\0")

        for name in dirs:
            full_path = os.path.join(current, name)
            if os.path.islink(full_path):
                _hash_link(sha256_hash, full_path, os.path.relpath(full_path, root))

        for name in files:
            full_path = os.path.join(current, name)
            rel_path = os.path.relpath(full_path, root)
            if os.path.islink(full_path):
                _hash_link(sha256_hash, full_path, rel_path)
                continue

            sha256_hash.update(b"F:" + os.fsencode(rel_path) + b"\0")
            with open(full_path, 'rb') as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    sha256_hash.update(chunk)
            file_count += 1

    return sha256_hash.hexdigest(), file_count


def _hash_link(sha256_hash, full_path: str, rel_path: str) -> None:
    sha256_hash.update(b"L:" + os.fsencode(rel_path) + b"->" + os.fsencode(os.readlink(full_path)) + b"\0")
