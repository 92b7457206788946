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
Artifact Applier Component

Fetches a release bundle and overlays its entries onto a site root:
- http(s) downloads through requests, local paths and file:// by copy
- zip and tar bundles (tar may be gzip/bz2/xz compressed)
- entries applied in bundle order, directories created eagerly
- existing files overwritten, files absent from the bundle left alone
- entries escaping the root are rejected before anything is written
"""

import hashlib
import os
import re
import shutil
import tarfile
import tempfile
import time
import zipfile
from dataclasses import dataclass
from functools import partial
from typing import Iterator, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests

from ..errors import ApplyError, FetchError, FileSystemError, PathTraversalError
from ..utils.index import log_message
from .filesystem import LocalFileSystem

CHUNK_SIZE = 64 * 1024

ENTRY_DIR = "dir"
ENTRY_FILE = "file"
ENTRY_LINK = "link"


@dataclass
class ArchiveEntry:
    """One entry of a bundle, in bundle order."""
    path: str
    kind: str
    content: bytes = b""

    @property
    def is_dir(self) -> bool:
        return self.kind == ENTRY_DIR


@dataclass
class Artifact:
    """A fetched bundle stored in a local temporary file."""
    source: str
    path: str
    size: int
    sha256: str

    def entries(self, with_content: bool = True) -> Iterator[ArchiveEntry]:
        return read_entries(self.path, with_content=with_content)

    def cleanup(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log_message(f"[APPLY] Could not remove downloaded bundle {self.path}: {e}", "WARNING")


def read_entries(archive_path: str, with_content: bool = True) -> Iterator[ArchiveEntry]:
    """
    Present a bundle as an ordered sequence of entries.

    Args:
        archive_path: Path to a zip or tar bundle
        with_content: Read file contents (False only lists entries)

    Raises:
        ApplyError: if the bundle is not a readable zip or tar archive
    """
    try:
        if zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path) as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        yield ArchiveEntry(info.filename, ENTRY_DIR)
                    elif (info.external_attr >> 16) & 0o170000 == 0o120000:
                        yield ArchiveEntry(info.filename, ENTRY_LINK)
                    else:
                        yield ArchiveEntry(info.filename, ENTRY_FILE, zf.read(info) if with_content else b"")
            return

        if tarfile.is_tarfile(archive_path):
            with tarfile.open(archive_path, "r:*") as tf:
                for member in tf:
                    if member.isdir():
                        yield ArchiveEntry(member.name, ENTRY_DIR)
                    elif member.isfile():
                        content = b""
                        if with_content:
                            extracted = tf.extractfile(member)
                            content = extracted.read() if extracted else b""
                        yield ArchiveEntry(member.name, ENTRY_FILE, content)
                    else:
                        # symlinks, hardlinks, devices, fifos
                        yield ArchiveEntry(member.name, ENTRY_LINK)
            return

    except (zipfile.BadZipFile, tarfile.TarError, EOFError, OSError) as e:
        raise ApplyError(f"Bundle {archive_path} could not be read: {e}", path=archive_path) from e

    raise ApplyError(f"Bundle {archive_path} is neither a zip nor a tar archive", path=archive_path)


def resolve_destination(target_root: str, relative_path: str) -> str:
    """
    Resolve an entry path under target_root.

    Raises:
        PathTraversalError: for absolute paths, drive letters and any '..' component
    """
    normalized = relative_path.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
        raise PathTraversalError(f"Absolute entry path rejected: {relative_path}", path=relative_path)

    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if ".." in parts:
        raise PathTraversalError(f"Entry path escapes target root: {relative_path}", path=relative_path)

    root = os.path.abspath(target_root)
    destination = os.path.normpath(os.path.join(root, *parts)) if parts else root
    if os.path.commonpath([root, destination]) != root:
        raise PathTraversalError(f"Entry path escapes target root: {relative_path}", path=relative_path)
    return destination


class ArtifactApplier:
    """Fetches bundles and applies them onto a target directory."""

    def __init__(self, filesystem: Optional[LocalFileSystem] = None, download_dir: Optional[str] = None):
        self.fs = filesystem or LocalFileSystem()
        self.download_dir = download_dir

    def fetch(self, source: str, timeout: float = 300) -> Artifact:
        """
        Retrieve a bundle into a local temporary file.

        No retry is attempted; retry policy belongs to the caller.

        Args:
            source: http(s) URL, file:// URL or local path
            timeout: Seconds before the fetch is abandoned

        Returns:
            Artifact: The downloaded bundle

        Raises:
            FetchError: on network errors, timeouts, non-success status or unreadable sources
        """
        parsed = urlparse(source)
        scheme = parsed.scheme.lower()

        if scheme in ("http", "https"):
            fetcher = partial(self._download, source)
        elif scheme == "file":
            fetcher = partial(self._copy_local, url2pathname(parsed.path))
        elif scheme == "" or len(scheme) == 1:
            # plain path, including Windows drive letters
            fetcher = partial(self._copy_local, source)
        else:
            raise FetchError(f"Unsupported artifact source: {source}")

        try:
            fd, dest = tempfile.mkstemp(prefix="siteupdate-", suffix=".bundle", dir=self.download_dir)
            os.close(fd)
        except OSError as e:
            raise FetchError(f"Could not create download file: {e}") from e

        log_message(f"[APPLY] Fetching {source}")
        try:
            size, digest = fetcher(dest, timeout)
        except Exception:
            try:
                os.unlink(dest)
            except OSError:
                pass
            raise

        log_message(f"[APPLY] ✓ Fetched {size} bytes (sha256 {digest[:12]})")
        return Artifact(source=source, path=dest, size=size, sha256=digest)

    def _download(self, url: str, dest: str, timeout: float):
        deadline = time.monotonic() + timeout
        sha256_hash = hashlib.sha256()
        size = 0

        try:
            with requests.get(url, timeout=timeout, stream=True) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if time.monotonic() > deadline:
                            raise FetchError(f"Download of {url} exceeded {timeout}s")
                        if chunk:
                            f.write(chunk)
                            sha256_hash.update(chunk)
                            size += len(chunk)
        except requests.exceptions.Timeout as e:
            raise FetchError(f"Download of {url} timed out after {timeout}s: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FetchError(f"Download of {url} failed: {e}") from e
        except OSError as e:
            raise FetchError(f"Could not store download of {url}: {e}") from e

        return size, sha256_hash.hexdigest()

    def _copy_local(self, source_path: str, dest: str, timeout: float):
        if not os.path.isfile(source_path):
            raise FetchError(f"Artifact not found: {source_path}")

        sha256_hash = hashlib.sha256()
        try:
            shutil.copyfile(source_path, dest)
            with open(dest, "rb") as f:
                for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                    sha256_hash.update(chunk)
            size = os.path.getsize(dest)
        except OSError as e:
            raise FetchError(f"Could not read artifact {source_path}: {e}") from e
        return size, sha256_hash.hexdigest()

    def apply(self, artifact: Artifact, target_root: str) -> int:
        """
        Overlay the bundle onto target_root.

        Every entry path is validated before the first write. Files that are
        not in the bundle are left untouched. Partial writes are not undone;
        rollback is the orchestrator's job.

        Returns:
            int: Number of files written

        Raises:
            PathTraversalError: if any entry would land outside target_root
            ApplyError: wrapping the first entry-level failure
        """
        root = os.path.abspath(target_root)
        if not self.fs.is_dir(root):
            raise ApplyError(f"Target root is not a directory: {root}", path=root)

        for entry in artifact.entries(with_content=False):
            if entry.kind == ENTRY_LINK:
                raise PathTraversalError(f"Link entries are not allowed: {entry.path}", path=entry.path)
            resolve_destination(root, entry.path)

        log_message(f"[APPLY] Applying {artifact.source} onto {root}")
        files_written = 0
        dirs_created = 0

        for entry in artifact.entries():
            destination = resolve_destination(root, entry.path)
            try:
                if entry.is_dir:
                    self.fs.make_dirs(destination)
                    dirs_created += 1
                else:
                    self.fs.make_dirs(os.path.dirname(destination))
                    self.fs.write_file(destination, entry.content)
                    files_written += 1
            except FileSystemError as e:
                log_message(f"[APPLY] ✗ Failed at {entry.path}: {e}", "ERROR")
                raise ApplyError(f"Failed to write {entry.path}: {e}", path=entry.path) from e

        log_message(f"[APPLY] ✓ Wrote {files_written} files, {dirs_created} directories")
        return files_written
