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
Filesystem Component

Thin wrapper over os/shutil used by the snapshot manager and the artifact
applier. Every OSError is translated so callers can tell permission, missing
path and disk-full failures apart:

- PermissionDeniedError: EACCES / EPERM / EROFS
- PathNotFoundError: ENOENT / ENOTDIR
- DiskFullError: ENOSPC / EDQUOT
- FileSystemError: anything else
"""

import errno
import os
import shutil
from contextlib import contextmanager
from typing import Union

from ..errors import (
    DiskFullError,
    FileSystemError,
    PathNotFoundError,
    PermissionDeniedError,
)

PathLike = Union[str, "os.PathLike[str]"]

_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}
_NOT_FOUND_ERRNOS = {errno.ENOENT, errno.ENOTDIR}
_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def translate_os_error(error: OSError, path: PathLike) -> FileSystemError:
    """Map an OSError onto the matching FileSystemError subclass."""
    path = os.fspath(path)
    message = f"{error.strerror or error}: {path}"

    if isinstance(error, PermissionError) or error.errno in _PERMISSION_ERRNOS:
        return PermissionDeniedError(message, path=path)
    if isinstance(error, FileNotFoundError) or error.errno in _NOT_FOUND_ERRNOS:
        return PathNotFoundError(message, path=path)
    if error.errno in _DISK_FULL_ERRNOS:
        return DiskFullError(message, path=path)
    return FileSystemError(message, path=path)


@contextmanager
def _os_errors(path: PathLike):
    try:
        yield
    except OSError as e:
        raise translate_os_error(e, path) from e


def _copy_file(src: str, dst: str) -> str:
    # copytree collects OSErrors from the copy function into shutil.Error;
    # raising a FileSystemError instead stops the copy at the first failure.
    try:
        return shutil.copy2(src, dst)
    except OSError as e:
        raise translate_os_error(e, dst) from e


def _running_as_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _copy_ownership(src: PathLike, dst: PathLike) -> None:
    """Give every copied entry the owner and group of its source entry."""
    def _chown_like(source_path, target_path):
        st = os.lstat(source_path)
        os.chown(target_path, st.st_uid, st.st_gid, follow_symlinks=False)

    _chown_like(src, dst)
    for current, dirs, files in os.walk(src):
        target_dir = os.path.join(dst, os.path.relpath(current, src))
        for name in dirs + files:
            _chown_like(os.path.join(current, name), os.path.normpath(os.path.join(target_dir, name)))


class LocalFileSystem:
    """Filesystem operations with distinguishable failures."""

    def exists(self, path: PathLike) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: PathLike) -> bool:
        return os.path.isdir(path)

    def is_mount(self, path: PathLike) -> bool:
        return os.path.ismount(path)

    def make_dirs(self, path: PathLike) -> None:
        with _os_errors(path):
            os.makedirs(path, exist_ok=True)

    def write_file(self, path: PathLike, content: bytes) -> None:
        """Write content to path, replacing any existing file."""
        with _os_errors(path):
            with open(path, 'wb') as f:
                f.write(content)

    def read_bytes(self, path: PathLike) -> bytes:
        with _os_errors(path):
            with open(path, 'rb') as f:
                return f.read()

    def copy_tree(self, src: PathLike, dst: PathLike, merge: bool = False) -> None:
        """
        Recursively copy src to dst. dst must not exist yet unless merge is set.

        Symlinks are copied as links, file metadata is preserved. When running
        as root, owner and group are copied too.
        """
        with _os_errors(src):
            try:
                shutil.copytree(src, dst, symlinks=True, copy_function=_copy_file, dirs_exist_ok=merge)
            except shutil.Error as e:
                # Only copystat failures reach this point
                raise FileSystemError(f"Failed to copy {src} to {dst}: {e}", path=os.fspath(dst)) from e
            if _running_as_root():
                _copy_ownership(src, dst)

    def remove_tree(self, path: PathLike) -> None:
        """Remove a directory tree or a single file. Missing paths are ignored."""
        if not os.path.lexists(path):
            return
        with _os_errors(path):
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.unlink(path)

    def clear_dir(self, path: PathLike) -> None:
        """Remove everything inside a directory, keeping the directory itself."""
        with _os_errors(path):
            names = os.listdir(path)
        for name in names:
            self.remove_tree(os.path.join(path, name))

    def rename(self, src: PathLike, dst: PathLike) -> None:
        with _os_errors(src):
            os.rename(src, dst)
