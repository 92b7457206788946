"""Shared test fixtures for siteupdate."""

import io
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

import pytest

from siteupdate.components.filesystem import LocalFileSystem
from siteupdate.components.hosting import HostingController, ServiceRef
from siteupdate.config import UpdateConfig
from siteupdate.errors import DiskFullError, FileSystemError, HostError, ResolveError
from siteupdate.orchestrator import UpdateOrchestrator

Entries = Union[Dict[str, bytes], Iterable[Tuple[str, Optional[bytes]]]]


def _entry_list(entries: Entries):
    items = entries.items() if isinstance(entries, dict) else entries
    return [(name, content) for name, content in items]


def build_zip(path: Path, entries: Entries) -> Path:
    """Write a zip bundle; a None content or a trailing '/' makes a directory entry."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in _entry_list(entries):
            if content is None or name.endswith("/"):
                zf.writestr(name.rstrip("/") + "/", b"")
            else:
                zf.writestr(name, content)
    return path


def build_tar(path: Path, entries: Entries, mode: str = "w:gz", symlinks: Optional[Dict[str, str]] = None) -> Path:
    with tarfile.open(path, mode) as tf:
        for name, content in _entry_list(entries):
            info = tarfile.TarInfo(name)
            if content is None:
                info.type = tarfile.DIRTYPE
                tf.addfile(info)
            else:
                info.size = len(content)
                tf.addfile(info, io.BytesIO(content))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tf.addfile(info)
    return path


def read_tree(root: Path) -> Dict[str, bytes]:
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


class FakeHostingController(HostingController):
    """In-memory hosting controller recording every call."""

    def __init__(self, services: Dict[str, str]):
        self.services = dict(services)
        self.running = {name: True for name in services}
        self.calls = []
        self.fail_stop = False
        self.fail_start = False
        self.stays_down = False
        self.on_stop = None

    def resolve(self, name: str) -> ServiceRef:
        self.calls.append(("resolve", name))
        if name not in self.services:
            raise ResolveError(f"Unknown service {name}")
        return ServiceRef(name=name, root_path=self.services[name], unit=f"{name}.service")

    def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        if self.fail_stop:
            raise HostError(f"cannot stop {name}")
        self.running[name] = False
        if self.on_stop:
            self.on_stop(name)

    def start(self, name: str) -> None:
        self.calls.append(("start", name))
        if self.fail_start:
            raise HostError(f"cannot start {name}")
        self.running[name] = not self.stays_down

    def is_running(self, name: str) -> bool:
        return self.running.get(name, False)

    def actions(self):
        return [action for action, _ in self.calls]


class FaultyFileSystem(LocalFileSystem):
    """LocalFileSystem that fails selected operations and can fake mount points."""

    def __init__(self, fail_writes_to=(), fail_copies=False, fail_rename_suffix=None, mounts=()):
        self.fail_writes_to = set(fail_writes_to)
        self.fail_copies = fail_copies
        self.fail_rename_suffix = fail_rename_suffix
        self.mounts = {str(path) for path in mounts}
        self.before_failure = None

    def write_file(self, path, content: bytes) -> None:
        if Path(path).name in self.fail_writes_to:
            if self.before_failure:
                self.before_failure(path)
            raise DiskFullError(f"No space left on device: {path}", path=str(path))
        super().write_file(path, content)

    def copy_tree(self, src, dst, merge: bool = False) -> None:
        if self.fail_copies:
            raise DiskFullError(f"No space left on device: {dst}", path=str(dst))
        super().copy_tree(src, dst, merge=merge)

    def is_mount(self, path) -> bool:
        return str(path) in self.mounts

    def rename(self, src, dst) -> None:
        if str(src) in self.mounts:
            raise FileSystemError(f"Device or resource busy: {src}", path=str(src))
        if self.fail_rename_suffix and str(src).endswith(self.fail_rename_suffix):
            raise DiskFullError(f"rename failed: {src}", path=str(src))
        super().rename(src, dst)


@pytest.fixture
def site_root(tmp_path: Path) -> Path:
    """Service 'App' root with a.txt = 'old'."""
    root = tmp_path / "srv" / "app"
    root.mkdir(parents=True)
    (root / "a.txt").write_bytes(b"old")
    return root


@pytest.fixture
def snapshot_root(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def bundle(tmp_path: Path) -> Path:
    """Artifact with a.txt = 'new' and b.txt = 'fresh'."""
    return build_zip(tmp_path / "release.zip", {"a.txt": b"new", "b.txt": b"fresh"})


@pytest.fixture
def hosting(site_root: Path) -> FakeHostingController:
    return FakeHostingController({"App": str(site_root)})


@pytest.fixture
def make_config(snapshot_root: Path):
    def _make(artifact: Path, service_name: str = "App", **overrides) -> UpdateConfig:
        values = {
            "snapshot_root": str(snapshot_root),
            "timeout": 5,
            "start_settle_seconds": 0,
            "start_confirm_attempts": 1,
        }
        values.update(overrides)
        return UpdateConfig(service_name=service_name, artifact_locator=str(artifact), **values)
    return _make


@pytest.fixture
def make_orchestrator(hosting: FakeHostingController):
    def _make(filesystem: Optional[LocalFileSystem] = None, **kwargs) -> UpdateOrchestrator:
        return UpdateOrchestrator(hosting, filesystem=filesystem, sleep=lambda seconds: None, **kwargs)
    return _make
