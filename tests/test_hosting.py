"""Tests for the systemd hosting controller."""

import subprocess

import pytest

from siteupdate.components import hosting
from siteupdate.components.hosting import SystemctlHostingController
from siteupdate.errors import HostError, ResolveError


class FakeSystemctl:
    """Stands in for subprocess.run, answering by systemctl verb."""

    def __init__(self, show_stdout="LoadState=loaded\nWorkingDirectory=\n", returncodes=None, raises=None):
        self.show_stdout = show_stdout
        self.returncodes = returncodes or {}
        self.raises = raises
        self.commands = []

    def __call__(self, command, capture_output, text, timeout):
        self.commands.append(command)
        if self.raises:
            raise self.raises
        verb = command[1]
        stdout = self.show_stdout if verb == "show" else ""
        returncode = self.returncodes.get(verb, 0)
        stderr = f"{verb} failed" if returncode else ""
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def systemctl(monkeypatch):
    def _install(**kwargs):
        fake = FakeSystemctl(**kwargs)
        monkeypatch.setattr(hosting.subprocess, "run", fake)
        return fake
    return _install


class TestResolve:
    def test_configured_root_and_unit(self, systemctl, site_root):
        fake = systemctl()
        controller = SystemctlHostingController({"App": {"unit": "app-web.service", "root_path": str(site_root)}})

        ref = controller.resolve("App")

        assert ref.root_path == str(site_root)
        assert ref.unit == "app-web.service"
        assert fake.commands[0][:3] == ["systemctl", "show", "app-web.service"]

    def test_root_from_working_directory(self, systemctl, site_root):
        systemctl(show_stdout=f"LoadState=loaded\nWorkingDirectory=-{site_root}\n")
        controller = SystemctlHostingController()

        ref = controller.resolve("App")

        assert ref.root_path == str(site_root)
        assert ref.unit == "App.service"

    def test_unknown_unit(self, systemctl):
        systemctl(show_stdout="LoadState=not-found\n")
        with pytest.raises(ResolveError, match="not known"):
            SystemctlHostingController().resolve("Ghost")

    def test_missing_root(self, systemctl):
        systemctl()
        with pytest.raises(ResolveError, match="No root path"):
            SystemctlHostingController().resolve("App")

    def test_root_must_exist(self, systemctl, tmp_path):
        systemctl()
        controller = SystemctlHostingController({"App": {"root_path": str(tmp_path / "gone")}})
        with pytest.raises(ResolveError, match="does not exist"):
            controller.resolve("App")

    def test_relative_root_rejected(self, systemctl):
        systemctl()
        controller = SystemctlHostingController({"App": {"root_path": "srv/app"}})
        with pytest.raises(ResolveError, match="not absolute"):
            controller.resolve("App")

    def test_systemctl_missing_becomes_resolve_error(self, systemctl):
        systemctl(raises=FileNotFoundError("systemctl"))
        with pytest.raises(ResolveError):
            SystemctlHostingController().resolve("App")


class TestControl:
    def test_stop_and_start(self, systemctl):
        fake = systemctl()
        controller = SystemctlHostingController()

        controller.stop("App")
        controller.start("App")

        assert fake.commands == [
            ["systemctl", "stop", "App.service"],
            ["systemctl", "start", "App.service"],
        ]

    def test_nonzero_exit_raises(self, systemctl):
        systemctl(returncodes={"stop": 1})
        with pytest.raises(HostError, match="stop failed"):
            SystemctlHostingController().stop("App")

    def test_timeout_raises(self, systemctl):
        systemctl(raises=subprocess.TimeoutExpired(["systemctl"], 1))
        with pytest.raises(HostError, match="timed out"):
            SystemctlHostingController(timeout=1).start("App")


class TestIsRunning:
    def test_active(self, systemctl):
        fake = systemctl()
        assert SystemctlHostingController().is_running("App") is True
        assert fake.commands == [["systemctl", "is-active", "--quiet", "App.service"]]

    def test_inactive(self, systemctl):
        systemctl(returncodes={"is-active": 3})
        assert SystemctlHostingController().is_running("App") is False

    def test_query_failure_reports_not_running(self, systemctl):
        systemctl(raises=FileNotFoundError("systemctl"))
        assert SystemctlHostingController().is_running("App") is False
