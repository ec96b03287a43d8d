"""Shared fixtures: a fake tool runner and sample bundle trees."""

import plistlib
import subprocess
from pathlib import Path

import pytest

from macrelease import ReleaseConfig, ToolRunner


class FakeRunner(ToolRunner):
    """ToolRunner that records calls instead of spawning processes.

    Args:
        available: Tool names reported as installed (None means all)
        handlers: Maps a tool name to callable(args, cwd) -> stdout, used
            to simulate the files a tool would produce
        failures: Maps a tool name to the exit status it should fail with
    """

    def __init__(self, available=None, handlers=None, failures=None,
                 dry_run=False):
        super().__init__(dry_run=dry_run)
        self.available = set(available) if available is not None else None
        self.handlers = dict(handlers or {})
        self.failures = dict(failures or {})
        self.calls = []

    def which(self, command):
        if self.available is None or command in self.available:
            return command
        return None

    def _run(self, command, cwd):
        name, args = command[0], command[1:]
        self.calls.append((name, args, cwd))
        if name in self.failures:
            raise subprocess.CalledProcessError(
                self.failures[name], command, "", f"{name} failed"
            )
        handler = self.handlers.get(name)
        stdout = handler(args, cwd) if handler else ""
        return subprocess.CompletedProcess(command, 0, stdout or "", "")

    def commands(self):
        return [name for name, _, _ in self.calls]


def write_info_plist(path, name, executable, fmt=plistlib.FMT_XML, **extra):
    data = {
        "CFBundleDevelopmentRegion": "English",
        "CFBundleDisplayName": name,
        "CFBundleExecutable": executable,
        "CFBundleIdentifier": f"io.rivett.{executable}",
        "CFBundleName": name,
        "CFBundlePackageType": "APPL",
    }
    data.update(extra)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        plistlib.dump(data, f, fmt=fmt)


def read_info_plist(path):
    with open(path, "rb") as f:
        return plistlib.load(f)


def make_app_bundle(parent, name="Rivett", executable="rivett", **extra):
    """Create <parent>/<name>.app with an Info.plist and one executable."""
    bundle = Path(parent) / f"{name}.app"
    macos = bundle / "Contents" / "MacOS"
    resources = bundle / "Contents" / "Resources"
    macos.mkdir(parents=True)
    resources.mkdir(parents=True)
    exe = macos / executable
    exe.write_bytes(b"#!/bin/sh\necho primary\n")
    exe.chmod(0o755)
    (resources / "app-icon.icns").write_bytes(b"icns\x00\x00\x00\x08")
    write_info_plist(bundle / "Contents" / "Info.plist", name, executable, **extra)
    return bundle


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def repo(tmp_path):
    """A repository root laid out like a finished release build."""
    bundle_dir = tmp_path / "target" / "release" / "bundle" / "osx"
    bundle_dir.mkdir(parents=True)
    make_app_bundle(bundle_dir)
    build_output = tmp_path / "target" / "release" / "rivett"
    build_output.write_bytes(b"\x7fELF fake build output")
    build_output.chmod(0o644)
    return tmp_path


@pytest.fixture
def config(repo):
    return ReleaseConfig(repo, manifest_tool="plistlib")


@pytest.fixture
def primary_bundle(repo):
    return repo / "target" / "release" / "bundle" / "osx" / "Rivett.app"
