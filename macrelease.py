#!/usr/bin/env python3
"""macrelease - macOS release packaging for a compiled desktop application.

This module provides tools for:
1. Deriving a hidden background-agent "helper" .app bundle from the
   primary bundle produced by the build step
2. Rasterizing the vector application icon and wrapping it in an .icns
   container
3. Packaging the primary bundle into a compressed, read-only DMG

External tools (the build command, PlistBuddy, rsvg-convert, hdiutil) are
only ever called through a ToolRunner, so every step can be pointed at
temporary directories and a fake runner in tests.

Usage (CLI):
    # Generate resources/app-icon.icns from resources/app-icon.svg
    macrelease icon

    # Build, then derive "Rivett Settings.app" next to "Rivett.app"
    macrelease helper

    # Package the existing primary bundle into dist/Rivett.dmg
    macrelease dmg

    # icon + build + dmg
    macrelease release

Usage (API):
    from macrelease import HelperBundleBuilder, load_release_config

    config = load_release_config("/path/to/repo")
    HelperBundleBuilder(config).build()
"""

import argparse
import datetime
import enum
import itertools
import logging
import os
import plistlib
import shlex
import shutil
import stat
import struct
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Iterable, Mapping
from xml.parsers.expat import ExpatError

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from dotenv import load_dotenv
from macholib.mach_o import CPU_TYPE_NAMES
from macholib.MachO import MachO
from macholib.util import is_platform_file

import macicns

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

BUNDLE_EXT = ".app"

# External tools
PLISTBUDDY = "/usr/libexec/PlistBuddy"
RSVG_CONVERT = "rsvg-convert"
RSVG_INSTALL_HINT = "Install it with: brew install librsvg"
HDIUTIL = "hdiutil"

# Compressed (zlib), read-only disk image
DMG_FORMAT = "UDZO"

# Square edge of the rasterized icon, in pixels
ICON_SIZE = 1024

# Info.plist keys
KEY_BUNDLE_NAME = "CFBundleName"
KEY_DISPLAY_NAME = "CFBundleDisplayName"
KEY_EXECUTABLE = "CFBundleExecutable"
KEY_AGENT = "LSUIElement"

MANIFEST_TOOLS = ("auto", "plistbuddy", "plistlib")

ENV_PREFIX = "MACRELEASE_"
CONFIG_SECTION = "release"
CONFIG_FILENAMES = (".macrelease.toml", "macrelease.toml")

DEFAULT_CONFIG: dict[str, object] = {
    "app_name": "Rivett",
    "helper_name": "Rivett Settings",
    "bin_name": "rivett",
    "helper_bin_name": "rivett-settings",
    "bundle_dir": "target/release/bundle/osx",
    "build_output": "target/release/rivett",
    "icon_source": "resources/app-icon.svg",
    "icon_output": "resources/app-icon.icns",
    "dmg_path": "dist/Rivett.dmg",
    "build_command": ["cargo", "bundle", "--release"],
    "manifest_tool": "auto",
    "require_macho": False,
}

# ----------------------------------------------------------------------------
# Error handling


class BundlerError(Exception):
    """Base exception class for macrelease errors."""


class CommandError(BundlerError):
    """Exception raised when an external command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class MissingDependencyError(BundlerError):
    """Exception raised when a required external tool is not installed."""

    def __init__(self, tool: str, hint: str | None = None):
        self.tool = tool
        self.hint = hint
        message = f"{tool} not found."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message)


class MissingArtifactError(BundlerError):
    """Exception raised when a bundle or build output is absent."""


class FileError(BundlerError):
    """Exception raised when a file operation fails."""


class ManifestError(BundlerError):
    """Exception raised when a required Info.plist edit fails."""


class ConfigurationError(BundlerError):
    """Exception raised when configuration is invalid."""


class ValidationError(BundlerError):
    """Exception raised when validation fails."""


class PackagingError(BundlerError):
    """Exception raised when DMG packaging fails."""


# ----------------------------------------------------------------------------
# Configuration


class ReleaseConfig:
    """Names and repository-relative paths used by the release steps.

    Relative paths are resolved against ``root``. Unknown keys and values
    of the wrong type raise ConfigurationError.

    Example:
        config = ReleaseConfig("/src/rivett", app_name="Rivett")
        config.path(config.dmg_path)  # /src/rivett/dist/Rivett.dmg
    """

    app_name: str
    helper_name: str
    bin_name: str
    helper_bin_name: str
    bundle_dir: str
    build_output: str
    icon_source: str
    icon_output: str
    dmg_path: str
    build_command: list[str]
    manifest_tool: str
    require_macho: bool

    def __init__(self, root: Pathlike | None = None, /, **values: object):
        self.root = Path(root) if root else Path.cwd()
        unknown = sorted(set(values) - set(DEFAULT_CONFIG))
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration key(s): {', '.join(unknown)}"
            )
        merged = dict(DEFAULT_CONFIG)
        merged.update(values)
        for key, value in merged.items():
            setattr(self, key, _check_value(key, value))

    def path(self, value: Pathlike) -> Path:
        """Resolve a configured path against the repository root."""
        path = Path(value)
        return path if path.is_absolute() else self.root / path

    def as_dict(self) -> dict[str, object]:
        return {key: getattr(self, key) for key in DEFAULT_CONFIG}

    def __repr__(self) -> str:
        return f"ReleaseConfig(root={str(self.root)!r}, {self.as_dict()!r})"


def _check_value(key: str, value: object) -> object:
    """Validate one configuration value against its default's type."""
    if key == "build_command":
        if isinstance(value, str):
            value = shlex.split(value)
        if (
            not isinstance(value, list)
            or not value
            or not all(isinstance(v, str) for v in value)
        ):
            raise ConfigurationError(
                "build_command must be a non-empty list of strings"
            )
        return list(value)
    if key == "require_macho":
        if not isinstance(value, bool):
            raise ConfigurationError("require_macho must be a boolean")
        return value
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{key} must be a non-empty string")
    if key == "manifest_tool" and value not in MANIFEST_TOOLS:
        raise ConfigurationError(
            f"manifest_tool must be one of: {', '.join(MANIFEST_TOOLS)}"
        )
    return value


def load_config(
    root: Pathlike, config_path: Pathlike | None = None
) -> dict[str, object]:
    """Load the [release] section of a TOML configuration file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided (must exist)
    2. .macrelease.toml in the repository root
    3. macrelease.toml in the repository root

    Args:
        root: Repository root directory
        config_path: Optional explicit path to config file

    Returns:
        The [release] table (empty if no config found)

    Example .macrelease.toml:
        [release]
        app_name = "Rivett"
        helper_name = "Rivett Settings"
        build_command = ["cargo", "bundle", "--release"]
    """
    if config_path:
        config_path = Path(config_path)
        if not config_path.is_file():
            raise ConfigurationError(
                f"Config file does not exist: {config_path}"
            )
        paths_to_try = [config_path]
    else:
        paths_to_try = [Path(root) / name for name in CONFIG_FILENAMES]

    for path in paths_to_try:
        if not path.is_file():
            continue
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Cannot read {path}: {e}") from e
        section = data.get(CONFIG_SECTION, {})
        if not isinstance(section, dict):
            raise ConfigurationError(
                f"[{CONFIG_SECTION}] in {path} must be a table"
            )
        return section

    return {}


def env_overrides(environ: Mapping[str, str]) -> dict[str, object]:
    """Collect MACRELEASE_<KEY> overrides from an environment mapping."""
    values: dict[str, object] = {}
    for key in DEFAULT_CONFIG:
        raw = environ.get(ENV_PREFIX + key.upper())
        if raw is None:
            continue
        if key == "require_macho":
            values[key] = raw.strip().lower() in ("1", "true", "yes", "on")
        else:
            values[key] = raw
    return values


def load_release_config(
    root: Pathlike | None = None,
    /,
    config_path: Pathlike | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: object,
) -> ReleaseConfig:
    """Build a ReleaseConfig from defaults, TOML, environment and overrides.

    Later sources win. Overrides whose value is None are ignored so CLI
    options that were not given fall through to the lower layers.
    """
    root = Path(root) if root else Path.cwd()
    values = dict(load_config(root, config_path))
    values.update(env_overrides(os.environ if environ is None else environ))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ReleaseConfig(root, **values)


# ----------------------------------------------------------------------------
# File and binary validation

# Maximum build output size (1GB)
MAX_FILE_SIZE = 1024 * 1024 * 1024


def validate_file(
    path: Pathlike,
    check_macho: bool = False,
    max_size: int = MAX_FILE_SIZE,
) -> None:
    """Validate the build output before it is installed into a bundle.

    Args:
        path: Path to the file to validate
        check_macho: If True, verify the file is a Mach-O binary
        max_size: Maximum allowed file size in bytes

    Raises:
        MissingArtifactError: If the file does not exist
        ValidationError: If any other check fails
    """
    path = Path(path)

    if not path.exists():
        raise MissingArtifactError(f"Build output not found at {path}")

    if not path.is_file():
        raise ValidationError(f"Path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise ValidationError(f"File is not readable: {path}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Cannot stat file {path}: {e}") from e

    if size == 0:
        raise ValidationError(f"File is empty (zero bytes): {path}")

    if size > max_size:
        raise ValidationError(
            f"File exceeds maximum size ({size} > {max_size} bytes): {path}"
        )

    if check_macho and not is_platform_file(str(path)):
        raise ValidationError(f"File is not a valid Mach-O binary: {path}")


def get_binary_architectures(binary_path: Pathlike) -> list[str]:
    """Get the architectures of a Mach-O binary.

    Returns:
        List of architecture names (e.g. ["x86_64", "ARM64"]), empty if
        the file is not Mach-O.
    """
    path = str(binary_path)
    if not is_platform_file(path):
        return []
    try:
        macho = MachO(path)
    except (OSError, ValueError, EOFError, struct.error):
        return []
    return [
        CPU_TYPE_NAMES.get(header.header.cputype, str(header.header.cputype))
        for header in macho.headers
    ]


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """A simple terminal spinner for long-running external commands.

    Writes to stderr so stdout stays free of diagnostics.

    Example:
        with ProgressSpinner("Building"):
            time.sleep(5)
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = "", stream=None):
        self.message = message
        self.stream = stream or sys.stderr
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.is_set():
            self.stream.write(f"\r{self.message} {next(spinner)} ")
            self.stream.flush()
            time.sleep(0.1)
        self.stream.write(f"\r{self.message} done\n")
        self.stream.flush()

    def start(self) -> None:
        """Start the spinner."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the spinner."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        log_fmt = self.FORMATS[record.levelno] if self.use_color else self.fmt
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        return logging.Formatter(log_fmt).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Send all log output to stderr.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# External tool execution


class ToolRunner:
    """Runs external tools with consistent error handling.

    Every external call in this module goes through invoke(), which
    resolves the tool first, never uses a shell, raises CommandError on a
    non-zero exit status and supports dry-run. Tests replace this class
    with a recording fake.

    Args:
        dry_run: If True, log commands without executing them
        progress: If True, show a spinner for calls that ask for one
    """

    def __init__(self, dry_run: bool = False, progress: bool = False):
        self.dry_run = dry_run
        self.progress = progress
        self.log = logging.getLogger(self.__class__.__name__)

    def which(self, command: str) -> str | None:
        """Return the full path of command, or None if not installed."""
        return shutil.which(command)

    def require(self, command: str, hint: str | None = None) -> str:
        """Return the full path of command or raise MissingDependencyError."""
        path = self.which(command)
        if path is None:
            raise MissingDependencyError(command, hint)
        return path

    def invoke(
        self,
        command: str,
        args: Iterable[object] = (),
        hint: str | None = None,
        cwd: Pathlike | None = None,
        progress: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run command with args and return the completed process.

        Args:
            command: Tool name on PATH or an absolute path
            args: Arguments, converted with str()
            hint: Install hint used if the tool is missing
            cwd: Working directory for the tool
            progress: Spinner message for long-running calls

        Raises:
            MissingDependencyError: If the tool is not installed
            CommandError: If the tool exits with a non-zero status
        """
        argv = [str(arg) for arg in args]
        cmd_str = " ".join([command, *argv])
        if self.dry_run:
            self.log.info("[DRY RUN] %s", cmd_str)
            return subprocess.CompletedProcess([command, *argv], 0, "", "")

        executable = self.require(command, hint)
        self.log.debug("%s", cmd_str)
        try:
            if progress and self.progress:
                with ProgressSpinner(progress):
                    return self._run([executable, *argv], cwd)
            return self._run([executable, *argv], cwd)
        except subprocess.CalledProcessError as e:
            raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
        except OSError as e:
            raise CommandError(cmd_str, -1, str(e)) from e

    def _run(
        self, command: list[str], cwd: Pathlike | None
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            capture_output=True,
            cwd=cwd,
        )


# ----------------------------------------------------------------------------
# Bundle structure


class AppBundle:
    """Paths within an .app bundle directory."""

    def __init__(self, path: Pathlike):
        self.path = Path(path)
        self.contents = self.path / "Contents"
        self.macos = self.contents / "MacOS"
        self.resources = self.contents / "Resources"
        self.info_plist = self.contents / "Info.plist"

    @property
    def name(self) -> str:
        return self.path.stem

    def executable(self, name: str) -> Path:
        return self.macos / name

    def __repr__(self) -> str:
        return f"AppBundle({str(self.path)!r})"


def locate_bundle(
    bundle_dir: Pathlike,
    name: str,
    extension: str = BUNDLE_EXT,
    exclude: Iterable[str] = (),
) -> AppBundle:
    """Find the primary bundle produced by the build step.

    Tries ``<bundle_dir>/<name><extension>`` first, then falls back to the
    first directory (sorted, non-recursive) with the bundle extension whose
    stem is not in exclude.

    Raises:
        MissingArtifactError: If no bundle directory is found
    """
    bundle_dir = Path(bundle_dir)
    expected = bundle_dir / f"{name}{extension}"
    if expected.is_dir():
        return AppBundle(expected)

    excluded = set(exclude)
    if bundle_dir.is_dir():
        for entry in sorted(bundle_dir.iterdir()):
            if (
                entry.suffix == extension
                and entry.is_dir()
                and entry.stem not in excluded
            ):
                logging.getLogger("locate_bundle").info(
                    "%s not found, using %s", expected.name, entry.name
                )
                return AppBundle(entry)

    raise MissingArtifactError(f"Main app bundle not found in: {bundle_dir}")


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def clone_bundle(source: Pathlike, destination: Pathlike) -> AppBundle:
    """Replace destination with a full recursive copy of source.

    Symlinks inside the bundle (framework versions) are copied as links.
    If the copy fails partway, the partial destination is removed before
    FileError is raised.
    """
    source = Path(source)
    destination = Path(destination)
    try:
        _remove_path(destination)
    except OSError as e:
        raise FileError(f"Cannot remove existing {destination}: {e}") from e

    try:
        shutil.copytree(source, destination, symlinks=True)
    except (OSError, shutil.Error) as e:
        shutil.rmtree(destination, ignore_errors=True)
        raise FileError(f"Failed to copy {source} to {destination}: {e}") from e
    return AppBundle(destination)


def swap_executable(
    bundle: AppBundle,
    build_output: Pathlike,
    inherited_name: str,
    target_name: str,
) -> Path:
    """Replace the inherited executable with a renamed copy of build_output.

    Returns:
        Path to the installed executable
    """
    inherited = bundle.executable(inherited_name)
    target = bundle.executable(target_name)
    try:
        if inherited.exists() or inherited.is_symlink():
            inherited.unlink()
        bundle.macos.mkdir(parents=True, exist_ok=True)
        shutil.copy(build_output, target)
        oldmode = os.stat(target).st_mode
        os.chmod(target, oldmode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        raise FileError(f"Cannot install executable {target}: {e}") from e
    return target


# ----------------------------------------------------------------------------
# Info.plist editing


class ManifestEditor:
    """In-place Info.plist editing.

    set_string() fails if the key does not exist; add_bool() fails if it
    does. Failures raise a BundlerError subclass.
    """

    def get(self, plist: Path, key: str) -> object:
        raise NotImplementedError

    def set_string(self, plist: Path, key: str, value: str) -> None:
        raise NotImplementedError

    def add_bool(self, plist: Path, key: str, value: bool) -> None:
        raise NotImplementedError


class PlistBuddyEditor(ManifestEditor):
    """Edits Info.plist with /usr/libexec/PlistBuddy."""

    def __init__(self, runner: ToolRunner):
        self.runner = runner

    def _run(self, plist: Path, command: str) -> str:
        return self.runner.invoke(PLISTBUDDY, ["-c", command, plist]).stdout

    def get(self, plist: Path, key: str) -> object:
        return self._run(plist, f"Print :{key}").strip()

    def set_string(self, plist: Path, key: str, value: str) -> None:
        self._run(plist, f"Set :{key} {value}")

    def add_bool(self, plist: Path, key: str, value: bool) -> None:
        self._run(plist, f"Add :{key} bool {'true' if value else 'false'}")


class PlistlibEditor(ManifestEditor):
    """Edits Info.plist in-process with plistlib, keeping its format."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def _load(self, plist: Path) -> tuple[dict, plistlib.PlistFormat]:
        try:
            raw = plist.read_bytes()
            fmt = (
                plistlib.FMT_BINARY
                if raw.startswith(b"bplist00")
                else plistlib.FMT_XML
            )
            data = plistlib.loads(raw)
        except (
            OSError, plistlib.InvalidFileException, ValueError, ExpatError
        ) as e:
            raise ManifestError(f"Cannot read {plist}: {e}") from e
        if not isinstance(data, dict):
            raise ManifestError(f"{plist} does not contain a dictionary")
        return data, fmt

    def _dump(self, plist: Path, data: dict, fmt: plistlib.PlistFormat) -> None:
        try:
            with open(plist, "wb") as f:
                plistlib.dump(data, f, fmt=fmt, sort_keys=False)
        except OSError as e:
            raise ManifestError(f"Cannot write {plist}: {e}") from e

    def get(self, plist: Path, key: str) -> object:
        data, _ = self._load(plist)
        if key not in data:
            raise ManifestError(f'Print: Entry, ":{key}", Does Not Exist')
        return data[key]

    def set_string(self, plist: Path, key: str, value: str) -> None:
        if self.dry_run:
            self.log.info("[DRY RUN] Set :%s %s in %s", key, value, plist)
            return
        data, fmt = self._load(plist)
        if key not in data:
            raise ManifestError(f'Set: Entry, ":{key}", Does Not Exist')
        data[key] = value
        self._dump(plist, data, fmt)

    def add_bool(self, plist: Path, key: str, value: bool) -> None:
        if self.dry_run:
            self.log.info("[DRY RUN] Add :%s bool %s in %s", key, value, plist)
            return
        data, fmt = self._load(plist)
        if key in data:
            raise ManifestError(f'Add: ":{key}" Entry Already Exists')
        data[key] = bool(value)
        self._dump(plist, data, fmt)


def select_editor(
    tool: str, runner: ToolRunner, dry_run: bool = False
) -> ManifestEditor:
    """Pick the manifest editor for manifest_tool ("auto" prefers PlistBuddy)."""
    if tool == "plistbuddy" or (
        tool == "auto" and runner.which(PLISTBUDDY) is not None
    ):
        return PlistBuddyEditor(runner)
    if tool in ("auto", "plistlib"):
        return PlistlibEditor(dry_run=dry_run)
    raise ConfigurationError(f"Unknown manifest tool: {tool}")


class MutationStatus(enum.Enum):
    APPLIED = "applied"
    RECOVERED = "recovered"
    FATAL = "fatal"


class MutationResult:
    """Outcome of one Info.plist edit."""

    def __init__(self, key: str, status: MutationStatus, detail: str = ""):
        self.key = key
        self.status = status
        self.detail = detail

    @property
    def fatal(self) -> bool:
        return self.status is MutationStatus.FATAL

    def __repr__(self) -> str:
        return (
            f"MutationResult({self.key!r}, {self.status.name}, {self.detail!r})"
        )


class MetadataMutator:
    """Rewrites the identity fields of a cloned bundle's Info.plist.

    String fields are required: a failed write yields a FATAL result and
    stops further edits. The background-agent flag is best-effort: if it
    cannot be added (usually because it already exists) the result is
    RECOVERED and the pipeline continues.
    """

    def __init__(self, editor: ManifestEditor):
        self.editor = editor
        self.log = logging.getLogger(self.__class__.__name__)

    def set_field(self, plist: Path, key: str, value: str) -> MutationResult:
        try:
            self.editor.set_string(plist, key, value)
        except BundlerError as e:
            return MutationResult(key, MutationStatus.FATAL, str(e))
        self.log.debug("Set %s = %r", key, value)
        return MutationResult(key, MutationStatus.APPLIED)

    def add_flag(
        self, plist: Path, key: str, value: bool = True
    ) -> MutationResult:
        try:
            self.editor.add_bool(plist, key, value)
        except BundlerError as e:
            self.log.debug("Leaving %s as is: %s", key, e)
            return MutationResult(key, MutationStatus.RECOVERED, str(e))
        self.log.debug("Added %s = %r", key, value)
        return MutationResult(key, MutationStatus.APPLIED)

    def apply(
        self,
        plist: Path,
        bundle_name: str,
        display_name: str,
        executable: str,
        agent: bool = True,
    ) -> list[MutationResult]:
        """Apply all identity edits, stopping at the first fatal one."""
        results = []
        for key, value in (
            (KEY_BUNDLE_NAME, bundle_name),
            (KEY_DISPLAY_NAME, display_name),
            (KEY_EXECUTABLE, executable),
        ):
            result = self.set_field(plist, key, value)
            results.append(result)
            if result.fatal:
                return results
        if agent:
            results.append(self.add_flag(plist, KEY_AGENT, True))
        return results


def raise_for_fatal(results: Iterable[MutationResult]) -> None:
    """Raise ManifestError for the first FATAL result, if any."""
    for result in results:
        if result.fatal:
            raise ManifestError(f"Cannot set {result.key}: {result.detail}")


# ----------------------------------------------------------------------------
# Release steps


class BuildStep:
    """Runs the application's build command in the repository root."""

    def __init__(self, config: ReleaseConfig, runner: ToolRunner | None = None):
        self.config = config
        self.runner = runner or ToolRunner()
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self) -> Path:
        """Build and return the bundle output directory.

        Raises:
            MissingArtifactError: If the build did not produce bundle_dir
        """
        command, *args = self.config.build_command
        self.log.info("Building: %s", " ".join(self.config.build_command))
        self.runner.invoke(
            command, args, cwd=self.config.root, progress="Building"
        )
        bundle_dir = self.config.path(self.config.bundle_dir)
        if not self.runner.dry_run and not bundle_dir.is_dir():
            raise MissingArtifactError(
                f"Build did not produce bundle directory: {bundle_dir}"
            )
        return bundle_dir


class HelperBundleBuilder:
    """Derives the background-agent helper bundle from the primary bundle.

    The helper is a copy of the primary bundle with its own name, display
    name and executable, plus LSUIElement so it stays out of the Dock and
    the application switcher. Its executable is a renamed copy of the raw
    build output, not of the primary bundle's executable.

    Args:
        config: Release configuration
        runner: Tool runner (default: a real ToolRunner)
        editor: Manifest editor (default: chosen by config.manifest_tool)
        dry_run: If True, only log what would be done

    Example:
        builder = HelperBundleBuilder(load_release_config())
        builder.build()
    """

    def __init__(
        self,
        config: ReleaseConfig,
        runner: ToolRunner | None = None,
        editor: ManifestEditor | None = None,
        dry_run: bool = False,
    ):
        self.config = config
        self.runner = runner or ToolRunner(dry_run=dry_run)
        self.dry_run = dry_run
        self.editor = editor or select_editor(
            config.manifest_tool, self.runner, dry_run
        )
        self.mutator = MetadataMutator(self.editor)
        self.log = logging.getLogger(self.__class__.__name__)

    def check_build_output(self) -> Path:
        """Validate the build output and log its architectures."""
        build_output = self.config.path(self.config.build_output)
        validate_file(build_output, check_macho=self.config.require_macho)
        archs = get_binary_architectures(build_output)
        if len(archs) > 1:
            self.log.info("Build output is universal: %s", ", ".join(archs))
        elif archs:
            self.log.info("Build output architecture: %s", archs[0])
        return build_output

    def verify(self, helper: AppBundle) -> None:
        """Check that CFBundleExecutable names an executable in MacOS/.

        Raises:
            ValidationError: If the manifest and the executable disagree
        """
        name = str(self.editor.get(helper.info_plist, KEY_EXECUTABLE))
        executable = helper.executable(name)
        if not executable.is_file():
            raise ValidationError(
                f"{KEY_EXECUTABLE} '{name}' not found in {helper.macos}"
            )
        if not os.access(executable, os.X_OK):
            raise ValidationError(f"Helper executable is not executable: {executable}")

    def build(self) -> Path:
        """Create the helper bundle and return its path."""
        config = self.config
        primary = locate_bundle(
            config.path(config.bundle_dir),
            config.app_name,
            exclude=[config.helper_name],
        )
        build_output = self.check_build_output()
        helper = AppBundle(primary.path.parent / f"{config.helper_name}{BUNDLE_EXT}")

        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would copy %s to %s", primary.path, helper.path
            )
        else:
            self.log.info("Copying %s to %s", primary.path, helper.path)
            clone_bundle(primary.path, helper.path)

        results = self.mutator.apply(
            helper.info_plist,
            bundle_name=config.helper_name,
            display_name=config.helper_name,
            executable=config.helper_bin_name,
        )
        raise_for_fatal(results)

        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would install %s as %s",
                build_output,
                helper.executable(config.helper_bin_name),
            )
            return helper.path

        swap_executable(
            helper, build_output, config.bin_name, config.helper_bin_name
        )
        self.verify(helper)
        self.log.info("Built helper app: %s", helper.path)
        return helper.path


class IconBuilder:
    """Rasterizes the SVG icon and writes it as a single-chunk .icns.

    The 1024x1024 PNG lives in a scratch directory that is removed whether
    or not the step succeeds.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        runner: ToolRunner | None = None,
        dry_run: bool = False,
    ):
        self.config = config
        self.runner = runner or ToolRunner(dry_run=dry_run)
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def rasterize(
        self, source: Pathlike, target: Pathlike, size: int = ICON_SIZE
    ) -> Path:
        """Render source to a size x size PNG at target with rsvg-convert."""
        self.runner.invoke(
            RSVG_CONVERT,
            ["-w", size, "-h", size, source, "-o", target],
            hint=RSVG_INSTALL_HINT,
        )
        return Path(target)

    def build(self) -> Path:
        """Generate the .icns file and return its path.

        Raises:
            MissingDependencyError: If rsvg-convert is not installed
            MissingArtifactError: If the SVG source is absent
            FileError: If the rasterizer produced no output
        """
        self.runner.require(RSVG_CONVERT, RSVG_INSTALL_HINT)
        source = self.config.path(self.config.icon_source)
        output = self.config.path(self.config.icon_output)
        if not source.is_file():
            raise MissingArtifactError(f"Icon source not found at {source}")

        with tempfile.TemporaryDirectory(prefix="macrelease-") as tmp_dir:
            png = self.rasterize(source, Path(tmp_dir) / "app-icon-1024.png")
            if self.dry_run:
                self.log.info("[DRY RUN] Would write %s", output)
                return output
            if not png.is_file():
                raise FileError(f"{RSVG_CONVERT} produced no output: {png}")
            try:
                macicns.write_icns(png.read_bytes(), output)
            except OSError as e:
                raise FileError(f"Cannot write {output}: {e}") from e

        self.log.info("Generated %s", output)
        return output


class DiskImagePackager:
    """Creates a compressed, read-only DMG from the primary bundle.

    Args:
        source: Path to the primary .app bundle
        output: Path for the output DMG file
        volume_name: Name for the mounted volume (default: source name)
        runner: Tool runner (default: a real ToolRunner)
        dry_run: If True, show commands without executing

    Raises:
        MissingArtifactError: If source is not a directory; raised before
            any external tool is run

    Example:
        packager = DiskImagePackager("Rivett.app", "dist/Rivett.dmg", "Rivett")
        packager.process()
    """

    def __init__(
        self,
        source: Pathlike,
        output: Pathlike,
        volume_name: str | None = None,
        runner: ToolRunner | None = None,
        dry_run: bool = False,
    ) -> None:
        self.source = Path(source)
        if not self.source.is_dir():
            raise MissingArtifactError(f"App bundle not found at {self.source}")
        self.output = Path(output)
        self.volume_name = volume_name or self.source.stem
        self.dry_run = dry_run
        self.runner = runner or ToolRunner(dry_run=dry_run)
        self.log = logging.getLogger(self.__class__.__name__)

    def remove_stale(self) -> None:
        """Remove a DMG left by a previous run."""
        if self.dry_run:
            if self.output.exists():
                self.log.info("[DRY RUN] Would remove %s", self.output)
            return
        try:
            self.output.parent.mkdir(parents=True, exist_ok=True)
            _remove_path(self.output)
        except OSError as e:
            raise FileError(f"Cannot remove stale {self.output}: {e}") from e

    def create_dmg(self) -> Path:
        """Create the DMG using hdiutil.

        Returns:
            Path to the created DMG file
        """
        self.log.info("Creating DMG: %s", self.output)
        self.runner.invoke(
            HDIUTIL,
            [
                "create",
                "-volname",
                self.volume_name,
                "-srcfolder",
                self.source,
                "-ov",
                "-format",
                DMG_FORMAT,
                self.output,
            ],
            progress="Creating disk image",
        )

        if not self.dry_run and not self.output.is_file():
            raise PackagingError(f"Failed to create DMG: {self.output}")
        return self.output

    def process(self) -> Path:
        """Remove any stale DMG and create a new one."""
        self.remove_stale()
        self.create_dmg()
        self.log.info("Created %s", self.output)
        return self.output


# ----------------------------------------------------------------------------
# Functional API


def make_icon(
    config: ReleaseConfig,
    runner: ToolRunner | None = None,
    dry_run: bool = False,
) -> Path:
    """Rasterize the vector icon and write the .icns container."""
    return IconBuilder(config, runner, dry_run).build()


def make_helper(
    config: ReleaseConfig,
    runner: ToolRunner | None = None,
    build: bool = True,
    dry_run: bool = False,
) -> Path:
    """Optionally build, then derive the helper bundle."""
    runner = runner or ToolRunner(dry_run=dry_run)
    if build:
        BuildStep(config, runner).run()
    return HelperBundleBuilder(config, runner, dry_run=dry_run).build()


def make_dmg(
    config: ReleaseConfig,
    runner: ToolRunner | None = None,
    dry_run: bool = False,
) -> Path:
    """Package the primary bundle at its conventional path."""
    source = config.path(config.bundle_dir) / f"{config.app_name}{BUNDLE_EXT}"
    packager = DiskImagePackager(
        source,
        config.path(config.dmg_path),
        volume_name=config.app_name,
        runner=runner,
        dry_run=dry_run,
    )
    return packager.process()


def make_release(
    config: ReleaseConfig,
    runner: ToolRunner | None = None,
    build: bool = True,
    dry_run: bool = False,
) -> Path:
    """Generate the icon, rebuild so the bundle picks it up, then package."""
    runner = runner or ToolRunner(dry_run=dry_run)
    if build:
        make_icon(config, runner, dry_run)
        BuildStep(config, runner).run()
    return make_dmg(config, runner, dry_run)


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--root",
        metavar="DIR",
        help="repository root (default: current directory)",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="TOML config file (default: .macrelease.toml in root)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _prepare(args: argparse.Namespace) -> tuple[ReleaseConfig, ToolRunner]:
    config = load_release_config(args.root, args.config)
    logging.getLogger("macrelease").debug("%r", config)
    runner = ToolRunner(dry_run=args.dry_run, progress=sys.stderr.isatty())
    return config, runner


def _cmd_icon(args: argparse.Namespace) -> None:
    """Handle 'icon' subcommand."""
    config, runner = _prepare(args)
    make_icon(config, runner, args.dry_run)


def _cmd_helper(args: argparse.Namespace) -> None:
    """Handle 'helper' subcommand."""
    config, runner = _prepare(args)
    make_helper(config, runner, build=not args.skip_build, dry_run=args.dry_run)


def _cmd_dmg(args: argparse.Namespace) -> None:
    """Handle 'dmg' subcommand."""
    config, runner = _prepare(args)
    make_dmg(config, runner, args.dry_run)


def _cmd_release(args: argparse.Namespace) -> None:
    """Handle 'release' subcommand."""
    config, runner = _prepare(args)
    make_release(config, runner, build=not args.skip_build, dry_run=args.dry_run)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="macrelease",
        description="Derive the helper app, build the icon and package a DMG.",
        epilog=(
            "Examples:\n"
            "  macrelease icon\n"
            "  macrelease helper --skip-build\n"
            "  macrelease release --root ~/src/rivett\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {__version__}"
    )
    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        required=True,
    )

    icon_parser = subparsers.add_parser(
        "icon",
        help="rasterize the SVG icon into an .icns file",
        description="Render the SVG icon at 1024x1024 and wrap it as .icns.",
    )
    _add_common_options(icon_parser)
    icon_parser.set_defaults(func=_cmd_icon)

    helper_parser = subparsers.add_parser(
        "helper",
        help="build and derive the background-agent helper bundle",
        description="Clone the primary bundle into a hidden helper bundle.",
    )
    helper_parser.add_argument(
        "--skip-build",
        action="store_true",
        help="use the existing build output instead of rebuilding",
    )
    _add_common_options(helper_parser)
    helper_parser.set_defaults(func=_cmd_helper)

    dmg_parser = subparsers.add_parser(
        "dmg",
        help="package the primary bundle into a DMG",
        description="Create a compressed, read-only DMG from the primary bundle.",
    )
    _add_common_options(dmg_parser)
    dmg_parser.set_defaults(func=_cmd_dmg)

    release_parser = subparsers.add_parser(
        "release",
        help="generate the icon, rebuild and package a DMG",
        description="Run icon, build and dmg in order.",
    )
    release_parser.add_argument(
        "--skip-build",
        action="store_true",
        help="skip icon generation and the build step",
    )
    _add_common_options(release_parser)
    release_parser.set_defaults(func=_cmd_release)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macrelease."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, not args.no_color)
    try:
        args.func(args)
    except BundlerError as e:
        if isinstance(e, CommandError) and e.output:
            logging.debug("%s", e.output.rstrip())
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
