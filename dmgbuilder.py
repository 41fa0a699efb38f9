#!/usr/bin/env python3
"""dmgbuilder - build macOS disk images from Linux.

This module provides tools for:
1. Estimating the capacity an application bundle needs inside an image
2. Allocating, formatting and loopback-mounting a raw HFS+ image
3. Copying the bundle (and an optional volume icon) onto the volume,
   tagging the volume with the custom-icon Finder flag and moving the
   finished image into place

hdiutil only exists on macOS, so the image is assembled with ordinary
Linux tools instead: du, dd, mkfs.hfsplus, mount/umount, cp and setfattr.
Mounting, copying onto the mounted volume and setting attributes on it
require root and are run through sudo unless the process already is root.

Usage (CLI):
    # Build MyApp.dmg beside dist/ from dist/MyApp.app
    dmgbuilder build dist/ MyApp.app

    # Custom output, volume name and volume icon
    dmgbuilder build dist/ MyApp.app -o MyApp-1.0.dmg -n "My App" \\
        --icon MyApp.icns

    # Only print the capacity the image would get
    dmgbuilder estimate dist/ MyApp.app

Usage (API):
    from dmgbuilder import DmgBuilder

    builder = DmgBuilder("dist", "MyApp.app", output="MyApp-1.0.dmg",
                         volume_name="My App")
    builder.build()
"""

import argparse
import contextlib
import datetime
import enum
import errno
import itertools
import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

try:
    import tomllib
except ImportError:
    import tomli as tomllib

from dotenv import load_dotenv

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

MEGABYTE = 1024 * 1024

# Added to the du size of every manifest entry for filesystem metadata
ENTRY_OVERHEAD_BYTES = 20

# Extra whole megabytes on top of the estimate (catalog and extents b-trees,
# allocation bitmap, block rounding of small files)
DEFAULT_MARGIN_MB = 10

# The only filesystem the pipeline produces
FILESYSTEM_TYPE = "hfsplus"
DEFAULT_MKFS = "mkfs.hfsplus"

# Reserved name Finder looks for at the volume root
VOLUME_ICON_NAME = ".VolumeIcon.icns"

# The Linux hfsplus driver exposes native attributes under the osx. prefix
FINDER_INFO_ATTR = "osx.com.apple.FinderInfo"
FINDER_INFO_SIZE = 32
# finderFlags is big-endian at offset 8; kHasCustomIcon is 0x0400
FINDER_FLAGS_OFFSET = 8
HAS_CUSTOM_ICON = 0x04

# HFS+ volume names are limited to 255 UTF-16 units
MAX_VOLUME_NAME = 255

# Maximum icon size accepted (64MB)
MAX_ICON_SIZE = 64 * MEGABYTE

ICNS_MAGIC = b"icns"

# Environment variable names
ENV_SUDO = "DMG_SUDO"
ENV_MKFS = "DMG_MKFS"
ENV_WORK_DIR = "DMG_WORK_DIR"

# Lowercase fragments of mount/sudo diagnostics that mean "not privileged"
PERMISSION_DENIED_MARKERS = (
    "permission denied",
    "must be superuser",
    "only root can",
    "a password is required",
    "not in the sudoers",
    "operation not permitted",
)

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .dmgbuilder.toml in current directory
    3. dmgbuilder.toml in current directory
    4. [tool.dmgbuilder] table of pyproject.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If a config file exists but is not valid TOML

    Example .dmgbuilder.toml:
        [build]
        volume_name = "My App"
        icon = "MyApp.icns"
        margin_mb = 20
        sudo = "doas"
    """
    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".dmgbuilder.toml",
            cwd / "dmgbuilder.toml",
            cwd / "pyproject.toml",
        ]

    for path in paths_to_try:
        if not path.exists():
            continue
        try:
            with open(path, "rb") as f:
                data: dict[str, object] = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e
        if path.name == "pyproject.toml":
            tool = data.get("tool", {})
            section = tool.get("dmgbuilder") if isinstance(tool, dict) else None
            if not isinstance(section, dict):
                continue
            return section
        return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "build")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def get_config_int(
    config: dict[str, object],
    section: str,
    key: str,
    default: int | None = None,
) -> int | None:
    """Get an integer value from config with section.key lookup.

    Raises:
        ConfigurationError: If the value is present but not an integer
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict) or key not in section_config:
        return default
    value = section_config[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(
            f"Config value {section}.{key} must be an integer, got {value!r}"
        )
    return value


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Error handling


class DmgError(Exception):
    """Base exception class for dmgbuilder errors."""


class CommandError(DmgError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(DmgError):
    """Exception raised when configuration is invalid."""


class ValidationError(DmgError):
    """Exception raised when validation fails."""


class StepError(DmgError):
    """A failure of one step of image assembly.

    Attributes:
        step: Short name of the failing step
        message: What the step was trying to do
        output: Raw diagnostic output of the underlying tool, if any
        cleanup_error: Failure of the unmount attempted after this error,
            reported alongside it rather than replacing it
    """

    step = "image assembly"

    def __init__(self, message: str, output: str | None = None):
        self.message = message
        self.output = output
        self.cleanup_error: DmgError | None = None
        super().__init__(message)

    def __str__(self) -> str:
        text = f"{self.step} failed: {self.message}"
        if self.output and self.output.strip():
            text += f"\n{self.output.strip()}"
        if self.cleanup_error is not None:
            text += f"\ncleanup also failed: {self.cleanup_error}"
        return text


class SizeQueryFailure(StepError):
    """The size of a manifest entry could not be determined."""

    step = "size query"


class AllocationFailure(StepError):
    """The raw image file could not be written."""

    step = "allocation"

    def __init__(
        self, message: str, capacity_mb: int, output: str | None = None
    ):
        self.capacity_mb = capacity_mb
        super().__init__(f"{message} (capacity: {capacity_mb} MB)", output)


class FormatFailure(StepError):
    step = "format"


class MountFailure(StepError):
    """The image could not be attached; no MountHandle exists."""

    step = "mount"

    def __init__(
        self,
        message: str,
        output: str | None = None,
        permission_denied: bool = False,
    ):
        self.permission_denied = permission_denied
        super().__init__(message, output)


class CopyFailure(StepError):
    """A manifest entry could not be copied onto the volume."""

    step = "copy"

    def __init__(
        self,
        message: str,
        entry: "ManifestEntry",
        output: str | None = None,
    ):
        self.entry = entry
        super().__init__(message, output)


class AttributeFailure(StepError):
    step = "attribute"


class UnmountFailure(StepError):
    step = "unmount"


class RenameFailure(StepError):
    step = "rename"


# ----------------------------------------------------------------------------
# Validation


def validate_file(
    path: Pathlike,
    magic: bytes | None = None,
    max_size: int = MAX_ICON_SIZE,
) -> None:
    """Validate a file before copying it onto the volume.

    Checks that the path:
    - Exists and is a regular file (not symlink, device, socket, etc.)
    - Is readable
    - Has non-zero size no larger than max_size
    - Optionally: starts with the given magic bytes

    Args:
        path: Path to the file to validate
        magic: Expected leading bytes of the file
        max_size: Maximum allowed file size in bytes

    Raises:
        ValidationError: If any validation check fails
    """
    path = Path(path)

    if not path.exists():
        raise ValidationError(f"File does not exist: {path}")

    if path.is_symlink():
        raise ValidationError(f"File is a symbolic link: {path}")

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

    if magic:
        try:
            with open(path, "rb") as f:
                head = f.read(len(magic))
        except OSError as e:
            raise ValidationError(f"Cannot read file {path}: {e}") from e
        if head != magic:
            raise ValidationError(
                f"File does not start with {magic!r}: {path}"
            )


def validate_icon(path: Pathlike) -> None:
    """Validate a volume icon (.icns) file."""
    validate_file(path, magic=ICNS_MAGIC)


def validate_volume_name(name: str) -> None:
    """Validate an HFS+ volume name.

    Raises:
        ValidationError: If the name is empty, too long or contains NUL
    """
    if not name or not name.strip():
        raise ValidationError("Volume name cannot be empty")
    if len(name) > MAX_VOLUME_NAME:
        raise ValidationError(
            f"Volume name is too long (max {MAX_VOLUME_NAME} characters): "
            f"'{name[:40]}...'"
        )
    if "\0" in name:
        raise ValidationError("Volume name cannot contain NUL characters")


def is_permission_denied(output: str | None) -> bool:
    """Check whether tool diagnostics describe a privilege failure."""
    if not output:
        return False
    text = output.lower()
    return any(marker in text for marker in PERMISSION_DENIED_MARKERS)


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """Terminal spinner shown while a long copy is running.

    Example:
        with ProgressSpinner("Copying MyApp.app"):
            populator.populate(...)
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
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
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
    """Log formatter showing elapsed time, with optional colour."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    PLAIN = "%(delta)s - %(levelname)-7s - %(name)s - %(message)s"

    LEVEL_COLORS = {
        logging.DEBUG: color.grey,
        logging.INFO: color.green,
        logging.WARNING: color.yellow,
        logging.ERROR: color.red,
        logging.CRITICAL: color.bold_red,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _colored(self, levelno: int) -> str:
        c = self.color
        level = self.LEVEL_COLORS.get(levelno, c.white)
        return (
            f"{c.white}%(delta)s{c.reset} - "
            f"{level}%(levelname)-7s{c.reset} - "
            f"{c.white}%(name)s{c.reset} - "
            f"{c.grey}%(message)s{c.reset}"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        fmt = self._colored(record.levelno) if self.use_color else self.PLAIN
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = elapsed.strftime("%H:%M:%S")
        return logging.Formatter(fmt).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging (shows every command run)
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    cwd: Pathlike | None = None,
) -> str:
    """Run a command and return its output.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        cwd: Working directory for the command

    Returns:
        The command stdout output ("" in dry-run mode)

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = shlex.join(command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            capture_output=True,
            cwd=cwd,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        raise CommandError(cmd_str, 127, str(e)) from e


def default_sudo() -> list[str]:
    """Privilege prefix for mount, copy and attribute commands.

    Uses DMG_SUDO when set (an empty value disables the prefix), nothing
    when already running as root, and sudo otherwise.
    """
    env = os.getenv(ENV_SUDO)
    if env is not None:
        return shlex.split(env)
    if os.geteuid() == 0:
        return []
    return ["sudo"]


class Toolchain:
    """Runs the external tools image assembly is built on.

    Each method wraps exactly one command line tool and raises
    CommandError when it fails. The pipeline components only talk to the
    host through this class, so any object with the same methods can stand
    in for it.

    Args:
        sudo: Privilege prefix for commands that touch the mounted volume
            (default: see default_sudo())
        mkfs: HFS+ formatter executable (default: DMG_MKFS or mkfs.hfsplus)
        dry_run: If True, log mutating commands without running them
    """

    def __init__(
        self,
        sudo: list[str] | None = None,
        mkfs: str | None = None,
        dry_run: bool = False,
    ) -> None:
        self.sudo = default_sudo() if sudo is None else list(sudo)
        self.mkfs = mkfs or os.getenv(ENV_MKFS) or DEFAULT_MKFS
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str], privileged: bool = False) -> str:
        """Run a command, prefixed with sudo when privileged."""
        if privileged:
            command = self.sudo + command
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def disk_usage(self, path: Pathlike, cwd: Pathlike) -> str:
        """Return raw `du -sb` output for path."""
        # read-only, so it also runs in dry-run mode
        return run_command(["du", "-sb", str(path)], log=self.log, cwd=cwd)

    def allocate(self, path: Pathlike, capacity_mb: int) -> None:
        self.run_command(
            [
                "dd",
                "if=/dev/zero",
                f"of={path}",
                "bs=1M",
                f"count={capacity_mb}",
            ]
        )

    def format(self, path: Pathlike, volume_name: str) -> None:
        self.run_command([self.mkfs, "-v", volume_name, str(path)])

    def mount(self, image: Pathlike, mount_point: Pathlike) -> None:
        self.run_command(
            [
                "mount",
                "-t",
                FILESYSTEM_TYPE,
                "-o",
                "loop,rw",
                str(image),
                str(mount_point),
            ],
            privileged=True,
        )

    def unmount(self, mount_point: Pathlike) -> None:
        self.run_command(["umount", str(mount_point)], privileged=True)

    def copy(self, source: Pathlike, destination: Pathlike) -> None:
        self.run_command(
            ["cp", "-R", str(source), str(destination)], privileged=True
        )

    def set_xattr(self, path: Pathlike, name: str, value: bytes) -> None:
        self.run_command(
            ["setfattr", "-n", name, "-v", "0x" + value.hex(), str(path)],
            privileged=True,
        )


# ----------------------------------------------------------------------------
# Data model


@dataclass(frozen=True)
class ManifestEntry:
    """A file or directory to place on the volume.

    source is relative to the bundle directory (an absolute path is used
    as is); destination is relative to the volume root, "/" meaning the
    root itself.
    """

    source: str
    destination: str

    def source_path(self, root: Path) -> Path:
        return root / self.source

    def destination_path(self, mount_point: Path) -> Path:
        relative = self.destination.strip("/")
        return mount_point / relative if relative else mount_point


@dataclass(frozen=True)
class ImageSpec:
    """Everything needed to assemble one image, fixed before allocation."""

    output: Path
    volume_name: str
    capacity_mb: int
    working_path: Path
    mount_point: Path


class MountHandle:
    """An attached loopback filesystem.

    Owns its mount point until detached. MountManager.detach() must be
    called exactly once per handle.
    """

    def __init__(
        self, image: Path, mount_point: Path, created_mount_point: bool
    ) -> None:
        self.image = image
        self.mount_point = mount_point
        self.created_mount_point = created_mount_point
        self.attached = True

    def __repr__(self) -> str:
        state = "attached" if self.attached else "detached"
        return f"<MountHandle {self.image} at {self.mount_point} ({state})>"


def build_manifest(
    bundle_name: str, icon: Pathlike | None = None
) -> list[ManifestEntry]:
    """The bundle at the volume root, then the volume icon if given."""
    entries = [ManifestEntry(bundle_name, "/")]
    if icon is not None:
        entries.append(ManifestEntry(str(icon), VOLUME_ICON_NAME))
    return entries


# ----------------------------------------------------------------------------
# Size estimation


def parse_disk_usage(output: str, path: str) -> int:
    """Extract the byte count from `du -sb` output.

    Raises:
        SizeQueryFailure: If the output does not start with an integer
    """
    match = re.match(r"\s*(\d+)\s", output + "\n")
    if not match:
        raise SizeQueryFailure(
            f"no integer in du output for {path}", output=output
        )
    return int(match.group(1))


def megabytes_for(total_bytes: int) -> int:
    """Whole megabytes needed to hold total_bytes (ceiling division)."""
    return -(-total_bytes // MEGABYTE)


class SizeEstimator:
    """Computes image capacity from the recursive size of each entry.

    capacity_mb = ceil(sum(size + overhead) / 1MB) + margin_mb
    """

    def __init__(
        self,
        toolchain: Toolchain,
        overhead: int = ENTRY_OVERHEAD_BYTES,
        margin_mb: int = DEFAULT_MARGIN_MB,
    ) -> None:
        if margin_mb < 0:
            raise ConfigurationError(
                f"Safety margin cannot be negative: {margin_mb}"
            )
        self.toolchain = toolchain
        self.overhead = overhead
        self.margin_mb = margin_mb
        self.log = logging.getLogger(self.__class__.__name__)

    def entry_bytes(self, root: Path, entry: ManifestEntry) -> int:
        """On-disk byte size of one entry, directories included."""
        try:
            output = self.toolchain.disk_usage(entry.source, root)
        except CommandError as e:
            raise SizeQueryFailure(
                f"could not query size of {entry.source}", output=e.output
            ) from e
        size = parse_disk_usage(output, entry.source)
        self.log.debug("%s: %d bytes", entry.source, size)
        return size

    def total_bytes(self, root: Path, entries: list[ManifestEntry]) -> int:
        return sum(
            self.entry_bytes(root, entry) + self.overhead for entry in entries
        )

    def estimate(self, root: Path, entries: list[ManifestEntry]) -> int:
        """Capacity in whole megabytes for the given entries."""
        total = self.total_bytes(root, entries)
        capacity_mb = megabytes_for(total) + self.margin_mb
        self.log.info(
            "estimated %d bytes, capacity %d MB (margin %d MB)",
            total,
            capacity_mb,
            self.margin_mb,
        )
        return capacity_mb


# ----------------------------------------------------------------------------
# Image assembly steps


class ImageAllocator:
    """Writes a zero-filled raw image of a given capacity."""

    def __init__(self, toolchain: Toolchain) -> None:
        self.toolchain = toolchain
        self.log = logging.getLogger(self.__class__.__name__)

    def allocate(self, path: Path, capacity_mb: int) -> Path:
        if capacity_mb <= 0:
            raise AllocationFailure(
                "capacity must be a positive number of megabytes",
                capacity_mb,
            )
        self.log.info("allocating %d MB image at %s", capacity_mb, path)
        try:
            self.toolchain.allocate(path, capacity_mb)
        except CommandError as e:
            raise AllocationFailure(
                f"could not write {path}", capacity_mb, output=e.output
            ) from e
        return path


class FilesystemFormatter:
    """Creates the HFS+ filesystem on an allocated image."""

    def __init__(self, toolchain: Toolchain) -> None:
        self.toolchain = toolchain
        self.log = logging.getLogger(self.__class__.__name__)

    def format(self, path: Path, volume_name: str) -> None:
        self.log.info(
            "formatting %s as %s '%s'", path, FILESYSTEM_TYPE, volume_name
        )
        try:
            self.toolchain.format(path, volume_name)
        except CommandError as e:
            raise FormatFailure(
                f"could not format {path} with label '{volume_name}'",
                output=e.output,
            ) from e


class MountManager:
    """Attaches and detaches the image as a loopback filesystem.

    attach() creates the mount point if needed and returns a MountHandle;
    detach() releases it and removes a mount point that attach() created.
    mounted() pairs the two so the handle is released exactly once on
    every exit path.

    Args:
        toolchain: Tool runner
        dry_run: If True, no directories are created or removed
    """

    def __init__(self, toolchain: Toolchain, dry_run: bool = False) -> None:
        self.toolchain = toolchain
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def attach(self, image: Path, mount_point: Path) -> MountHandle:
        """Mount image at mount_point.

        Raises:
            MountFailure: If the mount fails; no handle is produced
        """
        created = False
        if not mount_point.exists():
            if self.dry_run:
                self.log.info("[DRY RUN] Would create %s", mount_point)
            else:
                mount_point.mkdir(parents=True)
            created = True

        self.log.info("mounting %s at %s", image, mount_point)
        try:
            self.toolchain.mount(image, mount_point)
        except CommandError as e:
            if created and not self.dry_run:
                self._remove_mount_point(mount_point)
            denied = is_permission_denied(e.output)
            reason = "permission denied" if denied else "mount failed"
            raise MountFailure(
                f"could not attach {image} at {mount_point} ({reason})",
                output=e.output,
                permission_denied=denied,
            ) from e
        return MountHandle(image, mount_point, created)

    def detach(self, handle: MountHandle) -> None:
        """Unmount the handle's filesystem.

        Raises:
            DmgError: If the handle was already detached
            UnmountFailure: If the unmount fails
        """
        if not handle.attached:
            raise DmgError(f"{handle.mount_point} has already been detached")
        self.log.info("unmounting %s", handle.mount_point)
        try:
            self.toolchain.unmount(handle.mount_point)
        except CommandError as e:
            raise UnmountFailure(
                f"could not detach {handle.mount_point}", output=e.output
            ) from e
        handle.attached = False
        if handle.created_mount_point and not self.dry_run:
            self._remove_mount_point(handle.mount_point)

    def _remove_mount_point(self, mount_point: Path) -> None:
        try:
            mount_point.rmdir()
        except OSError as e:
            self.log.warning("could not remove %s: %s", mount_point, e)

    @contextlib.contextmanager
    def mounted(
        self,
        image: Path,
        mount_point: Path,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> Iterator[MountHandle]:
        """Attach for the duration of a with block.

        If the block raises, on_error is called, the image is detached and
        the original exception propagates. A failing cleanup unmount is
        attached to it as cleanup_error instead of replacing it.
        """
        handle = self.attach(image, mount_point)
        try:
            yield handle
        except BaseException as exc:
            if on_error is not None:
                on_error(exc)
            self._detach_after_error(handle, exc)
            raise
        self.detach(handle)

    def _detach_after_error(
        self, handle: MountHandle, exc: BaseException
    ) -> None:
        try:
            self.detach(handle)
        except DmgError as cleanup_error:
            self.log.error(
                "cleanup unmount of %s failed: %s",
                handle.mount_point,
                cleanup_error,
            )
            if isinstance(exc, StepError):
                exc.cleanup_error = cleanup_error


class ContentPopulator:
    """Copies manifest entries onto the mounted volume, in order."""

    def __init__(self, toolchain: Toolchain) -> None:
        self.toolchain = toolchain
        self.log = logging.getLogger(self.__class__.__name__)

    def populate(
        self, root: Path, entries: list[ManifestEntry], mount_point: Path
    ) -> None:
        """Copy each entry; stop at the first failure.

        Raises:
            CopyFailure: Naming the entry that failed
        """
        for entry in entries:
            source = entry.source_path(root)
            destination = entry.destination_path(mount_point)
            self.log.info("copying %s -> %s", source, destination)
            try:
                self.toolchain.copy(source, destination)
            except CommandError as e:
                raise CopyFailure(
                    f"could not copy {entry.source} to {entry.destination}",
                    entry,
                    output=e.output,
                ) from e


def finder_info(flags: int = HAS_CUSTOM_ICON) -> bytes:
    """A FinderInfo blob with the given high byte of finderFlags set."""
    info = bytearray(FINDER_INFO_SIZE)
    info[FINDER_FLAGS_OFFSET] = flags
    return bytes(info)


class AttributeTagger:
    """Marks the mounted volume root as having a custom icon."""

    def __init__(
        self, toolchain: Toolchain, attribute: str = FINDER_INFO_ATTR
    ) -> None:
        self.toolchain = toolchain
        self.attribute = attribute
        self.log = logging.getLogger(self.__class__.__name__)

    def tag(self, path: Path) -> None:
        self.log.info("setting %s on %s", self.attribute, path)
        try:
            self.toolchain.set_xattr(path, self.attribute, finder_info())
        except CommandError as e:
            raise AttributeFailure(
                f"could not set {self.attribute} on {path}", output=e.output
            ) from e


class Finalizer:
    """Moves the finished image over the requested output path.

    The output is only ever replaced by a rename within its own directory,
    so an existing file there stays intact until the image is complete.
    When the work directory is on another filesystem the image is first
    copied next to the output under a hidden staging name.
    """

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def finalize(self, working_path: Path, output: Path) -> Path:
        if self.dry_run:
            self.log.info("[DRY RUN] Would move %s to %s", working_path, output)
            return output
        self.log.info("moving %s to %s", working_path, output)
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.replace(working_path, output)
            except OSError as e:
                if e.errno != errno.EXDEV:
                    raise
                self._copy_across(working_path, output)
        except OSError as e:
            raise RenameFailure(
                f"could not move {working_path} to {output}", output=str(e)
            ) from e
        return output

    def _copy_across(self, working_path: Path, output: Path) -> None:
        staging = staging_path(output)
        self.log.debug(
            "copying %s to %s across filesystems", working_path, staging
        )
        try:
            shutil.copy2(working_path, staging)
            os.replace(staging, output)
        except BaseException:
            if staging.exists():
                try:
                    staging.unlink()
                except OSError as e:
                    self.log.warning("could not remove %s: %s", staging, e)
            raise
        try:
            working_path.unlink()
        except OSError as e:
            self.log.warning("could not remove %s: %s", working_path, e)


def staging_path(output: Path) -> Path:
    """Hidden file beside output that a cross-filesystem move writes first."""
    return output.with_name(f".{output.name}.tmp")


# ----------------------------------------------------------------------------
# Pipeline coordination


class PipelineState(enum.Enum):
    """States of one image build. FINALIZED is the only success state.

    POPULATED and TAGGED are entered when their step starts, so a copy or
    attribute failure happens in that state.
    """

    START = "start"
    SIZE_ESTIMATED = "size-estimated"
    ALLOCATED = "allocated"
    FORMATTED = "formatted"
    MOUNTED = "mounted"
    POPULATED = "populated"
    TAGGED = "tagged"
    DETACHED = "detached"
    FINALIZED = "finalized"
    ERROR_DETACHING = "error-detaching"
    FAILED = "failed"


class DmgBuilder:
    """Builds an HFS+ disk image from an application bundle.

    The build runs these steps strictly in order:
    1. Estimate the capacity of the bundle and optional volume icon
    2. Allocate a zero-filled working image
    3. Format it as HFS+ with the volume name
    4. Mount it on a loopback device
    5. Copy the bundle to the volume root and the icon to .VolumeIcon.icns
    6. Set the custom-icon Finder flag on the volume
    7. Unmount
    8. Move the working image to the output path

    A failure while mounted always unmounts before the error propagates.
    Nothing is written to the output path unless every step succeeds.

    Args:
        bundle_dir: Directory containing the bundle (read-only input)
        bundle_name: Name of the bundle inside bundle_dir (e.g. "MyApp.app")
        output: Path of the image to produce
            (default: {bundle stem}.dmg beside bundle_dir)
        volume_name: Volume label (default: bundle stem)
        icon: Volume icon (.icns), relative to bundle_dir or absolute
        working_name: File name of the working image
            (default: rw.{output name})
        work_dir: Directory for the working image and mount point
            (default: DMG_WORK_DIR or the output's directory)
        margin_mb: Safety margin added to the estimate, in megabytes
        overhead: Per-entry overhead in bytes
        attribute: Extended attribute holding the FinderInfo blob
        toolchain: Tool runner (default: Toolchain(dry_run=dry_run))
        keep_working: Keep the working image when a build fails
        dry_run: If True, show commands without executing
        progress: Show a spinner while copying

    Example:
        builder = DmgBuilder("dist", "MyApp.app", icon="MyApp.icns")
        builder.build()
    """

    def __init__(
        self,
        bundle_dir: Pathlike,
        bundle_name: str,
        output: Pathlike | None = None,
        volume_name: str | None = None,
        icon: Pathlike | None = None,
        working_name: str | None = None,
        work_dir: Pathlike | None = None,
        margin_mb: int = DEFAULT_MARGIN_MB,
        overhead: int = ENTRY_OVERHEAD_BYTES,
        attribute: str = FINDER_INFO_ATTR,
        toolchain: Toolchain | None = None,
        keep_working: bool = False,
        dry_run: bool = False,
        progress: bool = False,
    ) -> None:
        self.bundle_dir = Path(bundle_dir)
        if not self.bundle_dir.is_dir():
            raise ConfigurationError(
                f"Bundle directory does not exist: {self.bundle_dir}"
            )
        self.bundle_name = bundle_name
        self.bundle = self.bundle_dir / bundle_name
        if not self.bundle.exists():
            raise ConfigurationError(f"Bundle does not exist: {self.bundle}")
        stem = Path(bundle_name).stem

        # the bundle directory is never written to unless asked
        if output:
            self.output = Path(output)
        else:
            self.output = self.bundle_dir.resolve().parent / f"{stem}.dmg"
        if self.output.is_dir():
            raise ConfigurationError(
                f"Output path is a directory: {self.output}"
            )

        self.volume_name = volume_name or stem
        validate_volume_name(self.volume_name)

        self.icon = Path(icon) if icon else None
        if self.icon is not None:
            validate_icon(self.bundle_dir / self.icon)

        if work_dir is None:
            work_dir = os.getenv(ENV_WORK_DIR) or self.output.parent
        self.work_dir = Path(work_dir)
        self.working_path = self.work_dir / (
            working_name or f"rw.{self.output.name}"
        )
        self.mount_point = self.work_dir / f".mount-{stem}"
        if self.working_path.absolute() == self.output.absolute():
            raise ConfigurationError(
                f"Working image cannot be the output path: {self.output}"
            )

        self.keep_working = keep_working
        self.dry_run = dry_run
        self.progress = progress
        self.log = logging.getLogger(self.__class__.__name__)

        self.toolchain = toolchain or Toolchain(dry_run=dry_run)
        self.estimator = SizeEstimator(self.toolchain, overhead, margin_mb)
        self.allocator = ImageAllocator(self.toolchain)
        self.formatter = FilesystemFormatter(self.toolchain)
        self.mounts = MountManager(self.toolchain, dry_run=dry_run)
        self.populator = ContentPopulator(self.toolchain)
        self.tagger = AttributeTagger(self.toolchain, attribute)
        self.finalizer = Finalizer(dry_run=dry_run)

        self.manifest = build_manifest(bundle_name, self.icon)
        self.state = PipelineState.START
        self.history: list[PipelineState] = [self.state]

    def _advance(self, state: PipelineState) -> None:
        self.log.debug("%s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def estimate(self) -> int:
        """Capacity in megabytes the image will be allocated with."""
        return self.estimator.estimate(self.bundle_dir, self.manifest)

    def plan(self) -> ImageSpec:
        """Estimate the capacity and fix the paths of this build."""
        image = ImageSpec(
            output=self.output,
            volume_name=self.volume_name,
            capacity_mb=self.estimate(),
            working_path=self.working_path,
            mount_point=self.mount_point,
        )
        self._advance(PipelineState.SIZE_ESTIMATED)
        return image

    def prepare_workspace(self) -> None:
        """Clear leftovers of an earlier failed run.

        Raises:
            ConfigurationError: If the mount point is still mounted
        """
        if os.path.ismount(self.mount_point):
            raise ConfigurationError(
                f"{self.mount_point} is still mounted from a previous run; "
                "unmount it first"
            )
        if self.dry_run:
            return
        self.work_dir.mkdir(parents=True, exist_ok=True)
        if self.working_path.exists():
            self.log.warning(
                "removing stale working image %s", self.working_path
            )
            self.working_path.unlink()
        # an empty leftover is recreated and removed again by attach
        if self.mount_point.is_dir() and not any(self.mount_point.iterdir()):
            self.log.warning(
                "removing stale mount point %s", self.mount_point
            )
            self.mount_point.rmdir()

    def _on_mounted_error(self, exc: BaseException) -> None:
        self.log.error("%s; unmounting before giving up", exc)
        self._advance(PipelineState.ERROR_DETACHING)

    def _populate(self, mount_point: Path) -> None:
        if self.progress and not self.dry_run:
            with ProgressSpinner(f"Copying {self.bundle_name}"):
                self.populator.populate(
                    self.bundle_dir, self.manifest, mount_point
                )
        else:
            self.populator.populate(self.bundle_dir, self.manifest, mount_point)

    def _discard_working(self, handle: MountHandle | None) -> None:
        if self.keep_working or self.dry_run:
            return
        if handle is not None and handle.attached:
            self.log.warning(
                "keeping %s: still mounted at %s",
                self.working_path,
                handle.mount_point,
            )
            return
        if self.working_path.exists():
            self.log.info("removing working image %s", self.working_path)
            try:
                self.working_path.unlink()
            except OSError as e:
                self.log.warning(
                    "could not remove %s: %s", self.working_path, e
                )

    def build(self) -> Path:
        """Run the whole pipeline.

        Returns:
            Path to the finished image

        Raises:
            StepError: The first step that failed; if the cleanup unmount
                also failed it is available as cleanup_error
            ConfigurationError: If a previous run left the image mounted
        """
        if self.state is not PipelineState.START:
            raise DmgError("DmgBuilder.build() can only be called once")

        if self.dry_run:
            self.log.info("[DRY RUN] Would build %s", self.output)
        else:
            self.log.info("Building %s from %s", self.output, self.bundle)

        handle: MountHandle | None = None
        try:
            self.prepare_workspace()
            image = self.plan()

            self.allocator.allocate(image.working_path, image.capacity_mb)
            self._advance(PipelineState.ALLOCATED)

            self.formatter.format(image.working_path, image.volume_name)
            self._advance(PipelineState.FORMATTED)

            with self.mounts.mounted(
                image.working_path,
                image.mount_point,
                on_error=self._on_mounted_error,
            ) as handle:
                self._advance(PipelineState.MOUNTED)

                self._advance(PipelineState.POPULATED)
                self._populate(handle.mount_point)

                self._advance(PipelineState.TAGGED)
                self.tagger.tag(handle.mount_point)
            self._advance(PipelineState.DETACHED)

            self.finalizer.finalize(image.working_path, image.output)
            self._advance(PipelineState.FINALIZED)
        except BaseException:
            self._advance(PipelineState.FAILED)
            # allocation may have left a partial file behind
            if PipelineState.SIZE_ESTIMATED in self.history:
                self._discard_working(handle)
            raise

        if self.dry_run:
            self.log.info("[DRY RUN] Image would be created at: %s", self.output)
        else:
            self.log.info("Image created successfully: %s", self.output)
        return self.output


# ----------------------------------------------------------------------------
# Functional API


def make_dmg(
    bundle_dir: Pathlike,
    bundle_name: str,
    output: Pathlike | None = None,
    volume_name: str | None = None,
    icon: Pathlike | None = None,
    dry_run: bool = False,
) -> Path:
    """Build a disk image from a bundle.

    Convenience wrapper creating a DmgBuilder and calling build() on it.

    Example:
        dmg_path = make_dmg("dist", "MyApp.app", volume_name="My App")
    """
    builder = DmgBuilder(
        bundle_dir,
        bundle_name,
        output=output,
        volume_name=volume_name,
        icon=icon,
        dry_run=dry_run,
    )
    return builder.build()


# ----------------------------------------------------------------------------
# Command-line interface


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "bundle_dir",
        help="directory containing the bundle",
    )
    parser.add_argument(
        "bundle",
        help="name of the bundle inside BUNDLE_DIR (e.g. MyApp.app)",
    )
    parser.add_argument(
        "--icon",
        metavar="FILE",
        help="volume icon (.icns), relative to BUNDLE_DIR or absolute",
    )
    parser.add_argument(
        "--margin",
        type=int,
        metavar="MB",
        help=f"safety margin in megabytes (default: {DEFAULT_MARGIN_MB})",
    )


def _add_common_options(parser: argparse.ArgumentParser) -> None:
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


def _resolve_margin(args: argparse.Namespace, config: dict[str, object]) -> int:
    if args.margin is not None:
        return args.margin
    margin = get_config_int(config, "build", "margin_mb", DEFAULT_MARGIN_MB)
    return DEFAULT_MARGIN_MB if margin is None else margin


def _cmd_build(args: argparse.Namespace) -> None:
    """Handle 'build' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("dmgbuilder")

    config = get_config()
    volume_name = args.name or get_config_value(config, "build", "volume_name")
    icon = args.icon or get_config_value(config, "build", "icon")
    work_dir = args.work_dir or get_config_value(config, "build", "work_dir")
    attribute = (
        get_config_value(config, "build", "attribute", FINDER_INFO_ATTR)
        or FINDER_INFO_ATTR
    )
    sudo = args.sudo
    if sudo is None:
        sudo = get_config_value(config, "build", "sudo")
    mkfs = args.mkfs or get_config_value(config, "build", "mkfs")

    toolchain = Toolchain(
        sudo=shlex.split(sudo) if sudo is not None else None,
        mkfs=mkfs,
        dry_run=args.dry_run,
    )
    builder = DmgBuilder(
        bundle_dir=args.bundle_dir,
        bundle_name=args.bundle,
        output=args.output,
        volume_name=volume_name,
        icon=icon,
        working_name=args.working_name,
        work_dir=work_dir,
        margin_mb=_resolve_margin(args, config),
        attribute=attribute,
        toolchain=toolchain,
        keep_working=args.keep_working,
        dry_run=args.dry_run,
        progress=not args.no_progress,
    )
    dmg_path = builder.build()
    log.info("Created: %s", dmg_path)


def _cmd_estimate(args: argparse.Namespace) -> None:
    """Handle 'estimate' subcommand."""
    setup_logging(args.verbose, not args.no_color)

    config = get_config()
    icon = args.icon or get_config_value(config, "build", "icon")
    builder = DmgBuilder(
        bundle_dir=args.bundle_dir,
        bundle_name=args.bundle,
        icon=icon,
        margin_mb=_resolve_margin(args, config),
    )
    print(builder.estimate())


def main() -> None:
    """Command line interface for dmgbuilder."""
    load_dotenv()
    try:
        parser = argparse.ArgumentParser(
            prog="dmgbuilder",
            description="Build macOS disk images (.dmg) on Linux.",
            epilog=(
                "Examples:\n"
                "  dmgbuilder build dist/ MyApp.app\n"
                "  dmgbuilder build dist/ MyApp.app -n 'My App' --icon MyApp.icns\n"
                "  dmgbuilder estimate dist/ MyApp.app\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {__version__}",
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- build subcommand ---
        build_parser = subparsers.add_parser(
            "build",
            help="build a disk image from a bundle",
            description=(
                "Build an HFS+ disk image containing the bundle at the "
                "volume root. Mounting needs root; sudo is used unless "
                "already root or --sudo says otherwise."
            ),
            epilog=(
                "Examples:\n"
                "  dmgbuilder build dist/ MyApp.app\n"
                "  dmgbuilder build dist/ MyApp.app -o releases/MyApp-1.0.dmg\n"
                "  dmgbuilder build dist/ MyApp.app --sudo '' --dry-run\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        _add_source_arguments(build_parser)
        build_parser.add_argument(
            "-o",
            "--output",
            metavar="FILE",
            help="output image path (default: <bundle>.dmg beside BUNDLE_DIR)",
        )
        build_parser.add_argument(
            "-n",
            "--name",
            metavar="NAME",
            help="volume name (default: bundle name without extension)",
        )
        build_parser.add_argument(
            "--working-name",
            metavar="NAME",
            help="file name of the working image (default: rw.<output name>)",
        )
        build_parser.add_argument(
            "--work-dir",
            metavar="DIR",
            help=f"directory for the working image and mount point "
            f"(or set {ENV_WORK_DIR}; default: output directory)",
        )
        build_parser.add_argument(
            "--sudo",
            metavar="CMD",
            help=f"privilege prefix, '' for none (or set {ENV_SUDO})",
        )
        build_parser.add_argument(
            "--mkfs",
            metavar="CMD",
            help=f"HFS+ formatter (or set {ENV_MKFS}; default: {DEFAULT_MKFS})",
        )
        build_parser.add_argument(
            "--keep-working",
            action="store_true",
            help="keep the working image if the build fails",
        )
        build_parser.add_argument(
            "--no-progress",
            action="store_true",
            help="do not show a spinner while copying",
        )
        build_parser.add_argument(
            "--dry-run",
            action="store_true",
            help="show commands without executing",
        )
        _add_common_options(build_parser)
        build_parser.set_defaults(func=_cmd_build)

        # --- estimate subcommand ---
        estimate_parser = subparsers.add_parser(
            "estimate",
            help="print the image capacity in megabytes",
            description="Print the capacity (MB) a build would allocate.",
        )
        _add_source_arguments(estimate_parser)
        _add_common_options(estimate_parser)
        estimate_parser.set_defaults(func=_cmd_estimate)

        args = parser.parse_args()
        args.func(args)

    except DmgError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
