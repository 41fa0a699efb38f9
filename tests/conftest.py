"""Shared fixtures for dmgbuilder tests."""

from pathlib import Path

import pytest

from dmgbuilder import CommandError

# Minimal .icns header: magic followed by big-endian length
FAKE_ICNS = b"icns" + (64).to_bytes(4, "big") + b"\x00" * 56


class FakeToolchain:
    """Drop-in for Toolchain that records calls instead of running tools.

    Args:
        sizes: du byte count per entry source (default 1024)
        raw: raw du output per entry source, overriding sizes
        fail: method name -> 1-based call numbers that raise CommandError
        errors: method name -> diagnostic text of the raised CommandError
    """

    def __init__(self, sizes=None, raw=None, fail=None, errors=None):
        self.sizes = sizes or {}
        self.raw = raw or {}
        self.fail = fail or {}
        self.errors = errors or {}
        self.calls: list[tuple] = []
        self.mounted: set[Path] = set()
        self.dry_run = False

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        count = sum(1 for call in self.calls if call[0] == name)
        if count in self.fail.get(name, ()):
            raise CommandError(
                name, 1, self.errors.get(name, f"{name}: simulated failure")
            )

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def disk_usage(self, path, cwd) -> str:
        self._record("disk_usage", str(path), Path(cwd))
        if str(path) in self.raw:
            return self.raw[str(path)]
        return f"{self.sizes.get(str(path), 1024)}\t{path}\n"

    def allocate(self, path, capacity_mb) -> None:
        self._record("allocate", Path(path), capacity_mb)
        Path(path).write_bytes(b"\x00" * 64)

    def format(self, path, volume_name) -> None:
        self._record("format", Path(path), volume_name)

    def mount(self, image, mount_point) -> None:
        self._record("mount", Path(image), Path(mount_point))
        self.mounted.add(Path(mount_point))

    def unmount(self, mount_point) -> None:
        self._record("unmount", Path(mount_point))
        self.mounted.discard(Path(mount_point))

    def copy(self, source, destination) -> None:
        self._record("copy", Path(source), Path(destination))

    def set_xattr(self, path, name, value) -> None:
        self._record("set_xattr", Path(path), name, value)


@pytest.fixture
def toolchain():
    """A fake toolchain where every command succeeds."""
    return FakeToolchain()


@pytest.fixture
def bundle_dir(tmp_path):
    """A dist/ directory holding MyApp.app and MyApp.icns."""
    dist = tmp_path / "dist"
    macos = dist / "MyApp.app" / "Contents" / "MacOS"
    macos.mkdir(parents=True)
    exe = macos / "MyApp"
    exe.write_bytes(b"fake exe")
    exe.chmod(0o755)
    (dist / "MyApp.app" / "Contents" / "Info.plist").write_text("<plist/>")
    (dist / "MyApp.icns").write_bytes(FAKE_ICNS)
    return dist


@pytest.fixture
def make_toolchain():
    """Factory for fake toolchains with sizes or injected failures."""
    return FakeToolchain
