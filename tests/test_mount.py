"""Tests for MountManager and MountHandle."""

import pytest

from dmgbuilder import (
    CopyFailure,
    DmgError,
    ManifestEntry,
    MountFailure,
    MountHandle,
    MountManager,
    UnmountFailure,
)


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "rw.MyApp.dmg"
    path.write_bytes(b"\x00" * 64)
    return path


class TestAttach:
    """Tests for MountManager.attach()."""

    def test_creates_mount_point(self, toolchain, image, tmp_path):
        mount_point = tmp_path / ".mount-MyApp"
        handle = MountManager(toolchain).attach(image, mount_point)
        assert isinstance(handle, MountHandle)
        assert handle.attached
        assert handle.created_mount_point
        assert mount_point.is_dir()
        assert toolchain.calls == [("mount", image, mount_point)]

    def test_existing_mount_point(self, toolchain, image, tmp_path):
        mount_point = tmp_path / "mnt"
        mount_point.mkdir()
        handle = MountManager(toolchain).attach(image, mount_point)
        assert not handle.created_mount_point

    def test_failure_produces_no_handle(self, make_toolchain, image, tmp_path):
        """Test a generic mount failure cleans up the created mount point."""
        toolchain = make_toolchain(
            fail={"mount": {1}},
            errors={"mount": "mount: wrong fs type, bad option, bad superblock"},
        )
        mount_point = tmp_path / "mnt"
        with pytest.raises(MountFailure) as exc_info:
            MountManager(toolchain).attach(image, mount_point)
        assert not exc_info.value.permission_denied
        assert "mount failed" in str(exc_info.value)
        assert "bad superblock" in str(exc_info.value)
        assert not mount_point.exists()

    def test_permission_denied(self, make_toolchain, image, tmp_path):
        toolchain = make_toolchain(
            fail={"mount": {1}},
            errors={"mount": "sudo: a password is required"},
        )
        with pytest.raises(MountFailure, match="permission denied") as exc_info:
            MountManager(toolchain).attach(image, tmp_path / "mnt")
        assert exc_info.value.permission_denied

    def test_dry_run_creates_nothing(self, toolchain, image, tmp_path):
        mount_point = tmp_path / "mnt"
        handle = MountManager(toolchain, dry_run=True).attach(image, mount_point)
        assert handle.attached
        assert not mount_point.exists()


class TestDetach:
    """Tests for MountManager.detach()."""

    def test_detach_removes_created_mount_point(self, toolchain, image, tmp_path):
        manager = MountManager(toolchain)
        mount_point = tmp_path / "mnt"
        handle = manager.attach(image, mount_point)
        manager.detach(handle)
        assert not handle.attached
        assert not mount_point.exists()
        assert toolchain.names() == ["mount", "unmount"]

    def test_detach_twice_is_an_error(self, toolchain, image, tmp_path):
        """Test a second detach raises without unmounting again."""
        manager = MountManager(toolchain)
        handle = manager.attach(image, tmp_path / "mnt")
        manager.detach(handle)
        with pytest.raises(DmgError, match="already been detached"):
            manager.detach(handle)
        assert toolchain.count("unmount") == 1

    def test_failure_keeps_handle_attached(self, make_toolchain, image, tmp_path):
        toolchain = make_toolchain(
            fail={"unmount": {1}}, errors={"unmount": "umount: target is busy."}
        )
        manager = MountManager(toolchain)
        mount_point = tmp_path / "mnt"
        handle = manager.attach(image, mount_point)
        with pytest.raises(UnmountFailure, match="target is busy"):
            manager.detach(handle)
        assert handle.attached
        assert mount_point.exists()

    def test_repr(self, toolchain, image, tmp_path):
        handle = MountManager(toolchain).attach(image, tmp_path / "mnt")
        assert "attached" in repr(handle)


class TestMounted:
    """Tests for the MountManager.mounted() context manager."""

    def test_detaches_after_block(self, toolchain, image, tmp_path):
        manager = MountManager(toolchain)
        with manager.mounted(image, tmp_path / "mnt") as handle:
            assert toolchain.mounted == {tmp_path / "mnt"}
        assert not handle.attached
        assert toolchain.mounted == set()
        assert toolchain.count("unmount") == 1

    def test_detaches_when_block_raises(self, toolchain, image, tmp_path):
        """Test the error callback runs before the single unmount."""
        seen = []
        manager = MountManager(toolchain)

        def on_error(exc):
            seen.append((exc, toolchain.count("unmount")))

        with pytest.raises(ValueError, match="boom"):
            with manager.mounted(image, tmp_path / "mnt", on_error=on_error):
                raise ValueError("boom")

        assert len(seen) == 1
        assert isinstance(seen[0][0], ValueError)
        assert seen[0][1] == 0
        assert toolchain.count("unmount") == 1

    def test_cleanup_failure_attached_to_step_error(
        self, make_toolchain, image, tmp_path
    ):
        """Test the original error survives a failing cleanup unmount."""
        toolchain = make_toolchain(fail={"unmount": {1}})
        manager = MountManager(toolchain)
        entry = ManifestEntry("MyApp.app", "/")

        with pytest.raises(CopyFailure) as exc_info:
            with manager.mounted(image, tmp_path / "mnt"):
                raise CopyFailure("could not copy MyApp.app to /", entry)

        assert isinstance(exc_info.value.cleanup_error, UnmountFailure)
        assert toolchain.count("unmount") == 1

    def test_cleanup_failure_with_other_error(
        self, make_toolchain, image, tmp_path
    ):
        """Test non-step errors still propagate unchanged."""
        toolchain = make_toolchain(fail={"unmount": {1}})
        manager = MountManager(toolchain)
        with pytest.raises(RuntimeError, match="unexpected"):
            with manager.mounted(image, tmp_path / "mnt"):
                raise RuntimeError("unexpected")

    def test_attach_failure_skips_block(self, make_toolchain, image, tmp_path):
        toolchain = make_toolchain(fail={"mount": {1}})
        ran = []
        with pytest.raises(MountFailure):
            with MountManager(toolchain).mounted(image, tmp_path / "mnt"):
                ran.append(True)
        assert ran == []
        assert "unmount" not in toolchain.names()
