"""Tests for the command-line interface."""

import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

import dmgbuilder


def run_cli(*args):
    return subprocess.run(
        [sys.executable, "-m", "dmgbuilder", *args],
        capture_output=True,
        text=True,
    )


class TestCLIParsing:
    """Tests for argument parsing via a subprocess."""

    def test_help(self):
        result = run_cli("--help")
        assert result.returncode == 0
        assert "build" in result.stdout
        assert "estimate" in result.stdout

    def test_version(self):
        result = run_cli("--version")
        assert result.returncode == 0
        assert dmgbuilder.__version__ in result.stdout

    def test_requires_command(self):
        result = run_cli()
        assert result.returncode != 0

    def test_build_help(self):
        result = run_cli("build", "--help")
        assert result.returncode == 0
        for option in ("--output", "--name", "--icon", "--margin", "--sudo"):
            assert option in result.stdout

    def test_build_requires_bundle(self, tmp_path):
        result = run_cli("build", str(tmp_path))
        assert result.returncode != 0
        assert "required" in result.stderr.lower()

    def test_build_nonexistent_bundle_dir(self, tmp_path):
        result = run_cli("build", str(tmp_path / "missing"), "MyApp.app")
        assert result.returncode == 1
        assert "does not exist" in result.stderr

    def test_estimate_prints_capacity(self, bundle_dir):
        """Test estimate runs du on a real directory and prints megabytes."""
        result = run_cli("estimate", str(bundle_dir), "MyApp.app", "--margin", "0")
        assert result.returncode == 0, result.stderr
        assert result.stdout.strip() == "1"


class TestCLIBuild:
    """Tests for how 'build' options reach DmgBuilder."""

    @pytest.fixture(autouse=True)
    def no_config(self):
        with patch("dmgbuilder.get_config", return_value={}):
            yield

    def test_options_passed(self, bundle_dir, monkeypatch):
        monkeypatch.setattr(
            sys,
            "argv",
            [
                "dmgbuilder",
                "build",
                str(bundle_dir),
                "MyApp.app",
                "-o",
                "out.dmg",
                "-n",
                "My App",
                "--icon",
                "MyApp.icns",
                "--margin",
                "3",
                "--sudo",
                "",
                "--keep-working",
                "--dry-run",
                "--no-progress",
            ],
        )
        with patch("dmgbuilder.DmgBuilder") as mock_builder:
            mock_builder.return_value.build.return_value = bundle_dir / "out.dmg"
            dmgbuilder.main()

        kwargs = mock_builder.call_args[1]
        assert kwargs["output"] == "out.dmg"
        assert kwargs["volume_name"] == "My App"
        assert kwargs["icon"] == "MyApp.icns"
        assert kwargs["margin_mb"] == 3
        assert kwargs["keep_working"] is True
        assert kwargs["dry_run"] is True
        assert kwargs["progress"] is False
        assert kwargs["toolchain"].sudo == []
        assert kwargs["toolchain"].dry_run is True
        mock_builder.return_value.build.assert_called_once()

    def test_config_defaults(self, bundle_dir, monkeypatch):
        """Test config values are used when options are not given."""
        config = {
            "build": {
                "volume_name": "Configured",
                "margin_mb": 7,
                "sudo": "doas",
                "mkfs": "/usr/sbin/mkfs.hfsplus",
            }
        }
        monkeypatch.setattr(
            sys, "argv", ["dmgbuilder", "build", str(bundle_dir), "MyApp.app"]
        )
        with (
            patch("dmgbuilder.get_config", return_value=config),
            patch("dmgbuilder.DmgBuilder") as mock_builder,
        ):
            dmgbuilder.main()

        kwargs = mock_builder.call_args[1]
        assert kwargs["volume_name"] == "Configured"
        assert kwargs["margin_mb"] == 7
        assert kwargs["toolchain"].sudo == ["doas"]
        assert kwargs["toolchain"].mkfs == "/usr/sbin/mkfs.hfsplus"

    def test_step_error_exits_1(self, bundle_dir, monkeypatch):
        monkeypatch.setattr(
            sys, "argv", ["dmgbuilder", "build", str(bundle_dir), "MyApp.app"]
        )
        builder = MagicMock()
        builder.build.side_effect = dmgbuilder.MountFailure(
            "could not attach", permission_denied=True
        )
        with patch("dmgbuilder.DmgBuilder", return_value=builder):
            with pytest.raises(SystemExit) as exc_info:
                dmgbuilder.main()
        assert exc_info.value.code == 1

    def test_interrupt_exits_130(self, bundle_dir, monkeypatch):
        monkeypatch.setattr(
            sys, "argv", ["dmgbuilder", "build", str(bundle_dir), "MyApp.app"]
        )
        builder = MagicMock()
        builder.build.side_effect = KeyboardInterrupt
        with patch("dmgbuilder.DmgBuilder", return_value=builder):
            with pytest.raises(SystemExit) as exc_info:
                dmgbuilder.main()
        assert exc_info.value.code == 130
