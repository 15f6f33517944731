"""Tests for runner.py module.

Uses mocked subprocess for execution tests.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from coreos_customizer.errors import CommandError
from coreos_customizer.runner import run_command


class TestRunCommand:
    """Tests for run_command function."""

    def test_success(self):
        """Should return the completed process."""
        completed = MagicMock(returncode=0, stdout="Compression xz\n", stderr="")
        with patch("subprocess.run", return_value=completed) as mock_run:
            result = run_command(["unsquashfs", "-s", "usr.squashfs"], timeout=30)

        assert result is completed
        args, kwargs = mock_run.call_args
        assert args[0] == ["unsquashfs", "-s", "usr.squashfs"]
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True

    def test_non_zero_exit(self):
        """Should raise CommandError carrying exit code and stderr."""
        completed = MagicMock(returncode=1, stdout="", stderr="FATAL ERROR: no space\n")
        with patch("subprocess.run", return_value=completed):
            with pytest.raises(CommandError) as exc_info:
                run_command(["mksquashfs", "root", "usr.squashfs"])

        assert exc_info.value.exit_code == 1
        assert exc_info.value.stderr == "FATAL ERROR: no space"
        assert exc_info.value.code == "command_error"
        assert "mksquashfs failed" in str(exc_info.value)

    def test_timeout(self):
        """Should raise CommandError on timeout."""
        with patch(
            "subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="mksquashfs", timeout=5),
        ):
            with pytest.raises(CommandError) as exc_info:
                run_command(["mksquashfs"], timeout=5)

        assert exc_info.value.code == "timeout"
        assert exc_info.value.exit_code == -1

    def test_missing_executable(self):
        """Should raise CommandError when the tool is not installed."""
        with pytest.raises(CommandError) as exc_info:
            run_command(["definitely-not-a-squashfs-tool-xyz"])

        assert exc_info.value.code == "execution_error"
