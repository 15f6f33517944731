"""Shared fixtures for coreos_customizer tests.

The SquashFS tools are replaced by a stand-in that stores the image as a
gzip newc archive, so the rebuild path can be exercised without
squashfs-tools installed.
"""

import subprocess
from pathlib import Path

import pytest

from coreos_customizer.initram import extract_initram, pack_initram


def write_tree(root: Path, files: dict[str, bytes]) -> Path:
    """Create files (and parent directories) under root."""
    root.mkdir(parents=True, exist_ok=True)
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


def fake_squashfs_tools(cmd, cwd=None, timeout=None):
    """Emulate unsquashfs/mksquashfs on archive-backed images."""
    tool = Path(cmd[0]).name
    if tool == "unsquashfs" and cmd[1] == "-s":
        return subprocess.CompletedProcess(cmd, 0, stdout="Compression gzip\n", stderr="")
    if tool == "unsquashfs":
        dest, image = Path(cmd[cmd.index("-d") + 1]), Path(cmd[-1])
        extract_initram(image, dest)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
    if tool == "mksquashfs":
        pack_initram(Path(cmd[1]), Path(cmd[2]))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
    raise AssertionError(f"unexpected command: {cmd}")


@pytest.fixture
def fake_squashfs(monkeypatch):
    """Patch the rebuilder to use archive-backed images."""
    monkeypatch.setattr("coreos_customizer.squashfs.run_command", fake_squashfs_tools)
    return fake_squashfs_tools


@pytest.fixture
def stock_initram(tmp_path) -> Path:
    """A stock initram holding usr.squashfs and a small init tree."""
    usr_root = write_tree(
        tmp_path / "fixture-usr",
        {
            "bin/true": b"#!/bin/sh\n",
            "share/oem/grub.cfg": b"set linux_append=\"\"\n",
            "share/oem/motd": b"stock motd\n",
        },
    )
    (usr_root / "bin" / "true").chmod(0o755)
    (usr_root / "lib").symlink_to("lib64")

    initram_root = write_tree(tmp_path / "fixture-initram", {"init": b"#!/bin/sh\n"})
    (initram_root / "init").chmod(0o755)
    pack_initram(usr_root, initram_root / "usr.squashfs")

    initram = tmp_path / "fixtures" / "coreos_production_pxe_image.cpio.gz"
    pack_initram(initram_root, initram)
    return initram
