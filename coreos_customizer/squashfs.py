"""SquashFS image rebuilding.

This module handles:
- Validating the resource directory and the mount subpath
- Unpacking the embedded image with unsquashfs into a scratch directory
- Merging resource files under the mount subpath (resources win)
- Regenerating the image with mksquashfs and swapping it into place

Scratch state never lives inside the extracted initram tree, so nothing
from the rebuild leaks into the repacked container.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import stat
import tempfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from coreos_customizer.errors import CommandError, RebuildError
from coreos_customizer.runner import run_command

if TYPE_CHECKING:
    from coreos_customizer.config import Settings

logger = logging.getLogger(__name__)

# "Compression xz" line printed by `unsquashfs -s`
COMPRESSION_RE = re.compile(r"^Compression\s+(\S+)", re.MULTILINE)

UNPACK_DIR_NAME = "squashfs-root"


def validate_mount_subpath(mount_subpath: str) -> PurePosixPath:
    """Validate the image-relative directory receiving resources.

    Args:
        mount_subpath: Relative POSIX path such as 'share/oem'.

    Returns:
        The parsed path.

    Raises:
        RebuildError: If the path is empty, absolute, or escapes the root.
    """
    subpath = PurePosixPath(mount_subpath)
    if not mount_subpath or subpath.is_absolute() or ".." in subpath.parts:
        raise RebuildError(
            f"Mount subpath must be relative and inside the image: {mount_subpath!r}",
            code="invalid_mount_subpath",
        )
    return subpath


def _validate_path_within_base(path: Path, base: Path) -> Path:
    resolved_path = path.resolve()
    try:
        resolved_path.relative_to(base.resolve())
    except ValueError:
        raise RebuildError(
            f"Mount path {path} resolves outside the image root: {resolved_path}",
            code="path_traversal",
        ) from None
    return resolved_path


def _raise(error: OSError) -> None:
    raise error


def check_resources(resources_dir: Path) -> None:
    """Check that a resource directory can be merged into an image.

    Raises:
        RebuildError: If the directory is missing or unreadable, or holds
            a symlink pointing outside of it.
    """
    if not resources_dir.is_dir():
        raise RebuildError(
            f"Resources directory not found: {resources_dir}",
            code="resources_not_found",
        )
    if not os.access(resources_dir, os.R_OK | os.X_OK):
        raise RebuildError(
            f"Resources directory is not readable: {resources_dir}",
            code="resources_unreadable",
        )

    resources_resolved = resources_dir.resolve()
    try:
        for root, dirs, files in os.walk(resources_dir, onerror=_raise):
            for name in dirs + files:
                item = Path(root) / name
                if not item.is_symlink():
                    continue
                target = item.resolve()
                try:
                    target.relative_to(resources_resolved)
                except ValueError:
                    raise RebuildError(
                        f"Symlink {item} points outside resources: {target}",
                        code="symlink_escape",
                    ) from None
    except OSError as e:
        raise RebuildError(
            f"Resources directory is not readable: {e}",
            code="resources_unreadable",
        ) from e


def _remove_existing(path: Path, keep_dir: bool = False) -> None:
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        path.unlink()
    elif path.is_dir() and not keep_dir:
        shutil.rmtree(path)


def _dir_times(dest: Path, source: Path) -> tuple[Path, tuple[int, int]]:
    ref = dest if dest.is_dir() and not dest.is_symlink() else source
    st = ref.stat()
    return dest, (st.st_atime_ns, st.st_mtime_ns)


def merge_tree(source_dir: Path, dest_dir: Path) -> int:
    """Copy a directory tree over another, source entries winning.

    Symlinks are copied as symlinks. An existing symlink at a destination
    is replaced, never followed. A type conflict (file vs. directory)
    is resolved in favour of the source. Directories that already existed
    keep their timestamps; new ones take the source directory's.

    Args:
        source_dir: Tree to copy from; never modified.
        dest_dir: Tree to copy into; created if absent.

    Returns:
        Number of entries copied.

    Raises:
        OSError: If any entry cannot be read or written.
    """
    dir_times = [_dir_times(dest_dir, source_dir)]
    dest_dir.mkdir(parents=True, exist_ok=True)
    count = 0

    for root, dirs, files in os.walk(source_dir, onerror=_raise):
        dirs.sort()
        files.sort()
        rel_root = Path(root).relative_to(source_dir)
        target_root = dest_dir / rel_root

        for name in list(dirs):
            src = Path(root) / name
            dst = target_root / name
            if src.is_symlink():
                _remove_existing(dst)
                shutil.copy2(src, dst, follow_symlinks=False)
            else:
                _remove_existing(dst, keep_dir=True)
                dir_times.append(_dir_times(dst, src))
                dst.mkdir(exist_ok=True)
                shutil.copymode(src, dst)
            count += 1

        for name in files:
            src = Path(root) / name
            dst = target_root / name
            _remove_existing(dst)
            shutil.copy2(src, dst, follow_symlinks=False)
            count += 1

    for path, times in reversed(dir_times):
        os.utime(path, ns=times)

    return count


def detect_compressor(
    image_path: Path,
    unsquashfs_bin: str = "unsquashfs",
    timeout: float | None = None,
) -> str | None:
    """Return the compressor recorded in a SquashFS superblock, if reported."""
    result = run_command([unsquashfs_bin, "-s", str(image_path)], timeout=timeout)
    match = COMPRESSION_RE.search(result.stdout)
    return match.group(1) if match else None


def compose_mksquashfs_command(
    source_dir: Path,
    image_path: Path,
    mksquashfs_bin: str = "mksquashfs",
    compressor: str | None = None,
    mkfs_time: int | None = None,
    all_root: bool = False,
) -> list[str]:
    """Compose the mksquashfs command line.

    Args:
        source_dir: Directory to pack.
        image_path: Image to write.
        mksquashfs_bin: mksquashfs executable.
        compressor: Compressor name, or None for the mksquashfs default.
        mkfs_time: Fixed filesystem creation time, or None for now.
        all_root: Record every file as owned by root.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [mksquashfs_bin, str(source_dir), str(image_path), "-noappend", "-no-progress"]
    if compressor:
        cmd.extend(["-comp", compressor])
    if mkfs_time is not None:
        cmd.extend(["-mkfs-time", str(mkfs_time)])
    if all_root:
        cmd.append("-all-root")
    return cmd


def rebuild_squashfs(
    image_path: Path,
    resources_dir: Path,
    mount_subpath: str,
    unsquashfs_bin: str = "unsquashfs",
    mksquashfs_bin: str = "mksquashfs",
    compressor: str | None = None,
    mkfs_time: int | None = None,
    tmp_dir: Path | None = None,
    timeout: float | None = None,
    all_root: bool | None = None,
) -> None:
    """Rebuild a SquashFS image with resources merged under mount_subpath.

    The new image replaces image_path atomically and keeps its file mode
    and mtime. The containing directory's timestamps are left as found,
    so an unchanged tree repacks to identical bytes.

    Args:
        image_path: SquashFS image to rebuild in place.
        resources_dir: Directory whose contents are merged in.
        mount_subpath: Image-relative directory receiving the resources.
        unsquashfs_bin: unsquashfs executable.
        mksquashfs_bin: mksquashfs executable.
        compressor: Compressor override; detected from the image if None.
        mkfs_time: Fixed filesystem creation time, or None for now.
        tmp_dir: Parent directory for scratch state.
        timeout: Timeout for each tool invocation in seconds.
        all_root: Record every file as owned by root. None means only
            when not running as root, since unsquashfs cannot restore
            ownership without privileges.

    Raises:
        RebuildError: If the image or resources are missing or unreadable,
            or a squashfs tool fails.
    """
    if not image_path.is_file():
        raise RebuildError(
            f"Filesystem image not found: {image_path}",
            code="image_not_found",
        )
    subpath = validate_mount_subpath(mount_subpath)
    check_resources(resources_dir)

    logger.info("Rebuilding %s with %s at /%s", image_path.name, resources_dir, subpath)

    if all_root is None:
        all_root = os.geteuid() != 0
        if all_root:
            logger.warning(
                "Not running as root: recording every file in %s as owned by root",
                image_path.name,
            )

    new_image = image_path.with_name(f".{image_path.name}.new")
    try:
        original = image_path.stat()
        parent = image_path.parent.stat()

        if compressor is None:
            compressor = detect_compressor(image_path, unsquashfs_bin, timeout)
            logger.debug("Detected %s compression for %s", compressor, image_path.name)

        with tempfile.TemporaryDirectory(prefix="squashfs-", dir=tmp_dir) as scratch:
            root = Path(scratch) / UNPACK_DIR_NAME
            run_command(
                [unsquashfs_bin, "-no-progress", "-d", str(root), str(image_path)],
                timeout=timeout,
            )

            mount_dir = root.joinpath(*subpath.parts)
            _validate_path_within_base(mount_dir, root)
            merged = merge_tree(resources_dir, mount_dir)
            logger.info("Merged %d entries into /%s", merged, subpath)

            new_image.unlink(missing_ok=True)
            run_command(
                compose_mksquashfs_command(
                    root, new_image, mksquashfs_bin, compressor, mkfs_time, all_root
                ),
                timeout=timeout,
            )

        os.replace(new_image, image_path)
        os.chmod(image_path, stat.S_IMODE(original.st_mode))
        os.utime(image_path, ns=(original.st_atime_ns, original.st_mtime_ns))
        os.utime(image_path.parent, ns=(parent.st_atime_ns, parent.st_mtime_ns))

    except CommandError as e:
        new_image.unlink(missing_ok=True)
        raise RebuildError(str(e), code=e.code, exit_code=e.exit_code) from e
    except OSError as e:
        new_image.unlink(missing_ok=True)
        raise RebuildError(
            f"OS error rebuilding {image_path}: {e}",
            code="os_error",
        ) from e

    logger.info("Rebuilt %s", image_path)


class SquashfsRebuilder:
    """FilesystemImageRebuilder backed by squashfs-tools."""

    def __init__(
        self,
        unsquashfs_bin: str = "unsquashfs",
        mksquashfs_bin: str = "mksquashfs",
        compressor: str | None = None,
        mkfs_time: int | None = None,
        tmp_dir: Path | None = None,
        timeout: float | None = None,
        all_root: bool | None = None,
    ) -> None:
        self.unsquashfs_bin = unsquashfs_bin
        self.mksquashfs_bin = mksquashfs_bin
        self.compressor = compressor
        self.mkfs_time = mkfs_time
        self.tmp_dir = tmp_dir
        self.timeout = timeout
        self.all_root = all_root

    @classmethod
    def from_settings(cls, settings: Settings) -> SquashfsRebuilder:
        return cls(
            unsquashfs_bin=settings.unsquashfs_bin,
            mksquashfs_bin=settings.mksquashfs_bin,
            compressor=settings.squashfs_compressor,
            mkfs_time=settings.squashfs_mkfs_time,
            tmp_dir=settings.tmp_dir,
            timeout=settings.tool_timeout,
            all_root=settings.squashfs_all_root,
        )

    def rebuild(self, image_path: Path, resources_dir: Path, mount_subpath: str) -> None:
        rebuild_squashfs(
            image_path,
            resources_dir,
            mount_subpath,
            unsquashfs_bin=self.unsquashfs_bin,
            mksquashfs_bin=self.mksquashfs_bin,
            compressor=self.compressor,
            mkfs_time=self.mkfs_time,
            tmp_dir=self.tmp_dir,
            timeout=self.timeout,
            all_root=self.all_root,
        )


__all__ = [
    "SquashfsRebuilder",
    "check_resources",
    "compose_mksquashfs_command",
    "detect_compressor",
    "merge_tree",
    "rebuild_squashfs",
    "validate_mount_subpath",
]
