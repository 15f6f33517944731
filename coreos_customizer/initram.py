"""Initram container handling.

This module handles:
- Reading gzip-compressed (or raw) newc cpio archives, including
  several archives concatenated into one initram
- Materializing the archive tree with modes, mtimes and ownership
- Writing a directory tree back out as a deterministic gzip newc archive

The format is the one the kernel unpacks at boot: a stream of 110-byte
ASCII headers, each followed by a NUL-terminated name and the entry data,
both padded to 4 bytes, terminated by a TRAILER!!! entry.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import stat
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from coreos_customizer.errors import ExtractError, PackError

logger = logging.getLogger(__name__)

NEWC_MAGIC = b"070701"
CRC_MAGIC = b"070702"
GZIP_MAGIC = b"\x1f\x8b"
TRAILER_NAME = "TRAILER!!!"

HEADER_SIZE = 110
HEADER_FIELDS = 13

# GNU cpio pads the archive to its 512-byte I/O block
BLOCK_SIZE = 512

COPY_CHUNK_SIZE = 64 * 1024

DEFAULT_COMPRESSLEVEL = 9


@dataclass
class CpioEntry:
    """Header of a single newc archive member."""

    name: str
    mode: int
    uid: int = 0
    gid: int = 0
    nlink: int = 1
    mtime: int = 0
    size: int = 0
    ino: int = 0
    dev_major: int = 0
    dev_minor: int = 0
    rdev_major: int = 0
    rdev_minor: int = 0
    check: int = 0

    def encode(self) -> bytes:
        """Encode the header, name and name padding."""
        name = os.fsencode(self.name) + b"\0"
        fields = (
            self.ino,
            self.mode,
            self.uid,
            self.gid,
            self.nlink,
            self.mtime,
            self.size,
            self.dev_major,
            self.dev_minor,
            self.rdev_major,
            self.rdev_minor,
            len(name),
            self.check,
        )
        header = NEWC_MAGIC + b"".join(b"%08x" % value for value in fields)
        return header + name + _padding(HEADER_SIZE + len(name))


def _padding(length: int) -> bytes:
    return b"\0" * (-length % 4)


def _parse_header(raw: bytes) -> list[int]:
    magic = raw[:6]
    if magic not in (NEWC_MAGIC, CRC_MAGIC):
        raise ExtractError(
            f"Bad cpio magic {magic!r}: only newc archives are supported",
            code="bad_magic",
        )
    try:
        return [int(raw[6 + 8 * i : 14 + 8 * i], 16) for i in range(HEADER_FIELDS)]
    except ValueError as e:
        raise ExtractError(f"Malformed cpio header: {e}", code="bad_header") from e


class _ArchiveReader:
    """Sequential reader over a decompressed archive stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.offset = 0

    def read_exact(self, size: int) -> bytes:
        data = self.stream.read(size)
        if len(data) != size:
            raise ExtractError(
                f"Truncated archive at offset {self.offset}",
                code="truncated",
            )
        self.offset += size
        return data

    def skip_padding(self) -> None:
        pad = -self.offset % 4
        if pad:
            self.read_exact(pad)

    def next_header(self, first_archive: bool) -> bytes | None:
        """Return the next raw header, skipping zero padding between archives."""
        while True:
            chunk = self.stream.read(4)
            if not chunk:
                if first_archive:
                    raise ExtractError("Archive is empty", code="empty_archive")
                return None
            if len(chunk) != 4:
                raise ExtractError(
                    f"Truncated archive at offset {self.offset}",
                    code="truncated",
                )
            self.offset += 4
            if chunk != b"\0\0\0\0":
                return chunk + self.read_exact(HEADER_SIZE - 4)

    def copy_to(self, size: int, dest: BinaryIO) -> None:
        remaining = size
        while remaining:
            chunk = self.read_exact(min(remaining, COPY_CHUNK_SIZE))
            dest.write(chunk)
            remaining -= len(chunk)


def iter_entries(reader: _ArchiveReader) -> Iterator[CpioEntry]:
    """Yield entries of every concatenated archive in the stream.

    Each archive ends with a TRAILER!!! entry, which is yielded too so the
    caller can reset per-archive state such as the hard-link table.
    The caller must consume ``entry.size`` bytes of data from the reader
    before advancing the iterator.
    """
    in_archive = False
    seen_any = False
    while True:
        if in_archive:
            raw = reader.read_exact(HEADER_SIZE)
        else:
            raw = reader.next_header(first_archive=not seen_any)
            if raw is None:
                return
            in_archive = True
            seen_any = True

        (ino, mode, uid, gid, nlink, mtime, size, dmaj, dmin, rmaj, rmin, namesize, check) = (
            _parse_header(raw)
        )
        if namesize == 0:
            raise ExtractError("Malformed cpio header: empty name", code="bad_header")
        name = os.fsdecode(reader.read_exact(namesize).rstrip(b"\0"))
        reader.skip_padding()

        if name == TRAILER_NAME:
            in_archive = False

        yield CpioEntry(
            name=name,
            mode=mode,
            uid=uid,
            gid=gid,
            nlink=nlink,
            mtime=mtime,
            size=size,
            ino=ino,
            dev_major=dmaj,
            dev_minor=dmin,
            rdev_major=rmaj,
            rdev_minor=rmin,
            check=check,
        )


def _member_path(dest_dir: Path, name: str) -> Path:
    rel = PurePosixPath(name.lstrip("/"))
    if ".." in rel.parts:
        raise ExtractError(
            f"Refusing to extract {name}: path traversal detected",
            code="path_traversal",
        )
    if rel.parts in ((), (".",)):
        return dest_dir
    return dest_dir.joinpath(*rel.parts)


def _validate_parent_within_base(path: Path, base: Path) -> None:
    """Refuse paths whose parent resolves outside base through a symlink."""
    resolved_parent = path.parent.resolve()
    try:
        resolved_parent.relative_to(base)
    except ValueError:
        raise ExtractError(
            f"Refusing to extract {path}: parent resolves outside {base}",
            code="path_traversal",
        ) from None


def _clear_path(path: Path, keep_dir: bool) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir() and not keep_dir:
        shutil.rmtree(path)
    elif path.exists() and not path.is_dir():
        path.unlink()


def _open_container(container_path: Path) -> BinaryIO:
    with container_path.open("rb") as f:
        magic = f.read(len(GZIP_MAGIC))
    if magic == GZIP_MAGIC:
        return gzip.open(container_path, "rb")  # type: ignore[return-value]
    if magic == NEWC_MAGIC[:2]:
        return container_path.open("rb")
    raise ExtractError(
        f"{container_path} is neither a gzip stream nor a cpio archive",
        code="unsupported_format",
    )


def extract_initram(container_path: Path, dest_dir: Path) -> int:
    """Extract an initram container into dest_dir.

    Args:
        container_path: Path to the gzip or raw newc cpio container.
        dest_dir: Destination directory; created if absent, must be empty.

    Returns:
        Number of entries extracted.

    Raises:
        ExtractError: If the container is unreadable or malformed, or the
            tree cannot be written.
    """
    logger.info("Extracting %s to %s", container_path, dest_dir)

    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        if any(dest_dir.iterdir()):
            raise ExtractError(
                f"Destination {dest_dir} is not empty",
                code="dest_not_empty",
            )

        dest_root = dest_dir.resolve()
        is_root = os.geteuid() == 0
        links: dict[tuple[int, int, int], Path] = {}
        linked_files: dict[Path, CpioEntry] = {}
        directories: list[tuple[Path, CpioEntry]] = []
        count = 0

        with _open_container(container_path) as stream:
            reader = _ArchiveReader(stream)
            for entry in iter_entries(reader):
                if entry.name == TRAILER_NAME:
                    # Inode numbers restart in every concatenated archive
                    reader.read_exact(entry.size)
                    reader.skip_padding()
                    links.clear()
                    continue

                path = _member_path(dest_dir, entry.name)
                if path != dest_dir:
                    _validate_parent_within_base(path, dest_root)
                    path.parent.mkdir(parents=True, exist_ok=True)
                linked_files.pop(path, None)
                file_type = stat.S_IFMT(entry.mode)

                if file_type == stat.S_IFDIR:
                    _clear_path(path, keep_dir=True)
                    path.mkdir(exist_ok=True)
                    directories.append((path, entry))
                elif file_type == stat.S_IFREG:
                    _extract_regular(reader, entry, path, links)
                elif file_type == stat.S_IFLNK:
                    _clear_path(path, keep_dir=False)
                    target = reader.read_exact(entry.size)
                    os.symlink(os.fsdecode(target), path)
                elif file_type in (
                    stat.S_IFCHR,
                    stat.S_IFBLK,
                    stat.S_IFIFO,
                    stat.S_IFSOCK,
                ):
                    reader.read_exact(entry.size)
                    _clear_path(path, keep_dir=False)
                    device = os.makedev(entry.rdev_major, entry.rdev_minor)
                    try:
                        os.mknod(path, entry.mode, device)
                    except PermissionError:
                        logger.warning(
                            "Skipping special file %s: insufficient privileges",
                            entry.name,
                        )
                        reader.skip_padding()
                        continue
                else:
                    raise ExtractError(
                        f"Unknown file type {entry.mode:o} for {entry.name}",
                        code="bad_header",
                    )
                reader.skip_padding()
                count += 1

                if is_root:
                    os.lchown(path, entry.uid, entry.gid)
                if file_type == stat.S_IFDIR:
                    continue
                if file_type == stat.S_IFREG and entry.nlink > 1:
                    # Data arrives with the last link; keep earlier links writable
                    linked_files[path] = entry
                    continue
                if file_type != stat.S_IFLNK:
                    os.chmod(path, stat.S_IMODE(entry.mode))
                os.utime(path, (entry.mtime, entry.mtime), follow_symlinks=False)

        for path, entry in linked_files.items():
            os.chmod(path, stat.S_IMODE(entry.mode))
            os.utime(path, (entry.mtime, entry.mtime))

        # Directory modes last so read-only directories stay writable above
        for path, entry in reversed(directories):
            os.chmod(path, stat.S_IMODE(entry.mode))
            os.utime(path, (entry.mtime, entry.mtime))

    except ExtractError:
        raise
    except (EOFError, zlib.error, gzip.BadGzipFile) as e:
        raise ExtractError(
            f"Corrupt compressed stream in {container_path}: {e}",
            code="bad_compression",
        ) from e
    except OSError as e:
        raise ExtractError(
            f"OS error extracting {container_path}: {e}",
            code="os_error",
        ) from e

    logger.info("Extracted %d entries from %s", count, container_path.name)
    return count


def _extract_regular(
    reader: _ArchiveReader,
    entry: CpioEntry,
    path: Path,
    links: dict[tuple[int, int, int], Path],
) -> None:
    _clear_path(path, keep_dir=False)
    key = (entry.dev_major, entry.dev_minor, entry.ino)

    if entry.nlink > 1 and key in links:
        os.link(links[key], path)
        if entry.size:
            with path.open("r+b") as f:
                f.truncate()
                reader.copy_to(entry.size, f)
        return

    with path.open("wb") as f:
        reader.copy_to(entry.size, f)
    if entry.nlink > 1:
        links[key] = path


def _iter_tree(root: Path, prefix: str = "") -> Iterator[tuple[str, Path]]:
    with os.scandir(root) as it:
        children = sorted(it, key=lambda e: e.name)
    for child in children:
        name = prefix + child.name
        yield name, Path(child.path)
        if child.is_dir(follow_symlinks=False):
            yield from _iter_tree(Path(child.path), name + "/")


class _ArchiveWriter:
    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.offset = 0

    def write(self, data: bytes) -> None:
        self.stream.write(data)
        self.offset += len(data)

    def pad(self, align: int = 4) -> None:
        self.write(b"\0" * (-self.offset % align))


def _write_member(
    writer: _ArchiveWriter,
    name: str,
    path: Path,
    ino: int,
    root_owned: bool,
) -> None:
    st = path.lstat()
    file_type = stat.S_IFMT(st.st_mode)
    entry = CpioEntry(
        name=name,
        mode=st.st_mode,
        uid=0 if root_owned else st.st_uid,
        gid=0 if root_owned else st.st_gid,
        nlink=2 if file_type == stat.S_IFDIR else 1,
        mtime=min(max(int(st.st_mtime), 0), 0xFFFFFFFF),
        ino=ino,
    )

    if file_type == stat.S_IFLNK:
        target = os.fsencode(os.readlink(path))
        entry.size = len(target)
        writer.write(entry.encode())
        writer.write(target)
    elif file_type == stat.S_IFREG:
        entry.size = st.st_size
        writer.write(entry.encode())
        written = 0
        with path.open("rb") as f:
            while chunk := f.read(min(COPY_CHUNK_SIZE, st.st_size - written)):
                writer.write(chunk)
                written += len(chunk)
        if written != st.st_size:
            raise PackError(f"{path} changed size while packing", code="file_changed")
    else:
        if file_type in (stat.S_IFCHR, stat.S_IFBLK):
            entry.rdev_major = os.major(st.st_rdev)
            entry.rdev_minor = os.minor(st.st_rdev)
        writer.write(entry.encode())
    writer.pad()


def pack_initram(
    source_dir: Path,
    output_path: Path,
    compresslevel: int = DEFAULT_COMPRESSLEVEL,
    root_owned: bool | None = None,
) -> int:
    """Pack a directory tree into a gzip-compressed newc container.

    Entries are written in sorted order with a zero gzip timestamp, so an
    unchanged tree always produces identical bytes.

    Args:
        source_dir: Root of the tree to pack.
        output_path: Container path; overwritten if present.
        compresslevel: gzip compression level.
        root_owned: Record all entries as owned by root:root. None means
            only when not running as root, since an unprivileged extraction
            cannot have restored the original owners.

    Returns:
        Number of entries written, excluding the trailer.

    Raises:
        PackError: If source_dir is missing or unreadable, or the output
            cannot be written.
    """
    if not source_dir.is_dir():
        raise PackError(
            f"Source directory not found: {source_dir}",
            code="source_not_found",
        )

    if root_owned is None:
        root_owned = os.geteuid() != 0
        if root_owned:
            logger.warning(
                "Not running as root: recording every entry in %s as owned by root",
                output_path.name,
            )

    logger.info("Packing %s into %s", source_dir, output_path)

    count = 0
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("wb") as raw, gzip.GzipFile(
            filename="",
            mode="wb",
            fileobj=raw,
            compresslevel=compresslevel,
            mtime=0,
        ) as gz:
            writer = _ArchiveWriter(gz)  # type: ignore[arg-type]
            _write_member(writer, ".", source_dir, 1, root_owned)
            count = 1
            for name, path in _iter_tree(source_dir):
                count += 1
                _write_member(writer, name, path, count, root_owned)

            writer.write(CpioEntry(name=TRAILER_NAME, mode=0, nlink=1).encode())
            writer.pad(BLOCK_SIZE)

    except OSError as e:
        raise PackError(
            f"OS error packing {source_dir} into {output_path}: {e}",
            code="os_error",
        ) from e

    logger.info("Packed %d entries into %s", count, output_path.name)
    return count


class CpioExtractor:
    """ArchiveExtractor for gzip newc initram containers."""

    def extract(self, container_path: Path, dest_dir: Path) -> None:
        extract_initram(container_path, dest_dir)


class CpioPacker:
    """ArchivePacker writing gzip newc initram containers."""

    def __init__(
        self,
        compresslevel: int = DEFAULT_COMPRESSLEVEL,
        root_owned: bool | None = None,
    ) -> None:
        self.compresslevel = compresslevel
        self.root_owned = root_owned

    def pack(self, source_dir: Path, output_path: Path) -> None:
        pack_initram(
            source_dir,
            output_path,
            compresslevel=self.compresslevel,
            root_owned=self.root_owned,
        )


__all__ = [
    "CpioEntry",
    "CpioExtractor",
    "CpioPacker",
    "extract_initram",
    "iter_entries",
    "pack_initram",
]
