"""Shared type definitions for coreos_customizer.

This module contains dataclasses, enums, and the protocols implemented by
the pipeline components, kept here to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol


class PipelineState(str, Enum):
    """State of a customization pipeline run."""

    INIT = "init"
    DOWNLOADING_VMLINUZ = "downloading-vmlinuz"
    DOWNLOADING_INITRAM = "downloading-initram"
    EXTRACTING = "extracting"
    REBUILDING = "rebuilding"
    PACKING = "packing"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


class LogLevel(str, Enum):
    """Logging level accepted on the command line."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class BuildRequest:
    """Inputs for a single image build.

    Attributes:
        vmlinuz_url: Source URL of the stock kernel.
        initram_url: Source URL of the stock initram.
        resources_dir: Directory whose contents are added to the image.
        output_path: Where the customized initram is written. Its parent
            directory also receives the downloaded stock artifacts.
    """

    vmlinuz_url: str
    initram_url: str
    resources_dir: Path
    output_path: Path


@dataclass
class DownloadResult:
    """Result of an artifact download."""

    path: Path
    checksum: str
    size_bytes: int


class Fetcher(Protocol):
    """Retrieves a remote artifact to a local path."""

    def fetch(self, dest_path: Path, url: str) -> DownloadResult | None: ...


class ArchiveExtractor(Protocol):
    """Unpacks an initram container into a directory."""

    def extract(self, container_path: Path, dest_dir: Path) -> None: ...


class FilesystemImageRebuilder(Protocol):
    """Regenerates a filesystem image with extra files merged in."""

    def rebuild(
        self, image_path: Path, resources_dir: Path, mount_subpath: str
    ) -> None: ...


class ArchivePacker(Protocol):
    """Packs a directory tree into an initram container."""

    def pack(self, source_dir: Path, output_path: Path) -> None: ...


__all__ = [
    "ArchiveExtractor",
    "ArchivePacker",
    "BuildRequest",
    "DownloadResult",
    "Fetcher",
    "FilesystemImageRebuilder",
    "LogLevel",
    "PipelineState",
]
