"""Customization pipeline orchestration.

This module provides the high-level build API:
- derive_download_path(): where a stock artifact is saved
- BuildPipeline: runs download, extract, rebuild and pack as an ordered
  list of steps, owning the working directory for one build
- build_custom_image(): wires the default components from settings

Each step runs exactly once. The first failure stops the pipeline, the
working directory is removed, and the step's own exception propagates
unchanged. Files already written beside the output path are left in place.
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

from coreos_customizer.config import Settings, get_settings
from coreos_customizer.fetch import HttpFetcher
from coreos_customizer.initram import CpioExtractor, CpioPacker
from coreos_customizer.squashfs import SquashfsRebuilder
from coreos_customizer.types import (
    ArchiveExtractor,
    ArchivePacker,
    BuildRequest,
    DownloadResult,
    Fetcher,
    FilesystemImageRebuilder,
    PipelineState,
)

module_logger = logging.getLogger(__name__)

WORK_DIR_PREFIX = "initram-contents"


def derive_download_path(url: str, output_path: Path) -> Path:
    """Return the local path for a stock artifact.

    The artifact is stored beside output_path under the final segment of
    the URL path; query string and fragment are ignored.

    Example:
        >>> derive_download_path("https://host/path/vmlinuz.img", Path("/out/custom.img"))
        PosixPath('/out/vmlinuz.img')
    """
    name = PurePosixPath(urlsplit(url).path).name
    return output_path.parent / name


@dataclass
class PipelineResult:
    """Result of a successful pipeline run.

    Attributes:
        request: The build inputs.
        vmlinuz_path: Local copy of the stock kernel.
        initram_path: Local copy of the stock initram.
        output_path: The customized initram.
        downloads: Download results reported by the fetcher, if any.
        history: States visited, in order.
        started_at: Run start time.
        finished_at: Run finish time.
    """

    request: BuildRequest
    vmlinuz_path: Path
    initram_path: Path
    output_path: Path
    downloads: list[DownloadResult] = field(default_factory=list)
    history: list[PipelineState] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class BuildPipeline:
    """Linear state machine building one customized initram per run."""

    def __init__(
        self,
        fetcher: Fetcher,
        extractor: ArchiveExtractor,
        rebuilder: FilesystemImageRebuilder,
        packer: ArchivePacker,
        squashfs_image: str = "usr.squashfs",
        mount_subpath: str = "share/oem",
        tmp_dir: Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.extractor = extractor
        self.rebuilder = rebuilder
        self.packer = packer
        self.squashfs_image = squashfs_image
        self.mount_subpath = mount_subpath
        self.tmp_dir = tmp_dir
        self.logger = logger or module_logger
        self.state = PipelineState.INIT
        self.history: list[PipelineState] = [PipelineState.INIT]

    def _transition(self, state: PipelineState) -> None:
        self.logger.debug("Pipeline state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def run(self, request: BuildRequest) -> PipelineResult:
        """Build the customized initram described by request.

        Returns:
            PipelineResult describing the produced files.

        Raises:
            The exception of the first failing step, unchanged.
        """
        self.state = PipelineState.INIT
        self.history = [PipelineState.INIT]
        started_at = datetime.now(timezone.utc)

        vmlinuz_path = derive_download_path(request.vmlinuz_url, request.output_path)
        initram_path = derive_download_path(request.initram_url, request.output_path)
        downloads: list[DownloadResult] = []

        try:
            work = tempfile.TemporaryDirectory(prefix=WORK_DIR_PREFIX, dir=self.tmp_dir)
        except OSError:
            self._transition(PipelineState.FAILED)
            raise
        work_dir = Path(work.name)
        self.logger.debug("Working directory: %s", work_dir)

        def fetch(dest_path: Path, url: str) -> None:
            download = self.fetcher.fetch(dest_path, url)
            if download is not None:
                downloads.append(download)

        steps: list[tuple[PipelineState, Callable[[], None]]] = [
            (
                PipelineState.DOWNLOADING_VMLINUZ,
                lambda: fetch(vmlinuz_path, request.vmlinuz_url),
            ),
            (
                PipelineState.DOWNLOADING_INITRAM,
                lambda: fetch(initram_path, request.initram_url),
            ),
            (
                PipelineState.EXTRACTING,
                lambda: self.extractor.extract(initram_path, work_dir),
            ),
            (
                PipelineState.REBUILDING,
                lambda: self.rebuilder.rebuild(
                    work_dir / self.squashfs_image,
                    request.resources_dir,
                    self.mount_subpath,
                ),
            ),
            (
                PipelineState.PACKING,
                lambda: self.packer.pack(work_dir, request.output_path),
            ),
        ]

        try:
            for state, action in steps:
                self._transition(state)
                action()
        except Exception:
            failed_in = self.state
            self._transition(PipelineState.CLEANUP)
            try:
                work.cleanup()
            except OSError as cleanup_error:
                self.logger.error(
                    "Failed to remove working directory %s: %s",
                    work_dir,
                    cleanup_error,
                )
            self._transition(PipelineState.FAILED)
            self.logger.error("Build failed while %s", failed_in.value)
            raise

        self._transition(PipelineState.CLEANUP)
        work.cleanup()
        self._transition(PipelineState.DONE)

        return PipelineResult(
            request=request,
            vmlinuz_path=vmlinuz_path,
            initram_path=initram_path,
            output_path=request.output_path,
            downloads=downloads,
            history=list(self.history),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )


def build_custom_image(
    request: BuildRequest,
    settings: Settings | None = None,
    fetcher: Fetcher | None = None,
    logger: logging.Logger | None = None,
) -> PipelineResult:
    """Build a customized initram with the default components.

    Args:
        request: Build inputs.
        settings: Settings to use; loaded from the environment if None.
        fetcher: Fetcher override; an HttpFetcher is used if None.
        logger: Logger for pipeline progress.

    Returns:
        PipelineResult of the run.
    """
    if settings is None:
        settings = get_settings()

    with HttpFetcher(timeout=settings.download_timeout) as http_fetcher:
        pipeline = BuildPipeline(
            fetcher=fetcher or http_fetcher,
            extractor=CpioExtractor(),
            rebuilder=SquashfsRebuilder.from_settings(settings),
            packer=CpioPacker(
                compresslevel=settings.gzip_level,
                root_owned=settings.initram_root_owned,
            ),
            squashfs_image=settings.squashfs_image,
            mount_subpath=settings.mount_subpath,
            tmp_dir=settings.tmp_dir,
            logger=logger,
        )
        return pipeline.run(request)


__all__ = [
    "BuildPipeline",
    "PipelineResult",
    "WORK_DIR_PREFIX",
    "build_custom_image",
    "derive_download_path",
]
