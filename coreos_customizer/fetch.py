"""Artifact fetch module.

This module handles:
- Streaming a stock kernel or initram to a local path
- Checksum computation for download logging
- Mapping transport failures onto FetchError
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import httpx

from coreos_customizer.errors import FetchError
from coreos_customizer.types import DownloadResult

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file, overwriting any existing file at dest_path.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        FetchError: If the URL is empty or invalid, the request fails,
            or the destination cannot be written.
    """
    if not url:
        raise FetchError(f"No URL given for {dest_path}", code="empty_url")

    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise FetchError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise FetchError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    except httpx.InvalidURL as e:
        raise FetchError(
            f"Invalid URL {url!r}: {e}",
            code="invalid_url",
        ) from e
    except OSError as e:
        raise FetchError(
            f"Cannot write {dest_path}: {e}",
            code="os_error",
        ) from e

    checksum = sha256.hexdigest()
    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        checksum[:16] + "...",
    )

    return DownloadResult(path=dest_path, checksum=checksum, size_bytes=total_bytes)


class HttpFetcher:
    """Fetcher backed by an httpx client.

    The client is created lazily and owned by the fetcher unless one is
    passed in.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(follow_redirects=True)
        return self._client

    def fetch(self, dest_path: Path, url: str) -> DownloadResult:
        return download_file(self.client, url, dest_path, timeout=self.timeout)

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "HttpFetcher",
    "download_file",
]
