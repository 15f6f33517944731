"""Tests for the artifact fetch module.

These tests use mocked HTTP responses to test downloading and
error mapping.
"""

import hashlib

import httpx
import pytest
import respx

from coreos_customizer.errors import FetchError
from coreos_customizer.fetch import HttpFetcher, download_file
from coreos_customizer.types import DownloadResult

VMLINUZ_URL = "https://storage.example.com/coreos/vmlinuz.img"


class TestDownloadFile:
    """Tests for download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        """Should download file successfully."""
        content = b"stock kernel"
        respx.get(VMLINUZ_URL).mock(return_value=httpx.Response(200, content=content))

        dest_path = tmp_path / "vmlinuz.img"
        with httpx.Client() as client:
            result = download_file(client, VMLINUZ_URL, dest_path)

        assert isinstance(result, DownloadResult)
        assert dest_path.read_bytes() == content
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert result.size_bytes == len(content)

    @respx.mock
    def test_overwrites_existing_file(self, tmp_path):
        """Should replace an existing destination file."""
        respx.get(VMLINUZ_URL).mock(return_value=httpx.Response(200, content=b"new"))

        dest_path = tmp_path / "vmlinuz.img"
        dest_path.write_bytes(b"old content that is longer")
        with httpx.Client() as client:
            download_file(client, VMLINUZ_URL, dest_path)

        assert dest_path.read_bytes() == b"new"

    @respx.mock
    def test_creates_parent_directory(self, tmp_path):
        """Should create the destination directory when missing."""
        respx.get(VMLINUZ_URL).mock(return_value=httpx.Response(200, content=b"k"))

        dest_path = tmp_path / "out" / "vmlinuz.img"
        with httpx.Client() as client:
            download_file(client, VMLINUZ_URL, dest_path)

        assert dest_path.exists()

    @respx.mock
    def test_http_error(self, tmp_path):
        """Should raise FetchError on HTTP error."""
        respx.get(VMLINUZ_URL).mock(return_value=httpx.Response(404))

        dest_path = tmp_path / "vmlinuz.img"
        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, VMLINUZ_URL, dest_path)

        assert exc_info.value.code == "http_error"
        assert "404" in str(exc_info.value)
        assert not dest_path.exists()

    @respx.mock
    def test_timeout_error(self, tmp_path):
        """Should raise FetchError on timeout."""
        respx.get(VMLINUZ_URL).mock(
            side_effect=httpx.TimeoutException("Connection timed out")
        )

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, VMLINUZ_URL, tmp_path / "vmlinuz.img")

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self, tmp_path):
        """Should raise FetchError on connection failure."""
        respx.get(VMLINUZ_URL).mock(side_effect=httpx.ConnectError("refused"))

        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, VMLINUZ_URL, tmp_path / "vmlinuz.img")

        assert exc_info.value.code == "network_error"

    def test_empty_url(self, tmp_path):
        """Should fail before any request for an empty URL."""
        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, "", tmp_path / "vmlinuz.img")

        assert exc_info.value.code == "empty_url"

    def test_url_without_scheme(self, tmp_path):
        """Should raise FetchError for a URL httpx cannot request."""
        with httpx.Client() as client, pytest.raises(FetchError):
            download_file(client, "vmlinuz.img", tmp_path / "vmlinuz.img")

    @respx.mock
    def test_unwritable_destination(self, tmp_path):
        """Should raise FetchError when the destination is a directory."""
        respx.get(VMLINUZ_URL).mock(return_value=httpx.Response(200, content=b"k"))

        dest_path = tmp_path / "vmlinuz.img"
        dest_path.mkdir()
        with httpx.Client() as client, pytest.raises(FetchError) as exc_info:
            download_file(client, VMLINUZ_URL, dest_path)

        assert exc_info.value.code == "os_error"


class TestHttpFetcher:
    """Tests for HttpFetcher."""

    @respx.mock
    def test_fetch_with_owned_client(self, tmp_path):
        """Should create and close its own client."""
        respx.get(VMLINUZ_URL).mock(return_value=httpx.Response(200, content=b"k"))

        with HttpFetcher() as fetcher:
            result = fetcher.fetch(tmp_path / "vmlinuz.img", VMLINUZ_URL)
            client = fetcher.client

        assert result.size_bytes == 1
        assert client.is_closed

    @respx.mock
    def test_fetch_with_shared_client(self, tmp_path):
        """Should leave a caller-supplied client open."""
        respx.get(VMLINUZ_URL).mock(return_value=httpx.Response(200, content=b"k"))

        with httpx.Client() as client:
            with HttpFetcher(client=client) as fetcher:
                fetcher.fetch(tmp_path / "vmlinuz.img", VMLINUZ_URL)
            assert not client.is_closed
