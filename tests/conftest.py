"""
pytest configuration for the downloader tests.

Adds the bin directory to the Python path and provides a stub fetcher so the
pipeline can be exercised without network access.
"""

import asyncio
import sys
from pathlib import Path

import pytest

bin_dir = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(bin_dir))


class StubFetcher:
    """
    In-memory fetcher.

    responses maps a URL to the bytes to return or the exception to raise;
    unknown URLs return `default`. Tracks calls and peak concurrency.
    """

    def __init__(self, responses=None, default=b"OK", delay=0.0):
        self.responses = responses or {}
        self.default = default
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url):
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.responses.get(url, self.default)
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.active -= 1


@pytest.fixture
def stub_fetcher():
    """Factory for StubFetcher instances."""
    return StubFetcher


@pytest.fixture
def write_csv(tmp_path):
    """Write CSV text (or raw bytes) to a file under tmp_path and return its path."""

    def _write(text, name="urls.csv"):
        path = tmp_path / name
        if isinstance(text, bytes):
            path.write_bytes(text)
        else:
            path.write_text(text)
        return path

    return _write


@pytest.fixture
def store_path(tmp_path):
    """Base store folder for run outputs."""
    return tmp_path / "store"
