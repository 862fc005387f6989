#!/usr/bin/env python3
"""
FLOW-DC Single Download Module

Per-URL building blocks used by download_pipeline.py:
- HttpFetcher: fetch one URL over a shared aiohttp session
- make_run_identity(): unique, human-readable name for one run
- create_run_directory() / output_file_path(): run-scoped output layout
- save_content(): write one payload to disk
"""

from __future__ import annotations

import asyncio
import os
import re
import time
import uuid
from http import HTTPStatus
from pathlib import Path
from typing import Optional

import aiohttp

from download_errors import FatalSetupError, FetchError, PersistError


USER_AGENT = "FLOW-DC/2.0 web-content-downloader"
DEFAULT_TIMEOUT_SEC = 15


def sanitize_label(name: str, max_len: int = 120) -> str:
    """Sanitize a run label for use in directory and file names."""
    name = name.strip().replace(os.sep, "_")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    name = re.sub(r"_+", "_", name).strip("._")
    return name[:max_len]


def make_run_identity(label: Optional[str] = None) -> str:
    """
    Build the identity of one run: "<label>-<token>" or "<token>".

    The token is a local timestamp plus a fresh uuid4 fragment, so runs
    started with the same label (even in the same second) never collide.

    Args:
        label: Optional caller-supplied label

    Returns:
        Run identity string
    """
    token = f"{time.strftime('%Y%m%dT%H%M%S', time.localtime())}-{uuid.uuid4().hex[:8]}"
    clean = sanitize_label(label) if label else ""
    if clean:
        return f"{clean}-{token}"
    return token


def create_run_directory(store_path: str, run_identity: str) -> Path:
    """
    Create the output directory for one run.

    Raises:
        FatalSetupError: If the directory cannot be created or already exists
    """
    out_dir = Path(store_path) / run_identity
    try:
        out_dir.mkdir(parents=True, exist_ok=False)
    except OSError as e:
        raise FatalSetupError(f"Cannot create output directory {out_dir}: {e}") from e
    return out_dir


def output_file_path(output_dir: Path, run_identity: str, index: int) -> Path:
    """Path of the file holding job `index`: <run_identity>-<index>."""
    return Path(output_dir) / f"{run_identity}-{index}"


def save_content(content: bytes, file_path: Path) -> int:
    """
    Write fetched bytes to file_path.

    Returns:
        Number of bytes written

    Raises:
        PersistError: If the file cannot be created or written
    """
    try:
        with open(file_path, "wb") as f:
            f.write(content)
    except OSError as e:
        raise PersistError(f"Write Error: {e}", path=str(file_path)) from e
    return len(content)


def build_session(timeout: int = DEFAULT_TIMEOUT_SEC, insecure: bool = False,
                  connection_limit: int = 100) -> aiohttp.ClientSession:
    """
    Create the shared aiohttp session used by HttpFetcher.

    Must be called from inside a running event loop.
    """
    connector = aiohttp.TCPConnector(
        limit=connection_limit,
        ttl_dns_cache=300,
        ssl=not insecure,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout),
        headers={"User-Agent": USER_AGENT},
    )


class HttpFetcher:
    """
    Fetcher over an aiohttp ClientSession.

    fetch() returns the full response body for a 2xx response and raises
    FetchError for anything else. No retries.
    """

    def __init__(self, session: aiohttp.ClientSession, timeout: int = DEFAULT_TIMEOUT_SEC):
        self.session = session
        self.timeout = timeout

    async def fetch(self, url: str) -> bytes:
        try:
            async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if 200 <= response.status < 300:
                    return await response.read()
                try:
                    status_name = HTTPStatus(response.status).phrase
                except ValueError:
                    status_name = "Unknown"
                raise FetchError(f"HTTP {response.status}: {status_name}", status_code=response.status)

        except asyncio.TimeoutError as e:
            raise FetchError("Request Timeout", status_code=408) from e
        except aiohttp.InvalidURL as e:
            raise FetchError(f"Invalid URL: {e}") from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Connection Error: {e}") from e
