#!/usr/bin/env python3
"""
FLOW-DC Web Content Downloader - Error Types

Every failure the downloader knows about is a DownloadError. The stage
attribute says where in the pipeline it happened and is what the overview
report groups failures by.

Only FatalSetupError stops a run. Row, fetch and persist errors are
recovered locally and end up in the run report.
"""

from __future__ import annotations

from typing import Optional


class DownloadError(Exception):
    """Base class for all downloader errors."""

    stage = "unknown"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class FatalSetupError(DownloadError):
    """Input cannot be opened or the run directory cannot be created."""

    stage = "setup"


class RowParseError(DownloadError):
    """A single input row could not be turned into a job."""

    stage = "input"

    def __init__(self, message: str, row_number: int):
        super().__init__(message)
        self.row_number = row_number


class FetchError(DownloadError):
    """Network failure, timeout, non-success status or unreadable body."""

    stage = "fetch"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistError(DownloadError):
    """Fetched content could not be written to its output file."""

    stage = "persist"

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
