#!/usr/bin/env python3
"""
FLOW-DC Web Content Downloader - Outcomes and Run Report

Outcome is the terminal result of one job. RunReport is the summary of a
whole run, rendered to the console and optionally written next to the
run directory as <run_identity>_overview.json.
"""

from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from download_errors import DownloadError
from url_source import Job


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Outcome:
    """
    Result of one job: either content (success) or an error (failure).

    Exactly one of content/error is set. Use Outcome.succeeded() and
    Outcome.failed() rather than the constructor.
    """
    index: int
    url: str
    duration: float
    content: Optional[bytes] = None
    error: Optional[DownloadError] = None
    file_path: Optional[str] = None
    bytes_written: int = 0

    def __post_init__(self):
        if (self.content is None) == (self.error is None):
            raise ValueError("Outcome requires exactly one of content or error")

    @classmethod
    def succeeded(cls, job: Job, content: bytes, duration: float) -> "Outcome":
        return cls(index=job.index, url=job.url, duration=duration, content=content)

    @classmethod
    def failed(cls, job: Job, error: DownloadError, duration: float) -> "Outcome":
        return cls(index=job.index, url=job.url, duration=duration, error=error)

    @property
    def success(self) -> bool:
        return self.error is None

    def persisted(self, file_path: str, bytes_written: int) -> "Outcome":
        return replace(self, file_path=file_path, bytes_written=bytes_written)

    def as_failure(self, error: DownloadError) -> "Outcome":
        """Same job and duration, now failed with `error` (content dropped)."""
        return replace(self, content=None, error=error, file_path=None, bytes_written=0)


@dataclass
class RunReport:
    """Summary of one run."""
    run_identity: str
    output_dir: str
    total_jobs: int
    succeeded_count: int = 0
    failed_count: int = 0
    total_duration: float = 0.0
    elapsed_sec: float = 0.0
    bytes_written: int = 0
    skipped_rows: int = 0
    failures: list[Outcome] = field(default_factory=list)

    @property
    def average_duration(self) -> float:
        """Mean fetch duration over successful jobs."""
        if self.succeeded_count == 0:
            return 0.0
        return self.total_duration / self.succeeded_count

    @property
    def success_rate_percent(self) -> float:
        if self.total_jobs == 0:
            return 0.0
        return (self.succeeded_count / self.total_jobs) * 100.0


# =============================================================================
# CONSOLE REPORT
# =============================================================================

def format_failure(outcome: Outcome) -> str:
    """One failure line: index, URL, error, elapsed time."""
    return f"{outcome.index}: {outcome.url} || error: {outcome.error} || elapsed: {outcome.duration:.3f}s"


def print_console_report(report: RunReport) -> None:
    """Print a human-readable summary and the failure listing."""
    sep = "=" * 72

    print(f"\n{sep}")
    print("FINAL SUMMARY")
    print(sep)
    print(f"Run identity:          {report.run_identity}")
    print(f"Output folder:         {report.output_dir}")
    print(f"Total URLs:            {report.total_jobs}")
    print(f"Successful downloads:  {report.succeeded_count}")
    print(f"Failed downloads:      {report.failed_count}")
    if report.skipped_rows:
        print(f"Skipped input rows:    {report.skipped_rows}")
    if report.total_jobs > 0:
        print(f"Success rate:          {report.success_rate_percent:.2f}%")
    print(f"Total download time:   {report.total_duration:.3f}s")
    print(f"Average download time: {report.average_duration:.3f}s")
    print(f"Elapsed time:          {report.elapsed_sec:.2f}s")
    print(f"Total written:         {report.bytes_written / 1e6:.2f} MB")

    if report.failures:
        print("\nFAILED URLS (index: url || error || elapsed)")
        for outcome in report.failures:
            print(f"  {format_failure(outcome)}")

    print(sep)


# =============================================================================
# JSON OVERVIEW
# =============================================================================

def build_overview(report: RunReport, script_inputs: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Build the overview dict written by write_overview()."""
    err_counter = Counter(
        (o.error.stage, getattr(o.error, "status_code", None), str(o.error))
        for o in report.failures
    )

    return {
        "script_inputs": script_inputs or {},
        "summary": {
            "run_identity": report.run_identity,
            "output_folder": report.output_dir,
            "total_urls": report.total_jobs,
            "successful_downloads": report.succeeded_count,
            "failed_downloads": report.failed_count,
            "skipped_rows": report.skipped_rows,
            "success_rate_percent": round(report.success_rate_percent, 2),
            "total_download_sec": round(report.total_duration, 3),
            "avg_download_sec": round(report.average_duration, 3),
            "elapsed_sec": round(report.elapsed_sec, 3),
            "written_mb": round(report.bytes_written / 1e6, 3),
        },
        "error_breakdown": [
            {"stage": stage, "status_code": sc, "error": err, "count": cnt}
            for (stage, sc, err), cnt in err_counter.most_common()
        ],
        "failures": [
            {
                "index": o.index,
                "url": o.url,
                "stage": o.error.stage,
                "error": str(o.error),
                "elapsed_sec": round(o.duration, 3),
            }
            for o in report.failures
        ],
        "timestamp_local": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
    }


def write_overview(report: RunReport, script_inputs: Optional[dict[str, Any]] = None) -> str:
    """Write <output_dir>_overview.json beside the run directory and return its path."""
    out = Path(report.output_dir)
    overview_path = out.with_name(out.name + "_overview.json")

    with overview_path.open("w") as f:
        json.dump(build_overview(report, script_inputs), f, indent=2)

    return str(overview_path.resolve())
