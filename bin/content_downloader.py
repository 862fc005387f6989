#!/usr/bin/env python3
"""
FLOW-DC Web Content Downloader

Reads URLs from column 1 of a CSV (row 1 is a header), downloads each one
concurrently under a fixed concurrency ceiling, and writes every payload
to its own file inside a run-scoped output folder:

    <store>/<run_identity>/<run_identity>-<index>

Failures are collected and listed at the end of the run. The exit code is
0 whenever the run completes, even if some URLs failed, and 1 only when the
input cannot be read or the output folder cannot be created.

Author: FLOW-DC Team
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from download_errors import FatalSetupError
from download_pipeline import DEFAULT_CONCURRENCY, DEFAULT_PROGRESS_INTERVAL, DownloadPipeline
from run_report import RunReport, print_console_report, write_overview
from single_download import DEFAULT_TIMEOUT_SEC, HttpFetcher, build_session
from url_source import UrlSource


DEFAULT_STORE_PATH = "store"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    input_path: str
    output_label: Optional[str] = None
    store_path: str = DEFAULT_STORE_PATH

    concurrent_downloads: int = DEFAULT_CONCURRENCY
    timeout_sec: int = DEFAULT_TIMEOUT_SEC
    insecure: bool = False

    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    show_progress: bool = True
    create_overview: bool = True
    verbose: bool = False

    def script_inputs(self) -> dict[str, Any]:
        """Inputs recorded in the overview report."""
        return {
            "input": self.input_path,
            "output": self.output_label,
            "store": self.store_path,
            "concurrent_downloads": self.concurrent_downloads,
            "timeout_sec": self.timeout_sec,
            "insecure": self.insecure,
        }


def config_from_json(data: dict[str, Any]) -> Config:
    """Build a Config from the contents of a JSON config file."""
    return Config(
        input_path=data.get("input", ""),
        output_label=data.get("output"),
        store_path=data.get("store", DEFAULT_STORE_PATH),
        concurrent_downloads=int(data.get("concurrent_downloads", DEFAULT_CONCURRENCY)),
        timeout_sec=int(data.get("timeout", DEFAULT_TIMEOUT_SEC)),
        insecure=bool(data.get("insecure", False)),
        progress_interval=float(data.get("progress_interval", DEFAULT_PROGRESS_INTERVAL)),
        show_progress=bool(data.get("show_progress", True)),
        create_overview=bool(data.get("create_overview", True)),
        verbose=bool(data.get("verbose", False)),
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="content-downloader",
        description="FLOW-DC Web Content Downloader - fetch every URL listed in a CSV",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  content-downloader trigger -p urls.csv
  content-downloader trigger -p urls.csv -o products --concurrent_downloads 20
  content-downloader trigger --config downloader.json
"""
    )
    subparsers = p.add_subparsers(dest="command", required=True)

    t = subparsers.add_parser("trigger", help="Triggers the download pipeline")
    t.add_argument("--config", type=str, help="Path to JSON config file")

    # Input/Output
    t.add_argument("-p", "--path", dest="input_path", type=str, help="Full path of the CSV file")
    t.add_argument("-o", "--output", dest="output_label", type=str, default=None,
                   help="Output folder name (a unique token is always appended)")
    t.add_argument("--store", dest="store_path", type=str, default=DEFAULT_STORE_PATH,
                   help=f"Base folder for run outputs (default: {DEFAULT_STORE_PATH})")

    # Download settings
    t.add_argument("--concurrent_downloads", type=int, default=DEFAULT_CONCURRENCY)
    t.add_argument("--timeout", dest="timeout_sec", type=int, default=DEFAULT_TIMEOUT_SEC,
                   help="Per-request timeout in seconds")
    t.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")

    # Output options
    t.add_argument("--progress_interval", type=float, default=DEFAULT_PROGRESS_INTERVAL)
    t.add_argument("--no_progress", action="store_true")
    t.add_argument("--no_overview", action="store_true")
    t.add_argument("--verbose", action="store_true", help="Log each failure as it happens")

    return p


def parse_args(argv: Optional[list[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    p = build_parser()
    args = p.parse_args(argv)

    if args.config:
        with Path(args.config).open("r") as f:
            cfg = config_from_json(json.load(f))
    else:
        cfg = Config(
            input_path=args.input_path or "",
            output_label=args.output_label,
            store_path=args.store_path,
            concurrent_downloads=args.concurrent_downloads,
            timeout_sec=args.timeout_sec,
            insecure=args.insecure,
            progress_interval=args.progress_interval,
            show_progress=not args.no_progress,
            create_overview=not args.no_overview,
            verbose=args.verbose,
        )

    if not cfg.input_path:
        p.error("--path is required unless --config is provided")
    if cfg.concurrent_downloads < 1:
        p.error("--concurrent_downloads must be at least 1")
    if cfg.timeout_sec < 1:
        p.error("--timeout must be at least 1 second")
    if cfg.progress_interval <= 0:
        p.error("--progress_interval must be positive")

    return cfg


# =============================================================================
# MAIN
# =============================================================================

async def main(cfg: Config, fetcher: Any = None) -> RunReport:
    """
    Run one download pipeline.

    Args:
        cfg: Run configuration
        fetcher: Optional replacement for the HTTP fetcher (anything with
                 `async fetch(url) -> bytes`)

    Raises:
        FatalSetupError: If the input or the output folder is unusable
    """
    async with build_session(
        timeout=cfg.timeout_sec,
        insecure=cfg.insecure,
        connection_limit=max(50, cfg.concurrent_downloads * 2),
    ) as session:
        pipeline = DownloadPipeline(
            source=UrlSource(cfg.input_path),
            fetcher=fetcher or HttpFetcher(session, cfg.timeout_sec),
            store_path=cfg.store_path,
            label=cfg.output_label,
            concurrency=cfg.concurrent_downloads,
            progress_interval=cfg.progress_interval,
            show_progress=cfg.show_progress,
            verbose=cfg.verbose,
        )
        return await pipeline.run()


def run(argv: Optional[list[str]] = None, fetcher: Any = None) -> int:
    """Console entry point. Returns the process exit code."""
    cfg = parse_args(argv)

    print("=" * 72)
    print("FLOW-DC Web Content Downloader")
    print("=" * 72)
    print(f"[Load] Input: {cfg.input_path}")

    try:
        report = asyncio.run(main(cfg, fetcher=fetcher))
    except FatalSetupError as e:
        print(f"[Error] {e}")
        return 1

    print_console_report(report)

    if cfg.create_overview:
        try:
            overview = write_overview(report, cfg.script_inputs())
            print(f"[Report] Overview: {overview}")
        except OSError as e:
            print(f"[Report] Failed: {e}")

    return 0


if __name__ == "__main__":
    try:
        sys.exit(run())
    except KeyboardInterrupt:
        print("\n[Shutdown] Interrupted by user.")
        sys.exit(130)
