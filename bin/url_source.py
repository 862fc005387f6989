#!/usr/bin/env python3
"""
FLOW-DC Web Content Downloader - URL Source

Turns a comma-separated input file into an ordered stream of download jobs.

Input layout:
- Row 1 is a header and is always discarded
- Column 1 of every following row is the URL to fetch
- Any further columns are ignored

The file is read line by line with quoting disabled and invalid UTF-8
replaced, so a damaged row stays confined to that row. Quotes around column 1
are removed by parse_row instead.

Rows without a usable URL are skipped and logged. They never become a job
and never count toward the run total, so job indexes stay contiguous.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import polars as pl
from tqdm import tqdm

from download_errors import FatalSetupError, RowParseError


# Row 1 is the header, so the first data row is row 2 of the file
FIRST_DATA_ROW = 2

QUOTE = '"'
# What utf8-lossy decoding leaves in place of invalid bytes
REPLACEMENT_CHAR = "\ufffd"


@dataclass(frozen=True)
class Job:
    """One URL to fetch, numbered from 1 in input order."""
    index: int
    url: str


def load_input_file(file_path: str) -> pl.DataFrame:
    """
    Load the input CSV with Polars, every column read as a string.

    Quoting is off and undecodable bytes are replaced, so malformed rows load
    as ordinary values and are rejected later, one at a time, by parse_row.

    Args:
        file_path: Path to the input file

    Returns:
        Polars DataFrame (empty if the file has no content at all)

    Raises:
        FatalSetupError: If the file is missing or cannot be read at all
    """
    path = Path(file_path)
    if not path.is_file():
        raise FatalSetupError(f"Input file not found: {path}")

    try:
        if path.stat().st_size == 0:
            return pl.DataFrame()
        return pl.read_csv(
            path,
            has_header=True,
            infer_schema_length=0,
            truncate_ragged_lines=True,
            quote_char=None,
            encoding="utf8-lossy",
        )
    except pl.exceptions.NoDataError:
        return pl.DataFrame()
    except (OSError, pl.exceptions.PolarsError) as e:
        raise FatalSetupError(f"Failed to read input file {path}: {e}") from e


def parse_row(row_number: int, value: Optional[str]) -> str:
    """
    Return the cleaned URL of a row or raise RowParseError.

    A value wrapped in double quotes is unwrapped and doubled quotes inside it
    are collapsed. A quote that is opened but never closed, including one
    whose closing half was cut off at a comma, rejects the row.
    """
    if value is None:
        raise RowParseError("missing URL", row_number)
    if REPLACEMENT_CHAR in value:
        raise RowParseError("invalid UTF-8 in URL", row_number)

    url = value.strip()
    if url.startswith(QUOTE):
        if len(url) < 2 or not url.endswith(QUOTE):
            raise RowParseError("unterminated quote", row_number)
        url = url[1:-1].replace(QUOTE * 2, QUOTE).strip()
    if not url:
        raise RowParseError("empty URL", row_number)
    return url


class UrlSource:
    """
    Job source backed by an input CSV.

    open() reads the file; total_jobs is the pre-scan count of valid rows;
    iterating yields the Jobs themselves. Both go through parse_row, so the
    count always equals the number of Jobs yielded.
    """

    def __init__(self, input_path: str):
        self.input_path = str(input_path)
        self.skipped_rows = 0
        self._df: Optional[pl.DataFrame] = None
        self._total_jobs: Optional[int] = None

    def open(self) -> "UrlSource":
        self._df = load_input_file(self.input_path)
        self._total_jobs = None
        return self

    def _urls(self) -> pl.Series:
        if self._df is None:
            raise RuntimeError("UrlSource.open() must be called before reading jobs")
        if self._df.width == 0:
            return pl.Series("url", [], dtype=pl.Utf8)
        return self._df.to_series(0)

    @property
    def total_jobs(self) -> int:
        """Number of rows that will produce a job."""
        if self._total_jobs is None:
            count = 0
            for offset, value in enumerate(self._urls()):
                try:
                    parse_row(offset + FIRST_DATA_ROW, value)
                except RowParseError:
                    continue
                count += 1
            self._total_jobs = count
        return self._total_jobs

    def __iter__(self) -> Iterator[Job]:
        index = 0
        for offset, value in enumerate(self._urls()):
            try:
                url = parse_row(offset + FIRST_DATA_ROW, value)
            except RowParseError as e:
                self.skipped_rows += 1
                tqdm.write(f"[Input] Skipping row {e.row_number}: {e}")
                continue

            index += 1
            yield Job(index=index, url=url)
