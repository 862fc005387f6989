#!/usr/bin/env python3
"""
FLOW-DC Web Content Downloader - Download Pipeline

Turns a stream of jobs into a stream of outcomes under a fixed
concurrency ceiling.

Data flow:

    UrlSource ─► WorkerPool ─► outcome queue ─► Dispatcher ─┬─► Persister ──┐
                 (AdmissionGate,                            │        │      │
                  Fetcher)                                  │   persist err │
                                                            └─► ErrorCollector
                                                                     │      │
                                          CompletionTracker ◄────────┴──────┘
                                                 │
                                          ProgressReporter

Every admitted job yields exactly one Outcome. Only the Persister (on a
successful write) and the ErrorCollector (on an accepted failure) mark an
outcome as absorbed, so the completion count cannot drift between stages.

State Machine:
    INIT → READING → DRAINING → REPORTING → DONE
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum, auto
from pathlib import Path
from typing import Any, Iterable, Optional

from tqdm import tqdm

from download_errors import FetchError, PersistError
from run_report import Outcome, RunReport, format_failure
from single_download import (
    create_run_directory,
    make_run_identity,
    output_file_path,
    save_content,
)
from url_source import Job, UrlSource


DEFAULT_CONCURRENCY = 10
DEFAULT_PROGRESS_INTERVAL = 0.5


def _monotonic() -> float:
    """Monotonic time for duration measurements."""
    return time.monotonic()


class PipelineState(Enum):
    """Lifecycle of one DownloadPipeline run."""
    INIT = auto()
    READING = auto()
    DRAINING = auto()
    REPORTING = auto()
    DONE = auto()


# =============================================================================
# CONCURRENCY CONTROL: ADMISSION GATE
# =============================================================================

class AdmissionGate:
    """
    Fixed-capacity counting semaphore bounding in-flight fetches.

    Every successful acquire() must be paired with exactly one release().
    WorkerPool does this with a single try/finally around the whole job task.
    """

    def __init__(self, capacity: int = DEFAULT_CONCURRENCY):
        if capacity < 1:
            raise ValueError(f"Admission gate capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._outstanding = 0
        self._peak = 0
        self._cond = asyncio.Condition()

    async def acquire(self) -> None:
        """Acquire a slot, blocking while the gate is full."""
        async with self._cond:
            while self._outstanding >= self._capacity:
                await self._cond.wait()
            self._outstanding += 1
            self._peak = max(self._peak, self._outstanding)

    async def release(self) -> None:
        """Release a slot."""
        async with self._cond:
            if self._outstanding == 0:
                raise RuntimeError("AdmissionGate released more times than acquired")
            self._outstanding -= 1
            self._cond.notify()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def outstanding(self) -> int:
        """Slots currently held."""
        return self._outstanding

    @property
    def peak(self) -> int:
        """Highest number of slots held at once."""
        return self._peak


# =============================================================================
# COMPLETION TRACKING
# =============================================================================

class CompletionTracker:
    """
    Completion counter and completion barrier for one run.

    admit() is called once per job handed to a fetch task, absorb() once per
    outcome that has been fully handled. The barrier opens when admission is
    closed and every admitted job has been absorbed.
    """

    def __init__(self, total_jobs: int):
        self.total_jobs = total_jobs
        self.admitted = 0
        self.completed = 0
        self.succeeded = 0
        self.failed = 0
        self.total_duration = 0.0
        self.bytes_written = 0
        self._admission_closed = False
        self._done = asyncio.Event()

    def admit(self) -> None:
        if self._admission_closed:
            raise RuntimeError("Job admitted after admission was closed")
        self.admitted += 1

    def close_admission(self) -> None:
        self._admission_closed = True
        self._check_done()

    def absorb(self, outcome: Outcome) -> None:
        """Count one finished outcome. Called by Persister and ErrorCollector only."""
        if self._done.is_set():
            raise RuntimeError(f"Outcome for job {outcome.index} absorbed after run completion")
        if self.completed >= self.admitted:
            raise RuntimeError(f"Outcome for job {outcome.index} absorbed without an admitted job")

        self.completed += 1
        if outcome.success:
            self.succeeded += 1
            self.total_duration += outcome.duration
            self.bytes_written += outcome.bytes_written
        else:
            self.failed += 1
        self._check_done()

    def _check_done(self) -> None:
        if self._admission_closed and self.completed == self.admitted:
            self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> None:
        """Block until every admitted job has been absorbed."""
        await self._done.wait()


# =============================================================================
# STAGES
# =============================================================================

class _QueueStage:
    """Single-consumer stage fed through an unbounded queue, closed by a None sentinel."""

    def __init__(self):
        self.queue: asyncio.Queue[Optional[Outcome]] = asyncio.Queue()

    def submit(self, outcome: Outcome) -> None:
        self.queue.put_nowait(outcome)

    def close(self) -> None:
        self.queue.put_nowait(None)

    async def run(self) -> None:
        while True:
            outcome = await self.queue.get()
            if outcome is None:
                return
            self.handle(outcome)

    def handle(self, outcome: Outcome) -> None:
        raise NotImplementedError


class ErrorCollector(_QueueStage):
    """Sole owner of the failure list. Failures are kept in arrival order."""

    def __init__(self, tracker: CompletionTracker, verbose: bool = False):
        super().__init__()
        self.tracker = tracker
        self.verbose = verbose
        self._failures: list[Outcome] = []

    def handle(self, outcome: Outcome) -> None:
        self._failures.append(outcome)
        self.tracker.absorb(outcome)
        if self.verbose:
            tqdm.write(f"[Errors] {format_failure(outcome)}")

    @property
    def failures(self) -> list[Outcome]:
        """Copy of the failure list."""
        return list(self._failures)


class Persister(_QueueStage):
    """Writes successful outcomes to <output_dir>/<run_identity>-<index>."""

    def __init__(self, output_dir: Path, run_identity: str,
                 tracker: CompletionTracker, errors: ErrorCollector):
        super().__init__()
        self.output_dir = Path(output_dir)
        self.run_identity = run_identity
        self.tracker = tracker
        self.errors = errors

    def handle(self, outcome: Outcome) -> None:
        path = output_file_path(self.output_dir, self.run_identity, outcome.index)
        try:
            written = save_content(outcome.content, path)
        except PersistError as e:
            self.errors.submit(outcome.as_failure(e))
            return
        self.tracker.absorb(outcome.persisted(str(path), written))


class Dispatcher(_QueueStage):
    """Routes each outcome to the Persister or the ErrorCollector."""

    def __init__(self, persister: Persister, errors: ErrorCollector):
        super().__init__()
        self.persister = persister
        self.errors = errors

    def handle(self, outcome: Outcome) -> None:
        if outcome.success:
            self.persister.submit(outcome)
        else:
            self.errors.submit(outcome)


# =============================================================================
# WORKER POOL
# =============================================================================

class WorkerPool:
    """
    Launches one fetch task per job, at most gate.capacity at a time.

    fetcher is any object with `async fetch(url) -> bytes` that raises
    FetchError on failure.
    """

    def __init__(self, fetcher: Any, gate: AdmissionGate,
                 tracker: CompletionTracker, outcomes: Dispatcher):
        self.fetcher = fetcher
        self.gate = gate
        self.tracker = tracker
        self.outcomes = outcomes
        self._tasks: set[asyncio.Task] = set()

    async def admit_all(self, jobs: Iterable[Job]) -> None:
        """Admit every job from the source, then close admission."""
        for job in jobs:
            await self.gate.acquire()
            self.tracker.admit()
            task = asyncio.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self.tracker.close_admission()

    async def join(self) -> None:
        """Wait for every in-flight job task."""
        if self._tasks:
            await asyncio.gather(*self._tasks)

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def _run_job(self, job: Job) -> None:
        # The slot is released here and nowhere else.
        try:
            self.outcomes.submit(await self._fetch(job))
        finally:
            await self.gate.release()

    async def _fetch(self, job: Job) -> Outcome:
        start = _monotonic()
        try:
            content = await self.fetcher.fetch(job.url)
        except FetchError as e:
            return Outcome.failed(job, e, _monotonic() - start)
        except Exception as e:
            return Outcome.failed(job, FetchError(f"Error: {e}"), _monotonic() - start)

        if not isinstance(content, (bytes, bytearray)):
            return Outcome.failed(job, FetchError("Error: fetcher returned no content"), _monotonic() - start)
        return Outcome.succeeded(job, bytes(content), _monotonic() - start)


# =============================================================================
# PROGRESS REPORTING
# =============================================================================

class ProgressReporter:
    """Renders tracker.completed / tracker.total_jobs on a fixed interval."""

    def __init__(self, tracker: CompletionTracker,
                 interval: float = DEFAULT_PROGRESS_INTERVAL, enabled: bool = True):
        self.tracker = tracker
        self.interval = interval
        self.enabled = enabled

    def percent(self) -> float:
        total = self.tracker.total_jobs
        if total == 0:
            return 100.0
        return min(100.0, (self.tracker.completed / total) * 100.0)

    async def run(self) -> None:
        total = self.tracker.total_jobs
        if total == 0:
            return

        pbar = tqdm(total=total, desc="Downloading", unit="url", disable=not self.enabled)
        try:
            while True:
                completed = min(self.tracker.completed, total)
                pbar.update(completed - pbar.n)
                if completed >= total or self.tracker.done:
                    return
                await asyncio.sleep(self.interval)
        finally:
            pbar.close()


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class DownloadPipeline:
    """
    One download run: read jobs, fetch, persist, collect errors, report.

    Raises FatalSetupError from run() if the input cannot be read or the
    run directory cannot be created; every other failure is per job and
    ends up in the returned RunReport.
    """

    def __init__(
        self,
        source: UrlSource,
        fetcher: Any,
        store_path: str,
        label: Optional[str] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        show_progress: bool = True,
        verbose: bool = False,
    ):
        self.source = source
        self.fetcher = fetcher
        self.store_path = store_path
        self.label = label
        self.concurrency = concurrency
        self.progress_interval = progress_interval
        self.show_progress = show_progress
        self.verbose = verbose

        self.state = PipelineState.INIT
        self.run_identity: Optional[str] = None
        self.output_dir: Optional[Path] = None
        self.gate: Optional[AdmissionGate] = None
        self.tracker: Optional[CompletionTracker] = None

    async def run(self) -> RunReport:
        start = _monotonic()
        self.state = PipelineState.INIT

        # Fatal setup: nothing has started yet if either of these fails
        self.source.open()
        total_jobs = self.source.total_jobs
        self.run_identity = make_run_identity(self.label)
        self.output_dir = create_run_directory(self.store_path, self.run_identity)

        tqdm.write(f"[Pipeline] Run {self.run_identity} | URLs: {total_jobs} | "
                   f"concurrency={self.concurrency}")

        self.gate = AdmissionGate(self.concurrency)
        self.tracker = CompletionTracker(total_jobs)
        errors = ErrorCollector(self.tracker, verbose=self.verbose)
        persister = Persister(self.output_dir, self.run_identity, self.tracker, errors)
        dispatcher = Dispatcher(persister, errors)
        pool = WorkerPool(self.fetcher, self.gate, self.tracker, dispatcher)
        reporter = ProgressReporter(self.tracker, self.progress_interval, self.show_progress)

        stages = {
            "dispatcher": asyncio.create_task(dispatcher.run()),
            "persister": asyncio.create_task(persister.run()),
            "errors": asyncio.create_task(errors.run()),
        }
        reporter_task = asyncio.create_task(reporter.run())

        finished = False
        try:
            self.state = PipelineState.READING
            await pool.admit_all(self.source)

            self.state = PipelineState.DRAINING
            await self._wait_for_completion(stages)
            await pool.join()

            # Producers finish before their consumer's queue is closed
            self.state = PipelineState.REPORTING
            dispatcher.close()
            await stages["dispatcher"]
            persister.close()
            await stages["persister"]
            errors.close()
            await stages["errors"]
            await reporter_task
            finished = True
        finally:
            if not finished:
                pool.cancel()
                leftovers = [*stages.values(), reporter_task]
                for task in leftovers:
                    task.cancel()
                await asyncio.gather(*leftovers, return_exceptions=True)

        report = RunReport(
            run_identity=self.run_identity,
            output_dir=str(self.output_dir),
            total_jobs=total_jobs,
            succeeded_count=self.tracker.succeeded,
            failed_count=self.tracker.failed,
            total_duration=self.tracker.total_duration,
            elapsed_sec=_monotonic() - start,
            bytes_written=self.tracker.bytes_written,
            skipped_rows=self.source.skipped_rows,
            failures=errors.failures,
        )
        self.state = PipelineState.DONE
        return report

    async def _wait_for_completion(self, stages: dict[str, asyncio.Task]) -> None:
        """Block on the completion barrier, surfacing any stage that dies first."""
        barrier = asyncio.create_task(self.tracker.wait())
        done, _ = await asyncio.wait({barrier, *stages.values()},
                                     return_when=asyncio.FIRST_COMPLETED)
        if barrier in done:
            return

        barrier.cancel()
        for name, task in stages.items():
            if task in done:
                task.result()
                raise RuntimeError(f"Pipeline stage '{name}' stopped before all jobs completed")
