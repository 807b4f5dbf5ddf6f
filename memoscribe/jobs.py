"""Per-recording transcription jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from .catalog import Catalog, CatalogError
from .models import (
    CatalogEntry,
    Config,
    Failure,
    FailureKind,
    Success,
    TranscriptionOutcome,
    TranscriptionState,
)
from .on_device import PartialResult
from .providers import ProviderKind, TranscriptionProvider, get_provider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Optional[str], Config], TranscriptionProvider]


class TranscriptionJob:
    """Handle for one provider run against one catalog entry."""

    def __init__(
        self,
        entry_id: int,
        provider: ProviderKind,
        on_progress: Optional[Callable[["TranscriptionJob", PartialResult], None]] = None,
    ) -> None:
        self.entry_id = entry_id
        self.provider = provider
        self.progress = 0.0
        self.partial_text = ""
        self.outcome: Optional[TranscriptionOutcome] = None
        self.cancel_requested = False
        self._on_progress = on_progress
        self._task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def cancelled(self) -> bool:
        return self.cancel_requested

    def _record_partial(self, partial: PartialResult) -> None:
        if self.cancel_requested:
            return
        self.progress = max(self.progress, partial.progress)
        self.partial_text = partial.text
        if self._on_progress is not None:
            self._on_progress(self, partial)

    def _cancel(self) -> None:
        self.cancel_requested = True
        if self._task is not None:
            self._task.cancel()

    async def wait(self) -> Optional[TranscriptionOutcome]:
        """Wait for the job to resolve; returns ``None`` when it was cancelled."""

        if self._task is None:
            raise RuntimeError(f"Job for recording {self.entry_id} was never started")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return None
            raise


@dataclass(slots=True)
class BulkReport:
    succeeded: List[int] = field(default_factory=list)
    failed: Dict[int, Failure] = field(default_factory=dict)
    cancelled: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.cancelled)


class JobManager:
    """Run transcription jobs and write their outcomes onto catalog entries.

    Every catalog write happens on the event loop that owns the manager, so
    each entry has a single writer. At most one job per entry is in flight.
    """

    def __init__(
        self,
        catalog: Catalog,
        config: Config,
        provider_factory: ProviderFactory = get_provider,
    ) -> None:
        self.catalog = catalog
        self.config = config
        self._provider_factory = provider_factory
        self._jobs: Dict[int, TranscriptionJob] = {}

    def job_for(self, entry_id: int) -> Optional[TranscriptionJob]:
        return self._jobs.get(entry_id)

    def active_jobs(self) -> List[TranscriptionJob]:
        return [job for job in self._jobs.values() if not job.done and not job.cancel_requested]

    def start(
        self,
        entry_id: int,
        provider: Optional[str] = None,
        on_progress: Optional[Callable[[TranscriptionJob, PartialResult], None]] = None,
    ) -> TranscriptionJob:
        """Start a job for ``entry_id`` or return the one already running.

        Raises:
            CatalogError: for an unknown entry.
            ConfigError: for an unknown provider name.
        """

        running = self._running(entry_id)
        if running is not None:
            logger.debug("Job for recording %s already running", entry_id)
            return running

        entry = self.catalog.get(entry_id)
        backend = self._provider_factory(provider, self.config)
        return self._launch(entry, backend, on_progress)

    def cancel(self, entry_id: int) -> bool:
        """Cancel the running job for ``entry_id``; the entry returns to idle."""

        job = self._running(entry_id)
        if job is None:
            return False
        job._cancel()
        self._write(entry_id, TranscriptionState.IDLE)
        logger.info("Cancelled transcription for recording %s", entry_id)
        return True

    def _running(self, entry_id: int) -> Optional[TranscriptionJob]:
        # A cancelled job may still be unwinding but no longer owns the entry.
        job = self._jobs.get(entry_id)
        if job is None or job.done or job.cancel_requested:
            return None
        return job

    def _launch(
        self,
        entry: CatalogEntry,
        backend: TranscriptionProvider,
        on_progress: Optional[Callable[[TranscriptionJob, PartialResult], None]],
    ) -> TranscriptionJob:
        job = TranscriptionJob(entry.id, backend.kind, on_progress)
        self.catalog.apply(entry.id, TranscriptionState.IN_PROGRESS)
        job._task = asyncio.get_running_loop().create_task(
            self._run(job, backend, entry),
            name=f"transcribe-{entry.id}",
        )
        self._jobs[entry.id] = job
        logger.info("Started %s transcription for recording %s", backend.kind.value, entry.id)
        return job

    async def run_bulk(
        self,
        entry_ids: Iterable[int],
        provider: Optional[str] = None,
        on_progress: Optional[Callable[[TranscriptionJob, PartialResult], None]] = None,
    ) -> BulkReport:
        """Run one job per entry concurrently and report once all have resolved.

        Every id and the provider are checked before any job starts, so an
        unknown id or provider raises without leaving work behind.

        Raises:
            CatalogError: for an unknown entry.
            ConfigError: for an unknown provider name.
        """

        entries = [self.catalog.get(entry_id) for entry_id in dict.fromkeys(entry_ids)]
        backend = self._provider_factory(provider, self.config)

        jobs = []
        for entry in entries:
            running = self._running(entry.id)
            jobs.append(running if running is not None else self._launch(entry, backend, on_progress))
        outcomes = await asyncio.gather(*(job.wait() for job in jobs))

        report = BulkReport()
        for job, outcome in zip(jobs, outcomes):
            if outcome is None:
                report.cancelled.append(job.entry_id)
            elif isinstance(outcome, Success):
                report.succeeded.append(job.entry_id)
            else:
                report.failed[job.entry_id] = outcome
        logger.info(
            "Bulk transcription finished: %d succeeded, %d failed, %d cancelled",
            len(report.succeeded),
            len(report.failed),
            len(report.cancelled),
        )
        return report

    async def _run(
        self,
        job: TranscriptionJob,
        backend: TranscriptionProvider,
        entry: CatalogEntry,
    ) -> TranscriptionOutcome:
        try:
            outcome = await backend.run(entry, self.config, progress=job._record_partial)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - a broken provider fails only its own job
            logger.exception("Transcription of recording %s crashed", job.entry_id)
            outcome = Failure(FailureKind.UNEXPECTED_ERROR, str(exc) or exc.__class__.__name__)

        if job.cancel_requested:
            raise asyncio.CancelledError()
        if isinstance(outcome, Success) and not outcome.text.strip():
            outcome = Failure(FailureKind.UNEXPECTED_ERROR, "provider returned an empty transcript")

        job.outcome = outcome
        if isinstance(outcome, Success):
            job.progress = 1.0
            self._write(job.entry_id, TranscriptionState.COMPLETE, outcome.text)
            logger.info("Transcription for recording %s complete", job.entry_id)
        else:
            self._write(job.entry_id, TranscriptionState.FAILED)
            logger.warning("Transcription for recording %s failed: %s", job.entry_id, outcome.describe())
        return outcome

    def _write(self, entry_id: int, state: TranscriptionState, text: Optional[str] = None) -> None:
        try:
            self.catalog.apply(entry_id, state, text)
        except CatalogError:
            logger.warning("Recording %s left the catalog before its job resolved", entry_id)
