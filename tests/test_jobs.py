import asyncio
import threading
from datetime import datetime, timezone

import httpx
import pytest

from memoscribe.catalog import Catalog, CatalogError
from memoscribe.config import ConfigError
from memoscribe.jobs import JobManager, TranscriptionJob
from memoscribe.models import CatalogEntry, Config, Failure, FailureKind, Success, TranscriptionState
from memoscribe.on_device import OnDeviceDriver, PartialResult, SpeechSegment
from memoscribe.providers import OnDeviceProvider, ProviderKind, RemoteProvider
from memoscribe.remote import RemoteTranscriptionClient


class FakeProvider:
    kind = ProviderKind.REMOTE

    def __init__(self, outcomes=None, hold=False, error=None):
        self.outcomes = outcomes or {}
        self.hold = hold
        self.error = error
        self.calls = []
        self.cancelled = []

    async def run(self, entry, config, progress=None):
        self.calls.append(entry.id)
        if progress is not None:
            progress(PartialResult("partial", 0.5))
        if self.error is not None:
            raise self.error
        if self.hold:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(entry.id)
                raise
        return self.outcomes.get(entry.id, Success(f"text {entry.id}"))


def _catalog(*ids, transcription=None):
    return Catalog(
        CatalogEntry(
            id=entry_id,
            file_location=f"/tmp/{entry_id}.m4a",
            title=f"Memo {entry_id}",
            recorded_at=datetime(2024, 1, entry_id, tzinfo=timezone.utc),
            duration_seconds=1.0,
            transcription=transcription,
        )
        for entry_id in ids
    )


def _manager(catalog, provider):
    return JobManager(catalog, Config(), provider_factory=lambda kind, config: provider)


def test_success_overwrites_previous_transcription():
    catalog = _catalog(1, transcription="old text")
    manager = _manager(catalog, FakeProvider({1: Success("new text")}))

    async def scenario():
        job = manager.start(1)
        assert catalog.get(1).transcription_state is TranscriptionState.IN_PROGRESS
        return job, await job.wait()

    job, outcome = asyncio.run(scenario())

    assert outcome == Success("new text")
    entry = catalog.get(1)
    assert entry.transcription == "new text"
    assert entry.transcription_state is TranscriptionState.COMPLETE
    assert job.progress == 1.0


def test_failure_preserves_previous_transcription():
    catalog = _catalog(1, transcription="old text")
    failure = Failure(FailureKind.API_ERROR, "invalid key")
    manager = _manager(catalog, FakeProvider({1: failure}))

    async def scenario():
        job = manager.start(1)
        return job, await job.wait()

    job, outcome = asyncio.run(scenario())

    assert outcome == failure
    assert job.outcome == failure
    entry = catalog.get(1)
    assert entry.transcription == "old text"
    assert entry.transcription_state is TranscriptionState.FAILED


def test_second_start_returns_running_job():
    catalog = _catalog(1)
    provider = FakeProvider(hold=True)
    manager = _manager(catalog, provider)

    async def scenario():
        first = manager.start(1)
        await asyncio.sleep(0)
        second = manager.start(1)
        assert second is first
        assert manager.active_jobs() == [first]
        manager.cancel(1)
        await first.wait()
        return first

    asyncio.run(scenario())

    assert provider.calls == [1]


def test_cancel_returns_entry_to_idle():
    catalog = _catalog(1, transcription="before")
    provider = FakeProvider(hold=True)
    manager = _manager(catalog, provider)

    async def scenario():
        job = manager.start(1)
        await asyncio.sleep(0)
        assert job.progress == 0.5
        assert manager.cancel(1) is True
        assert catalog.get(1).transcription_state is TranscriptionState.IDLE
        assert manager.cancel(1) is False
        return job, await job.wait()

    job, outcome = asyncio.run(scenario())

    assert outcome is None
    assert job.cancelled
    assert provider.cancelled == [1]
    entry = catalog.get(1)
    assert entry.transcription == "before"
    assert entry.transcription_state is TranscriptionState.IDLE


def test_completed_entry_can_be_transcribed_again():
    catalog = _catalog(1)
    provider = FakeProvider()
    manager = _manager(catalog, provider)

    async def scenario():
        first = manager.start(1)
        await first.wait()
        second = manager.start(1)
        assert second is not first
        await second.wait()

    asyncio.run(scenario())

    assert provider.calls == [1, 1]
    assert catalog.get(1).transcription_state is TranscriptionState.COMPLETE


def test_restart_right_after_cancel_runs_a_new_job():
    catalog = _catalog(1)
    provider = FakeProvider(hold=True)
    manager = _manager(catalog, provider)

    async def scenario():
        first = manager.start(1)
        await asyncio.sleep(0)
        manager.cancel(1)
        second = manager.start(1)
        assert second is not first
        assert catalog.get(1).transcription_state is TranscriptionState.IN_PROGRESS
        provider.hold = False
        return await first.wait(), await second.wait()

    first_outcome, second_outcome = asyncio.run(scenario())

    assert first_outcome is None
    assert second_outcome == Success("text 1")
    assert provider.calls == [1, 1]
    assert provider.cancelled == [1]
    assert catalog.get(1).transcription == "text 1"
    assert catalog.get(1).transcription_state is TranscriptionState.COMPLETE


class StubbornProvider:
    kind = ProviderKind.REMOTE

    def __init__(self):
        self.calls = 0

    async def run(self, entry, config, progress=None):
        self.calls += 1
        if self.calls == 1:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                return Success("stale")
        return Success("fresh")


def test_cancelled_job_that_ignores_cancellation_never_writes():
    catalog = _catalog(1)
    manager = _manager(catalog, StubbornProvider())

    async def scenario():
        first = manager.start(1)
        await asyncio.sleep(0)
        manager.cancel(1)
        second = manager.start(1)
        return await first.wait(), await second.wait()

    first_outcome, second_outcome = asyncio.run(scenario())

    assert first_outcome is None
    assert second_outcome == Success("fresh")
    assert catalog.get(1).transcription == "fresh"


def test_wait_on_unstarted_job_raises():
    job = TranscriptionJob(1, ProviderKind.REMOTE)

    with pytest.raises(RuntimeError):
        asyncio.run(job.wait())


def test_provider_crash_fails_only_its_job():
    catalog = _catalog(1, 2)
    manager = _manager(catalog, FakeProvider(error=ValueError("boom")))

    async def scenario():
        return await manager.start(1).wait()

    outcome = asyncio.run(scenario())

    assert outcome == Failure(FailureKind.UNEXPECTED_ERROR, "boom")
    assert catalog.get(1).transcription_state is TranscriptionState.FAILED
    assert catalog.get(2).transcription_state is TranscriptionState.IDLE


def test_empty_success_is_not_complete():
    catalog = _catalog(1)
    manager = _manager(catalog, FakeProvider({1: Success("  ")}))

    async def scenario():
        return await manager.start(1).wait()

    outcome = asyncio.run(scenario())

    assert outcome.kind is FailureKind.UNEXPECTED_ERROR
    assert catalog.get(1).transcription is None
    assert catalog.get(1).transcription_state is TranscriptionState.FAILED


def test_bulk_reports_every_entry():
    catalog = _catalog(1, 2, 3)
    provider = FakeProvider({2: Failure(FailureKind.TRANSPORT, "reset")})
    manager = _manager(catalog, provider)
    progress = []

    async def scenario():
        return await manager.run_bulk([1, 2, 3, 1], on_progress=lambda job, partial: progress.append(job.entry_id))

    report = asyncio.run(scenario())

    assert sorted(report.succeeded) == [1, 3]
    assert report.failed == {2: Failure(FailureKind.TRANSPORT, "reset")}
    assert report.cancelled == []
    assert report.total == 3
    assert sorted(progress) == [1, 2, 3]
    assert catalog.get(1).transcription == "text 1"
    assert catalog.get(2).transcription_state is TranscriptionState.FAILED


def test_bulk_waits_for_cancelled_jobs():
    catalog = _catalog(1, 2)
    provider = FakeProvider(hold=True)
    manager = _manager(catalog, provider)

    async def scenario():
        bulk = asyncio.ensure_future(manager.run_bulk([1, 2]))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        manager.cancel(1)
        manager.cancel(2)
        return await bulk

    report = asyncio.run(scenario())

    assert sorted(report.cancelled) == [1, 2]
    assert all(entry.transcription_state is TranscriptionState.IDLE for entry in catalog)


def test_bulk_with_unknown_id_starts_nothing():
    catalog = _catalog(1, 2)
    provider = FakeProvider()
    manager = _manager(catalog, provider)

    async def scenario():
        with pytest.raises(CatalogError):
            await manager.run_bulk([1, 99])
        await asyncio.sleep(0)
        return manager.active_jobs()

    assert asyncio.run(scenario()) == []
    assert provider.calls == []
    assert catalog.get(1).transcription_state is TranscriptionState.IDLE


def test_bulk_with_unknown_provider_starts_nothing():
    catalog = _catalog(1, 2)
    manager = JobManager(catalog, Config())

    async def scenario():
        with pytest.raises(ConfigError):
            await manager.run_bulk([1, 2], provider="fax")
        return manager.active_jobs()

    assert asyncio.run(scenario()) == []
    assert all(entry.transcription_state is TranscriptionState.IDLE for entry in catalog)


def test_cancel_aborts_remote_request(tmp_path):
    audio = tmp_path / "memo.m4a"
    audio.write_bytes(b"AUDIO")
    catalog = Catalog(
        [
            CatalogEntry(
                id=7,
                file_location=audio,
                title="Memo",
                recorded_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
                duration_seconds=1.0,
            )
        ]
    )
    aborted = []

    async def scenario():
        started = asyncio.Event()

        async def handler(request):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                aborted.append(request.url.path)
                raise
            return httpx.Response(200, json={"text": "never"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = RemoteProvider(RemoteTranscriptionClient(client=client))
            manager = JobManager(
                catalog,
                Config(openai_api_key="sk-test"),
                provider_factory=lambda kind, config: provider,
            )
            job = manager.start(7)
            await started.wait()
            manager.cancel(7)
            return await job.wait()

    assert asyncio.run(scenario()) is None
    assert aborted == ["/v1/audio/transcriptions"]
    assert catalog.get(7).transcription_state is TranscriptionState.IDLE
    assert catalog.get(7).transcription is None


def test_cancel_stops_on_device_driver(tmp_path):
    audio = tmp_path / "memo.m4a"
    audio.write_bytes(b"AUDIO")
    release = threading.Event()
    finished = threading.Event()

    class GatedRecognizer:
        def recognize(self, audio_path):
            yield SpeechSegment(text="first", index=0, total=2)
            release.wait(5)
            yield SpeechSegment(text="second", index=1, total=2)
            finished.set()

    catalog = Catalog(
        [
            CatalogEntry(
                id=3,
                file_location=audio,
                title="Memo",
                recorded_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
                duration_seconds=1.0,
            )
        ]
    )
    provider = OnDeviceProvider(OnDeviceDriver(GatedRecognizer()))
    manager = JobManager(catalog, Config(), provider_factory=lambda kind, config: provider)

    async def scenario():
        job = manager.start(3)
        while job.progress == 0.0:
            await asyncio.sleep(0.01)
        manager.cancel(3)
        outcome = await job.wait()
        release.set()
        await asyncio.sleep(0.05)
        return job, outcome

    job, outcome = asyncio.run(scenario())

    assert outcome is None
    assert job.partial_text == "first"
    assert not finished.is_set()
    assert catalog.get(3).transcription_state is TranscriptionState.IDLE
