"""FastAPI application exposing the recordings catalog and transcription jobs."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from ..catalog import Catalog, CatalogError, LoadResult, StoreUnavailable, loader_for
from ..config import ConfigError, load_config
from ..export import ExportError, export_catalog
from ..jobs import JobManager, ProviderFactory, TranscriptionJob
from ..models import CatalogEntry, Config, Failure, Success
from ..providers import get_provider

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str = "ok"
    recordings: int
    provider: str


class RecordingPayload(BaseModel):
    id: int
    title: str
    file_location: str
    recorded_at: datetime
    duration_seconds: float
    transcription: Optional[str]
    transcription_state: str


class OutcomePayload(BaseModel):
    success: bool
    text: Optional[str] = None
    kind: Optional[str] = None
    detail: Optional[str] = None


class JobPayload(BaseModel):
    recording_id: int
    provider: str
    progress: float
    partial_text: str
    done: bool
    cancelled: bool
    outcome: Optional[OutcomePayload] = None


class RefreshResponse(BaseModel):
    loaded: int
    skipped: int


class ExportRequest(BaseModel):
    directory: Optional[str] = None


class ExportResponse(BaseModel):
    written: List[str] = Field(default_factory=list)
    skipped: List[int] = Field(default_factory=list)


def _entry_to_payload(entry: CatalogEntry) -> RecordingPayload:
    return RecordingPayload(
        id=entry.id,
        title=entry.title,
        file_location=str(entry.file_location),
        recorded_at=entry.recorded_at,
        duration_seconds=entry.duration_seconds,
        transcription=entry.transcription,
        transcription_state=entry.transcription_state.value,
    )


def _job_to_payload(job: TranscriptionJob) -> JobPayload:
    outcome = None
    if isinstance(job.outcome, Success):
        outcome = OutcomePayload(success=True, text=job.outcome.text)
    elif isinstance(job.outcome, Failure):
        outcome = OutcomePayload(success=False, kind=job.outcome.kind.value, detail=job.outcome.detail)
    return JobPayload(
        recording_id=job.entry_id,
        provider=job.provider.value,
        progress=job.progress,
        partial_text=job.partial_text,
        done=job.done,
        cancelled=job.cancelled,
        outcome=outcome,
    )


def create_app(
    catalog: Optional[Catalog] = None,
    config: Optional[Config] = None,
    provider_factory: ProviderFactory = get_provider,
    loader: Optional[Callable[[], LoadResult]] = None,
) -> FastAPI:
    """Build the service; without an explicit catalog the store is loaded on startup."""

    cfg = config or load_config()
    load_recordings = loader or loader_for(cfg)
    recordings = catalog if catalog is not None else Catalog()
    jobs = JobManager(recordings, cfg, provider_factory)

    app = FastAPI(
        title="memoscribe API",
        description="Voice Memos catalog and transcription service.",
        version="0.1.0",
    )
    app.state.catalog = recordings
    app.state.jobs = jobs

    async def _refresh() -> LoadResult:
        result = await run_in_threadpool(load_recordings)
        recordings.replace(result.entries)
        return result

    if catalog is None:

        @app.on_event("startup")
        async def load_catalog() -> None:
            try:
                await _refresh()
            except StoreUnavailable as exc:
                logger.warning("Starting with an empty catalog: %s", exc)

    def _get_entry(recording_id: int) -> CatalogEntry:
        try:
            return recordings.get(recording_id)
        except CatalogError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @app.get("/health", response_model=HealthResponse)
    async def healthcheck() -> HealthResponse:
        return HealthResponse(recordings=len(recordings), provider=cfg.provider)

    @app.get("/recordings", response_model=list[RecordingPayload])
    async def list_recordings() -> list[RecordingPayload]:
        return [_entry_to_payload(entry) for entry in recordings.entries()]

    @app.get("/recordings/{recording_id}", response_model=RecordingPayload)
    async def get_recording(recording_id: int) -> RecordingPayload:
        return _entry_to_payload(_get_entry(recording_id))

    @app.post("/catalog/refresh", response_model=RefreshResponse)
    async def refresh_catalog() -> RefreshResponse:
        try:
            result = await _refresh()
        except (StoreUnavailable, CatalogError) as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return RefreshResponse(loaded=len(result.entries), skipped=result.skipped)

    @app.post(
        "/recordings/{recording_id}/transcription",
        response_model=JobPayload,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def start_transcription(recording_id: int, provider: Optional[str] = None) -> JobPayload:
        _get_entry(recording_id)
        try:
            job = jobs.start(recording_id, provider)
        except ConfigError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _job_to_payload(job)

    @app.get("/recordings/{recording_id}/transcription", response_model=JobPayload)
    async def get_transcription_job(recording_id: int) -> JobPayload:
        _get_entry(recording_id)
        job = jobs.job_for(recording_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No transcription job for recording")
        return _job_to_payload(job)

    @app.delete("/recordings/{recording_id}/transcription", status_code=status.HTTP_204_NO_CONTENT)
    async def cancel_transcription(recording_id: int) -> None:
        _get_entry(recording_id)
        if not jobs.cancel(recording_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No running transcription job")

    @app.post("/export", response_model=ExportResponse)
    async def export_transcriptions(request: ExportRequest) -> ExportResponse:
        directory = request.directory or cfg.export_dir
        if not directory:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No export directory configured")
        try:
            report = await run_in_threadpool(export_catalog, recordings.entries(), Path(directory))
        except ExportError as exc:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
        return ExportResponse(written=[str(path) for path in report.written], skipped=report.skipped)

    return app


app = create_app()
