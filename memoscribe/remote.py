"""Client for the hosted OpenAI transcription endpoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
from pydantic import BaseModel, ValidationError

from . import multipart
from .models import Failure, FailureKind, Success, TranscriptionOutcome

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_MODEL = "whisper-1"


class TranscriptionResponse(BaseModel):
    text: str


class ApiErrorDetail(BaseModel):
    message: str
    type: str
    param: Optional[str] = None
    code: Optional[str] = None


class ApiErrorResponse(BaseModel):
    error: ApiErrorDetail


def parse_response(status_code: int, content: bytes) -> TranscriptionOutcome:
    """Map a raw HTTP response to a transcription outcome."""

    if not 200 <= status_code <= 299:
        try:
            api_error = ApiErrorResponse.model_validate_json(content)
        except ValidationError:
            return Failure(FailureKind.UNEXPECTED_STATUS, str(status_code))
        return Failure(FailureKind.API_ERROR, api_error.error.message)

    try:
        payload = TranscriptionResponse.model_validate_json(content)
    except ValidationError as exc:
        return Failure(FailureKind.MALFORMED_RESPONSE, f"{exc.error_count()} validation error(s)")
    text = payload.text.strip()
    if not text:
        return Failure(FailureKind.MALFORMED_RESPONSE, "response contained no transcript text")
    return Success(text)


class RemoteTranscriptionClient:
    """Upload one audio file per call and wait for its transcript.

    No retries and no timeout are applied here; callers that want bounded
    latency cancel the awaiting task.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        model: str = DEFAULT_MODEL,
        client: Optional[httpx.AsyncClient] = None,
        verify_ssl: bool = True,
    ) -> None:
        self.api_url = api_url
        self.model = model
        self._client = client
        self._verify_ssl = verify_ssl

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=None, verify=self._verify_ssl) as client:
            yield client

    async def transcribe(self, file_location: Path, api_key: str) -> TranscriptionOutcome:
        file_location = Path(file_location)
        if not file_location.exists():
            return Failure(FailureKind.FILE_NOT_FOUND, str(file_location))

        boundary = multipart.new_boundary()
        try:
            body = multipart.encode(file_location, {"model": self.model}, boundary)
        except multipart.SourceUnreadable as exc:
            return Failure(FailureKind.SOURCE_UNREADABLE, str(exc))

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": multipart.content_type(boundary),
        }
        logger.debug("Uploading %s (%d bytes) to %s", file_location.name, len(body), self.api_url)
        try:
            async with self._session() as client:
                response = await client.post(self.api_url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            detail = str(exc) or exc.__class__.__name__
            logger.debug("Transport failure for %s: %s", file_location.name, detail)
            return Failure(FailureKind.TRANSPORT, detail)

        logger.debug("Transcription endpoint answered %s", response.status_code)
        return parse_response(response.status_code, response.content)
