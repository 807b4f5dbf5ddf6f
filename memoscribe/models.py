"""Dataclasses describing catalog entries, outcomes and configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Union


class TranscriptionState(str, Enum):
    """In-memory transcription status of a catalog entry."""

    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class FailureKind(str, Enum):
    FILE_NOT_FOUND = "file_not_found"
    SOURCE_UNREADABLE = "source_unreadable"
    MISSING_CREDENTIAL = "missing_credential"
    API_ERROR = "api_error"
    UNEXPECTED_STATUS = "unexpected_status"
    MALFORMED_RESPONSE = "malformed_response"
    TRANSPORT = "transport"
    RECOGNITION_ERROR = "recognition_error"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass(slots=True)
class CatalogEntry:
    """One recording from the Voice Memos library."""

    id: int
    file_location: Path
    title: str
    recorded_at: datetime
    duration_seconds: float
    transcription: Optional[str] = None
    transcription_state: TranscriptionState = TranscriptionState.IDLE


@dataclass(frozen=True, slots=True)
class Success:
    text: str


@dataclass(frozen=True, slots=True)
class Failure:
    kind: FailureKind
    detail: str = ""

    def describe(self) -> str:
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


TranscriptionOutcome = Union[Success, Failure]


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    provider: str = "on_device"
    openai_api_key: Optional[str] = None
    openai_model: str = "whisper-1"
    api_url: str = "https://api.openai.com/v1/audio/transcriptions"
    whisper_model: str = "base"
    store_path: Optional[str] = None
    recordings_dir: Optional[str] = None
    export_dir: Optional[str] = None
    verify_ssl: bool = True
