"""Transcription providers sharing one contract."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

from .config import ConfigError
from .models import CatalogEntry, Config, Failure, FailureKind, Success, TranscriptionOutcome
from .on_device import FinalResult, OnDeviceDriver, PartialResult, RecognitionFailure
from .remote import RemoteTranscriptionClient

logger = logging.getLogger(__name__)

ProgressSink = Callable[[PartialResult], None]

_drivers_lock = threading.Lock()
_drivers: Dict[str, OnDeviceDriver] = {}


class ProviderKind(str, Enum):
    REMOTE = "remote"
    ON_DEVICE = "on_device"


class TranscriptionProvider(Protocol):
    """Common interface for transcription providers."""

    kind: ProviderKind

    async def run(
        self,
        entry: CatalogEntry,
        config: Config,
        progress: Optional[ProgressSink] = None,
    ) -> TranscriptionOutcome:
        """Transcribe ``entry`` and return its outcome; never raises for transcription errors."""


class RemoteProvider:
    """Hosted transcription through the OpenAI API."""

    kind = ProviderKind.REMOTE

    def __init__(self, client: Optional[RemoteTranscriptionClient] = None) -> None:
        self._client = client

    def _client_for(self, config: Config) -> RemoteTranscriptionClient:
        if self._client is not None:
            return self._client
        return RemoteTranscriptionClient(
            api_url=config.api_url,
            model=config.openai_model,
            verify_ssl=config.verify_ssl,
        )

    async def run(
        self,
        entry: CatalogEntry,
        config: Config,
        progress: Optional[ProgressSink] = None,
    ) -> TranscriptionOutcome:
        api_key = (config.openai_api_key or "").strip()
        if not api_key:
            return Failure(FailureKind.MISSING_CREDENTIAL, "an OpenAI API key is required")
        return await self._client_for(config).transcribe(entry.file_location, api_key)


class OnDeviceProvider:
    """Local streaming recognition; partial results go to the progress sink."""

    kind = ProviderKind.ON_DEVICE

    def __init__(self, driver: Optional[OnDeviceDriver] = None) -> None:
        self._driver = driver

    def _driver_for(self, config: Config) -> OnDeviceDriver:
        if self._driver is None:
            self._driver = shared_driver(config.whisper_model)
        return self._driver

    async def run(
        self,
        entry: CatalogEntry,
        config: Config,
        progress: Optional[ProgressSink] = None,
    ) -> TranscriptionOutcome:
        if not entry.file_location.exists():
            return Failure(FailureKind.FILE_NOT_FOUND, str(entry.file_location))
        try:
            task = self._driver_for(config).start(entry.file_location)
        except RuntimeError as exc:
            return Failure(FailureKind.RECOGNITION_ERROR, str(exc))

        try:
            async for event in task:
                if isinstance(event, PartialResult):
                    if progress is not None:
                        progress(event)
                elif isinstance(event, FinalResult):
                    return Success(event.text)
                elif isinstance(event, RecognitionFailure):
                    return Failure(FailureKind.RECOGNITION_ERROR, event.detail)
        finally:
            # Covers cancellation of the awaiting job as well as normal exit.
            task.cancel()
        return Failure(FailureKind.RECOGNITION_ERROR, "recognition stopped without a result")


def shared_driver(model_name: str) -> OnDeviceDriver:
    """Return the process-wide driver for ``model_name`` so its model loads once."""

    with _drivers_lock:
        driver = _drivers.get(model_name)
        if driver is None:
            driver = OnDeviceDriver(model_name=model_name)
            _drivers[model_name] = driver
    return driver


def get_provider(kind: Optional[str], config: Config) -> TranscriptionProvider:
    """Return the provider named by ``kind``, defaulting to the configured one."""

    name = kind or config.provider
    try:
        selected = ProviderKind(name)
    except ValueError as exc:
        choices = ", ".join(k.value for k in ProviderKind)
        raise ConfigError(f"Unknown transcription provider {name!r} (expected one of: {choices})") from exc

    if selected is ProviderKind.REMOTE:
        return RemoteProvider()
    return OnDeviceProvider(shared_driver(config.whisper_model))
