import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from memoscribe.config import ConfigError
from memoscribe.models import CatalogEntry, Config, Failure, FailureKind, Success
from memoscribe.on_device import OnDeviceDriver, SpeechSegment
from memoscribe.providers import (
    OnDeviceProvider,
    ProviderKind,
    RemoteProvider,
    get_provider,
    shared_driver,
)
from memoscribe.remote import RemoteTranscriptionClient


class ListRecognizer:
    def __init__(self, texts):
        self.texts = texts

    def recognize(self, audio_path):
        for index, text in enumerate(self.texts):
            yield SpeechSegment(text=text, index=index, total=len(self.texts))


class FailingRecognizer:
    def recognize(self, audio_path):
        raise RuntimeError("no model")


def _entry(path):
    return CatalogEntry(
        id=1,
        file_location=path,
        title="Memo",
        recorded_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        duration_seconds=2.0,
    )


def _run_remote(config, audio, response=None):
    calls = []

    def handler(request):
        calls.append(request)
        return response or httpx.Response(200, json={"text": "remote text"})

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = RemoteProvider(RemoteTranscriptionClient(client=client))
            return await provider.run(_entry(audio), config)

    return asyncio.run(scenario()), calls


def test_remote_without_key_makes_no_request(tmp_path):
    audio = tmp_path / "memo.m4a"
    audio.write_bytes(b"AUDIO")

    for key in (None, "", "   "):
        outcome, calls = _run_remote(Config(provider="remote", openai_api_key=key), audio)
        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.MISSING_CREDENTIAL
        assert calls == []


def test_remote_with_key_delegates_to_client(tmp_path):
    audio = tmp_path / "memo.m4a"
    audio.write_bytes(b"AUDIO")

    outcome, calls = _run_remote(Config(openai_api_key=" sk-live "), audio)

    assert outcome == Success("remote text")
    assert calls[0].headers["Authorization"] == "Bearer sk-live"


def test_remote_api_error(tmp_path):
    audio = tmp_path / "memo.m4a"
    audio.write_bytes(b"AUDIO")
    response = httpx.Response(401, json={"error": {"message": "invalid key", "type": "auth"}})

    outcome, _ = _run_remote(Config(openai_api_key="sk-bad"), audio, response)

    assert outcome == Failure(FailureKind.API_ERROR, "invalid key")


def test_on_device_forwards_partials(tmp_path):
    audio = tmp_path / "memo.m4a"
    audio.write_bytes(b"AUDIO")
    seen = []

    async def scenario():
        provider = OnDeviceProvider(OnDeviceDriver(ListRecognizer(["one", "two"])))
        return await provider.run(_entry(audio), Config(), progress=seen.append)

    outcome = asyncio.run(scenario())

    assert outcome == Success("one two")
    assert [partial.progress for partial in seen] == [0.5, 1.0]
    assert seen[-1].text == "one two"


def test_on_device_recognition_error(tmp_path):
    audio = tmp_path / "memo.m4a"
    audio.write_bytes(b"AUDIO")

    async def scenario():
        provider = OnDeviceProvider(OnDeviceDriver(FailingRecognizer()))
        return await provider.run(_entry(audio), Config())

    assert asyncio.run(scenario()) == Failure(FailureKind.RECOGNITION_ERROR, "no model")


def test_on_device_missing_file(tmp_path):
    async def scenario():
        provider = OnDeviceProvider(OnDeviceDriver(ListRecognizer(["unused"])))
        return await provider.run(_entry(tmp_path / "gone.m4a"), Config())

    assert asyncio.run(scenario()).kind is FailureKind.FILE_NOT_FOUND


def test_get_provider_selects_by_name():
    config = Config(provider="remote")
    assert get_provider(None, config).kind is ProviderKind.REMOTE
    assert get_provider("on_device", config).kind is ProviderKind.ON_DEVICE

    with pytest.raises(ConfigError):
        get_provider("carrier-pigeon", config)


def test_on_device_providers_share_one_driver_per_model():
    config = Config(whisper_model="tiny")

    first = get_provider("on_device", config)
    second = get_provider("on_device", config)
    other = get_provider("on_device", Config(whisper_model="small"))

    assert first._driver is second._driver
    assert first._driver.model_name == "tiny"
    assert other._driver is not first._driver
    assert shared_driver("tiny") is first._driver
