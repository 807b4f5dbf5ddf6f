"""Streaming on-device speech recognition."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, Iterator, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SpeechSegment:
    """One recognized stretch of speech, ``index`` out of ``total``."""

    text: str
    index: int
    total: int


@dataclass(frozen=True, slots=True)
class PartialResult:
    text: str
    progress: float


@dataclass(frozen=True, slots=True)
class FinalResult:
    text: str


@dataclass(frozen=True, slots=True)
class RecognitionFailure:
    detail: str


RecognitionEvent = Union[PartialResult, FinalResult, RecognitionFailure]


class Recognizer(Protocol):
    """Speech recognition capability driven by :class:`OnDeviceDriver`."""

    def recognize(self, audio_path: Path) -> Iterable[SpeechSegment]:
        """Yield recognized segments in order. Called on a worker thread."""


class WhisperRecognizer:
    """Local recognition using the `openai-whisper` package."""

    def __init__(self, model_name: str = "base") -> None:
        self.model_name = model_name
        try:
            import torch
            import whisper  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "The `openai-whisper` package is required for on-device transcription."
            ) from exc
        self._whisper = whisper
        self.device = "cuda" if torch.cuda.is_available() else "cpu"
        self._model = None
        self._lock = threading.Lock()
        self._decode_lock = threading.Lock()

    def _load(self):  # pragma: no cover - loads model weights
        with self._lock:
            if self._model is None:
                logger.info("Loading whisper model %s on %s", self.model_name, self.device)
                self._model = self._whisper.load_model(self.model_name, device=self.device)
        return self._model

    def recognize(self, audio_path: Path) -> Iterator[SpeechSegment]:
        """Transcribe ``audio_path`` one 30 second window at a time.

        Each window's text is the prompt for the next one and a segment is
        yielded as soon as its window is decoded. Jobs sharing the model take
        turns window by window.
        """

        model = self._load()
        audio = self._whisper.load_audio(str(audio_path))
        window = self._whisper.audio.N_SAMPLES
        total = max(1, -(-len(audio) // window))
        previous = None
        for index in range(total):
            with self._decode_lock:
                result = model.transcribe(
                    audio[index * window:(index + 1) * window],
                    task="transcribe",
                    temperature=0.0,
                    fp16=self.device == "cuda",
                    initial_prompt=previous,
                )
            text = (result.get("text") or "").strip()
            if text:
                previous = text
            yield SpeechSegment(text=text, index=index, total=total)


_STOPPED = object()


class RecognitionTask:
    """A running recognition whose events are consumed with ``async for``.

    The recognizer runs on a daemon thread and posts events into the event
    loop that started the task. The stream ends after exactly one
    :class:`FinalResult` or :class:`RecognitionFailure`, or right after
    :meth:`cancel`.
    """

    def __init__(self, recognizer: Recognizer, audio_path: Path, loop: asyncio.AbstractEventLoop) -> None:
        self.audio_path = audio_path
        self._recognizer = recognizer
        self._loop = loop
        self._events: asyncio.Queue = asyncio.Queue()
        self._stop = threading.Event()
        self._finished = False
        self._thread = threading.Thread(
            target=self._work,
            name=f"recognizer-{audio_path.name}",
            daemon=True,
        )

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def begin(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Stop recognition; no event is delivered once this returns."""

        if self._stop.is_set():
            return
        self._stop.set()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._events.put_nowait(_STOPPED)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._events.put_nowait, _STOPPED)

    def __aiter__(self) -> AsyncIterator[RecognitionEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RecognitionEvent]:
        while not self._finished:
            event = await self._events.get()
            if event is _STOPPED or self._stop.is_set():
                self._finished = True
                return
            if isinstance(event, (FinalResult, RecognitionFailure)):
                self._finished = True
            yield event

    def _work(self) -> None:
        pieces: List[str] = []
        progress = 0.0
        try:
            for segment in self._recognizer.recognize(self.audio_path):
                if self._stop.is_set():
                    return
                text = segment.text.strip()
                if text:
                    pieces.append(text)
                if segment.total > 0:
                    progress = max(progress, min(1.0, (segment.index + 1) / segment.total))
                self._post(PartialResult(" ".join(pieces), progress))
        except Exception as exc:  # noqa: BLE001 - recognizer errors become a terminal event
            logger.debug("Recognition of %s failed", self.audio_path, exc_info=True)
            self._post(RecognitionFailure(str(exc) or exc.__class__.__name__))
            return

        if not pieces:
            self._post(RecognitionFailure("no speech recognized"))
        else:
            self._post(FinalResult(" ".join(pieces)))

    def _post(self, event: RecognitionEvent) -> None:
        if self._stop.is_set():
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, event)
        except RuntimeError:
            logger.debug("Event loop closed; dropping %s", type(event).__name__)

    def _deliver(self, event: RecognitionEvent) -> None:
        if not self._stop.is_set():
            self._events.put_nowait(event)


class OnDeviceDriver:
    """Start recognition tasks against a :class:`Recognizer` capability."""

    def __init__(self, recognizer: Optional[Recognizer] = None, model_name: str = "base") -> None:
        self._recognizer = recognizer
        self.model_name = model_name
        self._lock = threading.Lock()

    @property
    def recognizer(self) -> Recognizer:
        with self._lock:
            if self._recognizer is None:
                self._recognizer = WhisperRecognizer(self.model_name)
        return self._recognizer

    def start(self, file_location: Path) -> RecognitionTask:
        """Begin recognizing ``file_location``; must be called from a running event loop."""

        task = RecognitionTask(self.recognizer, Path(file_location), asyncio.get_running_loop())
        task.begin()
        return task
