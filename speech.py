"""
speech.py — Dialog Drill · Speech recognition sources
======================================================
The session never talks to a recognizer directly.  It owns one SpeechStream,
starts/stops it, and receives tagged events through a single async handler:

    Interim(text)   provisional text, replaces the previous interim
    Final(text)     recognizer-confirmed text, accumulated
    Ended()         the source stopped on its own (not by our stop())
    Errored(error)  runtime failure of the source

Backends
--------
  • PushSpeechStream      — events pushed from outside (browser Web Speech
                            client via POST /sessions/{id}/results, tests)
  • DeepgramSpeechStream  — Deepgram live websocket; raw audio is fed with
                            send_audio() (audio capture lives elsewhere)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from deepgram import DeepgramClient, LiveOptions, LiveTranscriptionEvents

from config import RecognitionConfig

log = logging.getLogger("dialog_drill.speech")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Interim:
    text: str


@dataclass(frozen=True)
class Final:
    text: str


@dataclass(frozen=True)
class Ended:
    pass


@dataclass(frozen=True)
class Errored:
    error: str


SpeechEvent = Union[Interim, Final, Ended, Errored]
EventHandler = Callable[[SpeechEvent], Awaitable[None]]


def results_to_events(result_index: int, results: list[dict]) -> list[SpeechEvent]:
    """Convert a recognizer result batch into tagged events.

    `results` is the Web Speech shape `[{"transcript": str, "isFinal": bool}]`;
    entries before `result_index` were already delivered and are skipped.
    Each final result becomes a Final; the interim pieces of the batch are
    concatenated into one Interim.
    """
    events: list[SpeechEvent] = []
    interim = ""
    for result in results[max(result_index, 0):]:
        text = str(result.get("transcript") or "")
        if result.get("isFinal"):
            events.append(Final(text))
        else:
            interim += text
    if interim.strip():
        events.append(Interim(interim))
    return events


class SpeechStreamError(RuntimeError):
    """Start/stop failure of a recognition source."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class SpeechStream(ABC):
    """Single-owner recognition source."""

    def __init__(self) -> None:
        self._handler: Optional[EventHandler] = None
        self._running = False

    def set_handler(self, handler: Optional[EventHandler]) -> None:
        self._handler = handler

    @property
    def running(self) -> bool:
        return self._running

    async def _emit(self, event: SpeechEvent) -> None:
        if self._handler is None:
            log.debug("event=speech_event_unhandled type=%s", type(event).__name__)
            return
        await self._handler(event)

    @abstractmethod
    async def start(self) -> None:
        """Begin recognition.  Raises SpeechStreamError if already running or on failure."""

    @abstractmethod
    async def stop(self) -> None:
        """End recognition.  Safe to call when not running."""


# ---------------------------------------------------------------------------
# Push backend
# ---------------------------------------------------------------------------

class PushSpeechStream(SpeechStream):
    """Recognition done elsewhere; results are pushed in."""

    async def start(self) -> None:
        if self._running:
            raise SpeechStreamError("recognition already started")
        self._running = True
        log.info("event=push_stream_started")

    async def stop(self) -> None:
        if self._running:
            log.info("event=push_stream_stopped")
        self._running = False

    async def push(self, event: SpeechEvent) -> bool:
        """Deliver one event.  Returns False when dropped (stream not running)."""
        if not self._running:
            log.debug("event=push_event_dropped type=%s reason=not_running", type(event).__name__)
            return False
        if isinstance(event, (Ended, Errored)):
            self._running = False
        await self._emit(event)
        return True


# ---------------------------------------------------------------------------
# Deepgram backend
# ---------------------------------------------------------------------------

class DeepgramSpeechStream(SpeechStream):
    """Deepgram live transcription over the async websocket client."""

    def __init__(self, api_key: str, config: RecognitionConfig) -> None:
        super().__init__()
        self._client = DeepgramClient(api_key)
        self._config = config
        self._connection = None
        self._stopping = False

    def _live_options(self) -> LiveOptions:
        cfg = self._config
        return LiveOptions(
            model=cfg.model,
            language=cfg.language,
            smart_format=cfg.smart_format,
            punctuate=cfg.punctuate,
            interim_results=cfg.interim_results,
            endpointing=cfg.endpointing,
            encoding=cfg.encoding,
            sample_rate=cfg.sample_rate,
            channels=1,
        )

    async def start(self) -> None:
        if self._running:
            raise SpeechStreamError("recognition already started")

        connection = self._client.listen.asyncwebsocket.v("1")
        connection.on(LiveTranscriptionEvents.Transcript, self._on_transcript)
        connection.on(LiveTranscriptionEvents.Error, self._on_error)
        connection.on(LiveTranscriptionEvents.Close, self._on_close)

        self._stopping = False
        if await connection.start(self._live_options()) is False:
            raise SpeechStreamError("deepgram connection failed to start")

        self._connection = connection
        self._running = True
        log.info("event=deepgram_stream_started model=%s language=%s", self._config.model, self._config.language)

    async def stop(self) -> None:
        connection, self._connection = self._connection, None
        self._running = False
        if connection is None:
            return
        self._stopping = True
        try:
            await connection.finish()
        except Exception as exc:
            raise SpeechStreamError(f"deepgram finish failed: {exc}") from exc
        log.info("event=deepgram_stream_stopped")

    async def send_audio(self, data: bytes) -> None:
        if not self._running or self._connection is None:
            return
        await self._connection.send(data)

    # -- Deepgram callbacks (invoked as handler(connection, **kwargs)) ---------

    async def _on_transcript(self, *args, **kwargs) -> None:
        result = kwargs.get("result")
        if not result or not result.channel or not result.channel.alternatives:
            return
        text = result.channel.alternatives[0].transcript
        if not text:
            return
        await self._emit(Final(text) if result.is_final else Interim(text))

    async def _on_error(self, *args, **kwargs) -> None:
        error = kwargs.get("error")
        log.warning("event=deepgram_error error=%s", error)
        connection, self._connection = self._connection, None
        self._running = False
        if connection is not None:
            self._stopping = True
            try:
                await connection.finish()
            except Exception as exc:
                log.warning("event=deepgram_finish_failed error=%s", exc)
        await self._emit(Errored(str(error)))

    async def _on_close(self, *args, **kwargs) -> None:
        if self._stopping:
            return
        if args and args[0] is not self._connection:
            return  # late close of a connection already replaced
        log.info("event=deepgram_closed_unsolicited")
        self._running = False
        self._connection = None
        await self._emit(Ended())


def create_speech_stream(config: RecognitionConfig, api_key: Optional[str] = None) -> Optional[SpeechStream]:
    """Build the configured backend, or None when the capability is absent."""
    if config.backend == "push":
        return PushSpeechStream()

    if not api_key:
        log.warning("event=speech_unavailable backend=deepgram reason=missing_api_key")
        return None
    try:
        return DeepgramSpeechStream(api_key, config)
    except Exception as exc:
        log.warning("event=speech_unavailable backend=deepgram error=%s", exc)
        return None
