import pytest

from config import PracticeConfig, TimingConfig
from dialog import DialogLine, parse_dialog_script
from feedback import FeedbackCue
from session import DialogSession
from speech import Ended, Errored, Final, Interim, SpeechStream, SpeechStreamError


class FakeSpeechStream(SpeechStream):
    """Deterministic recognizer: tests decide what is heard and when."""

    def __init__(self, fail_starts: int = 0) -> None:
        super().__init__()
        self.starts = 0
        self.stops = 0
        self.fail_starts = fail_starts

    async def start(self) -> None:
        if self._running:
            raise SpeechStreamError("recognition already started")
        if self.fail_starts:
            self.fail_starts -= 1
            raise SpeechStreamError("microphone busy")
        self._running = True
        self.starts += 1

    async def stop(self) -> None:
        if self._running:
            self.stops += 1
        self._running = False

    async def hear(self, text: str, final: bool = True) -> None:
        await self._emit(Final(text) if final else Interim(text))

    async def end(self) -> None:
        self._running = False
        await self._emit(Ended())

    async def fail(self, error: str = "network") -> None:
        self._running = False
        await self._emit(Errored(error))


class RecordingFeedback:
    def __init__(self) -> None:
        self.cues: list[FeedbackCue] = []

    def speak(self, cue: FeedbackCue) -> None:
        self.cues.append(cue)


FAST_TIMING = TimingConfig(
    start_guard_sec=0.01,
    celebration_sec=0.05,
    game_over_delay_sec=0.03,
    inactivity_poll_sec=0.01,
    inactivity_timeout_sec=0.05,
    error_retry_sec=0.02,
    auto_advance_sec=None,
    finalize_on_silence=True,
)


@pytest.fixture
def fast_config() -> PracticeConfig:
    return PracticeConfig(timing=FAST_TIMING.model_copy())


@pytest.fixture
def stream() -> FakeSpeechStream:
    return FakeSpeechStream()


@pytest.fixture
def feedback() -> RecordingFeedback:
    return RecordingFeedback()


@pytest.fixture
async def make_session(stream, feedback, fast_config):
    created: list[DialogSession] = []

    def _make(script: str = "anna: I like apples\njohn: red fox runs", **kwargs) -> DialogSession:
        lines: list[DialogLine] = parse_dialog_script(script)
        kwargs.setdefault("stream", stream)
        kwargs.setdefault("feedback", feedback)
        kwargs.setdefault("config", fast_config)
        session = DialogSession(lines, **kwargs)
        created.append(session)
        return session

    yield _make

    for session in created:
        await session.close()
