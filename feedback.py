"""Audio feedback cues.  Fire-and-forget: playback never affects scoring."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, Protocol

log = logging.getLogger("dialog_drill.feedback")


class FeedbackCue(str, Enum):
    GREAT = "great"
    WRONG = "wrong"


class Feedback(Protocol):
    def speak(self, cue: FeedbackCue) -> None: ...


class LogFeedback:
    """Default collaborator when nothing can play sound."""

    def speak(self, cue: FeedbackCue) -> None:
        log.info("event=feedback_cue cue=%s", cue.value)


class CallbackFeedback:
    """Hands each cue to `sink`, e.g. a websocket fan-out to the client player."""

    def __init__(self, sink: Callable[[FeedbackCue], None]) -> None:
        self._sink = sink

    def speak(self, cue: FeedbackCue) -> None:
        self._sink(cue)


def speak_safely(feedback: Optional[Feedback], cue: FeedbackCue) -> None:
    if feedback is None:
        return
    try:
        feedback.speak(cue)
    except Exception as exc:
        log.warning("event=feedback_failed cue=%s error=%s", cue.value, exc)
