"""
session.py — Dialog Drill · Practice session state machine
===========================================================
One DialogSession per learner run-through of a dialogue.  It owns the
speech source, the per-line word statuses and the session statistics, and
exposes the control surface used by the HTTP layer (or any other caller).

Line lifecycle
──────────────
    IDLE ──start_listening()──► STARTING ──(start guard)──► LISTENING
      ▲                                                        │
      │   every Interim/Final ─► real-time match ─► all words said?
      │                                  └─► celebrate once per attempt
      │                                                        │
      └──── finalize (stop_listening() / inactivity timeout) ◄─┘
                 ≥ pass threshold → completed, advance after celebration
                 < pass threshold → missed words recorded, retry

Async safety
────────────
All work runs on one event loop, but speech events, timers and control calls
interleave at every await.  Therefore:
  • every delayed callback re-reads `_line_index` / `_attempt` when it runs
    and gives up if they no longer match what it was scheduled for;
  • `_finalized_attempt` is set before the first await of a finalize, so an
    inactivity timeout racing an explicit stop scores the attempt once;
  • `_alive` is the liveness token: after close() nothing mutates state.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum, auto
from functools import partial
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from config import PracticeConfig
from dialog import DialogLine, LineStatus, WordState
from feedback import Feedback, FeedbackCue, LogFeedback, speak_safely
from matcher import match_percentage, match_words
from speech import Ended, Errored, Final, Interim, SpeechEvent, SpeechStream
from stats import SessionStats
from transcript import TranscriptBuffer

log = logging.getLogger("dialog_drill.session")

FALLBACK_CHARACTER = "john"
MAX_SOURCE_RESTARTS = 1  # per listening attempt

ChangeListener = Callable[[str, "DialogSession"], None]


class _Phase(Enum):
    IDLE      = auto()   # not listening
    STARTING  = auto()   # attempt opened, waiting out the start guard
    LISTENING = auto()   # source running, matching in real time


class SessionSnapshot(BaseModel):
    """Read-only view of a session for renderers and the HTTP API."""
    lines: list[DialogLine]
    current_line_index: int
    current_character: str
    transcript: str
    is_listening: bool
    is_processing_speech: bool
    ready_for_speech: bool
    speech_available: bool
    feedback_message: str
    show_celebration: bool
    missed_words: list[str]
    missed_words_count: int
    correct_words_count: int
    accuracy: int
    total_words: int
    completed_lines: list[int]
    is_game_over: bool


class DialogSession:
    """Aligns live speech against a sequence of dialogue lines."""

    def __init__(
        self,
        lines: list[DialogLine],
        *,
        stream: Optional[SpeechStream] = None,
        config: Optional[PracticeConfig] = None,
        feedback: Optional[Feedback] = None,
        initial_line_index: int = 0,
        on_change: Optional[ChangeListener] = None,
    ) -> None:
        self._lines = lines
        self._config = config or PracticeConfig()
        self._feedback = feedback or LogFeedback()
        self._on_change = on_change
        self.stats = SessionStats(lines)

        self._stream = stream
        if stream is None:
            log.warning("event=speech_unavailable listening_disabled=true")
        else:
            stream.set_handler(self.handle_event)

        if not 0 <= initial_line_index < max(len(lines), 1):
            log.warning("event=initial_index_out_of_range index=%d lines=%d", initial_line_index, len(lines))
            initial_line_index = 0
        self._line_index = initial_line_index

        self._buffer = TranscriptBuffer()
        self._phase = _Phase.IDLE
        self._alive = True

        # Attempt bookkeeping: one attempt per start_listening()
        self._attempt = 0
        self._finalized_attempt = 0
        self._celebrated = False
        self._restarts = 0

        # Renderer-facing state
        self.transcript = ""
        self.feedback_message = ""
        self.show_celebration = False
        self.is_game_over = False

        # Timers
        self._tasks: set[asyncio.Task] = set()
        self._inactivity_task: Optional[asyncio.Task] = None
        self._advance_task: Optional[asyncio.Task] = None
        self._game_over_task: Optional[asyncio.Task] = None

        log.info(
            "event=session_created lines=%d total_words=%d speech=%s",
            len(lines), self.stats.total_words, type(stream).__name__ if stream else "none",
        )

    # -----------------------------------------------------------------------
    # Read-only state
    # -----------------------------------------------------------------------

    @property
    def lines(self) -> list[DialogLine]:
        return self._lines

    @property
    def current_line_index(self) -> int:
        return self._line_index

    @property
    def current_line(self) -> Optional[DialogLine]:
        return self._line_at(self._line_index)

    @property
    def current_character(self) -> str:
        line = self.current_line
        return line.character if line else FALLBACK_CHARACTER

    @property
    def is_listening(self) -> bool:
        return self._phase is not _Phase.IDLE

    @property
    def is_processing_speech(self) -> bool:
        return self._phase is not _Phase.IDLE

    @property
    def ready_for_speech(self) -> bool:
        return self._phase is _Phase.IDLE

    @property
    def speech_available(self) -> bool:
        return self._stream is not None

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def stream(self) -> Optional[SpeechStream]:
        return self._stream

    def are_all_lines_completed(self) -> bool:
        return self.stats.all_lines_completed()

    def snapshot(self) -> SessionSnapshot:
        stats = self.stats
        return SessionSnapshot(
            lines=[line.model_copy(deep=True) for line in self._lines],
            current_line_index=self._line_index,
            current_character=self.current_character,
            transcript=self.transcript,
            is_listening=self.is_listening,
            is_processing_speech=self.is_processing_speech,
            ready_for_speech=self.ready_for_speech,
            speech_available=self.speech_available,
            feedback_message=self.feedback_message,
            show_celebration=self.show_celebration,
            missed_words=stats.missed_words,
            missed_words_count=stats.missed_words_count,
            correct_words_count=stats.correct_words_count,
            accuracy=stats.accuracy,
            total_words=stats.total_words,
            completed_lines=stats.completed_lines,
            is_game_over=self.is_game_over,
        )

    # -----------------------------------------------------------------------
    # Control surface
    # -----------------------------------------------------------------------

    async def start_listening(self) -> None:
        """Open a new attempt on the current line and start the source."""
        if not self._alive:
            return
        if self._stream is None:
            log.debug("event=start_ignored reason=speech_unavailable")
            return
        line = self.current_line
        if line is None:
            log.warning("event=start_ignored reason=no_line index=%d", self._line_index)
            return

        self._cancel(self._inactivity_task)
        self._cancel(self._advance_task)
        self._attempt += 1
        attempt = self._attempt
        self._restarts = 0
        self._reset_attempt_state()
        self.feedback_message = ""
        self.show_celebration = False
        line.reset_words()
        self._phase = _Phase.STARTING
        log.info("event=listening_requested line=%d attempt=%d", self._line_index, attempt)
        self._notify("listening_requested")

        await self._stop_source()
        await asyncio.sleep(self._config.timing.start_guard_sec)
        if not self._attempt_is_current(attempt, _Phase.STARTING):
            log.info("event=start_abandoned attempt=%d", attempt)
            return

        try:
            await self._stream.start()
        except Exception as exc:
            log.warning("event=source_start_failed attempt=%d error=%s", attempt, exc)
            if self._attempt_is_current(attempt, _Phase.STARTING):
                self._to_baseline()
                self._notify("listening_failed")
            return

        if not self._attempt_is_current(attempt, _Phase.STARTING):
            # stopped or superseded while the source was starting
            await self._stop_source()
            return

        self._phase = _Phase.LISTENING
        self._buffer.touch()
        self._inactivity_task = self._spawn(self._inactivity_loop(attempt), "inactivity_monitor")
        log.info("event=phase_change new=LISTENING line=%d attempt=%d", self._line_index, attempt)
        self._notify("listening_started")

    async def stop_listening(self) -> None:
        """Stop the source and score the attempt if it has a final transcript."""
        if not self._alive or self._stream is None:
            return

        self._phase = _Phase.IDLE
        self._cancel(self._inactivity_task)
        await self._stop_source()
        if not self._alive:
            return

        if self._buffer.final_text and not self._celebrated:
            await self._finalize("stop")

        last = len(self._lines) - 1
        if self.stats.all_lines_completed() or (
            self._line_index == last and self.stats.is_completed(last)
        ):
            self._schedule_game_over()
        self._notify("listening_stopped")

    async def move_to_next_line(self) -> None:
        """Skip ahead regardless of score; on the last line, end the game."""
        if not self._alive or not self._lines:
            return

        self._abandon_attempt()
        index = self._line_index
        if index < len(self._lines) - 1:
            self._line_index = index + 1
            log.info("event=line_advanced reason=skip new=%d", self._line_index)
        else:
            log.info("event=last_line_skipped index=%d", index)
            self._schedule_game_over()
        self._notify("line_changed")
        await self._stop_source()

    async def set_current_line_index(self, index: int) -> None:
        """Jump to `index` (resume / seek).  Out-of-range indices are ignored."""
        if not self._alive:
            return
        if not 0 <= index < len(self._lines):
            log.warning("event=seek_ignored index=%d lines=%d", index, len(self._lines))
            return

        self._abandon_attempt()
        self._line_index = index
        log.info("event=line_seek new=%d", index)
        self._notify("line_changed")
        await self._stop_source()

    async def close(self) -> None:
        """Tear down: no callback may touch this session afterwards."""
        if not self._alive:
            return
        self._alive = False
        self._phase = _Phase.IDLE
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self._stream is not None:
            self._stream.set_handler(None)
        await self._stop_source()
        log.info("event=session_closed accuracy=%d completed=%d/%d",
                 self.stats.accuracy, len(self.stats.completed_lines), self.stats.total_lines)

    # -----------------------------------------------------------------------
    # Speech events
    # -----------------------------------------------------------------------

    async def handle_event(self, event: SpeechEvent) -> None:
        if not self._alive:
            log.debug("event=speech_event_dropped reason=closed type=%s", type(event).__name__)
            return

        if isinstance(event, (Interim, Final)):
            self._on_transcript(event)
        elif isinstance(event, Ended):
            await self._on_source_ended()
        elif isinstance(event, Errored):
            await self._on_source_error(event.error)

    def _on_transcript(self, event: Interim | Final) -> None:
        if self._phase is not _Phase.LISTENING:
            log.debug("event=transcript_dropped phase=%s", self._phase.name)
            return

        if isinstance(event, Final):
            self._buffer.add_final(event.text)
        else:
            self._buffer.add_interim(event.text)
        self.transcript = self._buffer.current.lower()

        self._evaluate_realtime()
        self._notify("transcript")

    def _evaluate_realtime(self) -> None:
        index = self._line_index
        line = self._line_at(index)
        if line is None:
            return

        result = match_words(line.words, self._buffer.current)
        line.apply_words(result.words)

        if not result.all_correct or self._celebrated:
            return

        self._celebrated = True
        self.feedback_message = self._config.feedback.realtime_success
        self.show_celebration = True
        line.score = 100.0
        self._cancel(self._inactivity_task)
        self._complete_line(index)
        log.info("event=realtime_all_correct line=%d attempt=%d", index, self._attempt)

        auto_advance = self._config.timing.auto_advance_sec
        if auto_advance is not None:
            self._advance_task = self._later(
                auto_advance, partial(self._auto_advance, self._attempt, index), "auto_advance",
            )

    async def _on_source_ended(self) -> None:
        if self._phase is not _Phase.LISTENING:
            return  # our own stop, or nothing to keep alive

        attempt = self._attempt
        if self._restarts < MAX_SOURCE_RESTARTS:
            self._restarts += 1
            log.info("event=source_ended_restart attempt=%d", attempt)
            if await self._restart_source(attempt):
                return

        log.info("event=source_ended_giving_up attempt=%d", attempt)
        self._phase = _Phase.IDLE
        self._cancel(self._inactivity_task)
        if self._buffer.final_text and not self._celebrated:
            await self._finalize("source_ended")
        self._notify("listening_stopped")

    async def _on_source_error(self, error: str) -> None:
        log.warning("event=source_error phase=%s error=%s", self._phase.name, error)
        if self._phase is _Phase.LISTENING and self._restarts < MAX_SOURCE_RESTARTS:
            self._restarts += 1
            self._later(
                self._config.timing.error_retry_sec,
                partial(self._retry_after_error, self._attempt),
                "error_retry",
            )
            return

        if self._phase is not _Phase.IDLE:
            self._to_baseline()
            self._notify("listening_failed")

    async def _retry_after_error(self, attempt: int) -> None:
        if not self._attempt_is_current(attempt, _Phase.LISTENING):
            return
        if not await self._restart_source(attempt):
            self._to_baseline()
            self._notify("listening_failed")

    async def _restart_source(self, attempt: int) -> bool:
        try:
            await self._stream.start()
        except Exception as exc:
            log.warning("event=source_restart_failed attempt=%d error=%s", attempt, exc)
            return False
        if not self._attempt_is_current(attempt, _Phase.LISTENING):
            await self._stop_source()
        return True

    # -----------------------------------------------------------------------
    # Finalize
    # -----------------------------------------------------------------------

    async def _finalize(self, reason: str) -> None:
        """Authoritative scoring of the current attempt.  Runs once per attempt."""
        if not self._alive or self._finalized_attempt == self._attempt:
            return
        index = self._line_index
        line = self._line_at(index)
        if line is None:
            return

        attempt = self._attempt
        self._finalized_attempt = attempt
        self._phase = _Phase.IDLE
        self._cancel(self._inactivity_task)

        result = match_words(line.words, self._buffer.final_text)
        line.apply_words(result.words)
        pct = match_percentage(result.correct_count, len(line.words))
        line.score = max(line.score, pct)
        log.info(
            "event=finalize reason=%s line=%d attempt=%d correct=%d/%d pct=%.1f",
            reason, index, attempt, result.correct_count, len(line.words), pct,
        )

        messages = self._config.feedback
        if pct >= self._config.scoring.pass_threshold:
            self.feedback_message = messages.success
            self.show_celebration = True
            speak_safely(self._feedback, FeedbackCue.GREAT)
            self._complete_line(index)
            self._advance_task = self._later(
                self._config.timing.celebration_sec,
                partial(self._advance_after_celebration, attempt, index),
                "celebration_advance",
            )
        else:
            missed = [w.word for w in line.words if w.status is not WordState.CORRECT]
            self.stats.record_missed(missed)
            self.feedback_message = messages.retry
            speak_safely(self._feedback, FeedbackCue.WRONG)
            self._reset_attempt_state()

        self._notify("finalized")
        await self._stop_source()

    async def _advance_after_celebration(self, attempt: int, index: int) -> None:
        if self._attempt != attempt or self._line_index != index:
            log.debug("event=advance_stale attempt=%d line=%d", attempt, index)
            return

        self.show_celebration = False
        self._reset_attempt_state()
        if index < len(self._lines) - 1:
            self._line_index = index + 1
            self.feedback_message = ""
            log.info("event=line_advanced reason=passed new=%d", self._line_index)
        else:
            self.feedback_message = self._config.feedback.all_completed
            self._schedule_game_over()
        self._notify("line_changed")

    async def _auto_advance(self, attempt: int, index: int) -> None:
        if self._attempt != attempt or self._line_index != index:
            return
        await self.move_to_next_line()

    # -----------------------------------------------------------------------
    # Inactivity monitor
    # -----------------------------------------------------------------------

    async def _inactivity_loop(self, attempt: int) -> None:
        """Poll while listening; finalize after a silence longer than the timeout."""
        timing = self._config.timing
        try:
            while True:
                await asyncio.sleep(timing.inactivity_poll_sec)

                if (
                    not self._attempt_is_current(attempt, _Phase.LISTENING)
                    or self._finalized_attempt == attempt
                    or self._celebrated
                ):
                    return

                silence = self._buffer.silence_sec()
                if silence <= timing.inactivity_timeout_sec:
                    continue
                if not self._buffer.has_text and not timing.finalize_on_silence:
                    continue

                log.info("event=inactivity_timeout attempt=%d silence_sec=%.1f", attempt, silence)
                await self._finalize("inactivity")
                return
        except asyncio.CancelledError:
            log.debug("event=inactivity_monitor_cancelled attempt=%d", attempt)
            raise

    # -----------------------------------------------------------------------
    # Aggregation
    # -----------------------------------------------------------------------

    def _complete_line(self, index: int) -> None:
        line = self._line_at(index)
        if line is not None and not line.is_completed:
            line.status = LineStatus.COMPLETED
        if self.stats.mark_completed(index) and self.stats.all_lines_completed():
            self._schedule_game_over()

    def _schedule_game_over(self) -> None:
        if self.is_game_over:
            return
        self._cancel(self._game_over_task)
        self._game_over_task = self._later(
            self._config.timing.game_over_delay_sec, self._set_game_over, "game_over",
        )

    async def _set_game_over(self) -> None:
        self.is_game_over = True
        log.info(
            "event=game_over accuracy=%d missed=%d completed=%d/%d",
            self.stats.accuracy, self.stats.missed_words_count,
            len(self.stats.completed_lines), self.stats.total_lines,
        )
        self._notify("game_over")

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _line_at(self, index: int) -> Optional[DialogLine]:
        if 0 <= index < len(self._lines):
            return self._lines[index]
        return None

    def _attempt_is_current(self, attempt: int, phase: _Phase) -> bool:
        return self._alive and self._attempt == attempt and self._phase is phase

    def _reset_attempt_state(self) -> None:
        self._buffer.clear()
        self.transcript = ""
        self._celebrated = False

    def _abandon_attempt(self) -> None:
        """Leave the current attempt unscored and clear transient state."""
        self._finalized_attempt = self._attempt
        self._phase = _Phase.IDLE
        self._cancel(self._inactivity_task)
        self._cancel(self._advance_task)
        self._reset_attempt_state()
        self.feedback_message = ""
        self.show_celebration = False

    def _to_baseline(self) -> None:
        self._phase = _Phase.IDLE
        self._cancel(self._inactivity_task)

    async def _stop_source(self) -> None:
        if self._stream is None or not self._stream.running:
            return
        try:
            await self._stream.stop()
        except Exception as exc:
            log.warning("event=source_stop_failed error=%s", exc)

    def _notify(self, reason: str) -> None:
        if self._on_change is None or not self._alive:
            return
        try:
            self._on_change(reason, self)
        except Exception as exc:
            log.warning("event=listener_failed reason=%s error=%s", reason, exc)

    # -- Task plumbing ---------------------------------------------------------

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"dialog_session_{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _later(self, delay: float, callback: Callable[[], Awaitable[None]], name: str) -> asyncio.Task:
        async def _run() -> None:
            await asyncio.sleep(delay)
            if not self._alive:
                return
            await callback()
        return self._spawn(_run(), name)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("event=session_task_failed task=%s error=%s", task.get_name(), exc, exc_info=exc)

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
