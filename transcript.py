"""Transcript accumulation for one listening attempt."""

from __future__ import annotations

import logging
import time

log = logging.getLogger("dialog_drill.transcript")


class TranscriptBuffer:
    """Final fragments accumulate; the interim fragment is replaced.

    `current` feeds real-time matching, `final_text` feeds the authoritative
    finalize pass.  Every fragment refreshes `last_activity` (monotonic) for
    the inactivity monitor.
    """

    def __init__(self) -> None:
        self._finals: list[str] = []
        self._latest_interim: str = ""
        self.last_activity: float = time.monotonic()

    def add_interim(self, text: str) -> None:
        self._latest_interim = text.strip()
        self.touch()
        log.debug("event=transcript_interim text=%.80s", text)

    def add_final(self, text: str) -> None:
        text = text.strip()
        if text:
            self._finals.append(text)
        # the interim this final replaces is obsolete
        self._latest_interim = ""
        self.touch()
        log.debug("event=transcript_final text=%.80s", text)

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def clear(self) -> None:
        self._finals.clear()
        self._latest_interim = ""
        self.touch()

    @property
    def final_text(self) -> str:
        return " ".join(self._finals)

    @property
    def interim_text(self) -> str:
        return self._latest_interim

    @property
    def current(self) -> str:
        return self.final_text or self._latest_interim

    @property
    def has_text(self) -> bool:
        return bool(self._finals) or bool(self._latest_interim)

    def silence_sec(self, now: float | None = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_activity
