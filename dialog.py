"""
dialog.py — Dialog Drill · Dialogue lines and word statuses
============================================================
Data model shared by the matcher, the session and the HTTP layer, plus the
parser that turns a plain-text script into lines.

Script format (one dialogue line per text line, blank lines ignored):

    anna: Hello, how are you?
    john: I am fine, thanks.
    Nice to meet you.          ← no speaker → default character
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, Field

log = logging.getLogger("dialog_drill.dialog")

DEFAULT_CHARACTER = "anna"


class WordState(str, Enum):
    PENDING = "pending"
    CORRECT = "correct"
    INCORRECT = "incorrect"


class LineStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class WordStatus(BaseModel):
    """One target word of a line.  `was_said` mirrors CORRECT."""
    word: str
    status: WordState = WordState.PENDING
    was_said: bool = False


class DialogLine(BaseModel):
    character: str = DEFAULT_CHARACTER
    text: str
    words: list[WordStatus] = Field(default_factory=list)
    order: int = 0
    status: LineStatus = LineStatus.PENDING
    score: float = 0.0

    @classmethod
    def from_text(cls, text: str, *, character: str = DEFAULT_CHARACTER, order: int = 0) -> "DialogLine":
        words = [WordStatus(word=w) for w in text.split()]
        return cls(character=character, text=text, words=words, order=order)

    def reset_words(self) -> None:
        """Put every word back to PENDING (start of a listening attempt)."""
        for status in self.words:
            status.status = WordState.PENDING
            status.was_said = False

    def apply_words(self, updated: list[WordStatus]) -> None:
        """Copy matcher output onto the line's own word objects, in place."""
        for current, new in zip(self.words, updated):
            current.status = new.status
            current.was_said = new.was_said

    @property
    def is_completed(self) -> bool:
        return self.status is LineStatus.COMPLETED


def parse_dialog_script(script: str) -> list[DialogLine]:
    """Parse a `character: text` script into dialogue lines.

    The character is everything before the first colon, lower-cased.
    Lines that carry no words are skipped so every parsed line can be scored.
    """
    lines: list[DialogLine] = []
    for raw in script.splitlines():
        if not raw.strip():
            continue

        character = DEFAULT_CHARACTER
        text = raw.strip()
        if ":" in raw:
            speaker, _, rest = raw.partition(":")
            character = speaker.strip().lower() or DEFAULT_CHARACTER
            text = rest.strip()

        if not text.split():
            log.warning("event=script_line_skipped reason=no_words raw=%.60r", raw)
            continue

        lines.append(DialogLine.from_text(text, character=character, order=len(lines)))

    log.info("event=script_parsed lines=%d", len(lines))
    return lines
