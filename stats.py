"""Session-level scoring: completed lines, missed words, accuracy."""

from __future__ import annotations

import logging
import math
from typing import Iterable

from dialog import DialogLine

log = logging.getLogger("dialog_drill.stats")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class SessionStats:
    """Completed-line and missed-word sets over a fixed list of lines.

    `total_words` is fixed at construction.  Accuracy and the correct-word
    count are derived on every read from `missed_words` and `total_words`.
    """

    def __init__(self, lines: list[DialogLine]) -> None:
        self.total_lines = len(lines)
        self.total_words = sum(len(line.words) for line in lines)
        self._completed: set[int] = set()
        self._missed: dict[str, None] = {}  # insertion-ordered set

    # -- Mutation --------------------------------------------------------------

    def mark_completed(self, index: int) -> bool:
        """Add a line index once.  Returns True only on first insertion."""
        if index in self._completed or not 0 <= index < self.total_lines:
            return False
        self._completed.add(index)
        log.info("event=line_completed index=%d completed=%d/%d", index, len(self._completed), self.total_lines)
        return True

    def record_missed(self, words: Iterable[str]) -> list[str]:
        """Add missed words, ignoring duplicates.  Returns the newly added ones."""
        added = []
        for word in words:
            if word not in self._missed:
                self._missed[word] = None
                added.append(word)
        if added:
            log.info("event=words_missed added=%s total_missed=%d", added, len(self._missed))
        return added

    # -- Queries ---------------------------------------------------------------

    @property
    def completed_lines(self) -> list[int]:
        return sorted(self._completed)

    def is_completed(self, index: int) -> bool:
        return index in self._completed

    @property
    def missed_words(self) -> list[str]:
        return list(self._missed)

    @property
    def missed_words_count(self) -> int:
        return len(self._missed)

    @property
    def correct_words_count(self) -> int:
        return max(0, self.total_words - len(self._missed))

    @property
    def accuracy(self) -> int:
        if self.total_words == 0:
            return 100
        return round_half_up(self.correct_words_count / self.total_words * 100)

    def all_lines_completed(self) -> bool:
        return self.total_lines > 0 and len(self._completed) == self.total_lines
