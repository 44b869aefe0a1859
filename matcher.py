"""
matcher.py — Dialog Drill · Word Matcher
=========================================
Pure alignment of a spoken transcript against the target words of a line.

Matching is order-insensitive and loose: a target word counts as said when
any spoken token equals it, contains it, or is contained in it.  Short
targets such as "a" are therefore matched by almost anything.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from dialog import WordState, WordStatus

_PUNCT_RE = re.compile(r"[.,!?;:]")


@dataclass(frozen=True)
class MatchResult:
    words: list[WordStatus]
    correct_count: int
    all_correct: bool


def normalize_word(word: str) -> str:
    """Lower-case and drop the punctuation characters `.,!?;:`."""
    return _PUNCT_RE.sub("", word.lower())


def spoken_tokens(spoken: str) -> list[str]:
    """Trim, lower-case, split on whitespace, strip punctuation, drop empties."""
    tokens = (normalize_word(t) for t in spoken.strip().lower().split())
    # an empty token ("..." after stripping) is contained in every word
    return [t for t in tokens if t]


def word_matches(needle: str, tokens: list[str]) -> bool:
    return any(t == needle or needle in t or t in needle for t in tokens)


def match_words(words: list[WordStatus], spoken: str) -> MatchResult:
    """Score every target word against `spoken`.

    Returns fresh WordStatus objects; the input list is not touched, so this
    can run on every interim update.
    """
    tokens = spoken_tokens(spoken)
    updated: list[WordStatus] = []
    correct = 0
    for target in words:
        ok = word_matches(normalize_word(target.word), tokens)
        if ok:
            correct += 1
        updated.append(WordStatus(
            word=target.word,
            status=WordState.CORRECT if ok else WordState.INCORRECT,
            was_said=ok,
        ))
    return MatchResult(words=updated, correct_count=correct, all_correct=correct == len(words))


def match_percentage(correct_count: int, total: int) -> float:
    """Share of a line's words that were said, 0–100.  An empty line passes."""
    if total <= 0:
        return 100.0
    return correct_count / total * 100
