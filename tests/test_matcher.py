import pytest

from dialog import DialogLine, WordState
from matcher import match_percentage, match_words, normalize_word, spoken_tokens


def statuses(result):
    return [w.status for w in result.words]


def test_spoken_tokens_normalizes_case_and_punctuation():
    assert spoken_tokens("  Hello, WORLD!  How are you? ") == ["hello", "world", "how", "are", "you"]


def test_spoken_tokens_drops_punctuation_only_tokens():
    assert spoken_tokens("well ... okay !") == ["well", "okay"]


def test_normalize_word_keeps_apostrophes():
    assert normalize_word("Don't.") == "don't"


def test_all_words_said_in_any_order():
    line = DialogLine.from_text("Good morning, Anna!")

    result = match_words(line.words, "anna good morning")

    assert result.all_correct
    assert result.correct_count == 3
    assert all(w.was_said for w in result.words)


def test_unsaid_words_are_incorrect():
    line = DialogLine.from_text("red fox runs")

    result = match_words(line.words, "red fox")

    assert statuses(result) == [WordState.CORRECT, WordState.CORRECT, WordState.INCORRECT]
    assert not result.all_correct
    assert result.words[2].was_said is False


def test_containment_matches_both_directions():
    line = DialogLine.from_text("apples run")

    result = match_words(line.words, "apple running")

    assert result.all_correct


def test_empty_transcript_matches_nothing():
    line = DialogLine.from_text("I like apples")

    result = match_words(line.words, "   ")

    assert result.correct_count == 0
    assert statuses(result) == [WordState.INCORRECT] * 3


def test_match_does_not_mutate_input_words():
    line = DialogLine.from_text("red fox")

    match_words(line.words, "red fox")

    assert [w.status for w in line.words] == [WordState.PENDING, WordState.PENDING]


def test_empty_line_is_all_correct():
    result = match_words([], "anything")

    assert result.all_correct
    assert result.correct_count == 0


@pytest.mark.parametrize(
    "correct,total,expected",
    [(2, 3, 200 / 3), (3, 3, 100.0), (0, 4, 0.0), (0, 0, 100.0)],
)
def test_match_percentage(correct, total, expected):
    assert match_percentage(correct, total) == pytest.approx(expected)


def test_punctuation_only_speech_matches_nothing():
    line = DialogLine.from_text("red fox")

    result = match_words(line.words, "... !")

    assert result.correct_count == 0
