import pytest

from speech import Final, Interim, results_to_events
from transcript import TranscriptBuffer


def test_interim_is_replaced_not_accumulated():
    buf = TranscriptBuffer()

    buf.add_interim("I li")
    buf.add_interim("I like")

    assert buf.current == "I like"
    assert buf.final_text == ""


def test_finals_accumulate_and_clear_interim():
    buf = TranscriptBuffer()

    buf.add_interim("I like")
    buf.add_final("I like")
    buf.add_final(" apples ")

    assert buf.final_text == "I like apples"
    assert buf.interim_text == ""
    assert buf.current == "I like apples"


def test_current_prefers_finals_over_interim():
    buf = TranscriptBuffer()
    buf.add_final("red")
    buf.add_interim("fox")

    assert buf.current == "red"
    assert buf.has_text


def test_clear_resets_text():
    buf = TranscriptBuffer()
    buf.add_final("red fox")

    buf.clear()

    assert not buf.has_text
    assert buf.final_text == ""


def test_silence_measured_from_last_fragment():
    buf = TranscriptBuffer()
    buf.add_interim("red")
    start = buf.last_activity

    assert buf.silence_sec(now=start + 3.0) == pytest.approx(3.0)

    buf.add_final("red")
    assert buf.last_activity >= start


def test_results_to_events_skips_delivered_results():
    results = [
        {"transcript": "hello", "isFinal": True},
        {"transcript": "how are", "isFinal": True},
        {"transcript": " you", "isFinal": False},
        {"transcript": " today", "isFinal": False},
    ]

    events = results_to_events(1, results)

    assert events == [Final("how are"), Interim(" you today")]


def test_results_to_events_ignores_blank_interims():
    assert results_to_events(0, [{"transcript": "  ", "isFinal": False}]) == []
