import pytest
from pydantic import ValidationError

from config import PracticeConfig, RecognitionConfig


def test_defaults():
    cfg = PracticeConfig()

    assert cfg.scoring.pass_threshold == 60
    assert cfg.timing.inactivity_timeout_sec == 5.0
    assert cfg.timing.celebration_sec == 1.8
    assert cfg.feedback.retry == "Try again! 🎯"
    assert cfg.recognition.backend == "deepgram"


def test_load_missing_file_returns_defaults(tmp_path):
    assert PracticeConfig.load(tmp_path / "nope.json") == PracticeConfig()


def test_load_invalid_file_returns_defaults(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{not json", encoding="utf-8")

    assert PracticeConfig.load(path) == PracticeConfig()


def test_save_and_load_keeps_disabled_auto_advance(tmp_path):
    path = tmp_path / "cfg.json"
    cfg = PracticeConfig().merge_patch({"timing": {"auto_advance_sec": None}})

    cfg.save(path)

    assert PracticeConfig.load(path).timing.auto_advance_sec is None


def test_merge_patch_is_partial_and_returns_new_object():
    cfg = PracticeConfig()

    patched = cfg.merge_patch({"timing": {"celebration_sec": 1.0}, "scoring": {"pass_threshold": 75}})

    assert patched.timing.celebration_sec == 1.0
    assert patched.timing.inactivity_timeout_sec == 5.0
    assert patched.scoring.pass_threshold == 75
    assert cfg.timing.celebration_sec == 1.8


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        PracticeConfig().merge_patch({"scoring": {"pass_threshold": 150}})


def test_recognition_section_only_holds_options_the_backends_read():
    assert set(RecognitionConfig.model_fields) == {
        "backend", "language", "interim_results", "model", "endpointing",
        "smart_format", "punctuate", "encoding", "sample_rate",
    }
