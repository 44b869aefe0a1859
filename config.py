"""
config.py — Dialog Drill · Runtime Configuration
=================================================
Pydantic models for every tunable parameter of a practice session.
Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, passes config to each session
  • session.py — timings, pass threshold and feedback messages
  • speech.py  — recognition backend selection and Deepgram live options
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

log = logging.getLogger("dialog_drill.config")


# ---------------------------------------------------------------------------
# Per-concern config sections
# ---------------------------------------------------------------------------

class RecognitionConfig(BaseModel):
    """Speech recognition source (passed to create_speech_stream)."""
    backend: Literal["deepgram", "push"] = Field(default="deepgram", description="Recognition backend")
    language: str = Field(default="en-US", description="Recognition language")
    interim_results: bool = Field(default=True, description="Stream partial results")
    model: str = Field(default="nova-3", description="Deepgram model")
    endpointing: int = Field(default=800, ge=0, le=5000, description="Silence endpointing (ms)")
    smart_format: bool = Field(default=True, description="Auto-formatting")
    punctuate: bool = Field(default=True, description="Add punctuation")
    encoding: str = Field(default="linear16", description="Audio encoding of client frames")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Audio sample rate (Hz)")


class TimingConfig(BaseModel):
    """Delays and timeouts used by the line state machine (seconds)."""
    start_guard_sec: float = Field(default=0.1, ge=0.0, le=5.0, description="Wait between stop and start of the source")
    celebration_sec: float = Field(default=1.8, ge=0.0, le=30.0, description="Celebration before advancing")
    game_over_delay_sec: float = Field(default=0.3, ge=0.0, le=10.0, description="Debounce before game over")
    inactivity_poll_sec: float = Field(default=2.0, gt=0.0, le=30.0, description="Inactivity check interval")
    inactivity_timeout_sec: float = Field(default=5.0, gt=0.0, le=120.0, description="Silence before finalize")
    error_retry_sec: float = Field(default=1.0, ge=0.0, le=30.0, description="Delay before restarting a failed source")
    auto_advance_sec: Optional[float] = Field(default=2.0, ge=0.0, le=30.0, description="Advance after a real-time celebration (None = off)")
    finalize_on_silence: bool = Field(default=True, description="Finalize silent attempts on inactivity")


class ScoringConfig(BaseModel):
    """Line pass rule."""
    pass_threshold: float = Field(default=60.0, ge=0.0, le=100.0, description="Match percentage needed to pass")


class FeedbackConfig(BaseModel):
    """Feedback messages shown to the learner."""
    realtime_success: str = Field(default="Excellent! 🌟")
    success: str = Field(default="Great job! 🌟")
    retry: str = Field(default="Try again! 🎯")
    all_completed: str = Field(default="All lines completed! 🎉")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class PracticeConfig(BaseModel):
    """Complete runtime configuration for a practice session."""
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "PracticeConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "PracticeConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"timing": {"celebration_sec": 1.0}}
        only changes timing.celebration_sec, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return PracticeConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
