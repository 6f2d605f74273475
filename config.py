"""
config.py — Takeoff Voice Agent · Runtime Configuration
=======================================================
Pydantic models for every tunable parameter of the voice agent.
Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, passes config to each session
  • agent.py   — loads config from a file path, applies to each component
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("takeoff.config")


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class VadConfig(BaseModel):
    """Voice activity detector tuning.  Threshold and hysteresis are empirical."""
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Capture sample rate (Hz)")
    frame_size: int = Field(default=512, ge=64, le=8192, description="Samples per analysed frame")
    fft_size: int = Field(default=256, ge=32, le=4096, description="FFT window (bins = fft_size / 2)")
    smoothing: float = Field(default=0.8, ge=0.0, lt=1.0, description="Spectrum smoothing time constant")
    min_db: float = Field(default=-100.0, description="Spectrum floor mapped to byte 0")
    max_db: float = Field(default=-30.0, description="Spectrum ceiling mapped to byte 255")
    energy_threshold: float = Field(default=30.0, ge=0.0, le=255.0, description="Average byte energy that counts as voice")
    frames_to_trigger: int = Field(default=5, ge=1, le=100, description="Consecutive voiced frames before firing")


class TurnConfig(BaseModel):
    """Turn segmentation loop timing."""
    silence_delay_sec: float = Field(default=2.0, ge=0.05, le=30.0, description="Quiet period that closes a turn")
    restart_delay_sec: float = Field(default=0.15, ge=0.0, le=5.0, description="Pause before auto-restarting the recognizer")
    device_release_delay_sec: float = Field(default=0.2, ge=0.0, le=5.0, description="Wait after VAD releases the mic")


class DeepgramConfig(BaseModel):
    """Deepgram live recognizer parameters (query string of the listen URL)."""
    model: str = Field(default="nova-3", description="Deepgram model")
    language: str = Field(default="en-US", description="Recognition language")
    punctuate: bool = Field(default=True, description="Add punctuation")
    smart_format: bool = Field(default=False, description="Auto-formatting (off: the normalizer owns numerals)")
    interim_results: bool = Field(default=True, description="Stream partial results")
    endpointing: int = Field(default=300, ge=0, le=5000, description="Server-side endpointing (ms)")
    keywords: Optional[list[str]] = Field(default=None, description="Keyword boosting list")


class GroqConfig(BaseModel):
    """Interpreter (Groq chat completion) parameters."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: int = Field(default=512, ge=16, description="Max response tokens")
    timeout_sec: float = Field(default=15.0, ge=0.5, le=120.0, description="Request timeout")


class DialogueConfig(BaseModel):
    """Conversation state machine parameters."""
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0, description="Intents below this are never executed")
    record_prefix: str = Field(default="L", min_length=1, description="Identifier family for new records")
    max_allocation_attempts: int = Field(default=100, ge=1, description="Collision probes before giving up")
    max_history_messages: int = Field(default=20, ge=0, description="Conversation messages sent to the interpreter")


class PersistenceConfig(BaseModel):
    """Conversation / learned-pattern mirroring."""
    data_dir: str = Field(default="data/sessions", description="Directory for per-project JSON files")
    conversation_debounce_sec: float = Field(default=1.0, ge=0.0, le=60.0, description="Quiet delay before saving the conversation")
    patterns_debounce_sec: float = Field(default=2.0, ge=0.0, le=60.0, description="Quiet delay before saving speech patterns")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class AgentConfig(BaseModel):
    """Complete runtime configuration for the voice agent."""
    vad: VadConfig = Field(default_factory=VadConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    groq: GroqConfig = Field(default_factory=GroqConfig)
    dialogue: DialogueConfig = Field(default_factory=DialogueConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "AgentConfig":
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
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "AgentConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"turn": {"silence_delay_sec": 1.5}}
        only changes turn.silence_delay_sec, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return AgentConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
