"""
models.py — shared value types for the voice agent.

Persisted / wire types are pydantic models; transient per-session state
uses dataclasses.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationMessage(BaseModel):
    """One entry of the append-only conversation log."""
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


class SpeechPattern(BaseModel):
    """A learned speaker-specific substitution recorded during calibration."""
    model_config = ConfigDict(frozen=True)

    user_spoke: str = Field(description="What the recognizer transcribed")
    intended_command: str = Field(description="The phrase the speaker was asked to say")
    corrected_transcription: Optional[str] = Field(default=None, description="Explicit correction, if different")
    timestamp: float = Field(default_factory=time.time)

    def correction(self) -> Optional[tuple[str, str]]:
        """Return (lowercase spoken form, replacement) or None if the pattern is an identity."""
        spoken = self.user_spoke.lower()
        if self.corrected_transcription:
            return spoken, self.corrected_transcription
        if spoken != self.intended_command.lower():
            return spoken, self.intended_command
        return None


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    COPY = "copy"
    QUERY = "query"


@dataclass
class PendingAction:
    """An irreversible side effect waiting for an affirmative utterance."""
    kind: ActionKind
    target_id: Optional[str]
    payload: dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    summary: str = ""
