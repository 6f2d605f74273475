"""
trainer.py — guided calibration over a fixed phrase list.

Each target phrase must be matched before the next is shown.  A match stores
a SpeechPattern mapping what the recognizer produced to the target phrase; a
miss repeats the same target.  The index never decreases and never skips.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from takeoff.models import SpeechPattern
from takeoff.normalizer import canonicalize

log = logging.getLogger("takeoff.trainer")

TRAINING_PHRASES: tuple[str, ...] = (
    # commands
    "Add new line",
    "Enter",
    "Edit",
    "Delete line 3",
    # items and shapes
    "Column",
    "Beam",
    "Wide Flange",
    "HSS",
    # sizes
    "W12x24",
    "HSS 6x6x1/4",
    # quantities and lengths
    "5 pieces",
    "20 feet",
    "6 inches",
    # labor
    "2 hours welding",
    "1.5 hours fitting",
    # grades
    "A992",
    "A572 Grade 50",
)

WORD_MATCH_RATIO = 0.7


def phrases_match(spoken: str, target: str) -> bool:
    """Tolerant equality after canonicalization.

    Exact, substring containment either direction, or at least 70% of the
    target's words present in the utterance.
    """
    said = canonicalize(spoken)
    want = canonicalize(target)
    if not said or not want:
        return False
    if want in said or said in want:
        return True
    target_words = want.split()
    said_words = said.split()
    present = sum(1 for word in said_words if word in target_words)
    return present >= math.ceil(len(target_words) * WORD_MATCH_RATIO)


@dataclass
class TrainingSession:
    expected_phrases: Sequence[str]
    phrase_index: int = 0
    learned: list[SpeechPattern] = field(default_factory=list)

    @property
    def current(self) -> Optional[str]:
        if self.phrase_index < len(self.expected_phrases):
            return self.expected_phrases[self.phrase_index]
        return None

    @property
    def finished(self) -> bool:
        return self.phrase_index >= len(self.expected_phrases)


@dataclass
class TrainingStep:
    message: str
    matched: bool
    finished: bool
    pattern: Optional[SpeechPattern] = None


class CalibrationTrainer:
    """Owns the single open TrainingSession, if any."""

    def __init__(self, phrases: Sequence[str] = TRAINING_PHRASES):
        if not phrases:
            raise ValueError("calibration needs at least one phrase")
        self.phrases = tuple(phrases)
        self.session: Optional[TrainingSession] = None

    @property
    def active(self) -> bool:
        return self.session is not None

    def start(self) -> str:
        self.session = TrainingSession(self.phrases)
        log.info("event=training_started phrases=%d", len(self.phrases))
        total = len(self.phrases)
        return (
            "🎯 Speech Training Mode\n\n"
            f"I'll show you {total} phrases. Say each one before moving to the next; "
            "anything else and I'll ask you to try again. Say \"exit training\" to stop.\n\n"
            f"Phrase 1 of {total}:\n\n\"{self.phrases[0]}\""
        )

    def exit(self) -> str:
        learned = len(self.session.learned) if self.session else 0
        self.session = None
        log.info("event=training_exited learned=%d", learned)
        return "Training mode exited. You can now use regular commands."

    def handle(self, utterance: str) -> TrainingStep:
        session = self.session
        target = session.current if session is not None else None
        if session is None or target is None:
            raise RuntimeError("no calibration session is open")

        if not phrases_match(utterance, target):
            log.info("event=training_miss index=%d said=%.60r", session.phrase_index, utterance)
            return TrainingStep(
                message=(
                    "❌ Try again. I can only accept the proper words in this training session.\n\n"
                    f"You said: \"{utterance}\"\nExpected: \"{target}\"\n\n"
                    f"Please say exactly: \"{target}\""
                ),
                matched=False,
                finished=False,
            )

        spoken = utterance.strip()
        pattern = SpeechPattern(
            user_spoke=spoken,
            intended_command=target,
            corrected_transcription=None if spoken.lower() == target.lower() else target,
        )
        session.learned.append(pattern)
        session.phrase_index += 1
        log.info("event=training_match index=%d said=%.60r", session.phrase_index - 1, utterance)

        if session.finished:
            learned = len(session.learned)
            self.session = None
            log.info("event=training_complete learned=%d", learned)
            return TrainingStep(
                message=(
                    f"✅ Training complete! I've learned {learned} speech patterns. "
                    "You can start estimating now!"
                ),
                matched=True,
                finished=True,
                pattern=pattern,
            )

        total = len(session.expected_phrases)
        return TrainingStep(
            message=(
                f"✅ Got it! You said \"{spoken}\" for \"{target}\".\n\n"
                f"Phrase {session.phrase_index + 1} of {total}:\n\n\"{session.current}\""
            ),
            matched=True,
            finished=False,
            pattern=pattern,
        )
