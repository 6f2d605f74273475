"""
phrases.py — fixed control vocabulary recognised without the interpreter.

Control phrases gate irreversible commits, so matching is a small explicit
table rather than free-form NLU:

  • exact phrases must be the whole (canonicalized) utterance
  • contained phrases match on word boundaries anywhere in the utterance
  • when several allowed phrases match, the longest wins; equal lengths go
    to the one declared first

Negated forms ("not right", "incorrect", "that's not correct") are listed
explicitly so they outrank the bare affirmative word they contain.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional


class ControlAction(str, Enum):
    BEGIN_RECORD = "begin_record"
    ENTER = "enter"
    EDIT = "edit"
    AFFIRM = "affirm"
    DENY = "deny"
    START_TRAINING = "start_training"
    EXIT_TRAINING = "exit_training"


@dataclass(frozen=True)
class ControlPhrase:
    phrase: str
    action: ControlAction
    exact: bool = False

    def matches(self, text: str) -> bool:
        if self.exact:
            return text == self.phrase
        return re.search(rf"(?<![\w']){re.escape(self.phrase)}(?![\w'])", text) is not None


AFFIRMATIVE_PHRASES: tuple[str, ...] = (
    "yes", "yeah", "yep", "correct", "right", "that's right", "that's correct",
    "proceed", "go ahead", "do it", "execute", "confirm", "continue",
    "ok", "okay", "sure", "sounds good", "looks good", "good", "fine",
)

NEGATIVE_PHRASES: tuple[str, ...] = (
    "no", "wrong", "incorrect", "change", "amend", "fix", "update",
    "that's wrong", "not right", "not correct", "that's not right",
    "that's not correct", "not good", "cancel", "stop", "don't", "don't do it", "do not",
)

TRAINING_EXIT_PHRASES: tuple[str, ...] = ("exit training", "stop training", "cancel training")
TRAINING_START_PHRASES: tuple[str, ...] = ("start training", "begin training", "start calibration")

CONTROL_PHRASES: tuple[ControlPhrase, ...] = (
    *(ControlPhrase(p, ControlAction.EXIT_TRAINING) for p in TRAINING_EXIT_PHRASES),
    *(ControlPhrase(p, ControlAction.START_TRAINING) for p in TRAINING_START_PHRASES),
    ControlPhrase("add new line", ControlAction.BEGIN_RECORD),
    ControlPhrase("new line", ControlAction.BEGIN_RECORD),
    ControlPhrase("enter", ControlAction.ENTER, exact=True),
    ControlPhrase("enter data", ControlAction.ENTER, exact=True),
    ControlPhrase("edit", ControlAction.EDIT, exact=True),
    ControlPhrase("edit data", ControlAction.EDIT, exact=True),
    *(ControlPhrase(p, ControlAction.AFFIRM) for p in AFFIRMATIVE_PHRASES),
    *(ControlPhrase(p, ControlAction.DENY) for p in NEGATIVE_PHRASES),
)

_CLEAN_RE = re.compile(r"[^\w'/ ]+")


def clean(text: str) -> str:
    return " ".join(_CLEAN_RE.sub(" ", text.lower().replace("’", "'")).split())


def classify(text: str, allowed: Optional[Iterable[ControlAction]] = None) -> Optional[ControlPhrase]:
    """Best control phrase in *text* among the *allowed* actions, or None."""
    actions = set(allowed) if allowed is not None else set(ControlAction)
    cleaned = clean(text)
    best: Optional[ControlPhrase] = None
    for entry in CONTROL_PHRASES:
        if entry.action not in actions or not entry.matches(cleaned):
            continue
        if best is None or len(entry.phrase) > len(best.phrase):
            best = entry
    return best
