"""
normalizer.py — canonical text form for spoken estimating commands.

Pure functions, no I/O.  Two stages:

1. Learned substitutions: every stored SpeechPattern maps a spoken form to
   what the speaker meant; replacements are literal and case-insensitive,
   applied in storage order.
2. Canonicalization: fraction words → slash notation, number words → digits,
   " by " → the dimension separator "x", sentence punctuation stripped,
   whitespace collapsed.

Fractions are rewritten before number words so that "quarter" becomes
"1/4" instead of being read as a count.
"""

from __future__ import annotations

import re
from typing import Iterable

from takeoff.models import SpeechPattern

DIMENSION_SEPARATOR = "x"

# Longest phrases first so "three quarters" wins over "quarters".
FRACTION_WORDS: tuple[tuple[str, str], ...] = (
    ("three quarters", "3/4"),
    ("three quarter", "3/4"),
    ("three eighths", "3/8"),
    ("five eighths", "5/8"),
    ("seven eighths", "7/8"),
    ("three sixteenths", "3/16"),
    ("five sixteenths", "5/16"),
    ("quarters", "1/4"),
    ("quarter", "1/4"),
    ("eighths", "1/8"),
    ("eighth", "1/8"),
    ("sixteenth", "1/16"),
    ("half", "1/2"),
)

_UNITS: dict[str, int] = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19,
}
_TENS: dict[str, int] = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}
_SCALES: dict[str, int] = {"hundred": 100, "thousand": 1000}

_FRACTION_RES = [
    (re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE), value)
    for word, value in FRACTION_WORDS
]
_TOKEN_RE = re.compile(r"\S+|\s+")
_BY_RE = re.compile(r"\s+by\s+", re.IGNORECASE)
_DIMENSION_RE = re.compile(r"(?<=[\d/])\s*x\s*(?=\d)", re.IGNORECASE)
_DECIMAL_RE = re.compile(r"\b(\d+) point (\d+)\b")
_PUNCT_RE = re.compile(r"[!?;:]|[.,](?!\d)|(?<!\d)[.,]")
_SPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Learned substitutions
# ---------------------------------------------------------------------------

def build_correction_map(patterns: Iterable[SpeechPattern]) -> dict[str, str]:
    """Spoken form → replacement.  The first stored pattern for a form wins."""
    corrections: dict[str, str] = {}
    for pattern in patterns:
        pair = pattern.correction()
        if pair is None:
            continue
        spoken, replacement = pair
        if spoken and spoken not in corrections:
            corrections[spoken] = replacement
    return corrections


def apply_patterns(text: str, patterns: Iterable[SpeechPattern]) -> str:
    """Apply learned substitutions in storage order (literal, case-insensitive)."""
    corrected = text
    for spoken, replacement in build_correction_map(patterns).items():
        if spoken in corrected.lower():
            corrected = re.sub(re.escape(spoken), lambda _m: replacement, corrected, flags=re.IGNORECASE)
    return corrected


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------

def replace_fraction_words(text: str) -> str:
    for regex, value in _FRACTION_RES:
        text = regex.sub(value, text)
    return text


def _is_number_word(word: str) -> bool:
    return word in _UNITS or word in _TENS or word in _SCALES


def _combine(words: list[str]) -> list[int]:
    """Fold a run of number words into one or more integers.

    "twenty four" → [24], "one hundred twenty" → [120],
    "five seven two" → [5, 7, 2] (a unit after a unit starts a new number).
    """
    numbers: list[int] = []
    total = 0        # completed thousands
    current = None   # value under construction
    last = None      # kind of the previous word: unit/tens/teen/scale

    def flush() -> None:
        nonlocal total, current, last
        if current is not None or total:
            numbers.append(total + (current or 0))
        total, current, last = 0, None, None

    for word in words:
        if word in _SCALES:
            scale = _SCALES[word]
            if current is None:
                current = 1
            if scale == 1000:
                total += current * 1000
                current = None
            else:
                current *= scale
            last = "scale"
        elif word in _TENS:
            if last in ("unit", "tens", "teen") or (current is not None and current % 100 != 0):
                flush()
            current = (current or 0) + _TENS[word]
            last = "tens"
        else:
            value = _UNITS[word]
            if last == "tens" and value < 10:
                current = (current or 0) + value
            elif last == "scale" or last is None:
                current = (current or 0) + value
            else:
                flush()
                current = value
            last = "teen" if value >= 10 else "unit"
    flush()
    return numbers


def replace_number_words(text: str) -> str:
    """Convert runs of number words to digits, keeping all other tokens."""
    out: list[str] = []
    run: list[str] = []
    pending_space = ""

    def emit_run() -> None:
        if run:
            out.append(" ".join(str(n) for n in _combine(run)))
            run.clear()

    for token in _TOKEN_RE.findall(text):
        if token.isspace():
            pending_space = token
            continue
        word = token.lower()
        bare = word.rstrip(".,;:!?")
        if _is_number_word(bare):
            if not run and out:
                out.append(pending_space)
            run.append(bare)
            # "ten," ends the run; the punctuation stays
            if bare != word:
                emit_run()
                out.append(token[len(bare):])
        else:
            emit_run()
            if out:
                out.append(pending_space)
            out.append(token)
        pending_space = ""
    emit_run()
    return "".join(out)


def canonicalize(text: str) -> str:
    normalized = text.lower().strip()
    normalized = replace_fraction_words(normalized)
    normalized = replace_number_words(normalized)
    normalized = _DECIMAL_RE.sub(r"\1.\2", normalized)
    normalized = _BY_RE.sub(DIMENSION_SEPARATOR, normalized)
    normalized = _PUNCT_RE.sub("", normalized)
    normalized = _SPACE_RE.sub(" ", normalized).strip()
    normalized = _DIMENSION_RE.sub(DIMENSION_SEPARATOR, normalized)
    return normalized
