"""
identifiers.py — next free record identifier with collision probing.

Identifiers of the recognised family are `<prefix><n>` ("L7").  Copies are
`<source>-<prefix><n>` ("L1-L10"); the trailing part is the copy's location
number and counts toward the family maximum.

External storage is eventually consistent, so a candidate may already exist
even though it was absent from the snapshot used to compute the maximum.
Every candidate is therefore probed against the snapshot, the identifiers
this allocator has handed out but not yet seen created, and an optional live
existence check.  Probing is bounded; running out raises AllocationExhausted.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, Optional

log = logging.getLogger("takeoff.identifiers")

DEFAULT_MAX_ATTEMPTS = 100


class AllocationExhausted(RuntimeError):
    """No free identifier was found within the probe bound."""


def location_number(record_id: str, prefix: str = "L") -> Optional[int]:
    """Numeric suffix of `L7` or of the copy identifier `L1-L7`; None otherwise."""
    match = re.fullmatch(rf"(?:.+-)?{re.escape(prefix)}(\d+)", record_id.strip(), re.IGNORECASE)
    return int(match.group(1)) if match else None


def max_location(record_ids: Iterable[str], prefix: str = "L") -> int:
    numbers = (location_number(rid, prefix) for rid in record_ids)
    return max((n for n in numbers if n is not None), default=0)


class IdentifierAllocator:
    """Hands out `<prefix><n>` identifiers that collide with nothing known."""

    def __init__(
        self,
        prefix: str = "L",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        exists: Optional[Callable[[str], bool]] = None,
    ):
        self.prefix = prefix
        self.max_attempts = max_attempts
        self._exists = exists
        self._reserved: set[str] = set()

    def _taken(self, candidate: str, existing: set[str]) -> bool:
        if candidate in existing or candidate in self._reserved:
            return True
        return bool(self._exists and self._exists(candidate))

    def _probe(self, start: int, existing: set[str], fmt: Callable[[int], str]) -> str:
        number = start
        for attempt in range(self.max_attempts):
            candidate = fmt(number)
            if not self._taken(candidate, existing):
                self._reserved.add(candidate)
                log.info("event=id_allocated id=%s probes=%d", candidate, attempt + 1)
                return candidate
            log.debug("event=id_collision candidate=%s", candidate)
            number += 1
        log.error("event=id_exhausted start=%d attempts=%d", start, self.max_attempts)
        raise AllocationExhausted(
            f"Could not generate a unique identifier after {self.max_attempts} attempts"
        )

    def _start(self, existing: set[str]) -> int:
        return max(max_location(existing, self.prefix), max_location(self._reserved, self.prefix)) + 1

    def _observe(self, existing_ids: Iterable[str]) -> set[str]:
        existing = set(existing_ids)
        # reservations now visible in the store no longer need holding
        self._reserved -= existing
        return existing

    def allocate(self, existing_ids: Iterable[str]) -> str:
        """Return `<prefix>(max+1)`, probing upward past any collision."""
        existing = self._observe(existing_ids)
        return self._probe(self._start(existing), existing, lambda n: f"{self.prefix}{n}")

    def allocate_copy(self, source_id: str, existing_ids: Iterable[str]) -> str:
        """Return `<source>-<prefix><n>` at the next free location."""
        existing = self._observe(existing_ids)
        return self._probe(self._start(existing), existing, lambda n: f"{source_id}-{self.prefix}{n}")

    def release(self, record_id: str) -> None:
        """Drop a reservation whose record was never created."""
        self._reserved.discard(record_id)
