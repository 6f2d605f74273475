"""
records.py — commit-action contract toward the estimating-line store.

The voice agent only needs five operations: create a row, merge fields into
it, delete it, read it back, and list identifiers for allocation.  The real
store lives elsewhere; InMemoryRecordStore backs the CLI and the tests.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

log = logging.getLogger("takeoff.records")


class CommitError(RuntimeError):
    """The store rejected a create, update or delete."""


class RecordStore:
    """Interface.  `update` is an idempotent merge keyed by field name."""

    async def create(self, record_id: str, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    async def update(self, record_id: str, fields: dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete(self, record_id: str) -> None:
        raise NotImplementedError

    async def query(self, record_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    async def list_ids(self) -> list[str]:
        raise NotImplementedError

    async def snapshot(self) -> dict[str, dict[str, Any]]:
        """All records, for the interpreter request."""
        result = {}
        for record_id in await self.list_ids():
            fields = await self.query(record_id)
            if fields is not None:
                result[record_id] = fields
        return result


class InMemoryRecordStore(RecordStore):
    def __init__(self, records: Optional[dict[str, dict[str, Any]]] = None):
        self._records: dict[str, dict[str, Any]] = copy.deepcopy(records or {})

    async def create(self, record_id: str, fields: dict[str, Any]) -> None:
        if record_id in self._records:
            raise CommitError(f"line {record_id} already exists")
        self._records[record_id] = dict(fields)
        log.info("event=record_created id=%s fields=%d", record_id, len(fields))

    async def update(self, record_id: str, fields: dict[str, Any]) -> None:
        if record_id not in self._records:
            raise CommitError(f"line {record_id} not found")
        self._records[record_id].update(fields)
        log.info("event=record_updated id=%s fields=%s", record_id, ",".join(sorted(fields)))

    async def delete(self, record_id: str) -> None:
        if self._records.pop(record_id, None) is None:
            raise CommitError(f"line {record_id} not found")
        log.info("event=record_deleted id=%s", record_id)

    async def query(self, record_id: str) -> Optional[dict[str, Any]]:
        fields = self._records.get(record_id)
        return dict(fields) if fields is not None else None

    async def list_ids(self) -> list[str]:
        return list(self._records)

    async def snapshot(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._records)
