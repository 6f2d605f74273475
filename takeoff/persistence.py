"""
persistence.py — debounced mirroring of the conversation and learned patterns.

Saves are best-effort copies of in-memory state.  Each stream (conversation,
patterns) has its own quiet-period timer: every change cancels and
reschedules it, and only the latest snapshot is written when it fires.
Load and save failures are logged and swallowed; they never interrupt the
interactive flow.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from takeoff.models import ConversationMessage, SpeechPattern

log = logging.getLogger("takeoff.persistence")

_MESSAGES = TypeAdapter(list[ConversationMessage])
_PATTERNS = TypeAdapter(list[SpeechPattern])


class PersistenceBackend:
    """Interface toward the external conversation/pattern store."""

    async def load_conversation(self, project_id: str) -> list[ConversationMessage]:
        raise NotImplementedError

    async def save_conversation(self, project_id: str, messages: Sequence[ConversationMessage]) -> None:
        raise NotImplementedError

    async def load_patterns(self, project_id: str) -> list[SpeechPattern]:
        raise NotImplementedError

    async def save_patterns(self, project_id: str, patterns: Sequence[SpeechPattern]) -> None:
        raise NotImplementedError


class JsonFileBackend(PersistenceBackend):
    """`<data_dir>/<project_id>/{conversation,patterns}.json`."""

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)

    def _path(self, project_id: str, name: str) -> Path:
        return self.data_dir / project_id / f"{name}.json"

    def _read(self, path: Path, adapter: TypeAdapter) -> list:
        if not path.exists():
            return []
        return adapter.validate_json(path.read_bytes())

    def _write(self, path: Path, adapter: TypeAdapter, items: list) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_bytes(adapter.dump_json(items, indent=2))
        tmp.replace(path)

    async def load_conversation(self, project_id: str) -> list[ConversationMessage]:
        return await asyncio.to_thread(self._read, self._path(project_id, "conversation"), _MESSAGES)

    async def save_conversation(self, project_id: str, messages: Sequence[ConversationMessage]) -> None:
        await asyncio.to_thread(self._write, self._path(project_id, "conversation"), _MESSAGES, list(messages))

    async def load_patterns(self, project_id: str) -> list[SpeechPattern]:
        return await asyncio.to_thread(self._read, self._path(project_id, "patterns"), _PATTERNS)

    async def save_patterns(self, project_id: str, patterns: Sequence[SpeechPattern]) -> None:
        await asyncio.to_thread(self._write, self._path(project_id, "patterns"), _PATTERNS, list(patterns))


class _Debounced:
    """One cancel-and-reschedule timer holding the latest snapshot."""

    def __init__(self, name: str, delay: float, save):
        self.name = name
        self.delay = delay
        self._save = save
        self._pending: Optional[list] = None
        self._task: Optional[asyncio.Task] = None

    def schedule(self, items: Sequence) -> None:
        self._pending = list(items)
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = asyncio.create_task(self._fire(), name=f"save_{self.name}")

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay)
        self._task = None
        await self._write()

    async def _write(self) -> None:
        items, self._pending = self._pending, None
        if items is None:
            return
        try:
            await self._save(items)
            log.debug("event=saved stream=%s items=%d", self.name, len(items))
        except Exception as exc:
            log.warning("event=save_failed stream=%s error=%s", self.name, exc)

    async def flush(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        await self._write()


class PersistenceSynchronizer:
    def __init__(
        self,
        backend: PersistenceBackend,
        project_id: str,
        conversation_delay: float = 1.0,
        patterns_delay: float = 2.0,
    ):
        self.backend = backend
        self.project_id = project_id
        self._conversation = _Debounced(
            "conversation", conversation_delay,
            lambda items: backend.save_conversation(project_id, items),
        )
        self._patterns = _Debounced(
            "patterns", patterns_delay,
            lambda items: backend.save_patterns(project_id, items),
        )

    async def load(self) -> tuple[list[ConversationMessage], list[SpeechPattern]]:
        try:
            messages = await self.backend.load_conversation(self.project_id)
        except (OSError, ValidationError, ValueError) as exc:
            log.warning("event=load_failed stream=conversation project=%s error=%s", self.project_id, exc)
            messages = []
        try:
            patterns = await self.backend.load_patterns(self.project_id)
        except (OSError, ValidationError, ValueError) as exc:
            log.warning("event=load_failed stream=patterns project=%s error=%s", self.project_id, exc)
            patterns = []
        log.info("event=session_loaded project=%s messages=%d patterns=%d",
                 self.project_id, len(messages), len(patterns))
        return messages, patterns

    def conversation_changed(self, messages: Sequence[ConversationMessage]) -> None:
        self._conversation.schedule(messages)

    def patterns_changed(self, patterns: Sequence[SpeechPattern]) -> None:
        self._patterns.schedule(patterns)

    async def flush(self) -> None:
        """Write any pending snapshot now."""
        await self._conversation.flush()
        await self._patterns.flush()
