"""
turns.py — turn segmentation over a continuous recognizer.

Every transcript event (interim or final) updates the live preview and
cancels-and-reschedules the silence timer.  When the timer fires with no
intervening event, the accumulated text (all finals plus the newest interim)
is one completed turn: it is handed to the turn callback and the preview is
cleared.

Recognizer termination while still listening triggers an automatic restart.
`no-speech` is ignored; permission, device and network failures end the
listening session and are surfaced through the fatal callback.

`_listening` is the single source of truth read inside every callback at call
time.  Each recognizer cycle carries a generation number so events delivered
by a cycle that has since been stopped are dropped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from config import TurnConfig
from takeoff.recognizer import ErrorKind, Recognizer, RecognizerError, TranscriptEvent

log = logging.getLogger("takeoff.turns")

TurnCallback = Callable[[str], Union[Awaitable[Any], Any]]
PreviewCallback = Callable[[str], None]
FatalCallback = Callable[[RecognizerError], None]


class TurnSegmenter:
    def __init__(
        self,
        recognizer: Recognizer,
        config: TurnConfig,
        on_turn: TurnCallback,
        on_preview: Optional[PreviewCallback] = None,
        on_fatal: Optional[FatalCallback] = None,
    ):
        self._recognizer = recognizer
        self._config = config
        self._on_turn = on_turn
        self._on_preview = on_preview
        self._on_fatal = on_fatal

        self._listening = False
        self._generation = 0

        self._finals: list[str] = []
        self._latest_interim = ""
        self._preview = ""

        self._silence_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._turn_tasks: set[asyncio.Task] = set()

    # -- Public surface ---------------------------------------------------

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def preview(self) -> str:
        return self._preview

    def start(self) -> bool:
        """Begin listening.  Returns False (and does nothing) if already listening."""
        if self._listening:
            log.debug("event=turn_loop_start_ignored reason=already_listening")
            return False
        self._listening = True
        self._generation += 1
        self._reset_accumulation()
        log.info("event=turn_loop_started generation=%d", self._generation)
        self._start_recognizer(self._generation)
        return True

    def stop(self) -> None:
        """Teardown: silence timer, pending restart, recognizer and audio, then the flag."""
        self.cancel_silence_timer()
        self._cancel_restart()
        self._recognizer.stop()
        was_listening = self._listening
        self._listening = False
        self._generation += 1
        self._reset_accumulation()
        self._set_preview("")
        if was_listening:
            log.info("event=turn_loop_stopped")

    def cancel_silence_timer(self) -> None:
        if self._silence_task and not self._silence_task.done():
            self._silence_task.cancel()
        self._silence_task = None

    async def drain(self) -> None:
        """Wait for dispatched turns to finish (used on shutdown and in tests)."""
        while self._turn_tasks:
            await asyncio.gather(*list(self._turn_tasks), return_exceptions=True)

    # -- Recognizer callbacks -----------------------------------------------

    def _start_recognizer(self, generation: int) -> None:
        self._recognizer.start(
            on_transcript=lambda event: self._on_transcript(event, generation),
            on_error=lambda error: self._on_error(error, generation),
            on_end=lambda: self._on_end(generation),
        )

    def _stale(self, generation: int) -> bool:
        return not self._listening or generation != self._generation

    def _on_transcript(self, event: TranscriptEvent, generation: int) -> None:
        if self._stale(generation):
            return
        text = event.text.strip()
        if not text:
            return
        if event.is_final:
            self._finals.append(text)
            self._latest_interim = ""
        else:
            self._latest_interim = text
        self._set_preview(self._accumulated())
        self._schedule_silence(generation)

    def _on_error(self, error: RecognizerError, generation: int) -> None:
        if self._stale(generation):
            return
        if error.kind is ErrorKind.NO_SPEECH:
            log.debug("event=recognizer_no_speech")
            return
        if not error.kind.fatal:
            log.warning("event=recognizer_error kind=%s recoverable=true", error.kind.value)
            return
        log.error("event=recognizer_fatal kind=%s detail=%s", error.kind.value, error.detail)
        self.stop()
        if self._on_fatal is not None:
            self._on_fatal(error)

    def _on_end(self, generation: int) -> None:
        if self._stale(generation):
            return
        log.info("event=recognizer_ended restart_in=%.2fs", self._config.restart_delay_sec)
        self._cancel_restart()
        self._restart_task = asyncio.create_task(self._restart(generation), name="turn_loop_restart")

    async def _restart(self, generation: int) -> None:
        await asyncio.sleep(self._config.restart_delay_sec)
        self._restart_task = None
        if self._stale(generation):
            return
        log.info("event=recognizer_restart generation=%d", generation)
        self._start_recognizer(generation)

    def _cancel_restart(self) -> None:
        if self._restart_task and not self._restart_task.done():
            self._restart_task.cancel()
        self._restart_task = None

    # -- Silence timer --------------------------------------------------------

    def _schedule_silence(self, generation: int) -> None:
        self.cancel_silence_timer()
        self._silence_task = asyncio.create_task(
            self._silence_wait(generation), name="turn_silence_timer"
        )

    async def _silence_wait(self, generation: int) -> None:
        await asyncio.sleep(self._config.silence_delay_sec)
        self._silence_task = None
        if self._stale(generation):
            return
        text = self._accumulated()
        self._reset_accumulation()
        self._set_preview("")
        if not text:
            return
        log.info("event=turn_closed text=%.80s", text)
        task = asyncio.create_task(self._dispatch(text), name="turn_dispatch")
        self._turn_tasks.add(task)
        task.add_done_callback(self._turn_tasks.discard)

    async def _dispatch(self, text: str) -> None:
        try:
            result = self._on_turn(text)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("event=turn_handler_failed text=%.80s", text)

    # -- Accumulation -----------------------------------------------------------

    def _accumulated(self) -> str:
        parts = list(self._finals)
        if self._latest_interim:
            parts.append(self._latest_interim)
        return " ".join(parts)

    def _reset_accumulation(self) -> None:
        self._finals.clear()
        self._latest_interim = ""

    def _set_preview(self, text: str) -> None:
        if text == self._preview:
            return
        self._preview = text
        if self._on_preview is not None:
            self._on_preview(text)
