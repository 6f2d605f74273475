"""
session.py — one project's voice agent: device, VAD, turn loop, state machine.

    AudioDevice ──► VoiceActivityDetector ──(speech onset)──► TurnSegmenter
                                                                 │ turn text
                          PersistenceSynchronizer ◄── ConversationStateMachine

`arm()` waits for speech before opening the recognizer (hands-free);
`start_listening()` opens it immediately (push-to-talk).  Typed text enters
through `submit_text()` and takes the same path as a spoken turn.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from config import AgentConfig
from takeoff.audio import AudioDevice, MicrophoneSource
from takeoff.conversation import ConversationStateMachine
from takeoff.interpreter import GroqInterpreter, Interpreter
from takeoff.models import ConversationMessage
from takeoff.persistence import JsonFileBackend, PersistenceBackend, PersistenceSynchronizer
from takeoff.recognizer import DeepgramRecognizer, Recognizer, RecognizerError
from takeoff.records import RecordStore
from takeoff.turns import TurnSegmenter
from takeoff.vad import VoiceActivityDetector

log = logging.getLogger("takeoff.session")


class VoiceAgent:
    def __init__(
        self,
        project_id: str,
        config: AgentConfig,
        store: RecordStore,
        *,
        interpreter: Optional[Interpreter] = None,
        device: Optional[AudioDevice] = None,
        recognizer: Optional[Recognizer] = None,
        backend: Optional[PersistenceBackend] = None,
        on_message: Optional[Callable[[ConversationMessage], None]] = None,
        on_preview: Optional[Callable[[str], None]] = None,
    ):
        self.project_id = project_id
        self.config = config
        self.device = device or AudioDevice(MicrophoneSource(config.vad.sample_rate, config.vad.frame_size))
        self.recognizer = recognizer or DeepgramRecognizer(self.device, config.deepgram, config.vad.sample_rate)
        self.persistence = PersistenceSynchronizer(
            backend or JsonFileBackend(config.persistence.data_dir),
            project_id,
            conversation_delay=config.persistence.conversation_debounce_sec,
            patterns_delay=config.persistence.patterns_debounce_sec,
        )
        self.turns = TurnSegmenter(
            self.recognizer,
            config.turn,
            on_turn=self._on_turn,
            on_preview=on_preview,
            on_fatal=self._on_fatal,
        )
        self.vad = VoiceActivityDetector(self.device, config.vad, is_listening=lambda: self.turns.listening)
        self.conversation = ConversationStateMachine(
            store,
            interpreter or GroqInterpreter(config.groq, max_history=config.dialogue.max_history_messages),
            config.dialogue,
            is_listening=lambda: self.turns.listening,
            on_message=on_message,
            on_conversation_changed=self.persistence.conversation_changed,
            on_patterns_changed=self.persistence.patterns_changed,
        )
        self._handoff: Optional[asyncio.Task] = None

    # -- Lifecycle -----------------------------------------------------------

    async def load(self) -> None:
        messages, patterns = await self.persistence.load()
        self.conversation.restore(messages, patterns)

    def arm(self) -> bool:
        """Watch for speech onset; the recognizer opens when it is heard."""
        if self.turns.listening or self.vad.active:
            return False
        self.vad.start(self._on_speech_onset)
        log.info("event=agent_armed project=%s", self.project_id)
        return True

    def start_listening(self) -> bool:
        self.vad.stop()
        return self.turns.start()

    def stop(self) -> None:
        """Ordered teardown: silence timer, VAD, recognizer and audio, listening flag."""
        self.turns.cancel_silence_timer()
        if self._handoff and not self._handoff.done():
            self._handoff.cancel()
        self._handoff = None
        self.vad.stop()
        self.turns.stop()
        log.info("event=agent_stopped project=%s", self.project_id)

    async def close(self) -> None:
        self.stop()
        await self.turns.drain()
        await self.persistence.flush()

    # -- Text surface ------------------------------------------------------------

    async def submit_text(self, text: str) -> list[ConversationMessage]:
        return await self.conversation.handle_turn(text)

    async def start_training(self) -> list[ConversationMessage]:
        return await self.conversation.start_training()

    async def exit_training(self) -> list[ConversationMessage]:
        return await self.conversation.exit_training()

    def clear_conversation(self) -> None:
        self.conversation.clear_conversation()

    def snapshot(self) -> dict[str, Any]:
        conv = self.conversation
        pending = conv.pending
        return {
            "project_id": self.project_id,
            "state": conv.state.value,
            "listening": self.turns.listening,
            "armed": self.vad.active,
            "preview": self.turns.preview,
            "draft": (
                {"id": conv.draft.record_id, "fields": dict(conv.draft.values), "warnings": conv.draft.warnings()}
                if conv.draft else None
            ),
            "pending": (
                {"kind": pending.kind.value, "target_id": pending.target_id,
                 "payload": dict(pending.payload), "summary": pending.summary}
                if pending else None
            ),
            "training": (
                {"index": conv.trainer.session.phrase_index, "phrase": conv.trainer.session.current,
                 "total": len(conv.trainer.phrases)}
                if conv.trainer.session else None
            ),
            "messages": len(conv.messages),
            "patterns": len(conv.patterns),
        }

    # -- Callbacks ------------------------------------------------------------------

    async def _on_speech_onset(self) -> None:
        # give the device a moment to settle after the detector let go of it
        self._handoff = asyncio.current_task()
        try:
            await asyncio.sleep(self.config.turn.device_release_delay_sec)
            self.turns.start()
        finally:
            self._handoff = None

    async def _on_turn(self, text: str) -> None:
        await self.conversation.handle_turn(text)

    def _on_fatal(self, error: RecognizerError) -> None:
        self.vad.stop()
        self.conversation.report_recognizer_error(error)
