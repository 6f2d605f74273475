"""
conversation.py — Takeoff Voice Agent · Conversation State Machine
==================================================================
Consumes completed turns and drives the draft record, the confirmation gate
and calibration.  Has no audio or rendering dependencies: it can be driven by
typed text as well as by the turn segmenter.

States (derived, never stored separately)
-----------------------------------------
  TRAINING              a calibration session is open
  PENDING_CONFIRMATION  a PendingAction waits for yes/no
  ACCUMULATING          a DraftRecord is open
  LISTENING / IDLE      otherwise, depending on the turn loop

Turn handling order
-------------------
  1. learned substitutions + canonicalization
  2. while training: exit phrase or calibration attempt, nothing else
  3. start-training phrase
  4. while a PendingAction is open: affirmative / negative / reminder
  5. "add new line", "enter", "edit"
  6. everything else goes to the interpreter

Irreversible commits only happen on an affirmative utterance with a
PendingAction open.  Opening a draft (blank create) and merging fields into
it (update) are the two pre-authorized writes.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from config import DialogueConfig
from takeoff.fields import DraftRecord, blank_record, coerce_fields, format_fields, parse_numbered_field
from takeoff.identifiers import AllocationExhausted, IdentifierAllocator
from takeoff.interpreter import Intent, Interpreter, InterpreterError, training_context
from takeoff.models import ActionKind, ConversationMessage, PendingAction, SpeechPattern
from takeoff.normalizer import apply_patterns, canonicalize
from takeoff.phrases import ControlAction, classify
from takeoff.recognizer import ErrorKind, RecognizerError
from takeoff.records import CommitError, RecordStore
from takeoff.trainer import CalibrationTrainer

log = logging.getLogger("takeoff.conversation")


class ConversationState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    ACCUMULATING = "accumulating"
    PENDING_CONFIRMATION = "pending_confirmation"
    TRAINING = "training"


_INTERPRETER_NOTICES = {
    "timeout": "⏱️ The interpreter took too long to answer. Please try again.",
    "rate-limit": "⚠️ Too many requests right now. Wait a moment and try again.",
    "network": "🌐 I couldn't reach the interpreter. Check the network connection and try again.",
    "auth": "⚠️ The interpreter API key is missing or invalid. Check GROQ_API_KEY and restart.",
}

_RECOGNIZER_NOTICES = {
    ErrorKind.PERMISSION_DENIED: (
        "🎤 Speech recognition was denied access (microphone permission or API key). "
        "Fix the permission and start listening again."
    ),
    ErrorKind.DEVICE_UNAVAILABLE: (
        "🎤 No microphone is available, or another program is using it. "
        "Check the device and start listening again."
    ),
    ErrorKind.NETWORK_UNAVAILABLE: (
        "🌐 Speech recognition lost its network connection. "
        "Start listening again once you're back online."
    ),
}

_CONFIRM_REMINDER = 'I\'m waiting for your confirmation: say "yes" to proceed or "no" to change it.'


class ConversationStateMachine:
    def __init__(
        self,
        store: RecordStore,
        interpreter: Interpreter,
        config: Optional[DialogueConfig] = None,
        *,
        messages: Optional[Sequence[ConversationMessage]] = None,
        patterns: Optional[Sequence[SpeechPattern]] = None,
        trainer: Optional[CalibrationTrainer] = None,
        allocator: Optional[IdentifierAllocator] = None,
        is_listening: Callable[[], bool] = lambda: False,
        on_message: Optional[Callable[[ConversationMessage], None]] = None,
        on_conversation_changed: Optional[Callable[[Sequence[ConversationMessage]], None]] = None,
        on_patterns_changed: Optional[Callable[[Sequence[SpeechPattern]], None]] = None,
    ):
        self.config = config or DialogueConfig()
        self.store = store
        self.interpreter = interpreter
        self.trainer = trainer or CalibrationTrainer()
        self.allocator = allocator or IdentifierAllocator(
            prefix=self.config.record_prefix,
            max_attempts=self.config.max_allocation_attempts,
        )
        self.messages: list[ConversationMessage] = list(messages or [])
        self.patterns: list[SpeechPattern] = list(patterns or [])
        self.draft: Optional[DraftRecord] = None
        self.pending: Optional[PendingAction] = None

        self._is_listening = is_listening
        self._on_message = on_message
        self._on_conversation_changed = on_conversation_changed
        self._on_patterns_changed = on_patterns_changed
        self._lock = asyncio.Lock()

    # -- State ------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        if self.trainer.active:
            return ConversationState.TRAINING
        if self.pending is not None:
            return ConversationState.PENDING_CONFIRMATION
        if self.draft is not None:
            return ConversationState.ACCUMULATING
        if self._is_listening():
            return ConversationState.LISTENING
        return ConversationState.IDLE

    def restore(self, messages: Sequence[ConversationMessage], patterns: Sequence[SpeechPattern]) -> None:
        """Replace the log and learned patterns with persisted copies."""
        self.messages = list(messages)
        self.patterns = list(patterns)

    # -- Message log --------------------------------------------------------

    def _append(self, role: str, content: str) -> ConversationMessage:
        message = ConversationMessage(role=role, content=content)
        self.messages.append(message)
        if self._on_message is not None:
            self._on_message(message)
        if self._on_conversation_changed is not None:
            self._on_conversation_changed(self.messages)
        return message

    def _user(self, text: str) -> None:
        self._append("user", text)

    def _say(self, text: str) -> None:
        log.debug("event=assistant_message text=%.80r", text)
        self._append("assistant", text)

    def clear_conversation(self) -> None:
        self.messages.clear()
        log.info("event=conversation_cleared")
        if self._on_conversation_changed is not None:
            self._on_conversation_changed(self.messages)

    def report_recognizer_error(self, error: RecognizerError) -> None:
        notice = _RECOGNIZER_NOTICES.get(error.kind)
        if notice is not None:
            self._say(notice)

    # -- Entry points -------------------------------------------------------------

    async def handle_turn(self, text: str) -> list[ConversationMessage]:
        """Process one completed turn; returns the messages it appended."""
        async with self._lock:
            start = len(self.messages)
            raw = text.strip()
            if raw:
                before = self.state
                await self._handle(raw)
                log.info("event=turn_handled state=%s→%s", before.value, self.state.value)
            return self.messages[start:]

    async def start_training(self) -> list[ConversationMessage]:
        async with self._lock:
            start = len(self.messages)
            self._start_training()
            return self.messages[start:]

    async def exit_training(self) -> list[ConversationMessage]:
        async with self._lock:
            start = len(self.messages)
            if self.trainer.active:
                self._say(self.trainer.exit())
            return self.messages[start:]

    # -- Dispatch -------------------------------------------------------------

    async def _handle(self, raw: str) -> None:
        corrected = apply_patterns(raw, self.patterns)
        canonical = canonicalize(corrected)

        if self.trainer.active:
            self._user(raw)
            if classify(canonical, {ControlAction.EXIT_TRAINING}):
                self._say(self.trainer.exit())
                return
            step = self.trainer.handle(raw)
            if step.pattern is not None:
                self.patterns.append(step.pattern)
                if self._on_patterns_changed is not None:
                    self._on_patterns_changed(self.patterns)
            self._say(step.message)
            return

        if classify(canonical, {ControlAction.START_TRAINING}):
            self._user(raw)
            self._start_training()
            return

        if self.pending is not None:
            self._user(raw)
            match = classify(canonical, {ControlAction.AFFIRM, ControlAction.DENY})
            if match is None:
                self._say(_CONFIRM_REMINDER)
            elif match.action is ControlAction.AFFIRM:
                await self._execute_pending()
            else:
                self._discard_pending()
            return

        control = classify(canonical, {ControlAction.BEGIN_RECORD, ControlAction.ENTER, ControlAction.EDIT})
        if control is not None and control.action is ControlAction.BEGIN_RECORD:
            self._user(raw)
            await self._begin_record()
        elif control is not None and control.action is ControlAction.ENTER:
            self._user(raw)
            self._request_confirmation()
        elif control is not None and control.action is ControlAction.EDIT:
            self._user(raw)
            if self.draft is None:
                self._say("What would you like me to edit? Please speak the data first or say 'add new line' to start.")
            else:
                self._say("What would you like me to edit?")
        else:
            self._user(raw)
            await self._interpret(corrected, canonical)

    def _start_training(self) -> None:
        if self.trainer.active:
            self._say("Training is already running. Say \"exit training\" to stop.")
            return
        if self.pending is not None:
            log.info("event=pending_discarded reason=training kind=%s", self.pending.kind.value)
            self.pending = None
        self._say(self.trainer.start())

    # -- Draft lifecycle --------------------------------------------------------

    async def _begin_record(self) -> None:
        if self.draft is not None:
            log.info("event=draft_abandoned id=%s fields=%d", self.draft.record_id, len(self.draft.populated))
            self.draft = None
        try:
            record_id = self.allocator.allocate(await self.store.list_ids())
        except AllocationExhausted as exc:
            self._say(f"❌ Error creating line: {exc}.")
            return
        blank = blank_record()
        try:
            await self.store.create(record_id, blank)
        except CommitError as exc:
            self.allocator.release(record_id)
            log.error("event=draft_create_failed id=%s error=%s", record_id, exc)
            self._say(f"❌ Error creating line: {exc}.")
            return
        self.draft = DraftRecord(record_id, dict(blank))
        log.info("event=draft_opened id=%s", record_id)
        self._say(f"✅ Created new blank line {record_id}. You can now speak the data for this line.")

    def _request_confirmation(self) -> None:
        if self.draft is None:
            self._say("No data to enter. Please speak the data first, or say 'add new line' to start.")
            return
        summary = self.draft.summary()
        self.pending = PendingAction(
            kind=ActionKind.UPDATE,
            target_id=self.draft.record_id,
            payload=dict(self.draft.values),
            summary=summary,
        )
        self._say(summary)

    async def _merge_into_draft(self, data: dict[str, Any]) -> None:
        draft = self.draft
        if draft is None:
            return
        accepted, rejected = draft.merge(data)
        if not accepted:
            reasons = ", ".join(f"{name} ({why})" for name, why in rejected.items())
            self._say(f"I couldn't use any of that for line {draft.record_id}: {reasons}. Please try again.")
            return
        try:
            await self.store.update(draft.record_id, dict(draft.values))
        except CommitError as exc:
            log.error("event=draft_update_failed id=%s error=%s", draft.record_id, exc)
            self._say(f"❌ Error updating line {draft.record_id}: {exc}.")
            return
        text = f"I've added to line {draft.record_id}:\n\n" + "\n".join(format_fields(draft.values))
        if rejected:
            text += "\n\n⚠️ Ignored: " + ", ".join(f"{name} ({why})" for name, why in rejected.items())
        text += '\n\nSay "enter" when ready to finalize this data.'
        self._say(text)

    # -- Interpreter path ---------------------------------------------------------

    async def _interpret(self, corrected: str, canonical: str) -> None:
        material = self.draft.values.get("materialType") if self.draft else None
        numbered = parse_numbered_field(corrected, material)
        if numbered is not None:
            spec, value = numbered
            utterance = f"{spec.name}, {canonicalize(value)}"
            log.info("event=numbered_field field=%s", spec.name)
        else:
            utterance = canonical

        try:
            intent = await self.interpreter.interpret(
                utterance,
                await self.store.snapshot(),
                self.messages[:-1],
                training_context(self.patterns),
            )
        except InterpreterError as exc:
            log.error("event=interpreter_failed category=%s detail=%s", exc.category, exc.detail)
            self._say(_INTERPRETER_NOTICES.get(exc.category, f"❌ The interpreter failed: {exc}. Please try again."))
            return

        if intent.action == "unknown" or intent.confidence < self.config.confidence_threshold:
            log.info("event=intent_rejected action=%s confidence=%.2f", intent.action, intent.confidence)
            self._say(
                f"I'm not confident about that command (confidence: {intent.confidence:.2f}). "
                "Please try rephrasing."
            )
            return
        if intent.action == "conversation":
            self._say(intent.message or "I'm here to help! What would you like to do?")
            return
        if intent.action == "query":
            await self._answer_query(intent)
            return

        draft = self.draft
        if (
            draft is not None
            and intent.action in ("create", "update")
            and intent.data
            and (intent.action == "create" or intent.target_id in (None, draft.record_id))
        ):
            await self._merge_into_draft(intent.data)
            return

        self._propose(intent)

    async def _answer_query(self, intent: Intent) -> None:
        if not intent.target_id:
            self._say(intent.message or "Which line would you like to know about?")
            return
        fields = await self.store.query(intent.target_id)
        if fields is None:
            self._say(f"Line {intent.target_id} doesn't exist.")
            return
        lines = format_fields(fields)
        text = intent.message or f"Line {intent.target_id}:"
        if lines:
            text += "\n\n" + "\n".join(lines)
        self._say(text)

    def _propose(self, intent: Intent) -> None:
        """Turn an irreversible intent into the single PendingAction."""
        target = intent.target_id
        if intent.action == "create":
            accepted, _ = coerce_fields(intent.data)
            if not accepted:
                self._say("I didn't catch any line data to create. Please try again.")
                return
            lines = "\n".join(format_fields(accepted))
            pending = PendingAction(ActionKind.CREATE, None, accepted, intent.confidence,
                                    f"I understand you want to create a new line:\n\n{lines}\n\n"
                                    "Would you like me to enter this data?")
        elif not target:
            self._say("Which line? Please say it again with the line number, for example \"delete line 3\".")
            return
        elif intent.action == "update":
            accepted, _ = coerce_fields(intent.data)
            if not accepted:
                self._say(f"I didn't catch what to change on line {target}. Please try again.")
                return
            lines = "\n".join(format_fields(accepted))
            pending = PendingAction(ActionKind.UPDATE, target, accepted, intent.confidence,
                                    f"I understand you want to update line {target}:\n\n{lines}\n\n"
                                    "Would you like me to enter this data?")
        elif intent.action == "delete":
            pending = PendingAction(ActionKind.DELETE, target, {}, intent.confidence,
                                    f"I understand you want to delete line {target}.\n\n"
                                    "⚠️ This action cannot be undone.\n\nAre you sure you want to proceed?")
        else:
            source = target.split("-")[0]
            pending = PendingAction(ActionKind.COPY, source, {}, intent.confidence,
                                    f"I understand you want to copy line {source}.\n\n"
                                    "Would you like me to create this copy?")
        self.pending = pending
        log.info("event=pending_opened kind=%s target=%s", pending.kind.value, pending.target_id)
        self._say(pending.summary)

    # -- Confirmation gate -------------------------------------------------------

    def _discard_pending(self) -> None:
        action, self.pending = self.pending, None
        log.info("event=pending_discarded reason=user kind=%s", action.kind.value if action else None)
        if self.draft is not None:
            self._say("No problem! What would you like to change?")
        else:
            self._say("Okay, I won't do that. Nothing was changed.")

    async def _execute_pending(self) -> None:
        # cleared first: the action runs at most once even if the store fails
        action, self.pending = self.pending, None
        if action is None:
            return
        try:
            record_id = await self._commit(action)
        except (CommitError, AllocationExhausted) as exc:
            log.error("event=commit_failed kind=%s target=%s error=%s", action.kind.value, action.target_id, exc)
            self._say(f"❌ Error entering data: {exc}. Please try again.")
            return

        if self.draft is not None:
            log.info("event=draft_closed id=%s", self.draft.record_id)
            self.draft = None
        log.info("event=commit_ok kind=%s id=%s", action.kind.value, record_id)
        if action.kind is ActionKind.DELETE:
            self._say(f"✅ Line {record_id} deleted.")
        elif action.kind is ActionKind.COPY:
            self._say(f"✅ Copied line {action.target_id} to {record_id}.")
        else:
            self._say(f"✅ Data entered successfully for line {record_id}! Say 'add new line' to create another line.")

    async def _commit(self, action: PendingAction) -> str:
        if action.kind is ActionKind.CREATE:
            record_id = self.allocator.allocate(await self.store.list_ids())
            try:
                await self.store.create(record_id, {**blank_record(), **action.payload})
            except CommitError:
                self.allocator.release(record_id)
                raise
            return record_id
        if action.kind is ActionKind.UPDATE:
            await self.store.update(action.target_id, action.payload)
            return action.target_id
        if action.kind is ActionKind.DELETE:
            await self.store.delete(action.target_id)
            return action.target_id
        if action.kind is ActionKind.COPY:
            source = await self.store.query(action.target_id)
            if source is None:
                raise CommitError(f"line {action.target_id} not found")
            record_id = self.allocator.allocate_copy(action.target_id, await self.store.list_ids())
            try:
                await self.store.create(record_id, source)
            except CommitError:
                self.allocator.release(record_id)
                raise
            return record_id
        raise CommitError(f"{action.kind.value} is not a commit action")
