import asyncio

from config import DialogueConfig, GroqConfig
from takeoff.conversation import ConversationState, ConversationStateMachine
from takeoff.identifiers import IdentifierAllocator
from takeoff.interpreter import GroqInterpreter, Intent, Interpreter, InterpreterError
from takeoff.models import SpeechPattern
from takeoff.recognizer import ErrorKind, RecognizerError
from takeoff.records import CommitError, InMemoryRecordStore
from takeoff.trainer import CalibrationTrainer


class RecordingStore(InMemoryRecordStore):
    def __init__(self, records=None, fail_on=()):
        super().__init__(records)
        self.calls = []
        self.fail_on = set(fail_on)

    async def create(self, record_id, fields):
        self.calls.append(("create", record_id, dict(fields)))
        if "create" in self.fail_on:
            raise CommitError("store offline")
        await super().create(record_id, fields)

    async def update(self, record_id, fields):
        self.calls.append(("update", record_id, dict(fields)))
        if "update" in self.fail_on:
            raise CommitError("store offline")
        await super().update(record_id, fields)

    async def delete(self, record_id):
        self.calls.append(("delete", record_id, {}))
        if "delete" in self.fail_on:
            raise CommitError("store offline")
        await super().delete(record_id)


class ScriptedInterpreter(Interpreter):
    """Answers from a phrase → Intent table; anything else is unknown."""

    def __init__(self, script=None, error=None):
        self.script = dict(script or {})
        self.error = error
        self.requests = []

    async def interpret(self, utterance, records, history, hints=""):
        self.requests.append((utterance, dict(records), list(history), hints))
        if self.error is not None:
            raise self.error
        return self.script.get(utterance, Intent(action="unknown", confidence=0.0))


def six_lines():
    return {f"L{n}": {"itemDescription": f"Item {n}", "qty": 1} for n in range(1, 7)}


def machine(store=None, interpreter=None, **kwargs):
    return ConversationStateMachine(
        store if store is not None else RecordingStore(six_lines()),
        interpreter or ScriptedInterpreter(),
        DialogueConfig(),
        **kwargs,
    )


def run_turns(sm, *utterances):
    async def go():
        replies = []
        for text in utterances:
            replies.append([m.content for m in await sm.handle_turn(text) if m.role == "assistant"])
        return replies

    return asyncio.run(go())


QTY_FIVE = Intent(action="update", data={"qty": 5}, confidence=0.95)


def test_add_quantity_enter_yes():
    store = RecordingStore(six_lines())
    sm = machine(store, ScriptedInterpreter({"quantity 5": QTY_FIVE}))

    added, merged, summary, done = run_turns(sm, "add new line", "quantity five", "enter", "yes")

    assert "Created new blank line L7" in added[0]
    assert store.calls[0][:2] == ("create", "L7")
    assert "• qty: 5" in merged[0]
    assert store.calls[1] == ("update", "L7", {**store.calls[0][2], "qty": 5})
    assert "• qty: 5" in summary[0]
    assert "Data entered successfully for line L7" in done[0]

    commits = store.calls[2:]
    assert len(commits) == 1
    assert commits[0][0] == "update" and commits[0][1] == "L7"
    assert commits[0][2]["qty"] == 5
    assert sm.draft is None
    assert sm.pending is None
    assert sm.state is ConversationState.IDLE


def test_states_along_the_way():
    sm = machine(interpreter=ScriptedInterpreter({"quantity 5": QTY_FIVE}))
    assert sm.state is ConversationState.IDLE
    run_turns(sm, "new line")
    assert sm.state is ConversationState.ACCUMULATING
    run_turns(sm, "quantity five", "enter data")
    assert sm.state is ConversationState.PENDING_CONFIRMATION


def test_listening_state_follows_flag():
    sm = machine(is_listening=lambda: True)
    assert sm.state is ConversationState.LISTENING


def test_no_commit_without_affirmative():
    interpreter = ScriptedInterpreter({
        "delete line 3": Intent(action="delete", target_id="L3", confidence=0.9),
        "make line 2 quantity 4": Intent(action="update", target_id="L2", data={"qty": 4}, confidence=0.9),
    })
    store = RecordingStore(six_lines())
    sm = machine(store, interpreter)

    replies = run_turns(sm, "delete line 3", "what", "make line 2 quantity four")

    assert store.calls == []
    assert "cannot be undone" in replies[0][0]
    assert "waiting for your confirmation" in replies[1][0]
    assert "waiting for your confirmation" in replies[2][0]
    assert sm.pending.target_id == "L3"


def test_control_phrases_blocked_while_pending():
    store = RecordingStore(six_lines())
    sm = machine(store, ScriptedInterpreter({"delete line 3": Intent(action="delete", target_id="L3", confidence=0.9)}))
    replies = run_turns(sm, "delete line 3", "add new line")
    assert "waiting for your confirmation" in replies[1][0]
    assert store.calls == []


def test_negative_keeps_draft_intact():
    store = RecordingStore(six_lines())
    sm = machine(store, ScriptedInterpreter({"quantity 5": QTY_FIVE}))
    run_turns(sm, "add new line", "quantity five", "enter")
    calls_before = list(store.calls)
    values_before = dict(sm.draft.values)

    replies = run_turns(sm, "no that's not correct")

    assert "What would you like to change?" in replies[0][0]
    assert sm.pending is None
    assert sm.draft is not None and sm.draft.values == values_before
    assert store.calls == calls_before
    assert sm.state is ConversationState.ACCUMULATING


def test_delete_confirmed_and_denied():
    intents = {"delete line 3": Intent(action="delete", target_id="L3", confidence=0.9)}
    store = RecordingStore(six_lines())
    sm = machine(store, ScriptedInterpreter(intents))

    denied = run_turns(sm, "delete line 3", "cancel")
    assert "Nothing was changed" in denied[1][0]
    assert store.calls == []

    confirmed = run_turns(sm, "delete line 3", "yes")
    assert confirmed[1][0] == "✅ Line L3 deleted."
    assert store.calls == [("delete", "L3", {})]


def test_copy_creates_next_location():
    store = RecordingStore(six_lines())
    sm = machine(store, ScriptedInterpreter({"copy line 1": Intent(action="copy", target_id="L1", confidence=0.9)}))
    replies = run_turns(sm, "copy line 1", "proceed")
    assert replies[1][0] == "✅ Copied line L1 to L1-L7."
    assert store.calls[0][:2] == ("create", "L1-L7")
    assert store.calls[0][2]["itemDescription"] == "Item 1"


def test_confirming_other_action_closes_draft():
    store = RecordingStore(six_lines())
    sm = machine(store, ScriptedInterpreter({
        "quantity 5": QTY_FIVE,
        "copy line 7": Intent(action="copy", target_id="L7", confidence=0.9),
    }))

    replies = run_turns(sm, "add new line", "quantity five", "copy line 7", "yes")

    assert replies[3][0] == "✅ Copied line L7 to L7-L8."
    assert sm.draft is None
    assert sm.pending is None
    assert sm.state is ConversationState.IDLE

    async def stored():
        return await store.query("L7"), await store.query("L7-L8")

    original, copy = asyncio.run(stored())
    assert original["qty"] == 5
    assert copy["qty"] == 5


def test_low_confidence_is_never_executed():
    interpreter = ScriptedInterpreter({"delete line 3": Intent(action="delete", target_id="L3", confidence=0.3)})
    store = RecordingStore(six_lines())
    sm = machine(store, interpreter)
    replies = run_turns(sm, "delete line 3", "yes")
    assert "not confident" in replies[0][0]
    assert "(confidence: 0.30)" in replies[0][0]
    assert sm.pending is None
    assert store.calls == []


def test_unknown_intent_is_a_notice():
    sm = machine()
    replies = run_turns(sm, "blue elephants")
    assert "not confident" in replies[0][0]
    assert sm.state is ConversationState.IDLE


def test_interpreter_failure_notice():
    sm = machine(interpreter=ScriptedInterpreter(error=InterpreterError("timeout", "15s")))
    replies = run_turns(sm, "quantity five")
    assert "took too long" in replies[0][0]


def test_missing_groq_key_is_a_notice(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    store = RecordingStore(six_lines())
    sm = machine(store, GroqInterpreter(GroqConfig()))
    replies = run_turns(sm, "quantity five")
    assert "GROQ_API_KEY" in replies[0][0]
    assert store.calls == []
    assert sm.state is ConversationState.IDLE


def test_allocation_exhausted_keeps_draft_closed():
    allocator = IdentifierAllocator(max_attempts=3, exists=lambda rid: True)
    store = RecordingStore(six_lines())
    sm = machine(store, allocator=allocator)
    replies = run_turns(sm, "add new line")
    assert replies[0][0].startswith("❌ Error creating line: Could not generate a unique identifier after 3 attempts")
    assert sm.draft is None
    assert store.calls == []


def test_commit_failure_discards_pending_and_keeps_draft():
    store = RecordingStore(six_lines())
    sm = machine(store, ScriptedInterpreter({"quantity 5": QTY_FIVE}))
    run_turns(sm, "add new line", "quantity five", "enter")
    store.fail_on.add("update")

    replies = run_turns(sm, "yes")

    assert replies[0][0].startswith("❌ Error entering data: store offline")
    assert sm.pending is None
    assert sm.draft is not None and sm.draft.record_id == "L7"


def test_enter_without_draft():
    sm = machine()
    replies = run_turns(sm, "enter")
    assert replies[0][0].startswith("No data to enter")
    assert sm.pending is None


def test_numbered_shorthand_is_rewritten():
    interpreter = ScriptedInterpreter({"qty, 5": QTY_FIVE})
    sm = machine(interpreter=interpreter)
    run_turns(sm, "add new line", "number ten, five")
    assert interpreter.requests[-1][0] == "qty, 5"
    assert sm.draft.values["qty"] == 5


def test_interpreter_sees_records_history_and_hints():
    interpreter = ScriptedInterpreter()
    patterns = [SpeechPattern(user_spoke="bean", intended_command="Beam")]
    sm = machine(interpreter=interpreter, patterns=patterns)
    run_turns(sm, "bean twelve by twenty four")

    utterance, records, history, hints = interpreter.requests[0]
    assert utterance == "beam 12x24"
    assert set(records) == {f"L{n}" for n in range(1, 7)}
    assert history == []
    assert 'When the user says "bean", they mean "Beam"' in hints


def test_training_flow_learns_patterns():
    saved = []
    trainer = CalibrationTrainer(["test phrase one", "test phrase two"])
    sm = machine(trainer=trainer, on_patterns_changed=lambda p: saved.append(list(p)))

    replies = run_turns(sm, "start training", "banana", "test phrase one", "phrase two test")

    assert "Speech Training Mode" in replies[0][0]
    assert replies[1][0].startswith("❌ Try again")
    assert replies[2][0].startswith("✅ Got it!")
    assert "Training complete" in replies[3][0]
    assert len(sm.patterns) == 2
    assert len(saved) == 2
    assert sm.state is ConversationState.IDLE


def test_training_ignores_commands_until_exit():
    store = RecordingStore(six_lines())
    sm = machine(store, trainer=CalibrationTrainer(["Beam"]))
    replies = run_turns(sm, "start training", "add new line", "exit training", "add new line")
    assert replies[1][0].startswith("❌ Try again")
    assert replies[2][0] == "Training mode exited. You can now use regular commands."
    assert "Created new blank line L7" in replies[3][0]


def test_training_discards_pending_action():
    sm = machine(interpreter=ScriptedInterpreter({"delete line 3": Intent(action="delete", target_id="L3", confidence=0.9)}))
    run_turns(sm, "delete line 3", "start training")
    assert sm.pending is None
    assert sm.state is ConversationState.TRAINING


def test_recognizer_fatal_notice_and_log_callbacks():
    seen, changed = [], []
    sm = machine(on_message=seen.append, on_conversation_changed=lambda m: changed.append(len(m)))
    sm.report_recognizer_error(RecognizerError(ErrorKind.DEVICE_UNAVAILABLE))
    assert "microphone" in seen[0].content
    assert changed == [1]
    sm.clear_conversation()
    assert sm.messages == []
    assert changed == [1, 0]
