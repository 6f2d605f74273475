import asyncio

from config import TurnConfig
from takeoff.recognizer import ErrorKind, Recognizer, RecognizerError, TranscriptEvent
from takeoff.turns import TurnSegmenter


class FakeRecognizer(Recognizer):
    """Records start/stop calls; tests push events through the stored callbacks."""

    def __init__(self):
        self.starts = 0
        self.stops = 0
        self.callbacks = None

    def start(self, on_transcript, on_error, on_end):
        self.starts += 1
        self.callbacks = (on_transcript, on_error, on_end)

    def stop(self):
        self.stops += 1

    def say(self, text, final=True):
        self.callbacks[0](TranscriptEvent(text, final))

    def fail(self, kind):
        self.callbacks[1](RecognizerError(kind, "test"))

    def end(self):
        self.callbacks[2]()


def _segmenter(recognizer, turns, silence=0.4, **kwargs):
    return TurnSegmenter(
        recognizer,
        TurnConfig(silence_delay_sec=silence, restart_delay_sec=0.05),
        on_turn=turns.append,
        **kwargs,
    )


def test_turn_closes_one_silence_delay_after_last_event():
    async def scenario():
        recognizer, turns = FakeRecognizer(), []
        seg = _segmenter(recognizer, turns)
        seg.start()
        recognizer.say("add new")
        await asyncio.sleep(0.1)
        recognizer.say("line")
        await asyncio.sleep(0.3)  # t=0.4: only 0.3s since the last event
        before = list(turns)
        await asyncio.sleep(0.25)  # t=0.65
        await seg.drain()
        return before, turns

    before, after = asyncio.run(scenario())
    assert before == []
    assert after == ["add new line"]


def test_interim_is_replaced_and_included():
    async def scenario():
        recognizer, turns, previews = FakeRecognizer(), [], []
        seg = _segmenter(recognizer, turns, silence=0.05, on_preview=previews.append)
        seg.start()
        recognizer.say("quantity", final=True)
        recognizer.say("fi", final=False)
        recognizer.say("five", final=False)
        await asyncio.sleep(0.1)
        await seg.drain()
        return turns, previews, seg.preview

    turns, previews, preview = asyncio.run(scenario())
    assert turns == ["quantity five"]
    assert previews == ["quantity", "quantity fi", "quantity five", ""]
    assert preview == ""


def test_start_while_listening_is_a_no_op():
    async def scenario():
        recognizer, turns = FakeRecognizer(), []
        seg = _segmenter(recognizer, turns, silence=0.05)
        assert seg.start()
        assert not seg.start()
        recognizer.say("enter")
        await asyncio.sleep(0.1)
        await seg.drain()
        return recognizer.starts, turns

    assert asyncio.run(scenario()) == (1, ["enter"])


def test_recognizer_end_restarts_while_listening():
    async def scenario():
        recognizer, turns = FakeRecognizer(), []
        seg = _segmenter(recognizer, turns)
        seg.start()
        recognizer.end()
        await asyncio.sleep(0.1)
        restarted = recognizer.starts
        seg.stop()
        recognizer.end()
        await asyncio.sleep(0.1)
        return restarted, recognizer.starts

    assert asyncio.run(scenario()) == (2, 2)


def test_no_speech_is_ignored_and_fatal_stops():
    async def scenario():
        recognizer, turns, fatal = FakeRecognizer(), [], []
        seg = _segmenter(recognizer, turns, on_fatal=fatal.append)
        seg.start()
        recognizer.fail(ErrorKind.NO_SPEECH)
        still = seg.listening
        recognizer.fail(ErrorKind.NETWORK_UNAVAILABLE)
        return still, seg.listening, fatal, recognizer.stops

    still, listening, fatal, stops = asyncio.run(scenario())
    assert still is True
    assert listening is False
    assert [e.kind for e in fatal] == [ErrorKind.NETWORK_UNAVAILABLE]
    assert stops == 1


def test_events_after_stop_are_dropped():
    async def scenario():
        recognizer, turns = FakeRecognizer(), []
        seg = _segmenter(recognizer, turns, silence=0.05)
        seg.start()
        stale = recognizer.callbacks
        recognizer.say("half a")
        seg.stop()
        seg.start()
        stale[0](TranscriptEvent("old cycle", True))
        recognizer.say("beam")
        await asyncio.sleep(0.1)
        await seg.drain()
        return turns

    assert asyncio.run(scenario()) == ["beam"]
