import pytest

from takeoff.phrases import ControlAction, classify

GATE = {ControlAction.AFFIRM, ControlAction.DENY}


@pytest.mark.parametrize("text", ["yes", "Yes, proceed.", "that's correct", "ok go ahead", "Confirm"])
def test_affirmatives(text):
    assert classify(text, GATE).action is ControlAction.AFFIRM


@pytest.mark.parametrize("text", ["no", "that's not correct", "not right", "incorrect", "cancel", "wrong size"])
def test_negations_outrank_contained_affirmatives(text):
    assert classify(text, GATE).action is ControlAction.DENY


def test_words_match_on_boundaries_only():
    assert classify("knowledge", GATE) is None
    assert classify("notable", GATE) is None


def test_exact_phrases_must_be_whole_utterance():
    assert classify("enter", {ControlAction.ENTER}).action is ControlAction.ENTER
    assert classify("Enter data.", {ControlAction.ENTER}).action is ControlAction.ENTER
    assert classify("enter the size", {ControlAction.ENTER}) is None


def test_begin_record_by_containment():
    match = classify("okay add new line please")
    assert match.action is ControlAction.BEGIN_RECORD
    assert match.phrase == "add new line"


def test_allowed_set_filters_actions():
    assert classify("yes", {ControlAction.BEGIN_RECORD}) is None
    assert classify("exit training", {ControlAction.EXIT_TRAINING}).action is ControlAction.EXIT_TRAINING
    assert classify("start training", {ControlAction.START_TRAINING}).action is ControlAction.START_TRAINING
