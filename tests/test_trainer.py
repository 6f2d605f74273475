import pytest

from takeoff.trainer import TRAINING_PHRASES, CalibrationTrainer, phrases_match


def test_phrases_match_tolerances():
    assert phrases_match("Wide Flange", "wide flange")
    assert phrases_match("twelve by twenty four", "12x24")
    assert phrases_match("test phrase", "test phrase one")
    assert phrases_match("test phrase 1", "test phrase one")
    assert phrases_match("twelve by twenty four", "W12x24")
    assert not phrases_match("b", "A992")
    assert not phrases_match("", "Enter")


def test_dropped_shape_letter_still_advances():
    trainer = CalibrationTrainer(["W12x24", "Beam"])
    trainer.start()

    step = trainer.handle("twelve by twenty four")

    assert step.matched
    assert trainer.session.phrase_index == 1
    assert step.pattern.user_spoke == "twelve by twenty four"
    assert step.pattern.intended_command == "W12x24"


def test_wrong_utterance_does_not_advance():
    trainer = CalibrationTrainer(["test phrase one", "test phrase two"])
    trainer.start()

    step = trainer.handle("banana")

    assert not step.matched
    assert step.pattern is None
    assert trainer.session.phrase_index == 0
    assert 'Expected: "test phrase one"' in step.message


def test_close_enough_utterance_advances_and_records_pattern():
    trainer = CalibrationTrainer(["test phrase one", "test phrase two"])
    trainer.start()

    step = trainer.handle("one test phrase")

    assert step.matched
    assert trainer.session.phrase_index == 1
    assert step.pattern.user_spoke == "one test phrase"
    assert step.pattern.intended_command == "test phrase one"
    assert step.pattern.corrected_transcription == "test phrase one"
    assert '"test phrase two"' in step.message


def test_exact_match_records_identity_pattern():
    trainer = CalibrationTrainer(["Enter", "Edit"])
    trainer.start()
    step = trainer.handle("enter")
    assert step.pattern.corrected_transcription is None
    assert step.pattern.correction() is None


def test_last_phrase_closes_session():
    trainer = CalibrationTrainer(["Beam", "Column"])
    trainer.start()
    trainer.handle("beam")
    step = trainer.handle("column")

    assert step.finished
    assert "learned 2 speech patterns" in step.message
    assert not trainer.active


def test_exit_and_handle_without_session():
    trainer = CalibrationTrainer()
    assert "Phrase 1 of %d" % len(TRAINING_PHRASES) in trainer.start()
    assert trainer.exit() == "Training mode exited. You can now use regular commands."
    with pytest.raises(RuntimeError):
        trainer.handle("beam")
