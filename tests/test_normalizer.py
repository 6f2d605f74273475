from takeoff.models import SpeechPattern
from takeoff.normalizer import (
    apply_patterns,
    build_correction_map,
    canonicalize,
    replace_number_words,
)


def test_spoken_dimensions_match_written_form():
    assert canonicalize("twelve by twenty four") == canonicalize("12x24") == "12x24"


def test_fraction_words_become_slash_notation():
    assert canonicalize("three quarters") == "3/4"
    assert canonicalize("quarter") == "1/4"
    assert canonicalize("five eighths") == "5/8"


def test_hss_size_with_fraction():
    assert canonicalize("HSS six by six by quarter") == "hss 6x6x1/4"


def test_number_words_keep_surrounding_text():
    assert replace_number_words("quantity five pieces") == "quantity 5 pieces"
    assert replace_number_words("one hundred twenty") == "120"
    assert replace_number_words("five seven two") == "5 7 2"
    assert replace_number_words("number ten, five") == "number 10, 5"


def test_decimal_and_punctuation():
    assert canonicalize("One point five hours fitting.") == "1.5 hours fitting"
    assert canonicalize("Add new line!") == "add new line"
    assert canonicalize("W12x24, A992") == "w12x24 a992"


def test_correction_map_skips_identities_and_keeps_first():
    patterns = [
        SpeechPattern(user_spoke="Enter", intended_command="Enter"),
        SpeechPattern(user_spoke="add knew line", intended_command="Add new line"),
        SpeechPattern(user_spoke="add knew line", intended_command="Something else"),
    ]
    assert build_correction_map(patterns) == {"add knew line": "Add new line"}


def test_patterns_are_applied_case_insensitively():
    patterns = [SpeechPattern(user_spoke="bean", intended_command="Beam")]
    assert apply_patterns("Bean W12 by 24", patterns) == "Beam W12 by 24"
    assert canonicalize(apply_patterns("Bean twelve by twenty four", patterns)) == "beam 12x24"


def test_normalize_without_patterns_never_fails():
    assert canonicalize(apply_patterns("", [])) == ""
    assert canonicalize(apply_patterns("   ", [])) == ""
