import math

import pytest

from errors import AmbiguousScoreError
from schemas import ScoreInputs
from scoring import (
    RULE_COUNTS,
    RULE_GRADE,
    RULE_NONE,
    RULE_PERCENT_COLUMN,
    ScoreResult,
    counts_to_percent,
    normalize_score,
    parse_percent_text,
    should_replace_score,
)


@pytest.mark.parametrize(
    "inputs, expected, rule",
    [
        (ScoreInputs(grade=0.85), 85.0, RULE_GRADE),
        (ScoreInputs(grade=85), 85.0, RULE_GRADE),
        (ScoreInputs(grade=1), 100.0, RULE_GRADE),
        (ScoreInputs(grade="0.5"), 50.0, RULE_GRADE),
        (ScoreInputs(correct_count=7, incorrect_count=3), 70.0, RULE_COUNTS),
        (ScoreInputs(correct_count=2, total_questions=3), 67.0, RULE_COUNTS),
        (ScoreInputs(percent_text="42"), 42.0, RULE_PERCENT_COLUMN),
        (ScoreInputs(percent_text="76%"), 76.0, RULE_PERCENT_COLUMN),
        (ScoreInputs(percent_text="0.7"), 70.0, RULE_PERCENT_COLUMN),
    ],
)
def test_precedence_rules(inputs, expected, rule):
    result = normalize_score(inputs)
    assert result.score_percent == pytest.approx(expected)
    assert result.rule == rule
    assert result.flag is None


def test_grade_wins_over_counts_and_percent():
    result = normalize_score(ScoreInputs(grade=0.9, correct_count=1, incorrect_count=9, percent_text="10"))
    assert result.score_percent == pytest.approx(90.0)
    assert result.rule == RULE_GRADE


@pytest.mark.parametrize("value", ["NA", "n/a", "N/A", "", "   ", None])
def test_not_available_is_null_without_flag(value):
    result = normalize_score(ScoreInputs(percent_text=value))
    assert result.score_percent is None
    assert result.rule == RULE_NONE
    assert result.flag is None


def test_out_of_range_percent_is_flagged_not_guessed():
    result = normalize_score(ScoreInputs(percent_text="150"))
    assert result.score_percent is None
    assert result.rule == RULE_NONE
    assert "outside 0-100" in result.flag


def test_counts_must_be_consistent():
    assert counts_to_percent(12, total=10) is None
    assert counts_to_percent(5, total=0) is None
    assert counts_to_percent(-1, incorrect=3) is None
    result = normalize_score(ScoreInputs(correct_count=12, total_questions=10, percent_text="80"))
    assert result.rule == RULE_PERCENT_COLUMN
    assert result.score_percent == 80.0


def test_counts_round_half_up():
    assert counts_to_percent(1, total=8) == 13.0
    assert counts_to_percent(1, incorrect=1) == 50.0


def test_parse_percent_text_raises_for_garbage():
    with pytest.raises(AmbiguousScoreError) as excinfo:
        parse_percent_text("great job")
    assert excinfo.value.raw_value == "great job"
    with pytest.raises(AmbiguousScoreError):
        parse_percent_text("-5")


def test_boolean_grade_is_ignored():
    assert normalize_score(ScoreInputs(grade=True)).score_percent is None


def test_should_replace_missing_or_non_finite():
    assert should_replace_score(None, ScoreResult(40.0, RULE_COUNTS))[0] is True
    assert should_replace_score(math.nan, ScoreResult(40.0, RULE_COUNTS))[0] is True


def test_should_replace_suspiciously_low_only_from_trusted_rule():
    assert should_replace_score(30.0, ScoreResult(80.0, RULE_GRADE)) == (True, "stored score suspiciously low")
    assert should_replace_score(30.0, ScoreResult(80.0, RULE_PERCENT_COLUMN))[0] is True
    assert should_replace_score(30.0, ScoreResult(80.0, RULE_COUNTS))[0] is False


def test_should_never_lower_a_high_score():
    assert should_replace_score(90.0, ScoreResult(30.0, RULE_GRADE))[0] is False
    assert should_replace_score(60.0, ScoreResult(80.0, RULE_GRADE))[0] is False


def test_should_not_replace_with_nothing():
    assert should_replace_score(None, ScoreResult(None, RULE_NONE)) == (False, "no recomputed score")
    assert should_replace_score(70.0, ScoreResult(70.0, RULE_GRADE)) == (False, "unchanged")
