"""Score normalisation into a single 0-100 percentage.

Precedence, first applicable rule wins:

1. ``grade`` (numeric): values ``<= 1`` are fractions and scaled by 100,
   larger values are already percentages.
2. correct/incorrect (or total) question counts with a positive total.
3. a ``% Score`` style text column (``NA``/``N/A`` mean "no score").
4. nothing: the score stays ``None``. Scores are never guessed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from errors import AmbiguousScoreError
from schemas import ScoreInputs

logger = logging.getLogger(__name__)

RULE_GRADE = "grade"
RULE_COUNTS = "counts"
RULE_PERCENT_COLUMN = "percent_column"
RULE_NONE = "none"

TRUSTED_RULES = frozenset({RULE_GRADE, RULE_PERCENT_COLUMN})
SUSPICIOUS_THRESHOLD = 50.0

_NA_VALUES = {"na", "n/a"}


@dataclass(frozen=True)
class ScoreResult:
    score_percent: Optional[float]
    rule: str
    flag: Optional[str] = None


def to_number(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float or ``None``; booleans are not numbers."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def _fraction_to_percent(value: float) -> float:
    return round(value * 100, 2)


def grade_to_percent(grade: Any) -> Optional[float]:
    value = to_number(grade)
    if value is None:
        return None
    percent = _fraction_to_percent(value) if value <= 1 else value
    if percent < 0 or percent > 100:
        raise AmbiguousScoreError(grade, "grade outside 0-100")
    return percent


def counts_to_percent(
    correct: Optional[float],
    incorrect: Optional[float] = None,
    total: Optional[float] = None,
) -> Optional[float]:
    correct = to_number(correct)
    if correct is None:
        return None
    total = to_number(total)
    if total is None:
        incorrect = to_number(incorrect)
        if incorrect is None:
            return None
        total = correct + incorrect
    if total <= 0 or correct < 0 or correct > total:
        return None
    # half-up, matching how LMS exports round
    return float(math.floor(correct / total * 100 + 0.5))


def parse_percent_text(value: Any) -> Optional[float]:
    """Parse a ``% Score`` cell.

    Returns ``None`` for blank and NA values; raises ``AmbiguousScoreError`` for
    anything that cannot be placed in the 0-100 range.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text or text.lower() in _NA_VALUES:
            return None
        text = text.rstrip("%").strip()
        try:
            number = float(text)
        except ValueError:
            raise AmbiguousScoreError(value, "not a number") from None
    if not math.isfinite(number):
        raise AmbiguousScoreError(value, "not a finite number")
    if 0 < number < 1:
        return _fraction_to_percent(number)
    if 0 <= number <= 100:
        return number
    raise AmbiguousScoreError(value, "outside 0-100")


def normalize_score(inputs: ScoreInputs) -> ScoreResult:
    flag: Optional[str] = None

    try:
        percent = grade_to_percent(inputs.grade)
    except AmbiguousScoreError as exc:
        flag = str(exc)
        percent = None
    if percent is not None:
        return ScoreResult(percent, RULE_GRADE)

    percent = counts_to_percent(inputs.correct_count, inputs.incorrect_count, inputs.total_questions)
    if percent is not None:
        return ScoreResult(percent, RULE_COUNTS)

    try:
        percent = parse_percent_text(inputs.percent_text)
    except AmbiguousScoreError as exc:
        flag = flag or str(exc)
        percent = None
    if percent is not None:
        return ScoreResult(percent, RULE_PERCENT_COLUMN)

    if flag:
        logger.warning("Score left empty: %s", flag)
    return ScoreResult(None, RULE_NONE, flag)


def should_replace_score(stored: Optional[float], result: ScoreResult) -> Tuple[bool, str]:
    """Decide whether a repair may overwrite ``stored`` with ``result``.

    A finite stored score is only replaced when it is below 50 while a trusted
    rule recomputes above 50. High stored scores are never lowered.
    """

    if result.score_percent is None:
        return False, "no recomputed score"
    if stored is None or not math.isfinite(stored):
        return True, "stored score missing"
    if stored == result.score_percent:
        return False, "unchanged"
    if (
        stored < SUSPICIOUS_THRESHOLD
        and result.score_percent > SUSPICIOUS_THRESHOLD
        and result.rule in TRUSTED_RULES
    ):
        return True, "stored score suspiciously low"
    return False, "stored score kept"
