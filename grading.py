"""Fuzzy grading of free-text translation answers.

Answers are compared after normalization (case, accents and punctuation are
ignored). Anything that is not an exact match is judged by Levenshtein
distance against a 15% tolerance of the correct answer's length.
"""

import math
import re
import unicodedata
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from sr import Grade, quality_for_grade

SOFT_PASS_TOLERANCE = 0.15

_PUNCTUATION_RE = re.compile(r'[.,!?;:]')


@dataclass(frozen=True)
class MatchResult:
    is_exact_match: bool
    is_soft_pass: bool
    distance: int
    threshold: int


@dataclass(frozen=True)
class GradeResult:
    grade: Grade
    passed: bool
    is_soft_pass: bool
    feedback: str
    distance: int
    threshold: int

    @property
    def quality(self):
        return quality_for_grade(self.grade)

    def to_dict(self):
        return {
            'grade': self.grade.value,
            'passed': self.passed,
            'isSoftPass': self.is_soft_pass,
            'feedback': self.feedback,
            'distance': self.distance,
            'threshold': self.threshold,
            'quality': self.quality,
        }


def normalize_answer(text):
    """Lowercase, strip diacritics and punctuation, trim whitespace."""
    text = (text or '').lower()
    decomposed = unicodedata.normalize('NFD', text)
    # drop combining diacritical marks (U+0300..U+036F)
    stripped = ''.join(ch for ch in decomposed if not ('\u0300' <= ch <= '\u036f'))
    return _PUNCTUATION_RE.sub('', stripped).strip()


def fuzzy_match(user_input, correct_answer):
    normalized_input = normalize_answer(user_input)
    normalized_answer = normalize_answer(correct_answer)

    if normalized_input == normalized_answer:
        return MatchResult(is_exact_match=True, is_soft_pass=True, distance=0, threshold=0)

    distance = Levenshtein.distance(normalized_input, normalized_answer)
    threshold = math.ceil(len(normalized_answer) * SOFT_PASS_TOLERANCE)
    return MatchResult(
        is_exact_match=False,
        is_soft_pass=distance <= threshold,
        distance=distance,
        threshold=threshold,
    )


def grade_answer(user_input, correct_answer):
    """Grade a typed answer: exact match, soft pass (minor typos) or fail."""
    result = fuzzy_match(user_input, correct_answer)

    if result.is_exact_match:
        return GradeResult(Grade.EXACT, True, False, 'Perfect!', result.distance, result.threshold)

    if result.is_soft_pass:
        return GradeResult(
            Grade.SOFT_PASS, True, True,
            'Close enough! Minor spelling differences.',
            result.distance, result.threshold,
        )

    return GradeResult(
        Grade.FAIL, False, False,
        f'Not quite. The correct answer is: {correct_answer}',
        result.distance, result.threshold,
    )
