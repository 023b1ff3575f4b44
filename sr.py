"""Spaced repetition (SM-2 inspired) scheduling and the grade/quality contract.

This module contains a compact implementation of the SM-2 algorithm used to
schedule flashcard reviews. Mastery levels run 0-5; a failed review steps
mastery down by one instead of resetting it, and leaves the ease factor alone.
"""

import enum
import math
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

MIN_EASE = 1.3
DEFAULT_EASE = 2.5
MAX_MASTERY = 5

# mastery level at which a card counts as "mastered" for streaks and tests
MASTERY_THRESHOLD = int(os.environ.get('MASTERY_THRESHOLD', '1'))


class InvalidQuality(ValueError):
    """Raised when a review quality is not an integer in [0, 5]."""


class Grade(enum.Enum):
    EXACT = 'exact'
    SOFT_PASS = 'soft_pass'
    FAIL = 'fail'


_QUALITY_FOR_GRADE = {
    Grade.EXACT: 5,
    Grade.SOFT_PASS: 4,
    Grade.FAIL: 2,
}


@dataclass(frozen=True)
class ReviewState:
    mastery_level: int
    ease_factor: float
    interval_days: int
    next_review_date: datetime


def _round_half_up(x):
    # round() is banker's rounding; 12.5 days should become 13
    return int(math.floor(x + 0.5))


def quality_for_grade(grade):
    """Translate a grader verdict into the numeric SM-2 quality."""
    try:
        return _QUALITY_FOR_GRADE[grade]
    except KeyError:
        raise InvalidQuality(f'unknown grade: {grade!r}')


def quality_from_flags(is_correct, is_soft_pass):
    if is_correct:
        return quality_for_grade(Grade.EXACT)
    if is_soft_pass:
        return quality_for_grade(Grade.SOFT_PASS)
    return quality_for_grade(Grade.FAIL)


def validate_quality(quality):
    # bool is an int subclass; True/False are not meaningful qualities
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidQuality(f'quality must be an integer 0-5, got {quality!r}')
    if quality < 0 or quality > 5:
        raise InvalidQuality(f'quality must be between 0 and 5, got {quality}')
    return quality


def schedule_next_review(mastery_level, ease_factor, interval_days, quality, now=None):
    """SM-2 update step. Quality 0-5.

    Returns a ReviewState with the new mastery level, ease factor, interval
    and next review date. On success (quality >= 3) the first two steps use
    fixed 1 and 6 day intervals, after that the interval grows by the ease
    factor. On failure mastery drops by one (floor 0) and the interval
    resets to one day.
    """
    validate_quality(quality)
    if now is None:
        now = datetime.now(timezone.utc)

    if quality >= 3:
        if mastery_level <= 0:
            interval_days = 1
            mastery_level = 1
        elif mastery_level == 1:
            interval_days = 6
            mastery_level = 2
        else:
            interval_days = _round_half_up(interval_days * ease_factor)
            mastery_level = min(MAX_MASTERY, mastery_level + 1)
        ease_factor = max(MIN_EASE, ease_factor + (0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02)))
    else:
        mastery_level = max(0, mastery_level - 1)
        interval_days = 1

    return ReviewState(
        mastery_level=mastery_level,
        ease_factor=ease_factor,
        interval_days=interval_days,
        next_review_date=now + timedelta(days=interval_days),
    )


def is_mastered(mastery_level):
    return (mastery_level or 0) >= MASTERY_THRESHOLD
