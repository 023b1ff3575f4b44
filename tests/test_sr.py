import os
import sys
import random
from datetime import datetime, timedelta, timezone

import pytest

# Prepend repository root to sys.path so tests import local modules before stdlib
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
import sr
from sr import (Grade, InvalidQuality, MIN_EASE, quality_for_grade, quality_from_flags,
                schedule_next_review, validate_quality)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_first_success_schedules_one_day():
    r = schedule_next_review(0, 2.5, 1, 5, now=NOW)
    assert r.mastery_level == 1
    assert r.interval_days == 1
    assert r.ease_factor == pytest.approx(2.6)
    assert r.next_review_date == NOW + timedelta(days=1)


def test_second_success_schedules_six_days():
    r = schedule_next_review(1, 2.5, 1, 4, now=NOW)
    assert r.mastery_level == 2
    assert r.interval_days == 6
    assert r.ease_factor == pytest.approx(2.5)


def test_success_interval_grows_by_ease():
    r = schedule_next_review(2, 2.0, 10, 5, now=NOW)
    assert r.interval_days == 20
    assert r.mastery_level == 3
    assert r.next_review_date == NOW + timedelta(days=20)


def test_interval_rounds_half_up():
    # 5 * 2.5 = 12.5
    r = schedule_next_review(3, 2.5, 5, 5, now=NOW)
    assert r.interval_days == 13


def test_failure_steps_mastery_down_and_keeps_ease():
    r = schedule_next_review(3, 2.2, 15, 1, now=NOW)
    assert r.mastery_level == 2
    assert r.interval_days == 1
    assert r.ease_factor == 2.2
    r = schedule_next_review(0, 2.2, 1, 0, now=NOW)
    assert r.mastery_level == 0


def test_ease_never_drops_below_floor():
    r = schedule_next_review(2, 1.3, 6, 3, now=NOW)
    assert r.ease_factor == MIN_EASE


def test_random_sequences_stay_in_bounds():
    rng = random.Random(7)
    for _ in range(50):
        level, ease, interval = 0, 2.5, 1
        for _ in range(30):
            r = schedule_next_review(level, ease, interval, rng.randint(0, 5), now=NOW)
            assert 0 <= r.mastery_level <= sr.MAX_MASTERY
            assert r.ease_factor >= MIN_EASE
            assert r.interval_days >= 1
            level, ease, interval = r.mastery_level, r.ease_factor, r.interval_days


@pytest.mark.parametrize('bad', [-1, 6, 2.5, '3', None, True])
def test_invalid_quality_rejected(bad):
    with pytest.raises(InvalidQuality):
        validate_quality(bad)
    with pytest.raises(InvalidQuality):
        schedule_next_review(1, 2.5, 1, bad, now=NOW)


def test_grade_to_quality():
    assert quality_for_grade(Grade.EXACT) == 5
    assert quality_for_grade(Grade.SOFT_PASS) == 4
    assert quality_for_grade(Grade.FAIL) == 2
    assert quality_from_flags(True, False) == 5
    assert quality_from_flags(False, True) == 4
    assert quality_from_flags(False, False) == 2


def test_is_mastered_uses_threshold():
    assert not sr.is_mastered(sr.MASTERY_THRESHOLD - 1)
    assert sr.is_mastered(sr.MASTERY_THRESHOLD)
    assert sr.is_mastered(sr.MAX_MASTERY)
