"""Daily streak rules.

A user keeps a streak by mastering STREAK_DAILY_REQUIREMENT cards per local
calendar day. Meeting the requirement only marks the day as pending; the
hourly sweep reconciles pending days into the streak counter and resets
streaks whose deadline has passed. An overdue mastery test freezes the
streak (no growth) until the test is passed.

All changes to streak fields go through `transition(state, event)`, which is
pure: it takes a StreakState plus an event and returns the new state with an
Outcome describing what happened. Callers persist the result.
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger('flashstreak.streak')

# Minimum cards mastered per day to keep the streak
STREAK_DAILY_REQUIREMENT = int(os.environ.get('STREAK_DAILY_REQUIREMENT', '5'))
# Extra hours after the 23:59:59 display deadline before the streak resets
STREAK_GRACE_HOURS = float(os.environ.get('STREAK_GRACE_HOURS', '0'))
# Maximum number of open tests that can unfreeze a streak
MAX_PENDING_TESTS = int(os.environ.get('MAX_PENDING_TESTS', '3'))


# ---------------------------------------------------------------------------
# time helpers
# ---------------------------------------------------------------------------

def utcnow():
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Normalize a datetime (or ISO string) to an aware UTC datetime.

    Naive values are taken to be UTC, which is how they are stored.
    """
    if dt is None:
        return None
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db(dt):
    """Return a naive UTC datetime suitable for storage."""
    if dt is None:
        return None
    return as_utc(dt).replace(tzinfo=None)


def _zone(tz_name):
    try:
        return ZoneInfo(tz_name or 'UTC')
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning('Unknown timezone %r; falling back to UTC', tz_name)
        return timezone.utc


def local_date(at, tz_name='UTC'):
    return as_utc(at).astimezone(_zone(tz_name)).date()


def end_of_local_day(day, tz_name='UTC'):
    """23:59:59 on `day` in the given zone, expressed in UTC."""
    local = datetime.combine(day, time(23, 59, 59), tzinfo=_zone(tz_name))
    return local.astimezone(timezone.utc)


def streak_deadlines(goal_day, tz_name='UTC'):
    """Return (display_deadline, streak_deadline) after crediting goal_day.

    Users get until the end of the following local day, plus the grace hours.
    """
    display = end_of_local_day(goal_day + timedelta(days=1), tz_name)
    return display, display + timedelta(hours=STREAK_GRACE_HOURS)


def test_deadline_days(stack_size):
    if stack_size >= 50:
        return 10
    if stack_size >= 25:
        return 5
    return 2


def test_deadlines(stack_size, mastered_at, tz_name='UTC'):
    """Return (display_deadline, test_deadline) for a newly mastered stack."""
    day = local_date(mastered_at, tz_name) + timedelta(days=test_deadline_days(stack_size))
    display = end_of_local_day(day, tz_name)
    return display, display + timedelta(hours=STREAK_GRACE_HOURS)


def time_remaining(deadline, now=None):
    if deadline is None:
        return {'days': 0, 'hours': 0, 'minutes': 0, 'seconds': 0, 'isOverdue': False, 'totalSeconds': 0}
    now = as_utc(now) if now is not None else utcnow()
    diff = int((as_utc(deadline) - now).total_seconds())
    if diff <= 0:
        return {'days': 0, 'hours': 0, 'minutes': 0, 'seconds': 0, 'isOverdue': True, 'totalSeconds': 0}
    days, rem = divmod(diff, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    return {'days': days, 'hours': hours, 'minutes': minutes, 'seconds': seconds,
            'isOverdue': False, 'totalSeconds': diff}


def format_countdown(deadline, now=None):
    if deadline is None:
        return ''
    t = time_remaining(deadline, now)
    if t['isOverdue']:
        return 'Overdue!'
    if t['days'] > 0:
        return f"{t['days']}d {t['hours']}h left"
    if t['hours'] > 0:
        return f"{t['hours']}h {t['minutes']}m left"
    return f"{t['minutes']}m left"


def deadline_urgency(deadline, now=None):
    """0 = overdue, 1 = under 24h, 2 = within two days, 3 = relaxed."""
    if deadline is None:
        return None
    t = time_remaining(deadline, now)
    if t['isOverdue']:
        return 0
    if t['totalSeconds'] < 24 * 3600:
        return 1
    if t['days'] <= 2:
        return 2
    return 3


# ---------------------------------------------------------------------------
# state and events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PendingGoal:
    day: date
    at: datetime


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    streak_frozen: bool = False
    cards_mastered_today: int = 0
    streak_deadline: Optional[datetime] = None
    display_deadline: Optional[datetime] = None
    timezone: str = 'UTC'
    # local day that cards_mastered_today refers to
    last_mastery_date: Optional[date] = None
    # days whose requirement was met but not yet reconciled by the sweep
    pending_goals: tuple = ()
    last_credited_date: Optional[date] = None

    @property
    def status(self):
        if self.current_streak <= 0:
            return 'zero'
        return 'frozen' if self.streak_frozen else 'growing'

    def to_dict(self, now=None):
        return {
            'currentStreak': self.current_streak,
            'longestStreak': self.longest_streak,
            'streakFrozen': self.streak_frozen,
            'status': self.status,
            'cardsMasteredToday': self.cards_mastered_today,
            'dailyRequirement': STREAK_DAILY_REQUIREMENT,
            'goalPending': bool(self.pending_goals),
            'streakDeadline': self.streak_deadline.isoformat() if self.streak_deadline else None,
            'displayDeadline': self.display_deadline.isoformat() if self.display_deadline else None,
            'countdown': format_countdown(self.display_deadline, now),
            'urgency': deadline_urgency(self.display_deadline, now),
            'timezone': self.timezone,
        }


@dataclass(frozen=True)
class Outcome:
    goal_met: bool = False
    goal_reverted: bool = False
    credited: bool = False
    incremented: bool = False
    reset: bool = False
    frozen: bool = False
    unfrozen: bool = False

    @property
    def changed(self):
        return any((self.goal_met, self.goal_reverted, self.credited, self.incremented,
                    self.reset, self.frozen, self.unfrozen))


@dataclass(frozen=True)
class CardMastered:
    at: datetime


@dataclass(frozen=True)
class CardLapsed:
    at: datetime


@dataclass(frozen=True)
class DailyGoalMet:
    day: date
    at: datetime


@dataclass(frozen=True)
class SweepTick:
    now: datetime


@dataclass(frozen=True)
class TestExpired:
    now: datetime


@dataclass(frozen=True)
class TestPassed:
    can_unfreeze: bool


# ---------------------------------------------------------------------------
# transitions
# ---------------------------------------------------------------------------

def _roll_day(state, at):
    today = local_date(at, state.timezone)
    if state.last_mastery_date != today:
        state = replace(state, cards_mastered_today=0, last_mastery_date=today)
    return state, today


def _day_satisfied(state, day):
    if state.last_credited_date is not None and state.last_credited_date >= day:
        return True
    return any(g.day == day for g in state.pending_goals)


def _reset(state, keep_counter=False):
    return replace(
        state,
        longest_streak=max(state.current_streak, state.longest_streak),
        current_streak=0,
        streak_frozen=False,
        cards_mastered_today=state.cards_mastered_today if keep_counter else 0,
        streak_deadline=None,
        display_deadline=None,
    )


def _on_daily_goal_met(state, event):
    if _day_satisfied(state, event.day):
        return state, Outcome()
    goals = state.pending_goals + (PendingGoal(event.day, as_utc(event.at)),)
    goals = tuple(sorted(goals, key=lambda g: g.day))
    return replace(state, pending_goals=goals), Outcome(goal_met=True)


def _on_card_mastered(state, event):
    state, today = _roll_day(state, event.at)
    state = replace(state, cards_mastered_today=state.cards_mastered_today + 1)
    if state.cards_mastered_today >= STREAK_DAILY_REQUIREMENT:
        return _on_daily_goal_met(state, DailyGoalMet(today, event.at))
    return state, Outcome()


def _on_card_lapsed(state, event):
    state, today = _roll_day(state, event.at)
    state = replace(state, cards_mastered_today=max(0, state.cards_mastered_today - 1))
    # only an unreconciled day can be withdrawn; credited days are kept
    if state.cards_mastered_today < STREAK_DAILY_REQUIREMENT and any(g.day == today for g in state.pending_goals):
        goals = tuple(g for g in state.pending_goals if g.day != today)
        return replace(state, pending_goals=goals), Outcome(goal_reverted=True)
    return state, Outcome()


def _on_sweep_tick(state, event):
    now = as_utc(event.now)
    credited = incremented = reset = False

    due = [g for g in state.pending_goals if g.at <= now]
    later = tuple(g for g in state.pending_goals if g.at > now)
    for goal in due:
        if state.current_streak > 0 and state.streak_deadline is not None and goal.at > state.streak_deadline:
            # the streak had already lapsed when this day was earned
            state = _reset(state, keep_counter=True)
            reset = True
        if state.streak_frozen:
            current = state.current_streak
        else:
            current = state.current_streak + 1
            incremented = True
        display, deadline = streak_deadlines(goal.day, state.timezone)
        state = replace(
            state,
            current_streak=current,
            longest_streak=max(state.longest_streak, current),
            display_deadline=display,
            streak_deadline=deadline,
            last_credited_date=goal.day,
        )
        credited = True
    state = replace(state, pending_goals=later)

    if state.current_streak > 0 and state.streak_deadline is not None and state.streak_deadline < now:
        state = _reset(state)
        reset = True
    return state, Outcome(credited=credited, incremented=incremented, reset=reset)


def _on_test_expired(state, event):
    if state.current_streak > 0 and not state.streak_frozen:
        return replace(state, streak_frozen=True), Outcome(frozen=True)
    return state, Outcome()


def _on_test_passed(state, event):
    if state.streak_frozen and event.can_unfreeze:
        current = state.current_streak + 1
        state = replace(
            state,
            streak_frozen=False,
            current_streak=current,
            longest_streak=max(state.longest_streak, current),
        )
        return state, Outcome(unfrozen=True, incremented=True)
    return state, Outcome()


_HANDLERS = {
    CardMastered: _on_card_mastered,
    CardLapsed: _on_card_lapsed,
    DailyGoalMet: _on_daily_goal_met,
    SweepTick: _on_sweep_tick,
    TestExpired: _on_test_expired,
    TestPassed: _on_test_passed,
}


def transition(state, event):
    """Apply one event to a streak state. Returns (new_state, Outcome)."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f'unknown streak event: {event!r}')
    return handler(state, event)


def needs_sweep(state, now):
    """True if a SweepTick would do anything for this state."""
    now = as_utc(now)
    if any(g.at <= now for g in state.pending_goals):
        return True
    return state.current_streak > 0 and state.streak_deadline is not None and state.streak_deadline < now


# ---------------------------------------------------------------------------
# storage encoding for pending goals (JSON text column)
# ---------------------------------------------------------------------------

def encode_pending_goals(goals):
    return json.dumps([{'day': g.day.isoformat(), 'at': as_utc(g.at).isoformat()} for g in goals])


def decode_pending_goals(raw):
    if not raw:
        return ()
    try:
        vals = json.loads(raw)
    except ValueError:
        logger.warning('Discarding unreadable pending goals: %r', raw)
        return ()
    goals = []
    for v in vals if isinstance(vals, list) else []:
        try:
            goals.append(PendingGoal(date.fromisoformat(v['day']), as_utc(v['at'])))
        except (KeyError, TypeError, ValueError):
            logger.warning('Skipping malformed pending goal entry: %r', v)
    return tuple(sorted(goals, key=lambda g: g.day))
