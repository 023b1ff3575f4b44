"""Hourly streak sweep.

The sweep re-evaluates every account against deadlines that have passed,
independent of user activity:

  Pass A  reconcile streaks: credit days whose goal was met, then reset
          streaks whose deadline has passed.
  Pass B  expire overdue tests and freeze the owner's streak when the test
          is allowed to.

Both passes are folds over snapshots of the records producing
(changes, errors); only `run_sweep` touches the store. Each record is
processed in isolation so one failure never aborts the batch, and re-running
the sweep over already-processed records is a no-op.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from streak import Outcome, StreakState, SweepTick, TestExpired, as_utc, transition, utcnow

logger = logging.getLogger('flashstreak.sweep')


@dataclass(frozen=True)
class StreakChange:
    user_id: int
    before: StreakState
    after: StreakState
    outcome: Outcome


@dataclass(frozen=True)
class StackTestSnapshot:
    id: int
    user_id: int
    stack_id: Optional[int]
    test_status: str
    test_deadline: datetime
    can_unfreeze_streak: bool
    has_frozen_streak: bool

    @property
    def can_freeze(self):
        return self.can_unfreeze_streak and not self.has_frozen_streak


@dataclass(frozen=True)
class StackTestChange:
    test_id: int
    user_id: int
    stack_id: Optional[int]
    expire: bool
    freeze: bool


def fold_records(records, step, acc=None, label=repr):
    """Fold `step(acc, record) -> (acc, result)` over records.

    A step that raises is logged and recorded in the error list; the fold
    continues with the accumulator it had before that record. Results that
    are None are dropped. Returns (acc, results, errors).
    """
    results = []
    errors = []
    for record in records:
        try:
            acc, result = step(acc, record)
        except Exception as e:
            logger.exception('Failed to process %s', label(record))
            errors.append(f'{label(record)}: {e}')
            continue
        if result is not None:
            results.append(result)
    return acc, results, errors


def reconcile_streaks(snapshots, now):
    """Pass A over (user_id, StreakState) pairs. Returns (changes, errors)."""
    now = as_utc(now)

    def step(acc, snapshot):
        user_id, state = snapshot
        after, outcome = transition(state, SweepTick(now))
        if not outcome.changed:
            return acc, None
        return acc, StreakChange(user_id, state, after, outcome)

    _, changes, errors = fold_records(snapshots, step, label=lambda s: f'Reset {s[0]}')
    return changes, errors


def plan_test_expiry(tests, streaks, now):
    """Pass B over StackTestSnapshots. Returns (changes, errors).

    `streaks` maps user_id to StreakState for every user owning a test that
    may freeze. The state is threaded through the fold so several overdue
    tests of one user freeze the streak only once.
    """
    now = as_utc(now)

    def step(states, test):
        if as_utc(test.test_deadline) >= now:
            return states, None
        expire = test.test_status in ('pending', 'failed')
        freeze = False
        if test.can_freeze:
            if test.user_id not in states:
                raise LookupError(f'no streak state for user {test.user_id}')
            after, outcome = transition(states[test.user_id], TestExpired(now))
            if outcome.frozen:
                states = dict(states)
                states[test.user_id] = after
                freeze = True
        if not (expire or freeze):
            return states, None
        return states, StackTestChange(test.id, test.user_id, test.stack_id, expire, freeze)

    _, changes, errors = fold_records(tests, step, acc=dict(streaks), label=lambda t: f'Test {t.id}')
    return changes, errors


def run_sweep(store, now=None):
    """Run both passes against `store` and return a JSON-able summary."""
    started = time.monotonic()
    now = as_utc(now) if now is not None else utcnow()
    errors = []
    expired_streaks = 0
    credited_streaks = 0
    frozen_users = 0
    expired_tests = 0
    logger.info('Starting streak check job...')

    # Pass A: streak reconciliation and expiry
    try:
        snapshots = list(store.streaks_due(now))
    except Exception as e:
        logger.exception('Error fetching users with due streaks')
        errors.append(f'Expired users fetch: {e}')
    else:
        if snapshots:
            logger.info('Found %d users to reconcile', len(snapshots))
        else:
            logger.info('No expired streaks found')
        changes, errs = reconcile_streaks(snapshots, now)
        errors.extend(errs)
        for change in changes:
            try:
                outcome = store.save_streak(change, now)
            except Exception as e:
                logger.exception('Error saving streak for user %s', change.user_id)
                errors.append(f'Reset {change.user_id}: {e}')
                continue
            if outcome.credited:
                credited_streaks += 1
            if outcome.reset:
                expired_streaks += 1
                logger.info('Reset streak for user %s: %d -> 0 (longest: %d)',
                            change.user_id, change.before.current_streak, change.after.longest_streak)

    # Pass B: test expiry and freeze
    try:
        tests = list(store.open_tests_due(now))
        streaks = store.load_streaks({t.user_id for t in tests if t.can_freeze})
    except Exception as e:
        logger.exception('Error fetching expired tests')
        errors.append(f'Expired tests fetch: {e}')
    else:
        if tests:
            logger.info('Found %d expired tests to process', len(tests))
        else:
            logger.info('No expired tests to process')
        changes, errs = plan_test_expiry(tests, streaks, now)
        errors.extend(errs)
        for change in changes:
            try:
                expired, frozen = store.apply_test_change(change, now)
            except Exception as e:
                logger.exception('Error processing test %s', change.test_id)
                errors.append(f'Test {change.test_id}: {e}')
                continue
            if expired:
                expired_tests += 1
            if frozen:
                frozen_users += 1
                logger.info('Froze streak for user %s due to expired test %s', change.user_id, change.test_id)

    result = {
        'success': not errors,
        'timestamp': now.isoformat(),
        'durationMs': int((time.monotonic() - started) * 1000),
        'expiredStreaks': expired_streaks,
        'creditedStreaks': credited_streaks,
        'frozenUsers': frozen_users,
        'expiredTests': expired_tests,
    }
    if errors:
        result['errors'] = errors
    logger.info('Job completed: %s', result)
    return result
