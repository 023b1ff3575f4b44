"""PonyORM-backed record store used by the hourly sweep.

Every mutating method runs in its own db_session, i.e. its own transaction,
so a failure while saving one account rolls back only that account. Writes
re-read the row and re-apply the streak transition to the fresh state, which
keeps them correct if the user was active between snapshot and write.
"""

import logging

from pony.orm import db_session, select

from models import User, StackTest, OPEN_TEST_STATUSES
from stack_tests import suspend_contribution
from streak import SweepTick, TestExpired, as_utc, needs_sweep, to_db, transition
from sweep import StackTestSnapshot

logger = logging.getLogger('flashstreak.sweep')


class StreakStore:

    @db_session
    def streaks_due(self, now):
        """Return (user_id, StreakState) for accounts a SweepTick would change."""
        cutoff = to_db(now)
        users = select(
            u for u in User
            if u.pending_goals is not None
            or (u.current_streak > 0 and u.streak_deadline is not None and u.streak_deadline < cutoff)
        )[:]
        out = []
        for u in users:
            state = u.streak_state()
            if needs_sweep(state, now):
                out.append((u.id, state))
        return out

    @db_session
    def save_streak(self, change, now):
        u = User.get(id=change.user_id)
        if u is None:
            raise LookupError(f'user {change.user_id} not found')
        current = u.streak_state()
        if current == change.before:
            after, outcome = change.after, change.outcome
        else:
            logger.debug('Streak for user %s changed since snapshot; re-evaluating', change.user_id)
            after, outcome = transition(current, SweepTick(now))
        u.apply_streak_state(after)
        if outcome.reset:
            # unlock stacks for future contribution and retire open tests:
            # a streak that already reset can no longer be saved by them
            for stack in u.stacks:
                suspend_contribution(stack)
            for test in u.tests:
                if test.test_status in OPEN_TEST_STATUSES:
                    test.can_unfreeze_streak = False
        return outcome

    @db_session
    def open_tests_due(self, now):
        cutoff = to_db(now)
        tests = select(t for t in StackTest if t.test_deadline < cutoff)[:]
        out = []
        for t in tests:
            if t.test_status not in OPEN_TEST_STATUSES:
                continue
            snapshot = StackTestSnapshot(
                id=t.id,
                user_id=t.user.id,
                stack_id=t.stack.id,
                test_status=t.test_status,
                test_deadline=as_utc(t.test_deadline),
                can_unfreeze_streak=bool(t.can_unfreeze_streak),
                has_frozen_streak=bool(t.has_frozen_streak),
            )
            # already expired and nothing left to freeze
            if snapshot.test_status == 'expired' and not snapshot.can_freeze:
                continue
            out.append(snapshot)
        return out

    @db_session
    def load_streaks(self, user_ids):
        states = {}
        for uid in user_ids:
            u = User.get(id=uid)
            if u is not None:
                states[uid] = u.streak_state()
        return states

    @db_session
    def apply_test_change(self, change, now):
        """Persist a StackTestChange. Returns (expired, frozen) as actually applied."""
        t = StackTest.get(id=change.test_id)
        if t is None:
            raise LookupError(f'test {change.test_id} not found')
        expired = frozen = False
        if change.expire and t.test_status in ('pending', 'failed'):
            t.test_status = 'expired'
            suspend_contribution(t.stack)
            expired = True
        if change.freeze and t.can_unfreeze_streak and not t.has_frozen_streak:
            after, outcome = transition(t.user.streak_state(), TestExpired(now))
            if outcome.frozen:
                t.user.apply_streak_state(after)
                t.has_frozen_streak = True
                frozen = True
        return expired, frozen
