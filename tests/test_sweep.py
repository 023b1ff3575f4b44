from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import streak
from streak import PendingGoal, StreakState, needs_sweep, transition
from sweep import StackTestSnapshot, fold_records, plan_test_expiry, reconcile_streaks, run_sweep

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
PAST = NOW - timedelta(hours=2)
FUTURE = NOW + timedelta(days=1)


class FakeStore:
    """In-memory stand-in for StreakStore."""

    def __init__(self, streaks=None, tests=None):
        self.streaks = dict(streaks or {})
        self.tests = {t['id']: dict(t) for t in (tests or [])}
        self.fail_save = set()
        self.fail_tests = set()
        self.fail_streak_fetch = False
        self.fail_test_fetch = False

    def streaks_due(self, now):
        if self.fail_streak_fetch:
            raise RuntimeError('connection refused')
        return [(uid, s) for uid, s in sorted(self.streaks.items()) if needs_sweep(s, now)]

    def save_streak(self, change, now):
        if change.user_id in self.fail_save:
            raise RuntimeError('db down')
        self.streaks[change.user_id] = change.after
        if change.outcome.reset:
            for t in self.tests.values():
                if t['user_id'] == change.user_id and t['status'] != 'passed':
                    t['can_unfreeze'] = False
        return change.outcome

    def open_tests_due(self, now):
        if self.fail_test_fetch:
            raise RuntimeError('timeout')
        out = []
        for t in sorted(self.tests.values(), key=lambda t: t['id']):
            if t['status'] == 'passed' or t['deadline'] >= now:
                continue
            snap = StackTestSnapshot(t['id'], t['user_id'], t.get('stack_id'), t['status'], t['deadline'],
                                     t['can_unfreeze'], t['has_frozen'])
            if snap.test_status == 'expired' and not snap.can_freeze:
                continue
            out.append(snap)
        return out

    def load_streaks(self, user_ids):
        return {uid: self.streaks[uid] for uid in user_ids if uid in self.streaks}

    def apply_test_change(self, change, now):
        if change.test_id in self.fail_tests:
            raise RuntimeError('locked')
        t = self.tests[change.test_id]
        expired = frozen = False
        if change.expire and t['status'] in ('pending', 'failed'):
            t['status'] = 'expired'
            expired = True
        if change.freeze and t['can_unfreeze'] and not t['has_frozen']:
            after, outcome = transition(self.streaks[t['user_id']], streak.TestExpired(now))
            if outcome.frozen:
                self.streaks[t['user_id']] = after
                t['has_frozen'] = True
                frozen = True
        return expired, frozen


def active(current, deadline, longest=None, **kw):
    return StreakState(current_streak=current, longest_streak=current if longest is None else longest,
                       streak_deadline=deadline, display_deadline=deadline, **kw)


def make_test(id, user_id, deadline=PAST, status='pending', can_unfreeze=True, has_frozen=False):
    return {'id': id, 'user_id': user_id, 'stack_id': id * 10, 'status': status, 'deadline': deadline,
            'can_unfreeze': can_unfreeze, 'has_frozen': has_frozen}


def test_summary_shape_without_errors():
    result = run_sweep(FakeStore(), now=NOW)
    assert result['success'] is True
    assert 'errors' not in result
    assert result['timestamp'] == NOW.isoformat()
    assert isinstance(result['durationMs'], int)
    for key in ('expiredStreaks', 'creditedStreaks', 'frozenUsers', 'expiredTests'):
        assert result[key] == 0


def test_expired_streak_reset_is_idempotent():
    store = FakeStore({1: active(6, PAST, longest=4), 2: active(3, FUTURE)})
    first = run_sweep(store, now=NOW)
    assert first['expiredStreaks'] == 1
    assert store.streaks[1].current_streak == 0
    assert store.streaks[1].longest_streak == 6
    assert store.streaks[1].streak_deadline is None
    assert store.streaks[2].current_streak == 3

    snapshot = dict(store.streaks)
    second = run_sweep(store, now=NOW + timedelta(minutes=5))
    assert second['expiredStreaks'] == 0
    assert second['success']
    assert store.streaks == snapshot


def test_pending_goals_are_credited():
    goal = PendingGoal(date(2024, 3, 10), NOW - timedelta(hours=1))
    store = FakeStore({1: active(2, FUTURE, pending_goals=(goal,))})
    result = run_sweep(store, now=NOW)
    assert result['creditedStreaks'] == 1
    assert result['expiredStreaks'] == 0
    assert store.streaks[1].current_streak == 3
    assert store.streaks[1].pending_goals == ()


def test_expired_test_freezes_only_once():
    store = FakeStore({1: active(4, FUTURE)}, [make_test(5, 1)])
    first = run_sweep(store, now=NOW)
    assert first['expiredTests'] == 1
    assert first['frozenUsers'] == 1
    assert store.tests[5]['status'] == 'expired'
    assert store.tests[5]['has_frozen'] is True
    assert store.streaks[1].streak_frozen

    second = run_sweep(store, now=NOW + timedelta(hours=1))
    assert second['success']
    assert second['expiredTests'] == 0
    assert second['frozenUsers'] == 0
    assert store.streaks[1].current_streak == 4


def test_two_overdue_tests_freeze_user_once():
    store = FakeStore({1: active(4, FUTURE)}, [make_test(5, 1), make_test(6, 1)])
    result = run_sweep(store, now=NOW)
    assert result['expiredTests'] == 2
    assert result['frozenUsers'] == 1
    assert [store.tests[i]['has_frozen'] for i in (5, 6)] == [True, False]


def test_failed_and_legacy_tests_expire_without_freezing_legacy():
    store = FakeStore({1: active(2, FUTURE), 2: active(2, FUTURE)},
                      [make_test(7, 1, status='failed', can_unfreeze=False), make_test(8, 2, deadline=FUTURE)])
    result = run_sweep(store, now=NOW)
    assert result['expiredTests'] == 1
    assert result['frozenUsers'] == 0
    assert store.tests[7]['status'] == 'expired'
    assert store.tests[8]['status'] == 'pending'
    assert not store.streaks[1].streak_frozen


def test_streak_reset_before_test_expiry_prevents_freeze():
    store = FakeStore({1: active(3, PAST)}, [make_test(5, 1)])
    result = run_sweep(store, now=NOW)
    assert result['expiredStreaks'] == 1
    assert result['expiredTests'] == 1
    assert result['frozenUsers'] == 0
    assert not store.streaks[1].streak_frozen


def test_one_failing_user_does_not_abort_the_batch():
    store = FakeStore({1: active(3, PAST), 2: active(5, PAST), 3: active(2, PAST)})
    store.fail_save.add(2)
    result = run_sweep(store, now=NOW)
    assert result['success'] is False
    assert result['errors'] == ['Reset 2: db down']
    assert result['expiredStreaks'] == 2
    assert store.streaks[1].current_streak == 0
    assert store.streaks[2].current_streak == 5
    assert store.streaks[3].current_streak == 0


def test_failing_test_record_is_isolated():
    store = FakeStore({1: active(4, FUTURE), 2: active(4, FUTURE)}, [make_test(5, 1), make_test(6, 2)])
    store.fail_tests.add(5)
    result = run_sweep(store, now=NOW)
    assert result['errors'] == ['Test 5: locked']
    assert result['frozenUsers'] == 1
    assert store.streaks[2].streak_frozen


def test_fetch_failures_are_reported_and_sweep_returns():
    store = FakeStore({1: active(4, FUTURE)}, [make_test(5, 1)])
    store.fail_streak_fetch = True
    result = run_sweep(store, now=NOW)
    assert result['errors'] == ['Expired users fetch: connection refused']
    # Pass B still ran
    assert result['frozenUsers'] == 1

    store = FakeStore({1: active(3, PAST)})
    store.fail_test_fetch = True
    result = run_sweep(store, now=NOW)
    assert result['errors'] == ['Expired tests fetch: timeout']
    assert result['expiredStreaks'] == 1


def test_reconcile_streaks_reports_only_changes():
    snapshots = [(1, active(3, PAST)), (2, active(3, FUTURE)), (3, StreakState())]
    changes, errors = reconcile_streaks(snapshots, NOW)
    assert errors == []
    assert [c.user_id for c in changes] == [1]
    assert changes[0].before.current_streak == 3
    assert changes[0].after.current_streak == 0
    assert changes[0].outcome.reset


def test_plan_test_expiry_records_missing_state_as_error():
    tests = [StackTestSnapshot(5, 1, 50, 'pending', PAST, True, False),
             StackTestSnapshot(6, 2, 60, 'pending', PAST, True, False)]
    changes, errors = plan_test_expiry(tests, {2: active(1, FUTURE)}, NOW)
    assert len(errors) == 1 and errors[0].startswith('Test 5:')
    assert [(c.test_id, c.expire, c.freeze) for c in changes] == [(6, True, True)]


def test_plan_test_expiry_skips_tests_not_yet_due():
    tests = [StackTestSnapshot(5, 1, 50, 'pending', FUTURE, True, False)]
    changes, errors = plan_test_expiry(tests, {1: active(1, FUTURE)}, NOW)
    assert changes == [] and errors == []


def test_fold_records_keeps_accumulator_on_error():
    def step(acc, n):
        if n == 2:
            raise ValueError('two')
        return acc + n, n * 10

    acc, results, errors = fold_records([1, 2, 3], step, acc=0, label=lambda n: f'n{n}')
    assert acc == 4
    assert results == [10, 30]
    assert errors == ['n2: two']


def test_frozen_user_still_resets_in_sweep():
    store = FakeStore({1: replace(active(3, PAST), streak_frozen=True)})
    result = run_sweep(store, now=NOW)
    assert result['expiredStreaks'] == 1
    assert store.streaks[1].current_streak == 0
    assert not store.streaks[1].streak_frozen
