import os
from pony.orm import Database, Required, Optional, Set
from datetime import date, datetime, timezone

from streak import StreakState, as_utc, to_db, encode_pending_goals, decode_pending_goals
from sr import ReviewState, DEFAULT_EASE, is_mastered

"""PonyORM models and initialization.

Defines User, Stack, Flashcard and StackTest. Datetimes are stored as naive
UTC values (sqlite does not keep tzinfo) and converted to aware UTC
datetimes when handed to the scheduling and streak code.
"""

db = Database()

TEST_STATUSES = ('pending', 'passed', 'failed', 'expired')
# statuses of a test that has not been passed yet
OPEN_TEST_STATUSES = ('pending', 'failed', 'expired')


def _utcnow_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _parse_day(raw):
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


class User(db.Entity):
    username = Required(str, unique=True)
    # IANA timezone name; streak days and deadlines are computed in this zone
    timezone = Optional(str, default='UTC')
    created_at = Optional(datetime, default=_utcnow_naive)
    stacks = Set('Stack', cascade_delete=True)
    tests = Set('StackTest', cascade_delete=True)
    # streak state
    current_streak = Optional(int, default=0)
    longest_streak = Optional(int, default=0)
    streak_frozen = Optional(bool, default=False)
    cards_mastered_today = Optional(int, default=0)
    # ISO date (user's local day) that cards_mastered_today refers to
    last_mastery_date = Optional(str, nullable=True)
    # JSON list of {"day", "at"} entries awaiting reconciliation by the sweep
    pending_goals = Optional(str, nullable=True)
    last_credited_date = Optional(str, nullable=True)
    display_deadline = Optional(datetime, nullable=True)
    streak_deadline = Optional(datetime, nullable=True)
    # totals
    total_reviews = Optional(int, default=0)
    total_stacks_completed = Optional(int, default=0)

    def streak_state(self):
        return StreakState(
            current_streak=self.current_streak or 0,
            longest_streak=self.longest_streak or 0,
            streak_frozen=bool(self.streak_frozen),
            cards_mastered_today=self.cards_mastered_today or 0,
            streak_deadline=as_utc(self.streak_deadline),
            display_deadline=as_utc(self.display_deadline),
            timezone=self.timezone or 'UTC',
            last_mastery_date=_parse_day(self.last_mastery_date),
            pending_goals=decode_pending_goals(self.pending_goals),
            last_credited_date=_parse_day(self.last_credited_date),
        )

    def apply_streak_state(self, state):
        """Write every streak field from `state` in one place."""
        self.current_streak = state.current_streak
        self.longest_streak = state.longest_streak
        self.streak_frozen = state.streak_frozen
        self.cards_mastered_today = state.cards_mastered_today
        self.streak_deadline = to_db(state.streak_deadline)
        self.display_deadline = to_db(state.display_deadline)
        self.last_mastery_date = state.last_mastery_date.isoformat() if state.last_mastery_date else None
        self.pending_goals = encode_pending_goals(state.pending_goals) if state.pending_goals else None
        self.last_credited_date = state.last_credited_date.isoformat() if state.last_credited_date else None


class Stack(db.Entity):
    user = Required(User)
    title = Required(str)
    description = Optional(str, nullable=True)
    target_language = Optional(str)
    native_language = Optional(str)
    # 'learning' -> 'pending_test' -> 'completed'
    status = Optional(str, default='learning')
    # true while cards of this stack count toward the current streak
    contributed_to_streak = Optional(bool, default=False)
    created_at = Optional(datetime, default=_utcnow_naive)
    last_test_date = Optional(datetime, nullable=True)
    cards = Set('Flashcard', cascade_delete=True)
    tests = Set('StackTest', cascade_delete=True)

    def all_cards_mastered(self):
        cards = list(self.cards)
        return bool(cards) and all(is_mastered(c.mastery_level) for c in cards)

    def to_dict(self):
        cards = list(self.cards)
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'targetLanguage': self.target_language,
            'nativeLanguage': self.native_language,
            'status': self.status,
            'contributedToStreak': bool(self.contributed_to_streak),
            'cardCount': len(cards),
            'masteredCount': sum(1 for c in cards if is_mastered(c.mastery_level)),
        }


class Flashcard(db.Entity):
    stack = Required(Stack)
    card_order = Optional(int, default=0)
    target_phrase = Required(str)
    native_translation = Required(str)
    example_sentence = Optional(str, nullable=True)
    # spaced repetition fields
    mastery_level = Optional(int, default=0)
    ease_factor = Optional(float, default=DEFAULT_EASE)
    interval_days = Optional(int, default=1)
    next_review_date = Optional(datetime, nullable=True)
    last_reviewed_at = Optional(datetime, nullable=True)
    review_count = Optional(int, default=0)
    # ISO date this card counted toward the daily goal, cleared on lapse/reset
    contributed_to_streak_date = Optional(str, nullable=True)

    def apply_review(self, review, now):
        self.mastery_level = review.mastery_level
        self.ease_factor = review.ease_factor
        self.interval_days = review.interval_days
        self.next_review_date = to_db(review.next_review_date)
        self.last_reviewed_at = to_db(now)
        self.review_count = (self.review_count or 0) + 1

    def review_state(self):
        return ReviewState(
            mastery_level=self.mastery_level or 0,
            ease_factor=self.ease_factor or DEFAULT_EASE,
            interval_days=self.interval_days or 1,
            next_review_date=as_utc(self.next_review_date),
        )

    def to_dict(self, reveal=False):
        d = {
            'id': self.id,
            'stackId': self.stack.id,
            'nativeTranslation': self.native_translation,
            'exampleSentence': self.example_sentence,
            'masteryLevel': self.mastery_level,
            'easeFactor': self.ease_factor,
            'intervalDays': self.interval_days,
            'nextReviewDate': as_utc(self.next_review_date).isoformat() if self.next_review_date else None,
            'reviewCount': self.review_count,
        }
        # the answer is only sent once the card has been answered
        if reveal:
            d['targetPhrase'] = self.target_phrase
        return d


class StackTest(db.Entity):
    user = Required(User)
    stack = Required(Stack)
    stack_size = Required(int)
    all_cards_mastered_at = Required(datetime)
    display_deadline = Optional(datetime, nullable=True)
    test_deadline = Required(datetime)
    test_status = Required(str, default='pending', py_check=lambda v: v in TEST_STATUSES)
    # whether passing this test can lift a streak freeze (false for legacy tests)
    can_unfreeze_streak = Optional(bool, default=False)
    # set once this test's expiry has frozen the streak
    has_frozen_streak = Optional(bool, default=False)
    completed_at = Optional(datetime, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'stackId': self.stack.id,
            'stackSize': self.stack_size,
            'status': self.test_status,
            'displayDeadline': as_utc(self.display_deadline).isoformat() if self.display_deadline else None,
            'testDeadline': as_utc(self.test_deadline).isoformat(),
            'canUnfreezeStreak': bool(self.can_unfreeze_streak),
            'hasFrozenStreak': bool(self.has_frozen_streak),
            'isLegacy': not self.can_unfreeze_streak,
        }


def init_db(path='sqlite:///db.sqlite', create_tables=True):
    # If database already bound, ensure mappings are generated for this process
    # (idempotent).
    if getattr(db, 'provider', None) is not None:
        if getattr(db, 'schema', None) is None:
            db.generate_mapping(create_tables=create_tables)
        return db

    # Priority 1: Use DATABASE_URL env var (Postgres URI)
    database_url = os.environ.get('DATABASE_URL')
    if database_url:
        try:
            db.bind(provider='postgres', dsn=database_url)
        except Exception:
            # if binding fails, continue to sqlite fallback below
            database_url = None

    # Priority 2: explicit PG env vars (PGHOST/PGPORT/PGUSER/PGPASSWORD/PGDATABASE)
    if not database_url:
        pg_host = os.environ.get('PGHOST')
        pg_db = os.environ.get('PGDATABASE')
        if pg_host and pg_db:
            pg_port = os.environ.get('PGPORT', '5432')
            pg_user = os.environ.get('PGUSER', os.environ.get('POSTGRES_USER', 'postgres'))
            pg_password = os.environ.get('PGPASSWORD', os.environ.get('POSTGRES_PASSWORD', ''))
            dsn = f"postgresql://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"
            try:
                db.bind(provider='postgres', dsn=dsn)
            except Exception:
                # continue to sqlite fallback
                pass

    # Priority 3: sqlite fallback
    if getattr(db, 'provider', None) is None:
        # Place the sqlite file next to models.py unless DATABASE_FILE is set so
        # web and worker processes resolve the same absolute path.
        repo_root = os.path.dirname(os.path.abspath(__file__))
        sqlite_path = os.environ.get('DATABASE_FILE') or os.path.join(repo_root, 'db.sqlite')
        # ':memory:' gives every connection its own DB; map it to a shared
        # file so the test client and test code see the same rows.
        if sqlite_path == ':memory:':
            shared_dir = os.path.join(repo_root, '.run')
            os.makedirs(shared_dir, exist_ok=True)
            sqlite_path = os.path.join(shared_dir, 'pytest_db.sqlite')
        parent = os.path.dirname(sqlite_path)
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        db.bind('sqlite', filename=sqlite_path, create_db=True)

    # Generate mapping for this process (creates tables only when requested)
    db.generate_mapping(create_tables=create_tables)
    return db
