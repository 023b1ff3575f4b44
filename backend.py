"""Flask web application for the flashcard streak trainer.

This module defines the HTTP routes for login (mock), creating and listing
flashcard stacks, reviewing cards (grading, spaced repetition scheduling and
daily streak tracking), mastery tests, streak status, the leaderboard and
the hourly streak sweep trigger.

The app uses PonyORM for persistence. The sweep normally runs hourly from
celery beat (see tasks.py); /api/check-streaks lets an external scheduler
trigger it over HTTP instead.
"""

from flask import Flask, jsonify, request, session, redirect, url_for
from pony.orm import db_session, select
import os
from types import SimpleNamespace
from dotenv import load_dotenv
from models import init_db, User, Stack, Flashcard, StackTest
from sr import InvalidQuality, schedule_next_review, validate_quality, is_mastered
from grading import grade_answer
from llm_grader import grade_with_llm
from selection import select_card
from streak import CardMastered, CardLapsed, local_date, transition, utcnow
from stack_tests import maybe_trigger_test, complete_test, StackTestAlreadyPassed
from store import StreakStore
from sweep import run_sweep
from auth import is_authorized_cron

# load .env if present
load_dotenv()

import logging

# named logger for the application
logger = logging.getLogger('flashstreak')


def _configure_logging():
    # Allow explicit override via environment variable LOG_LEVEL or FLASHSTREAK_LOG_LEVEL
    env_level = os.environ.get('LOG_LEVEL') or os.environ.get('FLASHSTREAK_LOG_LEVEL')
    is_dev = (os.environ.get('FLASK_ENV') == 'development') or (os.environ.get('FLASK_DEBUG') == '1')
    if env_level:
        requested = getattr(logging, env_level.strip().upper(), None)
        if not isinstance(requested, int):
            # fallback to INFO if the provided value is invalid
            requested = logging.INFO
    else:
        requested = logging.DEBUG if is_dev else logging.INFO

    # Never allow DEBUG logging in production.
    suppressed_debug = False
    if not is_dev and requested == logging.DEBUG:
        requested = logging.INFO
        suppressed_debug = True
    level = requested
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s')
        ch.setFormatter(fmt)
        logger.addHandler(ch)
    logger.setLevel(level)
    if suppressed_debug:
        logger.warning('DEBUG logging was requested via LOG_LEVEL but suppressed because FLASK_ENV is not development')


def get_current_user():
    """Return a lightweight object with .username from the session or None.

    This helper does NOT touch the database; callers re-query the ORM inside
    a db_session when they need a Pony entity.
    """
    username = session.get('username')
    if not username:
        return None
    return SimpleNamespace(username=username)


def json_error(message, code=400):
    return jsonify({'error': message}), code


def _load_owned_stack(username, stack_id):
    stack = Stack.get(id=stack_id)
    if not stack or stack.user.username != username:
        return None
    return stack


def _record_mastery_change(user, card, was_mastered, now):
    """Feed a card's mastery transition into the user's streak state.

    Returns the streak Outcome (or None when mastery did not cross the
    threshold). Expects `user` and `card` to be PonyORM entities.
    """
    now_mastered = is_mastered(card.mastery_level)
    state = user.streak_state()
    today = local_date(now, state.timezone).isoformat()
    if not was_mastered and now_mastered:
        state, outcome = transition(state, CardMastered(now))
        card.contributed_to_streak_date = today
        card.stack.contributed_to_streak = True
    elif was_mastered and not now_mastered and card.contributed_to_streak_date == today:
        # only a card that counted today takes today's progress back with it
        state, outcome = transition(state, CardLapsed(now))
        card.contributed_to_streak_date = None
    else:
        return None
    user.apply_streak_state(state)
    if outcome.goal_met:
        logger.info('Daily goal met for user=%s (%d cards)', user.username, state.cards_mastered_today)
    return outcome


app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', os.urandom(24))

is_dev = (os.environ.get('FLASK_ENV') == 'development') or (os.environ.get('FLASK_DEBUG') == '1')

app.config.update({
    'SESSION_COOKIE_SECURE': not is_dev,
    'SESSION_COOKIE_HTTPONLY': True,
    'SESSION_COOKIE_SAMESITE': 'Lax',
})

# Configure logging early
_configure_logging()


@app.route('/')
def index():
    if get_current_user():
        return redirect(url_for('list_stacks'))
    return jsonify({'status': 'ok', 'login': url_for('login')})


@app.route('/health')
def health():
    # Simple health endpoint for container healthchecks. Keep lightweight.
    return jsonify({'status': 'ok'}), 200


@app.route('/ready')
def ready():
    """Readiness probe: 200 when the database is reachable, 503 otherwise."""
    try:
        with db_session:
            User.select()[:1]
    except Exception as e:
        logger.error('Readiness DB check failed: %s', e)
        return jsonify({'ready': False, 'reason': 'db-unavailable'}), 503
    return jsonify({'ready': True}), 200


@app.route('/login')
def login():
    # Mock login for tests/development: ?user=name[&tz=Europe/Paris] when
    # ALLOW_MOCK_LOGIN=1. Real authentication is handled by a fronting
    # identity provider.
    user = request.args.get('user') or (request.form.get('user') if request.form else None)
    j = request.get_json(silent=True) or {}
    if not user and isinstance(j, dict):
        user = j.get('user')
    tz = request.args.get('tz') or (j.get('tz') if isinstance(j, dict) else None)

    if user and os.environ.get('ALLOW_MOCK_LOGIN') == '1':
        with db_session:
            u = User.get(username=user)
            if not u:
                u = User(username=user, timezone=tz or 'UTC')
            elif tz:
                u.timezone = tz
        session['username'] = user
        return jsonify({'ok': True}), 200

    if 'username' in session:
        return jsonify({'username': session['username']}), 200
    return json_error('not logged in', 401)


@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('index'))


@app.route('/api/stacks', methods=['GET'])
def list_stacks():
    current = get_current_user()
    if not current:
        return json_error('not logged in', 401)
    with db_session:
        u = User.get(username=current.username)
        if not u:
            return json_error('user not found', 404)
        stacks = sorted(u.stacks, key=lambda s: s.id)
        return jsonify({'stacks': [s.to_dict() for s in stacks]})


@app.route('/api/stacks', methods=['POST'])
def create_stack():
    # expects JSON {"title": "...", "targetLanguage": "...", "nativeLanguage": "...",
    #               "cards": [{"targetPhrase": "...", "nativeTranslation": "..."}]}
    current = get_current_user()
    if not current:
        return json_error('not logged in', 401)
    data = request.get_json() or {}
    title = (data.get('title') or '').strip()
    cards = data.get('cards') or []
    if not title:
        return json_error('title required')
    if not isinstance(cards, list) or not cards:
        return json_error('cards required')
    for c in cards:
        if not isinstance(c, dict) or not c.get('targetPhrase') or not c.get('nativeTranslation'):
            return json_error('each card needs targetPhrase and nativeTranslation')

    with db_session:
        u = User.get(username=current.username)
        if not u:
            return json_error('user not found', 404)
        stack = Stack(
            user=u,
            title=title,
            description=data.get('description'),
            target_language=data.get('targetLanguage') or '',
            native_language=data.get('nativeLanguage') or '',
        )
        for i, c in enumerate(cards):
            Flashcard(
                stack=stack,
                card_order=i,
                target_phrase=c['targetPhrase'],
                native_translation=c['nativeTranslation'],
                example_sentence=c.get('exampleSentence'),
            )
        stack.flush()
        logger.info('Created stack id=%s for user=%s with %d cards', stack.id, u.username, len(cards))
        return jsonify(stack.to_dict()), 201


@app.route('/api/stacks/<int:stack_id>')
def get_stack(stack_id):
    current = get_current_user()
    if not current:
        return json_error('not logged in', 401)
    with db_session:
        stack = _load_owned_stack(current.username, stack_id)
        if not stack:
            return json_error('stack not found', 404)
        d = stack.to_dict()
        d['cards'] = [c.to_dict() for c in sorted(stack.cards, key=lambda c: c.card_order)]
        d['tests'] = [t.to_dict() for t in sorted(stack.tests, key=lambda t: t.id)]
        return jsonify(d)


@app.route('/api/stacks/<int:stack_id>/next_card')
def next_card(stack_id):
    current = get_current_user()
    if not current:
        return json_error('not logged in', 401)
    try:
        cooldown = int(request.args.get('cooldown', 0))
    except ValueError:
        return json_error('invalid cooldown')
    with db_session:
        stack = _load_owned_stack(current.username, stack_id)
        if not stack:
            return json_error('stack not found', 404)
        chosen = select_card(stack.cards, cooldown_minutes=cooldown)
        if not chosen:
            return json_error('no cards available', 404)
        logger.debug('Selected card id=%s for user=%s', chosen.id, current.username)
        return jsonify(chosen.to_dict())


@app.route('/api/review', methods=['POST'])
def review_card():
    """Answer a card: grade it, reschedule it and update the daily streak.

    Body: {"cardId": n, "answer": "..."} to grade a typed answer, or
    {"cardId": n, "quality": 0-5} when the client already rated the recall.
    """
    current = get_current_user()
    if not current:
        return json_error('not logged in', 401)
    data = request.get_json() or {}
    card_id = data.get('cardId', data.get('card_id'))
    if card_id is None:
        return json_error('cardId required')
    try:
        card_id = int(card_id)
    except (TypeError, ValueError):
        return json_error('invalid cardId')
    if 'answer' not in data and 'quality' not in data:
        return json_error('answer or quality required')

    now = utcnow()
    with db_session:
        card = Flashcard.get(id=card_id)
        if not card or card.stack.user.username != current.username:
            return json_error('card not found', 404)
        user = card.stack.user

        grade = None
        if 'answer' in data:
            grade = grade_answer(str(data.get('answer') or ''), card.target_phrase)
            quality = grade.quality
        else:
            try:
                quality = validate_quality(data.get('quality'))
            except InvalidQuality as e:
                return json_error(str(e))

        was_mastered = is_mastered(card.mastery_level)
        prev = card.review_state()
        review = schedule_next_review(prev.mastery_level, prev.ease_factor, prev.interval_days, quality, now=now)
        card.apply_review(review, now)
        user.total_reviews = (user.total_reviews or 0) + 1
        logger.debug('Reviewed card id=%s user=%s quality=%s mastery %s -> %s',
                     card.id, user.username, quality, prev.mastery_level, review.mastery_level)

        outcome = _record_mastery_change(user, card, was_mastered, now)
        test, test_message = maybe_trigger_test(user, card.stack, now)

        state = user.streak_state()
        resp = {
            'cardId': card.id,
            'quality': quality,
            'masteryLevel': review.mastery_level,
            'easeFactor': review.ease_factor,
            'intervalDays': review.interval_days,
            'nextReviewDate': review.next_review_date.isoformat(),
            'streak': state.to_dict(now),
            'dailyGoalMet': bool(outcome and outcome.goal_met),
            'testTriggered': test is not None,
        }
        if grade is not None:
            resp['grade'] = grade.to_dict()
            resp['correctAnswer'] = card.target_phrase
        if test is not None:
            test.flush()
            resp['test'] = test.to_dict()
        if test_message:
            resp['testMessage'] = test_message
        return jsonify(resp)


@app.route('/api/grade-answer', methods=['POST'])
def api_grade_answer():
    data = request.get_json() or {}
    user_answer = data.get('userAnswer')
    correct_answer = data.get('correctAnswer')
    target_language = data.get('targetLanguage')
    if not user_answer or not correct_answer or not target_language:
        return json_error('Missing required fields')

    if data.get('strategy') == 'fuzzy':
        return jsonify(grade_answer(user_answer, correct_answer).to_dict())

    try:
        result = grade_with_llm(user_answer, correct_answer, target_language, data.get('nativeTranslation'))
    except Exception as e:
        logger.exception('Grade answer error')
        return jsonify({'error': 'Failed to grade answer', 'details': str(e)}), 500
    return jsonify(result.to_dict())


@app.route('/api/tests/<int:test_id>/submit', methods=['POST'])
def submit_test(test_id):
    current = get_current_user()
    if not current:
        return json_error('not logged in', 401)
    data = request.get_json() or {}
    passed = data.get('passed')
    if not isinstance(passed, bool):
        return json_error('passed must be true or false')
    with db_session:
        test = StackTest.get(id=test_id)
        if not test or test.user.username != current.username:
            return json_error('test not found', 404)
        try:
            result = complete_test(test, passed)
        except StackTestAlreadyPassed as e:
            return json_error(str(e), 409)
        result['test'] = test.to_dict()
        return jsonify(result)


@app.route('/api/streak')
def streak_status():
    current = get_current_user()
    if not current:
        return json_error('not logged in', 401)
    with db_session:
        u = User.get(username=current.username)
        if not u:
            return json_error('user not found', 404)
        d = u.streak_state().to_dict(utcnow())
        d['pendingTests'] = [t.to_dict() for t in sorted(u.tests, key=lambda t: t.id)
                             if t.test_status != 'passed']
        return jsonify(d)


@app.route('/api/check-streaks', methods=['GET', 'POST'])
def check_streaks():
    if not is_authorized_cron(request.headers.get('Authorization')):
        logger.warning('Unauthorized streak sweep request')
        return json_error('Unauthorized', 401)
    summary = run_sweep(StreakStore())
    return jsonify(summary), 200


@app.route('/leaderboard')
def leaderboard():
    try:
        page = max(1, int(request.args.get('page', 1)))
        per = max(1, int(request.args.get('per', 20)))
    except ValueError:
        return json_error('invalid paging parameters')
    with db_session:
        users = select(u for u in User)[:]
        scored = [{
            'username': u.username,
            'currentStreak': u.current_streak or 0,
            'longestStreak': u.longest_streak or 0,
            'stacksCompleted': u.total_stacks_completed or 0,
        } for u in users]
    scored.sort(key=lambda x: (-x['currentStreak'], -x['longestStreak'], x['username']))
    for rank, item in enumerate(scored, start=1):
        item['rank'] = rank
    start = (page - 1) * per
    return jsonify({'total': len(scored), 'page': page, 'per': per, 'items': scored[start:start + per]})


if __name__ == '__main__':
    # Initialize DB for development runs
    init_db()
    host = os.environ.get('FLASK_HOST') or os.environ.get('HOST') or '127.0.0.1'
    port = int(os.environ.get('FLASK_PORT') or os.environ.get('PORT') or 5000)
    debug = os.environ.get('FLASK_DEBUG', '1')
    app.run(host=host, port=port, debug=(debug == '1'))
