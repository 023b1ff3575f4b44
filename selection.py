"""Flashcard selection helpers.

Provides weighted-random selection, due filtering, and a cooldown-based
recent-review filter to avoid showing the same card repeatedly.
"""

from datetime import datetime, timedelta, timezone
import random


def _aware(dt):
    # dt can be an ISO string (from JSON) or a datetime; naive values are UTC
    if dt is None:
        return None
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def card_weight(card):
    """Harder cards (low ease, low mastery) are picked more often."""
    ease = getattr(card, 'ease_factor', None) or 2.5
    mastery = getattr(card, 'mastery_level', None) or 0
    return max(0.1, (3.0 - min(ease, 3.0)) + 1.0 / (1 + mastery))


def choose_weighted(lst):
    if not lst:
        return None
    total = sum(card_weight(c) for c in lst)
    r = random.random() * total
    upto = 0
    for c in lst:
        upto += card_weight(c)
        if upto >= r:
            return c
    return lst[-1]


def due_cards(cards, now=None):
    now = now or datetime.now(timezone.utc)
    out = []
    for c in cards:
        nr = _aware(getattr(c, 'next_review_date', None))
        # never-reviewed cards are always due
        if nr is None or nr <= now:
            out.append(c)
    return out


def filter_recent(cards, cooldown_minutes=0, now=None):
    if not cooldown_minutes:
        return list(cards)
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=cooldown_minutes)
    out = []
    for c in cards:
        lr = _aware(getattr(c, 'last_reviewed_at', None))
        if lr is None or lr <= cutoff:
            out.append(c)
    return out


def select_card(cards, now=None, cooldown_minutes=0):
    """Pick the next card to review: due cards first, then anything off cooldown."""
    now = now or datetime.now(timezone.utc)
    cards = list(cards)
    due = filter_recent(due_cards(cards, now), cooldown_minutes, now)
    chosen = choose_weighted(due)
    if chosen:
        return chosen

    fallback = filter_recent(cards, cooldown_minutes, now)
    return choose_weighted(fallback)
