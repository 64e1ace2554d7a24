"""
Waitlist priority scoring.

priority = rank + loyalty tier weight + wait bonus

The rank rewards flexibility (alternative times, accepting combined tables,
no floor preference) and is fixed at enrollment. The wait bonus grows with
time on the list, so priority is recomputed at every matching pass.
"""
from __future__ import annotations

from datetime import datetime

from venue_booking.services.waitlist_state import WaitlistPreferences

TIER_WEIGHTS = {
    "BRONZE": 0.0,
    "SILVER": 50.0,
    "GOLD": 100.0,
    "PLATINUM": 150.0,
}

WAIT_MINUTES_PER_POINT = 10
MAX_WAIT_BONUS = 100.0

RANK_MIN = 0.0
RANK_MAX = 1000.0

# Flexibility bonuses
ALTERNATIVE_TIME_BONUS = 25.0
COMBINATION_BONUS = 40.0
NO_FLOOR_PREFERENCE_BONUS = 20.0
SPECIAL_OCCASION_BONUS = 15.0
MULTI_CHANNEL_BONUS = 20.0
SMALL_PARTY_BONUS = 10.0
LARGE_PARTY_PENALTY = 10.0


def flexibility_rank(preferences: WaitlistPreferences) -> float:
    """Score how easy a party is to place. Clamped to 0-1000."""
    score = RANK_MIN
    score += len(preferences.alternative_times) * ALTERNATIVE_TIME_BONUS
    if preferences.accepts_combination:
        score += COMBINATION_BONUS
    if not preferences.floor:
        score += NO_FLOOR_PREFERENCE_BONUS
    if preferences.special_occasion:
        score += SPECIAL_OCCASION_BONUS
    if len(preferences.notification_channels) > 1:
        score += MULTI_CHANNEL_BONUS
    if preferences.party_size >= 8:
        score -= LARGE_PARTY_PENALTY
    elif preferences.party_size <= 3:
        score += SMALL_PARTY_BONUS
    return max(RANK_MIN, min(RANK_MAX, score))


def tier_weight(loyalty_tier: str) -> float:
    return TIER_WEIGHTS.get((loyalty_tier or "").upper(), 0.0)


def wait_bonus(created_at: datetime, now: datetime) -> float:
    waited_minutes = max(0.0, (now - created_at).total_seconds() / 60)
    return min(MAX_WAIT_BONUS, waited_minutes // WAIT_MINUTES_PER_POINT)


def compute_priority(
    rank: float,
    loyalty_tier: str,
    created_at: datetime,
    now: datetime,
) -> float:
    return rank + tier_weight(loyalty_tier) + wait_bonus(created_at, now)
