"""Streak and aggregate recomputation over a participant's activity log.

A day counts toward a streak when the sum of ``points_earned`` over its
non-deleted, streak-contributing activities is at least the challenge's
``streak_min_points``. The current streak is the run of consecutive counting
days that ends at the latest counting day, not the longest run.

:func:`replay_streak` is the canonical computation. :func:`advance_streak`
is the forward fast path used when an activity is appended after the
anchor; it returns ``None`` whenever the answer could differ from a replay.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Any, Iterable, Mapping, NamedTuple, Optional

logger = logging.getLogger(__name__)


class StreakState(NamedTuple):
    current_streak: int = 0
    last_streak_day: Optional[date] = None


class ParticipationAggregate(NamedTuple):
    total_points: float = 0.0
    current_streak: int = 0
    last_streak_day: Optional[date] = None


EMPTY_STREAK = StreakState()


def _is_active(activity: Any) -> bool:
    return getattr(activity, "deleted_at", None) is None


def qualifying_day_totals(
    activities: Iterable[Any],
    contributes: Mapping[Any, bool],
) -> dict[date, float]:
    """Sum points per day over non-deleted, streak-contributing activities.

    Args:
        activities: Objects with ``logged_date``, ``points_earned``,
            ``activity_type_id`` and ``deleted_at``
        contributes: Activity type id -> ``contributes_to_streak``; unknown
            types do not contribute

    Returns:
        dict[date, float]: Signed qualifying total per day
    """
    totals: dict[date, float] = defaultdict(float)
    for activity in activities:
        if not _is_active(activity):
            continue
        if not contributes.get(activity.activity_type_id, False):
            continue
        totals[activity.logged_date] += activity.points_earned
    return dict(totals)


def day_counts(total: float, streak_min_points: float) -> bool:
    return total >= streak_min_points


def replay_streak(
    day_totals: Mapping[date, float],
    streak_min_points: float,
    seed: Optional[StreakState] = None,
) -> StreakState:
    """Walk counting days in order and return the run ending at the last one.

    ``seed`` is the state after every day before the first day in
    ``day_totals``; days at or before its anchor are ignored.
    """
    state = seed or EMPTY_STREAK
    counting_days = sorted(
        day for day, total in day_totals.items() if day_counts(total, streak_min_points)
    )
    for day in counting_days:
        anchor = state.last_streak_day
        if anchor is not None and day <= anchor:
            continue
        if anchor is not None and (day - anchor).days == 1:
            state = StreakState(state.current_streak + 1, day)
        else:
            state = StreakState(1, day)
    return state


def recompute_streak_window(
    day_totals: Mapping[date, float],
    streak_min_points: float,
    from_day: date,
    to_day: Optional[date] = None,
    seed: Optional[StreakState] = None,
) -> StreakState:
    """Replay only the days in ``[from_day, to_day]``.

    When ``seed`` is omitted it is derived from the days in ``day_totals``
    before ``from_day``. With ``to_day`` omitted the window is open ended,
    which makes the result identical to a full replay.
    """
    if seed is None:
        before = {day: total for day, total in day_totals.items() if day < from_day}
        seed = replay_streak(before, streak_min_points)

    window = {
        day: total
        for day, total in day_totals.items()
        if day >= from_day and (to_day is None or day <= to_day)
    }
    return replay_streak(window, streak_min_points, seed)


def advance_streak(
    state: StreakState,
    day: date,
    day_total: float,
    streak_min_points: float,
) -> Optional[StreakState]:
    """Update ``state`` after an append on ``day`` without replaying.

    ``day_total`` is the day's qualifying total after the append. Returns
    ``None`` when the day is at or before the anchor and its outcome might
    have changed, in which case the caller has to replay.
    """
    anchor = state.last_streak_day
    counts = day_counts(day_total, streak_min_points)

    if anchor is None:
        return StreakState(1, day) if counts else state

    if day > anchor:
        if not counts:
            return state
        if (day - anchor).days == 1:
            return StreakState(state.current_streak + 1, day)
        return StreakState(1, day)

    if day == anchor and counts:
        return state

    return None


def rebuild_participation_aggregate(
    activities: Iterable[Any],
    contributes: Mapping[Any, bool],
    streak_min_points: float,
    precision: int = 2,
) -> ParticipationAggregate:
    """Fold an activity log into total points and streak from scratch."""
    activities = list(activities)
    total = sum(a.points_earned for a in activities if _is_active(a))
    state = replay_streak(qualifying_day_totals(activities, contributes), streak_min_points)
    return ParticipationAggregate(
        total_points=round(total, precision) + 0.0,
        current_streak=state.current_streak,
        last_streak_day=state.last_streak_day,
    )
