"""Tests for streak replay, the forward fast path and aggregate rebuilds."""

from __future__ import annotations

import random
from datetime import datetime, timezone
from types import SimpleNamespace

from challenge_tracker.web.streaks import (
    EMPTY_STREAK,
    StreakState,
    advance_streak,
    qualifying_day_totals,
    rebuild_participation_aggregate,
    recompute_streak_window,
    replay_streak,
)
from tests.conftest import day

MIN_POINTS = 10


def make_activity(n: int, points: float, type_id: str = "run", deleted: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        logged_date=day(n),
        points_earned=points,
        activity_type_id=type_id,
        deleted_at=datetime(2026, 3, 30, tzinfo=timezone.utc) if deleted else None,
    )


# ============================================================================
# FULL REPLAY
# ============================================================================


class TestReplayStreak:
    """The current streak is the counting run ending at the latest counting day."""

    def test_no_counting_days(self):
        assert replay_streak({}, MIN_POINTS) == EMPTY_STREAK
        assert replay_streak({day(1): 5}, MIN_POINTS) == StreakState(0, None)

    def test_consecutive_days(self):
        totals = {day(1): 10, day(2): 25, day(3): 11}
        assert replay_streak(totals, MIN_POINTS) == StreakState(3, day(3))

    def test_gap_resets(self):
        assert replay_streak({day(1): 20, day(3): 20}, MIN_POINTS) == StreakState(1, day(3))

    def test_backfill_closes_gap(self):
        totals = {day(1): 20, day(3): 20}
        assert replay_streak(totals, MIN_POINTS) == StreakState(1, day(3))
        totals[day(2)] = 20
        assert replay_streak(totals, MIN_POINTS) == StreakState(3, day(3))

    def test_retroactive_penalty_shortens_streak(self):
        totals = {day(1): 20, day(2): 20, day(3): 20}
        assert replay_streak(totals, MIN_POINTS).current_streak == 3
        totals[day(2)] = 20 - 15
        assert replay_streak(totals, MIN_POINTS) == StreakState(1, day(3))

    def test_longest_run_is_not_used(self):
        totals = {day(1): 20, day(2): 20, day(3): 20, day(5): 20}
        assert replay_streak(totals, MIN_POINTS) == StreakState(1, day(5))

    def test_seed_continues_earlier_run(self):
        seed = StreakState(4, day(4))
        assert replay_streak({day(5): 12}, MIN_POINTS, seed) == StreakState(5, day(5))


class TestRecomputeStreakWindow:
    """Replaying from a day onward matches a full replay."""

    TOTALS = {day(1): 20, day(2): 20, day(4): 20, day(5): 3, day(6): 20, day(7): 20}

    def test_open_window_matches_full_replay(self):
        full = replay_streak(self.TOTALS, MIN_POINTS)
        for n in range(1, 9):
            assert recompute_streak_window(self.TOTALS, MIN_POINTS, day(n)) == full

    def test_closed_window(self):
        state = recompute_streak_window(self.TOTALS, MIN_POINTS, day(2), to_day=day(4))
        assert state == StreakState(1, day(4))

    def test_explicit_seed(self):
        state = recompute_streak_window(
            {day(6): 20, day(7): 20}, MIN_POINTS, day(6), seed=StreakState(2, day(5))
        )
        assert state == StreakState(4, day(7))


# ============================================================================
# FAST PATH
# ============================================================================


class TestAdvanceStreak:
    """Forward appends update the streak without a replay."""

    def test_first_counting_day(self):
        assert advance_streak(EMPTY_STREAK, day(3), 12, MIN_POINTS) == StreakState(1, day(3))

    def test_first_day_below_threshold(self):
        assert advance_streak(EMPTY_STREAK, day(3), 2, MIN_POINTS) == EMPTY_STREAK

    def test_same_day_repeat_counts_once(self):
        state = StreakState(2, day(2))
        assert advance_streak(state, day(2), 40, MIN_POINTS) == state

    def test_next_day_extends(self):
        assert advance_streak(StreakState(2, day(2)), day(3), 10, MIN_POINTS) == StreakState(3, day(3))

    def test_gap_resets(self):
        assert advance_streak(StreakState(2, day(2)), day(5), 10, MIN_POINTS) == StreakState(1, day(5))

    def test_later_day_below_threshold_changes_nothing(self):
        state = StreakState(2, day(2))
        assert advance_streak(state, day(3), 9, MIN_POINTS) == state

    def test_backfill_needs_replay(self):
        assert advance_streak(StreakState(1, day(3)), day(2), 20, MIN_POINTS) is None

    def test_anchor_day_dropping_needs_replay(self):
        assert advance_streak(StreakState(3, day(3)), day(3), -5, MIN_POINTS) is None

    def test_matches_replay_for_random_logs(self):
        rng = random.Random(20260302)
        for _ in range(200):
            totals: dict = {}
            state = EMPTY_STREAK
            for _ in range(15):
                when = day(rng.randint(1, 12))
                totals[when] = totals.get(when, 0) + rng.choice([-15, -5, 3, 8, 12, 30])
                advanced = advance_streak(state, when, totals[when], MIN_POINTS)
                expected = replay_streak(totals, MIN_POINTS)
                if advanced is not None:
                    assert advanced == expected
                state = expected


# ============================================================================
# AGGREGATE REBUILD
# ============================================================================


class TestRebuildParticipationAggregate:
    """Totals and streak fold from the activity log alone."""

    def test_deleted_and_non_contributing_activities(self):
        activities = [
            make_activity(1, 20),
            make_activity(2, 20),
            make_activity(2, 50, deleted=True),
            make_activity(3, 4),
            make_activity(3, 30, type_id="bonus"),
            make_activity(3, -9, type_id="drinks"),
        ]
        contributes = {"run": True, "drinks": True, "bonus": False}

        aggregate = rebuild_participation_aggregate(activities, contributes, MIN_POINTS)

        assert aggregate.total_points == 20 + 20 + 4 + 30 - 9
        assert aggregate.current_streak == 2
        assert aggregate.last_streak_day == day(2)

    def test_day_totals_include_penalties(self):
        totals = qualifying_day_totals(
            [make_activity(1, 20), make_activity(1, -15, type_id="drinks")],
            {"run": True, "drinks": True},
        )
        assert totals == {day(1): 5}

    def test_unknown_types_do_not_contribute(self):
        assert qualifying_day_totals([make_activity(1, 20, type_id="gone")], {}) == {}

    def test_float_totals_rounded(self):
        activities = [make_activity(1, 0.1), make_activity(1, 0.2)]
        aggregate = rebuild_participation_aggregate(activities, {"run": True}, 0.3)
        assert aggregate.total_points == 0.3
