"""Tests for challenge setup: challenges, activity types, achievements and config."""

from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from challenge_tracker.shared.config import Settings, configure_logging, get_settings
from challenge_tracker.web.crud import (
    BusinessRuleError,
    ChallengeOperations,
    ConflictError,
    MembershipError,
    NotFoundError,
)
from challenge_tracker.web.models import Activity, ActivitySource, PaymentStatus, UserAchievement
from tests.conftest import START, day


@pytest.fixture
def challenges(session, settings) -> ChallengeOperations:
    return ChallengeOperations(session, settings)


class TestCreateChallenge:
    async def test_duration_derived(self, challenges):
        challenge = await challenges.create_challenge("Spring", START, day(30), streak_min_points=5)

        assert challenge.duration_days == 30
        assert not challenge.is_final_day(day(30))

    async def test_end_before_start(self, challenges):
        with pytest.raises(BusinessRuleError):
            await challenges.create_challenge("Backwards", day(5), day(1))

    async def test_final_days_out_of_range(self, challenges):
        with pytest.raises(BusinessRuleError, match="Final days"):
            await challenges.create_challenge("Short", START, day(7), final_days_start=8)

    async def test_final_day_window(self, challenges):
        challenge = await challenges.create_challenge("Finale", START, day(28), final_days_start=26)

        assert [n for n in range(1, 30) if challenge.is_final_day(day(n))] == [26, 27, 28]


class TestParticipants:
    async def test_join_is_idempotent(self, challenges):
        challenge = await challenges.create_challenge("Club", START, day(28))

        first = await challenges.add_participant(challenge.id, "dana")
        second = await challenges.add_participant(challenge.id, "dana", PaymentStatus.PAID)

        assert first is second
        assert not second.is_paid

    async def test_unknown_challenge(self, challenges):
        with pytest.raises(NotFoundError):
            await challenges.add_participant(uuid4(), "dana")

    async def test_payment_status(self, challenges):
        challenge = await challenges.create_challenge("Club", START, day(28), requires_payment=True)
        await challenges.add_participant(challenge.id, "dana")

        participation = await challenges.set_payment_status("dana", challenge.id, PaymentStatus.PAID)
        assert participation.is_paid

        with pytest.raises(BusinessRuleError):
            await challenges.set_payment_status("dana", challenge.id, "refunded")

    async def test_not_joined(self, challenges):
        challenge = await challenges.create_challenge("Club", START, day(28))

        with pytest.raises(MembershipError):
            await challenges.get_participation("erin", challenge.id)


class TestActivityTypes:
    async def test_invalid_scoring_config(self, scenario, challenges):
        with pytest.raises(BusinessRuleError):
            await challenges.create_activity_type(scenario.challenge.id, "Mystery", {"type": "variable"})

    async def test_invalid_bonus_thresholds(self, scenario, challenges):
        with pytest.raises(BusinessRuleError):
            await challenges.create_activity_type(
                scenario.challenge.id, "Bike", {"type": "unit_based", "unit": "miles"},
                bonus_thresholds=[{"threshold": 10, "bonusPoints": 2}],
            )

    async def test_max_per_challenge_positive(self, scenario, challenges):
        with pytest.raises(BusinessRuleError):
            await challenges.create_activity_type(
                scenario.challenge.id, "Once", {"type": "completion", "fixedPoints": 1}, max_per_challenge=0
            )

    async def test_duplicate_name(self, scenario, challenges):
        with pytest.raises(ConflictError):
            await challenges.create_activity_type(
                scenario.challenge.id, "Run", {"type": "completion", "fixedPoints": 1}
            )

    async def test_valid_weeks_normalized(self, scenario, challenges):
        activity_type = await challenges.create_activity_type(
            scenario.challenge.id, "Late", {"type": "completion", "fixedPoints": 1}, valid_weeks=[3, 2, 3]
        )
        assert activity_type.valid_weeks == [2, 3]

    async def test_system_type_created_once(self, scenario, challenges):
        first = await challenges.get_or_create_system_type(scenario.challenge.id, "Mini-Game Bonus")
        second = await challenges.get_or_create_system_type(scenario.challenge.id, "Mini-Game Bonus")

        assert first.id == second.id
        assert first.is_system
        assert not first.contributes_to_streak


class TestAchievementDefinitions:
    async def test_invalid_criteria(self, scenario, challenges):
        with pytest.raises(BusinessRuleError):
            await challenges.create_achievement(
                scenario.challenge.id, "Broken", {"criteriaType": "cumulative"}, bonus_points=5
            )

    async def test_unknown_frequency(self, scenario, challenges):
        with pytest.raises(BusinessRuleError):
            await challenges.create_achievement(
                scenario.challenge.id, "Daily", {"activityTypeIds": []}, bonus_points=5, frequency="daily"
            )

    async def test_delete_keeps_bonus_points(self, scenario, challenges, activities, session, alice_actor):
        achievement = await challenges.create_achievement(
            scenario.challenge.id, "First Run", {"activityTypeIds": [str(scenario.run.id)]}, bonus_points=10
        )
        await activities.log_activity(
            alice_actor, scenario.challenge.id, scenario.run.id, day(1), {"minutes": 30}
        )
        assert scenario.alice.total_points == 45

        assert await challenges.delete_achievement(achievement.id)

        awards = (await session.execute(select(func.count()).select_from(UserAchievement))).scalar_one()
        bonuses = (await session.execute(
            select(func.count()).select_from(Activity).where(Activity.source == ActivitySource.ACHIEVEMENT)
        )).scalar_one()
        assert awards == 0
        assert bonuses == 1
        assert scenario.alice.total_points == 45

    async def test_delete_unknown(self, challenges):
        with pytest.raises(NotFoundError):
            await challenges.delete_achievement(uuid4())

    async def test_progress(self, scenario, challenges, activities, alice_actor):
        await challenges.create_achievement(
            scenario.challenge.id,
            "Ten Miles",
            {"criteriaType": "cumulative", "activityTypeIds": [str(scenario.walk.id)], "metric": "distance_miles", "threshold": 10},
            bonus_points=5,
        )
        await activities.log_activity(
            alice_actor, scenario.challenge.id, scenario.walk.id, day(1), {"miles": 4}
        )

        progress = await activities.achievements.get_progress("alice", scenario.challenge.id)
        assert [(p["name"], p["current"], p["required"], p["earned"]) for p in progress] == [
            ("Ten Miles", 4, 10, False)
        ]


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.points_precision == 2
        assert settings.media_bonus_points == 1.0
        assert settings.import_delete_floor_at_zero

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CHALLENGE_TRACKER_MEDIA_BONUS_POINTS", "2.5")
        monkeypatch.setenv("CHALLENGE_TRACKER_ENVIRONMENT", "testing")

        settings = Settings(_env_file=None)
        assert settings.media_bonus_points == 2.5
        assert settings.is_testing

    def test_get_settings_cached(self, monkeypatch):
        monkeypatch.setenv("CHALLENGE_TRACKER_LOG_LEVEL", "debug")
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
            assert get_settings().log_level == "debug"
            configure_logging(get_settings())
        finally:
            get_settings.cache_clear()
