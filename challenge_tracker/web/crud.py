"""Database operations for the challenge tracker.

Every operation class is bound to one ``AsyncSession`` and only flushes; the
session owner commits or rolls back. All validation for a write happens
before the first row is touched, so a rejected request leaves no partial
state behind.

Participation rows are read with ``SELECT ... FOR UPDATE`` before any
aggregate change, which serializes concurrent writers for the same user and
challenge on databases that support row locks.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from challenge_tracker.shared.config import Settings, get_settings
from challenge_tracker.shared.dates import DateLike, challenge_week, to_day, utcnow
from challenge_tracker.web import events
from challenge_tracker.web.achievements import (
    CHALLENGE_PERIOD,
    InvalidCriteriaError,
    evaluate_criteria,
    parse_criteria,
    period_key,
)
from challenge_tracker.web.models import (
    Achievement,
    AchievementFrequency,
    Activity,
    ActivitySource,
    ActivityType,
    Challenge,
    Participation,
    PaymentStatus,
    UserAchievement,
)
from challenge_tracker.web.schemas import (
    ActivityResult,
    Actor,
    AwardResult,
    DriftReport,
    ImportedActivity,
    LeaderboardEntry,
    StreakResult,
    WeeklyLeaderboard,
)
from challenge_tracker.web.scoring import (
    InvalidScoringConfigError,
    LegacyUnitBasedConfig,
    PointsBreakdown,
    ScoringContext,
    UnitBasedConfig,
    apply_point_sign,
    metric_value,
    parse_bonus_thresholds,
    parse_scoring_config,
    score_activity,
)
from challenge_tracker.web.streaks import (
    StreakState,
    advance_streak,
    rebuild_participation_aggregate,
    recompute_streak_window,
)

logger = logging.getLogger(__name__)


class DatabaseOperationError(Exception):
    """Base exception for database operations."""
    pass


class NotFoundError(DatabaseOperationError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(DatabaseOperationError):
    """Raised when a database constraint is violated."""
    pass


class ChallengeRuleError(DatabaseOperationError):
    """Base for requests rejected by a challenge rule."""
    pass


class AuthorizationError(ChallengeRuleError):
    """Raised when the actor may not act on the target."""
    pass


class MembershipError(ChallengeRuleError):
    """Raised when the user is not a participant of the challenge."""
    pass


class PaymentRequiredError(ChallengeRuleError):
    """Raised when a paid challenge has not been paid for."""
    pass


class ReferentialError(ChallengeRuleError):
    """Raised when referenced rows do not belong together or are deleted."""
    pass


class BusinessRuleError(ChallengeRuleError):
    """Raised when scheduling, limits or definitions reject the request."""
    pass


def _round(value: float, settings: Settings) -> float:
    return round(value, settings.points_precision) + 0.0


def _creation_order(activity: Activity) -> Tuple[datetime, str]:
    created = activity.created_at
    if created.tzinfo is not None:
        created = created.astimezone(timezone.utc).replace(tzinfo=None)
    return created, str(activity.id)


class ChallengeOperations:
    """Database operations for challenges, activity types and achievements."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()

    async def create_challenge(
        self,
        name: str,
        start_date: date,
        end_date: date,
        streak_min_points: float = 0.0,
        final_days_start: Optional[int] = None,
        requires_payment: bool = False,
        description: Optional[str] = None,
    ) -> Challenge:
        """Create a challenge.

        Raises:
            BusinessRuleError: If the dates or final days are inconsistent
            DatabaseOperationError: If database operation fails
        """
        try:
            if end_date < start_date:
                raise BusinessRuleError("Challenge end date must not be before its start date")

            duration_days = (end_date - start_date).days + 1
            if final_days_start is not None and not 1 <= final_days_start <= duration_days:
                raise BusinessRuleError(
                    f"Final days must start between day 1 and day {duration_days}"
                )

            challenge = Challenge(
                name=name,
                description=description,
                start_date=start_date,
                end_date=end_date,
                duration_days=duration_days,
                streak_min_points=streak_min_points,
                final_days_start=final_days_start,
                requires_payment=requires_payment,
            )
            self.session.add(challenge)
            await self.session.flush()

            logger.info(f"Created challenge '{name}' ({challenge.id}) from {start_date} to {end_date}")
            return challenge

        except ChallengeRuleError:
            raise
        except IntegrityError as e:
            raise ConflictError(f"Challenge could not be created: {e}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create challenge: {e}") from e

    async def get_challenge(self, challenge_id: UUID) -> Challenge:
        try:
            challenge = await self.session.get(Challenge, challenge_id)
            if challenge is None:
                raise NotFoundError(f"Challenge {challenge_id} not found")
            return challenge

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get challenge: {e}") from e

    async def add_participant(
        self,
        challenge_id: UUID,
        user_id: str,
        payment_status: str = PaymentStatus.UNPAID,
    ) -> Participation:
        """Join a user to a challenge, returning the existing row if already joined."""
        try:
            await self.get_challenge(challenge_id)

            participation = await self.session.get(Participation, (user_id, challenge_id))
            if participation is None:
                participation = Participation(
                    user_id=user_id,
                    challenge_id=challenge_id,
                    payment_status=payment_status,
                )
                self.session.add(participation)
                await self.session.flush()
                logger.info(f"User {user_id} joined challenge {challenge_id}")

            return participation

        except NotFoundError:
            raise
        except IntegrityError as e:
            raise ConflictError(f"Participation could not be created: {e}") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to add participant: {e}") from e

    async def get_participation(
        self,
        user_id: str,
        challenge_id: UUID,
        for_update: bool = False,
    ) -> Participation:
        """Get a participation row.

        Raises:
            MembershipError: If the user has not joined the challenge
        """
        try:
            stmt = select(Participation).where(
                Participation.user_id == user_id,
                Participation.challenge_id == challenge_id,
            )
            if for_update:
                stmt = stmt.with_for_update()
            result = await self.session.execute(stmt)
            participation = result.scalar_one_or_none()

            if participation is None:
                raise MembershipError("You are not part of this challenge")
            return participation

        except MembershipError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get participation: {e}") from e

    async def set_payment_status(
        self,
        user_id: str,
        challenge_id: UUID,
        payment_status: str,
    ) -> Participation:
        try:
            if payment_status not in (PaymentStatus.PAID, PaymentStatus.UNPAID):
                raise BusinessRuleError(f"Unknown payment status '{payment_status}'")

            participation = await self.get_participation(user_id, challenge_id, for_update=True)
            participation.payment_status = payment_status
            await self.session.flush()
            return participation

        except ChallengeRuleError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to set payment status: {e}") from e

    async def create_activity_type(
        self,
        challenge_id: UUID,
        name: str,
        scoring_config: Dict[str, Any],
        contributes_to_streak: bool = True,
        is_negative: bool = False,
        max_per_challenge: Optional[int] = None,
        valid_weeks: Optional[List[int]] = None,
        available_in_final_days: bool = False,
        category_id: Optional[str] = None,
        bonus_thresholds: Optional[List[Dict[str, Any]]] = None,
    ) -> ActivityType:
        """Create an activity type after validating its scoring config.

        Raises:
            NotFoundError: If the challenge does not exist
            BusinessRuleError: If the scoring config or thresholds are invalid
            ConflictError: If the name is already used in the challenge
            DatabaseOperationError: If database operation fails
        """
        try:
            await self.get_challenge(challenge_id)

            try:
                parse_scoring_config(scoring_config)
                parse_bonus_thresholds(bonus_thresholds)
            except InvalidScoringConfigError as e:
                raise BusinessRuleError(str(e)) from e

            if max_per_challenge is not None and max_per_challenge < 1:
                raise BusinessRuleError("max_per_challenge must be at least 1")

            activity_type = ActivityType(
                challenge_id=challenge_id,
                name=name,
                scoring_config=dict(scoring_config),
                contributes_to_streak=contributes_to_streak,
                is_negative=is_negative,
                max_per_challenge=max_per_challenge,
                valid_weeks=sorted(set(valid_weeks or [])),
                available_in_final_days=available_in_final_days,
                category_id=category_id,
                bonus_thresholds=list(bonus_thresholds or []),
            )
            self.session.add(activity_type)
            await self.session.flush()

            logger.info(f"Created activity type '{name}' in challenge {challenge_id}")
            return activity_type

        except (NotFoundError, ChallengeRuleError):
            raise
        except IntegrityError as e:
            raise ConflictError(f"Activity type '{name}' already exists in this challenge") from e
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create activity type: {e}") from e

    async def get_activity_type(self, activity_type_id: UUID) -> ActivityType:
        try:
            activity_type = await self.session.get(ActivityType, activity_type_id)
            if activity_type is None:
                raise NotFoundError(f"Activity type {activity_type_id} not found")
            return activity_type

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get activity type: {e}") from e

    async def update_scoring_config(
        self,
        activity_type_id: UUID,
        scoring_config: Dict[str, Any],
        bonus_thresholds: Optional[List[Dict[str, Any]]] = None,
    ) -> ActivityType:
        """Replace an activity type's scoring rules.

        Activities already logged keep their stored points.
        """
        try:
            activity_type = await self.get_activity_type(activity_type_id)

            try:
                parse_scoring_config(scoring_config)
                if bonus_thresholds is not None:
                    parse_bonus_thresholds(bonus_thresholds)
            except InvalidScoringConfigError as e:
                raise BusinessRuleError(str(e)) from e

            activity_type.scoring_config = dict(scoring_config)
            if bonus_thresholds is not None:
                activity_type.bonus_thresholds = list(bonus_thresholds)
            await self.session.flush()

            logger.info(f"Updated scoring config of activity type {activity_type_id}")
            return activity_type

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to update scoring config: {e}") from e

    async def get_or_create_system_type(self, challenge_id: UUID, name: str) -> ActivityType:
        """Get the per-challenge type used for synthetic bonus activities."""
        stmt = select(ActivityType).where(
            ActivityType.challenge_id == challenge_id,
            ActivityType.name == name,
        )
        result = await self.session.execute(stmt)
        activity_type = result.scalar_one_or_none()

        if activity_type is None:
            activity_type = ActivityType(
                challenge_id=challenge_id,
                name=name,
                scoring_config={"basePoints": 0},
                contributes_to_streak=False,
                is_system=True,
            )
            self.session.add(activity_type)
            await self.session.flush()
            logger.info(f"Created system activity type '{name}' for challenge {challenge_id}")

        return activity_type

    async def create_achievement(
        self,
        challenge_id: UUID,
        name: str,
        criteria: Dict[str, Any],
        bonus_points: float,
        frequency: str = AchievementFrequency.ONCE_PER_CHALLENGE,
        description: Optional[str] = None,
    ) -> Achievement:
        """Create an achievement after validating its criteria."""
        try:
            await self.get_challenge(challenge_id)

            if frequency not in (AchievementFrequency.ONCE_PER_CHALLENGE, AchievementFrequency.ONCE_PER_WEEK):
                raise BusinessRuleError(f"Unknown achievement frequency '{frequency}'")
            try:
                parse_criteria(criteria)
            except InvalidCriteriaError as e:
                raise BusinessRuleError(str(e)) from e

            achievement = Achievement(
                challenge_id=challenge_id,
                name=name,
                description=description,
                criteria=dict(criteria),
                bonus_points=bonus_points,
                frequency=frequency,
            )
            self.session.add(achievement)
            await self.session.flush()

            logger.info(f"Created achievement '{name}' in challenge {challenge_id}")
            return achievement

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to create achievement: {e}") from e

    async def delete_achievement(self, achievement_id: UUID) -> bool:
        """Delete an achievement and every award of it.

        Bonus activities already granted stay in place with their points.
        """
        try:
            achievement = await self.session.get(Achievement, achievement_id)
            if achievement is None:
                raise NotFoundError(f"Achievement {achievement_id} not found")

            await self.session.execute(
                delete(UserAchievement).where(UserAchievement.achievement_id == achievement_id)
            )
            await self.session.delete(achievement)
            await self.session.flush()

            logger.info(f"Deleted achievement {achievement_id} and its awards")
            return True

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to delete achievement: {e}") from e


class LedgerOperations:
    """Point totals per participant.

    ``Participation.total_points`` is a cache updated by deltas. The live sum
    over non-deleted activities is the source of truth for rankings and the
    reference that :meth:`find_drift` and :meth:`rebuild_participation`
    check the cache against.
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()

    def apply_delta(
        self,
        participation: Participation,
        delta: float,
        floor_at_zero: bool = False,
    ) -> float:
        """Add ``delta`` to the cached total and return the new total."""
        new_total = _round(participation.total_points + delta, self.settings)
        if floor_at_zero and new_total < 0:
            logger.warning(
                f"Clamped total for user {participation.user_id} in challenge "
                f"{participation.challenge_id} from {new_total} to 0"
            )
            new_total = 0.0
        participation.total_points = new_total
        return new_total

    async def live_total(self, user_id: str, challenge_id: UUID) -> float:
        try:
            stmt = select(func.coalesce(func.sum(Activity.points_earned), 0.0)).where(
                Activity.user_id == user_id,
                Activity.challenge_id == challenge_id,
                Activity.deleted_at.is_(None),
            )
            result = await self.session.execute(stmt)
            return _round(float(result.scalar_one()), self.settings)

        except Exception as e:
            raise DatabaseOperationError(f"Failed to compute live total: {e}") from e

    async def total_as_of(self, user_id: str, challenge_id: UUID, as_of: date) -> float:
        """Live total over activities logged on or before ``as_of``."""
        try:
            stmt = select(func.coalesce(func.sum(Activity.points_earned), 0.0)).where(
                Activity.user_id == user_id,
                Activity.challenge_id == challenge_id,
                Activity.deleted_at.is_(None),
                Activity.logged_date <= as_of,
            )
            result = await self.session.execute(stmt)
            return _round(float(result.scalar_one()), self.settings)

        except Exception as e:
            raise DatabaseOperationError(f"Failed to compute total as of {as_of}: {e}") from e

    async def _live_totals_by_user(self, challenge_id: UUID) -> List[Tuple[str, float, float]]:
        live = func.coalesce(func.sum(Activity.points_earned), 0.0).label("live_total")
        stmt = (
            select(Participation.user_id, Participation.total_points, live)
            .outerjoin(
                Activity,
                and_(
                    Activity.user_id == Participation.user_id,
                    Activity.challenge_id == Participation.challenge_id,
                    Activity.deleted_at.is_(None),
                ),
            )
            .where(Participation.challenge_id == challenge_id)
            .group_by(Participation.user_id, Participation.total_points)
        )
        result = await self.session.execute(stmt)
        return [(row[0], float(row[1]), float(row[2])) for row in result.all()]

    async def get_leaderboard(self, challenge_id: UUID, limit: int = 10) -> List[LeaderboardEntry]:
        """Rank participants by their live point sum.

        Args:
            challenge_id: Challenge to rank
            limit: Maximum number of entries

        Returns:
            List[LeaderboardEntry]: Highest totals first; ties share a rank
        """
        try:
            live = func.coalesce(func.sum(Activity.points_earned), 0.0).label("live_total")
            stmt = (
                select(Participation.user_id, live)
                .outerjoin(
                    Activity,
                    and_(
                        Activity.user_id == Participation.user_id,
                        Activity.challenge_id == Participation.challenge_id,
                        Activity.deleted_at.is_(None),
                    ),
                )
                .where(Participation.challenge_id == challenge_id)
                .group_by(Participation.user_id)
                .order_by(live.desc(), Participation.user_id)
                .limit(limit)
            )
            result = await self.session.execute(stmt)
            return self._rank(result.all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get leaderboard: {e}") from e

    async def get_weekly_leaderboard(
        self, challenge_id: UUID, week: int, limit: int = 10
    ) -> WeeklyLeaderboard:
        """Rank participants by the live sum of one challenge week.

        ``week`` is clamped to the weeks of the challenge. Only participants
        with activities in that week are listed.

        Raises:
            NotFoundError: If the challenge does not exist
        """
        try:
            challenge = await self.session.get(Challenge, challenge_id)
            if challenge is None:
                raise NotFoundError(f"Challenge {challenge_id} not found")

            total_weeks = max(1, math.ceil(challenge.duration_days / 7))
            week = min(max(week, 1), total_weeks)
            first_day = challenge.start_date + timedelta(days=(week - 1) * 7)
            last_day = first_day + timedelta(days=6)

            live = func.sum(Activity.points_earned).label("week_total")
            stmt = (
                select(Activity.user_id, live)
                .where(
                    Activity.challenge_id == challenge_id,
                    Activity.deleted_at.is_(None),
                    Activity.logged_date >= first_day,
                    Activity.logged_date <= last_day,
                )
                .group_by(Activity.user_id)
                .order_by(live.desc(), Activity.user_id)
                .limit(limit)
            )
            result = await self.session.execute(stmt)
            return WeeklyLeaderboard(week=week, total_weeks=total_weeks, entries=self._rank(result.all()))

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get weekly leaderboard: {e}") from e

    async def get_category_leaderboard(
        self, challenge_id: UUID, category_id: Optional[str], limit: int = 10
    ) -> List[LeaderboardEntry]:
        """Rank participants by their live sum over one activity category.

        Sums are cumulative over the whole challenge. ``category_id=None``
        ranks activities whose type has no category.
        """
        try:
            if category_id is None:
                in_category = ActivityType.category_id.is_(None)
            else:
                in_category = ActivityType.category_id == category_id

            live = func.sum(Activity.points_earned).label("category_total")
            stmt = (
                select(Activity.user_id, live)
                .join(ActivityType, ActivityType.id == Activity.activity_type_id)
                .where(
                    Activity.challenge_id == challenge_id,
                    Activity.deleted_at.is_(None),
                    in_category,
                )
                .group_by(Activity.user_id)
                .order_by(live.desc(), Activity.user_id)
                .limit(limit)
            )
            result = await self.session.execute(stmt)
            return self._rank(result.all())

        except Exception as e:
            raise DatabaseOperationError(f"Failed to get category leaderboard: {e}") from e

    def _rank(self, rows) -> List[LeaderboardEntry]:
        """Rows of ``(user_id, total)`` in descending order; ties share a rank."""
        entries: List[LeaderboardEntry] = []
        previous_total = None
        rank = 0
        for position, (user_id, total) in enumerate(rows, start=1):
            total = _round(float(total or 0.0), self.settings)
            if total != previous_total:
                rank = position
                previous_total = total
            entries.append(LeaderboardEntry(rank=rank, user_id=user_id, total_points=total))
        return entries

    async def find_drift(self, challenge_id: UUID) -> List[DriftReport]:
        """Participations whose cached total differs from the live sum.

        A cache below the live sum is expected after an import-delete clamp;
        it is reported all the same.
        """
        try:
            tolerance = 0.5 * 10 ** -self.settings.points_precision
            reports = []
            for user_id, cached, live in await self._live_totals_by_user(challenge_id):
                if abs(cached - live) > tolerance:
                    reports.append(DriftReport(
                        user_id=user_id,
                        challenge_id=challenge_id,
                        cached_total=cached,
                        live_total=_round(live, self.settings),
                    ))
            if reports:
                logger.warning(f"Found {len(reports)} drifted participations in challenge {challenge_id}")
            return reports

        except Exception as e:
            raise DatabaseOperationError(f"Failed to check ledger drift: {e}") from e

    async def rebuild_participation(self, user_id: str, challenge_id: UUID) -> Participation:
        """Replace the cached total and streak with a fold over live activities."""
        try:
            challenge = await self.session.get(Challenge, challenge_id)
            if challenge is None:
                raise NotFoundError(f"Challenge {challenge_id} not found")

            stmt = select(Participation).where(
                Participation.user_id == user_id,
                Participation.challenge_id == challenge_id,
            ).with_for_update()
            participation = (await self.session.execute(stmt)).scalar_one_or_none()
            if participation is None:
                raise NotFoundError(f"User {user_id} has no participation in challenge {challenge_id}")

            activities = (await self.session.execute(
                select(Activity).where(
                    Activity.user_id == user_id,
                    Activity.challenge_id == challenge_id,
                    Activity.deleted_at.is_(None),
                )
            )).scalars().all()
            contributes = dict((await self.session.execute(
                select(ActivityType.id, ActivityType.contributes_to_streak).where(
                    ActivityType.challenge_id == challenge_id
                )
            )).all())

            aggregate = rebuild_participation_aggregate(
                activities,
                contributes,
                challenge.streak_min_points,
                self.settings.points_precision,
            )
            participation.total_points = aggregate.total_points
            participation.current_streak = aggregate.current_streak
            participation.last_streak_day = aggregate.last_streak_day
            await self.session.flush()

            logger.info(
                f"Rebuilt participation for user {user_id} in challenge {challenge_id}: "
                f"total={aggregate.total_points} streak={aggregate.current_streak}"
            )
            return participation

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to rebuild participation: {e}") from e

    async def repair_drift(self, challenge_id: UUID) -> List[DriftReport]:
        """Rebuild every drifted participation and return what was repaired."""
        reports = await self.find_drift(challenge_id)
        for report in reports:
            await self.rebuild_participation(report.user_id, challenge_id)
        return reports


class StreakOperations:
    """Streak maintenance backed by per-day qualifying totals."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()

    def _qualifying_rows(self, user_id: str, challenge_id: UUID):
        return (
            select(Activity.logged_date, func.sum(Activity.points_earned))
            .join(ActivityType, ActivityType.id == Activity.activity_type_id)
            .where(
                Activity.user_id == user_id,
                Activity.challenge_id == challenge_id,
                Activity.deleted_at.is_(None),
                ActivityType.contributes_to_streak.is_(True),
            )
            .group_by(Activity.logged_date)
        )

    async def day_totals(self, user_id: str, challenge_id: UUID) -> Dict[date, float]:
        result = await self.session.execute(self._qualifying_rows(user_id, challenge_id))
        return {day: float(total) for day, total in result.all()}

    async def day_total(self, user_id: str, challenge_id: UUID, day: date) -> float:
        stmt = self._qualifying_rows(user_id, challenge_id).where(Activity.logged_date == day)
        row = (await self.session.execute(stmt)).first()
        return float(row[1]) if row else 0.0

    def _store(self, participation: Participation, state: StreakState) -> None:
        participation.current_streak = state.current_streak
        participation.last_streak_day = state.last_streak_day

    async def after_append(
        self,
        participation: Participation,
        challenge: Challenge,
        day: date,
    ) -> StreakResult:
        """Update the streak after an activity was added on ``day``.

        Uses the forward fast path when possible and replays otherwise.
        """
        state = StreakState(participation.current_streak, participation.last_streak_day)
        total = await self.day_total(participation.user_id, challenge.id, day)
        advanced = advance_streak(state, day, total, challenge.streak_min_points)

        if advanced is None:
            return await self.replay_from(participation, challenge, day)

        self._store(participation, advanced)
        return StreakResult(
            current_streak=advanced.current_streak,
            last_streak_day=advanced.last_streak_day,
        )

    async def replay_from(
        self,
        participation: Participation,
        challenge: Challenge,
        from_day: date,
    ) -> StreakResult:
        """Recompute the streak for every day from ``from_day`` onward."""
        totals = await self.day_totals(participation.user_id, challenge.id)
        state = recompute_streak_window(totals, challenge.streak_min_points, from_day)
        self._store(participation, state)

        logger.debug(
            f"Replayed streak for user {participation.user_id} from {from_day}: "
            f"{state.current_streak} day(s) ending {state.last_streak_day}"
        )
        return StreakResult(
            current_streak=state.current_streak,
            last_streak_day=state.last_streak_day,
            replayed=True,
        )


class AchievementOperations:
    """Achievement evaluation and awarding."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        ledger: Optional[LedgerOperations] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = ledger or LedgerOperations(session, self.settings)
        self.challenges = ChallengeOperations(session, self.settings)

    async def _active_activities(self, user_id: str, challenge_id: UUID) -> List[Activity]:
        stmt = (
            select(Activity)
            .where(
                Activity.user_id == user_id,
                Activity.challenge_id == challenge_id,
                Activity.deleted_at.is_(None),
                Activity.source != ActivitySource.ACHIEVEMENT,
            )
            .order_by(Activity.logged_date, Activity.created_at)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def _awarded_periods(self, user_id: str, challenge_id: UUID) -> set:
        stmt = select(UserAchievement.achievement_id, UserAchievement.period_key).where(
            UserAchievement.user_id == user_id,
            UserAchievement.challenge_id == challenge_id,
        )
        return {(row[0], row[1]) for row in (await self.session.execute(stmt)).all()}

    async def evaluate_and_award(
        self,
        participation: Participation,
        challenge: Challenge,
        trigger_day: date,
    ) -> List[AwardResult]:
        """Award every achievement whose criteria are newly satisfied.

        Awards are never revoked. Weekly achievements are evaluated over the
        activities of the week containing ``trigger_day``.
        """
        try:
            achievements = (await self.session.execute(
                select(Achievement)
                .where(Achievement.challenge_id == challenge.id)
                .order_by(Achievement.created_at, Achievement.name)
            )).scalars().all()
            if not achievements:
                return []

            user_id = participation.user_id
            awarded = await self._awarded_periods(user_id, challenge.id)
            activities = await self._active_activities(user_id, challenge.id)
            trigger_week = challenge_week(challenge.start_date, trigger_day)

            results = []
            for achievement in achievements:
                key = period_key(achievement.frequency, challenge.start_date, trigger_day)
                if (achievement.id, key) in awarded:
                    continue

                scope = activities
                if key != CHALLENGE_PERIOD:
                    scope = [
                        a for a in activities
                        if challenge_week(challenge.start_date, a.logged_date) == trigger_week
                    ]

                try:
                    progress = evaluate_criteria(achievement.criteria, scope)
                except InvalidCriteriaError as e:
                    logger.error(f"Skipping achievement {achievement.id} with invalid criteria: {e}")
                    continue

                if progress.earned:
                    results.append(await self.award(
                        participation, challenge, achievement, key, trigger_day,
                        progress.qualifying_activity_ids,
                    ))
                    awarded.add((achievement.id, key))

            return results

        except Exception as e:
            raise DatabaseOperationError(f"Failed to evaluate achievements: {e}") from e

    async def award(
        self,
        participation: Participation,
        challenge: Challenge,
        achievement: Achievement,
        award_period: str,
        logged_date: date,
        qualifying_activity_ids: List[str],
    ) -> AwardResult:
        """Insert the bonus activity and the award record."""
        bonus_type = await self.challenges.get_or_create_system_type(
            challenge.id, self.settings.achievement_bonus_type_name
        )
        bonus_activity = Activity(
            user_id=participation.user_id,
            challenge_id=challenge.id,
            activity_type_id=bonus_type.id,
            logged_date=logged_date,
            metrics={"achievementId": str(achievement.id), "achievementName": achievement.name},
            notes=f"Achievement earned: {achievement.name}",
            points_earned=achievement.bonus_points,
            source=ActivitySource.ACHIEVEMENT,
        )
        self.session.add(bonus_activity)
        self.ledger.apply_delta(participation, achievement.bonus_points)

        user_achievement = UserAchievement(
            achievement_id=achievement.id,
            user_id=participation.user_id,
            challenge_id=challenge.id,
            period_key=award_period,
            qualifying_activity_ids=list(qualifying_activity_ids),
            bonus_activity_id=bonus_activity.id,
        )
        self.session.add(user_achievement)
        await self.session.flush()

        logger.info(
            f"User {participation.user_id} earned achievement '{achievement.name}' "
            f"({award_period}) for {achievement.bonus_points} points"
        )
        events.emit(
            self.session,
            events.ACHIEVEMENT_AWARDED,
            user_id=participation.user_id,
            challenge_id=str(challenge.id),
            achievement_id=str(achievement.id),
            achievement_name=achievement.name,
            bonus_points=achievement.bonus_points,
            period_key=award_period,
        )
        return AwardResult(
            achievement_id=achievement.id,
            achievement_name=achievement.name,
            period_key=award_period,
            bonus_points=achievement.bonus_points,
            bonus_activity_id=bonus_activity.id,
            qualifying_activity_ids=list(qualifying_activity_ids),
        )

    async def get_progress(
        self, user_id: str, challenge_id: UUID, as_of: Optional[DateLike] = None
    ) -> List[Dict[str, Any]]:
        """Progress toward every achievement of a challenge, for display.

        Weekly achievements report the week containing ``as_of`` (today by
        default, kept within the challenge dates) and whether that week was
        awarded.
        """
        try:
            challenge = await self.session.get(Challenge, challenge_id)
            if challenge is None:
                raise NotFoundError(f"Challenge {challenge_id} not found")
            current_day = to_day(as_of) if as_of is not None else utcnow().date()
            current_day = min(max(current_day, challenge.start_date), challenge.end_date)
            current_week = challenge_week(challenge.start_date, current_day)

            achievements = (await self.session.execute(
                select(Achievement).where(Achievement.challenge_id == challenge_id)
            )).scalars().all()
            activities = await self._active_activities(user_id, challenge_id)
            awarded = await self._awarded_periods(user_id, challenge_id)

            progress = []
            for achievement in achievements:
                key = period_key(achievement.frequency, challenge.start_date, current_day)
                scope = activities
                if key != CHALLENGE_PERIOD:
                    scope = [
                        a for a in activities
                        if challenge_week(challenge.start_date, a.logged_date) == current_week
                    ]
                result = evaluate_criteria(achievement.criteria, scope)
                progress.append({
                    "achievement_id": achievement.id,
                    "name": achievement.name,
                    "period": key,
                    "current": result.current,
                    "required": result.required,
                    "earned": (achievement.id, key) in awarded,
                })
            return progress

        except NotFoundError:
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get achievement progress: {e}") from e


class ActivityOperations:
    """Activity lifecycle: create, edit, delete, import and restore.

    Each public method validates first, then writes the activity and brings
    the ledger, streak and achievements in line in the same transaction.
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()
        self.challenges = ChallengeOperations(session, self.settings)
        self.ledger = LedgerOperations(session, self.settings)
        self.streaks = StreakOperations(session, self.settings)
        self.achievements = AchievementOperations(session, self.settings, self.ledger)

    # Validation helpers

    async def _challenge_type(self, challenge: Challenge, activity_type_id: UUID) -> ActivityType:
        activity_type = await self.session.get(ActivityType, activity_type_id)
        if activity_type is None or activity_type.challenge_id != challenge.id:
            raise ReferentialError("Activity type not found or does not belong to this challenge")
        return activity_type

    def _check_schedule(self, challenge: Challenge, activity_type: ActivityType, day: date) -> None:
        if day < challenge.start_date:
            raise BusinessRuleError(
                f"Activities cannot be logged before the challenge starts ({challenge.start_date})"
            )
        if activity_type.valid_weeks:
            week = challenge_week(challenge.start_date, day)
            if week in activity_type.valid_weeks:
                return
            if activity_type.available_in_final_days and challenge.is_final_day(day):
                return
            weeks = ", ".join(str(w) for w in activity_type.valid_weeks)
            raise BusinessRuleError(
                f"This activity type is only available during week(s) {weeks}. Current week: {week}"
            )

    async def _check_max_per_challenge(self, user_id: str, activity_type: ActivityType) -> None:
        if not activity_type.max_per_challenge:
            return
        stmt = select(func.count()).select_from(Activity).where(
            Activity.user_id == user_id,
            Activity.challenge_id == activity_type.challenge_id,
            Activity.activity_type_id == activity_type.id,
            Activity.deleted_at.is_(None),
        )
        existing = (await self.session.execute(stmt)).scalar_one()
        if existing >= activity_type.max_per_challenge:
            raise BusinessRuleError(
                f"You have already logged this activity {existing} time(s). "
                f"Maximum allowed: {activity_type.max_per_challenge}"
            )

    def _check_payment(self, challenge: Challenge, participation: Participation, actor: Optional[Actor]) -> None:
        if actor is not None and actor.is_admin:
            return
        if challenge.requires_payment and not participation.is_paid:
            raise PaymentRequiredError("Payment required to log activities")

    async def _get_activity(self, activity_id: UUID) -> Activity:
        activity = await self.session.get(Activity, activity_id)
        if activity is None:
            raise NotFoundError(f"Activity {activity_id} not found")
        return activity

    def _check_owner(self, actor: Actor, activity: Activity) -> None:
        if not actor.is_admin and activity.user_id != actor.user_id:
            raise AuthorizationError("You can only change your own activities")

    # Scoring

    async def _score(
        self,
        activity_type: ActivityType,
        user_id: str,
        day: date,
        metrics: Dict[str, Any],
        has_media: bool,
        rescored: Optional[Activity] = None,
    ) -> PointsBreakdown:
        """Score with the facts from the user's other activities that day.

        When ``rescored`` is an existing activity, only activities created
        before it count against the daily freebies, so an unchanged payload
        reproduces its original points.
        """
        stmt = select(Activity).where(
            Activity.user_id == user_id,
            Activity.challenge_id == activity_type.challenge_id,
            Activity.logged_date == day,
            Activity.deleted_at.is_(None),
        )
        if rescored is not None:
            stmt = stmt.where(Activity.id != rescored.id)
        same_day = (await self.session.execute(stmt)).scalars().all()

        config = parse_scoring_config(activity_type.scoring_config)
        units_today = 0.0
        if activity_type.is_negative and isinstance(config, (UnitBasedConfig, LegacyUnitBasedConfig)):
            units_today = sum(
                metric_value(a.metrics or {}, config.unit) or 0.0
                for a in same_day
                if a.activity_type_id == activity_type.id
                and (rescored is None or _creation_order(a) < _creation_order(rescored))
            )

        context = ScoringContext(
            units_logged_today=units_today,
            logged_date=day,
            media_bonus_available=not any(a.has_media_bonus for a in same_day),
            media_bonus_points=self.settings.media_bonus_points,
            precision=self.settings.points_precision,
        )
        return score_activity(
            config,
            metrics,
            is_negative=activity_type.is_negative,
            bonus_thresholds=activity_type.bonus_thresholds,
            has_media=has_media,
            context=context,
        )

    def _override(self, activity_type: ActivityType, points: float) -> PointsBreakdown:
        earned = _round(apply_point_sign(float(points), activity_type.is_negative), self.settings)
        return PointsBreakdown(base_points=float(points), points_earned=earned)

    def _result(
        self,
        activity: Activity,
        participation: Participation,
        streak: StreakResult,
        delta: float,
        breakdown: Optional[PointsBreakdown] = None,
        awards: Optional[List[AwardResult]] = None,
        **flags: bool,
    ) -> ActivityResult:
        breakdown = breakdown or PointsBreakdown(points_earned=activity.points_earned)
        return ActivityResult(
            activity_id=activity.id,
            points_earned=activity.points_earned,
            base_points=breakdown.base_points,
            metric_points=breakdown.metric_points,
            bonus_points=breakdown.bonus_points,
            triggered_bonuses=[b.description or b.metric for b in breakdown.triggered_bonuses],
            points_delta=_round(delta, self.settings),
            total_points=participation.total_points,
            streak=streak,
            awards=awards or [],
            **flags,
        )

    async def _streak_after_create(
        self,
        participation: Participation,
        challenge: Challenge,
        activity_type: ActivityType,
        day: date,
    ) -> StreakResult:
        if not activity_type.contributes_to_streak:
            return StreakResult(
                current_streak=participation.current_streak,
                last_streak_day=participation.last_streak_day,
            )
        return await self.streaks.after_append(participation, challenge, day)

    # Create

    async def _create(
        self,
        challenge: Challenge,
        participation: Participation,
        activity_type: ActivityType,
        day: date,
        breakdown: PointsBreakdown,
        metrics: Dict[str, Any],
        notes: Optional[str],
        has_media: bool,
        source: str,
        external_id: Optional[str] = None,
    ) -> ActivityResult:
        activity = Activity(
            user_id=participation.user_id,
            challenge_id=challenge.id,
            activity_type_id=activity_type.id,
            logged_date=day,
            metrics=dict(metrics),
            notes=notes,
            has_media=has_media,
            points_earned=breakdown.points_earned,
            triggered_bonuses=breakdown.bonuses_as_json(),
            source=source,
            external_id=external_id,
        )
        self.session.add(activity)
        await self.session.flush()

        self.ledger.apply_delta(participation, activity.points_earned)
        streak = await self._streak_after_create(participation, challenge, activity_type, day)

        awards: List[AwardResult] = []
        if source not in ActivitySource.SYNTHETIC:
            awards = await self.achievements.evaluate_and_award(participation, challenge, day)
        await self.session.flush()

        logger.info(
            f"Logged {source} activity {activity.id} for user {participation.user_id} on {day}: "
            f"{activity.points_earned} points"
        )
        events.emit(
            self.session,
            events.ACTIVITY_LOGGED,
            activity_id=str(activity.id),
            user_id=participation.user_id,
            challenge_id=str(challenge.id),
            points_earned=activity.points_earned,
            source=source,
        )
        return self._result(
            activity, participation, streak, activity.points_earned, breakdown, awards, created=True
        )

    async def log_activity(
        self,
        actor: Actor,
        challenge_id: UUID,
        activity_type_id: UUID,
        logged_date: DateLike,
        metrics: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        has_media: bool = False,
        user_id: Optional[str] = None,
        points_override: Optional[float] = None,
    ) -> ActivityResult:
        """Log a new activity.

        Args:
            actor: Who is logging
            challenge_id: Challenge to log against
            activity_type_id: Type used for scoring
            logged_date: Day the activity counts for; time of day is dropped
            metrics: Metric payload
            notes: Free-form notes
            has_media: Whether a photo is attached
            user_id: Participant to log for; admins only when not the actor
            points_override: Fixed points instead of scoring; admins only

        Returns:
            ActivityResult: Points, new totals, streak and any awards

        Raises:
            AuthorizationError: If a non-admin logs for someone else or overrides points
            NotFoundError: If the challenge does not exist
            MembershipError: If the user has not joined the challenge
            PaymentRequiredError: If the challenge requires payment and it is unpaid
            ReferentialError: If the type belongs to another challenge
            BusinessRuleError: If the date or limits reject the activity
            DatabaseOperationError: If database operation fails
        """
        try:
            target_user = user_id or actor.user_id
            if target_user != actor.user_id and not actor.is_admin:
                raise AuthorizationError("Only admins can log activities for other users")
            if points_override is not None and not actor.is_admin:
                raise AuthorizationError("Only admins can override points")

            challenge = await self.challenges.get_challenge(challenge_id)
            participation = await self.challenges.get_participation(target_user, challenge_id, for_update=True)
            self._check_payment(challenge, participation, actor)
            activity_type = await self._challenge_type(challenge, activity_type_id)
            day = to_day(logged_date)
            self._check_schedule(challenge, activity_type, day)
            await self._check_max_per_challenge(target_user, activity_type)

            metrics = dict(metrics or {})
            if points_override is not None:
                breakdown = self._override(activity_type, points_override)
            else:
                breakdown = await self._score(activity_type, target_user, day, metrics, has_media)

            source = ActivitySource.ADMIN if target_user != actor.user_id else ActivitySource.MANUAL
            return await self._create(
                challenge, participation, activity_type, day, breakdown,
                metrics, notes, has_media, source,
            )

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            logger.error(f"Failed to log activity for user {user_id or actor.user_id}: {e}")
            raise DatabaseOperationError(f"Failed to log activity: {e}") from e

    async def log_mini_game_bonus(
        self,
        user_id: str,
        challenge_id: UUID,
        points: float,
        game_name: str,
        logged_date: Optional[DateLike] = None,
    ) -> ActivityResult:
        """Record points won in a mini-game as a synthetic activity."""
        try:
            challenge = await self.challenges.get_challenge(challenge_id)
            participation = await self.challenges.get_participation(user_id, challenge_id, for_update=True)
            bonus_type = await self.challenges.get_or_create_system_type(
                challenge_id, self.settings.mini_game_bonus_type_name
            )
            day = to_day(logged_date) if logged_date is not None else to_day(utcnow())

            breakdown = PointsBreakdown(
                base_points=float(points),
                points_earned=_round(float(points), self.settings),
            )
            return await self._create(
                challenge, participation, bonus_type, day, breakdown,
                {"gameName": game_name}, f"Mini-game: {game_name}", False, ActivitySource.MINI_GAME,
            )

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to log mini-game bonus: {e}") from e

    # Edit

    async def _apply_edit(
        self,
        activity: Activity,
        challenge: Challenge,
        participation: Participation,
        activity_type: ActivityType,
        day: date,
        metrics: Dict[str, Any],
        has_media: bool,
        notes: Optional[str],
        points_override: Optional[float] = None,
    ) -> Tuple[PointsBreakdown, float, StreakResult]:
        if points_override is not None:
            breakdown = self._override(activity_type, points_override)
        else:
            breakdown = await self._score(
                activity_type, activity.user_id, day, metrics, has_media, rescored=activity
            )

        old_day = activity.logged_date
        old_points = activity.points_earned

        activity.activity_type_id = activity_type.id
        activity.logged_date = day
        activity.metrics = dict(metrics)
        activity.has_media = has_media
        activity.notes = notes
        activity.points_earned = breakdown.points_earned
        activity.triggered_bonuses = breakdown.bonuses_as_json()
        activity.updated_at = utcnow()
        await self.session.flush()

        delta = activity.points_earned - old_points
        self.ledger.apply_delta(participation, delta)
        streak = await self.streaks.replay_from(participation, challenge, min(old_day, day))
        await self.session.flush()
        return breakdown, delta, streak

    async def edit_activity(
        self,
        actor: Actor,
        activity_id: UUID,
        metrics: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        has_media: Optional[bool] = None,
        logged_date: Optional[DateLike] = None,
    ) -> ActivityResult:
        """Edit an activity and rescore it with the type's current config.

        Fields left as ``None`` keep their stored values. Achievements are
        not re-evaluated.
        """
        try:
            activity = await self._get_activity(activity_id)
            self._check_owner(actor, activity)
            if activity.is_deleted:
                raise ReferentialError("Deleted activities cannot be edited")
            if activity.source in ActivitySource.SYNTHETIC and not actor.is_admin:
                raise AuthorizationError("Bonus activities cannot be edited")

            challenge = await self.challenges.get_challenge(activity.challenge_id)
            participation = await self.challenges.get_participation(
                activity.user_id, activity.challenge_id, for_update=True
            )
            activity_type = await self._challenge_type(challenge, activity.activity_type_id)
            day = to_day(logged_date) if logged_date is not None else activity.logged_date
            if day != activity.logged_date:
                self._check_schedule(challenge, activity_type, day)

            breakdown, delta, streak = await self._apply_edit(
                activity, challenge, participation, activity_type, day,
                metrics if metrics is not None else dict(activity.metrics or {}),
                has_media if has_media is not None else activity.has_media,
                notes if notes is not None else activity.notes,
            )

            logger.info(f"Edited activity {activity.id}: delta {delta}")
            events.emit(
                self.session,
                events.ACTIVITY_EDITED,
                activity_id=str(activity.id),
                user_id=activity.user_id,
                challenge_id=str(challenge.id),
                points_delta=delta,
                edited_by=actor.user_id,
            )
            return self._result(activity, participation, streak, delta, breakdown)

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to edit activity: {e}") from e

    async def admin_edit_activity(
        self,
        actor: Actor,
        activity_id: UUID,
        activity_type_id: Optional[UUID] = None,
        points_override: Optional[float] = None,
        metrics: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        has_media: Optional[bool] = None,
        logged_date: Optional[DateLike] = None,
    ) -> ActivityResult:
        """Admin correction of an activity.

        Can move the activity to another type of the same challenge and
        replace the scored points with a fixed value. Schedule and limit
        rules are not applied to admin corrections.
        """
        try:
            if not actor.is_admin:
                raise AuthorizationError("Admin access required")

            activity = await self._get_activity(activity_id)
            if activity.is_deleted:
                raise ReferentialError("Deleted activities cannot be edited")

            challenge = await self.challenges.get_challenge(activity.challenge_id)
            participation = await self.challenges.get_participation(
                activity.user_id, activity.challenge_id, for_update=True
            )
            activity_type = await self._challenge_type(
                challenge, activity_type_id or activity.activity_type_id
            )
            previous_type_id = activity.activity_type_id
            day = to_day(logged_date) if logged_date is not None else activity.logged_date

            breakdown, delta, streak = await self._apply_edit(
                activity, challenge, participation, activity_type, day,
                metrics if metrics is not None else dict(activity.metrics or {}),
                has_media if has_media is not None else activity.has_media,
                notes if notes is not None else activity.notes,
                points_override=points_override,
            )

            logger.info(f"Admin {actor.user_id} edited activity {activity.id}: delta {delta}")
            payload = dict(
                activity_id=str(activity.id),
                user_id=activity.user_id,
                challenge_id=str(challenge.id),
                points_delta=delta,
                edited_by=actor.user_id,
            )
            events.emit(self.session, events.ACTIVITY_EDITED, **payload)
            events.emit(
                self.session,
                events.ADMIN_EDIT,
                previous_activity_type_id=str(previous_type_id),
                activity_type_id=str(activity_type.id),
                points_override=points_override,
                **payload,
            )
            return self._result(activity, participation, streak, delta, breakdown)

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to edit activity as admin: {e}") from e

    # Delete

    async def _soft_delete(
        self,
        activity: Activity,
        reason: str,
        deleted_by: Optional[str],
        floor_at_zero: bool = False,
    ) -> ActivityResult:
        challenge = await self.challenges.get_challenge(activity.challenge_id)
        participation = await self.challenges.get_participation(
            activity.user_id, activity.challenge_id, for_update=True
        )

        activity.deleted_at = utcnow()
        activity.deleted_reason = reason
        activity.deleted_by_id = deleted_by
        await self.session.flush()

        delta = -activity.points_earned
        self.ledger.apply_delta(participation, delta, floor_at_zero=floor_at_zero)
        streak = await self.streaks.replay_from(participation, challenge, activity.logged_date)
        await self.session.flush()

        logger.info(f"Deleted activity {activity.id} ({reason}): {activity.points_earned} points removed")
        events.emit(
            self.session,
            events.ACTIVITY_DELETED,
            activity_id=str(activity.id),
            user_id=activity.user_id,
            challenge_id=str(challenge.id),
            points_delta=delta,
            reason=reason,
        )
        return self._result(activity, participation, streak, delta, deleted=True)

    async def delete_activity(
        self,
        actor: Actor,
        activity_id: UUID,
        reason: str = "user_delete",
    ) -> ActivityResult:
        """Soft-delete an activity and subtract its stored points.

        The total is not floored; it may go negative.
        """
        try:
            activity = await self._get_activity(activity_id)
            self._check_owner(actor, activity)
            if activity.is_deleted:
                raise ReferentialError("Activity is already deleted")

            return await self._soft_delete(activity, reason, actor.user_id)

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to delete activity: {e}") from e

    # Third-party sync

    async def _find_imported(self, user_id: str, challenge_id: UUID, external_id: str) -> Optional[Activity]:
        stmt = select(Activity).where(
            Activity.user_id == user_id,
            Activity.challenge_id == challenge_id,
            Activity.external_id == external_id,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def import_activity(
        self,
        user_id: str,
        challenge_id: UUID,
        payload: ImportedActivity,
    ) -> ActivityResult:
        """Create, update or restore an activity keyed by its external id.

        Replaying the same payload leaves one active activity with the same
        points and no change to the ledger.
        """
        try:
            challenge = await self.challenges.get_challenge(challenge_id)
            participation = await self.challenges.get_participation(user_id, challenge_id, for_update=True)
            activity_type = await self._challenge_type(challenge, payload.activity_type_id)
            day = payload.logged_date
            existing = await self._find_imported(user_id, challenge_id, payload.external_id)

            if existing is None:
                self._check_payment(challenge, participation, None)
                self._check_schedule(challenge, activity_type, day)
                await self._check_max_per_challenge(user_id, activity_type)
                breakdown = await self._score(activity_type, user_id, day, payload.metrics, payload.has_media)
                return await self._create(
                    challenge, participation, activity_type, day, breakdown,
                    payload.metrics, payload.notes, payload.has_media,
                    ActivitySource.EXTERNAL_SYNC, external_id=payload.external_id,
                )

            if not existing.is_deleted:
                breakdown, delta, streak = await self._apply_edit(
                    existing, challenge, participation, activity_type, day,
                    payload.metrics, payload.has_media, payload.notes,
                )
                if delta:
                    events.emit(
                        self.session,
                        events.ACTIVITY_EDITED,
                        activity_id=str(existing.id),
                        user_id=user_id,
                        challenge_id=str(challenge.id),
                        points_delta=delta,
                        edited_by=None,
                    )
                logger.info(f"Updated imported activity {payload.external_id}: delta {delta}")
                return self._result(existing, participation, streak, delta, breakdown)

            return await self._restore(existing, challenge, participation, activity_type, payload)

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to import activity: {e}") from e

    async def _restore(
        self,
        activity: Activity,
        challenge: Challenge,
        participation: Participation,
        activity_type: ActivityType,
        payload: ImportedActivity,
    ) -> ActivityResult:
        await self._check_max_per_challenge(activity.user_id, activity_type)
        breakdown = await self._score(
            activity_type, activity.user_id, payload.logged_date, payload.metrics,
            payload.has_media, rescored=activity,
        )
        old_day = activity.logged_date

        activity.activity_type_id = activity_type.id
        activity.logged_date = payload.logged_date
        activity.metrics = dict(payload.metrics)
        activity.notes = payload.notes
        activity.has_media = payload.has_media
        activity.points_earned = breakdown.points_earned
        activity.triggered_bonuses = breakdown.bonuses_as_json()
        activity.deleted_at = None
        activity.deleted_reason = None
        activity.deleted_by_id = None
        activity.updated_at = utcnow()
        await self.session.flush()

        self.ledger.apply_delta(participation, activity.points_earned)
        streak = await self.streaks.replay_from(participation, challenge, min(old_day, payload.logged_date))
        awards = await self.achievements.evaluate_and_award(participation, challenge, payload.logged_date)
        await self.session.flush()

        logger.info(f"Restored imported activity {payload.external_id}: {activity.points_earned} points")
        events.emit(
            self.session,
            events.ACTIVITY_RESTORED,
            activity_id=str(activity.id),
            user_id=activity.user_id,
            challenge_id=str(challenge.id),
            points_earned=activity.points_earned,
        )
        return self._result(
            activity, participation, streak, activity.points_earned, breakdown, awards, restored=True
        )

    async def delete_imported_activity(
        self,
        user_id: str,
        challenge_id: UUID,
        external_id: str,
    ) -> Optional[ActivityResult]:
        """Soft-delete an activity removed at its third-party source.

        Returns ``None`` when there is no active activity with that external
        id. The resulting total is floored at zero when
        ``import_delete_floor_at_zero`` is set.
        """
        try:
            activity = await self._find_imported(user_id, challenge_id, external_id)
            if activity is None or activity.is_deleted:
                logger.debug(f"No active imported activity {external_id} for user {user_id}")
                return None

            return await self._soft_delete(
                activity,
                "external_delete",
                None,
                floor_at_zero=self.settings.import_delete_floor_at_zero,
            )

        except (NotFoundError, ChallengeRuleError):
            raise
        except Exception as e:
            raise DatabaseOperationError(f"Failed to delete imported activity: {e}") from e
