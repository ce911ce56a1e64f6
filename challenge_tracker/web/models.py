"""Database models for the challenge tracker."""

from __future__ import annotations

from datetime import datetime, timezone, date
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean
from sqlalchemy import DateTime, Date
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Index, UniqueConstraint, CheckConstraint
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import Uuid
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column

from challenge_tracker.shared.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivitySource:
    """Values for ``Activity.source``."""

    MANUAL = "manual"
    EXTERNAL_SYNC = "external_sync"
    MINI_GAME = "mini_game"
    ADMIN = "admin"
    ACHIEVEMENT = "achievement"

    # Sources that never trigger achievement evaluation
    SYNTHETIC = frozenset({MINI_GAME, ACHIEVEMENT})


class PaymentStatus:
    UNPAID = "unpaid"
    PAID = "paid"


class AchievementFrequency:
    ONCE_PER_CHALLENGE = "once_per_challenge"
    ONCE_PER_WEEK = "once_per_week"


class Challenge(Base):
    """A fixed-duration fitness challenge.

    Holds the calendar window and the streak threshold that every
    participant's daily totals are measured against.
    """

    __tablename__ = "challenges"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        doc="Unique challenge identifier"
    )
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Display name"
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Optional long description"
    )

    # Calendar window
    start_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        doc="First day of the challenge (day 1, week 1)"
    )
    end_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        doc="Last day of the challenge"
    )
    duration_days: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        doc="Number of days in the challenge"
    )
    final_days_start: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="1-based challenge day from which the final days begin"
    )

    # Rules
    streak_min_points: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        doc="Minimum qualifying points for a day to count toward a streak"
    )
    requires_payment: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Whether participants must be paid up before logging"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        doc="Timestamp when the challenge was created"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        doc="Timestamp when the challenge was last modified"
    )

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_challenges_date_order"),
        CheckConstraint("duration_days >= 1", name="ck_challenges_duration_positive"),
    )

    def __init__(self, **kwargs):
        """Initialize Challenge with defaults and a derived duration."""
        now = _utcnow()
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)
        kwargs.setdefault('streak_min_points', 0.0)
        kwargs.setdefault('requires_payment', False)
        if 'duration_days' not in kwargs and kwargs.get('start_date') and kwargs.get('end_date'):
            kwargs['duration_days'] = (kwargs['end_date'] - kwargs['start_date']).days + 1
        super().__init__(**kwargs)

    def is_final_day(self, day: date) -> bool:
        """Whether ``day`` falls inside the final-days window."""
        if self.final_days_start is None:
            return False
        day_number = (day - self.start_date).days + 1
        return self.final_days_start <= day_number <= self.duration_days

    def __repr__(self) -> str:
        return f"<Challenge(name='{self.name}', start={self.start_date}, end={self.end_date})>"


class ActivityType(Base):
    """A challenge-scoped definition of a loggable action.

    ``scoring_config`` is stored as JSON and parsed into one of the scoring
    config variants in :mod:`challenge_tracker.web.scoring`. Editing it never
    rescores activities that were already logged.
    """

    __tablename__ = "activity_types"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        doc="Unique activity type identifier"
    )
    challenge_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("challenges.id", ondelete="CASCADE"),
        nullable=False,
        doc="Challenge this type belongs to"
    )
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Display name"
    )
    scoring_config: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Tagged scoring configuration"
    )
    bonus_thresholds: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Metric thresholds that add bonus points when met"
    )
    contributes_to_streak: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        doc="Whether points of this type count toward daily streak totals"
    )
    is_negative: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Penalty type; resulting points are always negative"
    )
    max_per_challenge: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Maximum non-deleted activities of this type per participant"
    )
    valid_weeks: Mapped[list[int]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Challenge weeks in which this type may be logged; empty means any"
    )
    available_in_final_days: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Whether this type may be logged during the final days regardless of valid weeks"
    )
    category_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Optional grouping key"
    )
    is_system: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Created by the engine for synthetic activities"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        doc="Timestamp when the type was created"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        doc="Timestamp when the type was last modified"
    )

    __table_args__ = (
        Index("ix_activity_types_challenge_id", "challenge_id"),
        UniqueConstraint("challenge_id", "name", name="uq_activity_types_challenge_name"),
        CheckConstraint(
            "max_per_challenge IS NULL OR max_per_challenge >= 1",
            name="ck_activity_types_max_positive"
        ),
    )

    def __init__(self, **kwargs):
        """Initialize ActivityType with default values."""
        now = _utcnow()
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('scoring_config', {})
        kwargs.setdefault('bonus_thresholds', [])
        kwargs.setdefault('valid_weeks', [])
        kwargs.setdefault('contributes_to_streak', True)
        kwargs.setdefault('is_negative', False)
        kwargs.setdefault('available_in_final_days', False)
        kwargs.setdefault('is_system', False)
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        sign = "penalty" if self.is_negative else "reward"
        return f"<ActivityType(name='{self.name}', {sign})>"


class Activity(Base):
    """A single logged activity.

    ``points_earned`` is frozen when the activity is written or edited.
    Deletion is soft: ``deleted_at`` is set and the row is excluded from
    every total, streak and achievement query.
    """

    __tablename__ = "activities"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        doc="Unique activity identifier"
    )
    user_id: Mapped[str] = mapped_column(
        String,
        nullable=False,
        doc="Participant identifier supplied by the host"
    )
    challenge_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("challenges.id", ondelete="CASCADE"),
        nullable=False,
        doc="Challenge the activity was logged against"
    )
    activity_type_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("activity_types.id", ondelete="CASCADE"),
        nullable=False,
        doc="Type used to score the activity"
    )
    logged_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        doc="Calendar day the activity counts for"
    )

    # Payload
    metrics: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Raw metric values keyed by metric name"
    )
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Free-form notes"
    )
    has_media: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        doc="Whether a photo or other media is attached"
    )

    # Scoring outcome
    points_earned: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        doc="Signed points frozen at write or edit time"
    )
    triggered_bonuses: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Bonuses included in points_earned"
    )

    # Provenance
    source: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ActivitySource.MANUAL,
        doc="Where the activity came from"
    )
    external_id: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
        doc="Deduplication key for third-party imports"
    )

    # Soft delete
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Timestamp of soft deletion"
    )
    deleted_reason: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        doc="Why the activity was deleted"
    )
    deleted_by_id: Mapped[Optional[str]] = mapped_column(
        String,
        nullable=True,
        doc="Actor who deleted the activity"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        doc="Timestamp when the activity was created"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        doc="Timestamp when the activity was last modified"
    )

    __table_args__ = (
        Index("ix_activities_user_challenge_date", "user_id", "challenge_id", "logged_date"),
        Index("ix_activities_challenge_id", "challenge_id"),
        Index("ix_activities_activity_type_id", "activity_type_id"),
        UniqueConstraint(
            "user_id", "challenge_id", "external_id",
            name="uq_activities_user_challenge_external"
        ),
    )

    def __init__(self, **kwargs):
        """Initialize Activity with default values."""
        now = _utcnow()
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('metrics', {})
        kwargs.setdefault('has_media', False)
        kwargs.setdefault('points_earned', 0.0)
        kwargs.setdefault('triggered_bonuses', [])
        kwargs.setdefault('source', ActivitySource.MANUAL)
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)
        super().__init__(**kwargs)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_media_bonus(self) -> bool:
        return any(b.get("metric") == "media" for b in (self.triggered_bonuses or []))

    def __repr__(self) -> str:
        state = "deleted" if self.is_deleted else "active"
        return f"<Activity(user_id='{self.user_id}', day={self.logged_date}, points={self.points_earned}, {state})>"


class Participation(Base):
    """A user's membership in a challenge and its cached aggregates.

    ``total_points``, ``current_streak`` and ``last_streak_day`` are caches of
    a fold over the user's non-deleted activities and can always be rebuilt
    from them. Uses compound primary key (user_id, challenge_id).
    """

    __tablename__ = "participations"

    user_id: Mapped[str] = mapped_column(
        String,
        primary_key=True,
        doc="Participant identifier"
    )
    challenge_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("challenges.id", ondelete="CASCADE"),
        primary_key=True,
        doc="Challenge joined"
    )

    total_points: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        doc="Signed running point total"
    )
    current_streak: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Length of the counting run ending at last_streak_day"
    )
    last_streak_day: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        doc="Latest day that met the streak threshold"
    )
    payment_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=PaymentStatus.UNPAID,
        doc="Payment state for paid challenges"
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        doc="Timestamp when the user joined"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        doc="Timestamp when the aggregates last changed"
    )

    __table_args__ = (
        Index("ix_participations_challenge_points", "challenge_id", "total_points"),
        CheckConstraint("current_streak >= 0", name="ck_participations_streak_non_negative"),
    )

    def __init__(self, **kwargs):
        """Initialize Participation with zeroed aggregates."""
        now = _utcnow()
        kwargs.setdefault('total_points', 0.0)
        kwargs.setdefault('current_streak', 0)
        kwargs.setdefault('payment_status', PaymentStatus.UNPAID)
        kwargs.setdefault('joined_at', now)
        kwargs.setdefault('updated_at', now)
        super().__init__(**kwargs)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def __repr__(self) -> str:
        return (
            f"<Participation(user_id='{self.user_id}', total={self.total_points}, "
            f"streak={self.current_streak})>"
        )


class Achievement(Base):
    """A challenge-scoped achievement with bonus points.

    ``criteria`` holds one of the criteria variants in
    :mod:`challenge_tracker.web.achievements`.
    """

    __tablename__ = "achievements"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        doc="Unique achievement identifier"
    )
    challenge_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("challenges.id", ondelete="CASCADE"),
        nullable=False,
        doc="Challenge the achievement belongs to"
    )
    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Display name"
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="What the participant has to do"
    )
    criteria: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        doc="Tagged criteria definition"
    )
    bonus_points: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        doc="Points awarded through a bonus activity when earned"
    )
    frequency: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AchievementFrequency.ONCE_PER_CHALLENGE,
        doc="How often the achievement can be earned"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        doc="Timestamp when the achievement was created"
    )

    __table_args__ = (
        Index("ix_achievements_challenge_id", "challenge_id"),
        CheckConstraint(
            "frequency IN ('once_per_challenge', 'once_per_week')",
            name="ck_achievements_frequency"
        ),
    )

    def __init__(self, **kwargs):
        """Initialize Achievement with default values."""
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('bonus_points', 0.0)
        kwargs.setdefault('frequency', AchievementFrequency.ONCE_PER_CHALLENGE)
        kwargs.setdefault('created_at', _utcnow())
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<Achievement(name='{self.name}', bonus={self.bonus_points}, frequency='{self.frequency}')>"


class UserAchievement(Base):
    """Record of an achievement earned by a user.

    One row per (user, achievement, period). ``period_key`` is
    ``"challenge"`` for once-per-challenge achievements and ``"week-<n>"``
    for weekly ones.
    """

    __tablename__ = "user_achievements"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        doc="Unique award identifier"
    )
    achievement_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("achievements.id", ondelete="CASCADE"),
        nullable=False,
        doc="Achievement earned"
    )
    user_id: Mapped[str] = mapped_column(
        String,
        nullable=False,
        doc="Participant who earned it"
    )
    challenge_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("challenges.id", ondelete="CASCADE"),
        nullable=False,
        doc="Challenge the achievement belongs to"
    )
    period_key: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="challenge",
        doc="Award period"
    )
    qualifying_activity_ids: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Activities that satisfied the criteria"
    )
    bonus_activity_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("activities.id", ondelete="SET NULL"),
        nullable=True,
        doc="Synthetic activity carrying the bonus points"
    )
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        doc="Timestamp of the award"
    )

    __table_args__ = (
        Index("ix_user_achievements_user_challenge", "user_id", "challenge_id"),
        UniqueConstraint(
            "user_id", "achievement_id", "period_key",
            name="uq_user_achievements_user_achievement_period"
        ),
    )

    def __init__(self, **kwargs):
        """Initialize UserAchievement with default values."""
        kwargs.setdefault('id', uuid4())
        kwargs.setdefault('period_key', "challenge")
        kwargs.setdefault('qualifying_activity_ids', [])
        kwargs.setdefault('earned_at', _utcnow())
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<UserAchievement(user_id='{self.user_id}', period='{self.period_key}')>"
