"""Input payloads and results returned by the challenge operations."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from challenge_tracker.shared.dates import to_day


class Actor(BaseModel):
    """Identity performing an operation, supplied by the host's auth layer."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    is_admin: bool = False


class ImportedActivity(BaseModel):
    """Activity payload received from a third-party sync."""

    external_id: str
    activity_type_id: UUID
    logged_date: date
    metrics: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    has_media: bool = False

    @field_validator("logged_date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        if isinstance(value, (datetime, str)):
            return to_day(value)
        return value


class AwardResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    achievement_id: UUID
    achievement_name: str
    period_key: str
    bonus_points: float
    bonus_activity_id: Optional[UUID] = None
    qualifying_activity_ids: List[str] = Field(default_factory=list)


class StreakResult(BaseModel):
    current_streak: int = 0
    last_streak_day: Optional[date] = None
    replayed: bool = False


class ActivityResult(BaseModel):
    """Outcome of a create, edit, delete or restore."""

    activity_id: UUID
    points_earned: float
    base_points: float = 0.0
    metric_points: float = 0.0
    bonus_points: float = 0.0
    triggered_bonuses: List[str] = Field(default_factory=list)
    points_delta: float = 0.0
    total_points: float = 0.0
    streak: StreakResult = Field(default_factory=StreakResult)
    awards: List[AwardResult] = Field(default_factory=list)
    created: bool = False
    restored: bool = False
    deleted: bool = False


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    total_points: float


class WeeklyLeaderboard(BaseModel):
    week: int
    total_weeks: int
    entries: List[LeaderboardEntry] = Field(default_factory=list)


class DriftReport(BaseModel):
    user_id: str
    challenge_id: UUID
    cached_total: float
    live_total: float

    @property
    def difference(self) -> float:
        return self.cached_total - self.live_total
