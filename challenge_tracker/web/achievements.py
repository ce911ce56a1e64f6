"""Achievement criteria parsing and progress evaluation.

Criteria are stored as JSON on ``Achievement.criteria`` and discriminated on
``criteriaType``. Rows written before the tag existed default to ``count``.
Evaluation is pure: callers pass the participant's non-deleted activities in
chronological order.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date
from typing import Annotated, Any, Iterable, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from challenge_tracker.shared.dates import challenge_week
from challenge_tracker.web.scoring import THRESHOLD_METRIC_KEYS, to_number

# Distance metrics that may be stored in the other unit
COMPLEMENTARY_METRICS = {
    "distance_miles": "distance_km",
    "distance_km": "distance_miles",
}

CHALLENGE_PERIOD = "challenge"


class InvalidCriteriaError(ValueError):
    """Raised when achievement criteria cannot be parsed."""
    pass


class CriteriaModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class TypeScopedCriteria(CriteriaModel):
    activity_type_ids: List[str] = Field(default_factory=list)

    @field_validator("activity_type_ids", mode="before")
    @classmethod
    def _ids_as_strings(cls, value: Any) -> Any:
        if value is None:
            return []
        return [str(v) for v in value]


class CountCriteria(TypeScopedCriteria):
    criteria_type: Literal["count"] = "count"
    metric: Optional[str] = None
    threshold: float = 0.0
    required_count: int = 1


class CumulativeCriteria(TypeScopedCriteria):
    criteria_type: Literal["cumulative"] = "cumulative"
    metric: str
    threshold: float
    unit_conversions: dict[str, float] = Field(default_factory=dict)

    @field_validator("unit_conversions", mode="before")
    @classmethod
    def _conversion_keys_as_strings(cls, value: Any) -> Any:
        if value is None:
            return {}
        return {str(k): v for k, v in dict(value).items()}


class DistinctTypesCriteria(TypeScopedCriteria):
    criteria_type: Literal["distinct_types"] = "distinct_types"
    required_count: int = 1


class OneOfEachCriteria(TypeScopedCriteria):
    criteria_type: Literal["one_of_each"] = "one_of_each"


class TypeThresholdRequirement(CriteriaModel):
    activity_type_id: str
    metric: str
    threshold: float = 0.0

    @field_validator("activity_type_id", mode="before")
    @classmethod
    def _id_as_string(cls, value: Any) -> Any:
        return str(value)


class AllActivityTypeThresholdsCriteria(CriteriaModel):
    criteria_type: Literal["all_activity_type_thresholds"] = "all_activity_type_thresholds"
    requirements: List[TypeThresholdRequirement] = Field(default_factory=list)


AchievementCriteria = Annotated[
    Union[
        CountCriteria,
        CumulativeCriteria,
        DistinctTypesCriteria,
        OneOfEachCriteria,
        AllActivityTypeThresholdsCriteria,
    ],
    Field(discriminator="criteria_type"),
]

_criteria_adapter: TypeAdapter[AchievementCriteria] = TypeAdapter(AchievementCriteria)

_CRITERIA_MODELS = (
    CountCriteria,
    CumulativeCriteria,
    DistinctTypesCriteria,
    OneOfEachCriteria,
    AllActivityTypeThresholdsCriteria,
)

# Old ``type`` tags and the criteria type they map to
_LEGACY_TYPE_TAGS = {
    "count_threshold": "count",
    "all_activity_type_thresholds": "all_activity_type_thresholds",
}


class CriteriaProgress(CriteriaModel):
    current: float = 0.0
    required: float = 0.0
    qualifying_activity_ids: List[str] = Field(default_factory=list)

    @property
    def earned(self) -> bool:
        return self.required > 0 and self.current >= self.required


def parse_criteria(raw: Any):
    """Parse stored criteria JSON.

    Raises:
        InvalidCriteriaError: If the criteria are malformed or of an unknown type
    """
    if isinstance(raw, _CRITERIA_MODELS):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidCriteriaError(f"Criteria must be an object, got {type(raw).__name__}")

    data = dict(raw)
    if "criteria_type" in data:
        data.setdefault("criteriaType", data.pop("criteria_type"))
    if not data.get("criteriaType"):
        data["criteriaType"] = _LEGACY_TYPE_TAGS.get(data.get("type"), "count")

    try:
        return _criteria_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidCriteriaError(f"Invalid achievement criteria: {e}") from e


def criteria_activity_type_ids(criteria) -> list[str]:
    if isinstance(criteria, AllActivityTypeThresholdsCriteria):
        return list(dict.fromkeys(r.activity_type_id for r in criteria.requirements))
    return list(criteria.activity_type_ids)


def achievement_metric_value(metrics: Optional[Mapping[str, Any]], metric: str) -> float:
    """First positive value among the keys a metric may be stored under."""
    metrics = metrics or {}
    for key in THRESHOLD_METRIC_KEYS.get(metric, [metric]):
        value = to_number(metrics.get(key))
        if value > 0:
            return value
    return 0.0


def _type_id(activity: Any) -> str:
    return str(activity.activity_type_id)


def _count(criteria: CountCriteria, activities: list[Any]) -> CriteriaProgress:
    qualifying = [
        a for a in activities
        if criteria.metric is None
        or achievement_metric_value(a.metrics, criteria.metric) >= criteria.threshold
    ]
    return CriteriaProgress(
        current=len(qualifying),
        required=criteria.required_count,
        qualifying_activity_ids=[str(a.id) for a in qualifying[:criteria.required_count]],
    )


def _cumulative(criteria: CumulativeCriteria, activities: list[Any]) -> CriteriaProgress:
    total = 0.0
    ids = []
    for activity in activities:
        factor = criteria.unit_conversions.get(_type_id(activity), 1.0)
        value = achievement_metric_value(activity.metrics, criteria.metric)
        if value == 0 and factor != 1:
            alternate = COMPLEMENTARY_METRICS.get(criteria.metric, criteria.metric)
            value = achievement_metric_value(activity.metrics, alternate)
        value *= factor
        if value > 0:
            total += value
            ids.append(str(activity.id))
    return CriteriaProgress(
        current=round(total, 2),
        required=criteria.threshold,
        qualifying_activity_ids=ids,
    )


def _first_per_type(activities: list[Any]) -> dict[str, str]:
    seen: dict[str, str] = {}
    for activity in activities:
        seen.setdefault(_type_id(activity), str(activity.id))
    return seen


def _distinct_types(criteria: DistinctTypesCriteria, activities: list[Any]) -> CriteriaProgress:
    seen = _first_per_type(activities)
    return CriteriaProgress(
        current=len(seen),
        required=criteria.required_count,
        qualifying_activity_ids=list(seen.values()),
    )


def _one_of_each(criteria: OneOfEachCriteria, activities: list[Any]) -> CriteriaProgress:
    seen = _first_per_type(activities)
    return CriteriaProgress(
        current=sum(1 for type_id in set(criteria.activity_type_ids) if type_id in seen),
        required=len(set(criteria.activity_type_ids)),
        qualifying_activity_ids=list(seen.values()),
    )


def _all_type_thresholds(
    criteria: AllActivityTypeThresholdsCriteria,
    activities: list[Any],
) -> CriteriaProgress:
    qualifying: dict[str, str] = {}
    for requirement in criteria.requirements:
        for activity in activities:
            if _type_id(activity) != requirement.activity_type_id:
                continue
            if achievement_metric_value(activity.metrics, requirement.metric) >= requirement.threshold:
                qualifying[requirement.activity_type_id] = str(activity.id)
                break
    return CriteriaProgress(
        current=len(qualifying),
        required=len(criteria.requirements),
        qualifying_activity_ids=list(qualifying.values()),
    )


def evaluate_criteria(criteria: Any, activities: Iterable[Any]) -> CriteriaProgress:
    """Compute progress toward an achievement.

    Args:
        criteria: Stored criteria JSON or a parsed criteria model
        activities: Non-deleted activities with ``id``, ``activity_type_id``
            and ``metrics``, oldest first

    Returns:
        CriteriaProgress: Current and required amounts plus the activities
        that count toward them
    """
    criteria = parse_criteria(criteria)
    activities = list(activities)

    if isinstance(criteria, AllActivityTypeThresholdsCriteria):
        return _all_type_thresholds(criteria, activities)

    type_ids = set(criteria.activity_type_ids)
    matching = [a for a in activities if _type_id(a) in type_ids]

    if isinstance(criteria, CountCriteria):
        return _count(criteria, matching)
    if isinstance(criteria, CumulativeCriteria):
        return _cumulative(criteria, matching)
    if isinstance(criteria, DistinctTypesCriteria):
        return _distinct_types(criteria, matching)
    return _one_of_each(criteria, matching)


def period_key(frequency: str, challenge_start: date, day: date) -> str:
    """Award period for an achievement earned on ``day``."""
    if frequency == "once_per_week":
        return f"week-{challenge_week(challenge_start, day)}"
    return CHALLENGE_PERIOD
