"""Activity scoring for challenge activity types.

Scoring configs are stored as loosely shaped JSON on ``ActivityType``. This
module parses them into a closed set of pydantic models discriminated on the
``type`` field and turns a metrics payload into signed points.

Supported config types:

- ``unit_based``: ``basePoints + pointsPerUnit * min(value, maxUnits)``
- ``tiered``: first tier whose ``maxValue`` covers the value wins
- ``completion``: fixed points plus optional named bonuses
- ``legacy``: configs saved before the ``type`` tag existed; scored like
  ``unit_based`` without a cap
- ``variants``: named variants picked by ``metrics["variant"]``, by condition
  or by ``defaultVariant``, each valid within an optional date range

Everything here is pure. Facts that depend on other activities (units of
the same penalty already logged today, whether today's media bonus is
taken) are gathered by the caller and passed in a :class:`ScoringContext`.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import date
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

MEDIA_BONUS_POINTS = 1.0
DRINKS_UNIT = "drinks"

# Unit names and the metric keys they may arrive under
CANONICAL_METRIC_ALIASES: dict[str, list[str]] = {
    "miles": ["distance_miles", "mile", "distance_mile"],
    "kilometers": ["distance_km", "distance_kilometers", "km", "kilometres", "kilometer", "kilometre"],
    "minutes": ["duration_minutes", "moving_minutes", "minute"],
    "count": ["counts", "instances", "instance"],
    "completion": ["completed", "is_completed"],
    "full_days": ["full_day"],
    "half_days": ["half_day"],
}

# Threshold metric names and the activity metric keys checked for them, in order
THRESHOLD_METRIC_KEYS: dict[str, list[str]] = {
    "distance_miles": ["miles", "distance_miles", "distance"],
    "distance_km": ["kilometers", "km", "distance_km", "distance"],
    "duration_minutes": ["minutes", "duration_minutes", "duration"],
}


class InvalidScoringConfigError(ValueError):
    """Raised when a scoring config cannot be parsed."""
    pass


class ScoringModel(BaseModel):
    """Base for scoring models; accepts camelCase or snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class UnitBasedConfig(ScoringModel):
    type: Literal["unit_based"] = "unit_based"
    unit: Optional[str] = None
    points_per_unit: float = 1.0
    base_points: float = 0.0
    max_units: Optional[float] = None
    freebies_per_day: Optional[float] = None

    def daily_freebies(self) -> float:
        if self.freebies_per_day is not None:
            return self.freebies_per_day
        return 1.0 if self.unit == DRINKS_UNIT else 0.0


class Tier(ScoringModel):
    max_value: Optional[float] = None
    points: float = 0.0


class TieredConfig(ScoringModel):
    type: Literal["tiered"] = "tiered"
    metric: Optional[str] = None
    tiers: List[Tier] = Field(default_factory=list)


class OptionalBonus(ScoringModel):
    name: str
    bonus_points: float = 0.0
    description: Optional[str] = None


class CompletionConfig(ScoringModel):
    type: Literal["completion"] = "completion"
    fixed_points: float = Field(
        default=0.0,
        validation_alias=AliasChoices("fixedPoints", "fixed_points", "points"),
    )
    optional_bonuses: List[OptionalBonus] = Field(default_factory=list)


class LegacyUnitBasedConfig(ScoringModel):
    """Untagged config from before scoring types were introduced."""

    type: Literal["legacy"] = "legacy"
    unit: Optional[str] = None
    points_per_unit: float = 1.0
    base_points: float = 0.0
    freebies_per_day: Optional[float] = None

    def daily_freebies(self) -> float:
        if self.freebies_per_day is not None:
            return self.freebies_per_day
        return 1.0 if self.unit == DRINKS_UNIT else 0.0


class VariantCondition(ScoringModel):
    field: str
    operator: Literal["eq", "lte", "gte", "lt", "gt"]
    value: Any = None

    def matches(self, metrics: Mapping[str, Any]) -> bool:
        if metrics.get(self.field) is None:
            return False
        actual = to_number(metrics[self.field])
        expected = to_number(self.value)
        if self.operator == "eq":
            return actual == expected
        if self.operator == "lte":
            return actual <= expected
        if self.operator == "gte":
            return actual >= expected
        if self.operator == "lt":
            return actual < expected
        return actual > expected


class Variant(ScoringModel):
    name: Optional[str] = None
    points: Optional[float] = None
    base_points: float = 0.0
    points_per_unit: float = 1.0
    unit: Optional[str] = None
    condition: Optional[VariantCondition] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None

    def valid_on(self, day: Optional[date]) -> bool:
        if day is None:
            return True
        if self.valid_from is not None and day < self.valid_from:
            return False
        if self.valid_to is not None and day > self.valid_to:
            return False
        return True


class VariantsConfig(ScoringModel):
    """Named variants; falls back to the unit formula when none applies."""

    type: Literal["variants"] = "variants"
    variants: Dict[str, Variant]
    default_variant: Optional[str] = None
    unit: Optional[str] = None
    points_per_unit: float = 1.0
    base_points: float = 0.0

    def select(self, metrics: Mapping[str, Any], day: Optional[date]) -> Optional[Variant]:
        """Pick by requested key, then by lowest matching condition, then the default."""
        valid = {key: v for key, v in self.variants.items() if v.valid_on(day)}

        requested = metrics.get("variant")
        if isinstance(requested, str) and requested in valid:
            return valid[requested]

        conditional = sorted(
            (v for v in valid.values() if v.condition is not None),
            key=lambda v: to_number(v.condition.value),
        )
        for variant in conditional:
            if variant.condition.matches(metrics):
                return variant

        if self.default_variant is not None:
            return valid.get(self.default_variant)
        return None


ScoringConfig = Annotated[
    Union[UnitBasedConfig, TieredConfig, CompletionConfig, LegacyUnitBasedConfig, VariantsConfig],
    Field(discriminator="type"),
]

_scoring_config_adapter: TypeAdapter[ScoringConfig] = TypeAdapter(ScoringConfig)


class BonusThreshold(ScoringModel):
    """A bonus rule on an activity type, also used to record triggered bonuses."""

    metric: str
    threshold: float = 0.0
    bonus_points: float = 0.0
    description: Optional[str] = None


class ScoringContext(ScoringModel):
    """Facts about other activities that affect this activity's score."""

    units_logged_today: float = 0.0
    logged_date: Optional[date] = None
    media_bonus_available: bool = True
    media_bonus_points: float = MEDIA_BONUS_POINTS
    precision: int = 2


class PointsBreakdown(ScoringModel):
    """Result of scoring one activity."""

    base_points: float = 0.0
    metric_points: float = 0.0
    bonus_points: float = 0.0
    points_earned: float = 0.0
    triggered_bonuses: List[BonusThreshold] = Field(default_factory=list)

    def bonuses_as_json(self) -> list[dict[str, Any]]:
        return [b.model_dump(by_alias=True, exclude_none=True) for b in self.triggered_bonuses]


AnyScoringConfig = Union[UnitBasedConfig, TieredConfig, CompletionConfig, LegacyUnitBasedConfig, VariantsConfig]


def parse_scoring_config(raw: Any) -> AnyScoringConfig:
    """Parse stored JSON into a scoring config model.

    A config without a ``type`` tag is treated as ``variants`` when it
    carries a ``variants`` object and as ``legacy`` otherwise.

    Raises:
        InvalidScoringConfigError: If the config is not a mapping or has an
            unknown type or malformed fields
    """
    if isinstance(raw, (UnitBasedConfig, TieredConfig, CompletionConfig, LegacyUnitBasedConfig, VariantsConfig)):
        return raw
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise InvalidScoringConfigError(f"Scoring config must be an object, got {type(raw).__name__}")

    data = dict(raw)
    if not data.get("type"):
        data["type"] = "variants" if isinstance(data.get("variants"), Mapping) else "legacy"

    try:
        return _scoring_config_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidScoringConfigError(f"Invalid scoring config: {e}") from e


def parse_bonus_thresholds(raw: Optional[Iterable[Any]]) -> list[BonusThreshold]:
    if not raw:
        return []
    try:
        return [BonusThreshold.model_validate(item) for item in raw]
    except ValidationError as e:
        raise InvalidScoringConfigError(f"Invalid bonus thresholds: {e}") from e


def to_number(value: Any) -> float:
    """Coerce a metric value to a finite float; anything else reads as 0."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return 0.0
    else:
        return 0.0
    return number if math.isfinite(number) else 0.0


def normalize_metric_key(key: str) -> str:
    return "_".join(key.strip().lower().replace("-", " ").split())


def metric_value(metrics: Mapping[str, Any], unit: Optional[str]) -> Optional[float]:
    """Look up the value for ``unit`` in ``metrics``.

    Tries the exact key first, then normalized, singular/plural and
    canonical alias forms. Returns ``None`` when no key matches.
    """
    if not unit:
        return None
    if metrics.get(unit) is not None:
        return to_number(metrics[unit])

    normalized = normalize_metric_key(unit)
    singular = normalized[:-1] if normalized.endswith("s") else normalized
    plural = normalized if normalized.endswith("s") else f"{normalized}s"

    candidates = {normalized, singular, plural}
    candidates.update(
        CANONICAL_METRIC_ALIASES.get(normalized) or CANONICAL_METRIC_ALIASES.get(singular) or []
    )

    for key, value in metrics.items():
        if value is not None and normalize_metric_key(str(key)) in candidates:
            return to_number(value)
    return None


def apply_point_sign(raw_points: float, is_negative: bool) -> float:
    """Force penalty points negative; non-finite input scores 0."""
    if raw_points is None or not math.isfinite(raw_points):
        return 0.0
    return -abs(raw_points) if is_negative else raw_points


def _unit_points(
    config: Union[UnitBasedConfig, LegacyUnitBasedConfig],
    metrics: Mapping[str, Any],
    context: ScoringContext,
    is_negative: bool,
) -> tuple[float, float]:
    value = metric_value(metrics, config.unit)
    if value is None:
        return config.base_points, 0.0

    max_units = getattr(config, "max_units", None)
    if max_units is not None and value > max_units:
        value = max_units

    freebies = config.daily_freebies() if is_negative else 0.0
    if freebies > 0:
        before = max(0.0, context.units_logged_today)
        penalty_units = max(0.0, before + value - freebies) - max(0.0, before - freebies)
        return 0.0, penalty_units * config.points_per_unit

    return config.base_points, value * config.points_per_unit


def _variant_points(config: VariantsConfig, metrics: Mapping[str, Any], context: ScoringContext) -> tuple[float, float]:
    variant = config.select(metrics, context.logged_date)
    if variant is None:
        value = metric_value(metrics, config.unit)
        return config.base_points, (value or 0.0) * config.points_per_unit
    if variant.points is not None:
        return variant.points, 0.0
    value = metric_value(metrics, variant.unit or config.unit)
    if value is None:
        return variant.base_points, 0.0
    return variant.base_points, value * variant.points_per_unit


def _tiered_points(config: TieredConfig, metrics: Mapping[str, Any]) -> float:
    if not config.metric or not config.tiers:
        return 0.0
    value = metric_value(metrics, config.metric) or 0.0
    for tier in config.tiers:
        if tier.max_value is None or value <= tier.max_value:
            return tier.points
    return config.tiers[-1].points


def evaluate_config(
    config: AnyScoringConfig,
    metrics: Mapping[str, Any],
    context: Optional[ScoringContext] = None,
    is_negative: bool = False,
) -> tuple[float, float]:
    """Return ``(base_points, metric_points)`` before bonuses and sign."""
    context = context or ScoringContext()
    if isinstance(config, (UnitBasedConfig, LegacyUnitBasedConfig)):
        return _unit_points(config, metrics, context, is_negative)
    if isinstance(config, TieredConfig):
        return 0.0, _tiered_points(config, metrics)
    if isinstance(config, CompletionConfig):
        return config.fixed_points, 0.0
    if isinstance(config, VariantsConfig):
        return _variant_points(config, metrics, context)
    raise InvalidScoringConfigError(f"Unsupported scoring config: {config!r}")


def threshold_bonuses(
    thresholds: Iterable[BonusThreshold],
    metrics: Mapping[str, Any],
) -> list[BonusThreshold]:
    """Every threshold met by the metrics; thresholds stack."""
    triggered = []
    for rule in thresholds:
        value = 0.0
        for key in THRESHOLD_METRIC_KEYS.get(rule.metric, [rule.metric]):
            candidate = to_number(metrics.get(key))
            if candidate > 0:
                value = candidate
                break
        if value >= rule.threshold:
            triggered.append(rule)
    return triggered


def selected_bonus_names(metrics: Mapping[str, Any]) -> list[str]:
    selected = metrics.get("selectedBonuses") or metrics.get("selected_bonuses") or []
    if isinstance(selected, str):
        return [selected]
    return [str(name) for name in selected]


def optional_bonuses(
    config: AnyScoringConfig,
    selected: Iterable[str],
) -> list[BonusThreshold]:
    if not isinstance(config, CompletionConfig):
        return []
    selected = set(selected)
    return [
        BonusThreshold(
            metric="optional",
            threshold=0.0,
            bonus_points=bonus.bonus_points,
            description=bonus.description or bonus.name,
        )
        for bonus in config.optional_bonuses
        if bonus.name in selected
    ]


def media_bonus(
    has_media: bool,
    context: ScoringContext,
    is_negative: bool = False,
) -> Optional[BonusThreshold]:
    """The once-per-day photo bonus, if this activity can claim it."""
    if not has_media or is_negative or not context.media_bonus_available:
        return None
    return BonusThreshold(
        metric="media",
        threshold=1.0,
        bonus_points=context.media_bonus_points,
        description="Photo bonus",
    )


def score_activity(
    scoring_config: Any,
    metrics: Optional[Mapping[str, Any]],
    *,
    is_negative: bool = False,
    bonus_thresholds: Optional[Iterable[Any]] = None,
    has_media: bool = False,
    context: Optional[ScoringContext] = None,
) -> PointsBreakdown:
    """Score one activity.

    Args:
        scoring_config: Stored config (dict) or a parsed config model
        metrics: Metric payload of the activity
        is_negative: Whether the activity type is a penalty
        bonus_thresholds: Threshold bonus rules of the activity type
        has_media: Whether the activity carries a photo
        context: Facts about the user's other activities that day

    Returns:
        PointsBreakdown: Points split by source, with the sign applied to the total
    """
    context = context or ScoringContext()
    metrics = metrics or {}
    config = parse_scoring_config(scoring_config)
    thresholds = [
        t if isinstance(t, BonusThreshold) else BonusThreshold.model_validate(t)
        for t in (bonus_thresholds or [])
    ]

    base_points, metric_points = evaluate_config(config, metrics, context, is_negative)

    triggered = threshold_bonuses(thresholds, metrics)
    triggered.extend(optional_bonuses(config, selected_bonus_names(metrics)))
    photo = media_bonus(has_media, context, is_negative)
    if photo is not None:
        triggered.append(photo)

    bonus_points = sum(b.bonus_points for b in triggered)
    raw_points = base_points + metric_points + bonus_points
    points_earned = round(apply_point_sign(raw_points, is_negative), context.precision)
    # Avoid storing -0.0
    points_earned = points_earned + 0.0

    logger.debug(
        f"Scored {config.type} activity: base={base_points} metric={metric_points} "
        f"bonus={bonus_points} earned={points_earned}"
    )

    return PointsBreakdown(
        base_points=base_points,
        metric_points=metric_points,
        bonus_points=bonus_points,
        points_earned=points_earned,
        triggered_bonuses=triggered,
    )
