"""Update rules for the per-user behavior profile.

The under-saving rate is a decay-weighted ratio. Both sums are kept relative
to ``reference_time`` (the newest observation seen so far), so shifting the
reference only rescales numerator and denominator by the same factor and the
ratio a single incremental step produces equals the one a full recompute over
the same observations produces.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .data_models import BehaviorProfile, ensure_utc
from .reasons import REASON_CATEGORIES

SECONDS_PER_DAY = 86400.0
MONTHS = tuple(range(1, 13))


@dataclass(frozen=True)
class EngineConfig:
    """Fixed tuning constants. Built once at process start."""

    min_evidence: int = 3
    half_life_days: float = 90.0
    chronic_threshold: float = 0.5
    shortfall_threshold: float = 0.15
    confidence_scale: float = 10.0
    staleness_hours: float = 24.0
    risk_lookback_days: int = 180
    recent_expectation_limit: int = 12
    probability_floor: float = 0.05
    severity_threshold: float = 0.2
    low_confidence_severity: float = 0.1
    max_recommendations: int = 5
    insight_ttl_days: int = 30
    lock_ttl_seconds: int = 60
    lock_wait_seconds: float = 10.0


def decay_weight(age_days: float, half_life_days: float) -> float:
    return 0.5 ** (age_days / half_life_days)


def days_between(later: datetime, earlier: datetime) -> float:
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / SECONDS_PER_DAY


def confidence_for(sample_count: int, scale: float = 10.0) -> float:
    """Saturating trust curve over evidence volume."""
    if sample_count <= 0:
        return 0.0
    return round(1.0 - math.exp(-sample_count / scale), 6)


def seasonal_deviation(expected: Optional[float], actual: Optional[float]) -> Optional[float]:
    if expected is None or actual is None or expected <= 0:
        return None
    return (actual - expected) / expected


def seasonal_pattern_from(totals: Dict[int, List[float]]) -> Dict[int, float]:
    pattern: Dict[int, float] = {}
    for month in MONTHS:
        bucket = totals.get(month)
        if bucket and bucket[1] > 0:
            pattern[month] = bucket[0] / bucket[1]
        else:
            pattern[month] = 0.0
    return pattern


def ranked_reasons(histogram: Dict[str, float], limit: int = 3) -> List[str]:
    """Reason categories by descending weight; taxonomy order breaks ties."""
    order = {category: index for index, category in enumerate(REASON_CATEGORIES)}
    populated = [(category, weight) for category, weight in histogram.items() if weight > 0]
    populated.sort(key=lambda item: (-item[1], order.get(item[0], len(order))))
    return [category for category, _ in populated[:limit]]


def new_profile(user_id: str) -> BehaviorProfile:
    return BehaviorProfile(user_id=user_id, seasonal_pattern=seasonal_pattern_from({}))


def observe(
    profile: BehaviorProfile,
    *,
    timestamp: datetime,
    shortfall: bool,
    config: EngineConfig,
    reason_category: Optional[str] = None,
    seasonal: Optional[Tuple[int, float]] = None,
    is_incident: bool = False,
) -> BehaviorProfile:
    """Fold one observation into ``profile`` in place and return it."""
    moment = ensure_utc(timestamp)
    reference = profile.reference_time

    if reference is None:
        weight = 1.0
        profile.reference_time = moment
    elif moment >= ensure_utc(reference):
        factor = decay_weight(days_between(moment, reference), config.half_life_days)
        profile.shortfall_weight *= factor
        profile.observation_weight *= factor
        profile.reason_histogram = {
            category: value * factor for category, value in profile.reason_histogram.items()
        }
        profile.reference_time = moment
        weight = 1.0
    else:
        # Late evidence: weigh it by its age without moving the reference.
        weight = decay_weight(days_between(reference, moment), config.half_life_days)

    profile.observation_weight += weight
    if shortfall:
        profile.shortfall_weight += weight
    if reason_category:
        profile.reason_histogram[reason_category] = profile.reason_histogram.get(reason_category, 0.0) + weight

    profile.sample_count += 1
    if is_incident:
        profile.incident_count += 1

    if seasonal is not None:
        month, deviation = seasonal
        bucket = profile.seasonal_totals.get(month, [0.0, 0.0])
        profile.seasonal_totals[month] = [bucket[0] + deviation, bucket[1] + 1]
        profile.seasonal_pattern = seasonal_pattern_from(profile.seasonal_totals)

    profile.under_saving_rate = rate_from(profile.shortfall_weight, profile.observation_weight)
    profile.confidence = max(profile.confidence, confidence_for(profile.sample_count, config.confidence_scale))
    return profile


def rate_from(shortfall_weight: float, observation_weight: float) -> float:
    if observation_weight <= 0:
        return 0.0
    return min(1.0, max(0.0, shortfall_weight / observation_weight))


_MONTH_NAMES = {
    name: index
    for index, names in enumerate(
        (
            ("january", "jan"),
            ("february", "feb"),
            ("march", "mar"),
            ("april", "apr"),
            ("may",),
            ("june", "jun"),
            ("july", "jul"),
            ("august", "aug"),
            ("september", "sep", "sept"),
            ("october", "oct"),
            ("november", "nov"),
            ("december", "dec"),
        ),
        start=1,
    )
    for name in names
}


def parse_month(value: object) -> Optional[int]:
    """Best-effort month-of-year from an int, digits, a month name or ``YYYY-MM``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        month = int(value)
        return month if 1 <= month <= 12 else None
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if not text:
        return None
    if text in _MONTH_NAMES:
        return _MONTH_NAMES[text]
    if "-" in text:
        parts = text.split("-")
        text = parts[1] if len(parts) >= 2 else parts[0]
    if text.isdigit():
        month = int(text)
        return month if 1 <= month <= 12 else None
    return None
