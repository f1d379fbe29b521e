"""From-scratch behavior analysis over a user's full event history."""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .behavior_profile import (
    EngineConfig,
    confidence_for,
    new_profile,
    parse_month,
    ranked_reasons,
    rate_from,
    seasonal_deviation,
    seasonal_pattern_from,
)
from .data_models import (
    BehaviorAnalysis,
    BehaviorPattern,
    BehaviorProfile,
    EventKind,
    FinancialEvent,
    ensure_utc,
)
from .reasons import REASON_CATEGORIES, normalize_reason

logger = logging.getLogger(__name__)

_FRAME_COLUMNS = [
    "event_id",
    "timestamp",
    "kind",
    "goal_id",
    "expected",
    "actual",
    "is_observation",
    "is_shortfall",
    "reason_category",
    "season_month",
    "deviation",
]


def seasonal_sample(event: FinancialEvent) -> Optional[Tuple[int, float]]:
    """Month and deviation ratio an event contributes to the seasonal pattern."""
    if event.kind == EventKind.EXPECTATION:
        month: Optional[int] = ensure_utc(event.timestamp).month
    elif event.kind == EventKind.INCIDENT:
        month = parse_month((event.structured_context or {}).get("month"))
    else:
        month = None
    if month is None:
        return None
    deviation = seasonal_deviation(event.expected_amount, event.actual_amount)
    if deviation is None:
        return None
    return month, deviation


def incident_category(event: FinancialEvent) -> str:
    return normalize_reason(event.reason_text, event.structured_context)


def events_frame(events: Sequence[FinancialEvent]) -> pd.DataFrame:
    """Tabulate events in a deterministic order (timestamp, then id)."""
    rows = []
    for event in events:
        sample = seasonal_sample(event)
        rows.append(
            {
                "event_id": event.event_id or event.content_hash(),
                "timestamp": ensure_utc(event.timestamp),
                "kind": event.kind.value,
                "goal_id": event.goal_id,
                "expected": event.expected_amount,
                "actual": event.actual_amount,
                "is_observation": event.is_observation,
                "is_shortfall": event.is_shortfall,
                "reason_category": incident_category(event) if event.kind == EventKind.INCIDENT else None,
                "season_month": sample[0] if sample else None,
                "deviation": sample[1] if sample else None,
            }
        )
    if not rows:
        return pd.DataFrame(columns=_FRAME_COLUMNS)
    df = pd.DataFrame(rows, columns=_FRAME_COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df.sort_values(["timestamp", "event_id"], kind="mergesort").reset_index(drop=True)


def coefficient_of_variation(values: Sequence[float]) -> float:
    """Population std / mean; 0.0 when undefined."""
    array = np.asarray([v for v in values if v is not None], dtype=float)
    if array.size < 2:
        return 0.0
    mean = float(np.mean(array))
    if mean <= 0:
        return 0.0
    return float(np.std(array) / mean)


def goal_progress(df: pd.DataFrame) -> Tuple[int, int]:
    """Return (active goals, goals behind schedule) from goal-tagged events.

    A goal is behind when what was actually saved towards it is below what
    was expected. Contributions add to the actual side only.
    """
    tagged = df[df["goal_id"].notna() & df["kind"].isin([EventKind.EXPECTATION.value, EventKind.CONTRIBUTION.value])]
    if tagged.empty:
        return 0, 0
    behind = 0
    for _, goal_rows in tagged.groupby("goal_id", sort=True):
        expectations = goal_rows[goal_rows["kind"] == EventKind.EXPECTATION.value]
        expected_total = float(expectations["expected"].fillna(0.0).sum())
        actual_total = float(goal_rows["actual"].fillna(0.0).sum())
        if expected_total > 0 and actual_total < expected_total:
            behind += 1
    return int(tagged["goal_id"].nunique()), behind


def _preferred_timing(df: pd.DataFrame) -> str:
    saving_rows = df[df["kind"].isin([EventKind.EXPECTATION.value, EventKind.CONTRIBUTION.value])]
    if len(saving_rows) < 3:
        return "irregular"
    days = saving_rows["timestamp"].dt.day
    buckets = OrderedDict(
        [
            ("early_month", int((days <= 10).sum())),
            ("mid_month", int(((days > 10) & (days <= 20)).sum())),
            ("late_month", int((days > 20).sum())),
        ]
    )
    ranked = sorted(buckets.items(), key=lambda item: -item[1])
    if ranked[0][1] == ranked[1][1]:
        return "irregular"
    return ranked[0][0]


def _stress_and_success(df: pd.DataFrame, config: EngineConfig) -> Tuple[List[str], List[str]]:
    stress: List[str] = []
    success: List[str] = []

    expectations = df[(df["kind"] == EventKind.EXPECTATION.value) & df["is_observation"]]
    if not expectations.empty:
        missed_share = float(expectations["is_shortfall"].mean())
        if missed_share >= config.shortfall_threshold:
            stress.append("frequent_missed_contributions")
        if (1.0 - missed_share) > 0.8:
            success.append("consistent_contributions")

    amounts = df[df["kind"].isin([EventKind.EXPECTATION.value, EventKind.CONTRIBUTION.value])]["actual"].dropna()
    if coefficient_of_variation(amounts.tolist()) > 0.5:
        stress.append("inconsistent_contribution_amounts")

    _, behind = goal_progress(df)
    if behind > 0:
        stress.append("goals_behind_schedule")

    saving_rows = df[df["kind"].isin([EventKind.EXPECTATION.value, EventKind.CONTRIBUTION.value])]
    if len(saving_rows) >= 3 and float((saving_rows["timestamp"].dt.day <= 15).mean()) > 0.6:
        success.append("early_month_contributions")
    return stress, success


def _tolerance_and_improvements(df: pd.DataFrame) -> Tuple[str, List[str], Optional[float], Optional[float]]:
    """Risk tolerance, improvement areas, saving consistency and goal achievement."""
    saving_rows = df[df["kind"].isin([EventKind.EXPECTATION.value, EventKind.CONTRIBUTION.value])]
    expectations = df[(df["kind"] == EventKind.EXPECTATION.value) & df["is_observation"]]
    active, behind = goal_progress(df)

    consistency = None
    if not expectations.empty:
        consistency = round(1.0 - float(expectations["is_shortfall"].mean()), 6)
    achievement = round((active - behind) / active, 6) if active else None

    variation = coefficient_of_variation(saving_rows["actual"].dropna().tolist())
    if variation > 0.5 or behind > 0:
        tolerance = "high"
    elif variation > 0.2:
        tolerance = "medium"
    else:
        tolerance = "low"

    areas: List[str] = []
    if not expectations.empty:
        mean_expected = float(expectations["expected"].astype(float).mean())
        mean_actual = float(expectations["actual"].astype(float).mean())
        if mean_actual < mean_expected:
            areas.append("increase_contribution_amounts")
    if not saving_rows.empty and float((saving_rows["timestamp"].dt.day > 25).mean()) > 0.3:
        areas.append("earlier_contribution_timing")
    if behind > 0:
        areas.append("goal_deadline_management")
    return tolerance, areas, consistency, achievement


class BehaviorAnalyzer:
    """Recomputes a behavior profile and classification from raw history."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def build_profile(self, user_id: str, df: pd.DataFrame) -> BehaviorProfile:
        profile = new_profile(user_id)
        observations = df[df["is_observation"].astype(bool)]
        if observations.empty:
            return profile

        reference = observations["timestamp"].max()
        ages = (reference - observations["timestamp"]).dt.total_seconds().to_numpy(dtype=float) / 86400.0
        weights = np.power(0.5, ages / self.config.half_life_days)
        shortfalls = observations["is_shortfall"].to_numpy(dtype=bool)

        profile.sample_count = int(len(observations))
        profile.incident_count = int((observations["kind"] == EventKind.INCIDENT.value).sum())
        profile.observation_weight = float(weights.sum())
        profile.shortfall_weight = float(weights[shortfalls].sum())
        profile.under_saving_rate = rate_from(profile.shortfall_weight, profile.observation_weight)
        profile.reference_time = reference.to_pydatetime()

        histogram: Dict[str, float] = {}
        categories = observations["reason_category"].to_numpy(dtype=object)
        for category in REASON_CATEGORIES:
            mask = categories == category
            if mask.any():
                histogram[category] = float(weights[mask].sum())
        profile.reason_histogram = histogram

        seasonal = df[df["season_month"].notna()]
        totals: Dict[int, List[float]] = {}
        for month, group in seasonal.groupby("season_month", sort=True):
            totals[int(month)] = [float(group["deviation"].sum()), float(len(group))]
        profile.seasonal_totals = totals
        profile.seasonal_pattern = seasonal_pattern_from(totals)

        profile.confidence = confidence_for(profile.sample_count, self.config.confidence_scale)
        profile.last_updated = df["timestamp"].max().to_pydatetime()
        profile.last_event_id = str(df["event_id"].iloc[-1])
        return profile

    def classify(self, profile: BehaviorProfile) -> BehaviorPattern:
        if profile.sample_count < self.config.min_evidence:
            return BehaviorPattern.INSUFFICIENT_DATA
        if profile.under_saving_rate >= self.config.chronic_threshold:
            return BehaviorPattern.CHRONIC_UNDER_SAVER
        if profile.under_saving_rate >= self.config.shortfall_threshold:
            return BehaviorPattern.OCCASIONAL_SHORTFALL
        return BehaviorPattern.CONSISTENT_SAVER

    def describe(
        self,
        profile: BehaviorProfile,
        df: pd.DataFrame,
        computed_at: datetime,
    ) -> BehaviorAnalysis:
        if df.empty:
            stress, success = [], []
            tolerance, areas, consistency, achievement = "low", [], None, None
        else:
            stress, success = _stress_and_success(df, self.config)
            tolerance, areas, consistency, achievement = _tolerance_and_improvements(df)
        return BehaviorAnalysis(
            user_id=profile.user_id,
            computed_at=computed_at,
            dominant_pattern=self.classify(profile),
            profile_snapshot=profile.model_copy(deep=True),
            top_reasons=ranked_reasons(profile.reason_histogram),
            preferred_timing=_preferred_timing(df) if not df.empty else "irregular",
            stress_factors=stress,
            success_patterns=success,
            risk_tolerance=tolerance,
            improvement_areas=areas,
            saving_consistency=consistency,
            goal_achievement_rate=achievement,
        )

    def reclassify(
        self,
        profile: BehaviorProfile,
        previous: Optional[BehaviorAnalysis],
        computed_at: datetime,
    ) -> BehaviorAnalysis:
        """Classify an incrementally updated profile without rereading history.

        Descriptors computed from the raw history carry over from the
        previous analysis until the next full recompute.
        """
        carried = {}
        if previous is not None:
            carried = previous.model_dump(
                include={
                    "preferred_timing",
                    "stress_factors",
                    "success_patterns",
                    "risk_tolerance",
                    "improvement_areas",
                    "saving_consistency",
                    "goal_achievement_rate",
                }
            )
        return BehaviorAnalysis(
            user_id=profile.user_id,
            computed_at=computed_at,
            dominant_pattern=self.classify(profile),
            profile_snapshot=profile.model_copy(deep=True),
            top_reasons=ranked_reasons(profile.reason_histogram),
            **carried,
        )

    def analyze(
        self,
        user_id: str,
        events: Sequence[FinancialEvent],
        computed_at: datetime,
    ) -> Tuple[BehaviorProfile, BehaviorAnalysis]:
        """Full recompute: a replacement profile plus its classification."""
        df = events_frame(events)
        profile = self.build_profile(user_id, df)
        analysis = self.describe(profile, df, computed_at)
        logger.info(
            "Analyzed user %s: pattern=%s samples=%d rate=%.3f confidence=%.3f",
            user_id,
            analysis.dominant_pattern.value,
            profile.sample_count,
            profile.under_saving_rate,
            profile.confidence,
        )
        return profile, analysis
