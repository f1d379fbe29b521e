"""Categorized, probabilistic risk scoring from a behavior profile."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .behavior_analyzer import coefficient_of_variation, events_frame, goal_progress
from .behavior_profile import EngineConfig
from .data_models import (
    RISK_CATEGORY_ORDER,
    BehaviorProfile,
    EventKind,
    FinancialEvent,
    RiskAssessment,
    RiskCategory,
    RiskEntry,
    ensure_utc,
)
from .reasons import SPENDING_CATEGORIES

logger = logging.getLogger(__name__)

# Used when spending incidents carry no amounts to size the shortfall.
_DEFAULT_OVERSPEND_SEVERITY = 0.5


def _clip(value: float) -> float:
    return round(float(np.clip(value, 0.0, 1.0)), 6)


def _latest(df: pd.DataFrame) -> Optional[datetime]:
    if df.empty:
        return None
    return df["timestamp"].max().to_pydatetime()


def _shortfall_ratios(df: pd.DataFrame) -> np.ndarray:
    sized = df[df["expected"].notna() & df["actual"].notna()]
    sized = sized[sized["expected"].astype(float) > 0]
    if sized.empty:
        return np.asarray([], dtype=float)
    expected = sized["expected"].to_numpy(dtype=float)
    actual = sized["actual"].to_numpy(dtype=float)
    return np.clip((expected - actual) / expected, 0.0, 1.0)


def rank_risks(risks: Sequence[RiskEntry]) -> List[RiskEntry]:
    """Order by probability x severity, then category order, then newest evidence."""

    def key(entry: RiskEntry):
        evidence_at = entry.latest_evidence_at
        recency = -ensure_utc(evidence_at).timestamp() if evidence_at else 0.0
        return (-entry.score, RISK_CATEGORY_ORDER[entry.category.value], recency)

    return sorted(risks, key=key)


class RiskAssessor:
    """Derives a risk assessment from a profile plus recent event history."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def recent_frame(self, events: Sequence[FinancialEvent], now: datetime) -> pd.DataFrame:
        df = events_frame(events)
        if df.empty:
            return df
        cutoff = pd.Timestamp(ensure_utc(now) - timedelta(days=self.config.risk_lookback_days))
        return df[df["timestamp"] >= cutoff].reset_index(drop=True)

    def goal_slippage(self, profile: BehaviorProfile, recent: pd.DataFrame) -> RiskEntry:
        active, behind = goal_progress(recent) if not recent.empty else (0, 0)
        severity = behind / active if active else profile.under_saving_rate
        return RiskEntry(
            category=RiskCategory.GOAL_SLIPPAGE,
            probability=_clip(profile.under_saving_rate),
            severity=_clip(severity),
            evidence_count=profile.sample_count,
            latest_evidence_at=profile.reference_time,
        )

    def income_volatility(self, recent: pd.DataFrame) -> RiskEntry:
        if recent.empty:
            expectations = recent
        else:
            expectations = recent[(recent["kind"] == EventKind.EXPECTATION.value) & recent["is_observation"].astype(bool)]
            expectations = expectations.tail(self.config.recent_expectation_limit)
        if expectations.empty:
            return RiskEntry(category=RiskCategory.INCOME_VOLATILITY, probability=0.0, severity=0.0)
        variation = coefficient_of_variation(expectations["actual"].astype(float).tolist())
        ratios = _shortfall_ratios(expectations)
        largest_shortfall = float(ratios.max()) if ratios.size else 0.0
        return RiskEntry(
            category=RiskCategory.INCOME_VOLATILITY,
            probability=_clip(variation),
            severity=_clip(largest_shortfall),
            evidence_count=int(len(expectations)),
            latest_evidence_at=_latest(expectations),
        )

    def overspend_pattern(self, profile: BehaviorProfile, recent: pd.DataFrame) -> RiskEntry:
        spending_weight = sum(
            weight for category, weight in profile.reason_histogram.items() if category in SPENDING_CATEGORIES
        )
        frequency = spending_weight / profile.observation_weight if profile.observation_weight > 0 else 0.0
        if recent.empty:
            spending = recent
        else:
            spending = recent[
                (recent["kind"] == EventKind.INCIDENT.value) & recent["reason_category"].isin(sorted(SPENDING_CATEGORIES))
            ]
        ratios = _shortfall_ratios(spending) if not spending.empty else np.asarray([], dtype=float)
        severity = float(ratios.mean()) if ratios.size else _DEFAULT_OVERSPEND_SEVERITY
        return RiskEntry(
            category=RiskCategory.OVERSPEND_PATTERN,
            probability=_clip(frequency),
            severity=_clip(severity),
            evidence_count=int(len(spending)),
            latest_evidence_at=_latest(spending),
        )

    def low_confidence_data(self, profile: BehaviorProfile) -> RiskEntry:
        return RiskEntry(
            category=RiskCategory.LOW_CONFIDENCE_DATA,
            probability=_clip(1.0 - profile.confidence),
            severity=_clip(self.config.low_confidence_severity),
            evidence_count=profile.sample_count,
            latest_evidence_at=profile.reference_time,
        )

    def assess(
        self,
        profile: BehaviorProfile,
        events: Sequence[FinancialEvent],
        assessed_at: datetime,
    ) -> RiskAssessment:
        recent = self.recent_frame(events, assessed_at)
        candidates = [
            self.goal_slippage(profile, recent),
            self.income_volatility(recent),
            self.overspend_pattern(profile, recent),
            self.low_confidence_data(profile),
        ]
        kept = [risk for risk in candidates if risk.probability > self.config.probability_floor]
        dropped = len(candidates) - len(kept)
        if dropped:
            logger.debug("Dropped %d risks below probability floor for user %s", dropped, profile.user_id)
        ranked = rank_risks(kept)
        logger.info(
            "Assessed risks for user %s: %s",
            profile.user_id,
            ", ".join(f"{risk.category.value}={risk.score:.3f}" for risk in ranked) or "none",
        )
        return RiskAssessment(user_id=profile.user_id, last_assessed=assessed_at, risks=ranked)
