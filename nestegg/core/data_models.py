"""Data models for the adaptive behavioral-finance engine."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so arithmetic never mixes the two."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventKind(str, Enum):
    CONTRIBUTION = "contribution"
    EXPECTATION = "expectation"
    INCIDENT = "incident"


class BehaviorPattern(str, Enum):
    CONSISTENT_SAVER = "consistent_saver"
    OCCASIONAL_SHORTFALL = "occasional_shortfall"
    CHRONIC_UNDER_SAVER = "chronic_under_saver"
    INSUFFICIENT_DATA = "insufficient_data"


class RiskCategory(str, Enum):
    GOAL_SLIPPAGE = "goal_slippage"
    INCOME_VOLATILITY = "income_volatility"
    OVERSPEND_PATTERN = "overspend_pattern"
    LOW_CONFIDENCE_DATA = "low_confidence_data"


# Declaration order doubles as the tie-break order for ranking.
RISK_CATEGORY_ORDER: Dict[str, int] = {category.value: index for index, category in enumerate(RiskCategory)}
GENERAL_CATEGORY = "general"


class SnapshotKind(str, Enum):
    BEHAVIOR_PROFILE = "behavior_profile"
    BEHAVIOR_ANALYSIS = "behavior_analysis"
    RISK_ASSESSMENT = "risk_assessment"
    LEARNING_INSIGHT = "learning_insight"


class FinancialEvent(BaseModel):
    """One observed, immutable fact from the event store."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    kind: EventKind
    timestamp: datetime
    event_id: Optional[str] = None
    goal_id: Optional[str] = None
    expected_amount: Optional[float] = None
    actual_amount: Optional[float] = None
    reason_text: Optional[str] = None
    structured_context: Dict[str, Any] = Field(default_factory=dict)

    def content_hash(self) -> str:
        """Stable hash of the event content; used as the idempotency key."""
        payload = self.model_dump(mode="json", exclude={"event_id"})
        payload["timestamp"] = ensure_utc(self.timestamp).isoformat()
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def with_id(self) -> "FinancialEvent":
        if self.event_id:
            return self
        return self.model_copy(update={"event_id": self.content_hash()})

    @property
    def is_observation(self) -> bool:
        if self.kind == EventKind.INCIDENT:
            return True
        return (
            self.kind == EventKind.EXPECTATION
            and self.expected_amount is not None
            and self.actual_amount is not None
        )

    @property
    def is_shortfall(self) -> bool:
        if self.kind == EventKind.INCIDENT:
            return True
        if not self.is_observation:
            return False
        return float(self.actual_amount) < float(self.expected_amount)


class BehaviorProfile(BaseModel):
    """Durable learned state for one user. Mutated only by the engine."""

    user_id: str
    sample_count: int = Field(default=0, ge=0)
    incident_count: int = Field(default=0, ge=0)
    under_saving_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    # Decayed sums relative to reference_time; their ratio is the rate.
    shortfall_weight: float = Field(default=0.0, ge=0.0)
    observation_weight: float = Field(default=0.0, ge=0.0)
    reference_time: Optional[datetime] = None
    reason_histogram: Dict[str, float] = Field(default_factory=dict)
    # month -> [deviation sum, sample count]
    seasonal_totals: Dict[int, List[float]] = Field(default_factory=dict)
    seasonal_pattern: Dict[int, float] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    last_updated: Optional[datetime] = None
    last_event_id: Optional[str] = None


class BehaviorAnalysis(BaseModel):
    """Point-in-time classification produced by the behavior analyzer."""

    user_id: str
    computed_at: datetime
    dominant_pattern: BehaviorPattern
    profile_snapshot: BehaviorProfile
    top_reasons: List[str] = Field(default_factory=list)
    preferred_timing: str = "irregular"
    stress_factors: List[str] = Field(default_factory=list)
    success_patterns: List[str] = Field(default_factory=list)
    # low | medium | high, from contribution variability and lagging goals
    risk_tolerance: str = "low"
    improvement_areas: List[str] = Field(default_factory=list)
    # Share of expectation observations met; None without any.
    saving_consistency: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    # Share of active goals on schedule; None without goal-tagged events.
    goal_achievement_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RiskEntry(BaseModel):
    category: RiskCategory
    probability: float = Field(ge=0.0, le=1.0)
    severity: float = Field(ge=0.0, le=1.0)
    evidence_count: int = Field(default=0, ge=0)
    latest_evidence_at: Optional[datetime] = None

    @property
    def score(self) -> float:
        return self.probability * self.severity


class RiskAssessment(BaseModel):
    user_id: str
    last_assessed: datetime
    risks: List[RiskEntry] = Field(default_factory=list)


class SuggestedAction(BaseModel):
    action: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Recommendation(BaseModel):
    """Derived advice; regenerable from the current profile and risk state."""

    user_id: str
    generated_at: datetime
    category: str
    message: str
    suggested_action: SuggestedAction
    confidence: float = Field(ge=0.0, le=1.0)
    rank: int = Field(ge=1)


class LearningInsight(BaseModel):
    insight_id: str
    user_id: str
    reason_category: str
    title: str
    description: str
    tips: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    created_at: datetime
    expires_at: datetime


class Snapshot(BaseModel):
    """Persisted, timestamped result superseded by later snapshots."""

    user_id: str
    kind: SnapshotKind
    taken_at: datetime
    payload: Dict[str, Any]


class UnderSavingContext(BaseModel):
    """Optional structured context reported alongside an under-saving reason."""

    goal_id: Optional[str] = None
    expected_amount: Optional[float] = None
    actual_amount: Optional[float] = None
    month: Optional[Union[int, str]] = None
    year: Optional[int] = None
    additional_notes: Optional[str] = None
