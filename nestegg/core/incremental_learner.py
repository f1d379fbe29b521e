"""Incremental learning from reported under-saving incidents."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from .behavior_analyzer import incident_category, seasonal_sample
from .behavior_profile import EngineConfig, new_profile, observe
from .data_models import (
    BehaviorProfile,
    EventKind,
    FinancialEvent,
    LearningInsight,
    UnderSavingContext,
    ensure_utc,
)
from .errors import ValidationError
from .reasons import label_for, tips_for

logger = logging.getLogger(__name__)


def _safe_float(value: Any) -> Optional[float]:
    """Best-effort conversion to float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _safe_int(value: Any) -> Optional[int]:
    number = _safe_float(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def _safe_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_context(raw: Any) -> UnderSavingContext:
    """Build a context from loosely-typed input, dropping unusable fields."""
    if isinstance(raw, UnderSavingContext):
        return raw
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Ignoring non-mapping under-saving context of type %s", type(raw).__name__)
        return UnderSavingContext()

    def pick(*keys: str) -> Any:
        return next((raw[key] for key in keys if raw.get(key) is not None), None)

    month = pick("month")
    if not isinstance(month, (int, str)) or isinstance(month, bool):
        month = None
    return UnderSavingContext(
        goal_id=_safe_text(pick("goal_id", "goalId")),
        expected_amount=_safe_float(pick("expected_amount", "expectedAmount")),
        actual_amount=_safe_float(pick("actual_amount", "actualAmount")),
        month=month,
        year=_safe_int(pick("year")),
        additional_notes=_safe_text(pick("additional_notes", "additionalNotes")),
    )


def require_reason(reason: Any) -> str:
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("An under-saving reason is required.")
    return reason.strip()


@dataclass(frozen=True)
class IncidentUpdate:
    """Everything one learned incident writes, committed as a unit."""

    event: FinancialEvent
    profile: BehaviorProfile
    insight: LearningInsight
    category: str


class IncrementalLearner:
    """Folds a single incident into a stored profile without rereading history."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def build_incident(
        self,
        user_id: str,
        reason: str,
        context: UnderSavingContext,
        timestamp: datetime,
    ) -> FinancialEvent:
        structured = context.model_dump(exclude_none=True)
        event = FinancialEvent(
            user_id=user_id,
            kind=EventKind.INCIDENT,
            timestamp=timestamp,
            goal_id=context.goal_id,
            expected_amount=context.expected_amount,
            actual_amount=context.actual_amount,
            reason_text=reason,
            structured_context=structured,
        )
        return event.with_id()

    def apply(self, profile: Optional[BehaviorProfile], event: FinancialEvent) -> BehaviorProfile:
        """Return a copy of ``profile`` with ``event`` folded in."""
        updated = profile.model_copy(deep=True) if profile is not None else new_profile(event.user_id)
        sample = seasonal_sample(event)
        if sample is None:
            logger.debug("No seasonal sample for incident %s; skipping seasonal update", event.event_id)
        observe(
            updated,
            timestamp=event.timestamp,
            shortfall=True,
            config=self.config,
            reason_category=incident_category(event),
            seasonal=sample,
            is_incident=True,
        )
        if updated.last_updated is None or ensure_utc(event.timestamp) >= ensure_utc(updated.last_updated):
            updated.last_updated = event.timestamp
        updated.last_event_id = event.event_id
        return updated

    def build_insight(self, event: FinancialEvent, category: str, created_at: datetime) -> LearningInsight:
        return LearningInsight(
            insight_id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"insight:{event.event_id}")),
            user_id=event.user_id,
            reason_category=category,
            title="Under-Saving Pattern Detected",
            description=f"User reported under-saving due to {label_for(category)}: {event.reason_text}",
            tips=tips_for(category),
            confidence=0.8,
            created_at=created_at,
            expires_at=created_at + timedelta(days=self.config.insight_ttl_days),
        )

    def learn(
        self,
        profile: Optional[BehaviorProfile],
        user_id: str,
        reason: Any,
        context: Any,
        now: datetime,
    ) -> IncidentUpdate:
        """Validate input and compute the incident, new profile and insight."""
        clean_reason = require_reason(reason)
        clean_context = coerce_context(context)
        event = self.build_incident(user_id, clean_reason, clean_context, now)
        category = incident_category(event)
        updated = self.apply(profile, event)
        logger.info(
            "Learned incident for user %s: category=%s samples=%d rate=%.3f",
            user_id,
            category,
            updated.sample_count,
            updated.under_saving_rate,
        )
        return IncidentUpdate(
            event=event,
            profile=updated,
            insight=self.build_insight(event, category, now),
            category=category,
        )
