"""Adaptive recommendations from the latest analysis and risk assessment."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .behavior_profile import EngineConfig
from .data_models import (
    GENERAL_CATEGORY,
    RISK_CATEGORY_ORDER,
    BehaviorAnalysis,
    BehaviorPattern,
    Recommendation,
    RiskAssessment,
    RiskCategory,
    RiskEntry,
    SuggestedAction,
    ensure_utc,
)
from .reasons import OTHER, is_spending_related, label_for

logger = logging.getLogger(__name__)

_CONSISTENCY_TARGET = 0.8


@dataclass(frozen=True)
class _Candidate:
    category: str
    message: str
    action: SuggestedAction
    confidence: float
    priority: float
    evidence_at: Optional[datetime]

    def sort_key(self):
        recency = -ensure_utc(self.evidence_at).timestamp() if self.evidence_at else 0.0
        order = RISK_CATEGORY_ORDER.get(self.category, len(RISK_CATEGORY_ORDER))
        return (-self.priority, order, recency, -self.confidence)


def _reason_hint(top_reason: Optional[str]) -> str:
    if not top_reason or top_reason == OTHER:
        return ""
    return f" Most of your recent shortfalls trace back to {label_for(top_reason)}."


def _confidence(risk: RiskEntry, analysis: BehaviorAnalysis, scale: float = 1.0) -> float:
    value = risk.probability * analysis.profile_snapshot.confidence * scale
    return round(min(1.0, max(0.0, value)), 6)


def _goal_slippage(risk: RiskEntry, analysis: BehaviorAnalysis, top_reason: Optional[str]) -> List[_Candidate]:
    reduce_by = round(100.0 * min(0.5, max(0.05, risk.score)), 1)
    extend_by = max(1, math.ceil(6 * risk.score))
    hint = _reason_hint(top_reason)
    # The preferred action wins the per-category dedup on confidence.
    prefer_extend = "goal_deadline_management" in analysis.improvement_areas
    adjust = _Candidate(
        category=risk.category.value,
        message=(
            f"You missed your savings target about {risk.probability:.0%} of the time. "
            f"Lowering the monthly target by {reduce_by:.0f}% keeps the goal reachable.{hint}"
        ),
        action=SuggestedAction(
            action="adjust_target_amount",
            parameters={"reduce_by_percent": reduce_by},
        ),
        confidence=_confidence(risk, analysis, scale=0.9 if prefer_extend else 1.0),
        priority=risk.score,
        evidence_at=risk.latest_evidence_at,
    )
    extend = _Candidate(
        category=risk.category.value,
        message=(
            f"Some goals are falling behind schedule. Extending the deadline by "
            f"{extend_by} month{'s' if extend_by > 1 else ''} spreads the remaining amount out.{hint}"
        ),
        action=SuggestedAction(
            action="extend_deadline",
            parameters={"extend_by_months": extend_by},
        ),
        confidence=_confidence(risk, analysis, scale=1.0 if prefer_extend else 0.9),
        priority=risk.score,
        evidence_at=risk.latest_evidence_at,
    )
    return [adjust, extend]


def _income_volatility(risk: RiskEntry, analysis: BehaviorAnalysis, top_reason: Optional[str]) -> List[_Candidate]:
    buffer_months = 1 + int(round(2 * risk.probability))
    plural = "s" if buffer_months > 1 else ""
    if analysis.risk_tolerance == "low" and analysis.stress_factors:
        message = (
            "Your saving is usually steady, but shortfalls still cause stress. "
            f"Topping up your safety pot to {buffer_months} month{plural} of contributions "
            f"gives you room when a month goes wrong.{_reason_hint(top_reason)}"
        )
        action = SuggestedAction(
            action="increase_safety_pot",
            parameters={"buffer_months": buffer_months, "stress_factors": list(analysis.stress_factors)},
        )
    else:
        message = (
            "The amounts you manage to save vary a lot from month to month. "
            f"Building a safety buffer of {buffer_months} month{plural} "
            f"of contributions smooths out the lean months.{_reason_hint(top_reason)}"
        )
        action = SuggestedAction(action="build_buffer", parameters={"buffer_months": buffer_months})
    return [
        _Candidate(
            category=risk.category.value,
            message=message,
            action=action,
            confidence=_confidence(risk, analysis),
            priority=risk.score,
            evidence_at=risk.latest_evidence_at,
        )
    ]


def _overspend_pattern(risk: RiskEntry, analysis: BehaviorAnalysis, top_reason: Optional[str]) -> List[_Candidate]:
    spending_category = top_reason if top_reason and is_spending_related(top_reason) else "discretionary"
    cap_reduction = round(100.0 * min(0.3, max(0.05, risk.severity / 2)), 1)
    return [
        _Candidate(
            category=risk.category.value,
            message=(
                "Spending has been eating into your savings. "
                f"Capping {spending_category.replace('_', ' ')} spending {cap_reduction:.0f}% below "
                "your usual level frees up money for your goals."
            ),
            action=SuggestedAction(
                action="set_spending_cap",
                parameters={"spending_category": spending_category, "cap_reduction_percent": cap_reduction},
            ),
            confidence=_confidence(risk, analysis),
            priority=risk.score,
            evidence_at=risk.latest_evidence_at,
        )
    ]


def _low_confidence(risk: RiskEntry, analysis: BehaviorAnalysis, top_reason: Optional[str]) -> List[_Candidate]:
    return [
        _Candidate(
            category=risk.category.value,
            message="We only have a little history so far; keep logging contributions so advice can sharpen.",
            action=SuggestedAction(
                action="keep_tracking",
                parameters={"evidence_count": risk.evidence_count},
            ),
            confidence=round(1.0 - risk.probability, 6),
            priority=risk.score,
            evidence_at=risk.latest_evidence_at,
        )
    ]


_BUILDERS: Dict[RiskCategory, Callable[[RiskEntry, BehaviorAnalysis, Optional[str]], List[_Candidate]]] = {
    RiskCategory.GOAL_SLIPPAGE: _goal_slippage,
    RiskCategory.INCOME_VOLATILITY: _income_volatility,
    RiskCategory.OVERSPEND_PATTERN: _overspend_pattern,
    RiskCategory.LOW_CONFIDENCE_DATA: _low_confidence,
}


class RecommendationGenerator:
    """Maps the latest profile and risks to a ranked, deduplicated list."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def fallback(self, user_id: str, generated_at: datetime, analysis: Optional[BehaviorAnalysis]) -> Recommendation:
        confidence = analysis.profile_snapshot.confidence if analysis else 0.0
        return Recommendation(
            user_id=user_id,
            generated_at=generated_at,
            category=GENERAL_CATEGORY,
            message="Not enough data yet: keep tracking your contributions and we will tailor advice as we learn.",
            suggested_action=SuggestedAction(
                action="keep_tracking",
                parameters={"min_evidence": self.config.min_evidence},
            ),
            confidence=confidence,
            rank=1,
        )

    def contribution_change(self, analysis: BehaviorAnalysis, generated_at: datetime) -> Optional[Recommendation]:
        """Timing or amount tweak for users whose risks are fine but habits could improve."""
        parameters: Dict[str, object] = {}
        consistency = analysis.saving_consistency
        if "earlier_contribution_timing" in analysis.improvement_areas:
            parameters["shift_to"] = "early_month"
        if "increase_contribution_amounts" in analysis.improvement_areas or (
            consistency is not None and consistency < _CONSISTENCY_TARGET
        ):
            shortfall = 1.0 - consistency if consistency is not None else 0.1
            parameters["increase_by_percent"] = round(100.0 * min(0.25, max(0.05, shortfall / 2)), 1)
        if not parameters:
            return None

        if consistency is not None:
            lead = f"You met {consistency:.0%} of your savings targets. "
        else:
            lead = "Your savings are on track. "
        steps = []
        if "shift_to" in parameters:
            steps.append("moving your contribution to the start of the month")
        if "increase_by_percent" in parameters:
            steps.append(f"raising it by {parameters['increase_by_percent']:.0f}%")
        return Recommendation(
            user_id=analysis.user_id,
            generated_at=generated_at,
            category=GENERAL_CATEGORY,
            message=f"{lead}Try {' and '.join(steps)} to make the habit stick.",
            suggested_action=SuggestedAction(action="contribution_change", parameters=parameters),
            confidence=round(analysis.profile_snapshot.confidence * 0.8, 6),
            rank=1,
        )

    def on_track(self, analysis: BehaviorAnalysis, generated_at: datetime) -> Recommendation:
        change = self.contribution_change(analysis, generated_at)
        if change is not None:
            return change
        if analysis.dominant_pattern == BehaviorPattern.CONSISTENT_SAVER:
            message = "You are saving consistently. Keep your current plan and review your targets next month."
        else:
            message = (
                "Your occasional shortfalls are not putting your goals at risk yet. "
                "Keep your current plan and review your targets next month."
                f"{_reason_hint(analysis.top_reasons[0] if analysis.top_reasons else None)}"
            )
        return Recommendation(
            user_id=analysis.user_id,
            generated_at=generated_at,
            category=GENERAL_CATEGORY,
            message=message,
            suggested_action=SuggestedAction(action="maintain_plan"),
            confidence=analysis.profile_snapshot.confidence,
            rank=1,
        )

    def generate(
        self,
        user_id: str,
        analysis: Optional[BehaviorAnalysis],
        assessment: Optional[RiskAssessment],
        generated_at: datetime,
    ) -> List[Recommendation]:
        if analysis is None or analysis.dominant_pattern == BehaviorPattern.INSUFFICIENT_DATA:
            logger.info("Insufficient data for user %s; returning fallback recommendation", user_id)
            return [self.fallback(user_id, generated_at, analysis)]

        top_reason = analysis.top_reasons[0] if analysis.top_reasons else None
        candidates: List[_Candidate] = []
        for risk in (assessment.risks if assessment else []):
            if risk.severity < self.config.severity_threshold:
                continue
            candidates.extend(_BUILDERS[risk.category](risk, analysis, top_reason))

        candidates.sort(key=_Candidate.sort_key)
        seen = set()
        selected: List[_Candidate] = []
        for candidate in candidates:
            if candidate.category in seen:
                continue
            seen.add(candidate.category)
            selected.append(candidate)
            if len(selected) >= self.config.max_recommendations:
                break

        if not selected:
            logger.info("No actionable risks for user %s; returning on-track recommendation", user_id)
            return [self.on_track(analysis, generated_at)]

        recommendations = [
            Recommendation(
                user_id=user_id,
                generated_at=generated_at,
                category=candidate.category,
                message=candidate.message,
                suggested_action=candidate.action,
                confidence=candidate.confidence,
                rank=index,
            )
            for index, candidate in enumerate(selected, start=1)
        ]
        logger.info(
            "Generated %d recommendations for user %s: %s",
            len(recommendations),
            user_id,
            ", ".join(rec.category for rec in recommendations),
        )
        return recommendations
