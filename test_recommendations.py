"""
Recommendation generator tests.
Covers:
1. Never empty, at most the configured number, unique categories
2. New users get exactly one general fallback
3. Users without actionable risks get a maintain-plan entry
4. Improvement areas and risk tolerance shape the suggested actions
"""

from datetime import datetime, timedelta, timezone

from nestegg.core.behavior_analyzer import BehaviorAnalyzer
from nestegg.core.behavior_profile import EngineConfig
from nestegg.core.data_models import (
    BehaviorPattern,
    EventKind,
    FinancialEvent,
    RiskAssessment,
    RiskCategory,
    RiskEntry,
)
from nestegg.core.recommendations import RecommendationGenerator
from nestegg.core.risk_assessor import RiskAssessor

BASE = datetime(2025, 1, 1, tzinfo=timezone.utc)
NOW = BASE + timedelta(days=30)


def _history(user_id, met, shortfalls, reason="unexpected bills"):
    events = [
        FinancialEvent(
            user_id=user_id,
            kind=EventKind.EXPECTATION,
            timestamp=BASE + timedelta(days=day),
            expected_amount=100.0,
            actual_amount=100.0,
        )
        for day in range(met)
    ]
    events += [
        FinancialEvent(
            user_id=user_id,
            kind=EventKind.INCIDENT,
            timestamp=BASE + timedelta(days=met + i),
            reason_text=reason,
        )
        for i in range(shortfalls)
    ]
    return events


def _analyze(config, user_id, events):
    profile, analysis = BehaviorAnalyzer(config).analyze(user_id, events, NOW)
    return analysis, RiskAssessor(config).assess(profile, events, NOW)


def _check_invariants(recommendations, config):
    assert recommendations, "Recommendations must never be empty"
    assert len(recommendations) <= config.max_recommendations, "Too many recommendations"
    categories = [rec.category for rec in recommendations]
    assert len(categories) == len(set(categories)), f"Duplicate categories {categories}"
    assert [rec.rank for rec in recommendations] == list(range(1, len(recommendations) + 1)), "Ranks are 1..n"
    for rec in recommendations:
        assert 0.0 <= rec.confidence <= 1.0, "Confidence stays in [0, 1]"


def test_chronic_user_gets_goal_advice():
    """Test 1: chronic under-saver"""
    config = EngineConfig()
    analysis, assessment = _analyze(config, "chronic", _history("chronic", met=4, shortfalls=6))
    recommendations = RecommendationGenerator(config).generate("chronic", analysis, assessment, NOW)

    _check_invariants(recommendations, config)
    first = recommendations[0]
    assert first.category == RiskCategory.GOAL_SLIPPAGE.value, f"Unexpected first category {first.category}"
    assert first.suggested_action.action in {"adjust_target_amount", "extend_deadline"}, "Goal action expected"
    assert "unexpected expenses" in first.message, "Advice mentions the dominant reason"


def test_new_user_gets_single_fallback():
    """Test 2: no analysis or insufficient data"""
    config = EngineConfig()
    generator = RecommendationGenerator(config)

    recommendations = generator.generate("nobody", None, None, NOW)
    assert len(recommendations) == 1, "Exactly one fallback"
    assert recommendations[0].category == "general", "Fallback is general"
    assert recommendations[0].suggested_action.action == "keep_tracking", "Fallback asks to keep tracking"

    analysis, assessment = _analyze(config, "thin", _history("thin", met=1, shortfalls=1))
    assert analysis.dominant_pattern == BehaviorPattern.INSUFFICIENT_DATA, "Two observations are insufficient"
    recommendations = generator.generate("thin", analysis, assessment, NOW)
    assert [rec.suggested_action.action for rec in recommendations] == ["keep_tracking"], "Still the fallback"


def test_consistent_saver_maintains_plan():
    """Test 3: nothing actionable"""
    config = EngineConfig()
    analysis, assessment = _analyze(config, "steady", _history("steady", met=12, shortfalls=0))
    recommendations = RecommendationGenerator(config).generate("steady", analysis, assessment, NOW)

    _check_invariants(recommendations, config)
    assert len(recommendations) == 1, "One entry when nothing is actionable"
    assert recommendations[0].category == "general", "Maintain-plan entry is general"
    assert recommendations[0].suggested_action.action == "maintain_plan", "Keep the current plan"


def test_cap_and_dedup():
    config = EngineConfig(max_recommendations=2)
    analysis, _ = _analyze(config, "busy", _history("busy", met=2, shortfalls=8, reason="impulse shopping"))
    assessment = RiskAssessment(
        user_id="busy",
        last_assessed=NOW,
        risks=[
            RiskEntry(category=RiskCategory.GOAL_SLIPPAGE, probability=0.8, severity=0.9),
            RiskEntry(category=RiskCategory.OVERSPEND_PATTERN, probability=0.7, severity=0.6),
            RiskEntry(category=RiskCategory.INCOME_VOLATILITY, probability=0.5, severity=0.5),
            RiskEntry(category=RiskCategory.LOW_CONFIDENCE_DATA, probability=0.2, severity=0.1),
        ],
    )
    recommendations = RecommendationGenerator(config).generate("busy", analysis, assessment, NOW)

    _check_invariants(recommendations, config)
    assert [rec.category for rec in recommendations] == ["goal_slippage", "overspend_pattern"], "Top two by score"
    cap = recommendations[1].suggested_action
    assert cap.action == "set_spending_cap", "Overspending advice caps spending"
    assert cap.parameters["spending_category"] == "overspending", "Cap targets the dominant spending reason"


def test_improvement_areas_shape_actions():
    """Test 4: personalization from the analysis descriptors"""
    config = EngineConfig()
    generator = RecommendationGenerator(config)
    analysis, _ = _analyze(config, "tuned", _history("tuned", met=12, shortfalls=0))

    habits = analysis.model_copy(
        update={"saving_consistency": 0.7, "improvement_areas": ["earlier_contribution_timing"]}
    )
    recommendations = generator.generate("tuned", habits, None, NOW)
    action = recommendations[0].suggested_action
    assert action.action == "contribution_change", "Habits below target ask for a contribution change"
    assert action.parameters == {"shift_to": "early_month", "increase_by_percent": 15.0}, action.parameters
    assert "70%" in recommendations[0].message, "Message quotes the consistency"

    slipping = RiskAssessment(
        user_id="tuned",
        last_assessed=NOW,
        risks=[RiskEntry(category=RiskCategory.GOAL_SLIPPAGE, probability=0.8, severity=0.9)],
    )
    default_first = generator.generate("tuned", analysis, slipping, NOW)[0]
    assert default_first.suggested_action.action == "adjust_target_amount", "Target cut is the default"
    deadlines = analysis.model_copy(update={"improvement_areas": ["goal_deadline_management"]})
    deadline_first = generator.generate("tuned", deadlines, slipping, NOW)[0]
    assert deadline_first.suggested_action.action == "extend_deadline", "Deadline trouble prefers an extension"

    volatile = RiskAssessment(
        user_id="tuned",
        last_assessed=NOW,
        risks=[RiskEntry(category=RiskCategory.INCOME_VOLATILITY, probability=0.5, severity=0.5)],
    )
    stressed = analysis.model_copy(
        update={"risk_tolerance": "low", "stress_factors": ["frequent_missed_contributions"]}
    )
    assert generator.generate("tuned", stressed, volatile, NOW)[0].suggested_action.action == "increase_safety_pot"
    relaxed = analysis.model_copy(update={"risk_tolerance": "high", "stress_factors": []})
    assert generator.generate("tuned", relaxed, volatile, NOW)[0].suggested_action.action == "build_buffer"
