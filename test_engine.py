"""
End-to-end engine tests over temporary SQLite stores.
Covers:
1. Analysis snapshots and the latest-analysis read
2. Learning folds incidents in and agrees with a full recompute
3. Incident commits are atomic and replay-safe
4. Risk timestamps strictly increase; stale profiles are recomputed
5. Recommendations reflect what was learned
6. Lock contention and collaborator outages surface as typed errors
7. Ten targets with repeated unexpected bills end up chronic
"""

from datetime import datetime, timedelta, timezone

import pytest

from nestegg.core.behavior_profile import EngineConfig
from nestegg.core.data_models import (
    BehaviorPattern,
    EventKind,
    FinancialEvent,
    RiskCategory,
    Snapshot,
    SnapshotKind,
)
from nestegg.core.database import SQLiteStore
from nestegg.core.engine import BehavioralFinanceEngine
from nestegg.core.errors import CollaboratorUnavailableError, Stage, ValidationError

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class DownEventStore:
    """Event store that is always unreachable."""

    def __init__(self):
        self.calls = 0

    def list_events(self, user_id, since=None):
        self.calls += 1
        raise CollaboratorUnavailableError("event store offline", Stage.READ_HISTORY)

    def append_event(self, event):
        raise CollaboratorUnavailableError("event store offline", Stage.UPDATE_PROFILE)


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "engine.db"))


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def engine(store, clock):
    return BehavioralFinanceEngine(store, store, clock=clock, retry_backoff=0)


def _expectations(user_id, count, shortfall_every=0):
    events = []
    for i in range(count):
        short = shortfall_every and i % shortfall_every == 0
        events.append(
            FinancialEvent(
                user_id=user_id,
                kind=EventKind.EXPECTATION,
                timestamp=NOW - timedelta(days=2 * (count - i)),
                expected_amount=100.0,
                actual_amount=40.0 if short else 100.0,
            )
        )
    return events


def test_analysis_snapshots(engine, store):
    """Test 1: analyze persists, latest read returns it"""
    assert engine.get_latest_behavior_analysis("ghost") is None, "Never-analyzed users have no analysis"

    analysis = engine.analyze_user_behavior("empty")
    assert analysis.dominant_pattern == BehaviorPattern.INSUFFICIENT_DATA, "No history is insufficient"

    store.append_events(_expectations("saver", 6))
    analysis = engine.analyze_user_behavior("saver")
    latest = engine.get_latest_behavior_analysis("saver")
    assert latest is not None, "Analysis is persisted"
    assert latest.computed_at == analysis.computed_at, "Latest read returns the newest analysis"
    assert latest.dominant_pattern == BehaviorPattern.CONSISTENT_SAVER, "All targets met"

    again = engine.analyze_user_behavior("saver")
    assert again.computed_at > analysis.computed_at, "Each recompute supersedes the previous one"
    assert again.profile_snapshot.under_saving_rate == analysis.profile_snapshot.under_saving_rate, "Idempotent"


def test_learning_matches_full_recompute(engine, store):
    """Test 2: learn then analyze gives the same rate"""
    store.append_events(_expectations("learner", 8, shortfall_every=3))
    engine.analyze_user_behavior("learner")

    engine.learn_from_under_saving("learner", "car repair", {"expected_amount": 100, "actual_amount": 20, "month": 5})
    learned = engine.get_latest_behavior_analysis("learner").profile_snapshot
    recomputed = engine.analyze_user_behavior("learner").profile_snapshot

    assert learned.sample_count == 9, "Incident added to the profile"
    assert abs(learned.under_saving_rate - recomputed.under_saving_rate) < 1e-6, "Incremental equals full recompute"
    assert abs(learned.seasonal_pattern[5] - recomputed.seasonal_pattern[5]) < 1e-6, "Seasonal pattern agrees"
    insights = engine.list_learning_insights("learner")
    assert len(insights) == 1, "One insight per learned incident"
    assert insights[0].reason_category == "unexpected_expense", "Repair is an unexpected expense"


def test_learning_without_prior_analysis(engine, store):
    store.append_events(_expectations("late", 4))
    engine.learn_from_under_saving("late", "forgot to move money")
    profile = engine.get_latest_behavior_analysis("late").profile_snapshot
    assert profile.sample_count == 5, "Existing history is folded in before the incident"
    assert profile.incident_count == 1, "One incident recorded"


def test_blank_reason_writes_nothing(engine, store):
    with pytest.raises(ValidationError):
        engine.learn_from_under_saving("strict", "  ", {"expected_amount": 10})
    assert store.list_events("strict") == [], "No event recorded"
    assert engine.get_latest_behavior_analysis("strict") is None, "No profile written"


def test_commit_incident_is_atomic_and_replay_safe(store):
    """Test 3: a replayed commit writes nothing"""
    event = FinancialEvent(user_id="atomic", kind=EventKind.INCIDENT, timestamp=NOW, reason_text="vet bill")
    snapshot = Snapshot(user_id="atomic", kind=SnapshotKind.LEARNING_INSIGHT, taken_at=NOW, payload={"n": 1})

    assert store.commit_incident(event, [snapshot]), "First commit applies"
    assert not store.commit_incident(event, [snapshot]), "Replay is a no-op"
    assert len(store.list_events("atomic")) == 1, "Event stored once"
    assert len(store.list_snapshots("atomic", SnapshotKind.LEARNING_INSIGHT)) == 1, "Snapshot stored once"


def test_separate_stores_use_idempotent_append(tmp_path, clock):
    events = SQLiteStore(str(tmp_path / "events.db"))
    profiles = SQLiteStore(str(tmp_path / "profiles.db"))
    engine = BehavioralFinanceEngine(events, profiles, clock=clock, retry_backoff=0)

    engine.learn_from_under_saving("split", "lost my bonus")
    assert len(events.list_events("split")) == 1, "Incident goes to the event store"
    assert profiles.list_events("split") == [], "Profile store holds no events"
    assert engine.get_latest_behavior_analysis("split").profile_snapshot.sample_count == 1, "Profile updated"


def test_risk_assessment_timestamps_increase(engine, store):
    """Test 4a: consecutive assessments are strictly ordered"""
    store.append_events(_expectations("risky", 6, shortfall_every=2))
    first = engine.assess_financial_risks("risky")
    second = engine.assess_financial_risks("risky")
    assert second.last_assessed > first.last_assessed, "last_assessed must strictly increase"

    fresh = engine.assess_financial_risks("brand-new")
    assert [risk.category for risk in fresh.risks] == [RiskCategory.LOW_CONFIDENCE_DATA], "New user risk"


def test_stale_profile_is_recomputed(engine, store, clock):
    """Test 4b: assessment refreshes a profile older than the staleness window"""
    store.append_events(_expectations("stale", 5))
    first = engine.analyze_user_behavior("stale")

    clock.now = NOW + timedelta(hours=25)
    engine.assess_financial_risks("stale")
    latest = engine.get_latest_behavior_analysis("stale")
    assert latest.computed_at > first.computed_at, "Stale analysis is recomputed before assessing"
    assert latest.computed_at == clock.now, "Recompute happens at assessment time"


def test_recommendations_reflect_learning(engine, store):
    """Test 5: new evidence changes the advice"""
    fallback = engine.generate_adaptive_recommendations("nobody")
    assert [rec.suggested_action.action for rec in fallback] == ["keep_tracking"], "New users get the fallback"

    store.append_events(_expectations("shopper", 5))
    engine.analyze_user_behavior("shopper")
    before = engine.generate_adaptive_recommendations("shopper")
    assert [rec.suggested_action.action for rec in before] == ["contribution_change"], "No risks, only habits to tune"
    assert before[0].suggested_action.parameters == {"shift_to": "early_month"}, "Late-month saving moves earlier"

    for _ in range(5):
        engine.learn_from_under_saving("shopper", "spent too much on shopping")
    after = engine.generate_adaptive_recommendations("shopper")
    categories = [rec.category for rec in after]
    assert "overspend_pattern" in categories, f"Spending incidents should drive advice, got {categories}"
    assert len(categories) == len(set(categories)), "Categories are unique"
    assert len(after) <= EngineConfig().max_recommendations, "Recommendation cap respected"


def test_lock_contention_times_out(tmp_path, clock):
    """Test 6a: a held lock blocks writers until the wait expires"""
    store = SQLiteStore(str(tmp_path / "busy.db"))
    engine = BehavioralFinanceEngine(store, store, config=EngineConfig(lock_wait_seconds=0.2), clock=clock)
    with store.user_lock("busy"):
        with pytest.raises(CollaboratorUnavailableError) as excinfo:
            engine.analyze_user_behavior("busy")
    assert excinfo.value.stage == Stage.ACQUIRE_LOCK, "Timeout reports the lock stage"
    engine.analyze_user_behavior("busy")


def test_unavailable_event_store(tmp_path, clock):
    """Test 6b: bounded retries, then the failing stage is reported"""
    down = DownEventStore()
    profiles = SQLiteStore(str(tmp_path / "profiles.db"))
    engine = BehavioralFinanceEngine(down, profiles, clock=clock, retry_attempts=3, retry_backoff=0)

    with pytest.raises(CollaboratorUnavailableError) as excinfo:
        engine.analyze_user_behavior("offline")
    assert excinfo.value.stage == Stage.READ_HISTORY, "Failure carries the read stage"
    assert down.calls == 3, "Reads are retried a bounded number of times"
    assert not profiles.is_user_locked("offline"), "Lock is released after the failure"


class FlakyProfileStore(SQLiteStore):
    """Profile store whose snapshot writes fail while ``failing`` is set."""

    def __init__(self, db_file):
        super().__init__(db_file)
        self.failing = False

    def put_snapshot(self, snapshot):
        if self.failing:
            raise CollaboratorUnavailableError("profile store offline", Stage.PERSIST_SNAPSHOT)
        return super().put_snapshot(snapshot)


def test_recommendations_fall_back_while_locked(tmp_path, clock):
    """Test 6c: a held lock does not block recommendation reads"""
    store = SQLiteStore(str(tmp_path / "held.db"))
    engine = BehavioralFinanceEngine(store, store, config=EngineConfig(lock_wait_seconds=0.2), clock=clock)
    store.append_events(_expectations("held", 6, shortfall_every=2))
    engine.assess_financial_risks("held")
    engine.learn_from_under_saving("held", "shopping spree")
    learned_at = engine.get_latest_behavior_analysis("held").computed_at

    with store.user_lock("held"):
        recommendations = engine.generate_adaptive_recommendations("held")

    assert recommendations, "Recommendations are returned while another writer holds the lock"
    assert [rec.rank for rec in recommendations] == list(range(1, len(recommendations) + 1)), "Ranks are 1..n"
    assert engine._latest_assessment("held").last_assessed < learned_at, "Nothing persisted without the lock"


def test_failed_profile_write_is_reconciled(tmp_path, clock):
    """Test 3b: an incident stored without its profile update is folded in by the next write"""
    events = SQLiteStore(str(tmp_path / "events.db"))
    profiles = FlakyProfileStore(str(tmp_path / "profiles.db"))
    engine = BehavioralFinanceEngine(events, profiles, clock=clock, retry_backoff=0)
    events.append_events(_expectations("gap", 6, shortfall_every=3))
    engine.analyze_user_behavior("gap")

    profiles.failing = True
    with pytest.raises(CollaboratorUnavailableError) as excinfo:
        engine.learn_from_under_saving("gap", "medical bill")
    assert excinfo.value.stage == Stage.UPDATE_PROFILE, "Partial commit reports the profile stage"
    assert len(events.list_events("gap")) == 7, "Incident reached the event store"

    profiles.failing = False
    clock.now = NOW + timedelta(hours=1)
    engine.learn_from_under_saving("gap", "impulse shopping")
    learned = engine.get_latest_behavior_analysis("gap").profile_snapshot
    assert learned.sample_count == len(events.list_events("gap")) == 8, "Every stored event is in the profile"
    assert learned.incident_count == 2, "Both incidents are counted"

    recomputed = engine.analyze_user_behavior("gap").profile_snapshot
    assert abs(learned.under_saving_rate - recomputed.under_saving_rate) < 1e-6, "Reconciled profile matches"


def test_assessment_catches_up_with_unfolded_events(tmp_path, clock):
    events = SQLiteStore(str(tmp_path / "events.db"))
    profiles = FlakyProfileStore(str(tmp_path / "profiles.db"))
    engine = BehavioralFinanceEngine(events, profiles, clock=clock, retry_backoff=0)
    events.append_events(_expectations("behind", 5))
    engine.analyze_user_behavior("behind")

    profiles.failing = True
    with pytest.raises(CollaboratorUnavailableError):
        engine.learn_from_under_saving("behind", "forgot to transfer")
    profiles.failing = False

    engine.assess_financial_risks("behind")
    profile = engine.get_latest_behavior_analysis("behind").profile_snapshot
    assert profile.sample_count == 6, "Assessment rebuilds a profile that is behind the event store"


def test_repeated_learning_converges_with_recompute(engine, store, clock):
    """Test 2b: several incidents over time match a full recompute"""
    store.append_events(_expectations("steps", 8, shortfall_every=3))
    engine.analyze_user_behavior("steps")

    reasons = ["car repair", "lost shifts at work", "impulse shopping", "forgot", "vet bill"]
    for step, reason in enumerate(reasons, start=1):
        clock.now = NOW + timedelta(days=3 * step)
        engine.learn_from_under_saving("steps", reason, {"expected_amount": 100, "actual_amount": 50, "month": 6})

    learned = engine.get_latest_behavior_analysis("steps").profile_snapshot
    recomputed = engine.analyze_user_behavior("steps").profile_snapshot
    assert learned.sample_count == recomputed.sample_count == 13, "All incidents are counted"
    assert abs(learned.under_saving_rate - recomputed.under_saving_rate) < 1e-6, "Rates agree after five learns"
    assert set(learned.reason_histogram) == set(recomputed.reason_histogram), "Same reason categories"
    for category, weight in recomputed.reason_histogram.items():
        assert abs(learned.reason_histogram[category] - weight) < 1e-6, f"Histogram differs for {category}"
    assert abs(learned.seasonal_pattern[6] - recomputed.seasonal_pattern[6]) < 1e-6, "Seasonal pattern agrees"


def test_unexpected_bills_scenario(engine, store):
    """Test 7: ten targets, six missed by 30%, four reports of unexpected bills"""
    store.append_events(
        [
            FinancialEvent(
                user_id="bills",
                kind=EventKind.EXPECTATION,
                timestamp=NOW - timedelta(days=2 * (10 - i)),
                expected_amount=100.0,
                actual_amount=70.0 if i % 5 < 3 else 100.0,
            )
            for i in range(10)
        ]
    )
    for _ in range(4):
        engine.learn_from_under_saving("bills", "unexpected bills")

    analysis = engine.get_latest_behavior_analysis("bills")
    assert analysis.dominant_pattern == BehaviorPattern.CHRONIC_UNDER_SAVER, f"Got {analysis.dominant_pattern}"
    assert analysis.top_reasons[0] == "unexpected_expense", f"Unexpected top reason {analysis.top_reasons}"

    assessment = engine.assess_financial_risks("bills")
    slippage = next(risk for risk in assessment.risks if risk.category == RiskCategory.GOAL_SLIPPAGE)
    assert slippage.probability > 0.5, f"Goal slippage probability too low: {slippage.probability}"
