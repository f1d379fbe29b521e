"""Adaptive behavioral-finance engine.

The engine is constructed explicitly with its event store and profile store.
All mutation of a user's profile and risk snapshots happens under that user's
advisory lock; reads of the latest snapshots for display do not take it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .behavior_analyzer import BehaviorAnalyzer
from .behavior_profile import EngineConfig
from .collaborators import EventStore, ProfileStore
from .data_models import (
    BehaviorAnalysis,
    BehaviorPattern,
    BehaviorProfile,
    FinancialEvent,
    LearningInsight,
    Recommendation,
    RiskAssessment,
    Snapshot,
    SnapshotKind,
    ensure_utc,
    utc_now,
)
from .errors import CollaboratorUnavailableError, Stage
from .incremental_learner import IncidentUpdate, IncrementalLearner, require_reason
from .recommendations import RecommendationGenerator
from .risk_assessor import RiskAssessor

logger = logging.getLogger(__name__)

T = TypeVar("T")
_TICK = timedelta(microseconds=1)


class BehavioralFinanceEngine:
    """Per-user behavior analysis, incremental learning, risk and advice."""

    def __init__(
        self,
        event_store: EventStore,
        profile_store: ProfileStore,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        retry_attempts: int = 3,
        retry_backoff: float = 0.1,
    ):
        self.event_store = event_store
        self.profile_store = profile_store
        self.config = config or EngineConfig()
        self.clock = clock
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.analyzer = BehaviorAnalyzer(self.config)
        self.learner = IncrementalLearner(self.config)
        self.assessor = RiskAssessor(self.config)
        self.recommender = RecommendationGenerator(self.config)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _call(self, stage: Stage, fn: Callable[..., T], *args: Any) -> T:
        """Run a collaborator call with bounded retries on availability errors."""
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=1.0),
            retry=retry_if_exception_type(CollaboratorUnavailableError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return retrying(fn, *args)
        except CollaboratorUnavailableError as exc:
            if exc.stage is None:
                exc.stage = stage
            logger.error("Collaborator call failed at stage %s: %s", exc.stage.value, exc)
            raise

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _locked(self, user_id: str):
        return self.profile_store.user_lock(
            user_id,
            ttl_seconds=self.config.lock_ttl_seconds,
            wait_seconds=self.config.lock_wait_seconds,
        )

    def _latest_payload(self, user_id: str, kind: SnapshotKind) -> Optional[dict]:
        snapshot = self._call(Stage.READ_HISTORY, self.profile_store.get_latest, user_id, kind)
        return snapshot.payload if snapshot else None

    def _load(self, user_id: str, kind: SnapshotKind, model: type) -> Optional[Any]:
        payload = self._latest_payload(user_id, kind)
        if payload is None:
            return None
        try:
            return model.model_validate(payload)
        except PydanticValidationError as exc:
            logger.warning("Ignoring unreadable %s snapshot for user %s: %s", kind.value, user_id, exc)
            return None

    @staticmethod
    def _snapshot(user_id: str, kind: SnapshotKind, taken_at: datetime, model: Any) -> Snapshot:
        return Snapshot(user_id=user_id, kind=kind, taken_at=taken_at, payload=model.model_dump(mode="json"))

    def _latest_profile(self, user_id: str) -> Optional[BehaviorProfile]:
        return self._load(user_id, SnapshotKind.BEHAVIOR_PROFILE, BehaviorProfile)

    def _latest_assessment(self, user_id: str) -> Optional[RiskAssessment]:
        return self._load(user_id, SnapshotKind.RISK_ASSESSMENT, RiskAssessment)

    def _is_stale(self, analysis: BehaviorAnalysis, now: datetime) -> bool:
        age = now - ensure_utc(analysis.computed_at)
        return age > timedelta(hours=self.config.staleness_hours)

    # ------------------------------------------------------------------
    # analyze
    # ------------------------------------------------------------------

    def _analyze_locked(self, user_id: str) -> BehaviorAnalysis:
        logger.info("Stage %s: reading full history for user %s", Stage.READ_HISTORY.value, user_id)
        events = self._call(Stage.READ_HISTORY, self.event_store.list_events, user_id)

        computed_at = self._now()
        previous = self.get_latest_behavior_analysis(user_id)
        if previous is not None and computed_at <= ensure_utc(previous.computed_at):
            computed_at = ensure_utc(previous.computed_at) + _TICK

        profile, analysis = self.analyzer.analyze(user_id, events, computed_at)

        logger.info("Stage %s: replacing profile for user %s", Stage.PERSIST_SNAPSHOT.value, user_id)
        self._call(
            Stage.PERSIST_SNAPSHOT,
            self.profile_store.put_snapshot,
            self._snapshot(user_id, SnapshotKind.BEHAVIOR_PROFILE, computed_at, profile),
        )
        self._call(
            Stage.PERSIST_SNAPSHOT,
            self.profile_store.put_snapshot,
            self._snapshot(user_id, SnapshotKind.BEHAVIOR_ANALYSIS, computed_at, analysis),
        )
        return analysis

    def analyze_user_behavior(self, user_id: str) -> BehaviorAnalysis:
        """Recompute the user's profile from full history and classify it."""
        with self._locked(user_id):
            return self._analyze_locked(user_id)

    def get_latest_behavior_analysis(self, user_id: str) -> Optional[BehaviorAnalysis]:
        """Most recent persisted analysis, or None for a user never analyzed."""
        return self._load(user_id, SnapshotKind.BEHAVIOR_ANALYSIS, BehaviorAnalysis)

    # ------------------------------------------------------------------
    # learn
    # ------------------------------------------------------------------

    def _pending_events(self, user_id: str, profile: BehaviorProfile) -> List[FinancialEvent]:
        """Stored events newer than the last one folded into the profile."""
        if profile.last_updated is None:
            return self._call(Stage.READ_HISTORY, self.event_store.list_events, user_id)
        last_seen = (ensure_utc(profile.last_updated), profile.last_event_id or "")
        events = self._call(Stage.READ_HISTORY, self.event_store.list_events, user_id, last_seen[0])
        return [
            event
            for event in events
            if (ensure_utc(event.timestamp), event.event_id or event.content_hash()) > last_seen
        ]

    def _reconciled_profile(self, user_id: str) -> Tuple[Optional[BehaviorProfile], Optional[BehaviorAnalysis]]:
        """Stored profile, rebuilt from full history when it is missing or behind the event store.

        The analysis is returned only when a rebuild happened.
        """
        profile = self._latest_profile(user_id)
        if profile is None:
            logger.info("No stored profile for user %s; building one from history", user_id)
        else:
            pending = self._pending_events(user_id, profile)
            if not pending:
                return profile, None
            logger.warning(
                "Profile for user %s is missing %d stored events; rebuilding from full history",
                user_id,
                len(pending),
            )
        events = self._call(Stage.READ_HISTORY, self.event_store.list_events, user_id)
        if not events:
            return None, None
        return self.analyzer.analyze(user_id, events, self._now())

    def _commit(self, update: IncidentUpdate, snapshots: List[Snapshot]) -> None:
        commit_incident = getattr(self.event_store, "commit_incident", None)
        if self.event_store is self.profile_store and callable(commit_incident):
            # Event and snapshots in one transaction; replays are no-ops.
            self._call(Stage.UPDATE_PROFILE, commit_incident, update.event, snapshots)
            return

        # Separate stores: idempotent append keyed by content hash, then the
        # snapshots. Each step is replayable on its own.
        self._call(Stage.UPDATE_PROFILE, self.event_store.append_event, update.event)
        try:
            for snapshot in snapshots:
                self._call(Stage.PERSIST_SNAPSHOT, self.profile_store.put_snapshot, snapshot)
        except CollaboratorUnavailableError as exc:
            logger.error(
                "Incident %s recorded for user %s but profile write failed; the next write for this user rebuilds the profile",
                update.event.event_id,
                update.event.user_id,
            )
            raise CollaboratorUnavailableError(
                f"Incident recorded but profile update failed: {exc}", Stage.UPDATE_PROFILE
            ) from exc

    def learn_from_under_saving(self, user_id: str, reason: str, context: Optional[dict] = None) -> None:
        """Record an under-saving incident and fold it into the stored profile."""
        require_reason(reason)
        with self._locked(user_id):
            profile, rebuilt = self._reconciled_profile(user_id)
            previous = self.get_latest_behavior_analysis(user_id)
            now = self._now()
            if previous is not None and now <= ensure_utc(previous.computed_at):
                now = ensure_utc(previous.computed_at) + _TICK

            update = self.learner.learn(profile, user_id, reason, context or {}, now)
            analysis = self.analyzer.reclassify(update.profile, rebuilt or previous, now)
            snapshots = [
                self._snapshot(user_id, SnapshotKind.BEHAVIOR_PROFILE, now, update.profile),
                self._snapshot(user_id, SnapshotKind.BEHAVIOR_ANALYSIS, now, analysis),
                self._snapshot(user_id, SnapshotKind.LEARNING_INSIGHT, now, update.insight),
            ]
            logger.info("Stage %s: committing incident for user %s", Stage.UPDATE_PROFILE.value, user_id)
            self._commit(update, snapshots)

    def list_learning_insights(self, user_id: str, limit: int = 20) -> List[LearningInsight]:
        """Unexpired insights from learned incidents, newest first."""
        now = self._now()
        snapshots = self._call(
            Stage.READ_HISTORY, self.profile_store.list_snapshots, user_id, SnapshotKind.LEARNING_INSIGHT, limit
        )
        insights: List[LearningInsight] = []
        for snapshot in snapshots:
            try:
                insight = LearningInsight.model_validate(snapshot.payload)
            except PydanticValidationError as exc:
                logger.warning("Ignoring unreadable insight for user %s: %s", user_id, exc)
                continue
            if ensure_utc(insight.expires_at) > now:
                insights.append(insight)
        return insights

    # ------------------------------------------------------------------
    # risk
    # ------------------------------------------------------------------

    def assess_financial_risks(self, user_id: str) -> RiskAssessment:
        """Score categorized risks and persist them as the user's latest assessment."""
        with self._locked(user_id):
            now = self._now()
            analysis = self.get_latest_behavior_analysis(user_id)
            profile = self._latest_profile(user_id)
            if (
                analysis is None
                or profile is None
                or self._is_stale(analysis, now)
                or self._pending_events(user_id, profile)
            ):
                logger.info("Profile for user %s missing, stale or behind; running full analysis first", user_id)
                analysis = self._analyze_locked(user_id)
                profile = analysis.profile_snapshot

            since = now - timedelta(days=self.config.risk_lookback_days)
            events = self._call(Stage.READ_HISTORY, self.event_store.list_events, user_id, since)

            assessed_at = max(self._now(), ensure_utc(analysis.computed_at))
            previous = self._latest_assessment(user_id)
            if previous is not None and assessed_at <= ensure_utc(previous.last_assessed):
                assessed_at = ensure_utc(previous.last_assessed) + _TICK

            assessment = self.assessor.assess(profile, events, assessed_at)
            self._call(
                Stage.PERSIST_SNAPSHOT,
                self.profile_store.put_snapshot,
                self._snapshot(user_id, SnapshotKind.RISK_ASSESSMENT, assessed_at, assessment),
            )
            return assessment

    # ------------------------------------------------------------------
    # recommendations
    # ------------------------------------------------------------------

    def generate_adaptive_recommendations(self, user_id: str) -> List[Recommendation]:
        """Ranked advice from the latest analysis and risks; never empty."""
        analysis = self.get_latest_behavior_analysis(user_id)
        assessment: Optional[RiskAssessment] = None
        if analysis is not None and analysis.dominant_pattern != BehaviorPattern.INSUFFICIENT_DATA:
            assessment = self._latest_assessment(user_id)
            if assessment is None or ensure_utc(assessment.last_assessed) < ensure_utc(analysis.computed_at):
                try:
                    assessment = self.assess_financial_risks(user_id)
                    analysis = self.get_latest_behavior_analysis(user_id) or analysis
                except CollaboratorUnavailableError as exc:
                    if exc.stage != Stage.ACQUIRE_LOCK:
                        raise
                    logger.warning("User %s is locked by another writer; scoring risks without persisting", user_id)
                    assessment = self._assess_unlocked(user_id, analysis)
        return self.recommender.generate(user_id, analysis, assessment, self._now())

    def _assess_unlocked(self, user_id: str, analysis: BehaviorAnalysis) -> RiskAssessment:
        """Risks from the latest persisted analysis, computed in memory only."""
        now = self._now()
        since = now - timedelta(days=self.config.risk_lookback_days)
        events = self._call(Stage.READ_HISTORY, self.event_store.list_events, user_id, since)
        assessed_at = max(now, ensure_utc(analysis.computed_at))
        return self.assessor.assess(analysis.profile_snapshot, events, assessed_at)


__all__ = ["BehavioralFinanceEngine"]
