from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException, status

from nestegg.core.behavior_profile import EngineConfig
from nestegg.core.data_models import BehaviorAnalysis, LearningInsight, Recommendation, RiskAssessment
from nestegg.core.database import SQLiteStore
from nestegg.core.engine import BehavioralFinanceEngine
from nestegg.core.errors import CollaboratorUnavailableError, EngineError, NotFoundError, ValidationError
from nestegg.core.event_client import HTTPEventStore

from ..config import settings
from ..state import analysis_cache

logger = logging.getLogger("nestegg.backend.behavior")

_engine: Optional[BehavioralFinanceEngine] = None


def build_engine(config: Optional[EngineConfig] = None) -> BehavioralFinanceEngine:
    """Wire the engine to its stores from runtime settings."""
    profile_store = SQLiteStore(settings.db_file, timeout=settings.db_timeout)
    if settings.event_service_url:
        logger.info("Using remote event store at %s", settings.event_service_url)
        event_store: Any = HTTPEventStore(
            settings.event_service_url,
            timeout=httpx.Timeout(settings.event_service_timeout, connect=3.0),
        )
    else:
        event_store = profile_store
    return BehavioralFinanceEngine(
        event_store,
        profile_store,
        config=config or settings.engine_config(),
        retry_attempts=settings.retry_attempts,
        retry_backoff=settings.retry_backoff,
    )


def get_engine() -> BehavioralFinanceEngine:
    """FastAPI dependency returning the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def _to_http(exc: EngineError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, CollaboratorUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(exc), "stage": exc.stage.value if exc.stage else None},
        )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def _invalidate(user_id: str) -> None:
    analysis_cache.pop(user_id, None)


def analyze(engine: BehavioralFinanceEngine, user_id: str) -> Tuple[BehaviorAnalysis, List[Recommendation]]:
    try:
        analysis = engine.analyze_user_behavior(user_id)
        advice = engine.generate_adaptive_recommendations(user_id)
    except EngineError as exc:
        logger.error("Analysis failed for user %s: %s", user_id, exc)
        raise _to_http(exc) from exc
    finally:
        _invalidate(user_id)
    return analysis, advice


def latest_analysis(engine: BehavioralFinanceEngine, user_id: str) -> BehaviorAnalysis:
    if user_id in analysis_cache:
        logger.info("Serving analysis from cache for user %s", user_id)
        return BehaviorAnalysis.model_validate(analysis_cache[user_id])
    try:
        analysis = engine.get_latest_behavior_analysis(user_id)
        if analysis is None:
            raise NotFoundError(f"No behavior analysis recorded for user {user_id}.")
    except EngineError as exc:
        raise _to_http(exc) from exc
    analysis_cache[user_id] = analysis.model_dump(mode="json")
    return analysis


def learn(
    engine: BehavioralFinanceEngine, user_id: str, reason: str, context: Optional[Dict[str, Any]]
) -> Tuple[Optional[BehaviorAnalysis], List[Recommendation]]:
    try:
        engine.learn_from_under_saving(user_id, reason, context)
        analysis = engine.get_latest_behavior_analysis(user_id)
        advice = engine.generate_adaptive_recommendations(user_id)
    except EngineError as exc:
        logger.error("Learning from under-saving failed for user %s: %s", user_id, exc)
        raise _to_http(exc) from exc
    finally:
        _invalidate(user_id)
    return analysis, advice


def risks(engine: BehavioralFinanceEngine, user_id: str) -> RiskAssessment:
    try:
        assessment = engine.assess_financial_risks(user_id)
    except EngineError as exc:
        logger.error("Risk assessment failed for user %s: %s", user_id, exc)
        raise _to_http(exc) from exc
    finally:
        _invalidate(user_id)
    return assessment


def recommendations(engine: BehavioralFinanceEngine, user_id: str) -> List[Recommendation]:
    try:
        result = engine.generate_adaptive_recommendations(user_id)
    except EngineError as exc:
        logger.error("Recommendation generation failed for user %s: %s", user_id, exc)
        raise _to_http(exc) from exc
    finally:
        _invalidate(user_id)
    return result


def insights(engine: BehavioralFinanceEngine, user_id: str) -> List[LearningInsight]:
    try:
        return engine.list_learning_insights(user_id)
    except EngineError as exc:
        raise _to_http(exc) from exc
