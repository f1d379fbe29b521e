from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from nestegg.core.data_models import BehaviorAnalysis, RiskAssessment
from nestegg.core.engine import BehavioralFinanceEngine

from ..schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    InsightsResponse,
    RecommendationsResponse,
    UnderSavingRequest,
    UnderSavingResponse,
)
from ..services import behavior
from ..services.behavior import get_engine

router = APIRouter(prefix="/api/behavior", tags=["behavior"])


@router.post("/analyze", response_model=AnalyzeResponse)
def analyze_behavior(req: AnalyzeRequest, engine: BehavioralFinanceEngine = Depends(get_engine)):
    """Recompute the user's behavior profile from full history and refresh the advice."""
    analysis, advice = behavior.analyze(engine, req.user_id)
    return AnalyzeResponse(user_id=req.user_id, analysis=analysis, recommendations=advice)


@router.get("/analysis", response_model=BehaviorAnalysis)
def get_latest_analysis(
    user_id: str = Query(..., min_length=1, description="User identifier"),
    engine: BehavioralFinanceEngine = Depends(get_engine),
):
    """Latest stored analysis; 404 for a user never analyzed."""
    return behavior.latest_analysis(engine, user_id)


@router.post("/under-saving", response_model=UnderSavingResponse)
def report_under_saving(req: UnderSavingRequest, engine: BehavioralFinanceEngine = Depends(get_engine)):
    """Record why the user saved less than planned and learn from it."""
    analysis, advice = behavior.learn(engine, req.user_id, req.reason, req.context)
    return UnderSavingResponse(user_id=req.user_id, analysis=analysis, recommendations=advice)


@router.get("/risks", response_model=RiskAssessment)
def get_risks(
    user_id: str = Query(..., min_length=1, description="User identifier"),
    engine: BehavioralFinanceEngine = Depends(get_engine),
):
    return behavior.risks(engine, user_id)


@router.get("/recommendations", response_model=RecommendationsResponse)
def get_recommendations(
    user_id: str = Query(..., min_length=1, description="User identifier"),
    engine: BehavioralFinanceEngine = Depends(get_engine),
):
    return RecommendationsResponse(user_id=user_id, recommendations=behavior.recommendations(engine, user_id))


@router.get("/insights", response_model=InsightsResponse)
def get_insights(
    user_id: str = Query(..., min_length=1, description="User identifier"),
    engine: BehavioralFinanceEngine = Depends(get_engine),
):
    """Unexpired learning insights, newest first."""
    return InsightsResponse(user_id=user_id, insights=behavior.insights(engine, user_id))
