from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from nestegg.core.data_models import BehaviorAnalysis, LearningInsight, Recommendation


class AnalyzeRequest(BaseModel):
    user_id: str = Field(min_length=1)


class UnderSavingRequest(BaseModel):
    user_id: str = Field(min_length=1)
    # Blank reasons are rejected by the engine so they surface as 400, not 422.
    reason: str
    context: Optional[Dict[str, Any]] = None


class AnalyzeResponse(BaseModel):
    user_id: str
    analysis: BehaviorAnalysis
    recommendations: List[Recommendation] = Field(default_factory=list)


class UnderSavingResponse(BaseModel):
    status: Literal["ok"] = "ok"
    user_id: str
    analysis: Optional[BehaviorAnalysis] = None
    recommendations: List[Recommendation] = Field(default_factory=list)


class RecommendationsResponse(BaseModel):
    user_id: str
    recommendations: List[Recommendation]


class InsightsResponse(BaseModel):
    user_id: str
    insights: List[LearningInsight]
