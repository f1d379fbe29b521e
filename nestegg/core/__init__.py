"""Core package exposing primary interfaces for the NestEgg behavior engine."""

from .behavior_profile import EngineConfig
from .data_models import (
    BehaviorAnalysis,
    BehaviorPattern,
    BehaviorProfile,
    FinancialEvent,
    Recommendation,
    RiskAssessment,
    RiskCategory,
)
from .database import SQLiteStore
from .engine import BehavioralFinanceEngine
from .errors import CollaboratorUnavailableError, EngineError, ValidationError
from .event_client import HTTPEventStore

__all__ = [
    "BehavioralFinanceEngine",
    "EngineConfig",
    "SQLiteStore",
    "HTTPEventStore",
    "FinancialEvent",
    "BehaviorProfile",
    "BehaviorAnalysis",
    "BehaviorPattern",
    "RiskAssessment",
    "RiskCategory",
    "Recommendation",
    "EngineError",
    "ValidationError",
    "CollaboratorUnavailableError",
]
