from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from nestegg.core.behavior_profile import EngineConfig

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def _cors_origins() -> List[str]:
    raw = os.getenv("CORS_ORIGINS")
    if not raw:
        return [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


class Settings:
    """Runtime settings shared across the backend application."""

    def __init__(self) -> None:
        self.title: str = "NestEgg Behavior API"
        self.version: str = "1.0.0"
        self.cors_origins: List[str] = _cors_origins()
        self.db_file: str = os.getenv("NESTEGG_DB_FILE", "nestegg.db")
        self.db_timeout: float = float(os.getenv("NESTEGG_DB_TIMEOUT", "5"))
        # When unset, events live in the same SQLite file as the snapshots.
        self.event_service_url: Optional[str] = os.getenv("EVENT_SERVICE_URL") or None
        self.event_service_timeout: float = float(os.getenv("EVENT_SERVICE_TIMEOUT", "10"))
        self.retry_attempts: int = int(os.getenv("ENGINE_RETRY_ATTEMPTS", "3"))
        self.retry_backoff: float = float(os.getenv("ENGINE_RETRY_BACKOFF", "0.1"))
        self.analysis_cache_ttl: int = int(os.getenv("ANALYSIS_CACHE_TTL", "60"))
        self.analysis_cache_size: int = int(os.getenv("ANALYSIS_CACHE_SIZE", "1000"))

        self.min_evidence: int = int(os.getenv("MIN_EVIDENCE", "3"))
        self.half_life_days: float = float(os.getenv("DECAY_HALF_LIFE_DAYS", "90"))
        self.chronic_threshold: float = float(os.getenv("CHRONIC_THRESHOLD", "0.5"))
        self.shortfall_threshold: float = float(os.getenv("SHORTFALL_THRESHOLD", "0.15"))
        self.staleness_hours: float = float(os.getenv("PROFILE_STALENESS_HOURS", "24"))
        self.risk_lookback_days: int = int(os.getenv("RISK_LOOKBACK_DAYS", "180"))
        self.probability_floor: float = float(os.getenv("RISK_PROBABILITY_FLOOR", "0.05"))
        self.severity_threshold: float = float(os.getenv("RECOMMENDATION_SEVERITY_THRESHOLD", "0.2"))
        self.max_recommendations: int = int(os.getenv("MAX_RECOMMENDATIONS", "5"))
        self.lock_ttl_seconds: int = int(os.getenv("USER_LOCK_TTL_SECONDS", "60"))
        self.lock_wait_seconds: float = float(os.getenv("USER_LOCK_WAIT_SECONDS", "10"))

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            min_evidence=self.min_evidence,
            half_life_days=self.half_life_days,
            chronic_threshold=self.chronic_threshold,
            shortfall_threshold=self.shortfall_threshold,
            staleness_hours=self.staleness_hours,
            risk_lookback_days=self.risk_lookback_days,
            probability_floor=self.probability_floor,
            severity_threshold=self.severity_threshold,
            max_recommendations=self.max_recommendations,
            lock_ttl_seconds=self.lock_ttl_seconds,
            lock_wait_seconds=self.lock_wait_seconds,
        )


settings = Settings()
