"""Typed failures raised by the behavioral-finance engine."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class Stage(str, Enum):
    """Pipeline stage in which a failure happened."""

    READ_HISTORY = "read_history"
    UPDATE_PROFILE = "update_profile"
    PERSIST_SNAPSHOT = "persist_snapshot"
    ACQUIRE_LOCK = "acquire_lock"
    VALIDATE_INPUT = "validate_input"


class EngineError(Exception):
    """Base class for every engine failure; carries the failing stage."""

    def __init__(self, message: str, stage: Optional[Stage] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage is None:
            return message
        return f"[{self.stage.value}] {message}"


class ValidationError(EngineError):
    """Malformed required input. Surfaced to the caller, never retried."""

    def __init__(self, message: str):
        super().__init__(message, Stage.VALIDATE_INPUT)


class NotFoundError(EngineError):
    """No user or profile exists yet."""


class CollaboratorUnavailableError(EngineError):
    """Event store or profile store unreachable or timed out."""
