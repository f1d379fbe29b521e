"""Contracts the engine consumes from its storage collaborators."""
from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional, Protocol

from .data_models import FinancialEvent, Snapshot, SnapshotKind


class EventStore(Protocol):
    """Append-only per-user record of financial events."""

    def list_events(self, user_id: str, since: Optional[datetime] = None) -> List[FinancialEvent]:
        ...

    def append_event(self, event: FinancialEvent) -> str:
        """Idempotent on ``event.event_id``; returns the stored id."""
        ...


class ProfileStore(Protocol):
    """Timestamped snapshots keyed by user and kind; latest wins."""

    def get_latest(self, user_id: str, kind: SnapshotKind) -> Optional[Snapshot]:
        ...

    def put_snapshot(self, snapshot: Snapshot) -> None:
        ...

    def list_snapshots(self, user_id: str, kind: SnapshotKind, limit: int = 20) -> List[Snapshot]:
        ...

    def user_lock(self, user_id: str, ttl_seconds: int, wait_seconds: float) -> AbstractContextManager:
        """Per-user advisory lock held for the duration of the block."""
        ...
