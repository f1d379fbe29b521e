import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_exponential

from .data_models import EventKind, FinancialEvent, Snapshot, SnapshotKind, ensure_utc
from .errors import CollaboratorUnavailableError, Stage

DB_FILE = "nestegg.db"
logger = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    """Fixed-width UTC timestamp so lexical order equals time order."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_iso(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


class SQLiteStore:
    """SQLite-backed event store, snapshot store and per-user advisory locks."""

    def __init__(self, db_file: str = DB_FILE, timeout: float = 5.0):
        self.db_file = db_file
        self.timeout = timeout
        self.init_db()

    def get_db_connection(self) -> sqlite3.Connection:
        """Open a connection to the engine state database."""
        conn = sqlite3.connect(self.db_file, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, stage: Stage) -> Iterator[sqlite3.Connection]:
        """One committed-or-rolled-back unit of work; sqlite failures become typed errors."""
        try:
            conn = self.get_db_connection()
        except sqlite3.Error as exc:
            raise CollaboratorUnavailableError(f"Cannot open {self.db_file}: {exc}", stage) from exc
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as exc:
            logger.error("SQLite unavailable during %s: %s", stage.value, exc)
            raise CollaboratorUnavailableError(str(exc), stage) from exc
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create all required tables if they are absent."""
        with self._transaction(Stage.PERSIST_SNAPSHOT) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS financial_events (
                    event_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    goal_id TEXT,
                    expected_amount REAL,
                    actual_amount REAL,
                    reason_text TEXT,
                    structured_context TEXT,
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_user_time ON financial_events(user_id, timestamp)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    taken_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_snapshots_latest ON snapshots(user_id, kind, taken_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_locks (
                    user_id TEXT PRIMARY KEY,
                    holder_id TEXT NOT NULL,
                    locked_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
                """
            )
        logger.debug("Database %s initialized", self.db_file)

    # ============================================================
    # Event store
    # ============================================================

    @staticmethod
    def _insert_event(conn: sqlite3.Connection, event: FinancialEvent) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO financial_events
            (event_id, user_id, kind, timestamp, goal_id, expected_amount, actual_amount, reason_text, structured_context)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.user_id,
                event.kind.value,
                _iso(event.timestamp),
                event.goal_id,
                event.expected_amount,
                event.actual_amount,
                event.reason_text,
                json.dumps(event.structured_context or {}, sort_keys=True, default=str),
            ),
        )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> FinancialEvent:
        try:
            context = json.loads(row["structured_context"] or "{}")
        except json.JSONDecodeError:
            logger.warning("Failed to parse context for event %s", row["event_id"])
            context = {}
        return FinancialEvent(
            event_id=row["event_id"],
            user_id=row["user_id"],
            kind=EventKind(row["kind"]),
            timestamp=_parse_iso(row["timestamp"]),
            goal_id=row["goal_id"],
            expected_amount=row["expected_amount"],
            actual_amount=row["actual_amount"],
            reason_text=row["reason_text"],
            structured_context=context,
        )

    def append_event(self, event: FinancialEvent) -> str:
        event = event.with_id()
        with self._transaction(Stage.UPDATE_PROFILE) as conn:
            inserted = self._insert_event(conn, event)
        if inserted:
            logger.info("Appended %s event %s for user %s", event.kind.value, event.event_id, event.user_id)
        else:
            logger.info("Event %s already recorded for user %s", event.event_id, event.user_id)
        return event.event_id

    def append_events(self, events: Sequence[FinancialEvent]) -> List[str]:
        """Bulk append in one transaction (imports and fixtures)."""
        stored = [event.with_id() for event in events]
        with self._transaction(Stage.UPDATE_PROFILE) as conn:
            for event in stored:
                self._insert_event(conn, event)
        logger.info("Appended %d events", len(stored))
        return [event.event_id for event in stored]

    def list_events(self, user_id: str, since: Optional[datetime] = None) -> List[FinancialEvent]:
        query = "SELECT * FROM financial_events WHERE user_id = ?"
        params: List[Any] = [user_id]
        if since is not None:
            query += " AND timestamp >= ?"
            params.append(_iso(since))
        query += " ORDER BY timestamp, event_id"
        with self._transaction(Stage.READ_HISTORY) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    # ============================================================
    # Snapshot store
    # ============================================================

    @staticmethod
    def _insert_snapshot(conn: sqlite3.Connection, snapshot: Snapshot) -> None:
        conn.execute(
            "INSERT INTO snapshots (user_id, kind, taken_at, payload) VALUES (?, ?, ?, ?)",
            (snapshot.user_id, snapshot.kind.value, _iso(snapshot.taken_at), json.dumps(snapshot.payload)),
        )

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> Optional[Snapshot]:
        try:
            payload = json.loads(row["payload"])
        except json.JSONDecodeError:
            logger.warning("Failed to parse %s snapshot for user %s", row["kind"], row["user_id"])
            return None
        return Snapshot(
            user_id=row["user_id"],
            kind=SnapshotKind(row["kind"]),
            taken_at=_parse_iso(row["taken_at"]),
            payload=payload,
        )

    def put_snapshot(self, snapshot: Snapshot) -> None:
        with self._transaction(Stage.PERSIST_SNAPSHOT) as conn:
            self._insert_snapshot(conn, snapshot)
        logger.info("Saved %s snapshot for user %s at %s", snapshot.kind.value, snapshot.user_id, _iso(snapshot.taken_at))

    def get_latest(self, user_id: str, kind: SnapshotKind) -> Optional[Snapshot]:
        with self._transaction(Stage.READ_HISTORY) as conn:
            row = conn.execute(
                """
                SELECT user_id, kind, taken_at, payload
                FROM snapshots
                WHERE user_id = ? AND kind = ?
                ORDER BY taken_at DESC, id DESC
                LIMIT 1
                """,
                (user_id, kind.value),
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, user_id: str, kind: SnapshotKind, limit: int = 20) -> List[Snapshot]:
        with self._transaction(Stage.READ_HISTORY) as conn:
            rows = conn.execute(
                """
                SELECT user_id, kind, taken_at, payload
                FROM snapshots
                WHERE user_id = ? AND kind = ?
                ORDER BY taken_at DESC, id DESC
                LIMIT ?
                """,
                (user_id, kind.value, limit),
            ).fetchall()
        return [snapshot for snapshot in (self._row_to_snapshot(row) for row in rows) if snapshot]

    def commit_incident(self, event: FinancialEvent, snapshots: Sequence[Snapshot]) -> bool:
        """Record an incident and the snapshots derived from it atomically.

        Returns False without writing anything when the event is already
        stored, which makes replaying the whole update safe.
        """
        event = event.with_id()
        with self._transaction(Stage.UPDATE_PROFILE) as conn:
            if not self._insert_event(conn, event):
                logger.info("Incident %s already applied for user %s; skipping replay", event.event_id, event.user_id)
                return False
            for snapshot in snapshots:
                self._insert_snapshot(conn, snapshot)
        logger.info(
            "Committed incident %s with %d snapshots for user %s", event.event_id, len(snapshots), event.user_id
        )
        return True

    # ============================================================
    # Per-user advisory locks
    # ============================================================

    def acquire_user_lock(self, user_id: str, holder_id: str, ttl_seconds: int = 60) -> bool:
        """
        Try to take the lock for a user.

        An expired lock is taken over; a live lock held by someone else is not.
        Returns True when ``holder_id`` owns the lock afterwards.
        """
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._transaction(Stage.ACQUIRE_LOCK) as conn:
            conn.execute(
                """
                INSERT INTO user_locks (user_id, holder_id, locked_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    holder_id = excluded.holder_id,
                    locked_at = excluded.locked_at,
                    expires_at = excluded.expires_at
                WHERE user_locks.expires_at <= excluded.locked_at
                """,
                (user_id, holder_id, _iso(now), _iso(expires_at)),
            )
            row = conn.execute("SELECT holder_id FROM user_locks WHERE user_id = ?", (user_id,)).fetchone()
        acquired = row is not None and row["holder_id"] == holder_id
        if acquired:
            logger.debug("Acquired lock for user %s (holder=%s, expires=%s)", user_id, holder_id, _iso(expires_at))
        else:
            logger.debug("Lock for user %s is held by %s", user_id, row["holder_id"] if row else None)
        return acquired

    def release_user_lock(self, user_id: str, holder_id: Optional[str] = None) -> None:
        """Release the user's lock; with ``holder_id`` only if that holder owns it."""
        with self._transaction(Stage.ACQUIRE_LOCK) as conn:
            if holder_id is None:
                cursor = conn.execute("DELETE FROM user_locks WHERE user_id = ?", (user_id,))
            else:
                cursor = conn.execute(
                    "DELETE FROM user_locks WHERE user_id = ? AND holder_id = ?",
                    (user_id, holder_id),
                )
        if cursor.rowcount > 0:
            logger.debug("Released lock for user %s", user_id)

    def get_user_lock(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Current live lock for the user, or None if absent or expired."""
        with self._transaction(Stage.ACQUIRE_LOCK) as conn:
            row = conn.execute(
                """
                SELECT user_id, holder_id, locked_at, expires_at
                FROM user_locks
                WHERE user_id = ? AND expires_at > ?
                """,
                (user_id, _iso(datetime.now(timezone.utc))),
            ).fetchone()
        return dict(row) if row else None

    def is_user_locked(self, user_id: str) -> bool:
        return self.get_user_lock(user_id) is not None

    @contextmanager
    def user_lock(self, user_id: str, ttl_seconds: int = 60, wait_seconds: float = 10.0) -> Iterator[str]:
        """Hold the user's lock for the block, polling with backoff until ``wait_seconds``."""
        holder_id = str(uuid.uuid4())
        retrying = Retrying(
            stop=stop_after_delay(wait_seconds),
            wait=wait_exponential(multiplier=0.02, max=0.5),
            retry=retry_if_result(lambda acquired: not acquired),
        )
        try:
            retrying(self.acquire_user_lock, user_id, holder_id, ttl_seconds)
        except RetryError as exc:
            raise CollaboratorUnavailableError(
                f"Timed out after {wait_seconds}s waiting for lock on user {user_id}", Stage.ACQUIRE_LOCK
            ) from exc
        try:
            yield holder_id
        finally:
            self.release_user_lock(user_id, holder_id)
