"""
Reconcile History — append-only record of reconcile passes.

Every pass, committed or aborted, produces one PassRecord: which entity,
what phase it reached, what the aggregate Ready condition said, and when
the event loop was told to come back.

Queryable by entity, by blocking reason, and by recency.
"""

import sqlite3
import threading
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from designate_core.models.reconciler import ReconcileResult


class PassRecord(BaseModel):
    """One reconcile pass."""

    entity_key: str
    phase: Optional[str] = None
    ready_status: Optional[str] = None
    ready_reason: Optional[str] = None
    ready_message: Optional[str] = None
    blocked_by: Optional[str] = None
    committed: bool
    requeue: str
    requeue_after_seconds: Optional[float] = None
    steps: List[str] = []
    started_at: datetime
    duration_seconds: float

    @classmethod
    def from_result(cls, result: ReconcileResult) -> "PassRecord":
        ready = result.ready
        return cls(
            entity_key=result.entity_key,
            phase=result.phase.value if result.phase else None,
            ready_status=ready.status.value if ready else None,
            ready_reason=ready.reason if ready else None,
            ready_message=ready.message if ready else None,
            blocked_by=result.blocked_by.value if result.blocked_by else None,
            committed=result.committed,
            requeue=result.requeue.kind.value,
            requeue_after_seconds=result.requeue.after_seconds,
            steps=result.steps,
            started_at=result.started_at,
            duration_seconds=round(
                (result.finished_at - result.started_at).total_seconds(), 3
            ),
        )


class ReconcileHistory:
    """
    Append-only pass history.
    SQLite; ``:memory:`` by default.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the history table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS passes (
                entity_key TEXT NOT NULL,
                phase TEXT,
                ready_status TEXT,
                ready_reason TEXT,
                committed INTEGER NOT NULL DEFAULT 0,
                requeue TEXT NOT NULL,
                started_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_passes_entity ON passes(entity_key)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_passes_reason ON passes(ready_reason)
        """)
        self._conn.commit()

    def append(self, record: PassRecord) -> PassRecord:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO passes (
                    entity_key, phase, ready_status, ready_reason,
                    committed, requeue, started_at, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.entity_key,
                    record.phase,
                    record.ready_status,
                    record.ready_reason,
                    int(record.committed),
                    record.requeue,
                    record.started_at.isoformat(),
                    record.model_dump_json(),
                ),
            )
            self._conn.commit()
        return record

    def record(self, result: ReconcileResult) -> PassRecord:
        return self.append(PassRecord.from_result(result))

    def _deserialize(self, row: sqlite3.Row) -> PassRecord:
        return PassRecord.model_validate_json(row["record_json"])

    def query_by_entity(self, entity_key: str, limit: Optional[int] = None) -> List[PassRecord]:
        """Passes for one entity, oldest first."""
        sql = "SELECT record_json FROM passes WHERE entity_key = ? ORDER BY rowid DESC"
        params: tuple = (entity_key,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_by_reason(self, reason: str) -> List[PassRecord]:
        """Passes whose aggregate Ready carried this reason."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM passes WHERE ready_reason = ? ORDER BY rowid",
                (reason,),
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[PassRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM passes ORDER BY rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def latest(self, entity_key: str) -> Optional[PassRecord]:
        records = self.query_by_entity(entity_key, limit=1)
        return records[0] if records else None

    def count(self) -> int:
        """Total number of recorded passes."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) as cnt FROM passes").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
