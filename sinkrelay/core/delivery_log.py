"""Append-only delivery log backed by SQLite.

Failed deliveries never fail the workflow that produced them; this log is
where they show up.  One row is written per batch that reaches a terminal
outcome.

Design:
- Append-only: ``append()`` is the only write method.
- WAL journal mode for concurrent readers (the CLI reads while a service writes).
- One connection per call, so the log can be used from worker threads.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from sinkrelay.models.batches import BatchState
from sinkrelay.models.outcomes import DeliveryLogEntry, DeliveryLogQuery


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LOG = """
CREATE TABLE IF NOT EXISTS delivery_log (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id         TEXT NOT NULL UNIQUE,
    batch_id         TEXT NOT NULL,
    destination_key  TEXT NOT NULL,
    outcome          TEXT NOT NULL,
    attempts         INTEGER NOT NULL,
    last_error       TEXT NOT NULL DEFAULT '',
    recorded_at      TEXT NOT NULL
);
"""

_CREATE_IDX_KEY = """
CREATE INDEX IF NOT EXISTS idx_destination_key ON delivery_log(destination_key, id);
"""

_CREATE_IDX_OUTCOME = """
CREATE INDEX IF NOT EXISTS idx_outcome ON delivery_log(outcome, id);
"""


class DeliveryLog:
    """Append-only record of terminal delivery outcomes.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LOG)
            conn.execute(_CREATE_IDX_KEY)
            conn.execute(_CREATE_IDX_OUTCOME)
            conn.commit()

    # ------------------------------------------------------------------
    # Append-only write
    # ------------------------------------------------------------------

    def append(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        """Persist *entry*.  This is the only write method."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO delivery_log
                    (entry_id, batch_id, destination_key, outcome, attempts,
                     last_error, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.batch_id,
                    entry.destination_key,
                    entry.outcome.value,
                    entry.attempts,
                    entry.last_error,
                    entry.recorded_at.isoformat(),
                ),
            )
            conn.commit()
        return entry

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def query(self, query: DeliveryLogQuery | None = None) -> list[DeliveryLogEntry]:
        """Return the most recent entries matching *query*, newest first."""
        query = query or DeliveryLogQuery()
        clauses: list[str] = []
        params: list[object] = []
        if query.destination_key:
            clauses.append("destination_key = ?")
            params.append(query.destination_key)
        if query.outcome:
            clauses.append("outcome = ?")
            params.append(query.outcome.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(query.limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM delivery_log {where} ORDER BY id DESC LIMIT ?",
                params,
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_batch(self, batch_id: str) -> DeliveryLogEntry | None:
        """Return the outcome recorded for a batch, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM delivery_log WHERE batch_id = ? ORDER BY id DESC LIMIT 1",
                (batch_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def count_by_outcome(self) -> dict[BatchState, int]:
        """Return the number of entries per outcome."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT outcome, COUNT(*) FROM delivery_log GROUP BY outcome"
            ).fetchall()
        return {BatchState(outcome): count for outcome, count in rows}

    @staticmethod
    def _row_to_entry(row: tuple) -> DeliveryLogEntry:
        (
            _id,
            entry_id,
            batch_id,
            destination_key,
            outcome,
            attempts,
            last_error,
            recorded_at,
        ) = row
        return DeliveryLogEntry(
            entry_id=entry_id,
            batch_id=batch_id,
            destination_key=destination_key,
            outcome=BatchState(outcome),
            attempts=attempts,
            last_error=last_error,
            recorded_at=datetime.fromisoformat(recorded_at),
        )
