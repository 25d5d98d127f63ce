"""Tabular sink — appends batches as rows of a SQLite table.

Each destination names a database (a file under ``base_path``) and a
table.  A batch is written in one transaction.  Rows are keyed by record
id with ``INSERT OR IGNORE``, so a batch retried after a partial failure
does not duplicate rows.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from pathlib import Path

from sinkrelay.core.errors import PermanentDeliveryError, TransientDeliveryError
from sinkrelay.models.batches import Batch
from sinkrelay.models.destinations import DestinationType, TabularConfig, load_destination_config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS {table} (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id     TEXT NOT NULL UNIQUE,
    execution_id  TEXT NOT NULL,
    batch_id      TEXT NOT NULL,
    enqueued_at   TEXT NOT NULL,
    payload_json  TEXT NOT NULL
);
"""

_INSERT_ROW = """
INSERT OR IGNORE INTO {table}
    (record_id, execution_id, batch_id, enqueued_at, payload_json)
VALUES (?, ?, ?, ?, ?)
"""


class TabularSink:
    """Writes batches into SQLite tables.

    Parameters
    ----------
    base_path:
        Directory holding one ``<database>.db`` file per database name.
        Defaults to ``.sinkrelay/tables``.
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        self._base = Path(base_path) if base_path else Path(".sinkrelay/tables")

    @property
    def sink_name(self) -> str:
        return "tabular"

    @property
    def destination_type(self) -> DestinationType:
        return DestinationType.TABULAR

    def database_path(self, database: str) -> Path:
        return self._base / f"{database}.db"

    def _connect(self, database: str) -> sqlite3.Connection:
        self._base.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.database_path(database)), timeout=5.0)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _write(self, config: TabularConfig, batch: Batch) -> None:
        rows = [
            (
                record.id,
                record.execution_id,
                batch.id,
                record.enqueued_at.isoformat(),
                json.dumps(record.payload, sort_keys=True),
            )
            for record in batch.records
        ]
        conn = self._connect(config.database)
        try:
            with conn:
                # Table name is validated against an identifier pattern.
                conn.execute(_CREATE_TABLE.format(table=config.table))
                conn.executemany(_INSERT_ROW.format(table=config.table), rows)
        finally:
            conn.close()

    async def deliver(self, batch: Batch) -> None:
        config = load_destination_config(TabularConfig, batch.destination_config)
        try:
            await asyncio.to_thread(self._write, config, batch)
        except sqlite3.OperationalError as exc:
            raise TransientDeliveryError(
                f"Writing {config.database}.{config.table} failed: {exc}"
            ) from exc
        except sqlite3.Error as exc:
            raise PermanentDeliveryError(
                f"Cannot write {config.database}.{config.table}: {exc}"
            ) from exc
        except OSError as exc:
            raise TransientDeliveryError(
                f"Writing {config.database}.{config.table} failed: {exc}"
            ) from exc
        logger.info(
            "TabularSink: appended %d row(s) to %s.%s", batch.size, config.database, config.table
        )

    def read_rows(self, database: str, table: str) -> list[dict]:
        """Return all rows of a table in insertion order."""
        if not table.isidentifier():
            raise ValueError(f"Invalid table name {table!r}")
        path = self.database_path(database)
        if not path.exists():
            return []
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(f"SELECT * FROM {table} ORDER BY id ASC").fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]
