"""Persistent run records using SQLite."""

import asyncio
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from .errors import FrameworkError
from .models import AutomationRun, RunStatus

logger = structlog.get_logger()


class RunStateStore:
    """Stores automation runs and their aggregated logs/output files."""

    def __init__(self, db_path: str = "./data/runs.db"):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS automation_runs (
                id TEXT PRIMARY KEY,
                automation_id TEXT NOT NULL,
                status TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                logs_json TEXT DEFAULT '[]',
                output_files_json TEXT DEFAULT '[]',
                error_message TEXT DEFAULT '',
                dropped_events INTEGER DEFAULT 0,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_runs_automation ON automation_runs(automation_id);
            CREATE INDEX IF NOT EXISTS idx_runs_status ON automation_runs(status);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise FrameworkError("run store is not initialized", retryable=False)
        return self._db

    async def update_run_progress(
        self, run_id: str, logs: list[dict[str, Any]], output_files: list[str]
    ) -> None:
        """Overwrite the aggregated logs and output files of a run."""
        async with self._lock:
            db = self._conn()
            await db.execute("""
                UPDATE automation_runs
                SET logs_json = ?, output_files_json = ?, updated_at = ?
                WHERE id = ?
            """, (json.dumps(logs), json.dumps(output_files), time.time(), run_id))
            await db.commit()

    async def save_run(self, run: AutomationRun) -> None:
        """Write the full run record, inserting it if needed."""
        async with self._lock:
            db = self._conn()
            await db.execute("""
                INSERT OR REPLACE INTO automation_runs
                (id, automation_id, status, start_time, end_time, logs_json,
                 output_files_json, error_message, dropped_events, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._row_values(run))
            await db.commit()
        logger.debug("run_saved", run_id=run.id, status=run.status.value)

    async def get_run(self, run_id: str) -> Optional[AutomationRun]:
        cursor = await self._conn().execute(
            "SELECT * FROM automation_runs WHERE id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def list_runs(self, automation_id: str, limit: int = 20) -> list[AutomationRun]:
        cursor = await self._conn().execute("""
            SELECT * FROM automation_runs
            WHERE automation_id = ?
            ORDER BY start_time DESC
            LIMIT ?
        """, (automation_id, limit))
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    @staticmethod
    def _row_values(run: AutomationRun) -> tuple:
        return (
            run.id,
            run.automation_id,
            run.status.value,
            run.start_time.isoformat() if run.start_time else None,
            run.end_time.isoformat() if run.end_time else None,
            json.dumps(run.logs),
            json.dumps(run.output_files),
            run.error_message,
            run.dropped_events,
            time.time(),
        )

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> AutomationRun:
        return AutomationRun(
            id=row["id"],
            automation_id=row["automation_id"],
            status=RunStatus(row["status"]),
            start_time=datetime.fromisoformat(row["start_time"]) if row["start_time"] else None,
            end_time=datetime.fromisoformat(row["end_time"]) if row["end_time"] else None,
            logs=json.loads(row["logs_json"] or "[]"),
            output_files=json.loads(row["output_files_json"] or "[]"),
            error_message=row["error_message"] or "",
            dropped_events=row["dropped_events"] or 0,
        )
