"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import RunInstance, TransitionRecord
from .repository import RunRepository


class SQLiteRunRepository(RunRepository):
    """Persist the run audit log using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT,
                trigger TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                outputs TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                job_id TEXT NOT NULL,
                state TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                reason TEXT,
                outputs TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_transitions_run ON job_transitions (run_id, job_id, timestamp)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _run_from_row(row: sqlite3.Row, transitions: list[TransitionRecord]) -> RunInstance:
        return RunInstance(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            trigger=json.loads(row["trigger"]),
            status=row["status"],
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            outputs=json.loads(row["outputs"]) if row["outputs"] else None,
            transitions=transitions,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(
        self, run_id: str, workflow_name: str | None, trigger: dict
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (run_id, workflow_name, trigger, status, started_at) VALUES (?, ?, ?, ?, ?)",
            run_id,
            workflow_name,
            json.dumps(trigger),
            "in_progress",
            datetime.now(timezone.utc).isoformat(),
        )

    async def record_transition(
        self,
        run_id: str,
        job_id: str,
        state: str,
        timestamp: datetime,
        reason: str | None = None,
        outputs: dict | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO job_transitions (run_id, job_id, state, timestamp, reason, outputs) VALUES (?, ?, ?, ?, ?, ?)",
            run_id,
            job_id,
            state,
            timestamp.isoformat(),
            reason,
            json.dumps(outputs) if outputs is not None else None,
        )

    async def mark_run_completed(
        self, run_id: str, status: str, outputs: dict | None = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = ?, completed_at = ?, outputs = ? WHERE run_id = ?",
            status,
            datetime.now(timezone.utc).isoformat(),
            json.dumps(outputs or {}),
            run_id,
        )

    async def get_run(self, run_id: str) -> RunInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT run_id, workflow_name, trigger, status, started_at, completed_at, outputs FROM runs WHERE run_id = ?",
            run_id,
        )
        if not row:
            return None
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, run_id, job_id, state, timestamp, reason, outputs FROM job_transitions WHERE run_id = ? ORDER BY id",
            run_id,
        )
        transitions = [
            TransitionRecord(
                id=r["id"],
                run_id=r["run_id"],
                job_id=r["job_id"],
                state=r["state"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
                reason=r["reason"],
                outputs=json.loads(r["outputs"]) if r["outputs"] else None,
            )
            for r in rows
        ]
        return self._run_from_row(row, transitions)

    async def list_runs(self) -> list[RunInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT run_id, workflow_name, trigger, status, started_at, completed_at, outputs FROM runs ORDER BY started_at",
        )
        return [self._run_from_row(row, []) for row in rows]
