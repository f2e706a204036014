"""In-memory implementation of the run repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict

from .models import RunInstance, TransitionRecord
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store run history in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunInstance] = {}
        self._record_id = 0

    # ------------------------------------------------------------------
    async def create_run(
        self, run_id: str, workflow_name: str | None, trigger: dict
    ) -> None:
        self._runs[run_id] = RunInstance(
            run_id=run_id,
            workflow_name=workflow_name,
            trigger=trigger,
            status="in_progress",
            started_at=datetime.now(timezone.utc),
            transitions=[],
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
        run = self._runs.get(run_id)
        if not run:
            return
        self._record_id += 1
        run.transitions.append(
            TransitionRecord(
                id=self._record_id,
                run_id=run_id,
                job_id=job_id,
                state=state,
                timestamp=timestamp,
                reason=reason,
                outputs=outputs,
            )
        )

    async def mark_run_completed(
        self, run_id: str, status: str, outputs: dict | None = None
    ) -> None:
        run = self._runs.get(run_id)
        if run:
            run.status = status
            run.outputs = outputs or {}
            run.completed_at = datetime.now(timezone.utc)

    async def get_run(self, run_id: str) -> RunInstance | None:
        return self._runs.get(run_id)

    async def list_runs(self) -> list[RunInstance]:
        return list(self._runs.values())
