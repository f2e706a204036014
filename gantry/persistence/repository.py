"""Repository abstraction for the run audit log."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .models import RunInstance


class RunRepository(Protocol):
    """Protocol for append-only run persistence backends.

    Records are keyed by (run id, job id, timestamp) and never rewritten.
    """

    async def create_run(
        self, run_id: str, workflow_name: str | None, trigger: dict
    ) -> None:
        """Persist the start of a run."""

    async def record_transition(
        self,
        run_id: str,
        job_id: str,
        state: str,
        timestamp: datetime,
        reason: str | None = None,
        outputs: dict | None = None,
    ) -> None:
        """Append one job state transition."""

    async def mark_run_completed(
        self, run_id: str, status: str, outputs: dict | None = None
    ) -> None:
        """Mark the run as finished."""

    async def get_run(self, run_id: str) -> RunInstance | None:
        """Retrieve the run by id."""

    async def list_runs(self) -> list[RunInstance]:
        """Return all persisted runs."""
