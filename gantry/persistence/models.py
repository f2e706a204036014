"""Data models for the persisted run audit log."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class TransitionRecord(BaseModel):
    """One appended job state transition."""

    id: Optional[int] = None
    run_id: str
    job_id: str
    state: str
    timestamp: datetime
    reason: Optional[str] = None
    outputs: Optional[dict[str, Any]] = None


class RunInstance(BaseModel):
    """Persisted pipeline run data."""

    run_id: str
    workflow_name: Optional[str] = None
    trigger: dict[str, Any] = Field(default_factory=dict)
    status: str = "in_progress"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    outputs: dict[str, Any] | None = None
    transitions: list[TransitionRecord] = Field(default_factory=list)

    def job_states(self) -> dict[str, str]:
        """Latest recorded state of every job."""
        states: dict[str, str] = {}
        for record in self.transitions:
            states[record.job_id] = record.state
        return states
