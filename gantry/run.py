"""Pipeline runs and their cancellation tokens."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import SecretStr

from .contracts import JobReport, JobState, RunStatus, TriggerContext
from .definition import WorkflowDefinition
from .expressions import EvaluationContext, render_value, to_string
from .scopes import as_secret_scope, base_namespaces
from .store import OutputStatusStore

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a run."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "run cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        for callback in list(self._callbacks):
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` on cancellation, immediately if already cancelled."""
        self._callbacks.append(callback)
        if self._cancelled:
            callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)


class PipelineRun:
    """One execution of a workflow for one triggering event.

    The trigger is immutable; the run owns the store holding every job's
    state and outputs.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        trigger: TriggerContext,
        secrets: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.run_id = run_id or str(uuid.uuid4())
        self.definition = definition
        self.trigger = trigger
        self.secrets: Dict[str, SecretStr] = as_secret_scope(secrets)
        self.store = OutputStatusStore(definition.job_ids)
        self.status = RunStatus.IN_PROGRESS
        self.outputs: Dict[str, str] = {}
        self.namespaces = base_namespaces(trigger, trigger.inputs)
        context = EvaluationContext(namespaces=dict(self.namespaces))
        env: Dict[str, str] = {}
        context.namespaces["env"] = env
        for key, value in definition.env.items():
            env[key] = to_string(render_value(value, context))
        self.env = env

    @classmethod
    def create(
        cls,
        definition: WorkflowDefinition,
        trigger: Optional[TriggerContext] = None,
        secrets: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> "PipelineRun":
        """Validate the trigger against the definition and create the run.

        Raises:
            InvalidTriggerInput: dispatch inputs or required secrets do not
                match what the workflow declares.
        """
        trigger = trigger or TriggerContext()
        inputs = definition.validate_inputs(trigger.inputs)
        definition.validate_secrets((secrets or {}).keys())
        trigger = trigger.model_copy(update={"inputs": inputs})
        return cls(definition, trigger, secrets=secrets, run_id=run_id)

    # ------------------------------------------------------------------
    def state(self, job_id: str) -> JobState:
        return self.store.state(job_id)

    def job_outputs(self, job_id: str) -> Mapping[str, str]:
        return self.store.outputs(job_id)

    @property
    def states(self) -> Dict[str, JobState]:
        return {job_id: self.store.state(job_id) for job_id in self.definition.job_ids}

    def history(self, job_id: str) -> List[JobState]:
        return [entry.state for entry in self.store.history(job_id)]

    def report(self) -> Dict[str, JobReport]:
        return self.store.snapshot()

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def conclude(self, cancelled: bool) -> RunStatus:
        """Derive the final status from job outcomes."""
        if cancelled:
            self.status = RunStatus.CANCELLED
        elif any(
            self.store.state(job.id) == JobState.FAILED and not job.continue_on_error
            for job in self.definition.jobs
        ):
            self.status = RunStatus.FAILED
        else:
            self.status = RunStatus.SUCCEEDED
        return self.status

    def trigger_record(self) -> Dict[str, Any]:
        return self.trigger.model_dump()

    def __repr__(self) -> str:
        return f"PipelineRun(run_id={self.run_id!r}, status={self.status.value!r})"
