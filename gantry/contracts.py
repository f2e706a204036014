"""Core data contracts for gantry pipelines."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .errors import InvalidTriggerInput
from .expressions import Expression


class JobState(str, Enum):
    """Run-time state of a job. States only ever move forward."""

    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.PENDING: frozenset(
        {JobState.BLOCKED, JobState.READY, JobState.SKIPPED, JobState.CANCELLED}
    ),
    JobState.BLOCKED: frozenset({JobState.READY, JobState.SKIPPED, JobState.CANCELLED}),
    JobState.READY: frozenset(
        {JobState.RUNNING, JobState.SKIPPED, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.SKIPPED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class RunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConditionMode(str, Enum):
    """How a job's gate treats the outcome of its predecessors.

    ``ON_SUCCESS`` skips the job unless every predecessor succeeded, then
    evaluates ``if:``. ``ALWAYS`` evaluates ``if:`` whatever happened upstream.
    ``EXPRESSION`` lets status functions in ``if:`` decide on their own.
    """

    ON_SUCCESS = "on_success"
    ALWAYS = "always"
    EXPRESSION = "expression"


class InputType(str, Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    CHOICE = "choice"
    NUMBER = "number"


_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0"}


class InputSpec(BaseModel):
    """Declared input of a trigger or collaborator."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: InputType = InputType.STRING
    required: bool = False
    default: Any = None
    options: Tuple[str, ...] = ()
    description: Optional[str] = None

    def coerce(self, value: Any) -> Any:
        """Coerce ``value`` to this input's type or raise ``InvalidTriggerInput``."""
        if self.type == InputType.BOOLEAN:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_WORDS:
                return True
            if text in _FALSE_WORDS:
                return False
            raise InvalidTriggerInput(
                f"Input '{self.name}' expects a boolean, got {value!r}"
            )
        if self.type == InputType.NUMBER:
            if isinstance(value, bool):
                raise InvalidTriggerInput(
                    f"Input '{self.name}' expects a number, got {value!r}"
                )
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise InvalidTriggerInput(
                    f"Input '{self.name}' expects a number, got {value!r}"
                ) from None
            return str(int(number)) if number.is_integer() else str(number)
        text = value if isinstance(value, str) else str(value)
        if self.type == InputType.CHOICE and text not in self.options:
            raise InvalidTriggerInput(
                f"Input '{self.name}' must be one of {list(self.options)}, got {text!r}"
            )
        return text

    def resolve(self, payload: Dict[str, Any]) -> Any:
        """Return the coerced value for this input from ``payload``."""
        if self.name in payload and payload[self.name] is not None:
            return self.coerce(payload[self.name])
        if self.default is not None:
            return self.coerce(self.default)
        if self.required:
            raise InvalidTriggerInput(f"Missing required input '{self.name}'")
        return False if self.type == InputType.BOOLEAN else None


class SecretSpec(BaseModel):
    """Declared secret of a reusable workflow or collaborator."""

    model_config = ConfigDict(frozen=True)

    name: str
    required: bool = True
    description: Optional[str] = None


class CollaboratorInterface(BaseModel):
    """Inputs and secrets a collaborator expects from a job."""

    inputs: Dict[str, InputSpec] = Field(default_factory=dict)
    secrets: Dict[str, SecretSpec] = Field(default_factory=dict)


class JobSpec(BaseModel):
    """Static definition of one job, as declared in the workflow document."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    index: int = 0
    uses: str
    name: Optional[str] = None
    needs: Tuple[str, ...] = ()
    inputs: Dict[str, Any] = Field(default_factory=dict)
    secrets: Dict[str, Any] = Field(default_factory=dict)
    env: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[Expression] = None
    mode: ConditionMode = ConditionMode.ON_SUCCESS
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class TriggerContext(BaseModel):
    """Immutable description of the event that started a run."""

    model_config = ConfigDict(frozen=True)

    event_name: str = "workflow_dispatch"
    ref: str = ""
    actor: str = ""
    inputs: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/", "refs/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix) :]
        return self.ref

    def to_namespace(self) -> Dict[str, Any]:
        return {
            "name": self.event_name,
            "ref": self.ref,
            "ref_name": self.ref_name,
            "actor": self.actor,
            "inputs": dict(self.inputs),
        }


class InvocationRequest(BaseModel):
    """What a collaborator receives when a job runs."""

    run_id: str
    job_id: str
    uses: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    secrets: Dict[str, SecretStr] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)


class InvocationResult(BaseModel):
    """What a collaborator reports back when its work is done."""

    status: Literal["succeeded", "failed"] = "succeeded"
    outputs: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None

    @classmethod
    def succeeded(cls, outputs: Optional[Dict[str, Any]] = None) -> "InvocationResult":
        return cls(status="succeeded", outputs=outputs or {})

    @classmethod
    def failed(cls, message: str, outputs: Optional[Dict[str, Any]] = None) -> "InvocationResult":
        return cls(status="failed", message=message, outputs=outputs or {})

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"


class Transition(BaseModel):
    """One entry of a job's state history."""

    job_id: str
    state: JobState
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None


class JobReport(BaseModel):
    """Final view of one job, used for reporting."""

    job_id: str
    state: JobState
    outputs: Dict[str, str] = Field(default_factory=dict)
    reason: Optional[str] = None
    history: List[JobState] = Field(default_factory=list)
