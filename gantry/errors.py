"""Exception hierarchy for gantry pipelines."""

from __future__ import annotations

from typing import List, Optional


class GantryError(Exception):
    """Base class for every error raised by gantry."""


class DefinitionError(GantryError):
    """The workflow document is invalid. Raised before any job runs."""


class DuplicateJobError(DefinitionError):
    """Two jobs share the same identifier."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Duplicate job identifier: '{job_id}'")
        self.job_id = job_id


class UnknownJobReference(DefinitionError):
    """A job refers to a job that is not declared."""

    def __init__(self, job_id: str, reference: str, known: Optional[List[str]] = None) -> None:
        message = f"Job '{job_id}' needs unknown job '{reference}'"
        if known is not None:
            message += f". Known jobs: {sorted(known)}"
        super().__init__(message)
        self.job_id = job_id
        self.reference = reference


class SelfDependency(DefinitionError):
    """A job lists itself in ``needs``."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' cannot depend on itself")
        self.job_id = job_id


class CycleError(DefinitionError):
    """The ``needs`` relation contains a cycle."""

    def __init__(self, cycle: List[str]) -> None:
        path = " -> ".join(cycle + cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}")
        self.cycle = cycle


class ExpressionSyntaxError(DefinitionError):
    """An expression could not be parsed."""

    def __init__(self, expression: str, message: str, position: Optional[int] = None) -> None:
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid expression {expression!r}{where}: {message}")
        self.expression = expression
        self.reason = message
        self.position = position


class InvalidTriggerInput(GantryError):
    """Dispatch inputs do not match the declared input schema."""


class InvocationError(GantryError):
    """A job cannot be invoked because its caller configuration is incomplete."""


class UnknownCollaborator(InvocationError):
    """No collaborator is registered under the name a job ``uses``."""

    def __init__(self, name: str) -> None:
        super().__init__(f"No collaborator registered for '{name}'")
        self.name = name


class ExpressionEvaluationError(GantryError):
    """An expression failed at runtime for a reason other than a missing value."""


class ContractViolation(GantryError):
    """Internal invariant broken: illegal state transition or premature read."""
