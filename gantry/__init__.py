"""Gantry: dependency-ordered execution of CI/CD pipelines."""

from .collaborators import (
    CallableCollaborator,
    Collaborator,
    CollaboratorRegistry,
    StaticCollaborator,
    get_registry,
)
from .config import GantryConfig, load_config
from .contracts import (
    InvocationRequest,
    InvocationResult,
    JobState,
    RunStatus,
    TriggerContext,
)
from .definition import WorkflowDefinition, load_workflow, load_workflow_file
from .expressions import Expression, Template
from .graph import DependencyGraph
from .persistence import get_repository
from .run import CancellationToken, PipelineRun
from .scheduler import Scheduler

__version__ = "0.1.0"
__all__ = [
    "CallableCollaborator",
    "CancellationToken",
    "Collaborator",
    "CollaboratorRegistry",
    "DependencyGraph",
    "Expression",
    "GantryConfig",
    "InvocationRequest",
    "InvocationResult",
    "JobState",
    "PipelineRun",
    "RunStatus",
    "Scheduler",
    "StaticCollaborator",
    "Template",
    "TriggerContext",
    "WorkflowDefinition",
    "get_registry",
    "get_repository",
    "load_config",
    "load_workflow",
    "load_workflow_file",
]
