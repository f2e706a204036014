"""Secret and parameter propagation for job invocations.

A job sees exactly what its definition lists: the ``with:`` inputs, the
secrets it forwards, and the outputs of the jobs it ``needs``. Nothing from
the run's secret store is visible unless forwarded explicitly.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import SecretStr

from .constants import MASK
from .contracts import (
    CollaboratorInterface,
    InvocationRequest,
    JobSpec,
    JobState,
    TriggerContext,
)
from .errors import InvalidTriggerInput, InvocationError
from .expressions import EvaluationContext, render_value, to_string
from .store import OutputStatusStore

logger = logging.getLogger(__name__)


def as_secret_scope(secrets: Optional[Mapping[str, Any]]) -> Dict[str, SecretStr]:
    """Wrap raw secret values so they never show up in reprs or logs."""
    scope: Dict[str, SecretStr] = {}
    for name, value in (secrets or {}).items():
        if value is None:
            continue
        scope[str(name)] = value if isinstance(value, SecretStr) else SecretStr(str(value))
    return scope


def base_namespaces(
    trigger: TriggerContext, inputs: Mapping[str, Any]
) -> Dict[str, Any]:
    """Reference roots shared by every job of a run."""
    event = trigger.to_namespace()
    event["inputs"] = dict(inputs)
    return {
        "event": event,
        "event_name": trigger.event_name,
        "ref": trigger.ref,
        "ref_name": trigger.ref_name,
        "actor": trigger.actor,
        "inputs": dict(inputs),
    }


def needs_namespace(
    producers: Iterable[str], store: OutputStatusStore
) -> Dict[str, Dict[str, Any]]:
    """``needs.<job>.result`` / ``needs.<job>.outputs`` for the given producers."""
    view: Dict[str, Dict[str, Any]] = {}
    for producer in producers:
        view[producer] = {
            "result": _result_word(store.state(producer)),
            "outputs": dict(store.outputs(producer)),
        }
    return view


def _result_word(state: JobState) -> str:
    return {
        JobState.SUCCEEDED: "success",
        JobState.FAILED: "failure",
        JobState.SKIPPED: "skipped",
        JobState.CANCELLED: "cancelled",
    }.get(state, state.value)


def resolve_secrets(
    job: JobSpec, context: EvaluationContext, run_secrets: Mapping[str, SecretStr]
) -> Tuple[Dict[str, SecretStr], List[str]]:
    """Evaluate the job's forwarded secrets against the caller's store.

    Returns the scope and the names whose source resolved to nothing.
    """
    caller = EvaluationContext(
        namespaces={**context.namespaces, "secrets": dict(run_secrets)},
        success=context.success,
        failure=context.failure,
        cancelled=context.cancelled,
    )
    scope: Dict[str, SecretStr] = {}
    missing: List[str] = []
    for name, source in job.secrets.items():
        value = render_value(source, caller)
        if value is None or to_string(value) == "":
            missing.append(name)
            continue
        scope[name] = SecretStr(to_string(value))
    return scope, missing


def job_context(
    job: JobSpec,
    namespaces: Mapping[str, Any],
    workflow_env: Mapping[str, Any],
    store: OutputStatusStore,
    run_secrets: Mapping[str, SecretStr],
    cancelled: bool = False,
) -> EvaluationContext:
    """Build the evaluation context a job's expressions run against."""
    states = [store.state(producer) for producer in job.needs]
    context = EvaluationContext(
        namespaces={**namespaces, "needs": needs_namespace(job.needs, store)},
        success=all(state == JobState.SUCCEEDED for state in states),
        failure=any(state == JobState.FAILED for state in states),
        cancelled=cancelled,
    )
    env = dict(workflow_env)
    context.namespaces["env"] = env
    scope, _ = resolve_secrets(job, context, run_secrets)
    context.namespaces["secrets"] = scope
    for key, value in job.env.items():
        env[key] = to_string(render_value(value, context))
    return context


def build_invocation(
    job: JobSpec,
    run_id: str,
    context: EvaluationContext,
    run_secrets: Mapping[str, SecretStr],
    interface: Optional[CollaboratorInterface] = None,
) -> InvocationRequest:
    """Assemble the request for ``job``'s collaborator.

    Raises:
        InvocationError: a forwarded secret is unavailable, or the
            collaborator's interface requires an input or secret the job does
            not supply.
    """
    scope, missing = resolve_secrets(job, context, run_secrets)
    if missing:
        raise InvocationError(
            f"Job '{job.id}' forwards secrets that are not available: {sorted(missing)}"
        )

    inputs = {name: render_value(value, context) for name, value in job.inputs.items()}

    if interface is not None:
        absent = sorted(
            name
            for name, spec in interface.secrets.items()
            if spec.required and name not in scope
        )
        if absent:
            raise InvocationError(
                f"Job '{job.id}' does not forward required secrets: {absent}"
            )
        if interface.inputs:
            unexpected = sorted(set(inputs) - set(interface.inputs))
            if unexpected:
                raise InvocationError(
                    f"Job '{job.id}' passes undeclared inputs to '{job.uses}': {unexpected}"
                )
            coerced: Dict[str, Any] = {}
            for name, spec in interface.inputs.items():
                try:
                    coerced[name] = spec.resolve(inputs)
                except InvalidTriggerInput as exc:
                    raise InvocationError(f"Job '{job.id}': {exc}") from None
            inputs = coerced

    env = {key: to_string(value) for key, value in context.namespaces.get("env", {}).items()}
    request = InvocationRequest(
        run_id=run_id,
        job_id=job.id,
        uses=job.uses,
        inputs=inputs,
        secrets=scope,
        env=env,
    )
    logger.debug(
        f"Invocation for job {job.id}: inputs={mask_secrets(str(inputs), scope.values())}"
    )
    return request


def mask_secrets(text: str, secrets: Iterable[Any]) -> str:
    """Replace every secret value occurring in ``text`` with ``***``."""
    values = []
    for secret in secrets:
        value = secret.get_secret_value() if isinstance(secret, SecretStr) else str(secret)
        if value:
            values.append(value)
    # longest first so overlapping values are fully hidden
    for value in sorted(values, key=len, reverse=True):
        text = text.replace(value, MASK)
    return text
