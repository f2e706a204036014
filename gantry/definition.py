"""Parse and validate workflow documents."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .contracts import (
    ConditionMode,
    InputSpec,
    InputType,
    JobSpec,
    SecretSpec,
)
from .errors import (
    DefinitionError,
    DuplicateJobError,
    ExpressionSyntaxError,
    InvalidTriggerInput,
)
from .expressions import (
    STATUS_FUNCTIONS,
    Expression,
    Reference,
    Template,
    compile_value,
    iter_templates,
)
from .graph import DependencyGraph

logger = logging.getLogger(__name__)

INPUT_EVENTS = ("workflow_dispatch", "workflow_call")


class _Mapping(dict):
    """Decoded YAML mapping that remembers keys declared more than once."""

    def __init__(self) -> None:
        super().__init__()
        self.duplicate_keys: List[Tuple[Any, int]] = []


class _DuplicateAwareLoader(yaml.SafeLoader):
    """SafeLoader whose mappings record duplicate keys instead of overwriting."""


def _construct_mapping(loader: _DuplicateAwareLoader, node: yaml.MappingNode) -> _Mapping:
    loader.flatten_mapping(node)
    mapping = _Mapping()
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=True)
        if key in mapping:
            mapping.duplicate_keys.append((key, key_node.start_mark.line + 1))
            continue
        mapping[key] = loader.construct_object(value_node, deep=True)
    return mapping


_DuplicateAwareLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping
)


def _reject_duplicates(value: Any, where: str) -> None:
    if isinstance(value, _Mapping):
        if value.duplicate_keys:
            key, line = value.duplicate_keys[0]
            raise DefinitionError(f"Duplicate key {key!r} in '{where}' on line {line}")
        for key, item in value.items():
            _reject_duplicates(item, f"{where}.{key}")
    elif isinstance(value, list):
        for position, item in enumerate(value):
            _reject_duplicates(item, f"{where}[{position}]")


class WorkflowDefinition(BaseModel):
    """Immutable, validated view of a workflow document."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: Optional[str] = None
    events: Tuple[str, ...] = ()
    inputs: Dict[str, InputSpec] = Field(default_factory=dict)
    secrets: Dict[str, SecretSpec] = Field(default_factory=dict)
    env: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    jobs: Tuple[JobSpec, ...] = ()
    graph: DependencyGraph

    @property
    def job_ids(self) -> List[str]:
        return [job.id for job in self.jobs]

    def job(self, job_id: str) -> JobSpec:
        for job in self.jobs:
            if job.id == job_id:
                return job
        raise KeyError(job_id)

    def validate_inputs(self, payload: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Coerce dispatch inputs against the declared schema.

        Raises:
            InvalidTriggerInput: unknown input, missing required input, bad
                boolean/number, or a choice outside its options.
        """
        payload = dict(payload or {})
        unknown = sorted(set(payload) - set(self.inputs))
        if unknown:
            raise InvalidTriggerInput(f"Unknown inputs: {unknown}")
        return {name: spec.resolve(payload) for name, spec in self.inputs.items()}

    def validate_secrets(self, available: Iterable[str]) -> None:
        """Check that every required ``workflow_call`` secret was supplied."""
        available = set(available)
        missing = sorted(
            name for name, spec in self.secrets.items() if spec.required and name not in available
        )
        if missing:
            raise InvalidTriggerInput(f"Missing required secrets: {missing}")


# ---------------------------------------------------------------------------
# Loading


def load_workflow(text: str) -> WorkflowDefinition:
    """Parse a YAML document into a :class:`WorkflowDefinition`."""
    try:
        data = yaml.load(text, Loader=_DuplicateAwareLoader)
    except yaml.YAMLError as exc:
        raise DefinitionError(f"Invalid YAML: {exc}") from exc
    if data is None:
        raise DefinitionError("Empty workflow document")
    if not isinstance(data, Mapping):
        raise DefinitionError("Workflow document must be a mapping")
    jobs = data.get("jobs")
    if isinstance(jobs, _Mapping) and jobs.duplicate_keys:
        raise DuplicateJobError(str(jobs.duplicate_keys[0][0]))
    _reject_duplicates(data, "workflow")
    return parse_workflow(data)


def load_workflow_file(path: str | Path) -> WorkflowDefinition:
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {path}")
    return load_workflow(file_path.read_text(encoding="utf-8"))


def parse_workflow(data: Mapping[str, Any]) -> WorkflowDefinition:
    """Validate an already-decoded document."""
    # YAML 1.1 reads a bare ``on`` key as boolean true
    triggers = data.get("on", data.get(True))
    events, inputs, secrets, raw_outputs = _parse_triggers(triggers)

    raw_jobs = data.get("jobs")
    if not isinstance(raw_jobs, Mapping) or not raw_jobs:
        raise DefinitionError("Workflow must declare at least one job under 'jobs'")

    env = _compile(_mapping(data.get("env"), "env"), "env")

    jobs: List[JobSpec] = []
    for index, (job_id, raw) in enumerate(raw_jobs.items()):
        jobs.append(_parse_job(str(job_id), index, raw))

    graph = DependencyGraph.from_jobs(jobs)
    for job in jobs:
        _check_references(job)

    outputs: Dict[str, Any] = {}
    for name, raw in raw_outputs.items():
        value = raw.get("value") if isinstance(raw, Mapping) else raw
        if value is None:
            raise DefinitionError(f"Workflow output '{name}' has no value")
        outputs[str(name)] = _compile(value, f"outputs.{name}")

    definition = WorkflowDefinition(
        name=data.get("name"),
        events=events,
        inputs=inputs,
        secrets=secrets,
        env=env,
        outputs=outputs,
        jobs=tuple(jobs),
        graph=graph,
    )
    logger.debug(
        f"Parsed workflow {definition.name!r} with jobs {graph.topological_order()}"
    )
    return definition


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise DefinitionError(f"'{where}' must be a mapping")
    return {str(key): item for key, item in value.items()}


def _compile(value: Any, where: str) -> Any:
    try:
        return compile_value(value)
    except ExpressionSyntaxError as exc:
        raise ExpressionSyntaxError(exc.expression, f"{exc.reason} (in {where})", exc.position) from exc


def _parse_triggers(
    triggers: Any,
) -> Tuple[Tuple[str, ...], Dict[str, InputSpec], Dict[str, SecretSpec], Dict[str, Any]]:
    if triggers is None:
        return ("workflow_dispatch",), {}, {}, {}
    if isinstance(triggers, str):
        return (triggers,), {}, {}, {}
    if isinstance(triggers, list):
        return tuple(str(event) for event in triggers), {}, {}, {}
    if not isinstance(triggers, Mapping):
        raise DefinitionError("'on' must be a string, list or mapping")

    inputs: Dict[str, InputSpec] = {}
    secrets: Dict[str, SecretSpec] = {}
    outputs: Dict[str, Any] = {}
    for event in INPUT_EVENTS:
        config = triggers.get(event) or {}
        if not isinstance(config, Mapping):
            raise DefinitionError(f"'on.{event}' must be a mapping")
        for name, raw in _mapping(config.get("inputs"), f"on.{event}.inputs").items():
            inputs[name] = _parse_input(name, raw or {})
        if event == "workflow_call":
            for name, raw in _mapping(config.get("secrets"), "on.workflow_call.secrets").items():
                if not name.strip():
                    raise DefinitionError("Secret declared without a name")
                raw = raw or {}
                secrets[name] = SecretSpec(
                    name=name,
                    required=bool(raw.get("required", False)),
                    description=raw.get("description"),
                )
            outputs = _mapping(config.get("outputs"), "on.workflow_call.outputs")
    return tuple(str(event) for event in triggers), inputs, secrets, outputs


def _parse_input(name: str, raw: Mapping[str, Any]) -> InputSpec:
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Input '{name}' must be a mapping")
    try:
        input_type = InputType(str(raw.get("type", "string")))
    except ValueError:
        raise DefinitionError(
            f"Input '{name}' has unsupported type {raw.get('type')!r}"
        ) from None
    options = tuple(str(option) for option in raw.get("options") or ())
    if input_type == InputType.CHOICE and not options:
        raise DefinitionError(f"Choice input '{name}' declares no options")
    spec = InputSpec(
        name=name,
        type=input_type,
        required=bool(raw.get("required", False)),
        default=raw.get("default"),
        options=options,
        description=raw.get("description"),
    )
    if spec.default is not None:
        try:
            spec.coerce(spec.default)
        except InvalidTriggerInput as exc:
            raise DefinitionError(f"Invalid default for input '{name}': {exc}") from None
    return spec


def _parse_needs(job_id: str, raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if isinstance(raw, list) and all(isinstance(item, str) for item in raw):
        return tuple(raw)
    raise DefinitionError(f"Job '{job_id}': 'needs' must be a string or list of strings")


def _parse_secrets(job_id: str, raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, list):
        forwarded: Dict[str, Any] = {}
        for name in raw:
            if not isinstance(name, str) or not name.strip():
                raise DefinitionError(f"Job '{job_id}' references a secret with no name")
            forwarded[name] = Template.parse("${{ secrets." + name + " }}")
        return forwarded
    if isinstance(raw, Mapping):
        forwarded = {}
        for name, value in raw.items():
            if not isinstance(name, str) or not name.strip():
                raise DefinitionError(f"Job '{job_id}' references a secret with no name")
            forwarded[name] = _compile(value, f"jobs.{job_id}.secrets.{name}")
        return forwarded
    raise DefinitionError(f"Job '{job_id}': 'secrets' must be a list or mapping")


def _condition_mode(expression: Optional[Expression], when: Any, job_id: str) -> ConditionMode:
    if when is not None:
        try:
            return ConditionMode(str(when).replace("-", "_"))
        except ValueError:
            raise DefinitionError(
                f"Job '{job_id}': unsupported 'when' value {when!r}"
            ) from None
    if expression is None:
        return ConditionMode.ON_SUCCESS
    functions = expression.function_names() & STATUS_FUNCTIONS
    if "always" in functions:
        return ConditionMode.ALWAYS
    if functions:
        return ConditionMode.EXPRESSION
    return ConditionMode.ON_SUCCESS


def _parse_job(job_id: str, index: int, raw: Any) -> JobSpec:
    if not job_id.strip():
        raise DefinitionError("Job declared without an identifier")
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Job '{job_id}' must be a mapping")
    uses = raw.get("uses")
    if not isinstance(uses, str) or not uses.strip():
        raise DefinitionError(f"Job '{job_id}' must declare what it 'uses'")

    condition: Optional[Expression] = None
    if raw.get("if") is not None:
        try:
            condition = Expression.parse(raw["if"])
        except ExpressionSyntaxError as exc:
            raise ExpressionSyntaxError(
                exc.expression, f"{exc.reason} (in jobs.{job_id}.if)", exc.position
            ) from exc

    timeout = raw.get("timeout-minutes")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise DefinitionError(f"Job '{job_id}': 'timeout-minutes' must be a positive number")

    return JobSpec(
        id=job_id,
        index=index,
        uses=uses.strip(),
        name=raw.get("name"),
        needs=_parse_needs(job_id, raw.get("needs")),
        inputs=_compile(_mapping(raw.get("with"), f"jobs.{job_id}.with"), f"jobs.{job_id}.with"),
        secrets=_parse_secrets(job_id, raw.get("secrets")),
        env=_compile(_mapping(raw.get("env"), f"jobs.{job_id}.env"), f"jobs.{job_id}.env"),
        outputs=_compile(
            _mapping(raw.get("outputs"), f"jobs.{job_id}.outputs"), f"jobs.{job_id}.outputs"
        ),
        condition=condition,
        mode=_condition_mode(condition, raw.get("when"), job_id),
        continue_on_error=bool(raw.get("continue-on-error", False)),
        timeout_minutes=timeout,
    )


def _job_expressions(job: JobSpec) -> Iterable[Expression]:
    if job.condition is not None:
        yield job.condition
    for value in (job.inputs, job.env, job.outputs, job.secrets):
        for template in iter_templates(value):
            yield from template.expressions()


def _check_references(job: JobSpec) -> None:
    for expression in _job_expressions(job):
        for reference in expression.references():
            _check_reference(job, expression, reference)


def _check_reference(job: JobSpec, expression: Expression, reference: Reference) -> None:
    root = reference.path[0]
    if root == "needs":
        if len(reference.path) < 2:
            raise DefinitionError(
                f"Job '{job.id}': '{expression.source}' must name a job after 'needs'"
            )
        producer = reference.path[1]
        if producer not in job.needs:
            raise DefinitionError(
                f"Job '{job.id}' reads 'needs.{producer}' but does not list "
                f"'{producer}' in its needs"
            )
    elif root == "secrets":
        if len(reference.path) < 2 or not reference.path[1].strip():
            raise DefinitionError(
                f"Job '{job.id}' references a secret with no name in '{expression.source}'"
            )
