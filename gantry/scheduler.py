"""Event-driven executor for pipeline runs."""

from __future__ import annotations

import asyncio
import heapq
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .collaborators import Collaborator, CollaboratorRegistry, get_registry
from .config import GantryConfig, load_config
from .constants import DEFAULT_CANCEL_GRACE_PERIOD, DEFAULT_MAX_CONCURRENCY
from .contracts import (
    ConditionMode,
    InvocationRequest,
    InvocationResult,
    JobSpec,
    JobState,
    TriggerContext,
)
from .definition import WorkflowDefinition
from .errors import ExpressionEvaluationError, InvocationError
from .expressions import EvaluationContext, render_value, to_string
from .persistence import RunRepository, get_repository
from .run import CancellationToken, PipelineRun
from .scopes import build_invocation, job_context, mask_secrets, needs_namespace

logger = logging.getLogger(__name__)

# completion events posted by worker tasks and cancellation
_DONE = "done"
_TIMED_OUT = "timed_out"
_STOPPED = "stopped"
_CANCEL_RUN = "cancel_run"

_EVALUATION_ERRORS = (ExpressionEvaluationError, TypeError, ValueError)


@dataclass
class _RunningJob:
    job: JobSpec
    collaborator: Collaborator
    request: InvocationRequest
    task: asyncio.Task
    cancelling: bool = False


class Scheduler:
    """Executes workflow definitions against a collaborator registry.

    A scheduler holds no per-run state, so one instance can drive several
    runs concurrently.
    """

    def __init__(
        self,
        registry: CollaboratorRegistry,
        repository: RunRepository | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        cancel_grace_period: float = DEFAULT_CANCEL_GRACE_PERIOD,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.registry = registry
        self.repository = repository or get_repository()
        self.max_concurrency = max_concurrency
        self.cancel_grace_period = cancel_grace_period

    @classmethod
    def from_config(
        cls,
        config: Optional[GantryConfig] = None,
        registry: Optional[CollaboratorRegistry] = None,
        repository: RunRepository | None = None,
    ) -> "Scheduler":
        config = config or load_config()
        return cls(
            registry or get_registry(config),
            repository or get_repository(config=config),
            max_concurrency=config.scheduler.max_concurrency,
            cancel_grace_period=config.scheduler.cancel_grace_period,
        )

    async def run(
        self,
        definition: WorkflowDefinition,
        trigger: Optional[TriggerContext] = None,
        secrets: Optional[Mapping[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        """Create a run for ``trigger`` and execute it to completion.

        Raises:
            InvalidTriggerInput: the trigger does not match the workflow's
                declared inputs or secrets. No run is created.
        """
        pipeline_run = PipelineRun.create(definition, trigger, secrets=secrets, run_id=run_id)
        return await self.execute(pipeline_run, cancel_token)

    async def execute(
        self, pipeline_run: PipelineRun, cancel_token: Optional[CancellationToken] = None
    ) -> PipelineRun:
        execution = _Execution(self, pipeline_run, cancel_token or CancellationToken())
        return await execution.start()


class _Execution:
    """State of one run while the scheduler drives it.

    All transitions happen in :meth:`start`'s coroutine. Worker tasks only
    post completion events to ``self.events``.
    """

    def __init__(
        self, scheduler: Scheduler, pipeline_run: PipelineRun, token: CancellationToken
    ) -> None:
        self.scheduler = scheduler
        self.run = pipeline_run
        self.definition = pipeline_run.definition
        self.store = pipeline_run.store
        self.token = token
        self.events: asyncio.Queue = asyncio.Queue()
        self.slots = asyncio.Semaphore(scheduler.max_concurrency)
        self.ready: List[Tuple[int, str]] = []
        self.contexts: Dict[str, EvaluationContext] = {}
        self.running: Dict[str, _RunningJob] = {}
        self.stoppers: Set[asyncio.Task] = set()
        self.cancelled = False

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def _signal_cancel(self) -> None:
        self.events.put_nowait((_CANCEL_RUN, None, None))

    async def start(self) -> PipelineRun:
        repository = self.scheduler.repository
        await repository.create_run(
            self.run_id, self.definition.name, self.run.trigger_record()
        )
        logger.info(
            f"Starting workflow {self.definition.name!r} with "
            f"{len(self.definition.jobs)} jobs run_id={self.run_id}"
        )
        self.token.on_cancel(self._signal_cancel)
        try:
            for job in self.definition.jobs:
                if job.needs:
                    await self._transition(job.id, JobState.BLOCKED)
            for job_id in self.definition.graph.roots():
                if await self._promote(self.definition.job(job_id)):
                    await self._release(job_id)
            await self._loop()
            if self.stoppers:
                await asyncio.gather(*self.stoppers)
        finally:
            self.token.remove_callback(self._signal_cancel)
            for entry in self.running.values():
                entry.task.cancel()

        status = self.run.conclude(self.cancelled)
        self.run.outputs = self._run_outputs()
        await repository.mark_run_completed(self.run_id, status.value, self.run.outputs)
        logger.info(
            f"Workflow {self.definition.name!r} finished with status {status.value} "
            f"run_id={self.run_id}"
        )
        return self.run

    # ------------------------------------------------------------------
    # Event loop

    async def _loop(self) -> None:
        while True:
            await self._launch()
            if not self.running and not self.ready:
                return
            kind, job_id, payload = await self.events.get()
            await self._handle(kind, job_id, payload)

    async def _handle(self, kind: str, job_id: Optional[str], payload: Any) -> None:
        if kind == _CANCEL_RUN:
            await self._cancel_run()
            return

        entry = self.running.get(job_id)
        if kind == _STOPPED:
            self.running.pop(job_id, None)
            await self._finish(job_id, JobState.CANCELLED, payload)
            return
        # once cancellation owns a job its late completion is ignored
        if entry is None or entry.cancelling:
            return
        del self.running[job_id]
        if kind == _DONE:
            await self._complete(entry, payload)
        elif kind == _TIMED_OUT:
            reason = f"timed out after {entry.job.timeout_minutes:g} minutes"
            logger.error(f"Job {job_id} {reason} run_id={self.run_id}")
            await self._finish(job_id, JobState.FAILED, reason)

    async def _launch(self) -> None:
        while self.ready and not self.slots.locked() and not self.token.cancelled:
            _, job_id = heapq.heappop(self.ready)
            job = self.definition.job(job_id)
            context = self.contexts.pop(job_id)
            try:
                collaborator = self.scheduler.registry.get(job.uses)
                request = build_invocation(
                    job, self.run_id, context, self.run.secrets, collaborator.interface
                )
            except (InvocationError, ExpressionEvaluationError) as exc:
                logger.error(f"Job {job_id} could not be invoked: {exc} run_id={self.run_id}")
                await self._finish(job_id, JobState.FAILED, str(exc))
                continue

            await self.slots.acquire()
            await self._transition(job_id, JobState.RUNNING)
            logger.info(f"Job {job_id} started using {job.uses!r} run_id={self.run_id}")
            task = asyncio.create_task(
                self._work(job, collaborator, request), name=f"gantry-{job_id}"
            )
            self.running[job_id] = _RunningJob(job, collaborator, request, task)

    async def _work(
        self, job: JobSpec, collaborator: Collaborator, request: InvocationRequest
    ) -> None:
        try:
            try:
                result = await self._invoke(job, collaborator, request)
            except Exception as exc:
                logger.exception(
                    f"Collaborator {job.uses!r} raised for job {job.id} run_id={self.run_id}"
                )
                result = InvocationResult.failed(f"{type(exc).__name__}: {exc}")
            if result is None:
                await self._stop_collaborator(collaborator, request)
                self.events.put_nowait((_TIMED_OUT, job.id, None))
                return
            self.events.put_nowait((_DONE, job.id, result))
        finally:
            self.slots.release()

    async def _invoke(
        self, job: JobSpec, collaborator: Collaborator, request: InvocationRequest
    ) -> Optional[InvocationResult]:
        """Run the collaborator; ``None`` means the job's own deadline passed."""
        invocation = asyncio.ensure_future(collaborator.invoke(request))
        timeout = job.timeout_minutes * 60 if job.timeout_minutes else None
        try:
            done, _ = await asyncio.wait({invocation}, timeout=timeout)
        finally:
            if not invocation.done():
                invocation.cancel()
        if not done:
            return None
        return invocation.result()

    # ------------------------------------------------------------------
    # Transitions

    async def _transition(
        self,
        job_id: str,
        state: JobState,
        reason: Optional[str] = None,
        outputs: Optional[Dict[str, str]] = None,
    ) -> None:
        entry = self.store.transition(job_id, state, reason=reason, outputs=outputs)
        await self.scheduler.repository.record_transition(
            self.run_id, job_id, state.value, entry.timestamp, reason, outputs
        )

    async def _finish(
        self,
        job_id: str,
        state: JobState,
        reason: Optional[str] = None,
        outputs: Optional[Dict[str, str]] = None,
    ) -> None:
        """Move a job to a terminal state and promote dependents now unblocked."""
        await self._transition(job_id, state, reason, outputs)
        await self._release(job_id)

    async def _release(self, job_id: str) -> None:
        graph = self.definition.graph
        finished = deque([job_id])
        while finished:
            for successor in graph.successors(finished.popleft()):
                if self.store.state(successor) != JobState.BLOCKED:
                    continue
                if not all(self.store.is_terminal(p) for p in graph.predecessors(successor)):
                    continue
                # ended on promotion, its own dependents may now be unblocked
                if await self._promote(self.definition.job(successor)):
                    finished.append(successor)

    async def _promote(self, job: JobSpec) -> bool:
        """Enter Ready and evaluate the job's gate exactly once.

        Returns ``True`` when the job ended right away (skipped or cancelled).
        """
        await self._transition(job.id, JobState.READY)
        if self.cancelled:
            await self._transition(job.id, JobState.CANCELLED, self.token.reason)
            return True
        try:
            context = self._context(job)
            allowed, reason = self._gate(job, context)
        except _EVALUATION_ERRORS as exc:
            logger.error(
                f"Condition of job {job.id} could not be evaluated: {exc} run_id={self.run_id}"
            )
            allowed, reason = False, f"condition could not be evaluated: {exc}"
        if not allowed:
            await self._transition(job.id, JobState.SKIPPED, reason)
            return True
        self.contexts[job.id] = context
        heapq.heappush(self.ready, (job.index, job.id))
        return False

    def _context(self, job: JobSpec) -> EvaluationContext:
        return job_context(
            job,
            self.run.namespaces,
            self.run.env,
            self.store,
            self.run.secrets,
            cancelled=self.cancelled,
        )

    def _gate(self, job: JobSpec, context: EvaluationContext) -> Tuple[bool, Optional[str]]:
        if job.mode == ConditionMode.ON_SUCCESS and not context.success:
            upstream = [p for p in job.needs if self.store.state(p) != JobState.SUCCEEDED]
            logger.warning(
                f"Skipping job {job.id}: dependencies {upstream} did not succeed "
                f"run_id={self.run_id}"
            )
            return False, f"dependencies did not succeed: {', '.join(upstream)}"
        if job.condition is None or job.condition.evaluate_bool(context):
            return True, None
        logger.info(
            f"Skipping job {job.id}: condition {job.condition.source!r} is false "
            f"run_id={self.run_id}"
        )
        return False, f"condition {job.condition.source!r} evaluated to false"

    async def _complete(self, entry: _RunningJob, result: InvocationResult) -> None:
        job = entry.job
        if not result.ok:
            message = result.message or f"{job.uses} reported failure"
            message = mask_secrets(message, entry.request.secrets.values())
            logger.error(f"Job {job.id} failed: {message} run_id={self.run_id}")
            await self._finish(job.id, JobState.FAILED, message)
            return
        try:
            outputs = self._job_outputs(job, result.outputs)
        except _EVALUATION_ERRORS as exc:
            logger.error(
                f"Outputs of job {job.id} could not be evaluated: {exc} run_id={self.run_id}"
            )
            await self._finish(job.id, JobState.FAILED, f"outputs could not be evaluated: {exc}")
            return
        logger.info(f"Job {job.id} succeeded run_id={self.run_id}")
        await self._finish(job.id, JobState.SUCCEEDED, outputs=outputs)

    def _job_outputs(self, job: JobSpec, raw: Mapping[str, Any]) -> Dict[str, str]:
        if not job.outputs:
            return {str(name): to_string(value) for name, value in raw.items()}
        context = self._context(job)
        context.namespaces["outputs"] = dict(raw)
        return {
            name: to_string(render_value(value, context)) for name, value in job.outputs.items()
        }

    def _run_outputs(self) -> Dict[str, str]:
        if not self.definition.outputs:
            return {}
        jobs = needs_namespace(self.definition.job_ids, self.store)
        namespaces = dict(self.run.namespaces)
        namespaces.update(env=dict(self.run.env), needs=jobs, jobs=jobs)
        context = EvaluationContext(namespaces=namespaces)
        outputs: Dict[str, str] = {}
        for name, value in self.definition.outputs.items():
            try:
                outputs[name] = to_string(render_value(value, context))
            except _EVALUATION_ERRORS as exc:
                logger.error(
                    f"Workflow output {name!r} could not be evaluated: {exc} run_id={self.run_id}"
                )
                outputs[name] = ""
        return outputs

    # ------------------------------------------------------------------
    # Cancellation

    async def _cancel_run(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        reason = self.token.reason or "run cancelled"
        logger.warning(
            f"Cancelling workflow {self.definition.name!r}: {reason} run_id={self.run_id}"
        )
        self.ready.clear()
        self.contexts.clear()
        for job in self.definition.jobs:
            if self.store.state(job.id) in (JobState.PENDING, JobState.BLOCKED, JobState.READY):
                await self._transition(job.id, JobState.CANCELLED, reason)
        for entry in self.running.values():
            entry.cancelling = True
            stopper = asyncio.create_task(self._stop(entry, reason))
            self.stoppers.add(stopper)
            stopper.add_done_callback(self.stoppers.discard)

    async def _stop(self, entry: _RunningJob, reason: str) -> None:
        """Ask the collaborator to stop, waiting at most the grace period."""
        grace = self.scheduler.cancel_grace_period
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        acknowledged = await self._stop_collaborator(entry.collaborator, entry.request)
        if not acknowledged:
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.wait({entry.task}, timeout=remaining)
            if not entry.task.done():
                logger.warning(
                    f"Job {entry.job.id} did not stop within {grace:g}s run_id={self.run_id}"
                )
        if not entry.task.done():
            entry.task.cancel()
        self.events.put_nowait((_STOPPED, entry.job.id, reason))

    async def _stop_collaborator(
        self, collaborator: Collaborator, request: InvocationRequest
    ) -> bool:
        try:
            return bool(
                await asyncio.wait_for(
                    collaborator.cancel(request), timeout=self.scheduler.cancel_grace_period
                )
            )
        except asyncio.TimeoutError:
            return False
        except Exception:
            logger.exception(
                f"Cancelling job {request.job_id} at {request.uses!r} failed run_id={self.run_id}"
            )
            return False
