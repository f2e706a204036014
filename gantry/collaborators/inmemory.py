"""In-process collaborators for tests, dry runs and embedding."""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from ..contracts import CollaboratorInterface, InvocationRequest, InvocationResult
from .base import Collaborator


class StaticCollaborator(Collaborator):
    """Returns scripted results without touching any external system.

    Args:
        result: Result returned for every job not listed in ``results``.
        results: Per-job results keyed by job id.
        delay: Seconds to wait before answering, per job id or for all jobs.
        hang: Job ids whose invocation never finishes until cancelled.
        acknowledge_cancel: Whether :meth:`cancel` reports success.
    """

    def __init__(
        self,
        result: Optional[InvocationResult] = None,
        *,
        results: Optional[Mapping[str, InvocationResult]] = None,
        delay: float | Mapping[str, float] = 0.0,
        hang: Optional[Set[str]] = None,
        acknowledge_cancel: bool = True,
        interface: Optional[CollaboratorInterface] = None,
    ) -> None:
        self._default = result or InvocationResult.succeeded()
        self._results = dict(results or {})
        self._delay = delay
        self._hang = set(hang or ())
        self._acknowledge_cancel = acknowledge_cancel
        self._released: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.interface = interface
        self.calls: List[InvocationRequest] = []
        self.cancelled: List[str] = []

    @property
    def invoked_jobs(self) -> List[str]:
        return [request.job_id for request in self.calls]

    def _delay_for(self, job_id: str) -> float:
        if isinstance(self._delay, Mapping):
            return float(self._delay.get(job_id, 0.0))
        return float(self._delay)

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.calls.append(request)
        if request.job_id in self._hang:
            await self._released[request.job_id].wait()
            return InvocationResult.failed("cancelled")
        delay = self._delay_for(request.job_id)
        if delay:
            await asyncio.sleep(delay)
        return self._results.get(request.job_id, self._default)

    async def cancel(self, request: InvocationRequest) -> bool:
        self.cancelled.append(request.job_id)
        if self._acknowledge_cancel:
            self._released[request.job_id].set()
        return self._acknowledge_cancel


class CallableCollaborator(Collaborator):
    """Adapts a plain function or coroutine function.

    The callable receives the :class:`InvocationRequest` and may return an
    :class:`InvocationResult`, a mapping of outputs, a boolean, or ``None``
    (success with no outputs). Exceptions propagate to the scheduler, which
    fails the job.
    """

    def __init__(
        self,
        func: Callable[[InvocationRequest], Any],
        interface: Optional[CollaboratorInterface] = None,
    ) -> None:
        self._func = func
        self.interface = interface

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        result = self._func(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, InvocationResult):
            return result
        if result is None:
            return InvocationResult.succeeded()
        if isinstance(result, bool):
            if result:
                return InvocationResult.succeeded()
            return InvocationResult.failed(f"{request.uses} reported failure")
        if isinstance(result, Mapping):
            return InvocationResult.succeeded(dict(result))
        raise TypeError(
            f"Collaborator for '{request.uses}' returned unsupported {type(result).__name__}"
        )
