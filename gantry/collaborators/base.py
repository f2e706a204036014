"""Base interface for the external systems a job invokes."""

from __future__ import annotations

import abc
from typing import Optional

from ..contracts import CollaboratorInterface, InvocationRequest, InvocationResult


class Collaborator(metaclass=abc.ABCMeta):
    """Performs a job's actual work against an external system.

    ``interface`` optionally declares the inputs and secrets the collaborator
    expects; the scheduler validates invocations against it.
    """

    interface: Optional[CollaboratorInterface] = None

    async def close(self) -> None:
        """Release connections (no-op by default)."""
        pass

    @abc.abstractmethod
    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        """Run the job's work and report its outcome."""
        raise NotImplementedError

    async def cancel(self, request: InvocationRequest) -> bool:
        """Ask the external system to stop work for ``request``.

        Returns ``True`` once the cancellation is acknowledged. The default
        implementation cannot cancel anything.
        """
        return False
