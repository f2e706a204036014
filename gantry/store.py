"""Append-only record of job states and outputs for one run."""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .contracts import ALLOWED_TRANSITIONS, JobReport, JobState, Transition
from .errors import ContractViolation

logger = logging.getLogger(__name__)


class OutputStatusStore:
    """Holds every job's transition history and output record.

    Each job owns exactly one writer (its own completion handling), so the
    lock only guards readers against partially applied writes.
    """

    def __init__(self, job_ids: Iterable[str]) -> None:
        self._lock = threading.RLock()
        self._history: Dict[str, List[Transition]] = {}
        self._outputs: Dict[str, Mapping[str, str]] = {}
        for job_id in job_ids:
            self._history[job_id] = [Transition(job_id=job_id, state=JobState.PENDING)]

    # ------------------------------------------------------------------
    def __contains__(self, job_id: str) -> bool:
        return job_id in self._history

    @property
    def job_ids(self) -> List[str]:
        return list(self._history)

    def state(self, job_id: str) -> JobState:
        with self._lock:
            return self._entries(job_id)[-1].state

    def history(self, job_id: str) -> List[Transition]:
        with self._lock:
            return list(self._entries(job_id))

    def reason(self, job_id: str) -> Optional[str]:
        with self._lock:
            return self._entries(job_id)[-1].reason

    def is_terminal(self, job_id: str) -> bool:
        return self.state(job_id).is_terminal

    def all_terminal(self) -> bool:
        with self._lock:
            return all(entries[-1].state.is_terminal for entries in self._history.values())

    # ------------------------------------------------------------------
    def transition(
        self,
        job_id: str,
        state: JobState,
        reason: Optional[str] = None,
        outputs: Optional[Mapping[str, str]] = None,
    ) -> Transition:
        """Append a transition; outputs may only accompany ``SUCCEEDED``.

        Raises:
            ContractViolation: the move is not allowed by the state lattice.
        """
        with self._lock:
            entries = self._entries(job_id)
            current = entries[-1].state
            if state not in ALLOWED_TRANSITIONS[current]:
                raise ContractViolation(
                    f"Illegal transition for job '{job_id}': {current.value} -> {state.value}"
                )
            if outputs is not None and state != JobState.SUCCEEDED:
                raise ContractViolation(
                    f"Job '{job_id}' can only record outputs when it succeeds"
                )
            entry = Transition(job_id=job_id, state=state, reason=reason)
            entries.append(entry)
            if state == JobState.SUCCEEDED:
                frozen = {str(key): str(value) for key, value in (outputs or {}).items()}
                self._outputs[job_id] = MappingProxyType(frozen)
        logger.debug(f"Job {job_id}: {current.value} -> {state.value}")
        return entry

    def outputs(self, job_id: str) -> Mapping[str, str]:
        """Return the job's output record.

        Raises:
            ContractViolation: the job has not reached a terminal state.
        """
        with self._lock:
            state = self._entries(job_id)[-1].state
            if not state.is_terminal:
                raise ContractViolation(
                    f"Outputs of job '{job_id}' read while it is {state.value}"
                )
            return self._outputs.get(job_id, MappingProxyType({}))

    # ------------------------------------------------------------------
    def report(self, job_id: str) -> JobReport:
        with self._lock:
            entries = self._entries(job_id)
            return JobReport(
                job_id=job_id,
                state=entries[-1].state,
                outputs=dict(self._outputs.get(job_id, {})),
                reason=entries[-1].reason,
                history=[entry.state for entry in entries],
            )

    def snapshot(self) -> Dict[str, JobReport]:
        with self._lock:
            return {job_id: self.report(job_id) for job_id in self._history}

    def _entries(self, job_id: str) -> List[Transition]:
        try:
            return self._history[job_id]
        except KeyError:
            raise ContractViolation(f"Unknown job '{job_id}'") from None
