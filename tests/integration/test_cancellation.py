"""Cancellation of in-flight runs."""

import asyncio

import pytest

from gantry import (
    CancellationToken,
    CollaboratorRegistry,
    JobState,
    PipelineRun,
    RunStatus,
    Scheduler,
    StaticCollaborator,
    load_workflow,
)
from gantry.persistence import InMemoryRunRepository

WORKFLOW = """
on: push
jobs:
  unit:
    uses: step
  deploy:
    uses: step
  smoke:
    needs: deploy
    uses: step
  notify:
    needs: deploy
    if: always()
    uses: step
"""


async def _wait_for_state(run, job_id, state):
    while run.state(job_id) != state:
        await asyncio.sleep(0.005)


async def _start(collaborator, **kwargs):
    definition = load_workflow(WORKFLOW)
    scheduler = Scheduler(
        CollaboratorRegistry({"step": collaborator}),
        repository=InMemoryRunRepository(),
        **kwargs,
    )
    run = PipelineRun.create(definition)
    token = CancellationToken()
    task = asyncio.create_task(scheduler.execute(run, token))
    await _wait_for_state(run, "deploy", JobState.RUNNING)
    await _wait_for_state(run, "unit", JobState.SUCCEEDED)
    return run, token, task


@pytest.mark.asyncio
async def test_cancel_stops_running_job_and_cancels_waiting_ones():
    collaborator = StaticCollaborator(hang={"deploy"})
    run, token, task = await _start(collaborator)

    token.cancel("superseded by a newer push")
    await asyncio.wait_for(task, timeout=2)

    assert run.status == RunStatus.CANCELLED
    assert run.states == {
        "unit": JobState.SUCCEEDED,
        "deploy": JobState.CANCELLED,
        "smoke": JobState.CANCELLED,
        "notify": JobState.CANCELLED,
    }
    assert collaborator.cancelled == ["deploy"]
    assert run.store.reason("smoke") == "superseded by a newer push"
    assert run.history("deploy")[-2:] == [JobState.RUNNING, JobState.CANCELLED]


@pytest.mark.asyncio
async def test_unacknowledged_cancel_waits_for_grace_period():
    collaborator = StaticCollaborator(hang={"deploy"}, acknowledge_cancel=False)
    run, token, task = await _start(collaborator, cancel_grace_period=0.05)

    token.cancel()
    await asyncio.wait_for(task, timeout=2)

    assert run.state("deploy") == JobState.CANCELLED
    assert run.status == RunStatus.CANCELLED
    assert collaborator.cancelled == ["deploy"]


@pytest.mark.asyncio
async def test_cancel_is_idempotent():
    collaborator = StaticCollaborator(hang={"deploy"})
    run, token, task = await _start(collaborator)

    token.cancel()
    token.cancel()
    await asyncio.wait_for(task, timeout=2)

    assert collaborator.cancelled == ["deploy"]
    assert run.history("deploy").count(JobState.CANCELLED) == 1


@pytest.mark.asyncio
async def test_token_cancelled_before_start():
    collaborator = StaticCollaborator()
    scheduler = Scheduler(
        CollaboratorRegistry({"step": collaborator}), repository=InMemoryRunRepository()
    )
    token = CancellationToken()
    token.cancel()

    run = await scheduler.run(load_workflow(WORKFLOW), cancel_token=token)

    assert run.status == RunStatus.CANCELLED
    assert collaborator.calls == []
    assert set(run.states.values()) == {JobState.CANCELLED}


def test_token_callbacks():
    token = CancellationToken()
    seen = []
    token.on_cancel(lambda: seen.append("first"))
    token.cancel("stop")
    token.cancel("again")
    token.on_cancel(lambda: seen.append("late"))

    assert token.cancelled
    assert token.reason == "stop"
    assert seen == ["first", "late"]
