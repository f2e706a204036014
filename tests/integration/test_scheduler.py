"""End-to-end scheduling scenarios with in-process collaborators."""

import asyncio
from pathlib import Path

import pytest

from gantry import (
    CallableCollaborator,
    CollaboratorRegistry,
    InvocationResult,
    JobState,
    RunStatus,
    Scheduler,
    StaticCollaborator,
    TriggerContext,
    load_workflow,
    load_workflow_file,
)
from gantry.errors import InvalidTriggerInput
from gantry.persistence import InMemoryRunRepository

FIXTURES = Path(__file__).parent.parent / "fixtures"

RELEASE_SECRETS = {
    "REGISTRY_USER": "bot",
    "REGISTRY_TOKEN": "reg-123",
    "CLUSTER_TOKEN": "kube-456",
}


def _scheduler(collaborators, **kwargs):
    return Scheduler(
        CollaboratorRegistry(collaborators), repository=InMemoryRunRepository(), **kwargs
    )


def _release_registry(collaborator):
    return {"code-quality": collaborator, "container-build": collaborator, "gitops": collaborator}


def _push(ref, **inputs):
    return TriggerContext(event_name="push", ref=ref, actor="octocat", inputs=inputs)


@pytest.mark.asyncio
async def test_deploy_skipped_on_develop():
    definition = load_workflow_file(FIXTURES / "release.yml")
    collaborator = StaticCollaborator(InvocationResult.succeeded({"digest": "sha256:1"}))
    scheduler = _scheduler(_release_registry(collaborator))

    run = await scheduler.run(
        definition, _push("refs/heads/develop", environment="staging"), secrets=RELEASE_SECRETS
    )

    assert run.states == {
        "lint": JobState.SUCCEEDED,
        "build": JobState.SUCCEEDED,
        "deploy": JobState.SKIPPED,
    }
    assert run.status == RunStatus.SUCCEEDED
    assert collaborator.invoked_jobs == ["lint", "build"]


@pytest.mark.asyncio
async def test_deploy_on_main_receives_outputs_and_scoped_secrets():
    definition = load_workflow_file(FIXTURES / "release.yml")
    collaborator = StaticCollaborator(InvocationResult.succeeded({"digest": "sha256:1"}))
    scheduler = _scheduler(_release_registry(collaborator))

    run = await scheduler.run(
        definition, _push("refs/heads/main", environment="staging"), secrets=RELEASE_SECRETS
    )

    assert run.status == RunStatus.SUCCEEDED
    assert collaborator.invoked_jobs == ["lint", "build", "deploy"]
    lint, build, deploy = collaborator.calls

    assert lint.secrets == {}
    assert set(build.secrets) == {"REGISTRY_USER", "REGISTRY_TOKEN"}
    assert build.inputs == {"image": "registry.example.com/shop", "tag": "main"}
    assert set(deploy.secrets) == {"ARGOCD_TOKEN"}
    assert deploy.secrets["ARGOCD_TOKEN"].get_secret_value() == "kube-456"
    assert deploy.inputs == {
        "action": "sync",
        "environment": "staging",
        "dry-run": False,
        "revision": "sha256:1",
    }
    assert run.job_outputs("build") == {"digest": "sha256:1"}


@pytest.mark.asyncio
async def test_failure_skips_dependents():
    definition = load_workflow_file(FIXTURES / "release.yml")
    collaborator = StaticCollaborator(
        results={"lint": InvocationResult.failed("would reformat 3 files")}
    )
    scheduler = _scheduler(_release_registry(collaborator))

    run = await scheduler.run(
        definition, _push("refs/heads/main", environment="staging"), secrets=RELEASE_SECRETS
    )

    assert run.states == {
        "lint": JobState.FAILED,
        "build": JobState.SKIPPED,
        "deploy": JobState.SKIPPED,
    }
    assert run.status == RunStatus.FAILED
    assert collaborator.invoked_jobs == ["lint"]
    assert run.store.reason("lint") == "would reformat 3 files"
    assert run.history("build") == [
        JobState.PENDING,
        JobState.BLOCKED,
        JobState.READY,
        JobState.SKIPPED,
    ]


@pytest.mark.asyncio
async def test_status_functions_override_default_skip():
    definition = load_workflow_file(FIXTURES / "cleanup.yml")
    collaborator = StaticCollaborator(results={"test": InvocationResult.failed("2 tests failed")})
    run = await _scheduler({"step": collaborator}).run(definition, TriggerContext(event_name="push"))

    assert run.states == {
        "test": JobState.FAILED,
        "publish": JobState.SKIPPED,
        "notify": JobState.SUCCEEDED,
        "report": JobState.SUCCEEDED,
    }
    assert run.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_failure_handler_skipped_when_everything_passes():
    definition = load_workflow_file(FIXTURES / "cleanup.yml")
    collaborator = StaticCollaborator()
    run = await _scheduler({"step": collaborator}).run(definition, TriggerContext(event_name="push"))

    assert run.states == {
        "test": JobState.SUCCEEDED,
        "publish": JobState.SUCCEEDED,
        "notify": JobState.SKIPPED,
        "report": JobState.SUCCEEDED,
    }
    assert run.status == RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_independent_jobs_run_concurrently_and_join_waits_for_both():
    definition = load_workflow(
        """
on: push
jobs:
  a: {uses: step}
  b: {uses: step}
  c: {uses: step, needs: [a, b]}
"""
    )
    log = []
    delays = {"a": 0.01, "b": 0.05}

    async def work(request):
        log.append(("start", request.job_id))
        await asyncio.sleep(delays.get(request.job_id, 0))
        log.append(("end", request.job_id))

    run = await _scheduler({"step": CallableCollaborator(work)}).run(definition)

    assert run.status == RunStatus.SUCCEEDED
    assert log[:2] == [("start", "a"), ("start", "b")]
    assert log.index(("start", "c")) > log.index(("end", "a"))
    assert log.index(("start", "c")) > log.index(("end", "b"))


@pytest.mark.asyncio
async def test_max_concurrency_bounds_running_jobs():
    definition = load_workflow(
        """
on: push
jobs:
  a: {uses: step}
  b: {uses: step}
  c: {uses: step}
"""
    )
    in_flight = 0
    peak = 0

    async def work(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    scheduler = _scheduler({"step": CallableCollaborator(work)}, max_concurrency=2)
    run = await scheduler.run(definition)

    assert run.status == RunStatus.SUCCEEDED
    assert peak == 2


@pytest.mark.asyncio
async def test_repeated_runs_produce_identical_histories():
    definition = load_workflow_file(FIXTURES / "release.yml")
    histories = []
    for _ in range(2):
        collaborator = StaticCollaborator(
            InvocationResult.succeeded({"digest": "sha256:1"}),
            delay={"lint": 0.01},
        )
        run = await _scheduler(_release_registry(collaborator)).run(
            definition, _push("refs/heads/main", environment="prod"), secrets=RELEASE_SECRETS
        )
        histories.append({job_id: run.history(job_id) for job_id in definition.job_ids})
    assert histories[0] == histories[1]


@pytest.mark.asyncio
async def test_missing_secret_fails_only_that_job():
    definition = load_workflow(
        """
on: push
jobs:
  publish:
    uses: step
    secrets: [PYPI_TOKEN]
  docs:
    uses: step
  announce:
    needs: publish
    uses: step
"""
    )
    collaborator = StaticCollaborator()
    run = await _scheduler({"step": collaborator}).run(definition, secrets={"OTHER": "x"})

    assert run.states == {
        "publish": JobState.FAILED,
        "docs": JobState.SUCCEEDED,
        "announce": JobState.SKIPPED,
    }
    assert "PYPI_TOKEN" in run.store.reason("publish")
    assert collaborator.invoked_jobs == ["docs"]
    assert run.history("publish")[-2:] == [JobState.READY, JobState.FAILED]


@pytest.mark.asyncio
async def test_unknown_collaborator_fails_job():
    definition = load_workflow("on: push\njobs:\n  build: {uses: nowhere}\n")
    run = await _scheduler({}).run(definition)
    assert run.state("build") == JobState.FAILED
    assert "nowhere" in run.store.reason("build")
    assert run.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_collaborator_exception_fails_job():
    def explode(request):
        raise RuntimeError("registry unreachable")

    definition = load_workflow("on: push\njobs:\n  build: {uses: step}\n")
    run = await _scheduler({"step": CallableCollaborator(explode)}).run(definition)
    assert run.state("build") == JobState.FAILED
    assert "registry unreachable" in run.store.reason("build")


@pytest.mark.asyncio
async def test_collaborator_timeout_error_is_an_ordinary_failure():
    def read_timeout(request):
        raise TimeoutError("socket read timed out")

    definition = load_workflow(
        """
on: push
jobs:
  build:
    uses: step
  publish:
    uses: step
    timeout-minutes: 5
"""
    )
    run = await _scheduler({"step": CallableCollaborator(read_timeout)}).run(definition)

    assert run.states == {"build": JobState.FAILED, "publish": JobState.FAILED}
    assert "socket read timed out" in run.store.reason("build")
    assert "socket read timed out" in run.store.reason("publish")
    assert run.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_long_failure_cascade_skips_every_dependent():
    lines = ["on: push", "jobs:", "  j0: {uses: step}"]
    lines += [f"  j{i}: {{uses: step, needs: j{i - 1}}}" for i in range(1, 1500)]
    definition = load_workflow("\n".join(lines) + "\n")
    collaborator = StaticCollaborator(results={"j0": InvocationResult.failed("broken")})

    run = await _scheduler({"step": collaborator}).run(definition)

    assert run.status == RunStatus.FAILED
    assert run.state("j0") == JobState.FAILED
    assert all(run.state(f"j{i}") == JobState.SKIPPED for i in range(1, 1500))
    assert collaborator.invoked_jobs == ["j0"]


@pytest.mark.asyncio
async def test_continue_on_error_keeps_run_green():
    definition = load_workflow(
        """
on: push
jobs:
  flaky:
    uses: step
    continue-on-error: true
  after-flaky:
    needs: flaky
    uses: step
  stable:
    uses: step
"""
    )
    collaborator = StaticCollaborator(results={"flaky": InvocationResult.failed("timeout")})
    run = await _scheduler({"step": collaborator}).run(definition)

    assert run.state("flaky") == JobState.FAILED
    assert run.state("after-flaky") == JobState.SKIPPED
    assert run.state("stable") == JobState.SUCCEEDED
    assert run.status == RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_timeout_fails_job_and_cancels_collaborator():
    definition = load_workflow(
        """
on: push
jobs:
  slow:
    uses: step
    timeout-minutes: 0.0005
"""
    )
    collaborator = StaticCollaborator(hang={"slow"})
    run = await _scheduler({"step": collaborator}, cancel_grace_period=1).run(definition)

    assert run.state("slow") == JobState.FAILED
    assert "timed out" in run.store.reason("slow")
    assert collaborator.cancelled == ["slow"]


@pytest.mark.asyncio
async def test_job_and_workflow_outputs():
    definition = load_workflow(
        """
on:
  workflow_call:
    outputs:
      image:
        value: "${{ needs.build.outputs.image }}"
      missing:
        value: "${{ needs.nothing.outputs.x }}"
jobs:
  build:
    uses: step
    outputs:
      image: "registry/shop@${{ outputs.digest }}"
  deploy:
    needs: build
    uses: step
    with:
      image: "${{ needs.build.outputs.image }}"
"""
    )
    collaborator = StaticCollaborator(InvocationResult.succeeded({"digest": "sha256:9", "extra": "x"}))
    run = await _scheduler({"step": collaborator}).run(
        definition, TriggerContext(event_name="workflow_call")
    )

    assert run.job_outputs("build") == {"image": "registry/shop@sha256:9"}
    assert run.job_outputs("deploy") == {"digest": "sha256:9", "extra": "x"}
    assert collaborator.calls[1].inputs == {"image": "registry/shop@sha256:9"}
    assert run.outputs == {"image": "registry/shop@sha256:9", "missing": ""}


@pytest.mark.asyncio
async def test_condition_evaluation_error_skips_job():
    definition = load_workflow(
        """
on: push
jobs:
  build:
    uses: step
    if: format('{1}', 'only-one') == 'x'
"""
    )
    collaborator = StaticCollaborator()
    run = await _scheduler({"step": collaborator}).run(definition)
    assert run.state("build") == JobState.SKIPPED
    assert collaborator.calls == []


@pytest.mark.asyncio
async def test_boolean_dispatch_input_gates_correctly():
    definition = load_workflow(
        """
on:
  workflow_dispatch:
    inputs:
      publish:
        type: boolean
        default: false
jobs:
  release:
    uses: step
    if: inputs.publish
"""
    )
    scheduler = _scheduler({"step": StaticCollaborator()})
    skipped = await scheduler.run(definition, TriggerContext(inputs={"publish": "false"}))
    released = await scheduler.run(definition, TriggerContext(inputs={"publish": "true"}))
    assert skipped.state("release") == JobState.SKIPPED
    assert released.state("release") == JobState.SUCCEEDED


@pytest.mark.asyncio
async def test_invalid_trigger_creates_no_run():
    definition = load_workflow_file(FIXTURES / "release.yml")
    repository = InMemoryRunRepository()
    scheduler = Scheduler(CollaboratorRegistry(), repository=repository)

    with pytest.raises(InvalidTriggerInput):
        await scheduler.run(definition, _push("refs/heads/main"))
    assert await repository.list_runs() == []


@pytest.mark.asyncio
async def test_transitions_are_recorded_in_repository():
    definition = load_workflow_file(FIXTURES / "release.yml")
    repository = InMemoryRunRepository()
    collaborator = StaticCollaborator(InvocationResult.succeeded({"digest": "sha256:1"}))
    scheduler = Scheduler(CollaboratorRegistry(_release_registry(collaborator)), repository=repository)

    run = await scheduler.run(
        definition,
        _push("refs/heads/develop", environment="staging"),
        secrets=RELEASE_SECRETS,
        run_id="run-42",
    )

    instance = await repository.get_run("run-42")
    assert instance.status == "succeeded"
    assert instance.workflow_name == "release"
    assert instance.trigger["ref"] == "refs/heads/develop"
    assert instance.job_states() == {job_id: state.value for job_id, state in run.states.items()}
    for job_id in definition.job_ids:
        recorded = [r.state for r in instance.transitions if r.job_id == job_id]
        assert recorded == [state.value for state in run.history(job_id)[1:]]
