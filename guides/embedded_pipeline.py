"""Example showing how to drive a pipeline from Python code.

Each ``uses:`` name maps to a collaborator. Here plain functions stand in for
the build system and the deployment target.
"""

import asyncio
import logging

from gantry import (
    CallableCollaborator,
    CollaboratorRegistry,
    InvocationResult,
    Scheduler,
    StaticCollaborator,
    TriggerContext,
    load_workflow,
)

WORKFLOW = """
name: preview
on: pull_request
jobs:
  test:
    uses: unit-tests
  build:
    needs: test
    uses: container-build
    with:
      tag: "pr-${{ ref_name }}"
  preview:
    needs: build
    uses: deploy
    with:
      image: "shop@${{ needs.build.outputs.digest }}"
    secrets: [PREVIEW_TOKEN]
  cleanup:
    needs: preview
    if: failure()
    uses: deploy
    with:
      action: remove
"""


async def build(request):
    await asyncio.sleep(0.1)
    return {"digest": f"sha256:{request.inputs['tag']}"}


def deploy(request):
    if request.inputs.get("action") == "remove":
        return InvocationResult.succeeded({"removed": "true"})
    token = request.secrets["PREVIEW_TOKEN"]
    print(f"Deploying {request.inputs['image']} with token {token}")
    return {"url": f"https://{request.run_id[:8]}.preview.example.com"}


async def main():
    logging.basicConfig(level=logging.INFO)
    registry = CollaboratorRegistry(
        {
            "unit-tests": StaticCollaborator(),
            "container-build": CallableCollaborator(build),
            "deploy": CallableCollaborator(deploy),
        }
    )
    scheduler = Scheduler(registry, max_concurrency=2)

    run = await scheduler.run(
        load_workflow(WORKFLOW),
        TriggerContext(event_name="pull_request", ref="refs/pull/42/merge", actor="octocat"),
        secrets={"PREVIEW_TOKEN": "not-for-logs"},
    )

    print(f"✅ Run {run.run_id} finished: {run.status.value}")
    for job_id, report in run.report().items():
        print(f"🔗 {job_id}: {report.state.value} {dict(report.outputs)}")


if __name__ == "__main__":
    asyncio.run(main())
