"""Tests for the bundled collaborators."""

import asyncio
import json

import httpx
import pytest
from pydantic import SecretStr

from gantry.collaborators import (
    ArgoCDCollaborator,
    CallableCollaborator,
    CollaboratorRegistry,
    CommandCollaborator,
    StaticCollaborator,
    create_collaborator,
)
from gantry.collaborators.command import env_name, parse_output_file
from gantry.config import CollaboratorConfig
from gantry.contracts import InvocationRequest, InvocationResult
from gantry.errors import UnknownCollaborator


def _request(job_id="build", inputs=None, secrets=None, env=None):
    return InvocationRequest(
        run_id="run-1",
        job_id=job_id,
        uses="step",
        inputs=inputs or {},
        secrets={name: SecretStr(value) for name, value in (secrets or {}).items()},
        env=env or {},
    )


def test_parse_output_file():
    text = "digest=sha256:abc\nempty=\n\nnotes<<EOF\nline one\nline=two\nEOF\ntag=v1=rc\n"
    assert parse_output_file(text) == {
        "digest": "sha256:abc",
        "empty": "",
        "notes": "line one\nline=two",
        "tag": "v1=rc",
    }


def test_env_name():
    assert env_name("dry-run") == "DRY_RUN"
    assert env_name("python.version") == "PYTHON_VERSION"


@pytest.mark.asyncio
async def test_command_collaborator_reports_outputs():
    collaborator = CommandCollaborator(
        'echo "image=${{ inputs.image }}" >> "$GANTRY_OUTPUT" && '
        'echo "platform=$INPUT_PLATFORM" >> "$GANTRY_OUTPUT" && '
        'echo "user=$REGISTRY_USER" >> "$GANTRY_OUTPUT" && '
        'echo "job=$GANTRY_JOB_ID" >> "$GANTRY_OUTPUT"'
    )
    result = await collaborator.invoke(
        _request(
            inputs={"image": "shop:v1", "platform": "linux/amd64"},
            secrets={"registry-user": "bot"},
        )
    )
    assert result.ok
    assert result.outputs == {
        "image": "shop:v1",
        "platform": "linux/amd64",
        "user": "bot",
        "job": "build",
    }


@pytest.mark.asyncio
async def test_command_collaborator_failure_masks_secrets():
    collaborator = CommandCollaborator('echo "token is $TOKEN"; exit 3')
    result = await collaborator.invoke(_request(secrets={"TOKEN": "s3cr3t"}))
    assert not result.ok
    assert "status 3" in result.message
    assert "s3cr3t" not in result.message
    assert "***" in result.message


@pytest.mark.asyncio
async def test_command_collaborator_cancel_terminates_process():
    collaborator = CommandCollaborator("exec sleep 30")
    request = _request()
    task = asyncio.create_task(collaborator.invoke(request))
    while not collaborator._processes:
        await asyncio.sleep(0.01)

    assert await collaborator.cancel(request) is True
    result = await asyncio.wait_for(task, timeout=5)
    assert not result.ok


@pytest.mark.asyncio
async def test_command_collaborator_interpolates_inputs_as_single_words(tmp_path):
    marker = tmp_path / "marker"
    collaborator = CommandCollaborator(
        'echo "target=$(echo ${{ inputs.environment }})" >> "$GANTRY_OUTPUT"'
    )
    hostile = f"dev; touch {marker}"
    assert collaborator.render(_request(inputs={"environment": hostile})).startswith(
        "echo \"target=$(echo 'dev; touch "
    )

    result = await collaborator.invoke(_request(inputs={"environment": hostile}))

    assert result.ok
    assert result.outputs == {"target": hostile}
    assert not marker.exists()


@pytest.mark.asyncio
async def test_command_collaborator_cancel_stops_child_processes():
    collaborator = CommandCollaborator("sleep 30; echo finished")
    request = _request()
    task = asyncio.create_task(collaborator.invoke(request))
    while not collaborator._processes:
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.1)

    assert await collaborator.cancel(request) is True
    result = await asyncio.wait_for(task, timeout=5)
    assert not result.ok
    assert "finished" not in (result.message or "")


def _argocd(handler, **kwargs):
    return ArgoCDCollaborator(
        "https://argocd.example.com", transport=httpx.MockTransport(handler), **kwargs
    )


@pytest.mark.asyncio
async def test_argocd_sync():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "status": {
                    "sync": {"status": "Synced", "revision": "abc123"},
                    "operationState": {"phase": "Succeeded"},
                }
            },
        )

    collaborator = _argocd(handler, app_prefix="shop")
    result = await collaborator.invoke(
        _request(
            inputs={"action": "sync", "environment": "staging", "dry-run": False},
            secrets={"ARGOCD_TOKEN": "tok"},
        )
    )
    await collaborator.close()

    assert result.ok
    assert result.outputs == {
        "application": "shop-staging",
        "revision": "abc123",
        "sync-status": "Synced",
        "phase": "Succeeded",
    }
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/v1/applications/shop-staging/sync"
    assert request.headers["Authorization"] == "Bearer tok"
    assert json.loads(request.content) == {"dryRun": False, "prune": True}


@pytest.mark.asyncio
async def test_argocd_remove_and_dry_run():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    collaborator = _argocd(handler)
    secrets = {"ARGOCD_TOKEN": "tok"}

    result = await collaborator.invoke(
        _request(inputs={"action": "remove", "environment": "qa", "dry-run": True}, secrets=secrets)
    )
    assert result.outputs == {"application": "qa", "removed": "false"}
    assert seen[-1].method == "GET"

    result = await collaborator.invoke(
        _request(
            inputs={"action": "remove", "environment": "qa", "application": "shop-qa"},
            secrets=secrets,
        )
    )
    assert result.outputs == {"application": "shop-qa", "removed": "true"}
    assert seen[-1].method == "DELETE"
    assert seen[-1].url.params["cascade"] == "true"
    await collaborator.close()


@pytest.mark.asyncio
async def test_argocd_http_error_fails_job():
    collaborator = _argocd(lambda request: httpx.Response(403, text="permission denied"))
    result = await collaborator.invoke(
        _request(inputs={"action": "sync", "environment": "prod"}, secrets={"ARGOCD_TOKEN": "t"})
    )
    await collaborator.close()
    assert not result.ok
    assert "403" in result.message


@pytest.mark.asyncio
async def test_static_collaborator_scripts_results():
    collaborator = StaticCollaborator(
        InvocationResult.succeeded({"a": "1"}),
        results={"lint": InvocationResult.failed("style")},
    )
    assert (await collaborator.invoke(_request("build"))).outputs == {"a": "1"}
    assert not (await collaborator.invoke(_request("lint"))).ok
    assert collaborator.invoked_jobs == ["build", "lint"]


@pytest.mark.asyncio
async def test_static_collaborator_hang_until_cancelled():
    collaborator = StaticCollaborator(hang={"deploy"})
    request = _request("deploy")
    task = asyncio.create_task(collaborator.invoke(request))
    await asyncio.sleep(0.01)
    assert not task.done()
    assert await collaborator.cancel(request) is True
    result = await asyncio.wait_for(task, timeout=1)
    assert result.message == "cancelled"


@pytest.mark.asyncio
async def test_callable_collaborator_normalises_results():
    async def returns_mapping(request):
        return {"job": request.job_id}

    assert (await CallableCollaborator(returns_mapping).invoke(_request())).outputs == {
        "job": "build"
    }
    assert (await CallableCollaborator(lambda request: None).invoke(_request())).ok
    assert not (await CallableCollaborator(lambda request: False).invoke(_request())).ok
    with pytest.raises(TypeError):
        await CallableCollaborator(lambda request: 42).invoke(_request())


def test_registry_lookup():
    registry = CollaboratorRegistry()
    noop = registry.register("noop", StaticCollaborator())
    assert registry.get("noop") is noop
    assert "noop" in registry
    assert list(registry) == ["noop"]
    with pytest.raises(UnknownCollaborator):
        registry.get("missing")


def test_create_collaborator_validates_config():
    with pytest.raises(ValueError):
        create_collaborator("build", CollaboratorConfig(kind="command"))
    with pytest.raises(ValueError):
        create_collaborator("deploy", CollaboratorConfig(kind="argocd"))


@pytest.mark.asyncio
async def test_registry_close_releases_every_collaborator():
    closed = []

    class Tracking(StaticCollaborator):
        def __init__(self, name):
            super().__init__()
            self.name = name

        async def close(self):
            closed.append(self.name)

    registry = CollaboratorRegistry({"a": Tracking("a"), "b": Tracking("b")})
    await registry.close()
    assert closed == ["a", "b"]
    assert not hasattr(registry.get("a"), "connect")
