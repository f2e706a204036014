"""GitOps deploy/sync collaborator speaking the Argo CD REST API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..contracts import (
    CollaboratorInterface,
    InputSpec,
    InputType,
    InvocationRequest,
    InvocationResult,
    SecretSpec,
)
from .base import Collaborator

logger = logging.getLogger(__name__)

TOKEN_SECRET = "ARGOCD_TOKEN"

ARGOCD_INTERFACE = CollaboratorInterface(
    inputs={
        "action": InputSpec(
            name="action", type=InputType.CHOICE, options=("sync", "remove"), default="sync"
        ),
        "environment": InputSpec(name="environment", required=True),
        "application": InputSpec(name="application"),
        "revision": InputSpec(name="revision"),
        "dry-run": InputSpec(name="dry-run", type=InputType.BOOLEAN, default=False),
    },
    secrets={TOKEN_SECRET: SecretSpec(name=TOKEN_SECRET)},
)


class ArgoCDCollaborator(Collaborator):
    """Synchronises or removes an Argo CD application.

    ``sync`` triggers ``POST /api/v1/applications/<app>/sync``; ``remove``
    deletes the application with cascade. With ``dry-run`` a sync is
    requested as a dry run and a removal only checks the application exists.
    """

    interface = ARGOCD_INTERFACE

    def __init__(
        self,
        server: str,
        app_prefix: Optional[str] = None,
        verify_tls: bool = True,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.server = server.rstrip("/")
        self.app_prefix = app_prefix
        self._client = httpx.AsyncClient(
            base_url=self.server,
            verify=verify_tls,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def application_name(self, inputs: Dict[str, Any]) -> str:
        if inputs.get("application"):
            return str(inputs["application"])
        environment = str(inputs["environment"])
        return f"{self.app_prefix}-{environment}" if self.app_prefix else environment

    @staticmethod
    def _headers(request: InvocationRequest) -> Dict[str, str]:
        token = request.secrets[TOKEN_SECRET].get_secret_value()
        return {"Authorization": f"Bearer {token}"}

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        inputs = request.inputs
        app = self.application_name(inputs)
        action = inputs.get("action", "sync")
        dry_run = bool(inputs.get("dry-run", False))
        headers = self._headers(request)
        logger.info(
            f"Argo CD {action} of {app} (dry_run={dry_run}) for job {request.job_id} "
            f"run_id={request.run_id}"
        )
        try:
            if action == "sync":
                body: Dict[str, Any] = {"dryRun": dry_run, "prune": True}
                if inputs.get("revision"):
                    body["revision"] = inputs["revision"]
                response = await self._client.post(
                    f"/api/v1/applications/{app}/sync", json=body, headers=headers
                )
                response.raise_for_status()
                return InvocationResult.succeeded(self._sync_outputs(app, response.json()))

            if dry_run:
                response = await self._client.get(
                    f"/api/v1/applications/{app}", headers=headers
                )
                response.raise_for_status()
                return InvocationResult.succeeded({"application": app, "removed": "false"})

            response = await self._client.delete(
                f"/api/v1/applications/{app}", params={"cascade": "true"}, headers=headers
            )
            response.raise_for_status()
            return InvocationResult.succeeded({"application": app, "removed": "true"})
        except httpx.HTTPStatusError as exc:
            return InvocationResult.failed(
                f"Argo CD {action} of {app} failed with status "
                f"{exc.response.status_code}: {exc.response.text[:200]}"
            )
        except httpx.RequestError as exc:
            return InvocationResult.failed(f"Argo CD {action} of {app} failed: {exc}")

    @staticmethod
    def _sync_outputs(app: str, data: Dict[str, Any]) -> Dict[str, str]:
        status = data.get("status") or {}
        sync = status.get("sync") or {}
        operation = status.get("operationState") or {}
        return {
            "application": app,
            "revision": str(sync.get("revision") or ""),
            "sync-status": str(sync.get("status") or ""),
            "phase": str(operation.get("phase") or ""),
        }

    async def cancel(self, request: InvocationRequest) -> bool:
        app = self.application_name(request.inputs)
        try:
            response = await self._client.delete(
                f"/api/v1/applications/{app}/operation", headers=self._headers(request)
            )
        except httpx.RequestError as exc:
            logger.warning(f"Could not terminate Argo CD operation on {app}: {exc}")
            return False
        return response.is_success
