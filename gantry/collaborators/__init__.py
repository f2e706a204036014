"""Collaborators perform the work behind each job's ``uses:``."""

from __future__ import annotations

from typing import Dict, Iterator, Optional

from ..config import CollaboratorConfig, GantryConfig, load_config
from ..contracts import CollaboratorInterface, InputSpec, InvocationResult, SecretSpec
from ..errors import UnknownCollaborator
from .base import Collaborator
from .command import CommandCollaborator
from .gitops import ArgoCDCollaborator
from .inmemory import CallableCollaborator, StaticCollaborator


class CollaboratorRegistry:
    """Maps the names jobs ``use`` to collaborator instances."""

    def __init__(self, collaborators: Optional[Dict[str, Collaborator]] = None) -> None:
        self._collaborators: Dict[str, Collaborator] = dict(collaborators or {})

    def register(self, name: str, collaborator: Collaborator) -> Collaborator:
        self._collaborators[name] = collaborator
        return collaborator

    def get(self, name: str) -> Collaborator:
        try:
            return self._collaborators[name]
        except KeyError:
            raise UnknownCollaborator(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._collaborators

    def __iter__(self) -> Iterator[str]:
        return iter(self._collaborators)

    async def close(self) -> None:
        for collaborator in self._collaborators.values():
            await collaborator.close()


def _interface(conf: CollaboratorConfig) -> Optional[CollaboratorInterface]:
    if not conf.inputs and not conf.secrets:
        return None
    return CollaboratorInterface(
        inputs={
            name: InputSpec(name=name, **(spec or {})) for name, spec in conf.inputs.items()
        },
        secrets={name: SecretSpec(name=name) for name in conf.secrets},
    )


def create_collaborator(name: str, conf: CollaboratorConfig) -> Collaborator:
    """Factory function to build a collaborator from its configuration."""
    if conf.kind == "static":
        result = InvocationResult(status=conf.status, outputs=conf.outputs, message=conf.message)
        return StaticCollaborator(result, interface=_interface(conf))
    if conf.kind == "command":
        if not conf.command:
            raise ValueError(f"Collaborator '{name}' of kind 'command' needs a command")
        return CommandCollaborator(conf.command, cwd=conf.cwd, interface=_interface(conf))
    if conf.kind == "argocd":
        if not conf.server:
            raise ValueError(f"Collaborator '{name}' of kind 'argocd' needs a server")
        return ArgoCDCollaborator(
            conf.server,
            app_prefix=conf.app_prefix,
            verify_tls=conf.verify_tls,
            timeout=conf.timeout,
        )
    raise ValueError(f"Unsupported collaborator kind: {conf.kind}")


def get_registry(config: Optional[GantryConfig] = None) -> CollaboratorRegistry:
    """Build a registry holding every collaborator named in configuration."""
    config = config or load_config()
    registry = CollaboratorRegistry()
    for name, conf in config.collaborators.items():
        registry.register(name, create_collaborator(name, conf))
    return registry


__all__ = [
    "ArgoCDCollaborator",
    "CallableCollaborator",
    "Collaborator",
    "CollaboratorRegistry",
    "CommandCollaborator",
    "StaticCollaborator",
    "create_collaborator",
    "get_registry",
]
