"""Collaborator that runs a shell command, e.g. ``docker buildx build --push``."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import signal
import tempfile
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..constants import OUTPUT_FILE_ENV
from ..contracts import CollaboratorInterface, InvocationRequest, InvocationResult
from ..expressions import EvaluationContext, Expression, Template, to_string
from ..scopes import mask_secrets
from .base import Collaborator

logger = logging.getLogger(__name__)

_ENV_NAME_RE = re.compile(r"[^A-Za-z0-9_]")


def env_name(name: str) -> str:
    return _ENV_NAME_RE.sub("_", name).upper()


def parse_output_file(text: str) -> Dict[str, str]:
    """Parse ``key=value`` lines and ``key<<DELIM`` multi-line blocks."""
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delimiter = line.split("<<", 1)
            block = []
            while i < len(lines) and lines[i] != delimiter:
                block.append(lines[i])
                i += 1
            i += 1  # skip delimiter
            outputs[key.strip()] = "\n".join(block)
        elif "=" in line:
            key, value = line.split("=", 1)
            outputs[key.strip()] = value
    return outputs


class CommandCollaborator(Collaborator):
    """Runs a command template as a subprocess.

    The template may interpolate ``${{ inputs.<name> }}`` and ``${{ env.X }}``;
    interpolated values are shell-quoted, so they are always single words.
    Inputs are also exported as ``INPUT_<NAME>`` and secrets under their own
    upper-cased names. The command reports outputs by writing ``key=value``
    lines to the file named by ``$GANTRY_OUTPUT``.
    """

    def __init__(
        self,
        command: str,
        cwd: Optional[str] = None,
        interface: Optional[CollaboratorInterface] = None,
    ) -> None:
        self.command = Template.parse(command)
        self.cwd = cwd
        self.interface = interface
        self._processes: Dict[Tuple[str, str], asyncio.subprocess.Process] = {}

    def _environment(self, request: InvocationRequest, output_path: str) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(request.env)
        for name, value in request.inputs.items():
            env[f"INPUT_{env_name(name)}"] = to_string(value)
        for name, secret in request.secrets.items():
            env[env_name(name)] = secret.get_secret_value()
        env[OUTPUT_FILE_ENV] = output_path
        env["GANTRY_RUN_ID"] = request.run_id
        env["GANTRY_JOB_ID"] = request.job_id
        return env

    def render(self, request: InvocationRequest) -> str:
        context = EvaluationContext(
            namespaces={"inputs": dict(request.inputs), "env": dict(request.env)}
        )
        return "".join(
            shlex.quote(to_string(part.evaluate(context)))
            if isinstance(part, Expression)
            else part
            for part in self.command.parts
        )

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        command = self.render(request)
        secrets = list(request.secrets.values())
        with tempfile.TemporaryDirectory(prefix="gantry-") as workdir:
            output_path = str(Path(workdir) / "outputs")
            Path(output_path).touch()
            logger.info(
                f"Running command for job {request.job_id} run_id={request.run_id}: "
                f"{mask_secrets(command, secrets)}"
            )
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=self.cwd,
                env=self._environment(request, output_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
            key = (request.run_id, request.job_id)
            self._processes[key] = process
            try:
                stdout, _ = await process.communicate()
            finally:
                self._processes.pop(key, None)
            log = mask_secrets(stdout.decode(errors="replace"), secrets)
            if log:
                logger.debug(f"Output of job {request.job_id}:\n{log}")
            outputs = parse_output_file(Path(output_path).read_text())

        if process.returncode != 0:
            tail = "\n".join(log.splitlines()[-20:])
            return InvocationResult.failed(
                f"Command exited with status {process.returncode}\n{tail}".rstrip(),
                outputs=outputs,
            )
        return InvocationResult.succeeded(outputs)

    async def cancel(self, request: InvocationRequest) -> bool:
        process = self._processes.get((request.run_id, request.job_id))
        if process is None or process.returncode is not None:
            return True
        # the shell runs in its own session; signal everything it started
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            _signal_group(process, signal.SIGKILL)
            return False
        return True


def _signal_group(process: asyncio.subprocess.Process, signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        pass
