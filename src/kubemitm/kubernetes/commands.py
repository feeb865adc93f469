"""Async wrapper around the external CLIs used during provisioning.

gcloud owns IAM and credentials, linkerd owns sidecar injection; neither has
a maintained Python API worth pulling in, so both are driven as subprocesses.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from kubemitm.errors import CommandFailed
from kubemitm.observability.logging import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Result of a CLI invocation."""

    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs gcloud/linkerd commands with the operator's ambient session."""

    def __init__(self, *, kubeconfig_path: str | Path | None = None) -> None:
        self.kubeconfig_path = self._normalize_kubeconfig_path(kubeconfig_path)

    @staticmethod
    def _normalize_kubeconfig_path(value: str | Path | None) -> str | None:
        """Normalize kubeconfig path values from settings/env vars."""
        if not value:
            return None
        raw = str(value).strip()
        if not raw:
            return None
        return str(Path(os.path.expandvars(raw)).expanduser())

    async def run(self, args: list[str], *, input_text: str | None = None) -> CommandResult:
        """Run a command and capture its output.

        Raises:
            CommandFailed: If the binary is not on PATH.
        """
        binary = shutil.which(args[0])
        if binary is None:
            raise CommandFailed(
                f"{args[0]} CLI not found on PATH",
                code="cli_missing",
                details={"binary": args[0]},
            )

        env = os.environ.copy()
        if self.kubeconfig_path:
            env["KUBECONFIG"] = self.kubeconfig_path

        log.debug("command_started", command=" ".join(args))
        process = await asyncio.create_subprocess_exec(
            binary,
            *args[1:],
            stdin=asyncio.subprocess.PIPE if input_text is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        stdout, stderr = await process.communicate(
            input=input_text.encode() if input_text is not None else None
        )
        result = CommandResult(
            stdout=stdout.decode(errors="replace").strip() if stdout else "",
            stderr=stderr.decode(errors="replace").strip() if stderr else "",
            returncode=process.returncode or 0,
        )
        log.debug("command_finished", command=args[0], returncode=result.returncode)
        return result

    async def check(self, args: list[str], *, input_text: str | None = None) -> CommandResult:
        """Run a command and raise CommandFailed on a non-zero exit."""
        result = await self.run(args, input_text=input_text)
        if not result.ok:
            raise CommandFailed(
                f"{' '.join(args[:3])} failed: {result.stderr[:500] or result.stdout[:500]}",
                details={"returncode": result.returncode},
            )
        return result


__all__ = ["CommandResult", "CommandRunner"]
