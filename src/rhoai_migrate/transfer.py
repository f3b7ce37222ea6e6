from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shlex
import shutil
import subprocess
from typing import IO

from .models import ExecResult

log = logging.getLogger(__name__)


class OcCommandError(RuntimeError):
    """Raised when the oc binary is missing or one of its commands fails."""


@dataclass(frozen=True)
class OcCommandRunner:
    """Thin wrapper around the ``oc`` binary for the operations the Python client cannot stream.

    Directory sync (``oc rsync``) and stdin piping (``oc exec -i``) stay on the CLI; every
    invocation reuses the kubeconfig and context the API client was loaded with.
    """

    binary: str = "oc"
    kubeconfig_path: str | None = None
    context: str | None = None

    def require(self) -> str:
        resolved = shutil.which(self.binary)
        if resolved is None:
            raise OcCommandError(f"{self.binary} not found. Please install it.")
        return resolved

    def rsync(self, *, namespace: str, source: str, destination: str, container: str | None = None) -> None:
        command = ["rsync", "-n", namespace]
        if container:
            command.extend(["-c", container])
        command.extend([source, destination])
        completed = self._run(command)
        if completed.returncode != 0:
            raise OcCommandError(completed.stderr.strip() or completed.stdout.strip() or "oc rsync failed")

    def exec_with_input(
        self,
        *,
        namespace: str,
        pod_name: str,
        command: list[str],
        input_handle: IO[bytes],
        container: str | None = None,
    ) -> ExecResult:
        oc_command = ["exec", "-i", "-n", namespace]
        if container:
            oc_command.extend(["-c", container])
        oc_command.extend([pod_name, "--", *command])
        completed = self._run(oc_command, stdin=input_handle)
        return ExecResult(returncode=completed.returncode, stdout=completed.stdout, stderr=completed.stderr)

    def _base_command(self) -> list[str]:
        command = [self.require()]
        kubeconfig_path = self.kubeconfig_path.strip() if self.kubeconfig_path else None
        if kubeconfig_path:
            resolved_kubeconfig_path = str(Path(kubeconfig_path).expanduser())
            kubeconfig_file = Path(resolved_kubeconfig_path)
            if not kubeconfig_file.is_file():
                raise OcCommandError(f"kubeconfig path is not a file: {resolved_kubeconfig_path}")
            if not os.access(kubeconfig_file, os.R_OK):
                raise OcCommandError(f"kubeconfig path is not readable: {resolved_kubeconfig_path}")
            command.extend(["--kubeconfig", resolved_kubeconfig_path])
        if self.context:
            command.extend(["--context", self.context])
        return command

    def _run(self, arguments: list[str], *, stdin: IO[bytes] | None = None) -> subprocess.CompletedProcess[str]:
        command = [*self._base_command(), *arguments]
        log.debug("Running: %s", _redact(command))
        if stdin is None:
            return subprocess.run(command, check=False, capture_output=True, text=True)

        completed = subprocess.run(command, check=False, capture_output=True, stdin=stdin)
        return subprocess.CompletedProcess(
            args=completed.args,
            returncode=completed.returncode,
            stdout=completed.stdout.decode("utf-8", errors="replace"),
            stderr=completed.stderr.decode("utf-8", errors="replace"),
        )


def _redact(command: list[str]) -> str:
    rendered: list[str] = []
    for token in command:
        if token.startswith("-p") and len(token) > 2:
            rendered.append("-p******")
        else:
            rendered.append(shlex.quote(token))
    return " ".join(rendered)
