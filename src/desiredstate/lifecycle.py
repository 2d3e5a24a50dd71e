"""Deployment lifecycle through docker-compose.

The orchestrator is the only source of truth for whether a deployment is
running; nothing about process state is tracked locally. Every command
runs with the deployment directory as its working directory and its exit
status is the success signal.

Usage:
    lifecycle = ComposeLifecycle()
    lifecycle.ensure_running(Path("deploy/web"))
    lifecycle.tear_down(Path("deploy/web"))
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from .errors import OrchestratorError

logger = logging.getLogger("desiredstate.lifecycle")

DESCRIPTOR_NAMES = (
    "docker-compose.yaml",
    "docker-compose.yml",
    "compose.yaml",
    "compose.yml",
)


def has_descriptor(directory: Path) -> bool:
    """Whether a directory declares a compose deployment."""
    return any((Path(directory) / name).is_file() for name in DESCRIPTOR_NAMES)


class ComposeLifecycle:
    """Bring compose deployments up and down.

    Args:
        command: The compose executable and any leading arguments, e.g.
            ``["docker-compose"]`` or ``["docker", "compose"]``.
        timeout: Seconds before a single command is abandoned.
    """

    def __init__(self, command: Optional[Sequence[str]] = None, timeout: float = 300.0):
        self._command = list(command or ["docker-compose"])
        self._timeout = timeout

    def _run(self, directory: Path, *args: str) -> subprocess.CompletedProcess:
        """Run a compose subcommand inside a directory.

        Raises:
            OrchestratorError: If the command cannot run, times out, or
                exits non-zero.
        """
        cmd = [*self._command, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(directory),
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise OrchestratorError(f"{self._command[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise OrchestratorError(
                f"'{' '.join(cmd)}' timed out after {self._timeout:.0f}s in {directory}"
            ) from exc
        except OSError as exc:
            raise OrchestratorError(f"Cannot run '{' '.join(cmd)}': {exc}") from exc

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise OrchestratorError(
                f"'{' '.join(cmd)}' failed in {directory} (exit {result.returncode}): {stderr}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result

    def is_running(self, directory: Path) -> bool:
        """Ask the orchestrator whether any service of the deployment is up."""
        result = self._run(directory, "ps", "-q")
        return bool((result.stdout or "").strip())

    def ensure_running(self, directory: Path) -> None:
        """Start the deployment unless something is already running.

        Raises:
            OrchestratorError: If querying or starting fails.
        """
        if self.is_running(directory):
            return
        logger.info("%s: starting deployment", Path(directory).name)
        self._run(directory, "up", "--detach", "--remove-orphans")

    def tear_down(self, directory: Path) -> None:
        """Stop and remove the deployment's services.

        Raises:
            OrchestratorError: If the command fails. Callers log this and
                carry on.
        """
        logger.info("%s: tearing down deployment", Path(directory).name)
        self._run(directory, "down")
