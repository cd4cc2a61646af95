"""
Process runner used by every probe that shells out.

Probes never call subprocess directly; they receive a runner and pass it an
argv list. Tests substitute a fake that returns canned output.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence

logger = logging.getLogger("health_agent")


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, like a shell ``2>&1``."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class ProcessRunner(Protocol):
    def run(self, args: Sequence[str], env: Optional[Mapping[str, str]] = None) -> CommandResult: ...


class SubprocessRunner:
    """Runs commands synchronously with ``subprocess.run``.

    No timeout is applied unless one is configured: a hung tool blocks the
    calling thread for as long as it hangs.
    """

    def __init__(self, *, timeout_seconds: Optional[float] = None, cwd: Optional[str] = None) -> None:
        self._timeout = timeout_seconds
        self._cwd = cwd

    def run(self, args: Sequence[str], env: Optional[Mapping[str, str]] = None) -> CommandResult:
        """``env`` is layered over the current environment."""
        argv = [str(a) for a in args]
        logger.debug("[runner] exec %s", " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                cwd=self._cwd,
                env={**os.environ, **env} if env else None,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(returncode=127, stderr=str(e))
        except subprocess.TimeoutExpired:
            return CommandResult(returncode=124, stderr=f"command timed out after {self._timeout}s")
        return CommandResult(returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")
