"""Runner for the ``tsh`` client CLI."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import AdminCommandError

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0


@dataclass(slots=True)
class Tsh:
    """Invoke ``tsh`` through a proxy with an identity file."""

    path: str
    proxy: str
    identity: Path | None = None
    insecure: bool = False
    timeout: float = DEFAULT_COMMAND_TIMEOUT

    def base_args(self) -> list[str]:
        """Return the binary and connection flags shared by every call."""
        args = [self.path, "--proxy", self.proxy]
        if self.identity is not None:
            args.extend(["--identity", str(self.identity)])
        if self.insecure:
            args.append("--insecure")
        return args

    def ssh(self, target: str, *command: str) -> subprocess.CompletedProcess[str]:
        """Run *command* on ``user@host`` *target* and return the result."""
        args = [*self.base_args(), "ssh", target, *command]
        LOGGER.debug("Running %s", " ".join(args))
        try:
            return subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise AdminCommandError(f"{self.path} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise AdminCommandError(f"tsh ssh {target} timed out after {self.timeout}s") from exc

    def check_call(self, target: str, *command: str) -> str:
        """Like :meth:`ssh` but raise unless the remote command succeeds."""
        result = self.ssh(target, *command)
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise AdminCommandError(
                f"tsh ssh {target} failed (exit {result.returncode}): {message}"
            )
        return result.stdout


__all__ = ["Tsh"]
