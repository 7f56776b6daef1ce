"""Thin wrapper around the ``tctl`` administrative CLI."""
from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import AdminCommandError

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0

CA_PIN_PATTERN = re.compile(r"CA pin\s+(sha256:[a-fA-F0-9]+)")

Resource = Mapping[str, object]


@dataclass(slots=True)
class Tctl:
    """Run ``tctl`` against one auth server using that server's config file."""

    path: str
    auth_server: str
    config_path: Path | None = None
    timeout: float = DEFAULT_COMMAND_TIMEOUT

    def create(self, resources: Sequence[Resource], *, force: bool = True) -> None:
        """Create (or overwrite, when *force*) declarative *resources*."""
        if not resources:
            return
        documents = yaml.safe_dump_all(
            [dict(resource) for resource in resources],
            explicit_start=True,
            sort_keys=False,
        )
        args = ["create"]
        if force:
            args.append("-f")
        self._run(args, input_text=documents)

    def sign(self, user: str, out_path: str | Path, *, ttl: str | None = None) -> None:
        """Write an identity file for *user* to *out_path*."""
        args = [
            "auth",
            "sign",
            "--user",
            user,
            "--format",
            "file",
            "--overwrite",
            "--out",
            str(out_path),
        ]
        if ttl is not None:
            args.extend(["--ttl", ttl])
        self._run(args)

    def get_ca_pin(self) -> str:
        """Return the auth server's CA pin as reported by ``tctl status``."""
        result = self._run(["status"])
        match = CA_PIN_PATTERN.search(result.stdout or "")
        if match is None:
            raise AdminCommandError("tctl status output does not contain a CA pin.")
        return match.group(1)

    # ------------------------------------------------------------------
    def base_args(self) -> list[str]:
        """Return the binary and connection flags shared by every call."""
        args = [self.path]
        if self.config_path is not None:
            args.extend(["--config", str(self.config_path)])
        if self.auth_server:
            args.extend(["--auth-server", self.auth_server])
        return args

    def _run(
        self,
        args: Sequence[str],
        *,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [*self.base_args(), *args]
        error_prefix = f"tctl {' '.join(args)}"
        LOGGER.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise AdminCommandError(f"{self.path} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise AdminCommandError(f"{error_prefix} timed out after {self.timeout}s") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise AdminCommandError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["CA_PIN_PATTERN", "Resource", "Tctl"]
