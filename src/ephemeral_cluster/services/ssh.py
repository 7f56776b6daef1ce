"""SSH node variant (the workload-access service)."""
from __future__ import annotations

import threading
from pathlib import Path

from ..network import Addr
from .process import READY_PATTERN, SERVICE_SHUTDOWN_TIMEOUT, ServiceProcess, ServiceState


class SSHService:
    """SSH node that joins the cluster through the auth service."""

    def __init__(self, binary_path: str | Path, config_path: str | Path, *, ssh_addr: Addr) -> None:
        """Prepare the node process listening on *ssh_addr*."""
        self._ssh_addr = ssh_addr
        self._process = ServiceProcess(
            "ssh",
            binary_path,
            config_path,
            ready_check=lambda line: READY_PATTERN.search(line) is not None,
        )

    @property
    def config_path(self) -> Path:
        """Return the rendered config file the process runs with."""
        return self._process.config_path

    @property
    def state(self) -> ServiceState:
        """Return the current lifecycle state."""
        return self._process.state

    def ssh_addr(self) -> Addr:
        """Return the node's SSH listen address."""
        return self._ssh_addr

    def run(self) -> None:
        """Start the node process."""
        self._process.run()

    def wait_ready(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Wait for readiness; see :meth:`ServiceProcess.wait_ready`."""
        return self._process.wait_ready(timeout, cancel)

    def err(self) -> BaseException | None:
        """Return the last fatal error."""
        return self._process.err()

    def shutdown(self, timeout: float = SERVICE_SHUTDOWN_TIMEOUT) -> None:
        """Stop the node process."""
        self._process.shutdown(timeout)


__all__ = ["SSHService"]
