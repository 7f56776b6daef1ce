"""Proxy service variant."""
from __future__ import annotations

import threading
from pathlib import Path

from ..network import Addr
from .process import READY_PATTERN, SERVICE_SHUTDOWN_TIMEOUT, ServiceProcess, ServiceState


class ProxyService:
    """Web and reverse-tunnel proxy joined to an auth service."""

    def __init__(
        self,
        binary_path: str | Path,
        config_path: str | Path,
        *,
        web_addr: Addr,
        tunnel_addr: Addr,
    ) -> None:
        """Prepare the proxy process listening on the given addresses."""
        self._web_addr = web_addr
        self._tunnel_addr = tunnel_addr
        self._process = ServiceProcess(
            "proxy",
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

    def web_proxy_addr(self) -> Addr:
        """Return the HTTPS web listen address."""
        return self._web_addr

    def tunnel_addr(self) -> Addr:
        """Return the reverse tunnel listen address."""
        return self._tunnel_addr

    def run(self) -> None:
        """Start the proxy process."""
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
        """Stop the proxy process."""
        self._process.shutdown(timeout)


__all__ = ["ProxyService"]
