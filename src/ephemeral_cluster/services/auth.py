"""Auth service variant."""
from __future__ import annotations

import re
import threading
from pathlib import Path

from ..network import LOOPBACK_HOST, Addr
from .process import READY_PATTERN, SERVICE_SHUTDOWN_TIMEOUT, ServiceProcess, ServiceState

AUTH_STARTING_PATTERN = re.compile(r"Auth service [^ ]+ is starting on [^ ]+:(\d+)")


class AuthService:
    """The cluster's auth server.

    It listens on an OS-assigned port, so its address is only known once the
    process logs it. Readiness requires that address.
    """

    def __init__(self, binary_path: str | Path, config_path: str | Path) -> None:
        """Prepare the auth process for *config_path*."""
        self._addr_lock = threading.Lock()
        self._auth_addr = Addr()
        self._process = ServiceProcess(
            "auth",
            binary_path,
            config_path,
            ready_check=self._check_line,
        )

    @property
    def config_path(self) -> Path:
        """Return the rendered config file the process runs with."""
        return self._process.config_path

    @property
    def state(self) -> ServiceState:
        """Return the current lifecycle state."""
        return self._process.state

    def auth_addr(self) -> Addr:
        """Return the auth listen address, empty until the process logs it."""
        with self._addr_lock:
            return self._auth_addr

    def run(self) -> None:
        """Start the auth process."""
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
        """Stop the auth process."""
        self._process.shutdown(timeout)

    def _check_line(self, line: str) -> bool:
        with self._addr_lock:
            if self._auth_addr.is_empty():
                match = AUTH_STARTING_PATTERN.search(line)
                if match is not None:
                    self._auth_addr = Addr(host=LOOPBACK_HOST, port=match.group(1))
                return False
        return READY_PATTERN.search(line) is not None


__all__ = ["AUTH_STARTING_PATTERN", "AuthService"]
