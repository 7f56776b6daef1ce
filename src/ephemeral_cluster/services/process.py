"""Process supervision shared by every service variant."""
from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from ..errors import ServiceError

LOGGER = logging.getLogger(__name__)

SERVICE_SHUTDOWN_TIMEOUT = 10.0
KILL_WAIT_TIMEOUT = 5.0
READER_JOIN_TIMEOUT = 2.0
POLL_INTERVAL = 0.1
OUTPUT_TAIL_LINES = 20

READY_PATTERN = re.compile(r"The new service has started successfully")

ReadyCheck = Callable[[str], bool]


class ServiceState(Enum):
    """Lifecycle of a managed service."""

    CREATED = "created"
    RUNNING = "running"
    READY = "ready"
    FAILED = "failed"
    SHUT_DOWN = "shut_down"


class ServiceProcess:
    """Run ``teleport start`` for one config file and track its readiness.

    Output (stdout and stderr merged) is consumed by a daemon thread that logs
    each line and hands it to *ready_check*; the first line for which the
    check returns True marks the service ready.
    """

    def __init__(
        self,
        name: str,
        binary_path: str | Path,
        config_path: str | Path,
        *,
        ready_check: ReadyCheck,
    ) -> None:
        """Prepare (but do not start) the process."""
        self.name = name
        self.binary_path = str(binary_path)
        self.config_path = Path(config_path)
        self._ready_check = ready_check
        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._state = ServiceState.CREATED
        self._ready = False
        self._error: BaseException | None = None
        self._shutdown_requested = False
        self._process: subprocess.Popen[str] | None = None
        self._reader: threading.Thread | None = None
        self._tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)

    @property
    def state(self) -> ServiceState:
        """Return the current lifecycle state."""
        with self._lock:
            return self._state

    def command(self) -> list[str]:
        """Return the command line used to start the service."""
        return [self.binary_path, "start", "--debug", "--config", str(self.config_path)]

    def run(self) -> None:
        """Launch the process and return without waiting for readiness."""
        args = self.command()
        with self._lock:
            if self._state is not ServiceState.CREATED:
                raise ServiceError(f"{self.name} service was already started.")
            LOGGER.debug("Running %s", " ".join(args))
            try:
                self._process = subprocess.Popen(  # noqa: S603
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
            except OSError as exc:
                error = ServiceError(f"Failed to start {self.name} service: {exc}")
                self._error = error
                self._state = ServiceState.FAILED
                self._settled.set()
                raise error from exc
            self._state = ServiceState.RUNNING
        LOGGER.info("Started %s service (pid %s)", self.name, self._process.pid)
        self._reader = threading.Thread(
            target=self._consume_output,
            name=f"{self.name}-output",
            daemon=True,
        )
        self._reader.start()

    def wait_ready(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Block until the service is ready, has failed, or the wait is abandoned.

        Returns True only when the service reported readiness. A False result
        with :meth:`err` set means the process failed; otherwise the timeout
        elapsed or *cancel* was set.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._settled.is_set():
            if cancel is not None and cancel.is_set():
                return False
            step = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                step = min(step, remaining)
            self._settled.wait(step)
        with self._lock:
            return self._ready

    def err(self) -> BaseException | None:
        """Return the most recent fatal error, if any."""
        with self._lock:
            return self._error

    def shutdown(self, timeout: float = SERVICE_SHUTDOWN_TIMEOUT) -> None:
        """Stop the process gracefully, killing it if *timeout* expires."""
        with self._lock:
            if self._shutdown_requested or self._state is ServiceState.SHUT_DOWN:
                return
            self._shutdown_requested = True
            process = self._process

        try:
            if process is None or process.poll() is not None:
                return
            LOGGER.info("Stopping %s service (pid %s)", self.name, process.pid)
            self._signal(process, signal.SIGQUIT)
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                LOGGER.warning(
                    "%s service did not stop within %.1fs, killing it", self.name, timeout
                )
                self._signal(process, signal.SIGKILL)
                try:
                    process.wait(timeout=KILL_WAIT_TIMEOUT)
                except subprocess.TimeoutExpired as exc:
                    raise ServiceError(f"{self.name} service survived SIGKILL.") from exc
                raise ServiceError(
                    f"{self.name} service did not shut down within {timeout:.1f}s and was killed."
                ) from None
            # Reap anything left in the process group.
            self._signal(process, signal.SIGKILL)
        finally:
            if self._reader is not None:
                self._reader.join(READER_JOIN_TIMEOUT)
            with self._lock:
                self._state = ServiceState.SHUT_DOWN
            self._settled.set()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _consume_output(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        try:
            for raw in process.stdout:
                line = raw.rstrip()
                if not line:
                    continue
                LOGGER.debug("[%s] %s", self.name, line)
                with self._lock:
                    self._tail.append(line)
                    already_ready = self._ready
                if not already_ready and self._ready_check(line):
                    self._mark_ready()
        except Exception as exc:
            self._on_reader_failure(exc)
            return
        self._on_exit(process.wait())

    def _mark_ready(self) -> None:
        with self._lock:
            if self._state is not ServiceState.RUNNING:
                return
            self._ready = True
            self._state = ServiceState.READY
        LOGGER.info("%s service is ready", self.name)
        self._settled.set()

    def _on_exit(self, returncode: int) -> None:
        with self._lock:
            if self._shutdown_requested:
                return
            tail = "\n".join(self._tail) or "no output"
            self._error = ServiceError(
                f"{self.name} service exited unexpectedly with code {returncode}:\n{tail}"
            )
            self._state = ServiceState.FAILED
        LOGGER.error("%s service exited unexpectedly with code %s", self.name, returncode)
        self._settled.set()

    def _on_reader_failure(self, exc: Exception) -> None:
        with self._lock:
            if self._shutdown_requested:
                return
            self._error = ServiceError(f"Failed to read {self.name} service output: {exc}")
            self._error.__cause__ = exc
            self._ready = False
            self._state = ServiceState.FAILED
        LOGGER.error("Failed to read %s service output", self.name, exc_info=exc)
        self._settled.set()

    @staticmethod
    def _signal(process: subprocess.Popen[str], signum: int) -> None:
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            return
        except PermissionError:
            process.send_signal(signum)


__all__ = [
    "READY_PATTERN",
    "SERVICE_SHUTDOWN_TIMEOUT",
    "ServiceProcess",
    "ServiceState",
]
