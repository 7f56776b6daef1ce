"""Capability set shared by every managed service."""
from __future__ import annotations

import threading
from typing import Protocol, runtime_checkable

from ..network import Addr
from .process import ServiceState


@runtime_checkable
class Service(Protocol):
    """A long-running process owned by an integration."""

    @property
    def state(self) -> ServiceState: ...

    def run(self) -> None: ...

    def wait_ready(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bool: ...

    def err(self) -> BaseException | None: ...

    def shutdown(self, timeout: float = ...) -> None: ...


@runtime_checkable
class Auth(Protocol):
    """Anything that can tell dependents where the auth service listens."""

    def auth_addr(self) -> Addr: ...


__all__ = ["Auth", "Service"]
