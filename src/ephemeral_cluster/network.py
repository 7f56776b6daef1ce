"""Listen address helpers and free TCP port discovery."""
from __future__ import annotations

import socket
from contextlib import ExitStack
from dataclasses import dataclass

LOOPBACK_HOST = "127.0.0.1"


@dataclass(frozen=True, slots=True)
class Addr:
    """A ``host:port`` pair kept as strings, exactly as written into configs."""

    host: str = ""
    port: str = ""

    def is_empty(self) -> bool:
        """Return True when no address has been assigned yet."""
        return self.host == "" and self.port == ""

    def __str__(self) -> str:
        """Return the canonical ``host:port`` form."""
        return f"{self.host}:{self.port}"


def get_free_tcp_ports(count: int, *, host: str = LOOPBACK_HOST) -> list[Addr]:
    """Return *count* distinct free addresses.

    All listeners stay open until every port is known, which keeps one
    allocation from handing out the same port twice.
    """
    if count < 1:
        raise ValueError("Port count must be a positive integer.")
    addrs: list[Addr] = []
    with ExitStack() as stack:
        for _ in range(count):
            listener = stack.enter_context(socket.socket(socket.AF_INET, socket.SOCK_STREAM))
            listener.bind((host, 0))
            listener.listen(1)
            bound_host, bound_port = listener.getsockname()[:2]
            addrs.append(Addr(host=str(bound_host), port=str(bound_port)))
    return addrs


__all__ = ["Addr", "LOOPBACK_HOST", "get_free_tcp_ports"]
