"""Tests for address helpers and port discovery."""
from __future__ import annotations

import socket

import pytest

from ephemeral_cluster.network import LOOPBACK_HOST, Addr, get_free_tcp_ports


def test_addr_string_form() -> None:
    """Addresses render as ``host:port``."""
    assert str(Addr(host="127.0.0.1", port="3025")) == "127.0.0.1:3025"


def test_empty_addr() -> None:
    """The default address is empty."""
    assert Addr().is_empty()
    assert not Addr(host=LOOPBACK_HOST, port="1").is_empty()


def test_free_port_is_bindable() -> None:
    """The returned port can be bound right away."""
    (addr,) = get_free_tcp_ports(1)

    assert addr.host == LOOPBACK_HOST
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((addr.host, int(addr.port)))


def test_free_ports_are_distinct() -> None:
    """One allocation never hands out the same port twice."""
    addrs = get_free_tcp_ports(5)

    assert len({addr.port for addr in addrs}) == 5


def test_free_ports_rejects_non_positive_count() -> None:
    """At least one port must be requested."""
    with pytest.raises(ValueError):
        get_free_tcp_ports(0)
