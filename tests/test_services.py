"""Tests for managed service processes, driven by the fake ``teleport`` script."""
from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from ephemeral_cluster.errors import ServiceError
from ephemeral_cluster.network import Addr
from ephemeral_cluster.services import (
    Auth,
    AuthService,
    ProxyService,
    Service,
    ServiceProcess,
    ServiceState,
    SSHService,
)
from ephemeral_cluster.services.auth import AUTH_STARTING_PATTERN

if TYPE_CHECKING:
    from conftest import FakeTeleport


def _config(tmp_path: Path, kind: str) -> Path:
    path = tmp_path / f"teleport-{kind}-test.yaml"
    path.write_text("version: v2\n")
    return path


def test_auth_service_reports_address_and_readiness(
    tmp_path: Path, fake_teleport: FakeTeleport
) -> None:
    """The auth address is parsed from the log before readiness is declared."""
    auth = AuthService(fake_teleport.paths.teleport, _config(tmp_path, "auth"))
    assert auth.auth_addr().is_empty()

    auth.run()
    try:
        assert auth.wait_ready(10)
        assert auth.state is ServiceState.READY
        assert auth.auth_addr() == Addr(host="127.0.0.1", port=fake_teleport.auth_port)
        assert auth.err() is None
    finally:
        auth.shutdown()

    assert auth.state is ServiceState.SHUT_DOWN
    assert auth.err() is None
    assert fake_teleport.events() == ["start auth", "stop auth"]


def test_proxy_and_ssh_services_expose_addresses(
    tmp_path: Path, fake_teleport: FakeTeleport
) -> None:
    """Dependents report the addresses they were configured with."""
    web = Addr("127.0.0.1", "3080")
    tunnel = Addr("127.0.0.1", "3024")
    node = Addr("127.0.0.1", "3022")
    proxy = ProxyService(
        fake_teleport.paths.teleport,
        _config(tmp_path, "proxy"),
        web_addr=web,
        tunnel_addr=tunnel,
    )
    ssh = SSHService(fake_teleport.paths.teleport, _config(tmp_path, "ssh"), ssh_addr=node)

    assert proxy.web_proxy_addr() == web
    assert proxy.tunnel_addr() == tunnel
    assert ssh.ssh_addr() == node

    proxy.run()
    ssh.run()
    try:
        assert proxy.wait_ready(10)
        assert ssh.wait_ready(10)
    finally:
        ssh.shutdown()
        proxy.shutdown()

    assert fake_teleport.events()[-2:] == ["stop ssh", "stop proxy"]


def test_services_satisfy_the_capability_protocols(tmp_path: Path) -> None:
    """Every variant is a Service; only auth is an Auth."""
    auth = AuthService("teleport", _config(tmp_path, "auth"))
    proxy = ProxyService(
        "teleport", _config(tmp_path, "proxy"), web_addr=Addr(), tunnel_addr=Addr()
    )
    ssh = SSHService("teleport", _config(tmp_path, "ssh"), ssh_addr=Addr())

    for service in (auth, proxy, ssh):
        assert isinstance(service, Service)
    assert isinstance(auth, Auth)
    assert not isinstance(ssh, Auth)


def test_wait_ready_times_out(
    tmp_path: Path, fake_teleport: FakeTeleport, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A service that never reports readiness times out without an error."""
    monkeypatch.setenv("FAKE_NEVER_READY", "1")
    auth = AuthService(fake_teleport.paths.teleport, _config(tmp_path, "auth"))
    auth.run()
    try:
        started = time.monotonic()
        assert auth.wait_ready(2.0) is False
        elapsed = time.monotonic() - started
        assert 2.0 <= elapsed < 3.0
        assert auth.err() is None
        assert auth.state is ServiceState.RUNNING
        # The address line arrives even though readiness never does.
        assert not auth.auth_addr().is_empty()
    finally:
        auth.shutdown()


def test_wait_ready_honours_cancellation(
    tmp_path: Path, fake_teleport: FakeTeleport, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Setting the cancel event abandons the wait."""
    monkeypatch.setenv("FAKE_NEVER_READY", "1")
    auth = AuthService(fake_teleport.paths.teleport, _config(tmp_path, "auth"))
    cancel = threading.Event()
    auth.run()
    try:
        threading.Timer(0.2, cancel.set).start()
        assert auth.wait_ready(None, cancel) is False
    finally:
        auth.shutdown()


def test_process_exit_is_reported(
    tmp_path: Path, fake_teleport: FakeTeleport, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An early exit fails readiness and surfaces the process output."""
    monkeypatch.setenv("FAKE_FAIL", "proxy")
    proxy = ProxyService(
        fake_teleport.paths.teleport,
        _config(tmp_path, "proxy"),
        web_addr=Addr(),
        tunnel_addr=Addr(),
    )
    proxy.run()

    assert proxy.wait_ready(10) is False
    error = proxy.err()
    assert isinstance(error, ServiceError)
    assert "boom" in str(error)
    assert proxy.state is ServiceState.FAILED
    proxy.shutdown()


def test_run_twice_is_rejected(tmp_path: Path, fake_teleport: FakeTeleport) -> None:
    """A service process starts at most once."""
    auth = AuthService(fake_teleport.paths.teleport, _config(tmp_path, "auth"))
    auth.run()
    try:
        with pytest.raises(ServiceError):
            auth.run()
    finally:
        auth.shutdown()


def test_missing_binary_fails_to_start(tmp_path: Path) -> None:
    """Start failures raise and are remembered."""
    process = ServiceProcess(
        "auth",
        tmp_path / "missing-teleport",
        _config(tmp_path, "auth"),
        ready_check=lambda line: True,
    )

    with pytest.raises(ServiceError):
        process.run()
    assert process.state is ServiceState.FAILED
    assert isinstance(process.err(), ServiceError)
    assert process.wait_ready(1) is False


def test_shutdown_kills_unresponsive_process(
    tmp_path: Path, fake_teleport: FakeTeleport, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A process ignoring the stop signal is killed and the overrun reported."""
    monkeypatch.setenv("FAKE_IGNORE_QUIT", "1")
    auth = AuthService(fake_teleport.paths.teleport, _config(tmp_path, "auth"))
    auth.run()
    assert auth.wait_ready(10)

    with pytest.raises(ServiceError, match="killed"):
        auth.shutdown(0.5)
    assert auth.state is ServiceState.SHUT_DOWN


def test_shutdown_is_idempotent_and_safe_before_run(tmp_path: Path) -> None:
    """Shutting down an unstarted or stopped service is a no-op."""
    auth = AuthService("teleport", _config(tmp_path, "auth"))

    auth.shutdown()
    auth.shutdown()


def test_command_line(tmp_path: Path) -> None:
    """Services run ``teleport start`` in debug mode with their config."""
    config = _config(tmp_path, "ssh")
    process = ServiceProcess("ssh", "/usr/bin/teleport", config, ready_check=lambda line: False)

    assert process.command() == ["/usr/bin/teleport", "start", "--debug", "--config", str(config)]


def test_auth_starting_pattern() -> None:
    """The auth port is taken from the startup log line."""
    line = "INFO [AUTH:1] Auth service 9.1.3:v9.1.3-0-g1a2b3c4 is starting on 127.0.0.1:41234."

    match = AUTH_STARTING_PATTERN.search(line)

    assert match is not None
    assert match.group(1) == "41234"


def test_undecodable_output_does_not_stall_readiness(
    tmp_path: Path, fake_teleport: FakeTeleport, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Bytes that are not UTF-8 are replaced and the ready line is still seen."""
    monkeypatch.setenv("FAKE_GARBLED_OUTPUT", "1")
    proxy = ProxyService(
        fake_teleport.paths.teleport,
        _config(tmp_path, "proxy"),
        web_addr=Addr(),
        tunnel_addr=Addr(),
    )
    proxy.run()
    try:
        assert proxy.wait_ready(10)
        assert proxy.err() is None
    finally:
        proxy.shutdown()


def test_output_reader_failure_marks_service_failed(
    tmp_path: Path, fake_teleport: FakeTeleport
) -> None:
    """An error while consuming output fails the service instead of hanging it."""

    def broken_check(line: str) -> bool:
        raise RuntimeError("parser exploded")

    process = ServiceProcess(
        "auth",
        fake_teleport.paths.teleport,
        _config(tmp_path, "auth"),
        ready_check=broken_check,
    )
    process.run()
    try:
        started = time.monotonic()
        assert process.wait_ready(10) is False
        assert time.monotonic() - started < 5
        error = process.err()
        assert isinstance(error, ServiceError)
        assert "parser exploded" in str(error)
        assert process.state is ServiceState.FAILED
    finally:
        process.shutdown()
