"""Typer-powered developer CLI for ``ephemeral-cluster``.

The commands wrap the library for interactive use: inspect which binaries the
environment resolves to, fetch a release, or bring a throwaway cluster up and
keep it running until interrupted.
"""
from __future__ import annotations

import shutil
import textwrap
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, downloads
from .config import ConfigError, HarnessConfig, load_config
from .errors import (
    DiscoveryError,
    DownloadError,
    IntegrationError,
    LicenseError,
    ProbeError,
    ReadinessTimeoutError,
    VersionMismatchError,
)
from .exit_codes import ExitCode
from .integration import Integration
from .logging import configure_logging
from .services import Service
from .versions import get_binary_version

console = Console()

HOLD_POLL_INTERVAL = 0.5

# Failures caused by the host rather than by the cluster.
ENVIRONMENT_ERRORS: tuple[type[IntegrationError], ...] = (
    ConfigError,
    DiscoveryError,
    DownloadError,
    LicenseError,
    ProbeError,
    VersionMismatchError,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to the YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Ephemeral Teleport clusters for integration testing.

        Binaries, license and timeouts are resolved from the config file and
        the environment (TELEPORT_BINARY, TELEPORT_ENTERPRISE_LICENSE,
        TELEPORT_GET_VERSION, ...).
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Objects shared by commands."""

    config: HarnessConfig


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)
    runtime = RuntimeContext(config=config)
    ctx.obj = runtime
    return runtime


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ephemeral-cluster version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output, including every line the services print.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"ephemeral-cluster {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    configure_logging(verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _fail(message: str, code: ExitCode) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=code)


def _exit_code_for(exc: IntegrationError) -> ExitCode:
    if isinstance(exc, ENVIRONMENT_ERRORS):
        return ExitCode.ENVIRONMENT
    return ExitCode.CLUSTER


@app.command()
def versions(ctx: typer.Context) -> None:
    """Probe the configured binaries and report their versions."""
    runtime = _ensure_runtime(ctx, None)
    binaries = runtime.config.binaries

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Binary", style="bold")
    table.add_column("Path")
    table.add_column("Version")
    table.add_column("Edition")

    failures = 0
    for label, value in binaries.to_dict().items():
        name = str(value)
        resolved = shutil.which(name)
        if resolved is None:
            table.add_row(label, name, "[red]not found[/red]", "-")
            failures += 1
            continue
        try:
            probed = get_binary_version(resolved)
        except ProbeError as exc:
            table.add_row(label, resolved, f"[red]{exc}[/red]", "-")
            failures += 1
            continue
        edition = "Enterprise" if probed.is_enterprise else "OSS"
        table.add_row(label, resolved, str(probed.version), edition)

    console.print(table)
    if failures:
        raise typer.Exit(code=ExitCode.ENVIRONMENT)


@app.command()
def download(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Release to download, e.g. 9.1.3."),
    enterprise: bool = typer.Option(
        False,
        "--enterprise",
        help="Fetch the Enterprise build instead of OSS.",
    ),
    out_dir: Path | None = typer.Option(
        None,
        "--out-dir",
        dir_okay=True,
        file_okay=False,
        help="Directory to unpack releases into (defaults to download_dir).",
    ),
) -> None:
    """Download release binaries, reusing an earlier download when present."""
    runtime = _ensure_runtime(ctx, None)
    target = out_dir or runtime.config.download_dir
    fetch = downloads.get_enterprise if enterprise else downloads.get_oss
    try:
        paths = fetch(version, target)
    except DownloadError as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)
    for path in paths.as_list():
        console.print(path, soft_wrap=True)


@app.command()
def up(
    ctx: typer.Context,
    proxy: bool = typer.Option(True, "--proxy/--no-proxy", help="Start a proxy service."),
    ssh: bool = typer.Option(False, "--ssh", help="Start an SSH node service."),
    admin: str | None = typer.Option(
        None,
        "--admin",
        metavar="USER",
        help="Provision USER with unrestricted access and print its identity file.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=0.0,
        help="Seconds to wait for each service (defaults to ready_timeout).",
    ),
    hold: bool = typer.Option(
        True,
        "--hold/--no-hold",
        help="Keep the cluster running until interrupted.",
    ),
) -> None:
    """Bring a cluster up, print its addresses, and tear it down on Ctrl-C."""
    runtime = _ensure_runtime(ctx, None)
    ready_timeout = timeout if timeout is not None else runtime.config.ready_timeout

    try:
        integration = Integration.from_env(config=runtime.config)
    except IntegrationError as exc:
        _fail(str(exc), _exit_code_for(exc))

    with integration:
        try:
            rows, services = _start_cluster(
                integration,
                proxy=proxy,
                ssh=ssh,
                admin=admin,
                timeout=ready_timeout,
            )
        except IntegrationError as exc:
            _fail(str(exc), _exit_code_for(exc))

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Component", style="bold")
        table.add_column("Value")
        for name, value in rows:
            table.add_row(name, value)
        console.print(table)

        if hold:
            console.print("[green]Cluster is up.[/green] Press Ctrl-C to tear it down.")
            try:
                _hold(services)
            except KeyboardInterrupt:
                console.print("Tearing the cluster down...")
            except IntegrationError as exc:
                _fail(str(exc), ExitCode.CLUSTER)


def _start_cluster(
    integration: Integration,
    *,
    proxy: bool,
    ssh: bool,
    admin: str | None,
    timeout: float,
) -> tuple[list[tuple[str, str]], list[tuple[str, Service]]]:
    rows: list[tuple[str, str]] = [
        ("version", str(integration.version)),
        ("work dir", str(integration.work_dir)),
    ]
    auth = integration.new_auth_service()
    auth.run()
    ca_pin = integration.set_ca_pin(auth, timeout=timeout)
    services: list[tuple[str, Service]] = [("auth", auth)]
    rows.append(("auth", str(auth.auth_addr())))
    rows.append(("ca pin", ca_pin))

    if proxy:
        proxy_service = integration.new_proxy_service(auth)
        proxy_service.run()
        _wait_ready("proxy", proxy_service, timeout)
        services.append(("proxy", proxy_service))
        rows.append(("proxy web", str(proxy_service.web_proxy_addr())))
        rows.append(("proxy tunnel", str(proxy_service.tunnel_addr())))

    if ssh:
        ssh_service = integration.new_ssh_service(auth)
        ssh_service.run()
        _wait_ready("ssh", ssh_service, timeout)
        services.append(("ssh", ssh_service))
        rows.append(("ssh", str(ssh_service.ssh_addr())))

    if admin:
        client = integration.make_admin(auth, admin)
        rows.append((f"identity ({admin})", str(client.identity_path)))

    return rows, services


def _wait_ready(name: str, service: Service, timeout: float) -> None:
    if service.wait_ready(timeout):
        return
    failure = service.err()
    if isinstance(failure, IntegrationError):
        raise failure
    if failure is not None:
        raise IntegrationError(f"{name} service failed: {failure}") from failure
    raise ReadinessTimeoutError(f"{name} service did not become ready within {timeout:.1f}s")


def _hold(services: Sequence[tuple[str, Service]]) -> None:
    while True:
        for name, service in services:
            failure = service.err()
            if failure is not None:
                raise IntegrationError(f"{name} service stopped: {failure}") from failure
        time.sleep(HOLD_POLL_INTERVAL)


def main() -> None:
    """Console-script entry point."""
    app()


__all__ = ["app", "main"]
