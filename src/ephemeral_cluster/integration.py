"""Ephemeral Teleport cluster orchestration for integration tests.

An :class:`Integration` owns a private working directory, the binaries it
probed at construction time, a shared enrollment token and (once negotiated)
the auth server's CA pin. Every resource it hands out is registered on its
:class:`~ephemeral_cluster.cleanup.CleanupStack` the moment it exists, so
:meth:`Integration.close` can always reclaim everything in reverse order.

Typical use::

    with Integration.from_env() as integration:
        auth = integration.new_auth_service()
        auth.run()
        integration.set_ca_pin(auth, timeout=60)
        proxy = integration.new_proxy_service(auth)
        proxy.run()
        client = integration.make_admin(auth, "admin")

Dependents must be constructed after :meth:`Integration.set_ca_pin`: their
configuration embeds the auth address, the token and the pin known at
construction time.
"""
from __future__ import annotations

import logging
import os
import secrets
import shutil
import tempfile
import threading
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import TracebackType

from . import downloads
from .bootstrap import ALLOW_EVERYTHING, Bootstrap, BootstrapError
from .cleanup import CleanupStack
from .client import AuthClient, ClientError
from .config import DEFAULT_LICENSE_PATH, HarnessConfig, load_config
from .downloads import BinPaths
from .errors import (
    AdminBootstrapError,
    AdminCommandError,
    ConfigRenderError,
    DiscoveryError,
    HandshakeError,
    LicenseError,
    ReadinessTimeoutError,
    VersionMismatchError,
)
from .logging import StructuredLogger
from .network import Addr, get_free_tcp_ports
from .services import SERVICE_SHUTDOWN_TIMEOUT, Auth, AuthService, ProxyService, Service, SSHService
from .tctl import Resource, Tctl
from .templates import AUTH_TEMPLATE, PROXY_TEMPLATE, SSH_TEMPLATE, TemplateEngine
from .tsh import Tsh
from .versions import BinaryVersion, get_binary_version

LOGGER = logging.getLogger(__name__)

INTEGRATION_ADMIN_ROLE = "integration-admin"
WORK_DIR_PREFIX = "ephemeral-cluster-"
SHUTDOWN_GRACE = 0.01
TOKEN_BYTES = 16
LICENSE_PEM_HEADER = "-----BEGIN CERTIFICATE-----"


class Integration:
    """A Teleport installation in a private working directory."""

    def __init__(
        self,
        paths: BinPaths,
        *,
        templates: TemplateEngine | None = None,
        logger: StructuredLogger | None = None,
        work_dir_root: str | Path | None = None,
        shutdown_timeout: float = SERVICE_SHUTDOWN_TIMEOUT,
    ) -> None:
        """Hold collaborators only; use :meth:`new` or :meth:`from_env` to build one."""
        self.paths = paths
        self.templates = templates or TemplateEngine()
        self.logger = logger or StructuredLogger(None)
        self.cleanup = CleanupStack()
        self._work_dir_root = Path(work_dir_root) if work_dir_root is not None else None
        self.shutdown_timeout = shutdown_timeout
        self._work_dir: Path | None = None
        self._version: BinaryVersion | None = None
        self._license_path = ""
        self._token = ""
        self._ca_pin = ""
        self._pin_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def new(
        cls,
        paths: BinPaths,
        license: str = "",
        *,
        templates: TemplateEngine | None = None,
        logger: StructuredLogger | None = None,
        work_dir_root: str | Path | None = None,
        shutdown_timeout: float = SERVICE_SHUTDOWN_TIMEOUT,
    ) -> Integration:
        """Probe *paths*, prepare the working directory and return the integration.

        *license* is either the license content or a path to it; it is only
        consulted for Enterprise binaries. On any failure everything acquired
        so far is released before the error propagates.
        """
        integration = cls(
            paths,
            templates=templates,
            logger=logger,
            work_dir_root=work_dir_root,
            shutdown_timeout=shutdown_timeout,
        )
        with integration.logger.operation(
            "integration.new",
            args={"paths": paths.as_list(), "license": bool(license)},
        ) as op:
            try:
                integration._initialize(license)
            except BaseException:
                integration.close()
                raise
            op.success(
                "Integration initialised.",
                context={"work_dir": integration.work_dir, "version": integration.version},
            )
        return integration

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        *,
        config: HarnessConfig | None = None,
    ) -> Integration:
        """Build an integration from environment variables (see :mod:`.config`)."""
        if config is None:
            config = load_config(env=env)

        license_str = config.license
        if license_str is None:
            license_str = str(DEFAULT_LICENSE_PATH) if DEFAULT_LICENSE_PATH.is_file() else ""

        if config.ci and not license_str:
            raise LicenseError("Tests on CI should run with an Enterprise license.")

        if config.get_version is None:
            paths = BinPaths(
                teleport=_look_path(config.binaries.teleport),
                tctl=_look_path(config.binaries.tctl),
                tsh=_look_path(config.binaries.tsh),
            )
        elif license_str:
            paths = downloads.get_enterprise(config.get_version, config.download_dir)
        else:
            paths = downloads.get_oss(config.get_version, config.download_dir)

        return cls.new(
            paths,
            license_str,
            templates=TemplateEngine.with_overrides(config.templates_dir),
            logger=StructuredLogger(config.logs_dir),
            work_dir_root=config.work_dir_root,
            shutdown_timeout=config.shutdown_timeout,
        )

    def _initialize(self, license_str: str) -> None:
        if self._work_dir_root is not None:
            self._work_dir_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(
            tempfile.mkdtemp(
                prefix=WORK_DIR_PREFIX,
                dir=str(self._work_dir_root) if self._work_dir_root is not None else None,
            )
        )
        self._work_dir = work_dir
        self.cleanup.register(lambda: shutil.rmtree(work_dir), label=f"remove {work_dir}")

        teleport_version = get_binary_version(self.paths.teleport)
        for label, path in (("tctl", self.paths.tctl), ("tsh", self.paths.tsh)):
            other = get_binary_version(path)
            if not teleport_version.same_release(other):
                raise VersionMismatchError(
                    f"teleport version {teleport_version.version} does not match "
                    f"{label} version {other.version}"
                )

        if teleport_version.is_enterprise:
            self._license_path = self._materialize_license(license_str)

        self._version = teleport_version
        self._token = secrets.token_hex(TOKEN_BYTES)

    def _materialize_license(self, license_str: str) -> str:
        if not license_str:
            raise LicenseError(
                f"{self.paths.teleport} appears to be an Enterprise binary "
                "but no license is specified"
            )
        if license_str.startswith(LICENSE_PEM_HEADER) or "\n" in license_str:
            LOGGER.debug("License is given as a string, writing it to a file")
            license_path = self._temp_file("license-", ".pem")
            try:
                license_path.write_text(license_str, encoding="utf-8")
            except OSError as exc:
                raise LicenseError(f"Failed to write license file: {exc}") from exc
            return str(license_path)
        if not Path(license_str).is_file():
            raise LicenseError(f"License file {license_str} not found")
        return license_str

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def work_dir(self) -> Path:
        """Return the private working directory."""
        if self._work_dir is None:
            raise RuntimeError("Integration is not initialised.")
        return self._work_dir

    @property
    def version(self) -> BinaryVersion:
        """Return the version shared by every managed binary."""
        if self._version is None:
            raise RuntimeError("Integration is not initialised.")
        return self._version

    @property
    def token(self) -> str:
        """Return the enrollment token embedded in every service config."""
        return self._token

    @property
    def ca_pin(self) -> str:
        """Return the negotiated CA pin, or an empty string before the handshake."""
        return self._ca_pin

    @property
    def license_path(self) -> str:
        """Return the license file path (empty for OSS binaries)."""
        return self._license_path

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def new_auth_service(self) -> AuthService:
        """Render an auth config and return the (not yet started) service."""
        data_dir = self._temp_dir("data-auth-")
        config_path = self._write_config(
            "teleport-auth-",
            AUTH_TEMPLATE,
            {
                "TELEPORT_DATA_DIR": data_dir,
                "TELEPORT_LICENSE_FILE": self._license_path,
                "TELEPORT_AUTH_TOKEN": self._token,
            },
        )
        auth = AuthService(self.paths.teleport, config_path)
        self._register_service("auth", auth)
        return auth

    def new_proxy_service(self, auth: Auth) -> ProxyService:
        """Render a proxy config joined to *auth* and return the service."""
        auth_addr = self._require_auth_addr(auth)
        data_dir = self._temp_dir("data-proxy-")
        web_addr, tunnel_addr = get_free_tcp_ports(2)
        config_path = self._write_config(
            "teleport-proxy-",
            PROXY_TEMPLATE,
            {
                "TELEPORT_DATA_DIR": data_dir,
                "TELEPORT_AUTH_SERVER": auth_addr,
                "TELEPORT_AUTH_TOKEN": self._token,
                "TELEPORT_AUTH_CA_PIN": self._ca_pin,
                "PROXY_WEB_LISTEN_ADDR": web_addr,
                "PROXY_WEB_LISTEN_PORT": web_addr.port,
                "PROXY_TUN_LISTEN_ADDR": tunnel_addr,
                "PROXY_TUN_LISTEN_PORT": tunnel_addr.port,
            },
        )
        proxy = ProxyService(
            self.paths.teleport,
            config_path,
            web_addr=web_addr,
            tunnel_addr=tunnel_addr,
        )
        self._register_service("proxy", proxy)
        return proxy

    def new_ssh_service(self, auth: Auth) -> SSHService:
        """Render an SSH node config joined to *auth* and return the service."""
        auth_addr = self._require_auth_addr(auth)
        data_dir = self._temp_dir("data-ssh-")
        (ssh_addr,) = get_free_tcp_ports(1)
        config_path = self._write_config(
            "teleport-ssh-",
            SSH_TEMPLATE,
            {
                "TELEPORT_DATA_DIR": data_dir,
                "TELEPORT_AUTH_SERVER": auth_addr,
                "TELEPORT_AUTH_TOKEN": self._token,
                "TELEPORT_AUTH_CA_PIN": self._ca_pin,
                "SSH_LISTEN_ADDR": ssh_addr,
                "SSH_LISTEN_PORT": ssh_addr.port,
            },
        )
        ssh = SSHService(self.paths.teleport, config_path, ssh_addr=ssh_addr)
        self._register_service("ssh", ssh)
        return ssh

    # ------------------------------------------------------------------
    # Handshake and admin helpers
    # ------------------------------------------------------------------

    def set_ca_pin(
        self,
        auth: AuthService,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> str:
        """Fetch the auth server's CA pin once and cache it."""
        with self._pin_lock:
            if self._ca_pin:
                return self._ca_pin
            with self.logger.operation(
                "integration.set_ca_pin",
                target={"auth": auth.auth_addr()},
            ) as op:
                if not auth.wait_ready(timeout, cancel):
                    failure = auth.err()
                    if failure is not None:
                        raise HandshakeError("Auth service failed before it became ready") from failure
                    raise ReadinessTimeoutError("Auth service did not become ready in time")
                try:
                    ca_pin = self._tctl(auth).get_ca_pin()
                except AdminCommandError as exc:
                    raise HandshakeError(f"Failed to fetch the CA pin: {exc}") from exc
                self._ca_pin = ca_pin
                op.success("CA pin negotiated.", context={"ca_pin": ca_pin})
            return ca_pin

    def bootstrap(self, auth: AuthService, resources: Sequence[Resource]) -> None:
        """Create or overwrite *resources* on the auth server."""
        self._tctl(auth).create(resources)

    def sign(self, auth: AuthService, user: str) -> Path:
        """Write an identity file for *user* and return its path."""
        out_path = self._temp_file(f"credentials-{user}-")
        self._tctl(auth).sign(user, out_path)
        return out_path

    def new_client(self, auth: AuthService, user: str) -> AuthClient:
        """Sign credentials for *user* and return a client using them."""
        identity_path = self.sign(auth, user)
        return self.new_signed_client(auth, identity_path, user)

    def new_signed_client(self, auth: Auth, identity_path: str | Path, user: str) -> AuthClient:
        """Return a client for *user* authenticated with an existing identity file."""
        client = AuthClient(auth.auth_addr(), identity_path, user)
        self.cleanup.register(client.close, label=f"close client {user}")
        return client

    def make_admin(self, auth: AuthService, user: str) -> AuthClient:
        """Create *user* with unrestricted access and return a client for it."""
        user = user.strip()
        with self.logger.operation("integration.make_admin", args={"user": user}) as op:
            bootstrap = Bootstrap()
            try:
                bootstrap.add_role(INTEGRATION_ADMIN_ROLE, ALLOW_EVERYTHING)
            except BootstrapError as exc:
                raise AdminBootstrapError(
                    f"Failed to initialize {INTEGRATION_ADMIN_ROLE} role"
                ) from exc
            try:
                bootstrap.add_user_with_roles(user, INTEGRATION_ADMIN_ROLE)
            except BootstrapError as exc:
                raise AdminBootstrapError(f"Failed to initialize {user} user") from exc
            try:
                self.bootstrap(auth, bootstrap.resources())
            except AdminCommandError as exc:
                raise AdminBootstrapError(f"Failed to bootstrap admin user {user}") from exc
            op.add_step("bootstrap", detail=[INTEGRATION_ADMIN_ROLE, user])
            try:
                client = self.new_client(auth, user)
            except (AdminCommandError, ClientError, ConfigRenderError) as exc:
                raise AdminBootstrapError(f"Failed to sign credentials for {user}") from exc
            op.success("Admin user provisioned.", context={"user": user})
        return client

    def new_tsh(self, proxy_addr: str | Addr, identity_path: str | Path) -> Tsh:
        """Return a ``tsh`` runner going through *proxy_addr*."""
        return Tsh(
            path=self.paths.tsh,
            proxy=str(proxy_addr),
            identity=Path(identity_path),
            insecure=True,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop every service and remove everything this integration created.

        Failures are logged, never raised. Calling it again is harmless.
        """
        with self.logger.operation("integration.close") as op:
            errors = self.cleanup.run_all()
            if errors:
                op.warning(
                    "Cleanup finished with failures.",
                    errors=[str(error) for error in errors],
                )
            else:
                op.success("Cleanup finished.")

    def __enter__(self) -> Integration:
        """Return self for ``with`` usage."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Tear the cluster down."""
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _tctl(self, auth: AuthService) -> Tctl:
        return Tctl(
            path=self.paths.tctl,
            auth_server=str(auth.auth_addr()),
            config_path=auth.config_path,
        )

    def _require_auth_addr(self, auth: Auth) -> Addr:
        addr = auth.auth_addr()
        if addr.is_empty():
            raise HandshakeError(
                "Auth service address is not known yet; wait for the auth service to become ready"
            )
        return addr

    def _register_service(self, name: str, service: Service) -> None:
        def shutdown() -> None:
            service.shutdown(self.shutdown_timeout + SHUTDOWN_GRACE)

        self.cleanup.register(shutdown, label=f"shutdown {name} service")

    def _write_config(self, prefix: str, template: str, values: Mapping[str, object]) -> Path:
        config_path = self._temp_file(prefix, ".yaml")
        document = self.templates.render_to_string(template, values)
        try:
            config_path.write_text(document, encoding="utf-8")
        except OSError as exc:
            raise ConfigRenderError(f"Failed to write config file {config_path}: {exc}") from exc
        return config_path

    def _temp_file(self, prefix: str, suffix: str = "") -> Path:
        try:
            handle, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=str(self.work_dir))
        except OSError as exc:
            raise ConfigRenderError(
                f"Failed to create temp file {prefix}* in {self.work_dir}: {exc}"
            ) from exc
        path = Path(name)
        self.cleanup.register(lambda: path.unlink(missing_ok=True), label=f"remove {path}")
        os.close(handle)
        return path

    def _temp_dir(self, prefix: str) -> Path:
        try:
            path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(self.work_dir)))
        except OSError as exc:
            raise ConfigRenderError(
                f"Failed to create temp directory {prefix}* in {self.work_dir}: {exc}"
            ) from exc
        self.cleanup.register(lambda: shutil.rmtree(path), label=f"remove {path}")
        return path


def _look_path(name: str) -> str:
    """Resolve *name* like a shell would: explicit paths as-is, bare names via PATH."""
    resolved = shutil.which(name)
    if resolved is None:
        raise DiscoveryError(f"Executable '{name}' not found or not executable.")
    return resolved


__all__ = [
    "BinPaths",
    "INTEGRATION_ADMIN_ROLE",
    "Integration",
]
