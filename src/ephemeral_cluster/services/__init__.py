"""Managed service processes: auth, proxy and SSH node."""
from __future__ import annotations

from .auth import AuthService
from .base import Auth, Service
from .process import READY_PATTERN, SERVICE_SHUTDOWN_TIMEOUT, ServiceProcess, ServiceState
from .proxy import ProxyService
from .ssh import SSHService

__all__ = [
    "READY_PATTERN",
    "SERVICE_SHUTDOWN_TIMEOUT",
    "Auth",
    "AuthService",
    "ProxyService",
    "SSHService",
    "Service",
    "ServiceProcess",
    "ServiceState",
]
