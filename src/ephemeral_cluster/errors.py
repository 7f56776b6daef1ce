"""Error taxonomy shared across ephemeral_cluster."""
from __future__ import annotations


class IntegrationError(RuntimeError):
    """Base class for every error raised by ephemeral_cluster."""


class ProbeError(IntegrationError):
    """Raised when a binary cannot report a parseable version."""


class DiscoveryError(IntegrationError):
    """Raised when a required binary cannot be located."""


class VersionMismatchError(IntegrationError):
    """Raised when managed binaries come from different releases."""


class LicenseError(IntegrationError):
    """Raised when an Enterprise binary has no usable license."""


class ConfigRenderError(IntegrationError):
    """Raised when a service configuration cannot be rendered or written."""


class ReadinessTimeoutError(IntegrationError):
    """Raised when a service does not become ready before the deadline."""


class HandshakeError(IntegrationError):
    """Raised when the CA pin cannot be negotiated with the auth service."""


class CleanupError(IntegrationError):
    """Recorded when a teardown action fails. Logged, never propagated."""


class ServiceError(IntegrationError):
    """Raised when a managed service process fails to start, run or stop."""


class AdminCommandError(IntegrationError):
    """Raised when ``tctl`` or ``tsh`` exits unsuccessfully."""


class AdminBootstrapError(IntegrationError):
    """Raised when provisioning an administrative user fails."""


class DownloadError(IntegrationError):
    """Raised when release binaries cannot be downloaded or unpacked."""


__all__ = [
    "AdminBootstrapError",
    "AdminCommandError",
    "CleanupError",
    "ConfigRenderError",
    "DiscoveryError",
    "DownloadError",
    "HandshakeError",
    "IntegrationError",
    "LicenseError",
    "ProbeError",
    "ReadinessTimeoutError",
    "ServiceError",
    "VersionMismatchError",
]
