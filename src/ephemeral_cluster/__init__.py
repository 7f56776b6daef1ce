"""ephemeral_cluster package bootstrap.

Spin up short-lived Teleport clusters (auth, proxy and SSH node processes) for
integration tests and tear them down again. The public entry point is
:class:`ephemeral_cluster.integration.Integration`.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0a0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
