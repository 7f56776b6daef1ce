"""Declarative role and user resources pushed through ``tctl create``."""
from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field

from .errors import IntegrationError

ROLE_VERSION = "v4"
USER_VERSION = "v2"

ALLOW_EVERYTHING: dict[str, object] = {
    "allow": {
        "rules": [
            {"resources": ["*"], "verbs": ["*"]},
        ],
    },
}


class BootstrapError(IntegrationError):
    """Raised when a resource cannot be added to a bootstrap set."""


@dataclass(slots=True)
class Bootstrap:
    """An ordered set of resources to create in one ``tctl create`` call."""

    _resources: list[dict[str, object]] = field(default_factory=list)

    def add_role(self, name: str, spec: Mapping[str, object]) -> dict[str, object]:
        """Add a role named *name* with the given *spec*."""
        return self.add(
            {
                "kind": "role",
                "version": ROLE_VERSION,
                "metadata": {"name": _normalize_name(name, "role")},
                "spec": copy.deepcopy(dict(spec)),
            }
        )

    def add_user_with_roles(self, name: str, *roles: str) -> dict[str, object]:
        """Add a local user bound to *roles*."""
        if not roles:
            raise BootstrapError(f"User '{name}' needs at least one role.")
        return self.add(
            {
                "kind": "user",
                "version": USER_VERSION,
                "metadata": {"name": _normalize_name(name, "user")},
                "spec": {"roles": [_normalize_name(role, "role") for role in roles]},
            }
        )

    def add(self, resource: Mapping[str, object]) -> dict[str, object]:
        """Add an arbitrary resource; kind and name must be unique."""
        entry = dict(resource)
        key = _resource_key(entry)
        if any(_resource_key(existing) == key for existing in self._resources):
            raise BootstrapError(f"Duplicate {key[0]} resource '{key[1]}'.")
        self._resources.append(entry)
        return entry

    def resources(self) -> list[dict[str, object]]:
        """Return a copy of the collected resources in insertion order."""
        return copy.deepcopy(self._resources)


def _resource_key(resource: Mapping[str, object]) -> tuple[str, str]:
    kind = str(resource.get("kind") or "").strip()
    metadata = resource.get("metadata")
    name = str(metadata.get("name") or "").strip() if isinstance(metadata, Mapping) else ""
    if not kind or not name:
        raise BootstrapError("Resources need a kind and a metadata.name.")
    return kind, name


def _normalize_name(name: str, kind: str) -> str:
    normalized = name.strip()
    if not normalized:
        raise BootstrapError(f"The {kind} name must be a non-empty string.")
    return normalized


__all__ = ["ALLOW_EVERYTHING", "Bootstrap", "BootstrapError"]
