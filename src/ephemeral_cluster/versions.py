"""Probe managed binaries for their release version."""
from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .errors import ProbeError

LOGGER = logging.getLogger(__name__)

PRODUCT_NAME = "Teleport"
VERSION_ARGUMENT = "version"
DEFAULT_PROBE_TIMEOUT = 30.0

VERSION_PATTERN = re.compile(rf"^{PRODUCT_NAME}( Enterprise)? ([^ ]+)")


@dataclass(frozen=True, slots=True)
class BinaryVersion:
    """Semantic version reported by a binary plus its edition."""

    version: Version
    is_enterprise: bool = False

    def __str__(self) -> str:
        """Return ``<version>`` or ``<version> (Enterprise)``."""
        if self.is_enterprise:
            return f"{self.version} (Enterprise)"
        return str(self.version)

    def same_release(self, other: BinaryVersion) -> bool:
        """Return True when *other* reports the identical semantic version."""
        return self.version == other.version


def parse_version_output(output: str) -> BinaryVersion:
    """Parse the textual output of ``<binary> version``."""
    lines = output.splitlines()
    first_line = lines[0].rstrip() if lines else ""
    match = VERSION_PATTERN.match(first_line)
    if match is None:
        raise ProbeError(f"Unrecognised version output: {first_line!r}")
    try:
        version = Version(match.group(2))
    except InvalidVersion as exc:
        raise ProbeError(f"Invalid version string {match.group(2)!r}.") from exc
    return BinaryVersion(version=version, is_enterprise=match.group(1) is not None)


def get_binary_version(
    binary_path: str | Path,
    *,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> BinaryVersion:
    """Run ``<binary_path> version`` and parse what it prints."""
    args = [str(binary_path), VERSION_ARGUMENT]
    LOGGER.debug("Running %s", " ".join(args))
    try:
        result = subprocess.run(  # noqa: S603
            args,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ProbeError(f"Failed to run {binary_path}: {exc}") from exc
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "").strip() or "no output"
        raise ProbeError(
            f"{binary_path} {VERSION_ARGUMENT} failed (exit {result.returncode}): {message}"
        )
    return parse_version_output(result.stdout or "")


__all__ = [
    "BinaryVersion",
    "PRODUCT_NAME",
    "VERSION_PATTERN",
    "get_binary_version",
    "parse_version_output",
]
