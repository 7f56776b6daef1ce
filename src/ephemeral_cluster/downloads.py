"""Download Teleport release binaries for a requested version."""
from __future__ import annotations

import hashlib
import logging
import os
import platform
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from .errors import DownloadError

LOGGER = logging.getLogger(__name__)

DOWNLOAD_BASE_URL = "https://cdn.teleport.dev"
DOWNLOAD_TIMEOUT = 300.0
BINARY_NAMES = ("teleport", "tctl", "tsh")

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
}


@dataclass(frozen=True, slots=True)
class BinPaths:
    """Paths to the three binaries an integration manages."""

    teleport: str
    tctl: str
    tsh: str

    def as_list(self) -> list[str]:
        """Return the paths in probing order."""
        return [self.teleport, self.tctl, self.tsh]


def release_name(version: str, *, enterprise: bool, os_name: str, arch: str) -> str:
    """Return the release directory name, e.g. ``teleport-ent-v9.1.3-linux-amd64``."""
    product = "teleport-ent" if enterprise else "teleport"
    return f"{product}-v{_normalize_version(version)}-{os_name}-{arch}"


def get_oss(
    version: str,
    out_dir: str | Path,
    *,
    client: httpx.Client | None = None,
    base_url: str = DOWNLOAD_BASE_URL,
) -> BinPaths:
    """Download (or reuse) the OSS binaries of *version* under *out_dir*."""
    return _get_release(version, Path(out_dir), enterprise=False, client=client, base_url=base_url)


def get_enterprise(
    version: str,
    out_dir: str | Path,
    *,
    client: httpx.Client | None = None,
    base_url: str = DOWNLOAD_BASE_URL,
) -> BinPaths:
    """Download (or reuse) the Enterprise binaries of *version* under *out_dir*."""
    return _get_release(version, Path(out_dir), enterprise=True, client=client, base_url=base_url)


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _get_release(
    version: str,
    out_dir: Path,
    *,
    enterprise: bool,
    client: httpx.Client | None,
    base_url: str,
) -> BinPaths:
    os_name, arch = _platform_tuple()
    name = release_name(version, enterprise=enterprise, os_name=os_name, arch=arch)
    target_dir = out_dir.expanduser() / name
    paths = BinPaths(*(str(target_dir / binary) for binary in BINARY_NAMES))
    if all(os.access(path, os.X_OK) for path in paths.as_list()):
        LOGGER.debug("Reusing downloaded binaries under %s", target_dir)
        return paths

    archive_name = f"{name}-bin.tar.gz"
    url = f"{base_url.rstrip('/')}/{archive_name}"
    out_dir.mkdir(parents=True, exist_ok=True)
    owns_client = client is None
    http = client or httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
    staging_dir = Path(tempfile.mkdtemp(prefix=f"{name}-", dir=str(out_dir)))
    try:
        archive_path = staging_dir / archive_name
        LOGGER.info("Downloading %s", url)
        _download(http, url, archive_path)
        expected = _fetch_checksum(http, f"{url}.sha256")
        actual = compute_checksum(archive_path)
        if actual != expected:
            raise DownloadError(
                f"Checksum mismatch for {archive_name}: expected {expected}, got {actual}."
            )
        extracted = staging_dir / "bin"
        _extract_binaries(archive_path, extracted)
        if target_dir.exists():
            shutil.rmtree(target_dir)
        shutil.move(str(extracted), str(target_dir))
    finally:
        shutil.rmtree(staging_dir, ignore_errors=True)
        if owns_client:
            http.close()
    return paths


def _download(client: httpx.Client, url: str, destination: Path) -> None:
    try:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
    except httpx.HTTPError as exc:
        raise DownloadError(f"Failed to download {url}: {exc}") from exc


def _fetch_checksum(client: httpx.Client, url: str) -> str:
    try:
        response = client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise DownloadError(f"Failed to download {url}: {exc}") from exc
    fields = response.text.split()
    if not fields:
        raise DownloadError(f"Checksum file {url} is empty.")
    return fields[0].strip().lower()


def _extract_binaries(archive_path: Path, destination: Path) -> None:
    """Copy only the managed binaries out of the release tarball."""
    destination.mkdir(parents=True, exist_ok=True)
    found: set[str] = set()
    try:
        with tarfile.open(archive_path, "r:gz") as archive:
            for member in archive.getmembers():
                binary = Path(member.name).name
                if not member.isfile() or binary not in BINARY_NAMES or binary in found:
                    continue
                source = archive.extractfile(member)
                if source is None:
                    continue
                target = destination / binary
                with source, target.open("wb") as handle:
                    shutil.copyfileobj(source, handle)
                target.chmod(0o755)
                found.add(binary)
    except (OSError, tarfile.TarError) as exc:
        raise DownloadError(f"Failed to extract {archive_path.name}: {exc}") from exc
    missing = sorted(set(BINARY_NAMES) - found)
    if missing:
        raise DownloadError(f"{archive_path.name} does not contain: {', '.join(missing)}.")


def _platform_tuple() -> tuple[str, str]:
    os_name = platform.system().lower()
    machine = platform.machine().lower()
    arch = _ARCH_ALIASES.get(machine)
    if arch is None:
        raise DownloadError(f"Unsupported architecture '{machine}'.")
    return os_name, arch


def _normalize_version(version: str) -> str:
    normalized = version.strip().lstrip("v")
    if not normalized:
        raise DownloadError("Version identifier must be a non-empty string.")
    return normalized


__all__ = [
    "BINARY_NAMES",
    "BinPaths",
    "compute_checksum",
    "get_enterprise",
    "get_oss",
    "release_name",
]
