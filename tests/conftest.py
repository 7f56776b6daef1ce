"""Pytest configuration helpers for the test suite.

The fixtures here build small POSIX shell scripts that impersonate the
``teleport``, ``tctl`` and ``tsh`` binaries closely enough for the
orchestrator: they answer ``version``, print the log lines the services are
watched for, and record what they were asked to do in an events file.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ephemeral_cluster.downloads import BinPaths

FAKE_VERSION = "v9.1.3"
FAKE_CA_PIN = "sha256:4d2a6f0c1b9e"
FAKE_AUTH_PORT = "3025"

_TELEPORT_SCRIPT = """#!/bin/sh
events="${FAKE_EVENTS:-/dev/null}"
case "$1" in
  version)
    echo "Teleport@EDITION@ @VERSION@ git:@VERSION@-0-g1a2b3c4 go1.17.3"
    exit 0
    ;;
  start)
    ;;
  *)
    echo "unknown command: $1" >&2
    exit 1
    ;;
esac

config=""
while [ $# -gt 0 ]; do
  case "$1" in
    --config) config="$2"; shift 2 ;;
    *) shift ;;
  esac
done

case "$(basename "$config")" in
  teleport-auth-*) kind=auth ;;
  teleport-proxy-*) kind=proxy ;;
  teleport-ssh-*) kind=ssh ;;
  *) kind=unknown ;;
esac

if [ -n "$FAKE_IGNORE_QUIT" ]; then
  trap '' QUIT TERM
else
  trap 'echo "stop $kind" >> "$events"; exit 0' QUIT TERM
fi
echo "start $kind" >> "$events"

if [ "$FAKE_FAIL" = "$kind" ]; then
  echo "ERROR: $kind failed to start: boom"
  exit 1
fi
if [ "$kind" = auth ]; then
  echo "INFO [AUTH:1] Auth service @VERSION@:@VERSION@-0-g1a2b3c4 is starting on 127.0.0.1:${FAKE_AUTH_PORT:-3025}."
fi
if [ -n "$FAKE_GARBLED_OUTPUT" ]; then
  printf 'INFO [PROC:1] \\377\\376 unreadable\\n'
fi
if [ -z "$FAKE_NEVER_READY" ]; then
  echo "INFO [PROC:1] The new service has started successfully. Starting syncing rotation status with period 10m0s."
fi
while true; do
  sleep 0.1
done
"""

_TCTL_SCRIPT = """#!/bin/sh
events="${FAKE_EVENTS:-/dev/null}"
if [ "$1" = version ]; then
  echo "Teleport@EDITION@ @VERSION@ git:@VERSION@-0-g1a2b3c4 go1.17.3"
  exit 0
fi

while [ $# -gt 0 ]; do
  case "$1" in
    --config|--auth-server) shift 2 ;;
    *) break ;;
  esac
done

if [ -n "$FAKE_TCTL_FAIL" ]; then
  echo "ERROR: cannot connect to the auth server" >&2
  exit 1
fi

case "$1" in
  status)
    echo "status" >> "$events"
    echo "Cluster  local-site"
    echo "Version  @VERSION@"
    echo "CA pin   ${FAKE_CA_PIN}"
    ;;
  auth)
    out=""
    user=""
    while [ $# -gt 0 ]; do
      case "$1" in
        --out) out="$2"; shift 2 ;;
        --user) user="$2"; shift 2 ;;
        *) shift ;;
      esac
    done
    echo "sign $user" >> "$events"
    cp "${FAKE_IDENTITY:-/dev/null}" "$out"
    ;;
  create)
    echo "create" >> "$events"
    cat >> "${FAKE_CREATED:-/dev/null}"
    ;;
  *)
    echo "unknown command: $1" >&2
    exit 1
    ;;
esac
"""

_TSH_SCRIPT = """#!/bin/sh
if [ "$1" = version ]; then
  echo "Teleport@EDITION@ @VERSION@ git:@VERSION@-0-g1a2b3c4 go1.17.3"
  exit 0
fi
echo "tsh $*"
exit "${FAKE_TSH_EXIT:-0}"
"""


@dataclass
class FakeTeleport:
    """Handles onto a set of fake binaries and the files they write."""

    paths: BinPaths
    events_path: Path
    created_path: Path
    identity_path: Path
    ca_pin: str = FAKE_CA_PIN
    auth_port: str = FAKE_AUTH_PORT

    def events(self) -> list[str]:
        """Return the recorded events in the order they happened."""
        if not self.events_path.exists():
            return []
        return self.events_path.read_text(encoding="utf-8").splitlines()


MakeBinaries = Callable[..., BinPaths]


def _write_script(path: Path, template: str, *, version: str, enterprise: bool) -> str:
    edition = " Enterprise" if enterprise else ""
    path.write_text(
        template.replace("@VERSION@", version).replace("@EDITION@", edition),
        encoding="utf-8",
    )
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def make_binaries(tmp_path: Path) -> MakeBinaries:
    """Return a factory writing fake binaries into a fresh directory."""
    counter = {"n": 0}

    def factory(
        *,
        version: str = FAKE_VERSION,
        enterprise: bool = False,
        tctl_version: str | None = None,
        tsh_version: str | None = None,
    ) -> BinPaths:
        counter["n"] += 1
        bin_dir = tmp_path / f"bin-{counter['n']}"
        bin_dir.mkdir()
        return BinPaths(
            teleport=_write_script(
                bin_dir / "teleport", _TELEPORT_SCRIPT, version=version, enterprise=enterprise
            ),
            tctl=_write_script(
                bin_dir / "tctl",
                _TCTL_SCRIPT,
                version=tctl_version or version,
                enterprise=enterprise,
            ),
            tsh=_write_script(
                bin_dir / "tsh",
                _TSH_SCRIPT,
                version=tsh_version or version,
                enterprise=enterprise,
            ),
        )

    return factory


@pytest.fixture
def identity_file(tmp_path: Path) -> Path:
    """Mint a throwaway client key and certificate in one PEM file."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "admin")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    path = tmp_path / "identity.pem"
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        + cert.public_bytes(serialization.Encoding.PEM)
    )
    path.chmod(0o600)
    return path


@pytest.fixture
def fake_teleport(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_binaries: MakeBinaries,
    identity_file: Path,
) -> FakeTeleport:
    """OSS fake binaries wired to per-test event and resource files."""
    events_path = tmp_path / "events.log"
    created_path = tmp_path / "created.yaml"
    for name in (
        "FAKE_FAIL",
        "FAKE_NEVER_READY",
        "FAKE_IGNORE_QUIT",
        "FAKE_TCTL_FAIL",
        "FAKE_GARBLED_OUTPUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FAKE_EVENTS", str(events_path))
    monkeypatch.setenv("FAKE_CREATED", str(created_path))
    monkeypatch.setenv("FAKE_IDENTITY", str(identity_file))
    monkeypatch.setenv("FAKE_CA_PIN", FAKE_CA_PIN)
    monkeypatch.setenv("FAKE_AUTH_PORT", FAKE_AUTH_PORT)
    return FakeTeleport(
        paths=make_binaries(),
        events_path=events_path,
        created_path=created_path,
        identity_path=identity_file,
    )
