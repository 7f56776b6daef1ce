"""Structured operation logging for ephemeral_cluster.

Besides the usual module loggers, orchestrator operations are recorded as one
JSON object per line in ``<log_dir>/operations.jsonl``. The log is best effort:
if the directory cannot be created or a write fails, the logger disables
itself and the operation carries on.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def configure_logging(verbose: bool = False) -> None:
    """Route package log records through Rich (used by the CLI)."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)
        ],
        force=True,
    )


class OperationScope:
    """Mutable record of a single operation while it is in flight."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start timing *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _utc_now()
        self._started = time.monotonic()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "ok", detail: object = None) -> None:
        """Append an intermediate step to the record."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def success(self, message: str, *, context: Mapping[str, object] | None = None) -> None:
        """Mark the operation successful."""
        self._finish("success", message, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation finished with warnings."""
        self._finish("warning", message, warnings=warnings, errors=errors, context=context)

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        error_list = [message] if errors is None else errors
        self._finish("error", message, errors=error_list, context=context)

    def to_record(self) -> dict[str, object]:
        """Return the JSON-safe record for this operation."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        return {
            "id": self.op_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "started_at": self.started_at,
            "finished_at": _utc_now(),
            "duration_ms": duration_ms,
            "steps": self.steps,
            "result": self.result,
        }

    def _finish(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "warnings": [str(item) for item in warnings],
            "errors": [str(item) for item in errors],
            "context": _sanitise(dict(context or {})),
        }


class StructuredLogger:
    """Append operation records to a JSON-lines file under *log_dir*."""

    def __init__(self, log_dir: str | Path | None) -> None:
        """Prepare *log_dir*; ``None`` disables the operations log."""
        self._lock = threading.Lock()
        self._log_dir = Path(log_dir).expanduser() if log_dir is not None else None
        self._operations_log_path = (
            self._log_dir / OPERATIONS_LOG_NAME if self._log_dir is not None else None
        )
        self._enabled = self._log_dir is not None
        if self._log_dir is not None:
            try:
                self._log_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                LOGGER.warning("Operations log disabled, cannot create %s: %s", self._log_dir, exc)
                self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return True while records are being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Record the operation run inside the ``with`` block.

        An exception escaping the block is recorded as an error (unless the
        block already recorded a result) and re-raised.
        """
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("completed")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled or self._operations_log_path is None:
            return
        line = json.dumps(record, sort_keys=True)
        with self._lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                LOGGER.warning(
                    "Operations log disabled after write failure to %s: %s",
                    self._operations_log_path,
                    exc,
                )
                self._enabled = False


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _utc_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
