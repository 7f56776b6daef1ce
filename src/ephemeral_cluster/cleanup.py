"""LIFO registry of teardown actions.

Every resource an :class:`~ephemeral_cluster.integration.Integration` acquires
(temp files, temp directories, service processes, API clients) registers its
release here as soon as it exists. Draining the stack runs the releases in
reverse registration order, so dependents are torn down before the things
they depend on.

Actions registered while a drain is in progress, or after it finished, stay
pending for the next :meth:`CleanupStack.run_all` call. A drain never picks
them up retroactively.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from .errors import CleanupError

LOGGER = logging.getLogger(__name__)

CleanupAction = Callable[[], object]


@dataclass(frozen=True, slots=True)
class _Entry:
    label: str
    action: CleanupAction


class CleanupStack:
    """Mutex-guarded stack of zero-argument teardown actions."""

    def __init__(self) -> None:
        """Create an empty stack."""
        self._lock = threading.Lock()
        self._entries: list[_Entry] = []

    def __len__(self) -> int:
        """Return the number of pending actions."""
        with self._lock:
            return len(self._entries)

    def register(self, action: CleanupAction, label: str | None = None) -> None:
        """Push *action* onto the stack."""
        entry = _Entry(label=label or _describe(action), action=action)
        with self._lock:
            self._entries.append(entry)

    def run_all(self) -> list[CleanupError]:
        """Drain the stack and run every captured action, newest first.

        Failures are logged and returned; they never interrupt the remaining
        actions and are never raised. If the drain itself is interrupted (for
        example by ``KeyboardInterrupt``), the actions that did not run go back
        onto the stack, below anything registered since, so a later drain
        still reclaims them.
        """
        with self._lock:
            pending = self._entries
            self._entries = []

        errors: list[CleanupError] = []
        try:
            while pending:
                entry = pending.pop()
                try:
                    entry.action()
                except Exception as exc:
                    error = CleanupError(f"Cleanup operation '{entry.label}' failed: {exc}")
                    error.__cause__ = exc
                    LOGGER.error("Cleanup operation '%s' failed", entry.label, exc_info=exc)
                    errors.append(error)
        finally:
            if pending:
                LOGGER.warning(
                    "Cleanup interrupted; %d operation(s) left for the next drain", len(pending)
                )
                with self._lock:
                    self._entries[:0] = pending
        return errors


def _describe(action: CleanupAction) -> str:
    name = getattr(action, "__qualname__", None) or getattr(action, "__name__", None)
    return str(name) if name else repr(action)


__all__ = ["CleanupAction", "CleanupStack"]
