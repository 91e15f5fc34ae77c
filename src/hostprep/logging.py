"""Structured operation logging for hostprep.

Each CLI operation produces a single JSON record appended to
``<logs_dir>/operations.jsonl``. Records capture the command, its arguments,
the per-step events emitted while it ran and the final result. Logging never
interrupts provisioning: if the log directory cannot be created or a write
fails, the logger disables itself and later writes become no-ops.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects events and the final result for a logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an operation scope for *command*."""
        self.command = command
        self.op_id = f"op-{datetime.now(tz=UTC):%Y%m%d%H%M%S}-{secrets.token_hex(4)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.events: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _timestamp()
        self._start = time.perf_counter()

    def event(self, kind: str, message: str, /, **context: object) -> None:
        """Record an intermediate event (for example a step outcome).

        *kind* and *message* are positional-only, so *context* may carry keys
        of the same name.
        """
        self.events.append(
            {
                "timestamp": _timestamp(),
                "kind": kind,
                "message": message,
                "context": _sanitize(context),
            }
        )

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=(),
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=(),
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        return {
            "op_id": self.op_id,
            "started_at": self._started_at,
            "finished_at": _timestamp(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "events": self.events,
            "result": self.result or {"status": "incomplete"},
        }

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str],
        errors: Iterable[str],
        rc: int,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "rc": rc,
            "context": _sanitize(dict(context or {})),
        }


class StructuredLogger:
    """Append-only JSON-lines logger for hostprep operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = log_dir
        self._operations_log_path = log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling operation log; cannot create %s: %s", log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{command} aborted: {exc or type(exc).__name__}")
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.debug("Disabling operation log after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
