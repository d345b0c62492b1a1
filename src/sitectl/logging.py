"""Structured operation logging for sitectl.

Every CLI command opens an :class:`OperationScope` through
:meth:`StructuredLogger.operation`. The scope collects steps, warnings and the
final result, and appends one JSON line to ``<logs_dir>/operations.jsonl`` when
the ``with`` block exits. If the log directory cannot be created, or a write
fails, the logger disables itself so that logging never fails the command.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _json_safe(value: object) -> object:
    """Return *value* converted into something :func:`json.dumps` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


def _utcnow() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds")


@dataclass(slots=True)
class OperationScope:
    """Mutable record for a single CLI operation."""

    logger: StructuredLogger
    operation: str
    args: dict[str, object]
    target: dict[str, object]
    operation_id: str
    actor: dict[str, object]
    started_at: str
    _started_monotonic: float
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None
    rc: int = 0

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a named step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status, "at": _utcnow()}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited on locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=(),
            errors=(),
            backups=backups,
            context=context,
        )
        self.rc = 0

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings or (message,),
            errors=errors or (),
            backups=backups,
            context=context,
        )
        self.rc = 0

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 1,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=(),
            errors=errors if errors is not None else (message,),
            backups=None,
            context=context,
        )
        self.rc = rc

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str],
        errors: Sequence[str],
        backups: Sequence[str] | None,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": int(changed),
            "warnings": [str(item) for item in warnings],
            "errors": [str(item) for item in errors],
            "backups": [str(item) for item in (backups or ())],
            "context": _json_safe(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        result = self.result
        if result is None:
            result = {
                "status": "error",
                "message": "Operation ended without reporting a result.",
                "changed": 0,
                "warnings": [],
                "errors": ["no-result"],
                "backups": [],
                "context": {},
            }
        record: dict[str, object] = {
            "ts": self.started_at,
            "op_id": self.operation_id,
            "operation": self.operation,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "actor": self.actor,
            "steps": self.steps,
            "result": result,
            "rc": self.rc,
            "duration_ms": duration_ms,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSONL logger for CLI operations."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when it is unusable."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled (%s): %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return whether records are currently written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and write its record when the block exits."""
        scope = OperationScope(
            logger=self,
            operation=name,
            args=dict(args or {}),
            target=dict(target or {}),
            operation_id=uuid.uuid4().hex,
            actor=_current_actor(),
            started_at=_utcnow(),
            _started_monotonic=time.monotonic(),
        )
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
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
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return {"user": user, "uid": os.getuid() if hasattr(os, "getuid") else None}


__all__ = ["OperationScope", "StructuredLogger"]
