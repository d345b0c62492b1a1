"""External command execution.

Every component that talks to the container runtime does so through a
:class:`CommandRunner`. Production code uses :class:`SubprocessRunner`; tests
inject a scripted fake with the same ``run`` signature.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from .errors import CommandError, SitectlError
from .exit_codes import ExitCode

LOGGER = logging.getLogger(__name__)


class ToolNotFoundError(CommandError):
    """Raised when the executable itself is missing from ``PATH``."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of one command."""

    command: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited zero."""
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Run *command* with *args*; raise :class:`CommandError` on failure when *check*."""

    def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Execute the command and return its captured output."""
        ...


def raise_for_status(result: CommandResult, *, error_prefix: str | None = None) -> CommandResult:
    """Raise :class:`CommandError` when *result* exited non-zero."""
    if result.ok:
        return result
    prefix = error_prefix or " ".join(result.command[:3])
    message = result.stderr.strip() or result.stdout.strip() or "no output"
    raise CommandError(
        f"{prefix} failed (exit {result.exit_code}): {message}",
        command=result.command,
        exit_code=result.exit_code,
        stdout=result.stdout,
        stderr=result.stderr,
    )


@dataclass(slots=True)
class SubprocessRunner:
    """Run commands with :func:`subprocess.run` capturing text output."""

    default_timeout: float | None = 300.0

    def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Execute ``command args...`` and return a :class:`CommandResult`."""
        argv = [command, *[str(arg) for arg in args]]
        limit = self.default_timeout if timeout is None else timeout
        LOGGER.debug("run: %s", " ".join(argv))
        try:
            completed = subprocess.run(  # noqa: S603, S607
                argv,
                capture_output=True,
                text=True,
                check=False,
                timeout=limit,
            )
        except FileNotFoundError as exc:
            raise ToolNotFoundError(
                f"{command} not found: {exc}", command=argv
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"{' '.join(argv[:3])} timed out after {limit}s",
                command=argv,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
            ) from exc
        result = CommandResult(
            command=tuple(argv),
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )
        if check:
            raise_for_status(result)
        return result


def _as_text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def describe_failure(exc: SitectlError) -> str:
    """Return a one-line description of *exc* suitable for step details."""
    if isinstance(exc, CommandError) and exc.command:
        return f"{exc} (command={' '.join(exc.command)})"
    return str(exc)


__all__ = [
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "ToolNotFoundError",
    "describe_failure",
    "raise_for_status",
]
