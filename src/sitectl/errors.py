"""Exception taxonomy shared by the provisioning and monitoring paths.

Provisioning errors are fatal and bubble to the caller with the underlying
command failure attached as ``__cause__``. Per-item content errors
(:class:`PageCreationError`, :class:`MenuAssignmentError`) are recorded in
results rather than raised out of a structure run, and
:class:`HealthProbeError` never escapes the health monitor.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class SitectlError(RuntimeError):
    """Base class for sitectl errors."""

    exit_code: ExitCode = ExitCode.PROVIDER


class CommandError(SitectlError):
    """Raised when an external command exits non-zero or cannot be spawned."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Store the command line and captured output alongside the message."""
        super().__init__(message)
        self.command = tuple(command)
        self.returncode = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ParseError(SitectlError):
    """Raised when command output does not match the expected shape."""


class NotFoundError(SitectlError):
    """Raised when an expected container or resource does not exist."""


class ProvisioningError(SitectlError):
    """Raised when network, database or container creation fails."""


class ReadinessTimeoutError(ProvisioningError):
    """Raised when a readiness probe exhausts its attempts."""


class ToolchainInstallError(ProvisioningError):
    """Raised when the WP-CLI toolchain cannot be installed in an instance."""


class ThemeResolutionError(SitectlError):
    """Raised when a theme cannot be installed from the catalog or repository."""


class ValidationError(SitectlError):
    """Raised for invalid user input such as an empty site slug."""

    exit_code = ExitCode.VALIDATION


class StructureValidationError(ValidationError):
    """Raised for structurally invalid content trees, before any mutation."""


class PageCreationError(SitectlError):
    """Raised when a single page cannot be created."""


class MenuAssignmentError(SitectlError):
    """Raised when a menu cannot be assigned to any theme location."""


class HealthProbeError(SitectlError):
    """Raised inside the probe when the health endpoint is unreachable."""


class QuotaExceededError(SitectlError):
    """Raised by the quota collaborator when a site request exceeds plan limits."""

    exit_code = ExitCode.QUOTA


__all__ = [
    "CommandError",
    "HealthProbeError",
    "MenuAssignmentError",
    "NotFoundError",
    "PageCreationError",
    "ParseError",
    "ProvisioningError",
    "QuotaExceededError",
    "ReadinessTimeoutError",
    "SitectlError",
    "StructureValidationError",
    "ThemeResolutionError",
    "ToolchainInstallError",
    "ValidationError",
]
