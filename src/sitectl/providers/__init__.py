"""Provider abstractions used by sitectl."""
from __future__ import annotations

from .docker import DockerClient, HealthCheckOptions, RunSpec
from .wpcli import WPCli

__all__ = ["DockerClient", "HealthCheckOptions", "RunSpec", "WPCli"]
