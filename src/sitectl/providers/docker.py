"""Docker provider translating container verbs into runner calls."""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ..errors import CommandError, NotFoundError
from ..parsers import ContainerState, parse_container_state, parse_port_mapping
from ..runner import CommandResult, CommandRunner

LOGGER = logging.getLogger(__name__)

_MISSING_MARKERS = ("no such object", "no such container", "no such network")


@dataclass(frozen=True, slots=True)
class HealthCheckOptions:
    """Container-level health check passed to ``docker run``."""

    command: str = "curl -f http://localhost/ || exit 1"
    interval: str = "10s"
    timeout: str = "5s"
    retries: int = 3

    def to_args(self) -> list[str]:
        """Return the ``--health-*`` arguments."""
        return [
            f"--health-cmd={self.command}",
            f"--health-interval={self.interval}",
            f"--health-timeout={self.timeout}",
            f"--health-retries={self.retries}",
        ]


@dataclass(frozen=True, slots=True)
class RunSpec:
    """Arguments for ``docker run -d``."""

    name: str
    image: str
    network: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    ports: Mapping[int, int] = field(default_factory=dict)
    volumes: Sequence[str] = ()
    health_check: HealthCheckOptions | None = None

    def to_args(self) -> list[str]:
        """Return the argument vector after ``run``."""
        args: list[str] = ["-d", "--name", self.name]
        if self.network:
            args.extend(["--network", self.network])
        for host_port, container_port in self.ports.items():
            args.extend(["-p", f"{host_port}:{container_port}"])
        for volume in self.volumes:
            args.extend(["-v", volume])
        for key, value in self.env.items():
            args.extend(["-e", f"{key}={value}"])
        if self.health_check is not None:
            args.extend(self.health_check.to_args())
        args.append(self.image)
        return args


@dataclass(slots=True)
class DockerClient:
    """Thin wrapper over the ``docker`` CLI."""

    runner: CommandRunner
    docker_bin: str = "docker"
    timeout: float | None = None

    # Containers -------------------------------------------------------
    def inspect(self, ref: str) -> ContainerState | None:
        """Return the container state for *ref*, or ``None`` when it does not exist."""
        try:
            result = self._docker(["inspect", ref])
        except CommandError as exc:
            if _is_missing(exc):
                return None
            raise
        return parse_container_state(result.stdout)

    def require(self, ref: str) -> ContainerState:
        """Return the container state for *ref* or raise :class:`NotFoundError`."""
        state = self.inspect(ref)
        if state is None:
            raise NotFoundError(f"Container {ref} does not exist.")
        return state

    def run(self, spec: RunSpec) -> str:
        """Launch a detached container and return its id."""
        result = self._docker(["run", *spec.to_args()])
        container_id = result.stdout.strip()
        LOGGER.info("started container %s (%s)", spec.name, container_id[:12] or "?")
        return container_id

    def start(self, ref: str) -> None:
        """Start a stopped container."""
        self._docker(["start", ref])

    def stop(self, ref: str, *, check: bool = True) -> CommandResult:
        """Stop a running container."""
        return self._docker(["stop", ref], check=check)

    def remove(self, ref: str, *, force: bool = False, check: bool = True) -> CommandResult:
        """Remove a container."""
        args = ["rm", ref] if not force else ["rm", "-f", ref]
        return self._docker(args, check=check)

    def exec(
        self,
        ref: str,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *args* inside the container."""
        return self._docker(["exec", ref, *args], check=check, timeout=timeout)

    def copy_into(self, source: str, ref: str, destination: str) -> None:
        """Copy a host file into the container."""
        self._docker(["cp", source, f"{ref}:{destination}"])

    def host_port(self, ref: str, *, container_port: int = 80) -> int:
        """Return the host port mapped to *container_port* on *ref*."""
        result = self._docker(["port", ref])
        return parse_port_mapping(result.stdout, container_port=container_port)

    # Networks ---------------------------------------------------------
    def network_exists(self, name: str) -> bool:
        """Return ``True`` when the network exists."""
        try:
            self._docker(["network", "inspect", name])
        except CommandError as exc:
            if exc.returncode is None:
                raise
            return False
        return True

    def create_network(self, name: str) -> None:
        """Create a bridge network."""
        self._docker(["network", "create", name])

    def remove_network(self, name: str, *, check: bool = True) -> CommandResult:
        """Remove a network."""
        return self._docker(["network", "rm", name], check=check)

    # ------------------------------------------------------------------
    def _docker(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        return self.runner.run(
            self.docker_bin,
            list(args),
            timeout=timeout if timeout is not None else self.timeout,
            check=check,
        )


def _is_missing(exc: CommandError) -> bool:
    text = f"{exc.stderr} {exc.stdout} {exc}".lower()
    return any(marker in text for marker in _MISSING_MARKERS)


__all__ = ["DockerClient", "HealthCheckOptions", "RunSpec"]
