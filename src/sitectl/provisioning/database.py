"""Per-site database container and its readiness probe."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..errors import CommandError, ProvisioningError, ReadinessTimeoutError
from ..models import DatabaseCredentials
from ..providers.docker import DockerClient, RunSpec
from ..retry import ReadinessResult, wait_until_ready

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DatabaseProvisioner:
    """Create MySQL containers and wait until they answer pings."""

    docker: DockerClient
    image: str = "mysql:8"
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def ensure_database(self, ref: str, network: str, creds: DatabaseCredentials) -> bool:
        """Launch the database container unless it exists; return ``True`` when created."""
        if self.docker.inspect(ref) is not None:
            LOGGER.debug("database container %s already exists", ref)
            return False
        spec = RunSpec(
            name=ref,
            image=self.image,
            network=network,
            env={
                "MYSQL_ROOT_PASSWORD": creds.password,
                "MYSQL_DATABASE": creds.database,
            },
        )
        try:
            self.docker.run(spec)
        except CommandError as exc:
            raise ProvisioningError(f"Failed to start database container {ref}: {exc}") from exc
        return True

    def ping(self, ref: str, creds: DatabaseCredentials) -> bool:
        """Return ``True`` when ``mysqladmin ping`` succeeds inside *ref*."""
        result = self.docker.exec(
            ref,
            [
                "mysqladmin",
                "ping",
                f"-u{creds.user}",
                f"--password={creds.password}",
                "--silent",
            ],
            check=False,
        )
        return result.ok

    def wait_ready(
        self,
        ref: str,
        creds: DatabaseCredentials,
        *,
        max_attempts: int,
        backoff: float,
    ) -> ReadinessResult:
        """Ping until the database answers; raise :class:`ReadinessTimeoutError` otherwise."""
        result = wait_until_ready(
            lambda: self.ping(ref, creds),
            max_attempts=max_attempts,
            backoff=backoff,
            label=f"database {ref}",
            sleep=self.sleep,
        )
        if not result.ready:
            raise ReadinessTimeoutError(
                f"Database {ref} not ready after {result.attempts} attempts"
                + (f": {result.last_error}" if result.last_error else "")
            )
        return result


__all__ = ["DatabaseProvisioner"]
