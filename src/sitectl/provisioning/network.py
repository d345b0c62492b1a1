"""Per-site container network."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import CommandError, ProvisioningError
from ..providers.docker import DockerClient

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class NetworkManager:
    """Create site networks when they are missing."""

    docker: DockerClient

    def ensure_network(self, name: str) -> bool:
        """Create *name* unless it exists; return ``True`` when it was created."""
        if self.docker.network_exists(name):
            LOGGER.debug("network %s already exists", name)
            return False
        try:
            self.docker.create_network(name)
        except CommandError as exc:
            raise ProvisioningError(f"Failed to create network {name}: {exc}") from exc
        LOGGER.info("created network %s", name)
        return True

    def remove_network(self, name: str) -> bool:
        """Remove *name*; return ``False`` when the runtime refused."""
        result = self.docker.remove_network(name, check=False)
        return result.ok


__all__ = ["NetworkManager"]
