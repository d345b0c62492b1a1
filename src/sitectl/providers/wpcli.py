"""WP-CLI provider: ``wp ... --allow-root`` executed via ``docker exec``."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import CommandError
from ..runner import CommandResult
from .docker import DockerClient

WP_BIN = "wp"


@dataclass(slots=True)
class WPCli:
    """Run WP-CLI commands inside a site container."""

    docker: DockerClient
    wp_bin: str = WP_BIN

    def run(
        self,
        ref: str,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run ``wp <args> --allow-root`` inside *ref*."""
        return self.docker.exec(
            ref,
            [self.wp_bin, *args, "--allow-root"],
            check=check,
            timeout=timeout,
        )

    def succeeds(self, ref: str, args: Sequence[str]) -> bool:
        """Return ``True`` when the command exits zero."""
        try:
            return self.run(ref, args, check=False).ok
        except CommandError:
            return False

    def is_installed(self, ref: str) -> bool:
        """Return whether ``wp core is-installed`` reports an installed site."""
        return self.succeeds(ref, ["core", "is-installed"])

    def option_get(self, ref: str, name: str) -> str | None:
        """Return the value of option *name*, or ``None`` when unset."""
        result = self.run(ref, ["option", "get", name], check=False)
        if not result.ok:
            return None
        return result.stdout.strip()

    def option_update(self, ref: str, name: str, value: str | int) -> None:
        """Set option *name* to *value*."""
        self.run(ref, ["option", "update", name, str(value)])

    def flush_caches(self, ref: str) -> None:
        """Flush the object cache and the rewrite rules."""
        self.run(ref, ["cache", "flush"])
        self.run(ref, ["rewrite", "flush"])


__all__ = ["WPCli"]
