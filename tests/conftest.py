"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest

from sitectl.models import ThemeDescriptor
from sitectl.ports import PortsRegistry
from sitectl.providers import DockerClient, WPCli
from sitectl.provisioning import (
    BootstrapAutomator,
    DatabaseProvisioner,
    NetworkManager,
    SiteContainerManager,
    ThemeCatalog,
    ThemeInstaller,
)
from sitectl.runner import CommandResult, raise_for_status
from sitectl.state import RegistrySiteStore, StateRegistry
from sitectl.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


MISSING = "Error: No such object"


def running_inspect(name: str, *, running: bool = True) -> str:
    """Return ``docker inspect`` JSON for a container named *name*."""
    return json.dumps(
        [
            {
                "Name": f"/{name}",
                "State": {"Running": running, "Status": "running" if running else "exited"},
            }
        ]
    )


@dataclass
class _Rule:
    prefix: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int
    times: int | None


def _matches(prefix: Sequence[str], argv: Sequence[str]) -> bool:
    if len(argv) < len(prefix):
        return False
    for expected, actual in zip(prefix, argv, strict=False):
        if expected == "*":
            continue
        if expected.endswith("*"):
            if not actual.startswith(expected[:-1]):
                return False
            continue
        if expected != actual:
            return False
    return True


class FakeRunner:
    """Scripted :class:`~sitectl.runner.CommandRunner`.

    Rules match on a prefix of the argument vector (``*`` matches any single
    argument, a trailing ``*`` matches by prefix). The first rule that still has
    uses left wins; unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.rules: list[_Rule] = []
        self.calls: list[tuple[str, ...]] = []

    def on(
        self,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        times: int | None = None,
    ) -> FakeRunner:
        self.rules.append(_Rule(tuple(prefix), stdout, stderr, exit_code, times))
        return self

    def missing(self, ref: str) -> FakeRunner:
        """Make ``docker inspect <ref>`` report a missing container."""
        return self.on("inspect", ref, stderr=f"{MISSING}: {ref}", exit_code=1)

    def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        argv = tuple(str(arg) for arg in args)
        self.calls.append(argv)
        result = CommandResult(command=(command, *argv), stdout="", stderr="", exit_code=0)
        for rule in self.rules:
            if rule.times == 0 or not _matches(rule.prefix, argv):
                continue
            if rule.times is not None:
                rule.times -= 1
            result = CommandResult(
                command=(command, *argv),
                stdout=rule.stdout,
                stderr=rule.stderr,
                exit_code=rule.exit_code,
            )
            break
        if check:
            raise_for_status(result)
        return result

    def called(self, *prefix: str) -> list[tuple[str, ...]]:
        """Return recorded calls starting with *prefix*."""
        return [call for call in self.calls if _matches(prefix, call)]


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return an empty scripted runner."""
    return FakeRunner()


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Return a registry rooted in a temporary directory."""
    reg = StateRegistry(tmp_path / "registry")
    reg.ensure_root()
    return reg


@pytest.fixture
def store(registry: StateRegistry) -> RegistrySiteStore:
    """Return a site store on top of the temporary registry."""
    return RegistrySiteStore(registry)


@pytest.fixture
def ports(registry: StateRegistry) -> PortsRegistry:
    """Return a ports registry with a deterministic allocator."""
    candidates = iter(range(49200, 49300))
    return PortsRegistry(registry=registry, allocator=lambda: next(candidates))


@pytest.fixture
def docker(fake_runner: FakeRunner) -> DockerClient:
    """Return a docker client driven by the fake runner."""
    return DockerClient(fake_runner)


@pytest.fixture
def wp(docker: DockerClient) -> WPCli:
    """Return a WP-CLI wrapper on top of the fake docker client."""
    return WPCli(docker)


@pytest.fixture
def templates() -> TemplateEngine:
    """Return an engine using the built-in templates only."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture
def database(docker: DockerClient) -> DatabaseProvisioner:
    """Return a database provisioner that never sleeps."""
    return DatabaseProvisioner(docker, sleep=lambda _: None)


@pytest.fixture
def bootstrap(
    wp: WPCli,
    docker: DockerClient,
    database: DatabaseProvisioner,
    templates: TemplateEngine,
) -> BootstrapAutomator:
    """Return a bootstrap automator with short readiness settings."""
    return BootstrapAutomator(
        wp, docker, database, templates, db_max_attempts=3, db_backoff=0.0
    )


@pytest.fixture
def manager(
    docker: DockerClient,
    wp: WPCli,
    database: DatabaseProvisioner,
    bootstrap: BootstrapAutomator,
    ports: PortsRegistry,
    store: RegistrySiteStore,
    templates: TemplateEngine,
) -> SiteContainerManager:
    """Return a container manager wired to fakes and a temporary registry."""
    return SiteContainerManager(
        docker=docker,
        wp=wp,
        networks=NetworkManager(docker),
        database=database,
        bootstrap=bootstrap,
        ports=ports,
        store=store,
        templates=templates,
        readiness_attempts=3,
        readiness_backoff=0.0,
        sleep=lambda _: None,
    )


@pytest.fixture
def catalog(registry: StateRegistry) -> ThemeCatalog:
    """Return a catalog holding one downloadable and one repository theme."""
    themes = ThemeCatalog(registry)
    themes.upsert(
        ThemeDescriptor(
            slug="astra-child",
            name="Astra Child",
            download_url="https://themes.example.com/astra-child.zip",
        )
    )
    themes.upsert(ThemeDescriptor(slug="neve", name="Neve"))
    return themes


@pytest.fixture
def theme_installer(wp: WPCli, catalog: ThemeCatalog) -> ThemeInstaller:
    """Return a theme installer on top of the catalog fixture."""
    return ThemeInstaller(wp, catalog)
