"""Workspace-wide operations: cloning missing package repositories and running commands in every package."""

from __future__ import annotations

from typing import Sequence

import structlog

from lz import git
from lz.config import ConfigError
from lz.packages import Registry

log = structlog.get_logger(__name__)


def install(registry: Registry) -> Registry:
    """
    Clone every package whose directory is missing, then return a reloaded registry.

    Clones come from `<repo_base>/<name>.git`.
    """
    missing = [pkg for pkg in registry if not pkg.directory.exists()]
    if missing and not registry.config.repo_base:
        raise ConfigError("`repo_base` must be set in lz.yaml to clone packages.")
    for pkg in missing:
        url = f"{registry.config.repo_base}/{pkg.name}.git"
        log.info("cloning", package=pkg.name, url=url)
        git.clone(url, pkg.directory)
    return registry.reload()


def run_in_packages(registry: Registry, argv: Sequence[str], *, cont: bool = False) -> int:
    """
    Run `argv` in each package directory, output going straight to the terminal.

    Without `cont` the first failure is raised. With it, failures are logged
    and counted, and the count is returned.
    """
    failures = 0
    for pkg in registry:
        try:
            git.run(argv, cwd=pkg.directory, stdout=None)
        except git.GitError as e:
            if not cont:
                raise
            failures += 1
            log.error("command_failed", package=pkg.name, error=str(e))
    return failures
