"""
build.py

Responsibility: Build one package, or a selection of packages, through the bundler.

Rules for writing bundler artifacts:
- Bundle code and source maps are always written.
- Declaration files are written once per build (from the CommonJS output) and
  only when their bytes change, so their mtime moves only when the published
  interface does.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import structlog

from lz.bundler import Artifact, Bundler, BundleResult
from lz.config import ConfigError
from lz.packages import Package, Registry
from lz.staleness import needs_rebuild

log = structlog.get_logger(__name__)

# The declaration output is taken from this format only.
DECLARATION_FORMAT = "cjs"


@dataclass(frozen=True)
class BuildOptions:
    esm: bool = True
    force: bool = False


def maybe_write_file(path: Path, content: bytes) -> bool:
    """Write `content` unless the file already holds exactly these bytes."""
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        size = -1
    if size == len(content) and path.read_bytes() == content:
        return False
    path.write_bytes(content)
    return True


def _fix_declaration_map(file_name: str, code: bytes, declaration_suffix: str) -> bytes:
    if not file_name.endswith(declaration_suffix + ".map"):
        return code
    return re.sub(rb'"sourceRoot":""', b'"sourceRoot":"../.."', code, count=1)


def write_artifacts(result: BundleResult, *, declaration_suffix: str = ".d.ts") -> None:
    out_dir = result.output.file.parent
    out_dir.mkdir(parents=True, exist_ok=True)
    for artifact in result.artifacts:
        _write_artifact(out_dir, result.output.format, artifact, declaration_suffix)


def _write_artifact(out_dir: Path, fmt: str, artifact: Artifact, declaration_suffix: str) -> None:
    target = out_dir / artifact.file_name
    target.parent.mkdir(parents=True, exist_ok=True)
    if declaration_suffix not in artifact.file_name:
        target.write_bytes(artifact.code)
    elif fmt == DECLARATION_FORMAT:
        maybe_write_file(target, _fix_declaration_map(artifact.file_name, artifact.code, declaration_suffix))
    if artifact.map is not None:
        target.with_name(target.name + ".map").write_text(artifact.map, encoding="utf-8")


class Builder:
    """Runs incremental builds for the packages of one registry."""

    def __init__(self, registry: Registry, bundler: Bundler) -> None:
        self.registry = registry
        self.bundler = bundler

    def is_stale(self, pkg: Package, options: BuildOptions) -> bool:
        return needs_rebuild(pkg, self.registry.input_files(pkg), esm=options.esm, force=options.force)

    async def rebuild(self, pkg: Package, options: BuildOptions) -> bool:
        """Build `pkg` if it is out of date (or forced). Returns whether a build ran."""
        if not self.is_stale(pkg, options):
            return False

        log.info("building", package=pkg.name)
        t0 = time.monotonic()
        results = await self.bundler.bundle(pkg, pkg.outputs(esm=options.esm))
        for result in results:
            write_artifacts(result, declaration_suffix=pkg.declaration_suffix)
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        log.info("built", package=pkg.name, elapsed_ms=elapsed_ms)
        return True


async def build_packages(builder: Builder, names: Sequence[str] = (), *, force: bool = False) -> int:
    """
    One-shot build of the named packages, or every package in registry order.

    All names are checked before anything is built. The first failing build
    propagates and stops the rest. Returns the number of packages rebuilt.
    """
    registry = builder.registry
    unknown = [name for name in names if name not in registry]
    if unknown:
        raise ConfigError(f"Unknown package {unknown[0]}")

    targets = [registry.require(name) for name in names] if names else list(registry)
    options = BuildOptions(esm=True, force=force)
    built = 0
    for pkg in targets:
        if await builder.rebuild(pkg, options):
            built += 1
    return built
