"""
packages.py

Responsibility: Package descriptors, the package registry, and dependency resolution.

A `Package` only knows where its files live. Anything that needs the rest of
the workspace (dependencies, input files) goes through the `Registry`, which
memoizes resolved dependencies for its own lifetime. There is no invalidation:
a fresh registry (`Registry.reload`) re-resolves from scratch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import structlog

from lz.bundler import BundleOutput
from lz.config import ConfigError, WorkspaceConfig

log = structlog.get_logger(__name__)

# `import ... from "../../<pkg>"` reaches out of src/ and the package dir into a sibling.
_IMPORT_RE = re.compile(r'^\s*import.* from "\.\./\.\./([\w-]+)(?:/[^"]*)?"', re.MULTILINE)


class DependencyError(RuntimeError):
    pass


@dataclass(frozen=True)
class Package:
    name: str
    directory: Path
    entry: str = "index"
    node: bool = False
    grammar: bool = False
    source_suffix: str = ".ts"
    declaration_suffix: str = ".d.ts"

    @property
    def src_dir(self) -> Path:
        return self.directory / "src"

    @property
    def dist_dir(self) -> Path:
        return self.directory / "dist"

    @property
    def sources(self) -> list[Path]:
        # Raises if src/ is missing.
        return [
            p
            for p in sorted(self.src_dir.iterdir())
            if p.name.endswith(self.source_suffix) and not p.name.endswith(self.declaration_suffix)
        ]

    @property
    def declarations(self) -> list[Path]:
        if not self.dist_dir.is_dir():
            return []
        return [p for p in sorted(self.dist_dir.iterdir()) if p.name.endswith(self.declaration_suffix)]

    @property
    def entry_source(self) -> Path:
        return self.src_dir / f"{self.entry}{self.source_suffix}"

    @property
    def esm_file(self) -> Path:
        return self.dist_dir / "index.es.js"

    @property
    def cjs_file(self) -> Path:
        return self.dist_dir / "index.js"

    @property
    def manifest(self) -> Path:
        return self.directory / "package.json"

    @property
    def changelog_file(self) -> Path:
        return self.directory / "CHANGELOG.md"

    def outputs(self, *, esm: bool) -> list[BundleOutput]:
        """Bundle outputs for one build; CommonJS is always produced."""
        outputs = []
        if esm:
            outputs.append(BundleOutput(format="esm", file=self.esm_file))
        outputs.append(BundleOutput(format="cjs", file=self.cjs_file))
        return outputs


class Registry:
    """Ordered, name-addressable set of the workspace's packages."""

    def __init__(self, config: WorkspaceConfig) -> None:
        self.config = config
        self.packages: list[Package] = [
            Package(
                name=spec.name,
                directory=config.root / spec.name,
                entry=spec.entry,
                node=spec.node,
                grammar=spec.grammar,
                source_suffix=config.source_suffix,
                declaration_suffix=config.declaration_suffix,
            )
            for spec in config.packages
        ]
        self._by_name = {pkg.name: pkg for pkg in self.packages}
        self._dependencies: dict[str, list[Package]] = {}

    def __iter__(self) -> Iterator[Package]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> Package | None:
        return self._by_name.get(name)

    def require(self, name: str) -> Package:
        pkg = self._by_name.get(name)
        if pkg is None:
            raise ConfigError(f"No package {name} known")
        return pkg

    def reload(self) -> Registry:
        """Return a fresh registry for the same configuration, with nothing memoized."""
        return Registry(self.config)

    def dependencies(self, pkg: Package) -> list[Package]:
        cached = self._dependencies.get(pkg.name)
        if cached is None:
            cached = self._resolve(pkg)
            self._dependencies[pkg.name] = cached
        return cached

    def input_files(self, pkg: Package) -> list[Path]:
        """Own sources plus the published declarations of each direct dependency."""
        files = list(self._sources(pkg))
        for dep in self.dependencies(pkg):
            files.extend(dep.declarations)
        return files

    def _sources(self, pkg: Package) -> list[Path]:
        try:
            return pkg.sources
        except OSError as e:
            raise DependencyError(f"Cannot list sources of {pkg.name}: {e}") from e

    def _resolve(self, pkg: Package) -> list[Package]:
        found: list[Package] = []
        for path in self._sources(pkg):
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                raise DependencyError(f"Cannot read {path}: {e}") from e
            for match in _IMPORT_RE.finditer(text):
                dep = self._by_name.get(match.group(1))
                if dep is None or dep is pkg or dep in found:
                    continue
                found.append(dep)
        log.debug("dependencies_resolved", package=pkg.name, dependencies=[d.name for d in found])
        return found
