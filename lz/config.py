"""
config.py

Responsibility: Load and validate the workspace file (`lz.yaml`) into a typed model.

The workspace file lives at the root of the checkout, next to the package
directories it lists. Package order in the file is significant: it is the
registry order used for builds, releases and the watch queue, so upstream
packages must be listed before the packages that import them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILE = "lz.yaml"

DEFAULT_BUNDLER_COMMAND: tuple[str, ...] = (
    "npx",
    "rollup",
    "{entry}",
    "--format",
    "{format}",
    "--file",
    "{file}",
    "--sourcemap",
)

_NAME_RE = re.compile(r"^[\w-]+$")


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class PackageSpec:
    """One package entry from the workspace file."""

    name: str
    entry: str = "index"
    node: bool = False
    grammar: bool = False


@dataclass(frozen=True)
class WorkspaceConfig:
    """Parsed workspace file."""

    root: Path
    packages: tuple[PackageSpec, ...] = ()
    scope: str = "@lezer"
    main_branch: str = "main"
    repo_base: str | None = None
    docs_ref: str = "https://lezer.codemirror.net/docs/ref/"
    bundler_command: tuple[str, ...] = field(default=DEFAULT_BUNDLER_COMMAND)
    source_suffix: str = ".ts"
    declaration_suffix: str = ".d.ts"


def _parse_package(raw: Any, index: int) -> PackageSpec:
    if isinstance(raw, str):
        raw = {"name": raw}
    if not isinstance(raw, dict):
        raise ConfigError(f"packages[{index}] must be a name or a mapping.")

    name = str(raw.get("name") or "").strip()
    if not name:
        raise ConfigError(f"packages[{index}] is missing `name`.")
    if not _NAME_RE.match(name):
        raise ConfigError(f"Invalid package name: {name!r}")

    unknown = set(raw) - {"name", "entry", "node", "grammar"}
    if unknown:
        raise ConfigError(f"Unknown keys for package {name}: {', '.join(sorted(unknown))}")

    entry = str(raw.get("entry") or "index").strip()
    return PackageSpec(
        name=name,
        entry=entry,
        node=bool(raw.get("node", False)),
        grammar=bool(raw.get("grammar", False)),
    )


def _parse_command(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_BUNDLER_COMMAND
    if isinstance(raw, str):
        raw = raw.split()
    if not isinstance(raw, list) or not raw or not all(isinstance(part, str) for part in raw):
        raise ConfigError("`bundler.command` must be a non-empty list of strings.")
    return tuple(raw)


def parse_config(data: Any, *, root: Path) -> WorkspaceConfig:
    """
    Build a `WorkspaceConfig` from already-loaded YAML data.

    Recognised keys:
    - packages: list of names or {name, entry, node, grammar} (required)
    - scope: npm scope of the packages, used by bump-deps
    - main_branch: branch release notes are collected from
    - repo_base: URL prefix for cloning `<repo_base>/<name>.git`
    - docs_ref: base URL for `](##anchor)` links in release notes
    - bundler.command: argv template for the bundler; `{entry}`, `{format}`,
      `{file}`, `{name}`, `{lib}` and `{dir}` are filled in, any other `{word}` is an
      error, and braces around anything else pass through as written
    - source_suffix / declaration_suffix
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILE} must be a mapping at the top level.")

    packages_raw = data.get("packages")
    if not isinstance(packages_raw, list) or not packages_raw:
        raise ConfigError(f"{CONFIG_FILE} must define a non-empty `packages` list.")
    packages = tuple(_parse_package(raw, i) for i, raw in enumerate(packages_raw))

    seen: set[str] = set()
    for spec in packages:
        if spec.name in seen:
            raise ConfigError(f"Duplicate package name: {spec.name}")
        seen.add(spec.name)

    bundler_raw = data.get("bundler") or {}
    if not isinstance(bundler_raw, dict):
        raise ConfigError("`bundler` must be a mapping when provided.")

    repo_base = data.get("repo_base")
    if repo_base is not None:
        repo_base = str(repo_base).strip().rstrip("/") or None

    defaults = WorkspaceConfig(root=root)
    return WorkspaceConfig(
        root=root,
        packages=packages,
        scope=str(data.get("scope") or defaults.scope).strip(),
        main_branch=str(data.get("main_branch") or defaults.main_branch).strip(),
        repo_base=repo_base,
        docs_ref=str(data.get("docs_ref") or defaults.docs_ref).strip(),
        bundler_command=_parse_command(bundler_raw.get("command")),
        source_suffix=str(data.get("source_suffix") or defaults.source_suffix),
        declaration_suffix=str(data.get("declaration_suffix") or defaults.declaration_suffix),
    )


def load_config(root: str | Path) -> WorkspaceConfig:
    """Read `lz.yaml` from the workspace root."""
    root_path = Path(root).resolve()
    path = root_path / CONFIG_FILE
    if not path.exists():
        raise ConfigError(f"Workspace file does not exist: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed {CONFIG_FILE}: {e}") from e
    return parse_config(data, root=root_path)
