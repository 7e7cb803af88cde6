from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Sequence

import pytest

from lz.bundler import Artifact, BundleOutput, BundleResult
from lz.config import load_config
from lz.packages import Package, Registry

# Far in the past, so anything written during a test is newer.
OLD_MTIME = 1_000_000.0

WORKSPACE_YAML = """\
scope: "@lezer"
repo_base: https://example.invalid/lezer-parser
packages:
  - common
  - name: lr
    grammar: true
"""


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def set_mtime(path: Path, mtime: float) -> None:
    os.utime(path, (mtime, mtime))


def _manifest(name: str, version: str, dependencies: dict[str, str]) -> str:
    return json.dumps({"name": f"@lezer/{name}", "version": version, "dependencies": dependencies}, indent=2) + "\n"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    write(tmp_path / "lz.yaml", WORKSPACE_YAML)

    write(tmp_path / "common/src/index.ts", 'export {Tree} from "./tree"\n')
    write(tmp_path / "common/src/tree.ts", "export class Tree {}\n")
    write(tmp_path / "common/package.json", _manifest("common", "0.13.2", {}))
    write(tmp_path / "common/CHANGELOG.md", "## 0.13.2 (2021-01-01)\n\n")

    write(
        tmp_path / "lr/src/index.ts",
        'import {Tree} from "../../common"\nimport {styleTags} from "@lezer/highlight"\n',
    )
    write(tmp_path / "lr/src/stack.ts", 'import {Tree, NodeProp} from "../../common"\n')
    write(
        tmp_path / "lr/package.json",
        _manifest("lr", "0.12.0", {"@lezer/common": "^0.13.0", "lezer-tree": "^0.13.0"}),
    )
    write(tmp_path / "lr/CHANGELOG.md", "## 0.12.0 (2021-01-01)\n\n")

    for path in tmp_path.rglob("*"):
        if path.is_file():
            set_mtime(path, OLD_MTIME)
    return tmp_path


@pytest.fixture
def registry(workspace: Path) -> Registry:
    return Registry(load_config(workspace))


class FakeBundler:
    """Returns a bundle, its source map and a declaration file for every output."""

    def __init__(self, *, fail: Sequence[str] = (), declaration: bytes = b"export declare class Tree {}\n") -> None:
        self.calls: list[tuple[str, list[str]]] = []
        self.fail = set(fail)
        self.declaration = declaration

    async def bundle(self, pkg: Package, outputs: Sequence[BundleOutput]) -> list[BundleResult]:
        self.calls.append((pkg.name, [o.format for o in outputs]))
        if pkg.name in self.fail:
            raise RuntimeError(f"bundling {pkg.name} failed")
        return [
            BundleResult(
                output=o,
                artifacts=(
                    Artifact(o.file.name, f"// {o.format}\n".encode(), map='{"version":3}'),
                    Artifact("index.d.ts", self.declaration),
                ),
            )
            for o in outputs
        ]


@pytest.fixture
def bundler() -> FakeBundler:
    return FakeBundler()
