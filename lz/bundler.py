"""
bundler.py

Responsibility: The boundary to the external bundling tool.

The build driver never looks at how bundles are made. It hands a bundler the
package and the list of outputs it wants, and gets back, per output, the
artifacts to write. `CommandBundler` is the default: it runs a configured
command line once per output into a scratch directory and collects whatever
files the tool left there.
"""

from __future__ import annotations

import asyncio
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Sequence

import structlog

if TYPE_CHECKING:
    from lz.packages import Package

log = structlog.get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_]\w*)\}")


class BundleError(RuntimeError):
    pass


@dataclass(frozen=True)
class BundleOutput:
    """One requested output: a module format written to `file`."""

    format: str
    file: Path
    sourcemap: bool = True


@dataclass(frozen=True)
class Artifact:
    """A file produced by the bundler, named relative to its output directory."""

    file_name: str
    code: bytes
    map: str | None = None


@dataclass(frozen=True)
class BundleResult:
    output: BundleOutput
    artifacts: tuple[Artifact, ...]


class Bundler(Protocol):
    async def bundle(self, pkg: Package, outputs: Sequence[BundleOutput]) -> list[BundleResult]: ...


def _format_argv(template: Sequence[str], values: dict[str, str]) -> list[str]:
    """Fill `{name}` placeholders. Other braces (inline JSON, scripts) pass through."""

    def substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in values:
            raise BundleError(f"Bad placeholder in bundler command: {match.group(0)}")
        return values[key]

    return [_PLACEHOLDER_RE.sub(substitute, part) for part in template]


def _collect(staging: Path) -> tuple[Artifact, ...]:
    artifacts = []
    for path in sorted(p for p in staging.rglob("*") if p.is_file()):
        artifacts.append(Artifact(file_name=path.relative_to(staging).as_posix(), code=path.read_bytes()))
    return tuple(artifacts)


class CommandBundler:
    """Runs an argv template such as `npx rollup {entry} --format {format} --file {file}`."""

    def __init__(self, command: Sequence[str]) -> None:
        if not command:
            raise BundleError("Bundler command is empty.")
        self._command = tuple(command)

    async def bundle(self, pkg: Package, outputs: Sequence[BundleOutput]) -> list[BundleResult]:
        results = []
        for output in outputs:
            # Staged at the depth of dist/, so relative paths in source maps survive the copy.
            with tempfile.TemporaryDirectory(dir=pkg.directory, prefix=".lz-stage-") as tmp:
                staging = Path(tmp)
                argv = _format_argv(
                    self._command,
                    {
                        "entry": str(pkg.entry_source),
                        "format": output.format,
                        "file": str(staging / output.file.name),
                        "name": pkg.name,
                        "lib": "es6,node" if pkg.node else "es6,scripthost",
                        "dir": str(staging),
                    },
                )
                await self._run(argv, cwd=pkg.directory)
                results.append(BundleResult(output=output, artifacts=_collect(staging)))
        return results

    async def _run(self, argv: list[str], *, cwd: Path) -> None:
        log.debug("bundler_exec", argv=argv, cwd=str(cwd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise BundleError(f"Bundler not found: {argv[0]}") from e
        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            output = stdout.decode(errors="replace") if stdout else ""
            raise BundleError(f"Command failed ({proc.returncode}): {' '.join(argv)}\n\n{output}")
