"""
cli.py

Responsibility: CLI entrypoint for lz.

Each subcommand loads the workspace (`lz.yaml`), builds a `Registry`, and
hands it to the module that owns the behavior:
- Builds and watching: `build.py`, `watch.py`
- Releases, notes and dependency bumps: `release.py`
- Cloning and running commands in each package: `workspace.py`

Errors raised by those modules are reported here and turn into exit code 1.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Sequence

import structlog

from lz import release as releases
from lz import workspace
from lz.build import Builder, build_packages
from lz.bundler import BundleError, CommandBundler
from lz.config import ConfigError, load_config
from lz.git import GitError
from lz.logging import configure_logging
from lz.packages import DependencyError, Registry
from lz.release import ReleaseError
from lz.watch import watch_workspace

log = structlog.get_logger(__name__)


class CLIError(RuntimeError):
    pass


class _ArgumentParser(argparse.ArgumentParser):
    """Malformed invocations print usage and exit 1."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _registry(args: argparse.Namespace) -> Registry:
    return Registry(load_config(Path(args.root)))


def _builder(registry: Registry) -> Builder:
    return Builder(registry, CommandBundler(registry.config.bundler_command))


def packages_cmd(args: argparse.Namespace) -> int:
    registry = _registry(args)
    print("\n".join(pkg.name for pkg in registry))
    return 0


def build_cmd(args: argparse.Namespace) -> int:
    builder = _builder(_registry(args))
    asyncio.run(build_packages(builder, args.names, force=bool(args.force)))
    return 0


def watch_cmd(args: argparse.Namespace) -> int:
    builder = _builder(_registry(args))
    try:
        asyncio.run(watch_workspace(builder))
    except KeyboardInterrupt:
        log.info("stopped")
    return 0


def release_cmd(args: argparse.Namespace) -> int:
    registry = _registry(args)
    releases.release(registry, args.name, version=args.new_version, messages=args.messages)
    return 0


def _parse_release_all_args(extras: Sequence[str], registry: Registry) -> dict[str, str]:
    """Pairs of `--grammar <note>` / `--<package> <note>`."""
    messages: dict[str, str] = {}
    i = 0
    while i < len(extras):
        arg = extras[i]
        key = arg[2:] if arg.startswith("--") else ""
        if not (key == "grammar" or key in registry) or i + 1 >= len(extras):
            raise CLIError(f"Invalid arguments to release-all: {' '.join(extras)}")
        messages[key] = extras[i + 1]
        i += 2
    return messages


def release_all_cmd(args: argparse.Namespace) -> int:
    registry = _registry(args)
    messages = _parse_release_all_args(args.extras, registry)
    releases.release_all(registry, messages)
    return 0


def bump_deps_cmd(args: argparse.Namespace) -> int:
    releases.bump_deps(_registry(args), args.version)
    return 0


def run_cmd(args: argparse.Namespace) -> int:
    workspace.run_in_packages(_registry(args), [args.cmd, *args.args], cont=bool(args.cont))
    return 0


def notes_cmd(args: argparse.Namespace) -> int:
    print(str(releases.notes(_registry(args), args.name)))
    return 0


def install_cmd(args: argparse.Namespace) -> int:
    registry = workspace.install(_registry(args))
    log.info("installed", packages=len(registry))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(
        prog="lz",
        description="Build, watch and release the packages of a multi-repo workspace",
        allow_abbrev=False,
    )
    p.add_argument("--root", default=".", help="Workspace root containing lz.yaml (default: .)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True, metavar="<command>")

    s = sub.add_parser("packages", help="Emit a list of all package names")
    s.set_defaults(func=packages_cmd)

    s = sub.add_parser("build", help="Build the bundle files")
    s.add_argument("names", nargs="*", help="Packages to build (default: all)")
    s.add_argument("--force", action="store_true", help="Rebuild even if outputs are up to date")
    s.set_defaults(func=build_cmd)

    s = sub.add_parser("watch", help="Start a watching build")
    s.set_defaults(func=watch_cmd)

    s = sub.add_parser("release", help="Tag a release")
    s.add_argument("name", help="Package to release")
    s.add_argument("--version", dest="new_version", default=None, help="Use this version instead of computing one")
    s.add_argument("-m", dest="messages", action="append", default=[], help="Extra release note (repeatable)")
    s.set_defaults(func=release_cmd)

    s = sub.add_parser(
        "release-all",
        help="Tag a new release for all packages",
        usage="lz release-all [--grammar NOTE] [--<package> NOTE]...",
        allow_abbrev=False,
    )
    s.set_defaults(func=release_all_cmd, accepts_extras=True)

    s = sub.add_parser("bump-deps", help="Point internal dependency constraints at a version")
    s.add_argument("version", help="New version, e.g. 0.14.0")
    s.set_defaults(func=bump_deps_cmd)

    s = sub.add_parser("run", help="Run the given command in all packages")
    s.add_argument("--cont", action="store_true", help="Keep going after a failure")
    s.add_argument("cmd", help="Command to run")
    s.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the command")
    s.set_defaults(func=run_cmd)

    s = sub.add_parser("notes", help="Emit pending release notes")
    s.add_argument("name", help="Package name")
    s.set_defaults(func=notes_cmd)

    s = sub.add_parser("install", help="Clone missing package repositories")
    s.set_defaults(func=install_cmd)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args, extras = parser.parse_known_args(argv)
    if extras and not getattr(args, "accepts_extras", False):
        parser.error(f"unrecognized arguments: {' '.join(extras)}")
    args.extras = extras

    configure_logging("DEBUG" if args.verbose else "INFO")
    try:
        return int(args.func(args))
    except (CLIError, ConfigError, DependencyError, BundleError, GitError, ReleaseError) as e:
        log.error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
