"""
git.py

Responsibility: Run external commands, git in particular, in a package directory.

Every failure surfaces as a `GitError` carrying the command line and whatever
the command printed, so callers never see raw `CalledProcessError`s.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import IO, Sequence

import structlog

log = structlog.get_logger(__name__)


class GitError(RuntimeError):
    pass


def run(cmd: Sequence[str], *, cwd: Path, stdout: IO[str] | int | None = subprocess.PIPE) -> str:
    """
    Run `cmd` in `cwd` and return its captured stdout.

    Pass `stdout=None` to let the command write to the terminal directly (the
    return value is then empty). stderr always goes to the terminal.
    """
    log.debug("exec", cmd=list(cmd), cwd=str(cwd))
    try:
        proc = subprocess.run(list(cmd), cwd=str(cwd), check=True, stdin=subprocess.DEVNULL, stdout=stdout, text=True)
    except FileNotFoundError as e:
        raise GitError(f"Command not found: {cmd[0]}") from e
    except subprocess.CalledProcessError as e:
        raise GitError(f"Command failed ({e.returncode}): {' '.join(cmd)}\n\n{e.stdout or ''}".rstrip()) from e
    return proc.stdout or ""


def log_messages(cwd: Path, since: str, branch: str) -> str:
    """Full commit messages in `since..branch`, oldest first."""
    return run(["git", "log", "--format=%B", "--reverse", f"{since}..{branch}"], cwd=cwd)


def add(cwd: Path, *paths: str) -> None:
    for path in paths:
        run(["git", "add", path], cwd=cwd)


def commit(cwd: Path, message: str) -> None:
    run(["git", "commit", "-m", message], cwd=cwd)


def tag(cwd: Path, name: str, message: str) -> None:
    run(["git", "tag", name, "-m", message, "--cleanup=verbatim"], cwd=cwd)


def clone(url: str, destination: Path) -> None:
    run(["git", "clone", url, str(destination)], cwd=destination.parent, stdout=None)
