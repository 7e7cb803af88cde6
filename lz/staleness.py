"""Modification-time based up-to-date checks for package outputs."""

from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Iterable

from lz.packages import Package

# Returned for files that do not exist.
ABSENT = -1.0


def file_time(path: str | Path) -> float:
    try:
        return os.stat(path).st_mtime
    except FileNotFoundError:
        return ABSENT


def oldest_output_time(pkg: Package, *, esm: bool) -> float:
    """Oldest mtime of the outputs this build would produce, or ABSENT if any is missing."""
    times = [file_time(output.file) for output in pkg.outputs(esm=esm)]
    if any(t < 0 for t in times):
        return ABSENT
    return min(times)


def newest_input_time(files: Iterable[str | Path]) -> float:
    return max((file_time(f) for f in files), default=-math.inf)


def needs_rebuild(pkg: Package, input_files: Iterable[str | Path], *, esm: bool, force: bool = False) -> bool:
    if force:
        return True
    oldest = oldest_output_time(pkg, esm=esm)
    if oldest < 0:
        return True
    return oldest < newest_input_time(input_files)
