"""
lz package

This package implements lz, a CLI for workspaces made of several package repositories.

Key responsibilities are split across modules:
- `config.py`: parse the workspace file (`lz.yaml`) into a typed configuration
- `packages.py`: package descriptors, the registry, and import-based dependency resolution
- `staleness.py`: output vs. input modification-time checks
- `bundler.py` / `build.py`: the external bundler boundary and incremental builds
- `watch.py`: rebuild-on-change scheduling
- `release.py`: version bumps, changelogs, release tags
- `workspace.py`: cloning packages and running commands across them
- `cli.py`: CLI entrypoint and dispatch
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
