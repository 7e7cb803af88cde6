"""
release.py

Responsibility: Versioning, release notes and release tagging for workspace packages.

Release notes come from commit messages. Any paragraph of a commit message
that starts with `BREAKING:`, `FIX:` or `FEATURE:` is one note. The notes
decide the version bump, are rendered (Jinja2) into the package's
CHANGELOG.md, and become the body of the annotated release tag.

Nothing is written to disk before the new version is known, so a release that
fails for lack of notes leaves the package untouched.
"""

from __future__ import annotations

import datetime
import json
import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

import structlog
from jinja2 import Environment, StrictUndefined, TemplateError

from lz import git
from lz.packages import Package, Registry

log = structlog.get_logger(__name__)

_NOTE_RE = re.compile(r"\n\r?\n(BREAKING|FIX|FEATURE):\s*([\s\S]*?)(?=\r?\n\r?\n|\r?\n?\Z)")
_VERSION_FIELD_RE = re.compile(r'"version":\s*".*?"')

SECTION_TITLES = (
    ("breaking", "Breaking changes"),
    ("fix", "Bug fixes"),
    ("feature", "New features"),
)

NOTES_HEAD_TEMPLATE = "## {{ version }} ({{ date }})\n\n"
NOTES_BODY_TEMPLATE = (
    "{% for title, messages in sections %}"
    "{% if messages %}### {{ title }}\n\n{% endif %}"
    '{% for message in messages %}{{ message | replace("](##", "](" ~ docs_ref ~ "#") }}\n\n{% endfor %}'
    "{% endfor %}"
)

_env = Environment(autoescape=False, undefined=StrictUndefined, keep_trailing_newline=True)


class ReleaseError(RuntimeError):
    pass


@dataclass
class Changes:
    breaking: list[str] = field(default_factory=list)
    fix: list[str] = field(default_factory=list)
    feature: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReleaseNotes:
    head: str
    body: str

    def __str__(self) -> str:
        return self.head + self.body


def parse_changes(commits: str) -> Changes:
    changes = Changes()
    for match in _NOTE_RE.finditer(commits):
        kind = match.group(1).lower()
        getattr(changes, kind).append(re.sub(r"\r?\n", " ", match.group(2)))
    return changes


def changelog(pkg: Package, since: str, extra: str | None = None, *, branch: str = "main") -> Changes:
    """Collect the notes committed since tag `since`, with `extra` notes in front."""
    commits = git.log_messages(pkg.directory, since, branch)
    if extra:
        commits = "\n\n" + extra + "\n\n" + commits
    return parse_changes(commits)


def bump_version(version: str, changes: Changes) -> str:
    """
    Next semantic version for `changes`.

    Breaking changes bump the major version, except below 1.0 where they only
    bump the minor version, like features do. Fixes bump the patch version.
    """
    try:
        major, minor, patch = version.split(".")
    except ValueError as e:
        raise ReleaseError(f"Not a semantic version: {version}") from e
    if changes.breaking and major != "0":
        return f"{int(major) + 1}.0.0"
    if changes.feature or changes.breaking:
        return f"{major}.{int(minor) + 1}.0"
    if changes.fix:
        return f"{major}.{minor}.{int(patch) + 1}"
    raise ReleaseError("No new release notes!")


def release_notes(
    changes: Changes,
    version: str,
    *,
    docs_ref: str,
    today: datetime.date | None = None,
) -> ReleaseNotes:
    date = (today or datetime.date.today()).isoformat()
    sections = [(title, getattr(changes, kind)) for kind, title in SECTION_TITLES]
    try:
        head = _env.from_string(NOTES_HEAD_TEMPLATE).render(version=version, date=date)
        body = _env.from_string(NOTES_BODY_TEMPLATE).render(sections=sections, docs_ref=docs_ref)
    except TemplateError as e:
        raise ReleaseError(f"Failed rendering release notes for {version}") from e
    return ReleaseNotes(head=head, body=body)


def read_version(pkg: Package) -> str:
    try:
        data = json.loads(pkg.manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ReleaseError(f"Cannot read {pkg.manifest}: {e}") from e
    version = data.get("version") if isinstance(data, dict) else None
    if not isinstance(version, str):
        raise ReleaseError(f"{pkg.manifest} has no version")
    return version


def set_module_version(pkg: Package, version: str) -> None:
    text = pkg.manifest.read_text(encoding="utf-8")
    pkg.manifest.write_text(
        _VERSION_FIELD_RE.sub(lambda _m: f'"version": "{version}"', text, count=1),
        encoding="utf-8",
    )


def do_release(pkg: Package, changes: Changes, version: str, *, docs_ref: str) -> ReleaseNotes:
    """Write the new version and changelog entry, then commit and tag."""
    set_module_version(pkg, version)
    notes = release_notes(changes, version, docs_ref=docs_ref)
    existing = pkg.changelog_file.read_text(encoding="utf-8") if pkg.changelog_file.exists() else ""
    pkg.changelog_file.write_text(notes.head + notes.body + existing, encoding="utf-8")

    git.add(pkg.directory, pkg.manifest.name, pkg.changelog_file.name)
    git.commit(pkg.directory, f"Mark version {version}")
    git.tag(pkg.directory, version, f"Version {version}\n\n{notes.body}")
    return notes


def release(registry: Registry, name: str, *, version: str | None = None, messages: Sequence[str] = ()) -> str:
    """Release one package. Returns the new version."""
    pkg = registry.require(name)
    config = registry.config
    extra = "".join(message + "\n\n" for message in messages)
    current = read_version(pkg)
    changes = changelog(pkg, current, extra, branch=config.main_branch)
    new_version = version or bump_version(current, changes)
    log.info("releasing", package=pkg.name, version=new_version)
    do_release(pkg, changes, new_version, docs_ref=config.docs_ref)
    return new_version


def release_all(registry: Registry, messages: Mapping[str, str]) -> str:
    """
    Release every package under one shared new minor version.

    `messages` maps package names to an extra note for that package; the
    `grammar` key applies to every grammar package without its own note.
    """
    config = registry.config
    versions = [read_version(pkg) for pkg in registry]
    try:
        max_minor = max(int(v.split(".")[1]) for v in versions)
    except (IndexError, ValueError) as e:
        raise ReleaseError(f"Cannot determine minor versions from {versions}") from e
    new_version = f"0.{max_minor + 1}.0"
    log.info("releasing_all", version=new_version, packages=len(registry))

    bump_deps(registry, new_version)
    for pkg, current in zip(registry, versions):
        note = messages.get(pkg.name) or (messages.get("grammar") if pkg.grammar else None)
        changes = changelog(pkg, current, note, branch=config.main_branch)
        do_release(pkg, changes, new_version, docs_ref=config.docs_ref)
    return new_version


def bump_deps(registry: Registry, version: str) -> None:
    """Point every in-workspace dependency constraint at `^version`."""
    scope = re.escape(registry.config.scope)
    dep_re = re.compile(rf'"({scope}/[\w-]+)":\s*"\^?\d+\.\d+\.\d+"')
    for pkg in registry:
        text = pkg.manifest.read_text(encoding="utf-8")
        updated = dep_re.sub(lambda m: f'"{m.group(1)}": "^{version}"', text)
        if updated != text:
            pkg.manifest.write_text(updated, encoding="utf-8")
            log.debug("deps_bumped", package=pkg.name, version=version)


def notes(registry: Registry, name: str) -> ReleaseNotes:
    """Pending release notes for one package, without touching anything."""
    pkg = registry.require(name)
    config = registry.config
    changes = changelog(pkg, read_version(pkg), branch=config.main_branch)
    return release_notes(changes, "XXX", docs_ref=config.docs_ref)
