"""
watch.py

Responsibility: Keep packages rebuilt while their input files change.

Threading model: watchdog delivers events on its observer thread. Each
`FileWatch` hands them to the asyncio loop with `call_soon_threadsafe`, so the
`Watcher`'s pending list and `working` flag are only ever touched from the
loop thread. Rebuilds run one at a time; more events while a rebuild is in
flight only add to the pending list.

Scheduler states: idle -> pending (timer armed) -> draining -> idle.
"""

from __future__ import annotations

import asyncio
import functools
import os
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from lz.build import Builder, BuildOptions
from lz.packages import DependencyError, Package

log = structlog.get_logger(__name__)

# Seconds to wait after the first event before draining, so bursts of writes coalesce.
DEBOUNCE = 0.02
# Seconds to wait before re-arming a watch after its file was renamed or replaced.
REARM_DELAY = 0.05

_CHANGE_EVENTS = frozenset({"modified", "created", "deleted", "moved"})
_RENAME_EVENTS = frozenset({"created", "deleted", "moved"})


class _FileEventHandler(FileSystemEventHandler):
    def __init__(self, watch: FileWatch) -> None:
        self._watch = watch

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return
        paths = {os.fsdecode(event.src_path)}
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.add(os.fsdecode(dest))
        if self._watch.target in paths:
            self._watch.dispatch(event.event_type)


class FileWatch:
    """
    A watch on a single file.

    watchdog observes directories, so the handler sits on the file's parent
    and filters by path. After a rename-class event the handle re-arms itself
    once the grace period has passed; if the file is gone by then, the watch
    is dropped quietly.
    """

    def __init__(
        self,
        path: str | Path,
        observer: BaseObserver,
        loop: asyncio.AbstractEventLoop,
        on_change: Callable[[], None],
        *,
        rearm_delay: float = REARM_DELAY,
    ) -> None:
        self.path = Path(path).absolute()
        self.target = str(self.path)
        self._observer = observer
        self._loop = loop
        self._on_change = on_change
        self._rearm_delay = rearm_delay
        self._handler = _FileEventHandler(self)
        self._watch: ObservedWatch | None = None

    @property
    def armed(self) -> bool:
        return self._watch is not None

    def arm(self) -> None:
        self._watch = self._observer.schedule(self._handler, str(self.path.parent), recursive=False)

    def disarm(self) -> None:
        if self._watch is None:
            return
        try:
            self._observer.remove_handler_for_watch(self._handler, self._watch)
        except KeyError:
            pass
        self._watch = None

    def rearm(self) -> None:
        if not self.path.exists():
            log.debug("watch_dropped", path=self.target)
            self.disarm()
            return
        self.disarm()
        try:
            self.arm()
        except OSError:
            # Directory vanished under us.
            log.debug("watch_dropped", path=self.target)

    def dispatch(self, event_type: str) -> None:
        """Called on the observer thread."""
        self._loop.call_soon_threadsafe(self.handle, event_type)

    def handle(self, event_type: str) -> None:
        self._on_change()
        if event_type in _RENAME_EVENTS:
            self._loop.call_later(self._rearm_delay, self.rearm)


class Watcher:
    """Pending-rebuild queue drained serially in registry order."""

    def __init__(
        self,
        packages: Iterable[Package],
        rebuild: Callable[[Package], Awaitable[object]],
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        debounce: float = DEBOUNCE,
    ) -> None:
        self.packages = list(packages)
        self.work: list[Package] = []
        self.working = False
        self.watches: list[FileWatch] = []
        self._rebuild = rebuild
        self._loop = loop or asyncio.get_running_loop()
        self._debounce = debounce
        self._drain: asyncio.Task[None] | None = None

    def watch(self, observer: BaseObserver, input_files: Callable[[Package], Iterable[Path]]) -> None:
        for pkg in self.packages:
            try:
                files = list(input_files(pkg))
            except DependencyError as e:
                log.error("watch_skipped", package=pkg.name, error=str(e))
                continue
            for path in files:
                handle = FileWatch(path, observer, self._loop, functools.partial(self.trigger, pkg))
                handle.arm()
                self.watches.append(handle)

    def trigger(self, pkg: Package) -> None:
        if pkg in self.work:
            return
        self.work.append(pkg)
        self._loop.call_later(self._debounce, self.start_work)

    def start_work(self) -> None:
        if self.working:
            return
        self.working = True
        self._drain = self._loop.create_task(self._run())

    async def wait_idle(self) -> None:
        """Wait for the rebuild in flight, if any, to finish."""
        while self._drain is not None and not self._drain.done():
            await self._drain

    def _next(self) -> Package:
        for pkg in self.packages:
            if pkg in self.work:
                return pkg
        return self.work[0]

    async def _run(self) -> None:
        try:
            while self.work:
                pkg = self._next()
                self.work.remove(pkg)
                try:
                    await self._rebuild(pkg)
                except Exception:
                    log.exception("rebuild_failed", package=pkg.name)
        finally:
            self.working = False


async def watch_workspace(builder: Builder, *, observer: BaseObserver | None = None) -> None:
    """
    Build everything once, then rebuild on change until cancelled.

    On cancellation a rebuild already in flight is allowed to finish before
    the observer stops.
    """
    options = BuildOptions(esm=False)
    for pkg in builder.registry:
        try:
            await builder.rebuild(pkg, options)
        except Exception:
            log.exception("build_failed", package=pkg.name)

    watcher = Watcher(builder.registry, functools.partial(builder.rebuild, options=options))
    observer = observer or Observer()
    watcher.watch(observer, builder.registry.input_files)
    observer.start()
    log.info("watching", packages=len(watcher.packages), files=len(watcher.watches))
    try:
        await asyncio.Event().wait()
    finally:
        await watcher.wait_idle()
        observer.stop()
        observer.join()
