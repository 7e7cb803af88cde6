from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from watchdog.events import FileModifiedEvent, FileMovedEvent

from conftest import FakeBundler, OLD_MTIME, set_mtime, write
from lz.build import Builder
from lz.config import parse_config
from lz.packages import Package, Registry
from lz.watch import FileWatch, Watcher, watch_workspace


class FakeObserver:
    def __init__(self) -> None:
        self.scheduled: list[tuple[object, str]] = []
        self.removed: list[object] = []
        self.started = False
        self.stopped = False

    def schedule(self, handler: object, path: str, recursive: bool = False) -> object:
        self.scheduled.append((handler, path))
        return (path, len(self.scheduled))

    def remove_handler_for_watch(self, handler: object, watch: object) -> None:
        self.removed.append(watch)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def join(self) -> None:
        pass


def _registry(tmp_path: Path, count: int) -> Registry:
    return Registry(parse_config({"packages": [f"pkg{i}" for i in range(count)]}, root=tmp_path))


def test_burst_of_events_rebuilds_once(tmp_path: Path) -> None:
    registry = _registry(tmp_path, 2)

    async def scenario() -> list[str]:
        built: list[str] = []

        async def rebuild(pkg: Package) -> None:
            built.append(pkg.name)

        watcher = Watcher(registry, rebuild)
        for _ in range(10):
            watcher.trigger(registry.require("pkg1"))
        await asyncio.sleep(0.1)
        await watcher.wait_idle()
        return built

    assert asyncio.run(scenario()) == ["pkg1"]


def test_pending_packages_drain_in_registry_order(tmp_path: Path) -> None:
    registry = _registry(tmp_path, 6)

    async def scenario() -> list[str]:
        events: list[str] = []

        async def rebuild(pkg: Package) -> None:
            events.append(f"start {pkg.name}")
            await asyncio.sleep(0.01)
            events.append(f"end {pkg.name}")

        watcher = Watcher(registry, rebuild)
        watcher.trigger(registry.require("pkg5"))
        watcher.trigger(registry.require("pkg0"))
        await asyncio.sleep(0.1)
        await watcher.wait_idle()
        return events

    assert asyncio.run(scenario()) == ["start pkg0", "end pkg0", "start pkg5", "end pkg5"]


def test_failed_rebuild_does_not_stop_the_queue(tmp_path: Path) -> None:
    registry = _registry(tmp_path, 2)

    async def scenario() -> tuple[list[str], bool]:
        built: list[str] = []

        async def rebuild(pkg: Package) -> None:
            built.append(pkg.name)
            if pkg.name == "pkg0":
                raise RuntimeError("syntax error")

        watcher = Watcher(registry, rebuild)
        watcher.trigger(registry.require("pkg0"))
        watcher.trigger(registry.require("pkg1"))
        await asyncio.sleep(0.1)
        await watcher.wait_idle()
        return built, watcher.working

    built, working = asyncio.run(scenario())
    assert built == ["pkg0", "pkg1"]
    assert not working


def test_events_during_a_rebuild_only_enqueue(tmp_path: Path) -> None:
    registry = _registry(tmp_path, 2)

    async def scenario() -> tuple[list[str], int]:
        built: list[str] = []
        active = 0
        max_active = 0
        release = asyncio.Event()

        async def rebuild(pkg: Package) -> None:
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            built.append(pkg.name)
            if len(built) == 1:
                await release.wait()
            active -= 1

        watcher = Watcher(registry, rebuild)
        pkg0, pkg1 = registry.require("pkg0"), registry.require("pkg1")
        watcher.trigger(pkg0)
        await asyncio.sleep(0.05)
        assert watcher.working

        watcher.trigger(pkg1)
        watcher.trigger(pkg0)
        watcher.start_work()
        await asyncio.sleep(0.05)
        assert built == ["pkg0"]

        release.set()
        await asyncio.sleep(0.05)
        await watcher.wait_idle()
        return built, max_active

    built, max_active = asyncio.run(scenario())
    assert built == ["pkg0", "pkg0", "pkg1"]
    assert max_active == 1


def test_file_watch_filters_events_to_its_file(tmp_path: Path) -> None:
    target = write(tmp_path / "src/index.ts", "")

    async def scenario() -> int:
        hits = 0

        def on_change() -> None:
            nonlocal hits
            hits += 1

        observer = FakeObserver()
        handle = FileWatch(target, observer, asyncio.get_running_loop(), on_change)  # type: ignore[arg-type]
        handle.arm()
        handler, path = observer.scheduled[0]
        assert path == str(target.absolute().parent)

        handler.dispatch(FileModifiedEvent(str(tmp_path / "src/other.ts")))  # type: ignore[attr-defined]
        handler.dispatch(FileModifiedEvent(str(target.absolute())))  # type: ignore[attr-defined]
        await asyncio.sleep(0.01)
        return hits

    assert asyncio.run(scenario()) == 1


def test_file_watch_rearms_after_rename(tmp_path: Path) -> None:
    target = write(tmp_path / "src/index.ts", "")

    async def scenario() -> tuple[int, FakeObserver, bool]:
        hits = 0

        def on_change() -> None:
            nonlocal hits
            hits += 1

        observer = FakeObserver()
        handle = FileWatch(target, observer, asyncio.get_running_loop(), on_change, rearm_delay=0.01)  # type: ignore[arg-type]
        handle.arm()
        handler, _ = observer.scheduled[0]
        handler.dispatch(FileMovedEvent(str(tmp_path / "src/.index.ts.swp"), str(target.absolute())))  # type: ignore[attr-defined]
        await asyncio.sleep(0.05)
        return hits, observer, handle.armed

    hits, observer, armed = asyncio.run(scenario())
    assert hits == 1
    assert len(observer.scheduled) == 2
    assert len(observer.removed) == 1
    assert armed


def test_file_watch_dropped_when_file_is_gone(tmp_path: Path) -> None:
    target = write(tmp_path / "src/index.ts", "")

    async def scenario() -> tuple[FakeObserver, bool]:
        observer = FakeObserver()
        handle = FileWatch(target, observer, asyncio.get_running_loop(), lambda: None, rearm_delay=0.01)  # type: ignore[arg-type]
        handle.arm()
        target.unlink()
        handle.handle("deleted")
        await asyncio.sleep(0.05)
        return observer, handle.armed

    observer, armed = asyncio.run(scenario())
    assert len(observer.scheduled) == 1
    assert not armed


def test_watch_registers_every_input_file(registry: Registry) -> None:
    async def scenario() -> tuple[Watcher, FakeObserver]:
        async def rebuild(pkg: Package) -> None:
            pass

        observer = FakeObserver()
        watcher = Watcher(registry, rebuild)
        watcher.watch(observer, registry.input_files)  # type: ignore[arg-type]
        return watcher, observer

    watcher, observer = asyncio.run(scenario())
    assert sorted(w.path.name for w in watcher.watches) == ["index.ts", "index.ts", "stack.ts", "tree.ts"]
    assert len(observer.scheduled) == 4


def test_watch_workspace_baseline_survives_failures(registry: Registry) -> None:
    bundler = FakeBundler(fail=["common"])
    observer = FakeObserver()

    async def scenario() -> None:
        task = asyncio.ensure_future(watch_workspace(Builder(registry, bundler), observer=observer))  # type: ignore[arg-type]
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert bundler.calls == [("common", ["cjs"]), ("lr", ["cjs"])]
    assert observer.started
    assert observer.stopped


class SlowBundler(FakeBundler):
    def __init__(self) -> None:
        super().__init__()
        self.finished: list[str] = []

    async def bundle(self, pkg: Package, outputs):  # type: ignore[no-untyped-def]
        results = await super().bundle(pkg, outputs)
        await asyncio.sleep(0.1)
        self.finished.append(pkg.name)
        return results


def test_watch_workspace_finishes_rebuild_in_flight_on_shutdown(registry: Registry) -> None:
    bundler = SlowBundler()
    observer = FakeObserver()
    common = registry.require("common")
    changed = common.src_dir / "tree.ts"

    async def scenario() -> list[str]:
        task = asyncio.ensure_future(watch_workspace(Builder(registry, bundler), observer=observer))  # type: ignore[arg-type]
        await asyncio.sleep(0.4)
        assert bundler.finished == ["common", "lr"]

        set_mtime(common.cjs_file, OLD_MTIME)
        write(changed, "export class Tree { length = 0 }\n")
        for handler, _ in observer.scheduled:
            handler.dispatch(FileModifiedEvent(str(changed.absolute())))  # type: ignore[attr-defined]
        await asyncio.sleep(0.06)
        assert not observer.stopped

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return bundler.finished

    assert asyncio.run(scenario()) == ["common", "lr", "common"]
    assert observer.stopped
