import dataclasses
from pathlib import Path
from typing import Any, List, Optional, Tuple

import pytest

from application_registry import ApplicationRegistry, InstalledApplication, RegistryObserver
from appdb import ApplicationStore, DuplicateKey, NotFound, SerializationError, StoreObserver


class _RegistryEvents(RegistryObserver):
    def __init__(self) -> None:
        self.events: List[Tuple[str, str]] = []

    def application_added(self, application: InstalledApplication) -> None:
        self.events.append(("added", application.id))

    def application_removed(self, app_id: str) -> None:
        self.events.append(("removed", app_id))

    def application_updated(self, application: InstalledApplication) -> None:
        self.events.append(("updated", application.id))


class _StoreChanges(StoreObserver):
    def __init__(self) -> None:
        self.changes: List[Tuple[str, Optional[Any]]] = []

    def on_value_changed(self, key: str, value: Optional[Any]) -> None:
        self.changes.append((key, value))


async def _open_registry(data_dir: Path, now: float = 1000.0) -> ApplicationRegistry:
    registry = ApplicationRegistry(ApplicationStore(data_dir), clock=lambda: now)
    await registry.initialize()
    return registry


@pytest.mark.asyncio
async def test_registry_mirrors_store_through_restarts(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    registry = await _open_registry(data_dir)
    observer = _RegistryEvents()
    registry.add_observer(observer)

    added = await registry.add_application("app1", {"name": "One"}, Path("/apps/app1"))
    await registry.add_application("app2", {"name": "Two"}, "/apps/app2")

    assert added == InstalledApplication("app1", {"name": "One"}, "/apps/app1", 1000.0)
    assert registry.contains("app1")
    assert observer.events == [("added", "app1"), ("added", "app2")]
    await registry.store.close()

    reopened = await _open_registry(data_dir)
    assert set(reopened.get_installed_applications()) == {"app1", "app2"}
    assert reopened.get_application_by_id("app2").manifest == {"name": "Two"}
    await reopened.store.close()


@pytest.mark.asyncio
async def test_update_and_remove_keep_cache_and_store_in_lockstep(tmp_path: Path) -> None:
    registry = await _open_registry(tmp_path / "data")
    observer = _RegistryEvents()
    registry.add_observer(observer)
    await registry.add_application("app1", {"version": "1"}, "/apps/v1")

    updated = await registry.update_application("app1", {"version": "2"}, "/apps/v2")
    assert registry.get_application_by_id("app1") == updated
    assert (await registry.store.query("app1"))["path"] == "/apps/v2"

    await registry.remove_application("app1")
    assert not registry.contains("app1")
    assert await registry.store.query("app1") is None
    assert observer.events == [("added", "app1"), ("updated", "app1"), ("removed", "app1")]

    registry.remove_observer(observer)
    await registry.add_application("app2", {}, "/apps/app2")
    assert observer.events[-1] == ("removed", "app1")
    await registry.store.close()


@pytest.mark.asyncio
async def test_failed_store_write_leaves_cache_untouched(tmp_path: Path) -> None:
    registry = await _open_registry(tmp_path / "data")
    observer = _RegistryEvents()
    registry.add_observer(observer)

    with pytest.raises(SerializationError):
        await registry.add_application("app2", {"blob": b"\x00"}, "/apps/app2")

    assert registry.get_installed_applications() == {}
    assert observer.events == []
    await registry.store.close()


@pytest.mark.asyncio
async def test_direct_store_writes_are_mirrored(tmp_path: Path) -> None:
    registry = await _open_registry(tmp_path / "data")
    observer = _RegistryEvents()
    registry.add_observer(observer)

    await registry.store.insert(
        "app1", {"manifest": {}, "path": "/elsewhere", "install_time": 1.0}
    )
    with pytest.raises(DuplicateKey):
        await registry.add_application("app1", {"name": "One"}, "/apps/app1")

    assert registry.get_application_by_id("app1") == InstalledApplication(
        "app1", {}, "/elsewhere", 1.0
    )
    await registry.store.delete("app1")
    assert not registry.contains("app1")
    assert observer.events == [("added", "app1"), ("removed", "app1")]
    await registry.store.close()


@pytest.mark.asyncio
async def test_cache_follows_commits_when_a_store_observer_fails(tmp_path: Path) -> None:
    class _Exploding(StoreObserver):
        def on_value_changed(self, key: str, value: Optional[Any]) -> None:
            raise RuntimeError("observer failed")

    registry = await _open_registry(tmp_path / "data")
    exploding = _Exploding()
    registry.store.add_observer(exploding)

    with pytest.raises(RuntimeError, match="observer failed"):
        await registry.add_application("app1", {"a": "b"}, "/p")
    assert registry.contains("app1")
    assert await registry.store.query("app1") is not None

    with pytest.raises(RuntimeError, match="observer failed"):
        await registry.update_application("app1", {"a": "c"}, "/q")
    assert registry.get_application_by_id("app1").path == "/q"

    with pytest.raises(RuntimeError, match="observer failed"):
        await registry.remove_application("app1")
    assert not registry.contains("app1")
    assert await registry.store.query("app1") is None

    registry.store.remove_observer(exploding)
    await registry.add_application("app1", {"a": "b"}, "/p")
    assert registry.contains("app1")
    await registry.store.close()


@pytest.mark.asyncio
async def test_returned_applications_cannot_change_the_cache(tmp_path: Path) -> None:
    class _Tampering(RegistryObserver):
        def application_added(self, application: InstalledApplication) -> None:
            application.manifest["name"] = "observer"

    registry = await _open_registry(tmp_path / "data")
    registry.add_observer(_Tampering())
    added = await registry.add_application("app1", {"name": "One"}, "/apps/app1")

    with pytest.raises(dataclasses.FrozenInstanceError):
        added.path = "/elsewhere"
    added.manifest["name"] = "caller"
    registry.get_application_by_id("app1").manifest["name"] = "lookup"
    registry.get_installed_applications()["app1"].manifest["name"] = "listing"

    assert registry.get_application_by_id("app1").manifest == {"name": "One"}
    assert (await registry.store.query("app1"))["manifest"] == {"name": "One"}
    await registry.store.close()


@pytest.mark.asyncio
async def test_duplicate_and_unknown_applications_are_rejected(tmp_path: Path) -> None:
    registry = await _open_registry(tmp_path / "data")
    await registry.add_application("app1", {}, "/apps/app1")

    with pytest.raises(DuplicateKey):
        await registry.add_application("app1", {}, "/apps/again")
    with pytest.raises(NotFound):
        await registry.remove_application("ghost")
    with pytest.raises(NotFound):
        await registry.update_application("ghost", {}, "/apps/ghost")
    with pytest.raises(NotFound):
        await registry.get_events("ghost")
    with pytest.raises(NotFound):
        await registry.set_events("ghost", ["x"])

    assert registry.get_application_by_id("ghost") is None
    await registry.store.close()


@pytest.mark.asyncio
async def test_set_events_inserts_updates_skips_and_deletes(tmp_path: Path) -> None:
    registry = await _open_registry(tmp_path / "data")
    await registry.add_application("app1", {}, "/apps/app1")
    changes = _StoreChanges()
    registry.store.add_observer(changes)

    assert await registry.get_events("app1") == []
    await registry.set_events("app1", ["x", "y"])
    await registry.set_events("app1", ["x", "y"])
    await registry.set_events("app1", ["y"])
    assert await registry.get_events("app1") == ["y"]
    await registry.set_events("app1", [])
    await registry.set_events("app1", [])

    assert await registry.get_events("app1") == []
    assert changes.changes == [
        ("app1.registered_events", ["x", "y"]),
        ("app1.registered_events", ["y"]),
        ("app1.registered_events", None),
    ]
    await registry.store.close()
