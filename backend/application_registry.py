"""
In-memory registry of installed applications.

The registry mirrors the application store: it is hydrated from the store once
at startup, and afterwards every change goes to the store first. The cached
map follows the store's commit notifications, so it changes exactly when a
write commits, whether or not a later store observer fails.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from appdb import (
    INSTALL_TIME_FIELD,
    MANIFEST_FIELD,
    PATH_FIELD,
    ApplicationStore,
    DuplicateKey,
    EventsKey,
    NotFound,
    RootKey,
    StoreObserver,
    get_application_store,
    parse_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstalledApplication:
    id: str
    manifest: Dict[str, Any]
    path: str
    install_time: float

    def to_record(self) -> Dict[str, Any]:
        return {
            MANIFEST_FIELD: self.manifest,
            PATH_FIELD: self.path,
            INSTALL_TIME_FIELD: self.install_time,
        }

    @classmethod
    def from_record(cls, app_id: str, record: Dict[str, Any]) -> "InstalledApplication":
        return cls(
            id=app_id,
            manifest=copy.deepcopy(record[MANIFEST_FIELD]),
            path=record[PATH_FIELD],
            install_time=float(record[INSTALL_TIME_FIELD]),
        )


class RegistryObserver:
    """Receives domain events after the registry has changed."""

    def application_added(self, application: InstalledApplication) -> None:
        pass

    def application_removed(self, app_id: str) -> None:
        pass

    def application_updated(self, application: InstalledApplication) -> None:
        pass


class ApplicationRegistry(StoreObserver):
    def __init__(
        self,
        store: ApplicationStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._clock = clock
        self._applications: Dict[str, InstalledApplication] = {}
        self._observers: List[RegistryObserver] = []
        # Called before any other store observer.
        store.add_observer(self, first=True)

    async def initialize(self) -> None:
        """Initialize the store and load every installed application."""
        await self.store.init_db()
        records = await self.store.query("") or {}
        self._applications = {
            app_id: InstalledApplication.from_record(app_id, record)
            for app_id, record in records.items()
        }
        logger.info("Loaded %d installed application(s)", len(self._applications))

    def add_observer(self, observer: RegistryObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: RegistryObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def on_value_changed(self, key: str, value: Optional[Any]) -> None:
        """Apply a committed store change to the cache and report it."""
        parsed = parse_key(key)
        if not isinstance(parsed, RootKey):
            return

        app_id = parsed.app_id
        if value is None:
            if self._applications.pop(app_id, None) is not None:
                for observer in list(self._observers):
                    observer.application_removed(app_id)
            return

        existed = app_id in self._applications
        application = InstalledApplication.from_record(app_id, value)
        self._applications[app_id] = application
        for observer in list(self._observers):
            if existed:
                observer.application_updated(copy.deepcopy(application))
            else:
                observer.application_added(copy.deepcopy(application))

    def contains(self, app_id: str) -> bool:
        return app_id in self._applications

    def get_application_by_id(self, app_id: str) -> Optional[InstalledApplication]:
        application = self._applications.get(app_id)
        return copy.deepcopy(application) if application is not None else None

    def get_installed_applications(self) -> Dict[str, InstalledApplication]:
        return copy.deepcopy(self._applications)

    async def add_application(
        self,
        app_id: str,
        manifest: Dict[str, Any],
        path: Union[Path, str],
    ) -> InstalledApplication:
        if self.contains(app_id):
            logger.warning("Application %s has been already installed", app_id)
            raise DuplicateKey(app_id)

        application = InstalledApplication(
            id=app_id,
            manifest=copy.deepcopy(manifest),
            path=str(path),
            install_time=self._clock(),
        )
        await self.store.insert(RootKey(app_id), application.to_record())
        return application

    async def remove_application(self, app_id: str) -> None:
        if not self.contains(app_id):
            logger.error("Application %s is not installed", app_id)
            raise NotFound(app_id)

        await self.store.delete(RootKey(app_id))

    async def update_application(
        self,
        app_id: str,
        manifest: Dict[str, Any],
        path: Union[Path, str],
    ) -> InstalledApplication:
        if not self.contains(app_id):
            logger.error("Application %s is not installed", app_id)
            raise NotFound(app_id)

        application = InstalledApplication(
            id=app_id,
            manifest=copy.deepcopy(manifest),
            path=str(path),
            install_time=self._clock(),
        )
        await self.store.update(RootKey(app_id), application.to_record())
        return application

    async def get_events(self, app_id: str) -> List[str]:
        if not self.contains(app_id):
            logger.error(
                "Application %s is not installed. Could not get system events for it.",
                app_id,
            )
            raise NotFound(app_id)
        return await self.store.query(EventsKey(app_id)) or []

    async def set_events(self, app_id: str, events: Sequence[str]) -> None:
        """Replace the registered events; an empty list removes them."""
        if not self.contains(app_id):
            logger.error(
                "Application %s is not installed. Could not set system events for it.",
                app_id,
            )
            raise NotFound(app_id)

        key = EventsKey(app_id)
        new_events = list(events)
        old_events = await self.store.query(key)
        if not new_events:
            if old_events is not None:
                await self.store.delete(key)
        elif old_events is None:
            await self.store.insert(key, new_events)
        elif old_events != new_events:
            await self.store.update(key, new_events)


_application_registry: Optional[ApplicationRegistry] = None


def get_application_registry() -> ApplicationRegistry:
    """Get the process-wide registry, backed by the process-wide store."""
    global _application_registry
    if _application_registry is None:
        _application_registry = ApplicationRegistry(get_application_store())
    return _application_registry


def reset_application_registry() -> None:
    global _application_registry
    _application_registry = None
