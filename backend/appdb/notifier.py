"""
Change notification for committed store mutations.

Observers are called synchronously, in registration order, after the
transaction has committed and before the mutating call returns. Exceptions
raised by an observer are not caught here: they reach the caller of the
mutation, which has already been committed.
"""

from __future__ import annotations

from typing import Any, List, Optional


class StoreObserver:
    """Base class for store observers; override the callbacks you need."""

    def on_value_changed(self, key: str, value: Optional[Any]) -> None:
        """Called with the new value for ``key``, or ``None`` after a delete."""

    def on_initialization_completed(self, succeeded: bool) -> None:
        """Called once ``init_db()`` has finished."""


class ChangeNotifier:
    def __init__(self) -> None:
        self._observers: List[StoreObserver] = []

    def add_observer(self, observer: StoreObserver, *, first: bool = False) -> None:
        """Register ``observer``; with ``first`` it is called before the others."""
        if first:
            if observer in self._observers:
                self._observers.remove(observer)
            self._observers.insert(0, observer)
        elif observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: StoreObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def has_observer(self, observer: StoreObserver) -> bool:
        return observer in self._observers

    def notify_value_changed(self, key: str, value: Optional[Any]) -> None:
        # Snapshot so observers may unregister themselves while being notified.
        for observer in list(self._observers):
            observer.on_value_changed(key, value)

    def notify_initialization_completed(self, succeeded: bool) -> None:
        for observer in list(self._observers):
            observer.on_initialization_completed(succeeded)
