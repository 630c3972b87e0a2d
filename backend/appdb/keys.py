"""
Key path routing.

A key path is a dotted string addressing one of three shapes:

    ""                          -> the whole collection (queries only)
    "<app_id>"                  -> the application record
    "<app_id>.registered_events" -> the registered event list of an application

Anything else is rejected with ``UnsupportedKeyShape``. Because ``.`` is the
separator, application ids cannot contain it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .errors import UnsupportedKeyShape

KEY_SEPARATOR = "."
EVENTS_FIELD = "registered_events"


@dataclass(frozen=True)
class CollectionKey:
    """Every installed application at once."""

    def __str__(self) -> str:
        return ""


@dataclass(frozen=True)
class RootKey:
    app_id: str

    def __str__(self) -> str:
        return self.app_id


@dataclass(frozen=True)
class EventsKey:
    app_id: str

    def __str__(self) -> str:
        return f"{self.app_id}{KEY_SEPARATOR}{EVENTS_FIELD}"


StoreKey = Union[CollectionKey, RootKey, EventsKey]


def parse_key(key: str) -> StoreKey:
    """Parse a dotted key path into a typed key."""
    if not isinstance(key, str):
        raise UnsupportedKeyShape(repr(key), "key must be a string")
    if key == "":
        return CollectionKey()

    segments = key.split(KEY_SEPARATOR)
    if any(not segment for segment in segments):
        raise UnsupportedKeyShape(key, "empty key segment")
    if len(segments) == 1:
        return RootKey(segments[0])
    if len(segments) == 2 and segments[1] == EVENTS_FIELD:
        return EventsKey(segments[0])
    raise UnsupportedKeyShape(key)


def format_key(key: StoreKey) -> str:
    return str(key)


def coerce_key(key: Union[str, StoreKey]) -> StoreKey:
    """Accept either a raw key path or an already parsed key."""
    if isinstance(key, CollectionKey):
        return key
    if isinstance(key, (RootKey, EventsKey)):
        # Typed keys built by hand must survive a round trip through the parser.
        if parse_key(format_key(key)) != key:
            raise UnsupportedKeyShape(format_key(key), "invalid application id")
        return key
    return parse_key(key)


def events_key(app_id: str) -> str:
    return format_key(EventsKey(app_id))
