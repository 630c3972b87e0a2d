import os
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .application_store import (
    INSTALL_TIME_FIELD,
    MANIFEST_FIELD,
    PATH_FIELD,
    ApplicationStore,
)
from .errors import (
    ApplicationStoreError,
    DuplicateKey,
    InitError,
    MigrationError,
    MissingField,
    NotFound,
    RoutingError,
    SerializationError,
    StoreNotInitialized,
    TransactionError,
    UnsupportedKeyShape,
)
from .keys import EVENTS_FIELD, CollectionKey, EventsKey, RootKey, format_key, parse_key
from .notifier import StoreObserver

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_application_store: Optional[ApplicationStore] = None


def get_application_store() -> ApplicationStore:
    """Get the process-wide ApplicationStore instance."""
    global _application_store
    if _application_store is None:
        data_path = os.getenv("APPLICATION_DATA_PATH")
        if not data_path:
            raise ValueError(
                "APPLICATION_DATA_PATH environment variable is not set. Please check your .env file."
            )
        _application_store = ApplicationStore(data_path)
    return _application_store


async def close_application_store() -> None:
    """Close the process-wide ApplicationStore."""
    global _application_store
    if _application_store:
        await _application_store.close()
        _application_store = None


__all__ = [
    "ApplicationStore",
    "ApplicationStoreError",
    "CollectionKey",
    "DuplicateKey",
    "EVENTS_FIELD",
    "EventsKey",
    "INSTALL_TIME_FIELD",
    "InitError",
    "MANIFEST_FIELD",
    "MigrationError",
    "MissingField",
    "NotFound",
    "PATH_FIELD",
    "RootKey",
    "RoutingError",
    "SerializationError",
    "StoreNotInitialized",
    "StoreObserver",
    "TransactionError",
    "UnsupportedKeyShape",
    "close_application_store",
    "format_key",
    "get_application_store",
    "parse_key",
]
