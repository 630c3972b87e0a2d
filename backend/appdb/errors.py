"""
Exception types raised by the application store.

Every error leaves the backing store unchanged: writes are rolled back before
the exception reaches the caller.
"""


class ApplicationStoreError(Exception):
    """Base class for all application store failures."""


class InitError(ApplicationStoreError):
    """The store could not be opened, created or validated."""


class MigrationError(InitError):
    """The legacy JSON document could not be migrated into the relational tables."""


class StoreNotInitialized(InitError):
    """An operation was attempted before a successful ``init_db()``."""


class RoutingError(ApplicationStoreError, ValueError):
    """A key path could not be routed to a storage operation."""


class UnsupportedKeyShape(RoutingError):
    def __init__(self, key: str, reason: str = "unsupported key shape") -> None:
        self.key = key
        super().__init__(f"{reason}: {key!r}")


class MissingField(ApplicationStoreError, ValueError):
    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Required field '{field}' is missing")


class DuplicateKey(ApplicationStoreError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Key '{key}' already exists")


class NotFound(ApplicationStoreError, LookupError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Key '{key}' not found")


class SerializationError(ApplicationStoreError, ValueError):
    """A manifest or event list could not be encoded or decoded."""


class TransactionError(ApplicationStoreError):
    """Begin or commit failed; the transaction has been rolled back."""
