"""
Application store for installed application metadata.

This module implements the key-path addressed persistence engine:
- "<app_id>" addresses the application record (manifest, path, install_time)
- "<app_id>.registered_events" addresses its registered event list
- "" addresses every application at once (queries only)

Each mutation runs in its own transaction and, once committed, is reported to
the registered observers before the call returns.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .codec import decode_events, decode_manifest, encode_events, encode_manifest
from .errors import (
    ApplicationStoreError,
    DuplicateKey,
    InitError,
    MigrationError,
    MissingField,
    NotFound,
    SerializationError,
    StoreNotInitialized,
    TransactionError,
    UnsupportedKeyShape,
)
from .keys import CollectionKey, EventsKey, RootKey, StoreKey, coerce_key, events_key
from .models import Application, Base, RegisteredEvents
from .notifier import ChangeNotifier, StoreObserver
from .schema_manager import CURRENT_SCHEMA_VERSION, SchemaManager

logger = logging.getLogger(__name__)

MANIFEST_FIELD = "manifest"
PATH_FIELD = "path"
INSTALL_TIME_FIELD = "install_time"

KeyLike = Union[str, StoreKey]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _normalize_application_value(value: Any) -> Tuple[Dict[str, Any], str]:
    """
    Validate an application value and encode its manifest.

    Returns the normalized record (with a detached copy of the manifest) and
    the manifest JSON text to store.
    """
    if not isinstance(value, Mapping):
        raise SerializationError("application value must be a mapping")
    for field in (MANIFEST_FIELD, PATH_FIELD, INSTALL_TIME_FIELD):
        if value.get(field) is None:
            raise MissingField(field)

    manifest_text = encode_manifest(value[MANIFEST_FIELD])
    path = value[PATH_FIELD]
    if not isinstance(path, str):
        raise SerializationError("path must be a string")
    install_time = value[INSTALL_TIME_FIELD]
    if isinstance(install_time, bool) or not isinstance(install_time, (int, float)):
        raise SerializationError("install_time must be a number")

    record = {
        MANIFEST_FIELD: decode_manifest(manifest_text),
        PATH_FIELD: path,
        INSTALL_TIME_FIELD: float(install_time),
    }
    return record, manifest_text


def _application_to_dict(row: Application) -> Dict[str, Any]:
    return {
        MANIFEST_FIELD: decode_manifest(row.manifest),
        PATH_FIELD: row.path,
        INSTALL_TIME_FIELD: float(row.install_time),
    }


class ApplicationStore:
    """
    Async SQLite store for installed applications.

    Core operations:
    - insert: create a record; fails if it already exists
    - update: overwrite an existing record
    - delete: remove a record (and its registered events)
    - query: read one record, one event list, or the whole collection
    """

    def __init__(
        self,
        data_path: Union[Path, str],
        *,
        echo: Optional[bool] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        """
        Args:
            data_path: Directory holding applications.db (created if absent).
            echo: Log emitted SQL; defaults to APPLICATION_DB_ECHO.
            lock_file_path: Override for the initialization lock file.
            lock_timeout_seconds: How long init_db waits for that lock.
        """
        self.data_path = Path(data_path)
        self.schema = SchemaManager(
            self.data_path,
            lock_file_path=lock_file_path,
            lock_timeout_seconds=lock_timeout_seconds,
        )
        self.database_url = self.schema.database_url
        if echo is None:
            echo = _env_bool("APPLICATION_DB_ECHO", False)
        self.engine = create_async_engine(self.database_url, echo=echo)
        event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._notifier = ChangeNotifier()
        self._write_lock = asyncio.Lock()
        self._initialized = False
        self._failed = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized and not self._closed

    async def init_db(self) -> None:
        """
        Open or create the database, then migrate the legacy JSON file if this
        is the first time the relational database is created.

        Observers receive ``on_initialization_completed`` with the outcome.
        A failed initialization is terminal for this instance.
        """
        if self.is_initialized:
            return
        if self._failed or self._closed:
            raise StoreNotInitialized(
                "Store is closed or failed to initialize; create a new instance"
            )

        try:
            async with self.schema.locked():
                is_new = self.schema.prepare_storage()
                try:
                    await self._create_schema()
                    if self.schema.should_migrate(is_new):
                        await self._migrate_legacy_database()
                except SQLAlchemyError as exc:
                    await self._abort_init(is_new)
                    raise InitError(
                        f"Unable to open applications database {self.schema.database_file}: {exc}"
                    ) from exc
                except InitError:
                    await self._abort_init(is_new)
                    raise
        except InitError as exc:
            self._failed = True
            await self.engine.dispose()
            logger.error("Applications database initialization failed: %s", exc)
            try:
                self._notifier.notify_initialization_completed(False)
            except Exception:
                logger.exception("Store observer failed while reporting initialization failure")
            raise

        self._initialized = True
        logger.info("Applications database ready at %s", self.schema.database_file)
        self._notifier.notify_initialization_completed(True)

    async def _abort_init(self, is_new: bool) -> None:
        await self.engine.dispose()
        if is_new:
            # Let the next attempt see a fresh database and retry the migration.
            self.schema.discard_database_files()

    async def _create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.run_sync(self.schema.ensure_version)

    async def _migrate_legacy_database(self) -> None:
        document = await asyncio.to_thread(self.schema.read_legacy_document)
        try:
            async with self._transaction() as session:
                for app_id, value in document.items():
                    key = coerce_key(RootKey(str(app_id)))
                    await self._insert_application_row(session, key, value)
                await SchemaManager.set_version(session, CURRENT_SCHEMA_VERSION)
        except MigrationError:
            raise
        except ApplicationStoreError as exc:
            raise MigrationError(
                f"Unable to migrate legacy database {self.schema.legacy_file}: {exc}"
            ) from exc
        self.schema.remove_legacy_file()
        logger.info(
            "Migrated %d application(s) from %s", len(document), self.schema.legacy_file
        )

    async def close(self) -> None:
        """Release the database connection pool."""
        self._closed = True
        await self.engine.dispose()

    async def __aenter__(self) -> "ApplicationStore":
        try:
            await self.init_db()
        except Exception:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: StoreObserver, *, first: bool = False) -> None:
        self._notifier.add_observer(observer, first=first)

    def remove_observer(self, observer: StoreObserver) -> None:
        self._notifier.remove_observer(observer)

    def has_observer(self, observer: StoreObserver) -> bool:
        return self._notifier.has_observer(observer)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self):
        """A session whose work commits on exit and rolls back on any error."""
        async with self.async_session() as session:
            try:
                async with session.begin():
                    yield session
            except SQLAlchemyError as exc:
                logger.error("Applications database transaction failed: %s", exc)
                raise TransactionError(str(exc)) from exc

    @asynccontextmanager
    async def _read_session(self):
        async with self.async_session() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                logger.error("Applications database query failed: %s", exc)
                raise TransactionError(str(exc)) from exc

    def _ensure_ready(self) -> None:
        if not self.is_initialized:
            raise StoreNotInitialized("Applications database is not initialized")

    def _mutation_key(self, key: KeyLike) -> Union[RootKey, EventsKey]:
        self._ensure_ready()
        parsed = coerce_key(key)
        if isinstance(parsed, CollectionKey):
            raise UnsupportedKeyShape("", "the collection key is only valid for queries")
        return parsed

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def insert(self, key: KeyLike, value: Any) -> None:
        """
        Create the value addressed by ``key``.

        Raises:
            DuplicateKey: the record already exists
            NotFound: events were given for an application that is not stored
            MissingField: an application value lacks manifest/path/install_time
        """
        parsed = self._mutation_key(key)
        async with self._write_lock:
            async with self._transaction() as session:
                if isinstance(parsed, RootKey):
                    new_value = await self._insert_application_row(session, parsed, value)
                else:
                    new_value = await self._insert_events_row(session, parsed, value)
            self._notifier.notify_value_changed(str(parsed), new_value)

    async def update(self, key: KeyLike, value: Any) -> None:
        """Overwrite the value addressed by ``key``; raises NotFound if absent."""
        parsed = self._mutation_key(key)
        async with self._write_lock:
            async with self._transaction() as session:
                if isinstance(parsed, RootKey):
                    new_value = await self._update_application_row(session, parsed, value)
                else:
                    new_value = await self._update_events_row(session, parsed, value)
            self._notifier.notify_value_changed(str(parsed), new_value)

    async def delete(self, key: KeyLike) -> None:
        """
        Delete the value addressed by ``key``; raises NotFound if absent.

        Deleting an application also deletes its registered events, and both
        deletions are reported.
        """
        parsed = self._mutation_key(key)
        removed_events = False
        async with self._write_lock:
            async with self._transaction() as session:
                if isinstance(parsed, RootKey):
                    removed_events = await self._delete_application_row(session, parsed)
                else:
                    await self._delete_events_row(session, parsed)
            self._notifier.notify_value_changed(str(parsed), None)
            if removed_events:
                self._notifier.notify_value_changed(events_key(parsed.app_id), None)

    async def query(self, key: KeyLike = "") -> Optional[Any]:
        """
        Read the value addressed by ``key``.

        Returns a record dict for an application key, a list of event names
        for an events key, a dict of id -> record for the empty key, or None
        when nothing is stored under the key.
        """
        self._ensure_ready()
        parsed = coerce_key(key)
        async with self._read_session() as session:
            if isinstance(parsed, CollectionKey):
                return await self._query_installed_applications(session)
            if isinstance(parsed, RootKey):
                row = await session.get(Application, parsed.app_id)
                return _application_to_dict(row) if row is not None else None
            row = await session.get(RegisteredEvents, parsed.app_id)
            return decode_events(row.events) if row is not None else None

    async def get_schema_version(self) -> Optional[int]:
        self._ensure_ready()
        async with self._read_session() as session:
            return await SchemaManager.get_version(session)

    # ------------------------------------------------------------------
    # Row helpers (run inside an open transaction)
    # ------------------------------------------------------------------

    async def _insert_application_row(
        self, session: AsyncSession, key: RootKey, value: Any
    ) -> Dict[str, Any]:
        record, manifest_text = _normalize_application_value(value)
        if await session.get(Application, key.app_id) is not None:
            raise DuplicateKey(str(key))
        session.add(
            Application(
                id=key.app_id,
                manifest=manifest_text,
                path=record[PATH_FIELD],
                install_time=record[INSTALL_TIME_FIELD],
            )
        )
        try:
            await session.flush()
        except IntegrityError as exc:
            raise DuplicateKey(str(key)) from exc
        return record

    async def _update_application_row(
        self, session: AsyncSession, key: RootKey, value: Any
    ) -> Dict[str, Any]:
        record, manifest_text = _normalize_application_value(value)
        row = await session.get(Application, key.app_id)
        if row is None:
            raise NotFound(str(key))
        row.manifest = manifest_text
        row.path = record[PATH_FIELD]
        row.install_time = record[INSTALL_TIME_FIELD]
        await session.flush()
        return record

    async def _delete_application_row(self, session: AsyncSession, key: RootKey) -> bool:
        row = await session.get(Application, key.app_id)
        if row is None:
            raise NotFound(str(key))
        events_row = await session.get(RegisteredEvents, key.app_id)
        if events_row is not None:
            await session.delete(events_row)
            await session.flush()
        await session.delete(row)
        await session.flush()
        return events_row is not None

    async def _insert_events_row(
        self, session: AsyncSession, key: EventsKey, events: Sequence[str]
    ) -> List[str]:
        encoded = encode_events(events)
        if await session.get(Application, key.app_id) is None:
            raise NotFound(key.app_id)
        if await session.get(RegisteredEvents, key.app_id) is not None:
            raise DuplicateKey(str(key))
        session.add(RegisteredEvents(id=key.app_id, events=encoded))
        try:
            await session.flush()
        except IntegrityError as exc:
            raise NotFound(key.app_id) from exc
        return decode_events(encoded)

    async def _update_events_row(
        self, session: AsyncSession, key: EventsKey, events: Sequence[str]
    ) -> List[str]:
        encoded = encode_events(events)
        row = await session.get(RegisteredEvents, key.app_id)
        if row is None:
            raise NotFound(str(key))
        row.events = encoded
        await session.flush()
        return decode_events(encoded)

    async def _delete_events_row(self, session: AsyncSession, key: EventsKey) -> None:
        row = await session.get(RegisteredEvents, key.app_id)
        if row is None:
            raise NotFound(str(key))
        await session.delete(row)
        await session.flush()

    @staticmethod
    async def _query_installed_applications(
        session: AsyncSession,
    ) -> Dict[str, Dict[str, Any]]:
        result = await session.execute(select(Application).order_by(Application.id))
        return {row.id: _application_to_dict(row) for row in result.scalars().all()}
