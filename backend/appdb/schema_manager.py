"""
Schema management for the applications database.

The relational layout lives in ``<data_path>/applications.db``. Its schema
version is tracked in the ``meta`` table. Older installs kept everything in a
single JSON document, ``<data_path>/applications_db``; that file is migrated
exactly once, when the relational file is created for the first time, and is
removed after the migrated rows have been committed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Union

from filelock import FileLock, Timeout
from sqlalchemy import text

from .errors import InitError, MigrationError

logger = logging.getLogger(__name__)

DB_FILE_NAME = "applications.db"
LEGACY_DB_FILE_NAME = "applications_db"
CURRENT_SCHEMA_VERSION = 1
COMPATIBLE_SCHEMA_VERSION = 1

_VERSION_KEY = "version"
_COMPATIBLE_VERSION_KEY = "last_compatible_version"
_SQLITE_SIDE_FILE_SUFFIXES = ("-journal", "-wal", "-shm")


class SchemaManager:
    """Owns file layout, schema version and the legacy JSON migration."""

    def __init__(
        self,
        data_path: Union[Path, str],
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.data_path = Path(data_path).expanduser()
        self.database_file = self.data_path / DB_FILE_NAME
        self.legacy_file = self.data_path / LEGACY_DB_FILE_NAME

        default_lock_file = self.database_file.with_suffix(
            self.database_file.suffix + ".migrate.lock"
        )
        configured_env_lock = self._normalize_lock_path(
            os.getenv("APPLICATION_DB_LOCK_FILE", "").strip()
        )
        explicit_lock_path = self._normalize_lock_path(lock_file_path)
        self.lock_file_path = (
            explicit_lock_path
            if explicit_lock_path is not None
            else configured_env_lock
            if configured_env_lock is not None
            else default_lock_file
        )
        env_timeout = os.getenv("APPLICATION_DB_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                pass
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.database_file.resolve().as_posix()}"

    def _normalize_lock_path(
        self, raw_path: Optional[Union[Path, str]]
    ) -> Optional[Path]:
        if raw_path is None:
            return None
        text_value = str(raw_path).strip()
        if not text_value:
            return None
        candidate = Path(text_value).expanduser()
        if candidate.is_absolute():
            return candidate.resolve()
        return (self.data_path / candidate).resolve()

    @asynccontextmanager
    async def locked(self):
        """Hold the initialization lock for the duration of the block."""
        try:
            self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InitError(
                f"Unable to create lock directory {self.lock_file_path.parent}: {exc}"
            ) from exc
        lock = FileLock(
            str(self.lock_file_path),
            timeout=self.lock_timeout_seconds,
            thread_local=False,
        )
        try:
            await asyncio.to_thread(lock.acquire)
        except Timeout as exc:
            raise InitError(
                "Timed out waiting for initialization lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
            ) from exc
        except OSError as exc:
            raise InitError(f"Unable to acquire {self.lock_file_path}: {exc}") from exc
        try:
            yield
        finally:
            lock.release()

    def prepare_storage(self) -> bool:
        """
        Create the storage directory if needed.

        Returns True when the relational database file does not exist yet,
        which is the only situation in which the legacy file is migrated.
        """
        try:
            self.data_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InitError(
                f"Unable to create storage directory {self.data_path}: {exc}"
            ) from exc
        return not self.database_file.exists()

    def should_migrate(self, is_new_database: bool) -> bool:
        if not self.legacy_file.exists():
            return False
        if not is_new_database:
            logger.info(
                "Ignoring legacy database %s: %s already exists",
                self.legacy_file,
                self.database_file,
            )
            return False
        return True

    @staticmethod
    def ensure_version(connection) -> int:
        """
        Read or initialize the schema version inside an open transaction.

        Versions only move forward; a database written by a newer schema is
        refused.
        """
        rows = {
            str(row[0]): str(row[1])
            for row in connection.execute(text("SELECT key, value FROM meta")).all()
        }
        if _VERSION_KEY not in rows:
            SchemaManager._sync_set_meta(
                connection, _VERSION_KEY, str(CURRENT_SCHEMA_VERSION)
            )
            SchemaManager._sync_set_meta(
                connection, _COMPATIBLE_VERSION_KEY, str(COMPATIBLE_SCHEMA_VERSION)
            )
            return CURRENT_SCHEMA_VERSION

        try:
            version = int(rows[_VERSION_KEY])
            compatible = int(rows.get(_COMPATIBLE_VERSION_KEY, version))
        except ValueError as exc:
            raise InitError(f"Malformed schema version in meta table: {rows}") from exc

        if compatible > CURRENT_SCHEMA_VERSION or version > CURRENT_SCHEMA_VERSION:
            raise InitError(
                f"Database schema version {version} is newer than the supported "
                f"version {CURRENT_SCHEMA_VERSION}"
            )
        if version < CURRENT_SCHEMA_VERSION:
            SchemaManager._sync_set_meta(
                connection, _VERSION_KEY, str(CURRENT_SCHEMA_VERSION)
            )
            SchemaManager._sync_set_meta(
                connection, _COMPATIBLE_VERSION_KEY, str(COMPATIBLE_SCHEMA_VERSION)
            )
        return CURRENT_SCHEMA_VERSION

    @staticmethod
    def _sync_set_meta(connection, key: str, value: str) -> None:
        connection.execute(
            text(
                "INSERT INTO meta(key, value) VALUES (:key, :value) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
            ),
            {"key": key, "value": value},
        )

    @staticmethod
    async def set_version(session, version: int) -> None:
        await session.execute(
            text(
                "INSERT INTO meta(key, value) VALUES (:key, :value) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
            ),
            {"key": _VERSION_KEY, "value": str(version)},
        )

    @staticmethod
    async def get_version(session) -> Optional[int]:
        result = await session.execute(
            text("SELECT value FROM meta WHERE key = :key"), {"key": _VERSION_KEY}
        )
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    def read_legacy_document(self) -> Dict[str, Dict[str, Any]]:
        """Load the legacy JSON document: a mapping of application id to record."""
        try:
            document = json.loads(self.legacy_file.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            raise MigrationError(
                f"Unable to read applications from legacy database {self.legacy_file}: {exc}"
            ) from exc
        if not isinstance(document, dict):
            raise MigrationError(
                f"Legacy database {self.legacy_file} is not a JSON object"
            )
        return document

    def remove_legacy_file(self) -> None:
        try:
            self.legacy_file.unlink()
        except OSError as exc:
            raise MigrationError(
                f"Unable to delete legacy database {self.legacy_file}: {exc}"
            ) from exc

    def discard_database_files(self) -> None:
        """Remove a database file created by a failed first initialization."""
        for path in [self.database_file] + [
            Path(f"{self.database_file}{suffix}") for suffix in _SQLITE_SIDE_FILE_SUFFIXES
        ]:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error("Unable to remove %s: %s", path, exc)
