"""SQLite entity and blob stores."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from adstore.config import AdStoreConfig
from adstore.entities import Entity
from adstore.errors import DataAccessError
from adstore.keys import BlobKey, StorageKey, TableKey, table_name_for_company
from adstore.records import dump_entity, load_entity


class SqlitePayloadStore:
    """Entity payloads (table rows or blob documents) and heavy-value blobs in SQLite.

    Records are insert-only: a save never overwrites an existing row, so every
    version stays readable through its own key.
    """

    def __init__(self, db_path: str, *, config: AdStoreConfig | None = None) -> None:
        if db_path == ":memory:":
            raise DataAccessError(
                "open_entity_store", "in-memory databases are not supported; use a file path"
            )
        self.db_path = db_path
        self._config = config or AdStoreConfig()
        self._create_tables()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self.db_path, timeout=self._config.sqlite_timeout_s, isolation_level=None
            )
        except sqlite3.Error as e:
            raise DataAccessError("connect", f"cannot open entity database '{self.db_path}': {e}") from e
        try:
            yield conn
        finally:
            conn.close()

    def _create_tables(self) -> None:
        with self._connect() as conn:
            try:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS entity_tables (
                        table_name TEXT PRIMARY KEY,
                        company_name TEXT,
                        kind TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS entity_records (
                        table_name TEXT NOT NULL,
                        partition TEXT NOT NULL,
                        row_id TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (table_name, partition, row_id)
                    );

                    CREATE TABLE IF NOT EXISTS blobs (
                        container TEXT NOT NULL,
                        blob_id TEXT NOT NULL,
                        payload BLOB NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (container, blob_id)
                    );
                """)
            except sqlite3.Error as e:
                raise DataAccessError("create_tables", str(e)) from e

    def close(self) -> None:
        """Nothing to release; connections are per operation."""

    def storage_info(self) -> dict[str, Any]:
        with self._connect() as conn:
            try:
                tables = conn.execute("SELECT COUNT(*) FROM entity_tables").fetchone()[0]
                records = conn.execute("SELECT COUNT(*) FROM entity_records").fetchone()[0]
                blobs = conn.execute("SELECT COUNT(*) FROM blobs").fetchone()[0]
            except sqlite3.Error as e:
                raise DataAccessError("storage_info", str(e)) from e
        return {
            "payload_backend": "sqlite",
            "payload_db_path": self.db_path,
            "tables": tables,
            "records": records,
            "blobs": blobs,
        }

    # --- Entity store ---

    def setup_new_company(self, company_name: str) -> StorageKey:
        """Provision a table (or container, in blob mode) and return a partial key naming it."""
        name = table_name_for_company(company_name)
        kind = "blob" if self._config.entity_storage == "blob" else "table"
        if kind == "blob":
            name = name.lower()
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO entity_tables (table_name, company_name, kind, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (name, company_name, kind, datetime.now(timezone.utc).isoformat()),
                )
            except sqlite3.Error as e:
                raise DataAccessError("setup_new_company", str(e)) from e
        account = self._config.storage_account
        if kind == "blob":
            return BlobKey(account, name, "")
        return TableKey(account, name, "", "")

    def _table_exists(self, conn: sqlite3.Connection, table: str) -> bool:
        row = conn.execute("SELECT 1 FROM entity_tables WHERE table_name = ?", (table,)).fetchone()
        return row is not None

    def get_entity_by_key(self, key: StorageKey) -> Entity | None:
        """Return the payload at ``key``, or None when the table or record does not exist."""
        if isinstance(key, BlobKey):
            payload = self.get_blob(key)
            return None if payload is None else load_entity(payload, key)
        with self._connect() as conn:
            try:
                if not self._table_exists(conn, key.table):
                    return None
                row = conn.execute(
                    "SELECT payload FROM entity_records "
                    "WHERE table_name = ? AND partition = ? AND row_id = ?",
                    (key.table, key.partition, key.row_id),
                ).fetchone()
            except sqlite3.Error as e:
                raise DataAccessError("get_entity_by_key", str(e)) from e
        if row is None:
            return None
        return load_entity(row[0], key)

    def save_entity(self, entity: Entity) -> StorageKey:
        key = entity.key
        if key is None:
            raise DataAccessError("save_entity", f"entity {entity.external_entity_id} has no key")
        payload = dump_entity(entity)
        if isinstance(key, BlobKey):
            self.save_blob(key, payload)
            return key
        with self._connect() as conn:
            try:
                if not self._table_exists(conn, key.table):
                    raise DataAccessError("save_entity", f"table '{key.table}' is not provisioned")
                conn.execute(
                    "INSERT INTO entity_records (table_name, partition, row_id, payload, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        key.table,
                        key.partition,
                        key.row_id,
                        payload.decode("utf-8"),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DataAccessError(
                    "save_entity", f"record already exists at {key.table}/{key.partition}/{key.row_id}"
                ) from e
            except sqlite3.Error as e:
                raise DataAccessError("save_entity", str(e)) from e
        return key

    def remove_entity(self, key: StorageKey) -> None:
        if isinstance(key, BlobKey):
            self.remove_blob(key)
            return
        with self._connect() as conn:
            try:
                conn.execute(
                    "DELETE FROM entity_records WHERE table_name = ? AND partition = ? AND row_id = ?",
                    (key.table, key.partition, key.row_id),
                )
            except sqlite3.Error as e:
                raise DataAccessError("remove_entity", str(e)) from e

    # --- Blob store ---

    def get_blob(self, key: BlobKey) -> bytes | None:
        with self._connect() as conn:
            try:
                row = conn.execute(
                    "SELECT payload FROM blobs WHERE container = ? AND blob_id = ?",
                    (key.container, key.blob_id),
                ).fetchone()
            except sqlite3.Error as e:
                raise DataAccessError("get_blob", str(e)) from e
        return None if row is None else bytes(row[0])

    def save_blob(self, key: BlobKey, data: bytes) -> None:
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO blobs (container, blob_id, payload, created_at) VALUES (?, ?, ?, ?)",
                    (key.container, key.blob_id, data, datetime.now(timezone.utc).isoformat()),
                )
            except sqlite3.IntegrityError as e:
                raise DataAccessError(
                    "save_blob", f"blob already exists at {key.container}/{key.blob_id}"
                ) from e
            except sqlite3.Error as e:
                raise DataAccessError("save_blob", str(e)) from e

    def remove_blob(self, key: BlobKey) -> None:
        with self._connect() as conn:
            try:
                conn.execute(
                    "DELETE FROM blobs WHERE container = ? AND blob_id = ?",
                    (key.container, key.blob_id),
                )
            except sqlite3.Error as e:
                raise DataAccessError("remove_blob", str(e)) from e
