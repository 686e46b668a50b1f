"""SQLite index store: maps entity ids to storage keys and sequences versions."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from adstore.entities import Association, Entity, EntityId
from adstore.errors import DataAccessError, StaleEntityError
from adstore.keys import StorageKey, key_fields, key_from_fields
from adstore.values import parse_datetime

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str:
    if value is None:
        return _now_iso()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return parse_datetime(value) if value else None


class SqliteIndexStore:
    """SQLite-backed index of current and historical entity versions.

    Every operation opens its own connection. Writes run inside ``BEGIN
    IMMEDIATE`` so the version check and the row mutation are one atomic unit
    across threads and processes sharing the database file.
    """

    def __init__(self, db_path: str, *, timeout_s: float = 30.0) -> None:
        if db_path == ":memory:":
            raise DataAccessError(
                "open_index_store", "in-memory databases are not supported; use a file path"
            )
        self.db_path = db_path
        self._timeout_s = timeout_s
        self._create_tables()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self._timeout_s, isolation_level=None)
        except sqlite3.Error as e:
            raise DataAccessError("connect", f"cannot open index database '{self.db_path}': {e}") from e
        try:
            yield conn
        finally:
            conn.close()

    def _create_tables(self) -> None:
        with self._connect() as conn:
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS entity_index (
                        external_entity_id TEXT PRIMARY KEY,
                        version INTEGER NOT NULL,
                        entity_category TEXT,
                        external_type TEXT,
                        external_name TEXT,
                        last_modified_user TEXT,
                        schema_version INTEGER,
                        create_date TEXT NOT NULL,
                        last_modified_date TEXT NOT NULL,
                        active INTEGER NOT NULL DEFAULT 1
                    );

                    CREATE INDEX IF NOT EXISTS idx_entity_index_category
                        ON entity_index(entity_category, external_type);

                    CREATE TABLE IF NOT EXISTS entity_key_fields (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        external_entity_id TEXT NOT NULL,
                        version INTEGER NOT NULL,
                        storage_account TEXT NOT NULL,
                        table_name TEXT NOT NULL,
                        partition TEXT NOT NULL,
                        row_id TEXT NOT NULL,
                        version_timestamp TEXT NOT NULL,
                        UNIQUE(external_entity_id, version, storage_account)
                    );

                    CREATE TABLE IF NOT EXISTS entity_associations (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        external_entity_id TEXT NOT NULL,
                        version INTEGER NOT NULL,
                        external_name TEXT NOT NULL,
                        target_entity_id TEXT NOT NULL,
                        target_entity_category TEXT,
                        target_external_type TEXT,
                        association_type TEXT NOT NULL,
                        details TEXT,
                        blob_ref INTEGER NOT NULL DEFAULT 0
                    );

                    CREATE INDEX IF NOT EXISTS idx_entity_associations_lookup
                        ON entity_associations(external_entity_id, version);
                """)
            except sqlite3.Error as e:
                raise DataAccessError("create_tables", str(e)) from e

    def close(self) -> None:
        """Nothing to release; connections are per operation."""

    # --- Reads ---

    def get_storage_key(
        self, entity_id: EntityId, storage_account: str, version: int | None = None
    ) -> StorageKey | None:
        """Resolve the current key, or the key of a pinned version. None if unknown."""
        eid = str(EntityId(entity_id))
        with self._connect() as conn:
            try:
                if version is None:
                    row = conn.execute(
                        "SELECT k.table_name, k.partition, k.row_id, k.version, k.version_timestamp "
                        "FROM entity_key_fields k "
                        "JOIN entity_index e ON e.external_entity_id = k.external_entity_id "
                        "AND e.version = k.version "
                        "WHERE k.external_entity_id = ? AND k.storage_account = ?",
                        (eid, storage_account),
                    ).fetchone()
                else:
                    row = conn.execute(
                        "SELECT table_name, partition, row_id, version, version_timestamp "
                        "FROM entity_key_fields "
                        "WHERE external_entity_id = ? AND storage_account = ? AND version = ?",
                        (eid, storage_account, version),
                    ).fetchone()
            except sqlite3.Error as e:
                raise DataAccessError("get_storage_key", str(e)) from e
        if row is None:
            return None
        return key_from_fields(storage_account, row[0], row[1], row[2], row[3], _parse_ts(row[4]))

    def get_entity(
        self, entity_id: EntityId, storage_account: str, version: int | None = None
    ) -> Entity | None:
        """Return the index view of an entity: summary fields, key and associations.

        For the current version, associations to deactivated targets are left out.
        """
        eid = str(EntityId(entity_id))
        with self._connect() as conn:
            try:
                row = conn.execute(
                    "SELECT version, entity_category, external_type, external_name, "
                    "last_modified_user, schema_version, create_date, last_modified_date "
                    "FROM entity_index WHERE external_entity_id = ?",
                    (eid,),
                ).fetchone()
                if row is None:
                    return None
                current_version = row[0]
                if version is not None and version > current_version:
                    return None
                target_version = current_version if version is None else version
                key_row = conn.execute(
                    "SELECT table_name, partition, row_id, version_timestamp "
                    "FROM entity_key_fields "
                    "WHERE external_entity_id = ? AND storage_account = ? AND version = ?",
                    (eid, storage_account, target_version),
                ).fetchone()
                if key_row is None:
                    return None
                associations = self._read_associations(
                    conn, eid, target_version, active_only=version is None
                )
            except sqlite3.Error as e:
                raise DataAccessError("get_entity", str(e)) from e

        key = key_from_fields(
            storage_account, key_row[0], key_row[1], key_row[2], target_version, _parse_ts(key_row[3])
        )
        if version is not None:
            return Entity(
                external_entity_id=eid,
                entity_category=row[1],
                local_version=version,
                associations=tuple(associations),
                key=key,
            )
        return Entity(
            external_entity_id=eid,
            entity_category=row[1],
            external_type=row[2],
            external_name=row[3],
            last_modified_user=row[4],
            schema_version=row[5],
            create_date=_parse_ts(row[6]),
            last_modified_date=_parse_ts(row[7]),
            local_version=current_version,
            associations=tuple(associations),
            key=key,
        )

    def _read_associations(
        self, conn: sqlite3.Connection, eid: str, version: int, *, active_only: bool
    ) -> list[Association]:
        sql = (
            "SELECT a.external_name, a.target_entity_id, "
            "COALESCE(t.entity_category, a.target_entity_category), "
            "COALESCE(t.external_type, a.target_external_type), "
            "a.association_type, a.details, a.blob_ref "
            "FROM entity_associations a "
            "LEFT JOIN entity_index t ON t.external_entity_id = a.target_entity_id "
            "WHERE a.external_entity_id = ? AND a.version = ?"
        )
        if active_only:
            sql += " AND (t.active IS NULL OR t.active = 1)"
        sql += " ORDER BY a.id"
        return [
            Association(
                external_name=r[0],
                target_entity_id=r[1],
                target_entity_category=r[2] or "",
                target_external_type=r[3],
                association_type=r[4],
                details=r[5],
                is_blob_ref=bool(r[6]),
            )
            for r in conn.execute(sql, (eid, version)).fetchall()
        ]

    def get_entity_info_by_category(self, entity_category: str) -> list[Entity]:
        """Return id/name/category/type summaries of the active entities in a category."""
        with self._connect() as conn:
            try:
                rows = conn.execute(
                    "SELECT external_entity_id, external_name, entity_category, external_type "
                    "FROM entity_index WHERE entity_category = ? AND active = 1 "
                    "ORDER BY external_name, external_entity_id",
                    (entity_category,),
                ).fetchall()
            except sqlite3.Error as e:
                raise DataAccessError("get_entity_info_by_category", str(e)) from e
        return [
            Entity(
                external_entity_id=r[0],
                external_name=r[1],
                entity_category=r[2],
                external_type=r[3],
            )
            for r in rows
        ]

    def get_entity_ids(
        self, entity_category: str, external_type: str | None = None
    ) -> list[EntityId]:
        params: list[Any] = [entity_category]
        sql = "SELECT external_entity_id FROM entity_index WHERE entity_category = ? AND active = 1"
        if external_type is not None:
            sql += " AND external_type = ?"
            params.append(external_type)
        sql += " ORDER BY external_entity_id"
        with self._connect() as conn:
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise DataAccessError("get_entity_ids", str(e)) from e
        return [EntityId(r[0]) for r in rows]

    def list_versions(self, entity_id: EntityId, storage_account: str) -> list[StorageKey]:
        """Return the keys of every recorded version, oldest first."""
        with self._connect() as conn:
            try:
                rows = conn.execute(
                    "SELECT table_name, partition, row_id, version, version_timestamp "
                    "FROM entity_key_fields "
                    "WHERE external_entity_id = ? AND storage_account = ? ORDER BY version",
                    (str(EntityId(entity_id)), storage_account),
                ).fetchall()
            except sqlite3.Error as e:
                raise DataAccessError("list_versions", str(e)) from e
        return [key_from_fields(storage_account, r[0], r[1], r[2], r[3], _parse_ts(r[4])) for r in rows]

    def count_by_category(self) -> dict[str, int]:
        with self._connect() as conn:
            try:
                rows = conn.execute(
                    "SELECT entity_category, COUNT(*) FROM entity_index "
                    "WHERE active = 1 GROUP BY entity_category ORDER BY entity_category"
                ).fetchall()
            except sqlite3.Error as e:
                raise DataAccessError("count_by_category", str(e)) from e
        return {r[0]: r[1] for r in rows}

    def storage_info(self) -> dict[str, Any]:
        return {"index_backend": "sqlite", "db_path": self.db_path}

    # --- Writes ---

    def save_entity(self, entity: Entity, is_update: bool = False, active: bool | None = None) -> None:
        """Commit a new version pointer for ``entity``.

        A create must be version 0 for an unknown id. An update must be exactly
        current + 1: a version at or behind current raises StaleEntityError and
        any other gap raises DataAccessError. The key-fields and association
        rows are written in the same transaction as the version bump.
        """
        try:
            self._save_index_entry(entity, is_update, active)
        except StaleEntityError as e:
            logger.info(
                "Unable to save stale entity in index. ExternalEntityId: %s, Detail: %s",
                entity.external_entity_id,
                e,
            )
            raise
        except DataAccessError as e:
            logger.error(
                "Unable to save entity in index. ExternalEntityId: %s, Detail: %s",
                entity.external_entity_id,
                e,
            )
            raise

    def _save_index_entry(self, entity: Entity, is_update: bool, active: bool | None) -> None:
        eid = str(entity.external_entity_id)
        version = entity.local_version
        key = entity.key
        if version is None or key is None:
            raise DataAccessError("save_entity", f"entity {eid} has no version or storage key")
        timestamp = _iso(entity.last_modified_date)
        fields = key_fields(key)

        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT version FROM entity_index WHERE external_entity_id = ?", (eid,)
                ).fetchone()
                if not is_update:
                    if row is not None:
                        raise DataAccessError("save_entity", f"entity {eid} already exists")
                    if version != 0:
                        raise DataAccessError(
                            "save_entity", f"new entity {eid} must start at version 0, got {version}"
                        )
                    conn.execute(
                        "INSERT INTO entity_index "
                        "(external_entity_id, version, entity_category, external_type, "
                        "external_name, last_modified_user, schema_version, create_date, "
                        "last_modified_date, active) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            eid,
                            version,
                            entity.entity_category,
                            entity.external_type,
                            entity.external_name,
                            entity.last_modified_user,
                            entity.schema_version,
                            _iso(entity.create_date or entity.last_modified_date),
                            timestamp,
                            1 if active is None else int(active),
                        ),
                    )
                else:
                    if row is None:
                        raise DataAccessError("save_entity", f"cannot update unknown entity {eid}")
                    current = row[0]
                    if version <= current:
                        raise StaleEntityError(eid, version, current)
                    if version != current + 1:
                        raise DataAccessError(
                            "save_entity",
                            f"non-sequential version for {eid}: submitted {version}, current {current}",
                        )
                    conn.execute(
                        "UPDATE entity_index SET version = ?, entity_category = ?, "
                        "external_type = ?, external_name = ?, last_modified_user = ?, "
                        "schema_version = ?, last_modified_date = ?, active = COALESCE(?, active) "
                        "WHERE external_entity_id = ? AND version = ?",
                        (
                            version,
                            entity.entity_category,
                            entity.external_type,
                            entity.external_name,
                            entity.last_modified_user,
                            entity.schema_version,
                            timestamp,
                            None if active is None else int(active),
                            eid,
                            current,
                        ),
                    )
                conn.execute(
                    "INSERT INTO entity_key_fields "
                    "(external_entity_id, version, storage_account, table_name, partition, "
                    "row_id, version_timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        eid,
                        version,
                        key.account,
                        fields["table_name"],
                        fields["partition"],
                        fields["row_id"],
                        timestamp,
                    ),
                )
                conn.executemany(
                    "INSERT INTO entity_associations "
                    "(external_entity_id, version, external_name, target_entity_id, "
                    "target_entity_category, target_external_type, association_type, details, "
                    "blob_ref) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            eid,
                            version,
                            a.external_name,
                            str(a.target_entity_id),
                            a.target_entity_category,
                            a.target_external_type,
                            a.association_type.value,
                            a.details,
                            int(a.is_blob_ref),
                        )
                        for a in entity.associations
                    ],
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                self._rollback(conn)
                raise DataAccessError("save_entity", f"index constraint violated for {eid}: {e}") from e
            except sqlite3.Error as e:
                self._rollback(conn)
                raise DataAccessError("save_entity", str(e)) from e
            except BaseException:
                self._rollback(conn)
                raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
