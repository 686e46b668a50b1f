"""Storage contracts, storage-target parsing and repository wiring."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import urlparse

from adstore.config import AdStoreConfig
from adstore.errors import DataAccessError

if TYPE_CHECKING:
    from adstore.entities import Entity, EntityId
    from adstore.keys import BlobKey, StorageKey
    from adstore.repository import EntityRepository


@runtime_checkable
class IndexStore(Protocol):
    """Maps entity ids to storage keys; the single version-sequencing authority."""

    def get_storage_key(
        self, entity_id: EntityId, storage_account: str, version: int | None = None
    ) -> StorageKey | None: ...

    def get_entity(
        self, entity_id: EntityId, storage_account: str, version: int | None = None
    ) -> Entity | None: ...

    def save_entity(
        self, entity: Entity, is_update: bool = False, active: bool | None = None
    ) -> None: ...

    def get_entity_info_by_category(self, entity_category: str) -> list[Entity]: ...

    def get_entity_ids(
        self, entity_category: str, external_type: str | None = None
    ) -> list[EntityId]: ...

    def list_versions(self, entity_id: EntityId, storage_account: str) -> list[StorageKey]: ...

    def count_by_category(self) -> dict[str, int]: ...

    def storage_info(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


@runtime_checkable
class EntityStore(Protocol):
    """Persists entity payloads; every write addresses a fresh record."""

    def get_entity_by_key(self, key: StorageKey) -> Entity | None: ...

    def save_entity(self, entity: Entity) -> StorageKey: ...

    def remove_entity(self, key: StorageKey) -> None: ...

    def setup_new_company(self, company_name: str) -> StorageKey: ...

    def storage_info(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


@runtime_checkable
class BlobStore(Protocol):
    """Holds heavy values promoted out of entity payloads."""

    def get_blob(self, key: BlobKey) -> bytes | None: ...

    def save_blob(self, key: BlobKey, data: bytes) -> None: ...

    def remove_blob(self, key: BlobKey) -> None: ...


@dataclass(frozen=True)
class StorageTarget:
    """Resolved storage target from a db path and an optional payload URI."""

    backend: str
    uri: str
    db_path: str
    bucket: str | None = None
    prefix: str | None = None


def parse_storage_target(
    db_path: str | None = None,
    storage_uri: str | None = None,
) -> StorageTarget:
    """Resolve where the index lives (always SQLite) and where payloads live."""
    if storage_uri is None:
        db_path = db_path or "adstore.db"
        return StorageTarget(backend="sqlite", uri=f"sqlite:///{db_path}", db_path=db_path)

    parsed = urlparse(storage_uri)

    if parsed.scheme == "sqlite":
        sqlite_path = parsed.path
        if parsed.netloc:
            sqlite_path = f"{parsed.netloc}{sqlite_path}"
        elif sqlite_path.startswith("//"):
            # sqlite:////abs/path -> /abs/path
            sqlite_path = sqlite_path[1:]
        elif sqlite_path.startswith("/"):
            # sqlite:///rel/path -> rel/path
            sqlite_path = sqlite_path[1:]
        if not sqlite_path:
            raise DataAccessError("parse_storage_uri", f"Invalid sqlite URI: {storage_uri}")
        if db_path is not None and os.path.abspath(db_path) != os.path.abspath(sqlite_path):
            raise DataAccessError(
                "parse_storage_uri",
                f"Conflicting db_path '{db_path}' and storage_uri '{storage_uri}'",
            )
        return StorageTarget(backend="sqlite", uri=storage_uri, db_path=sqlite_path)

    if parsed.scheme == "s3":
        bucket = parsed.netloc
        prefix = parsed.path.lstrip("/").rstrip("/")
        if not bucket:
            raise DataAccessError("parse_storage_uri", f"Invalid s3 URI: {storage_uri}")
        return StorageTarget(
            backend="s3",
            uri=storage_uri,
            db_path=db_path or "adstore.db",
            bucket=bucket,
            prefix=prefix,
        )

    raise DataAccessError(
        "parse_storage_uri",
        f"Unsupported storage URI scheme '{parsed.scheme}' for '{storage_uri}'",
    )


def open_repository(
    db_path: str | None = None,
    *,
    storage_uri: str | None = None,
    config: AdStoreConfig | None = None,
) -> EntityRepository:
    """Open an entity repository with a SQLite index and a SQLite or S3 payload store."""
    from adstore.index_store import SqliteIndexStore
    from adstore.repository import EntityRepository

    cfg = config or AdStoreConfig()
    target = parse_storage_target(db_path=db_path, storage_uri=storage_uri)
    index_store = SqliteIndexStore(target.db_path, timeout_s=cfg.sqlite_timeout_s)

    if target.backend == "sqlite":
        from adstore.storage_sqlite import SqlitePayloadStore

        payload_store: Any = SqlitePayloadStore(target.db_path, config=cfg)
    elif target.backend == "s3":
        from adstore.storage_s3 import S3PayloadStore

        assert target.bucket is not None
        payload_store = S3PayloadStore(
            bucket=target.bucket,
            prefix=target.prefix or "",
            storage_uri=target.uri,
            config=cfg,
        )
    else:
        raise DataAccessError("open_repository", f"Unsupported backend '{target.backend}'")

    return EntityRepository(index_store, payload_store, payload_store, config=cfg)
