"""Tests for storage binding and backend selection."""

from __future__ import annotations

import os

import pytest

from adstore.errors import DataAccessError
from adstore.storage import (
    BlobStore,
    EntityStore,
    IndexStore,
    open_repository,
    parse_storage_target,
)


def test_parse_storage_target_defaults_to_sqlite() -> None:
    target = parse_storage_target()
    assert target.backend == "sqlite"
    assert target.db_path == "adstore.db"


def test_parse_storage_target_db_path() -> None:
    target = parse_storage_target(db_path="other.db")
    assert target.db_path == "other.db"
    assert target.uri == "sqlite:///other.db"


def test_parse_storage_target_sqlite_relative_uri() -> None:
    target = parse_storage_target(storage_uri="sqlite:///data/example.db")
    assert target.backend == "sqlite"
    assert target.db_path == "data/example.db"


def test_parse_storage_target_sqlite_absolute_uri() -> None:
    target = parse_storage_target(storage_uri="sqlite:////tmp/example.db")
    assert target.db_path == "/tmp/example.db"


def test_parse_storage_target_conflicting_sqlite_raises() -> None:
    with pytest.raises(DataAccessError):
        parse_storage_target(db_path="a.db", storage_uri="sqlite:///b.db")


def test_parse_storage_target_matching_sqlite_accepted() -> None:
    target = parse_storage_target(db_path="a.db", storage_uri="sqlite:///a.db")
    assert target.db_path == "a.db"


def test_parse_storage_target_s3() -> None:
    target = parse_storage_target(storage_uri="s3://ads-bucket/tenants/acme/")
    assert target.backend == "s3"
    assert target.bucket == "ads-bucket"
    assert target.prefix == "tenants/acme"
    assert target.db_path == "adstore.db"


def test_parse_storage_target_s3_requires_bucket() -> None:
    with pytest.raises(DataAccessError):
        parse_storage_target(storage_uri="s3:///prefix")


def test_parse_storage_target_unknown_scheme() -> None:
    with pytest.raises(DataAccessError, match="Unsupported"):
        parse_storage_target(storage_uri="gs://bucket/prefix")


def test_open_repository_sqlite(tmp_path) -> None:
    db_path = str(tmp_path / "adstore.db")
    repo = open_repository(db_path)
    try:
        info = repo.storage_info()
        assert info["index_backend"] == "sqlite"
        assert info["payload_backend"] == "sqlite"
        assert os.path.exists(db_path)
        assert isinstance(repo.index_store, IndexStore)
        assert isinstance(repo.entity_store, EntityStore)
        assert isinstance(repo.blob_store, BlobStore)
    finally:
        repo.close()


def test_open_repository_sqlite_uri(tmp_path) -> None:
    db_path = tmp_path / "adstore.db"
    repo = open_repository(storage_uri=f"sqlite:///{db_path}")
    try:
        assert repo.storage_info()["payload_db_path"] == str(db_path)
    finally:
        repo.close()


def test_memory_database_rejected() -> None:
    with pytest.raises(DataAccessError):
        open_repository(":memory:")
