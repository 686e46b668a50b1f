"""Focused unit tests for S3 payload store logic that do not require a live S3 endpoint."""

from __future__ import annotations

import io
from typing import Any

import pytest
from botocore.exceptions import ClientError, ParamValidationError

from adstore.config import AdStoreConfig
from adstore.entities import EntityProperty
from adstore.errors import DataAccessError
from adstore.keys import BlobKey, TableKey, build_new_key
from adstore.storage_s3 import S3PayloadStore

from tests.conftest import make_entity


def _client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _FakeS3:
    """In-memory stand-in for the handful of S3 calls the store makes."""

    def __init__(self, *, conditional_writes: bool = True) -> None:
        self.objects: dict[str, bytes] = {}
        self.conditional_writes = conditional_writes
        self.put_calls: list[dict[str, Any]] = []

    def head_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        return {}

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        if Key not in self.objects:
            raise _client_error("NoSuchKey")
        return {"Body": io.BytesIO(self.objects[Key])}

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self.put_calls.append(kwargs)
        if "IfNoneMatch" in kwargs and not self.conditional_writes:
            raise ParamValidationError(report="Unknown parameter IfNoneMatch")
        if kwargs.get("IfNoneMatch") == "*" and kwargs["Key"] in self.objects:
            raise _client_error("PreconditionFailed", "PutObject")
        self.objects[kwargs["Key"]] = kwargs["Body"]
        return {"ETag": '"etag"'}

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self.objects.pop(Key, None)
        return {}


def _store(prefix: str = "tenants/acme", **fake_kwargs: Any) -> S3PayloadStore:
    store = object.__new__(S3PayloadStore)
    store.bucket = "ads-bucket"
    store.prefix = prefix
    store.storage_uri = f"s3://ads-bucket/{prefix}"
    store._config = AdStoreConfig()
    store._s3 = _FakeS3(**fake_kwargs)  # type: ignore[attr-defined]
    return store


def test_object_keys_are_prefixed() -> None:
    store = _store()
    assert store._blob_key(BlobKey("local", "c", "b")) == "tenants/acme/blobs/c/b"
    assert store._record_key(TableKey("local", "T1", "p", "r")) == "tenants/acme/tables/T1/p/r.json"
    assert store._table_marker_key("T1") == "tenants/acme/tables/T1/_table.json"


def test_empty_prefix_and_partition() -> None:
    store = _store(prefix="")
    assert store._record_key(TableKey("local", "T1", "", "r")) == "tables/T1/_/r.json"


def test_put_new_refuses_existing_object() -> None:
    store = _store()
    store._put_new("k", b"one", "application/octet-stream")
    with pytest.raises(DataAccessError, match="already exists"):
        store._put_new("k", b"two", "application/octet-stream")
    assert store._s3.objects["k"] == b"one"
    assert store._s3.put_calls[0]["IfNoneMatch"] == "*"


def test_conditional_write_unsupported() -> None:
    store = _store(conditional_writes=False)
    with pytest.raises(DataAccessError, match="conditional write"):
        store._put_new("k", b"one", "application/octet-stream")


def test_get_bytes_missing_is_none() -> None:
    store = _store()
    assert store._get_bytes("missing") is None


def test_get_bytes_other_errors_propagate() -> None:
    store = _store()

    def _denied(**_kwargs: Any) -> dict[str, Any]:
        raise _client_error("AccessDenied")

    store._s3.get_object = _denied
    with pytest.raises(DataAccessError, match="get_object"):
        store._get_bytes("k")


def test_company_table_and_entity_records() -> None:
    store = _store()
    company_key = store.setup_new_company("Acme")
    assert isinstance(company_key, TableKey)
    assert store._exists(store._table_marker_key(company_key.table))

    entity = make_entity(properties=[EntityProperty("Foo", 3)])
    key = build_new_key(company_key, str(entity.external_entity_id))
    store.save_entity(entity.evolve(key=key))
    loaded = store.get_entity_by_key(key)
    assert loaded.property_value("Foo") == 3

    with pytest.raises(DataAccessError):
        store.save_entity(entity.evolve(key=key))

    store.remove_entity(key)
    assert store.get_entity_by_key(key) is None


def test_save_into_unprovisioned_table() -> None:
    store = _store()
    entity = make_entity()
    key = TableKey("local", "Missing123", str(entity.external_entity_id), "r1")
    with pytest.raises(DataAccessError, match="not provisioned"):
        store.save_entity(entity.evolve(key=key))
    assert store.get_entity_by_key(key) is None


def test_blob_mode_company_writes_no_marker() -> None:
    store = _store()
    store._config = AdStoreConfig(entity_storage="blob")
    company_key = store.setup_new_company("Acme")
    assert isinstance(company_key, BlobKey)
    assert store._s3.objects == {}


def test_blobs() -> None:
    store = _store()
    key = BlobKey("local", "entityblobassociations", "b1")
    store.save_blob(key, b"heavy")
    assert store.get_blob(key) == b"heavy"
    store.remove_blob(key)
    assert store.get_blob(key) is None
    store.remove_blob(key)


def test_storage_info() -> None:
    info = _store().storage_info()
    assert info["payload_backend"] == "s3"
    assert info["bucket"] == "ads-bucket"
    assert info["prefix"] == "tenants/acme"
