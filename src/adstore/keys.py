"""Storage keys: a tagged variant addressing one immutable physical record."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from adstore.errors import ValidationError

BLOB_TABLE_MARKER = "**AzureBlob**"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]{2,62}$")


@dataclass(frozen=True)
class TableKey:
    account: str
    table: str
    partition: str
    row_id: str
    local_version: int | None = None
    version_timestamp: datetime | None = None

    @property
    def kind(self) -> str:
        return "table"


@dataclass(frozen=True)
class BlobKey:
    account: str
    container: str
    blob_id: str
    local_version: int | None = None
    version_timestamp: datetime | None = None

    @property
    def kind(self) -> str:
        return "blob"


StorageKey = Union[TableKey, BlobKey]


def new_row_id() -> str:
    return uuid.uuid4().hex



# --- Key fields (index representation) ---


def key_fields(key: StorageKey) -> dict[str, str]:
    """Flatten a key into the (table_name, partition, row_id) columns used by the index."""
    if isinstance(key, TableKey):
        return {"table_name": key.table, "partition": key.partition, "row_id": key.row_id}
    return {"table_name": BLOB_TABLE_MARKER, "partition": key.container, "row_id": key.blob_id}


def key_from_fields(
    account: str,
    table_name: str,
    partition: str,
    row_id: str,
    local_version: int | None = None,
    version_timestamp: datetime | None = None,
) -> StorageKey:
    if table_name == BLOB_TABLE_MARKER:
        return BlobKey(account, partition, row_id, local_version, version_timestamp)
    return TableKey(account, table_name, partition, row_id, local_version, version_timestamp)


# --- Key factories ---


def build_new_key(company_key: StorageKey, partition: str) -> StorageKey:
    """Build a key for a new entity in the table (or container) owned by ``company_key``."""
    if isinstance(company_key, TableKey):
        return TableKey(company_key.account, company_key.table, partition, new_row_id())
    return BlobKey(company_key.account, company_key.container, new_row_id())


def build_updated_key(existing: StorageKey, partition: str) -> StorageKey:
    """Keep the table/container of ``existing`` and address a fresh record."""
    if isinstance(existing, TableKey):
        return TableKey(existing.account, existing.table, partition, new_row_id())
    return BlobKey(existing.account, existing.container, new_row_id())


def table_name_for_company(company_name: str) -> str:
    """Derive a table name: alphanumeric, starts with a letter, 3-63 chars, unique suffix."""
    base = re.sub(r"[^A-Za-z0-9]", "", company_name or "")
    base = base.lstrip("0123456789")
    if not base:
        base = "company"
    table = f"{base[:30]}{uuid.uuid4().hex}"
    if not _TABLE_NAME_RE.match(table):
        raise ValidationError(f"Cannot derive a valid table name from {company_name!r}")
    return table


# --- Blob key serialization ---


class _BlobKeyDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    container_name: str = Field(alias="ContainerName", min_length=1)
    blob_id: str = Field(alias="BlobId", min_length=1)
    storage_account_name: str = Field(alias="StorageAccountName", min_length=1)
    version_timestamp: datetime | None = Field(default=None, alias="VersionTimestamp")
    local_version: int | None = Field(default=None, alias="LocalVersion")


def serialize_blob_key(key: BlobKey) -> str:
    doc = _BlobKeyDocument(
        container_name=key.container,
        blob_id=key.blob_id,
        storage_account_name=key.account,
        version_timestamp=key.version_timestamp,
        local_version=key.local_version,
    )
    return doc.model_dump_json(by_alias=True)


def parse_blob_key(text: str) -> BlobKey:
    try:
        doc = _BlobKeyDocument.model_validate_json(text)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid blob key: {e.error_count()} error(s)") from e
    return BlobKey(
        account=doc.storage_account_name,
        container=doc.container_name,
        blob_id=doc.blob_id,
        local_version=doc.local_version,
        version_timestamp=doc.version_timestamp,
    )


def try_parse_blob_key(text: Any) -> BlobKey | None:
    if not isinstance(text, str):
        return None
    try:
        return parse_blob_key(text)
    except ValidationError:
        return None
