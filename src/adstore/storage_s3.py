"""S3 entity and blob stores."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from adstore.config import AdStoreConfig
from adstore.entities import Entity
from adstore.errors import DataAccessError
from adstore.keys import BlobKey, StorageKey, TableKey, table_name_for_company
from adstore.records import dump_entity, load_entity

logger = logging.getLogger(__name__)


class _PreconditionFailed(Exception):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class S3PayloadStore:
    """S3-backed entity payloads and heavy-value blobs.

    Layout under the prefix::

        tables/<table>/_table.json              provisioning marker
        tables/<table>/<partition>/<row>.json   entity records
        blobs/<container>/<blob_id>             blobs and blob-mode entity records

    Writes use ``IfNoneMatch="*"`` so an existing object is never overwritten.
    """

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str,
        storage_uri: str,
        config: AdStoreConfig,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.storage_uri = storage_uri
        self._config = config

        self._session = boto3.Session(
            region_name=config.s3_region,
        )
        self._s3 = self._session.client(
            "s3",
            region_name=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
            config=BotoConfig(
                connect_timeout=config.s3_request_timeout_s,
                read_timeout=config.s3_request_timeout_s,
                retries={"max_attempts": config.s3_max_attempts, "mode": "standard"},
            ),
        )

    def close(self) -> None:
        """boto3 clients hold no resources that need explicit release."""

    def storage_info(self) -> dict[str, Any]:
        return {
            "payload_backend": "s3",
            "storage_uri": self.storage_uri,
            "bucket": self.bucket,
            "prefix": self.prefix,
        }

    # --- Key/object helpers ---

    def _k(self, rel_path: str) -> str:
        return f"{self.prefix}/{rel_path}" if self.prefix else rel_path

    def _table_marker_key(self, table: str) -> str:
        return self._k(f"tables/{table}/_table.json")

    def _record_key(self, key: TableKey) -> str:
        partition = key.partition or "_"
        return self._k(f"tables/{key.table}/{partition}/{key.row_id}.json")

    def _blob_key(self, key: BlobKey) -> str:
        return self._k(f"blobs/{key.container}/{key.blob_id}")

    def _is_not_found(self, err: Exception) -> bool:
        if isinstance(err, ClientError):
            code = err.response.get("Error", {}).get("Code", "")
            return code in {"NoSuchKey", "404", "NotFound"}
        return False

    def _is_precondition_failed(self, err: Exception) -> bool:
        if isinstance(err, ClientError):
            code = err.response.get("Error", {}).get("Code", "")
            return code in {"PreconditionFailed", "412"}
        return False

    def _exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            if self._is_not_found(e):
                return False
            raise DataAccessError("head_object", f"{key}: {e}") from e

    def _put_bytes(
        self,
        *,
        key: str,
        body: bytes,
        if_none_match: str | None = None,
        content_type: str | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": body,
        }
        if content_type is not None:
            kwargs["ContentType"] = content_type
        if if_none_match is not None:
            kwargs["IfNoneMatch"] = if_none_match

        try:
            resp = self._s3.put_object(**kwargs)
            etag = resp.get("ETag")
            return etag if isinstance(etag, str) else ""
        except ParamValidationError as e:
            raise DataAccessError(
                "conditional_write",
                "S3 endpoint does not support conditional write preconditions",
            ) from e
        except (ClientError, BotoCoreError) as e:
            if self._is_precondition_failed(e):
                raise _PreconditionFailed() from e
            raise DataAccessError("put_object", f"{key}: {e}") from e

    def _get_bytes(self, key: str) -> bytes | None:
        try:
            resp = self._s3.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except (ClientError, BotoCoreError) as e:
            if self._is_not_found(e):
                return None
            raise DataAccessError("get_object", f"{key}: {e}") from e

    def _delete(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            if self._is_not_found(e):
                return
            raise DataAccessError("delete_object", f"{key}: {e}") from e

    def _put_new(self, key: str, body: bytes, content_type: str) -> None:
        try:
            self._put_bytes(key=key, body=body, if_none_match="*", content_type=content_type)
        except _PreconditionFailed as e:
            raise DataAccessError("put_object", f"object already exists: {key}") from e

    # --- Entity store ---

    def setup_new_company(self, company_name: str) -> StorageKey:
        """Provision a table (or container, in blob mode) and return a partial key naming it."""
        name = table_name_for_company(company_name)
        account = self._config.storage_account
        if self._config.entity_storage == "blob":
            return BlobKey(account, name.lower(), "")
        marker = {"company_name": company_name, "kind": "table", "created_at": _now_iso()}
        self._put_new(
            self._table_marker_key(name),
            json.dumps(marker, sort_keys=True, separators=(",", ":")).encode("utf-8"),
            "application/json",
        )
        return TableKey(account, name, "", "")

    def get_entity_by_key(self, key: StorageKey) -> Entity | None:
        if isinstance(key, BlobKey):
            payload = self.get_blob(key)
            return None if payload is None else load_entity(payload, key)
        if not self._exists(self._table_marker_key(key.table)):
            return None
        payload = self._get_bytes(self._record_key(key))
        return None if payload is None else load_entity(payload, key)

    def save_entity(self, entity: Entity) -> StorageKey:
        key = entity.key
        if key is None:
            raise DataAccessError("save_entity", f"entity {entity.external_entity_id} has no key")
        payload = dump_entity(entity)
        if isinstance(key, BlobKey):
            self.save_blob(key, payload)
            return key
        if not self._exists(self._table_marker_key(key.table)):
            raise DataAccessError("save_entity", f"table '{key.table}' is not provisioned")
        self._put_new(self._record_key(key), payload, "application/json")
        logger.debug("Saved entity %s to %s", entity.external_entity_id, self._record_key(key))
        return key

    def remove_entity(self, key: StorageKey) -> None:
        if isinstance(key, BlobKey):
            self.remove_blob(key)
            return
        self._delete(self._record_key(key))

    # --- Blob store ---

    def get_blob(self, key: BlobKey) -> bytes | None:
        return self._get_bytes(self._blob_key(key))

    def save_blob(self, key: BlobKey, data: bytes) -> None:
        self._put_new(self._blob_key(key), data, "application/octet-stream")

    def remove_blob(self, key: BlobKey) -> None:
        self._delete(self._blob_key(key))
