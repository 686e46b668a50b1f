"""Configuration for the adstore repository."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_COMPANY_ID = "00000000000000000000000000000001"


@dataclass
class AdStoreConfig:
    """Configuration for the entity repository and its storage backends."""

    storage_account: str = "local"
    heavy_value_threshold_bytes: int = 5000
    blob_container: str = "entityblobassociations"
    entity_storage: str = "table"  # 'table' or 'blob'
    default_company_id: str = DEFAULT_COMPANY_ID
    update_retries: int = 3
    sqlite_timeout_s: float = 30.0
    fetch_workers: int = 8
    s3_region: str | None = None
    s3_endpoint_url: str | None = None
    s3_request_timeout_s: float = 10.0
    s3_max_attempts: int = 5
