"""CLI helpers for backend-aware repository construction."""

from __future__ import annotations

import os

from adstore.config import AdStoreConfig
from adstore.filters import EntityFilter, RequestContext
from adstore.repository import EntityRepository
from adstore.storage import open_repository

DEFAULT_CLI_USER = "adstore-cli"


def resolve_storage_binding() -> tuple[str | None, str | None]:
    """Return (db_path, storage_uri) from CLI state."""
    from adstore.cli import state

    if state.storage_uri:
        # An s3 payload store still keeps its index in the local SQLite file.
        if state.storage_uri.startswith("sqlite:"):
            return None, state.storage_uri
        return state.db, state.storage_uri
    return state.db, None


def _config_from_env() -> AdStoreConfig:
    """Build repository config from CLI environment defaults."""
    config = AdStoreConfig(
        s3_region=os.getenv("ADSTORE_S3_REGION"),
        s3_endpoint_url=os.getenv("ADSTORE_S3_ENDPOINT_URL") or os.getenv("ADSTORE_S3_ENDPOINT"),
    )
    account = os.getenv("ADSTORE_STORAGE_ACCOUNT")
    if account:
        config.storage_account = account
    entity_storage = os.getenv("ADSTORE_ENTITY_STORAGE")
    if entity_storage:
        config.entity_storage = entity_storage
    return config


def open_repo() -> EntityRepository:
    """Open repository using global CLI storage selection."""
    db_path, storage_uri = resolve_storage_binding()
    return open_repository(db_path, storage_uri=storage_uri, config=_config_from_env())


def request_context(entity_filter: EntityFilter | None = None) -> RequestContext:
    """Request context for CLI calls: default company, operator user from ADSTORE_USER."""
    config = _config_from_env()
    return RequestContext(
        external_company_id=config.default_company_id,
        user_id=os.getenv("ADSTORE_USER") or DEFAULT_CLI_USER,
        entity_filter=entity_filter or EntityFilter.everything(),
    )
