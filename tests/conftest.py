"""Shared test fixtures for adstore tests."""

from __future__ import annotations

import pytest

from adstore.config import AdStoreConfig
from adstore.entities import Entity, EntityId, EntityProperty
from adstore.filters import EntityFilter, RequestContext
from adstore.index_store import SqliteIndexStore
from adstore.registry import COMPANY
from adstore.repository import EntityRepository
from adstore.storage_sqlite import SqlitePayloadStore

COMPANY_ID = EntityId("000000000000000000000000000000c1")


def make_entity(
    category: str = "Campaign",
    name: str = "entity",
    *,
    entity_id: EntityId | None = None,
    properties: list[EntityProperty] | None = None,
    **kwargs,
) -> Entity:
    return Entity(
        external_entity_id=entity_id or EntityId.new(),
        entity_category=category,
        external_name=name,
        properties=tuple(properties or ()),
        **kwargs,
    )


# --- Fixtures ---


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary SQLite database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def config():
    return AdStoreConfig()


@pytest.fixture
def index_store(tmp_db):
    store = SqliteIndexStore(tmp_db)
    yield store
    store.close()


@pytest.fixture
def payload_store(tmp_db, config):
    store = SqlitePayloadStore(tmp_db, config=config)
    yield store
    store.close()


@pytest.fixture
def repo(index_store, payload_store, config):
    """Create an EntityRepository over a temporary SQLite database."""
    r = EntityRepository(index_store, payload_store, payload_store, config=config)
    yield r
    r.close()


@pytest.fixture
def ctx():
    """Request context scoped to the test company, seeing every category."""
    return RequestContext(
        external_company_id=str(COMPANY_ID),
        user_id="tester",
        entity_filter=EntityFilter.everything(),
    )


@pytest.fixture
def company(repo, ctx):
    """A provisioned company that new entities are created under."""
    return repo.add_company(
        ctx,
        Entity(external_entity_id=COMPANY_ID, entity_category=COMPANY, external_name="Acme"),
    )
