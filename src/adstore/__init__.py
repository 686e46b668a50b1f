"""adstore: versioned, filter-aware entity repository for advertising operations."""

__version__ = "0.1.0"

from adstore.config import AdStoreConfig
from adstore.entities import (
    Association,
    AssociationType,
    Entity,
    EntityId,
    EntityProperty,
    PropertyFilter,
)
from adstore.errors import (
    AdStoreError,
    DataAccessError,
    EntityNotFoundError,
    StaleEntityError,
    ValidationError,
)
from adstore.filters import EntityFilter, RequestContext
from adstore.keys import BlobKey, StorageKey, TableKey
from adstore.registry import EntityCategory, EntityRegistry, build_default_registry
from adstore.repository import EntityRepository
from adstore.serialization import entity_from_json, entity_to_json
from adstore.storage import open_repository
from adstore.values import PropertyType, PropertyValue

__all__ = [
    "__version__",
    "Entity",
    "EntityId",
    "EntityProperty",
    "PropertyFilter",
    "PropertyType",
    "PropertyValue",
    "Association",
    "AssociationType",
    "EntityFilter",
    "RequestContext",
    "StorageKey",
    "TableKey",
    "BlobKey",
    "EntityCategory",
    "EntityRegistry",
    "build_default_registry",
    "EntityRepository",
    "open_repository",
    "entity_to_json",
    "entity_from_json",
    "AdStoreConfig",
    "AdStoreError",
    "DataAccessError",
    "StaleEntityError",
    "EntityNotFoundError",
    "ValidationError",
]
