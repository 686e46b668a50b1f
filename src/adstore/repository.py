"""Entity repository: composes the index, entity and blob stores into versioned saves and reads."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Iterable

from adstore.config import AdStoreConfig
from adstore.entities import Association, Entity, EntityId, EntityProperty
from adstore.errors import (
    AdStoreError,
    DataAccessError,
    EntityNotFoundError,
    StaleEntityError,
    ValidationError,
)
from adstore.filters import EntityFilter, RequestContext
from adstore.keys import (
    BlobKey,
    StorageKey,
    build_new_key,
    build_updated_key,
    new_row_id,
    serialize_blob_key,
    try_parse_blob_key,
)
from adstore.merge import merge_entity, stamp_for_save
from adstore.records import dump_blob_value, load_blob_value
from adstore.registry import (
    BLOB_PROPERTY,
    COMPANY,
    USER,
    USER_ID_PROPERTY,
    EntityRegistry,
    build_default_registry,
)
from adstore.storage import BlobStore, EntityStore, IndexStore
from adstore.values import PropertyType, PropertyValue

logger = logging.getLogger(__name__)

_MERGE_CONTEXT = RequestContext(entity_filter=EntityFilter.everything(), return_blob_references=True)


class EntityRepository:
    """Versioned, filter-aware entity repository.

    Saves merge the incoming entity into the stored one according to the
    request's EntityFilter, promote heavy values to the blob store, write a
    fresh payload record and then commit the version pointer in the index.
    A failed index commit removes the payload record (and any blobs written
    for it) before the error propagates.
    """

    def __init__(
        self,
        index_store: IndexStore,
        entity_store: EntityStore,
        blob_store: BlobStore,
        *,
        config: AdStoreConfig | None = None,
        registry: EntityRegistry | None = None,
    ) -> None:
        self.index_store = index_store
        self.entity_store = entity_store
        self.blob_store = blob_store
        self.config = config or AdStoreConfig()
        self.registry = registry or build_default_registry()

    @property
    def storage_account(self) -> str:
        return self.config.storage_account

    def close(self) -> None:
        self.index_store.close()
        self.entity_store.close()
        if self.blob_store is not self.entity_store:
            close = getattr(self.blob_store, "close", None)
            if close is not None:
                close()

    def storage_info(self) -> dict[str, object]:
        return {**self.index_store.storage_info(), **self.entity_store.storage_info()}

    def count_by_category(self) -> dict[str, int]:
        """Active entity counts per category."""
        return self.index_store.count_by_category()

    # --- Reads ---

    def get_entity(self, context: RequestContext, entity_id: EntityId | str) -> Entity:
        return self.get_entities_by_id(context, [entity_id])[0]

    def get_entities_by_id(
        self, context: RequestContext, entity_ids: Iterable[EntityId | str]
    ) -> list[Entity]:
        """Fetch every id; raises EntityNotFoundError naming all ids that are missing."""
        found: list[Entity] = []
        missing: list[str] = []
        for raw_id in entity_ids:
            entity_id = EntityId(raw_id)
            entity = self._get_single(context, entity_id)
            if entity is None:
                missing.append(str(entity_id))
            else:
                found.append(entity)
        if missing:
            raise EntityNotFoundError(missing)
        return found

    def try_get_entity(self, context: RequestContext, entity_id: EntityId | str) -> Entity | None:
        try:
            return self._get_single(context, EntityId(entity_id))
        except AdStoreError as e:
            logger.warning("Unable to get entity %s: %s", entity_id, e)
            return None

    def try_get_entities(
        self, context: RequestContext, entity_ids: Iterable[EntityId | str]
    ) -> list[Entity]:
        """Return the entities that could be fetched; missing ids are skipped."""
        entities = []
        for entity_id in entity_ids:
            entity = self.try_get_entity(context, entity_id)
            if entity is not None:
                entities.append(entity)
        return entities

    def get_entity_history(self, context: RequestContext, entity_id: EntityId | str) -> list[StorageKey]:
        """Return the storage key of every version, oldest first."""
        return self.index_store.list_versions(EntityId(entity_id), self.storage_account)

    def get_entity_info_by_category(self, context: RequestContext, category: str) -> list[Entity]:
        return self.index_store.get_entity_info_by_category(category)

    def get_filtered_entity_ids(self, context: RequestContext) -> list[EntityId]:
        """Ids of active entities matching the EntityCategory (and optional ExternalType) query."""
        entity_filter = context.entity_filter
        category = entity_filter.entity_category
        if not category:
            raise ValidationError("EntityCategory is required in the filter queries")
        return self.index_store.get_entity_ids(category, entity_filter.external_type)

    def get_all_companies(self, context: RequestContext) -> list[Entity]:
        return self._parallel_try_get(context, self.index_store.get_entity_ids(COMPANY))

    def get_all_users(self, context: RequestContext) -> list[Entity]:
        return self._parallel_try_get(context, self.index_store.get_entity_ids(USER))

    def get_user(self, context: RequestContext, user_id: str) -> Entity:
        user = self._find_user(user_id)
        if user is None:
            raise EntityNotFoundError([f"UserId={user_id}"])
        return self.get_entity(context, user.external_entity_id)

    def _parallel_try_get(self, context: RequestContext, entity_ids: list[EntityId]) -> list[Entity]:
        if not entity_ids:
            return []
        with ThreadPoolExecutor(max_workers=self.config.fetch_workers) as pool:
            results = list(pool.map(lambda eid: self.try_get_entity(context, eid), entity_ids))
        return [e for e in results if e is not None]

    def _find_user(self, user_id: str) -> Entity | None:
        for entity_id in self.index_store.get_entity_ids(USER):
            user = self._get_single(_MERGE_CONTEXT, entity_id, for_merge=True)
            if user is not None and user.property_value(USER_ID_PROPERTY) == user_id:
                return user
        return None

    def _get_single(
        self, context: RequestContext, entity_id: EntityId, *, for_merge: bool = False
    ) -> Entity | None:
        entity_filter = context.entity_filter
        version = entity_filter.version
        index_entity = self.index_store.get_entity(entity_id, self.storage_account, version)
        if index_entity is None or index_entity.key is None:
            return None
        raw = self.entity_store.get_entity_by_key(index_entity.key)
        if raw is None:
            return None
        raw = raw.evolve(key=index_entity.key)

        if not entity_filter.include_associations:
            raw = raw.with_associations(())
        elif version is None and not for_merge:
            # Current associations come from the index so deactivated targets drop out.
            raw = raw.with_associations(index_entity.associations)

        if not entity_filter.matches(raw):
            return None

        # Filter before realizing so excluded heavy properties are never fetched.
        raw = raw.evolve(properties=entity_filter.filter_properties(raw.properties))
        return self._realize_entity(context, raw)

    # --- Heavy values ---

    def _heavy(self, value: PropertyValue) -> bool:
        if value.type is PropertyType.STRING:
            size = len(value.value.encode("utf-16-le"))
        elif value.type is PropertyType.BINARY:
            size = len(value.value)
        else:
            return False
        return size >= self.config.heavy_value_threshold_bytes

    def _promote(self, value: PropertyValue, new_blobs: list[BlobKey]) -> str:
        key = BlobKey(self.storage_account, self.config.blob_container, new_row_id())
        self.blob_store.save_blob(key, dump_blob_value(value))
        new_blobs.append(key)
        return serialize_blob_key(key)

    def _virtualize_property(self, prop: EntityProperty, new_blobs: list[BlobKey]) -> EntityProperty:
        if prop.is_blob_ref:
            if prop.value.type is PropertyType.STRING and try_parse_blob_key(prop.value.value):
                return prop
            # Modified value that still carries the flag; decide afresh.
            prop = EntityProperty(prop.name, prop.value, prop.filter, False)
        if not self._heavy(prop.value):
            return prop
        blob_ref = self._promote(prop.value, new_blobs)
        logger.debug("Promoted property '%s' to blob storage", prop.name)
        return EntityProperty(prop.name, PropertyValue(PropertyType.STRING, blob_ref), prop.filter, True)

    def _virtualize_association(self, assoc: Association, new_blobs: list[BlobKey]) -> Association:
        if assoc.is_blob_ref:
            if try_parse_blob_key(assoc.details):
                return assoc
            assoc = _replace_details(assoc, assoc.details, False)
        if not assoc.details or not self._heavy(PropertyValue(PropertyType.STRING, assoc.details)):
            return assoc
        blob_ref = self._promote(PropertyValue(PropertyType.STRING, assoc.details), new_blobs)
        logger.debug("Promoted details of association '%s' to blob storage", assoc.external_name)
        return _replace_details(assoc, blob_ref, True)

    def _virtualize_entity(self, entity: Entity) -> tuple[Entity, list[BlobKey]]:
        new_blobs: list[BlobKey] = []
        try:
            properties = tuple(self._virtualize_property(p, new_blobs) for p in entity.properties)
            associations = tuple(
                self._virtualize_association(a, new_blobs) for a in entity.associations
            )
        except AdStoreError:
            self._remove_blobs(new_blobs)
            raise
        return entity.evolve(properties=properties, associations=associations), new_blobs

    def _read_blob(self, key: BlobKey, what: str) -> PropertyValue:
        payload = self.blob_store.get_blob(key)
        if payload is None:
            raise DataAccessError("realize", f"blob {key.container}/{key.blob_id} for {what} is missing")
        return load_blob_value(payload)

    def _realize_property(self, context: RequestContext, prop: EntityProperty) -> EntityProperty:
        if not prop.is_blob_ref or context.return_blob_references:
            return prop
        key = try_parse_blob_key(prop.value.value) if prop.value.type is PropertyType.STRING else None
        if key is None:
            # Not a valid reference; treat the value as inline.
            return EntityProperty(prop.name, prop.value, prop.filter, False)
        value = self._read_blob(key, f"property '{prop.name}'")
        return EntityProperty(prop.name, value, prop.filter, False)

    def _realize_association(self, context: RequestContext, assoc: Association) -> Association:
        if not assoc.is_blob_ref or context.return_blob_references:
            return assoc
        key = try_parse_blob_key(assoc.details)
        if key is None:
            return _replace_details(assoc, assoc.details, False)
        value = self._read_blob(key, f"association '{assoc.external_name}'")
        return _replace_details(assoc, value.to_str(), False)

    def _realize_entity(self, context: RequestContext, entity: Entity) -> Entity:
        return entity.evolve(
            properties=tuple(self._realize_property(context, p) for p in entity.properties),
            associations=tuple(self._realize_association(context, a) for a in entity.associations),
        )

    def _remove_record(self, key: StorageKey) -> None:
        try:
            self.entity_store.remove_entity(key)
        except AdStoreError as e:
            logger.error("Unable to remove entity record %s: %s", key, e)

    def _remove_blobs(self, keys: list[BlobKey]) -> None:
        for key in keys:
            try:
                self.blob_store.remove_blob(key)
            except AdStoreError as e:
                logger.error("Unable to remove blob %s/%s: %s", key.container, key.blob_id, e)

    # --- Saves ---

    def save_entity(self, context: RequestContext, entity: Entity) -> Entity:
        return self.save_entities(context, [entity])[0]

    def save_entities(self, context: RequestContext, entities: Iterable[Entity]) -> list[Entity]:
        """Save each entity in order.

        Not atomic across entities: the first failure propagates and entities
        saved before it stay committed.
        """
        saved = []
        for entity in entities:
            existing = self.index_store.get_storage_key(entity.external_entity_id, self.storage_account)
            is_update = existing is not None
            key = self._new_key(context, entity, existing)
            saved.append(self._save_single(context, entity, key, is_update))
        return saved

    def try_save_entity(self, context: RequestContext, entity: Entity) -> bool:
        try:
            self.save_entity(context, entity)
        except AdStoreError as e:
            logger.warning("Unable to save entity %s: %s", entity.external_entity_id, e)
            return False
        return True

    def add_company(self, context: RequestContext, company: Entity) -> Entity:
        """Provision storage for a new company and create it."""
        if self.index_store.get_storage_key(company.external_entity_id, self.storage_account):
            raise DataAccessError(
                "add_company", f"Company already exists: {company.external_entity_id}"
            )
        partial_key = self.entity_store.setup_new_company(
            company.external_name or str(company.external_entity_id)
        )
        company = company.evolve(key=partial_key)
        key = self._new_key(context, company, None)
        return self._save_single(context, company, key, is_update=False)

    def save_user(self, context: RequestContext, user: Entity) -> Entity:
        """Save a user under the default company, rejecting a UserId held by another entity."""
        user_id = user.property_value(USER_ID_PROPERTY)
        existing = self._find_user(user_id) if user_id else None
        if existing is not None and existing.external_entity_id != user.external_entity_id:
            raise DataAccessError(
                "save_user", f"A user with the same UserId already exists: {user_id}"
            )
        user_context = context.evolve(external_company_id=self.config.default_company_id)
        return self.save_entity(user_context, user)

    def associate_entities(
        self,
        context: RequestContext,
        source_id: EntityId | str,
        external_name: str,
        targets: Iterable[Entity],
        association_type: str = "Relationship",
        *,
        replace: bool = False,
        details: str | None = "",
    ) -> Entity:
        """Add (or with ``replace`` swap) the ``external_name`` associations of the source."""
        source_id = EntityId(source_id)
        assoc_context = context.evolve(entity_filter=EntityFilter.associations_only())
        source = self._get_single(_MERGE_CONTEXT, source_id, for_merge=True)
        if source is None:
            raise EntityNotFoundError([str(source_id)])
        updated = source.associate(
            external_name, targets, association_type, replace=replace, details=details
        )
        self.save_entity(assoc_context, updated)
        return self.get_entity(context.evolve(entity_filter=context.entity_filter.without_version()), source_id)

    def set_entity_status(
        self, context: RequestContext, entity_ids: EntityId | str | Iterable[EntityId | str], active: bool
    ) -> int:
        """Activate or deactivate entities; each status change is a versioned save.

        Unknown ids are logged and skipped. Returns the number of entities updated.
        """
        if isinstance(entity_ids, (EntityId, str)):
            entity_ids = [entity_ids]
        status_context = context.evolve(entity_filter=EntityFilter.everything(), force_overwrite=False)
        updated = 0
        for raw_id in entity_ids:
            entity_id = EntityId(raw_id)
            stored = self._get_single(_MERGE_CONTEXT, entity_id, for_merge=True)
            if stored is None or stored.key is None:
                logger.warning("Cannot set status of unknown entity %s", entity_id)
                continue
            key = build_updated_key(stored.key, str(entity_id))
            self._save_single(status_context, stored, key, is_update=True, active=active)
            updated += 1
        return updated

    def try_update_entity(
        self, context: RequestContext, entity_id: EntityId | str, properties: Iterable[EntityProperty]
    ) -> bool:
        """Merge ``properties`` into the current version, retrying on version collisions.

        Returns False when a property would move to another filter category or
        when the retries are exhausted.
        """
        props = list(properties)
        for attempt in range(1, self.config.update_retries + 1):
            try:
                return self._update_entity(context, EntityId(entity_id), props)
            except DataAccessError as e:
                logger.info("Update of %s failed on attempt %d: %s", entity_id, attempt, e)
        return False

    def _update_entity(
        self, context: RequestContext, entity_id: EntityId, properties: list[EntityProperty]
    ) -> bool:
        stored = self._get_single(_MERGE_CONTEXT, entity_id, for_merge=True)
        if stored is None or stored.key is None:
            raise EntityNotFoundError([str(entity_id)])
        for prop in properties:
            existing = stored.get_property(prop.name)
            if existing is not None and existing.filter != prop.filter:
                logger.error(
                    "Could not update properties. Property '%s' would change filter from %s to %s. "
                    "EntityId: %s",
                    prop.name,
                    existing.filter.value,
                    prop.filter.value,
                    entity_id,
                )
                return False
        updated = stored.with_properties(properties)
        key = build_updated_key(stored.key, str(entity_id))
        self._save_single(context.evolve(force_overwrite=True), updated, key, is_update=True)
        return True

    def _new_key(
        self, context: RequestContext, entity: Entity, existing: StorageKey | None
    ) -> StorageKey:
        partition = str(entity.external_entity_id)
        if existing is not None:
            return build_updated_key(existing, partition)
        if entity.entity_category == COMPANY and entity.key is not None:
            return build_new_key(entity.key, partition)
        if not context.external_company_id:
            raise DataAccessError(
                "build_storage_key",
                f"no company in request context for new entity {entity.external_entity_id}",
            )
        company_key = self.index_store.get_storage_key(
            EntityId(context.external_company_id), self.storage_account
        )
        if company_key is None:
            raise DataAccessError(
                "build_storage_key", f"company not found: {context.external_company_id}"
            )
        return build_new_key(company_key, partition)

    def _save_single(
        self,
        context: RequestContext,
        incoming: Entity,
        key: StorageKey,
        is_update: bool,
        active: bool | None = None,
    ) -> Entity:
        entity_id = incoming.external_entity_id
        if incoming.entity_category == BLOB_PROPERTY:
            msg = f"Directly saving {BLOB_PROPERTY} is not permitted through the repository: {entity_id}"
            logger.error(msg)
            raise DataAccessError("save_entity", msg)

        stored: Entity | None = None
        if is_update:
            stored = self._get_single(_MERGE_CONTEXT, entity_id, for_merge=True)
            if stored is None:
                raise EntityNotFoundError([str(entity_id)])
            current = stored.local_version or 0
            if incoming.local_version is not None and incoming.local_version < current:
                raise StaleEntityError(str(entity_id), incoming.local_version + 1, current)
            if incoming.local_version is not None and incoming.local_version > current:
                raise DataAccessError(
                    "save_entity",
                    f"entity {entity_id} presents version {incoming.local_version}, "
                    f"ahead of stored version {current}",
                )

        merged = merge_entity(
            stored,
            incoming,
            context.entity_filter,
            force_overwrite=context.force_overwrite,
            realize=lambda p: self._realize_property(RequestContext(), p).value,
        )
        stamped = stamp_for_save(
            merged,
            key,
            user_id=context.user_id,
            now=datetime.now(timezone.utc),
            is_update=is_update,
        )
        self.registry.validate(stamped)
        to_save, new_blobs = self._virtualize_entity(stamped)

        try:
            self.entity_store.save_entity(to_save)
        except AdStoreError:
            self._remove_blobs(new_blobs)
            raise

        try:
            self.index_store.save_entity(to_save, is_update, active=active)
        except DataAccessError as e:
            logger.error(
                "Index save failed for %s (%s); removing entity store record", entity_id, e
            )
            self._remove_record(to_save.key)
            self._remove_blobs(new_blobs)
            raise
        return self._realize_entity(context, _visible(stamped, context.entity_filter))


def _replace_details(assoc: Association, details: str | None, is_blob_ref: bool) -> Association:
    return Association(
        external_name=assoc.external_name,
        target_entity_id=assoc.target_entity_id,
        target_entity_category=assoc.target_entity_category,
        target_external_type=assoc.target_external_type,
        association_type=assoc.association_type,
        details=details,
        is_blob_ref=is_blob_ref,
    )


def _visible(entity: Entity, entity_filter: EntityFilter) -> Entity:
    """Trim a saved snapshot to what a read with ``entity_filter`` would return."""
    associations = entity.associations if entity_filter.include_associations else ()
    return entity.evolve(
        properties=entity_filter.filter_properties(entity.properties),
        associations=associations,
    )
