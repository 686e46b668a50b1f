"""Filter-scoped three-way merge of a stored entity with an incoming one."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from adstore.entities import Entity, EntityProperty
from adstore.filters import EntityFilter
from adstore.keys import StorageKey
from adstore.values import PropertyValue

RealizeFn = Callable[[EntityProperty], PropertyValue]


def merge_entity(
    stored: Entity | None,
    incoming: Entity,
    entity_filter: EntityFilter,
    *,
    force_overwrite: bool = False,
    realize: RealizeFn | None = None,
) -> Entity:
    """Build the entity to write from the stored copy and the incoming one.

    Interface fields always come from ``incoming`` (create date is kept on
    update). Associations and each property category are replaced wholesale
    when the filter includes them and left as stored otherwise. With
    ``force_overwrite`` the filter is ignored and only the stored interface
    fields survive.

    ``realize`` resolves a stored blob reference to its value; when given, an
    unchanged heavy property keeps its existing blob reference.
    """
    if stored is None:
        base = Entity(external_entity_id=incoming.external_entity_id, entity_category=incoming.entity_category)
    elif force_overwrite:
        base = stored.evolve(properties=(), associations=())
    else:
        base = stored

    if force_overwrite:
        entity_filter = EntityFilter.everything()

    merged = base.evolve(
        entity_category=incoming.entity_category,
        external_name=incoming.external_name,
        external_type=incoming.external_type,
        schema_version=incoming.schema_version,
        owner_id=incoming.owner_id,
        create_date=base.create_date if stored is not None else incoming.create_date,
    )

    if entity_filter.include_associations:
        merged = merged.with_associations(incoming.associations)

    properties = list(merged.properties)
    for category in entity_filter.filters:
        existing = {p.name: p for p in properties if p.filter == category}
        properties = [p for p in properties if p.filter != category]
        for prop in incoming.properties:
            if prop.filter != category:
                continue
            properties.append(_merge_property(existing.get(prop.name), prop, realize))
    return merged.evolve(properties=tuple(properties))


def _merge_property(
    existing: EntityProperty | None,
    incoming: EntityProperty,
    realize: RealizeFn | None,
) -> EntityProperty:
    if existing is None or not existing.is_blob_ref:
        return incoming
    if incoming.is_blob_ref:
        return existing if incoming.value == existing.value else incoming
    if realize is None:
        return incoming
    if realize(existing) != incoming.value:
        return incoming
    return existing


def stamp_for_save(
    entity: Entity,
    key: StorageKey,
    *,
    user_id: str | None,
    now: datetime,
    is_update: bool,
) -> Entity:
    """Set the read-only fields: key, modification stamp and the next version."""
    if is_update:
        return entity.evolve(
            key=key,
            last_modified_date=now,
            last_modified_user=user_id,
            local_version=(entity.local_version or 0) + 1,
        )
    return entity.evolve(
        key=key,
        last_modified_date=now,
        last_modified_user=user_id,
        local_version=0,
        create_date=now,
    )
