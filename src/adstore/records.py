"""pydantic models for the persisted entity payload and blob documents."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from adstore.entities import Association, AssociationType, Entity, EntityProperty, PropertyFilter
from adstore.errors import ValidationError
from adstore.keys import StorageKey
from adstore.values import PropertyType, PropertyValue


class PropertyRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    type: PropertyType
    value: str
    filter: PropertyFilter = PropertyFilter.DEFAULT
    blob_ref: bool = False


class AssociationRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    external_name: str
    target_entity_id: str
    target_entity_category: str
    target_external_type: str | None = None
    association_type: AssociationType = AssociationType.RELATIONSHIP
    details: str | None = None
    blob_ref: bool = False


class EntityRecord(BaseModel):
    """The payload written to the entity store for one version of an entity."""

    model_config = ConfigDict(extra="forbid")

    external_entity_id: str
    entity_category: str
    external_name: str | None = None
    external_type: str | None = None
    create_date: datetime | None = None
    last_modified_date: datetime | None = None
    local_version: int | None = None
    schema_version: int | None = None
    last_modified_user: str | None = None
    owner_id: str | None = None
    properties: list[PropertyRecord] = []
    associations: list[AssociationRecord] = []


class BlobValueRecord(BaseModel):
    """A heavy value promoted out of an entity record."""

    model_config = ConfigDict(extra="forbid")

    type: PropertyType
    value: str


def entity_to_record(entity: Entity) -> EntityRecord:
    return EntityRecord(
        external_entity_id=str(entity.external_entity_id),
        entity_category=entity.entity_category,
        external_name=entity.external_name,
        external_type=entity.external_type,
        create_date=entity.create_date,
        last_modified_date=entity.last_modified_date,
        local_version=entity.local_version,
        schema_version=entity.schema_version,
        last_modified_user=entity.last_modified_user,
        owner_id=entity.owner_id,
        properties=[
            PropertyRecord(
                name=p.name,
                type=p.value.type,
                value=p.value.serialization_value,
                filter=p.filter,
                blob_ref=p.is_blob_ref,
            )
            for p in entity.properties
        ],
        associations=[
            AssociationRecord(
                external_name=a.external_name,
                target_entity_id=str(a.target_entity_id),
                target_entity_category=a.target_entity_category,
                target_external_type=a.target_external_type,
                association_type=a.association_type,
                details=a.details,
                blob_ref=a.is_blob_ref,
            )
            for a in entity.associations
        ],
    )


def record_to_entity(record: EntityRecord, key: StorageKey | None = None) -> Entity:
    return Entity(
        external_entity_id=record.external_entity_id,
        entity_category=record.entity_category,
        external_name=record.external_name,
        external_type=record.external_type,
        create_date=record.create_date,
        last_modified_date=record.last_modified_date,
        local_version=record.local_version,
        schema_version=record.schema_version,
        last_modified_user=record.last_modified_user,
        owner_id=record.owner_id,
        properties=tuple(
            EntityProperty(
                p.name,
                PropertyValue.parse(p.type, p.value),
                p.filter,
                p.blob_ref,
            )
            for p in record.properties
        ),
        associations=tuple(
            Association(
                external_name=a.external_name,
                target_entity_id=a.target_entity_id,
                target_entity_category=a.target_entity_category,
                target_external_type=a.target_external_type,
                association_type=a.association_type,
                details=a.details,
                is_blob_ref=a.blob_ref,
            )
            for a in record.associations
        ),
        key=key,
    )


def dump_entity(entity: Entity) -> bytes:
    return entity_to_record(entity).model_dump_json().encode("utf-8")


def load_entity(payload: bytes | str, key: StorageKey | None = None) -> Entity:
    try:
        record = EntityRecord.model_validate_json(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Corrupt entity payload: {e.error_count()} error(s)") from e
    return record_to_entity(record, key)


def dump_blob_value(value: PropertyValue) -> bytes:
    return BlobValueRecord(type=value.type, value=value.serialization_value).model_dump_json().encode(
        "utf-8"
    )


def load_blob_value(payload: bytes) -> PropertyValue:
    try:
        record = BlobValueRecord.model_validate_json(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Corrupt blob payload: {e.error_count()} error(s)") from e
    return PropertyValue.parse(record.type, record.value)
