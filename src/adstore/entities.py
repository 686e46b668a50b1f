"""Entity aggregate and its parts: ids, properties and associations."""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from adstore.errors import ValidationError
from adstore.values import PropertyValue

if TYPE_CHECKING:
    from adstore.keys import StorageKey


@dataclass(frozen=True, order=True)
class EntityId:
    """A 128-bit entity identifier. ``str()`` gives 32 hex digits without dashes."""

    value: uuid.UUID

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", self._coerce(self.value))

    @staticmethod
    def _coerce(raw: Any) -> uuid.UUID:
        if isinstance(raw, EntityId):
            return raw.value
        if isinstance(raw, uuid.UUID):
            return raw
        if isinstance(raw, bool):
            raise ValidationError("EntityId cannot be built from a bool")
        if isinstance(raw, int):
            if raw < 0:
                raise ValidationError(f"EntityId cannot be negative: {raw}")
            try:
                return uuid.UUID(f"{raw:032x}")
            except ValueError as e:
                raise ValidationError(f"EntityId out of range: {raw}") from e
        if isinstance(raw, str):
            try:
                return uuid.UUID(raw.strip())
            except ValueError as e:
                raise ValidationError(f"Invalid EntityId: {raw!r}") from e
        raise ValidationError(f"Cannot build EntityId from {type(raw).__name__}")

    @classmethod
    def new(cls) -> EntityId:
        return cls(uuid.uuid4())

    def __str__(self) -> str:
        return self.value.hex


class PropertyFilter(str, Enum):
    DEFAULT = "Default"
    SYSTEM = "System"
    EXTENDED = "Extended"


class AssociationType(str, Enum):
    RELATIONSHIP = "Relationship"
    CHILD = "Child"


@dataclass(frozen=True)
class EntityProperty:
    """A named, typed value with a filter category.

    When ``is_blob_ref`` is set the value is a serialized blob key that points
    at the real payload in the blob store.
    """

    name: str
    value: PropertyValue
    filter: PropertyFilter = PropertyFilter.DEFAULT
    is_blob_ref: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise ValidationError("Property name must be a non-empty string")
        object.__setattr__(self, "value", PropertyValue.of(self.value))
        object.__setattr__(self, "filter", PropertyFilter(self.filter))

    @classmethod
    def system(cls, name: str, value: Any) -> EntityProperty:
        return cls(name, value, PropertyFilter.SYSTEM)

    @classmethod
    def extended(cls, name: str, value: Any) -> EntityProperty:
        return cls(name, value, PropertyFilter.EXTENDED)


@dataclass(frozen=True)
class Association:
    """A directed, typed edge from an entity to a target entity.

    Associations sharing ``external_name`` form a collection. Equality ignores
    ``details`` and ``is_blob_ref``.
    """

    external_name: str
    target_entity_id: EntityId
    target_entity_category: str
    target_external_type: str | None = None
    association_type: AssociationType = AssociationType.RELATIONSHIP
    details: str | None = field(default=None, compare=False)
    is_blob_ref: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        if not self.external_name:
            raise ValidationError("Association name must be a non-empty string")
        object.__setattr__(self, "target_entity_id", EntityId(self.target_entity_id))
        object.__setattr__(self, "association_type", AssociationType(self.association_type))


INTERFACE_PROPERTY_NAMES = (
    "ExternalEntityId",
    "EntityCategory",
    "CreateDate",
    "LastModifiedDate",
    "LocalVersion",
    "ExternalName",
    "ExternalType",
    "LastModifiedUser",
    "SchemaVersion",
    "OwnerId",
)


@dataclass(frozen=True)
class Entity:
    """Immutable snapshot of an entity.

    Operations that change an entity return a new snapshot; the repository
    returns detached snapshots from reads and saves.
    """

    external_entity_id: EntityId
    entity_category: str
    external_name: str | None = None
    external_type: str | None = None
    create_date: datetime | None = None
    last_modified_date: datetime | None = None
    local_version: int | None = None
    schema_version: int | None = None
    last_modified_user: str | None = None
    owner_id: str | None = None
    properties: tuple[EntityProperty, ...] = ()
    associations: tuple[Association, ...] = ()
    key: StorageKey | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "external_entity_id", EntityId(self.external_entity_id))
        object.__setattr__(self, "properties", tuple(self.properties))
        object.__setattr__(self, "associations", tuple(self.associations))
        seen: set[str] = set()
        for prop in self.properties:
            if prop.name in seen:
                raise ValidationError(
                    f"Duplicate property name '{prop.name}' on entity {self.external_entity_id}"
                )
            seen.add(prop.name)

    def evolve(self, **changes: Any) -> Entity:
        return dataclasses.replace(self, **changes)

    # --- Properties ---

    def get_property(self, name: str) -> EntityProperty | None:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def property_value(self, name: str, default: Any = None) -> Any:
        prop = self.get_property(name)
        return default if prop is None else prop.value.value

    def with_property(
        self,
        prop: EntityProperty | str,
        value: Any = None,
        filter: PropertyFilter = PropertyFilter.DEFAULT,
    ) -> Entity:
        """Return a copy with the property added, or replaced in place if the name exists."""
        if isinstance(prop, str):
            prop = EntityProperty(prop, value, filter)
        props = list(self.properties)
        for i, existing in enumerate(props):
            if existing.name == prop.name:
                props[i] = prop
                break
        else:
            props.append(prop)
        return self.evolve(properties=tuple(props))

    def with_properties(self, props: Iterable[EntityProperty]) -> Entity:
        entity = self
        for prop in props:
            entity = entity.with_property(prop)
        return entity

    def without_property(self, name: str) -> Entity:
        return self.evolve(properties=tuple(p for p in self.properties if p.name != name))

    # --- Associations ---

    def with_associations(self, associations: Iterable[Association]) -> Entity:
        return self.evolve(associations=tuple(associations))

    def associations_named(self, name: str) -> list[Association]:
        return [a for a in self.associations if a.external_name == name]

    def associate(
        self,
        name: str,
        targets: Iterable[Entity],
        association_type: AssociationType = AssociationType.RELATIONSHIP,
        *,
        replace: bool = False,
        details: str | None = "",
    ) -> Entity:
        """Return a copy associated with ``targets`` under the collection ``name``.

        All targets must share one category and at most one external type. An
        existing association to the same target under ``name`` is replaced.
        """
        targets = list(targets)
        if not targets:
            return self
        categories = {t.entity_category for t in targets}
        external_types = {t.external_type for t in targets}
        if len(categories) != 1 or len(external_types) > 1:
            raise ValidationError("Target entities are not all of same category and external type.")
        category = categories.pop()
        external_type = external_types.pop()

        current = [a for a in self.associations if not (replace and a.external_name == name)]
        for target in targets:
            current = [
                a
                for a in current
                if not (a.external_name == name and a.target_entity_id == target.external_entity_id)
            ]
            current.append(
                Association(
                    external_name=name,
                    target_entity_id=target.external_entity_id,
                    target_entity_category=category,
                    target_external_type=external_type,
                    association_type=association_type,
                    details=details,
                )
            )
        return self.with_associations(current)

    # --- Interface properties ---

    def interface_values(self) -> dict[str, PropertyValue | None]:
        """Return the interface fields as typed values keyed by their wire names."""
        raw: dict[str, Any] = {
            "ExternalEntityId": self.external_entity_id.value,
            "EntityCategory": self.entity_category,
            "CreateDate": self.create_date,
            "LastModifiedDate": self.last_modified_date,
            "LocalVersion": self.local_version,
            "ExternalName": self.external_name,
            "ExternalType": self.external_type,
            "LastModifiedUser": self.last_modified_user,
            "SchemaVersion": self.schema_version,
            "OwnerId": self.owner_id,
        }
        return {k: (None if v is None else PropertyValue.of(v)) for k, v in raw.items()}
