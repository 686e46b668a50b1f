"""Explicit registry of entity categories: constructors and validators by category name."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from adstore.entities import Entity, EntityId, EntityProperty
from adstore.errors import ValidationError
from adstore.values import PropertyType

COMPANY = "Company"
CAMPAIGN = "Campaign"
CREATIVE = "Creative"
PARTNER = "Partner"
USER = "User"
BLOB_PROPERTY = "BlobPropertyEntity"

USER_ID_PROPERTY = "UserId"

Validator = Callable[[Entity], None]


@dataclass(frozen=True)
class EntityCategory:
    """A category's name, the types of its well-known properties and extra checks."""

    name: str
    property_types: dict[str, tuple[PropertyType, ...]] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    validators: tuple[Validator, ...] = ()

    def validate(self, entity: Entity) -> None:
        if entity.entity_category != self.name:
            raise ValidationError(
                f"Entity {entity.external_entity_id} has category "
                f"'{entity.entity_category}', expected '{self.name}'"
            )
        for name in self.required:
            if entity.get_property(name) is None:
                raise ValidationError(f"{self.name} entity is missing required property '{name}'")
        for name, allowed in self.property_types.items():
            prop = entity.get_property(name)
            if prop is None or prop.is_blob_ref:
                continue
            if prop.value.type not in allowed:
                expected = ", ".join(t.value for t in allowed)
                raise ValidationError(
                    f"{self.name} property '{name}' must be {expected}, got {prop.value.type.value}"
                )
        for check in self.validators:
            check(entity)

    def create(
        self,
        external_name: str | None = None,
        *,
        external_entity_id: EntityId | None = None,
        external_type: str | None = None,
        properties: Iterable[EntityProperty] = (),
        **values: Any,
    ) -> Entity:
        """Build a new entity of this category; keyword values become Default properties."""
        props = list(properties) + [EntityProperty(k, v) for k, v in values.items()]
        entity = Entity(
            external_entity_id=external_entity_id or EntityId.new(),
            entity_category=self.name,
            external_name=external_name,
            external_type=external_type,
            properties=tuple(props),
        )
        self.validate(entity)
        return entity


class EntityRegistry:
    """Category name to EntityCategory mapping, populated once at start-up.

    Unregistered categories are accepted unless ``strict`` is set.
    """

    def __init__(self, categories: Iterable[EntityCategory] = (), *, strict: bool = False) -> None:
        self._categories: dict[str, EntityCategory] = {}
        self.strict = strict
        for category in categories:
            self.register(category)

    def register(self, category: EntityCategory) -> None:
        if category.name in self._categories:
            raise ValidationError(f"Category '{category.name}' is already registered")
        self._categories[category.name] = category

    def get(self, name: str) -> EntityCategory | None:
        return self._categories.get(name)

    def __getitem__(self, name: str) -> EntityCategory:
        category = self._categories.get(name)
        if category is None:
            raise ValidationError(f"Unknown entity category '{name}'")
        return category

    def __contains__(self, name: object) -> bool:
        return name in self._categories

    def names(self) -> list[str]:
        return sorted(self._categories)

    def validate(self, entity: Entity) -> None:
        category = self._categories.get(entity.entity_category)
        if category is None:
            if self.strict:
                raise ValidationError(f"Unknown entity category '{entity.entity_category}'")
            return
        category.validate(entity)

    def create(self, name: str, external_name: str | None = None, **kwargs: Any) -> Entity:
        return self[name].create(external_name, **kwargs)


def _check_campaign_dates(entity: Entity) -> None:
    start = entity.property_value("StartDate")
    end = entity.property_value("EndDate")
    if isinstance(start, datetime) and isinstance(end, datetime) and end < start:
        raise ValidationError("Campaign EndDate must not be before StartDate")


def _check_user_id(entity: Entity) -> None:
    user_id = entity.property_value(USER_ID_PROPERTY)
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("User entity must have a non-empty UserId")


_NUMBER = (PropertyType.DOUBLE, PropertyType.INT32, PropertyType.INT64)
_TEXT = (PropertyType.STRING,)
_DATE = (PropertyType.DATE,)


def build_default_registry(*, strict: bool = False) -> EntityRegistry:
    """Registry of the advertising-operations categories."""
    return EntityRegistry(
        [
            EntityCategory(COMPANY),
            EntityCategory(
                CAMPAIGN,
                property_types={
                    "Budget": _NUMBER,
                    "StartDate": _DATE,
                    "EndDate": _DATE,
                    "PersonaName": _TEXT,
                },
                validators=(_check_campaign_dates,),
            ),
            EntityCategory(CREATIVE),
            EntityCategory(PARTNER),
            EntityCategory(
                USER,
                property_types={
                    USER_ID_PROPERTY: _TEXT,
                    "FullName": _TEXT,
                    "ContactEmail": _TEXT,
                    "FirstName": _TEXT,
                    "LastName": _TEXT,
                    "ContactPhone": _TEXT,
                },
                required=(USER_ID_PROPERTY,),
                validators=(_check_user_id,),
            ),
        ],
        strict=strict,
    )
