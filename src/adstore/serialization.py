"""JSON wire form of entities.

Interface fields sit at the top level. Properties are grouped into the
``Properties``, ``SystemProperties`` and ``ExtendedProperties`` bags, and
associations into an ``Associations`` object keyed by external name (a single
association or a list of them).

Without an explicit filter only Default properties are written or read,
matching what an external caller is allowed to see.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from adstore.entities import Association, Entity, EntityProperty, PropertyFilter
from adstore.errors import ValidationError
from adstore.filters import EntityFilter
from adstore.values import PropertyType, PropertyValue

logger = logging.getLogger(__name__)

ASSOCIATIONS_KEY = "Associations"

PROPERTY_BAGS: tuple[tuple[str, PropertyFilter], ...] = (
    ("Properties", PropertyFilter.DEFAULT),
    ("SystemProperties", PropertyFilter.SYSTEM),
    ("ExtendedProperties", PropertyFilter.EXTENDED),
)

# Well-known names whose type is fixed regardless of the JSON value.
KNOWN_TYPES: dict[str, PropertyType] = {
    "ExternalEntityId": PropertyType.GUID,
    "EntityCategory": PropertyType.STRING,
    "CreateDate": PropertyType.DATE,
    "LastModifiedDate": PropertyType.DATE,
    "LocalVersion": PropertyType.INT32,
    "ExternalName": PropertyType.STRING,
    "ExternalType": PropertyType.STRING,
    "LastModifiedUser": PropertyType.STRING,
    "SchemaVersion": PropertyType.INT32,
    "OwnerId": PropertyType.STRING,
    "UserId": PropertyType.STRING,
    "FullName": PropertyType.STRING,
    "ContactEmail": PropertyType.STRING,
    "FirstName": PropertyType.STRING,
    "LastName": PropertyType.STRING,
    "ContactPhone": PropertyType.STRING,
    "Budget": PropertyType.DOUBLE,
    "StartDate": PropertyType.DATE,
    "EndDate": PropertyType.DATE,
    "PersonaName": PropertyType.STRING,
}

# Numbers without a known type are read as Double.
TYPE_PRECEDENCE = (
    PropertyType.BOOL,
    PropertyType.DOUBLE,
    PropertyType.DATE,
    PropertyType.GUID,
    PropertyType.STRING,
)
QUOTED_TYPE_PRECEDENCE = (PropertyType.DATE, PropertyType.GUID, PropertyType.STRING)

_INTERFACE_FIELDS = {
    "ExternalEntityId": "external_entity_id",
    "EntityCategory": "entity_category",
    "CreateDate": "create_date",
    "LastModifiedDate": "last_modified_date",
    "LocalVersion": "local_version",
    "ExternalName": "external_name",
    "ExternalType": "external_type",
    "LastModifiedUser": "last_modified_user",
    "SchemaVersion": "schema_version",
    "OwnerId": "owner_id",
}


# --- Serialization ---


def _bags_for(entity_filter: EntityFilter) -> list[tuple[str, PropertyFilter]]:
    bags = [PROPERTY_BAGS[0]]
    if entity_filter.include_system:
        bags.append(PROPERTY_BAGS[1])
    if entity_filter.include_extended:
        bags.append(PROPERTY_BAGS[2])
    return bags


def _to_json_value(value: PropertyValue) -> Any:
    if value.type in (PropertyType.DATE, PropertyType.GUID, PropertyType.BINARY):
        return value.serialization_value
    if value.type in (PropertyType.BOOL, PropertyType.DOUBLE, PropertyType.INT32, PropertyType.INT64):
        return value.value
    # Strings holding a JSON object or array are embedded as JSON.
    text = value.value.strip()
    if text.startswith(("{", "[")):
        try:
            return json.loads(text)
        except ValueError:
            return value.value
    return value.value


def _association_fragment(assoc: Association) -> dict[str, Any]:
    fragment: dict[str, Any] = {
        "TargetEntityId": str(assoc.target_entity_id),
        "TargetEntityCategory": assoc.target_entity_category,
        "TargetExternalType": assoc.target_external_type,
        "AssociationType": assoc.association_type.value,
    }
    if assoc.details:
        fragment["Details"] = assoc.details
    return fragment


def _associations_document(entity: Entity, entity_filter: EntityFilter) -> dict[str, Any]:
    pattern = entity_filter.associations_query
    groups: dict[str, list[Association]] = {}
    for assoc in entity.associations:
        groups.setdefault(assoc.external_name, []).append(assoc)
    document: dict[str, Any] = {}
    for name, members in groups.items():
        if pattern is not None and not _regex_matches(pattern, name):
            continue
        fragments = [_association_fragment(a) for a in members]
        document[name] = fragments[0] if len(fragments) == 1 else fragments
    return document


def _regex_matches(pattern: str, text: str) -> bool:
    try:
        return re.search(pattern, text) is not None
    except re.error as e:
        raise ValidationError(f"Invalid associations regex: {e}") from e


def entity_to_document(entity: Entity, entity_filter: EntityFilter | None = None) -> dict[str, Any] | None:
    """Build the JSON-ready dict for ``entity``; None when it fails the filter's queries."""
    entity_filter = entity_filter or EntityFilter.client_default()
    if not entity_filter.matches(entity):
        return None

    document: dict[str, Any] = {}
    for name, value in entity.interface_values().items():
        if value is not None:
            document[name] = _to_json_value(value)

    for bag_name, property_filter in _bags_for(entity_filter):
        document[bag_name] = {
            p.name: _to_json_value(p.value) for p in entity.properties if p.filter == property_filter
        }

    if entity_filter.include_associations and entity.associations:
        document[ASSOCIATIONS_KEY] = _associations_document(entity, entity_filter)
    return document


def entity_to_json(entity: Entity, entity_filter: EntityFilter | None = None) -> str:
    """Serialize ``entity``; returns an empty string when it fails the filter's queries."""
    document = entity_to_document(entity, entity_filter)
    if document is None:
        return ""
    try:
        return json.dumps(document, separators=(",", ":"), allow_nan=False)
    except ValueError as e:
        raise ValidationError(f"Entity {entity.external_entity_id} is not JSON compliant: {e}") from e


# --- Deserialization ---


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ValidationError(f"Duplicate name in JSON object: '{key}'")
        result[key] = value
    return result


def _reject_constant(name: str) -> Any:
    raise ValidationError(f"Invalid JSON value: {name}")


def _loads(text: str) -> Any:
    try:
        return json.loads(text, object_pairs_hook=_reject_duplicates, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid entity JSON: {e}") from e


def _property_value(name: str, raw: Any) -> PropertyValue:
    known = KNOWN_TYPES.get(name)
    allowed: tuple[PropertyType, ...] = (known,) if known is not None else TYPE_PRECEDENCE

    if raw is None:
        raise ValidationError(f"Property '{name}' must not be null")
    if isinstance(raw, (dict, list)):
        if PropertyType.STRING not in allowed:
            raise ValidationError(f"Property '{name}' cannot hold a JSON object or array")
        try:
            text = json.dumps(raw, separators=(",", ":"), allow_nan=False)
        except ValueError as e:
            raise ValidationError(f"Property '{name}' holds a non-finite number") from e
        return PropertyValue(PropertyType.STRING, text)

    if isinstance(raw, bool):
        text = "true" if raw else "false"
    elif isinstance(raw, float) and not math.isfinite(raw):
        raise ValidationError(f"Property '{name}' must be a finite number")
    elif isinstance(raw, (int, float)):
        text = repr(raw) if isinstance(raw, float) else str(raw)
    else:
        text = raw
        if text.strip().lower() == "nan":
            raise ValidationError(f"Property '{name}' must not be NaN")
        if PropertyType.STRING in allowed:
            allowed = tuple(t for t in allowed if t in QUOTED_TYPE_PRECEDENCE)

    for ptype in allowed:
        try:
            return PropertyValue.parse(ptype, text)
        except ValidationError:
            continue
    raise ValidationError(f"Could not coerce json to property value: {name}")


def _association(name: str, raw: Any) -> Association:
    if not isinstance(raw, dict):
        raise ValidationError(f"Association '{name}' must be an object")
    try:
        return Association(
            external_name=name,
            target_entity_id=raw["TargetEntityId"],
            target_entity_category=raw["TargetEntityCategory"],
            target_external_type=raw.get("TargetExternalType"),
            association_type=raw.get("AssociationType") or "Relationship",
            details=raw.get("Details"),
        )
    except KeyError as e:
        raise ValidationError(f"Association '{name}' is missing {e.args[0]}") from e
    except ValueError as e:
        raise ValidationError(f"Association '{name}' is invalid: {e}") from e


def entity_from_json(text: str, entity_filter: EntityFilter | None = None) -> Entity:
    """Deserialize an entity.

    Unless ``entity_filter`` says otherwise, system and extended property bags
    and associations in the input are ignored.
    """
    entity_filter = entity_filter or EntityFilter.client_default()
    document = _loads(text)
    if not isinstance(document, dict):
        raise ValidationError("Entity JSON must be an object")

    fields: dict[str, Any] = {}
    for wire_name, attr in _INTERFACE_FIELDS.items():
        if wire_name in document:
            fields[attr] = _property_value(wire_name, document[wire_name]).value
    if "external_entity_id" not in fields or "entity_category" not in fields:
        raise ValidationError("Entity JSON requires ExternalEntityId and EntityCategory")

    properties: list[EntityProperty] = []
    seen: set[str] = set()
    for bag_name, property_filter in _bags_for(entity_filter):
        bag = document.get(bag_name)
        if not isinstance(bag, dict):
            continue
        for name, raw in bag.items():
            if name in seen:
                raise ValidationError(f"Duplicate property name across bags: '{name}'")
            seen.add(name)
            properties.append(EntityProperty(name, _property_value(name, raw), property_filter))

    associations: list[Association] = []
    bag = document.get(ASSOCIATIONS_KEY)
    if entity_filter.include_associations and isinstance(bag, dict):
        for name, raw in bag.items():
            if isinstance(raw, list):
                associations.extend(_association(name, item) for item in raw)
            else:
                associations.append(_association(name, raw))

    logger.debug("Deserialized %s entity %s", fields["entity_category"], fields["external_entity_id"])
    return Entity(properties=tuple(properties), associations=tuple(associations), **fields)
