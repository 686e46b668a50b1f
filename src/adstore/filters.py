"""Request-scoped entity filters and the request context passed to every repository call."""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from adstore.entities import EntityProperty, PropertyFilter
from adstore.errors import ValidationError

if TYPE_CHECKING:
    from adstore.entities import Entity

FLAGS_QUERY = "Flags"
VERSION_QUERY = "Version"
ENTITY_CATEGORY_QUERY = "EntityCategory"
EXTERNAL_TYPE_QUERY = "ExternalType"
ASSOCIATIONS_QUERY = "Associations"

WITH_SYSTEM_PROPERTIES = "WithSystemProperties"
WITH_EXTENDED_PROPERTIES = "WithExtendedProperties"
WITH_ASSOCIATIONS = "WithAssociations"

_RESERVED_QUERIES = {FLAGS_QUERY.lower(), VERSION_QUERY.lower(), ASSOCIATIONS_QUERY.lower()}


def _freeze(queries: Mapping[str, str] | None) -> Mapping[str, str]:
    return MappingProxyType(dict(queries or {}))


@dataclass(frozen=True)
class EntityFilter:
    """Which property categories and whether associations take part in a read or save.

    ``version`` pins reads to a historical version. ``queries`` holds category
    filters (``EntityCategory``, ``ExternalType``) and regex matches against
    interface properties.
    """

    include_default: bool = True
    include_system: bool = True
    include_extended: bool = True
    include_associations: bool = True
    version: int | None = None
    queries: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.version is not None and (isinstance(self.version, bool) or self.version < 0):
            raise ValidationError(f"Invalid version in filter: {self.version!r}")
        object.__setattr__(self, "queries", _freeze(self.queries))

    @classmethod
    def everything(cls) -> EntityFilter:
        return cls()

    @classmethod
    def associations_only(cls) -> EntityFilter:
        return cls(False, False, False, True)

    @classmethod
    def client_default(cls) -> EntityFilter:
        """Default properties only; what an external caller sees without flags."""
        return cls(True, False, False, False)

    @classmethod
    def from_query(cls, params: Mapping[str, str] | None) -> EntityFilter:
        """Build a filter from query-string style parameters."""
        params = dict(params or {})
        flags = ""
        version: int | None = None
        queries: dict[str, str] = {}
        for name, value in params.items():
            lowered = name.lower()
            if lowered == FLAGS_QUERY.lower():
                flags = value or ""
            elif lowered == VERSION_QUERY.lower():
                try:
                    version = int(value)
                except (TypeError, ValueError) as e:
                    raise ValidationError(f"Invalid Version query value: {value!r}") from e
            else:
                queries[name] = value
        upper = flags.upper()
        return cls(
            include_default=True,
            include_system=WITH_SYSTEM_PROPERTIES.upper() in upper,
            include_extended=WITH_EXTENDED_PROPERTIES.upper() in upper,
            include_associations=WITH_ASSOCIATIONS.upper() in upper,
            version=version,
            queries=queries,
        )

    def evolve(self, **changes: Any) -> EntityFilter:
        return dataclasses.replace(self, **changes)

    def with_version(self, version: int | None) -> EntityFilter:
        return self.evolve(version=version)

    def without_version(self) -> EntityFilter:
        return self.evolve(version=None)

    def with_query(self, name: str, value: str) -> EntityFilter:
        return self.evolve(queries={**self.queries, name: value})

    @property
    def filters(self) -> list[PropertyFilter]:
        included = []
        if self.include_default:
            included.append(PropertyFilter.DEFAULT)
        if self.include_system:
            included.append(PropertyFilter.SYSTEM)
        if self.include_extended:
            included.append(PropertyFilter.EXTENDED)
        return included

    def filter_properties(self, properties: Iterable[EntityProperty]) -> tuple[EntityProperty, ...]:
        included = self.filters
        return tuple(p for p in properties if p.filter in included)

    def _query(self, name: str) -> str | None:
        for key, value in self.queries.items():
            if key.lower() == name.lower():
                return value
        return None

    @property
    def entity_category(self) -> str | None:
        return self._query(ENTITY_CATEGORY_QUERY)

    @property
    def external_type(self) -> str | None:
        return self._query(EXTERNAL_TYPE_QUERY)

    @property
    def associations_query(self) -> str | None:
        """Pattern restricting which association names are serialized."""
        return self._query(ASSOCIATIONS_QUERY)

    def matches(self, entity: Entity) -> bool:
        """Check category filters and regex queries against the entity's interface properties.

        Queries naming something other than an interface property are ignored.
        """
        if not self.queries:
            return True
        category = self.entity_category
        if category is not None and entity.entity_category != category:
            return False
        external_type = self.external_type
        if external_type is not None and entity.external_type != external_type:
            return False
        interface = {k.lower(): v for k, v in entity.interface_values().items()}
        for name, pattern in self.queries.items():
            lowered = name.lower()
            if lowered in _RESERVED_QUERIES or lowered in (
                ENTITY_CATEGORY_QUERY.lower(),
                EXTERNAL_TYPE_QUERY.lower(),
            ):
                continue
            if lowered not in interface:
                continue
            value = interface[lowered]
            if value is None:
                return False
            try:
                if re.search(pattern, value.serialization_value) is None:
                    return False
            except re.error as e:
                raise ValidationError(f"Invalid regex for query '{name}': {e}") from e
        return True


@dataclass(frozen=True)
class RequestContext:
    """Per-call context: caller identity, filter and save/read switches."""

    external_company_id: str | None = None
    user_id: str | None = None
    entity_filter: EntityFilter = field(default_factory=EntityFilter)
    force_overwrite: bool = False
    return_blob_references: bool = False

    def evolve(self, **changes: Any) -> RequestContext:
        return dataclasses.replace(self, **changes)
