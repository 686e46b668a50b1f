"""Tests for the JSON wire form of entities."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import pytest

from adstore.entities import Association, EntityId, EntityProperty, PropertyFilter
from adstore.errors import ValidationError
from adstore.filters import EntityFilter
from adstore.serialization import entity_from_json, entity_to_document, entity_to_json
from adstore.values import PropertyType

from tests.conftest import make_entity

ENTITY_ID = "0123456789abcdef0123456789abcdef"


def _doc(**extra) -> str:
    document = {"ExternalEntityId": ENTITY_ID, "EntityCategory": "Campaign", **extra}
    return json.dumps(document)


class TestToJson:
    def test_interface_fields_at_top_level(self):
        entity = make_entity(
            "Campaign",
            "Spring",
            entity_id=EntityId(ENTITY_ID),
            local_version=3,
            last_modified_date=datetime(2024, 1, 2, tzinfo=timezone.utc),
        )
        document = entity_to_document(entity)
        assert document["ExternalEntityId"] == ENTITY_ID
        assert document["EntityCategory"] == "Campaign"
        assert document["ExternalName"] == "Spring"
        assert document["LocalVersion"] == 3
        assert document["LastModifiedDate"].startswith("2024-01-02T00:00:00")
        assert "ExternalType" not in document

    def test_default_filter_writes_default_bag_only(self):
        entity = make_entity(
            properties=[
                EntityProperty("Foo", 1),
                EntityProperty.system("Sys", "s"),
                EntityProperty.extended("Ext", "e"),
            ],
            associations=(Association("Partners", EntityId.new(), "Partner"),),
        )
        document = entity_to_document(entity)
        assert document["Properties"] == {"Foo": 1}
        assert "SystemProperties" not in document
        assert "ExtendedProperties" not in document
        assert "Associations" not in document

    def test_everything_filter_writes_all_bags(self):
        target = EntityId.new()
        entity = make_entity(
            properties=[
                EntityProperty("Foo", 1),
                EntityProperty.system("Sys", "s"),
                EntityProperty.extended("Ext", "e"),
            ],
            associations=(Association("Partners", target, "Partner", details="d"),),
        )
        document = entity_to_document(entity, EntityFilter.everything())
        assert document["SystemProperties"] == {"Sys": "s"}
        assert document["ExtendedProperties"] == {"Ext": "e"}
        assert document["Associations"]["Partners"] == {
            "TargetEntityId": str(target),
            "TargetEntityCategory": "Partner",
            "TargetExternalType": None,
            "AssociationType": "Relationship",
            "Details": "d",
        }

    def test_association_collection_becomes_list(self):
        entity = make_entity(
            associations=(
                Association("Partners", EntityId.new(), "Partner"),
                Association("Partners", EntityId.new(), "Partner"),
            )
        )
        document = entity_to_document(entity, EntityFilter.everything())
        assert isinstance(document["Associations"]["Partners"], list)
        assert len(document["Associations"]["Partners"]) == 2

    def test_associations_query_selects_names(self):
        entity = make_entity(
            associations=(
                Association("Partners", EntityId.new(), "Partner"),
                Association("Creatives", EntityId.new(), "Creative"),
            )
        )
        entity_filter = EntityFilter.everything().with_query("associations", "^Part")
        document = entity_to_document(entity, entity_filter)
        assert list(document["Associations"]) == ["Partners"]

    def test_associations_query_name_is_case_insensitive(self):
        entity = make_entity(
            associations=(
                Association("Partners", EntityId.new(), "Partner"),
                Association("Creatives", EntityId.new(), "Creative"),
            )
        )
        entity_filter = EntityFilter.from_query({"Flags": "WithAssociations", "Associations": "^Part"})
        assert entity_filter.associations_query == "^Part"
        document = entity_to_document(entity, entity_filter)
        assert list(document["Associations"]) == ["Partners"]

    def test_embedded_json_string_is_written_as_json(self):
        entity = make_entity(properties=[EntityProperty("Targeting", '{"geo": ["US"]}')])
        document = entity_to_document(entity)
        assert document["Properties"]["Targeting"] == {"geo": ["US"]}

    def test_query_mismatch_gives_empty_string(self):
        entity = make_entity("Campaign", "Spring")
        entity_filter = EntityFilter.client_default().with_query("ExternalName", "^Autumn")
        assert entity_to_json(entity, entity_filter) == ""

    def test_non_compliant_embedded_json_raises_validation_error(self):
        entity = make_entity(properties=[EntityProperty("Targeting", '{"cap": Infinity}')])
        with pytest.raises(ValidationError):
            entity_to_json(entity)

    def test_output_is_compact_json(self):
        text = entity_to_json(make_entity(properties=[EntityProperty("Foo", 1.5)]))
        assert " " not in text
        assert json.loads(text)["Properties"]["Foo"] == 1.5


class TestFromJson:
    def test_requires_id_and_category(self):
        with pytest.raises(ValidationError):
            entity_from_json(json.dumps({"EntityCategory": "Campaign"}))
        with pytest.raises(ValidationError):
            entity_from_json(json.dumps({"ExternalEntityId": ENTITY_ID}))

    def test_interface_fields(self):
        entity = entity_from_json(_doc(ExternalName="Spring", LocalVersion=2))
        assert entity.external_entity_id == EntityId(ENTITY_ID)
        assert entity.external_name == "Spring"
        assert entity.local_version == 2

    def test_type_precedence(self):
        guid = str(uuid.uuid4())
        entity = entity_from_json(
            _doc(
                Properties={
                    "Flag": True,
                    "Count": 7,
                    "When": "2024-03-01T10:00:00Z",
                    "Ref": guid,
                    "Quoted": "true",
                    "Number": "42",
                    "Text": "hello",
                }
            )
        )
        types = {p.name: p.value.type for p in entity.properties}
        assert types["Flag"] is PropertyType.BOOL
        assert types["Count"] is PropertyType.DOUBLE
        assert types["When"] is PropertyType.DATE
        assert types["Ref"] is PropertyType.GUID
        assert types["Quoted"] is PropertyType.STRING
        assert types["Number"] is PropertyType.STRING
        assert types["Text"] is PropertyType.STRING

    def test_known_names_keep_their_type(self):
        entity = entity_from_json(_doc(Properties={"Budget": 100, "PersonaName": "2024-01-01"}))
        assert entity.get_property("Budget").value.type is PropertyType.DOUBLE
        assert entity.get_property("PersonaName").value.type is PropertyType.STRING

    def test_known_name_with_wrong_type_fails(self):
        with pytest.raises(ValidationError):
            entity_from_json(_doc(Properties={"Budget": "lots"}))

    def test_object_values_are_stored_as_json_strings(self):
        entity = entity_from_json(_doc(Properties={"Targeting": {"geo": ["US"]}}))
        prop = entity.get_property("Targeting")
        assert prop.value.type is PropertyType.STRING
        assert json.loads(prop.value.value) == {"geo": ["US"]}

    def test_duplicate_keys_rejected(self):
        text = '{"ExternalEntityId": "%s", "EntityCategory": "Campaign", "EntityCategory": "User"}' % ENTITY_ID
        with pytest.raises(ValidationError):
            entity_from_json(text)

    def test_duplicate_property_names_in_bag_rejected(self):
        text = (
            '{"ExternalEntityId": "%s", "EntityCategory": "Campaign", '
            '"Properties": {"Foo": 1, "Foo": 2}}' % ENTITY_ID
        )
        with pytest.raises(ValidationError):
            entity_from_json(text)

    def test_duplicate_names_across_bags_rejected(self):
        with pytest.raises(ValidationError):
            entity_from_json(
                _doc(Properties={"Foo": 1}, SystemProperties={"Foo": 2}),
                EntityFilter.everything(),
            )

    @pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_numbers_rejected(self, raw):
        text = '{"ExternalEntityId": "%s", "EntityCategory": "Campaign", "Properties": {"Foo": %s}}' % (
            ENTITY_ID,
            raw,
        )
        with pytest.raises(ValidationError):
            entity_from_json(text)

    def test_overflowing_number_rejected(self):
        text = '{"ExternalEntityId": "%s", "EntityCategory": "Campaign", "Properties": {"Foo": 1e999}}' % ENTITY_ID
        with pytest.raises(ValidationError, match="finite"):
            entity_from_json(text)

    def test_overflowing_number_inside_object_rejected(self):
        text = (
            '{"ExternalEntityId": "%s", "EntityCategory": "Campaign", '
            '"Properties": {"Targeting": {"cap": 1e999}}}' % ENTITY_ID
        )
        with pytest.raises(ValidationError):
            entity_from_json(text)

    def test_nan_string_rejected(self):
        with pytest.raises(ValidationError):
            entity_from_json(_doc(Properties={"Foo": "NaN"}))

    def test_null_property_rejected(self):
        with pytest.raises(ValidationError):
            entity_from_json(_doc(Properties={"Foo": None}))

    def test_invalid_json(self):
        with pytest.raises(ValidationError):
            entity_from_json("{not json")
        with pytest.raises(ValidationError):
            entity_from_json("[1, 2]")

    def test_default_filter_ignores_system_bags_and_associations(self):
        entity = entity_from_json(
            _doc(
                Properties={"Foo": 1},
                SystemProperties={"Sys": "s"},
                ExtendedProperties={"Ext": "e"},
                Associations={
                    "Partners": {"TargetEntityId": ENTITY_ID, "TargetEntityCategory": "Partner"}
                },
            )
        )
        assert [p.name for p in entity.properties] == ["Foo"]
        assert entity.associations == ()

    def test_everything_filter_reads_bags_and_associations(self):
        other = EntityId.new()
        entity = entity_from_json(
            _doc(
                SystemProperties={"Sys": "s"},
                ExtendedProperties={"Ext": "e"},
                Associations={
                    "Partners": [
                        {"TargetEntityId": ENTITY_ID, "TargetEntityCategory": "Partner"},
                        {
                            "TargetEntityId": str(other),
                            "TargetEntityCategory": "Partner",
                            "AssociationType": "Child",
                            "Details": "x",
                        },
                    ],
                    "Owner": {"TargetEntityId": ENTITY_ID, "TargetEntityCategory": "User"},
                },
            ),
            EntityFilter.everything(),
        )
        assert entity.get_property("Sys").filter is PropertyFilter.SYSTEM
        assert entity.get_property("Ext").filter is PropertyFilter.EXTENDED
        partners = entity.associations_named("Partners")
        assert len(partners) == 2
        assert partners[1].association_type.value == "Child"
        assert partners[1].details == "x"
        assert len(entity.associations_named("Owner")) == 1

    def test_association_missing_target(self):
        with pytest.raises(ValidationError):
            entity_from_json(
                _doc(Associations={"Partners": {"TargetEntityCategory": "Partner"}}),
                EntityFilter.everything(),
            )

    def test_round_trip_through_json(self):
        entity = make_entity(
            properties=[
                EntityProperty("Budget", 12.5),
                EntityProperty("Active", True),
                EntityProperty.system("Sys", "s"),
            ],
            associations=(Association("Partners", EntityId.new(), "Partner", "Agency"),),
        )
        entity_filter = EntityFilter.everything()
        restored = entity_from_json(entity_to_json(entity, entity_filter), entity_filter)
        assert restored.external_entity_id == entity.external_entity_id
        assert restored.property_value("Budget") == 12.5
        assert restored.property_value("Active") is True
        assert restored.get_property("Sys").filter is PropertyFilter.SYSTEM
        assert restored.associations == entity.associations
