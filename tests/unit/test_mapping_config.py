"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Unit tests for the mapping configuration resolver.

These tests verify that loosely typed operator input is coerced into typed
entries, that entries move from pending to resolved, and that the serialized
form reads back to the same decisions.
"""

import pytest

from tmimport.mapping_config import (
    EntryState,
    StatusEntry,
    build_id_map,
    normalize_mapping_configuration,
    normalize_option_config_list,
    normalize_role_permissions,
    normalize_string_array,
    serialize_mapping_configuration,
)


@pytest.mark.unit
class TestNormalizeMappingConfiguration:
    def test_non_object_input_gives_empty_configuration(self):
        configuration = normalize_mapping_configuration(None)
        assert configuration.entry_counts() == {name: 0 for name in configuration.entry_counts()}

    def test_non_numeric_keys_are_skipped(self):
        configuration = normalize_mapping_configuration({"tags": {"abc": {"action": "create"}, "3": {}}})
        assert list(configuration.tags) == [3]

    def test_unknown_action_falls_back_to_entry_default(self):
        configuration = normalize_mapping_configuration(
            {"statuses": {"1": {"action": "bogus"}}, "workflows": {"1": {"action": "bogus"}}}
        )
        assert configuration.statuses[1].action == "create"
        assert configuration.workflows[1].action == "map"

    def test_create_entry_drops_mapped_to(self):
        configuration = normalize_mapping_configuration({"groups": {"1": {"action": "create", "mappedTo": 9}}})
        assert configuration.groups[1].mapped_to is None

    def test_map_entry_keeps_numeric_target(self):
        configuration = normalize_mapping_configuration({"groups": {"1": {"action": "map", "mappedTo": "9"}}})
        assert configuration.groups[1].mapped_to == 9

    def test_user_create_entry(self):
        configuration = normalize_mapping_configuration(
            {"users": {"1": {"action": "create", "email": "a@x.com", "access": "admin"}}}
        )
        user = configuration.users[1]
        assert user.email == "a@x.com"
        assert user.access == "ADMIN"
        # A password is generated when none is given
        assert user.password

    def test_user_map_target_is_a_string(self):
        configuration = normalize_mapping_configuration({"users": {"1": {"action": "map", "mappedTo": 5}}})
        assert configuration.users[1].mapped_to is None

    def test_template_field_creates_unless_explicitly_mapped(self):
        configuration = normalize_mapping_configuration(
            {"templateFields": {"1": {"action": "bogus", "displayName": "Priority", "targetType": "results"}}}
        )
        field = configuration.template_fields[1]
        assert field.action == "create"
        assert field.target_type == "result"

    def test_configuration_variants(self):
        configuration = normalize_mapping_configuration(
            {"configurations": {"4": {"action": "create", "name": "Chrome, Linux", "variants": {"0": {}}}}}
        )
        variant = configuration.configurations[4].variants[0]
        assert variant.action == "create-category-variant"
        assert variant.variant_name == "0"


ENTRY_FIELDS = (
    "mappedTo",
    "name",
    "email",
    "password",
    "access",
    "roleId",
    "isActive",
    "isApi",
    "workflowType",
    "scope",
    "iconId",
    "colorId",
    "systemName",
    "colorHex",
    "aliases",
    "isSuccess",
    "isFailure",
    "isCompleted",
    "isEnabled",
    "scopeIds",
    "note",
    "provider",
    "testmoType",
    "type",
    "isDefault",
    "permissions",
    "variants",
    "targetType",
    "displayName",
    "typeId",
    "typeName",
    "hint",
    "isRequired",
    "isChecked",
    "minValue",
    "maxValue",
    "minIntegerValue",
    "initialHeight",
    "dropdownOptions",
    "templateName",
    "order",
)

WRONG_TYPED_VALUES = [
    ["map"],
    {"x": 1},
    [[1], {"name": None}],
    10**400,
    float("nan"),
    -1.5,
    True,
    "",
    None,
]

TABLE_NAMES = (
    "workflows",
    "statuses",
    "groups",
    "tags",
    "roles",
    "milestoneTypes",
    "configurations",
    "templateFields",
    "templates",
    "issueTargets",
    "users",
)


@pytest.mark.unit
class TestMalformedInput:
    @pytest.mark.parametrize("table", TABLE_NAMES)
    @pytest.mark.parametrize("value", WRONG_TYPED_VALUES, ids=repr)
    def test_wrong_typed_fields_never_raise(self, table, value):
        for action in ("map", "create", value):
            record = {field: value for field in ENTRY_FIELDS}
            record["action"] = action

            configuration = normalize_mapping_configuration({table: {"1": record, "2": value}})

            entry = configuration.table(table)[1]
            assert isinstance(entry.action, str)
            restored = normalize_mapping_configuration(serialize_mapping_configuration(configuration))
            assert restored.table(table)[1].action == entry.action

    @pytest.mark.parametrize("value", WRONG_TYPED_VALUES, ids=repr)
    def test_wrong_typed_variants_never_raise(self, value):
        variant = {"action": value, "token": value, "variantName": value, "categoryId": value}
        raw = {"configurations": {"4": {"action": "create", "variants": {"0": variant, "1": value}}}}

        configuration = normalize_mapping_configuration(raw)

        assert configuration.configurations[4].variants[0].action == "create-category-variant"

    @pytest.mark.parametrize("action", [["map"], {"x": 1}, ["map-variant"], 7])
    def test_unhashable_action_uses_entry_default(self, action):
        configuration = normalize_mapping_configuration(
            {
                "users": {"1": {"action": action}},
                "statuses": {"1": {"action": action}},
                "configurations": {"1": {"variants": {"0": {"action": action}}}},
            }
        )
        assert configuration.users[1].action == "map"
        assert configuration.statuses[1].action == "create"
        assert configuration.configurations[1].variants[0].action == "create-category-variant"


@pytest.mark.unit
class TestEntryState:
    def test_pending_states(self):
        assert StatusEntry(action="create").state is EntryState.PENDING_CREATE
        assert StatusEntry(action="map", mapped_to=1).state is EntryState.PENDING_MAP

    def test_resolve_turns_create_into_map(self):
        entry = StatusEntry(action="create", name="Passed")
        entry.resolve(42, system_name="passed")

        assert entry.state is EntryState.RESOLVED
        assert entry.action == "map"
        assert entry.mapped_to == 42
        assert entry.system_name == "passed"

    def test_serialized_resolution_reads_back_as_map(self):
        configuration = normalize_mapping_configuration({"tags": {"7": {"action": "create", "name": "smoke"}}})
        configuration.tags[7].resolve(11)

        restored = normalize_mapping_configuration(serialize_mapping_configuration(configuration))

        assert restored.tags[7].action == "map"
        assert restored.tags[7].mapped_to == 11
        assert build_id_map(restored.tags) == {7: 11}


@pytest.mark.unit
def test_build_id_map_ignores_pending_creates():
    configuration = normalize_mapping_configuration(
        {"tags": {"1": {"action": "map", "mappedTo": 3}, "2": {"action": "create", "name": "x"}}}
    )
    assert build_id_map(configuration.tags) == {1: 3}


@pytest.mark.unit
def test_option_list_has_exactly_one_default():
    options = normalize_option_config_list(
        [{"name": "Low", "isDefault": True}, {"name": "High", "default": True}, {"label": "Mid"}]
    )
    assert [option.name for option in options] == ["Low", "High", "Mid"]
    assert [option.is_default for option in options] == [True, False, False]


@pytest.mark.unit
def test_option_list_from_delimited_string_defaults_first():
    options = normalize_option_config_list("a, b\nc")
    assert [option.name for option in options] == ["a", "b", "c"]
    assert options[0].is_default is True


@pytest.mark.unit
def test_normalize_string_array():
    assert normalize_string_array([" a ", {"name": "b"}, 3]) == ["a", "b"]
    assert normalize_string_array("") is None


@pytest.mark.unit
def test_normalize_role_permissions_from_list():
    permissions = normalize_role_permissions([{"area": "Runs", "canAddEdit": 1}, {"nope": True}])
    assert list(permissions) == ["Runs"]
    assert permissions["Runs"].can_add_edit is True
    assert permissions["Runs"].can_delete is False
