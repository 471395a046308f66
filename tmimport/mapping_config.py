"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Mapping configuration: the operator-approved decision table of the import.

For every source entity of the small reference types (workflows, statuses,
users, ...) the configuration says whether it maps onto an existing
destination entity or is created. Operators edit it by hand, so the input is
loosely typed; ``normalize_mapping_configuration`` coerces whatever it is
given into typed entries and never raises. Unknown actions fall back to the
per-type default and unusable values to documented defaults.

During import each entry moves from pending to resolved exactly once, through
``resolve``. A resolved entry is a map entry, so the persisted configuration
records what actually happened and a re-run maps instead of creating again.
"""

import copy
import enum
import logging
import secrets
from collections.abc import Mapping
from typing import Any, ClassVar

from pydantic import BaseModel, Field, PrivateAttr

from tmimport.normalization import to_bool, to_int, to_number, to_str

logger = logging.getLogger("tmimport.mapping_config")

ACTIONS = frozenset({"map", "create"})
VARIANT_ACTIONS = frozenset(
    {"map-variant", "create-variant-existing-category", "create-category-variant"}
)
ACCESS_VALUES = frozenset({"ADMIN", "USER", "PROJECTADMIN", "NONE"})


class EntryState(str, enum.Enum):
    PENDING_MAP = "PENDING_MAP"
    PENDING_CREATE = "PENDING_CREATE"
    RESOLVED = "RESOLVED"


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    """Value of the first key present with a non-None value."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _string(record: Mapping[str, Any], *keys: str) -> str | None:
    """Value of the first key holding a string."""
    for key in keys:
        value = record.get(key)
        if isinstance(value, str):
            return value
    return None


def to_access_value(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    upper = value.strip().upper()
    return upper if upper in ACCESS_VALUES else None


def normalize_string_array(value: Any) -> list[str] | None:
    """
    Coerce a list of names from an array or a delimited string.

    Array items may be strings or objects with a ``name``; a string is split on
    newlines and commas.
    """
    if isinstance(value, list):
        names = []
        for item in value:
            if isinstance(item, str):
                name = item.strip()
            elif isinstance(item, Mapping):
                name = to_str(item.get("name")) or ""
            else:
                name = ""
            if name:
                names.append(name)
        return names or None
    if isinstance(value, str):
        names = [part.strip() for part in value.replace("\r", "\n").replace(",", "\n").split("\n")]
        names = [name for name in names if name]
        return names or None
    return None


class MappingEntry(BaseModel):
    """
    Common shape of one decision.

    ``mapped_to`` is only meaningful for map entries; it is dropped when the
    action is create.
    """

    DEFAULT_ACTION: ClassVar[str] = "create"
    ALLOWED_ACTIONS: ClassVar[frozenset[str]] = ACTIONS

    action: str = "create"
    mapped_to: int | None = Field(None, alias="mappedTo")

    model_config = {"populate_by_name": True}

    _resolved: bool = PrivateAttr(default=False)

    @classmethod
    def from_raw(cls, raw: Any) -> "MappingEntry":
        """Build an entry from loosely typed input."""
        record: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        action_value = record.get("action")
        if isinstance(action_value, str) and action_value in cls.ALLOWED_ACTIONS:
            action = action_value
        else:
            action = cls.DEFAULT_ACTION
        fields = cls._coerce(record, action)
        fields["mapped_to"] = cls._coerce_target(record.get("mappedTo")) if action == "map" else None
        return cls(action=action, **fields)

    @classmethod
    def _coerce(cls, record: Mapping[str, Any], action: str) -> dict[str, Any]:
        return {}

    @staticmethod
    def _coerce_target(value: Any) -> Any:
        return to_int(value)

    @property
    def state(self) -> EntryState:
        if self._resolved:
            return EntryState.RESOLVED
        return EntryState.PENDING_MAP if self.action == "map" else EntryState.PENDING_CREATE

    @property
    def is_resolved(self) -> bool:
        return self._resolved

    @property
    def is_map(self) -> bool:
        return self.action == "map"

    def resolve(self, target_id: Any, **fields: Any) -> None:
        """
        Record the destination entity this entry now stands for.

        Turns the entry into a map entry against ``target_id``. Extra keyword
        arguments update entry fields (e.g. a created status' system name).
        """
        for name, value in fields.items():
            setattr(self, name, value)
        self.action = "map"
        self.mapped_to = target_id
        self._resolved = True

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class WorkflowEntry(MappingEntry):
    DEFAULT_ACTION = "map"

    action: str = "map"
    workflow_type: str | None = Field(None, alias="workflowType")
    name: str | None = None
    scope: str | None = None
    icon_id: int | None = Field(None, alias="iconId")
    color_id: int | None = Field(None, alias="colorId")

    @classmethod
    def _coerce(cls, record, action):
        fields: dict[str, Any] = {
            "workflow_type": _string(record, "workflowType", "suggestedWorkflowType"),
        }
        if action == "create":
            fields.update(
                name=_string(record, "name"),
                scope=_string(record, "scope"),
                icon_id=to_int(record.get("iconId")),
                color_id=to_int(record.get("colorId")),
            )
        return fields


class StatusEntry(MappingEntry):
    name: str | None = None
    system_name: str | None = Field(None, alias="systemName")
    color_hex: str | None = Field(None, alias="colorHex")
    color_id: int | None = Field(None, alias="colorId")
    aliases: str | None = None
    is_success: bool = Field(False, alias="isSuccess")
    is_failure: bool = Field(False, alias="isFailure")
    is_completed: bool = Field(False, alias="isCompleted")
    is_enabled: bool = Field(True, alias="isEnabled")
    scope_ids: list[int] | None = Field(None, alias="scopeIds")

    @classmethod
    def _coerce(cls, record, action):
        fields: dict[str, Any] = {
            "name": _string(record, "name"),
            "system_name": _string(record, "systemName", "system_name"),
            "color_hex": _string(record, "colorHex"),
            "aliases": _string(record, "aliases"),
            "is_success": to_bool(record.get("isSuccess"), False),
            "is_failure": to_bool(record.get("isFailure"), False),
            "is_completed": to_bool(record.get("isCompleted"), False),
            "is_enabled": to_bool(record.get("isEnabled"), True),
        }
        if action == "create":
            raw_scopes = record.get("scopeIds")
            scope_ids = []
            if isinstance(raw_scopes, list):
                scope_ids = [value for value in (to_int(item) for item in raw_scopes) if value is not None]
            fields.update(color_id=to_int(record.get("colorId")), scope_ids=scope_ids)
        return fields


class GroupEntry(MappingEntry):
    name: str | None = None
    note: str | None = None

    @classmethod
    def _coerce(cls, record, action):
        return {"name": _string(record, "name"), "note": _string(record, "note")}


class TagEntry(MappingEntry):
    name: str | None = None

    @classmethod
    def _coerce(cls, record, action):
        return {"name": _string(record, "name")}


class IssueTargetEntry(MappingEntry):
    name: str | None = None
    provider: str | None = None
    testmo_type: int | None = Field(None, alias="testmoType")

    @classmethod
    def _coerce(cls, record, action):
        fields: dict[str, Any] = {
            "name": _string(record, "name"),
            "provider": _string(record, "provider"),
        }
        if action == "create":
            fields["testmo_type"] = to_int(_first(record, "testmoType", "type"))
        return fields


class UserEntry(MappingEntry):
    """Users are keyed by string ids in the destination."""

    DEFAULT_ACTION = "map"

    action: str = "map"
    mapped_to: str | None = Field(None, alias="mappedTo")
    name: str | None = None
    email: str | None = None
    password: str | None = None
    access: str | None = None
    role_id: int | None = Field(None, alias="roleId")
    is_active: bool = Field(True, alias="isActive")
    is_api: bool = Field(False, alias="isApi")

    @staticmethod
    def _coerce_target(value):
        return value if isinstance(value, str) and value else None

    @classmethod
    def _coerce(cls, record, action):
        fields: dict[str, Any] = {
            "role_id": to_int(record.get("roleId")),
            "is_active": to_bool(record.get("isActive"), True),
            "is_api": to_bool(record.get("isApi"), False),
        }
        if action == "create":
            fields.update(
                name=to_str(record.get("name")),
                email=to_str(record.get("email")),
                password=to_str(record.get("password")) or secrets.token_urlsafe(18),
                access=to_access_value(record.get("access")),
            )
        return fields


class FieldOptionConfig(BaseModel):
    name: str
    icon_id: int | None = Field(None, alias="iconId")
    icon_color_id: int | None = Field(None, alias="iconColorId")
    is_enabled: bool = Field(True, alias="isEnabled")
    is_default: bool = Field(False, alias="isDefault")
    order: int = 0

    model_config = {"populate_by_name": True}


def normalize_option_config_list(value: Any) -> list[FieldOptionConfig] | None:
    """
    Coerce dropdown options into an ordered list with exactly one default.

    Accepts a list of strings, a list of option objects (with a few spellings
    of each attribute) or a delimited string.
    """
    if isinstance(value, str):
        names = normalize_string_array(value)
        value = names if names else None
    if not isinstance(value, list):
        return None

    options: list[FieldOptionConfig] = []
    for index, entry in enumerate(value):
        if isinstance(entry, str):
            name = entry.strip()
            if name:
                options.append(FieldOptionConfig(name=name, is_default=index == 0, order=index))
            continue
        if not isinstance(entry, Mapping):
            continue

        name = to_str(_first(entry, "name", "label", "value", "displayName", "display_name"))
        if not name:
            continue
        order = to_int(_first(entry, "order", "position", "ordinal", "index", "sort"))
        options.append(
            FieldOptionConfig(
                name=name,
                icon_id=to_int(_first(entry, "iconId", "icon_id", "icon", "iconID")),
                icon_color_id=to_int(
                    _first(entry, "iconColorId", "icon_color_id", "colorId", "color_id", "color")
                ),
                is_enabled=to_bool(_first(entry, "isEnabled", "enabled", "is_enabled"), True),
                is_default=to_bool(_first(entry, "isDefault", "default", "is_default", "defaultOption"), False),
                order=index if order is None else order,
            )
        )

    if not options:
        return None

    options.sort(key=lambda option: option.order)
    default_seen = False
    for option in options:
        if option.is_default and default_seen:
            option.is_default = False
        elif option.is_default:
            default_seen = True
    if not default_seen:
        options[0].is_default = True
    return options


def _target_type(value: Any) -> str:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("result", "results"):
            return "result"
    return "case"


class TemplateFieldEntry(MappingEntry):
    target_type: str = Field("case", alias="targetType")
    display_name: str | None = Field(None, alias="displayName")
    system_name: str | None = Field(None, alias="systemName")
    type_id: int | None = Field(None, alias="typeId")
    type_name: str | None = Field(None, alias="typeName")
    hint: str | None = None
    is_required: bool = Field(False, alias="isRequired")
    is_restricted: bool = Field(False, alias="isRestricted")
    default_value: str | None = Field(None, alias="defaultValue")
    is_checked: bool | None = Field(None, alias="isChecked")
    min_value: float | None = Field(None, alias="minValue")
    max_value: float | None = Field(None, alias="maxValue")
    min_integer_value: int | None = Field(None, alias="minIntegerValue")
    max_integer_value: int | None = Field(None, alias="maxIntegerValue")
    initial_height: int | None = Field(None, alias="initialHeight")
    dropdown_options: list[FieldOptionConfig] | None = Field(None, alias="dropdownOptions")
    template_name: str | None = Field(None, alias="templateName")
    order: int | None = None

    @classmethod
    def from_raw(cls, raw):
        # Anything but an explicit "map" creates the field
        record = dict(raw) if isinstance(raw, Mapping) else {}
        record["action"] = "map" if record.get("action") == "map" else "create"
        return super().from_raw(record)

    @classmethod
    def _coerce(cls, record, action):
        is_checked = record.get("isChecked")
        return {
            "target_type": _target_type(
                _first(
                    record,
                    "targetType",
                    "target_type",
                    "fieldTarget",
                    "field_target",
                    "scope",
                    "assignment",
                    "fieldCategory",
                    "field_category",
                )
            ),
            "display_name": _string(record, "displayName", "display_name", "label"),
            "system_name": _string(record, "systemName", "system_name", "name"),
            "type_id": to_int(_first(record, "typeId", "type_id", "fieldTypeId")),
            "type_name": _string(record, "typeName", "type_name", "fieldType", "field_type"),
            "hint": _string(record, "hint", "description"),
            "is_required": to_bool(_first(record, "isRequired", "is_required"), False),
            "is_restricted": to_bool(_first(record, "isRestricted", "is_restricted"), False),
            "default_value": _string(record, "defaultValue", "default_value"),
            "is_checked": is_checked if isinstance(is_checked, bool) else None,
            "min_value": _float(_first(record, "minValue", "min_value")),
            "max_value": _float(_first(record, "maxValue", "max_value")),
            "min_integer_value": to_int(_first(record, "minIntegerValue", "min_integer_value")),
            "max_integer_value": to_int(_first(record, "maxIntegerValue", "max_integer_value")),
            "initial_height": to_int(_first(record, "initialHeight", "initial_height")),
            "dropdown_options": normalize_option_config_list(
                _first(record, "dropdownOptions", "dropdown_options", "options", "choices")
            ),
            "template_name": _string(record, "templateName", "template_name"),
            "order": to_int(_first(record, "order", "position", "ordinal")),
        }


def _float(value: Any) -> float | None:
    parsed = to_number(value)
    if parsed is None:
        return None
    try:
        return float(parsed)
    except OverflowError:
        return None


class TemplateEntry(MappingEntry):
    DEFAULT_ACTION = "map"

    action: str = "map"
    name: str | None = None

    @classmethod
    def _coerce(cls, record, action):
        return {"name": _string(record, "name") if action == "create" else None}


class RolePermissionConfig(BaseModel):
    can_add_edit: bool = Field(False, alias="canAddEdit")
    can_delete: bool = Field(False, alias="canDelete")
    can_close: bool = Field(False, alias="canClose")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_raw(cls, record: Mapping[str, Any]) -> "RolePermissionConfig":
        return cls(
            can_add_edit=to_bool(record.get("canAddEdit"), False),
            can_delete=to_bool(record.get("canDelete"), False),
            can_close=to_bool(record.get("canClose"), False),
        )


def normalize_role_permissions(value: Any) -> dict[str, RolePermissionConfig]:
    """Permissions keyed by area, from a list of ``{area, ...}`` or an object."""
    permissions: dict[str, RolePermissionConfig] = {}
    if isinstance(value, list):
        for entry in value:
            if isinstance(entry, Mapping) and isinstance(entry.get("area"), str):
                permissions[entry["area"]] = RolePermissionConfig.from_raw(entry)
    elif isinstance(value, Mapping):
        for area, entry in value.items():
            if isinstance(entry, Mapping):
                permissions[str(area)] = RolePermissionConfig.from_raw(entry)
    return permissions


class RoleEntry(MappingEntry):
    name: str | None = None
    is_default: bool | None = Field(None, alias="isDefault")
    permissions: dict[str, RolePermissionConfig] | None = None

    @classmethod
    def _coerce(cls, record, action):
        fields: dict[str, Any] = {"name": _string(record, "name")}
        if action == "create":
            fields.update(
                is_default=to_bool(record.get("isDefault"), False),
                permissions=normalize_role_permissions(record.get("permissions")),
            )
        return fields


class MilestoneTypeEntry(MappingEntry):
    name: str | None = None
    icon_id: int | None = Field(None, alias="iconId")
    is_default: bool | None = Field(None, alias="isDefault")

    @classmethod
    def _coerce(cls, record, action):
        fields: dict[str, Any] = {"name": _string(record, "name")}
        if action == "create":
            fields.update(
                icon_id=to_int(record.get("iconId")),
                is_default=to_bool(record.get("isDefault"), False),
            )
        return fields


class ConfigVariantEntry(BaseModel):
    """One variant token of a source configuration, e.g. "Chrome"."""

    DEFAULT_ACTION: ClassVar[str] = "create-category-variant"

    token: str
    action: str = "create-category-variant"
    mapped_variant_id: int | None = Field(None, alias="mappedVariantId")
    category_id: int | None = Field(None, alias="categoryId")
    category_name: str | None = Field(None, alias="categoryName")
    variant_name: str | None = Field(None, alias="variantName")

    model_config = {"populate_by_name": True}

    _resolved: bool = PrivateAttr(default=False)

    @classmethod
    def from_raw(cls, key: str, raw: Any) -> "ConfigVariantEntry":
        record: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
        action_value = record.get("action")
        if isinstance(action_value, str) and action_value in VARIANT_ACTIONS:
            action = action_value
        else:
            action = cls.DEFAULT_ACTION
        token = _string(record, "token") or key
        return cls(
            token=token,
            action=action,
            mapped_variant_id=to_int(record.get("mappedVariantId")) if action == "map-variant" else None,
            category_id=(
                to_int(record.get("categoryId"))
                if action == "create-variant-existing-category"
                else None
            ),
            category_name=_string(record, "categoryName") if action == "create-category-variant" else None,
            variant_name=None if action == "map-variant" else (_string(record, "variantName") or token),
        )

    @property
    def is_resolved(self) -> bool:
        return self._resolved

    def resolve(self, variant_id: int) -> None:
        self.action = "map-variant"
        self.mapped_variant_id = variant_id
        self.category_id = None
        self.category_name = None
        self.variant_name = None
        self._resolved = True


class ConfigurationEntry(MappingEntry):
    name: str | None = None
    variants: dict[int, ConfigVariantEntry] = Field(default_factory=dict)

    @classmethod
    def _coerce(cls, record, action):
        variants: dict[int, ConfigVariantEntry] = {}
        raw_variants = record.get("variants")
        if isinstance(raw_variants, Mapping):
            for key, entry in raw_variants.items():
                index = to_int(key)
                if index is None:
                    continue
                variants[index] = ConfigVariantEntry.from_raw(str(key), entry)
        return {
            "name": _string(record, "name") if action == "create" else None,
            "variants": variants,
        }


# Table name in the serialized form -> (attribute, entry class)
ENTRY_TABLES: dict[str, tuple[str, type[MappingEntry]]] = {
    "workflows": ("workflows", WorkflowEntry),
    "statuses": ("statuses", StatusEntry),
    "groups": ("groups", GroupEntry),
    "tags": ("tags", TagEntry),
    "roles": ("roles", RoleEntry),
    "milestoneTypes": ("milestone_types", MilestoneTypeEntry),
    "configurations": ("configurations", ConfigurationEntry),
    "templateFields": ("template_fields", TemplateFieldEntry),
    "templates": ("templates", TemplateEntry),
    "issueTargets": ("issue_targets", IssueTargetEntry),
    "users": ("users", UserEntry),
}


class MappingConfiguration(BaseModel):
    workflows: dict[int, WorkflowEntry] = Field(default_factory=dict)
    statuses: dict[int, StatusEntry] = Field(default_factory=dict)
    groups: dict[int, GroupEntry] = Field(default_factory=dict)
    tags: dict[int, TagEntry] = Field(default_factory=dict)
    roles: dict[int, RoleEntry] = Field(default_factory=dict)
    milestone_types: dict[int, MilestoneTypeEntry] = Field(default_factory=dict, alias="milestoneTypes")
    configurations: dict[int, ConfigurationEntry] = Field(default_factory=dict)
    template_fields: dict[int, TemplateFieldEntry] = Field(default_factory=dict, alias="templateFields")
    templates: dict[int, TemplateEntry] = Field(default_factory=dict)
    issue_targets: dict[int, IssueTargetEntry] = Field(default_factory=dict, alias="issueTargets")
    users: dict[int, UserEntry] = Field(default_factory=dict)
    custom_fields: dict[str, Any] = Field(default_factory=dict, alias="customFields")

    model_config = {"populate_by_name": True}

    def table(self, name: str) -> dict[int, MappingEntry]:
        """Entry table by its serialized or attribute name."""
        attribute = ENTRY_TABLES[name][0] if name in ENTRY_TABLES else name
        return getattr(self, attribute)

    def entry_counts(self) -> dict[str, int]:
        return {name: len(getattr(self, attribute)) for name, (attribute, _) in ENTRY_TABLES.items()}


def create_empty_mapping_configuration() -> MappingConfiguration:
    return MappingConfiguration()


def normalize_mapping_configuration(raw: Any) -> MappingConfiguration:
    """
    Build a typed configuration from operator input.

    Never raises: non-object input gives an empty configuration, entries under
    non-numeric keys are skipped and each entry is coerced by its type.

    Args:
        raw: Parsed JSON object (or an existing MappingConfiguration)

    Returns:
        Normalized MappingConfiguration
    """
    if isinstance(raw, MappingConfiguration):
        raw = serialize_mapping_configuration(raw)

    configuration = create_empty_mapping_configuration()
    if not isinstance(raw, Mapping):
        return configuration

    skipped = 0
    for table_name, (attribute, entry_cls) in ENTRY_TABLES.items():
        entries = raw.get(table_name)
        if entries is None:
            entries = raw.get(attribute)
        if not isinstance(entries, Mapping):
            continue
        table = getattr(configuration, attribute)
        for key, entry in entries.items():
            source_id = to_int(key)
            if source_id is None:
                skipped += 1
                continue
            table[source_id] = entry_cls.from_raw(entry)

    custom_fields = raw.get("customFields")
    if isinstance(custom_fields, Mapping):
        configuration.custom_fields = copy.deepcopy(dict(custom_fields))

    if skipped:
        logger.warning(f"Ignored {skipped} mapping entries with non-numeric source ids")
    return configuration


def serialize_mapping_configuration(configuration: MappingConfiguration) -> dict[str, Any]:
    """JSON-ready camelCase form; ``normalize_mapping_configuration`` reads it back."""
    serialized: dict[str, Any] = {}
    for table_name, (attribute, _) in ENTRY_TABLES.items():
        table = getattr(configuration, attribute)
        serialized[table_name] = {str(source_id): entry.to_json() for source_id, entry in table.items()}
    serialized["customFields"] = copy.deepcopy(configuration.custom_fields)
    return serialized


def build_id_map(table: Mapping[int, MappingEntry]) -> dict[int, Any]:
    """Source id to destination id for every map (or resolved) entry with a target."""
    return {
        source_id: entry.mapped_to
        for source_id, entry in table.items()
        if entry.is_map and entry.mapped_to is not None
    }
