"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Importers for the configuration-driven reference data.

Workflows, statuses, groups, tags, roles, milestone types and configurations
are not read from staged rows. Each entry of the mapping configuration either
maps onto an existing destination row (which must exist) or creates one,
reusing a row with the same name when there is one. Every entry ends up
resolved, so the persisted configuration reflects what the import did.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    Color,
    Configuration,
    ConfigurationCategory,
    ConfigurationVariant,
    Group,
    Icon,
    MilestoneType,
    Role,
    RolePermission,
    Status,
    StatusScope,
    Tag,
    Workflow,
)
from tmimport.destination import DEFAULT_COLOR_HEX, find_first
from tmimport.exceptions import ConfigurationError
from tmimport.importers.base import EntitySummary, ImportRuntime, require_mapped_target, require_name
from tmimport.mapping_config import ConfigurationEntry, build_id_map
from tmimport.normalization import SYSTEM_NAME_PATTERN, generate_system_name, normalize_color_hex

logger = logging.getLogger("tmimport.importers.configuration")

WORKFLOW_TYPES = ("NOT_STARTED", "IN_PROGRESS", "DONE")
WORKFLOW_SCOPES = ("CASES", "RUNS", "SESSIONS")


def import_workflows(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("workflows")

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.workflows.items():
            if entry.is_map:
                existing = require_mapped_target(
                    session, Workflow, entry, source_id, "Workflow", "workflow", "workflows"
                )
                runtime.resolve_entry(session, "workflows", source_id, entry, existing.id, "workflow")
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Workflow", source_id, "workflows")
            if entry.icon_id is None or entry.color_id is None:
                raise ConfigurationError(
                    f'Workflow "{name}" must include both an icon and a color before creation.',
                    entity_type="workflows",
                    source_id=source_id,
                )

            existing = find_first(session, Workflow, name=name, is_deleted=False)
            if existing is not None:
                runtime.resolve_entry(session, "workflows", source_id, entry, existing.id, "workflow")
                runtime.mapped(summary)
                continue

            workflow = Workflow(
                name=name,
                workflow_type=entry.workflow_type if entry.workflow_type in WORKFLOW_TYPES else "NOT_STARTED",
                scope=entry.scope if entry.scope in WORKFLOW_SCOPES else "CASES",
                icon_id=entry.icon_id,
                color_id=entry.color_id,
                is_enabled=True,
            )
            session.add(workflow)
            session.flush()
            runtime.resolve_entry(session, "workflows", source_id, entry, workflow.id, "workflow")
            runtime.created(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.workflows = build_id_map(runtime.configuration.workflows)
    return summary


class _ColorResolver:
    """Color for a created status: by id, else by hex, else the default color."""

    def __init__(self, session: Session):
        self.session = session
        self._known_ids: set[int] = set()
        self._by_hex: dict[str, int] = {}

    def resolve(self, color_id: int | None, color_hex: str | None) -> int:
        if color_id is not None:
            if color_id not in self._known_ids:
                if self.session.get(Color, color_id) is None:
                    raise ConfigurationError(f"Color {color_id} configured for a status does not exist.")
                self._known_ids.add(color_id)
            return color_id

        hex_code = normalize_color_hex(color_hex) or DEFAULT_COLOR_HEX
        if hex_code in self._by_hex:
            return self._by_hex[hex_code]
        color = find_first(self.session, Color, hex_code=hex_code)
        if color is not None:
            self._by_hex[hex_code] = color.id
            return color.id
        if hex_code != DEFAULT_COLOR_HEX:
            return self.resolve(None, DEFAULT_COLOR_HEX)
        raise ConfigurationError("Unable to resolve a color to apply to an imported status.")


def import_statuses(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("statuses")

    def work(session: Session) -> None:
        scopes = session.scalars(select(StatusScope).order_by(StatusScope.id)).all()
        if not scopes:
            raise ConfigurationError(
                "No status scopes are configured in the workspace. Unable to import statuses.",
                entity_type="statuses",
            )
        scopes_by_id = {scope.id: scope for scope in scopes}
        colors = _ColorResolver(session)

        for source_id, entry in runtime.configuration.statuses.items():
            if entry.is_map:
                existing = require_mapped_target(
                    session, Status, entry, source_id, "Status", "status", "statuses"
                )
                runtime.resolve_entry(session, "statuses", source_id, entry, existing.id, "status")
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Status", source_id, "statuses", noun="a display name")
            system_name = (entry.system_name or "").strip()
            if not SYSTEM_NAME_PATTERN.match(system_name):
                system_name = generate_system_name(name)
            if not SYSTEM_NAME_PATTERN.match(system_name):
                raise ConfigurationError(
                    f'Status "{name}" requires a valid system name '
                    "(letters, numbers, underscore, starting with a letter).",
                    entity_type="statuses",
                    source_id=source_id,
                )

            existing = find_first(session, Status, name=name, is_deleted=False) or find_first(
                session, Status, system_name=system_name, is_deleted=False
            )
            if existing is not None:
                runtime.resolve_entry(
                    session,
                    "statuses",
                    source_id,
                    entry,
                    existing.id,
                    "status",
                    name=existing.name,
                    system_name=existing.system_name,
                )
                runtime.mapped(summary)
                continue

            color_id = colors.resolve(entry.color_id, entry.color_hex)
            scope_ids = [scope_id for scope_id in dict.fromkeys(entry.scope_ids or []) if scope_id in scopes_by_id]
            if not scope_ids:
                scope_ids = list(scopes_by_id)
            aliases = (entry.aliases or "").strip() or None

            status = Status(
                name=name,
                system_name=system_name,
                aliases=aliases,
                color_id=color_id,
                is_enabled=entry.is_enabled,
                is_success=entry.is_success,
                is_failure=entry.is_failure,
                is_completed=entry.is_completed,
            )
            status.scopes = [scopes_by_id[scope_id] for scope_id in scope_ids]
            session.add(status)
            session.flush()
            runtime.resolve_entry(
                session,
                "statuses",
                source_id,
                entry,
                status.id,
                "status",
                system_name=system_name,
                color_id=color_id,
                scope_ids=scope_ids,
                aliases=aliases,
            )
            runtime.created(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.statuses = build_id_map(runtime.configuration.statuses)
    return summary


def import_groups(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("groups")

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.groups.items():
            if entry.is_map:
                existing = require_mapped_target(session, Group, entry, source_id, "Group", "group", "groups")
                runtime.resolve_entry(session, "groups", source_id, entry, existing.id, "group")
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Group", source_id, "groups")
            group, created = runtime.db.get_or_create(
                session, Group, {"note": entry.note}, name=name, is_deleted=False
            )
            runtime.resolve_entry(session, "groups", source_id, entry, group.id, "group", name=group.name)
            if created:
                runtime.created(summary)
            else:
                runtime.mapped(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.groups = build_id_map(runtime.configuration.groups)
    return summary


def import_tags(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("tags")

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.tags.items():
            if entry.is_map:
                existing = require_mapped_target(session, Tag, entry, source_id, "Tag", "tag", "tags")
                runtime.resolve_entry(session, "tags", source_id, entry, existing.id, "tag")
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Tag", source_id, "tags")
            tag, created = runtime.db.get_or_create(session, Tag, {}, name=name, is_deleted=False)
            runtime.resolve_entry(session, "tags", source_id, entry, tag.id, "tag", name=tag.name)
            if created:
                runtime.created(summary)
            else:
                runtime.mapped(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.tags = build_id_map(runtime.configuration.tags)
    return summary


def import_roles(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("roles")

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.roles.items():
            if entry.is_map:
                existing = require_mapped_target(session, Role, entry, source_id, "Role", "role", "roles")
                runtime.resolve_entry(session, "roles", source_id, entry, existing.id, "role")
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Role", source_id, "roles")
            existing = find_first(session, Role, name=name)
            if existing is not None:
                runtime.resolve_entry(session, "roles", source_id, entry, existing.id, "role", name=existing.name)
                runtime.mapped(summary)
                continue

            if entry.is_default:
                session.execute(update(Role).where(Role.is_default.is_(True)).values(is_default=False))

            role = Role(name=name, is_default=bool(entry.is_default))
            role.permissions = [
                RolePermission(
                    area=area,
                    can_add_edit=permission.can_add_edit,
                    can_delete=permission.can_delete,
                    can_close=permission.can_close,
                )
                for area, permission in (entry.permissions or {}).items()
            ]
            session.add(role)
            session.flush()
            runtime.resolve_entry(session, "roles", source_id, entry, role.id, "role", name=role.name)
            runtime.created(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.roles = build_id_map(runtime.configuration.roles)
    return summary


def import_milestone_types(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("milestoneTypes")

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.milestone_types.items():
            if entry.is_map:
                existing = require_mapped_target(
                    session, MilestoneType, entry, source_id, "Milestone type", "type", "milestoneTypes"
                )
                runtime.resolve_entry(session, "milestoneTypes", source_id, entry, existing.id, "milestone_type")
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Milestone type", source_id, "milestoneTypes")
            existing = find_first(session, MilestoneType, name=name)
            if existing is not None:
                runtime.resolve_entry(
                    session, "milestoneTypes", source_id, entry, existing.id, "milestone_type", name=existing.name
                )
                runtime.mapped(summary)
                continue

            if entry.is_default:
                session.execute(
                    update(MilestoneType).where(MilestoneType.is_default.is_(True)).values(is_default=False)
                )
            if entry.icon_id is not None and session.get(Icon, entry.icon_id) is None:
                raise ConfigurationError(
                    f'Icon {entry.icon_id} configured for milestone type "{name}" does not exist.',
                    entity_type="milestoneTypes",
                    source_id=source_id,
                )

            milestone_type = MilestoneType(name=name, icon_id=entry.icon_id, is_default=bool(entry.is_default))
            session.add(milestone_type)
            session.flush()
            runtime.resolve_entry(
                session, "milestoneTypes", source_id, entry, milestone_type.id, "milestone_type", name=name
            )
            runtime.created(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.milestone_types = build_id_map(runtime.configuration.milestone_types)
    return summary


def _find_or_create_variant(session: Session, category_id: int, name: str) -> tuple[ConfigurationVariant, bool]:
    variant = find_first(session, ConfigurationVariant, category_id=category_id, name=name)
    if variant is not None:
        return variant, False
    variant = ConfigurationVariant(category_id=category_id, name=name)
    session.add(variant)
    session.flush()
    return variant, True


def _resolve_variants(session: Session, entry: ConfigurationEntry) -> tuple[list[ConfigurationVariant], int]:
    """
    Destination variants of one configuration, per the variant actions.

    Returns:
        Tuple of (variants in entry order, number of variants created)
    """
    variants: list[ConfigurationVariant] = []
    created_count = 0

    for variant_entry in entry.variants.values():
        token = variant_entry.token
        if variant_entry.action == "map-variant":
            if variant_entry.mapped_variant_id is None:
                raise ConfigurationError(
                    f"Configuration variant {token} is configured to map but no variant was selected."
                )
            variant = session.get(ConfigurationVariant, variant_entry.mapped_variant_id)
            if variant is None:
                raise ConfigurationError(
                    f"Configuration variant {variant_entry.mapped_variant_id} selected for mapping was not found."
                )
        elif variant_entry.action == "create-variant-existing-category":
            if variant_entry.category_id is None:
                raise ConfigurationError(
                    f"Configuration variant {token} requires a category to be selected before creation."
                )
            category = session.get(ConfigurationCategory, variant_entry.category_id)
            if category is None:
                raise ConfigurationError(
                    f"Configuration category {variant_entry.category_id} associated with variant {token} was not found."
                )
            name = (variant_entry.variant_name or "").strip()
            if not name:
                raise ConfigurationError(f"Configuration variant {token} requires a name before it can be created.")
            variant, created = _find_or_create_variant(session, category.id, name)
            created_count += int(created)
        elif variant_entry.action == "create-category-variant":
            category_name = (variant_entry.category_name or "").strip()
            if not category_name:
                raise ConfigurationError(
                    f"Configuration variant {token} requires a category name before it can be created."
                )
            name = (variant_entry.variant_name or "").strip()
            if not name:
                raise ConfigurationError(
                    f"Configuration variant {token} requires a variant name before it can be created."
                )
            category = find_first(session, ConfigurationCategory, name=category_name)
            if category is None:
                category = ConfigurationCategory(name=category_name)
                session.add(category)
                session.flush()
            variant, created = _find_or_create_variant(session, category.id, name)
            created_count += int(created)
        else:
            raise ConfigurationError(
                f'Unsupported configuration variant action "{variant_entry.action}" for token {token}.'
            )

        variant_entry.resolve(variant.id)
        if variant not in variants:
            variants.append(variant)

    return variants, created_count


def import_configurations(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("configurations", details={"variantsCreated": 0})

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.configurations.items():
            if entry.is_map:
                configuration = require_mapped_target(
                    session, Configuration, entry, source_id, "Configuration", "configuration", "configurations"
                )
                created = False
            else:
                name = require_name(entry.name, "Configuration", source_id, "configurations")
                configuration, created = runtime.db.get_or_create(session, Configuration, {}, name=name)

            variants, variants_created = _resolve_variants(session, entry)
            for variant in variants:
                if variant not in configuration.variants:
                    configuration.variants.append(variant)
            session.flush()
            summary.count("variantsCreated", variants_created)

            runtime.resolve_entry(
                session,
                "configurations",
                source_id,
                entry,
                configuration.id,
                "configuration",
                name=entry.name if entry.is_map else configuration.name,
            )
            if created:
                runtime.created(summary)
            else:
                runtime.mapped(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.configurations = build_id_map(runtime.configuration.configurations)
    return summary
