"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Templates and template fields.

Templates come from the ``templates`` configuration table plus any template
named by a template field. Template fields are case or result fields; they
are reused by system name or created with their dropdown options, then
assigned to templates from both the configuration and the ``template_fields``
dataset.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    CaseFieldType,
    FieldOption,
    Template,
    TemplateField,
    TemplateFieldAssignment,
)
from tmimport.destination import find_first, get_default_color, get_default_icon
from tmimport.exceptions import ConfigurationError
from tmimport.importers.base import EntitySummary, ImportRuntime, require_mapped_target, require_name
from tmimport.mapping_config import TemplateFieldEntry, build_id_map
from tmimport.normalization import SYSTEM_NAME_PATTERN, generate_system_name, to_int, to_str

logger = logging.getLogger("tmimport.importers.templates")


class TemplateResolver:
    """Find-or-create of templates by name, memoized for one import run."""

    def __init__(self, runtime: ImportRuntime, session: Session):
        self.names = runtime.id_maps.template_names
        self.session = session

    def resolve(self, name: str | None) -> tuple[int | None, bool]:
        """
        Returns:
            Tuple of (template id, created); (None, False) for a blank name
        """
        name = (name or "").strip()
        if not name:
            return None, False
        if name in self.names:
            return self.names[name], False
        template = find_first(self.session, Template, name=name)
        created = template is None
        if created:
            template = Template(name=name, is_enabled=True, is_default=False)
            self.session.add(template)
            self.session.flush()
        self.names[name] = template.id
        return template.id, created


def import_templates(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("templates")
    for row in runtime.staged_rows("templates"):
        source_id = to_int(row.data.get("id"))
        name = to_str(row.data.get("name"))
        if source_id is not None and name:
            runtime.id_maps.template_source_names[source_id] = name

    def work(session: Session) -> None:
        resolver = TemplateResolver(runtime, session)
        for source_id, entry in runtime.configuration.templates.items():
            if entry.is_map:
                existing = require_mapped_target(
                    session, Template, entry, source_id, "Template", "template", "templates"
                )
                resolver.names[existing.name] = existing.id
                runtime.resolve_entry(
                    session, "templates", source_id, entry, existing.id, "template", name=entry.name or existing.name
                )
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Template", source_id, "templates")
            template_id, created = resolver.resolve(name)
            runtime.resolve_entry(session, "templates", source_id, entry, template_id, "template", name=name)
            if created:
                runtime.created(summary)
            else:
                runtime.mapped(summary)

        processed = set(resolver.names)
        for entry in runtime.configuration.template_fields.values():
            name = (entry.template_name or "").strip()
            if not name or name in processed:
                continue
            processed.add(name)
            _, created = resolver.resolve(name)
            if created:
                runtime.created(summary)
            else:
                runtime.mapped(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.templates = build_id_map(runtime.configuration.templates)
    return summary


def _field_type(session: Session, entry: TemplateFieldEntry, display_name: str) -> CaseFieldType:
    field_type = None
    if entry.type_id is not None:
        field_type = session.get(CaseFieldType, entry.type_id)
    elif entry.type_name:
        field_type = session.scalars(
            select(CaseFieldType).where(func.lower(CaseFieldType.type) == entry.type_name.strip().lower())
        ).first()
    else:
        raise ConfigurationError(
            f'Template field "{display_name}" requires a field type before it can be created.',
            entity_type="templateFields",
        )

    if field_type is None:
        available = ", ".join(
            f"{row.id}:{row.type}" for row in session.scalars(select(CaseFieldType).order_by(CaseFieldType.id))
        )
        requested = entry.type_id if entry.type_id is not None else entry.type_name
        raise ConfigurationError(
            f"Field type {requested} referenced by a template field was not found. Available types: {available}",
            entity_type="templateFields",
        )
    return field_type


class _Assignments:
    def __init__(self, session: Session, summary: EntitySummary):
        self.session = session
        self.summary = summary
        self._applied: set[tuple[int, int]] = set()

    def assign(self, field_id: int, template_id: int, order: int | None) -> None:
        key = (template_id, field_id)
        if key in self._applied:
            return
        self._applied.add(key)
        if find_first(self.session, TemplateFieldAssignment, template_id=template_id, field_id=field_id):
            return
        self.session.add(TemplateFieldAssignment(template_id=template_id, field_id=field_id, order=order or 0))
        self.session.flush()
        self.summary.count("assignmentsCreated")


def _create_options(session: Session, field: TemplateField, entry: TemplateFieldEntry) -> int:
    options = entry.dropdown_options or []
    if not options:
        return 0
    icon = get_default_icon(session)
    color = get_default_color(session)
    if icon is None or color is None:
        raise ConfigurationError(
            "Default icon or color not found. Seed the workspace before importing field options.",
            entity_type="templateFields",
        )
    for index, option in enumerate(options):
        session.add(
            FieldOption(
                field_id=field.id,
                name=option.name,
                icon_id=option.icon_id or icon.id,
                color_id=option.icon_color_id or color.id,
                is_default=option.is_default,
                order=index,
            )
        )
    session.flush()
    return len(options)


def import_template_fields(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("templateFields", details={"optionsCreated": 0, "assignmentsCreated": 0})
    id_maps = runtime.id_maps
    assignment_rows = [row.data for row in runtime.staged_rows("template_fields")]
    # Source system name -> destination field id, per target
    source_names: dict[str, dict[str, int]] = {"case": {}, "result": {}}

    def work(session: Session) -> None:
        resolver = TemplateResolver(runtime, session)
        assignments = _Assignments(session, summary)
        targets: dict[int, str] = {}

        for source_id, entry in runtime.configuration.template_fields.items():
            target_type = entry.target_type
            targets[source_id] = target_type
            source_system_name = entry.system_name

            if entry.is_map:
                label = "Case field" if target_type == "case" else "Result field"
                if entry.mapped_to is None:
                    require_mapped_target(
                        session, TemplateField, entry, source_id, "Template field", "field", "templateFields"
                    )
                field = session.get(TemplateField, entry.mapped_to)
                if field is None or field.target_type != target_type:
                    raise ConfigurationError(
                        f"{label} {entry.mapped_to} selected for mapping was not found.",
                        entity_type="templateFields",
                        source_id=source_id,
                    )
                runtime.resolve_entry(session, "templateFields", source_id, entry, field.id, "template_field")
                runtime.mapped(summary)
            else:
                display_name = (entry.display_name or entry.system_name or f"Field {source_id}").strip()
                system_name = (entry.system_name or "").strip() or generate_system_name(display_name, "field")
                if not SYSTEM_NAME_PATTERN.match(system_name):
                    raise ConfigurationError(
                        f'Template field "{display_name}" requires a valid system name '
                        "(letters, numbers, underscore, starting with a letter).",
                        entity_type="templateFields",
                        source_id=source_id,
                    )
                field_type = _field_type(session, entry, display_name)

                field = find_first(
                    session, TemplateField, target_type=target_type, system_name=system_name, is_deleted=False
                )
                if field is not None:
                    runtime.resolve_entry(
                        session,
                        "templateFields",
                        source_id,
                        entry,
                        field.id,
                        "template_field",
                        system_name=field.system_name,
                        display_name=field.display_name,
                    )
                    runtime.mapped(summary)
                else:
                    field = TemplateField(
                        target_type=target_type,
                        display_name=display_name,
                        system_name=system_name,
                        type_id=field_type.id,
                        hint=(entry.hint or "").strip() or None,
                        is_required=entry.is_required,
                        is_restricted=entry.is_restricted,
                        default_value=entry.default_value,
                        is_checked=entry.is_checked,
                        min_value=entry.min_value if entry.min_value is not None else entry.min_integer_value,
                        max_value=entry.max_value if entry.max_value is not None else entry.max_integer_value,
                        initial_height=entry.initial_height,
                    )
                    session.add(field)
                    session.flush()
                    summary.count("optionsCreated", _create_options(session, field, entry))
                    runtime.resolve_entry(
                        session,
                        "templateFields",
                        source_id,
                        entry,
                        field.id,
                        "template_field",
                        system_name=system_name,
                        display_name=display_name,
                        type_id=field_type.id,
                    )
                    runtime.created(summary)
                source_system_name = source_system_name or system_name

            id_maps.template_fields[source_id] = field.id
            if source_system_name:
                source_names[target_type][source_system_name] = field.id

            template_id, _ = resolver.resolve(entry.template_name)
            if template_id is not None:
                assignments.assign(field.id, template_id, entry.order)

        for record in assignment_rows:
            template_source_id = to_int(record.get("template_id"))
            field_source_id = to_int(record.get("field_id"))
            if template_source_id is None or field_source_id is None:
                continue
            field_id = id_maps.template_fields.get(field_source_id)
            if field_id is None or field_source_id not in targets:
                continue
            template_id = id_maps.templates.get(template_source_id)
            if template_id is None:
                template_id, _ = resolver.resolve(id_maps.template_source_names.get(template_source_id))
                if template_id is None:
                    continue
                id_maps.templates[template_source_id] = template_id
            assignments.assign(field_id, template_id, None)

        load_field_maps(runtime, session)
        for target_type, names in source_names.items():
            field_map = id_maps.case_fields if target_type == "case" else id_maps.result_fields
            for name, field_id in names.items():
                field_map.setdefault(name, field_id)

    runtime.run_in_transaction(work)
    _load_field_values(runtime)
    return summary


def load_field_maps(runtime: ImportRuntime, session: Session) -> None:
    """System name -> id of every live case and result field in the destination."""
    fields = session.scalars(select(TemplateField).where(TemplateField.is_deleted.is_(False))).all()
    for field in fields:
        field_map = runtime.id_maps.case_fields if field.target_type == "case" else runtime.id_maps.result_fields
        field_map[field.system_name] = field.id


def _load_field_values(runtime: ImportRuntime) -> None:
    for row in runtime.staged_rows("field_values"):
        value_id = to_int(row.data.get("id"))
        field_id = to_int(row.data.get("field_id"))
        name = to_str(row.data.get("name"))
        if value_id is not None and field_id is not None and name:
            runtime.id_maps.field_values[value_id] = (field_id, name)
    if runtime.id_maps.field_values:
        logger.debug(f"Loaded {len(runtime.id_maps.field_values)} source field values")
