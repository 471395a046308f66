"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Default reference data of a fresh destination workspace.

The importers assume a handful of rows exist before anything is imported: a
fallback color and icon, the status scopes, the ``untested`` status, default
role, milestone type, template and workflows, and the case field types. This
module seeds them idempotently and offers the lookups the importers use.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    CaseFieldType,
    Color,
    Icon,
    MilestoneType,
    Role,
    Status,
    StatusScope,
    Template,
    Workflow,
)

logger = logging.getLogger("tmimport.destination")

DEFAULT_COLOR_HEX = "#B1B2B3"
DEFAULT_ICON_NAME = "layout-list"
UNTESTED_SYSTEM_NAME = "untested"
STATUS_SCOPE_NAMES = ("Test Run", "Session", "Automation")
CASE_FIELD_TYPES = (
    "Text String",
    "Text Long",
    "Integer",
    "Number",
    "Checkbox",
    "Dropdown",
    "Multi-Select",
    "Date",
    "Link",
    "Steps",
)
WORKFLOW_SCOPES = ("CASES", "RUNS", "SESSIONS")
DEFAULT_WORKFLOWS = {
    "CASES": ("New", "NOT_STARTED"),
    "RUNS": ("In Progress", "IN_PROGRESS"),
    "SESSIONS": ("In Progress", "IN_PROGRESS"),
}


def find_first(session: Session, model, **filters):
    return session.scalars(select(model).filter_by(**filters).limit(1)).first()


def _ensure(session: Session, model, defaults: dict | None = None, **filters):
    instance = find_first(session, model, **filters)
    if instance is not None:
        return instance, False
    instance = model(**filters, **(defaults or {}))
    session.add(instance)
    session.flush()
    return instance, True


def seed_workspace_defaults(session: Session) -> dict[str, int]:
    """
    Create the reference rows every import relies on.

    Safe to call repeatedly; existing rows are left untouched.

    Args:
        session: SQLAlchemy session

    Returns:
        Number of rows created per model name
    """
    created: dict[str, int] = {}

    def note(kind: str, was_created: bool) -> None:
        if was_created:
            created[kind] = created.get(kind, 0) + 1

    color, was_created = _ensure(session, Color, hex_code=DEFAULT_COLOR_HEX)
    note("colors", was_created)
    icon, was_created = _ensure(session, Icon, name=DEFAULT_ICON_NAME)
    note("icons", was_created)

    scopes = []
    for scope_name in STATUS_SCOPE_NAMES:
        scope, was_created = _ensure(session, StatusScope, name=scope_name)
        scopes.append(scope)
        note("status_scopes", was_created)

    untested, was_created = _ensure(
        session,
        Status,
        defaults={"name": "Untested", "color_id": color.id, "is_enabled": True},
        system_name=UNTESTED_SYSTEM_NAME,
    )
    if was_created:
        untested.scopes = scopes
    note("statuses", was_created)

    if find_first(session, Role, is_default=True) is None:
        _, was_created = _ensure(session, Role, defaults={"is_default": True}, name="user")
        note("roles", was_created)

    if find_first(session, MilestoneType, is_default=True) is None:
        _, was_created = _ensure(
            session, MilestoneType, defaults={"is_default": True, "icon_id": icon.id}, name="Version"
        )
        note("milestone_types", was_created)

    if find_first(session, Template, is_default=True) is None:
        _, was_created = _ensure(session, Template, defaults={"is_default": True}, name="Default Template")
        note("templates", was_created)

    for scope_name in WORKFLOW_SCOPES:
        if find_first(session, Workflow, scope=scope_name, is_default=True, is_deleted=False) is None:
            name, workflow_type = DEFAULT_WORKFLOWS[scope_name]
            session.add(
                Workflow(
                    name=name,
                    scope=scope_name,
                    workflow_type=workflow_type,
                    icon_id=icon.id,
                    color_id=color.id,
                    is_default=True,
                )
            )
            note("workflows", True)

    for type_name in CASE_FIELD_TYPES:
        _, was_created = _ensure(session, CaseFieldType, type=type_name)
        note("case_field_types", was_created)

    session.flush()
    if created:
        logger.info(f"Seeded workspace defaults: {created}")
    return created


def get_default_color(session: Session) -> Color | None:
    return find_first(session, Color, hex_code=DEFAULT_COLOR_HEX) or find_first(session, Color)


def get_default_icon(session: Session) -> Icon | None:
    return find_first(session, Icon, name=DEFAULT_ICON_NAME) or find_first(session, Icon)


def get_untested_status(session: Session) -> Status | None:
    return find_first(session, Status, system_name=UNTESTED_SYSTEM_NAME)


def get_default_role(session: Session) -> Role | None:
    return find_first(session, Role, is_default=True)


def get_default_milestone_type(session: Session) -> MilestoneType | None:
    return find_first(session, MilestoneType, is_default=True)


def get_default_template(session: Session) -> Template | None:
    return find_first(session, Template, is_default=True) or find_first(session, Template)


def get_default_workflow(session: Session, scope: str) -> Workflow | None:
    """Return the default workflow of a scope, or its first enabled one."""
    return find_first(session, Workflow, scope=scope, is_default=True, is_deleted=False) or find_first(
        session, Workflow, scope=scope, is_deleted=False
    )
