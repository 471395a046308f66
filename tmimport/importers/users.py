"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""Users and their group memberships."""

import logging
import uuid

import bcrypt
from sqlalchemy.orm import Session

from tmimport.core.db_models import Role, User, group_assignment
from tmimport.destination import find_first, get_default_role
from tmimport.exceptions import ConfigurationError
from tmimport.importers.base import EntitySummary, ImportRuntime, ensure_link, require_mapped_target
from tmimport.mapping_config import ACCESS_VALUES, build_id_map
from tmimport.normalization import to_int
from tmimport.staging import StagedRow

logger = logging.getLogger("tmimport.importers.users")

# bcrypt ignores input beyond 72 bytes and newer releases reject it
BCRYPT_MAX_BYTES = 72


def hash_password(password: str) -> str:
    password_bytes = password.encode("utf-8")[:BCRYPT_MAX_BYTES]
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode("utf-8")


def _resolve_role_id(session: Session, role_id: int | None) -> int:
    if role_id is not None:
        if session.get(Role, role_id) is None:
            raise ConfigurationError(f"Role {role_id} selected for a user does not exist.", entity_type="users")
        return role_id
    role = get_default_role(session)
    if role is None:
        raise ConfigurationError("No default role is configured. Unable to create users.", entity_type="users")
    return role.id


def import_users(runtime: ImportRuntime) -> EntitySummary:
    """
    Map or create destination users.

    Created users are matched by lowercased email first. Plain-text passwords
    never outlive the import: they are hashed on create and cleared from the
    resolved entry.
    """
    summary = EntitySummary("users")

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.users.items():
            if entry.is_map:
                existing = require_mapped_target(session, User, entry, source_id, "User", "user", "users")
                runtime.resolve_entry(session, "users", source_id, entry, existing.id, "user")
                runtime.mapped(summary)
                continue

            email = (entry.email or "").strip().lower()
            if not email:
                raise ConfigurationError(
                    f"User {source_id} requires an email address before creation.",
                    entity_type="users",
                    source_id=source_id,
                )

            existing = find_first(session, User, email=email)
            if existing is not None:
                runtime.resolve_entry(
                    session,
                    "users",
                    source_id,
                    entry,
                    existing.id,
                    "user",
                    email=existing.email,
                    name=existing.name,
                    access=existing.access,
                    role_id=existing.role_id,
                    password=None,
                )
                runtime.mapped(summary)
                continue

            user = User(
                id=str(uuid.uuid4()),
                name=(entry.name or "").strip() or email,
                email=email,
                password=hash_password(entry.password or uuid.uuid4().hex),
                access=entry.access if entry.access in ACCESS_VALUES else "USER",
                role_id=_resolve_role_id(session, entry.role_id),
                is_active=entry.is_active,
                is_api=entry.is_api,
            )
            session.add(user)
            session.flush()
            runtime.resolve_entry(
                session,
                "users",
                source_id,
                entry,
                user.id,
                "user",
                name=user.name,
                email=user.email,
                access=user.access,
                role_id=user.role_id,
                password=None,
            )
            runtime.created(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.users = build_id_map(runtime.configuration.users)
    return summary


def import_user_groups(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("userGroups")
    id_maps = runtime.id_maps

    def handle(session: Session, row: StagedRow) -> None:
        user_id = id_maps.users.get(to_int(row.data.get("user_id")))
        group_id = id_maps.groups.get(to_int(row.data.get("group_id")))
        if not user_id or not group_id:
            summary.count("skippedUnmapped")
            runtime.skip(
                summary,
                "Skipping group membership with unmapped user or group",
                userSourceId=to_int(row.data.get("user_id")),
                groupSourceId=to_int(row.data.get("group_id")),
            )
            return
        if ensure_link(session, group_assignment, group_id=group_id, user_id=user_id):
            runtime.created(summary)
        else:
            runtime.mapped(summary)

    runtime.run_chunks(
        "userGroups",
        runtime.staged_rows("user_groups"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )
    if summary.details.get("skippedUnmapped"):
        runtime.log(
            "Skipped group memberships of users or groups that were not imported",
            count=summary.details["skippedUnmapped"],
        )
    return summary
