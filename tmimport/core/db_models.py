"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
SQLAlchemy ORM models for the import pipeline and the destination workspace.

The first group of tables belongs to the pipeline itself: import jobs, the
per-dataset analysis summaries, the staging rows and the durable entity
mappings. The second group is the destination workspace the importers write
into. Importers only ever reach the destination through a session, so these
models carry columns and constraints but few ORM relationships.
"""

import json
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# ---------------------------------------------------------------------------
# Pipeline tables
# ---------------------------------------------------------------------------


class ImportJob(Base):
    """One export file travelling through analyze, configure and import."""

    __tablename__ = "import_jobs"

    id = Column(String(50), primary_key=True)
    created_by_id = Column(String(36))
    storage_key = Column(Text, nullable=False)
    original_file_name = Column(String(500))
    file_size_bytes = Column(BigInteger)
    status = Column(String(20), nullable=False, default="QUEUED", index=True)
    phase = Column(String(20))
    status_message = Column(Text)
    current_entity = Column(String(100))
    processed_count = Column(Integer, default=0, nullable=False)
    total_count = Column(Integer, default=0, nullable=False)
    error_count = Column(Integer, default=0, nullable=False)
    skipped_count = Column(Integer, default=0, nullable=False)
    processed_datasets = Column(Integer, default=0, nullable=False)
    total_datasets = Column(Integer, default=0, nullable=False)
    processed_rows = Column(BigInteger, default=0, nullable=False)
    estimated_time_remaining = Column(String(50))
    processing_rate = Column(String(50))
    duration_ms = Column(BigInteger)
    configuration = Column(JSON)
    analysis = Column(JSON)
    options = Column(JSON)
    activity_log = Column(JSON)
    entity_progress = Column(JSON)
    error_message = Column(Text)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    last_import_started_at = Column(DateTime)

    datasets = relationship(
        "ImportDataset", back_populates="job", cascade="all, delete-orphan", order_by="ImportDataset.id"
    )

    def __repr__(self):
        return f"<ImportJob(id='{self.id}', status='{self.status}', phase='{self.phase}')>"


class ImportDataset(Base):
    """Finalized accounting of one dataset observed during analyze."""

    __tablename__ = "import_datasets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    row_count = Column(Integer, default=0, nullable=False)
    schema = Column(JSON)
    sample_rows = Column(JSON)
    truncated = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    job = relationship("ImportJob", back_populates="datasets")

    __table_args__ = (
        UniqueConstraint("job_id", "name", name="uq_import_dataset"),
        Index("idx_import_dataset_job", "job_id"),
    )

    def __repr__(self):
        return f"<ImportDataset(job='{self.job_id}', name='{self.name}', rows={self.row_count})>"


class StagingRow(Base):
    """
    One raw export row awaiting transformation.

    Two datasets keep their size-dominant text columns outside ``row_data``:
    ``automation_run_test_fields`` uses ``field_name``/``field_value`` and
    ``run_result_steps`` uses ``text1`` to ``text4``.
    """

    __tablename__ = "import_staging"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), nullable=False)
    dataset_name = Column(String(255), nullable=False)
    row_index = Column(Integer, nullable=False)
    row_data = Column(Text, nullable=False)
    field_name = Column(String(500))
    field_value = Column(Text)
    text1 = Column(Text)
    text2 = Column(Text)
    text3 = Column(Text)
    text4 = Column(Text)
    processed = Column(Boolean, default=False, nullable=False)
    error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("job_id", "dataset_name", "row_index", name="uq_staging_row"),
        Index("idx_staging_job_dataset_processed", "job_id", "dataset_name", "processed"),
    )

    def __repr__(self):
        return f"<StagingRow(job='{self.job_id}', dataset='{self.dataset_name}', index={self.row_index}, processed={self.processed})>"

    @property
    def data_dict(self) -> dict[str, Any]:
        """Get the raw row payload as a dictionary."""
        if self.row_data:
            return json.loads(self.row_data)
        return {}


class EntityMapping(Base):
    """Durable source id to destination id correspondence."""

    __tablename__ = "import_entity_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), nullable=False)
    entity_type = Column(String(100), nullable=False)
    source_id = Column(Integer, nullable=False)
    target_id = Column(String(100), nullable=False)
    target_type = Column(String(100), nullable=False)
    meta_data = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("job_id", "entity_type", "source_id", name="uq_entity_mapping"),
        Index("idx_entity_mapping_job_type", "job_id", "entity_type"),
    )

    def __repr__(self):
        return f"<EntityMapping(type='{self.entity_type}', source={self.source_id}, target='{self.target_id}')>"


# ---------------------------------------------------------------------------
# Destination workspace: association tables
# ---------------------------------------------------------------------------


def _association(name: str, left: tuple[str, str], right: tuple[str, str]) -> Table:
    left_col, left_ref = left
    right_col, right_ref = right
    id_type = String(36) if right_ref.startswith("users.") else Integer
    return Table(
        name,
        Base.metadata,
        Column(left_col, Integer, ForeignKey(left_ref, ondelete="CASCADE"), primary_key=True),
        Column(right_col, id_type, ForeignKey(right_ref, ondelete="CASCADE"), primary_key=True),
    )


status_scope_assignment = _association(
    "status_scope_assignments", ("status_id", "statuses.id"), ("scope_id", "status_scopes.id")
)
group_assignment = _association("group_assignments", ("group_id", "groups.id"), ("user_id", "users.id"))
configuration_variant_assignment = _association(
    "configuration_variant_assignments",
    ("configuration_id", "configurations.id"),
    ("variant_id", "configuration_variants.id"),
)
project_status_assignment = _association(
    "project_status_assignments", ("project_id", "projects.id"), ("status_id", "statuses.id")
)
project_workflow_assignment = _association(
    "project_workflow_assignments", ("project_id", "projects.id"), ("workflow_id", "workflows.id")
)
project_milestone_type_assignment = _association(
    "project_milestone_type_assignments",
    ("project_id", "projects.id"),
    ("milestone_type_id", "milestone_types.id"),
)
project_template_assignment = _association(
    "project_template_assignments", ("project_id", "projects.id"), ("template_id", "templates.id")
)
session_tags = _association("session_tags", ("session_id", "sessions.id"), ("tag_id", "tags.id"))
case_tags = _association("case_tags", ("case_id", "repository_cases.id"), ("tag_id", "tags.id"))
run_tags = _association("run_tags", ("test_run_id", "test_runs.id"), ("tag_id", "tags.id"))
case_issues = _association("case_issues", ("case_id", "repository_cases.id"), ("issue_id", "issues.id"))
run_issues = _association("run_issues", ("test_run_id", "test_runs.id"), ("issue_id", "issues.id"))
result_issues = _association(
    "result_issues", ("result_id", "test_run_results.id"), ("issue_id", "issues.id")
)
session_issues = _association("session_issues", ("session_id", "sessions.id"), ("issue_id", "issues.id"))
session_result_issues = _association(
    "session_result_issues", ("session_result_id", "session_results.id"), ("issue_id", "issues.id")
)


# ---------------------------------------------------------------------------
# Destination workspace: reference data
# ---------------------------------------------------------------------------


class Color(Base):
    __tablename__ = "colors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hex_code = Column(String(7), nullable=False, unique=True)
    order = Column(Integer, default=0)

    def __repr__(self):
        return f"<Color(hex='{self.hex_code}')>"


class Icon(Base):
    __tablename__ = "icons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)

    def __repr__(self):
        return f"<Icon(name='{self.name}')>"


class Workflow(Base):
    """Workflow state used by cases, runs and sessions."""

    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    workflow_type = Column(String(20), nullable=False, default="NOT_STARTED")
    scope = Column(String(20), nullable=False, default="CASES")
    icon_id = Column(Integer, ForeignKey("icons.id"), nullable=False)
    color_id = Column(Integer, ForeignKey("colors.id"), nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    order = Column(Integer, default=0)

    __table_args__ = (Index("idx_workflow_name", "name"),)

    def __repr__(self):
        return f"<Workflow(name='{self.name}', scope='{self.scope}')>"


class StatusScope(Base):
    __tablename__ = "status_scopes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False, unique=True)

    def __repr__(self):
        return f"<StatusScope(name='{self.name}')>"


class Status(Base):
    __tablename__ = "statuses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    system_name = Column(String(255), nullable=False, unique=True)
    aliases = Column(String(500))
    color_id = Column(Integer, ForeignKey("colors.id"), nullable=False)
    is_success = Column(Boolean, default=False, nullable=False)
    is_failure = Column(Boolean, default=False, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    order = Column(Integer, default=0)

    scopes = relationship("StatusScope", secondary=status_scope_assignment)

    def __repr__(self):
        return f"<Status(name='{self.name}', system_name='{self.system_name}')>"


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    note = Column(Text)
    is_deleted = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<Group(name='{self.name}')>"


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    is_deleted = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<Tag(name='{self.name}')>"


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    is_default = Column(Boolean, default=False, nullable=False)

    permissions = relationship("RolePermission", back_populates="role", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Role(name='{self.name}', default={self.is_default})>"


class RolePermission(Base):
    __tablename__ = "role_permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    area = Column(String(100), nullable=False)
    can_add_edit = Column(Boolean, default=False, nullable=False)
    can_delete = Column(Boolean, default=False, nullable=False)
    can_close = Column(Boolean, default=False, nullable=False)

    role = relationship("Role", back_populates="permissions")

    __table_args__ = (UniqueConstraint("role_id", "area", name="uq_role_permission"),)


class MilestoneType(Base):
    __tablename__ = "milestone_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    icon_id = Column(Integer, ForeignKey("icons.id"))
    is_default = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<MilestoneType(name='{self.name}')>"


class ConfigurationCategory(Base):
    __tablename__ = "configuration_categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)

    def __repr__(self):
        return f"<ConfigurationCategory(name='{self.name}')>"


class ConfigurationVariant(Base):
    __tablename__ = "configuration_variants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(
        Integer, ForeignKey("configuration_categories.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)

    __table_args__ = (UniqueConstraint("category_id", "name", name="uq_configuration_variant"),)

    def __repr__(self):
        return f"<ConfigurationVariant(name='{self.name}', category={self.category_id})>"


class Configuration(Base):
    __tablename__ = "configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)

    variants = relationship("ConfigurationVariant", secondary=configuration_variant_assignment)

    def __repr__(self):
        return f"<Configuration(name='{self.name}')>"


class Template(Base):
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    is_default = Column(Boolean, default=False, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<Template(name='{self.name}')>"


class CaseFieldType(Base):
    __tablename__ = "case_field_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False, unique=True)

    def __repr__(self):
        return f"<CaseFieldType(type='{self.type}')>"


class TemplateField(Base):
    """A case field or result field; ``target_type`` tells which."""

    __tablename__ = "template_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_type = Column(String(10), nullable=False)
    display_name = Column(String(255), nullable=False)
    system_name = Column(String(255), nullable=False)
    type_id = Column(Integer, ForeignKey("case_field_types.id"), nullable=False)
    hint = Column(Text)
    is_required = Column(Boolean, default=False, nullable=False)
    is_restricted = Column(Boolean, default=False, nullable=False)
    default_value = Column(Text)
    is_checked = Column(Boolean)
    min_value = Column(Float)
    max_value = Column(Float)
    initial_height = Column(Integer)
    is_deleted = Column(Boolean, default=False, nullable=False)

    field_type = relationship("CaseFieldType")
    options = relationship("FieldOption", back_populates="field", order_by="FieldOption.order")

    __table_args__ = (
        UniqueConstraint("target_type", "system_name", name="uq_template_field_system_name"),
    )

    def __repr__(self):
        return f"<TemplateField(target='{self.target_type}', system_name='{self.system_name}')>"


class FieldOption(Base):
    __tablename__ = "field_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    field_id = Column(Integer, ForeignKey("template_fields.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    icon_id = Column(Integer, ForeignKey("icons.id"))
    color_id = Column(Integer, ForeignKey("colors.id"))
    is_default = Column(Boolean, default=False, nullable=False)
    order = Column(Integer, default=0)

    field = relationship("TemplateField", back_populates="options")


class TemplateFieldAssignment(Base):
    __tablename__ = "template_field_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(Integer, ForeignKey("templates.id", ondelete="CASCADE"), nullable=False)
    field_id = Column(Integer, ForeignKey("template_fields.id", ondelete="CASCADE"), nullable=False)
    order = Column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("template_id", "field_id", name="uq_template_field_assignment"),
    )


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    password = Column(String(255), nullable=False)
    access = Column(String(20), nullable=False, default="USER")
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_api = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<User(email='{self.email}', access='{self.access}')>"


# ---------------------------------------------------------------------------
# Destination workspace: project hierarchy
# ---------------------------------------------------------------------------


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    note = Column(Text)
    docs = Column(JSON)
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime)
    default_template_id = Column(Integer, ForeignKey("templates.id"))
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    milestones = relationship("Milestone", back_populates="project", foreign_keys="Milestone.project_id")

    def __repr__(self):
        return f"<Project(name='{self.name}')>"


class Milestone(Base):
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    milestone_type_id = Column(Integer, ForeignKey("milestone_types.id"), nullable=False)
    name = Column(String(255), nullable=False)
    note = Column(JSON)
    docs = Column(JSON)
    parent_id = Column(Integer, ForeignKey("milestones.id"))
    root_id = Column(Integer, ForeignKey("milestones.id"))
    is_started = Column(Boolean, default=False, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    project = relationship("Project", back_populates="milestones", foreign_keys=[project_id])

    __table_args__ = (Index("idx_milestone_project_name", "project_id", "name"),)

    def __repr__(self):
        return f"<Milestone(name='{self.name}', project={self.project_id})>"


class Session(Base):
    """Exploratory test session."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    state_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    milestone_id = Column(Integer, ForeignKey("milestones.id"))
    configuration_id = Column(Integer, ForeignKey("configurations.id"))
    assigned_to_id = Column(String(36), ForeignKey("users.id"))
    name = Column(String(255), nullable=False)
    note = Column(JSON)
    mission = Column(JSON)
    estimate = Column(Integer)
    forecast = Column(Integer)
    elapsed = Column(Integer)
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_session_project_name", "project_id", "name"),)

    def __repr__(self):
        return f"<Session(name='{self.name}', project={self.project_id})>"


class SessionResult(Base):
    __tablename__ = "session_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    result_data = Column(JSON)
    elapsed = Column(Integer)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)


class SessionFieldValue(Base):
    __tablename__ = "session_field_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    field_id = Column(Integer, ForeignKey("template_fields.id"), nullable=False)
    value = Column(JSON)

    __table_args__ = (UniqueConstraint("session_id", "field_id", name="uq_session_field_value"),)


class SessionVersion(Base):
    """Snapshot of a session with the names its references had when it was taken."""

    __tablename__ = "session_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, default=1, nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    project_name = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    template_id = Column(Integer, nullable=False)
    template_name = Column(String(255), nullable=False)
    state_id = Column(Integer, nullable=False)
    state_name = Column(String(255), nullable=False)
    config_id = Column(Integer)
    configuration_name = Column(String(255))
    milestone_id = Column(Integer)
    milestone_name = Column(String(255))
    assigned_to_id = Column(String(36))
    assigned_to_name = Column(String(255))
    created_by_id = Column(String(36))
    created_by_name = Column(String(255))
    estimate = Column(Integer)
    forecast = Column(Integer)
    elapsed = Column(Integer)
    note = Column(JSON)
    mission = Column(JSON)
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("session_id", "version", name="uq_session_version"),)

    def __repr__(self):
        return f"<SessionVersion(session={self.session_id}, version={self.version})>"


class Repository(Base):
    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<Repository(id={self.id}, project={self.project_id})>"


class RepositoryFolder(Base):
    __tablename__ = "repository_folders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    parent_id = Column(Integer, ForeignKey("repository_folders.id"))
    name = Column(String(255), nullable=False)
    docs = Column(JSON)
    order = Column(Integer, default=0)
    is_deleted = Column(Boolean, default=False, nullable=False)

    __table_args__ = (Index("idx_folder_repository_parent", "repository_id", "parent_id"),)

    def __repr__(self):
        return f"<RepositoryFolder(name='{self.name}', parent={self.parent_id})>"


class RepositoryCase(Base):
    __tablename__ = "repository_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    folder_id = Column(Integer, ForeignKey("repository_folders.id"), nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    state_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    name = Column(String(500), nullable=False)
    class_name = Column(String(500))
    source = Column(String(20), nullable=False, default="MANUAL")
    automated = Column(Boolean, default=False, nullable=False)
    estimate = Column(Integer)
    order = Column(Integer, default=0)
    current_version = Column(Integer, default=1, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    steps = relationship("Step", back_populates="case", order_by="Step.order")

    __table_args__ = (
        Index("idx_case_project_folder_name", "project_id", "folder_id", "name"),
        Index("idx_case_source_class", "project_id", "source", "class_name"),
    )

    def __repr__(self):
        return f"<RepositoryCase(name='{self.name}', source='{self.source}')>"


class CaseFieldValue(Base):
    __tablename__ = "case_field_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("repository_cases.id", ondelete="CASCADE"), nullable=False)
    field_id = Column(Integer, ForeignKey("template_fields.id"), nullable=False)
    value = Column(JSON)

    __table_args__ = (UniqueConstraint("case_id", "field_id", name="uq_case_field_value"),)


class Step(Base):
    __tablename__ = "steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("repository_cases.id", ondelete="CASCADE"), nullable=False)
    order = Column(Integer, default=0, nullable=False)
    step = Column(JSON)
    expected_result = Column(JSON)
    is_deleted = Column(Boolean, default=False, nullable=False)

    case = relationship("RepositoryCase", back_populates="steps")


class RepositoryCaseVersion(Base):
    """Snapshot of a case, its steps and the names its references had when it was taken."""

    __tablename__ = "repository_case_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_case_id = Column(Integer, ForeignKey("repository_cases.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, default=1, nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    project_name = Column(String(255), nullable=False)
    repository_id = Column(Integer, nullable=False)
    folder_id = Column(Integer, nullable=False)
    folder_name = Column(String(255), nullable=False)
    template_id = Column(Integer, nullable=False)
    template_name = Column(String(255), nullable=False)
    state_id = Column(Integer, nullable=False)
    state_name = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    class_name = Column(String(500))
    source = Column(String(20), nullable=False, default="MANUAL")
    automated = Column(Boolean, default=False, nullable=False)
    estimate = Column(Integer)
    order = Column(Integer, default=0)
    steps = Column(JSON)
    tags = Column(JSON)
    creator_id = Column(String(36))
    creator_name = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)

    field_values = relationship("CaseFieldVersionValue", back_populates="version")

    __table_args__ = (UniqueConstraint("repository_case_id", "version", name="uq_case_version"),)

    def __repr__(self):
        return f"<RepositoryCaseVersion(case={self.repository_case_id}, version={self.version})>"


class CaseFieldVersionValue(Base):
    """A case field value as it stood in one version, keyed by field name."""

    __tablename__ = "case_field_version_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version_id = Column(Integer, ForeignKey("repository_case_versions.id", ondelete="CASCADE"), nullable=False)
    field = Column(String(255), nullable=False)
    value = Column(JSON)

    version = relationship("RepositoryCaseVersion", back_populates="field_values")


# ---------------------------------------------------------------------------
# Destination workspace: execution
# ---------------------------------------------------------------------------


class TestRun(Base):
    __tablename__ = "test_runs"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    state_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    milestone_id = Column(Integer, ForeignKey("milestones.id"))
    configuration_id = Column(Integer, ForeignKey("configurations.id"))
    name = Column(String(500), nullable=False)
    run_type = Column(String(20), nullable=False, default="REGULAR")
    note = Column(JSON)
    docs = Column(JSON)
    forecast = Column(Integer)
    elapsed = Column(Integer)
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<TestRun(name='{self.name}', type='{self.run_type}')>"


class TestRunCase(Base):
    __tablename__ = "test_run_cases"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_id = Column(Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False)
    repository_case_id = Column(
        Integer, ForeignKey("repository_cases.id", ondelete="CASCADE"), nullable=False
    )
    order = Column(Integer, default=0, nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"))
    assigned_to_id = Column(String(36), ForeignKey("users.id"))
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime)
    elapsed = Column(Integer)

    __table_args__ = (UniqueConstraint("test_run_id", "repository_case_id", name="uq_test_run_case"),)


class TestRunResult(Base):
    __tablename__ = "test_run_results"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_id = Column(Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False)
    test_run_case_id = Column(Integer, ForeignKey("test_run_cases.id", ondelete="CASCADE"), nullable=False)
    test_run_case_version = Column(Integer, default=1, nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    executed_by_id = Column(String(36), ForeignKey("users.id"))
    executed_at = Column(DateTime, default=datetime.utcnow)
    elapsed = Column(Integer)
    notes = Column(JSON)
    is_deleted = Column(Boolean, default=False, nullable=False)


class ResultFieldValue(Base):
    __tablename__ = "result_field_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    result_id = Column(Integer, ForeignKey("test_run_results.id", ondelete="CASCADE"), nullable=False)
    field_id = Column(Integer, ForeignKey("template_fields.id"), nullable=False)
    value = Column(JSON)

    __table_args__ = (UniqueConstraint("result_id", "field_id", name="uq_result_field_value"),)


class TestRunStepResult(Base):
    __tablename__ = "test_run_step_results"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    result_id = Column(Integer, ForeignKey("test_run_results.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(Integer, ForeignKey("steps.id", ondelete="CASCADE"), nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    notes = Column(JSON)
    elapsed = Column(Integer)

    __table_args__ = (UniqueConstraint("result_id", "step_id", name="uq_step_result"),)


class AutomationResultField(Base):
    """Free-form name/value pair attached to an automated test result."""

    __tablename__ = "automation_result_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    result_id = Column(Integer, ForeignKey("test_run_results.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(500), nullable=False)
    field_type = Column(String(50))
    value = Column(Text)

    __table_args__ = (UniqueConstraint("result_id", "name", name="uq_automation_result_field"),)


# ---------------------------------------------------------------------------
# Destination workspace: issue tracking
# ---------------------------------------------------------------------------


class Integration(Base):
    __tablename__ = "integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    provider = Column(String(30), nullable=False)
    auth_type = Column(String(30), nullable=False, default="NONE")
    status = Column(String(20), nullable=False, default="INACTIVE")
    settings = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Integration(name='{self.name}', provider='{self.provider}')>"


class Issue(Base):
    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"))
    name = Column(String(255), nullable=False)
    title = Column(String(1000), nullable=False)
    external_id = Column(String(255), nullable=False)
    external_key = Column(String(255))
    external_url = Column(Text)
    external_status = Column(String(100))
    data = Column(JSON)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_issue_external", "external_id", "integration_id"),)

    def __repr__(self):
        return f"<Issue(key='{self.external_key}', integration={self.integration_id})>"
