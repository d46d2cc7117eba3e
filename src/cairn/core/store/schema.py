# src/cairn/core/store/schema.py
"""SQLAlchemy table definitions for the cairn resource store.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends.

Every table carries the housekeeping envelope (created/updated/deleted
timestamps and actors plus a free-form activity log). Rows are never
physically deleted; live reads filter on deleted_at IS NULL.

Structured columns carry a json_valid CHECK on SQLite. The recorder
validates the same rule before writing, so the constraint is a backstop.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
)

# Shared metadata for all tables
metadata = MetaData()

DEFAULT_ACTOR = "UNKNOWN"


def _housekeeping() -> list[Column]:
    """Fresh housekeeping columns for one table (Column objects can't be shared)."""
    return [
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("created_by", String(128), nullable=False, default=DEFAULT_ACTOR),
        Column("updated_at", DateTime(timezone=True)),
        Column("updated_by", String(128)),
        Column("deleted_at", DateTime(timezone=True)),
        Column("deleted_by", String(128)),
        Column("activity_log", Text),
    ]


def _json_checks(table_name: str, *columns: str) -> list[CheckConstraint]:
    """json_valid(col) OR col IS NULL, emitted only for SQLite DDL."""
    return [
        CheckConstraint(
            f"json_valid({col}) OR {col} IS NULL",
            name=f"ck_{table_name}_{col}_json",
        ).ddl_if(dialect="sqlite")
        for col in columns
    ]


# === Devices ===

device_table = Table(
    "device",
    metadata,
    Column("device_id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("state", Text, nullable=False),
    Column("boundary", String(255), nullable=False),
    Column("segmentation", Text),
    Column("state_sysinfo", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("name", "state", "boundary", name="uq_device_name_state_boundary"),
    *_json_checks("device", "state", "segmentation", "state_sysinfo", "elaboration"),
)

behavior_table = Table(
    "behavior",
    metadata,
    Column("behavior_id", String(64), primary_key=True),
    Column("device_id", String(64), ForeignKey("device.device_id"), nullable=False),
    Column("behavior_name", String(255), nullable=False),
    Column("behavior_conf_json", Text, nullable=False),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("device_id", "behavior_name", name="uq_behavior_device_name"),
    *_json_checks("behavior", "behavior_conf_json", "elaboration"),
)

# === Path Rules ===

path_match_rule_table = Table(
    "ur_ingest_resource_path_match_rule",
    metadata,
    Column("ur_ingest_resource_path_match_rule_id", String(64), primary_key=True),
    Column("namespace", String(255), nullable=False),
    Column("regex", Text, nullable=False),
    Column("flags", String(8), nullable=False, default=""),
    Column("nature", String(255)),
    Column("priority", Integer),
    # Insertion order; breaks priority ties
    Column("rule_order", Integer, nullable=False),
    Column("include_globs", Text),
    Column("exclude_globs", Text),
    Column("description", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("namespace", "regex", name="uq_path_match_rule_namespace_regex"),
    *_json_checks("ur_ingest_resource_path_match_rule", "include_globs", "exclude_globs", "elaboration"),
)

path_rewrite_rule_table = Table(
    "ur_ingest_resource_path_rewrite_rule",
    metadata,
    Column("ur_ingest_resource_path_rewrite_rule_id", String(64), primary_key=True),
    Column("namespace", String(255), nullable=False),
    Column("regex", Text, nullable=False),
    Column("replace", Text, nullable=False),
    Column("priority", Integer),
    Column("rule_order", Integer, nullable=False),
    Column("description", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("namespace", "regex", "replace", name="uq_path_rewrite_rule_namespace_regex_replace"),
    *_json_checks("ur_ingest_resource_path_rewrite_rule", "elaboration"),
)

# === Ingestion Sessions ===

ingest_session_table = Table(
    "ur_ingest_session",
    metadata,
    Column("ur_ingest_session_id", String(64), primary_key=True),
    Column("device_id", String(64), ForeignKey("device.device_id"), nullable=False),
    Column("behavior_id", String(64), ForeignKey("behavior.behavior_id")),
    Column("behavior_json", Text),
    Column("session_agent", String(255), nullable=False),
    Column("source", String(32), nullable=False),
    Column("ingest_started_at", DateTime(timezone=True), nullable=False),
    Column("ingest_finished_at", DateTime(timezone=True)),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("ur_ingest_session", "behavior_json", "elaboration"),
)

ingest_fs_path_table = Table(
    "ur_ingest_session_fs_path",
    metadata,
    Column("ur_ingest_session_fs_path_id", String(64), primary_key=True),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column("root_path", Text, nullable=False),
    Column("include_glob_patterns", Text),
    Column("exclude_glob_patterns", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("ingest_session_id", "root_path", name="uq_fs_path_session_root"),
    *_json_checks("ur_ingest_session_fs_path", "include_glob_patterns", "exclude_glob_patterns", "elaboration"),
)

imap_account_table = Table(
    "ur_ingest_session_imap_account",
    metadata,
    Column("ur_ingest_session_imap_account_id", String(64), primary_key=True),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column("email", String(255), nullable=False),
    Column("host", String(255), nullable=False),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("ingest_session_id", "email", "host", name="uq_imap_account_session_email_host"),
    *_json_checks("ur_ingest_session_imap_account", "elaboration"),
)

imap_acct_folder_table = Table(
    "ur_ingest_session_imap_acct_folder",
    metadata,
    Column("ur_ingest_session_imap_acct_folder_id", String(64), primary_key=True),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column(
        "ingest_account_id",
        String(64),
        ForeignKey("ur_ingest_session_imap_account.ur_ingest_session_imap_account_id"),
        nullable=False,
    ),
    Column("folder_name", String(255), nullable=False),
    Column("include_senders", Text),
    Column("exclude_senders", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("ingest_account_id", "folder_name", name="uq_imap_folder_account_name"),
    *_json_checks("ur_ingest_session_imap_acct_folder", "include_senders", "exclude_senders", "elaboration"),
)

plm_account_table = Table(
    "ur_ingest_session_plm_account",
    metadata,
    Column("ur_ingest_session_plm_account_id", String(64), primary_key=True),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column("provider", String(64), nullable=False),
    Column("org_name", String(255), nullable=False),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("ingest_session_id", "provider", "org_name", name="uq_plm_account_session_provider_org"),
    *_json_checks("ur_ingest_session_plm_account", "elaboration"),
)

plm_acct_project_table = Table(
    "ur_ingest_session_plm_acct_project",
    metadata,
    Column("ur_ingest_session_plm_acct_project_id", String(64), primary_key=True),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column(
        "ingest_account_id",
        String(64),
        ForeignKey("ur_ingest_session_plm_account.ur_ingest_session_plm_account_id"),
        nullable=False,
    ),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("ingest_account_id", "name", name="uq_plm_project_account_name"),
    *_json_checks("ur_ingest_session_plm_acct_project", "elaboration"),
)

# === Uniform Resources ===

uniform_resource_table = Table(
    "uniform_resource",
    metadata,
    Column("uniform_resource_id", String(64), primary_key=True),
    Column("device_id", String(64), ForeignKey("device.device_id"), nullable=False),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column("ingest_fs_path_id", String(64), ForeignKey("ur_ingest_session_fs_path.ur_ingest_session_fs_path_id")),
    Column(
        "ingest_imap_acct_folder_id",
        String(64),
        ForeignKey("ur_ingest_session_imap_acct_folder.ur_ingest_session_imap_acct_folder_id"),
    ),
    Column(
        "ingest_plm_acct_project_id",
        String(64),
        ForeignKey("ur_ingest_session_plm_acct_project.ur_ingest_session_plm_acct_project_id"),
    ),
    Column("uri", Text, nullable=False),
    Column("content_digest", String(64), nullable=False),
    Column("content", LargeBinary),
    # sha256 of content held in the payload store when kept out of line
    Column("content_ref", String(64)),
    Column("nature", String(255)),
    Column("size_bytes", Integer, nullable=False),
    Column("last_modified_at", DateTime(timezone=True)),
    Column("frontmatter", Text),
    Column("content_fm_body_attrs", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    # Dedup authority: device-scoped, never global
    UniqueConstraint("device_id", "content_digest", "uri", "size_bytes", name="uq_uniform_resource_key"),
    *_json_checks("uniform_resource", "frontmatter", "content_fm_body_attrs", "elaboration"),
)

Index("ix_uniform_resource_session", uniform_resource_table.c.ingest_session_id)
Index("ix_uniform_resource_digest", uniform_resource_table.c.content_digest)

uniform_resource_transform_table = Table(
    "uniform_resource_transform",
    metadata,
    Column("uniform_resource_transform_id", String(64), primary_key=True),
    Column("uniform_resource_id", String(64), ForeignKey("uniform_resource.uniform_resource_id"), nullable=False),
    Column("uri", Text, nullable=False),
    Column("content_digest", String(64), nullable=False),
    Column("content", LargeBinary),
    Column("nature", String(255), nullable=False),
    Column("size_bytes", Integer, nullable=False),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint(
        "uniform_resource_id",
        "content_digest",
        "nature",
        "size_bytes",
        name="uq_uniform_resource_transform_key",
    ),
    *_json_checks("uniform_resource_transform", "elaboration"),
)

# === Path Entries and Tasks ===

fs_path_entry_table = Table(
    "ur_ingest_session_fs_path_entry",
    metadata,
    Column("ur_ingest_session_fs_path_entry_id", String(64), primary_key=True),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column(
        "ingest_fs_path_id",
        String(64),
        ForeignKey("ur_ingest_session_fs_path.ur_ingest_session_fs_path_id"),
        nullable=False,
    ),
    Column("uniform_resource_id", String(64), ForeignKey("uniform_resource.uniform_resource_id")),
    Column("file_path_abs", Text, nullable=False),
    Column("file_path_rel_parent", Text, nullable=False),
    Column("file_path_rel", Text, nullable=False),
    Column("file_basename", Text, nullable=False),
    Column("file_extn", String(64)),
    Column("captured_executable", Text),
    Column("ur_status", String(32), nullable=False),
    Column("ur_diagnostics", Text),
    Column("ur_transformations", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("ingest_session_id", "ingest_fs_path_id", "file_path_abs", name="uq_fs_path_entry_key"),
    *_json_checks(
        "ur_ingest_session_fs_path_entry",
        "captured_executable",
        "ur_diagnostics",
        "ur_transformations",
        "elaboration",
    ),
)

ingest_task_table = Table(
    "ur_ingest_session_task",
    metadata,
    Column("ur_ingest_session_task_id", String(64), primary_key=True),
    Column("ingest_session_id", String(64), ForeignKey("ur_ingest_session.ur_ingest_session_id"), nullable=False),
    Column("uniform_resource_id", String(64), ForeignKey("uniform_resource.uniform_resource_id")),
    Column("captured_executable", Text, nullable=False),
    Column("ur_status", String(32), nullable=False),
    Column("ur_diagnostics", Text),
    Column("ur_transformations", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks(
        "ur_ingest_session_task",
        "captured_executable",
        "ur_diagnostics",
        "ur_transformations",
        "elaboration",
    ),
)

# === Lineage Graph ===

graph_table = Table(
    "uniform_resource_graph",
    metadata,
    Column("name", String(255), primary_key=True),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("uniform_resource_graph", "elaboration"),
)

edge_table = Table(
    "uniform_resource_edge",
    metadata,
    Column("graph_name", String(255), ForeignKey("uniform_resource_graph.name"), nullable=False),
    Column("nature", String(255), nullable=False),
    Column("node_id", Text, nullable=False),
    Column("uniform_resource_id", String(64), ForeignKey("uniform_resource.uniform_resource_id"), nullable=False),
    Column("elaboration", Text),
    *_housekeeping(),
    # An edge of a given nature between the same node and resource exists once
    PrimaryKeyConstraint("graph_name", "nature", "node_id", "uniform_resource_id"),
    *_json_checks("uniform_resource_edge", "elaboration"),
)

Index("ix_edge_resource", edge_table.c.uniform_resource_id)

# === Orchestration ===

orchestration_nature_table = Table(
    "orchestration_nature",
    metadata,
    Column("orchestration_nature_id", String(64), primary_key=True),
    Column("nature", String(255), nullable=False, unique=True),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("orchestration_nature", "elaboration"),
)

orchestration_session_table = Table(
    "orchestration_session",
    metadata,
    Column("orchestration_session_id", String(64), primary_key=True),
    Column("device_id", String(64), ForeignKey("device.device_id"), nullable=False),
    Column(
        "orchestration_nature_id",
        String(64),
        ForeignKey("orchestration_nature.orchestration_nature_id"),
        nullable=False,
    ),
    Column("version", String(64), nullable=False),
    Column("orch_started_at", DateTime(timezone=True), nullable=False),
    Column("orch_finished_at", DateTime(timezone=True)),
    Column("args_json", Text),
    Column("diagnostics_json", Text),
    Column("diagnostics_md", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("orchestration_session", "args_json", "diagnostics_json", "elaboration"),
)

orchestration_entry_table = Table(
    "orchestration_session_entry",
    metadata,
    Column("orchestration_session_entry_id", String(64), primary_key=True),
    Column(
        "session_id",
        String(64),
        ForeignKey("orchestration_session.orchestration_session_id"),
        nullable=False,
    ),
    Column("ingest_src", Text, nullable=False),
    Column("ingest_table_name", String(255)),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("orchestration_session_entry", "elaboration"),
)

orchestration_state_table = Table(
    "orchestration_session_state",
    metadata,
    Column("orchestration_session_state_id", String(64), primary_key=True),
    Column(
        "session_id",
        String(64),
        ForeignKey("orchestration_session.orchestration_session_id"),
        nullable=False,
    ),
    Column(
        "session_entry_id",
        String(64),
        ForeignKey("orchestration_session_entry.orchestration_session_entry_id"),
    ),
    # Either the session id or one of its entry ids
    Column("owner_id", String(64), nullable=False),
    Column("from_state", String(64), nullable=False),
    Column("to_state", String(64), nullable=False),
    Column("transition_result", Text),
    Column("transition_reason", Text),
    Column("transitioned_at", DateTime(timezone=True), nullable=False),
    # Number of times this exact transition was observed; row keeps the last one
    Column("transition_count", Integer, nullable=False, default=1),
    Column("elaboration", Text),
    *_housekeeping(),
    UniqueConstraint("owner_id", "from_state", "to_state", name="uq_session_state_transition"),
    *_json_checks("orchestration_session_state", "elaboration"),
)

orchestration_exec_table = Table(
    "orchestration_session_exec",
    metadata,
    Column("orchestration_session_exec_id", String(64), primary_key=True),
    Column(
        "session_id",
        String(64),
        ForeignKey("orchestration_session.orchestration_session_id"),
        nullable=False,
    ),
    Column(
        "session_entry_id",
        String(64),
        ForeignKey("orchestration_session_entry.orchestration_session_entry_id"),
    ),
    Column(
        "parent_exec_id",
        String(64),
        ForeignKey("orchestration_session_exec.orchestration_session_exec_id"),
    ),
    Column("exec_nature", String(255), nullable=False),
    Column("namespace", String(255)),
    Column("exec_identity", Text),
    Column("exec_code", Text, nullable=False),
    Column("exec_state", String(16), nullable=False),
    Column("exec_status", Integer, nullable=False),
    Column("sibling_order", Integer, nullable=False),
    Column("input_text", Text),
    Column("output_text", Text),
    Column("output_nature", Text),
    Column("exec_error_text", Text),
    Column("narrative_md", Text),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True)),
    Column("duration_ms", Float),
    Column("failed_child_status", Integer),
    Column("status_overridden", Boolean, nullable=False, default=False),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("orchestration_session_exec", "elaboration"),
)

Index("ix_exec_session_parent", orchestration_exec_table.c.session_id, orchestration_exec_table.c.parent_exec_id)

orchestration_issue_table = Table(
    "orchestration_session_issue",
    metadata,
    Column("orchestration_session_issue_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "session_id",
        String(64),
        ForeignKey("orchestration_session.orchestration_session_id"),
        nullable=False,
    ),
    Column(
        "session_entry_id",
        String(64),
        ForeignKey("orchestration_session_entry.orchestration_session_entry_id"),
    ),
    Column("issue_type", String(64), nullable=False),
    Column("issue_message", Text, nullable=False),
    Column("issue_row", Integer),
    Column("issue_column", Text),
    Column("invalid_value", Text),
    Column("remediation", Text),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("orchestration_session_issue", "elaboration"),
)

orchestration_issue_relation_table = Table(
    "orchestration_session_issue_relation",
    metadata,
    Column("orchestration_session_issue_relation_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "issue_id_prime",
        Integer,
        ForeignKey("orchestration_session_issue.orchestration_session_issue_id"),
        nullable=False,
    ),
    Column(
        "issue_id_rel",
        Integer,
        ForeignKey("orchestration_session_issue.orchestration_session_issue_id"),
        nullable=False,
    ),
    Column("relationship_nature", String(255), nullable=False),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("orchestration_session_issue_relation", "elaboration"),
)

orchestration_log_table = Table(
    "orchestration_session_log",
    metadata,
    Column("orchestration_session_log_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "session_id",
        String(64),
        ForeignKey("orchestration_session.orchestration_session_id"),
        nullable=False,
    ),
    Column(
        "exec_id",
        String(64),
        ForeignKey("orchestration_session_exec.orchestration_session_exec_id"),
    ),
    Column(
        "parent_log_id",
        Integer,
        ForeignKey("orchestration_session_log.orchestration_session_log_id"),
    ),
    Column("category", String(255)),
    Column("content", Text, nullable=False),
    Column("sibling_order", Integer, nullable=False),
    Column("elaboration", Text),
    *_housekeeping(),
    *_json_checks("orchestration_session_log", "elaboration"),
)

Index("ix_log_session_parent", orchestration_log_table.c.session_id, orchestration_log_table.c.parent_log_id)
