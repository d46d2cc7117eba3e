"""Record contracts for the cairn store tables.

These are strict contracts - all enum fields use proper enum types.
The repository layer handles string->enum conversion for DB reads.

The store is OUR data. If we read garbage from it, something
catastrophic happened - crash immediately.
"""

from dataclasses import dataclass, field
from datetime import datetime

from cairn.contracts.enums import EntryStatus, ExecState, IngestSource


def _validate_enum(value: object, enum_type: type, field_name: str) -> None:
    """Validate that value is an instance of the expected enum type."""
    if value is not None and not isinstance(value, enum_type):
        raise TypeError(f"{field_name} must be {enum_type.__name__}, got {type(value).__name__}: {value!r}")


# === Devices ===


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Read-only identity of a device, shared by reference between subsystems."""

    device_id: str
    name: str
    boundary: str


@dataclass
class Device:
    """An identified host or source of ingestion."""

    device_id: str
    name: str
    state: str
    boundary: str
    created_at: datetime
    created_by: str
    segmentation: str | None = None
    state_sysinfo: str | None = None
    elaboration: str | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @property
    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(device_id=self.device_id, name=self.name, boundary=self.boundary)

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None


@dataclass
class Behavior:
    """Named ingestion configuration for a device."""

    behavior_id: str
    device_id: str
    behavior_name: str
    behavior_conf_json: str
    created_at: datetime


# === Ingestion ===


@dataclass
class IngestSession:
    """One ingestion run scoped to a device."""

    ingest_session_id: str
    device_id: str
    session_agent: str
    source: IngestSource
    ingest_started_at: datetime
    ingest_finished_at: datetime | None = None
    behavior_id: str | None = None
    behavior_json: str | None = None
    elaboration: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.source, IngestSource, "source")

    @property
    def is_closed(self) -> bool:
        return self.ingest_finished_at is not None


@dataclass
class IngestFsPath:
    """A filesystem root registered within an ingestion session."""

    ingest_fs_path_id: str
    ingest_session_id: str
    root_path: str
    include_glob_patterns: list[str] | None = None
    exclude_glob_patterns: list[str] | None = None


@dataclass
class UniformResource:
    """The canonical content-addressed record."""

    uniform_resource_id: str
    device_id: str
    ingest_session_id: str
    uri: str
    content_digest: str
    size_bytes: int
    created_at: datetime
    nature: str | None = None
    content: bytes | None = None
    content_ref: str | None = None
    ingest_fs_path_id: str | None = None
    ingest_imap_acct_folder_id: str | None = None
    ingest_plm_acct_project_id: str | None = None
    last_modified_at: datetime | None = None
    frontmatter: str | None = None
    content_fm_body_attrs: str | None = None
    elaboration: str | None = None
    deleted_at: datetime | None = None


@dataclass
class UniformResourceTransform:
    """A derived artifact of a uniform resource."""

    uniform_resource_transform_id: str
    uniform_resource_id: str
    uri: str
    content_digest: str
    size_bytes: int
    created_at: datetime
    nature: str | None = None
    content: bytes | None = None
    elaboration: str | None = None


@dataclass(frozen=True, slots=True)
class Admission:
    """Outcome of admitting content into the store.

    is_new_record=False is the idempotent duplicate outcome, not an error.
    """

    resource_id: str
    is_new_record: bool
    content_digest: str


@dataclass(frozen=True, slots=True)
class TransformAdmission:
    """Outcome of admitting a derived transform."""

    transform_id: str
    is_new_record: bool
    content_digest: str


@dataclass
class PathEntry:
    """What was attempted for one discovered file."""

    ur_ingest_session_fs_path_entry_id: str
    ingest_session_id: str
    ingest_fs_path_id: str
    file_path_abs: str
    file_path_rel_parent: str
    file_path_rel: str
    file_basename: str
    ur_status: EntryStatus
    created_at: datetime
    file_extn: str | None = None
    uniform_resource_id: str | None = None
    captured_executable: str | None = None
    ur_diagnostics: str | None = None
    ur_transformations: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.ur_status, EntryStatus, "ur_status")


@dataclass
class IngestTask:
    """A non-filesystem unit of ingestion work (telemetry query, capture)."""

    ur_ingest_session_task_id: str
    ingest_session_id: str
    captured_executable: str
    ur_status: EntryStatus
    created_at: datetime
    uniform_resource_id: str | None = None
    ur_diagnostics: str | None = None
    ur_transformations: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.ur_status, EntryStatus, "ur_status")


@dataclass
class IngestSummary:
    """Per-session outcome counts reported to the user."""

    admitted: int = 0
    duplicate: int = 0
    rejected: int = 0
    errored: int = 0

    def record(self, status: EntryStatus) -> None:
        if status == EntryStatus.ADMITTED:
            self.admitted += 1
        elif status == EntryStatus.DUPLICATE:
            self.duplicate += 1
        elif status in (EntryStatus.REJECTED, EntryStatus.UNMATCHED):
            self.rejected += 1
        else:
            self.errored += 1

    def merge(self, other: "IngestSummary") -> "IngestSummary":
        return IngestSummary(
            admitted=self.admitted + other.admitted,
            duplicate=self.duplicate + other.duplicate,
            rejected=self.rejected + other.rejected,
            errored=self.errored + other.errored,
        )

    @property
    def total(self) -> int:
        return self.admitted + self.duplicate + self.rejected + self.errored


# === Lineage ===


@dataclass
class LineageEdge:
    """A typed edge between a node identifier and a uniform resource."""

    graph_name: str
    nature: str
    node_id: str
    uniform_resource_id: str
    created_at: datetime
    elaboration: str | None = None


# === Orchestration ===


@dataclass
class OrchestrationSession:
    """One execution of the orchestration pipeline against a device."""

    orchestration_session_id: str
    device_id: str
    orchestration_nature_id: str
    version: str
    orch_started_at: datetime
    orch_finished_at: datetime | None = None
    args_json: str | None = None
    diagnostics_json: str | None = None
    diagnostics_md: str | None = None
    elaboration: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.orch_finished_at is not None


@dataclass
class SessionEntry:
    """A named stage within an orchestration session."""

    orchestration_session_entry_id: str
    session_id: str
    ingest_src: str
    created_at: datetime
    ingest_table_name: str | None = None
    elaboration: str | None = None


@dataclass
class SessionState:
    """Last observed (from_state, to_state) transition for an owner."""

    orchestration_session_state_id: str
    session_id: str
    owner_id: str
    from_state: str
    to_state: str
    transitioned_at: datetime
    transition_count: int
    session_entry_id: str | None = None
    transition_result: str | None = None
    transition_reason: str | None = None


@dataclass
class SessionExec:
    """One node of the exec call tree."""

    orchestration_session_exec_id: str
    session_id: str
    exec_nature: str
    exec_code: str
    exec_state: ExecState
    exec_status: int
    sibling_order: int
    started_at: datetime
    session_entry_id: str | None = None
    parent_exec_id: str | None = None
    namespace: str | None = None
    exec_identity: str | None = None
    input_text: str | None = None
    output_text: str | None = None
    output_nature: str | None = None
    exec_error_text: str | None = None
    narrative_md: str | None = None
    finished_at: datetime | None = None
    duration_ms: float | None = None
    failed_child_status: int | None = None
    status_overridden: bool = False

    def __post_init__(self) -> None:
        _validate_enum(self.exec_state, ExecState, "exec_state")

    @property
    def succeeded(self) -> bool:
        return self.exec_state == ExecState.FINISHED and self.exec_status == 0


@dataclass
class SessionIssue:
    """Append-only structured problem report."""

    orchestration_session_issue_id: int
    session_id: str
    issue_type: str
    issue_message: str
    created_at: datetime
    session_entry_id: str | None = None
    issue_row: int | None = None
    issue_column: str | None = None
    invalid_value: str | None = None
    remediation: str | None = None
    elaboration: str | None = None


@dataclass
class IssueRelation:
    """Link between two issues."""

    orchestration_session_issue_relation_id: int
    issue_id_prime: int
    issue_id_rel: int
    relationship_nature: str


@dataclass
class SessionLog:
    """Hierarchical log entry; sibling_order fixes replay order."""

    orchestration_session_log_id: int
    session_id: str
    content: str
    sibling_order: int
    created_at: datetime
    category: str | None = None
    parent_log_id: int | None = None
    exec_id: str | None = None


@dataclass
class ExecNode:
    """In-memory exec tree node built from the exec arena."""

    exec: SessionExec
    children: list["ExecNode"] = field(default_factory=list)


@dataclass
class LogNode:
    """In-memory log tree node built from the log arena."""

    log: SessionLog
    children: list["LogNode"] = field(default_factory=list)


@dataclass
class OrchestrationReport:
    """Per-exec status plus the aggregated issue list for one session."""

    session: OrchestrationSession
    execs: list[SessionExec]
    issues: list[SessionIssue]

    @property
    def failed_execs(self) -> list[SessionExec]:
        return [e for e in self.execs if e.exec_state == ExecState.FINISHED and e.exec_status != 0]

    @property
    def succeeded(self) -> bool:
        roots = [e for e in self.execs if e.parent_exec_id is None]
        return all(e.succeeded for e in roots)
