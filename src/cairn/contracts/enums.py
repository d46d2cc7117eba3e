"""Status codes, phases, and kinds used across subsystem boundaries.

Values are stored as strings in the database. Repository code converts
them back into these enums on read and crashes on unknown values.
"""

from enum import StrEnum


class EntryStatus(StrEnum):
    """Terminal outcome of one discovered unit during ingestion.

    Stored in database (ur_ingest_session_fs_path_entry.ur_status and
    ur_ingest_session_task.ur_status).
    """

    ADMITTED = "admitted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    UNMATCHED = "unmatched"
    ERRORED = "errored"


class PathPhase(StrEnum):
    """Per-path lifecycle phase inside an ingestion session.

    DISCOVERING -> MATCHING -> RESOLVING -> {ADMITTED | REJECTED | ERRORED}
    """

    DISCOVERING = "discovering"
    MATCHING = "matching"
    RESOLVING = "resolving"
    ADMITTED = "admitted"
    REJECTED = "rejected"
    ERRORED = "errored"


class SessionLifecycle(StrEnum):
    """Lifecycle states recorded as orchestration session transitions."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IngestSource(StrEnum):
    """Kind of source an ingestion session reads from.

    Selects the source adapter at session-open time.
    """

    FILESYSTEM = "filesystem"
    MAILBOX = "mailbox"
    ISSUE_TRACKER = "issue_tracker"
    ENDPOINT_TELEMETRY = "endpoint_telemetry"
    NETWORK_TELEMETRY = "network_telemetry"


class ExecState(StrEnum):
    """Whether an orchestration exec node has been finished.

    Stored in database (orchestration_session_exec.exec_state).
    """

    OPEN = "open"
    FINISHED = "finished"


class IssueType(StrEnum):
    """Common issue categories. Callers may also pass free-form strings."""

    ADAPTER = "adapter"
    VALIDATION = "validation"
    REFERENTIAL = "referential"
    EXECUTION = "execution"
    WARNING = "warning"


# Exit codes used by the pipeline runner. Any non-zero value is a failure;
# the executor never interprets them beyond zero/non-zero.
EXEC_STATUS_OK = 0
EXEC_STATUS_FAILED = 1
