"""Error taxonomy and structured error payload contracts.

Exceptions are raised where a problem is detected and propagate to the
caller. Only adapter failures are captured and converted into records
(entry diagnostics and orchestration issues).

TypedDict schemas give structured error payloads a consistent shape in
the audit trail.
"""

from typing import Any, NotRequired, TypedDict


class ExecutionError(TypedDict):
    """Schema for exec failure payloads stored in exec_error_text."""

    exception: str  # String representation of the exception
    type: str  # Exception class name (e.g., "ValueError")
    traceback: NotRequired[str]


class EntryDiagnostics(TypedDict):
    """Schema for ur_diagnostics on path entries and tasks."""

    phase: str  # PathPhase value the entry reached
    message: NotRequired[str]
    error_type: NotRequired[str]
    rule_id: NotRequired[str | None]
    detail: NotRequired[dict[str, Any]]


class CairnError(Exception):
    """Base class for all errors raised by cairn."""


class ValidationError(CairnError):
    """Malformed structured payload or constraint violation.

    Raised before any write. Never retried automatically.
    """

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class ReferentialError(CairnError):
    """A required owner (device, session, parent, graph) does not exist.

    The caller must create the owner first.
    """


class DeviceUnknownError(ReferentialError):
    """Raised when an ingestion or orchestration session names an absent device."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Device {device_id!r} is not registered")


class UnknownGraphError(ReferentialError):
    """Raised when linking into a lineage graph that was never registered."""

    def __init__(self, graph_name: str) -> None:
        self.graph_name = graph_name
        super().__init__(f"Lineage graph {graph_name!r} is not registered")


class AlreadyClosedError(CairnError):
    """Raised on a second close/end of a session.

    Close is deliberately not idempotent so that double-close shows up as a
    programming error.
    """

    def __init__(self, kind: str, session_id: str) -> None:
        self.kind = kind
        self.session_id = session_id
        super().__init__(f"{kind} session {session_id!r} is already closed")


class AdapterError(CairnError):
    """Raised by a source adapter when it cannot produce a candidate.

    Captured by the ingestion manager as entry diagnostics and an issue;
    it never aborts sibling work.
    """

    def __init__(self, message: str, *, source_ref: str | None = None, remediation: str | None = None) -> None:
        self.source_ref = source_ref
        self.remediation = remediation
        super().__init__(message)


class ConcurrencyConflict(CairnError):
    """Raised only when a contended write could not be serialized.

    Races on admission and transition keys are normally resolved inside the
    store; this surfaces only after retries against a locked database are
    exhausted.
    """


class StoreIntegrityError(CairnError):
    """The store returned data that contradicts a write we just made.

    Fatal: indicates corruption or a broken transaction.
    """


class SchemaCompatibilityError(CairnError):
    """Raised when an existing database file is missing cairn tables."""
