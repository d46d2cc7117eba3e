"""Shared contracts for cross-boundary data types.

All dataclasses, enums, TypedDicts, and Protocols that cross subsystem
boundaries are defined here.

This package is a LEAF MODULE with no outbound dependencies to core,
ingest, or engine. Settings classes are NOT re-exported here - import them
from cairn.core.config.
"""

from cairn.contracts.adapters import Candidate, SourceAdapter, SourceRef
from cairn.contracts.enums import (
    EXEC_STATUS_FAILED,
    EXEC_STATUS_OK,
    EntryStatus,
    ExecState,
    IngestSource,
    IssueType,
    PathPhase,
    SessionLifecycle,
)
from cairn.contracts.errors import (
    AdapterError,
    AlreadyClosedError,
    CairnError,
    ConcurrencyConflict,
    DeviceUnknownError,
    EntryDiagnostics,
    ExecutionError,
    ReferentialError,
    SchemaCompatibilityError,
    StoreIntegrityError,
    UnknownGraphError,
    ValidationError,
)
from cairn.contracts.events import EntryIssue, ResourceAdmitted
from cairn.contracts.payload_store import IntegrityError, PayloadStore
from cairn.contracts.records import (
    Admission,
    Behavior,
    Device,
    DeviceIdentity,
    ExecNode,
    IngestFsPath,
    IngestSession,
    IngestSummary,
    IngestTask,
    IssueRelation,
    LineageEdge,
    LogNode,
    OrchestrationReport,
    OrchestrationSession,
    PathEntry,
    SessionEntry,
    SessionExec,
    SessionIssue,
    SessionLog,
    SessionState,
    TransformAdmission,
    UniformResource,
    UniformResourceTransform,
)
from cairn.contracts.rules import PathMatchRule, PathRewriteRule

__all__ = [
    "EXEC_STATUS_FAILED",
    "EXEC_STATUS_OK",
    "AdapterError",
    "Admission",
    "AlreadyClosedError",
    "Behavior",
    "CairnError",
    "Candidate",
    "ConcurrencyConflict",
    "Device",
    "DeviceIdentity",
    "DeviceUnknownError",
    "EntryDiagnostics",
    "EntryIssue",
    "EntryStatus",
    "ExecNode",
    "ExecState",
    "ExecutionError",
    "IngestFsPath",
    "IngestSession",
    "IngestSource",
    "IngestSummary",
    "IngestTask",
    "IntegrityError",
    "IssueRelation",
    "IssueType",
    "LineageEdge",
    "LogNode",
    "OrchestrationReport",
    "OrchestrationSession",
    "PathEntry",
    "PathMatchRule",
    "PathPhase",
    "PathRewriteRule",
    "PayloadStore",
    "ReferentialError",
    "ResourceAdmitted",
    "SchemaCompatibilityError",
    "SessionEntry",
    "SessionExec",
    "SessionIssue",
    "SessionLifecycle",
    "SessionLog",
    "SessionState",
    "SourceAdapter",
    "SourceRef",
    "StoreIntegrityError",
    "TransformAdmission",
    "UniformResource",
    "UniformResourceTransform",
    "UnknownGraphError",
    "ValidationError",
]
