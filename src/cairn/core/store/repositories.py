"""Repository layer for store records.

Handles the seam between SQLAlchemy rows (strings) and domain objects
(strict enum types). This is NOT a trust boundary - if the database
has bad data, we crash. The store is OUR data.
"""

import json
from typing import Any

from sqlalchemy.engine import Row as SARow

from cairn.contracts.enums import EntryStatus, ExecState, IngestSource
from cairn.contracts.records import (
    Behavior,
    Device,
    IngestFsPath,
    IngestSession,
    IngestTask,
    IssueRelation,
    LineageEdge,
    OrchestrationSession,
    PathEntry,
    SessionEntry,
    SessionExec,
    SessionIssue,
    SessionLog,
    SessionState,
    UniformResource,
    UniformResourceTransform,
)


class DeviceRepository:
    """Repository for Device records."""

    def load(self, row: SARow[Any]) -> Device:
        return Device(
            device_id=row.device_id,
            name=row.name,
            state=row.state,
            boundary=row.boundary,
            created_at=row.created_at,
            created_by=row.created_by,
            segmentation=row.segmentation,
            state_sysinfo=row.state_sysinfo,
            elaboration=row.elaboration,
            deleted_at=row.deleted_at,
            deleted_by=row.deleted_by,
        )


class BehaviorRepository:
    """Repository for Behavior records."""

    def load(self, row: SARow[Any]) -> Behavior:
        return Behavior(
            behavior_id=row.behavior_id,
            device_id=row.device_id,
            behavior_name=row.behavior_name,
            behavior_conf_json=row.behavior_conf_json,
            created_at=row.created_at,
        )


class IngestSessionRepository:
    """Repository for IngestSession records."""

    def load(self, row: SARow[Any]) -> IngestSession:
        return IngestSession(
            ingest_session_id=row.ur_ingest_session_id,
            device_id=row.device_id,
            session_agent=row.session_agent,
            source=IngestSource(row.source),  # Convert HERE
            ingest_started_at=row.ingest_started_at,
            ingest_finished_at=row.ingest_finished_at,
            behavior_id=row.behavior_id,
            behavior_json=row.behavior_json,
            elaboration=row.elaboration,
        )


class IngestFsPathRepository:
    """Repository for IngestFsPath records."""

    def load(self, row: SARow[Any]) -> IngestFsPath:
        return IngestFsPath(
            ingest_fs_path_id=row.ur_ingest_session_fs_path_id,
            ingest_session_id=row.ingest_session_id,
            root_path=row.root_path,
            include_glob_patterns=json.loads(row.include_glob_patterns) if row.include_glob_patterns is not None else None,
            exclude_glob_patterns=json.loads(row.exclude_glob_patterns) if row.exclude_glob_patterns is not None else None,
        )


class UniformResourceRepository:
    """Repository for UniformResource records."""

    def load(self, row: SARow[Any]) -> UniformResource:
        return UniformResource(
            uniform_resource_id=row.uniform_resource_id,
            device_id=row.device_id,
            ingest_session_id=row.ingest_session_id,
            uri=row.uri,
            content_digest=row.content_digest,
            size_bytes=row.size_bytes,
            created_at=row.created_at,
            nature=row.nature,
            content=row.content,
            content_ref=row.content_ref,
            ingest_fs_path_id=row.ingest_fs_path_id,
            ingest_imap_acct_folder_id=row.ingest_imap_acct_folder_id,
            ingest_plm_acct_project_id=row.ingest_plm_acct_project_id,
            last_modified_at=row.last_modified_at,
            frontmatter=row.frontmatter,
            content_fm_body_attrs=row.content_fm_body_attrs,
            elaboration=row.elaboration,
            deleted_at=row.deleted_at,
        )


class UniformResourceTransformRepository:
    """Repository for UniformResourceTransform records."""

    def load(self, row: SARow[Any]) -> UniformResourceTransform:
        return UniformResourceTransform(
            uniform_resource_transform_id=row.uniform_resource_transform_id,
            uniform_resource_id=row.uniform_resource_id,
            uri=row.uri,
            content_digest=row.content_digest,
            size_bytes=row.size_bytes,
            created_at=row.created_at,
            nature=row.nature,
            content=row.content,
            elaboration=row.elaboration,
        )


class PathEntryRepository:
    """Repository for PathEntry records."""

    def load(self, row: SARow[Any]) -> PathEntry:
        return PathEntry(
            ur_ingest_session_fs_path_entry_id=row.ur_ingest_session_fs_path_entry_id,
            ingest_session_id=row.ingest_session_id,
            ingest_fs_path_id=row.ingest_fs_path_id,
            file_path_abs=row.file_path_abs,
            file_path_rel_parent=row.file_path_rel_parent,
            file_path_rel=row.file_path_rel,
            file_basename=row.file_basename,
            ur_status=EntryStatus(row.ur_status),
            created_at=row.created_at,
            file_extn=row.file_extn,
            uniform_resource_id=row.uniform_resource_id,
            captured_executable=row.captured_executable,
            ur_diagnostics=row.ur_diagnostics,
            ur_transformations=row.ur_transformations,
        )


class IngestTaskRepository:
    """Repository for IngestTask records."""

    def load(self, row: SARow[Any]) -> IngestTask:
        return IngestTask(
            ur_ingest_session_task_id=row.ur_ingest_session_task_id,
            ingest_session_id=row.ingest_session_id,
            captured_executable=row.captured_executable,
            ur_status=EntryStatus(row.ur_status),
            created_at=row.created_at,
            uniform_resource_id=row.uniform_resource_id,
            ur_diagnostics=row.ur_diagnostics,
            ur_transformations=row.ur_transformations,
        )


class LineageEdgeRepository:
    """Repository for LineageEdge records."""

    def load(self, row: SARow[Any]) -> LineageEdge:
        return LineageEdge(
            graph_name=row.graph_name,
            nature=row.nature,
            node_id=row.node_id,
            uniform_resource_id=row.uniform_resource_id,
            created_at=row.created_at,
            elaboration=row.elaboration,
        )


class OrchestrationSessionRepository:
    """Repository for OrchestrationSession records."""

    def load(self, row: SARow[Any]) -> OrchestrationSession:
        return OrchestrationSession(
            orchestration_session_id=row.orchestration_session_id,
            device_id=row.device_id,
            orchestration_nature_id=row.orchestration_nature_id,
            version=row.version,
            orch_started_at=row.orch_started_at,
            orch_finished_at=row.orch_finished_at,
            args_json=row.args_json,
            diagnostics_json=row.diagnostics_json,
            diagnostics_md=row.diagnostics_md,
            elaboration=row.elaboration,
        )


class SessionEntryRepository:
    """Repository for SessionEntry records."""

    def load(self, row: SARow[Any]) -> SessionEntry:
        return SessionEntry(
            orchestration_session_entry_id=row.orchestration_session_entry_id,
            session_id=row.session_id,
            ingest_src=row.ingest_src,
            created_at=row.created_at,
            ingest_table_name=row.ingest_table_name,
            elaboration=row.elaboration,
        )


class SessionStateRepository:
    """Repository for SessionState records."""

    def load(self, row: SARow[Any]) -> SessionState:
        return SessionState(
            orchestration_session_state_id=row.orchestration_session_state_id,
            session_id=row.session_id,
            owner_id=row.owner_id,
            from_state=row.from_state,
            to_state=row.to_state,
            transitioned_at=row.transitioned_at,
            transition_count=row.transition_count,
            session_entry_id=row.session_entry_id,
            transition_result=row.transition_result,
            transition_reason=row.transition_reason,
        )


class SessionExecRepository:
    """Repository for SessionExec records."""

    def load(self, row: SARow[Any]) -> SessionExec:
        return SessionExec(
            orchestration_session_exec_id=row.orchestration_session_exec_id,
            session_id=row.session_id,
            exec_nature=row.exec_nature,
            exec_code=row.exec_code,
            exec_state=ExecState(row.exec_state),
            exec_status=row.exec_status,
            sibling_order=row.sibling_order,
            started_at=row.started_at,
            session_entry_id=row.session_entry_id,
            parent_exec_id=row.parent_exec_id,
            namespace=row.namespace,
            exec_identity=row.exec_identity,
            input_text=row.input_text,
            output_text=row.output_text,
            output_nature=row.output_nature,
            exec_error_text=row.exec_error_text,
            narrative_md=row.narrative_md,
            finished_at=row.finished_at,
            duration_ms=row.duration_ms,
            failed_child_status=row.failed_child_status,
            status_overridden=bool(row.status_overridden),
        )


class SessionIssueRepository:
    """Repository for SessionIssue records."""

    def load(self, row: SARow[Any]) -> SessionIssue:
        return SessionIssue(
            orchestration_session_issue_id=row.orchestration_session_issue_id,
            session_id=row.session_id,
            issue_type=row.issue_type,
            issue_message=row.issue_message,
            created_at=row.created_at,
            session_entry_id=row.session_entry_id,
            issue_row=row.issue_row,
            issue_column=row.issue_column,
            invalid_value=row.invalid_value,
            remediation=row.remediation,
            elaboration=row.elaboration,
        )


class IssueRelationRepository:
    """Repository for IssueRelation records."""

    def load(self, row: SARow[Any]) -> IssueRelation:
        return IssueRelation(
            orchestration_session_issue_relation_id=row.orchestration_session_issue_relation_id,
            issue_id_prime=row.issue_id_prime,
            issue_id_rel=row.issue_id_rel,
            relationship_nature=row.relationship_nature,
        )


class SessionLogRepository:
    """Repository for SessionLog records."""

    def load(self, row: SARow[Any]) -> SessionLog:
        return SessionLog(
            orchestration_session_log_id=row.orchestration_session_log_id,
            session_id=row.session_id,
            content=row.content,
            sibling_order=row.sibling_order,
            created_at=row.created_at,
            category=row.category,
            parent_log_id=row.parent_log_id,
            exec_id=row.exec_id,
        )
