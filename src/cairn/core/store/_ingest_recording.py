"""Ingestion session recording methods for StoreRecorder.

Covers sessions, their source containers (filesystem roots, mailbox
folders, issue-tracker projects), per-path entries, tasks, and the
persisted path match/rewrite rules.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, func, select

from cairn.contracts import (
    AlreadyClosedError,
    EntryStatus,
    IngestFsPath,
    IngestSession,
    IngestSource,
    IngestTask,
    PathEntry,
    PathMatchRule,
    PathRewriteRule,
    ReferentialError,
    ValidationError,
)
from cairn.core.canonical import validate_structured
from cairn.core.store._database_ops import insert_if_absent
from cairn.core.store._device_recording import require_live_device
from cairn.core.store._helpers import coerce_enum, created_by, generate_id, live, now, updated_by
from cairn.core.store.schema import (
    fs_path_entry_table,
    imap_acct_folder_table,
    imap_account_table,
    ingest_fs_path_table,
    ingest_session_table,
    ingest_task_table,
    path_match_rule_table,
    path_rewrite_rule_table,
    plm_acct_project_table,
    plm_account_table,
)

if TYPE_CHECKING:
    import structlog

    from cairn.core.store._database_ops import DatabaseOps
    from cairn.core.store.repositories import (
        IngestFsPathRepository,
        IngestSessionRepository,
        IngestTaskRepository,
        PathEntryRepository,
    )


def require_ingest_session(conn: Connection, session_id: str) -> Any:
    """Fetch an ingest session row inside an open transaction.

    Closed sessions are returned too; late records stay linked to them.

    Raises:
        ReferentialError: If the session does not exist
    """
    row = conn.execute(select(ingest_session_table).where(ingest_session_table.c.ur_ingest_session_id == session_id)).first()
    if row is None:
        raise ReferentialError(f"Ingest session {session_id!r} does not exist")
    return row


def _globs_json(globs: Any, field: str) -> str | None:
    if globs is None:
        return None
    return validate_structured(list(globs), field)


class IngestRecordingMixin:
    """Ingestion session methods. Mixed into StoreRecorder."""

    # Shared state annotations (set by StoreRecorder.__init__)
    _ops: DatabaseOps
    _actor: str
    _log: structlog.stdlib.BoundLogger
    _ingest_session_repo: IngestSessionRepository
    _fs_path_repo: IngestFsPathRepository
    _path_entry_repo: PathEntryRepository
    _task_repo: IngestTaskRepository

    # === Sessions ===

    def open_ingest_session(
        self,
        device_id: str,
        agent: str,
        *,
        source: IngestSource | str = IngestSource.FILESYSTEM,
        behavior_id: str | None = None,
        behavior_json: Any = None,
        session_id: str | None = None,
        elaboration: Any = None,
    ) -> IngestSession:
        """Open a new ingestion session for a live device.

        Raises:
            DeviceUnknownError: If the device is absent or soft-deleted
            AlreadyClosedError: If session_id names a session that already finished
            ValidationError: If session_id names a session that is still open
        """
        source = coerce_enum(source, IngestSource)
        behavior_text = validate_structured(behavior_json, "behavior_json")
        elaboration_json = validate_structured(elaboration, "elaboration")
        session_id = session_id or generate_id()
        timestamp = now()

        def _op(conn: Connection) -> Any:
            require_live_device(conn, device_id)
            existing = conn.execute(
                select(ingest_session_table.c.ingest_finished_at).where(ingest_session_table.c.ur_ingest_session_id == session_id)
            ).first()
            if existing is not None:
                if existing.ingest_finished_at is not None:
                    raise AlreadyClosedError("ingest", session_id)
                raise ValidationError(f"Ingest session {session_id!r} is already open", field="session_id")
            conn.execute(
                ingest_session_table.insert().values(
                    ur_ingest_session_id=session_id,
                    device_id=device_id,
                    behavior_id=behavior_id,
                    behavior_json=behavior_text,
                    session_agent=agent,
                    source=source.value,
                    ingest_started_at=timestamp,
                    elaboration=elaboration_json,
                    **created_by(self._actor, timestamp),
                )
            )
            return require_ingest_session(conn, session_id)

        return self._ingest_session_repo.load(self._ops.transaction(_op))

    def close_ingest_session(self, session_id: str) -> IngestSession:
        """Set ingest_finished_at.

        Raises:
            ReferentialError: If the session does not exist
            AlreadyClosedError: If the session already finished
        """
        timestamp = now()

        def _op(conn: Connection) -> Any:
            row = require_ingest_session(conn, session_id)
            if row.ingest_finished_at is not None:
                raise AlreadyClosedError("ingest", session_id)
            conn.execute(
                ingest_session_table.update()
                .where(ingest_session_table.c.ur_ingest_session_id == session_id)
                .values(ingest_finished_at=timestamp, **updated_by(self._actor, timestamp))
            )
            return require_ingest_session(conn, session_id)

        return self._ingest_session_repo.load(self._ops.transaction(_op))

    def get_ingest_session(self, session_id: str, *, include_deleted: bool = False) -> IngestSession | None:
        query = select(ingest_session_table).where(
            ingest_session_table.c.ur_ingest_session_id == session_id,
            *live(ingest_session_table, include_deleted),
        )
        row = self._ops.execute_fetchone(query)
        return self._ingest_session_repo.load(row) if row is not None else None

    def list_ingest_sessions(self, device_id: str, *, include_deleted: bool = False) -> list[IngestSession]:
        query = (
            select(ingest_session_table)
            .where(ingest_session_table.c.device_id == device_id, *live(ingest_session_table, include_deleted))
            .order_by(ingest_session_table.c.ingest_started_at)
        )
        return [self._ingest_session_repo.load(r) for r in self._ops.execute_fetchall(query)]

    # === Source containers ===

    def register_fs_path(
        self,
        session_id: str,
        root_path: str,
        include_globs: Any = None,
        exclude_globs: Any = None,
    ) -> IngestFsPath:
        """Register a filesystem root for a session. Re-registering returns the existing root."""
        values = {
            "ur_ingest_session_fs_path_id": generate_id(),
            "ingest_session_id": session_id,
            "root_path": root_path,
            "include_glob_patterns": _globs_json(include_globs, "include_glob_patterns"),
            "exclude_glob_patterns": _globs_json(exclude_globs, "exclude_glob_patterns"),
            **created_by(self._actor, now()),
        }

        def _op(conn: Connection) -> Any:
            require_ingest_session(conn, session_id)
            row, _ = insert_if_absent(conn, ingest_fs_path_table, values, ("ingest_session_id", "root_path"))
            return row

        return self._fs_path_repo.load(self._ops.transaction(_op))

    def get_fs_path(self, path_id: str) -> IngestFsPath | None:
        row = self._ops.execute_fetchone(select(ingest_fs_path_table).where(ingest_fs_path_table.c.ur_ingest_session_fs_path_id == path_id))
        return self._fs_path_repo.load(row) if row is not None else None

    def register_imap_folder(
        self,
        session_id: str,
        email: str,
        host: str,
        folder_name: str,
        *,
        include_senders: Any = None,
        exclude_senders: Any = None,
    ) -> str:
        """Register a mailbox account + folder for a session and return the folder id."""
        timestamp = now()
        include_json = _globs_json(include_senders, "include_senders")
        exclude_json = _globs_json(exclude_senders, "exclude_senders")

        def _op(conn: Connection) -> str:
            require_ingest_session(conn, session_id)
            account, _ = insert_if_absent(
                conn,
                imap_account_table,
                {
                    "ur_ingest_session_imap_account_id": generate_id(),
                    "ingest_session_id": session_id,
                    "email": email,
                    "host": host,
                    **created_by(self._actor, timestamp),
                },
                ("ingest_session_id", "email", "host"),
            )
            folder, _ = insert_if_absent(
                conn,
                imap_acct_folder_table,
                {
                    "ur_ingest_session_imap_acct_folder_id": generate_id(),
                    "ingest_session_id": session_id,
                    "ingest_account_id": account.ur_ingest_session_imap_account_id,
                    "folder_name": folder_name,
                    "include_senders": include_json,
                    "exclude_senders": exclude_json,
                    **created_by(self._actor, timestamp),
                },
                ("ingest_account_id", "folder_name"),
            )
            return str(folder.ur_ingest_session_imap_acct_folder_id)

        return self._ops.transaction(_op)

    def register_plm_project(
        self,
        session_id: str,
        provider: str,
        org_name: str,
        project_name: str,
        *,
        description: str | None = None,
    ) -> str:
        """Register an issue-tracker account + project for a session and return the project id."""
        timestamp = now()

        def _op(conn: Connection) -> str:
            require_ingest_session(conn, session_id)
            account, _ = insert_if_absent(
                conn,
                plm_account_table,
                {
                    "ur_ingest_session_plm_account_id": generate_id(),
                    "ingest_session_id": session_id,
                    "provider": provider,
                    "org_name": org_name,
                    **created_by(self._actor, timestamp),
                },
                ("ingest_session_id", "provider", "org_name"),
            )
            project, _ = insert_if_absent(
                conn,
                plm_acct_project_table,
                {
                    "ur_ingest_session_plm_acct_project_id": generate_id(),
                    "ingest_session_id": session_id,
                    "ingest_account_id": account.ur_ingest_session_plm_account_id,
                    "name": project_name,
                    "description": description,
                    **created_by(self._actor, timestamp),
                },
                ("ingest_account_id", "name"),
            )
            return str(project.ur_ingest_session_plm_acct_project_id)

        return self._ops.transaction(_op)

    # === Entries and tasks ===

    def record_path_entry(
        self,
        *,
        session_id: str,
        fs_path_id: str,
        file_path_abs: str,
        file_path_rel_parent: str,
        file_path_rel: str,
        file_basename: str,
        file_extn: str | None,
        status: EntryStatus,
        resource_id: str | None = None,
        captured_executable: Any = None,
        diagnostics: Any = None,
        transformations: Any = None,
    ) -> PathEntry:
        """Record what was attempted for one file.

        The key (session, root, absolute path) is unique; recording the same
        file twice in a session returns the first entry unchanged.
        """
        values = {
            "ur_ingest_session_fs_path_entry_id": generate_id(),
            "ingest_session_id": session_id,
            "ingest_fs_path_id": fs_path_id,
            "uniform_resource_id": resource_id,
            "file_path_abs": file_path_abs,
            "file_path_rel_parent": file_path_rel_parent,
            "file_path_rel": file_path_rel,
            "file_basename": file_basename,
            "file_extn": file_extn,
            "captured_executable": validate_structured(captured_executable, "captured_executable"),
            "ur_status": status.value,
            "ur_diagnostics": validate_structured(diagnostics, "ur_diagnostics"),
            "ur_transformations": validate_structured(transformations, "ur_transformations"),
            **created_by(self._actor, now()),
        }

        def _op(conn: Connection) -> Any:
            require_ingest_session(conn, session_id)
            row, _ = insert_if_absent(conn, fs_path_entry_table, values, ("ingest_session_id", "ingest_fs_path_id", "file_path_abs"))
            return row

        return self._path_entry_repo.load(self._ops.transaction(_op))

    def find_path_entry(self, session_id: str, fs_path_id: str, file_path_abs: str) -> PathEntry | None:
        """Entry already recorded for this file under this root in the session, if any."""
        t = fs_path_entry_table
        query = select(t).where(
            t.c.ingest_session_id == session_id,
            t.c.ingest_fs_path_id == fs_path_id,
            t.c.file_path_abs == file_path_abs,
            *live(t),
        )
        row = self._ops.execute_fetchone(query)
        return self._path_entry_repo.load(row) if row is not None else None

    def list_path_entries(
        self, session_id: str, *, status: EntryStatus | None = None, include_deleted: bool = False
    ) -> list[PathEntry]:
        clauses = [fs_path_entry_table.c.ingest_session_id == session_id, *live(fs_path_entry_table, include_deleted)]
        if status is not None:
            clauses.append(fs_path_entry_table.c.ur_status == status.value)
        query = select(fs_path_entry_table).where(*clauses).order_by(fs_path_entry_table.c.file_path_abs)
        return [self._path_entry_repo.load(r) for r in self._ops.execute_fetchall(query)]

    def record_task(
        self,
        session_id: str,
        captured_executable: Any,
        status: EntryStatus,
        *,
        resource_id: str | None = None,
        diagnostics: Any = None,
        transformations: Any = None,
    ) -> IngestTask:
        """Record a non-filesystem unit of work (telemetry query, command capture)."""
        executable_json = validate_structured(captured_executable, "captured_executable")
        if executable_json is None:
            raise ValidationError("captured_executable is required for tasks", field="captured_executable")
        task_id = generate_id()
        values = {
            "ur_ingest_session_task_id": task_id,
            "ingest_session_id": session_id,
            "uniform_resource_id": resource_id,
            "captured_executable": executable_json,
            "ur_status": status.value,
            "ur_diagnostics": validate_structured(diagnostics, "ur_diagnostics"),
            "ur_transformations": validate_structured(transformations, "ur_transformations"),
            **created_by(self._actor, now()),
        }

        def _op(conn: Connection) -> Any:
            require_ingest_session(conn, session_id)
            conn.execute(ingest_task_table.insert().values(**values))
            return conn.execute(select(ingest_task_table).where(ingest_task_table.c.ur_ingest_session_task_id == task_id)).one()

        return self._task_repo.load(self._ops.transaction(_op))

    def list_tasks(self, session_id: str, *, include_deleted: bool = False) -> list[IngestTask]:
        query = select(ingest_task_table).where(
            ingest_task_table.c.ingest_session_id == session_id, *live(ingest_task_table, include_deleted)
        ).order_by(ingest_task_table.c.created_at)
        return [self._task_repo.load(r) for r in self._ops.execute_fetchall(query)]

    # === Path rules ===

    def save_match_rule(self, rule: PathMatchRule) -> PathMatchRule:
        """Persist a match rule; (namespace, regex) is unique, first declaration wins."""
        values = {
            "ur_ingest_resource_path_match_rule_id": generate_id(),
            "namespace": rule.namespace,
            "regex": rule.regex,
            "flags": rule.flags,
            "nature": rule.nature,
            "priority": rule.priority,
            "include_globs": _globs_json(rule.include_globs or None, "include_globs"),
            "exclude_globs": _globs_json(rule.exclude_globs or None, "exclude_globs"),
            "description": rule.description,
            **created_by(self._actor, now()),
        }

        def _op(conn: Connection) -> Any:
            current = conn.execute(select(func.max(path_match_rule_table.c.rule_order))).scalar()
            values["rule_order"] = (current if current is not None else -1) + 1
            row, _ = insert_if_absent(conn, path_match_rule_table, values, ("namespace", "regex"))
            return row

        return _load_match_rule(self._ops.transaction(_op))

    def save_rewrite_rule(self, rule: PathRewriteRule) -> PathRewriteRule:
        """Persist a rewrite rule; (namespace, regex, replace) is unique."""
        values = {
            "ur_ingest_resource_path_rewrite_rule_id": generate_id(),
            "namespace": rule.namespace,
            "regex": rule.regex,
            "replace": rule.replace,
            "priority": rule.priority,
            "description": rule.description,
            **created_by(self._actor, now()),
        }

        def _op(conn: Connection) -> Any:
            current = conn.execute(select(func.max(path_rewrite_rule_table.c.rule_order))).scalar()
            values["rule_order"] = (current if current is not None else -1) + 1
            row, _ = insert_if_absent(conn, path_rewrite_rule_table, values, ("namespace", "regex", "replace"))
            return row

        return _load_rewrite_rule(self._ops.transaction(_op))

    def list_match_rules(self, namespace: str | None = None) -> list[PathMatchRule]:
        """Live match rules in declaration order."""
        t = path_match_rule_table
        clauses = live(t)
        if namespace is not None:
            clauses.append(t.c.namespace == namespace)
        rows = self._ops.execute_fetchall(select(t).where(*clauses).order_by(t.c.rule_order))
        return [_load_match_rule(r) for r in rows]

    def list_rewrite_rules(self, namespace: str | None = None) -> list[PathRewriteRule]:
        """Live rewrite rules in declaration order."""
        t = path_rewrite_rule_table
        clauses = live(t)
        if namespace is not None:
            clauses.append(t.c.namespace == namespace)
        rows = self._ops.execute_fetchall(select(t).where(*clauses).order_by(t.c.rule_order))
        return [_load_rewrite_rule(r) for r in rows]


def _load_match_rule(row: Any) -> PathMatchRule:
    return PathMatchRule(
        namespace=row.namespace,
        regex=row.regex,
        flags=row.flags,
        nature=row.nature,
        priority=row.priority,
        include_globs=tuple(json.loads(row.include_globs)) if row.include_globs is not None else (),
        exclude_globs=tuple(json.loads(row.exclude_globs)) if row.exclude_globs is not None else (),
        description=row.description,
        rule_id=row.ur_ingest_resource_path_match_rule_id,
    )


def _load_rewrite_rule(row: Any) -> PathRewriteRule:
    return PathRewriteRule(
        namespace=row.namespace,
        regex=row.regex,
        replace=row.replace,
        priority=row.priority,
        description=row.description,
        rule_id=row.ur_ingest_resource_path_rewrite_rule_id,
    )
