# src/cairn/engine/executor.py
"""OrchestrationExecutor: records orchestration runs as exec and log trees.

The executor is a thin, thread-safe facade over the store recorder:
- Sessions and entries frame a run and its units of work
- Exec nodes form a call tree; a failed child fails its parent unless
  the parent is finished with override=True
- Issues are append-only and never change exec status
- Transitions overwrite per (owner, from, to)
- Logs form a tree ordered by sibling order, not wall-clock time

Trees are stored as arenas (rows with an explicit parent id) and built in
memory by indexing children by parent id.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from cairn.contracts import (
    EntryIssue,
    ExecNode,
    ExecutionError,
    LogNode,
    OrchestrationReport,
    OrchestrationSession,
    ReferentialError,
    SessionExec,
    SessionIssue,
    SessionLog,
    SessionState,
)
from cairn.engine.handle import ExecHandle

if TYPE_CHECKING:
    from cairn.contracts import IssueRelation
    from cairn.core.store.recorder import StoreRecorder

logger = structlog.get_logger(__name__)

N = TypeVar("N", ExecNode, LogNode)


def error_payload(exec_row: SessionExec) -> ExecutionError | None:
    """Decode exec_error_text written from an exception, payload or plain text."""
    if exec_row.exec_error_text is None:
        return None
    try:
        payload = json.loads(exec_row.exec_error_text)
    except json.JSONDecodeError:
        return {"exception": exec_row.exec_error_text, "type": "str"}
    if isinstance(payload, dict) and "exception" in payload and "type" in payload:
        return payload  # type: ignore[return-value]
    return {"exception": exec_row.exec_error_text, "type": "str"}


def _build_tree(
    items: Iterable[Any],
    node_id: Callable[[Any], Any],
    parent_id: Callable[[Any], Any],
    order: Callable[[Any], tuple[Any, ...]],
    make: Callable[[Any], N],
) -> list[N]:
    """Index children by parent id and assemble roots (no live references kept)."""
    nodes: dict[Any, N] = {}
    children: dict[Any, list[Any]] = {}
    for item in sorted(items, key=order):
        nodes[node_id(item)] = make(item)
        children.setdefault(parent_id(item), []).append(node_id(item))

    for key, child_ids in children.items():
        if key is None:
            continue
        parent = nodes.get(key)
        if parent is None:
            raise ReferentialError(f"Tree node {child_ids[0]!r} references missing parent {key!r}")
        parent.children.extend(nodes[c] for c in child_ids)
    return [nodes[c] for c in children.get(None, [])]


class OrchestrationExecutor:
    """Records orchestration sessions, exec trees, issues, transitions and logs.

    Example:
        executor = OrchestrationExecutor(recorder)
        session_id = executor.begin_session(device.device_id, "nightly", "1.0")
        entry_id = executor.begin_entry(session_id, "/srv/docs")
        with executor.begin_exec(session_id, "ingest", entry_id=entry_id) as step:
            step.log("started", category="info")
        executor.end_session(session_id)
        report = executor.report(session_id)
    """

    def __init__(self, recorder: StoreRecorder) -> None:
        self._recorder = recorder

    @property
    def recorder(self) -> StoreRecorder:
        return self._recorder

    # === Sessions and entries ===

    def begin_session(
        self,
        device_id: str,
        nature: str,
        version: str,
        args: Any = None,
        *,
        session_id: str | None = None,
        elaboration: Any = None,
    ) -> str:
        """Start an orchestration session; the nature is registered on first use.

        Raises:
            DeviceUnknownError: If the device is absent or soft-deleted
            ValidationError: If args is not structured data
        """
        session = self._recorder.begin_orchestration_session(
            device_id, nature, version, args, session_id=session_id, elaboration=elaboration
        )
        logger.info(
            "orchestration_session_started",
            session_id=session.orchestration_session_id,
            device_id=device_id,
            nature=nature,
            version=version,
        )
        return session.orchestration_session_id

    def begin_entry(
        self,
        session_id: str,
        ingest_src: str,
        *,
        ingest_table_name: str | None = None,
        elaboration: Any = None,
    ) -> str:
        entry = self._recorder.begin_session_entry(session_id, ingest_src, ingest_table_name=ingest_table_name, elaboration=elaboration)
        return entry.orchestration_session_entry_id

    def end_session(self, session_id: str, *, diagnostics: Any = None, diagnostics_md: str | None = None) -> OrchestrationSession:
        """Mark the session finished. Records arriving later stay linked to it.

        Raises:
            AlreadyClosedError: On a second call
        """
        session = self._recorder.end_orchestration_session(session_id, diagnostics=diagnostics, diagnostics_md=diagnostics_md)
        logger.info("orchestration_session_ended", session_id=session_id)
        return session

    # === Exec tree ===

    def begin_exec(
        self,
        session_id: str,
        code: str,
        input_text: str | None = None,
        *,
        parent: ExecHandle | str | None = None,
        entry_id: str | None = None,
        nature: str = "exec",
        identity: str | None = None,
        namespace: str | None = None,
        narrative_md: str | None = None,
        elaboration: Any = None,
    ) -> ExecHandle:
        """Open an exec node, optionally under a parent exec of the same session.

        Safe to call concurrently for children of one parent; each child gets
        a distinct, monotonically increasing sibling order.

        Raises:
            ReferentialError: If the parent belongs to another session
        """
        parent_id = parent.exec_id if isinstance(parent, ExecHandle) else parent
        record = self._recorder.begin_exec(
            session_id,
            code,
            input_text,
            parent_exec_id=parent_id,
            session_entry_id=entry_id,
            nature=nature,
            identity=identity,
            namespace=namespace,
            narrative_md=narrative_md,
            elaboration=elaboration,
        )
        logger.debug(
            "exec_started",
            exec_id=record.orchestration_session_exec_id,
            session_id=session_id,
            parent_exec_id=parent_id,
            code=code,
            sibling_order=record.sibling_order,
        )
        return ExecHandle(self, record)

    def finish_exec(
        self,
        handle: ExecHandle | str,
        status: int,
        *,
        output: str | None = None,
        error: str | BaseException | ExecutionError | None = None,
        output_nature: str | None = None,
        narrative_md: str | None = None,
        override: bool = False,
    ) -> SessionExec:
        """Finish an exec with a numeric status (0 is success).

        The stored status becomes the first failed child's status when this
        exec finishes with 0, unless override is True.

        Raises:
            AlreadyClosedError: If the exec was already finished
        """
        exec_id = handle.exec_id if isinstance(handle, ExecHandle) else handle
        return self._recorder.finish_exec(
            exec_id,
            status,
            output=output,
            error=error,
            output_nature=output_nature,
            narrative_md=narrative_md,
            override=override,
        )

    def exec_tree(self, session_id: str) -> list[ExecNode]:
        """Root exec nodes of the session with children in sibling order."""
        return _build_tree(
            self._recorder.list_execs(session_id),
            node_id=lambda e: e.orchestration_session_exec_id,
            parent_id=lambda e: e.parent_exec_id,
            order=lambda e: (e.sibling_order, e.started_at),
            make=ExecNode,
        )

    # === Issues ===

    def record_issue(
        self,
        session_id: str,
        issue_type: str,
        message: str,
        *,
        entry_id: str | None = None,
        row: int | None = None,
        column: str | None = None,
        invalid_value: str | None = None,
        remediation: str | None = None,
        elaboration: Any = None,
    ) -> SessionIssue:
        """Append an issue. Issues never change any exec's status."""
        return self._recorder.record_issue(
            session_id,
            issue_type,
            message,
            session_entry_id=entry_id,
            issue_row=row,
            issue_column=column,
            invalid_value=invalid_value,
            remediation=remediation,
            elaboration=elaboration,
        )

    def relate_issues(self, prime_issue_id: int, related_issue_id: int, nature: str) -> IssueRelation:
        return self._recorder.relate_issues(prime_issue_id, related_issue_id, nature)

    def issue_listener(self, session_id: str, entry_id: str | None = None) -> Callable[[EntryIssue], None]:
        """Listener forwarding ingestion entry issues into this session's issues."""

        def _forward(event: EntryIssue) -> None:
            self.record_issue(
                session_id,
                event.issue_type,
                event.message,
                entry_id=entry_id,
                invalid_value=event.invalid_value,
                remediation=event.remediation,
                elaboration={
                    "ingest_session_id": event.ingest_session_id,
                    "source_ref": event.source_ref,
                    "status": event.status.value,
                },
            )

        return _forward

    # === Transitions ===

    def record_transition(
        self,
        owner_id: str,
        from_state: str,
        to_state: str,
        result: str | None = None,
        reason: str | None = None,
    ) -> SessionState:
        """Record a transition of a session or entry; repeats overwrite the previous row."""
        return self._recorder.record_transition(owner_id, str(from_state), str(to_state), result, reason)

    # === Logs ===

    def log(
        self,
        session_id: str,
        content: str,
        *,
        category: str | None = None,
        parent_log_id: int | None = None,
        order: int | None = None,
        exec_id: str | None = None,
    ) -> SessionLog:
        """Append a log node; order defaults to the next sibling order under the parent."""
        return self._recorder.record_log(
            session_id,
            content,
            category=category,
            parent_log_id=parent_log_id,
            exec_id=exec_id,
            order=order,
        )

    def log_tree(self, session_id: str) -> list[LogNode]:
        """Root log nodes of the session with children in sibling order."""
        return _build_tree(
            self._recorder.list_logs(session_id),
            node_id=lambda entry: entry.orchestration_session_log_id,
            parent_id=lambda entry: entry.parent_log_id,
            order=lambda entry: (entry.sibling_order, entry.orchestration_session_log_id),
            make=LogNode,
        )

    # === Reporting ===

    def report(self, session_id: str) -> OrchestrationReport:
        """Per-exec status plus the session's aggregated issue list.

        Raises:
            ReferentialError: If the session does not exist
        """
        session = self._recorder.get_orchestration_session(session_id)
        if session is None:
            raise ReferentialError(f"Orchestration session {session_id!r} does not exist")
        return OrchestrationReport(
            session=session,
            execs=self._recorder.list_execs(session_id),
            issues=self._recorder.list_issues(session_id),
        )
