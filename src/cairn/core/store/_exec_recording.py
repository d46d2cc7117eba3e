"""Exec tree and hierarchical log recording methods for StoreRecorder.

Exec nodes form a call tree per orchestration session via parent_exec_id.
A child's parent must belong to the same session. Status is an integer:
zero is success, any other value is a caller-defined failure category.

Failure propagation:
- A child finishing non-zero records its status on the parent as
  failed_child_status (first failure wins).
- A parent finishing with 0 takes failed_child_status instead, unless the
  caller passes override=True.
- A child failing after its parent already finished with 0 (and without
  override) flips the parent, and the change continues upward.
"""

from __future__ import annotations

from threading import Lock
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, func, select

from cairn.contracts import (
    AlreadyClosedError,
    ExecState,
    ExecutionError,
    ReferentialError,
    SessionExec,
    SessionLog,
    ValidationError,
)
from cairn.core.canonical import canonical_json, validate_structured
from cairn.core.store._helpers import as_utc, created_by, generate_id, live, now, updated_by
from cairn.core.store._orchestration_recording import require_orchestration_session, require_session_entry
from cairn.core.store.schema import orchestration_exec_table, orchestration_log_table

if TYPE_CHECKING:
    import structlog

    from cairn.core.store._database_ops import DatabaseOps
    from cairn.core.store.repositories import SessionExecRepository, SessionLogRepository

_exec = orchestration_exec_table
_logs = orchestration_log_table

# (kind, session_id, parent id or None)
SiblingKey = tuple[str, str, Any]


def _error_text(error: str | BaseException | ExecutionError | None) -> str | None:
    if error is None or isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        payload: ExecutionError = {"exception": str(error), "type": type(error).__name__}
        return canonical_json(payload)
    return canonical_json(dict(error))


def _require_exec(conn: Connection, exec_id: str) -> Any:
    row = conn.execute(select(_exec).where(_exec.c.orchestration_session_exec_id == exec_id)).first()
    if row is None:
        raise ReferentialError(f"Exec {exec_id!r} does not exist")
    return row


class ExecRecordingMixin:
    """Exec tree and log methods. Mixed into StoreRecorder."""

    # Shared state annotations (set by StoreRecorder.__init__)
    _ops: DatabaseOps
    _actor: str
    _log: structlog.stdlib.BoundLogger
    _exec_repo: SessionExecRepository
    _log_repo: SessionLogRepository
    _sibling_orders: dict[SiblingKey, int]
    _sibling_order_lock: Lock

    # === Sibling ordering ===

    def _seed_sibling_order(self, key: SiblingKey) -> int:
        kind, session_id, parent_id = key
        if kind == "exec":
            parent_clause = _exec.c.parent_exec_id.is_(None) if parent_id is None else _exec.c.parent_exec_id == parent_id
            query = select(func.max(_exec.c.sibling_order)).where(_exec.c.session_id == session_id, parent_clause)
        else:
            parent_clause = _logs.c.parent_log_id.is_(None) if parent_id is None else _logs.c.parent_log_id == parent_id
            query = select(func.max(_logs.c.sibling_order)).where(_logs.c.session_id == session_id, parent_clause)
        row = self._ops.execute_fetchone(query)
        existing_max = row[0] if row is not None and row[0] is not None else -1
        return int(existing_max) + 1

    def allocate_sibling_order(self, kind: str, session_id: str, parent_id: Any) -> int:
        """Allocate the next sibling order under (session, parent) (thread-safe).

        The counter seeds from the database on first use per key, so it
        survives recorder recreation. Later allocations are in-memory, so
        concurrent children of one parent never receive the same value.

        Args:
            kind: "exec" or "log"
            session_id: Orchestration session
            parent_id: Parent exec id / log id, or None for roots

        Returns:
            Sequential order (0-based), unique under the parent
        """
        key: SiblingKey = (kind, session_id, parent_id)
        with self._sibling_order_lock:
            if key not in self._sibling_orders:
                self._sibling_orders[key] = self._seed_sibling_order(key)
            order = self._sibling_orders[key]
            self._sibling_orders[key] += 1
            return order

    def _note_sibling_order(self, key: SiblingKey, order: int) -> None:
        """Keep the allocator ahead of an explicitly supplied order."""
        with self._sibling_order_lock:
            if key not in self._sibling_orders:
                self._sibling_orders[key] = self._seed_sibling_order(key)
            self._sibling_orders[key] = max(self._sibling_orders[key], order + 1)

    # === Exec nodes ===

    def begin_exec(
        self,
        session_id: str,
        code: str,
        input_text: str | None = None,
        *,
        parent_exec_id: str | None = None,
        session_entry_id: str | None = None,
        nature: str = "exec",
        identity: str | None = None,
        namespace: str | None = None,
        narrative_md: str | None = None,
        elaboration: Any = None,
    ) -> SessionExec:
        """Open an exec node under an optional parent.

        Raises:
            ReferentialError: If the session, entry or parent is missing,
                or the parent/entry belongs to a different session
        """
        elaboration_json = validate_structured(elaboration, "elaboration")

        def _validate(conn: Connection) -> None:
            require_orchestration_session(conn, session_id)
            if session_entry_id is not None:
                require_session_entry(conn, session_id, session_entry_id)
            if parent_exec_id is not None:
                parent = _require_exec(conn, parent_exec_id)
                if parent.session_id != session_id:
                    raise ReferentialError(
                        f"Parent exec {parent_exec_id!r} belongs to session {parent.session_id!r}, not {session_id!r}"
                    )

        # Validate before allocating so rejected children leave no gap
        self._ops.transaction(_validate)
        order = self.allocate_sibling_order("exec", session_id, parent_exec_id)
        exec_id = generate_id()
        timestamp = now()

        def _insert(conn: Connection) -> Any:
            conn.execute(
                _exec.insert().values(
                    orchestration_session_exec_id=exec_id,
                    session_id=session_id,
                    session_entry_id=session_entry_id,
                    parent_exec_id=parent_exec_id,
                    exec_nature=nature,
                    namespace=namespace,
                    exec_identity=identity,
                    exec_code=code,
                    exec_state=ExecState.OPEN.value,
                    exec_status=0,
                    sibling_order=order,
                    input_text=input_text,
                    narrative_md=narrative_md,
                    started_at=timestamp,
                    status_overridden=False,
                    elaboration=elaboration_json,
                    **created_by(self._actor, timestamp),
                )
            )
            return _require_exec(conn, exec_id)

        return self._exec_repo.load(self._ops.transaction(_insert))

    def finish_exec(
        self,
        exec_id: str,
        status: int,
        *,
        output: str | None = None,
        error: str | BaseException | ExecutionError | None = None,
        output_nature: str | None = None,
        narrative_md: str | None = None,
        override: bool = False,
    ) -> SessionExec:
        """Finish an exec node and propagate a failure to its ancestors.

        Args:
            exec_id: Exec to finish
            status: 0 for success, any other integer for a failure category
            output: Output text
            error: Error text, exception, or ExecutionError payload
            override: Keep status even if a child failed

        Returns:
            The finished exec with its effective status

        Raises:
            ReferentialError: If the exec does not exist
            AlreadyClosedError: If the exec was already finished
        """
        if isinstance(status, bool) or not isinstance(status, int):
            raise ValidationError(f"Exec status must be an int, got {type(status).__name__}", field="exec_status")
        error_text = _error_text(error)
        timestamp = now()

        def _op(conn: Connection) -> Any:
            row = _require_exec(conn, exec_id)
            if row.exec_state == ExecState.FINISHED.value:
                raise AlreadyClosedError("exec", exec_id)
            duration_ms = (timestamp - as_utc(row.started_at)).total_seconds() * 1000
            # Take the write lock before reading failed_child_status
            conn.execute(
                _exec.update()
                .where(_exec.c.orchestration_session_exec_id == exec_id)
                .values(
                    exec_state=ExecState.FINISHED.value,
                    finished_at=timestamp,
                    duration_ms=duration_ms,
                    output_text=output,
                    output_nature=output_nature,
                    exec_error_text=error_text,
                    narrative_md=narrative_md if narrative_md is not None else row.narrative_md,
                    status_overridden=override,
                    **updated_by(self._actor, timestamp),
                )
            )
            row = _require_exec(conn, exec_id)
            effective = status
            if status == 0 and row.failed_child_status is not None and not override:
                effective = row.failed_child_status
            conn.execute(_exec.update().where(_exec.c.orchestration_session_exec_id == exec_id).values(exec_status=effective))
            if effective != 0:
                self._propagate_failure(conn, row.parent_exec_id, effective, timestamp)
            return _require_exec(conn, exec_id)

        finished = self._exec_repo.load(self._ops.transaction(_op))
        if finished.exec_status != 0:
            self._log.warning(
                "exec_failed",
                exec_id=exec_id,
                session_id=finished.session_id,
                status=finished.exec_status,
                code=finished.exec_code,
            )
        return finished

    def _propagate_failure(self, conn: Connection, parent_id: str | None, status: int, timestamp: Any) -> None:
        while parent_id is not None:
            parent = _require_exec(conn, parent_id)
            updates: dict[str, Any] = {}
            if parent.failed_child_status is None:
                updates["failed_child_status"] = status
            flipped = parent.exec_state == ExecState.FINISHED.value and not parent.status_overridden and parent.exec_status == 0
            if flipped:
                updates["exec_status"] = status
            if updates:
                conn.execute(
                    _exec.update()
                    .where(_exec.c.orchestration_session_exec_id == parent_id)
                    .values(**updates, **updated_by(self._actor, timestamp))
                )
            if not flipped:
                # An open parent applies the failure when it finishes
                return
            parent_id = parent.parent_exec_id

    def get_exec(self, exec_id: str) -> SessionExec | None:
        row = self._ops.execute_fetchone(select(_exec).where(_exec.c.orchestration_session_exec_id == exec_id))
        return self._exec_repo.load(row) if row is not None else None

    def list_execs(self, session_id: str, *, include_deleted: bool = False) -> list[SessionExec]:
        """All exec nodes of a session ordered by (started_at, sibling_order)."""
        query = (
            select(_exec)
            .where(_exec.c.session_id == session_id, *live(_exec, include_deleted))
            .order_by(_exec.c.started_at, _exec.c.sibling_order)
        )
        return [self._exec_repo.load(r) for r in self._ops.execute_fetchall(query)]

    # === Logs ===

    def record_log(
        self,
        session_id: str,
        content: str,
        *,
        category: str | None = None,
        parent_log_id: int | None = None,
        exec_id: str | None = None,
        order: int | None = None,
    ) -> SessionLog:
        """Append a log node. order defaults to the next sibling order under the parent.

        Raises:
            ReferentialError: If the session, parent log or exec is missing or
                belongs to another session
        """

        def _validate(conn: Connection) -> None:
            require_orchestration_session(conn, session_id)
            if parent_log_id is not None:
                parent = conn.execute(select(_logs.c.session_id).where(_logs.c.orchestration_session_log_id == parent_log_id)).first()
                if parent is None:
                    raise ReferentialError(f"Parent log {parent_log_id!r} does not exist")
                if parent.session_id != session_id:
                    raise ReferentialError(f"Parent log {parent_log_id!r} belongs to session {parent.session_id!r}, not {session_id!r}")
            if exec_id is not None:
                exec_row = _require_exec(conn, exec_id)
                if exec_row.session_id != session_id:
                    raise ReferentialError(f"Exec {exec_id!r} belongs to session {exec_row.session_id!r}, not {session_id!r}")

        self._ops.transaction(_validate)
        key: SiblingKey = ("log", session_id, parent_log_id)
        if order is None:
            order = self.allocate_sibling_order(*key)
        else:
            self._note_sibling_order(key, order)
        timestamp = now()

        def _insert(conn: Connection) -> Any:
            result = conn.execute(
                _logs.insert().values(
                    session_id=session_id,
                    exec_id=exec_id,
                    parent_log_id=parent_log_id,
                    category=category,
                    content=content,
                    sibling_order=order,
                    **created_by(self._actor, timestamp),
                )
            )
            log_id = result.inserted_primary_key[0]
            return conn.execute(select(_logs).where(_logs.c.orchestration_session_log_id == log_id)).one()

        return self._log_repo.load(self._ops.transaction(_insert))

    def list_logs(self, session_id: str, *, include_deleted: bool = False) -> list[SessionLog]:
        query = (
            select(_logs)
            .where(_logs.c.session_id == session_id, *live(_logs, include_deleted))
            .order_by(_logs.c.sibling_order, _logs.c.orchestration_session_log_id)
        )
        return [self._log_repo.load(r) for r in self._ops.execute_fetchall(query)]
