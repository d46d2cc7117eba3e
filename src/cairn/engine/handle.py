# src/cairn/engine/handle.py
"""ExecHandle: scoped handle on one open exec node.

Used as a context manager, the handle finishes its exec when the block
exits: with status 0 on normal exit (unless finish() was already called),
or with a failure status and the error text when an exception escapes.
The exception is never suppressed.

Example:
    with executor.begin_exec(session_id, "load") as load:
        with load.child("parse", input_text=path) as parse:
            parse.log("parsed 12 records", category="info")
            parse.finish(0, output="12")
"""

from __future__ import annotations

from types import TracebackType
from typing import TYPE_CHECKING, Any

from cairn.contracts import EXEC_STATUS_FAILED, EXEC_STATUS_OK

if TYPE_CHECKING:
    from cairn.contracts import ExecutionError, SessionExec, SessionIssue, SessionLog
    from cairn.engine.executor import OrchestrationExecutor


class ExecHandle:
    """Handle returned by OrchestrationExecutor.begin_exec."""

    def __init__(self, executor: OrchestrationExecutor, record: SessionExec) -> None:
        self._executor = executor
        self._record = record
        self._finished = False

    def __repr__(self) -> str:
        return f"ExecHandle(exec_id={self.exec_id!r}, code={self._record.exec_code!r}, finished={self._finished})"

    @property
    def exec_id(self) -> str:
        return self._record.orchestration_session_exec_id

    @property
    def session_id(self) -> str:
        return self._record.session_id

    @property
    def session_entry_id(self) -> str | None:
        return self._record.session_entry_id

    @property
    def record(self) -> SessionExec:
        """Latest known state of the exec (refreshed by finish)."""
        return self._record

    @property
    def finished(self) -> bool:
        return self._finished

    def child(self, code: str, input_text: str | None = None, **kwargs: Any) -> ExecHandle:
        """Open a nested exec under this one, in the same session and entry."""
        kwargs.setdefault("entry_id", self.session_entry_id)
        return self._executor.begin_exec(self.session_id, code, input_text, parent=self, **kwargs)

    def log(
        self,
        content: str,
        *,
        category: str | None = None,
        parent_log_id: int | None = None,
        order: int | None = None,
    ) -> SessionLog:
        """Append a log node attached to this exec."""
        return self._executor.log(
            self.session_id,
            content,
            category=category,
            parent_log_id=parent_log_id,
            order=order,
            exec_id=self.exec_id,
        )

    def issue(self, issue_type: str, message: str, **kwargs: Any) -> SessionIssue:
        """Record an issue on this exec's session and entry. The exec status is unaffected."""
        kwargs.setdefault("entry_id", self.session_entry_id)
        return self._executor.record_issue(self.session_id, issue_type, message, **kwargs)

    def finish(
        self,
        status: int = EXEC_STATUS_OK,
        *,
        output: str | None = None,
        error: str | BaseException | ExecutionError | None = None,
        output_nature: str | None = None,
        narrative_md: str | None = None,
        override: bool = False,
    ) -> SessionExec:
        """Finish the exec; see OrchestrationExecutor.finish_exec.

        Raises:
            AlreadyClosedError: If the exec was already finished
        """
        self._record = self._executor.finish_exec(
            self,
            status,
            output=output,
            error=error,
            output_nature=output_nature,
            narrative_md=narrative_md,
            override=override,
        )
        self._finished = True
        return self._record

    def __enter__(self) -> ExecHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._finished:
            return
        if exc is not None:
            self.finish(EXEC_STATUS_FAILED, error=exc)
        else:
            self.finish(EXEC_STATUS_OK)
