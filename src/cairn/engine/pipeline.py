# src/cairn/engine/pipeline.py
"""OrchestrationPipeline: runs stages as one recorded orchestration session.

Recorded shape of a run:
- session transitions PENDING -> RUNNING -> COMPLETED | FAILED
- one session entry per stage, with the same transitions
- a root exec for the pipeline and one child exec per stage

A stage fails when it returns a non-zero status or raises. Non-fatal
exceptions are recorded as an execution issue on the stage's entry.
Fatal store errors abort the run and propagate.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Any

import structlog

from cairn import __version__
from cairn.contracts import (
    EXEC_STATUS_OK,
    ConcurrencyConflict,
    EntryIssue,
    IssueType,
    OrchestrationReport,
    SchemaCompatibilityError,
    SessionLifecycle,
    StoreIntegrityError,
)
from cairn.core.canonical import canonical_json
from cairn.engine.executor import OrchestrationExecutor, error_payload
from cairn.engine.handle import ExecHandle

if TYPE_CHECKING:
    from cairn.contracts import SessionExec
    from cairn.ingest.manager import IngestionSessionManager

logger = structlog.get_logger(__name__)

# Errors that abort the whole run instead of failing one stage
FATAL_ERRORS: tuple[type[Exception], ...] = (StoreIntegrityError, SchemaCompatibilityError, ConcurrencyConflict)


@dataclass(frozen=True)
class StageContext:
    """What a stage sees while it runs."""

    executor: OrchestrationExecutor
    device_id: str
    session_id: str
    entry_id: str
    handle: ExecHandle
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class Stage:
    """A named unit of pipeline work.

    fn returns an exit status (None counts as 0) or raises. It may open
    child execs through context.handle.
    """

    name: str
    fn: Callable[[StageContext], int | None]
    ingest_src: str | None = None

    def run(self, context: StageContext) -> int | None:
        return self.fn(context)


class IngestStage(Stage):
    """Stage that ingests filesystem roots through an IngestionSessionManager.

    Each root becomes a child exec. Entry issues raised by the manager are
    forwarded into the orchestration session as issues on this stage's
    entry. Errored entries do not fail the stage.
    """

    def __init__(
        self,
        manager: IngestionSessionManager,
        roots: Sequence[str],
        *,
        name: str = "ingest",
        agent: str = "cairn",
        include_globs: list[str] | None = None,
        exclude_globs: list[str] | None = None,
        namespace: str | None = None,
        max_workers: int = 1,
    ) -> None:
        super().__init__(name=name, fn=self._ingest, ingest_src=",".join(roots) or name)
        self.manager = manager
        self.roots = list(roots)
        self.agent = agent
        self.include_globs = include_globs
        self.exclude_globs = exclude_globs
        self.namespace = namespace
        self.max_workers = max_workers
        # ingest session id -> stage context receiving its issues
        self._active: dict[str, StageContext] = {}
        self._active_lock = Lock()
        manager.add_issue_listener(self._on_issue)

    def _on_issue(self, event: EntryIssue) -> None:
        with self._active_lock:
            context = self._active.get(event.ingest_session_id)
        if context is None:
            return
        context.executor.issue_listener(context.session_id, context.entry_id)(event)

    def _ingest(self, context: StageContext) -> int:
        ingest_session_id = self.manager.open(context.device_id, self.agent)
        with self._active_lock:
            self._active[ingest_session_id] = context
        try:
            for root in self.roots:
                with context.handle.child(f"ingest {root}", input_text=root, nature="ingest") as step:
                    summary = self.manager.ingest_path(
                        ingest_session_id,
                        root,
                        self.include_globs,
                        self.exclude_globs,
                        namespace=self.namespace,
                        max_workers=self.max_workers,
                    )
                    step.finish(
                        EXEC_STATUS_OK,
                        output=canonical_json(
                            {
                                "admitted": summary.admitted,
                                "duplicate": summary.duplicate,
                                "rejected": summary.rejected,
                                "errored": summary.errored,
                            }
                        ),
                        output_nature="application/json",
                    )
        finally:
            with self._active_lock:
                self._active.pop(ingest_session_id, None)
            total = self.manager.close(ingest_session_id)
        context.handle.log(
            f"ingested {total.total} units: {total.admitted} admitted, {total.duplicate} duplicate, "
            f"{total.rejected} rejected, {total.errored} errored",
            category="summary",
        )
        return EXEC_STATUS_OK


class OrchestrationPipeline:
    """Runs stages in order inside one orchestration session.

    Example:
        pipeline = OrchestrationPipeline(
            executor,
            [IngestStage(manager, ["/srv/docs"]), Stage("index", build_index)],
            nature="nightly",
        )
        report = pipeline.run(device.device_id)
        assert report.succeeded
    """

    def __init__(
        self,
        executor: OrchestrationExecutor,
        stages: Sequence[Stage],
        *,
        nature: str = "pipeline",
        version: str = __version__,
        continue_on_failure: bool = False,
    ) -> None:
        self._executor = executor
        self._stages = list(stages)
        self.nature = nature
        self.version = version
        self.continue_on_failure = continue_on_failure

    def run(self, device_id: str, args: dict[str, Any] | None = None) -> OrchestrationReport:
        """Run every stage and return the session report.

        Raises:
            DeviceUnknownError: If the device is absent
            StoreIntegrityError, SchemaCompatibilityError, ConcurrencyConflict:
                Fatal store errors; the session is left unfinished
        """
        ex = self._executor
        args = dict(args or {})
        session_id = ex.begin_session(device_id, self.nature, self.version, args)
        ex.record_transition(session_id, SessionLifecycle.PENDING, SessionLifecycle.RUNNING)

        root = ex.begin_exec(session_id, f"pipeline:{self.nature}", canonical_json(args), nature="pipeline")
        stage_status: dict[str, int | None] = {stage.name: None for stage in self._stages}
        stopped = False
        for stage in self._stages:
            if stopped:
                break
            status = self._run_stage(stage, device_id, session_id, root, args)
            stage_status[stage.name] = status
            if status != 0 and not self.continue_on_failure:
                stopped = True

        finished_root = root.finish(EXEC_STATUS_OK)
        succeeded = finished_root.exec_status == 0
        ex.record_transition(
            session_id,
            SessionLifecycle.RUNNING,
            SessionLifecycle.COMPLETED if succeeded else SessionLifecycle.FAILED,
            result=str(finished_root.exec_status),
            reason="stopped after failed stage" if stopped else None,
        )
        report = ex.report(session_id)
        ex.end_session(
            session_id,
            diagnostics=_diagnostics(stage_status, report.failed_execs),
            diagnostics_md=_diagnostics_md(self.nature, stage_status, report),
        )
        logger.info(
            "pipeline_completed",
            session_id=session_id,
            nature=self.nature,
            succeeded=succeeded,
            failed_execs=len(report.failed_execs),
            issues=len(report.issues),
        )
        return ex.report(session_id)

    def _run_stage(self, stage: Stage, device_id: str, session_id: str, root: ExecHandle, args: dict[str, Any]) -> int:
        ex = self._executor
        entry_id = ex.begin_entry(session_id, stage.ingest_src or stage.name)
        ex.record_transition(entry_id, SessionLifecycle.PENDING, SessionLifecycle.RUNNING)
        handle = ex.begin_exec(session_id, stage.name, parent=root, entry_id=entry_id, nature="stage")
        context = StageContext(ex, device_id, session_id, entry_id, handle, args)

        reason: str | None = None
        try:
            with handle:
                returned = stage.run(context)
                if not handle.finished:
                    handle.finish(returned if returned is not None else EXEC_STATUS_OK)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            ex.record_issue(
                session_id,
                IssueType.EXECUTION,
                str(e),
                entry_id=entry_id,
                elaboration={"exec_id": handle.exec_id, "stage": stage.name, "type": type(e).__name__},
            )
            logger.warning("stage_failed", session_id=session_id, stage=stage.name, error=str(e), error_type=type(e).__name__)

        status = handle.record.exec_status
        ex.record_transition(
            entry_id,
            SessionLifecycle.RUNNING,
            SessionLifecycle.COMPLETED if status == 0 else SessionLifecycle.FAILED,
            result=str(status),
            reason=reason,
        )
        return status


def _diagnostics(stage_status: dict[str, int | None], failed: list[SessionExec]) -> dict[str, Any]:
    return {
        "stages": stage_status,
        "failed_execs": [
            {
                "exec_id": e.orchestration_session_exec_id,
                "code": e.exec_code,
                "status": e.exec_status,
                "error": error_payload(e),
            }
            for e in failed
        ],
    }


def _diagnostics_md(nature: str, stage_status: dict[str, int | None], report: OrchestrationReport) -> str:
    lines = [f"# {nature}", "", "| stage | status |", "|---|---|"]
    for name, status in stage_status.items():
        lines.append(f"| {name} | {'skipped' if status is None else status} |")
    if report.issues:
        lines += ["", f"{len(report.issues)} issue(s):", ""]
        lines += [f"- **{issue.issue_type}**: {issue.issue_message}" for issue in report.issues]
    return "\n".join(lines) + "\n"
