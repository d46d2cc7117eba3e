# tests/unit/engine/test_executor.py
"""Tests for OrchestrationExecutor trees, reports and issue forwarding."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from cairn.contracts import (
    DeviceIdentity,
    EntryIssue,
    EntryStatus,
    ExecState,
    ReferentialError,
    SessionExec,
    SessionLifecycle,
)
from cairn.engine.executor import OrchestrationExecutor, error_payload


class TestSessions:
    def test_begin_and_end(self, executor: OrchestrationExecutor, device: DeviceIdentity) -> None:
        session_id = executor.begin_session(device.device_id, "nightly", "2.0", {"roots": ["/srv"]})

        ended = executor.end_session(session_id, diagnostics_md="done\n")

        assert ended.is_finished
        assert ended.version == "2.0"

    def test_transition_accepts_lifecycle_enum(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        state = executor.record_transition(orchestration_session, SessionLifecycle.PENDING, SessionLifecycle.RUNNING)

        assert (state.from_state, state.to_state) == ("PENDING", "RUNNING")


class TestExecTree:
    def test_tree_built_in_sibling_order(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        with executor.begin_exec(orchestration_session, "root") as root:
            with root.child("first") as first:
                first.child("first.1").finish()
            root.child("second").finish()
        executor.begin_exec(orchestration_session, "other-root").finish()

        tree = executor.exec_tree(orchestration_session)

        assert [n.exec.exec_code for n in tree] == ["root", "other-root"]
        assert [c.exec.exec_code for c in tree[0].children] == ["first", "second"]
        assert [c.exec.exec_code for c in tree[0].children[0].children] == ["first.1"]

    def test_parent_may_be_passed_by_id(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        root = executor.begin_exec(orchestration_session, "root")

        child = executor.begin_exec(orchestration_session, "child", parent=root.exec_id)

        assert child.record.parent_exec_id == root.exec_id

    def test_parent_from_other_session_rejected(
        self, executor: OrchestrationExecutor, device: DeviceIdentity, orchestration_session: str
    ) -> None:
        other = executor.begin_session(device.device_id, "other", "1.0")
        foreign = executor.begin_exec(other, "foreign")

        with pytest.raises(ReferentialError):
            executor.begin_exec(orchestration_session, "child", parent=foreign)

    def test_empty_session_has_empty_tree(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        assert executor.exec_tree(orchestration_session) == []


class TestLogTree:
    def test_children_ordered_by_sibling_order(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        parent = executor.log(orchestration_session, "parent")
        executor.log(orchestration_session, "b", parent_log_id=parent.orchestration_session_log_id, order=1)
        executor.log(orchestration_session, "a", parent_log_id=parent.orchestration_session_log_id, order=0)

        tree = executor.log_tree(orchestration_session)

        assert [n.log.content for n in tree] == ["parent"]
        assert [c.log.content for c in tree[0].children] == ["a", "b"]


class TestIssues:
    def test_issue_does_not_change_exec_status(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        handle = executor.begin_exec(orchestration_session, "step")
        executor.record_issue(orchestration_session, "warning", "suspicious")

        assert handle.finish().exec_status == 0

    def test_issue_listener_forwards_entry_issue(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        entry_id = executor.begin_entry(orchestration_session, "ingest")
        forward = executor.issue_listener(orchestration_session, entry_id)

        forward(
            EntryIssue(
                ingest_session_id="ingest-1",
                status=EntryStatus.ERRORED,
                issue_type="adapter",
                message="cannot read",
                source_ref="/srv/a.md",
                invalid_value="/srv/a.md",
                remediation="check permissions",
            )
        )

        [issue] = executor.recorder.list_issues(orchestration_session)
        assert issue.issue_type == "adapter"
        assert issue.session_entry_id == entry_id
        assert issue.remediation == "check permissions"
        assert issue.elaboration == '{"ingest_session_id":"ingest-1","source_ref":"/srv/a.md","status":"errored"}'

    def test_relate_issues(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        a = executor.record_issue(orchestration_session, "adapter", "a")
        b = executor.record_issue(orchestration_session, "execution", "b")

        relation = executor.relate_issues(b.orchestration_session_issue_id, a.orchestration_session_issue_id, "caused_by")

        assert relation.issue_id_rel == a.orchestration_session_issue_id


class TestReport:
    def test_report_collects_failures_and_issues(self, executor: OrchestrationExecutor, orchestration_session: str) -> None:
        with executor.begin_exec(orchestration_session, "root") as root:
            root.child("ok").finish()
            root.child("bad").finish(2, error="disk full")
        executor.record_issue(orchestration_session, "execution", "disk full")

        report = executor.report(orchestration_session)

        assert not report.succeeded
        assert sorted(e.exec_code for e in report.failed_execs) == ["bad", "root"]
        assert [i.issue_message for i in report.issues] == ["disk full"]

    def test_report_for_unknown_session(self, executor: OrchestrationExecutor) -> None:
        with pytest.raises(ReferentialError):
            executor.report("absent")


def _exec_with_error(text: str | None) -> SessionExec:
    return SessionExec(
        orchestration_session_exec_id="e1",
        session_id="s1",
        exec_nature="exec",
        exec_code="step",
        exec_state=ExecState.FINISHED,
        exec_status=1,
        sibling_order=0,
        started_at=datetime(2024, 1, 1, tzinfo=UTC),
        exec_error_text=text,
    )


class TestErrorPayload:
    def test_none_when_no_error(self) -> None:
        assert error_payload(_exec_with_error(None)) is None

    def test_structured_payload_decoded(self) -> None:
        assert error_payload(_exec_with_error('{"exception":"x","type":"ValueError"}')) == {"exception": "x", "type": "ValueError"}

    def test_plain_text_wrapped(self) -> None:
        assert error_payload(_exec_with_error("disk full")) == {"exception": "disk full", "type": "str"}

    def test_unrelated_json_wrapped(self) -> None:
        assert error_payload(_exec_with_error("[1, 2]")) == {"exception": "[1, 2]", "type": "str"}
