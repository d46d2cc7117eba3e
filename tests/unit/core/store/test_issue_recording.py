# tests/unit/core/store/test_issue_recording.py
"""Tests for append-only issues and issue relations."""

from __future__ import annotations

import pytest

from cairn.contracts import IssueType, ReferentialError, ValidationError
from cairn.core.store.recorder import StoreRecorder
from cairn.core.store.schema import orchestration_issue_table


class TestRecordIssue:
    def test_issue_fields_round_trip(self, recorder: StoreRecorder, orchestration_session: str) -> None:
        entry = recorder.begin_session_entry(orchestration_session, "load")

        issue = recorder.record_issue(
            orchestration_session,
            IssueType.VALIDATION,
            "bad date",
            session_entry_id=entry.orchestration_session_entry_id,
            issue_row=12,
            issue_column="created",
            invalid_value="2024-13-01",
            remediation="use ISO dates",
            elaboration={"sheet": 1},
        )

        assert issue.issue_type == "validation"
        assert issue.issue_row == 12
        assert issue.issue_column == "created"
        assert issue.invalid_value == "2024-13-01"
        assert issue.remediation == "use ISO dates"
        assert issue.elaboration == '{"sheet":1}'

    def test_issues_append_in_order(self, recorder: StoreRecorder, orchestration_session: str) -> None:
        recorder.record_issue(orchestration_session, "warning", "same message")
        recorder.record_issue(orchestration_session, "warning", "same message")

        issues = recorder.list_issues(orchestration_session)

        assert len(issues) == 2
        assert issues[0].orchestration_session_issue_id < issues[1].orchestration_session_issue_id

    def test_issue_accepted_after_session_end(self, recorder: StoreRecorder, orchestration_session: str) -> None:
        recorder.end_orchestration_session(orchestration_session)

        recorder.record_issue(orchestration_session, "execution", "late")

        assert [i.issue_message for i in recorder.list_issues(orchestration_session)] == ["late"]

    def test_soft_deleted_issue_hidden_from_listing(self, recorder: StoreRecorder, orchestration_session: str) -> None:
        kept = recorder.record_issue(orchestration_session, "warning", "kept")
        dropped = recorder.record_issue(orchestration_session, "warning", "dropped")

        recorder.ops.soft_delete(orchestration_issue_table, "orchestration_session_issue_id", dropped.orchestration_session_issue_id, "tester")

        assert [i.issue_message for i in recorder.list_issues(orchestration_session)] == [kept.issue_message]
        assert len(recorder.list_issues(orchestration_session, include_deleted=True)) == 2

    def test_empty_type_rejected(self, recorder: StoreRecorder, orchestration_session: str) -> None:
        with pytest.raises(ValidationError):
            recorder.record_issue(orchestration_session, "", "x")

    def test_unknown_session_rejected(self, recorder: StoreRecorder) -> None:
        with pytest.raises(ReferentialError):
            recorder.record_issue("absent", "warning", "x")


class TestIssueRelations:
    def test_relation_listed_from_both_ends(self, recorder: StoreRecorder, orchestration_session: str) -> None:
        cause = recorder.record_issue(orchestration_session, "adapter", "read failed")
        effect = recorder.record_issue(orchestration_session, "execution", "stage failed")

        relation = recorder.relate_issues(effect.orchestration_session_issue_id, cause.orchestration_session_issue_id, "caused_by")

        assert relation.relationship_nature == "caused_by"
        assert recorder.list_issue_relations(cause.orchestration_session_issue_id) == [relation]
        assert recorder.list_issue_relations(effect.orchestration_session_issue_id) == [relation]

    def test_unknown_issue_rejected(self, recorder: StoreRecorder, orchestration_session: str) -> None:
        issue = recorder.record_issue(orchestration_session, "warning", "x")

        with pytest.raises(ReferentialError):
            recorder.relate_issues(issue.orchestration_session_issue_id, 9999, "duplicates")
