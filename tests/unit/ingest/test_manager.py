# tests/unit/ingest/test_manager.py
"""Tests for IngestionSessionManager."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from cairn.contracts import (
    AdapterError,
    AlreadyClosedError,
    Candidate,
    DeviceIdentity,
    DeviceUnknownError,
    EntryIssue,
    EntryStatus,
    IngestSource,
    PathMatchRule,
    PathRewriteRule,
    ReferentialError,
    ValidationError,
)
from cairn.core.store.recorder import StoreRecorder
from cairn.ingest.adapters.filesystem import FilesystemAdapter
from cairn.ingest.manager import IngestionSessionManager
from cairn.ingest.rules import RuleSet


class FlakyFilesystemAdapter(FilesystemAdapter):
    """Fails to read any file whose name contains 'broken'."""

    def produce_candidate(self, session_id: str, source_ref: str) -> Candidate:
        if "broken" in source_ref:
            raise AdapterError(f"cannot read {source_ref}", source_ref=source_ref, remediation="fix permissions")
        return super().produce_candidate(session_id, source_ref)


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    root = tmp_path / "docs"
    (root / "sub").mkdir(parents=True)
    (root / "a.md").write_text("---\ntitle: A\n---\nbody a\n", encoding="utf-8")
    (root / "b.txt").write_text("b", encoding="utf-8")
    (root / "sub" / "c.md").write_text("c", encoding="utf-8")
    return root


def _statuses(recorder: StoreRecorder, session_id: str) -> dict[str, EntryStatus]:
    return {e.file_path_rel: e.ur_status for e in recorder.list_path_entries(session_id)}


class TestSessionLifecycle:
    def test_open_and_close(self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity) -> None:
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.close(session_id)

        session = recorder.get_ingest_session(session_id)
        assert session is not None and session.is_closed
        assert summary.total == 0

    def test_double_close_rejected(self, manager: IngestionSessionManager, device: DeviceIdentity) -> None:
        session_id = manager.open(device.device_id, "pytest")
        manager.close(session_id)

        with pytest.raises(AlreadyClosedError):
            manager.close(session_id)

    def test_unknown_device_rejected(self, manager: IngestionSessionManager) -> None:
        with pytest.raises(DeviceUnknownError):
            manager.open("no-such-device", "pytest")

    def test_named_behavior_saved_and_linked(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity
    ) -> None:
        session_id = manager.open(device.device_id, "pytest", {"roots": ["/srv"]}, behavior_name="nightly")

        session = recorder.get_ingest_session(session_id)
        behavior = recorder.get_behavior(device.device_id, "nightly")
        assert session is not None and behavior is not None
        assert session.behavior_id == behavior.behavior_id
        assert json.loads(behavior.behavior_conf_json) == {"roots": ["/srv"]}

    def test_source_without_adapter_rejected_on_use(
        self, manager: IngestionSessionManager, device: DeviceIdentity, docs: Path
    ) -> None:
        session_id = manager.open(device.device_id, "pytest", source=IngestSource.MAILBOX)

        with pytest.raises(ValidationError, match="No adapter registered"):
            manager.ingest_path(session_id, str(docs))


class TestIngestPath:
    def test_every_file_gets_an_entry(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.ingest_path(session_id, str(docs))

        assert summary.admitted == 3
        assert _statuses(recorder, session_id) == {
            "a.md": EntryStatus.ADMITTED,
            "b.txt": EntryStatus.ADMITTED,
            "sub/c.md": EntryStatus.ADMITTED,
        }
        assert len(recorder.list_resources(device_id=device.device_id)) == 3

    def test_session_globs_reject_entries(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.ingest_path(session_id, str(docs), include_globs=["*.md"], exclude_globs=["sub/*"])

        assert (summary.admitted, summary.rejected) == (1, 2)
        statuses = _statuses(recorder, session_id)
        assert statuses["b.txt"] == EntryStatus.REJECTED
        assert statuses["sub/c.md"] == EntryStatus.REJECTED

    def test_entry_path_fields(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")
        manager.ingest_path(session_id, str(docs))

        entry = next(e for e in recorder.list_path_entries(session_id) if e.file_path_rel == "sub/c.md")

        assert entry.file_path_rel_parent == "sub"
        assert entry.file_basename == "c.md"
        assert entry.file_extn == "md"
        assert entry.uniform_resource_id is not None

    def test_second_run_yields_duplicates(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        first = manager.open(device.device_id, "pytest")
        manager.ingest_path(first, str(docs))
        manager.close(first)

        second = manager.open(device.device_id, "pytest")
        summary = manager.ingest_path(second, str(docs))

        assert (summary.admitted, summary.duplicate) == (0, 3)
        assert len(recorder.list_resources(device_id=device.device_id)) == 3

    def test_repeat_root_in_same_session_counts_duplicates(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")
        manager.ingest_path(session_id, str(docs), include_globs=["*.md"], exclude_globs=["sub/*"])

        summary = manager.ingest_path(session_id, str(docs), include_globs=["*.md"], exclude_globs=["sub/*"])

        assert (summary.admitted, summary.duplicate, summary.rejected) == (0, 1, 2)
        assert len(recorder.list_path_entries(session_id)) == 3
        assert _statuses(recorder, session_id)["a.md"] == EntryStatus.ADMITTED
        assert len(recorder.list_resources(device_id=device.device_id)) == 1

    def test_frontmatter_stored(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")
        manager.ingest_path(session_id, str(docs))

        resource = next(r for r in recorder.list_resources(device_id=device.device_id) if r.uri.endswith("a.md"))

        assert json.loads(resource.frontmatter or "null") == {"title": "A"}
        assert json.loads(resource.content_fm_body_attrs or "{}")["body"] == "body a\n"

    def test_rules_assign_nature_and_rewrite_uri(
        self, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        rules = RuleSet(
            [PathMatchRule(namespace="default", regex=r"\.md$", nature="text/markdown")],
            [PathRewriteRule(namespace="default", regex=r"^.*/docs/", replace="docs://")],
        )
        manager = IngestionSessionManager(recorder, rules=rules)
        session_id = manager.open(device.device_id, "pytest")

        manager.ingest_path(session_id, str(docs))

        by_uri = {r.uri: r for r in recorder.list_resources(device_id=device.device_id)}
        assert set(by_uri) == {"docs://a.md", "docs://b.txt", "docs://sub/c.md"}
        assert by_uri["docs://a.md"].nature == "text/markdown"
        assert by_uri["docs://b.txt"].nature == "txt"
        entry = next(e for e in recorder.list_path_entries(session_id) if e.file_path_rel == "a.md")
        assert json.loads(entry.ur_transformations or "[]")[0]["to"] == "docs://a.md"

    def test_strict_namespace_marks_unmatched(
        self, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        rules = RuleSet([PathMatchRule(namespace="docs", regex=r"\.md$")], strict_namespaces={"docs"})
        manager = IngestionSessionManager(recorder, rules=rules, namespace="docs")
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.ingest_path(session_id, str(docs))

        assert summary.rejected == 1
        assert _statuses(recorder, session_id)["b.txt"] == EntryStatus.UNMATCHED

    def test_adapter_failure_isolated_and_reported(
        self, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        (docs / "broken.md").write_text("x", encoding="utf-8")
        issues: list[EntryIssue] = []
        manager = IngestionSessionManager(recorder, adapters={IngestSource.FILESYSTEM: FlakyFilesystemAdapter()})
        manager.add_issue_listener(issues.append)
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.ingest_path(session_id, str(docs))

        assert (summary.admitted, summary.errored) == (3, 1)
        entry = next(e for e in recorder.list_path_entries(session_id) if e.file_path_rel == "broken.md")
        assert entry.ur_status == EntryStatus.ERRORED
        diagnostics = json.loads(entry.ur_diagnostics or "{}")
        assert diagnostics["phase"] == "errored"
        assert diagnostics["error_type"] == "AdapterError"
        assert diagnostics["detail"] == {"remediation": "fix permissions"}
        assert len(issues) == 1
        assert issues[0].remediation == "fix permissions"
        assert issues[0].source_ref.endswith("broken.md")

    def test_removed_listener_not_notified(self, recorder: StoreRecorder, device: DeviceIdentity, docs: Path) -> None:
        (docs / "broken.md").write_text("x", encoding="utf-8")
        issues: list[EntryIssue] = []
        manager = IngestionSessionManager(recorder, adapters={IngestSource.FILESYSTEM: FlakyFilesystemAdapter()})
        manager.add_issue_listener(issues.append)
        assert manager.remove_issue_listener(issues.append)
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.ingest_path(session_id, str(docs))

        assert summary.errored == 1
        assert issues == []

    def test_missing_root_recorded_as_errored(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, tmp_path: Path
    ) -> None:
        issues: list[EntryIssue] = []
        manager.add_issue_listener(issues.append)
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.ingest_path(session_id, str(tmp_path / "absent"))

        assert summary.errored == 1
        assert len(issues) == 1

    def test_thread_pool_produces_same_outcome(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity, docs: Path
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")

        summary = manager.ingest_path(session_id, str(docs), max_workers=3)

        assert summary.admitted == 3

    def test_invalid_worker_count_rejected(self, manager: IngestionSessionManager, device: DeviceIdentity, docs: Path) -> None:
        session_id = manager.open(device.device_id, "pytest")

        with pytest.raises(ValueError, match="max_workers"):
            manager.ingest_path(session_id, str(docs), max_workers=0)

    def test_record_entry_for_unregistered_path(self, manager: IngestionSessionManager) -> None:
        with pytest.raises(ReferentialError):
            manager.record_entry("absent", "/a.md", "a.md")


class TestOtherSources:
    def test_admit_candidate_into_mail_folder(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")
        folder_id = manager.register_mail_folder(session_id, "me@example.org", "imap.example.org", "INBOX")

        admission = manager.admit_candidate(
            session_id,
            Candidate(uri="imap://INBOX/1", content=b"Subject: hi\n\nhello", nature="message/rfc822"),
            imap_folder_id=folder_id,
        )

        resource = recorder.get_resource(admission.resource_id)
        assert admission.is_new_record
        assert resource is not None and resource.ingest_imap_acct_folder_id == folder_id

    def test_admit_candidate_into_issue_project(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")
        project_id = manager.register_issue_project(session_id, "github", "acme", "widgets")

        admission = manager.admit_candidate(
            session_id, Candidate(uri="github://acme/widgets/1", content=b"{}", nature="json"), plm_project_id=project_id
        )

        resource = recorder.get_resource(admission.resource_id)
        assert resource is not None and resource.ingest_plm_acct_project_id == project_id

    def test_record_task_admits_candidate(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity
    ) -> None:
        session_id = manager.open(device.device_id, "pytest")

        task = manager.record_task(
            session_id, {"cmd": "osquery", "query": "select 1"}, Candidate(uri="osquery://q1", content=b"[1]", nature="json")
        )

        assert task.ur_status == EntryStatus.ADMITTED
        assert task.uniform_resource_id is not None
        assert json.loads(task.captured_executable) == {"cmd": "osquery", "query": "select 1"}

    def test_record_task_error_notifies_listener(
        self, manager: IngestionSessionManager, recorder: StoreRecorder, device: DeviceIdentity
    ) -> None:
        issues: list[EntryIssue] = []
        manager.add_issue_listener(issues.append)
        session_id = manager.open(device.device_id, "pytest")

        task = manager.record_task(session_id, {"cmd": "uptime"}, error=TimeoutError("timed out"))

        assert task.ur_status == EntryStatus.ERRORED
        assert [i.message for i in issues] == ["timed out"]
        assert manager.summary(session_id).errored == 1

    def test_record_task_needs_exactly_one_outcome(self, manager: IngestionSessionManager, device: DeviceIdentity) -> None:
        session_id = manager.open(device.device_id, "pytest")

        with pytest.raises(ValidationError):
            manager.record_task(session_id, {"cmd": "uptime"})
        with pytest.raises(ValidationError, match="exactly one"):
            manager.record_task(
                session_id, {"cmd": "uptime"}, Candidate(uri="cmd://uptime", content=b"up"), error=TimeoutError("timed out")
            )
        assert manager.summary(session_id).total == 0
