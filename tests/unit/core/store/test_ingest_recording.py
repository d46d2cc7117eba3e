# tests/unit/core/store/test_ingest_recording.py
"""Tests for ingest sessions, source containers, entries, tasks and rules."""

from __future__ import annotations

import json

import pytest

from cairn.contracts import (
    AlreadyClosedError,
    DeviceIdentity,
    DeviceUnknownError,
    EntryStatus,
    IngestSource,
    PathEntry,
    PathMatchRule,
    PathRewriteRule,
    ReferentialError,
    ValidationError,
)
from cairn.core.store.recorder import StoreRecorder


def _entry(recorder: StoreRecorder, session_id: str, path_id: str, abs_path: str, status: EntryStatus, **kwargs: object) -> PathEntry:
    return recorder.record_path_entry(
        session_id=session_id,
        fs_path_id=path_id,
        file_path_abs=abs_path,
        file_path_rel_parent="",
        file_path_rel=abs_path.lstrip("/"),
        file_basename=abs_path.rsplit("/", 1)[-1],
        file_extn=None,
        status=status,
        **kwargs,  # type: ignore[arg-type]
    )


class TestIngestSessions:
    def test_open_and_close(self, recorder: StoreRecorder, device: DeviceIdentity) -> None:
        session = recorder.open_ingest_session(device.device_id, "pytest", behavior_json={"roots": ["/srv"]})

        assert session.source == IngestSource.FILESYSTEM
        assert not session.is_closed
        assert session.behavior_json == '{"roots":["/srv"]}'

        closed = recorder.close_ingest_session(session.ingest_session_id)
        assert closed.is_closed

    def test_double_close_rejected(self, recorder: StoreRecorder, ingest_session: str) -> None:
        recorder.close_ingest_session(ingest_session)

        with pytest.raises(AlreadyClosedError):
            recorder.close_ingest_session(ingest_session)

    def test_reopening_closed_session_id_rejected(self, recorder: StoreRecorder, device: DeviceIdentity, ingest_session: str) -> None:
        recorder.close_ingest_session(ingest_session)

        with pytest.raises(AlreadyClosedError):
            recorder.open_ingest_session(device.device_id, "pytest", session_id=ingest_session)

    def test_reopening_open_session_id_rejected(self, recorder: StoreRecorder, device: DeviceIdentity, ingest_session: str) -> None:
        with pytest.raises(ValidationError, match="already open"):
            recorder.open_ingest_session(device.device_id, "pytest", session_id=ingest_session)

    def test_unknown_device(self, recorder: StoreRecorder) -> None:
        with pytest.raises(DeviceUnknownError) as exc_info:
            recorder.open_ingest_session("absent", "pytest")
        assert exc_info.value.device_id == "absent"

    def test_close_unknown_session(self, recorder: StoreRecorder) -> None:
        with pytest.raises(ReferentialError):
            recorder.close_ingest_session("absent")

    def test_unknown_source_rejected(self, recorder: StoreRecorder, device: DeviceIdentity) -> None:
        with pytest.raises(ValueError):
            recorder.open_ingest_session(device.device_id, "pytest", source="carrier-pigeon")

    def test_list_sessions_per_device(self, recorder: StoreRecorder, device: DeviceIdentity) -> None:
        recorder.open_ingest_session(device.device_id, "a")
        recorder.open_ingest_session(device.device_id, "b")

        assert [s.session_agent for s in recorder.list_ingest_sessions(device.device_id)] == ["a", "b"]


class TestContainers:
    def test_register_fs_path_is_idempotent(self, recorder: StoreRecorder, ingest_session: str) -> None:
        first = recorder.register_fs_path(ingest_session, "/srv/docs", ["*.md"], ["drafts/*"])
        second = recorder.register_fs_path(ingest_session, "/srv/docs")

        assert first.ingest_fs_path_id == second.ingest_fs_path_id
        assert second.include_glob_patterns == ["*.md"]
        assert second.exclude_glob_patterns == ["drafts/*"]

    def test_register_fs_path_unknown_session(self, recorder: StoreRecorder) -> None:
        with pytest.raises(ReferentialError):
            recorder.register_fs_path("absent", "/srv/docs")

    def test_imap_folder_registration(self, recorder: StoreRecorder, ingest_session: str) -> None:
        first = recorder.register_imap_folder(ingest_session, "a@example.com", "imap.example.com", "INBOX")
        again = recorder.register_imap_folder(ingest_session, "a@example.com", "imap.example.com", "INBOX")
        other = recorder.register_imap_folder(ingest_session, "a@example.com", "imap.example.com", "Archive")

        assert first == again
        assert other != first

    def test_plm_project_registration(self, recorder: StoreRecorder, ingest_session: str) -> None:
        first = recorder.register_plm_project(ingest_session, "github", "acme", "cairn", description="tracker")
        again = recorder.register_plm_project(ingest_session, "github", "acme", "cairn")

        assert first == again

    def test_admission_links_container(self, recorder: StoreRecorder, device: DeviceIdentity, ingest_session: str) -> None:
        folder_id = recorder.register_imap_folder(ingest_session, "a@example.com", "imap.example.com", "INBOX")

        admission = recorder.admit(
            device.device_id, "imap://INBOX/1", b"mail", session_id=ingest_session, ingest_imap_acct_folder_id=folder_id
        )

        resource = recorder.get_resource(admission.resource_id)
        assert resource is not None
        assert resource.ingest_imap_acct_folder_id == folder_id


class TestPathEntries:
    def test_entry_recorded_once_per_path(self, recorder: StoreRecorder, ingest_session: str) -> None:
        path_id = recorder.register_fs_path(ingest_session, "/srv").ingest_fs_path_id

        first = _entry(recorder, ingest_session, path_id, "/srv/a.txt", EntryStatus.REJECTED)
        second = _entry(recorder, ingest_session, path_id, "/srv/a.txt", EntryStatus.ADMITTED)

        assert second.ur_ingest_session_fs_path_entry_id == first.ur_ingest_session_fs_path_entry_id
        assert second.ur_status == EntryStatus.REJECTED

    def test_entries_filtered_by_status(self, recorder: StoreRecorder, ingest_session: str) -> None:
        path_id = recorder.register_fs_path(ingest_session, "/srv").ingest_fs_path_id
        _entry(recorder, ingest_session, path_id, "/srv/a.txt", EntryStatus.REJECTED)
        _entry(recorder, ingest_session, path_id, "/srv/b.txt", EntryStatus.ERRORED, diagnostics={"phase": "errored"})

        errored = recorder.list_path_entries(ingest_session, status=EntryStatus.ERRORED)

        assert [e.file_path_abs for e in errored] == ["/srv/b.txt"]
        assert json.loads(errored[0].ur_diagnostics or "{}") == {"phase": "errored"}
        assert len(recorder.list_path_entries(ingest_session)) == 2

    def test_entries_accepted_after_close(self, recorder: StoreRecorder, ingest_session: str) -> None:
        path_id = recorder.register_fs_path(ingest_session, "/srv").ingest_fs_path_id
        recorder.close_ingest_session(ingest_session)

        entry = _entry(recorder, ingest_session, path_id, "/srv/late.txt", EntryStatus.ERRORED)

        assert entry.ingest_session_id == ingest_session

    def test_malformed_transformations_rejected(self, recorder: StoreRecorder, ingest_session: str) -> None:
        path_id = recorder.register_fs_path(ingest_session, "/srv").ingest_fs_path_id

        with pytest.raises(ValidationError):
            _entry(recorder, ingest_session, path_id, "/srv/a.txt", EntryStatus.ADMITTED, transformations="[oops")


class TestTasks:
    def test_task_recorded(self, recorder: StoreRecorder, ingest_session: str) -> None:
        task = recorder.record_task(ingest_session, {"cmd": "osquery", "query": "select 1"}, EntryStatus.ERRORED)

        assert task.ur_status == EntryStatus.ERRORED
        assert json.loads(task.captured_executable) == {"cmd": "osquery", "query": "select 1"}
        assert recorder.list_tasks(ingest_session) == [task]

    def test_task_requires_captured_executable(self, recorder: StoreRecorder, ingest_session: str) -> None:
        with pytest.raises(ValidationError):
            recorder.record_task(ingest_session, None, EntryStatus.ERRORED)


class TestRules:
    def test_rules_listed_in_declaration_order(self, recorder: StoreRecorder) -> None:
        recorder.save_match_rule(PathMatchRule(namespace="docs", regex=r"\.md$", nature="md", priority=2))
        recorder.save_match_rule(PathMatchRule(namespace="code", regex=r"\.py$", flags="i", include_globs=("src/*",)))
        recorder.save_match_rule(PathMatchRule(namespace="docs", regex=r"\.txt$"))

        rules = recorder.list_match_rules()

        assert [r.regex for r in rules] == [r"\.md$", r"\.py$", r"\.txt$"]
        assert rules[1].flags == "i"
        assert rules[1].include_globs == ("src/*",)
        assert [r.regex for r in recorder.list_match_rules("docs")] == [r"\.md$", r"\.txt$"]

    def test_first_declaration_wins(self, recorder: StoreRecorder) -> None:
        recorder.save_match_rule(PathMatchRule(namespace="docs", regex=r"\.md$", nature="first"))
        saved = recorder.save_match_rule(PathMatchRule(namespace="docs", regex=r"\.md$", nature="second"))

        assert saved.nature == "first"
        assert len(recorder.list_match_rules()) == 1

    def test_rewrite_rules_persisted(self, recorder: StoreRecorder) -> None:
        recorder.save_rewrite_rule(PathRewriteRule(namespace="docs", regex="^/srv/", replace="file:///"))
        recorder.save_rewrite_rule(PathRewriteRule(namespace="docs", regex="^/srv/", replace="file:///"))

        rules = recorder.list_rewrite_rules("docs")

        assert len(rules) == 1
        assert rules[0].replace == "file:///"
        assert rules[0].rule_id is not None
