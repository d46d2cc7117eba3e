# src/cairn/ingest/manager.py
"""IngestionSessionManager: drives ingestion sessions over source adapters.

Session lifecycle: OPEN -> (per path: DISCOVERING -> MATCHING -> RESOLVING
-> {ADMITTED | REJECTED | ERRORED}) -> CLOSED.

For every discovered unit the manager:
1. Applies the session-level include/exclude globs (REJECTED on failure)
2. Applies the namespace's match rules (UNMATCHED in strict namespaces)
3. Asks the session's adapter for the candidate
4. Rewrites the path into a canonical URI and admits the content
5. Records a path entry with status, diagnostics and applied rewrites

Adapter failures never escape: they mark the entry ERRORED, store the
diagnostics and notify issue listeners. Sibling entries continue.
"""

from __future__ import annotations

import posixpath
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import TYPE_CHECKING, Any

import structlog

from cairn.contracts import (
    AdapterError,
    Admission,
    Candidate,
    EntryIssue,
    EntryStatus,
    IngestFsPath,
    IngestSession,
    IngestSource,
    IngestSummary,
    IngestTask,
    IssueType,
    PathEntry,
    PathPhase,
    ReferentialError,
    SourceAdapter,
    ValidationError,
)
from cairn.core.canonical import canonical_json
from cairn.core.events import EventBus
from cairn.ingest.adapters.filesystem import FilesystemAdapter
from cairn.ingest.frontmatter import extract_frontmatter
from cairn.ingest.rules import RuleMatch, RuleSet, globs_admit
from cairn.ingest.states import PathStateMachine

if TYPE_CHECKING:
    from cairn.core.config import IngestSettings
    from cairn.core.events import EventBusProtocol
    from cairn.core.store.recorder import StoreRecorder

logger = structlog.get_logger(__name__)

_TASK_OUTCOME_REQUIRED = "record_task needs exactly one of candidate or error"

IssueListener = Callable[[EntryIssue], None]


def _split_rel(rel_path: str) -> tuple[str, str, str | None]:
    """(parent, basename, extension) of a relative posix path."""
    parent, basename = posixpath.split(rel_path)
    _, extn = posixpath.splitext(basename)
    return parent, basename, extn[1:] if extn else None


def _source_ref_text(value: Any) -> str:
    return value if isinstance(value, str) else canonical_json(value)


class IngestionSessionManager:
    """Runs ingestion sessions against the resource store.

    Example:
        manager = IngestionSessionManager(recorder, rules=RuleSet.from_settings(settings.ingest))
        session_id = manager.open(device.device_id, "cairn")
        summary = manager.ingest_path(session_id, "/srv/docs")
        manager.close(session_id)
    """

    def __init__(
        self,
        recorder: StoreRecorder,
        *,
        rules: RuleSet | None = None,
        adapters: Mapping[IngestSource | str, SourceAdapter] | None = None,
        namespace: str = "default",
        events: EventBusProtocol | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            recorder: Store receiving sessions, entries and resources
            rules: Path match/rewrite rules (default: match everything, no rewrites)
            adapters: Adapters by source kind; filesystem is always available
            namespace: Rule namespace used when a call names none
            events: Bus receiving EntryIssue notifications
        """
        self._recorder = recorder
        self._rules = rules if rules is not None else RuleSet()
        self._namespace = namespace
        self._events: EventBusProtocol = events if events is not None else EventBus()
        self._adapters: dict[IngestSource, SourceAdapter] = {IngestSource.FILESYSTEM: FilesystemAdapter()}
        for source, adapter in (adapters or {}).items():
            self._adapters[IngestSource(source)] = adapter

        # Session and path records are immutable once written
        self._sessions: dict[str, IngestSession] = {}
        self._paths: dict[str, IngestFsPath] = {}
        self._cache_lock = Lock()

    @classmethod
    def from_settings(
        cls,
        recorder: StoreRecorder,
        settings: IngestSettings,
        *,
        adapters: Mapping[IngestSource | str, SourceAdapter] | None = None,
        events: EventBusProtocol | None = None,
    ) -> IngestionSessionManager:
        return cls(
            recorder,
            rules=RuleSet.from_settings(settings),
            adapters=adapters,
            namespace=settings.default_namespace,
            events=events,
        )

    @property
    def rules(self) -> RuleSet:
        return self._rules

    @property
    def events(self) -> EventBusProtocol:
        return self._events

    def add_issue_listener(self, listener: IssueListener) -> None:
        """Call listener for every errored entry or task."""
        self._events.subscribe(EntryIssue, listener)

    def remove_issue_listener(self, listener: IssueListener) -> bool:
        return self._events.unsubscribe(EntryIssue, listener)

    # === Session lifecycle ===

    def open(
        self,
        device_id: str,
        agent: str,
        behavior_config: Any = None,
        *,
        behavior_name: str | None = None,
        source: IngestSource | str = IngestSource.FILESYSTEM,
        session_id: str | None = None,
        elaboration: Any = None,
    ) -> str:
        """Open an ingestion session and return its id.

        With behavior_name, behavior_config is saved as the device's named
        behavior and the session links to it.

        Raises:
            DeviceUnknownError: If the device is absent or soft-deleted
            AlreadyClosedError: If session_id names a finished session
        """
        source = IngestSource(source)
        behavior_id: str | None = None
        if behavior_name is not None:
            behavior = self._recorder.ensure_behavior(device_id, behavior_name, behavior_config if behavior_config is not None else {})
            behavior_id = behavior.behavior_id
        session = self._recorder.open_ingest_session(
            device_id,
            agent,
            source=source,
            behavior_id=behavior_id,
            behavior_json=behavior_config,
            session_id=session_id,
            elaboration=elaboration,
        )
        with self._cache_lock:
            self._sessions[session.ingest_session_id] = session
        logger.info(
            "ingest_session_opened",
            session_id=session.ingest_session_id,
            device_id=device_id,
            agent=agent,
            source=source.value,
            adapter=self._adapters[source].name if source in self._adapters else None,
        )
        return session.ingest_session_id

    def close(self, session_id: str) -> IngestSummary:
        """Finish the session and return its outcome counts.

        Raises:
            AlreadyClosedError: On a second close
        """
        self._recorder.close_ingest_session(session_id)
        summary = self.summary(session_id)
        with self._cache_lock:
            self._sessions.pop(session_id, None)
        logger.info(
            "ingest_session_closed",
            session_id=session_id,
            admitted=summary.admitted,
            duplicate=summary.duplicate,
            rejected=summary.rejected,
            errored=summary.errored,
        )
        return summary

    def summary(self, session_id: str) -> IngestSummary:
        """Admitted / duplicate / rejected / errored counts over entries and tasks."""
        summary = IngestSummary()
        for entry in self._recorder.list_path_entries(session_id):
            summary.record(entry.ur_status)
        for task in self._recorder.list_tasks(session_id):
            summary.record(task.ur_status)
        return summary

    # === Containers ===

    def register_path(
        self,
        session_id: str,
        root_path: str,
        include_globs: list[str] | None = None,
        exclude_globs: list[str] | None = None,
    ) -> str:
        """Register a filesystem root; its globs filter every entry beneath it."""
        fs_path = self._recorder.register_fs_path(session_id, root_path, include_globs, exclude_globs)
        with self._cache_lock:
            self._paths[fs_path.ingest_fs_path_id] = fs_path
        return fs_path.ingest_fs_path_id

    def register_mail_folder(
        self,
        session_id: str,
        email: str,
        host: str,
        folder_name: str,
        *,
        include_senders: list[str] | None = None,
        exclude_senders: list[str] | None = None,
    ) -> str:
        """Register a mailbox account folder; returns the folder id for admit_candidate."""
        return self._recorder.register_imap_folder(
            session_id,
            email,
            host,
            folder_name,
            include_senders=include_senders,
            exclude_senders=exclude_senders,
        )

    def register_issue_project(
        self,
        session_id: str,
        provider: str,
        org_name: str,
        project_name: str,
        *,
        description: str | None = None,
    ) -> str:
        """Register an issue-tracker project; returns the project id for admit_candidate."""
        return self._recorder.register_plm_project(session_id, provider, org_name, project_name, description=description)

    # === Entries ===

    def ingest_path(
        self,
        session_id: str,
        root_path: str,
        include_globs: list[str] | None = None,
        exclude_globs: list[str] | None = None,
        *,
        namespace: str | None = None,
        max_workers: int = 1,
    ) -> IngestSummary:
        """Register root_path, discover its units and record an entry for each.

        With max_workers > 1 entries are resolved on a thread pool; the store
        serializes admissions on the dedup key.

        Returns:
            Counts for this root only
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        path_id = self.register_path(session_id, root_path, include_globs, exclude_globs)
        adapter = self._adapter_for(session_id)
        summary = IngestSummary()

        try:
            refs = list(adapter.discover(root_path, include_globs, exclude_globs))
        except Exception as e:
            # Discovery failure is an adapter failure of the root itself
            entry = self._record_errored(path_id, root_path, e)
            summary.record(entry.ur_status)
            return summary

        def _one(ref: Any) -> EntryStatus:
            _, outcome = self._resolve_entry(path_id, ref.abs_path, ref.rel_path, None, namespace)
            return outcome

        if max_workers == 1:
            outcomes = [_one(ref) for ref in refs]
        else:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cairn-ingest") as pool:
                outcomes = list(pool.map(_one, refs))

        for outcome in outcomes:
            summary.record(outcome)
        logger.info(
            "ingest_path_completed",
            session_id=session_id,
            root_path=root_path,
            admitted=summary.admitted,
            duplicate=summary.duplicate,
            rejected=summary.rejected,
            errored=summary.errored,
        )
        return summary

    def record_entry(
        self,
        path_id: str,
        abs_path: str,
        rel_path: str,
        match_result: RuleMatch | None = None,
        *,
        namespace: str | None = None,
    ) -> PathEntry:
        """Run one discovered unit through matching, resolution and admission.

        Args:
            path_id: Registered root the unit was found under
            abs_path: Absolute path (the adapter's source reference)
            rel_path: Path relative to the root, tested against session globs
            match_result: Pre-computed rule match; evaluated here when None
            namespace: Rule namespace (defaults to the manager's)

        Returns:
            The recorded entry. A path already recorded under this root in
            the session is not resolved again; its first entry is returned.

        Raises:
            ReferentialError: If path_id is not registered
        """
        entry, _ = self._resolve_entry(path_id, abs_path, rel_path, match_result, namespace)
        return entry

    def _resolve_entry(
        self,
        path_id: str,
        abs_path: str,
        rel_path: str,
        match_result: RuleMatch | None,
        namespace: str | None,
    ) -> tuple[PathEntry, EntryStatus]:
        """Record one unit and return it with the outcome of this attempt.

        The outcome differs from the stored status when the path was already
        recorded (an earlier admission now counts as a duplicate) or when a
        concurrent attempt recorded it first.
        """
        fs_path = self._fs_path(path_id)
        session_id = fs_path.ingest_session_id
        existing = self._recorder.find_path_entry(session_id, path_id, abs_path)
        if existing is not None:
            repeat = EntryStatus.DUPLICATE if existing.ur_status == EntryStatus.ADMITTED else existing.ur_status
            return existing, repeat

        namespace = namespace or self._namespace
        machine = PathStateMachine(abs_path)
        parent, basename, extn = _split_rel(rel_path)
        common: dict[str, Any] = {
            "session_id": session_id,
            "fs_path_id": path_id,
            "file_path_abs": abs_path,
            "file_path_rel_parent": parent,
            "file_path_rel": rel_path,
            "file_basename": basename,
            "file_extn": extn,
        }

        machine.advance(PathPhase.MATCHING)
        if not globs_admit(rel_path, fs_path.include_glob_patterns, fs_path.exclude_glob_patterns):
            machine.advance(PathPhase.REJECTED, "outside the session include/exclude globs")
            entry = self._recorder.record_path_entry(**common, status=EntryStatus.REJECTED, diagnostics=machine.diagnostics())
            return entry, EntryStatus.REJECTED

        match = match_result if match_result is not None else self._rules.match(abs_path, namespace)
        if not match.matched:
            machine.advance(PathPhase.REJECTED, f"no match rule accepts the path in strict namespace {match.namespace!r}")
            entry = self._recorder.record_path_entry(**common, status=EntryStatus.UNMATCHED, diagnostics=machine.diagnostics())
            return entry, EntryStatus.UNMATCHED

        machine.advance(PathPhase.RESOLVING)
        adapter = self._adapter_for(session_id)
        try:
            candidate = adapter.produce_candidate(session_id, abs_path)
        except Exception as e:
            return self._fail_entry(machine, e, common, IssueType.ADAPTER), EntryStatus.ERRORED

        try:
            admission, applied, detail = self._admit(session_id, candidate, match, ingest_fs_path_id=path_id)
        except ValidationError as e:
            # Adapter-produced metadata that does not validate
            entry = self._fail_entry(machine, e, common, IssueType.VALIDATION, captured_executable=candidate.captured_executable)
            return entry, EntryStatus.ERRORED

        machine.advance(PathPhase.ADMITTED)
        status = EntryStatus.ADMITTED if admission.is_new_record else EntryStatus.DUPLICATE
        entry = self._recorder.record_path_entry(
            **common,
            status=status,
            resource_id=admission.resource_id,
            captured_executable=candidate.captured_executable,
            diagnostics=machine.diagnostics(rule_id=match.rule_id, detail=detail),
            transformations=applied or None,
        )
        return entry, status

    def admit_candidate(
        self,
        session_id: str,
        candidate: Candidate,
        *,
        namespace: str | None = None,
        imap_folder_id: str | None = None,
        plm_project_id: str | None = None,
    ) -> Admission:
        """Admit a candidate produced outside path discovery (mail, issue tracker).

        Rewrite rules and front-matter extraction apply as for files.
        """
        match = self._rules.match(candidate.uri, namespace or self._namespace)
        admission, _, _ = self._admit(
            session_id,
            candidate,
            match,
            ingest_imap_acct_folder_id=imap_folder_id,
            ingest_plm_acct_project_id=plm_project_id,
        )
        return admission

    def record_task(
        self,
        session_id: str,
        captured_executable: Any,
        candidate: Candidate | None = None,
        *,
        error: BaseException | str | None = None,
        namespace: str | None = None,
    ) -> IngestTask:
        """Record a non-filesystem unit of work (telemetry query, command capture).

        Pass the candidate it produced, or the error it failed with. An error
        marks the task ERRORED and notifies issue listeners.
        """
        if candidate is not None and error is not None:
            raise ValidationError(_TASK_OUTCOME_REQUIRED, field="candidate")
        source_ref = _source_ref_text(captured_executable)
        machine = PathStateMachine(source_ref)
        machine.advance(PathPhase.MATCHING)
        machine.advance(PathPhase.RESOLVING)

        if candidate is None:
            if error is None:
                raise ValidationError(_TASK_OUTCOME_REQUIRED, field="candidate")
            machine.fail(error)
            task = self._recorder.record_task(session_id, captured_executable, EntryStatus.ERRORED, diagnostics=machine.diagnostics())
            self._notify(session_id, source_ref, error, IssueType.ADAPTER)
            return task

        match = self._rules.match(candidate.uri, namespace or self._namespace)
        admission, applied, detail = self._admit(session_id, candidate, match)
        machine.advance(PathPhase.ADMITTED)
        status = EntryStatus.ADMITTED if admission.is_new_record else EntryStatus.DUPLICATE
        return self._recorder.record_task(
            session_id,
            captured_executable,
            status,
            resource_id=admission.resource_id,
            diagnostics=machine.diagnostics(rule_id=match.rule_id, detail=detail),
            transformations=applied or None,
        )

    # === Internals ===

    def _session(self, session_id: str) -> IngestSession:
        with self._cache_lock:
            session = self._sessions.get(session_id)
        if session is None:
            session = self._recorder.get_ingest_session(session_id)
            if session is None:
                raise ReferentialError(f"Ingest session {session_id!r} does not exist")
            with self._cache_lock:
                self._sessions[session_id] = session
        return session

    def _fs_path(self, path_id: str) -> IngestFsPath:
        with self._cache_lock:
            fs_path = self._paths.get(path_id)
        if fs_path is None:
            fs_path = self._recorder.get_fs_path(path_id)
            if fs_path is None:
                raise ReferentialError(f"Ingest path {path_id!r} is not registered")
            with self._cache_lock:
                self._paths[path_id] = fs_path
        return fs_path

    def _adapter_for(self, session_id: str) -> SourceAdapter:
        source = self._session(session_id).source
        adapter = self._adapters.get(source)
        if adapter is None:
            raise ValidationError(f"No adapter registered for source {source.value!r}", field="source")
        return adapter

    def _admit(
        self,
        session_id: str,
        candidate: Candidate,
        match: RuleMatch,
        **containers: str | None,
    ) -> tuple[Admission, list[dict[str, Any]], dict[str, Any]]:
        session = self._session(session_id)
        uri, applied = self._rules.rewrite(candidate.uri, match.namespace)
        nature = match.nature or candidate.nature
        front = extract_frontmatter(candidate.content, nature)
        admission = self._recorder.admit(
            session.device_id,
            uri,
            candidate.content,
            candidate.size_bytes,
            nature,
            session_id=session_id,
            last_modified_at=candidate.last_modified_at,
            frontmatter=front.attrs,
            content_fm_body_attrs=front.body_attrs,
            elaboration=candidate.metadata,
            **containers,
        )
        detail: dict[str, Any] = {
            "uri": uri,
            "nature": nature,
            "content_digest": admission.content_digest,
        }
        if front.error is not None:
            detail["frontmatter_error"] = front.error
        return admission, applied, detail

    def _fail_entry(
        self,
        machine: PathStateMachine,
        error: BaseException,
        common: dict[str, Any],
        issue_type: str,
        *,
        captured_executable: Any = None,
    ) -> PathEntry:
        machine.fail(error)
        remediation = error.remediation if isinstance(error, AdapterError) else None
        entry = self._recorder.record_path_entry(
            **common,
            status=EntryStatus.ERRORED,
            captured_executable=captured_executable,
            diagnostics=machine.diagnostics(detail={"remediation": remediation} if remediation else None),
        )
        self._notify(common["session_id"], common["file_path_abs"], error, issue_type)
        return entry

    def _record_errored(self, path_id: str, abs_path: str, error: BaseException) -> PathEntry:
        machine = PathStateMachine(abs_path)
        fs_path = self._fs_path(path_id)
        common: dict[str, Any] = {
            "session_id": fs_path.ingest_session_id,
            "fs_path_id": path_id,
            "file_path_abs": abs_path,
            "file_path_rel_parent": "",
            "file_path_rel": "",
            "file_basename": posixpath.basename(abs_path.rstrip("/")),
            "file_extn": None,
        }
        return self._fail_entry(machine, error, common, IssueType.ADAPTER)

    def _notify(self, session_id: str, source_ref: str, error: BaseException | str, issue_type: str) -> None:
        remediation = error.remediation if isinstance(error, AdapterError) else None
        logger.warning(
            "ingest_entry_errored",
            session_id=session_id,
            source_ref=source_ref,
            issue_type=issue_type,
            error=str(error),
        )
        self._events.emit(
            EntryIssue(
                ingest_session_id=session_id,
                status=EntryStatus.ERRORED,
                issue_type=issue_type,
                message=str(error),
                source_ref=source_ref,
                invalid_value=source_ref,
                remediation=remediation,
            )
        )
