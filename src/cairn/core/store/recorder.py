# src/cairn/core/store/recorder.py
"""StoreRecorder: High-level API for the resource store.

This is the main interface for recording devices, admitted resources,
ingestion sessions and orchestration runs. It wraps the low-level
database operations.

Implementation is split across mixins by concern:
- _device_recording: devices and behaviors
- _resource_recording: resource/transform admission (dedup authority)
- _ingest_recording: ingest sessions, containers, entries, tasks, rules
- _orchestration_recording: orchestration sessions, entries, transitions
- _exec_recording: exec tree and hierarchical logs
- _issue_recording: issues and issue relations
"""

from __future__ import annotations

from threading import Lock
from typing import TYPE_CHECKING

import structlog

from cairn.core.events import EventBusProtocol, NullEventBus
from cairn.core.payload_store import FilesystemPayloadStore
from cairn.core.store._database_ops import DatabaseOps
from cairn.core.store._device_recording import DeviceRecordingMixin
from cairn.core.store._exec_recording import ExecRecordingMixin, SiblingKey
from cairn.core.store._ingest_recording import IngestRecordingMixin
from cairn.core.store._issue_recording import IssueRecordingMixin
from cairn.core.store._orchestration_recording import OrchestrationRecordingMixin
from cairn.core.store._resource_recording import ResourceRecordingMixin
from cairn.core.store.database import StoreDB
from cairn.core.store.repositories import (
    BehaviorRepository,
    DeviceRepository,
    IngestFsPathRepository,
    IngestSessionRepository,
    IngestTaskRepository,
    IssueRelationRepository,
    OrchestrationSessionRepository,
    PathEntryRepository,
    SessionEntryRepository,
    SessionExecRepository,
    SessionIssueRepository,
    SessionLogRepository,
    SessionStateRepository,
    UniformResourceRepository,
    UniformResourceTransformRepository,
)
from cairn.core.store.schema import DEFAULT_ACTOR

if TYPE_CHECKING:
    from cairn.contracts.payload_store import PayloadStore
    from cairn.core.config import CairnSettings, RetrySettings


class StoreRecorder(
    DeviceRecordingMixin,
    ResourceRecordingMixin,
    IngestRecordingMixin,
    OrchestrationRecordingMixin,
    ExecRecordingMixin,
    IssueRecordingMixin,
):
    """High-level API for the resource store.

    Example:
        db = StoreDB.in_memory()
        recorder = StoreRecorder(db)

        device = recorder.ensure_device("laptop-01")
        session = recorder.open_ingest_session(device.device_id, "cairn")
        admission = recorder.admit(device.device_id, "file:///a.txt", b"hi", session_id=session.ingest_session_id)
        recorder.close_ingest_session(session.ingest_session_id)
    """

    def __init__(
        self,
        db: StoreDB,
        *,
        payload_store: PayloadStore | None = None,
        inline_threshold_bytes: int | None = None,
        events: EventBusProtocol | None = None,
        actor: str = DEFAULT_ACTOR,
        retry: RetrySettings | None = None,
    ) -> None:
        """Initialize recorder with database connection.

        Args:
            db: StoreDB instance
            payload_store: Optional store for content kept out of line
            inline_threshold_bytes: Content larger than this goes to payload_store
            events: Bus receiving ResourceAdmitted for new resources
            actor: Recorded in housekeeping created_by/updated_by/deleted_by
            retry: Backoff for lock contention
        """
        self._db = db
        self._payload_store = payload_store
        self._inline_threshold_bytes = inline_threshold_bytes
        self._events: EventBusProtocol = events if events is not None else NullEventBus()
        self._actor = actor
        self._log = structlog.get_logger(__name__)

        self._ops = DatabaseOps(db, retry)

        # Per-(kind, session, parent) sibling order allocation
        self._sibling_orders: dict[SiblingKey, int] = {}
        self._sibling_order_lock = Lock()

        # Repository instances for row-to-object conversions
        self._device_repo = DeviceRepository()
        self._behavior_repo = BehaviorRepository()
        self._resource_repo = UniformResourceRepository()
        self._transform_repo = UniformResourceTransformRepository()
        self._ingest_session_repo = IngestSessionRepository()
        self._fs_path_repo = IngestFsPathRepository()
        self._path_entry_repo = PathEntryRepository()
        self._task_repo = IngestTaskRepository()
        self._orch_session_repo = OrchestrationSessionRepository()
        self._session_entry_repo = SessionEntryRepository()
        self._session_state_repo = SessionStateRepository()
        self._exec_repo = SessionExecRepository()
        self._log_repo = SessionLogRepository()
        self._issue_repo = SessionIssueRepository()
        self._issue_relation_repo = IssueRelationRepository()

    @classmethod
    def from_settings(cls, settings: CairnSettings, *, events: EventBusProtocol | None = None) -> StoreRecorder:
        """Build a recorder (database, payload store, retry) from loaded settings."""
        db = StoreDB.from_url(settings.store.url, echo=settings.store.echo)
        payload_store: PayloadStore | None = None
        threshold: int | None = None
        if settings.payload_store.enabled:
            payload_store = FilesystemPayloadStore(settings.payload_store.base_path)
            threshold = settings.payload_store.inline_threshold_bytes
        return cls(
            db,
            payload_store=payload_store,
            inline_threshold_bytes=threshold,
            events=events,
            actor=settings.store.actor,
            retry=settings.retry,
        )

    @property
    def db(self) -> StoreDB:
        return self._db

    @property
    def ops(self) -> DatabaseOps:
        return self._ops

    @property
    def events(self) -> EventBusProtocol:
        return self._events

    @property
    def actor(self) -> str:
        return self._actor
