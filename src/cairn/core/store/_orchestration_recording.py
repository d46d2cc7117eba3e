"""Orchestration session, entry and transition recording methods for StoreRecorder."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, select

from cairn.contracts import (
    AlreadyClosedError,
    OrchestrationSession,
    ReferentialError,
    SessionEntry,
    SessionState,
    ValidationError,
)
from cairn.core.canonical import validate_structured
from cairn.core.store._database_ops import insert_if_absent, upsert
from cairn.core.store._device_recording import require_live_device
from cairn.core.store._helpers import created_by, generate_id, live, now, updated_by
from cairn.core.store.schema import (
    orchestration_entry_table,
    orchestration_nature_table,
    orchestration_session_table,
    orchestration_state_table,
)

if TYPE_CHECKING:
    import structlog

    from cairn.core.store._database_ops import DatabaseOps
    from cairn.core.store.repositories import (
        OrchestrationSessionRepository,
        SessionEntryRepository,
        SessionStateRepository,
    )


def require_orchestration_session(conn: Connection, session_id: str) -> Any:
    """Fetch an orchestration session row; finished sessions are returned too.

    Raises:
        ReferentialError: If the session does not exist
    """
    row = conn.execute(
        select(orchestration_session_table).where(orchestration_session_table.c.orchestration_session_id == session_id)
    ).first()
    if row is None:
        raise ReferentialError(f"Orchestration session {session_id!r} does not exist")
    return row


def require_session_entry(conn: Connection, session_id: str, entry_id: str) -> Any:
    """Fetch an entry row and check it belongs to session_id.

    Raises:
        ReferentialError: If the entry is missing or belongs to another session
    """
    row = conn.execute(
        select(orchestration_entry_table).where(orchestration_entry_table.c.orchestration_session_entry_id == entry_id)
    ).first()
    if row is None:
        raise ReferentialError(f"Session entry {entry_id!r} does not exist")
    if row.session_id != session_id:
        raise ReferentialError(f"Session entry {entry_id!r} belongs to session {row.session_id!r}, not {session_id!r}")
    return row


class OrchestrationRecordingMixin:
    """Orchestration session lifecycle methods. Mixed into StoreRecorder."""

    # Shared state annotations (set by StoreRecorder.__init__)
    _ops: DatabaseOps
    _actor: str
    _log: structlog.stdlib.BoundLogger
    _orch_session_repo: OrchestrationSessionRepository
    _session_entry_repo: SessionEntryRepository
    _session_state_repo: SessionStateRepository

    def ensure_orchestration_nature(self, nature: str) -> str:
        """Register a pipeline kind on first use and return its id."""
        if not nature:
            raise ValidationError("Orchestration nature must be non-empty", field="nature")
        values = {
            "orchestration_nature_id": generate_id(),
            "nature": nature,
            **created_by(self._actor, now()),
        }
        row, _ = self._ops.transaction(lambda conn: insert_if_absent(conn, orchestration_nature_table, values, ("nature",)))
        return str(row.orchestration_nature_id)

    def begin_orchestration_session(
        self,
        device_id: str,
        nature: str,
        version: str,
        args: Any = None,
        *,
        session_id: str | None = None,
        elaboration: Any = None,
    ) -> OrchestrationSession:
        """Start an orchestration session for a live device.

        Raises:
            DeviceUnknownError: If the device is absent or soft-deleted
            AlreadyClosedError: If session_id names a finished session
            ValidationError: If session_id names a session still running, or args are malformed
        """
        args_json = validate_structured(args, "args_json")
        elaboration_json = validate_structured(elaboration, "elaboration")
        nature_id = self.ensure_orchestration_nature(nature)
        session_id = session_id or generate_id()
        timestamp = now()

        def _op(conn: Connection) -> Any:
            require_live_device(conn, device_id)
            existing = conn.execute(
                select(orchestration_session_table.c.orch_finished_at).where(
                    orchestration_session_table.c.orchestration_session_id == session_id
                )
            ).first()
            if existing is not None:
                if existing.orch_finished_at is not None:
                    raise AlreadyClosedError("orchestration", session_id)
                raise ValidationError(f"Orchestration session {session_id!r} is already running", field="session_id")
            conn.execute(
                orchestration_session_table.insert().values(
                    orchestration_session_id=session_id,
                    device_id=device_id,
                    orchestration_nature_id=nature_id,
                    version=version,
                    orch_started_at=timestamp,
                    args_json=args_json,
                    elaboration=elaboration_json,
                    **created_by(self._actor, timestamp),
                )
            )
            return require_orchestration_session(conn, session_id)

        return self._orch_session_repo.load(self._ops.transaction(_op))

    def end_orchestration_session(
        self,
        session_id: str,
        *,
        diagnostics: Any = None,
        diagnostics_md: str | None = None,
    ) -> OrchestrationSession:
        """Mark a session finished. Records arriving afterwards are still accepted.

        Raises:
            ReferentialError: If the session does not exist
            AlreadyClosedError: If the session already finished
        """
        diagnostics_json = validate_structured(diagnostics, "diagnostics_json")
        timestamp = now()

        def _op(conn: Connection) -> Any:
            row = require_orchestration_session(conn, session_id)
            if row.orch_finished_at is not None:
                raise AlreadyClosedError("orchestration", session_id)
            conn.execute(
                orchestration_session_table.update()
                .where(orchestration_session_table.c.orchestration_session_id == session_id)
                .values(
                    orch_finished_at=timestamp,
                    diagnostics_json=diagnostics_json,
                    diagnostics_md=diagnostics_md,
                    **updated_by(self._actor, timestamp),
                )
            )
            return require_orchestration_session(conn, session_id)

        return self._orch_session_repo.load(self._ops.transaction(_op))

    def get_orchestration_session(self, session_id: str, *, include_deleted: bool = False) -> OrchestrationSession | None:
        query = select(orchestration_session_table).where(
            orchestration_session_table.c.orchestration_session_id == session_id,
            *live(orchestration_session_table, include_deleted),
        )
        row = self._ops.execute_fetchone(query)
        return self._orch_session_repo.load(row) if row is not None else None

    def get_orchestration_nature(self, nature_id: str) -> str | None:
        row = self._ops.execute_fetchone(
            select(orchestration_nature_table.c.nature).where(orchestration_nature_table.c.orchestration_nature_id == nature_id)
        )
        return row.nature if row is not None else None

    # === Entries ===

    def begin_session_entry(
        self,
        session_id: str,
        ingest_src: str,
        *,
        ingest_table_name: str | None = None,
        elaboration: Any = None,
    ) -> SessionEntry:
        """Add a named stage to a session."""
        if not ingest_src:
            raise ValidationError("ingest_src must be non-empty", field="ingest_src")
        elaboration_json = validate_structured(elaboration, "elaboration")
        entry_id = generate_id()
        timestamp = now()

        def _op(conn: Connection) -> Any:
            require_orchestration_session(conn, session_id)
            conn.execute(
                orchestration_entry_table.insert().values(
                    orchestration_session_entry_id=entry_id,
                    session_id=session_id,
                    ingest_src=ingest_src,
                    ingest_table_name=ingest_table_name,
                    elaboration=elaboration_json,
                    **created_by(self._actor, timestamp),
                )
            )
            return require_session_entry(conn, session_id, entry_id)

        return self._session_entry_repo.load(self._ops.transaction(_op))

    def list_session_entries(self, session_id: str) -> list[SessionEntry]:
        t = orchestration_entry_table
        query = select(t).where(t.c.session_id == session_id, *live(t)).order_by(t.c.created_at, t.c.orchestration_session_entry_id)
        return [self._session_entry_repo.load(r) for r in self._ops.execute_fetchall(query)]

    # === Transitions ===

    def record_transition(
        self,
        owner_id: str,
        from_state: str,
        to_state: str,
        result: str | None = None,
        reason: str | None = None,
    ) -> SessionState:
        """Record a lifecycle transition for a session or one of its entries.

        (owner_id, from_state, to_state) is unique: repeating a transition
        overwrites result, reason and timestamp and increments
        transition_count. Concurrent writers serialize; the last one wins.

        Raises:
            ReferentialError: If owner_id is neither a session nor an entry
        """
        timestamp = now()

        def _op(conn: Connection) -> Any:
            session = conn.execute(
                select(orchestration_session_table.c.orchestration_session_id).where(
                    orchestration_session_table.c.orchestration_session_id == owner_id
                )
            ).first()
            if session is not None:
                session_id, entry_id = owner_id, None
            else:
                entry = conn.execute(
                    select(orchestration_entry_table.c.session_id).where(
                        orchestration_entry_table.c.orchestration_session_entry_id == owner_id
                    )
                ).first()
                if entry is None:
                    raise ReferentialError(f"Transition owner {owner_id!r} is neither a session nor a session entry")
                session_id, entry_id = entry.session_id, owner_id

            values = {
                "orchestration_session_state_id": generate_id(),
                "session_id": session_id,
                "session_entry_id": entry_id,
                "owner_id": owner_id,
                "from_state": from_state,
                "to_state": to_state,
                "transition_result": result,
                "transition_reason": reason,
                "transitioned_at": timestamp,
                "transition_count": 1,
                **created_by(self._actor, timestamp),
            }
            return upsert(
                conn,
                orchestration_state_table,
                values,
                ("owner_id", "from_state", "to_state"),
                {
                    "transition_result": result,
                    "transition_reason": reason,
                    "transitioned_at": timestamp,
                    "transition_count": orchestration_state_table.c.transition_count + 1,
                    **updated_by(self._actor, timestamp),
                },
            )

        state = self._session_state_repo.load(self._ops.transaction(_op))
        self._log.debug("transition_recorded", owner_id=owner_id, from_state=from_state, to_state=to_state, count=state.transition_count)
        return state

    def list_transitions(self, *, session_id: str | None = None, owner_id: str | None = None) -> list[SessionState]:
        t = orchestration_state_table
        clauses = live(t)
        if session_id is not None:
            clauses.append(t.c.session_id == session_id)
        if owner_id is not None:
            clauses.append(t.c.owner_id == owner_id)
        query = select(t).where(*clauses).order_by(t.c.transitioned_at, t.c.orchestration_session_state_id)
        return [self._session_state_repo.load(r) for r in self._ops.execute_fetchall(query)]
