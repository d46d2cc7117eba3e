"""Append-only issue recording methods for StoreRecorder."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, or_, select

from cairn.contracts import IssueRelation, ReferentialError, SessionIssue, ValidationError
from cairn.core.canonical import validate_structured
from cairn.core.store._helpers import created_by, live, now
from cairn.core.store._orchestration_recording import require_orchestration_session, require_session_entry
from cairn.core.store.schema import orchestration_issue_relation_table, orchestration_issue_table

if TYPE_CHECKING:
    import structlog

    from cairn.core.store._database_ops import DatabaseOps
    from cairn.core.store.repositories import IssueRelationRepository, SessionIssueRepository

_issues = orchestration_issue_table
_relations = orchestration_issue_relation_table


class IssueRecordingMixin:
    """Issue methods. Mixed into StoreRecorder."""

    # Shared state annotations (set by StoreRecorder.__init__)
    _ops: DatabaseOps
    _actor: str
    _log: structlog.stdlib.BoundLogger
    _issue_repo: SessionIssueRepository
    _issue_relation_repo: IssueRelationRepository

    def record_issue(
        self,
        session_id: str,
        issue_type: str,
        message: str,
        *,
        session_entry_id: str | None = None,
        issue_row: int | None = None,
        issue_column: str | None = None,
        invalid_value: str | None = None,
        remediation: str | None = None,
        elaboration: Any = None,
    ) -> SessionIssue:
        """Append a structured problem report. Issues are never overwritten."""
        if not issue_type:
            raise ValidationError("issue_type must be non-empty", field="issue_type")
        elaboration_json = validate_structured(elaboration, "elaboration")
        timestamp = now()

        def _op(conn: Connection) -> Any:
            require_orchestration_session(conn, session_id)
            if session_entry_id is not None:
                require_session_entry(conn, session_id, session_entry_id)
            result = conn.execute(
                _issues.insert().values(
                    session_id=session_id,
                    session_entry_id=session_entry_id,
                    issue_type=issue_type,
                    issue_message=message,
                    issue_row=issue_row,
                    issue_column=issue_column,
                    invalid_value=invalid_value,
                    remediation=remediation,
                    elaboration=elaboration_json,
                    **created_by(self._actor, timestamp),
                )
            )
            issue_id = result.inserted_primary_key[0]
            return conn.execute(select(_issues).where(_issues.c.orchestration_session_issue_id == issue_id)).one()

        issue = self._issue_repo.load(self._ops.transaction(_op))
        self._log.info(
            "issue_recorded",
            issue_id=issue.orchestration_session_issue_id,
            session_id=session_id,
            issue_type=issue_type,
        )
        return issue

    def relate_issues(self, prime_issue_id: int, related_issue_id: int, nature: str) -> IssueRelation:
        """Link two issues (append-only).

        Raises:
            ReferentialError: If either issue does not exist
        """
        timestamp = now()

        def _op(conn: Connection) -> Any:
            for issue_id in (prime_issue_id, related_issue_id):
                exists = conn.execute(
                    select(_issues.c.orchestration_session_issue_id).where(_issues.c.orchestration_session_issue_id == issue_id)
                ).first()
                if exists is None:
                    raise ReferentialError(f"Issue {issue_id!r} does not exist")
            result = conn.execute(
                _relations.insert().values(
                    issue_id_prime=prime_issue_id,
                    issue_id_rel=related_issue_id,
                    relationship_nature=nature,
                    **created_by(self._actor, timestamp),
                )
            )
            relation_id = result.inserted_primary_key[0]
            return conn.execute(select(_relations).where(_relations.c.orchestration_session_issue_relation_id == relation_id)).one()

        return self._issue_relation_repo.load(self._ops.transaction(_op))

    def list_issues(self, session_id: str, *, include_deleted: bool = False) -> list[SessionIssue]:
        query = (
            select(_issues)
            .where(_issues.c.session_id == session_id, *live(_issues, include_deleted))
            .order_by(_issues.c.orchestration_session_issue_id)
        )
        return [self._issue_repo.load(r) for r in self._ops.execute_fetchall(query)]

    def list_issue_relations(self, issue_id: int) -> list[IssueRelation]:
        query = (
            select(_relations)
            .where(or_(_relations.c.issue_id_prime == issue_id, _relations.c.issue_id_rel == issue_id), *live(_relations))
            .order_by(_relations.c.orchestration_session_issue_relation_id)
        )
        return [self._issue_relation_repo.load(r) for r in self._ops.execute_fetchall(query)]
