"""Database operation helpers for the store recorder.

Consolidates the repeated `with self._db.connection() as conn:` pattern,
the compare-and-insert / upsert discipline on uniqueness keys, and the
retry loop for transient lock contention.

Compare-and-insert never reads before writing: the INSERT carries
ON CONFLICT DO NOTHING for the key, then the winning row is read back in
the same transaction. Concurrent callers for one key therefore produce
exactly one insert and all observe the same row.
"""

from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy import ColumnElement, Connection, Executable, Insert, Table, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from cairn.contracts.errors import (
    CairnError,
    ConcurrencyConflict,
    ReferentialError,
    StoreIntegrityError,
    ValidationError,
)
from cairn.core.config import RetrySettings
from cairn.core.store._helpers import now

if TYPE_CHECKING:
    from cairn.core.store.database import StoreDB

T = TypeVar("T")

logger = structlog.get_logger(__name__)

_UPSERT_DIALECTS = frozenset({"sqlite", "postgresql"})

_LOCK_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not serialize access",
    "deadlock detected",
)


def is_lock_contention(exc: BaseException) -> bool:
    """True for transient lock/serialization failures worth retrying."""
    return isinstance(exc, OperationalError) and any(m in str(exc).lower() for m in _LOCK_MARKERS)


def translate_integrity_error(exc: IntegrityError) -> CairnError:
    """Map a constraint violation to the cairn error taxonomy."""
    message = str(exc.orig)
    lowered = message.lower()
    if "foreign key" in lowered:
        return ReferentialError(f"Missing owner row: {message}")
    if "check constraint" in lowered or "violates check" in lowered:
        return ValidationError(f"Constraint violation: {message}")
    return StoreIntegrityError(message)


def _dialect_insert(dialect: str, table: Table) -> Any:
    if dialect == "postgresql":
        return postgresql_insert(table)
    return sqlite_insert(table)


def key_clause(table: Table, values: Mapping[str, Any], key_columns: Sequence[str]) -> list[ColumnElement[bool]]:
    return [table.c[k] == values[k] for k in key_columns]


def _insert_catching_conflict(conn: Connection, table: Table, values: Mapping[str, Any], key_columns: Sequence[str]) -> bool:
    """Portable fallback: insert in a savepoint, treat a key collision as 'absent=false'."""
    try:
        with conn.begin_nested():
            conn.execute(table.insert().values(**values))
    except IntegrityError:
        existing = conn.execute(select(table.c[key_columns[0]]).where(*key_clause(table, values, key_columns))).first()
        if existing is None:
            raise
        return False
    return True


def insert_if_absent(
    conn: Connection,
    table: Table,
    values: Mapping[str, Any],
    key_columns: Sequence[str],
) -> tuple[Row[Any], bool]:
    """Insert values unless a row with the same key exists.

    Returns:
        (row holding the key, True if this call inserted it)

    Raises:
        ReferentialError: If an owning row referenced by values is missing
        ValidationError: If a CHECK constraint rejects the row
        StoreIntegrityError: If the key row cannot be read back
    """
    dialect = conn.dialect.name
    try:
        if dialect in _UPSERT_DIALECTS:
            stmt: Insert = _dialect_insert(dialect, table).values(**values).on_conflict_do_nothing(index_elements=list(key_columns))
            inserted = conn.execute(stmt).rowcount == 1
        else:
            inserted = _insert_catching_conflict(conn, table, values, key_columns)
    except IntegrityError as e:
        raise translate_integrity_error(e) from e

    row = conn.execute(select(table).where(*key_clause(table, values, key_columns))).one_or_none()
    if row is None:
        raise StoreIntegrityError(
            f"{table.name}: key {[values[k] for k in key_columns]} not readable after compare-and-insert - transaction failure"
        )
    return row, inserted


def upsert(
    conn: Connection,
    table: Table,
    values: Mapping[str, Any],
    key_columns: Sequence[str],
    update_values: Mapping[str, Any],
) -> Row[Any]:
    """Insert values, or apply update_values to the row holding the key.

    Concurrent upserts on one key serialize in the database; the last
    writer's update_values win.
    """
    dialect = conn.dialect.name
    try:
        if dialect in _UPSERT_DIALECTS:
            stmt = _dialect_insert(dialect, table).values(**values)
            stmt = stmt.on_conflict_do_update(index_elements=list(key_columns), set_=dict(update_values))
            conn.execute(stmt)
        elif not _insert_catching_conflict(conn, table, values, key_columns):
            conn.execute(table.update().where(*key_clause(table, values, key_columns)).values(**update_values))
    except IntegrityError as e:
        raise translate_integrity_error(e) from e

    row = conn.execute(select(table).where(*key_clause(table, values, key_columns))).one_or_none()
    if row is None:
        raise StoreIntegrityError(f"{table.name}: key {[values[k] for k in key_columns]} not readable after upsert")
    return row


class DatabaseOps:
    """Helper for common database operations.

    Every operation runs inside one transaction and is retried with
    exponential backoff while the database reports lock contention.
    """

    def __init__(self, db: "StoreDB", retry: RetrySettings | None = None) -> None:
        self._db = db
        self._retry = retry or RetrySettings()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("store_write_contended", attempt=retry_state.attempt_number, error=str(exc))

    def _run_once(self, fn: Callable[[Connection], T]) -> T:
        try:
            with self._db.connection() as conn:
                return fn(conn)
        except IntegrityError as e:
            raise translate_integrity_error(e) from e

    def transaction(self, fn: Callable[[Connection], T]) -> T:
        """Run fn(conn) in one transaction, retrying on lock contention.

        Raises:
            ConcurrencyConflict: If contention persists past max_attempts
            ValidationError, ReferentialError, StoreIntegrityError: If a
                constraint rejects the write (see translate_integrity_error)
        """
        retrying = Retrying(
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=wait_exponential_jitter(
                initial=self._retry.initial_delay_seconds,
                max=self._retry.max_delay_seconds,
            ),
            retry=retry_if_exception(is_lock_contention),
            before_sleep=self._log_retry,
        )
        try:
            return retrying(self._run_once, fn)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise ConcurrencyConflict(f"Store write still contended after {self._retry.max_attempts} attempts: {last}") from last

    def execute_fetchone(self, query: Executable) -> Row[Any] | None:
        """Execute query and return single row or None."""
        return self.transaction(lambda conn: conn.execute(query).fetchone())

    def execute_fetchall(self, query: Executable) -> list[Row[Any]]:
        """Execute query and return all rows."""
        return self.transaction(lambda conn: list(conn.execute(query).fetchall()))

    def execute_insert(self, stmt: Executable) -> Any:
        """Execute insert statement and return its inserted primary key.

        Raises:
            ReferentialError: If an owning row is missing
            StoreIntegrityError: If zero rows are affected
        """

        def _op(conn: Connection) -> Any:
            try:
                result = conn.execute(stmt)
            except IntegrityError as e:
                raise translate_integrity_error(e) from e
            if result.rowcount == 0:
                raise StoreIntegrityError("execute_insert: zero rows affected - store write failed")
            return result.inserted_primary_key[0] if result.inserted_primary_key else None

        return self.transaction(_op)

    def execute_update(self, stmt: Executable) -> None:
        """Execute update statement.

        Raises:
            StoreIntegrityError: If zero rows are affected (target row does not exist)
        """

        def _op(conn: Connection) -> None:
            try:
                result = conn.execute(stmt)
            except IntegrityError as e:
                raise translate_integrity_error(e) from e
            if result.rowcount == 0:
                raise StoreIntegrityError("execute_update: zero rows affected - target row does not exist")

        self.transaction(_op)

    def soft_delete(self, table: Table, pk_column: str, pk_value: Any, actor: str) -> bool:
        """Mark a row deleted via its housekeeping envelope.

        Returns:
            True if the row was live and is now deleted, False if it was already deleted

        Raises:
            ReferentialError: If no such row exists
        """

        def _op(conn: Connection) -> bool:
            pk = table.c[pk_column]
            exists = conn.execute(select(pk).where(pk == pk_value)).first()
            if exists is None:
                raise ReferentialError(f"{table.name} row {pk_value!r} does not exist")
            timestamp = now()
            result = conn.execute(
                table.update()
                .where(pk == pk_value, table.c.deleted_at.is_(None))
                .values(deleted_at=timestamp, deleted_by=actor, updated_at=timestamp, updated_by=actor)
            )
            return result.rowcount == 1

        return self.transaction(_op)
